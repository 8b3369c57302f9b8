"""Trace store interfaces and the in-memory implementation."""

from __future__ import annotations

import copy
import itertools
import locale
import logging
import threading
from collections.abc import Callable
from typing import Any, Protocol

from decision_xray.config import QueryOptions
from decision_xray.types import STATUSES, Execution, Status

logger = logging.getLogger(__name__)

Subscriber = Callable[[Execution], None]


class TraceStore(Protocol):
    """Storage and query contract for executions.

    A durable backend can implement the same methods; the capture builder and
    the HTTP layer only depend on this protocol.
    """

    def save(self, execution: Execution) -> None:
        """Upsert the complete execution snapshot by id and notify subscribers."""

    def get(self, execution_id: str) -> Execution | None:
        """Return the execution, or None when absent."""

    def delete(self, execution_id: str) -> bool:
        """Remove the execution and report whether anything was removed."""

    def clear(self) -> None:
        """Remove every execution."""

    def find_all(self, options: QueryOptions | None = None, **filters: Any) -> list[Execution]:
        """Filter, sort and paginate executions."""

    def count(self) -> int:
        """Total number of stored executions."""

    def count_by_status(self) -> dict[Status, int]:
        """Execution counts keyed by every status value."""

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a save observer and return its unsubscribe action."""


class InMemoryTraceStore:
    """Thread-safe in-memory store used for local runs and tests.

    Executions are copied on the way in and on the way out, so neither the
    builder that saved a snapshot nor a reader holding a returned value can
    alter the stored copy.

    Saves are serialized behind a notify lock, so subscribers see writes in
    the order they were stored. Reads only take the map lock and are not held
    up by a slow subscriber; concurrent writers are.
    """

    def __init__(self) -> None:
        self._executions: dict[str, Execution] = {}
        self._subscribers: dict[int, Subscriber] = {}
        self._subscriber_ids = itertools.count()
        self._lock = threading.RLock()
        self._notify_lock = threading.RLock()

    def save(self, execution: Execution) -> None:
        stored = copy.deepcopy(execution)
        with self._notify_lock:
            with self._lock:
                self._executions[stored.id] = stored
                subscribers = list(self._subscribers.values())

            for callback in subscribers:
                try:
                    callback(copy.deepcopy(stored))
                except Exception:
                    logger.exception("Trace store subscriber failed for execution %s", stored.id)

    def get(self, execution_id: str) -> Execution | None:
        with self._lock:
            execution = self._executions.get(execution_id)
        return copy.deepcopy(execution) if execution is not None else None

    def delete(self, execution_id: str) -> bool:
        with self._lock:
            return self._executions.pop(execution_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._executions.clear()

    def all(self) -> list[Execution]:
        """Return every execution in insertion order."""
        with self._lock:
            executions = list(self._executions.values())
        return copy.deepcopy(executions)

    def find_all(self, options: QueryOptions | None = None, **filters: Any) -> list[Execution]:
        """Filter, sort and paginate executions.

        Executions without an `end_time` sort as 0 under `end_time` ordering,
        i.e. unfinished runs come out as the oldest.
        """

        if options is None:
            options = QueryOptions(**filters)
        elif filters:
            options = QueryOptions.model_validate({**options.model_dump(), **filters})

        with self._lock:
            results = list(self._executions.values())

        if options.status is not None:
            results = [e for e in results if e.status == options.status]
        if options.tags:
            wanted = set(options.tags)
            results = [e for e in results if wanted.intersection(e.tags)]
        if options.from_time is not None:
            results = [e for e in results if e.start_time >= options.from_time]
        if options.to_time is not None:
            results = [e for e in results if e.start_time <= options.to_time]

        results.sort(key=_sort_key(options.order_by), reverse=options.order_direction == "desc")

        start = options.offset
        end = None if options.limit is None else start + options.limit
        return copy.deepcopy(results[start:end])

    def find_by_status(self, status: Status) -> list[Execution]:
        return self.find_all(status=status)

    def find_by_tags(self, tags: list[str]) -> list[Execution]:
        return self.find_all(tags=tags)

    def find_by_time_range(self, from_time: int, to_time: int) -> list[Execution]:
        return self.find_all(from_time=from_time, to_time=to_time)

    def count(self) -> int:
        with self._lock:
            return len(self._executions)

    def count_by_status(self) -> dict[Status, int]:
        counts: dict[Status, int] = {status: 0 for status in STATUSES}
        with self._lock:
            for execution in self._executions.values():
                counts[execution.status] += 1
        return counts

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            token = next(self._subscriber_ids)
            self._subscribers[token] = callback

        def _unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return _unsubscribe

    def summary(self) -> dict[str, float | int]:
        """Aggregate execution metrics for dashboard display."""
        with self._lock:
            executions = list(self._executions.values())

        counts = {status: 0 for status in STATUSES}
        for execution in executions:
            counts[execution.status] += 1

        durations = sorted(e.duration for e in executions if e.duration is not None)
        steps = [step for execution in executions for step in execution.steps]
        summary: dict[str, float | int] = {
            "total_executions": len(executions),
            **{f"{status}_executions": count for status, count in counts.items()},
            "total_steps": len(steps),
            "failed_steps": sum(1 for step in steps if step.status == "failed"),
            "avg_duration_ms": 0.0,
            "p95_duration_ms": 0.0,
        }
        if durations:
            p95_index = max(0, int((len(durations) * 0.95) - 1))
            summary["avg_duration_ms"] = sum(durations) / len(durations)
            summary["p95_duration_ms"] = float(durations[p95_index])
        return summary


def _sort_key(order_by: str) -> Callable[[Execution], Any]:
    if order_by == "name":
        return lambda execution: _name_key(execution.name)
    if order_by == "end_time":
        return lambda execution: execution.end_time or 0
    return lambda execution: execution.start_time


def _name_key(name: str) -> tuple[str, str]:
    # strxfrm rejects embedded NULs; the raw name breaks ties between such names.
    return locale.strxfrm(name.replace("\x00", "")), name
