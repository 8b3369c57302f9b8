"""FastAPI entrypoint exposing read-only trace queries."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException, Query
from pydantic import ValidationError

from decision_xray.config import QueryOptions
from decision_xray.store.trace_store import InMemoryTraceStore
from decision_xray.types import to_dict


def create_app(store: InMemoryTraceStore | None = None) -> FastAPI:
    """Build the query API over `store` (a fresh in-memory store by default)."""

    trace_store = store if store is not None else InMemoryTraceStore()
    app = FastAPI(title="Decision X-Ray", version="0.1.0")
    app.state.trace_store = trace_store

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"status": "ok", "execution_count": trace_store.count()}

    @app.get("/executions")
    def executions(
        limit: int | None = None,
        offset: int = 0,
        status: str | None = None,
        tags: list[str] | None = Query(default=None),
        from_time: int | None = None,
        to_time: int | None = None,
        order_by: str = "start_time",
        order_direction: str = "desc",
    ) -> dict[str, Any]:
        try:
            options = QueryOptions(
                limit=limit,
                offset=offset,
                status=status,
                tags=tags,
                from_time=from_time,
                to_time=to_time,
                order_by=order_by,
                order_direction=order_direction,
            )
        except ValidationError as exc:
            raise HTTPException(
                status_code=422, detail=exc.errors(include_url=False, include_context=False)
            ) from exc

        items = trace_store.find_all(options)
        return {"items": [to_dict(execution) for execution in items], "total": trace_store.count()}

    @app.get("/executions/{execution_id}")
    def execution_detail(execution_id: str) -> dict[str, Any]:
        execution = trace_store.get(execution_id)
        if execution is None:
            raise HTTPException(status_code=404, detail=f"Execution not found: {execution_id}")
        return to_dict(execution)

    @app.get("/executions/{execution_id}/steps/{step_id}")
    def step_detail(execution_id: str, step_id: str) -> dict[str, Any]:
        execution = trace_store.get(execution_id)
        if execution is None:
            raise HTTPException(status_code=404, detail=f"Execution not found: {execution_id}")
        for step in execution.steps:
            if step.id == step_id:
                return to_dict(step)
        raise HTTPException(status_code=404, detail=f"Step not found: {step_id}")

    @app.get("/metrics")
    def metrics() -> dict[str, Any]:
        return {
            **trace_store.summary(),
            "by_status": trace_store.count_by_status(),
        }

    return app


app = create_app()
