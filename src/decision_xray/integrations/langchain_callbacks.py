"""LangChain callback handler that records runs as execution steps."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any
from uuid import UUID

from langchain_core.callbacks import BaseCallbackHandler
from langchain_core.documents import Document
from langchain_core.outputs import LLMResult

from decision_xray.capture.builder import ExecutionBuilder, StepBuilder
from decision_xray.errors import TraceValidationError
from decision_xray.types import CandidateEvaluation

_PREVIEW_CHARS = 320


class XRayCallbackHandler(BaseCallbackHandler):
    """Maps LLM, retriever and tool runs onto steps of an `ExecutionBuilder`.

    Each run opens a step on `*_start`, keyed by its `run_id`, and closes it on
    `*_end` or `*_error`. Retrieved documents become candidate evaluations
    ranked in retrieval order.
    """

    def __init__(self, builder: ExecutionBuilder) -> None:
        self.builder = builder
        self._open: dict[UUID, StepBuilder] = {}

    def on_llm_start(
        self,
        serialized: dict[str, Any],
        prompts: list[str],
        *,
        run_id: UUID,
        parent_run_id: UUID | None = None,
        tags: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        step = self.builder.step(_run_name(serialized, kwargs, "llm"), "llm")
        step.with_input({"prompts": list(prompts)})
        step.with_metadata(_run_metadata(parent_run_id, tags, metadata))
        self._open[run_id] = step

    def on_llm_end(self, response: LLMResult, *, run_id: UUID, **kwargs: Any) -> None:
        step = self._open.pop(run_id, None)
        if step is None:
            return
        texts = [generation.text for batch in response.generations for generation in batch]
        step.complete({"generations": texts}, {"output_count": len(texts)})

    def on_llm_error(self, error: BaseException, *, run_id: UUID, **kwargs: Any) -> None:
        self._fail(run_id, error)

    def on_retriever_start(
        self,
        serialized: dict[str, Any],
        query: str,
        *,
        run_id: UUID,
        parent_run_id: UUID | None = None,
        tags: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        step = self.builder.step(_run_name(serialized, kwargs, "retriever"), "search")
        step.with_input({"query": query})
        step.with_metadata(_run_metadata(parent_run_id, tags, metadata))
        self._open[run_id] = step

    def on_retriever_end(
        self, documents: Sequence[Document], *, run_id: UUID, **kwargs: Any
    ) -> None:
        step = self._open.pop(run_id, None)
        if step is None:
            return
        evaluations: list[CandidateEvaluation] = []
        seen_ids: set[str] = set()
        for rank, document in enumerate(documents, start=1):
            candidate_id = str(document.id or document.metadata.get("id") or f"doc-{rank}")
            # Chunks of one source document can share an id.
            if candidate_id in seen_ids:
                candidate_id = f"{candidate_id}#{rank}"
            seen_ids.add(candidate_id)
            evaluations.append(
                CandidateEvaluation(
                    id=candidate_id,
                    data={
                        "page_content": document.page_content[:_PREVIEW_CHARS],
                        "metadata": dict(document.metadata),
                    },
                    qualified=True,
                    rank=rank,
                )
            )
        try:
            step.with_evaluations(evaluations)
        except TraceValidationError as exc:
            step.fail(f"{type(exc).__name__}: {exc}")
            return
        step.complete(
            {"documents": len(evaluations)},
            {"output_count": len(evaluations)},
        )

    def on_retriever_error(self, error: BaseException, *, run_id: UUID, **kwargs: Any) -> None:
        self._fail(run_id, error)

    def on_tool_start(
        self,
        serialized: dict[str, Any],
        input_str: str,
        *,
        run_id: UUID,
        parent_run_id: UUID | None = None,
        tags: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        inputs: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        step = self.builder.step(_run_name(serialized, kwargs, "tool"), "custom")
        step.with_input(inputs if inputs is not None else {"raw": input_str})
        step.with_metadata(_run_metadata(parent_run_id, tags, metadata))
        self._open[run_id] = step

    def on_tool_end(self, output: Any, *, run_id: UUID, **kwargs: Any) -> None:
        step = self._open.pop(run_id, None)
        if step is None:
            return
        content = getattr(output, "content", output)
        step.complete({"preview": str(content)[:_PREVIEW_CHARS]})

    def on_tool_error(self, error: BaseException, *, run_id: UUID, **kwargs: Any) -> None:
        self._fail(run_id, error)

    def _fail(self, run_id: UUID, error: BaseException) -> None:
        step = self._open.pop(run_id, None)
        if step is not None:
            step.fail(f"{type(error).__name__}: {error}")


def _run_name(serialized: dict[str, Any] | None, kwargs: dict[str, Any], default: str) -> str:
    if kwargs.get("name"):
        return str(kwargs["name"])
    if serialized:
        if serialized.get("name"):
            return str(serialized["name"])
        ids = serialized.get("id")
        if isinstance(ids, list) and ids:
            return str(ids[-1])
    return default


def _run_metadata(
    parent_run_id: UUID | None,
    tags: list[str] | None,
    metadata: dict[str, Any] | None,
) -> dict[str, Any]:
    result: dict[str, Any] = dict(metadata or {})
    if parent_run_id is not None:
        result["parent_run_id"] = str(parent_run_id)
    if tags:
        result["tags"] = list(tags)
    return result
