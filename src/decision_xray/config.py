"""Configuration models for capture and querying."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from decision_xray.types import Execution, Status, Step

OrderBy = Literal["start_time", "end_time", "name"]
OrderDirection = Literal["asc", "desc"]

_ORDER_BY_VALUES = ("start_time", "end_time", "name")


class XRayConfig(BaseModel):
    """Configures one traced execution and its lifecycle hooks."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    execution_id: str | None = None
    execution_name: str = "Unnamed Execution"
    description: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    auto_save: bool = True
    on_step_start: Callable[[Step], None] | None = None
    on_step_complete: Callable[[Step], None] | None = None
    on_execution_complete: Callable[[Execution], None] | None = None


class QueryOptions(BaseModel):
    """Filter, sort and pagination options for `TraceStore.find_all`.

    Filters are ANDed together; `tags` matches executions carrying any of the
    given tags. Unknown `order_by`/`order_direction` values fall back to the
    defaults instead of failing. Negative `limit`/`offset` are rejected.
    """

    limit: int | None = Field(default=None, ge=0)
    offset: int = Field(default=0, ge=0)
    status: Status | None = None
    tags: list[str] | None = None
    from_time: int | None = None
    to_time: int | None = None
    order_by: OrderBy = "start_time"
    order_direction: OrderDirection = "desc"

    @field_validator("order_by", mode="before")
    @classmethod
    def _default_order_by(cls, value: Any) -> Any:
        return value if value in _ORDER_BY_VALUES else "start_time"

    @field_validator("order_direction", mode="before")
    @classmethod
    def _default_order_direction(cls, value: Any) -> Any:
        return value if value in ("asc", "desc") else "desc"
