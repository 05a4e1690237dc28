from __future__ import annotations

from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from flashflow.logging import get_correlation_id

# Maximum nested JSON depth accepted in graph payloads
MAX_JSON_DEPTH = 20
# Maximum array items, e.g. nodes or edges of one graph
MAX_ARRAY_ITEMS = 1000
MAX_FLOW_ID_LENGTH = 128


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject deeply nested or oversized JSON payloads.

    Raises:
        ValueError: If depth or array length exceeds the maximum
    """
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code, e.g. validation_error")
    message: str
    details: Optional[Any] = None


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class ValidateRequest(BaseModel):
    # left untyped so the validator can report malformed shapes itself
    nodes: Any = None
    edges: Any = None

    @model_validator(mode="after")
    def _check_depth(self) -> "ValidateRequest":
        _validate_json_depth({"nodes": self.nodes, "edges": self.edges})
        return self


class FlowPayload(BaseModel):
    title: str = ""
    nodes: List[Dict[str, Any]] = Field(default_factory=list)
    edges: List[Dict[str, Any]] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_depth(self) -> "FlowPayload":
        _validate_json_depth({"nodes": self.nodes, "edges": self.edges})
        return self

    def to_workflow(self) -> Dict[str, Any]:
        return {"title": self.title, "nodes": self.nodes, "edges": self.edges}


class RunRequest(BaseModel):
    """Start a run from an inline graph or a saved flow."""

    graph: Optional[FlowPayload] = None
    flow_id: Optional[str] = Field(default=None, max_length=MAX_FLOW_ID_LENGTH)
    input: Union[str, Dict[str, Any], None] = None
    session_id: Optional[str] = Field(default=None, max_length=MAX_FLOW_ID_LENGTH)
    validate_graph: bool = True

    @field_validator("input")
    @classmethod
    def _check_input_depth(cls, value: Any) -> Any:
        if isinstance(value, dict):
            _validate_json_depth(value)
        return value

    @model_validator(mode="after")
    def _require_graph_source(self) -> "RunRequest":
        if self.graph is None and not self.flow_id:
            raise ValueError("either graph or flow_id is required")
        return self


class FlowResponse(BaseModel):
    flow_id: str
    workflow: Dict[str, Any]


class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool
