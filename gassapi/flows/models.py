"""Data models for flow definitions and flow execution state."""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..constants import DEFAULT_MAX_CONCURRENCY


class FlowModel(BaseModel):
    """Accepts both snake_case and the backend's camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FlowStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (FlowStatus.COMPLETED, FlowStatus.FAILED, FlowStatus.STOPPED)


def format_header_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class _RequestFields(FlowModel):
    """Request fields shared by endpoints and inline steps."""

    method: Optional[str] = None
    url: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None
    timeout: Optional[float] = None

    @field_validator("headers", mode="before")
    @classmethod
    def _parse_headers(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, str):
            try:
                value = json.loads(value) if value.strip() else {}
            except json.JSONDecodeError:
                return {}
            if not isinstance(value, dict):
                return {}
        if isinstance(value, dict):
            # YAML flow files yield ints and bools for values like 1 or true
            return {
                str(k): format_header_value(v) for k, v in value.items() if v is not None
            }
        return value

    @field_validator("body", mode="before")
    @classmethod
    def _parse_body(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        if value in ("", "null"):
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class Endpoint(_RequestFields):
    """A pre-registered request a step can reference by id."""

    id: str
    name: str = ""
    method: Optional[str] = "GET"


class FlowStep(_RequestFields):
    """One HTTP request definition within a flow."""

    model_config = ConfigDict(frozen=True)

    id: str = ""
    name: str = ""
    endpoint_id: Optional[str] = None
    expected_status: Optional[int] = None
    description: Optional[str] = None
    # output name -> path evaluated against {"response": <raw response>}
    outputs: Dict[str, str] = Field(default_factory=dict)


class FlowConfig(FlowModel):
    """Per-run execution settings."""

    model_config = ConfigDict(frozen=True)

    timeout: Optional[float] = None
    stop_on_error: bool = True
    parallel: bool = False
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    strict_urls: bool = True


def merge_flow_config(
    defaults: Optional[Mapping[str, Any]] = None,
    config: Optional[FlowConfig] = None,
    **overrides: Any,
) -> FlowConfig:
    """Layer configured defaults, a flow's own settings and per-run overrides.

    Only the fields a flow definition sets explicitly win over ``defaults``;
    overrides that are ``None`` are ignored.
    """
    values: Dict[str, Any] = {
        name: value
        for name, value in (defaults or {}).items()
        if name in FlowConfig.model_fields and value is not None
    }
    if config is not None:
        values.update({name: getattr(config, name) for name in config.model_fields_set})
    values.update({name: value for name, value in overrides.items() if value is not None})
    return FlowConfig(**values)


class StepRequest(FlowModel):
    """Materialized request actually handed to the step runner."""

    method: str
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None
    timeout: Optional[float] = None


class StepResponse(FlowModel):
    status: int
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Any = None
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class StepResult(FlowModel):
    """Outcome of one step attempt."""

    model_config = ConfigDict(frozen=True)

    step_id: str
    step_name: str = ""
    success: bool
    execution_time: float = 0.0
    request: Optional[StepRequest] = None
    response: Optional[StepResponse] = None
    error: Optional[str] = None


class FlowState(FlowModel):
    """Lifecycle record for one flow execution."""

    id: str
    status: FlowStatus = FlowStatus.IDLE
    current_step: int = 0
    total_steps: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    execution_time: Optional[float] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    results: List[StepResult] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class FlowValidationResult(FlowModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class FlowStats(FlowModel):
    active: int = 0
    completed: int = 0
    failed: int = 0
    stopped: int = 0
    total_executions: int = 0


class FlowReport(FlowModel):
    """Summary returned once a flow reaches a terminal state."""

    flow_id: str
    status: FlowStatus
    success: bool
    total_steps: int
    executed_steps: int
    failed_steps: int
    execution_time: float
    results: List[StepResult] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict)


class FlowDefinition(FlowModel):
    """A named, stored flow: its steps, settings and default inputs."""

    id: Optional[str] = None
    name: str = ""
    description: Optional[str] = None
    steps: List[FlowStep] = Field(default_factory=list)
    config: FlowConfig = FlowConfig()
    inputs: Dict[str, Any] = Field(default_factory=dict)
    endpoints: List[Endpoint] = Field(default_factory=list)

    @classmethod
    def from_backend(cls, data: Dict[str, Any]) -> "FlowDefinition":
        """Build a definition from the backend's ``flow`` payload."""
        flow_data = data.get("flow_data") or {}
        if isinstance(flow_data, str):
            try:
                flow_data = json.loads(flow_data)
            except json.JSONDecodeError:
                flow_data = {"steps": []}
        return cls(
            id=data.get("id"),
            name=data.get("name") or "",
            description=data.get("description"),
            steps=flow_data.get("steps") or [],
            config=flow_data.get("config") or {},
            inputs=parse_flow_inputs(data.get("flow_inputs")),
        )


def parse_flow_inputs(raw: Any) -> Dict[str, Any]:
    """Normalize flow input defaults.

    Accepts a mapping, a JSON string, a list of input definitions carrying
    ``defaultValue``/``default``, or ``key=value`` pairs separated by commas.
    """
    if not raw:
        return {}
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, list):
        inputs: Dict[str, Any] = {}
        for item in raw:
            if not isinstance(item, dict) or not item.get("name"):
                continue
            default = item.get("defaultValue", item.get("default"))
            if default is not None:
                inputs[item["name"]] = default
        return inputs
    if isinstance(raw, str):
        try:
            return parse_flow_inputs(json.loads(raw))
        except json.JSONDecodeError:
            pairs: Dict[str, Any] = {}
            for pair in raw.split(","):
                key, _, value = pair.partition("=")
                if key.strip():
                    pairs[key.strip()] = value.strip()
            return pairs
    return {}
