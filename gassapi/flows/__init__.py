"""Flow definitions, lifecycle tracking and execution."""

from __future__ import annotations

from .executor import FlowExecutor
from .models import (
    Endpoint,
    FlowConfig,
    FlowDefinition,
    FlowReport,
    FlowState,
    FlowStats,
    FlowStatus,
    FlowStep,
    FlowValidationResult,
    StepRequest,
    StepResponse,
    StepResult,
)
from .runner import DryRunStepRunner, HttpxStepRunner, StepRunner
from .state import FlowStateManager

__all__ = [
    "DryRunStepRunner",
    "Endpoint",
    "FlowConfig",
    "FlowDefinition",
    "FlowExecutor",
    "FlowReport",
    "FlowState",
    "FlowStateManager",
    "FlowStats",
    "FlowStatus",
    "FlowStep",
    "FlowValidationResult",
    "HttpxStepRunner",
    "StepRequest",
    "StepResponse",
    "StepResult",
    "StepRunner",
]
