"""GASSAPI: stateful HTTP flow execution for AI assistant tool servers."""

from .config import GassapiConfig, load_config
from .exceptions import (
    DuplicateFlowError,
    FlowTimeoutError,
    FlowValidationError,
    GassapiError,
    InterpolationWarning,
    StepExecutionError,
)
from .flows import (
    FlowConfig,
    FlowExecutor,
    FlowReport,
    FlowState,
    FlowStateManager,
    FlowStatus,
    FlowStep,
    HttpxStepRunner,
    StepResult,
)
from .interpolation import InterpolationContext, StatefulInterpolator
from .session import Scope, SessionRegistry, SessionState, SessionStore

__version__ = "0.1.0"
__all__ = [
    "DuplicateFlowError",
    "FlowConfig",
    "FlowExecutor",
    "FlowReport",
    "FlowState",
    "FlowStateManager",
    "FlowStatus",
    "FlowStep",
    "FlowTimeoutError",
    "FlowValidationError",
    "GassapiConfig",
    "GassapiError",
    "HttpxStepRunner",
    "InterpolationContext",
    "InterpolationWarning",
    "Scope",
    "SessionRegistry",
    "SessionState",
    "SessionStore",
    "StatefulInterpolator",
    "StepExecutionError",
    "StepResult",
    "load_config",
]
