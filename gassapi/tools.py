"""Assistant-facing tools for running and inspecting flows.

Each tool takes a ``RunContext[FlowToolDeps]`` and returns a JSON document
``{"success": ..., "data" | "error": ...}`` so any agent can relay it as-is.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError
from pydantic_ai import RunContext, Tool

from .client import BackendClient
from .config import FlowDefaults, GassapiConfig
from .exceptions import BackendError, DuplicateFlowError, FlowValidationError
from .flows.executor import FlowExecutor
from .flows.models import Endpoint, FlowDefinition, merge_flow_config, parse_flow_inputs
from .flows.runner import DryRunStepRunner, HttpxStepRunner, StepRunner
from .flows.state import FlowStateManager
from .interpolation import InterpolationContext, StatefulInterpolator
from .session import Scope, SessionStore

logger = logging.getLogger(__name__)

SETTABLE_SCOPES = (Scope.INPUT, Scope.ENV, Scope.RUNTIME, Scope.CONFIG)


@dataclass
class FlowToolDeps:
    """Everything the flow tools need, owned by one client session."""

    session: SessionStore
    state_manager: FlowStateManager
    runner: StepRunner
    backend: Optional[BackendClient] = None
    endpoints: List[Endpoint] = field(default_factory=list)
    flow_defaults: FlowDefaults = field(default_factory=FlowDefaults)
    debug: bool = False

    async def aclose(self) -> None:
        """Close the HTTP clients held by the runner and the backend client."""
        close = getattr(self.runner, "aclose", None)
        if close is not None:
            await close()
        if self.backend is not None:
            await self.backend.aclose()


def create_tool_deps(
    config: GassapiConfig, environment: Optional[str] = None
) -> FlowToolDeps:
    """Wire session, state manager, runner and backend client from config."""
    backend = BackendClient.from_config(config) if config.get_token() else None
    return FlowToolDeps(
        session=SessionStore.from_config(config, environment),
        state_manager=FlowStateManager(
            history_limit=config.flows.history_limit,
            history_max_age=config.flows.history_max_age,
        ),
        runner=HttpxStepRunner(default_timeout=config.server.timeout),
        backend=backend,
        flow_defaults=config.flows,
        debug=config.debug,
    )


def _ok(data: Any, message: Optional[str] = None) -> str:
    payload: Dict[str, Any] = {"success": True, "data": data}
    if message:
        payload["message"] = message
    return json.dumps(payload, indent=2, default=str)


def _error(error: str, **details: Any) -> str:
    return json.dumps({"success": False, "error": error, **details}, indent=2, default=str)


async def _execute_flow(
    ctx: RunContext[FlowToolDeps],
    flow_id: str,
    steps: Optional[List[Dict[str, Any]]] = None,
    variables: Optional[Union[str, Dict[str, Any]]] = None,
    mode: Optional[str] = None,
    timeout: Optional[float] = None,
    stop_on_error: Optional[bool] = None,
    max_concurrency: Optional[int] = None,
    dry_run: bool = False,
) -> str:
    """Execute a flow sequentially or in parallel.

    Args:
        flow_id: Id of a stored flow, or a name for the inline ``steps``.
        steps: Inline step definitions; when omitted the flow is fetched.
        variables: Flow inputs as a JSON string, an object or ``k=v,k2=v2``.
        mode: ``sequential`` or ``parallel``.
        timeout: Whole-flow timeout in seconds.
        stop_on_error: Stop dispatching steps after the first failure.
        max_concurrency: Maximum concurrent steps in parallel mode.
        dry_run: Materialize requests without sending them.
    """
    deps = ctx.deps
    try:
        if steps is not None:
            definition = FlowDefinition(id=flow_id, name=flow_id, steps=steps)
        elif deps.backend is not None:
            definition = await deps.backend.get_flow(flow_id)
        else:
            return _error("No steps given and no backend configured")
    except ValidationError as exc:
        return _error(f"Invalid step definition: {exc}")
    except BackendError as exc:
        return _error(str(exc))

    config = merge_flow_config(
        deps.flow_defaults.model_dump(),
        definition.config,
        parallel=None if mode is None else mode == "parallel",
        timeout=timeout,
        stop_on_error=stop_on_error,
        max_concurrency=max_concurrency,
    )

    inputs = {**definition.inputs, **parse_flow_inputs(variables)}
    runner = DryRunStepRunner() if dry_run else deps.runner
    executor = FlowExecutor(
        runner,
        deps.state_manager,
        deps.session,
        endpoints=[*deps.endpoints, *definition.endpoints],
        debug=deps.debug,
    )

    try:
        report = await executor.run(flow_id, definition.steps, config, inputs)
    except FlowValidationError as exc:
        return _error(str(exc), errors=exc.errors, warnings=exc.warnings)
    except DuplicateFlowError as exc:
        return _error(str(exc))

    data = report.model_dump(mode="json")
    data["dry_run"] = dry_run
    message = "Flow executed successfully" if report.success else f"Flow {report.status.value}"
    return _ok(data, message)


async def _stop_flow(ctx: RunContext[FlowToolDeps], flow_id: str) -> str:
    """Stop a running flow; requests already in flight are allowed to finish."""
    state = ctx.deps.state_manager.stop_flow(flow_id)
    if state is None:
        return _error(f"Flow {flow_id} is not running")
    return _ok(state.model_dump(mode="json"), f"Flow {flow_id} stopped")


async def _get_flow_status(ctx: RunContext[FlowToolDeps], flow_id: str) -> str:
    """Return the live state of a flow, or its most recent finished run."""
    data = ctx.deps.state_manager.export_flow_state(flow_id)
    if data is None:
        return _error(f"Flow {flow_id} not found")
    return _ok(data)


async def _list_active_flows(ctx: RunContext[FlowToolDeps]) -> str:
    """List flows that have not reached a terminal state."""
    flows = ctx.deps.state_manager.get_active_flows()
    return _ok([state.model_dump(mode="json") for state in flows])


async def _get_flow_stats(ctx: RunContext[FlowToolDeps]) -> str:
    """Counts of active, completed, failed and stopped flows."""
    return _ok(ctx.deps.state_manager.get_flow_stats().model_dump())


async def _set_session_variables(
    ctx: RunContext[FlowToolDeps], scope: str, variables: Dict[str, Any]
) -> str:
    """Set variables in the ``input``, ``env``, ``runtime`` or ``config`` scope."""
    try:
        target = Scope(scope)
    except ValueError:
        target = None
    if target not in SETTABLE_SCOPES:
        allowed = ", ".join(s.value for s in SETTABLE_SCOPES)
        return _error(f"Scope must be one of: {allowed}")
    ctx.deps.session.update(target, variables)
    return _ok({"scope": target.value, "keys": sorted(variables)})


async def _get_variable_summary(ctx: RunContext[FlowToolDeps]) -> str:
    """Show which variables are available for interpolation."""
    context = InterpolationContext(state=ctx.deps.session.state)
    summary = StatefulInterpolator.build_variable_summary(context)
    return _ok({"session": ctx.deps.session.info(), "variables": summary})


async def _cleanup_flow_history(
    ctx: RunContext[FlowToolDeps], max_age: Optional[float] = None
) -> str:
    """Drop finished flow runs older than ``max_age`` seconds."""
    removed = ctx.deps.state_manager.cleanup(max_age)
    return _ok({"removed": removed})


FLOW_TOOLS = [
    Tool(
        _execute_flow,
        takes_ctx=True,
        name="execute_flow",
        description="Execute a flow with sequential or parallel endpoint testing.",
    ),
    Tool(_stop_flow, takes_ctx=True, name="stop_flow", description="Stop a running flow."),
    Tool(
        _get_flow_status,
        takes_ctx=True,
        name="get_flow_status",
        description="Get the execution state of a flow.",
    ),
    Tool(
        _list_active_flows,
        takes_ctx=True,
        name="list_active_flows",
        description="List flows that are still running.",
    ),
    Tool(
        _get_flow_stats,
        takes_ctx=True,
        name="get_flow_stats",
        description="Get flow execution statistics.",
    ),
    Tool(
        _set_session_variables,
        takes_ctx=True,
        name="set_session_variables",
        description="Set session variables used for {{scope.name}} interpolation.",
    ),
    Tool(
        _get_variable_summary,
        takes_ctx=True,
        name="get_variable_summary",
        description="List the variables available for interpolation.",
    ),
    Tool(
        _cleanup_flow_history,
        takes_ctx=True,
        name="cleanup_flow_history",
        description="Remove old finished flow runs from history.",
    ),
]
