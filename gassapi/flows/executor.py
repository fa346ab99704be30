"""Flow execution engine.

Drives a validated list of steps to a terminal state, either strictly in
order or concurrently behind a counting admission gate, materializing every
request from the session state right before it is sent.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from ..exceptions import (
    FlowTimeoutError,
    FlowValidationError,
    InterpolationWarning,
    StepExecutionError,
)
from ..interpolation import (
    InterpolationContext,
    StatefulInterpolator,
    navigate_path,
    parse_scope,
    strip_braces,
)
from ..session import Scope, SessionStore
from .models import (
    Endpoint,
    FlowConfig,
    FlowReport,
    FlowState,
    FlowStatus,
    FlowStep,
    StepRequest,
    StepResponse,
    StepResult,
)
from .runner import StepRunner
from .state import FlowStateManager

logger = logging.getLogger(__name__)

HTTP_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"}

StepCallback = Callable[[StepResult], None]


@dataclass
class _FlowRun:
    """Bookkeeping for one in-progress ``run`` call."""

    flow_id: str
    config: FlowConfig
    step_ids: Set[str]
    session: SessionStore
    on_step_result: Optional[StepCallback] = None
    warnings: List[str] = field(default_factory=list)
    finished: Set[str] = field(default_factory=set)
    failed: bool = False

    def warn(self, warning: InterpolationWarning) -> None:
        message = str(warning)
        if message not in self.warnings:
            logger.warning(f"[{self.flow_id}] {message}")
            self.warnings.append(message)


class FlowExecutor:
    """Runs flows against a session using an injected step runner."""

    def __init__(
        self,
        runner: StepRunner,
        state_manager: FlowStateManager,
        session: SessionStore,
        endpoints: Optional[Iterable[Endpoint]] = None,
        debug: bool = False,
    ) -> None:
        self._runner = runner
        self._state_manager = state_manager
        self._session = session
        self._endpoints: Dict[str, Endpoint] = {ep.id: ep for ep in endpoints or []}
        self._debug = debug

    def stop(self, flow_id: str) -> Optional[FlowState]:
        """Request cooperative cancellation; in-flight requests finish."""
        return self._state_manager.stop_flow(flow_id)

    async def run(
        self,
        flow_id: str,
        steps: Sequence[FlowStep],
        config: Optional[FlowConfig] = None,
        initial_inputs: Optional[Mapping[str, Any]] = None,
        on_step_result: Optional[StepCallback] = None,
    ) -> FlowReport:
        """Execute ``steps`` and return the final report.

        Raises:
            FlowValidationError: The flow definition is invalid; nothing ran.
            DuplicateFlowError: ``flow_id`` is already running.
        """
        config = config or FlowConfig()
        steps = list(steps)

        validation = self._state_manager.validate_flow(steps, config)
        if not validation.valid:
            logger.warning(f"Flow {flow_id} rejected: {validation.errors}")
            raise FlowValidationError(validation.errors, validation.warnings)

        state = self._state_manager.create_flow_state(flow_id, steps)
        run = _FlowRun(
            flow_id=flow_id,
            config=config,
            step_ids={step.id for step in steps},
            session=self._session.open_flow(flow_id, initial_inputs),
            on_step_result=on_step_result,
            warnings=list(validation.warnings),
        )
        self._preflight_references(run, steps)

        self._state_manager.start_flow(flow_id)
        mode = "parallel" if config.parallel else "sequential"
        logger.info(f"Running flow {flow_id}: {len(steps)} steps, {mode}")
        started = time.perf_counter()

        try:
            if config.timeout is not None:
                await asyncio.wait_for(self._dispatch(run, steps), timeout=config.timeout)
            else:
                await self._dispatch(run, steps)
        except asyncio.TimeoutError:
            self._fail_pending(run, steps, FlowTimeoutError(flow_id, config.timeout))
        except Exception as exc:
            logger.exception(f"Flow {flow_id} aborted by unexpected error")
            run.failed = True
            self._state_manager.add_flow_error(flow_id, f"Flow aborted: {exc}")

        if state.status is FlowStatus.RUNNING:
            self._state_manager.complete_flow(flow_id, success=not run.failed)

        return FlowReport(
            flow_id=flow_id,
            status=state.status,
            success=state.status is FlowStatus.COMPLETED,
            total_steps=state.total_steps,
            executed_steps=len(state.results),
            failed_steps=sum(not result.success for result in state.results),
            execution_time=time.perf_counter() - started,
            results=list(state.results),
            errors=list(state.errors),
            warnings=run.warnings,
            variables=dict(state.variables),
        )

    # ------------------------------------------------------------------
    async def _dispatch(self, run: _FlowRun, steps: List[FlowStep]) -> None:
        if run.config.parallel:
            await self._run_parallel(run, steps)
        else:
            await self._run_sequential(run, steps)

    def _should_halt(self, run: _FlowRun) -> bool:
        if self._state_manager.is_stop_requested(run.flow_id):
            return True
        return run.config.stop_on_error and run.failed

    async def _run_sequential(self, run: _FlowRun, steps: List[FlowStep]) -> None:
        for step in steps:
            if self._should_halt(run):
                logger.info(f"Flow {run.flow_id} halted before step {step.id}")
                break
            await self._run_step(run, step)

    async def _run_parallel(self, run: _FlowRun, steps: List[FlowStep]) -> None:
        gate = asyncio.Semaphore(max(1, run.config.max_concurrency))

        async def _admit(step: FlowStep) -> None:
            async with gate:
                if self._should_halt(run):
                    return
                await self._run_step(run, step)

        await asyncio.gather(*(_admit(step) for step in steps))

    async def _run_step(self, run: _FlowRun, step: FlowStep) -> None:
        start = time.perf_counter()
        request: Optional[StepRequest] = None
        response: Optional[StepResponse] = None
        error: Optional[str] = None

        try:
            request = self._materialize(run, step)
            response = await self._runner.execute(
                request.method, request.url, request.headers, request.body, request.timeout
            )
        except StepExecutionError as exc:
            error = str(exc)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
        finally:
            run.session.delete(Scope.HEADER, step.id)

        if response is not None:
            run.session.set(Scope.STEP, step.id, response.model_dump())
            self._extract_outputs(run, step, response)
            error = self._check_status(step, response)

        self._record(
            run,
            StepResult(
                step_id=step.id,
                step_name=step.name,
                success=error is None,
                execution_time=time.perf_counter() - start,
                request=request,
                response=response,
                error=error,
            ),
        )

    def _record(self, run: _FlowRun, result: StepResult) -> None:
        run.finished.add(result.step_id)
        if not result.success:
            run.failed = True
            logger.error(f"[{run.flow_id}] step {result.step_id} failed: {result.error}")
            self._state_manager.add_flow_error(
                run.flow_id, f"Step {result.step_id} failed: {result.error}"
            )
        else:
            logger.debug(f"[{run.flow_id}] step {result.step_id} succeeded")
        self._state_manager.add_step_result(run.flow_id, result)
        if run.on_step_result is not None:
            run.on_step_result(result)

    def _fail_pending(
        self, run: _FlowRun, steps: List[FlowStep], error: FlowTimeoutError
    ) -> None:
        logger.error(str(error))
        run.failed = True
        self._state_manager.add_flow_error(run.flow_id, str(error))
        for step in steps:
            if step.id in run.finished:
                continue
            run.finished.add(step.id)
            result = StepResult(
                step_id=step.id, step_name=step.name, success=False, error=str(error)
            )
            self._state_manager.add_step_result(run.flow_id, result)
            if run.on_step_result is not None:
                run.on_step_result(result)

    # ------------------------------------------------------------------
    def _template(self, step: FlowStep) -> StepRequest:
        """Merge a step with its endpoint; values are still unresolved."""
        if step.endpoint_id:
            endpoint = self._endpoints.get(step.endpoint_id)
            if endpoint is None:
                raise StepExecutionError(f"Unknown endpoint: {step.endpoint_id}", step.id)
            return StepRequest(
                method=step.method or endpoint.method or "GET",
                url=step.url or endpoint.url or "",
                headers={**endpoint.headers, **step.headers},
                body=step.body if step.body is not None else endpoint.body,
                timeout=step.timeout or endpoint.timeout,
            )
        return StepRequest(
            method=step.method or "GET",
            url=step.url or "",
            headers=dict(step.headers),
            body=step.body,
            timeout=step.timeout,
        )

    def _unresolved(
        self, step: FlowStep, value: Any, context: InterpolationContext
    ) -> List[InterpolationWarning]:
        references = StatefulInterpolator.extract_object_references(value)
        checked = StatefulInterpolator.validate_references(references, context)
        return [
            InterpolationWarning(item["reference"], item["error"], step.id)
            for item in checked["invalid"]
        ]

    def _materialize(self, run: _FlowRun, step: FlowStep) -> StepRequest:
        template = self._template(step)
        context = InterpolationContext(
            state=run.session.state, current_step_id=step.id, debug=self._debug
        )

        for warning in self._unresolved(step, template.headers, context):
            run.warn(warning)
        headers = {
            key: StatefulInterpolator.interpolate(str(value), context)
            for key, value in template.headers.items()
        }
        run.session.set(Scope.HEADER, step.id, headers)

        url_problems = self._unresolved(step, template.url, context)
        if url_problems and run.config.strict_urls:
            details = ", ".join(f"{w.reference} ({w.reason})" for w in url_problems)
            raise StepExecutionError(f"Unresolved references in url: {details}", step.id)
        for warning in url_problems:
            run.warn(warning)
        url = StatefulInterpolator.interpolate(template.url, context)

        for warning in self._unresolved(step, template.body, context):
            run.warn(warning)
        body = StatefulInterpolator.interpolate_object(template.body, context)

        method = template.method.upper()
        if method not in HTTP_METHODS:
            raise StepExecutionError(f"Invalid HTTP method: {template.method}", step.id)
        if not url:
            raise StepExecutionError("URL is required", step.id)

        return StepRequest(
            method=method, url=url, headers=headers, body=body, timeout=template.timeout
        )

    def _preflight_references(self, run: _FlowRun, steps: List[FlowStep]) -> None:
        """Warn about references that cannot resolve before anything runs.

        References to other steps of this flow and to headers only become
        resolvable during execution and are skipped here.
        """
        context = InterpolationContext(state=run.session.state)
        for step in steps:
            try:
                template = self._template(step)
            except StepExecutionError:
                continue
            references = StatefulInterpolator.extract_object_references(
                [template.url, template.headers, template.body]
            )
            for reference in references:
                parts = strip_braces(reference).split(".")
                scope = parse_scope(parts[0].strip())
                if scope is Scope.HEADER:
                    continue
                if scope is Scope.STEP and len(parts) > 1 and parts[1].strip() in run.step_ids:
                    continue
                checked = StatefulInterpolator.validate_references([reference], context)
                for item in checked["invalid"]:
                    run.warn(InterpolationWarning(item["reference"], item["error"], step.id))

    # ------------------------------------------------------------------
    def _extract_outputs(
        self, run: _FlowRun, step: FlowStep, response: StepResponse
    ) -> None:
        if not step.outputs:
            return
        root = {"response": response.model_dump()}
        extracted: Dict[str, Any] = {}
        for name, path in step.outputs.items():
            parts = [p for p in path.split(".") if p]
            if not parts or parts[0] != "response":
                parts = ["response", *parts]
            try:
                extracted[name] = navigate_path(root, parts)
            except KeyError:
                run.warn(
                    InterpolationWarning(path, f"Output {name} not found in response", step.id)
                )
        if extracted:
            self._session.update(Scope.RUNTIME, extracted)
            self._state_manager.update_flow_variables(run.flow_id, extracted)

    @staticmethod
    def _check_status(step: FlowStep, response: StepResponse) -> Optional[str]:
        if step.expected_status is not None:
            if response.status != step.expected_status:
                return f"HTTP {response.status}: expected status {step.expected_status}"
            return None
        if not response.ok:
            return f"HTTP {response.status}"
        return None
