"""Lifecycle tracking for flow executions.

A flow moves ``idle -> running -> completed | failed | stopped``. Terminal
states are absorbing: once reached, the state is archived to a per-flow
history list and never mutated again.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from ..constants import (
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_HISTORY_MAX_AGE,
    HIGH_CONCURRENCY_WARNING,
    LOW_TIMEOUT_WARNING,
)
from ..exceptions import DuplicateFlowError
from .models import (
    FlowConfig,
    FlowState,
    FlowStats,
    FlowStatus,
    FlowStep,
    FlowValidationResult,
    StepResult,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FlowStateManager:
    """Owns every :class:`FlowState`, live and archived."""

    def __init__(
        self,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        history_max_age: float = DEFAULT_HISTORY_MAX_AGE,
    ) -> None:
        self._active: Dict[str, FlowState] = {}
        self._history: Dict[str, List[FlowState]] = {}
        self._history_limit = history_limit
        self._history_max_age = history_max_age
        self._total_executions = 0

    # ------------------------------------------------------------------
    def create_flow_state(self, flow_id: str, steps: Sequence[FlowStep]) -> FlowState:
        """Register a new flow in ``idle``.

        Raises:
            DuplicateFlowError: ``flow_id`` already has a live entry.
        """
        if flow_id in self._active:
            raise DuplicateFlowError(flow_id)
        state = FlowState(id=flow_id, total_steps=len(steps))
        self._active[flow_id] = state
        self._total_executions += 1
        logger.debug(f"Created flow state {flow_id} with {len(steps)} steps")
        return state

    def get_flow_state(self, flow_id: str) -> Optional[FlowState]:
        return self._active.get(flow_id)

    def _running(self, flow_id: str, action: str) -> Optional[FlowState]:
        state = self._active.get(flow_id)
        if state is None or state.status is not FlowStatus.RUNNING:
            logger.debug(f"Ignoring {action} for flow {flow_id}: not running")
            return None
        return state

    def start_flow(self, flow_id: str) -> Optional[FlowState]:
        state = self._active.get(flow_id)
        if state is None or state.status is not FlowStatus.IDLE:
            logger.warning(f"Cannot start flow {flow_id}: not idle")
            return None
        state.status = FlowStatus.RUNNING
        state.start_time = _utcnow()
        state.current_step = 0
        logger.info(f"Flow {flow_id} started")
        return state

    def add_step_result(self, flow_id: str, result: StepResult) -> Optional[FlowState]:
        state = self._running(flow_id, "step result")
        if state is None:
            return None
        state.results.append(result)
        state.current_step += 1
        return state

    def add_flow_error(self, flow_id: str, error: str) -> Optional[FlowState]:
        state = self._running(flow_id, "error")
        if state is None:
            return None
        state.errors.append(error)
        return state

    def update_flow_variables(
        self, flow_id: str, variables: Dict[str, Any]
    ) -> Optional[FlowState]:
        state = self._running(flow_id, "variable update")
        if state is None:
            return None
        state.variables = {**state.variables, **variables}
        return state

    def is_stop_requested(self, flow_id: str) -> bool:
        """True once the flow can no longer accept new steps."""
        return self._running(flow_id, "stop check") is None

    def complete_flow(self, flow_id: str, success: bool) -> Optional[FlowState]:
        status = FlowStatus.COMPLETED if success else FlowStatus.FAILED
        return self._finish(flow_id, status)

    def stop_flow(self, flow_id: str) -> Optional[FlowState]:
        return self._finish(flow_id, FlowStatus.STOPPED)

    def _finish(self, flow_id: str, status: FlowStatus) -> Optional[FlowState]:
        state = self._running(flow_id, status.value)
        if state is None:
            return None
        state.status = status
        state.end_time = _utcnow()
        if state.start_time is not None:
            state.execution_time = (state.end_time - state.start_time).total_seconds()
        self._move_to_history(flow_id)
        logger.info(f"Flow {flow_id} {status.value} in {state.execution_time}s")
        return state

    def _move_to_history(self, flow_id: str) -> None:
        state = self._active.pop(flow_id, None)
        if state is not None:
            self._archive(state)

    def _archive(self, state: FlowState) -> None:
        history = self._history.setdefault(state.id, [])
        history.append(state)
        if len(history) > self._history_limit:
            del history[: len(history) - self._history_limit]

    # ------------------------------------------------------------------
    def get_active_flows(self) -> List[FlowState]:
        return list(self._active.values())

    def get_flow_history(self, flow_id: str) -> List[FlowState]:
        return list(self._history.get(flow_id, []))

    def cleanup(self, max_age: Optional[float] = None) -> int:
        """Evict archived states whose ``end_time`` is older than ``max_age`` seconds.

        Active flows are never touched. Returns the number of evicted entries.
        """
        max_age = self._history_max_age if max_age is None else max_age
        cutoff = _utcnow() - timedelta(seconds=max_age)
        removed = 0
        for flow_id in list(self._history):
            kept = [
                s for s in self._history[flow_id]
                if s.end_time is None or s.end_time >= cutoff
            ]
            removed += len(self._history[flow_id]) - len(kept)
            if kept:
                self._history[flow_id] = kept
            else:
                del self._history[flow_id]
        if removed:
            logger.info(f"Evicted {removed} flow states from history")
        return removed

    def get_flow_stats(self) -> FlowStats:
        archived = [s for history in self._history.values() for s in history]
        return FlowStats(
            active=len(self._active),
            completed=sum(s.status is FlowStatus.COMPLETED for s in archived),
            failed=sum(s.status is FlowStatus.FAILED for s in archived),
            stopped=sum(s.status is FlowStatus.STOPPED for s in archived),
            total_executions=self._total_executions,
        )

    # ------------------------------------------------------------------
    def validate_flow(
        self, steps: Sequence[FlowStep], config: Optional[FlowConfig] = None
    ) -> FlowValidationResult:
        errors: List[str] = []
        warnings: List[str] = []

        if not steps:
            errors.append("Flow must have at least one step")

        seen = set()
        for index, step in enumerate(steps or []):
            label = step.id or f"#{index + 1}"
            if not step.id or not step.id.strip():
                errors.append(f"Step {index + 1} must have an ID")
            elif step.id in seen:
                errors.append(f"Duplicate step ID: {step.id}")
            else:
                seen.add(step.id)

            if not step.name:
                warnings.append(f"Step {label} should have a name")
            if not step.method and not step.endpoint_id:
                errors.append(f"Step {label} must have either method or endpointId")
            if step.method and not step.url and not step.endpoint_id:
                errors.append(f"Step {label} must have URL when method is specified")
            if step.timeout is not None and step.timeout < LOW_TIMEOUT_WARNING:
                warnings.append(f"Step {label} timeout is very low ({step.timeout}s)")

        if config is not None:
            if config.parallel and config.max_concurrency < 1:
                errors.append("maxConcurrency must be at least 1 for parallel flows")
            if config.parallel and config.max_concurrency > HIGH_CONCURRENCY_WARNING:
                warnings.append("High concurrency may cause resource issues")
            if config.timeout is not None and config.timeout < LOW_TIMEOUT_WARNING:
                warnings.append("Flow timeout is very low (< 1 second)")

        return FlowValidationResult(valid=not errors, errors=errors, warnings=warnings)

    # ------------------------------------------------------------------
    def export_flow_state(self, flow_id: str) -> Optional[Dict[str, Any]]:
        """JSON-compatible copy of the live, or latest archived, state."""
        state = self._active.get(flow_id)
        if state is None:
            history = self._history.get(flow_id)
            state = history[-1] if history else None
        if state is None:
            return None
        data = state.model_dump(mode="json")
        data["exported_at"] = _utcnow().isoformat()
        return data

    def import_flow_state(self, data: Dict[str, Any]) -> Optional[FlowState]:
        """Restore an exported state; terminal states go straight to history."""
        if not data or not data.get("id"):
            return None
        payload = {k: v for k, v in data.items() if k != "exported_at"}
        try:
            state = FlowState.model_validate(payload)
        except ValidationError as exc:
            logger.warning(f"Rejected flow state import: {exc}")
            return None

        if state.status.is_terminal:
            self._archive(state)
        else:
            if state.id in self._active:
                raise DuplicateFlowError(state.id)
            self._active[state.id] = state
        self._total_executions += 1
        return state
