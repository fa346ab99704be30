"""Per-session scoped variable state."""

from __future__ import annotations

import copy
import logging
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

from pydantic import BaseModel, Field

from .constants import DEFAULT_SESSION_MAX_IDLE

if TYPE_CHECKING:
    from .config import GassapiConfig

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Scope(str, Enum):
    """Variable namespaces held by a session."""

    INPUT = "input"
    ENV = "env"
    RUNTIME = "runtime"
    CONFIG = "config"
    HEADER = "header"
    STEP = "step"


class SessionState(BaseModel):
    """Scoped values for one client session."""

    session_id: str = Field(default_factory=lambda: f"session_{uuid.uuid4().hex[:12]}")
    flow_inputs: Dict[str, Any] = Field(default_factory=dict)
    environment: Dict[str, str] = Field(default_factory=dict)
    runtime_vars: Dict[str, Any] = Field(default_factory=dict)
    step_outputs: Dict[str, Any] = Field(default_factory=dict)
    config: Dict[str, Any] = Field(default_factory=dict)
    # keyed by step id, populated only while that step is in flight
    current_headers: Dict[str, Dict[str, str]] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    last_activity: datetime = Field(default_factory=_utcnow)

    def container(self, scope: Scope) -> Dict[str, Any]:
        """Return the mutable mapping backing ``scope``."""
        return {
            Scope.INPUT: self.flow_inputs,
            Scope.ENV: self.environment,
            Scope.RUNTIME: self.runtime_vars,
            Scope.CONFIG: self.config,
            Scope.HEADER: self.current_headers,
            Scope.STEP: self.step_outputs,
        }[Scope(scope)]


class SessionStore:
    """Owns a :class:`SessionState`; all mutation goes through this class.

    Values are opaque: nothing is validated until interpolation time.
    """

    def __init__(
        self,
        state: Optional[SessionState] = None,
        parent: Optional["SessionStore"] = None,
    ) -> None:
        self._state = state or SessionState()
        self._parent = parent
        self._flows: Dict[str, SessionStore] = {}

    @classmethod
    def from_config(
        cls, config: "GassapiConfig", environment: Optional[str] = None
    ) -> "SessionStore":
        """Seed ``env`` and ``config`` scopes from loaded configuration."""
        store = cls()
        store.update(Scope.ENV, config.environment_variables(environment))
        store.update(Scope.CONFIG, config.flows.model_dump())
        store.update(Scope.CONFIG, config.variables)
        return store

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session_id(self) -> str:
        return self._state.session_id

    @property
    def last_activity(self) -> datetime:
        return self._state.last_activity

    def touch(self) -> None:
        self._state.last_activity = _utcnow()
        if self._parent is not None:
            self._parent.touch()

    def open_flow(
        self, flow_id: str, inputs: Optional[Mapping[str, Any]] = None
    ) -> "SessionStore":
        """Create the view a single flow run reads and writes.

        The view shares ``env``, ``runtime`` and ``config`` with this session
        but owns its ``input``, ``step`` and ``header`` scopes, so flows running
        side by side never see each other's inputs or step outputs. Session
        level inputs act as defaults under ``inputs``. Reopening a flow id
        replaces that flow's previous view.
        """
        shared = self._state
        now = _utcnow()
        state = SessionState.model_construct(
            session_id=f"{shared.session_id}:{flow_id}",
            flow_inputs={**shared.flow_inputs, **(inputs or {})},
            environment=shared.environment,
            runtime_vars=shared.runtime_vars,
            config=shared.config,
            step_outputs={},
            current_headers={},
            created_at=now,
            last_activity=now,
        )
        view = SessionStore(state, parent=self)
        self._flows[flow_id] = view
        self.touch()
        return view

    def flow_view(self, flow_id: str) -> Optional["SessionStore"]:
        """The view of the latest run of ``flow_id``, if any."""
        return self._flows.get(flow_id)

    def get(self, scope: Scope, key: str, default: Any = None) -> Any:
        return self._state.container(scope).get(key, default)

    def set(self, scope: Scope, key: str, value: Any) -> None:
        self._state.container(scope)[key] = value
        self.touch()
        logger.debug(f"[{self.session_id}] set {Scope(scope).value}.{key}")

    def update(self, scope: Scope, values: Mapping[str, Any]) -> None:
        """Merge ``values`` into ``scope``."""
        if not values:
            return
        self._state.container(scope).update(values)
        self.touch()
        logger.debug(
            f"[{self.session_id}] set {len(values)} values in {Scope(scope).value}"
        )

    def delete(self, scope: Scope, key: str) -> None:
        self._state.container(scope).pop(key, None)

    def clear(self, scope: Scope) -> None:
        self._state.container(scope).clear()
        logger.debug(f"[{self.session_id}] cleared {Scope(scope).value}")

    def reset(self) -> None:
        """Drop everything flow related; environment and config survive."""
        for scope in (Scope.INPUT, Scope.RUNTIME, Scope.STEP, Scope.HEADER):
            self.clear(scope)
        self._flows.clear()
        self.touch()

    def snapshot(self) -> Mapping[str, Any]:
        """Read-only deep copy of the session for diagnostics."""
        data = copy.deepcopy(self._state.model_dump())
        return MappingProxyType(data)

    def info(self) -> Dict[str, Any]:
        state = self._state
        return {
            "session_id": state.session_id,
            "created_at": state.created_at.isoformat(),
            "last_activity": state.last_activity.isoformat(),
            "uptime": (_utcnow() - state.created_at).total_seconds(),
            "counts": {
                "environment": len(state.environment),
                "flow_inputs": len(state.flow_inputs),
                "step_outputs": len(state.step_outputs),
                "runtime_vars": len(state.runtime_vars),
                "config": len(state.config),
                "flows": len(self._flows),
            },
        }


class SessionRegistry:
    """Tracks live sessions and expires idle ones."""

    def __init__(self) -> None:
        self._sessions: Dict[str, SessionStore] = {}

    def create(self, state: Optional[SessionState] = None) -> SessionStore:
        store = SessionStore(state)
        self._sessions[store.session_id] = store
        logger.info(f"Created session {store.session_id}")
        return store

    def get(self, session_id: str) -> Optional[SessionStore]:
        return self._sessions.get(session_id)

    def remove(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._sessions)

    def cleanup_idle(self, max_idle: float = DEFAULT_SESSION_MAX_IDLE) -> int:
        """Remove sessions idle for longer than ``max_idle`` seconds."""
        cutoff = _utcnow() - timedelta(seconds=max_idle)
        stale = [sid for sid, s in self._sessions.items() if s.last_activity < cutoff]
        for sid in stale:
            del self._sessions[sid]
        if stale:
            logger.info(f"Removed {len(stale)} idle sessions")
        return len(stale)
