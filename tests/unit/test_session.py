"""Tests for the session state store."""

from datetime import datetime, timedelta, timezone

import pytest

from gassapi.config import EnvironmentConfig, GassapiConfig
from gassapi.exceptions import ConfigError
from gassapi.session import Scope, SessionRegistry, SessionStore


def test_set_get_and_clear_each_scope():
    store = SessionStore()
    for scope in (Scope.INPUT, Scope.ENV, Scope.RUNTIME, Scope.CONFIG, Scope.STEP):
        store.set(scope, "key", "value")
        assert store.get(scope, "key") == "value"
        store.clear(scope)
        assert store.get(scope, "key") is None


def test_scope_accepts_plain_strings():
    store = SessionStore()
    store.set("runtime", "token", "abc")
    assert store.state.runtime_vars == {"token": "abc"}


def test_set_updates_last_activity():
    store = SessionStore()
    old = datetime.now(timezone.utc) - timedelta(hours=1)
    store.state.last_activity = old
    store.set(Scope.RUNTIME, "x", 1)
    assert store.last_activity > old


def test_snapshot_is_read_only_copy():
    store = SessionStore()
    store.set(Scope.INPUT, "user", {"name": "Ada"})
    snap = store.snapshot()

    with pytest.raises(TypeError):
        snap["flow_inputs"] = {}

    snap["flow_inputs"]["user"]["name"] = "Grace"
    assert store.get(Scope.INPUT, "user") == {"name": "Ada"}


def test_reset_keeps_environment_and_config():
    store = SessionStore()
    store.update(Scope.ENV, {"BASE": "http://x"})
    store.update(Scope.CONFIG, {"timeout": 5})
    store.set(Scope.INPUT, "a", 1)
    store.set(Scope.STEP, "s1", {"status": 200})
    store.reset()

    assert store.state.flow_inputs == {}
    assert store.state.step_outputs == {}
    assert store.get(Scope.ENV, "BASE") == "http://x"
    assert store.get(Scope.CONFIG, "timeout") == 5


def test_info_counts():
    store = SessionStore()
    store.update(Scope.ENV, {"A": "1", "B": "2"})
    info = store.info()
    assert info["session_id"] == store.session_id
    assert info["counts"]["environment"] == 2


def test_from_config_seeds_env_and_config():
    config = GassapiConfig(
        environments={"dev": EnvironmentConfig(variables={"BASE_URL": "http://dev"})},
        active_environment="dev",
        variables={"region": "eu"},
    )
    store = SessionStore.from_config(config)
    assert store.get(Scope.ENV, "BASE_URL") == "http://dev"
    assert store.get(Scope.CONFIG, "region") == "eu"
    assert store.get(Scope.CONFIG, "stop_on_error") is True

    with pytest.raises(ConfigError):
        SessionStore.from_config(config, environment="prod")


def test_registry_cleans_up_idle_sessions():
    registry = SessionRegistry()
    fresh = registry.create()
    stale = registry.create()
    stale.state.last_activity = datetime.now(timezone.utc) - timedelta(hours=2)

    removed = registry.cleanup_idle(max_idle=3600)

    assert removed == 1
    assert registry.get(fresh.session_id) is fresh
    assert registry.get(stale.session_id) is None
    assert len(registry) == 1


def test_open_flow_owns_inputs_steps_and_headers():
    store = SessionStore()
    store.set(Scope.INPUT, "region", "eu")
    store.set(Scope.ENV, "BASE", "http://x")

    first = store.open_flow("a", {"name": "ada"})
    second = store.open_flow("b", {"name": "grace", "region": "us"})
    first.set(Scope.STEP, "s1", {"status": 200})
    first.set(Scope.HEADER, "s1", {"X-Trace": "1"})

    assert first.get(Scope.INPUT, "name") == "ada"
    assert first.get(Scope.INPUT, "region") == "eu"
    assert second.get(Scope.INPUT, "region") == "us"
    assert second.get(Scope.STEP, "s1") is None
    assert second.state.current_headers == {}
    assert store.state.step_outputs == {}
    assert store.get(Scope.INPUT, "name") is None
    assert store.flow_view("a") is first
    assert store.info()["counts"]["flows"] == 2


def test_open_flow_shares_env_runtime_and_config():
    store = SessionStore()
    view = store.open_flow("a")

    view.set(Scope.RUNTIME, "token", "abc")
    store.set(Scope.ENV, "BASE", "http://x")
    store.set(Scope.CONFIG, "region", "eu")

    assert store.get(Scope.RUNTIME, "token") == "abc"
    assert view.get(Scope.ENV, "BASE") == "http://x"
    assert view.get(Scope.CONFIG, "region") == "eu"


def test_flow_view_activity_touches_session_and_reset_drops_views():
    store = SessionStore()
    view = store.open_flow("a")
    old = datetime.now(timezone.utc) - timedelta(hours=1)
    store.state.last_activity = old

    view.set(Scope.STEP, "s1", {"status": 200})

    assert store.last_activity > old
    store.reset()
    assert store.flow_view("a") is None
