"""Tests for the flow state machine."""

import random
from datetime import datetime, timedelta, timezone

import pytest

from gassapi.exceptions import DuplicateFlowError
from gassapi.flows.models import FlowConfig, FlowStatus, FlowStep, StepResult
from gassapi.flows.state import FlowStateManager


def _steps(count: int = 2):
    return [
        FlowStep(id=f"s{i}", name=f"Step {i}", method="GET", url=f"http://x/{i}")
        for i in range(1, count + 1)
    ]


def _result(step_id: str, success: bool = True) -> StepResult:
    return StepResult(step_id=step_id, success=success)


def test_create_starts_idle():
    manager = FlowStateManager()
    state = manager.create_flow_state("f1", _steps(3))
    assert state.status is FlowStatus.IDLE
    assert state.total_steps == 3
    assert state.results == [] and state.errors == []


def test_duplicate_live_flow_is_rejected():
    manager = FlowStateManager()
    manager.create_flow_state("f1", _steps())
    with pytest.raises(DuplicateFlowError):
        manager.create_flow_state("f1", _steps())
    assert len(manager.get_active_flows()) == 1


def test_flow_id_can_be_reused_after_completion():
    manager = FlowStateManager()
    manager.create_flow_state("f1", _steps())
    manager.start_flow("f1")
    manager.complete_flow("f1", success=True)

    manager.create_flow_state("f1", _steps())
    assert manager.get_flow_state("f1").status is FlowStatus.IDLE


def test_full_lifecycle_moves_to_history():
    manager = FlowStateManager()
    manager.create_flow_state("f1", _steps())
    started = manager.start_flow("f1")
    assert started.status is FlowStatus.RUNNING
    assert started.start_time is not None

    manager.add_step_result("f1", _result("s1"))
    manager.add_flow_error("f1", "boom")
    manager.update_flow_variables("f1", {"a": 1})
    manager.update_flow_variables("f1", {"b": 2})
    done = manager.complete_flow("f1", success=False)

    assert done.status is FlowStatus.FAILED
    assert done.execution_time is not None and done.execution_time >= 0
    assert done.current_step == 1
    assert done.variables == {"a": 1, "b": 2}
    assert manager.get_flow_state("f1") is None
    assert manager.get_flow_history("f1")[-1] is done


def test_mutations_ignored_unless_running():
    manager = FlowStateManager()
    manager.create_flow_state("f1", _steps())
    assert manager.add_step_result("f1", _result("s1")) is None
    assert manager.complete_flow("f1", True) is None
    assert manager.stop_flow("f1") is None

    manager.start_flow("f1")
    assert manager.start_flow("f1") is None
    manager.stop_flow("f1")
    stopped = manager.get_flow_history("f1")[-1]
    assert stopped.status is FlowStatus.STOPPED

    assert manager.add_step_result("f1", _result("s2")) is None
    assert manager.add_flow_error("f1", "late") is None
    assert stopped.results == [] and stopped.errors == []
    assert manager.start_flow("missing") is None


def test_random_operation_sequences_follow_state_machine():
    allowed = {
        FlowStatus.IDLE: {FlowStatus.IDLE, FlowStatus.RUNNING},
        FlowStatus.RUNNING: {
            FlowStatus.RUNNING,
            FlowStatus.COMPLETED,
            FlowStatus.FAILED,
            FlowStatus.STOPPED,
        },
    }
    rng = random.Random(1234)
    for trial in range(200):
        manager = FlowStateManager()
        state = manager.create_flow_state("f", _steps(3))
        previous = state.status
        for _ in range(12):
            op = rng.choice(["start", "result", "error", "vars", "ok", "fail", "stop"])
            if op == "start":
                manager.start_flow("f")
            elif op == "result":
                manager.add_step_result("f", _result("s1"))
            elif op == "error":
                manager.add_flow_error("f", "e")
            elif op == "vars":
                manager.update_flow_variables("f", {"k": trial})
            elif op == "ok":
                manager.complete_flow("f", True)
            elif op == "fail":
                manager.complete_flow("f", False)
            else:
                manager.stop_flow("f")

            if previous.is_terminal:
                assert state.status is previous
            else:
                assert state.status in allowed[previous]
            previous = state.status


def test_cleanup_evicts_old_history_only():
    manager = FlowStateManager()
    for flow_id in ("old", "new"):
        manager.create_flow_state(flow_id, _steps())
        manager.start_flow(flow_id)
        manager.complete_flow(flow_id, True)
    manager.get_flow_history("old")[0].end_time = datetime.now(timezone.utc) - timedelta(
        hours=2
    )
    manager.create_flow_state("live", _steps())
    manager.start_flow("live")
    manager.get_flow_state("live").start_time = datetime.now(timezone.utc) - timedelta(
        days=3
    )

    removed = manager.cleanup(max_age=3600)

    assert removed == 1
    assert manager.get_flow_history("old") == []
    assert len(manager.get_flow_history("new")) == 1
    assert manager.get_flow_state("live").status is FlowStatus.RUNNING


def test_history_is_capped_per_flow():
    manager = FlowStateManager(history_limit=2)
    for _ in range(4):
        manager.create_flow_state("f", _steps())
        manager.start_flow("f")
        manager.complete_flow("f", True)
    assert len(manager.get_flow_history("f")) == 2


def test_flow_stats():
    manager = FlowStateManager()
    for flow_id, outcome in (("a", True), ("b", False), ("c", None)):
        manager.create_flow_state(flow_id, _steps())
        manager.start_flow(flow_id)
        if outcome is None:
            manager.stop_flow(flow_id)
        else:
            manager.complete_flow(flow_id, outcome)
    manager.create_flow_state("d", _steps())

    stats = manager.get_flow_stats()
    assert stats.active == 1
    assert stats.completed == 1
    assert stats.failed == 1
    assert stats.stopped == 1
    assert stats.total_executions == 4


def test_validate_flow_reports_all_problems():
    manager = FlowStateManager()
    steps = [
        FlowStep(id="a", name="A", method="GET", url="http://x"),
        FlowStep(id="a", name="A again", method="GET", url="http://x"),
        FlowStep(id="", name="no id", method="GET", url="http://x"),
        FlowStep(id="b", method="POST"),
        FlowStep(id="c", name="C"),
    ]
    result = manager.validate_flow(steps, FlowConfig(parallel=True, max_concurrency=0))

    assert not result.valid
    assert "Duplicate step ID: a" in result.errors
    assert "Step 3 must have an ID" in result.errors
    assert "Step b must have URL when method is specified" in result.errors
    assert "Step c must have either method or endpointId" in result.errors
    assert "maxConcurrency must be at least 1 for parallel flows" in result.errors
    assert "Step b should have a name" in result.warnings


def test_validate_flow_requires_steps():
    result = FlowStateManager().validate_flow([])
    assert not result.valid
    assert result.errors == ["Flow must have at least one step"]


def test_validate_flow_warnings_only():
    steps = [FlowStep(id="a", name="A", method="GET", url="http://x", timeout=0.1)]
    result = FlowStateManager().validate_flow(
        steps, FlowConfig(parallel=True, max_concurrency=50, timeout=0.5)
    )
    assert result.valid
    assert len(result.warnings) == 3


def test_export_and_import_round_trip():
    manager = FlowStateManager()
    manager.create_flow_state("f1", _steps())
    manager.start_flow("f1")
    manager.add_step_result("f1", _result("s1"))
    manager.complete_flow("f1", True)

    exported = manager.export_flow_state("f1")
    assert exported["status"] == "completed"
    assert "exported_at" in exported

    other = FlowStateManager()
    imported = other.import_flow_state(exported)
    assert imported.status is FlowStatus.COMPLETED
    assert imported.results[0].step_id == "s1"
    assert other.get_flow_history("f1") == [imported]
    assert other.get_active_flows() == []

    assert other.import_flow_state({}) is None
    assert other.import_flow_state({"id": "x", "status": "bogus"}) is None


def test_import_live_state_conflicts_with_active_flow():
    manager = FlowStateManager()
    manager.create_flow_state("f1", _steps())
    with pytest.raises(DuplicateFlowError):
        manager.import_flow_state({"id": "f1", "status": "running"})
