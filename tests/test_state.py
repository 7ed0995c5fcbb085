import pytest

from patchpilot.state import PHASE_ORDER, Phase, ReasoningTrace, Task, TaskType, TraceOrderError


def test_trace_accepts_phases_in_order():
    trace = ReasoningTrace(task_id="t1")
    for phase in PHASE_ORDER:
        trace.append(phase, {"phase": phase.value})

    assert trace.phases() == list(PHASE_ORDER)
    assert trace.finished
    assert trace.records[2].payload == {"phase": "PLAN"}


def test_trace_rejects_skipped_phase():
    trace = ReasoningTrace(task_id="t1")
    trace.append(Phase.START)
    with pytest.raises(TraceOrderError):
        trace.append(Phase.PLAN)


def test_trace_rejects_repeated_phase():
    trace = ReasoningTrace(task_id="t1")
    trace.append(Phase.START)
    trace.append(Phase.ANALYZE)
    with pytest.raises(TraceOrderError):
        trace.append(Phase.ANALYZE)


def test_trace_must_begin_with_start():
    trace = ReasoningTrace(task_id="t1")
    with pytest.raises(TraceOrderError):
        trace.append(Phase.ERROR)
    with pytest.raises(TraceOrderError):
        trace.append(Phase.ANALYZE)


def test_error_ends_the_trace():
    trace = ReasoningTrace(task_id="t1")
    trace.append(Phase.START)
    trace.append(Phase.ANALYZE)
    trace.append(Phase.ERROR, {"error": "boom"})

    assert trace.finished
    assert trace.last_phase == Phase.ERROR
    with pytest.raises(TraceOrderError):
        trace.append(Phase.PLAN)
    with pytest.raises(TraceOrderError):
        trace.append(Phase.ERROR)


def test_records_are_a_copy():
    trace = ReasoningTrace(task_id="t1")
    trace.append(Phase.START)
    trace.records.clear()
    assert trace.phases() == [Phase.START]


def test_task_from_yaml_uses_aliases_and_code_file(tmp_path):
    (tmp_path / "stats.py").write_text("def f():\n    pass\n")
    task_file = tmp_path / "fix-stats.yaml"
    task_file.write_text(
        "type: fix\n"
        "description: Handle empty input\n"
        "file_path: src/stats.py\n"
        "code_file: stats.py\n"
    )

    task = Task.from_yaml(task_file)

    assert task.task_id == "fix-stats"
    assert task.task_type == TaskType.FIX
    assert task.code == "def f():\n    pass\n"
    assert task.auto_apply is False


def test_task_create_generates_id_and_is_frozen():
    task = Task.create("generate", "Add a greeting helper")

    assert task.task_id.startswith("task_")
    assert task.task_type == TaskType.GENERATE
    with pytest.raises(Exception):
        task.description = "something else"
