import json

import pytest

from patchpilot.agents.code_agent import CodeAgent, UnknownTaskTypeError
from patchpilot.config_loader import AgentConfig
from patchpilot.state import PHASE_ORDER, Phase, ReasoningTrace, Task, TaskType

from conftest import ANALYZE, FIX, FIXED, GENERATE, ORIGINAL, PLAN, agent_replies


def _fix_task(**fields):
    return Task.create(TaskType.FIX, "Handle an empty list in average()", code=ORIGINAL,
                       file_path="src/stats.py", language="python", **fields)


def test_fix_walks_every_phase_in_order(make_gateway):
    agent = CodeAgent(make_gateway())
    trace = ReasoningTrace(task_id="t1")

    result = agent.reason(_fix_task(), trace)

    assert trace.phases() == list(PHASE_ORDER)
    assert [s.phase for s in result.steps] == list(PHASE_ORDER)
    assert result.success
    assert result.implementation.code == FIXED
    assert result.implementation.original_code == ORIGINAL
    assert result.validation.decision.rule == "small_fix"
    assert result.validation.decision.changed_lines == 2
    assert result.validation.summary == {"syntax": "✓", "lint": "✓", "security": "✓", "tests": "⊘"}


def test_analysis_and_plan_carry_usage(make_gateway):
    result = CodeAgent(make_gateway()).reason(_fix_task())

    assert result.analysis["complexity"] == "low"
    assert result.analysis["_cost"] > 0
    assert result.plan["steps"][0]["action"] == "Add guard clause"
    assert "parse_error" not in result.plan


def test_unparseable_analysis_and_plan_fall_back(make_gateway):
    gateway = make_gateway(agent_replies(**{ANALYZE: "Let me think about this...", PLAN: "1. fix it"}))

    result = CodeAgent(gateway).reason(_fix_task())

    assert result.analysis["parse_error"] is True
    assert result.analysis["complexity"] == "medium"
    assert result.analysis["required_changes"] == ["Handle an empty list in average()"]
    assert result.plan["parse_error"] is True
    assert [s["action"] for s in result.plan["steps"]] == ["Implement changes"]
    # Degraded analysis does not taint the candidate itself
    assert not result.validation.degraded


def test_degraded_implementation_is_flagged(make_gateway):
    gateway = make_gateway(agent_replies(**{FIX: f"```python\n{FIXED}```"}))

    result = CodeAgent(gateway).reason(_fix_task())

    assert result.implementation.degraded
    assert result.implementation.code == FIXED.strip()
    assert result.validation.degraded
    assert any(i.kind == "degraded" for i in result.validation.issues)


def test_unknown_task_type_errors_after_plan(make_gateway):
    agent = CodeAgent(make_gateway())
    task = Task.model_construct(id="t-bad", type="deploy", description="Ship it")
    trace = ReasoningTrace(task_id="t-bad")

    with pytest.raises(UnknownTaskTypeError):
        agent.reason(task, trace)

    assert trace.phases() == [Phase.START, Phase.ANALYZE, Phase.PLAN, Phase.ERROR]
    error = trace.records[-1].payload
    assert error["error_type"] == "UnknownTaskTypeError"
    assert error["after"] == "PLAN"


def test_missing_code_for_fix_errors(make_gateway):
    agent = CodeAgent(make_gateway())
    task = Task.create(TaskType.FIX, "Fix it")
    trace = ReasoningTrace(task_id=task.task_id)

    with pytest.raises(ValueError):
        agent.reason(task, trace)

    assert trace.last_phase == Phase.ERROR


def test_provider_failure_lands_in_the_trace(make_gateway):
    agent = CodeAgent(make_gateway(), provider="missing")
    trace = ReasoningTrace(task_id="t1")

    with pytest.raises(Exception):
        agent.reason(_fix_task(), trace)

    assert trace.phases() == [Phase.START, Phase.ERROR]
    assert trace.records[-1].payload["error_type"] == "ProviderNotConfiguredError"


def test_generated_code_with_eval_needs_approval(make_gateway):
    risky = json.dumps({"code": "def run(expr):\n    return eval(expr)\n", "explanation": "Evaluates input."})
    gateway = make_gateway(agent_replies(**{GENERATE: risky}))

    result = CodeAgent(gateway).reason(Task.create(TaskType.GENERATE, "Evaluate expressions", language="python"))

    assert not result.success
    assert result.validation.decision.rule == "security"
    assert result.validation.summary["security"] == "✗"
    assert any(i.kind == "security" for i in result.validation.issues)


def test_test_generation_is_auto_approved(make_gateway):
    result = CodeAgent(make_gateway()).reason(
        Task.create(TaskType.TEST, "Cover average()", code=ORIGINAL, language="python"))

    assert result.implementation.framework == "pytest"
    assert result.validation.decision.rule == "tests_only"
    assert result.validation.decision.auto_approved


def test_review_keeps_the_code_and_needs_approval(make_gateway):
    result = CodeAgent(make_gateway()).reason(
        Task.create(TaskType.REVIEW, "Review average()", code=ORIGINAL, language="python"))

    candidate = result.implementation
    assert candidate.code == ORIGINAL
    assert candidate.review["rating"] == 6
    assert result.validation.decision.changed_lines == 0
    assert result.validation.decision.rule == "default"


def test_failing_test_command_fails_validation(make_gateway):
    config = AgentConfig(run_tests=True, test_command="patchpilot-no-such-test-runner")
    result = CodeAgent(make_gateway(), config=config).reason(_fix_task())

    assert not result.success
    assert result.validation.summary["tests"] == "✗"


def test_task_can_opt_out_of_tests(make_gateway):
    config = AgentConfig(run_tests=True, test_command="patchpilot-no-such-test-runner")
    result = CodeAgent(make_gateway(), config=config).reason(_fix_task(run_tests=False))

    assert result.success
    assert not result.test_results.tests_applicable


def test_tool_registry(make_gateway):
    agent = CodeAgent(make_gateway())

    assert {t["name"] for t in agent.list_tools()} == {
        "check_syntax", "run_linter", "check_security", "scan_for_secrets", "run_tests",
    }
    assert not agent.execute_tool("deploy").success

    def explode():
        raise RuntimeError("boom")

    agent.register_tool("explode", explode)
    outcome = agent.execute_tool("explode")
    assert not outcome.success
    assert outcome.error == "boom"
