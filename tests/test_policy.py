import pytest

from patchpilot.policy import ApprovalPolicy, count_changed_lines
from patchpilot.state import CandidateChange, SecurityIssue, TaskType, VerificationResult

ISSUE = SecurityIssue(severity="high", kind="dangerous-function", message="Use of eval()", line=3)


@pytest.fixture
def policy():
    return ApprovalPolicy(max_auto_lines=50)


def test_new_code_counts_every_line():
    assert count_changed_lines("a\nb\nc\n") == 3
    assert count_changed_lines("") == 0


def test_modification_counts_added_and_removed_lines():
    original = "a\nb\nc\n"
    assert count_changed_lines("a\nB\nc\n", original) == 2
    assert count_changed_lines("a\nb\nc\nd\n", original) == 1
    assert count_changed_lines(original, original) == 0


def test_security_issue_always_needs_approval(policy):
    decision = policy.decide(TaskType.TEST, 1, [ISSUE])

    assert decision.needs_approval
    assert not decision.auto_approved
    assert decision.rule == "security"


def test_size_boundary(policy):
    at_limit = policy.decide(TaskType.FIX, 50, [])
    over_limit = policy.decide(TaskType.FIX, 51, [])

    assert at_limit.auto_approved and at_limit.rule == "small_fix"
    assert over_limit.needs_approval and over_limit.rule == "size"


def test_large_test_generation_still_needs_approval(policy):
    assert policy.decide(TaskType.TEST, 120, []).rule == "size"


def test_test_generation_is_auto_approved(policy):
    decision = policy.decide(TaskType.TEST, 30, [])
    assert decision.auto_approved
    assert decision.rule == "tests_only"


@pytest.mark.parametrize("task_type", [TaskType.GENERATE, TaskType.REFACTOR, TaskType.REVIEW])
def test_other_types_need_approval(policy, task_type):
    decision = policy.decide(task_type, 5, [])
    assert decision.needs_approval
    assert decision.rule == "default"


def test_decisions_are_pure(policy):
    assert policy.decide(TaskType.FIX, 10, []) == policy.decide(TaskType.FIX, 10, [])


def test_threshold_is_configurable():
    assert ApprovalPolicy(max_auto_lines=5).decide(TaskType.FIX, 6, []).rule == "size"


def test_evaluate_diffs_against_the_original(policy):
    original = "\n".join(f"line {i}" for i in range(200)) + "\n"
    patched = original.replace("line 100\n", "line one hundred\n")
    candidate = CandidateChange(task_type=TaskType.FIX, language="python", code=patched, original_code=original)

    decision = policy.evaluate(candidate, VerificationResult())

    assert decision.changed_lines == 2
    assert decision.auto_approved
