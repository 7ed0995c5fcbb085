import json

import pytest

from patchpilot.controller import Controller, review_comment
from patchpilot.executor import ExecutionEngine
from patchpilot.gateway import Review
from patchpilot.scm import SourceControlError
from patchpilot.state import Task, TaskType

from conftest import FIX, FIXED, GENERATE, ORIGINAL, REVIEW, agent_replies


@pytest.fixture
def controller(config, make_gateway, ledger, github):
    engine = ExecutionEngine(github, config.executor, sleep=lambda seconds: None)
    return Controller(config, make_gateway(), ledger, executor=engine)


def _fix_task(**fields):
    fields.setdefault("auto_apply", True)
    return Task.create(TaskType.FIX, "Handle an empty list in average()", code=ORIGINAL,
                       file_path="src/stats.py", language="python", **fields)


def test_small_fix_is_applied_and_merged(controller, ledger, github):
    outcome = controller.run(_fix_task())

    assert outcome.status == "applied"
    assert outcome.execution.merged
    assert outcome.cost > 0
    assert github.files[(outcome.execution.branch, "src/stats.py")] == FIXED
    assert outcome.execution.branch.startswith("fix/handle-an-empty-list-in-average")

    types = [e.type for e in ledger.by_task(outcome.task_id)]
    assert types == [
        "reasoning_trace", "code_generation", "safety_check", "approval_decision", "commit", "execution",
    ]
    commit = ledger.by_type("commit")[0]
    assert commit.data["merged"] is True
    assert commit.data["files"] == ["src/stats.py"]


def test_trace_is_recorded_in_full(controller, ledger):
    outcome = controller.run(_fix_task(auto_apply=False))

    trace = ledger.by_type("reasoning_trace")[0]
    assert trace.task_id == outcome.task_id
    assert trace.data["phases"] == ["START", "ANALYZE", "PLAN", "IMPLEMENT", "TEST", "VALIDATE", "COMPLETE"]


def test_large_generation_waits_for_a_human(config, make_gateway, ledger, github):
    code = "\n".join(f"value_{i} = {i}" for i in range(80)) + "\n"
    gateway = make_gateway(agent_replies(**{GENERATE: json.dumps({"code": code, "explanation": "constants"})}))
    engine = ExecutionEngine(github, config.executor, sleep=lambda seconds: None)
    controller = Controller(config, gateway, ledger, executor=engine)

    outcome = controller.run(Task.create(TaskType.GENERATE, "Add constants", file_path="consts.py",
                                         language="python", auto_apply=True))

    assert outcome.status == "needs_approval"
    assert outcome.decision.rule == "size"
    assert outcome.execution is None
    assert github.pulls == {}
    assert [e.task_id for e in ledger.pending_approvals()] == [outcome.task_id]


def test_degraded_output_is_never_applied(config, make_gateway, ledger, github):
    gateway = make_gateway(agent_replies(**{FIX: FIXED}))
    engine = ExecutionEngine(github, config.executor, sleep=lambda seconds: None)
    controller = Controller(config, gateway, ledger, executor=engine)

    outcome = controller.run(_fix_task())

    assert outcome.decision.auto_approved
    assert outcome.result.validation.degraded
    assert outcome.execution is None
    assert github.pulls == {}
    assert ledger.by_type("code_generation")[0].data["degraded"] is True


def test_nothing_is_applied_without_a_file_path(controller, github):
    task = Task.create(TaskType.FIX, "Fix it", code=ORIGINAL, language="python", auto_apply=True)

    outcome = controller.run(task)

    assert outcome.status == "approved"
    assert github.pulls == {}


def test_nothing_is_applied_without_an_executor(config, make_gateway, ledger):
    controller = Controller(config, make_gateway(), ledger)
    assert controller.run(_fix_task()).status == "approved"


def test_lint_warning_does_not_block_an_approved_fix(config, make_gateway, ledger, github, monkeypatch):
    monkeypatch.setattr("patchpilot.tools.lint.shutil.which", lambda name: None)
    noisy = "import os\n" + FIXED
    gateway = make_gateway(agent_replies(**{FIX: json.dumps({"fixed_code": noisy, "explanation": "Guard."})}))
    engine = ExecutionEngine(github, config.executor, sleep=lambda seconds: None)
    controller = Controller(config, gateway, ledger, executor=engine)

    outcome = controller.run(_fix_task())

    assert outcome.decision.auto_approved
    assert any("imported but unused" in i.message for i in outcome.result.validation.issues)
    assert outcome.status == "applied"
    assert outcome.execution.merged
    assert github.files[(outcome.execution.branch, "src/stats.py")] == noisy


def test_merge_failure_is_recorded_without_rollback(controller, ledger, github):
    github.merge_error = SourceControlError(405, "Pull Request is not mergeable")

    outcome = controller.run(_fix_task())

    assert outcome.status == "apply_failed"
    assert outcome.execution.pull_request is not None
    assert github.deleted == []
    errors = ledger.by_type("error")
    assert errors[0].data["component"] == "executor"
    assert "not mergeable" in errors[0].data["message"]
    assert ledger.by_type("rollback") == []


def test_reasoning_errors_are_recorded_and_raised(controller, ledger):
    task = Task.create(TaskType.FIX, "Fix it", file_path="src/stats.py")

    with pytest.raises(ValueError):
        controller.run(task)

    entries = ledger.by_task(task.task_id)
    assert [e.type for e in entries] == ["reasoning_trace", "error"]
    assert entries[0].data["phases"][-1] == "ERROR"
    assert entries[1].data["component"] == "code-agent"
    assert entries[1].data["error_type"] == "ValueError"
    assert "Traceback" in entries[1].data["stack"]


def test_approve_and_reject(controller, ledger):
    outcome = controller.run(Task.create(TaskType.REFACTOR, "Tidy", code=ORIGINAL, language="python"))
    assert outcome.status == "needs_approval"
    assert len(ledger.pending_approvals()) == 1

    entry = controller.approve(outcome.task_id, "alex", comment="looks good")

    assert entry.approved is True
    assert ledger.pending_approvals() == []
    assert controller.reject("unknown-task", "alex").approved is False


def test_review_pull_request_posts_a_comment(controller, ledger, github):
    github.open_pull_request("Add stats", "body", head="feature/stats", base="main")
    github.diff = "diff --git a/stats.py b/stats.py\n+def average(values): ...\n"

    review = controller.review_pull_request(1)

    assert review.review.rating == 6
    assert not review.degraded
    assert review.comment_url
    number, body = github.comments[0]
    assert number == 1
    assert "PatchPilot Code Review" in body
    assert "ZeroDivisionError" in body
    assert ledger.by_type("code_review")[0].data["file_path"] == "PR #1"


def test_degraded_pr_review_still_comments(config, make_gateway, ledger, github):
    gateway = make_gateway(agent_replies(**{REVIEW: "Seems fine overall."}))
    engine = ExecutionEngine(github, config.executor, sleep=lambda seconds: None)
    controller = Controller(config, gateway, ledger, executor=engine)
    github.open_pull_request("Add stats", "body", head="feature/stats", base="main")

    review = controller.review_pull_request(1, comment=False)

    assert review.degraded
    assert review.review.summary == "Seems fine overall."
    assert github.comments == []


def test_review_without_repository_fails(config, make_gateway, ledger):
    with pytest.raises(RuntimeError):
        Controller(config, make_gateway(), ledger).review_pull_request(1)


def test_rollback_deletes_the_branch(controller, ledger, github):
    github.create_branch("fix/leftover")

    entry = controller.rollback("t1", "fix/leftover", reason="merge failed")

    assert github.deleted == ["fix/leftover"]
    assert entry.type == "rollback"
    assert entry.data["reason"] == "merge failed"


def test_review_comment_lists_sections():
    body = review_comment(Review(summary="ok", issues=["a", "b"], rating=7))
    assert "### Issues Found\n1. a\n2. b" in body
    assert "Security Concerns" not in body
