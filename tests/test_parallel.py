from patchpilot.controller import Controller
from patchpilot.parallel import run_parallel
from patchpilot.state import Task, TaskType

from conftest import ORIGINAL


def test_batch_keeps_input_order_and_survives_failures(config, make_gateway, ledger):
    controller = Controller(config, make_gateway(), ledger)
    tasks = [
        Task.create(TaskType.FIX, "Guard empty input", code=ORIGINAL, language="python"),
        Task.create(TaskType.FIX, "No code to fix"),
        Task.create(TaskType.TEST, "Cover average()", code=ORIGINAL, language="python"),
        Task.create(TaskType.REFACTOR, "Tidy average()", code=ORIGINAL, language="python"),
    ]

    results = run_parallel(controller, tasks, max_workers=3, show_summary=False)

    assert [r.task_id for r in results] == [t.task_id for t in tasks]
    assert [r.status for r in results] == ["approved", "error", "approved", "needs_approval"]
    assert "no code" in results[1].error
    assert len(ledger.by_type("reasoning_trace")) == 4
    assert len(ledger.by_type("error")) == 1


def test_batch_shares_one_gateway(config, make_gateway, ledger):
    gateway = make_gateway()
    controller = Controller(config, gateway, ledger)
    tasks = [Task.create(TaskType.FIX, f"Fix {i}", code=ORIGINAL, language="python") for i in range(3)]

    run_parallel(controller, tasks, max_workers=3, show_summary=False)

    # analyze + plan + implement per task
    assert gateway.usage_summary()["request_count"] == 9
    assert gateway.limiter.usage("llm:stub") == 9
