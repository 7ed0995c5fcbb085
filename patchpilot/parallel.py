"""
PATCHPILOT Parallel Runner

Runs several tasks at once through one Controller. Workers are threads,
so every task shares the same gateway (one rate limit, one usage total)
and the same ledger.

Tasks are not isolated from each other in the hosted repository: two
tasks touching the same file race, and the last write wins.
"""

from __future__ import annotations

import concurrent.futures

from loguru import logger
from rich.console import Console
from rich.table import Table

from patchpilot.controller import Controller, TaskOutcome
from patchpilot.state import Task

console = Console()


def _run_single_task(controller: Controller, task: Task) -> TaskOutcome:
    try:
        return controller.run(task)
    except Exception as e:
        # Already recorded in the ledger by the controller
        logger.error(f"[PARALLEL] {task.task_id} failed — {e}")
        return TaskOutcome(task_id=task.task_id, status="error", error=str(e))


def run_parallel(
    controller: Controller,
    tasks: list[Task],
    max_workers: int = 3,
    show_summary: bool = True,
) -> list[TaskOutcome]:
    """Run `tasks` concurrently. One failing task never stops the others."""
    if show_summary:
        _print_parallel_header(len(tasks), max_workers)

    results: list[TaskOutcome] = []

    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="patchpilot") as pool:
        future_to_task = {pool.submit(_run_single_task, controller, task): task for task in tasks}

        for future in concurrent.futures.as_completed(future_to_task):
            result = future.result()
            results.append(result)
            if show_summary:
                _log_task_completion(result)

    order = {task.task_id: i for i, task in enumerate(tasks)}
    results.sort(key=lambda r: order.get(r.task_id, len(order)))

    if show_summary:
        _print_parallel_summary(results)
    return results


# --- Helpers ---

_STATUS_COLOR = {
    "applied": "green",
    "approved": "green",
    "needs_approval": "yellow",
    "apply_failed": "red",
    "error": "red",
}


def _print_parallel_header(count: int, workers: int) -> None:
    console.print(f"\n[bold]⚡ PatchPilot Batch — {count} tasks, {workers} workers[/]")
    console.print("[dim]Tasks share one gateway rate limit and one audit ledger.[/]\n")


def _log_task_completion(result: TaskOutcome) -> None:
    color = _STATUS_COLOR.get(result.status, "red")
    console.print(f"  [{color}]{result.task_id}: {result.status}[/]")


def _print_parallel_summary(results: list[TaskOutcome]) -> None:
    table = Table(title="Batch Results", border_style="bright_green")
    table.add_column("Task")
    table.add_column("Status")
    table.add_column("Decision")
    table.add_column("PR")
    table.add_column("Cost")

    for r in results:
        color = _STATUS_COLOR.get(r.status, "red")
        decision = r.decision.rule if r.decision else "—"
        pr = "—"
        if r.execution and r.execution.pull_request:
            pr = r.execution.pull_request.url or f"#{r.execution.pull_request.number}"
        table.add_row(r.task_id, f"[{color}]{r.status}[/]", decision, str(pr)[:60], f"${r.cost:.4f}")

    console.print(table)

    total_cost = sum(r.cost for r in results)
    errors = sum(1 for r in results if r.status == "error")
    console.print(f"\n[bold]{len(results) - errors}/{len(results)} completed | Total cost: ${total_cost:.4f}[/]")
