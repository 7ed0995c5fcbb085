"""
PATCHPILOT CLI — The Interface

Task commands:
  patchpilot run --task-file task.yaml           (task from YAML)
  patchpilot run --type fix -d "..." -c src.py   (task from flags)
  patchpilot batch --tasks-dir .patchpilot/tasks (parallel)
  patchpilot review-pr 42

Human decisions:
  patchpilot pending | approve <task> | reject <task>

Audit + utilities:
  patchpilot audit | stats | report | status | init
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from dotenv import load_dotenv
from loguru import logger
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table

from patchpilot.config_loader import PatchPilotConfig, load_config, validate_api_keys
from patchpilot.controller import Controller, TaskOutcome
from patchpilot.identity import BANNER, __codename__, __tagline__, __version__
from patchpilot.ledger import AuditEntry, AuditLedger, parse_time
from patchpilot.parallel import run_parallel
from patchpilot.providers import OllamaProvider
from patchpilot.state import Task, TaskType

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".patchpilot" / ".env")

app = typer.Typer(
    name="patchpilot",
    help=f"{__codename__} — {__tagline__}\nAutonomous code-change orchestration.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Banner
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_cyan]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Task commands
# ---------------------------------------------------------------------------

@app.command()
def run(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Working directory holding .patchpilot/"),
    task_file: Optional[Path] = typer.Option(None, "--task-file", "-f", help="Path to task YAML"),
    task_type: Optional[TaskType] = typer.Option(None, "--type", help="Task type when not using a YAML file"),
    description: Optional[str] = typer.Option(None, "--description", "-d", help="What to do"),
    code_file: Optional[Path] = typer.Option(None, "--code", "-c", help="Local file with the existing code"),
    file_path: Optional[str] = typer.Option(None, "--path", "-p", help="Path of the file in the hosted repository"),
    language: Optional[str] = typer.Option(None, "--language", "-l"),
    auto_apply: bool = typer.Option(False, "--auto-apply", help="Branch, commit, PR and merge when policy allows"),
    no_tests: bool = typer.Option(False, "--no-tests", help="Skip the test-suite check"),
    test_cmd: Optional[str] = typer.Option(None, "--test", "-t", help="Test command to run (e.g. 'pytest -q')"),
    provider: Optional[str] = typer.Option(None, "--provider", help="Completion provider to use"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run PATCHPILOT on a single task."""
    _print_banner()
    _configure_logging(verbose)

    repo = repo.resolve()
    config = _load(repo, provider=provider, test_cmd=test_cmd)

    if task_file and not task_file.exists():
        console.print(f"[red]Task file not found: {task_file}[/]")
        raise typer.Exit(1)
    if not task_file and not (task_type and description):
        console.print("[red]Specify --task-file, or --type and --description[/]")
        raise typer.Exit(1)

    with _open_ledger(repo, config) as ledger:
        if task_file:
            task = _load_task(task_file, ledger)
            if task is None:
                raise typer.Exit(1)
            if auto_apply or no_tests:
                task = task.model_copy(update={
                    "auto_apply": auto_apply or task.auto_apply,
                    "run_tests": task.run_tests and not no_tests,
                })
        else:
            task = Task.create(
                task_type,
                description,
                code=code_file.read_text() if code_file else None,
                file_path=file_path,
                language=language,
                auto_apply=auto_apply,
                run_tests=not no_tests,
            )

        controller = Controller.from_config(config, ledger, workdir=repo)
        try:
            outcome = controller.run(task)
        except Exception as e:
            console.print(f"[red]💥 {type(e).__name__}: {escape(str(e))}[/]")
            raise typer.Exit(1)

    _print_outcome(outcome)
    if outcome.status in ("error", "apply_failed"):
        raise typer.Exit(1)


@app.command()
def batch(
    repo: Path = typer.Option(Path("."), "--repo", "-r"),
    tasks_dir: Optional[Path] = typer.Option(None, "--tasks-dir", "-d", help="Directory of task YAMLs"),
    workers: int = typer.Option(3, "--workers", "-w", help="Max concurrent tasks"),
    auto_apply: bool = typer.Option(False, "--auto-apply", help="Apply every task that policy allows"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run multiple tasks in parallel."""
    _print_banner()
    _configure_logging(verbose)

    repo = repo.resolve()
    td = tasks_dir or (repo / ".patchpilot" / "tasks")

    if not td.exists():
        console.print(f"[red]Tasks directory not found: {td}[/]")
        raise typer.Exit(1)

    task_files = sorted(td.glob("*.yaml")) + sorted(td.glob("*.yml"))
    # Exclude example files
    task_files = [f for f in task_files if "example" not in f.name.lower()]

    if not task_files:
        console.print(f"[red]No task files found in {td}[/]")
        raise typer.Exit(1)

    console.print(f"[cyan]Found {len(task_files)} tasks in {td}[/]")
    config = _load(repo)
    with _open_ledger(repo, config) as ledger:
        tasks = []
        for tf in task_files:
            console.print(f"  [dim]{tf.name}[/]")
            task = _load_task(tf, ledger)
            if task is None:
                continue
            if auto_apply:
                task = task.model_copy(update={"auto_apply": True})
            tasks.append(task)

        skipped = len(task_files) - len(tasks)
        results = []
        if tasks:
            controller = Controller.from_config(config, ledger, workdir=repo)
            results = run_parallel(controller, tasks, max_workers=workers)

    failures = skipped + sum(1 for r in results if r.status in ("error", "apply_failed"))
    if failures:
        raise typer.Exit(1)


@app.command("review-pr")
def review_pr(
    number: int = typer.Argument(..., help="Pull request number"),
    repo: Path = typer.Option(Path("."), "--repo", "-r"),
    check_for: Optional[List[str]] = typer.Option(None, "--check", help="Focus area (repeatable)"),
    no_comment: bool = typer.Option(False, "--no-comment", help="Do not post the review on the PR"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Review a pull request and post the result as a comment."""
    _configure_logging(verbose)
    repo = repo.resolve()
    config = _load(repo)

    if not config.executor.configured:
        console.print("[red]No repository configured. Set executor.owner/repo or PATCHPILOT_GITHUB_OWNER/REPO.[/]")
        raise typer.Exit(1)

    with _open_ledger(repo, config) as ledger:
        controller = Controller.from_config(config, ledger, workdir=repo)
        try:
            result = controller.review_pull_request(number, check_for=check_for or None, comment=not no_comment)
        except Exception as e:
            console.print(f"[red]💥 {type(e).__name__}: {escape(str(e))}[/]")
            raise typer.Exit(1)

    review = result.review
    lines = [f"[bold]Summary:[/] {escape(review.summary)}", f"[bold]Rating:[/] {review.rating}/10"]
    for title, items in (("Issues", review.issues), ("Suggestions", review.suggestions),
                         ("Security", review.security_concerns)):
        if items:
            lines.append(f"\n[bold]{title}:[/]")
            lines += [f"  • {escape(str(i))}" for i in items]
    if result.degraded:
        lines.append("\n[yellow]⚠ Reply was not valid JSON; showing raw text.[/]")
    if result.comment_url:
        lines.append(f"\n[dim]Comment: {result.comment_url}[/]")

    console.print(Panel("\n".join(lines), title=f"PR #{number}: {escape(result.pull_request.title)}",
                        border_style="cyan"))


# ---------------------------------------------------------------------------
# Human decisions
# ---------------------------------------------------------------------------

@app.command()
def pending(
    repo: Path = typer.Option(Path("."), "--repo", "-r"),
):
    """List changes waiting for a human decision."""
    repo = repo.resolve()
    config = _load(repo)
    with _open_ledger(repo, config) as ledger:
        entries = ledger.pending_approvals()

    if not entries:
        console.print("[green]Nothing waiting for approval.[/]")
        return

    table = Table(title=f"Pending Approvals ({len(entries)})", border_style="yellow")
    table.add_column("Time", style="dim")
    table.add_column("Task")
    table.add_column("Type")
    table.add_column("File")
    table.add_column("Lines")
    table.add_column("Cost")

    for e in entries:
        table.add_row(
            e.timestamp[:19],
            e.task_id or "?",
            str(e.data.get("task_type", e.type)),
            str(e.data.get("file_path") or "—"),
            str(len(str(e.data.get("code", "")).splitlines())),
            f"${e.cost:.4f}",
        )
    console.print(table)


@app.command()
def approve(
    task_id: str = typer.Argument(..., help="Task to approve"),
    approver: str = typer.Option(..., "--by", help="Who is approving"),
    comment: str = typer.Option("", "--comment", "-m"),
    repo: Path = typer.Option(Path("."), "--repo", "-r"),
):
    """Record a human approval."""
    _record_decision(repo, task_id, approver, comment, approved=True)


@app.command()
def reject(
    task_id: str = typer.Argument(..., help="Task to reject"),
    approver: str = typer.Option(..., "--by", help="Who is rejecting"),
    reason: str = typer.Option("", "--reason", "-m"),
    repo: Path = typer.Option(Path("."), "--repo", "-r"),
):
    """Record a human rejection."""
    _record_decision(repo, task_id, approver, reason, approved=False)


@app.command()
def rollback(
    task_id: str = typer.Argument(..., help="Task whose branch should go"),
    branch: str = typer.Option(..., "--branch", "-b", help="Unmerged branch to delete"),
    reason: str = typer.Option(..., "--reason", "-m"),
    repo: Path = typer.Option(Path("."), "--repo", "-r"),
):
    """Delete an unmerged branch and record the rollback."""
    repo = repo.resolve()
    config = _load(repo)
    if not config.executor.configured:
        console.print("[red]No repository configured.[/]")
        raise typer.Exit(1)

    with _open_ledger(repo, config) as ledger:
        controller = Controller.from_config(config, ledger, workdir=repo)
        try:
            controller.rollback(task_id, branch, reason)
        except Exception as e:
            console.print(f"[red]💥 {type(e).__name__}: {escape(str(e))}[/]")
            raise typer.Exit(1)

    console.print(f"[yellow]↩ Deleted {branch} for {task_id}[/]")


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

@app.command()
def audit(
    repo: Path = typer.Option(Path("."), "--repo", "-r"),
    entry_type: Optional[str] = typer.Option(None, "--type", help="Filter by entry type"),
    task_id: Optional[str] = typer.Option(None, "--task", help="Show every entry for one task"),
    since: Optional[str] = typer.Option(None, "--since", help="ISO-8601 start time"),
    until: Optional[str] = typer.Option(None, "--until", help="ISO-8601 end time"),
    limit: int = typer.Option(50, "--limit", "-n"),
):
    """Browse the audit ledger."""
    repo = repo.resolve()
    config = _load(repo)

    with _open_ledger(repo, config) as ledger:
        if task_id:
            entries = ledger.by_task(task_id)
        elif entry_type:
            entries = ledger.by_type(entry_type, limit=limit)
        elif since or until:
            start, end = _period(since, until, days=7)
            entries = ledger.by_range(start, end)[:limit]
        else:
            entries = ledger.all(limit=limit)

    if not entries:
        console.print("[dim]No audit entries.[/]")
        return

    table = Table(title=f"Audit Entries ({len(entries)})", border_style="cyan")
    table.add_column("Time", style="dim")
    table.add_column("Type")
    table.add_column("Task")
    table.add_column("Agent", style="dim")
    table.add_column("Cost")
    table.add_column("Notes")

    for e in entries:
        table.add_row(e.timestamp[:19], e.type, e.task_id or "—", e.agent_name or "—",
                      f"${e.cost:.4f}", escape(_entry_notes(e)))
    console.print(table)


@app.command()
def stats(
    repo: Path = typer.Option(Path("."), "--repo", "-r"),
    since: Optional[str] = typer.Option(None, "--since", help="ISO-8601 start time"),
    until: Optional[str] = typer.Option(None, "--until", help="ISO-8601 end time"),
):
    """Aggregate statistics from the audit ledger."""
    repo = repo.resolve()
    config = _load(repo)
    with _open_ledger(repo, config) as ledger:
        s = ledger.stats(since, until)

    if s.total == 0:
        console.print("[dim]No audit entries yet.[/]")
        return

    table = Table(title="PATCHPILOT Statistics", border_style="cyan")
    table.add_column("Metric")
    table.add_column("Value")
    table.add_row("Total entries", str(s.total))
    table.add_row("Total cost", f"${s.total_cost:.4f}")
    table.add_row("Approved (human)", str(s.approved))
    table.add_row("Rejected (human)", str(s.rejected))
    table.add_row("Auto-approved", str(s.auto_approved))
    table.add_row("Errors", str(s.errors))
    if s.unpriced_entries:
        table.add_row("Unpriced usage", f"{s.unpriced_entries} entries / {s.unpriced_tokens:,} tokens")
    console.print(table)

    type_table = Table(title="By Type", border_style="dim")
    type_table.add_column("Type")
    type_table.add_column("Count")
    for name, count in sorted(s.by_type.items(), key=lambda x: -x[1]):
        type_table.add_row(name, str(count))
    console.print(type_table)


@app.command()
def report(
    repo: Path = typer.Option(Path("."), "--repo", "-r"),
    fmt: str = typer.Option("markdown", "--format", help="json or markdown"),
    days: int = typer.Option(7, "--days", help="Period length when --since is not given"),
    since: Optional[str] = typer.Option(None, "--since"),
    until: Optional[str] = typer.Option(None, "--until"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to a file instead of stdout"),
):
    """Render an audit report."""
    if fmt not in ("json", "markdown"):
        console.print(f"[red]Unknown format: {fmt}[/]")
        raise typer.Exit(1)

    repo = repo.resolve()
    config = _load(repo)
    start, end = _period(since, until, days)
    with _open_ledger(repo, config) as ledger:
        text = ledger.report(start, end, fmt=fmt)

    if output:
        output.write_text(text)
        console.print(f"[green]Report written to {output}[/]")
    else:
        typer.echo(text)


# ---------------------------------------------------------------------------
# Utilities
# ---------------------------------------------------------------------------

@app.command()
def status(
    repo: Path = typer.Option(Path("."), "--repo", "-r"),
):
    """Check PATCHPILOT configuration and readiness."""
    _print_banner()

    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")
    for key, available in keys.items():
        status_str = "[green]✓ Available[/]" if available else "[red]✗ Missing[/]"
        key_table.add_row(key, status_str)
    console.print(key_table)

    config = _load(repo.resolve())

    provider_table = Table(title="Providers", border_style="cyan")
    provider_table.add_column("Provider")
    provider_table.add_column("Model")
    provider_table.add_column("Status")
    for name in ("anthropic", "openai", "ollama"):
        cfg = getattr(config.providers, name)
        if not cfg.enabled:
            s = "[dim]disabled[/]"
        elif name == "ollama":
            healthy = OllamaProvider(cfg.model, base_url=cfg.base_url or "http://localhost:11434").is_available()
            s = "[green]✓ Reachable[/]" if healthy else "[red]✗ Unreachable[/]"
        else:
            s = "[green]✓ Ready[/]" if cfg.api_key() else "[red]✗ No key[/]"
        default = " [bold](default)[/]" if name == config.gateway.default_provider else ""
        provider_table.add_row(f"{name}{default}", cfg.model, s)
    console.print(provider_table)

    console.print("\n[bold]Gateway:[/]")
    console.print(f"  Rate limit:   {config.gateway.max_requests} req / {config.gateway.window_seconds:g}s per provider")
    console.print(f"  Timeout:      {config.gateway.request_timeout_seconds:g}s")
    console.print("\n[bold]Policy:[/]")
    console.print(f"  Max auto-approved lines: {config.policy.max_auto_lines}")
    console.print("\n[bold]Repository:[/]")
    if config.executor.configured:
        console.print(f"  {config.executor.owner}/{config.executor.repo} ({config.executor.merge_method} merge)")
    else:
        console.print("  [dim]Not configured — changes will not be applied[/]")


@app.command()
def init(
    repo: Optional[Path] = typer.Argument(None, help="Path to working directory"),
):
    """Initialize a .patchpilot directory."""
    _print_banner()

    repo = (repo or Path.cwd()).resolve()
    pp_dir = repo / ".patchpilot"
    pp_dir.mkdir(exist_ok=True)
    (pp_dir / "tasks").mkdir(exist_ok=True)
    (pp_dir / "logs").mkdir(exist_ok=True)

    config_path = pp_dir / "config.yaml"
    if not config_path.exists():
        config_path.write_text("""# PATCHPILOT overrides
# These merge with the built-in defaults.

# gateway:
#   default_provider: openai

# executor:
#   owner: my-org
#   repo: my-service

# agent:
#   test_command: "pytest -q"
""")

    task_path = pp_dir / "tasks" / "example.yaml"
    if not task_path.exists():
        task_path.write_text("""id: example-001
type: fix
description: "Handle an empty list in average()"
file_path: src/stats.py
language: python
code: |
  def average(values):
      return sum(values) / len(values)
auto_apply: false
""")

    gitignore = repo / ".gitignore"
    ignore_entries = [".patchpilot/logs/"]
    if gitignore.exists():
        content = gitignore.read_text()
        additions = [e for e in ignore_entries if e not in content]
        if additions:
            with open(gitignore, "a") as f:
                f.write("\n# PATCHPILOT\n")
                for e in additions:
                    f.write(f"{e}\n")
    else:
        gitignore.write_text("# PATCHPILOT\n" + "\n".join(ignore_entries) + "\n")

    console.print(f"[green]✅ Initialized PATCHPILOT in {pp_dir}[/]")
    console.print(f"  Config:  {config_path}")
    console.print(f"  Example: {task_path}")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _load_task(path: Path, ledger: AuditLedger) -> Task | None:
    """Load a task file. A file that cannot become a Task is recorded in the ledger and reported."""
    try:
        return Task.from_yaml(path)
    except ValidationError as e:
        problems = e.errors()
        unknown_type = any(err["loc"][:1] == ("type",) and err["type"] == "enum" for err in problems)
        error_type = "UnknownTaskTypeError" if unknown_type else "InvalidTaskError"
        message = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in problems)
    except (yaml.YAMLError, OSError, TypeError) as e:
        error_type = type(e).__name__
        message = str(e)

    ledger.log_error(path.stem, component="loader", message=f"{path.name}: {message}", error_type=error_type)
    logger.error(f"[LOADER] {path.name} rejected ({error_type}): {message}")
    console.print(f"[red]✗ {escape(path.name)}: {error_type} — {escape(message)}[/]")
    return None


def _load(repo: Path, provider: str | None = None, test_cmd: str | None = None) -> PatchPilotConfig:
    config = load_config(repo)
    if provider:
        config.gateway.default_provider = provider
    if test_cmd:
        config.agent.test_command = test_cmd
    return config


def _open_ledger(repo: Path, config: PatchPilotConfig) -> AuditLedger:
    path = Path(config.audit.log_file)
    if not path.is_absolute():
        path = repo / path
    return AuditLedger(path, max_entries_in_memory=config.audit.max_entries_in_memory)


def _period(since: str | None, until: str | None, days: int) -> tuple[datetime, datetime]:
    end = parse_time(until) if until else datetime.now(timezone.utc)
    start = parse_time(since) if since else end - timedelta(days=days)
    return start, end


def _record_decision(repo: Path, task_id: str, approver: str, note: str, approved: bool) -> None:
    repo = repo.resolve()
    config = _load(repo)
    with _open_ledger(repo, config) as ledger:
        controller = Controller.from_config(config, ledger, workdir=repo)
        if approved:
            controller.approve(task_id, approver, comment=note)
        else:
            controller.reject(task_id, approver, reason=note)
    verb = "[green]✓ Approved[/]" if approved else "[red]✗ Rejected[/]"
    console.print(f"{verb} {task_id} ({approver})")


def _entry_notes(e: AuditEntry) -> str:
    d = e.data
    if e.type == "error":
        return f"{d.get('component', '?')}: {d.get('message', '')}"[:60]
    if e.type == "approval":
        return f"{'approved' if e.approved else 'rejected'} by {d.get('approver', '?')}"
    if e.type == "approval_decision":
        return f"{d.get('rule', '?')}: {d.get('reason', '')}"[:60]
    if e.type == "commit":
        return f"{d.get('branch', '?')} PR #{d.get('pr_number') or '—'}{' merged' if d.get('merged') else ''}"
    if e.type == "reasoning_trace":
        return " → ".join(d.get("phases", []))
    if e.type == "safety_check":
        return "passed" if d.get("passed") else f"{len(d.get('issues', []))} issue(s)"
    if e.type == "code_generation":
        return f"{d.get('task_type', '?')} {d.get('file_path') or ''}".strip()
    return ""


def _print_outcome(outcome: TaskOutcome) -> None:
    result = outcome.result
    if result is not None:
        candidate = result.implementation
        if candidate.review:
            console.print(Panel(escape(str(candidate.review.get("summary", ""))), title="Review", border_style="cyan"))
        else:
            console.print(Panel(
                Syntax(candidate.code, candidate.language, line_numbers=True),
                title=f"Candidate ({candidate.language})",
                border_style="magenta",
            ))

        checks = Table(title="Verification", border_style="cyan")
        checks.add_column("Check")
        checks.add_column("Result")
        for name, mark in result.validation.summary.items():
            checks.add_row(name, mark)
        console.print(checks)

        for issue in result.validation.issues[:20]:
            console.print(f"  [yellow]• {issue.kind}:[/] {escape(issue.message)}")

    if outcome.decision:
        color = "green" if outcome.decision.auto_approved else "yellow"
        label = "Auto-approved" if outcome.decision.auto_approved else "Needs approval"
        console.print(f"\n[bold {color}]{label}[/] — {escape(outcome.decision.reason)}")

    if outcome.execution:
        ex = outcome.execution
        console.print(f"  Branch: {ex.branch or '—'}  Commits: {len(ex.commits)}  "
                      f"PR: {ex.pull_request.url if ex.pull_request else '—'}  Merged: {ex.merged}")
        for err in ex.errors:
            console.print(f"  [red]✗ {err.step}{' ' + err.path if err.path else ''}: {escape(err.message)}[/]")

    status_color = {"applied": "green", "approved": "green", "needs_approval": "yellow"}.get(outcome.status, "red")
    console.print(f"\n[bold {status_color}]Status: {outcome.status}[/]  [dim]{outcome.task_id} · ${outcome.cost:.4f}[/]")


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{escape(str(msg))}[/]", highlight=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{escape(str(msg))}[/]", highlight=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
