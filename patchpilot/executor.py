"""
PATCHPILOT Execution Engine — Branch → Commit → PR → Merge

Materialises an approved change in the hosted repository. Each step is
attempted independently and failures are collected, not raised:

  branch fails       → stop, nothing else is attempted
  one file fails     → the remaining files are still committed
  PR fails           → recorded; no merge
  merge fails        → recorded; branch and commits are left as they are

There is no rollback. A half-applied change stays visible in
ExecutionResult.errors for a human to resolve.
"""

from __future__ import annotations

import re
import time
from typing import Callable, Literal

from loguru import logger
from pydantic import BaseModel, Field
from tenacity import Retrying, retry_if_result, stop_after_attempt, wait_fixed

from patchpilot.config_loader import ExecutorConfig
from patchpilot.scm import FileCommit, FileNotFoundInRepo, GitHubClient, PullRequest
from patchpilot.state import TaskType


# ---------------------------------------------------------------------------
# Requests + Results
# ---------------------------------------------------------------------------

class FileChange(BaseModel):
    path: str
    content: str
    description: str = ""
    rationale: str = ""
    risks: list[str] = Field(default_factory=list)


class ChangeRequest(BaseModel):
    changes: list[FileChange]
    description: str
    task_type: TaskType | str
    auto_merge: bool = False
    task_id: str | None = None


class StepError(BaseModel):
    step: Literal["branch", "commit", "pull_request", "merge"]
    path: str | None = None
    message: str


class ExecutionResult(BaseModel):
    task_id: str | None = None
    branch: str | None = None
    base: str | None = None
    commits: list[FileCommit] = Field(default_factory=list)
    pull_request: PullRequest | None = None
    merged: bool = False
    merge_sha: str | None = None
    errors: list[StepError] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------

_BRANCH_PREFIX = {
    "generate": "feature",
    "fix": "fix",
    "refactor": "refactor",
    "test": "test",
    "review": "review",
    "docs": "docs",
}

_COMMIT_TYPE = {
    "generate": "feat",
    "fix": "fix",
    "refactor": "refactor",
    "test": "test",
    "docs": "docs",
    "style": "style",
    "chore": "chore",
}

_PR_ICON = {
    "generate": "✨",
    "fix": "🐛",
    "refactor": "♻️",
    "test": "✅",
    "docs": "📝",
    "review": "🔍",
}


def _type_name(task_type: TaskType | str) -> str:
    return getattr(task_type, "value", task_type)


def slugify(text: str, limit: int = 50) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:limit] or "change"


def branch_name(task_type: TaskType | str, description: str, now: float | None = None) -> str:
    """`<prefix>/<slug>-<last 6 digits of the ms clock>`."""
    prefix = _BRANCH_PREFIX.get(_type_name(task_type), "ai")
    suffix = str(int((now if now is not None else time.time()) * 1000))[-6:]
    return f"{prefix}/{slugify(description)}-{suffix}"


def commit_message(task_type: TaskType | str, description: str, files: list[str] | None = None) -> str:
    kind = _COMMIT_TYPE.get(_type_name(task_type), "chore")
    file_list = f" ({', '.join(files)})" if files else ""
    return f"{kind}: {description}{file_list}\n\nGenerated by PatchPilot\n"


def pr_body(
    task_type: TaskType | str,
    description: str,
    changes: list[str] | None = None,
    rationale: str = "",
    risks: list[str] | None = None,
    auto_merge: bool = False,
    task_id: str | None = None,
) -> str:
    name = _type_name(task_type)
    body = f"{_PR_ICON.get(name, '🔧')} **{name.capitalize()}**: {description}\n\n"

    if task_id:
        body += f"**Task:** {task_id}\n\n"
    if rationale:
        body += f"## Rationale\n{rationale}\n\n"
    if changes:
        body += "## Changes\n" + "\n".join(f"- {c}" for c in changes) + "\n\n"
    if risks:
        body += "## Risks\n" + "\n".join(f"- ⚠️ {r}" for r in risks) + "\n\n"

    body += "---\n*Generated by PatchPilot*\n"
    if auto_merge:
        body += "Review Status: **Auto-approved by policy**\n"
    else:
        body += "Review Status: **Pending Human Approval**\n"
    return body


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ExecutionEngine:
    """
    Applies a ChangeRequest through a GitHubClient.

    No locking across tasks: two tasks writing the same path race and
    the last write wins.
    """

    def __init__(
        self,
        client: GitHubClient,
        config: ExecutorConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.config = config or ExecutorConfig()
        self._sleep = sleep

    def execute(self, request: ChangeRequest) -> ExecutionResult:
        result = ExecutionResult(task_id=request.task_id)
        task_type = _type_name(request.task_type)

        # 1. Branch
        name = branch_name(task_type, request.description)
        try:
            base = self.client.get_default_branch()
            ref = self.client.create_branch(name, base)
        except Exception as e:
            logger.error(f"[EXECUTOR] Branch {name} failed: {e}")
            result.errors.append(StepError(step="branch", message=str(e)))
            return result

        result.branch = ref.branch
        result.base = base

        # 2. One commit per file
        for change in request.changes:
            try:
                commit = self._commit(change, task_type, request.description, name)
            except Exception as e:
                logger.warning(f"[EXECUTOR] Commit of {change.path} failed: {e}")
                result.errors.append(StepError(step="commit", path=change.path, message=str(e)))
                continue
            result.commits.append(commit)
            logger.info(f"[EXECUTOR] Committed {change.path} ({commit.commit[:8]})")

        # 3. Pull request
        body = pr_body(
            task_type,
            request.description,
            changes=[f"`{c.path}`: {c.description}" if c.description else f"`{c.path}`" for c in request.changes],
            rationale="\n\n".join(c.rationale for c in request.changes if c.rationale),
            risks=[r for c in request.changes for r in c.risks],
            auto_merge=request.auto_merge,
            task_id=request.task_id,
        )
        try:
            pr = self.client.open_pull_request(
                title=f"[PatchPilot] {request.description}",
                body=body,
                head=name,
                base=base,
                draft=not request.auto_merge,
            )
        except Exception as e:
            logger.error(f"[EXECUTOR] PR for {name} failed: {e}")
            result.errors.append(StepError(step="pull_request", message=str(e)))
            return result

        result.pull_request = pr

        # 4. Merge
        if request.auto_merge:
            self._merge(pr, request, result)

        return result

    def _commit(self, change: FileChange, task_type: str, description: str, branch: str) -> FileCommit:
        sha = None
        try:
            sha = self.client.read_file(change.path, ref=branch).sha
        except FileNotFoundInRepo:
            logger.debug(f"[EXECUTOR] {change.path} is new")

        return self.client.write_file(
            change.path,
            change.content,
            commit_message(task_type, change.description or description, [change.path]),
            branch,
            sha=sha,
        )

    def _wait_for_mergeability(self, number: int) -> PullRequest:
        retrying = Retrying(
            stop=stop_after_attempt(max(1, self.config.mergeable_poll_attempts)),
            wait=wait_fixed(self.config.mergeable_poll_interval_seconds),
            retry=retry_if_result(lambda pr: pr.mergeable is None),
            retry_error_callback=lambda state: state.outcome.result(),
            sleep=self._sleep,
        )
        return retrying(self.client.get_pull_request, number)

    def _merge(self, pr: PullRequest, request: ChangeRequest, result: ExecutionResult) -> None:
        self._sleep(self.config.merge_delay_seconds)

        try:
            current = self._wait_for_mergeability(pr.number)
            if current.mergeable is None:
                logger.warning(f"[EXECUTOR] PR #{pr.number} mergeability still unknown, merging anyway")
            merge = self.client.merge_pull_request(
                pr.number,
                commit_title=f"{commit_message(request.task_type, request.description).splitlines()[0]} (#{pr.number})",
                method=self.config.merge_method,
            )
        except Exception as e:
            logger.error(f"[EXECUTOR] Merge of PR #{pr.number} failed: {e}")
            result.errors.append(StepError(step="merge", message=str(e)))
            return

        if not merge.merged:
            result.errors.append(StepError(step="merge", message=merge.message or "Merge was not performed"))
            return

        result.merged = True
        result.merge_sha = merge.sha
        logger.info(f"[EXECUTOR] Merged PR #{pr.number}")

