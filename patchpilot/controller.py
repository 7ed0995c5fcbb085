"""
PATCHPILOT Controller — The Brainstem

Pulls a task through the whole pipeline:

  1. Reason (analyze → plan → implement → test → validate)
  2. Record trace, output, safety check and approval decision
  3. If auto-approved and auto-apply was requested:
     branch → commit → PR → merge, and record the outcome
  4. Otherwise leave the task pending a human decision

The controller owns no clients of its own; the gateway, ledger and
execution engine are passed in.
"""

from __future__ import annotations

import traceback
from pathlib import Path
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel

from patchpilot.agents import BaseAgent
from patchpilot.agents.code_agent import CodeAgent
from patchpilot.config_loader import PatchPilotConfig
from patchpilot.executor import ChangeRequest, ExecutionEngine, ExecutionResult, FileChange
from patchpilot.gateway import CompletionGateway, Review
from patchpilot.ledger import AuditEntry, AuditLedger
from patchpilot.policy import ApprovalPolicy
from patchpilot.scm import GitHubClient, PullRequest
from patchpilot.state import ApprovalDecision, ReasoningResult, ReasoningTrace, Task, TaskType


class TaskOutcome(BaseModel):
    task_id: str
    status: Literal["needs_approval", "approved", "applied", "apply_failed", "error"]
    result: ReasoningResult | None = None
    decision: ApprovalDecision | None = None
    execution: ExecutionResult | None = None
    cost: float = 0.0
    error: str | None = None


class PullRequestReview(BaseModel):
    task_id: str
    pull_request: PullRequest
    review: Review
    degraded: bool = False
    comment_url: str | None = None
    cost: float = 0.0


class Controller:
    def __init__(
        self,
        config: PatchPilotConfig,
        gateway: CompletionGateway,
        ledger: AuditLedger,
        executor: ExecutionEngine | None = None,
        agent: BaseAgent | None = None,
    ):
        self.config = config
        self.gateway = gateway
        self.ledger = ledger
        self.executor = executor
        self.agent = agent or CodeAgent(
            gateway,
            config=config.agent,
            policy=ApprovalPolicy(max_auto_lines=config.policy.max_auto_lines),
        )

    @classmethod
    def from_config(
        cls,
        config: PatchPilotConfig,
        ledger: AuditLedger,
        workdir: Path | None = None,
    ) -> "Controller":
        """Build the gateway and, when a repository is configured, the execution engine."""
        gateway = CompletionGateway(config)

        executor = None
        if config.executor.configured:
            client = GitHubClient(
                owner=config.executor.owner,
                repo=config.executor.repo,
                token=config.executor.token(),
                base_url=config.executor.api_url,
            )
            executor = ExecutionEngine(client, config.executor)

        agent = CodeAgent(
            gateway,
            config=config.agent,
            policy=ApprovalPolicy(max_auto_lines=config.policy.max_auto_lines),
            workdir=workdir,
        )
        return cls(config, gateway, ledger, executor=executor, agent=agent)

    # -----------------------------------------------------------------------
    # Task pipeline
    # -----------------------------------------------------------------------

    def run(self, task: Task) -> TaskOutcome:
        """Reason about `task`, record everything, and apply it when policy allows.

        Exceptions from reasoning are recorded in the ledger and re-raised.
        """
        task_type = getattr(task.task_type, "value", task.task_type)
        logger.info(f"[CONTROLLER] {task.task_id}: {task_type} — {task.description}")

        trace = ReasoningTrace(task_id=task.task_id)
        try:
            result = self.agent.reason(task, trace)
        except Exception as e:
            self.ledger.log_trace(trace, self.agent.name)
            self.ledger.log_error(
                task.task_id,
                component=self.agent.name,
                message=str(e),
                stack=traceback.format_exc(),
                error_type=type(e).__name__,
            )
            raise

        self.ledger.log_trace(trace, self.agent.name)

        candidate = result.implementation
        decision = result.validation.decision
        cost, tokens, priced = self._run_usage(result)

        if task.task_type == TaskType.REVIEW:
            self.ledger.log_review(
                task.task_id, self.agent.name,
                review=candidate.review or {},
                file_path=task.file_path,
                tokens=tokens, cost=cost, priced=priced,
            )
        else:
            self.ledger.log_generation(
                task.task_id, self.agent.name,
                task_type=task_type,
                code=candidate.code,
                language=candidate.language,
                file_path=task.file_path,
                tokens=tokens, cost=cost, priced=priced,
                needs_approval=decision.needs_approval,
                degraded=candidate.degraded,
            )

        self.ledger.log_safety_check(
            task.task_id,
            passed=result.test_results.security_ok,
            issues=[i.model_dump() for i in result.test_results.security_issues],
            agent_name=self.agent.name,
        )
        self.ledger.log_decision(task.task_id, decision)

        outcome = TaskOutcome(
            task_id=task.task_id,
            status="needs_approval" if decision.needs_approval else "approved",
            result=result,
            decision=decision,
            cost=cost,
        )

        if self._should_apply(task, result):
            execution = self._apply(task, result)
            outcome.execution = execution
            outcome.status = "applied" if execution.ok else "apply_failed"

        logger.info(f"[CONTROLLER] {task.task_id} → {outcome.status} (${cost:.4f})")
        return outcome

    @staticmethod
    def _run_usage(result: ReasoningResult) -> tuple[float, int, bool]:
        candidate = result.implementation
        parts = [result.analysis, result.plan]
        cost = candidate.cost + sum(p.get("_cost", 0.0) for p in parts)
        tokens = candidate.tokens_used + sum(p.get("_tokens", 0) for p in parts)
        priced = candidate.priced and all(p.get("_priced", True) for p in parts)
        return cost, tokens, priced

    def _should_apply(self, task: Task, result: ReasoningResult) -> bool:
        if not task.auto_apply:
            return False

        validation = result.validation
        reasons = []
        if not validation.decision.auto_approved:
            reasons.append(f"policy requires approval ({validation.decision.rule})")
        if validation.degraded:
            reasons.append("model output was degraded")
        if not task.file_path:
            reasons.append("task has no file path")
        if self.executor is None:
            reasons.append("no repository configured")

        if reasons:
            logger.info(f"[CONTROLLER] Not applying {task.task_id}: {'; '.join(reasons)}")
            return False
        return True

    def _apply(self, task: Task, result: ReasoningResult) -> ExecutionResult:
        candidate = result.implementation
        request = ChangeRequest(
            changes=[FileChange(
                path=task.file_path,
                content=candidate.code,
                description=task.description,
                rationale=candidate.explanation,
                risks=list(result.plan.get("risks", [])),
            )],
            description=task.description,
            task_type=task.task_type,
            auto_merge=True,
            task_id=task.task_id,
        )

        execution = self.executor.execute(request)

        if execution.commits:
            self.ledger.log_commit(
                task.task_id,
                branch=execution.branch,
                files=[c.path for c in execution.commits],
                commits=[c.commit for c in execution.commits],
                pr_number=execution.pull_request.number if execution.pull_request else None,
                pr_url=execution.pull_request.url if execution.pull_request else None,
                merged=execution.merged,
            )
        self.ledger.log_execution(task.task_id, execution.model_dump(mode="json"))
        for error in execution.errors:
            self.ledger.log_error(
                task.task_id,
                component="executor",
                message=f"{error.step}{f' {error.path}' if error.path else ''}: {error.message}",
                error_type="StepError",
            )

        return execution

    # -----------------------------------------------------------------------
    # Pull request review
    # -----------------------------------------------------------------------

    def _client(self) -> GitHubClient:
        if self.executor is None:
            raise RuntimeError("No repository configured (set executor.owner and executor.repo)")
        return self.executor.client

    def review_pull_request(
        self,
        number: int,
        check_for: list[str] | None = None,
        language: str = "diff",
        comment: bool = True,
    ) -> PullRequestReview:
        client = self._client()
        task_id = Task.new_id()

        try:
            pr = client.get_pull_request(number)
            diff = client.get_pull_request_diff(number)
            result = self.gateway.review_code(
                diff or pr.body or "No code provided",
                language=language,
                context=f"PR #{number}: {pr.title}",
                check_for=check_for,
            )
        except Exception as e:
            self.ledger.log_error(task_id, component="review", message=str(e), error_type=type(e).__name__)
            raise

        review = result.value
        self.ledger.log_review(
            task_id, "code-reviewer",
            review=review.model_dump(),
            file_path=f"PR #{number}",
            tokens=result.completion.tokens_used,
            cost=result.completion.cost,
            priced=result.completion.priced,
        )

        comment_url = None
        if comment:
            try:
                comment_url = client.add_comment(number, review_comment(review)).url
            except Exception as e:
                self.ledger.log_error(task_id, component="review", message=str(e), error_type=type(e).__name__)
                raise

        return PullRequestReview(
            task_id=task_id,
            pull_request=pr,
            review=review,
            degraded=result.degraded,
            comment_url=comment_url,
            cost=result.completion.cost,
        )

    # -----------------------------------------------------------------------
    # Human decisions
    # -----------------------------------------------------------------------

    def _warn_if_unknown(self, task_id: str) -> None:
        if not self.ledger.by_task(task_id):
            logger.warning(f"[CONTROLLER] No ledger entries for {task_id}")

    def approve(self, task_id: str, approver: str, comment: str = "") -> AuditEntry:
        self._warn_if_unknown(task_id)
        logger.info(f"[CONTROLLER] {task_id} approved by {approver}")
        return self.ledger.log_approval(task_id, approved=True, approver=approver, comment=comment)

    def reject(self, task_id: str, approver: str, reason: str = "") -> AuditEntry:
        self._warn_if_unknown(task_id)
        logger.info(f"[CONTROLLER] {task_id} rejected by {approver}")
        return self.ledger.log_approval(task_id, approved=False, approver=approver, comment=reason)

    def rollback(self, task_id: str, branch: str, reason: str, actor: str = "human") -> AuditEntry:
        """Delete an unmerged branch on request. Never called by the pipeline itself."""
        client = self._client()
        try:
            client.delete_branch(branch)
        except Exception as e:
            self.ledger.log_error(task_id, component="rollback", message=str(e), error_type=type(e).__name__)
            raise
        return self.ledger.log_rollback(task_id, branch=branch, reason=reason, actor=actor)


def review_comment(review: Review) -> str:
    body = f"""## 🔍 PatchPilot Code Review

**Summary:** {review.summary}

**Rating:** {review.rating}/10
"""
    sections: list[tuple[str, list[Any]]] = [
        ("Issues Found", review.issues),
        ("Suggestions", review.suggestions),
        ("Security Concerns", review.security_concerns),
    ]
    for title, items in sections:
        if items:
            body += f"\n### {title}\n"
            body += "\n".join(f"{i}. {item}" for i, item in enumerate(items, 1)) + "\n"

    body += "\n---\n*Generated by PatchPilot*\n"
    return body
