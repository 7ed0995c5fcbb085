"""
Code agent.

Turns a Task into one CandidateChange and the evidence needed to decide
whether it can ship without a human: a verification bundle and an
approval decision.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Literal

from loguru import logger
from pydantic import BaseModel, Field

from patchpilot import prompts
from patchpilot.agents import BaseAgent
from patchpilot.config_loader import AgentConfig
from patchpilot.gateway import CompletionGateway, HelperResult
from patchpilot.policy import ApprovalPolicy
from patchpilot.state import (
    CandidateChange,
    SecurityIssue,
    Task,
    TaskType,
    TestRunResult,
    Validation,
    ValidationIssue,
    VerificationResult,
)
from patchpilot.structured import parse_structured
from patchpilot.tools import check_security, check_syntax, run_linter, run_tests, scan_for_secrets


class UnknownTaskTypeError(Exception):
    """A task type with no implement handler."""


def _type_value(task: Task) -> str:
    return getattr(task.task_type, "value", str(task.task_type))


# ---------------------------------------------------------------------------
# Output Schemas
# ---------------------------------------------------------------------------

class Analysis(BaseModel):
    task_type: str
    complexity: Literal["low", "medium", "high"] = "medium"
    estimated_lines: int = 100
    language: str | None = None
    required_changes: list[str] = Field(default_factory=list)
    potential_issues: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)


class PlanStep(BaseModel):
    order: int
    action: str
    tool: str = ""
    rationale: str = ""


class Plan(BaseModel):
    steps: list[PlanStep] = Field(min_length=1)
    estimated_duration: str = ""
    risks: list[str] = Field(default_factory=list)
    rollback_strategy: str = ""


# ---------------------------------------------------------------------------
# Agent Implementation
# ---------------------------------------------------------------------------

class CodeAgent(BaseAgent):
    name = "code-agent"

    def __init__(
        self,
        gateway: CompletionGateway,
        provider: str | None = None,
        config: AgentConfig | None = None,
        policy: ApprovalPolicy | None = None,
        workdir: Path | None = None,
    ):
        super().__init__(gateway, provider or (config.provider if config else None))
        self.config = config or AgentConfig()
        self.policy = policy or ApprovalPolicy()
        self.workdir = workdir

        self.register_tool("check_syntax", check_syntax, "Parse code for the given language")
        self.register_tool("run_linter", run_linter, "Lint code with ruff/flake8 or built-in checks")
        self.register_tool("check_security", check_security, "Pattern-based security scan")
        self.register_tool("scan_for_secrets", scan_for_secrets, "Find credential-shaped strings")
        self.register_tool("run_tests", run_tests, "Run the configured test command")

    def _language(self, task: Task) -> str:
        return task.language or self.config.default_language

    # -- Analyze ------------------------------------------------------------

    def analyze(self, task: Task) -> dict[str, Any]:
        system, prompt = prompts.analyze_task(_type_value(task), task.description, task.file_path, task.code)
        completion = self.gateway.complete(
            "analyze", prompt, system_prompt=system, temperature=0.3, max_tokens=1024, provider=self.provider,
        )
        outcome = parse_structured(
            completion.text,
            Analysis,
            lambda raw: Analysis(
                task_type=_type_value(task),
                language=task.language or self.config.default_language,
                required_changes=[task.description],
            ),
            label="analysis",
        )

        analysis = outcome.value.model_dump()
        if outcome.degraded:
            analysis["parse_error"] = True
        analysis["_cost"] = completion.cost
        analysis["_tokens"] = completion.tokens_used
        analysis["_priced"] = completion.priced

        logger.info(
            f"[AGENT] Analysis — complexity={analysis['complexity']}, "
            f"~{analysis['estimated_lines']} lines"
        )
        return analysis

    # -- Plan ---------------------------------------------------------------

    def plan(self, task: Task, analysis: dict[str, Any]) -> dict[str, Any]:
        visible = {k: v for k, v in analysis.items() if not k.startswith("_")}
        system, prompt = prompts.plan_task(visible)
        completion = self.gateway.complete(
            "plan", prompt, system_prompt=system, temperature=0.3, max_tokens=2048, provider=self.provider,
        )
        outcome = parse_structured(
            completion.text,
            Plan,
            lambda raw: Plan(
                steps=[PlanStep(order=1, action="Implement changes", tool="write_file", rationale="Execute task")],
                estimated_duration="10 minutes",
                rollback_strategy="Revert to previous version",
            ),
            label="plan",
        )

        plan = outcome.value.model_dump()
        if outcome.degraded:
            plan["parse_error"] = True
        plan["_cost"] = completion.cost
        plan["_tokens"] = completion.tokens_used
        plan["_priced"] = completion.priced

        logger.info(f"[AGENT] Plan ready — {len(plan['steps'])} steps, {len(plan['risks'])} risks")
        return plan

    # -- Implement ----------------------------------------------------------

    def implement(self, task: Task, plan: dict[str, Any]) -> CandidateChange:
        handler = self.handlers.get(task.task_type)
        if handler is None:
            raise UnknownTaskTypeError(f"Unknown task type: {task.task_type}")
        return handler(self, task, plan)

    def _candidate(self, task: Task, result: HelperResult, **fields: Any) -> CandidateChange:
        completion = result.completion
        return CandidateChange(
            task_type=task.task_type,
            language=self._language(task),
            prompt_tokens=completion.prompt_tokens,
            completion_tokens=completion.completion_tokens,
            cost=completion.cost,
            priced=completion.priced,
            degraded=result.degraded,
            **fields,
        )

    @staticmethod
    def _require_code(task: Task) -> str:
        if not task.code:
            raise ValueError(f"{task.task_type.value} task {task.task_id} has no code to work on")
        return task.code

    def _implement_generate(self, task: Task, plan: dict[str, Any]) -> CandidateChange:
        result = self.gateway.generate_code(
            task.description, self._language(task), context=task.context, provider=self.provider,
        )
        return self._candidate(task, result, code=result.value.code, explanation=result.value.explanation)

    def _implement_fix(self, task: Task, plan: dict[str, Any]) -> CandidateChange:
        code = self._require_code(task)
        result = self.gateway.fix_code(code, task.description, self._language(task), provider=self.provider)
        return self._candidate(
            task, result,
            code=result.value.fixed_code,
            original_code=code,
            explanation=result.value.explanation,
        )

    def _implement_refactor(self, task: Task, plan: dict[str, Any]) -> CandidateChange:
        code = self._require_code(task)
        result = self.gateway.refactor_code(
            code, self._language(task), goal=task.goal or task.description, provider=self.provider,
        )
        return self._candidate(
            task, result,
            code=result.value.refactored_code,
            original_code=code,
            changes=result.value.changes,
        )

    def _implement_test(self, task: Task, plan: dict[str, Any]) -> CandidateChange:
        code = self._require_code(task)
        language = self._language(task)
        result = self.gateway.generate_tests(code, language, framework=task.test_framework, provider=self.provider)
        return self._candidate(
            task, result,
            code=result.value.test_code,
            changes=result.value.cases,
            framework=task.test_framework or ("pytest" if language == "python" else "jest"),
        )

    def _implement_review(self, task: Task, plan: dict[str, Any]) -> CandidateChange:
        code = self._require_code(task)
        result = self.gateway.review_code(code, self._language(task), context=task.context, provider=self.provider)
        return self._candidate(
            task, result,
            code=code,
            original_code=code,
            explanation=result.value.summary,
            review=result.value.model_dump(),
        )

    handlers: dict[TaskType, Callable[["CodeAgent", Task, dict[str, Any]], CandidateChange]] = {
        TaskType.GENERATE: _implement_generate,
        TaskType.FIX: _implement_fix,
        TaskType.REFACTOR: _implement_refactor,
        TaskType.TEST: _implement_test,
        TaskType.REVIEW: _implement_review,
    }

    # -- Test ---------------------------------------------------------------

    def test(self, task: Task, candidate: CandidateChange) -> VerificationResult:
        code, language = candidate.code, candidate.language
        result = VerificationResult()

        # 1. Syntax
        syntax = self.execute_tool("check_syntax", code=code, language=language)
        if syntax.success:
            result.syntax_ok = syntax.result.ok
            result.syntax_errors = syntax.result.errors
        else:
            result.syntax_errors = [syntax.error]

        # 2. Lint
        lint = self.execute_tool("run_linter", code=code, language=language)
        if lint.success:
            result.lint_ok = lint.result.ok
            result.lint_warnings = lint.result.warnings
        else:
            result.lint_warnings = [lint.error]

        # 3. Security
        for tool in ("check_security", "scan_for_secrets"):
            kwargs = {"code": code, "language": language} if tool == "check_security" else {"code": code}
            scan = self.execute_tool(tool, **kwargs)
            if scan.success:
                result.security_issues.extend(scan.result)
            else:
                result.security_issues.append(SecurityIssue(
                    severity="high",
                    kind="scanner-error",
                    message=f"{tool} could not run: {scan.error}",
                ))

        # 4. Tests
        if task.run_tests and self.config.run_tests:
            run = self.execute_tool(
                "run_tests",
                command=self.config.test_command,
                cwd=self.workdir,
                timeout=self.config.test_timeout_seconds,
            )
            if run.success:
                result.test_results.append(run.result)
            else:
                result.test_results.append(TestRunResult(passed=False, output=run.error or ""))
        else:
            result.test_results.append(TestRunResult(applicable=False))

        logger.info(
            f"[AGENT] Checks — syntax={'ok' if result.syntax_ok else 'FAIL'}, "
            f"lint={'ok' if result.lint_ok else 'FAIL'}, "
            f"security={len(result.security_issues)} issue(s), "
            f"tests={'n/a' if not result.tests_applicable else ('ok' if result.tests_ok else 'FAIL')}"
        )
        return result

    # -- Validate -----------------------------------------------------------

    def validate(self, task: Task, candidate: CandidateChange, verification: VerificationResult) -> Validation:
        issues = [ValidationIssue(kind="syntax", message=e) for e in verification.syntax_errors]
        issues += [ValidationIssue(kind="lint", message=w) for w in verification.lint_warnings]
        issues += [
            ValidationIssue(kind="security", message=f"{i.severity}: {i.message} (line {i.line})")
            for i in verification.security_issues
        ]
        if candidate.degraded:
            issues.append(ValidationIssue(
                kind="degraded",
                message="Model output could not be parsed; a fallback stood in for it",
            ))

        passed = (
            verification.syntax_ok
            and verification.lint_ok
            and verification.security_ok
            and (verification.tests_ok or not verification.tests_applicable)
        )
        decision = self.policy.evaluate(candidate, verification, issues)

        def mark(ok: bool) -> str:
            return "✓" if ok else "✗"

        return Validation(
            passed=passed,
            degraded=candidate.degraded,
            issues=issues,
            decision=decision,
            summary={
                "syntax": mark(verification.syntax_ok),
                "lint": mark(verification.lint_ok),
                "security": mark(verification.security_ok),
                "tests": mark(verification.tests_ok) if verification.tests_applicable else "⊘",
            },
        )


_missing = set(TaskType) - set(CodeAgent.handlers)
if _missing:
    raise ImportError(f"CodeAgent has no implement handler for: {sorted(t.value for t in _missing)}")
