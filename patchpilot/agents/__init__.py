"""
PATCHPILOT Reasoning Agents

Every agent walks the same five phases for a task:

  START → ANALYZE → PLAN → IMPLEMENT → TEST → VALIDATE → COMPLETE

Each transition appends one record to the task's ReasoningTrace. Any
exception appends ERROR and is re-raised to the caller.

Agents hold no per-task state, so one instance can serve many threads.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

from loguru import logger
from pydantic import BaseModel

from patchpilot.gateway import CompletionGateway
from patchpilot.state import (
    CandidateChange,
    Phase,
    ReasoningResult,
    ReasoningTrace,
    Task,
    Validation,
    VerificationResult,
)


class ToolOutcome(BaseModel):
    success: bool
    result: Any = None
    error: str | None = None


@dataclass(frozen=True)
class Tool:
    name: str
    handler: Callable[..., Any]
    description: str = ""


class BaseAgent(ABC):
    """
    Base class for reasoning agents.

    Subclasses define:
      - name: str — shows up in logs and audit entries
      - analyze() / plan() / implement() / test() / validate()
    """

    name: str = "base-agent"

    def __init__(self, gateway: CompletionGateway, provider: str | None = None):
        self.gateway = gateway
        self.provider = provider
        self._tools: dict[str, Tool] = {}

    # -- Tool registry ------------------------------------------------------

    def register_tool(self, name: str, handler: Callable[..., Any], description: str = "") -> None:
        self._tools[name] = Tool(name=name, handler=handler, description=description)

    def list_tools(self) -> list[dict[str, str]]:
        return [{"name": t.name, "description": t.description} for t in self._tools.values()]

    def execute_tool(self, name: str, **params: Any) -> ToolOutcome:
        """Run a registered tool. Failures come back as an outcome, never as an exception."""
        tool = self._tools.get(name)
        if tool is None:
            return ToolOutcome(success=False, error=f"Tool {name} not found")

        try:
            return ToolOutcome(success=True, result=tool.handler(**params))
        except Exception as e:
            logger.error(f"[AGENT] Tool {name} failed: {e}")
            return ToolOutcome(success=False, error=str(e))

    # -- Reasoning loop -----------------------------------------------------

    def reason(self, task: Task, trace: ReasoningTrace | None = None) -> ReasoningResult:
        """Run all phases for `task`, appending to `trace` as it goes.

        Pass a trace in to keep hold of it when this raises.
        """
        trace = trace or ReasoningTrace(task_id=task.task_id)
        trace.append(Phase.START, {
            "agent": self.name,
            "task_type": getattr(task.task_type, "value", task.task_type),
            "description": task.description,
        })
        logger.info(f"[AGENT] {self.name} starting {task.task_id}")

        try:
            analysis = self.analyze(task)
            trace.append(Phase.ANALYZE, analysis)

            plan = self.plan(task, analysis)
            trace.append(Phase.PLAN, plan)

            candidate = self.implement(task, plan)
            trace.append(Phase.IMPLEMENT, candidate.model_dump(mode="json"))

            verification = self.test(task, candidate)
            trace.append(Phase.TEST, verification.model_dump(mode="json"))

            validation = self.validate(task, candidate, verification)
            trace.append(Phase.VALIDATE, validation.model_dump(mode="json"))

            trace.append(Phase.COMPLETE, {"success": validation.passed})
        except Exception as e:
            failed_after = trace.last_phase.value if trace.last_phase else None
            logger.error(f"[AGENT] {self.name} failed on {task.task_id} after {failed_after}: {e}")
            if not trace.finished:
                trace.append(Phase.ERROR, {
                    "error": str(e),
                    "error_type": type(e).__name__,
                    "after": failed_after,
                })
            raise

        logger.info(
            f"[AGENT] {self.name} finished {task.task_id} — "
            f"passed={validation.passed}, "
            f"{'auto-approved' if validation.decision.auto_approved else 'needs approval'}"
        )

        return ReasoningResult(
            success=validation.passed,
            analysis=analysis,
            plan=plan,
            implementation=candidate,
            test_results=verification,
            validation=validation,
            steps=trace.records,
        )

    @abstractmethod
    def analyze(self, task: Task) -> dict[str, Any]:
        ...

    @abstractmethod
    def plan(self, task: Task, analysis: dict[str, Any]) -> dict[str, Any]:
        ...

    @abstractmethod
    def implement(self, task: Task, plan: dict[str, Any]) -> CandidateChange:
        ...

    @abstractmethod
    def test(self, task: Task, candidate: CandidateChange) -> VerificationResult:
        ...

    @abstractmethod
    def validate(self, task: Task, candidate: CandidateChange, verification: VerificationResult) -> Validation:
        ...
