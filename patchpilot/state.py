"""
PATCHPILOT run state.

Everything a single reasoning run produces, from the incoming Task to the
ApprovalDecision. Artifacts are frozen once created; the ReasoningTrace is
the only object that grows during a run, and it only grows forward.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------

class TaskType(str, Enum):
    GENERATE = "generate"
    FIX = "fix"
    REFACTOR = "refactor"
    TEST = "test"
    REVIEW = "review"


class Task(BaseModel):
    """One unit of requested code work. Immutable for the lifetime of a run."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    task_id: str = Field(..., alias="id")
    task_type: TaskType = Field(..., alias="type")
    description: str
    code: str | None = None
    file_path: str | None = None
    language: str | None = None
    context: str = ""
    goal: str | None = None
    test_framework: str | None = None
    auto_apply: bool = False
    run_tests: bool = True

    @staticmethod
    def new_id() -> str:
        ts = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        return f"task_{ts}_{secrets.token_hex(3)}"

    @classmethod
    def create(cls, task_type: TaskType | str, description: str, **fields: Any) -> "Task":
        return cls(task_id=cls.new_id(), task_type=task_type, description=description, **fields)

    @classmethod
    def from_yaml(cls, path: Path) -> "Task":
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        data.setdefault("id", path.stem)
        if "code_file" in data:
            code_path = (path.parent / data.pop("code_file")).resolve()
            data["code"] = code_path.read_text()
        return cls(**data)


# ---------------------------------------------------------------------------
# Reasoning Trace
# ---------------------------------------------------------------------------

class Phase(str, Enum):
    START = "START"
    ANALYZE = "ANALYZE"
    PLAN = "PLAN"
    IMPLEMENT = "IMPLEMENT"
    TEST = "TEST"
    VALIDATE = "VALIDATE"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"


PHASE_ORDER: tuple[Phase, ...] = (
    Phase.START,
    Phase.ANALYZE,
    Phase.PLAN,
    Phase.IMPLEMENT,
    Phase.TEST,
    Phase.VALIDATE,
    Phase.COMPLETE,
)

TERMINAL_PHASES = frozenset({Phase.COMPLETE, Phase.ERROR})


class TraceOrderError(Exception):
    """Raised when a phase would be skipped, repeated, or appended after a terminal state."""


class TraceRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    phase: Phase
    timestamp: str = Field(default_factory=utc_now)
    payload: dict[str, Any] = Field(default_factory=dict)


class ReasoningTrace(BaseModel):
    """Append-only phase log for one Task."""

    task_id: str
    _records: list[TraceRecord] = PrivateAttr(default_factory=list)

    @property
    def records(self) -> list[TraceRecord]:
        return list(self._records)

    @property
    def last_phase(self) -> Phase | None:
        return self._records[-1].phase if self._records else None

    @property
    def finished(self) -> bool:
        return self.last_phase in TERMINAL_PHASES

    def phases(self) -> list[Phase]:
        return [r.phase for r in self._records]

    def append(self, phase: Phase, payload: dict[str, Any] | None = None) -> TraceRecord:
        last = self.last_phase

        if last in TERMINAL_PHASES:
            raise TraceOrderError(f"Trace for {self.task_id} already ended in {last.value}")

        if phase == Phase.ERROR:
            if last is None:
                raise TraceOrderError("A trace must begin with START")
        else:
            expected = PHASE_ORDER[0] if last is None else PHASE_ORDER[PHASE_ORDER.index(last) + 1]
            if phase != expected:
                raise TraceOrderError(
                    f"Expected {expected.value} after {last.value if last else 'nothing'}, got {phase.value}"
                )

        record = TraceRecord(phase=phase, payload=payload or {})
        self._records.append(record)
        return record

    def to_dicts(self) -> list[dict[str, Any]]:
        return [r.model_dump(mode="json") for r in self._records]


# ---------------------------------------------------------------------------
# Candidate Change + Verification
# ---------------------------------------------------------------------------

class CandidateChange(BaseModel):
    """The single artifact an Implement phase produces."""

    model_config = ConfigDict(frozen=True)

    task_type: TaskType
    language: str
    code: str
    original_code: str | None = None
    explanation: str = ""
    changes: list[str] = Field(default_factory=list)
    review: dict[str, Any] | None = None
    framework: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: float = 0.0
    priced: bool = True
    degraded: bool = False

    @property
    def tokens_used(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class SecurityIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    severity: Literal["critical", "high", "medium", "low"]
    kind: str
    message: str
    line: int = 0
    recommendation: str = ""


class TestRunResult(BaseModel):
    __test__ = False  # keep pytest from collecting this model

    applicable: bool = True
    passed: bool = False
    total: int = 0
    failed: int = 0
    command: str = ""
    output: str = ""


class VerificationResult(BaseModel):
    syntax_ok: bool = False
    syntax_errors: list[str] = Field(default_factory=list)
    lint_ok: bool = False
    lint_warnings: list[str] = Field(default_factory=list)
    security_issues: list[SecurityIssue] = Field(default_factory=list)
    test_results: list[TestRunResult] = Field(default_factory=list)

    @property
    def security_ok(self) -> bool:
        return not self.security_issues

    @property
    def tests_applicable(self) -> bool:
        return any(r.applicable for r in self.test_results)

    @property
    def tests_ok(self) -> bool:
        applicable = [r for r in self.test_results if r.applicable]
        return bool(applicable) and all(r.passed for r in applicable)


# ---------------------------------------------------------------------------
# Decision + Validation
# ---------------------------------------------------------------------------

class ValidationIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["syntax", "lint", "security", "degraded"]
    message: str


class ApprovalDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    auto_approved: bool
    needs_approval: bool
    rule: str
    reason: str
    changed_lines: int = 0
    issues: list[ValidationIssue] = Field(default_factory=list)


class Validation(BaseModel):
    model_config = ConfigDict(frozen=True)

    passed: bool
    degraded: bool = False
    issues: list[ValidationIssue] = Field(default_factory=list)
    decision: ApprovalDecision
    summary: dict[str, str] = Field(default_factory=dict)


class ReasoningResult(BaseModel):
    success: bool
    analysis: dict[str, Any]
    plan: dict[str, Any]
    implementation: CandidateChange
    test_results: VerificationResult
    validation: Validation
    steps: list[TraceRecord]
