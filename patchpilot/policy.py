"""
Approval policy.

Decides whether a candidate change may be applied without a human. The
rules are evaluated in order and the first match wins:

  1. any security issue          → needs approval
  2. more than 50 changed lines  → needs approval
  3. test-only task              → auto-approved
  4. small fix                   → auto-approved
  5. anything else               → needs approval

The policy is pure: same inputs, same decision.
"""

from __future__ import annotations

import difflib
from typing import Iterable, Sequence

from loguru import logger

from patchpilot.state import (
    ApprovalDecision,
    CandidateChange,
    SecurityIssue,
    TaskType,
    ValidationIssue,
    VerificationResult,
)


def count_changed_lines(code: str, original: str | None = None) -> int:
    """Lines a reviewer would have to read.

    New code counts every line. A modification counts added plus removed
    lines of the unified diff against the original.
    """
    if not original:
        return len(code.splitlines())

    added = removed = 0
    for line in difflib.unified_diff(original.splitlines(), code.splitlines(), lineterm="", n=0):
        if line.startswith(("+++", "---", "@@")):
            continue
        if line.startswith("+"):
            added += 1
        elif line.startswith("-"):
            removed += 1
    return added + removed


class ApprovalPolicy:
    def __init__(self, max_auto_lines: int = 50):
        self.max_auto_lines = max_auto_lines

    def decide(
        self,
        task_type: TaskType,
        changed_lines: int,
        security_issues: Sequence[SecurityIssue],
        issues: Iterable[ValidationIssue] = (),
    ) -> ApprovalDecision:
        issues = list(issues)

        def needs(rule: str, reason: str) -> ApprovalDecision:
            return ApprovalDecision(
                auto_approved=False, needs_approval=True, rule=rule, reason=reason,
                changed_lines=changed_lines, issues=issues,
            )

        def auto(rule: str, reason: str) -> ApprovalDecision:
            return ApprovalDecision(
                auto_approved=True, needs_approval=False, rule=rule, reason=reason,
                changed_lines=changed_lines, issues=issues,
            )

        if security_issues:
            decision = needs("security", f"{len(security_issues)} security issue(s) found")
        elif changed_lines > self.max_auto_lines:
            decision = needs("size", f"{changed_lines} changed lines exceeds {self.max_auto_lines}")
        elif task_type == TaskType.TEST:
            decision = auto("tests_only", "Test generation is low risk")
        elif task_type == TaskType.FIX:
            decision = auto("small_fix", f"Small fix ({changed_lines} lines)")
        else:
            decision = needs("default", f"{task_type.value} changes require review")

        logger.info(
            f"[POLICY] {task_type.value}: "
            f"{'auto-approved' if decision.auto_approved else 'needs approval'} "
            f"({decision.rule}: {decision.reason})"
        )
        return decision

    def evaluate(
        self,
        candidate: CandidateChange,
        verification: VerificationResult,
        issues: Iterable[ValidationIssue] = (),
    ) -> ApprovalDecision:
        changed = count_changed_lines(candidate.code, candidate.original_code)
        return self.decide(candidate.task_type, changed, verification.security_issues, issues)
