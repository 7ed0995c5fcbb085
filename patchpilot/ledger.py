"""
PATCHPILOT Audit Ledger

Append-only record of everything the system did: generations, reviews,
decisions, commits, human approvals, errors and full reasoning traces.

On disk: one JSON object per line, never rewritten or trimmed.
In memory: the newest `max_entries_in_memory` entries, for queries.

Lifecycle is explicit:

    with AuditLedger(path) as ledger:   # open() replays the file
        ledger.log_error(...)
                                        # close() flushes
"""

from __future__ import annotations

import json
import secrets
import threading
import time
from collections import Counter, deque
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from patchpilot.state import ApprovalDecision, ReasoningTrace, utc_now

EntryType = Literal[
    "code_generation",
    "code_review",
    "commit",
    "approval",
    "rollback",
    "error",
    "safety_check",
    "reasoning_trace",
    "approval_decision",
    "execution",
]


def _entry_id() -> str:
    return f"audit_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class AuditEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_entry_id)
    timestamp: str = Field(default_factory=utc_now)
    type: EntryType
    task_id: str | None = None
    agent_name: str | None = None
    cost: float = 0.0
    tokens: int = 0
    priced: bool = True
    approved: bool | None = None
    needs_approval: bool | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def at(self) -> datetime:
        return parse_time(self.timestamp)

    def to_line(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_line(cls, line: str) -> "AuditEntry":
        return cls.model_validate_json(line)


class LedgerStats(BaseModel):
    total: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)
    total_cost: float = 0.0
    approved: int = 0
    rejected: int = 0
    auto_approved: int = 0
    errors: int = 0
    unpriced_entries: int = 0
    unpriced_tokens: int = 0


def parse_time(value: datetime | str) -> datetime:
    if isinstance(value, str):
        if value.endswith(("Z", "z")):
            value = value[:-1] + "+00:00"
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _ends_mid_line(path: Path) -> bool:
    with open(path, "rb") as f:
        f.seek(0, 2)
        if f.tell() == 0:
            return False
        f.seek(-1, 2)
        return f.read(1) != b"\n"


class LedgerClosedError(RuntimeError):
    """Raised when writing to a file-backed ledger that has not been opened."""


class AuditLedger:
    """
    Thread-safe audit ledger.

    Appends are serialised by one lock. A line that fails to reach disk is
    kept in a pending buffer and retried on the next append or flush.
    """

    def __init__(self, path: Path | str | None = None, max_entries_in_memory: int = 1000):
        self.path = Path(path) if path else None
        self.max_entries_in_memory = max_entries_in_memory
        self._entries: deque[AuditEntry] = deque(maxlen=max_entries_in_memory)
        self._pending: list[str] = []
        self._subscribers: list[Callable[[AuditEntry], None]] = []
        self._lock = threading.RLock()
        self._fh = None
        self._opened = self.path is None

    # -- Lifecycle ----------------------------------------------------------

    def open(self) -> "AuditLedger":
        with self._lock:
            if self._fh is not None or self.path is None:
                self._opened = True
                return self

            self.path.parent.mkdir(parents=True, exist_ok=True)
            torn = False
            if self.path.exists():
                self._replay()
                torn = _ends_mid_line(self.path)
            self._fh = open(self.path, "a", encoding="utf-8")
            if torn:
                # Terminate the fragment so the next append starts on its own line
                self._fh.write("\n")
                self._fh.flush()
                logger.warning(f"[LEDGER] {self.path} ended mid-line; sealed the torn record")
            self._opened = True

        logger.debug(f"[LEDGER] Opened {self.path} ({len(self._entries)} entries in memory)")
        return self

    def _replay(self) -> None:
        seen: set[str] = set()
        skipped = 0
        with open(self.path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = AuditEntry.from_line(line)
                except ValidationError:
                    skipped += 1
                    continue
                if entry.id in seen:
                    continue
                seen.add(entry.id)
                self._entries.append(entry)

        if skipped:
            logger.warning(f"[LEDGER] Skipped {skipped} malformed line(s) in {self.path}")

    def flush(self) -> bool:
        """Write anything pending. Returns False if lines are still waiting."""
        with self._lock:
            return self._write_pending()

    def close(self) -> None:
        with self._lock:
            self._write_pending()
            if self._pending:
                logger.error(f"[LEDGER] Closing with {len(self._pending)} unwritten entries")
            if self._fh is not None:
                self._fh.close()
                self._fh = None
            self._opened = self.path is None

    def __enter__(self) -> "AuditLedger":
        return self.open()

    def __exit__(self, *exc: Any) -> None:
        self.close()

    @property
    def pending_writes(self) -> int:
        return len(self._pending)

    # -- Writing ------------------------------------------------------------

    def subscribe(self, callback: Callable[[AuditEntry], None]) -> None:
        """Call `callback` with every entry after it is recorded."""
        self._subscribers.append(callback)

    def _write_pending(self) -> bool:
        if self.path is None:
            self._pending.clear()
            return True
        if not self._pending:
            return True
        if self._fh is None:
            return False

        try:
            self._fh.write("".join(line + "\n" for line in self._pending))
            self._fh.flush()
        except OSError as e:
            logger.error(f"[LEDGER] Write failed, {len(self._pending)} entries pending: {e}")
            return False

        self._pending.clear()
        return True

    def append(self, type: EntryType, task_id: str | None = None, **fields: Any) -> AuditEntry:
        entry = AuditEntry(type=type, task_id=task_id, **fields)

        with self._lock:
            if not self._opened:
                raise LedgerClosedError(f"Ledger {self.path} is not open")
            self._entries.append(entry)
            self._pending.append(entry.to_line())
            self._write_pending()

        for subscriber in self._subscribers:
            try:
                subscriber(entry)
            except Exception as e:
                logger.warning(f"[LEDGER] Subscriber failed on {entry.id}: {e}")

        return entry

    def log_generation(
        self,
        task_id: str,
        agent_name: str,
        task_type: str,
        code: str,
        language: str,
        file_path: str | None = None,
        tokens: int = 0,
        cost: float = 0.0,
        priced: bool = True,
        needs_approval: bool = True,
        degraded: bool = False,
    ) -> AuditEntry:
        return self.append(
            "code_generation", task_id,
            agent_name=agent_name, cost=cost, tokens=tokens, priced=priced, needs_approval=needs_approval,
            data={
                "task_type": task_type,
                "file_path": file_path,
                "language": language,
                "code": code,
                "code_length": len(code),
                "degraded": degraded,
            },
        )

    def log_review(
        self,
        task_id: str,
        agent_name: str,
        review: dict[str, Any],
        file_path: str | None = None,
        tokens: int = 0,
        cost: float = 0.0,
        priced: bool = True,
    ) -> AuditEntry:
        return self.append(
            "code_review", task_id,
            agent_name=agent_name, cost=cost, tokens=tokens, priced=priced,
            data={"file_path": file_path, "review": review},
        )

    def log_commit(
        self,
        task_id: str,
        branch: str | None,
        files: list[str],
        commits: list[str],
        pr_number: int | None = None,
        pr_url: str | None = None,
        merged: bool = False,
    ) -> AuditEntry:
        return self.append(
            "commit", task_id,
            agent_name="executor",
            data={
                "branch": branch,
                "files": files,
                "commits": commits,
                "pr_number": pr_number,
                "pr_url": pr_url,
                "merged": merged,
            },
        )

    def log_approval(self, task_id: str, approved: bool, approver: str, comment: str = "") -> AuditEntry:
        return self.append(
            "approval", task_id,
            agent_name=approver, approved=approved, needs_approval=False,
            data={"approver": approver, "comment": comment},
        )

    def log_rollback(self, task_id: str, branch: str | None, reason: str, actor: str = "human") -> AuditEntry:
        return self.append(
            "rollback", task_id,
            agent_name=actor,
            data={"branch": branch, "reason": reason},
        )

    def log_error(
        self,
        task_id: str | None,
        component: str,
        message: str,
        stack: str | None = None,
        error_type: str | None = None,
    ) -> AuditEntry:
        return self.append(
            "error", task_id,
            agent_name=component,
            data={"component": component, "message": message, "error_type": error_type, "stack": stack},
        )

    def log_safety_check(self, task_id: str, passed: bool, issues: list[dict[str, Any]], agent_name: str = "") -> AuditEntry:
        return self.append(
            "safety_check", task_id,
            agent_name=agent_name,
            data={"passed": passed, "issues": issues},
        )

    def log_trace(self, trace: ReasoningTrace, agent_name: str = "") -> AuditEntry:
        return self.append(
            "reasoning_trace", trace.task_id,
            agent_name=agent_name,
            data={
                "phases": [p.value for p in trace.phases()],
                "finished": trace.finished,
                "records": trace.to_dicts(),
            },
        )

    def log_decision(self, task_id: str, decision: ApprovalDecision, agent_name: str = "policy") -> AuditEntry:
        return self.append(
            "approval_decision", task_id,
            agent_name=agent_name,
            approved=decision.auto_approved,
            needs_approval=decision.needs_approval,
            data=decision.model_dump(mode="json"),
        )

    def log_execution(self, task_id: str, result: dict[str, Any]) -> AuditEntry:
        return self.append("execution", task_id, agent_name="executor", data=result)

    # -- Queries ------------------------------------------------------------

    def _snapshot(self) -> list[AuditEntry]:
        with self._lock:
            return list(self._entries)

    def all(self, limit: int | None = None) -> list[AuditEntry]:
        """Newest first."""
        entries = self._snapshot()[::-1]
        return entries[:limit] if limit else entries

    def by_type(self, type: EntryType, limit: int = 100) -> list[AuditEntry]:
        """Newest first."""
        return [e for e in reversed(self._snapshot()) if e.type == type][:limit]

    def by_task(self, task_id: str) -> list[AuditEntry]:
        """Oldest first."""
        return sorted((e for e in self._snapshot() if e.task_id == task_id), key=lambda e: e.at)

    def by_range(self, start: datetime | str, end: datetime | str) -> list[AuditEntry]:
        """Entries with start <= timestamp <= end, newest first."""
        lo, hi = parse_time(start), parse_time(end)
        return [e for e in reversed(self._snapshot()) if lo <= e.at <= hi]

    def pending_approvals(self) -> list[AuditEntry]:
        """Generations and reviews that needed approval and have had no human decision since."""
        entries = self._snapshot()
        decided: dict[str, datetime] = {}
        for e in entries:
            if e.type == "approval" and e.task_id:
                decided[e.task_id] = max(decided.get(e.task_id, e.at), e.at)

        pending = [
            e for e in entries
            if e.type in ("code_generation", "code_review")
            and e.needs_approval
            and not (e.task_id in decided and decided[e.task_id] >= e.at)
        ]
        return pending[::-1]

    def stats(self, start: datetime | str | None = None, end: datetime | str | None = None) -> LedgerStats:
        entries = self._snapshot()
        if start or end:
            lo = parse_time(start) if start else datetime.min.replace(tzinfo=timezone.utc)
            hi = parse_time(end) if end else datetime.max.replace(tzinfo=timezone.utc)
            entries = [e for e in entries if lo <= e.at <= hi]

        return self._stats_for(entries)

    @staticmethod
    def _stats_for(entries: Iterable[AuditEntry]) -> LedgerStats:
        entries = list(entries)
        unpriced = [e for e in entries if not e.priced]
        return LedgerStats(
            total=len(entries),
            by_type=dict(Counter(e.type for e in entries)),
            total_cost=round(sum(e.cost for e in entries), 6),
            approved=sum(1 for e in entries if e.type == "approval" and e.approved is True),
            rejected=sum(1 for e in entries if e.type == "approval" and e.approved is False),
            auto_approved=sum(
                1 for e in entries
                if e.type == "approval_decision" and e.approved and not e.needs_approval
            ),
            errors=sum(1 for e in entries if e.type == "error"),
            unpriced_entries=len(unpriced),
            unpriced_tokens=sum(e.tokens for e in unpriced),
        )

    def clear_older_than(self, days: int) -> int:
        """Drop in-memory entries older than `days`. The file is untouched."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        with self._lock:
            keep = [e for e in self._entries if e.at >= cutoff]
            removed = len(self._entries) - len(keep)
            self._entries = deque(keep, maxlen=self.max_entries_in_memory)

        if removed:
            logger.info(f"[LEDGER] Cleared {removed} in-memory entries older than {days} days")
        return removed

    # -- Reports ------------------------------------------------------------

    def report(
        self,
        start: datetime | str,
        end: datetime | str,
        fmt: Literal["json", "markdown"] = "json",
    ) -> str:
        entries = self.by_range(start, end)
        stats = self._stats_for(entries)
        lo, hi = parse_time(start).isoformat(), parse_time(end).isoformat()

        if fmt == "json":
            return json.dumps({
                "generated_at": utc_now(),
                "period": {"start": lo, "end": hi},
                "stats": stats.model_dump(),
                "entries": [e.model_dump(mode="json") for e in entries],
            }, indent=2)

        if fmt != "markdown":
            raise ValueError(f"Unknown report format: {fmt}")

        lines = [
            "# PatchPilot Audit Report",
            "",
            f"**Period:** {lo} → {hi}",
            f"**Generated:** {utc_now()}",
            "",
            "## Summary",
            "",
            f"- **Total Entries:** {stats.total}",
            f"- **Total Cost:** ${stats.total_cost:.4f}",
            f"- **Approved Actions:** {stats.approved}",
            f"- **Rejected Actions:** {stats.rejected}",
            f"- **Auto-Approved:** {stats.auto_approved}",
            f"- **Errors:** {stats.errors}",
        ]
        if stats.unpriced_entries:
            lines.append(
                f"- **Unpriced Usage:** {stats.unpriced_entries} entries, {stats.unpriced_tokens} tokens"
            )

        lines += ["", "## Activity by Type", "", "| Type | Count |", "|------|-------|"]
        lines += [f"| {t} | {n} |" for t, n in sorted(stats.by_type.items())]

        errors = [e for e in entries if e.type == "error"][:10]
        if errors:
            lines += ["", "## Recent Errors", ""]
            for e in errors:
                lines.append(
                    f"- `{e.timestamp}` **{e.data.get('component', '?')}** "
                    f"({e.task_id or 'no task'}): {e.data.get('message', '')}"
                )

        return "\n".join(lines) + "\n"
