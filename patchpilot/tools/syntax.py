"""Syntax checks that need no external toolchain."""

from __future__ import annotations

import ast
import json
from dataclasses import dataclass, field


@dataclass
class SyntaxReport:
    ok: bool
    errors: list[str] = field(default_factory=list)
    checked: bool = True


def check_syntax(code: str, language: str) -> SyntaxReport:
    language = language.lower()

    if not code.strip():
        return SyntaxReport(ok=False, errors=["Empty code"])

    if language == "python":
        try:
            ast.parse(code)
        except SyntaxError as e:
            return SyntaxReport(ok=False, errors=[f"line {e.lineno}: {e.msg}"])
        return SyntaxReport(ok=True)

    if language == "json":
        try:
            json.loads(code)
        except json.JSONDecodeError as e:
            return SyntaxReport(ok=False, errors=[f"line {e.lineno}: {e.msg}"])
        return SyntaxReport(ok=True)

    # No parser for this language; non-empty is all we can say
    return SyntaxReport(ok=True, checked=False)
