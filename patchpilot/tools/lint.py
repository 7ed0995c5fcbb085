"""
Linting for candidate code.

Python code goes through ruff (or flake8) when one is on PATH. Without
either, a small set of AST checks stands in. Other languages are skipped.
"""

from __future__ import annotations

import ast
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

_LINTERS: list[tuple[str, list[str]]] = [
    ("ruff", ["ruff", "check", "--quiet", "--no-cache", "--output-format", "concise"]),
    ("flake8", ["flake8", "--select=E9,E7,F"]),
]


@dataclass
class LintReport:
    ok: bool
    warnings: list[str] = field(default_factory=list)
    tool: str = "skipped"


def _builtin_checks(code: str) -> list[str]:
    try:
        tree = ast.parse(code)
    except SyntaxError:
        # Syntax problems are reported by the syntax check
        return []

    warnings: list[str] = []
    imported: dict[str, int] = {}
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                imported[(alias.asname or alias.name).split(".")[0]] = node.lineno
        elif isinstance(node, ast.ImportFrom):
            for alias in node.names:
                if alias.name != "*":
                    imported[alias.asname or alias.name] = node.lineno
        elif isinstance(node, ast.ExceptHandler) and node.type is None:
            warnings.append(f"line {node.lineno}: bare 'except:'")

    used = {n.id for n in ast.walk(tree) if isinstance(n, ast.Name)}
    used |= {n.value.id for n in ast.walk(tree) if isinstance(n, ast.Attribute) and isinstance(n.value, ast.Name)}
    exported: set[str] = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Assign) and any(isinstance(t, ast.Name) and t.id == "__all__" for t in node.targets):
            if isinstance(node.value, (ast.List, ast.Tuple)):
                exported |= {e.value for e in node.value.elts if isinstance(e, ast.Constant)}

    for name, lineno in sorted(imported.items(), key=lambda item: item[1]):
        if name not in used and name not in exported:
            warnings.append(f"line {lineno}: '{name}' imported but unused")

    return sorted(warnings, key=lambda w: int(w.split(":")[0].split()[1]))


def _run_external(name: str, command: list[str], code: str) -> list[str]:
    with tempfile.TemporaryDirectory(prefix="patchpilot-lint-") as tmp:
        path = Path(tmp) / "candidate.py"
        path.write_text(code)
        try:
            proc = subprocess.run(
                [*command, str(path)],
                capture_output=True,
                text=True,
                timeout=30,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return [f"{name} timed out"]

    warnings = []
    for line in (proc.stdout + proc.stderr).splitlines():
        if str(path) in line:
            warnings.append(line.replace(str(path), "<candidate>").strip())
    if proc.returncode != 0 and not warnings:
        warnings.append(f"{name} exited with code {proc.returncode}")
    return warnings


def run_linter(code: str, language: str) -> LintReport:
    if language.lower() != "python":
        return LintReport(ok=True, tool="skipped")

    for name, command in _LINTERS:
        if shutil.which(command[0]) is None:
            continue
        warnings = _run_external(name, command, code)
        logger.debug(f"[LINT] {name}: {len(warnings)} finding(s)")
        return LintReport(ok=not warnings, warnings=warnings, tool=name)

    warnings = _builtin_checks(code)
    return LintReport(ok=not warnings, warnings=warnings, tool="builtin")
