"""
Verification tools run against a candidate change.

Each tool takes source text and a language and reports; none of them raise
on bad code. A tool that cannot run for a language reports a pass.
"""

from patchpilot.tools.lint import LintReport, run_linter
from patchpilot.tools.security import check_security, scan_for_secrets
from patchpilot.tools.syntax import SyntaxReport, check_syntax
from patchpilot.tools.test_runner import run_tests

__all__ = [
    "LintReport",
    "SyntaxReport",
    "check_security",
    "check_syntax",
    "run_linter",
    "run_tests",
    "scan_for_secrets",
]
