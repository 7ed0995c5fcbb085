"""
Line-based security scan.

Patterns are grouped by the languages they apply to. A match produces one
SecurityIssue per line per pattern; any issue at all forces human review.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

from patchpilot.state import SecurityIssue

Severity = Literal["critical", "high", "medium", "low"]


@dataclass(frozen=True)
class _Rule:
    kind: str
    pattern: re.Pattern
    severity: Severity
    message: str
    recommendation: str


def _rule(kind: str, pattern: str, severity: Severity, message: str, recommendation: str, flags: int = 0) -> _Rule:
    return _Rule(kind, re.compile(pattern, flags), severity, message, recommendation)


_PYTHON_RULES = [
    _rule("dangerous-function", r"\b(eval|exec)\s*\(", "high",
          "Use of eval()/exec() detected", "Parse input explicitly (ast.literal_eval, json.loads)."),
    _rule("unsafe-deserialization", r"\b(pickle|marshal|dill)\.loads?\s*\(", "high",
          "Deserialising untrusted data", "Use a data-only format such as JSON."),
    _rule("unsafe-deserialization", r"\byaml\.load\s*\((?![^)]*SafeLoader)", "high",
          "yaml.load without SafeLoader", "Use yaml.safe_load()."),
    _rule("shell-injection", r"shell\s*=\s*True", "high",
          "Subprocess call with shell=True", "Pass an argument list and leave shell=False."),
    _rule("shell-injection", r"\bos\.(system|popen)\s*\(", "medium",
          "Shell command via os module", "Use subprocess.run with an argument list."),
    _rule("sql-injection", r"\.execute\s*\(\s*(f[\"']|[\"'][^\"']*[\"']\s*(%|\+|\.format))", "high",
          "Potential SQL injection vulnerability", "Use parameterized queries."),
    _rule("weak-crypto", r"hashlib\.(md5|sha1)\s*\(", "medium",
          "Weak cryptographic algorithm detected", "Use SHA-256 or stronger algorithms."),
    _rule("weak-random", r"\brandom\.(random|randint|choice|randrange)\s*\(", "low",
          "random module is not cryptographically secure", "Use the secrets module for security-sensitive values."),
    _rule("path-traversal", r"\bopen\s*\([^)]*\+", "high",
          "Potential path traversal vulnerability", "Resolve the path and check it stays inside an allowed directory."),
    _rule("disabled-security", r"verify\s*=\s*False", "medium",
          "TLS certificate verification disabled", "Leave certificate verification on."),
    _rule("sensitive-data-leak", r"\b(print|logger\.\w+|logging\.\w+)\s*\([^)]*(password|token|secret|api_key)", "medium",
          "Potential sensitive data in logs", "Remove sensitive data from log output.", re.IGNORECASE),
]

_JAVASCRIPT_RULES = [
    _rule("dangerous-function", r"\beval\s*\(", "high",
          "Use of eval() detected", "Avoid eval(). Use JSON.parse() or safer alternatives."),
    _rule("dangerous-function", r"new\s+Function\s*\(", "high",
          "Use of Function constructor detected", "Use regular functions instead."),
    _rule("xss-risk", r"innerHTML\s*=(?!\s*['\"`])", "medium",
          "Potential XSS vulnerability with innerHTML", "Use textContent or sanitize HTML first."),
    _rule("dangerous-function", r"document\.write\s*\(", "medium",
          "Use of document.write() detected", "Use DOM manipulation instead."),
    _rule("sql-injection", r"(query|execute)\s*\([^)]*\+[^)]*\)", "high",
          "Potential SQL injection vulnerability", "Use parameterized queries or an ORM."),
    _rule("weak-crypto", r"(md5|sha1)\s*\(", "medium",
          "Weak cryptographic algorithm detected", "Use SHA-256 or stronger algorithms.", re.IGNORECASE),
    _rule("weak-random", r"Math\.random\s*\(", "low",
          "Math.random() is not cryptographically secure", "Use crypto.randomBytes() for security-sensitive values."),
    _rule("path-traversal", r"(readFile|writeFile|unlink)\w*\s*\([^)]*\+", "high",
          "Potential path traversal vulnerability", "Validate paths against allowed directories."),
    _rule("prototype-pollution", r"\[.*?(__proto__|constructor|prototype)\]", "high",
          "Potential prototype pollution vulnerability", "Avoid property assignment with user-controlled keys."),
    _rule("sensitive-data-leak", r"console\.log\([^)]*(password|token|secret|key)", "medium",
          "Potential sensitive data in logs", "Remove sensitive data from log output.", re.IGNORECASE),
]

_GENERAL_RULES = [
    _rule("hardcoded-secret", r"(password|secret|token|api[_-]?key)\s*[:=]\s*['\"][^'\"]{8,}['\"]", "critical",
          "Potential hardcoded secret detected", "Use environment variables or a secret manager.", re.IGNORECASE),
    _rule("security-todo", r"(TODO|FIXME).*(security|vulnerable|unsafe|hack)", "low",
          "Security-related TODO/FIXME found", "Address security TODOs before deployment.", re.IGNORECASE),
    _rule("disabled-security", r"(disable|skip|ignore).*(security|sanitize|validate|escape)", "medium",
          "Disabled security feature detected", "Re-enable it or document why it is off.", re.IGNORECASE),
]

_RULES_BY_LANGUAGE = {
    "python": _PYTHON_RULES,
    "javascript": _JAVASCRIPT_RULES,
    "typescript": _JAVASCRIPT_RULES,
}

_SECRET_RULES = [
    _rule("aws-access-key", r"(AKIA|ASIA)[0-9A-Z]{16}", "critical",
          "AWS access key", "Revoke the key and load it from the environment."),
    _rule("github-token", r"gh[pousr]_[0-9a-zA-Z]{36}", "critical",
          "GitHub token", "Revoke the token and load it from the environment."),
    _rule("private-key", r"-----BEGIN (RSA |EC |OPENSSH )?PRIVATE KEY-----", "critical",
          "Private key material", "Remove the key from source control."),
    _rule("generic-api-key", r"api[_-]?key[_-]?\s*[:=]\s*['\"][a-zA-Z0-9]{20,}['\"]", "high",
          "Generic API key", "Load it from the environment.", re.IGNORECASE),
    _rule("jwt", r"eyJ[a-zA-Z0-9_-]*\.eyJ[a-zA-Z0-9_-]*\.[a-zA-Z0-9_-]*", "high",
          "JSON Web Token", "Never commit live tokens."),
]


def _scan(code: str, rules: list[_Rule]) -> list[SecurityIssue]:
    issues = []
    for lineno, line in enumerate(code.splitlines(), 1):
        for rule in rules:
            if rule.pattern.search(line):
                issues.append(SecurityIssue(
                    severity=rule.severity,
                    kind=rule.kind,
                    message=rule.message,
                    line=lineno,
                    recommendation=rule.recommendation,
                ))
    return issues


def check_security(code: str, language: str) -> list[SecurityIssue]:
    rules = _RULES_BY_LANGUAGE.get(language.lower(), []) + _GENERAL_RULES
    return _scan(code, rules)


def scan_for_secrets(code: str) -> list[SecurityIssue]:
    """Credential-shaped strings, independent of language."""
    return _scan(code, _SECRET_RULES)
