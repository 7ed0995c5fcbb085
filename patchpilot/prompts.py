"""
Prompt templates for the gateway helpers and the code agent.

Each builder returns (system_prompt, user_prompt). Every template asks for a
single JSON object so replies can go through structured parsing.
"""

from __future__ import annotations

import json
from typing import Any


def _bullets(items: list[str]) -> str:
    return "\n".join(f"- {item}" for item in items)


def _fenced(code: str, language: str) -> str:
    return f"```{language}\n{code}\n```"


# ---------------------------------------------------------------------------
# Gateway helpers
# ---------------------------------------------------------------------------

def generate_code(description: str, language: str, context: str = "", style: str = "clean") -> tuple[str, str]:
    system = (
        f"You are an expert {language} developer. "
        "Generate clean, production-ready code following best practices."
    )
    prompt = f"""Generate {language} code based on this description:

Description: {description}

Context:
{context or 'None provided'}

Requirements:
- Follow {style} code style
- Include comments for complex logic
- Handle edge cases
- Use modern {language} features
- Make it production-ready

Respond with a JSON object ONLY. No markdown, no commentary.
{{
  "code": "the complete source",
  "explanation": "one or two sentences"
}}"""
    return system, prompt


DEFAULT_REVIEW_FOCUS = ["bugs", "security", "performance", "style"]


def review_code(code: str, language: str, context: str = "", check_for: list[str] | None = None) -> tuple[str, str]:
    system = "You are a senior code reviewer. Provide constructive, actionable feedback."
    prompt = f"""Review this {language} code:

{_fenced(code, language)}

Context:
{context or 'None provided'}

Check for:
{_bullets(check_for or DEFAULT_REVIEW_FOCUS)}

Respond with a JSON object ONLY:
{{
  "summary": "1-2 sentences",
  "issues": ["..."],
  "suggestions": ["..."],
  "security_concerns": ["..."],
  "rating": 8
}}
The rating is an integer from 1 to 10."""
    return system, prompt


def refactor_code(code: str, language: str, goal: str | None = None) -> tuple[str, str]:
    goal = goal or "improve readability and maintainability"
    system = "You are an expert at code refactoring. Improve code quality while maintaining functionality."
    prompt = f"""Refactor this {language} code:

{_fenced(code, language)}

Goal: {goal}

Rules:
- Maintain exact same functionality
- Improve code structure
- Use better variable names
- Extract reusable functions
- Follow {language} best practices

Respond with a JSON object ONLY:
{{
  "refactored_code": "...",
  "changes": ["...", "..."]
}}"""
    return system, prompt


def generate_tests(code: str, language: str, framework: str, coverage: str = "comprehensive") -> tuple[str, str]:
    system = f"You are an expert at writing {framework} tests. Generate comprehensive test suites."
    prompt = f"""Generate {framework} tests for this {language} code:

{_fenced(code, language)}

Requirements:
- {coverage} coverage
- Test happy paths
- Test edge cases
- Test error handling
- Use clear test names
- Follow {framework} best practices

Respond with a JSON object ONLY:
{{
  "test_code": "...",
  "cases": ["short description of each test"]
}}"""
    return system, prompt


def fix_code(code: str, language: str, issue: str) -> tuple[str, str]:
    system = "You are an expert debugger. Fix issues precisely."
    prompt = f"""Fix this code issue:

Issue: {issue}

Code:
{_fenced(code, language)}

Change only what the fix requires.

Respond with a JSON object ONLY:
{{
  "fixed_code": "...",
  "explanation": "..."
}}"""
    return system, prompt


# ---------------------------------------------------------------------------
# Code agent
# ---------------------------------------------------------------------------

def analyze_task(
    task_type: str,
    description: str,
    file_path: str | None = None,
    code: str | None = None,
) -> tuple[str, str]:
    system = "You are an expert software architect. Analyze tasks precisely."
    parts = [
        "Analyze this coding task:",
        "",
        f"Type: {task_type}",
        f"Description: {description}",
    ]
    if file_path:
        parts.append(f"File: {file_path}")
    if code:
        parts += ["", "Existing code:", _fenced(code, "")]
    parts.append("""
Respond with a JSON object ONLY:
{
  "task_type": "generate|review|refactor|fix|test",
  "complexity": "low|medium|high",
  "estimated_lines": 40,
  "language": "...",
  "required_changes": ["..."],
  "potential_issues": ["..."],
  "dependencies": ["..."]
}""")
    return system, "\n".join(parts)


def plan_task(analysis: dict[str, Any]) -> tuple[str, str]:
    system = "You are an expert at planning software implementations."
    prompt = f"""Create an implementation plan for this task:

Analysis:
{json.dumps(analysis, indent=2)}

Respond with a JSON object ONLY:
{{
  "steps": [
    {{"order": 1, "action": "...", "tool": "...", "rationale": "..."}}
  ],
  "estimated_duration": "...",
  "risks": ["..."],
  "rollback_strategy": "..."
}}"""
    return system, prompt
