"""
Structured model output.

Model replies that are supposed to be JSON come back in one of two shapes:

  Parsed(value, raw_text)            the reply validated against its schema
  Degraded(value, raw_text, error)   a conservative default stood in for it

Callers branch on `.degraded` instead of trusting parsed fields blindly.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar, Union

from loguru import logger
from pydantic import BaseModel, ValidationError

T = TypeVar("T", bound=BaseModel)


class MalformedOutputError(Exception):
    """A completion that could not be parsed into its expected structure."""


@dataclass(frozen=True)
class Parsed(Generic[T]):
    value: T
    raw_text: str

    @property
    def degraded(self) -> bool:
        return False


@dataclass(frozen=True)
class Degraded(Generic[T]):
    value: T
    raw_text: str
    error: MalformedOutputError

    @property
    def degraded(self) -> bool:
        return True


Outcome = Union[Parsed[T], Degraded[T]]


_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_+-]*\s*$")


def strip_fences(text: str) -> str:
    """Drop Markdown code fence lines (```json, ```python, ```)."""
    content = text.strip()
    if "```" not in content:
        return content
    lines = [line for line in content.split("\n") if not _FENCE_RE.match(line.strip())]
    return "\n".join(lines).strip()


def _extract_json_object(text: str) -> str | None:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start:end + 1]


def load_json_object(text: str) -> dict:
    """Parse a JSON object out of a model reply, tolerating fences and prose around it."""
    content = strip_fences(text)
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        candidate = _extract_json_object(content)
        if candidate is None:
            raise MalformedOutputError(f"No JSON object in reply: {e}") from e
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError as inner:
            raise MalformedOutputError(f"Invalid JSON: {inner}") from inner

    if not isinstance(data, dict):
        raise MalformedOutputError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_structured(
    text: str,
    schema: type[T],
    default: Callable[[str], T],
    label: str = "output",
) -> Outcome[T]:
    """Validate `text` against `schema`, or fall back to `default(raw_text)`.

    Never raises. The fallback is logged so degraded runs stay visible.
    """
    try:
        data = load_json_object(text)
        return Parsed(value=schema.model_validate(data), raw_text=text)
    except MalformedOutputError as e:
        error = e
    except ValidationError as e:
        error = MalformedOutputError(f"Schema mismatch: {e.error_count()} error(s)")

    logger.warning(f"[PARSE] {label} degraded — {error}")
    logger.debug(f"[PARSE] Raw response: {text[:500]}")
    return Degraded(value=default(text), raw_text=text, error=error)
