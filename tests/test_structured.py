from pydantic import BaseModel

from patchpilot.structured import MalformedOutputError, parse_structured, strip_fences


class Answer(BaseModel):
    value: int
    note: str = ""


def _default(raw: str) -> Answer:
    return Answer(value=-1, note=raw)


def test_plain_json_is_parsed():
    outcome = parse_structured('{"value": 3}', Answer, _default)

    assert not outcome.degraded
    assert outcome.value.value == 3


def test_fenced_json_is_parsed():
    outcome = parse_structured('```json\n{"value": 4, "note": "ok"}\n```', Answer, _default)

    assert not outcome.degraded
    assert outcome.value == Answer(value=4, note="ok")


def test_json_surrounded_by_prose_is_parsed():
    outcome = parse_structured('Sure! Here it is:\n{"value": 5}\nHope that helps.', Answer, _default)

    assert not outcome.degraded
    assert outcome.value.value == 5


def test_invalid_json_degrades_to_default():
    outcome = parse_structured("I could not do that.", Answer, _default)

    assert outcome.degraded
    assert outcome.value == Answer(value=-1, note="I could not do that.")
    assert isinstance(outcome.error, MalformedOutputError)
    assert outcome.raw_text == "I could not do that."


def test_schema_mismatch_degrades_to_default():
    outcome = parse_structured('{"value": "not a number"}', Answer, _default)

    assert outcome.degraded
    assert "Schema mismatch" in str(outcome.error)


def test_non_object_json_degrades():
    outcome = parse_structured("[1, 2, 3]", Answer, _default)
    assert outcome.degraded


def test_strip_fences():
    assert strip_fences("```python\nprint('hi')\n```") == "print('hi')"
    assert strip_fences("  plain text  ") == "plain text"
