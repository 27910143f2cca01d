from __future__ import annotations

import json

import pytest

from flashdeck.ai.json_parser import parse_json_with_fallback, strip_json_fences


def test_strip_json_fences() -> None:
  assert strip_json_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
  assert strip_json_fences('{"a": 1}') == '{"a": 1}'


def test_parse_recovers_from_surrounding_prose() -> None:
  raw = 'Here are the segments:\n[{"start_sec": 0, "end_sec": 4, "text": "Hi [there]."}]\nThanks!'

  assert parse_json_with_fallback(raw) == [{"start_sec": 0, "end_sec": 4, "text": "Hi [there]."}]


def test_parse_recovers_from_trailing_commas() -> None:
  assert parse_json_with_fallback('{"cards": [{"q": "a"},],}') == {"cards": [{"q": "a"}]}


def test_parse_raises_without_json() -> None:
  with pytest.raises(json.JSONDecodeError):
    parse_json_with_fallback("no structured output here")
