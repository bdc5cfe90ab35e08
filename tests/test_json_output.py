"""Tests for visual_tavern.json_output: lenient JSON extraction."""

import pytest

from visual_tavern.errors import LLMOutputError
from visual_tavern.json_output import parse_json_output


class TestParseJsonOutput:
    def test_plain_object(self) -> None:
        assert parse_json_output('{"selectedNpcId": "mira"}') == {"selectedNpcId": "mira"}

    def test_code_fence(self) -> None:
        text = 'Here you go:\n```json\n{"shouldGenerateNew": true}\n```\nGood luck!'
        assert parse_json_output(text) == {"shouldGenerateNew": True}

    def test_bare_fence(self) -> None:
        assert parse_json_output('```\n{"a": 1}\n```') == {"a": 1}

    def test_object_inside_prose(self) -> None:
        text = 'I think {"selectedNpcId": "old_tom", "reason": "he knows"} fits best.'
        assert parse_json_output(text)["selectedNpcId"] == "old_tom"

    def test_trailing_commas(self) -> None:
        assert parse_json_output('{"a": [1, 2,], "b": 3,}') == {"a": [1, 2], "b": 3}

    def test_repair_keeps_punctuation_inside_strings(self) -> None:
        text = '{"eventDescription": "他说：“快走，”", "eventTitle": "x",}'
        data = parse_json_output(text)
        assert data["eventDescription"] == "他说：“快走，”"
        assert data["eventTitle"] == "x"

    def test_unquoted_keys_repaired(self) -> None:
        assert parse_json_output("{selectedNpcId: 'mira'}") == {"selectedNpcId": "mira"}

    def test_empty_object_rejected(self) -> None:
        with pytest.raises(LLMOutputError):
            parse_json_output("{}")

    def test_array_is_rejected(self) -> None:
        with pytest.raises(LLMOutputError):
            parse_json_output("[1, 2, 3]")

    def test_no_json(self) -> None:
        with pytest.raises(LLMOutputError, match="No valid JSON object"):
            parse_json_output("I'd rather not decide.")

    def test_empty(self) -> None:
        with pytest.raises(LLMOutputError):
            parse_json_output("")
