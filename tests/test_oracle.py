"""
Tests for the oracle adapter: JSON extraction, lenient coercion, verdict mapping.
"""

from unittest.mock import AsyncMock

import pytest

from labelscan.core.gemini import GeminiRequestError
from labelscan.core.oracle import (
    IngredientOracle,
    OracleOk,
    OracleParseError,
    coerce_bool,
    ensure_string_list,
    extract_json_object,
    parse_oracle_text,
    parse_verdicts,
)
from labelscan.core.sources import CandidateSource, FilteredCandidate, VerifiedSource


def _batch(*urls):
    return [
        FilteredCandidate(candidate=CandidateSource(url=u, raw_title="Acme", body_text="Ingredients: water"))
        for u in urls
    ]


class TestExtractJsonObject:
    """Tests for extract_json_object."""

    def test_clean_json(self):
        assert extract_json_object('{"sources": []}') == {"sources": []}

    def test_bare_list_is_wrapped(self):
        assert extract_json_object('[{"url": "u"}]') == {"sources": [{"url": "u"}]}

    def test_fenced_block_with_prose(self):
        text = 'Sure! Here is the result:\n```json\n{"productName": "Acme"}\n```\nLet me know.'

        assert extract_json_object(text) == {"productName": "Acme"}

    def test_braces_inside_strings_and_nesting(self):
        text = 'Result: {"a": "x}y", "b": {"c": 1}} and then {broken'

        assert extract_json_object(text) == {"a": "x}y", "b": {"c": 1}}

    def test_skips_invalid_leading_object(self):
        text = 'Note {not json} answer {"ok": true}'

        assert extract_json_object(text) == {"ok": True}

    def test_escaped_quotes(self):
        text = 'prefix {"q": "say \\"hi\\" }"} suffix'

        assert extract_json_object(text) == {"q": 'say "hi" }'}

    def test_empty_raises(self):
        with pytest.raises(ValueError):
            extract_json_object("   ")

    def test_no_object_raises(self):
        with pytest.raises(ValueError):
            extract_json_object("I could not find any ingredients.")


class TestParseOracleText:
    """Tests for parse_oracle_text."""

    def test_ok(self):
        result = parse_oracle_text('{"x": 1}')

        assert isinstance(result, OracleOk)
        assert result.payload == {"x": 1}
        assert result.raw == '{"x": 1}'

    def test_parse_error_keeps_raw(self):
        result = parse_oracle_text("nope")

        assert isinstance(result, OracleParseError)
        assert result.raw == "nope"


class TestCoercion:
    """Tests for coerce_bool and ensure_string_list."""

    @pytest.mark.parametrize("value,expected", [
        (True, True),
        (False, False),
        ("true", True),
        (" Yes ", True),
        ("false", False),
        ("", False),
        (1, True),
        (0, False),
        (None, False),
        ({"a": 1}, False),
    ])
    def test_coerce_bool(self, value, expected):
        assert coerce_bool(value) is expected

    def test_ensure_string_list(self):
        assert ensure_string_list(["Water", " ", None, 3, {"x": 1}]) == ["Water", "3"]
        assert ensure_string_list("Water") == ["Water"]
        assert ensure_string_list(None) == []


class TestParseVerdicts:
    """Tests for parse_verdicts."""

    def test_matches_by_url_in_batch_order(self):
        batch = _batch("https://a.com/1", "https://b.com/2")
        payload = {"sources": [
            {"url": "https://b.com/2", "hasIngredients": False, "ingredients": []},
            {"url": "https://a.com/1", "hasIngredients": True, "ingredients": ["Water", "Salt"]},
        ]}

        verdicts = parse_verdicts(payload, batch)

        assert [v.url for v in verdicts] == ["https://a.com/1", "https://b.com/2"]
        assert verdicts[0].has_ingredients is True
        assert verdicts[0].ingredients == ("Water", "Salt")
        assert verdicts[1].has_ingredients is False

    def test_unknown_url_falls_back_to_position(self):
        batch = _batch("https://a.com/1", "https://b.com/2")
        payload = {"sources": [{"url": "https://a.com/1?ref=x", "hasIngredients": "true"}]}

        verdicts = parse_verdicts(payload, batch)

        assert len(verdicts) == 1
        assert verdicts[0].url == "https://a.com/1"
        assert verdicts[0].has_ingredients is True

    def test_ingredients_imply_has_ingredients(self):
        batch = _batch("https://a.com/1")
        payload = {"sources": [{"url": "https://a.com/1", "ingredients": ["Water"]}]}

        assert parse_verdicts(payload, batch)[0].has_ingredients is True

    def test_skipped_and_garbage_entries(self):
        batch = _batch("https://a.com/1", "https://b.com/2")
        payload = {"sources": ["garbage", {"url": "https://b.com/2", "hasIngredients": True}, {"url": "x"}]}

        verdicts = parse_verdicts(payload, batch)

        assert [v.url for v in verdicts] == ["https://b.com/2"]

    def test_missing_sources_key(self):
        assert parse_verdicts({"result": "ok"}, _batch("https://a.com/1")) == []


class TestIngredientOracle:
    """Tests for IngredientOracle with a mocked generator."""

    @pytest.mark.asyncio
    async def test_verify_sends_batch_and_parses(self):
        generate = AsyncMock(return_value='```json\n{"sources": [{"url": "https://a.com/1", "hasIngredients": true}]}\n```')
        oracle = IngredientOracle(generate=generate)

        result = await oracle.verify(_batch("https://a.com/1"))

        assert isinstance(result, OracleOk)
        assert result.payload["sources"][0]["hasIngredients"] is True
        prompt, schema = generate.call_args.args
        assert "https://a.com/1" in prompt
        assert schema["required"] == ["sources"]

    @pytest.mark.asyncio
    async def test_analyze_sends_sources(self):
        generate = AsyncMock(return_value='{"productName": "Acme", "unifiedIngredientList": ["Water"]}')
        oracle = IngredientOracle(generate=generate)
        sources = [VerifiedSource(url="https://a.com/1", title="Acme", ingredients_text="Water", ingredients=("Water",))]

        result = await oracle.analyze(sources)

        assert result.payload["productName"] == "Acme"
        prompt, schema = generate.call_args.args
        assert '"ingredients": ["Water"]' in prompt
        assert "dietaryCompliance" in schema["required"]

    @pytest.mark.asyncio
    async def test_malformed_output_is_a_parse_error(self):
        oracle = IngredientOracle(generate=AsyncMock(return_value="I am unable to help with that."))

        result = await oracle.verify(_batch("https://a.com/1"))

        assert isinstance(result, OracleParseError)
        assert result.raw == "I am unable to help with that."

    @pytest.mark.asyncio
    async def test_transport_errors_propagate(self):
        oracle = IngredientOracle(generate=AsyncMock(side_effect=GeminiRequestError("boom", status_code=500)))

        with pytest.raises(GeminiRequestError):
            await oracle.verify(_batch("https://a.com/1"))
