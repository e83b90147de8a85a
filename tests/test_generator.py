"""Tests for generator output parsing and truncated-JSON repair."""

from __future__ import annotations

import json

import pytest

from src.lab.generator import (
    NullCandidateGenerator,
    Ok,
    ParseError,
    SchemaError,
    extract_json,
    parse_generator_output,
)
from src.lab.promoter import parse_risk_rules
from src.shell.contract import GenerationContext

CANDIDATE = {
    "strategy_name": "MES ORB Retest",
    "hypothesis": "Opening range breaks that retest hold during trending sessions",
    "archetype_name": "orb_breakout",
    "rules": {"entry": ["retest of OR high"], "exit": ["2R target"], "risk": ["stop 10 ticks"]},
    "confidence_score": 72,
    "confidence_breakdown": {
        "research_confidence": 60,
        "structural_soundness": 80,
        "historical_validation": 70,
        "regime_robustness": 65,
    },
}


class TestParse:
    def test_object_with_candidates(self):
        result = parse_generator_output(json.dumps({"candidates": [CANDIDATE]}))
        assert isinstance(result, Ok)
        assert result.dropped == 0
        assert result.repaired is None
        c = result.candidates[0]
        assert c.strategy_name == "MES ORB Retest"
        assert c.archetype_name == "orb_breakout"
        assert c.rules.risk == ["stop 10 ticks"]
        assert c.confidence_score == 72
        assert c.breakdown.structural_soundness == 80

    def test_defaults_applied(self):
        result = parse_generator_output(json.dumps([{"name": "MNQ Fade", "hypothesis": "h"}]))
        c = result.candidates[0]
        assert c.instrument_universe == ["MES", "MNQ"]
        assert c.timeframe_preferences == ["5m"]
        assert c.session_mode_preference == "FULL_24x5"
        assert c.confidence_score == 0

    def test_camel_case_keys(self):
        item = {
            "strategyName": "MNQ VWAP Reclaim",
            "hypothesis": "h",
            "archetypeName": "vwap_reclaim",
            "instrumentUniverse": "MNQ",
            "confidenceScore": 55,
            "confidenceBreakdown": {"researchConfidence": 40},
            "evidence": [{"title": "paper", "sourceTier": "primary"}],
            "noveltyJustification": {"distinctDeltas": ["session filter"]},
        }
        c = parse_generator_output(json.dumps({"candidates": [item]})).candidates[0]
        assert c.strategy_name == "MNQ VWAP Reclaim"
        assert c.instrument_universe == ["MNQ"]
        assert c.breakdown.research_confidence == 40
        assert c.evidence[0].source_tier == "PRIMARY"
        assert c.novelty_justification.distinct_deltas == ["session filter"]

    def test_string_rule_fields_are_single_rules(self):
        item = {
            "strategy_name": "MES ORB",
            "hypothesis": "h",
            "rules": {"entry": "break of opening range", "risk": "stop 10 ticks", "exit": ""},
        }
        c = parse_generator_output(json.dumps({"candidates": [item]})).candidates[0]
        assert c.rules.entry == ["break of opening range"]
        assert c.rules.risk == ["stop 10 ticks"]
        assert c.rules.exit == []
        assert parse_risk_rules(c.rules.risk) == {"stop_loss_ticks": 10}

    def test_incomplete_items_dropped(self):
        text = json.dumps({"candidates": [CANDIDATE, {"name": "no hypothesis"}]})
        result = parse_generator_output(text)
        assert len(result.candidates) == 1
        assert result.dropped == 1

    def test_fenced_and_prose_wrapped(self):
        fenced = "Here you go:\n```json\n" + json.dumps({"candidates": [CANDIDATE]}) + "\n```"
        assert len(parse_generator_output(fenced).candidates) == 1
        prose = "Sure! " + json.dumps({"candidates": []}) + " Let me know."
        assert parse_generator_output(prose) == Ok(candidates=[])


class TestErrors:
    def test_empty(self):
        assert parse_generator_output("  ") == ParseError("empty response")

    def test_no_json(self):
        result = parse_generator_output("I could not find any strategies today.")
        assert isinstance(result, ParseError)

    def test_missing_candidates_key(self):
        result = parse_generator_output('{"strategies": []}')
        assert isinstance(result, SchemaError)
        assert result.path == "candidates"

    def test_candidates_not_list(self):
        result = parse_generator_output('{"candidates": "none"}')
        assert isinstance(result, SchemaError)

    def test_item_not_object(self):
        result = parse_generator_output('{"candidates": [{"name": "a", "hypothesis": "b"}, 7]}')
        assert isinstance(result, SchemaError)
        assert result.path == "candidates[1]"

    def test_bad_field_type(self):
        item = {**CANDIDATE, "confidence_score": "high"}
        result = parse_generator_output(json.dumps({"candidates": [item]}))
        assert isinstance(result, SchemaError)
        assert result.path == "candidates[0]"


class TestRepair:
    def test_open_key_closed_with_null(self):
        text = '{"candidates": [{"name": "A", "hypothesis": "B", "expl'
        value, repaired = extract_json(text)
        assert repaired == "close_string_with_null"
        assert value["candidates"][0]["name"] == "A"

    def test_truncated_mid_value(self):
        first = json.dumps(CANDIDATE)
        text = '{"candidates": [' + first + ', {"name": "Trunc'
        result = parse_generator_output(text)
        assert isinstance(result, Ok)
        assert result.repaired is not None
        assert [c.strategy_name for c in result.candidates] == ["MES ORB Retest"]

    def test_unrepairable(self):
        with pytest.raises(ValueError):
            extract_json('{"a": ' + '{"b": ' * 11)


@pytest.mark.asyncio
async def test_null_generator_reports_failure():
    result = await NullCandidateGenerator().generate(GenerationContext())
    assert not result.success
    assert result.candidates == []
    assert result.error == "no generator configured"
