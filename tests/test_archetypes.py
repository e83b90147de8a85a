"""Tests for archetype normalization, resolution and strategy classing."""

from __future__ import annotations

import pytest

from src.lab.archetypes import (
    detect_strategy_class,
    entry_condition_for,
    get_eval_thresholds,
    infer_archetype_from_name,
    match_name_keywords,
    normalize_archetype,
    normalize_name_to_slug,
    resolve_archetype,
)
from src.shell.contract import StrategyClass


class TestNormalize:
    def test_exact_vocabulary(self):
        assert normalize_archetype("Mean Reversion") == "mean_reversion"
        assert normalize_archetype("orb-breakout") == "orb_breakout"

    def test_alias(self):
        assert normalize_archetype("momo") == "momentum_surge"
        assert normalize_archetype("ORB") == "orb_breakout"

    def test_instrument_prefix_stripped(self):
        assert normalize_archetype("MES_vwap_bounce") == "vwap_bounce"
        assert normalize_archetype("mnq vol squeeze") == "breakout"

    def test_alias_must_be_whole_word(self):
        assert normalize_archetype("handicap") is None

    def test_empty(self):
        assert normalize_archetype(None) is None
        assert normalize_archetype("   ") is None


class TestInference:
    def test_symbol_prefixed_name(self):
        assert infer_archetype_from_name("MNQ Vol Squeeze") == "breakout"

    def test_substring_of_vocabulary(self):
        assert infer_archetype_from_name("MES Trend Rider") == "trend"

    def test_keyword_order_specific_first(self):
        # "squeeze" is listed before "momentum"
        assert match_name_keywords("Momentum Squeeze") == "breakout"
        assert match_name_keywords("Momentum Ladder") == "trend_following"

    def test_unknown_name(self):
        assert infer_archetype_from_name("Purple Lighthouse") is None


class TestResolve:
    def test_explicit_wins(self):
        res = resolve_archetype("MES Trend Rider", archetype_name="orb")
        assert res.valid
        assert res.archetype == "orb_breakout"
        assert res.source == "explicit"
        assert res.warnings == []

    def test_rules_payload_used_second(self):
        res = resolve_archetype("Purple Lighthouse", rules_archetype="vwap")
        assert res.valid
        assert res.archetype == "vwap"
        assert res.source == "rules"

    def test_name_inference_last(self):
        res = resolve_archetype("MNQ Vol Squeeze")
        assert res.archetype == "breakout"
        assert res.source == "name"
        assert any("Inferred" in w for w in res.warnings)

    def test_invalid_explicit_is_warning_then_continues(self):
        res = resolve_archetype("MNQ Vol Squeeze", archetype_name="not-a-thing")
        assert res.valid
        assert res.archetype == "breakout"
        assert any("not-a-thing" in w for w in res.warnings)

    def test_total_failure_fails_closed(self):
        res = resolve_archetype("Purple Lighthouse", archetype_name="not-a-thing")
        assert not res.valid
        assert res.archetype is None
        assert res.errors[0].code == "ARCHETYPE_UNDETERMINABLE"
        assert res.errors[0].to_dict()["field"] == "archetype_name"


@pytest.mark.parametrize("timeframe,expected", [
    ("1m", StrategyClass.SCALPING),
    ("3m", StrategyClass.SCALPING),
    ("5m", StrategyClass.INTRADAY),
    ("15m", StrategyClass.INTRADAY),
    ("1h", StrategyClass.INTRADAY),
    ("4h", StrategyClass.SWING),
    ("1d", StrategyClass.SWING),
    ("daily", StrategyClass.SWING),
    ("1w", StrategyClass.POSITION),
    ("1M", StrategyClass.POSITION),
    ("1mo", StrategyClass.POSITION),
    ("7m", StrategyClass.INTRADAY),
    (None, StrategyClass.INTRADAY),
    (["2m", "1h"], StrategyClass.SCALPING),
])
def test_detect_strategy_class(timeframe, expected):
    assert detect_strategy_class(timeframe) == expected


def test_eval_thresholds_archetype_specific():
    t = get_eval_thresholds("range_scalper", "5m")
    assert (t.min_trades, t.min_days) == (80, 3)
    t = get_eval_thresholds("mean_reversion", "4h")
    assert (t.min_trades, t.min_days) == (60, 5)


def test_eval_thresholds_fall_back_to_class():
    t = get_eval_thresholds(None, "4h")
    assert (t.min_trades, t.min_days) == (20, 7)
    t = get_eval_thresholds("unknown_thing", "1m")
    assert (t.min_trades, t.min_days) == (75, 3)
    assert "SCALPING" in t.description


def test_slug_ignores_case_and_spacing():
    assert normalize_name_to_slug("Vol Comp Break") == normalize_name_to_slug("VolCompBreak")
    assert normalize_name_to_slug("MES-Gap_Fade 2") == "mesgapfade2"


def test_entry_condition():
    assert entry_condition_for("scalping") == "TREND_CONTINUATION"
    assert entry_condition_for("range_scalper") == "RANGE_SCALP"
    assert entry_condition_for("whatever") == "TREND_CONTINUATION"
