"""Candidate generator boundary.

The research provider (LLM / web research) lives outside this repository and
is plugged in through the CandidateGenerator protocol. Providers that return
raw model text use parse_generator_output(), which turns it into a tagged
result: Ok(candidates), ParseError or SchemaError. Field defaults are
resolved here so the engine only sees fully-populated ResearchCandidates.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Union

import structlog

from src.shell.contract import (
    CandidateRules,
    ConfidenceBreakdown,
    Evidence,
    GenerationContext,
    GeneratorResult,
    NoveltyJustification,
    ResearchCandidate,
)

log = structlog.get_logger()

MAX_REPAIR_DEPTH = 10


class CandidateGenerator(Protocol):
    async def generate(self, context: GenerationContext) -> GeneratorResult: ...


class NullCandidateGenerator:
    """Default wiring when no research provider is configured."""

    async def generate(self, context: GenerationContext) -> GeneratorResult:
        return GeneratorResult(candidates=[], success=False, error="no generator configured")


# --- Tagged parse result ---

@dataclass(frozen=True)
class Ok:
    candidates: list[ResearchCandidate]
    dropped: int = 0
    repaired: Optional[str] = None


@dataclass(frozen=True)
class ParseError:
    message: str


@dataclass(frozen=True)
class SchemaError:
    message: str
    path: str = ""


ParseResult = Union[Ok, ParseError, SchemaError]


# --- JSON extraction & repair ---

def _strip_fences(text: str) -> str:
    text = text.strip()
    if "```" in text:
        start = text.find("```")
        body = text[start + 3:]
        newline = body.find("\n")
        # drop a language tag such as ```json
        if newline >= 0 and body[:newline].strip().isalpha():
            body = body[newline + 1:]
        end = body.rfind("```")
        text = body[:end] if end >= 0 else body
    return text.strip()


def _bracket_stack(text: str) -> tuple[list[str], bool]:
    """Closers still owed at the end of text, and whether a string is open."""
    stack: list[str] = []
    in_string = False
    escaped = False
    for c in text:
        if escaped:
            escaped = False
            continue
        if c == "\\" and in_string:
            escaped = True
            continue
        if c == '"':
            in_string = not in_string
            continue
        if not in_string:
            if c == "{":
                stack.append("}")
            elif c == "[":
                stack.append("]")
            elif c in "}]" and stack:
                stack.pop()
    return stack, in_string


def _strip_trailing(text: str, chars: str) -> str:
    stripped = text.rstrip()
    if stripped and stripped[-1] in chars:
        return stripped[:-1]
    return text


def _repair_attempts(content: str) -> list[tuple[str, str]]:
    stack, in_string = _bracket_stack(content)
    attempts = []

    first = content
    if in_string:
        first += '"'
        if stack and stack[-1] == "}":
            first += ": null"
    first = _strip_trailing(first, ",:") + "".join(reversed(stack))
    attempts.append(("close_string_with_null", first))

    last_valid = -1
    in_str = False
    escaped = False
    for i, c in enumerate(content):
        if escaped:
            escaped = False
            continue
        if c == "\\" and in_str:
            escaped = True
            continue
        if c == '"':
            in_str = not in_str
            continue
        if not in_str and c in "}],":
            last_valid = i
    if last_valid > len(content) / 2:
        truncated = content[: last_valid + 1]
        stack2, _ = _bracket_stack(truncated)
        truncated = _strip_trailing(truncated, ",") + "".join(reversed(stack2))
        attempts.append(("truncate_to_last_valid", truncated))

    third = _strip_trailing(content, ",:") + "".join(reversed(stack))
    attempts.append(("close_brackets_only", third))
    return attempts


def extract_json(text: str) -> tuple[Any, Optional[str]]:
    """Parse the first JSON object/array in text. Returns (value, repair_used).

    Raises ValueError when nothing parses.
    """
    text = _strip_fences(text)
    try:
        return json.loads(text), None
    except json.JSONDecodeError:
        pass

    starts = [i for i in (text.find("{"), text.find("[")) if i >= 0]
    if not starts:
        raise ValueError("no JSON object or array found")
    start = min(starts)
    opener = text[start]
    closer = "}" if opener == "{" else "]"
    content = text[start:]

    depth = 0
    in_string = False
    escaped = False
    for i, c in enumerate(content):
        if escaped:
            escaped = False
            continue
        if c == "\\" and in_string:
            escaped = True
            continue
        if c == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if c == opener:
            depth += 1
        elif c == closer:
            depth -= 1
            if depth == 0:
                try:
                    return json.loads(content[: i + 1]), None
                except json.JSONDecodeError as e:
                    raise ValueError(f"balanced JSON failed to parse: {e}") from e

    if 0 < depth <= MAX_REPAIR_DEPTH:
        log.warning("generator.json_truncated", depth=depth, length=len(content))
        for name, attempt in _repair_attempts(content):
            try:
                value = json.loads(attempt)
            except json.JSONDecodeError:
                continue
            log.info("generator.json_repaired", strategy=name, length=len(attempt))
            return value, name

    raise ValueError(f"unterminated JSON (depth={depth})")


# --- Schema mapping ---

def _pick(data: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _str_list(value: Any, default: list[str] | None = None) -> list[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        items = [str(v) for v in value if v is not None]
        return items or list(default or [])
    return list(default or [])


def _to_candidate(item: dict) -> Optional[ResearchCandidate]:
    name = str(_pick(item, "strategy_name", "strategyName", "name", default="")).strip()
    hypothesis = str(_pick(item, "hypothesis", default="")).strip()
    if not name or not hypothesis:
        return None

    raw_rules = _pick(item, "rules", default={})
    rules = CandidateRules.from_dict(raw_rules if isinstance(raw_rules, dict) else {})

    evidence = []
    for ev in _pick(item, "evidence", default=[]) or []:
        if not isinstance(ev, dict):
            continue
        evidence.append(Evidence(
            title=str(ev.get("title", "")),
            url=str(ev.get("url", "")),
            source_tier=str(_pick(ev, "source_tier", "sourceTier", default="TERTIARY")).upper(),
            snippet=str(ev.get("snippet", "")),
            supports=_str_list(ev.get("supports"), ["hypothesis"]),
        ))

    nj = _pick(item, "novelty_justification", "noveltyJustification", default={})
    nj = nj if isinstance(nj, dict) else {}
    novelty = NoveltyJustification(
        closest_known=_str_list(_pick(nj, "closest_known", "closestKnown")),
        distinct_deltas=_str_list(_pick(nj, "distinct_deltas", "distinctDeltas")),
        why_it_matters=str(_pick(nj, "why_it_matters", "whyItMatters", default="")),
    )

    bd = _pick(item, "confidence_breakdown", "confidenceBreakdown", default={})
    bd = bd if isinstance(bd, dict) else {}
    breakdown = ConfidenceBreakdown(
        research_confidence=int(_pick(bd, "research_confidence", "researchConfidence", default=0)),
        structural_soundness=int(_pick(bd, "structural_soundness", "structuralSoundness", default=0)),
        historical_validation=int(_pick(bd, "historical_validation", "historicalValidation", default=0)),
        regime_robustness=int(_pick(bd, "regime_robustness", "regimeRobustness", default=0)),
    )

    explainers = _pick(item, "explainers", default={})
    return ResearchCandidate(
        strategy_name=name,
        hypothesis=hypothesis,
        rules=rules,
        archetype_name=_pick(item, "archetype_name", "archetypeName", "archetype"),
        instrument_universe=_str_list(
            _pick(item, "instrument_universe", "instrumentUniverse"), ["MES", "MNQ"]
        ),
        timeframe_preferences=_str_list(
            _pick(item, "timeframe_preferences", "timeframePreferences"), ["5m"]
        ),
        session_mode_preference=str(
            _pick(item, "session_mode_preference", "sessionModePreference", default="FULL_24x5")
        ),
        evidence=evidence,
        novelty_justification=novelty,
        explainers=explainers if isinstance(explainers, dict) else {},
        confidence_score=int(_pick(item, "confidence_score", "confidenceScore", default=0)),
        breakdown=breakdown,
    )


def parse_generator_output(text: str) -> ParseResult:
    if not text or not text.strip():
        return ParseError("empty response")
    try:
        data, repaired = extract_json(text)
    except ValueError as e:
        log.warning("generator.parse_failed", error=str(e), length=len(text))
        return ParseError(str(e))

    if isinstance(data, dict):
        if "candidates" not in data:
            return SchemaError("object has no 'candidates' key", path="candidates")
        items = data["candidates"]
    else:
        items = data
    if not isinstance(items, list):
        return SchemaError("'candidates' must be a list", path="candidates")

    candidates = []
    dropped = 0
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            return SchemaError(f"candidate {i} is not an object", path=f"candidates[{i}]")
        try:
            candidate = _to_candidate(item)
        except (TypeError, ValueError) as e:
            return SchemaError(f"candidate {i}: {e}", path=f"candidates[{i}]")
        if candidate is None:
            dropped += 1
            continue
        candidates.append(candidate)

    if dropped:
        log.info("generator.candidates_dropped", dropped=dropped, kept=len(candidates))
    return Ok(candidates=candidates, dropped=dropped, repaired=repaired)
