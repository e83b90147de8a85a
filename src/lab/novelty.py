"""Novelty / dedup engine.

Two duplicate checks run before scoring (exact rules hash, same-name active
candidate) and are handled by the engine against the store. This module holds
the pure parts: the structural hash and the 0-100 uniqueness score.
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import Iterable, Optional

from src.shell.contract import CandidateRules

ARCHETYPE_WEIGHT = 0.4
HYPOTHESIS_WEIGHT = 0.3
RULES_WEIGHT = 0.3


def rules_hash(rules: CandidateRules | dict | None) -> str:
    """Content digest over the sorted rule lists. Order of rules does not matter."""
    if isinstance(rules, CandidateRules):
        rules = rules.to_dict()
    rules = rules or {}
    normalized = {
        key: sorted(str(r) for r in (rules.get(key) or []))
        for key in ("entry", "exit", "risk", "filters", "invalidation")
    }
    payload = json.dumps(normalized, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode()).hexdigest()[:32]


def tokenize(text: str | None) -> set[str]:
    if not text:
        return set()
    cleaned = re.sub(r"[^a-z0-9\s]", "", text.lower())
    return {w for w in cleaned.split() if len(w) > 2}


def rule_keywords(rules: CandidateRules | dict | None) -> set[str]:
    if isinstance(rules, CandidateRules):
        rules = rules.to_dict()
    if not rules:
        return set()
    words: set[str] = set()
    for key in ("entry", "exit", "filters", "risk"):
        for rule in rules.get(key) or []:
            cleaned = re.sub(r"[^a-z0-9]", " ", str(rule).lower())
            words.update(w for w in cleaned.split() if len(w) > 2)
    return words


def jaccard(a: set[str], b: set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def archetype_match(a: Optional[str], b: Optional[str]) -> float:
    if not a or not b:
        return 0.5
    return 1.0 if a.lower() == b.lower() else 0.0


def similarity(candidate: dict, other: dict) -> float:
    """Weighted similarity of two candidate rows (archetype_name, hypothesis, rules)."""
    return (
        ARCHETYPE_WEIGHT * archetype_match(candidate.get("archetype_name"), other.get("archetype_name"))
        + HYPOTHESIS_WEIGHT * jaccard(tokenize(candidate.get("hypothesis")), tokenize(other.get("hypothesis")))
        + RULES_WEIGHT * jaccard(rule_keywords(candidate.get("rules")), rule_keywords(other.get("rules")))
    )


def novelty_score(candidate: dict, others: Iterable[dict]) -> int:
    """100 minus the similarity to the closest neighbour, as an integer 0-100.

    Rows sharing the candidate's id are skipped. An empty population gives 100.
    """
    own_id = candidate.get("id")
    max_similarity = 0.0
    for other in others:
        if own_id is not None and other.get("id") == own_id:
            continue
        max_similarity = max(max_similarity, similarity(candidate, other))
    return max(0, min(100, round((1 - max_similarity) * 100)))
