"""Disposition gate.

Pure decision for a candidate that survived dedup and archetype resolution.
Order matters: hard structural floor, experimental path, promote threshold,
queue floor, reject.
"""

from __future__ import annotations

from dataclasses import dataclass

from src.shell.contract import ConfidenceBreakdown, Disposition

QUEUE_FLOOR = 40
STRUCTURAL_HARD_FLOOR = 10
EXPERIMENTAL_MAX_RESEARCH = 8
EXPERIMENTAL_MIN_STRUCTURE = 15


@dataclass(frozen=True)
class GateDecision:
    disposition: Disposition
    reason: str
    reason_code: str


def decide_disposition(
    breakdown: ConfidenceBreakdown,
    adjusted_score: int,
    promote_threshold: int,
    require_manual_approval: bool,
) -> GateDecision:
    structural = breakdown.structural_soundness
    research = breakdown.research_confidence

    if structural < STRUCTURAL_HARD_FLOOR:
        return GateDecision(
            Disposition.REJECTED,
            f"Structural soundness {structural} < {STRUCTURAL_HARD_FLOOR} (hard gate)",
            "HARD_GATE",
        )

    if research < EXPERIMENTAL_MAX_RESEARCH and structural > EXPERIMENTAL_MIN_STRUCTURE:
        disposition = Disposition.PENDING_REVIEW if require_manual_approval else Disposition.QUEUED
        return GateDecision(
            disposition,
            f"Experimental: low research ({research}) but solid structure ({structural}), needs review",
            "EXPERIMENTAL",
        )

    if adjusted_score >= promote_threshold:
        if require_manual_approval:
            return GateDecision(
                Disposition.PENDING_REVIEW,
                f"Score {adjusted_score} >= {promote_threshold}, awaiting manual approval",
                "AWAITING_APPROVAL",
            )
        return GateDecision(
            Disposition.SENT_TO_LAB,
            f"Score {adjusted_score} >= {promote_threshold}, auto-promoted",
            "AUTO_PROMOTED",
        )

    if adjusted_score >= QUEUE_FLOOR:
        return GateDecision(
            Disposition.QUEUED,
            f"Score {adjusted_score} between {QUEUE_FLOOR} and {promote_threshold}",
            "QUEUED",
        )

    return GateDecision(
        Disposition.REJECTED,
        f"Score {adjusted_score} < {QUEUE_FLOOR}",
        "LOW_SCORE",
    )
