"""Lab Contract: shared types between the shell, the lab engine and its collaborators.

The candidate generator, persistence layer and API all speak these types.
Enums are str-valued so they round-trip through SQLite and JSON unchanged.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


# --- Enums ---

class Disposition(str, Enum):
    SENT_TO_LAB = "SENT_TO_LAB"
    QUEUED = "QUEUED"
    PENDING_REVIEW = "PENDING_REVIEW"
    REJECTED = "REJECTED"
    MERGED = "MERGED"
    EXPIRED = "EXPIRED"
    QUEUED_FOR_QC = "QUEUED_FOR_QC"


ACTIVE_DISPOSITIONS = (Disposition.PENDING_REVIEW, Disposition.QUEUED, Disposition.SENT_TO_LAB)


class CandidateSource(str, Enum):
    LAB_FEEDBACK = "LAB_FEEDBACK"
    BURST_RESEARCH = "BURST_RESEARCH"
    SCHEDULED_RESEARCH = "SCHEDULED_RESEARCH"


class RegimeTrigger(str, Enum):
    VOLATILITY_SPIKE = "VOLATILITY_SPIKE"
    VOLATILITY_COMPRESSION = "VOLATILITY_COMPRESSION"
    TRENDING_STRONG = "TRENDING_STRONG"
    RANGE_BOUND = "RANGE_BOUND"
    LIQUIDITY_THIN = "LIQUIDITY_THIN"
    NEWS_SHOCK = "NEWS_SHOCK"
    MACRO_EVENT_CLUSTER = "MACRO_EVENT_CLUSTER"
    NONE = "NONE"


class StrategyClass(str, Enum):
    SCALPING = "SCALPING"
    INTRADAY = "INTRADAY"
    SWING = "SWING"
    POSITION = "POSITION"


class RecycleDecision(str, Enum):
    CONTINUE = "CONTINUE"
    TWEAK = "TWEAK"
    REPLACE = "REPLACE"
    KILL = "KILL"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"


class Severity(str, Enum):
    NONE = "NONE"
    MINOR = "MINOR"
    MAJOR = "MAJOR"
    CRITICAL = "CRITICAL"


class FailureReason(str, Enum):
    UNDERPERFORMANCE = "UNDERPERFORMANCE"
    DEGRADATION = "DEGRADATION"
    REGIME_MISMATCH = "REGIME_MISMATCH"
    STAGNATION = "STAGNATION"
    HIGH_DRAWDOWN = "HIGH_DRAWDOWN"
    LOW_SHARPE = "LOW_SHARPE"
    LOW_WIN_RATE = "LOW_WIN_RATE"
    EXCESSIVE_LOSSES = "EXCESSIVE_LOSSES"
    STRUCTURAL_FLAW = "STRUCTURAL_FLAW"
    TIMING_INEFFICIENCY = "TIMING_INEFFICIENCY"
    RISK_MISCALIBRATION = "RISK_MISCALIBRATION"
    EXECUTION_INEFFICIENCY = "EXECUTION_INEFFICIENCY"
    LIQUIDITY_MISMATCH = "LIQUIDITY_MISMATCH"


class FeedbackState(str, Enum):
    IDLE = "IDLE"
    FAILURE_DETECTED = "FAILURE_DETECTED"
    RESEARCHING_REPLACEMENT = "RESEARCHING_REPLACEMENT"
    RESEARCHING_REPAIR = "RESEARCHING_REPAIR"
    CANDIDATE_FOUND = "CANDIDATE_FOUND"
    CANDIDATE_TESTING = "CANDIDATE_TESTING"
    RESOLVED = "RESOLVED"
    ABANDONED = "ABANDONED"


TERMINAL_FEEDBACK_STATES = (FeedbackState.RESOLVED, FeedbackState.ABANDONED)


class ResolutionCode(str, Enum):
    REPLACED = "REPLACED"
    REPAIRED = "REPAIRED"
    MANUAL = "MANUAL"
    ABANDONED = "ABANDONED"


class SchedulerMode(str, Enum):
    SCANNING = "SCANNING"
    BALANCED = "BALANCED"
    DEEP_RESEARCH = "DEEP_RESEARCH"


class BotStage(str, Enum):
    CANDIDATE = "CANDIDATE"
    TRIALS = "TRIALS"
    PAPER = "PAPER"
    SHADOW = "SHADOW"
    CANARY = "CANARY"
    LIVE = "LIVE"


# --- Candidate payload (generator -> lab) ---

@dataclass
class CandidateRules:
    entry: list[str] = field(default_factory=list)
    exit: list[str] = field(default_factory=list)
    risk: list[str] = field(default_factory=list)
    filters: list[str] = field(default_factory=list)
    invalidation: list[str] = field(default_factory=list)
    archetype: Optional[str] = None  # some generators embed the archetype in the rules payload

    def to_dict(self) -> dict:
        data = {
            "entry": list(self.entry),
            "exit": list(self.exit),
            "risk": list(self.risk),
            "filters": list(self.filters),
            "invalidation": list(self.invalidation),
        }
        if self.archetype:
            data["archetype"] = self.archetype
        return data

    @classmethod
    def from_dict(cls, data: dict | None) -> CandidateRules:
        data = data or {}
        return cls(
            entry=_rule_list(data.get("entry")),
            exit=_rule_list(data.get("exit")),
            risk=_rule_list(data.get("risk")),
            filters=_rule_list(data.get("filters")),
            invalidation=_rule_list(data.get("invalidation")),
            archetype=data.get("archetype") or None,
        )


def _rule_list(value) -> list[str]:
    # a bare string is one rule, not a sequence of characters
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(x) for x in value if x is not None]
    return []


@dataclass
class Evidence:
    title: str = ""
    url: str = ""
    source_tier: str = "TERTIARY"   # PRIMARY / SECONDARY / TERTIARY
    snippet: str = ""
    supports: list[str] = field(default_factory=lambda: ["hypothesis"])


@dataclass
class NoveltyJustification:
    closest_known: list[str] = field(default_factory=list)
    distinct_deltas: list[str] = field(default_factory=list)
    why_it_matters: str = ""


@dataclass
class ConfidenceBreakdown:
    research_confidence: int = 0
    structural_soundness: int = 0
    historical_validation: int = 0
    regime_robustness: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class FailureContext:
    """Summary of a failing bot, handed to the generator to bias re-research."""
    reason_codes: list[str] = field(default_factory=list)
    performance_deltas: dict[str, float] = field(default_factory=dict)
    regime_at_failure: str = "UNKNOWN"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ResearchCandidate:
    strategy_name: str
    hypothesis: str
    rules: CandidateRules = field(default_factory=CandidateRules)
    archetype_name: Optional[str] = None
    instrument_universe: list[str] = field(default_factory=lambda: ["MES", "MNQ"])
    timeframe_preferences: list[str] = field(default_factory=lambda: ["5m"])
    session_mode_preference: str = "FULL_24x5"
    evidence: list[Evidence] = field(default_factory=list)
    novelty_justification: NoveltyJustification = field(default_factory=NoveltyJustification)
    explainers: dict[str, Any] = field(default_factory=dict)
    triggered_by_regime: Optional[str] = None
    confidence_score: int = 0
    breakdown: ConfidenceBreakdown = field(default_factory=ConfidenceBreakdown)
    source_failure: Optional[FailureContext] = None


@dataclass
class GenerationContext:
    regime_trigger: Optional[RegimeTrigger] = None
    source_bot_id: Optional[str] = None
    source_failure: Optional[FailureContext] = None
    trace_id: str = ""


@dataclass
class GeneratorResult:
    candidates: list[ResearchCandidate] = field(default_factory=list)
    success: bool = True
    error: Optional[str] = None


# --- Evaluation types ---

@dataclass(frozen=True)
class EvalThresholds:
    min_trades: int
    min_days: int
    min_regimes: int = 2
    description: str = ""


@dataclass
class RecycleEvaluation:
    decision: RecycleDecision
    reasons: list[str]
    meets_min_eval: bool
    current_trades: int
    required_trades: int
    current_days: float
    required_days: int
    metrics: dict[str, float]
    is_catastrophic: bool
    iteration_count: int


@dataclass(frozen=True)
class RecycleVerdict:
    decision: RecycleDecision
    reason: str


@dataclass
class FailureMetrics:
    sharpe_ratio: float = 0.0
    max_drawdown_pct: float = 0.0
    win_rate: float = 0.0
    trade_count: int = 0
    days_since_last_trade: int = 0
    degradation_pct: float = 0.0


@dataclass
class FailureDetection:
    bot_id: str
    bot_name: str
    is_failure: bool
    reason_codes: list[FailureReason]
    reasons: list[str]
    severity: Severity
    meets_evaluation_threshold: bool
    metrics: FailureMetrics
    regime_at_detection: str = "UNKNOWN"
    strategy_class: Optional[StrategyClass] = None
    min_trades_required: Optional[int] = None
    recycle_decision: Optional[RecycleDecision] = None
    recycle_reason: Optional[str] = None
    recycle_evaluation: Optional[RecycleEvaluation] = None
    detected_at: Optional[datetime] = None

    def to_failure_context(self) -> FailureContext:
        return FailureContext(
            reason_codes=[c.value for c in self.reason_codes],
            performance_deltas={
                "sharpe_ratio": self.metrics.sharpe_ratio,
                "max_drawdown_pct": self.metrics.max_drawdown_pct,
                "win_rate": self.metrics.win_rate,
            },
            regime_at_failure=self.regime_at_detection,
        )


@dataclass
class FeedbackLoop:
    tracking_id: str
    source_bot_id: str
    state: FeedbackState
    failure_reason_codes: list[str]
    candidate_ids: list[str]
    best_candidate_id: Optional[str]
    created_at: str
    updated_at: str
    resolution_code: Optional[str] = None
    resolution_notes: Optional[str] = None
    replacement_bot_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.state not in TERMINAL_FEEDBACK_STATES

    def to_dict(self) -> dict:
        data = asdict(self)
        data["state"] = self.state.value
        return data


# --- Cycle bookkeeping ---

@dataclass
class CycleStats:
    cycle_id: str
    timestamp: datetime
    trigger: str
    candidates_generated: int = 0
    sent_to_lab: int = 0
    queued: int = 0
    rejected: int = 0
    merged: int = 0
    duration_ms: int = 0
    depth: str = ""

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class ProcessResult:
    disposition: Disposition
    candidate_id: Optional[str]
    reason: str
    reason_code: str = ""


@dataclass(frozen=True)
class PipelineSnapshot:
    pending_review: int
    in_lab: int
