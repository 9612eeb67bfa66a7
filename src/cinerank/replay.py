"""
Counterfactual replay of historical exposures under alternate parameters.

Pre-rerank relevance is not stored verbatim, so under a new lambda each
exposure's relevance is approximated from its stored base score and diversity
rank. Treat results as directional estimates, not ground truth.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from .models import SuggestionExposure, Feedback, Polarity, ConsensusLevel
from .config import SOURCE_WEIGHTS, REPLAY_LOOKBACK_DAYS, REPLAY_SERVING_SIZE, REPLAY_RANK_PENALTY

logger = logging.getLogger(__name__)


@dataclass
class ReplayParams:
    """Proposed parameters; None keeps whatever each exposure was served with."""
    mmr_lambda: float | None = None
    source_weights: dict[str, float] | None = None

    def validate(self) -> None:
        if self.mmr_lambda is not None and not 0.0 <= self.mmr_lambda <= 1.0:
            raise ValueError("mmr_lambda must be in [0, 1]")
        if self.source_weights is not None and any(w < 0 for w in self.source_weights.values()):
            raise ValueError("source weights must be non-negative")


@dataclass
class ReplayMetrics:
    total: int = 0
    positive: int = 0
    negative: int = 0
    with_feedback: int = 0
    acceptance_rate: float = 0.0
    avg_score: float = 0.0
    high_consensus_fraction: float = 0.0


@dataclass
class ReplayReport:
    """
    ``window`` covers every served exposure at its served score;
    ``simulated`` covers the top ``serving_size`` after re-ranking.
    """
    user_id: str
    params: ReplayParams
    window: ReplayMetrics
    simulated: ReplayMetrics
    baseline_ranking: list[int] = field(default_factory=list)
    simulated_ranking: list[int] = field(default_factory=list)

    @property
    def acceptance_delta(self) -> float:
        return self.simulated.acceptance_rate - self.window.acceptance_rate

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "params": {
                "mmr_lambda": self.params.mmr_lambda,
                "source_weights": self.params.source_weights,
            },
            "window": vars(self.window).copy(),
            "simulated": vars(self.simulated).copy(),
            "acceptance_delta": round(self.acceptance_delta, 4),
            "baseline_ranking": self.baseline_ranking,
            "simulated_ranking": self.simulated_ranking,
        }


def _reweight(score: float, exposure: SuggestionExposure, new_weights: dict[str, float]) -> float:
    """Scale a score by the change in the exposure's total source weight."""
    if not exposure.sources:
        return score

    old_weights = exposure.source_weights or SOURCE_WEIGHTS
    old_sum = sum(old_weights.get(s, 0.0) for s in exposure.sources)
    new_sum = sum(new_weights.get(s, old_weights.get(s, 0.0)) for s in exposure.sources)
    if old_sum <= 0 or new_sum == old_sum:
        return score
    return score * (new_sum / old_sum)


def recompute_score(
    exposure: SuggestionExposure,
    params: ReplayParams,
    rank_penalty: float = REPLAY_RANK_PENALTY,
) -> float:
    """
    Approximate the exposure's score under ``params``.

    The served base score stands in for relevance. A proposed lambda rescores
    it as ``(1 - lam) * base - lam * rank * rank_penalty``; proposed weights
    then scale the result by the new/old weight-sum ratio. Parameters left as
    None keep the served score untouched.
    """
    score = exposure.base_score
    if params.mmr_lambda is not None:
        lam = params.mmr_lambda
        score = (1.0 - lam) * score - lam * exposure.diversity_rank * rank_penalty
    if params.source_weights is not None:
        score = _reweight(score, exposure, params.source_weights)
    return score


def _latest_feedback(feedback: list[Feedback]) -> dict[int, Polarity]:
    latest: dict[int, Feedback] = {}
    for fb in feedback:
        current = latest.get(fb.item_id)
        if current is None or (fb.created_at or datetime.min) >= (current.created_at or datetime.min):
            latest[fb.item_id] = fb
    return {item_id: fb.polarity for item_id, fb in latest.items()}


def compute_metrics(
    rows: list[tuple[SuggestionExposure, float]],
    polarity: dict[int, Polarity],
) -> ReplayMetrics:
    metrics = ReplayMetrics(total=len(rows))
    if not rows:
        return metrics

    for exposure, _ in rows:
        p = polarity.get(exposure.item_id)
        if p is Polarity.POSITIVE:
            metrics.positive += 1
        elif p is Polarity.NEGATIVE:
            metrics.negative += 1
    metrics.with_feedback = metrics.positive + metrics.negative
    if metrics.with_feedback:
        metrics.acceptance_rate = metrics.positive / metrics.with_feedback
    metrics.avg_score = sum(score for _, score in rows) / len(rows)
    high = sum(1 for e, _ in rows if e.consensus_level == ConsensusLevel.HIGH.value)
    metrics.high_consensus_fraction = high / len(rows)
    return metrics


def _rank(
    exposures: list[SuggestionExposure],
    params: ReplayParams,
    serving_size: int | None = None,
) -> list[tuple[SuggestionExposure, float]]:
    scored = [(e, recompute_score(e, params)) for e in exposures]
    scored.sort(key=lambda es: (-es[1], es[0].diversity_rank, es[0].exposed_at, es[0].item_id))
    return scored if serving_size is None else scored[:serving_size]


def replay(
    exposures: list[SuggestionExposure],
    feedback: list[Feedback],
    params: ReplayParams,
    serving_size: int = REPLAY_SERVING_SIZE,
    user_id: str = "",
) -> ReplayReport:
    """
    Compare the served window against a re-ranking under ``params``.

    The window is every exposure at its served score, in score order. The
    simulation re-scores, re-sorts and keeps the top ``serving_size``. With
    unchanged parameters and no more than ``serving_size`` exposures the two
    are identical. Deterministic and side-effect free.
    """
    params.validate()
    polarity = _latest_feedback(feedback)

    window_rows = _rank(exposures, ReplayParams())
    simulated_rows = _rank(exposures, params, serving_size)

    report = ReplayReport(
        user_id=user_id,
        params=params,
        window=compute_metrics(window_rows, polarity),
        simulated=compute_metrics(simulated_rows, polarity),
        baseline_ranking=[e.item_id for e, _ in window_rows],
        simulated_ranking=[e.item_id for e, _ in simulated_rows],
    )
    logger.debug(
        f"Replay {user_id or '(anonymous)'}: {len(exposures)} exposures, "
        f"acceptance {report.window.acceptance_rate:.1%} -> {report.simulated.acceptance_rate:.1%}"
    )
    return report


def replay_user(
    user_id: str,
    params: ReplayParams,
    lookback_days: int = REPLAY_LOOKBACK_DAYS,
    serving_size: int = REPLAY_SERVING_SIZE,
    now: datetime | None = None,
) -> ReplayReport:
    """Load a user's recent exposures and feedback from the store and replay them."""
    from .database import load_exposures, load_feedback

    since = (now or datetime.now()) - timedelta(days=lookback_days)
    exposures = load_exposures(user_id, since=since)
    feedback = load_feedback(user_id)
    return replay(exposures, feedback, params, serving_size=serving_size, user_id=user_id)
