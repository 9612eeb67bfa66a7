import logging
from collections import Counter
from dataclasses import dataclass, field

from .models import Candidate, ConsensusLevel
from .errors import NoCandidates
from .utils import clamp
from .config import SOURCE_WEIGHTS, CONSENSUS_MEDIUM_MIN, CONSENSUS_HIGH_MIN

logger = logging.getLogger(__name__)


@dataclass
class ScoredCandidate:
    """A candidate with its consensus score, before filtering and reranking."""
    candidate: Candidate
    score: float
    consensus_level: str
    sources: list[str] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)
    boost: float = 0.0

    @property
    def item_id(self) -> int:
        return self.candidate.item_id

    @property
    def final_score(self) -> float:
        return self.score + self.boost


def normalize_source_score(raw: float) -> float:
    """Clamp a source's raw score into [0, 1]."""
    return clamp(float(raw), 0.0, 1.0)


def consensus_level(
    n_sources: int,
    medium_min: int = CONSENSUS_MEDIUM_MIN,
    high_min: int = CONSENSUS_HIGH_MIN,
) -> str:
    """Bucket the number of agreeing sources; monotone in ``n_sources``."""
    if n_sources >= high_min:
        return ConsensusLevel.HIGH.value
    if n_sources >= medium_min:
        return ConsensusLevel.MEDIUM.value
    return ConsensusLevel.LOW.value


def consensus_score(
    source_scores: dict[str, float],
    weights: dict[str, float] | None = None,
) -> tuple[float, list[str]] | None:
    """
    Weighted average of normalized source scores.

    Only sources that actually scored the item (and carry a positive weight)
    take part, so fewer responding sources neither inflate nor deflate the
    magnitude. Returns None when no source contributes.
    """
    weights = SOURCE_WEIGHTS if weights is None else weights

    total_score = 0.0
    total_weight = 0.0
    contributing = []
    for source in sorted(source_scores):
        weight = weights.get(source, 0.0)
        if weight <= 0:
            continue
        total_score += normalize_source_score(source_scores[source]) * weight
        total_weight += weight
        contributing.append(source)

    if total_weight <= 0:
        return None
    return total_score / total_weight, contributing


def aggregate(
    candidates: list[Candidate],
    weights: dict[str, float] | None = None,
    medium_min: int = CONSENSUS_MEDIUM_MIN,
    high_min: int = CONSENSUS_HIGH_MIN,
) -> list[ScoredCandidate]:
    """
    Merge per-source scores into one consensus score and level per item.

    Candidates are keyed by item id; duplicates merge their source scores
    (highest score per source wins). Items with no contributing source are
    dropped. Raises NoCandidates when nothing survives.
    """
    weights = SOURCE_WEIGHTS if weights is None else weights

    merged: dict[int, Candidate] = {}
    for cand in candidates:
        existing = merged.get(cand.item_id)
        if existing is None:
            merged[cand.item_id] = Candidate(cand.item_id, dict(cand.source_scores), cand.metadata)
            continue
        for source, score in cand.source_scores.items():
            existing.source_scores[source] = max(score, existing.source_scores.get(source, score))
        if existing.metadata is None:
            existing.metadata = cand.metadata

    unknown = Counter(
        s for c in merged.values() for s in c.source_scores if s not in weights
    )
    if unknown:
        logger.warning(f"Ignoring scores from unconfigured sources: {dict(unknown)}")

    scored = []
    dropped = 0
    for cand in merged.values():
        result = consensus_score(cand.source_scores, weights)
        if result is None:
            dropped += 1
            continue
        score, sources = result
        level = consensus_level(len(sources), medium_min, high_min)
        scored.append(ScoredCandidate(
            candidate=cand,
            score=score,
            consensus_level=level,
            sources=sources,
            reasons=[f"Recommended by {', '.join(sources)}"],
        ))

    if dropped:
        logger.debug(f"Dropped {dropped} candidates with no scoring source")
    if not scored:
        raise NoCandidates(f"No candidates survived aggregation ({len(candidates)} in pool)")

    scored.sort(key=lambda s: (-s.score, s.item_id))

    levels = Counter(s.consensus_level for s in scored)
    logger.info(
        f"Aggregated {len(scored)} candidates (high={levels['high']}, "
        f"medium={levels['medium']}, low={levels['low']})"
    )
    return scored
