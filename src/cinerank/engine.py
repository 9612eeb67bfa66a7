"""
Service boundary for the personalization engine.

``recommend`` runs the full ranking pipeline for one request and logs what was
shown; ``record_feedback`` is the single learning entry point that persists
ratings/feedback and updates the per-user learning state.
"""
import logging
from dataclasses import dataclass, field, fields
from datetime import datetime

from .models import (
    Candidate, WatchRecord, Feedback, Polarity, Recommendation,
    SuggestionExposure, LearningEvent, FilmMetadata,
)
from .errors import NoCandidates
from .profile import TasteProfile, build_profile
from .aggregator import aggregate, ScoredCandidate
from .filtering import evaluate_candidate, FilterDecision
from .diversity import mmr_rerank
from .exploration import (
    is_exploratory, transition_boost, last_primary_genre, allocate_slots,
    update_from_ratings, apply_negative_feedback, learn_transitions,
)
from .config import (
    SOURCE_WEIGHTS,
    CONSENSUS_MEDIUM_MIN,
    CONSENSUS_HIGH_MIN,
    DEFAULT_MMR_LAMBDA,
    CROSS_GENRE_BOOST_SCALE,
    TRANSITION_BOOST_WEIGHT,
    TRANSITION_MIN_COUNT,
    TRANSITION_MIN_SUCCESS_RATE,
    TOP_GENRES_COUNT,
)
from .database import (
    get_db,
    init_db,
    load_watch_records,
    save_watch_records,
    load_films,
    save_feedback,
    load_exploration_state,
    load_genre_transitions,
    save_learning_state,
    log_exposures,
    load_cached_profile,
    save_cached_profile,
    invalidate_cached_profile,
)

logger = logging.getLogger(__name__)


@dataclass
class EngineSettings:
    """Per-request tunables; defaults come from config."""

    mmr_lambda: float = DEFAULT_MMR_LAMBDA
    source_weights: dict[str, float] = field(default_factory=lambda: dict(SOURCE_WEIGHTS))
    consensus_medium_min: int = CONSENSUS_MEDIUM_MIN
    consensus_high_min: int = CONSENSUS_HIGH_MIN
    cross_genre_boost_scale: float = CROSS_GENRE_BOOST_SCALE
    transition_boost_weight: float = TRANSITION_BOOST_WEIGHT
    transition_min_count: int = TRANSITION_MIN_COUNT
    transition_min_success_rate: float = TRANSITION_MIN_SUCCESS_RATE
    exploration_rate: float | None = None  # None uses the learned per-user rate
    top_genres: int = TOP_GENRES_COUNT
    log_exposures: bool = True

    @classmethod
    def from_overrides(cls, overrides: dict | None = None) -> "EngineSettings":
        """Build settings from config defaults plus a dict of overrides."""
        settings = cls()
        if overrides:
            known = {f.name for f in fields(cls)}
            unknown = set(overrides) - known
            if unknown:
                raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
            for key, value in overrides.items():
                if key == "source_weights":
                    merged = dict(settings.source_weights)
                    merged.update(value)
                    value = merged
                setattr(settings, key, value)
        settings.validate()
        return settings

    def validate(self) -> None:
        if not 0.0 <= self.mmr_lambda <= 1.0:
            raise ValueError("mmr_lambda must be in [0, 1]")
        if not isinstance(self.source_weights, dict):
            raise ValueError("source_weights must be a dict of weights")
        if any(w < 0 for w in self.source_weights.values()):
            raise ValueError("source_weights must be non-negative")
        if sum(self.source_weights.values()) <= 0:
            raise ValueError("source_weights must contain at least one positive weight")
        if self.consensus_medium_min < 1 or self.consensus_high_min < self.consensus_medium_min:
            raise ValueError("consensus thresholds must satisfy 1 <= medium <= high")
        if self.cross_genre_boost_scale < 0 or self.transition_boost_weight < 0:
            raise ValueError("boost weights must be non-negative")
        if self.transition_min_count < 1:
            raise ValueError("transition_min_count must be positive")
        if not 0.0 <= self.transition_min_success_rate <= 1.0:
            raise ValueError("transition_min_success_rate must be in [0, 1]")
        if self.exploration_rate is not None and not 0.0 <= self.exploration_rate <= 1.0:
            raise ValueError("exploration_rate must be in [0, 1]")
        if self.top_genres < 1:
            raise ValueError("top_genres must be positive")


def get_profile(
    user_id: str,
    history: list[WatchRecord] | None = None,
    metadata: dict[int, FilmMetadata] | None = None,
    use_cache: bool = True,
    top_n: int = TOP_GENRES_COUNT,
) -> TasteProfile:
    """
    Cached taste profile, rebuilt from history when missing or stale.

    The cache only holds profiles built with the default genre count, so a
    non-default ``top_n`` always rebuilds.
    """
    use_cache = use_cache and top_n == TOP_GENRES_COUNT
    if use_cache:
        cached = load_cached_profile(user_id)
        if cached:
            logger.debug(f"Using cached profile for {user_id}")
            return TasteProfile.from_dict(cached)

    if history is None:
        history = load_watch_records(user_id)
    if metadata is None:
        metadata = load_films([r.item_id for r in history])

    profile = build_profile(history, metadata, top_n=top_n)
    if use_cache:
        save_cached_profile(user_id, profile.to_dict())
    return profile


def _attach_metadata(pool: list[Candidate], metadata: dict[int, FilmMetadata]) -> list[Candidate]:
    return [
        c if c.metadata is not None else Candidate(c.item_id, c.source_scores, metadata.get(c.item_id))
        for c in pool
    ]


def _apply_filters(
    scored: list[ScoredCandidate],
    profile: TasteProfile,
    settings: EngineSettings,
) -> list[ScoredCandidate]:
    kept = []
    filtered = 0
    for s in scored:
        outcome = evaluate_candidate(s.candidate, profile, boost_scale=settings.cross_genre_boost_scale)
        if outcome.rejected:
            filtered += 1
            logger.debug(f"Filtered {s.item_id}: {outcome.reason}")
            continue
        if outcome.decision is FilterDecision.BOOSTED:
            s.boost += outcome.boost
            s.reasons.append(outcome.reason)
        kept.append(s)
    if filtered:
        logger.info(f"Filtered {filtered} candidates on subgenre/niche/pattern checks")
    return kept


def recommend(
    user_id: str,
    pool: list[Candidate],
    n: int = 20,
    overrides: dict | None = None,
    now: datetime | None = None,
) -> list[Recommendation]:
    """
    Rank a candidate pool for one user.

    Returns at most ``n`` rows in final display order. An empty or fully
    filtered pool yields an empty list rather than an error.
    """
    settings = EngineSettings.from_overrides(overrides)
    if n <= 0:
        return []

    init_db()
    history = load_watch_records(user_id)
    seen = {r.item_id for r in history}
    unseen = [c for c in pool if c.item_id not in seen]
    if len(unseen) < len(pool):
        logger.debug(f"Dropped {len(pool) - len(unseen)} already-watched candidates")

    metadata = load_films(seen | {c.item_id for c in unseen})
    profile = get_profile(user_id, history, metadata, top_n=settings.top_genres)
    state = load_exploration_state(user_id)
    transitions = load_genre_transitions(user_id)

    try:
        scored = aggregate(
            _attach_metadata(unseen, metadata),
            weights=settings.source_weights,
            medium_min=settings.consensus_medium_min,
            high_min=settings.consensus_high_min,
        )
    except NoCandidates as e:
        logger.warning(f"No recommendations for {user_id}: {e}")
        return []

    scored = _apply_filters(scored, profile, settings)

    last_genre = last_primary_genre(history, metadata)
    for s in scored:
        boost, reason = transition_boost(
            s.candidate.genres, last_genre, transitions,
            weight=settings.transition_boost_weight,
            min_count=settings.transition_min_count,
            min_success_rate=settings.transition_min_success_rate,
        )
        if boost > 0:
            s.boost += boost
            s.reasons.append(reason)

    ordered = mmr_rerank(scored, lam=settings.mmr_lambda)

    top = profile.top_genre_names

    def _exploratory(s: ScoredCandidate) -> bool:
        return is_exploratory(s.candidate.genres, top, profile.avoid_genres)

    rate = state.exploration_rate if settings.exploration_rate is None else settings.exploration_rate
    selected = allocate_slots(ordered, n, rate, _exploratory)

    exposed_at = now or datetime.now()
    results = []
    exposures = []
    for rank, s in enumerate(selected, 1):
        exploratory = _exploratory(s)
        results.append(Recommendation(
            item_id=s.item_id,
            title=s.candidate.title,
            score=s.final_score,
            consensus_level=s.consensus_level,
            sources=list(s.sources),
            reasons=list(s.reasons),
            diversity_rank=rank,
            exploratory=exploratory,
        ))
        exposures.append(SuggestionExposure(
            user_id=user_id,
            item_id=s.item_id,
            exposed_at=exposed_at,
            base_score=s.final_score,
            consensus_level=s.consensus_level,
            sources=list(s.sources),
            reasons=list(s.reasons),
            mmr_lambda=settings.mmr_lambda,
            diversity_rank=rank,
            category="exploratory" if exploratory else "core",
            source_weights={src: settings.source_weights[src] for src in s.sources},
        ))

    if settings.log_exposures and exposures:
        log_exposures(exposures)

    logger.info(
        f"Served {len(results)} recommendations to {user_id} "
        f"({sum(r.exploratory for r in results)} exploratory, lambda={settings.mmr_lambda:.2f})"
    )
    return results


def record_feedback(
    user_id: str,
    ratings: list[WatchRecord] | None = None,
    feedback: list[Feedback] | None = None,
) -> list[LearningEvent]:
    """
    Persist new ratings and explicit feedback, then update learning state.

    Ratings, feedback, the exploration state and every touched transition
    commit in one transaction or not at all. Errors propagate to the caller.
    """
    ratings = ratings or []
    feedback = feedback or []
    init_db()

    events: list[LearningEvent] = []
    with get_db():
        # Exploratory is judged against the taste the user had before this batch
        prior_history = load_watch_records(user_id)

        if ratings:
            save_watch_records(user_id, ratings)
        if feedback:
            save_feedback(user_id, feedback)
        invalidate_cached_profile(user_id)

        history = load_watch_records(user_id)
        metadata = load_films({r.item_id for r in history} | {fb.item_id for fb in feedback})
        prior_profile = build_profile(prior_history, metadata)
        profile = build_profile(history, metadata)

        state = load_exploration_state(user_id)

        new_ids = {r.item_id for r in ratings if r.is_rated}
        batch = [r for r in history if r.item_id in new_ids]
        state, rate_events = update_from_ratings(state, batch, metadata, prior_profile)
        events.extend(rate_events)

        for fb in feedback:
            if fb.polarity is not Polarity.NEGATIVE:
                continue
            meta = metadata.get(fb.item_id)
            genres = meta.genres or [] if meta else []
            state, penalty_events = apply_negative_feedback(state, genres, prior_profile)
            events.extend(penalty_events)

        existing = load_genre_transitions(user_id)
        table, transition_events = learn_transitions(
            history, metadata, existing, new_item_ids=new_ids, user_id=user_id,
        )
        events.extend(transition_events)
        touched = [table[key] for key in table if table[key] != existing.get(key)]

        state.updated_at = datetime.now()
        save_learning_state(user_id, state, touched)
        save_cached_profile(user_id, profile.to_dict())

    logger.info(
        f"Recorded {len(ratings)} ratings and {len(feedback)} feedback for {user_id}: "
        f"{len(events)} learning events"
    )
    return events
