"""
Adaptive exploration controller.

All functions here are pure: they take the current per-user state and return
the new state plus structured LearningEvents. Persisting the result is the
caller's job.
"""
import logging
import math
from datetime import datetime
from typing import Callable, Sequence, TypeVar

from .models import WatchRecord, FilmMetadata, ExplorationState, GenreTransition, LearningEvent
from .profile import TasteProfile
from .utils import clamp
from .config import (
    EXPLORATION_RATE_MIN,
    EXPLORATION_RATE_MAX,
    EXPLORATION_LEARNING_RATE,
    EXPLORATION_NEGATIVE_PENALTY,
    EXPLORATION_RECENT_WINDOW,
    EXPLORATION_LIKES_THRESHOLD,
    EXPLORATION_DISLIKES_THRESHOLD,
    TRANSITION_WINDOW,
    TRANSITION_SUCCESS_RATING,
    TRANSITION_MIN_COUNT,
    TRANSITION_MIN_SUCCESS_RATE,
    TRANSITION_BOOST_WEIGHT,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')

TransitionTable = dict[tuple[str, str], GenreTransition]


def _lower(genres) -> set[str]:
    return {g.lower() for g in genres}


def is_comfort_zone(genres: Sequence[str], top_genres: Sequence[str]) -> bool:
    """At least one genre overlaps the user's top genres."""
    return bool(_lower(genres) & _lower(top_genres))


def is_known_avoid(genres: Sequence[str], avoid_genres) -> bool:
    return bool(_lower(genres) & _lower(avoid_genres))


def is_exploratory(genres: Sequence[str], top_genres: Sequence[str], avoid_genres) -> bool:
    """
    Outside the comfort zone and not a known dislike.

    Films in avoided genres are a known negative, not an exploration signal.
    """
    if not genres:
        return False
    return not is_comfort_zone(genres, top_genres) and not is_known_avoid(genres, avoid_genres)


def _step(rate: float, delta: float) -> float:
    return round(clamp(rate + delta, EXPLORATION_RATE_MIN, EXPLORATION_RATE_MAX), 4)


def _recency_key(record: WatchRecord):
    return (record.watched_at or datetime.min, record.item_id)


def update_from_ratings(
    state: ExplorationState,
    new_ratings: list[WatchRecord],
    metadata: dict[int, FilmMetadata],
    profile: TasteProfile,
    window: int = EXPLORATION_RECENT_WINDOW,
    learning_rate: float = EXPLORATION_LEARNING_RATE,
) -> tuple[ExplorationState, list[LearningEvent]]:
    """
    Adjust the exploration rate from a batch of newly rated films.

    Looks at the most recent ``window`` rated films, averages the exploratory
    ones, and steps the rate up (likes exploring) or down (dislikes it).
    """
    state = state.clamped()
    recent = sorted((r for r in new_ratings if r.is_rated), key=_recency_key, reverse=True)[:window]

    top = profile.top_genre_names
    exploratory = [
        r for r in recent
        if r.item_id in metadata and is_exploratory(metadata[r.item_id].genres or [], top, profile.avoid_genres)
    ]
    if not exploratory:
        return state, []

    ratings = [r.rating for r in exploratory]
    avg = sum(ratings) / len(ratings)

    if avg >= EXPLORATION_LIKES_THRESHOLD:
        new_rate = _step(state.exploration_rate, learning_rate)
    elif avg < EXPLORATION_DISLIKES_THRESHOLD:
        new_rate = _step(state.exploration_rate, -learning_rate)
    else:
        new_rate = state.exploration_rate

    total = state.exploratory_items_rated + len(ratings)
    running_avg = (state.exploratory_avg_rating * state.exploratory_items_rated + sum(ratings)) / total

    new_state = ExplorationState(
        user_id=state.user_id,
        exploration_rate=new_rate,
        exploratory_items_rated=total,
        exploratory_avg_rating=round(running_avg, 4),
        updated_at=datetime.now(),
    )
    event = LearningEvent("exploration_rate_updated", state.user_id, {
        "old_rate": state.exploration_rate,
        "new_rate": new_rate,
        "batch_avg_rating": round(avg, 4),
        "batch_exploratory": len(ratings),
    })
    logger.info(
        f"Exploration rate for {state.user_id}: {state.exploration_rate:.2f} -> {new_rate:.2f} "
        f"({len(ratings)} exploratory films, avg {avg:.2f})"
    )
    return new_state, [event]


def apply_negative_feedback(
    state: ExplorationState,
    genres: Sequence[str],
    profile: TasteProfile,
    penalty: float = EXPLORATION_NEGATIVE_PENALTY,
) -> tuple[ExplorationState, list[LearningEvent]]:
    """Small penalty when the user rejects an exploratory suggestion."""
    state = state.clamped()
    if not is_exploratory(genres, profile.top_genre_names, profile.avoid_genres):
        return state, []

    new_rate = _step(state.exploration_rate, -penalty)
    new_state = ExplorationState(
        user_id=state.user_id,
        exploration_rate=new_rate,
        exploratory_items_rated=state.exploratory_items_rated,
        exploratory_avg_rating=state.exploratory_avg_rating,
        updated_at=datetime.now(),
    )
    event = LearningEvent("exploration_penalized", state.user_id, {
        "old_rate": state.exploration_rate,
        "new_rate": new_rate,
        "genres": list(genres),
    })
    return new_state, [event]


def learn_transitions(
    rated_history: list[WatchRecord],
    metadata: dict[int, FilmMetadata],
    existing: TransitionTable,
    new_item_ids: set[int] | None = None,
    user_id: str = "",
    window: int = TRANSITION_WINDOW,
    success_rating: float = TRANSITION_SUCCESS_RATING,
) -> tuple[TransitionTable, list[LearningEvent]]:
    """
    Accumulate genre-to-genre transitions from consecutive rated films.

    Only primary genres are used and same-genre pairs are skipped. When
    ``new_item_ids`` is given, only pairs ending on one of those items are
    counted so replays of older history never double count. Existing rows
    are never removed.
    """
    films = [
        r for r in rated_history
        if r.is_rated and r.item_id in metadata and metadata[r.item_id].primary_genre
    ]
    films.sort(key=_recency_key)
    films = films[-window:]

    table: TransitionTable = dict(existing)
    touched: dict[tuple[str, str], list[int]] = {}
    for prev, cur in zip(films, films[1:]):
        if new_item_ids is not None and cur.item_id not in new_item_ids:
            continue
        from_genre = metadata[prev.item_id].primary_genre
        to_genre = metadata[cur.item_id].primary_genre
        if from_genre == to_genre:
            continue

        key = (from_genre, to_genre)
        old = table.get(key) or GenreTransition(from_genre, to_genre)
        success = 1 if cur.rating >= success_rating else 0
        table[key] = GenreTransition(
            from_genre, to_genre,
            success_count=old.success_count + success,
            total_count=old.total_count + 1,
        )
        counts = touched.setdefault(key, [0, 0])
        counts[0] += success
        counts[1] += 1

    events = [
        LearningEvent("genre_transition_observed", user_id, {
            "from": key[0], "to": key[1], "successes": s, "observations": n,
        })
        for key, (s, n) in sorted(touched.items())
    ]
    return table, events


def is_transition_eligible(
    transition: GenreTransition,
    min_count: int = TRANSITION_MIN_COUNT,
    min_success_rate: float = TRANSITION_MIN_SUCCESS_RATE,
) -> bool:
    return transition.total_count >= min_count and transition.success_rate >= min_success_rate


def eligible_transitions(
    transitions: TransitionTable,
    from_genre: str | None,
    min_count: int = TRANSITION_MIN_COUNT,
    min_success_rate: float = TRANSITION_MIN_SUCCESS_RATE,
) -> list[GenreTransition]:
    """Transitions out of ``from_genre`` that may influence scoring, best first."""
    if not from_genre:
        return []
    found = [
        t for (src, _), t in transitions.items()
        if src.lower() == from_genre.lower() and is_transition_eligible(t, min_count, min_success_rate)
    ]
    return sorted(found, key=lambda t: (-t.success_rate, -t.total_count, t.to_genre))


def transition_boost(
    candidate_genres: Sequence[str],
    last_genre: str | None,
    transitions: TransitionTable,
    weight: float = TRANSITION_BOOST_WEIGHT,
    min_count: int = TRANSITION_MIN_COUNT,
    min_success_rate: float = TRANSITION_MIN_SUCCESS_RATE,
) -> tuple[float, str | None]:
    """Additive boost for candidates following a learned high-affinity transition."""
    genres = _lower(candidate_genres)
    for t in eligible_transitions(transitions, last_genre, min_count, min_success_rate):
        if t.to_genre.lower() in genres:
            return weight * t.success_rate, f"You often enjoy {t.to_genre} after {t.from_genre}"
    return 0.0, None


def last_primary_genre(history: list[WatchRecord], metadata: dict[int, FilmMetadata]) -> str | None:
    """Primary genre of the most recently watched film with known genres."""
    for record in sorted(history, key=_recency_key, reverse=True):
        meta = metadata.get(record.item_id)
        if meta and meta.primary_genre:
            return meta.primary_genre
    return None


def exploration_slots(n: int, rate: float) -> int:
    rate = clamp(rate, EXPLORATION_RATE_MIN, EXPLORATION_RATE_MAX)
    return math.floor(n * rate + 1e-9)


def allocate_slots(
    ordered: list[T],
    n: int,
    rate: float,
    is_exploratory_item: Callable[[T], bool],
) -> list[T]:
    """
    Take ``n`` items from an ordered list, reserving exploration slots.

    The first floor(n * rate) exploratory items are guaranteed a place; the
    remaining slots follow the given order. Relative order is preserved.
    """
    if n <= 0 or not ordered:
        return []

    reserved = exploration_slots(n, rate)
    chosen: set[int] = set()
    for idx, item in enumerate(ordered):
        if len(chosen) >= reserved:
            break
        if is_exploratory_item(item):
            chosen.add(idx)

    for idx in range(len(ordered)):
        if len(chosen) >= n:
            break
        chosen.add(idx)

    return [ordered[i] for i in sorted(chosen)]
