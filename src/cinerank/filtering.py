"""
Fine-grained accept/reject/boost decisions for candidates.

Rejections are evaluated in a fixed order (avoided subgenre, negative
patterns, niche, runtime) and the first one wins. The cross-genre boost is
computed independently but never rescues a rejected candidate.
"""
import logging
from dataclasses import dataclass
from enum import Enum

from .models import Candidate
from .profile import TasteProfile, genre_combo
from .errors import MetadataMissing
from .subgenres import detect_subgenres, detect_niches, subgenre_label, NICHE_LABELS
from .config import (
    CROSS_GENRE_MIN_COUNT,
    CROSS_GENRE_MIN_STRENGTH,
    CROSS_GENRE_KEYWORD_MATCH_BONUS,
    CROSS_GENRE_BOOST_SCALE,
    AVOIDED_KEYWORD_MIN_MATCHES,
    RUNTIME_STRICT_SPREAD,
    RUNTIME_TOLERANCE,
)

logger = logging.getLogger(__name__)


class FilterDecision(Enum):
    PASS = "pass"
    FILTERED = "filtered"
    BOOSTED = "boosted"


@dataclass
class FilterOutcome:
    decision: FilterDecision
    reason: str | None = None
    boost: float = 0.0

    @property
    def rejected(self) -> bool:
        return self.decision is FilterDecision.FILTERED


def _require_taxonomy(candidate: Candidate) -> tuple[list[str], list[str]]:
    meta = candidate.metadata
    if meta is None or not meta.has_taxonomy:
        raise MetadataMissing(candidate.item_id)
    return meta.genres, meta.keywords


def check_subgenre(genres: list[str], title: str, keywords: list[str], profile: TasteProfile) -> str | None:
    """Reason string if the candidate falls in a subgenre the user avoids."""
    for genre in genres:
        avoided = profile.avoided_subgenres(genre)
        if not avoided:
            continue
        for key in sorted(detect_subgenres(genre, title, keywords) & avoided):
            return f"User avoids {subgenre_label(key)} within {genre}"
    return None


def check_negative_patterns(genres: list[str], keywords: list[str] | None, profile: TasteProfile) -> str | None:
    if len(genres) >= 2:
        combo = genre_combo(genres)
        if combo in profile.avoided_genre_combos:
            return f"User avoids genre combo: {combo}"

    if keywords:
        matched = sorted({k.lower() for k in keywords} & profile.avoided_keywords)
        if len(matched) >= AVOIDED_KEYWORD_MIN_MATCHES:
            return f"User avoids keywords: {', '.join(matched[:2])}"
    return None


def check_niche(title: str, genres: list[str], keywords: list[str], profile: TasteProfile) -> str | None:
    for niche in sorted(detect_niches(title, genres, keywords)):
        if not profile.niche_counts.get(niche):
            return f"User has not shown interest in {NICHE_LABELS[niche]}"
    return None


def check_runtime(runtime: int | None, profile: TasteProfile) -> str | None:
    """Only enforced when the user's history sits in a tight runtime band."""
    if not runtime:
        return None
    if profile.runtime_max <= 0 or profile.runtime_max - profile.runtime_min >= RUNTIME_STRICT_SPREAD:
        return None

    low = profile.runtime_avg - RUNTIME_TOLERANCE
    high = profile.runtime_avg + RUNTIME_TOLERANCE
    if runtime < low or runtime > high:
        return (
            f"Runtime ({runtime}min) outside user's typical range "
            f"({profile.runtime_avg:.0f}±{RUNTIME_TOLERANCE}min)"
        )
    return None


def cross_genre_boost(
    genres: list[str],
    keywords: list[str],
    profile: TasteProfile,
    scale: float = CROSS_GENRE_BOOST_SCALE,
) -> tuple[float, str | None]:
    """Additive boost when the candidate matches a recorded cross-genre pattern."""
    ordered = sorted(genres)
    keyword_set = {k.lower() for k in keywords}

    best_boost = 0.0
    best_reason = None
    for size in range(2, min(3, len(ordered)) + 1):
        combo = '+'.join(ordered[:size])
        pattern = profile.cross_genre_patterns.get(combo)
        if pattern is None or pattern.watched < CROSS_GENRE_MIN_COUNT:
            continue
        if pattern.strength < CROSS_GENRE_MIN_STRENGTH:
            continue

        matches = [kw for kw in pattern.keywords if kw in keyword_set]
        if not matches:
            continue

        boost = pattern.strength * (1 + CROSS_GENRE_KEYWORD_MATCH_BONUS * len(matches)) * scale
        if boost > best_boost:
            best_boost = boost
            best_reason = (
                f"Matches your taste in {combo} with themes: {', '.join(matches[:3])} "
                f"(like {', '.join(pattern.examples[:2])})"
            )
    return best_boost, best_reason


def evaluate_candidate(
    candidate: Candidate,
    profile: TasteProfile,
    boost_scale: float = CROSS_GENRE_BOOST_SCALE,
) -> FilterOutcome:
    """Decide exactly one outcome (pass, filtered, boosted) for a candidate."""
    meta = candidate.metadata
    title = candidate.title
    try:
        genres, keywords = _require_taxonomy(candidate)
    except MetadataMissing as e:
        # Still scorable on raw consensus; only coarse checks can apply
        logger.debug(f"{e}; skipping subgenre and cross-genre analysis")
        genres, keywords = candidate.genres, None

    if keywords is not None:
        reason = check_subgenre(genres, title, keywords, profile)
        if reason:
            return FilterOutcome(FilterDecision.FILTERED, reason)

    reason = check_negative_patterns(genres, keywords, profile)
    if reason:
        return FilterOutcome(FilterDecision.FILTERED, reason)

    if meta is not None:
        reason = check_niche(title, genres, keywords or [], profile)
        if reason:
            return FilterOutcome(FilterDecision.FILTERED, reason)

        reason = check_runtime(meta.runtime, profile)
        if reason:
            return FilterOutcome(FilterDecision.FILTERED, reason)

    if keywords is not None:
        boost, reason = cross_genre_boost(genres, keywords, profile, boost_scale)
        if boost > 0:
            return FilterOutcome(FilterDecision.BOOSTED, reason, boost)

    return FilterOutcome(FilterDecision.PASS)
