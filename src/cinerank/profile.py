import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field

from .models import WatchRecord, FilmMetadata
from .subgenres import detect_subgenres, detect_niches, subgenre_label, NICHE_LABELS
from .config import (
    TOP_GENRES_COUNT,
    WEIGHT_LIKED_NO_RATING,
    LIKED_RATING_THRESHOLD,
    DISLIKED_RATING_THRESHOLD,
    AVOID_GENRE_MAX_AVG,
    AVOID_GENRE_MIN_OCCURRENCES,
    SUBGENRE_MAJOR_GENRES,
    SUBGENRE_PREFERRED_MIN_WATCH_FRACTION,
    SUBGENRE_PREFERRED_MIN_LIKE_RATE,
    SUBGENRE_AVOIDED_MAX_LIKE_RATE,
    SUBGENRE_AVOID_MIN_OCCURRENCES,
    SUBGENRE_AVOID_MIN_WATCH_FRACTION,
    CROSS_GENRE_MIN_RATING,
    CROSS_GENRE_MIN_COUNT,
    CROSS_GENRE_MIN_AVG_RATING,
    CROSS_GENRE_MAX_EXAMPLES,
    CROSS_GENRE_MAX_KEYWORDS,
    AVOIDED_COMBO_MIN_DISLIKES,
)

logger = logging.getLogger(__name__)

PREFERRED = "preferred"
AVOIDED = "avoided"
NEUTRAL = "neutral"


@dataclass
class SubgenrePattern:
    subgenre: str
    parent_genre: str
    occurrences: int = 0
    liked: int = 0
    watch_fraction: float = 0.0
    like_rate: float = 0.0
    status: str = NEUTRAL

    @property
    def label(self) -> str:
        return subgenre_label(self.subgenre)


@dataclass
class CrossGenrePattern:
    combination: str
    watched: int = 0
    liked: int = 0
    weight: float = 0.0
    avg_rating: float | None = None
    keywords: list[str] = field(default_factory=list)
    examples: list[str] = field(default_factory=list)

    @property
    def strength(self) -> float:
        return self.weight / self.watched if self.watched else 0.0


@dataclass
class TasteProfile:
    """Derived snapshot of a user's taste, rebuilt from watch history."""
    n_films: int = 0
    n_rated: int = 0
    missing_metadata: int = 0

    top_genres: list[tuple[str, float]] = field(default_factory=list)
    avoid_genres: set[str] = field(default_factory=set)
    genre_avg_ratings: dict[str, float] = field(default_factory=dict)

    subgenre_patterns: dict[str, SubgenrePattern] = field(default_factory=dict)
    cross_genre_patterns: dict[str, CrossGenrePattern] = field(default_factory=dict)

    # Negative patterns mined from disliked films
    avoided_keywords: set[str] = field(default_factory=set)
    avoided_genre_combos: set[str] = field(default_factory=set)

    niche_counts: dict[str, int] = field(default_factory=dict)
    runtime_min: int = 0
    runtime_max: int = 0
    runtime_avg: float = 0.0

    @property
    def top_genre_names(self) -> list[str]:
        return [g for g, _ in self.top_genres]

    def avoided_subgenres(self, genre: str) -> set[str]:
        target = genre.lower()
        return {
            p.subgenre for p in self.subgenre_patterns.values()
            if p.status == AVOIDED and p.parent_genre.lower() == target
        }

    def preferred_subgenres(self, genre: str) -> set[str]:
        target = genre.lower()
        return {
            p.subgenre for p in self.subgenre_patterns.values()
            if p.status == PREFERRED and p.parent_genre.lower() == target
        }

    def to_dict(self) -> dict:
        return {
            "n_films": self.n_films,
            "n_rated": self.n_rated,
            "missing_metadata": self.missing_metadata,
            "top_genres": [[g, w] for g, w in self.top_genres],
            "avoid_genres": sorted(self.avoid_genres),
            "genre_avg_ratings": self.genre_avg_ratings,
            "subgenre_patterns": {k: vars(p).copy() for k, p in self.subgenre_patterns.items()},
            "cross_genre_patterns": {k: vars(p).copy() for k, p in self.cross_genre_patterns.items()},
            "avoided_keywords": sorted(self.avoided_keywords),
            "avoided_genre_combos": sorted(self.avoided_genre_combos),
            "niche_counts": self.niche_counts,
            "runtime_min": self.runtime_min,
            "runtime_max": self.runtime_max,
            "runtime_avg": self.runtime_avg,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TasteProfile":
        return cls(
            n_films=data.get("n_films", 0),
            n_rated=data.get("n_rated", 0),
            missing_metadata=data.get("missing_metadata", 0),
            top_genres=[(g, float(w)) for g, w in data.get("top_genres", [])],
            avoid_genres=set(data.get("avoid_genres", [])),
            genre_avg_ratings=dict(data.get("genre_avg_ratings", {})),
            subgenre_patterns={
                k: SubgenrePattern(**v) for k, v in data.get("subgenre_patterns", {}).items()
            },
            cross_genre_patterns={
                k: CrossGenrePattern(**v) for k, v in data.get("cross_genre_patterns", {}).items()
            },
            avoided_keywords=set(data.get("avoided_keywords", [])),
            avoided_genre_combos=set(data.get("avoided_genre_combos", [])),
            niche_counts=dict(data.get("niche_counts", {})),
            runtime_min=data.get("runtime_min", 0),
            runtime_max=data.get("runtime_max", 0),
            runtime_avg=data.get("runtime_avg", 0.0),
        )


def _is_liked(record: WatchRecord) -> bool:
    return record.liked or (record.rating is not None and record.rating >= LIKED_RATING_THRESHOLD)


def _is_disliked(record: WatchRecord) -> bool:
    return not record.liked and record.is_rated and record.rating < DISLIKED_RATING_THRESHOLD


def _presence_weight(record: WatchRecord) -> float:
    """Rating as weight, or a flat weight for liked-but-unrated films."""
    if record.is_rated:
        return record.rating
    if record.liked:
        return WEIGHT_LIKED_NO_RATING
    return 0.0


def genre_combo(genres: list[str], size: int = 2) -> str:
    return '+'.join(sorted(genres)[:size])


def _title(record: WatchRecord, meta: FilmMetadata) -> str:
    return record.title or meta.title or str(record.item_id)


def _analyze_subgenres(
    films: list[tuple[WatchRecord, FilmMetadata]]
) -> dict[str, SubgenrePattern]:
    major = {g.lower(): g for g in SUBGENRE_MAJOR_GENRES}
    parent_totals: dict[str, int] = defaultdict(int)
    patterns: dict[str, SubgenrePattern] = {}

    for record, meta in films:
        liked = _is_liked(record)
        for genre in meta.genres:
            parent = major.get(genre.lower())
            if parent is None:
                continue
            parent_totals[parent] += 1
            for key in detect_subgenres(parent, _title(record, meta), meta.keywords):
                pattern = patterns.setdefault(key, SubgenrePattern(subgenre=key, parent_genre=parent))
                pattern.occurrences += 1
                if liked:
                    pattern.liked += 1

    for pattern in patterns.values():
        total = parent_totals[pattern.parent_genre]
        pattern.watch_fraction = pattern.occurrences / total if total else 0.0
        pattern.like_rate = pattern.liked / pattern.occurrences if pattern.occurrences else 0.0

        if (pattern.watch_fraction >= SUBGENRE_PREFERRED_MIN_WATCH_FRACTION
                and pattern.like_rate >= SUBGENRE_PREFERRED_MIN_LIKE_RATE):
            pattern.status = PREFERRED
        elif (pattern.like_rate < SUBGENRE_AVOIDED_MAX_LIKE_RATE
                and pattern.occurrences >= SUBGENRE_AVOID_MIN_OCCURRENCES
                and pattern.watch_fraction >= SUBGENRE_AVOID_MIN_WATCH_FRACTION):
            pattern.status = AVOIDED

    return patterns


def _analyze_cross_genre(
    films: list[tuple[WatchRecord, FilmMetadata]]
) -> dict[str, CrossGenrePattern]:
    patterns: dict[str, CrossGenrePattern] = {}
    keyword_counts: dict[str, Counter] = defaultdict(Counter)
    rating_sums: dict[str, list[float]] = defaultdict(list)

    for record, meta in films:
        if len(meta.genres) < 2:
            continue
        rating = record.rating or 0.0
        liked = _is_liked(record)
        if not liked and rating < CROSS_GENRE_MIN_RATING:
            continue

        combo = genre_combo(meta.genres, size=3)
        pattern = patterns.setdefault(combo, CrossGenrePattern(combination=combo))
        pattern.watched += 1
        if liked:
            pattern.liked += 1
        if rating > 0:
            rating_sums[combo].append(rating)

        if rating >= 4.5:
            pattern.weight += 2.0 if liked else 1.5
        elif rating >= 3.5:
            pattern.weight += 1.5 if liked else 1.0

        keyword_counts[combo].update({k.lower() for k in (meta.keywords or [])})
        if len(pattern.examples) < CROSS_GENRE_MAX_EXAMPLES:
            pattern.examples.append(_title(record, meta))

    recorded = {}
    for combo, pattern in patterns.items():
        ratings = rating_sums[combo]
        pattern.avg_rating = sum(ratings) / len(ratings) if ratings else None
        if pattern.watched < CROSS_GENRE_MIN_COUNT:
            continue
        if pattern.avg_rating is None:
            # Liked-only history: require mostly likes instead of a high average
            if pattern.liked / pattern.watched < SUBGENRE_PREFERRED_MIN_LIKE_RATE:
                continue
        elif pattern.avg_rating < CROSS_GENRE_MIN_AVG_RATING:
            continue

        ranked = sorted(keyword_counts[combo].items(), key=lambda kv: (-kv[1], kv[0]))
        pattern.keywords = [k for k, _ in ranked[:CROSS_GENRE_MAX_KEYWORDS]]
        recorded[combo] = pattern

    return recorded


def build_profile(
    records: list[WatchRecord],
    metadata: dict[int, FilmMetadata],
    top_n: int = TOP_GENRES_COUNT,
) -> TasteProfile:
    """
    Build a taste profile from watch history.

    Pure function of its inputs. Films without genre/keyword metadata still
    count toward totals but are excluded from subgenre and cross-genre analysis.
    """
    profile = TasteProfile(n_films=len(records))

    genre_weights: dict[str, float] = defaultdict(float)
    genre_ratings: dict[str, list[float]] = defaultdict(list)
    analyzable: list[tuple[WatchRecord, FilmMetadata]] = []
    positive_keywords: set[str] = set()
    positive_combos: set[str] = set()
    disliked_keywords: set[str] = set()
    disliked_combos: Counter = Counter()
    runtimes: list[int] = []
    niche_counts: Counter = Counter()

    for record in records:
        if record.is_rated:
            profile.n_rated += 1

        meta = metadata.get(record.item_id)
        if meta is None or not meta.genres:
            profile.missing_metadata += 1
            continue

        weight = _presence_weight(record)
        for genre in meta.genres:
            if weight > 0:
                genre_weights[genre] += weight
            if record.is_rated:
                genre_ratings[genre].append(record.rating)

        if meta.runtime and meta.runtime > 0:
            runtimes.append(meta.runtime)

        keywords = meta.keywords or []
        niche_counts.update(detect_niches(_title(record, meta), meta.genres, keywords))

        if _is_liked(record):
            positive_keywords.update(k.lower() for k in keywords)
            positive_combos.add(genre_combo(meta.genres))
        elif _is_disliked(record):
            disliked_keywords.update(k.lower() for k in keywords)
            if len(meta.genres) >= 2:
                disliked_combos[genre_combo(meta.genres)] += 1

        if meta.keywords is None:
            profile.missing_metadata += 1
            continue
        analyzable.append((record, meta))

    for genre, ratings in genre_ratings.items():
        avg = sum(ratings) / len(ratings)
        profile.genre_avg_ratings[genre] = round(avg, 3)
        if len(ratings) >= AVOID_GENRE_MIN_OCCURRENCES and avg < AVOID_GENRE_MAX_AVG:
            profile.avoid_genres.add(genre)

    ranked = sorted(
        ((g, w) for g, w in genre_weights.items() if g not in profile.avoid_genres),
        key=lambda gw: (-gw[1], gw[0]),
    )
    profile.top_genres = ranked[:top_n]

    profile.subgenre_patterns = _analyze_subgenres(analyzable)
    profile.cross_genre_patterns = _analyze_cross_genre(analyzable)

    profile.avoided_keywords = disliked_keywords - positive_keywords
    profile.avoided_genre_combos = {
        combo for combo, count in disliked_combos.items()
        if count >= AVOIDED_COMBO_MIN_DISLIKES and combo not in positive_combos
    }

    profile.niche_counts = dict(niche_counts)
    if runtimes:
        profile.runtime_min = min(runtimes)
        profile.runtime_max = max(runtimes)
        profile.runtime_avg = sum(runtimes) / len(runtimes)

    if profile.missing_metadata:
        logger.debug(f"{profile.missing_metadata} films lacked metadata and were skipped in pattern analysis")

    return profile


def format_profile_report(profile: TasteProfile) -> list[str]:
    """Human-readable summary lines for the CLI."""
    lines = [
        f"Films: {profile.n_films} ({profile.n_rated} rated, {profile.missing_metadata} missing metadata)",
        "Top genres: " + (", ".join(f"{g} ({w:.1f})" for g, w in profile.top_genres) or "none"),
        "Avoided genres: " + (", ".join(sorted(profile.avoid_genres)) or "none"),
        "",
        "Subgenres:",
    ]

    by_genre: dict[str, list[SubgenrePattern]] = defaultdict(list)
    for pattern in profile.subgenre_patterns.values():
        if pattern.status != NEUTRAL:
            by_genre[pattern.parent_genre].append(pattern)
    if not by_genre:
        lines.append("  (no strong subgenre signals)")
    for genre in sorted(by_genre):
        preferred = [p.label for p in by_genre[genre] if p.status == PREFERRED]
        avoided = [p.label for p in by_genre[genre] if p.status == AVOIDED]
        lines.append(f"  {genre}:")
        if preferred:
            lines.append(f"    Prefers: {', '.join(sorted(preferred))}")
        if avoided:
            lines.append(f"    Avoids: {', '.join(sorted(avoided))}")

    lines.append("")
    lines.append("Cross-genre patterns:")
    top_patterns = sorted(profile.cross_genre_patterns.values(), key=lambda p: (-p.weight, p.combination))[:5]
    if not top_patterns:
        lines.append("  none")
    for pattern in top_patterns:
        lines.append(f"  {pattern.combination}: {pattern.watched} watched, keywords: {', '.join(pattern.keywords[:3])}")
        lines.append(f"    Examples: {', '.join(pattern.examples)}")

    lines.append("")
    lines.append("Avoided genre combos: " + (", ".join(sorted(profile.avoided_genre_combos)[:5]) or "none"))
    lines.append("Avoided keywords: " + (", ".join(sorted(profile.avoided_keywords)[:5]) or "none"))
    lines.append("Niches: " + ", ".join(
        f"{label} {'yes' if profile.niche_counts.get(niche) else 'no'}" for niche, label in NICHE_LABELS.items()
    ))
    if profile.runtime_max:
        lines.append(f"Runtime: {profile.runtime_min}-{profile.runtime_max} min (avg {profile.runtime_avg:.0f})")
    return lines
