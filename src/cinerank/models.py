import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .config import EXPLORATION_RATE_MIN, EXPLORATION_RATE_MAX, DEFAULT_EXPLORATION_RATE
from .errors import InvalidState
from .utils import clamp

logger = logging.getLogger(__name__)


class Polarity(Enum):
    """Direction of explicit feedback on a shown suggestion."""

    POSITIVE = "positive"
    NEGATIVE = "negative"


class ConsensusLevel(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class WatchRecord:
    item_id: int
    rating: float | None = None
    liked: bool = False
    watched_at: datetime | None = None
    rewatch_count: int = 0
    title: str = ""

    @property
    def is_rated(self) -> bool:
        return self.rating is not None and self.rating > 0


def _optional_str_list(payload: dict, key: str) -> list[str] | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, list):
        raise ValueError(f"'{key}' must be a list, got {type(value).__name__}")
    out = []
    for entry in value:
        # Catalog payloads sometimes wrap names as {"id": ..., "name": ...}
        if isinstance(entry, dict) and isinstance(entry.get("name"), str):
            out.append(entry["name"])
        elif isinstance(entry, str):
            out.append(entry)
        else:
            raise ValueError(f"'{key}' entries must be strings, got {entry!r}")
    return out


def _optional_number(payload: dict, key: str, kind: type) -> Any:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' must be numeric, got {value!r}")
    return kind(value)


@dataclass
class FilmMetadata:
    """
    Typed metadata contract for one item.

    Missing fields are explicit ``None``; an empty list means the resolver
    knows the item has no entries for that field.
    """
    item_id: int
    title: str = ""
    year: int | None = None
    genres: list[str] | None = None
    keywords: list[str] | None = None
    cast: list[str] | None = None
    runtime: int | None = None
    vote_count: int | None = None
    vote_average: float | None = None

    @property
    def has_taxonomy(self) -> bool:
        return bool(self.genres) and self.keywords is not None

    @property
    def primary_genre(self) -> str | None:
        return self.genres[0] if self.genres else None

    @classmethod
    def from_dict(cls, payload: dict) -> "FilmMetadata":
        """Validate a resolver payload; wrong types raise ValueError."""
        if not isinstance(payload, dict):
            raise ValueError("Metadata payload must be a mapping")
        raw_id = payload.get("item_id", payload.get("id"))
        if isinstance(raw_id, bool) or not isinstance(raw_id, (int, str)):
            raise ValueError(f"Invalid item id {raw_id!r}")
        try:
            item_id = int(raw_id)
        except ValueError:
            raise ValueError(f"Invalid item id {raw_id!r}") from None
        title = payload.get("title") or ""
        if not isinstance(title, str):
            raise ValueError("'title' must be a string")

        return cls(
            item_id=item_id,
            title=title,
            year=_optional_number(payload, "year", int),
            genres=_optional_str_list(payload, "genres"),
            keywords=_optional_str_list(payload, "keywords"),
            cast=_optional_str_list(payload, "cast"),
            runtime=_optional_number(payload, "runtime", int),
            vote_count=_optional_number(payload, "vote_count", int),
            vote_average=_optional_number(payload, "vote_average", float),
        )

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "title": self.title,
            "year": self.year,
            "genres": self.genres,
            "keywords": self.keywords,
            "cast": self.cast,
            "runtime": self.runtime,
            "vote_count": self.vote_count,
            "vote_average": self.vote_average,
        }


@dataclass
class Candidate:
    """One item in a recommendation request, with per-source raw scores."""
    item_id: int
    source_scores: dict[str, float] = field(default_factory=dict)
    metadata: FilmMetadata | None = None

    @property
    def genres(self) -> list[str]:
        if self.metadata and self.metadata.genres:
            return self.metadata.genres
        return []

    @property
    def title(self) -> str:
        return self.metadata.title if self.metadata else ""


@dataclass
class Feedback:
    item_id: int
    polarity: Polarity
    created_at: datetime | None = None


@dataclass
class ExplorationState:
    user_id: str
    exploration_rate: float = DEFAULT_EXPLORATION_RATE
    exploratory_items_rated: int = 0
    exploratory_avg_rating: float = 0.0
    updated_at: datetime | None = None

    def validate(self) -> None:
        """Raise InvalidState if any field is outside its bounds."""
        if not EXPLORATION_RATE_MIN <= self.exploration_rate <= EXPLORATION_RATE_MAX:
            raise InvalidState(self.user_id, "exploration_rate", self.exploration_rate)
        if self.exploratory_items_rated < 0:
            raise InvalidState(self.user_id, "exploratory_items_rated", self.exploratory_items_rated)
        if not 0.0 <= self.exploratory_avg_rating <= 5.0:
            raise InvalidState(self.user_id, "exploratory_avg_rating", self.exploratory_avg_rating)

    def clamped(self) -> "ExplorationState":
        """Return a copy with every field forced back inside its bounds."""
        try:
            self.validate()
            return self
        except InvalidState as e:
            logger.warning(f"Clamping exploration state: {e}")

        return ExplorationState(
            user_id=self.user_id,
            exploration_rate=clamp(self.exploration_rate, EXPLORATION_RATE_MIN, EXPLORATION_RATE_MAX),
            exploratory_items_rated=max(0, self.exploratory_items_rated),
            exploratory_avg_rating=clamp(self.exploratory_avg_rating, 0.0, 5.0),
            updated_at=self.updated_at,
        )


@dataclass
class GenreTransition:
    from_genre: str
    to_genre: str
    success_count: int = 0
    total_count: int = 0

    @property
    def success_rate(self) -> float:
        return self.success_count / self.total_count if self.total_count else 0.0


@dataclass
class SuggestionExposure:
    """Immutable record of one item shown to a user."""
    user_id: str
    item_id: int
    exposed_at: datetime
    base_score: float
    consensus_level: str
    sources: list[str] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)
    mmr_lambda: float = 0.0
    diversity_rank: int = 0
    category: str = "core"
    source_weights: dict[str, float] = field(default_factory=dict)


@dataclass
class LearningEvent:
    """Structured event emitted by a component for the caller to persist or log."""
    kind: str
    user_id: str
    payload: dict = field(default_factory=dict)


@dataclass
class Recommendation:
    item_id: int
    title: str
    score: float
    consensus_level: str
    sources: list[str] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)
    diversity_rank: int = 0
    exploratory: bool = False

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "title": self.title,
            "score": round(self.score, 4),
            "consensus_level": self.consensus_level,
            "sources": self.sources,
            "reasons": self.reasons,
            "diversity_rank": self.diversity_rank,
            "exploratory": self.exploratory,
        }
