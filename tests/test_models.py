import pytest

from cinerank.models import FilmMetadata, ExplorationState, GenreTransition, WatchRecord, Recommendation
from cinerank.errors import InvalidState


def test_metadata_from_dict_accepts_wrapped_names_and_id_alias():
    meta = FilmMetadata.from_dict({
        "id": "603",
        "title": "The Matrix",
        "genres": [{"id": 28, "name": "Action"}, "Science Fiction"],
        "keywords": ["simulation"],
        "runtime": 136,
        "vote_average": 8,
    })

    assert meta.item_id == 603
    assert meta.genres == ["Action", "Science Fiction"]
    assert meta.keywords == ["simulation"]
    assert meta.cast is None
    assert meta.vote_average == 8.0
    assert meta.primary_genre == "Action"
    assert meta.has_taxonomy


def test_metadata_missing_fields_stay_none():
    meta = FilmMetadata.from_dict({"item_id": 1, "genres": ["Drama"]})
    assert meta.keywords is None
    assert not meta.has_taxonomy

    empty = FilmMetadata.from_dict({"item_id": 2, "genres": ["Drama"], "keywords": []})
    assert empty.has_taxonomy


@pytest.mark.parametrize("payload", [
    {"item_id": 1, "genres": "Drama"},
    {"item_id": 1, "keywords": [3]},
    {"item_id": 1, "runtime": "long"},
    {"item_id": True},
    {"title": "no id"},
    ["not", "a", "dict"],
])
def test_metadata_from_dict_rejects_wrong_types(payload):
    with pytest.raises(ValueError):
        FilmMetadata.from_dict(payload)


def test_exploration_state_validate_and_clamp():
    ok = ExplorationState("alice", exploration_rate=0.2)
    ok.validate()
    assert ok.clamped() is ok

    bad = ExplorationState("alice", exploration_rate=0.9, exploratory_items_rated=-4, exploratory_avg_rating=7.0)
    with pytest.raises(InvalidState) as exc:
        bad.validate()
    assert exc.value.field == "exploration_rate"
    assert exc.value.user_id == "alice"

    fixed = bad.clamped()
    assert fixed.exploration_rate == 0.30
    assert fixed.exploratory_items_rated == 0
    assert fixed.exploratory_avg_rating == 5.0


def test_transition_success_rate_and_unrated_records():
    assert GenreTransition("Drama", "Horror").success_rate == 0.0
    assert GenreTransition("Drama", "Horror", 3, 4).success_rate == 0.75
    assert not WatchRecord(1, rating=None, liked=True).is_rated
    assert WatchRecord(1, rating=0.5).is_rated


def test_recommendation_to_dict_rounds_score():
    rec = Recommendation(1, "Film", 0.123456, "high", ["tmdb"], ["Recommended by tmdb"], 1, False)
    data = rec.to_dict()
    assert data["score"] == 0.1235
    assert data["diversity_rank"] == 1
