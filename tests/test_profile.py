from datetime import datetime, timedelta

from cinerank.models import WatchRecord, FilmMetadata
from cinerank.profile import build_profile, format_profile_report, TasteProfile, AVOIDED, PREFERRED

BASE = datetime(2024, 1, 1)


def _film(item_id, genres, keywords=None, title=None, runtime=110):
    return FilmMetadata(
        item_id=item_id,
        title=title or f"Film {item_id}",
        genres=genres,
        keywords=keywords if keywords is not None else [],
        runtime=runtime,
    )


def _watch(item_id, rating=None, liked=False, day=0):
    return WatchRecord(item_id=item_id, rating=rating, liked=liked, watched_at=BASE + timedelta(days=day))


def _superhero_history():
    films, records = {}, []
    for i in range(1, 4):
        films[i] = _film(i, ["Action"], ["superhero", "sequel"])
        records.append(_watch(i, rating=2.0, day=i))
    for i in range(4, 9):
        films[i] = _film(i, ["Action", "Thriller"], ["heist", "betrayal"])
        records.append(_watch(i, rating=4.5, liked=True, day=i))
    return records, films


def test_superhero_subgenre_is_avoided_within_action():
    records, films = _superhero_history()

    profile = build_profile(records, films)

    superhero = profile.subgenre_patterns["ACTION_SUPERHERO"]
    assert superhero.occurrences == 3
    assert superhero.like_rate == 0.0
    assert superhero.status == AVOIDED
    assert profile.avoided_subgenres("action") == {"ACTION_SUPERHERO"}

    heist = profile.subgenre_patterns["ACTION_HEIST"]
    assert heist.status == PREFERRED
    assert "ACTION_HEIST" in profile.preferred_subgenres("Action")


def test_cross_genre_pattern_and_negative_patterns():
    records, films = _superhero_history()

    profile = build_profile(records, films)

    pattern = profile.cross_genre_patterns["Action+Thriller"]
    assert pattern.watched == 5
    assert pattern.avg_rating == 4.5
    assert pattern.strength == 2.0
    assert pattern.keywords[:2] == ["betrayal", "heist"]
    assert len(pattern.examples) == 3

    # "sequel" only appears on disliked films; "heist" on liked ones
    assert profile.avoided_keywords == {"superhero", "sequel"}


def test_avoid_genres_are_excluded_from_top_genres():
    films = {i: _film(i, ["Horror"]) for i in range(1, 4)}
    films[10] = _film(10, ["Drama"])
    films[11] = _film(11, ["Comedy"])
    records = [_watch(i, rating=1.0) for i in range(1, 4)]
    records += [_watch(10, rating=4.0), _watch(11, liked=True)]

    profile = build_profile(records, films)

    assert profile.avoid_genres == {"Horror"}
    assert profile.top_genre_names == ["Drama", "Comedy"]
    assert profile.genre_avg_ratings["Horror"] == 1.0


def test_avoided_genre_combo_requires_repeat_dislikes_and_no_likes():
    films = {
        1: _film(1, ["Romance", "Comedy"]),
        2: _film(2, ["Comedy", "Romance"]),
        3: _film(3, ["Horror", "Comedy"]),
    }
    records = [_watch(1, rating=2.0), _watch(2, rating=1.5), _watch(3, rating=2.0)]

    profile = build_profile(records, films)
    assert profile.avoided_genre_combos == {"Comedy+Romance"}

    films[4] = _film(4, ["Comedy", "Romance"])
    profile = build_profile(records + [_watch(4, rating=5.0)], films)
    assert profile.avoided_genre_combos == set()


def test_missing_metadata_is_counted_not_fatal():
    films = {
        1: _film(1, ["Drama"], runtime=90),
        2: FilmMetadata(item_id=2, title="No keywords", genres=["Drama"], keywords=None, runtime=120),
    }
    records = [_watch(1, rating=4.0), _watch(2, rating=3.0), _watch(99, rating=5.0)]

    profile = build_profile(records, films)

    assert profile.n_films == 3
    assert profile.n_rated == 3
    assert profile.missing_metadata == 2
    assert profile.top_genre_names == ["Drama"]
    assert (profile.runtime_min, profile.runtime_max, profile.runtime_avg) == (90, 120, 105.0)


def test_profile_survives_cache_serialization():
    records, films = _superhero_history()
    profile = build_profile(records, films)

    restored = TasteProfile.from_dict(profile.to_dict())

    assert restored.top_genres == profile.top_genres
    assert restored.avoided_subgenres("Action") == {"ACTION_SUPERHERO"}
    assert restored.cross_genre_patterns["Action+Thriller"].strength == 2.0


def test_format_profile_report_mentions_avoided_subgenre():
    records, films = _superhero_history()
    lines = format_profile_report(build_profile(records, films))

    assert any("Avoids: superhero" in line for line in lines)
    assert any(line.startswith("Top genres: Action") for line in lines)
