import pytest

from cinerank.filtering import (
    evaluate_candidate, cross_genre_boost, check_runtime, FilterDecision,
)
from cinerank.models import Candidate, FilmMetadata
from cinerank.profile import TasteProfile, SubgenrePattern, CrossGenrePattern, AVOIDED


def _candidate(item_id=1, genres=("Action",), keywords=(), title="Candidate", runtime=110):
    meta = FilmMetadata(
        item_id=item_id, title=title, genres=list(genres),
        keywords=None if keywords is None else list(keywords), runtime=runtime,
    )
    return Candidate(item_id, {"tmdb": 0.8}, meta)


def _profile(**kwargs):
    profile = TasteProfile(
        top_genres=[("Action", 20.0)],
        niche_counts={},
        runtime_min=80,
        runtime_max=180,
        runtime_avg=120.0,
    )
    for key, value in kwargs.items():
        setattr(profile, key, value)
    return profile


def _superhero_avoided():
    return {
        "ACTION_SUPERHERO": SubgenrePattern(
            "ACTION_SUPERHERO", "Action", occurrences=3, liked=0,
            watch_fraction=0.3, like_rate=0.0, status=AVOIDED,
        )
    }


def _heist_pattern():
    return {
        "Action+Thriller": CrossGenrePattern(
            "Action+Thriller", watched=5, liked=5, weight=10.0, avg_rating=4.5,
            keywords=["heist", "betrayal"], examples=["Heat", "Thief"],
        )
    }


def test_avoided_subgenre_rejects_with_reason():
    profile = _profile(subgenre_patterns=_superhero_avoided())

    outcome = evaluate_candidate(_candidate(keywords=["superhero", "marvel"]), profile)

    assert outcome.decision is FilterDecision.FILTERED
    assert outcome.rejected
    assert outcome.reason == "User avoids superhero within Action"


def test_other_action_subgenres_pass():
    profile = _profile(subgenre_patterns=_superhero_avoided())
    outcome = evaluate_candidate(_candidate(keywords=["heist"]), profile)
    assert outcome.decision is FilterDecision.PASS


def test_cross_genre_boost_requires_keyword_match():
    profile = _profile(cross_genre_patterns=_heist_pattern())

    boost, reason = cross_genre_boost(["Thriller", "Action"], ["heist"], profile, scale=0.1)
    assert boost == pytest.approx(2.0 * 1.2 * 0.1)
    assert "Action+Thriller" in reason
    assert "Heat" in reason

    assert cross_genre_boost(["Action", "Thriller"], ["romance"], profile) == (0.0, None)

    outcome = evaluate_candidate(_candidate(genres=["Action", "Thriller"], keywords=["heist"]), profile)
    assert outcome.decision is FilterDecision.BOOSTED
    assert outcome.boost > 0


def test_filtered_candidate_is_never_boosted():
    profile = _profile(subgenre_patterns=_superhero_avoided(), cross_genre_patterns=_heist_pattern())

    outcome = evaluate_candidate(
        _candidate(genres=["Action", "Thriller"], keywords=["heist", "superhero"]), profile
    )

    assert outcome.decision is FilterDecision.FILTERED
    assert outcome.boost == 0.0


def test_negative_patterns():
    profile = _profile(avoided_genre_combos={"Comedy+Romance"}, avoided_keywords={"sequel", "remake", "reboot"})

    combo = evaluate_candidate(_candidate(genres=["Romance", "Comedy"]), profile)
    assert combo.reason == "User avoids genre combo: Comedy+Romance"

    one_keyword = evaluate_candidate(_candidate(keywords=["sequel"]), profile)
    assert one_keyword.decision is FilterDecision.PASS

    two_keywords = evaluate_candidate(_candidate(keywords=["Sequel", "remake"]), profile)
    assert two_keywords.rejected
    assert "remake" in two_keywords.reason


def test_niche_requires_history():
    candidate = _candidate(genres=["Documentary"], keywords=["chef", "restaurant"])

    assert evaluate_candidate(candidate, _profile()).reason == "User has not shown interest in food documentaries"
    assert not evaluate_candidate(candidate, _profile(niche_counts={"food_doc": 1})).rejected


def test_runtime_check_only_for_tight_histories():
    loose = _profile()
    assert check_runtime(200, loose) is None

    tight = _profile(runtime_min=85, runtime_max=110, runtime_avg=95.0)
    assert check_runtime(110, tight) is None
    assert "outside" in check_runtime(150, tight)
    assert check_runtime(None, tight) is None


def test_missing_metadata_still_scorable():
    profile = _profile(subgenre_patterns=_superhero_avoided())

    no_keywords = _candidate(keywords=None, title="Superhero Night")
    assert evaluate_candidate(no_keywords, profile).decision is FilterDecision.PASS

    bare = Candidate(7, {"tmdb": 0.5}, None)
    assert evaluate_candidate(bare, profile).decision is FilterDecision.PASS
