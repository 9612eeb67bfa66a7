import random
from datetime import datetime, timedelta

import pytest

from cinerank.models import SuggestionExposure, Feedback, Polarity
from cinerank.replay import ReplayParams, replay, recompute_score, compute_metrics

T0 = datetime(2024, 5, 1, 12, 0)
WEIGHTS = {"tmdb": 0.9, "tastedive": 1.35, "trakt": 1.4}


def _exposure(item_id, base_score, rank, sources=("tmdb",), level="low", lam=0.25, minutes=0):
    return SuggestionExposure(
        user_id="alice",
        item_id=item_id,
        exposed_at=T0 + timedelta(minutes=minutes),
        base_score=base_score,
        consensus_level=level,
        sources=list(sources),
        reasons=[],
        mmr_lambda=lam,
        diversity_rank=rank,
        source_weights={s: WEIGHTS[s] for s in sources},
    )


def _random_log(rng, n=40):
    exposures = [
        _exposure(
            i, round(rng.random(), 3), rng.randint(1, 20),
            sources=rng.sample(list(WEIGHTS), rng.randint(1, 3)),
            level=rng.choice(["low", "medium", "high"]),
            lam=rng.choice([0.1, 0.25, 0.5]),
            minutes=rng.randint(0, 500),
        )
        for i in range(1, n + 1)
    ]
    feedback = [
        Feedback(e.item_id, rng.choice(list(Polarity)), e.exposed_at + timedelta(hours=1))
        for e in exposures if rng.random() < 0.6
    ]
    return exposures, feedback


def test_unchanged_parameters_reproduce_served_metrics():
    exposures = [_exposure(i, 0.1 * i, rank=i, level="high" if i % 3 == 0 else "low") for i in range(1, 11)]
    feedback = [Feedback(i, Polarity.POSITIVE if i % 2 else Polarity.NEGATIVE, T0) for i in range(1, 8)]

    report = replay(exposures, feedback, ReplayParams(), serving_size=50)

    assert report.simulated == report.window
    assert report.simulated.avg_score == pytest.approx(0.55)
    assert report.simulated_ranking == report.baseline_ranking == list(range(10, 0, -1))
    assert report.acceptance_delta == 0.0


def test_unchanged_parameters_keep_served_order_when_truncated():
    rng = random.Random(21)
    for _ in range(10):
        exposures, feedback = _random_log(rng)
        report = replay(exposures, feedback, ReplayParams(), serving_size=15)

        assert report.window.total == 40
        assert report.simulated_ranking == report.baseline_ranking[:15]

        full = replay(exposures, feedback, ReplayParams(), serving_size=40)
        assert full.simulated == full.window
        assert full.acceptance_delta == 0.0


def test_explicitly_restating_served_weights_is_identity():
    exposures, feedback = _random_log(random.Random(8))
    report = replay(exposures, feedback, ReplayParams(source_weights=dict(WEIGHTS)), serving_size=10)
    assert report.simulated_ranking == report.baseline_ranking[:10]


def test_recompute_score_approximation():
    exposure = _exposure(1, 0.8, rank=4, sources=("tmdb", "trakt"), lam=0.25)

    assert recompute_score(exposure, ReplayParams()) == 0.8
    assert recompute_score(exposure, ReplayParams(mmr_lambda=0.25)) == pytest.approx(0.75 * 0.8 - 0.25 * 0.04)
    assert recompute_score(exposure, ReplayParams(mmr_lambda=0.0)) == pytest.approx(0.8)

    boosted = recompute_score(exposure, ReplayParams(source_weights={"trakt": 2.8}))
    assert boosted == pytest.approx(0.8 * (0.9 + 2.8) / (0.9 + 1.4))

    # lambda rescoring happens before the weight ratio is applied
    both = recompute_score(exposure, ReplayParams(mmr_lambda=0.5, source_weights={"trakt": 2.8}))
    assert both == pytest.approx((0.5 * 0.8 - 0.5 * 0.04) * (0.9 + 2.8) / (0.9 + 1.4))


def test_reweighting_changes_which_items_are_served():
    exposures = [
        _exposure(1, 0.9, 1, sources=("tmdb",)),
        _exposure(2, 0.7, 2, sources=("trakt",)),
    ]
    feedback = [Feedback(1, Polarity.NEGATIVE, T0), Feedback(2, Polarity.POSITIVE, T0)]

    report = replay(exposures, feedback, ReplayParams(source_weights={"tmdb": 0.3}), serving_size=1)

    assert report.baseline_ranking == [1, 2]
    assert report.simulated_ranking == [2]
    assert report.window.total == 2
    assert report.window.acceptance_rate == 0.5
    assert report.simulated.acceptance_rate == 1.0
    assert report.acceptance_delta == 0.5


def test_latest_feedback_wins_and_metrics():
    exposures = [_exposure(1, 0.5, 1, level="high"), _exposure(2, 0.3, 2)]
    feedback = [
        Feedback(1, Polarity.NEGATIVE, T0),
        Feedback(1, Polarity.POSITIVE, T0 + timedelta(days=1)),
    ]

    report = replay(exposures, feedback, ReplayParams())

    assert report.window.positive == 1
    assert report.window.negative == 0
    assert report.window.with_feedback == 1
    assert report.window.acceptance_rate == 1.0
    assert report.window.high_consensus_fraction == 0.5
    assert report.to_dict()["acceptance_delta"] == 0.0


def test_empty_log_and_invalid_params():
    assert compute_metrics([], {}).total == 0
    report = replay([], [], ReplayParams(mmr_lambda=0.5))
    assert report.simulated_ranking == []

    with pytest.raises(ValueError):
        replay([], [], ReplayParams(mmr_lambda=-0.1))
    with pytest.raises(ValueError):
        replay([], [], ReplayParams(source_weights={"tmdb": -1.0}))
