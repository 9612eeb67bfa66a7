import random

import numpy as np
import pytest

from cinerank.aggregator import ScoredCandidate
from cinerank.diversity import similarity_matrix, mmr_order, mmr_rerank
from cinerank.models import Candidate, FilmMetadata


def _scored(item_id, score, genres, keywords=(), cast=()):
    meta = FilmMetadata(item_id=item_id, title=f"Film {item_id}", genres=list(genres),
                        keywords=list(keywords), cast=list(cast))
    return ScoredCandidate(Candidate(item_id, {"tmdb": score}, meta), score, "low", ["tmdb"])


def _random_pool(rng, n=15):
    genres = ["Action", "Drama", "Horror", "Comedy", "Thriller"]
    keywords = ["heist", "ghost", "space", "family", "revenge", "romance"]
    return [
        _scored(i, round(rng.random(), 3), rng.sample(genres, rng.randint(1, 3)), rng.sample(keywords, 2))
        for i in range(1, n + 1)
    ]


def test_similarity_matrix_is_jaccard():
    a = _scored(1, 0.9, ["Action"], ["heist"]).candidate
    b = _scored(2, 0.8, ["Action"], ["space"]).candidate
    c = Candidate(3, {}, None)

    sim = similarity_matrix([a, b, c])

    assert sim.shape == (3, 3)
    assert sim[0, 0] == pytest.approx(1.0)
    assert sim[0, 1] == pytest.approx(1 / 3)
    assert sim[0, 2] == 0.0
    assert np.allclose(sim, sim.T)


def test_lambda_zero_preserves_relevance_order():
    rng = random.Random(11)
    for _ in range(20):
        pool = sorted(_random_pool(rng), key=lambda s: (-s.score, s.item_id))
        reranked = mmr_rerank(pool, lam=0.0)
        assert [s.item_id for s in reranked] == [s.item_id for s in pool]


def test_mmr_is_deterministic():
    rng = random.Random(3)
    pool = _random_pool(rng)
    first = [s.item_id for s in mmr_rerank(pool, lam=0.4)]
    for _ in range(5):
        assert [s.item_id for s in mmr_rerank(list(pool), lam=0.4)] == first


def test_diversity_pulls_dissimilar_item_forward():
    pool = [
        _scored(1, 0.90, ["Action"], ["heist", "revenge"]),
        _scored(2, 0.89, ["Action"], ["heist", "revenge"]),
        _scored(3, 0.60, ["Drama"], ["family"]),
    ]

    assert [s.item_id for s in mmr_rerank(pool, lam=0.0)] == [1, 2, 3]
    assert [s.item_id for s in mmr_rerank(pool, lam=0.7)] == [1, 3, 2]


def test_lambda_one_starts_with_most_relevant_then_diversifies():
    pool = [
        _scored(1, 0.9, ["Action"], ["heist"]),
        _scored(2, 0.8, ["Action"], ["heist"]),
        _scored(3, 0.1, ["Drama"], ["family"]),
    ]
    assert [s.item_id for s in mmr_rerank(pool, lam=1.0)] == [1, 3, 2]


def test_ties_break_on_lower_item_id():
    sim = np.zeros((3, 3))
    assert mmr_order([0.5, 0.5, 0.5], [30, 10, 20], sim, lam=0.3) == [1, 2, 0]


def test_limit_and_invalid_lambda():
    pool = _random_pool(random.Random(1), n=6)
    assert len(mmr_rerank(pool, lam=0.2, limit=3)) == 3
    assert mmr_rerank([], lam=0.2) == []
    with pytest.raises(ValueError):
        mmr_rerank(pool, lam=1.5)
