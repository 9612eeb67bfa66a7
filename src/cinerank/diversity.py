"""
Maximal Marginal Relevance reranking.

``lam`` is the weight given to diversity: each step picks the unselected
item maximizing ``(1 - lam) * relevance - lam * max_sim(item, selected)``.
lam=0 reproduces relevance order; lam=1 ignores relevance after the first
pick and purely diversifies.
"""
import logging

import numpy as np
from scipy.sparse import csr_matrix

from .models import Candidate
from .aggregator import ScoredCandidate
from .config import DEFAULT_MMR_LAMBDA

logger = logging.getLogger(__name__)

MAX_CAST_TOKENS = 5


def _tokens(candidate: Candidate) -> set[str]:
    meta = candidate.metadata
    if meta is None:
        return set()
    tokens = {f"g:{g.lower()}" for g in meta.genres or []}
    tokens.update(f"k:{k.lower()}" for k in meta.keywords or [])
    tokens.update(f"c:{c.lower()}" for c in (meta.cast or [])[:MAX_CAST_TOKENS])
    return tokens


def similarity_matrix(candidates: list[Candidate]) -> np.ndarray:
    """
    Pairwise Jaccard overlap of genre/keyword/cast tokens, in [0, 1].

    Items without metadata have zero similarity to everything.
    """
    n = len(candidates)
    vocab: dict[str, int] = {}
    rows, cols = [], []
    for i, cand in enumerate(candidates):
        for token in sorted(_tokens(cand)):
            rows.append(i)
            cols.append(vocab.setdefault(token, len(vocab)))

    if not vocab:
        return np.zeros((n, n))

    X = csr_matrix(
        (np.ones(len(rows), dtype=np.float64), (rows, cols)),
        shape=(n, len(vocab)),
    )
    intersection = (X @ X.T).toarray()
    sizes = np.asarray(X.sum(axis=1)).ravel()
    union = sizes[:, None] + sizes[None, :] - intersection

    sim = np.zeros((n, n))
    np.divide(intersection, union, out=sim, where=union > 0)
    return sim


def _normalize(values: np.ndarray) -> np.ndarray:
    """Min-max normalize into [0, 1]; constant input maps to all ones."""
    if values.size == 0:
        return values
    low, high = values.min(), values.max()
    if high == low:
        return np.ones_like(values)
    return (values - low) / (high - low)


def mmr_order(
    relevance: list[float],
    item_ids: list[int],
    similarity: np.ndarray,
    lam: float = DEFAULT_MMR_LAMBDA,
    limit: int | None = None,
) -> list[int]:
    """
    Greedy MMR selection; returns indices into the input in selection order.

    Ties break on higher raw relevance, then lower item id.
    """
    if not 0.0 <= lam <= 1.0:
        raise ValueError(f"lambda must be in [0, 1], got {lam}")

    n = len(item_ids)
    limit = n if limit is None else max(0, min(limit, n))
    rel = np.asarray(relevance, dtype=np.float64)
    ids = np.asarray(item_ids)
    rel_norm = _normalize(rel)

    max_sim = np.zeros(n)
    selected = np.zeros(n, dtype=bool)
    order: list[int] = []

    for _ in range(limit):
        values = (1.0 - lam) * rel_norm - lam * max_sim
        remaining = np.flatnonzero(~selected)
        candidate_values = values[remaining]
        ties = remaining[candidate_values == candidate_values.max()]

        if len(ties) > 1:
            tie_rel = rel[ties]
            ties = ties[tie_rel == tie_rel.max()]
        best = int(ties[np.argmin(ids[ties])]) if len(ties) > 1 else int(ties[0])

        order.append(best)
        selected[best] = True
        max_sim = np.maximum(max_sim, similarity[best])

    return order


def mmr_rerank(
    scored: list[ScoredCandidate],
    lam: float = DEFAULT_MMR_LAMBDA,
    limit: int | None = None,
) -> list[ScoredCandidate]:
    """Reorder scored candidates for diversity; relevance is the final (boosted) score."""
    if not scored:
        return []

    sim = similarity_matrix([s.candidate for s in scored])
    order = mmr_order(
        [s.final_score for s in scored],
        [s.item_id for s in scored],
        sim,
        lam=lam,
        limit=limit,
    )
    logger.debug(f"MMR (lambda={lam:.2f}) selected {len(order)} of {len(scored)} candidates")
    return [scored[i] for i in order]
