"""
Async fan-out to external scoring sources.

Each source is queried concurrently with its own timeout. A source that times
out or errors is reported as unavailable and simply contributes no scores;
it never aborts the request.
"""
import asyncio
import json
import logging
from pathlib import Path

import httpx

from .models import Candidate
from .errors import SourceUnavailable
from .utils import async_retry_with_backoff
from .config import SOURCE_TIMEOUT, DEFAULT_MAX_CONCURRENT, MAX_HTTP_RETRIES

logger = logging.getLogger(__name__)


class ScoringSource:
    """A recommendation source returning raw relevance scores per item."""

    def __init__(self, name: str):
        self.name = name

    async def fetch(self, client: httpx.AsyncClient, seeds: list[int]) -> dict[int, float]:
        raise NotImplementedError


class HttpScoringSource(ScoringSource):
    """
    JSON-over-HTTP source (thin proxy in front of a catalog API).

    Expects ``GET {url}?seed=1&seed=2`` to answer
    ``{"results": [{"id": 603, "score": 0.87}, ...]}``.
    """

    def __init__(self, name: str, url: str):
        super().__init__(name)
        self.url = url

    @async_retry_with_backoff(max_retries=MAX_HTTP_RETRIES, initial_delay=0.5, exceptions=(httpx.TransportError,))
    async def _get(self, client: httpx.AsyncClient, seeds: list[int]) -> dict:
        response = await client.get(self.url, params={"seed": seeds})
        response.raise_for_status()
        return response.json()

    async def fetch(self, client: httpx.AsyncClient, seeds: list[int]) -> dict[int, float]:
        payload = await self._get(client, seeds)
        scores: dict[int, float] = {}
        for row in payload.get("results", []):
            try:
                item_id = int(row["id"])
                score = float(row["score"])
            except (KeyError, TypeError, ValueError):
                logger.debug(f"{self.name}: skipping malformed row {row!r}")
                continue
            # Multiple seeds may surface the same item; keep the strongest signal
            scores[item_id] = max(score, scores.get(item_id, score))
        return scores


def load_source_config(path: Path) -> list[ScoringSource]:
    """Read ``[{"name": ..., "url": ...}, ...]`` into HTTP sources."""
    entries = json.loads(Path(path).read_text())
    sources = []
    for entry in entries:
        if not entry.get("name") or not entry.get("url"):
            raise ValueError(f"Source entry needs 'name' and 'url': {entry!r}")
        sources.append(HttpScoringSource(entry["name"], entry["url"]))
    return sources


async def _fetch_with_timeout(
    source: ScoringSource,
    client: httpx.AsyncClient,
    seeds: list[int],
    semaphore: asyncio.Semaphore,
    timeout: float,
) -> dict[int, float]:
    async with semaphore:
        try:
            return await asyncio.wait_for(source.fetch(client, seeds), timeout=timeout)
        except asyncio.TimeoutError:
            raise SourceUnavailable(source.name, f"Source '{source.name}' timed out after {timeout:.1f}s") from None
        except (httpx.HTTPError, ValueError) as e:
            raise SourceUnavailable(source.name, f"Source '{source.name}' failed: {type(e).__name__}: {e}") from e


async def gather_candidates(
    sources: list[ScoringSource],
    seeds: list[int],
    client: httpx.AsyncClient | None = None,
    timeout: float = SOURCE_TIMEOUT,
    max_concurrent: int = DEFAULT_MAX_CONCURRENT,
) -> tuple[list[Candidate], list[str]]:
    """
    Query every source concurrently and merge their scores per item.

    Returns (candidates, unavailable source names). Cancelling the calling
    task cancels all outstanding source requests.
    """
    if client is None:
        async with httpx.AsyncClient(
            headers={"User-Agent": "cinerank/1.0"},
            follow_redirects=True,
            timeout=timeout,
        ) as temp_client:
            return await gather_candidates(sources, seeds, temp_client, timeout, max_concurrent)

    semaphore = asyncio.Semaphore(max_concurrent)
    tasks = [_fetch_with_timeout(s, client, seeds, semaphore, timeout) for s in sources]
    results = await asyncio.gather(*tasks, return_exceptions=True)

    merged: dict[int, Candidate] = {}
    unavailable = []
    for source, result in zip(sources, results):
        if isinstance(result, SourceUnavailable):
            logger.warning(str(result))
            unavailable.append(source.name)
            continue
        if isinstance(result, Exception):
            logger.error(f"Source '{source.name}' raised {type(result).__name__}: {result}")
            unavailable.append(source.name)
            continue

        for item_id, score in result.items():
            cand = merged.setdefault(item_id, Candidate(item_id=item_id))
            cand.source_scores[source.name] = score

    logger.info(
        f"Fan-out complete: {len(sources) - len(unavailable)}/{len(sources)} sources responded, "
        f"{len(merged)} unique candidates"
    )
    return [merged[k] for k in sorted(merged)], unavailable
