import asyncio
import json

import httpx
import pytest

from cinerank import sources
from cinerank.errors import SourceUnavailable


class SlowSource(sources.ScoringSource):
    async def fetch(self, client, seeds):
        await asyncio.sleep(5)
        return {1: 1.0}


class BrokenSource(sources.ScoringSource):
    async def fetch(self, client, seeds):
        raise RuntimeError("boom")


@pytest.mark.asyncio
async def test_gather_merges_sources_and_skips_timeouts():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params.get_list("seed") == ["10", "20"]
        if request.url.host == "tmdb.local":
            return httpx.Response(200, json={"results": [{"id": 603, "score": 0.8}, {"id": 604, "score": 0.4}]})
        return httpx.Response(200, json={"results": [{"id": 603, "score": 0.6}, {"id": "bad"}]})

    transport = httpx.MockTransport(handler)
    source_list = [
        sources.HttpScoringSource("tmdb", "http://tmdb.local/similar"),
        sources.HttpScoringSource("trakt", "http://trakt.local/related"),
        SlowSource("tastedive"),
    ]

    async with httpx.AsyncClient(transport=transport) as client:
        candidates, unavailable = await sources.gather_candidates(source_list, [10, 20], client=client, timeout=0.05)

    assert unavailable == ["tastedive"]
    assert [c.item_id for c in candidates] == [603, 604]
    assert candidates[0].source_scores == {"tmdb": 0.8, "trakt": 0.6}
    assert candidates[1].source_scores == {"tmdb": 0.4}


@pytest.mark.asyncio
async def test_http_errors_mark_source_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        candidates, unavailable = await sources.gather_candidates(
            [sources.HttpScoringSource("watchmode", "http://wm.local/"), BrokenSource("tuimdb")],
            [1],
            client=client,
        )

    assert candidates == []
    assert sorted(unavailable) == ["tuimdb", "watchmode"]


@pytest.mark.asyncio
async def test_fetch_with_timeout_raises_source_unavailable():
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))) as client:
        with pytest.raises(SourceUnavailable) as exc:
            await sources._fetch_with_timeout(SlowSource("slow"), client, [1], asyncio.Semaphore(1), 0.01)
    assert exc.value.source == "slow"
    assert exc.value.code == "source_unavailable"


def test_load_source_config(tmp_path):
    path = tmp_path / "sources.json"
    path.write_text(json.dumps([{"name": "tmdb", "url": "http://x/"}]))

    [src] = sources.load_source_config(path)
    assert src.name == "tmdb"
    assert src.url == "http://x/"

    path.write_text(json.dumps([{"name": "tmdb"}]))
    with pytest.raises(ValueError):
        sources.load_source_config(path)
