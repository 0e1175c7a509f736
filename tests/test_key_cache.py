import asyncio

import httpx
import pytest

from amphook.errors import KeyFetchError
from amphook.keys.cache import KeyCache
from amphook.settings import Settings
from amphook.verify.signature import SignatureVerifier
from helpers import KeyServer, jwk, key_document, sign, signer


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _cache(server: KeyServer, clock=None, **overrides) -> KeyCache:
    cfg = Settings(key_source_url="https://keys.test/certs.json", key_refresh_retry_seconds=60, **overrides)
    return KeyCache(cfg, client=server.client(), clock=clock or FakeClock())


@pytest.mark.asyncio
async def test_concurrent_cold_start_shares_one_fetch():
    server = KeyServer(key_document(("k1", signer())))
    cache = _cache(server)
    snaps = await asyncio.gather(*(cache.snapshot_for_verification() for _ in range(20)))
    assert cache.fetch_count == 1
    assert server.hits == 1
    assert all(s is snaps[0] for s in snaps)
    assert list(snaps[0].keys) == ["k1"]


@pytest.mark.asyncio
async def test_fresh_snapshot_served_without_fetch():
    server = KeyServer(key_document(("k1", signer())))
    cache = _cache(server)
    first = await cache.refresh()
    assert cache.current_snapshot() is first
    assert await cache.snapshot_for_verification() is first
    assert cache.fetch_count == 1


@pytest.mark.asyncio
async def test_stale_snapshot_served_while_refreshing_in_background():
    clock = FakeClock()
    server = KeyServer(key_document(("k1", signer())))
    cache = _cache(server, clock, key_cache_ttl_seconds=100)
    old = await cache.refresh()
    clock.now += 101
    server.document = key_document(("k2", signer("secondary")))
    assert cache.current_snapshot() is old
    new = await cache.await_refresh()
    assert cache.fetch_count == 2
    assert list(new.keys) == ["k2"]
    assert cache.current_snapshot() is new


@pytest.mark.asyncio
async def test_concurrent_verifies_after_ttl_share_one_refetch():
    clock = FakeClock()
    server = KeyServer(key_document(("k1", signer())))
    cache = _cache(server, clock, key_cache_ttl_seconds=100)
    await cache.refresh()
    clock.now += 101
    verifier = SignatureVerifier(cache, cache.config, clock=clock)
    body = b'{"vote": "yes"}'
    sig, ts = sign(signer(), body, int(clock.now))

    results = await asyncio.gather(*(verifier.verify(body, sig, ts) for _ in range(25)))
    for _ in range(100):
        if not cache.status()["refresh_in_flight"]:
            break
        await asyncio.sleep(0.01)

    assert all(r.key_id == "k1" for r in results)
    assert server.hits == 2
    assert cache.fetch_count == 2


@pytest.mark.asyncio
async def test_malformed_document_keeps_prior_snapshot():
    server = KeyServer(key_document(("k1", signer())))
    cache = _cache(server)
    before = await cache.refresh()
    server.raw = b"{not json"
    with pytest.raises(KeyFetchError):
        await cache.refresh()
    assert cache.current_snapshot() is before
    assert list(before.keys) == ["k1"]


@pytest.mark.asyncio
async def test_http_error_and_missing_keys_array_are_fetch_errors():
    server = KeyServer(status=500)
    cache = _cache(server)
    with pytest.raises(KeyFetchError):
        await cache.refresh()
    server.status, server.document = 200, {"certs": []}
    with pytest.raises(KeyFetchError):
        await cache.refresh()
    assert cache.current_snapshot().is_empty()


@pytest.mark.asyncio
async def test_empty_keys_array_does_not_replace_snapshot():
    server = KeyServer(key_document(("k1", signer())))
    cache = _cache(server)
    before = await cache.refresh()
    server.document = {"keys": []}
    with pytest.raises(KeyFetchError):
        await cache.refresh()
    assert cache.current_snapshot() is before


@pytest.mark.asyncio
async def test_bad_descriptor_is_skipped_not_fatal():
    doc = {"keys": [{"kid": "broken", "n": "", "e": "AQAB"}, jwk("good", signer()), "junk"]}
    cache = _cache(KeyServer(doc))
    snap = await cache.refresh()
    assert list(snap.keys) == ["good"]


@pytest.mark.asyncio
async def test_snapshot_is_read_only():
    cache = _cache(KeyServer(key_document(("k1", signer()))))
    snap = await cache.refresh()
    with pytest.raises(TypeError):
        snap.keys["evil"] = snap.keys["k1"]  # type: ignore[index]


@pytest.mark.asyncio
async def test_fetch_timeout():
    async def slow(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, json={"keys": []})

    cfg = Settings(key_fetch_timeout_seconds=0.05)
    cache = KeyCache(cfg, client=httpx.AsyncClient(transport=httpx.MockTransport(slow)))
    with pytest.raises(KeyFetchError, match="timed out"):
        await cache.refresh()


@pytest.mark.asyncio
async def test_failed_cold_start_is_throttled():
    clock = FakeClock()
    server = KeyServer(status=503)
    cache = _cache(server, clock)
    with pytest.raises(KeyFetchError):
        await cache.snapshot_for_verification()
    # inside the retry window: no new fetch, empty snapshot returned
    assert (await cache.snapshot_for_verification()).is_empty()
    assert server.hits == 1
    clock.now += 61
    server.status, server.document = 200, key_document(("k1", signer()))
    assert list((await cache.snapshot_for_verification()).keys) == ["k1"]
    assert server.hits == 2


@pytest.mark.asyncio
async def test_await_refresh_absorbs_failure_when_keys_exist():
    server = KeyServer(key_document(("k1", signer())))
    cache = _cache(server)
    before = await cache.refresh()
    server.status = 502
    assert await cache.await_refresh() is before
    status = cache.status()
    assert status["keys_loaded"] == 1
    assert status["key_ids"] == ["k1"]
    await cache.close()
