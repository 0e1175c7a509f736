from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Mapping

import httpx

from ..errors import KeyCodecError, KeyFetchError
from ..settings import Settings, settings as default_settings
from .codec import PublicKeyHandle, build_public_key_handle, descriptor_from_jwk

logger = logging.getLogger(__name__)

USER_AGENT = "amphook-key-fetcher/0.1"


@dataclass(frozen=True)
class KeyCacheSnapshot:
    keys: Mapping[str, PublicKeyHandle] = field(default_factory=lambda: MappingProxyType({}))
    fetched_at: float = 0.0

    @classmethod
    def build(cls, handles: dict[str, PublicKeyHandle], fetched_at: float) -> "KeyCacheSnapshot":
        # Copy before wrapping so the caller's dict can't leak mutations in.
        return cls(keys=MappingProxyType(dict(handles)), fetched_at=fetched_at)

    def is_empty(self) -> bool:
        return not self.keys

    def age(self, now: float) -> float:
        return now - self.fetched_at


EMPTY_SNAPSHOT = KeyCacheSnapshot()


class KeyCache:
    """Verification keys fetched from the remote key document.

    Holds one immutable ``KeyCacheSnapshot`` and replaces it wholesale after a
    refresh has decoded every usable key. Concurrent callers that notice a
    stale snapshot share a single in-flight refresh task.
    """

    def __init__(
        self,
        config: Settings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or default_settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=self.config.key_fetch_timeout_seconds,
            headers={"User-Agent": USER_AGENT},
        )
        self._clock = clock
        self._snapshot: KeyCacheSnapshot = EMPTY_SNAPSHOT
        self._inflight: asyncio.Task[KeyCacheSnapshot] | None = None
        self._last_attempt: float | None = None
        self.fetch_count = 0

    # --- reads ---

    def current_snapshot(self) -> KeyCacheSnapshot:
        """Return the live snapshot, scheduling a background refresh if stale."""
        snap = self._snapshot
        if self._is_stale(snap) and self._may_attempt():
            try:
                self._start_refresh()
            except RuntimeError:
                # No running loop (sync caller); serve what we have.
                logger.debug("Key cache stale but no event loop to refresh on")
        return snap

    async def await_refresh(self) -> KeyCacheSnapshot:
        """Join (or start) the in-flight refresh and return the resulting snapshot.

        A fetch failure only propagates when there is no usable snapshot.
        """
        task = self._inflight if self._inflight and not self._inflight.done() else self._start_refresh()
        try:
            return await asyncio.shield(task)
        except KeyFetchError as err:
            if self._snapshot.is_empty():
                raise
            logger.warning("Using cached keys (%d) after refresh failure: %s", len(self._snapshot.keys), err)
            return self._snapshot

    async def snapshot_for_verification(self) -> KeyCacheSnapshot:
        snap = self._snapshot
        must_wait = snap.is_empty() or (self.config.require_fresh_keys and self._is_stale(snap))
        if not must_wait:
            return self.current_snapshot()
        if self._refresh_running() or self._may_attempt():
            return await self.await_refresh()
        return snap

    # --- refresh ---

    async def refresh(self) -> KeyCacheSnapshot:
        """Fetch, decode and publish a new snapshot.

        Raises ``KeyFetchError`` on any wholesale failure; the prior snapshot
        stays in place either way.
        """
        self._last_attempt = self._clock()
        self.fetch_count += 1
        logger.info("Fetching signer keys from %s", self.config.key_source_url)
        try:
            document = await asyncio.wait_for(self._fetch_document(), timeout=self.config.key_fetch_timeout_seconds)
        except asyncio.TimeoutError as err:
            raise KeyFetchError(f"key fetch timed out after {self.config.key_fetch_timeout_seconds}s") from err
        entries = document.get("keys") if isinstance(document, dict) else None
        if not isinstance(entries, list):
            raise KeyFetchError("key document missing 'keys' array")

        handles: dict[str, PublicKeyHandle] = {}
        for entry in entries:
            try:
                handle = build_public_key_handle(descriptor_from_jwk(entry))
            except KeyCodecError as err:
                kid = entry.get("kid") if isinstance(entry, dict) else None
                logger.warning("Skipping signer key %s: %s", kid, err)
                continue
            handles[handle.key_id] = handle
        if not handles:
            raise KeyFetchError("key document contained no usable keys")

        snap = KeyCacheSnapshot.build(handles, fetched_at=self._clock())
        self._snapshot = snap
        logger.info("Loaded %d signer keys", len(snap.keys))
        return snap

    async def _fetch_document(self) -> Any:
        try:
            resp = await self._client.get(self.config.key_source_url)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPError as err:
            raise KeyFetchError(f"key fetch failed: {err}") from err
        except ValueError as err:
            raise KeyFetchError(f"key document is not valid JSON: {err}") from err

    def _start_refresh(self) -> asyncio.Task[KeyCacheSnapshot]:
        if self._refresh_running():
            return self._inflight  # type: ignore[return-value]
        task = asyncio.get_running_loop().create_task(self.refresh())
        task.add_done_callback(self._on_refresh_done)
        self._inflight = task
        return task

    def _on_refresh_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        err = task.exception()
        if err is not None:
            # Surface to awaiters via await_refresh; background-only refreshes just log.
            logger.warning("Signer key refresh failed: %s", err)

    def _refresh_running(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def _is_stale(self, snap: KeyCacheSnapshot) -> bool:
        return snap.is_empty() or snap.age(self._clock()) > self.config.key_cache_ttl_seconds

    def _may_attempt(self) -> bool:
        if self._last_attempt is None:
            return True
        # A successful refresh resets staleness, so this only throttles failures.
        return self._clock() - self._last_attempt >= self.config.key_refresh_retry_seconds

    # --- lifecycle / introspection ---

    def status(self) -> dict[str, Any]:
        snap = self._snapshot
        return {
            "keys_loaded": len(snap.keys),
            "key_ids": sorted(snap.keys),
            "snapshot_age_seconds": None if snap.is_empty() else round(snap.age(self._clock()), 3),
            "refresh_in_flight": self._refresh_running(),
        }

    async def close(self) -> None:
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        if self._owns_client:
            await self._client.aclose()


__all__ = ["KeyCache", "KeyCacheSnapshot", "EMPTY_SNAPSHOT"]
