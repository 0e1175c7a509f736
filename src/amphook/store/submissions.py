from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from ..api.models import Submission, SubmissionFilter
from ..errors import ErrorKind
from .persistence import PersistenceWriter

logger = logging.getLogger(__name__)

EVICTION_DIVISOR = 10  # oldest 10% go on overflow
_B36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(n: int) -> str:
    out = ""
    while True:
        n, r = divmod(n, 36)
        out = _B36[r] + out
        if n == 0:
            return out


def eviction_count(capacity: int) -> int:
    """Entries removed when an insert pushes the store past ``capacity``."""
    return max(1, capacity // EVICTION_DIVISOR)


def _searchable_values(value: Any) -> Iterable[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, bool) or value is None:
        return
    elif isinstance(value, (int, float)):
        yield str(value)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from _searchable_values(v)
    elif isinstance(value, dict):
        for v in value.values():
            yield from _searchable_values(v)


class SubmissionStore:
    """Bounded, insertion-ordered table of accepted submissions.

    Mutations (insert + eviction, cleanup, load) are serialized by one
    ``asyncio.Lock``. Reads copy the current values without awaiting, so on the
    event loop they always see the state before or after a mutation, never in
    between.
    """

    def __init__(self, capacity: int = 10000, *, writer: PersistenceWriter | None = None):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self.writer = writer
        self._entries: dict[str, Submission] = {}
        self._lock = asyncio.Lock()
        self._seq = itertools.count(1)
        self.evicted_total = 0

    def __len__(self) -> int:
        return len(self._entries)

    def _mint_id(self) -> str:
        while True:
            sid = f"sub_{_base36(int(time.time() * 1000))}_{next(self._seq):x}{secrets.token_hex(3)}"
            if sid not in self._entries:
                return sid

    # --- mutations ---

    async def insert(self, submission: Submission) -> str:
        async with self._lock:
            sid = self._mint_id()
            stored = submission.model_copy(update={"id": sid})
            self._entries[sid] = stored
            evicted = self._evict_if_needed()
        if self.writer is not None:
            self.writer.enqueue_save(stored)
            self.writer.enqueue_remove(evicted)
        return sid

    def _evict_if_needed(self) -> list[str]:
        if len(self._entries) <= self.capacity:
            return []
        removed: list[str] = []
        while len(self._entries) > self.capacity:
            n = eviction_count(self.capacity)
            # nsmallest is stable, so equal timestamps go in insertion order
            oldest = heapq.nsmallest(n, self._entries.values(), key=lambda s: s.received_at)
            for s in oldest:
                del self._entries[s.id]
                removed.append(s.id)
        self.evicted_total += len(removed)
        logger.info(
            "Evicted %d oldest submissions (%s); %d remain",
            len(removed), ErrorKind.STORE_CAPACITY_EVICTION.value, len(self._entries),
        )
        return removed

    async def cleanup(self, older_than_days: float) -> int:
        if older_than_days < 0:
            raise ValueError("older_than_days must be >= 0")
        cutoff = datetime.now(timezone.utc) - timedelta(days=older_than_days)
        async with self._lock:
            stale = [sid for sid, s in self._entries.items() if s.received_at < cutoff]
            for sid in stale:
                del self._entries[sid]
        if self.writer is not None:
            self.writer.enqueue_remove(stale)
        logger.info("Cleaned up %d submissions older than %s; %d remain", len(stale), cutoff.isoformat(), len(self._entries))
        return len(stale)

    async def load(self, submissions: Iterable[Submission]) -> int:
        """Restore previously persisted submissions (crash recovery)."""
        async with self._lock:
            loaded = 0
            for s in sorted(submissions, key=lambda x: x.received_at):
                if not s.id or s.id in self._entries:
                    continue
                self._entries[s.id] = s
                loaded += 1
            evicted = self._evict_if_needed()
        if self.writer is not None:
            self.writer.enqueue_remove(evicted)
        logger.info("Loaded %d submissions from storage", loaded)
        return loaded

    # --- reads ---

    def get(self, submission_id: str) -> Submission | None:
        return self._entries.get(submission_id)

    def list(self, flt: SubmissionFilter | None = None, page: int = 1, page_size: int = 50) -> tuple[list[Submission], int]:
        if page < 1 or page_size < 1:
            raise ValueError("page and page_size must be >= 1")
        matched = self.matching(flt)
        start = (page - 1) * page_size
        return matched[start:start + page_size], len(matched)

    def matching(self, flt: SubmissionFilter | None = None) -> list[Submission]:
        """All submissions passing ``flt``, newest first."""
        values = list(self._entries.values())
        if flt is not None:
            values = [s for s in values if flt.matches(s)]
        values.sort(key=lambda s: s.received_at, reverse=True)
        return values

    def search(self, term: str) -> list[Submission]:
        needle = (term or "").strip().lower()
        if not needle:
            return []
        hits = []
        for s in list(self._entries.values()):
            meta = s.metadata
            haystack = itertools.chain(
                _searchable_values(list(s.fields.values())),
                (v for v in (meta.sender_identity, meta.client_address, meta.user_agent, s.form_id) if v),
            )
            if any(needle in v.lower() for v in haystack):
                hits.append(s)
        hits.sort(key=lambda s: s.received_at, reverse=True)
        return hits

    def count_since(self, since: datetime) -> int:
        return sum(1 for s in list(self._entries.values()) if s.received_at >= since)


__all__ = ["SubmissionStore", "eviction_count", "EVICTION_DIVISOR"]
