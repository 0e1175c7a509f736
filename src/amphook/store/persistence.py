from __future__ import annotations

import asyncio
import logging
import re
from collections import deque
from pathlib import Path
from typing import Iterable, Protocol

from ..api.models import Submission
from ..errors import PersistenceWriteError

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


class SubmissionPersistence(Protocol):
    def save(self, submission: Submission) -> None: ...

    def load_all(self) -> list[Submission]: ...

    def remove(self, ids: Iterable[str]) -> None: ...


class JsonDirPersistence:
    """One ``<id>.json`` file per submission under ``root``.

    Unreadable or malformed files are skipped on load so one bad write can't
    block recovery of the rest.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def _path(self, submission_id: str) -> Path:
        if not _SAFE_ID.match(submission_id):
            raise PersistenceWriteError(f"unsafe submission id {submission_id!r}")
        return self.root / f"{submission_id}.json"

    def save(self, submission: Submission) -> None:
        if not submission.id:
            raise PersistenceWriteError("submission has no id")
        self.root.mkdir(parents=True, exist_ok=True)
        target = self._path(submission.id)
        tmp = target.with_suffix(".json.tmp")
        try:
            tmp.write_text(submission.model_dump_json(indent=2))
            tmp.replace(target)
        except OSError as err:
            raise PersistenceWriteError(f"failed writing {target}: {err}") from err

    def remove(self, ids: Iterable[str]) -> None:
        for sid in ids:
            try:
                self._path(sid).unlink(missing_ok=True)
            except OSError as err:
                raise PersistenceWriteError(f"failed removing {sid}: {err}") from err

    def load_all(self) -> list[Submission]:
        if not self.root.exists():
            return []
        out: list[Submission] = []
        for p in sorted(self.root.glob("*.json")):
            try:
                out.append(Submission.model_validate_json(p.read_text()))
            except Exception as e:  # noqa: S112 - tolerate malformed but log
                logger.exception("Failed to parse submission file %s: %s", p, e)
                continue
        return out


class PersistenceWriter:
    """Bounded background queue mirroring store mutations to a persistence port.

    Writes never run under the store's mutation lock and never raise into the
    caller; failures land in the bounded ``errors`` deque and the log.
    """

    def __init__(self, backend: SubmissionPersistence, max_queue: int = 256, max_errors: int = 100):
        self.backend = backend
        self._queue: asyncio.Queue[tuple[str, object]] = asyncio.Queue(maxsize=max_queue)
        self._worker: asyncio.Task | None = None
        self.errors: deque[PersistenceWriteError] = deque(maxlen=max_errors)
        self.dropped = 0
        self.written = 0

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    def enqueue_save(self, submission: Submission) -> None:
        self._offer(("save", submission))

    def enqueue_remove(self, ids: list[str]) -> None:
        if ids:
            self._offer(("remove", list(ids)))

    def _offer(self, op: tuple[str, object]) -> None:
        try:
            self._queue.put_nowait(op)
        except asyncio.QueueFull:
            self.dropped += 1
            err = PersistenceWriteError(f"persistence queue full, dropped {op[0]}")
            self.errors.append(err)
            logger.warning("%s", err)
            return
        self.start()

    async def _run(self) -> None:
        while True:
            kind, payload = await self._queue.get()
            try:
                if kind == "save":
                    await asyncio.to_thread(self.backend.save, payload)
                else:
                    await asyncio.to_thread(self.backend.remove, payload)
                self.written += 1
            except PersistenceWriteError as err:
                self.errors.append(err)
                logger.error("Persistence write failed: %s", err)
            except Exception as e:
                self.errors.append(PersistenceWriteError(str(e)))
                logger.exception("Unexpected persistence failure (%s)", kind)
            finally:
                self._queue.task_done()

    async def flush(self) -> None:
        """Wait until every queued write has been attempted."""
        await self._queue.join()

    async def stop(self) -> None:
        if self._worker is None:
            return
        await self.flush()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None


__all__ = ["SubmissionPersistence", "JsonDirPersistence", "PersistenceWriter"]
