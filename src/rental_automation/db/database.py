"""JSON file persistence with external-change detection."""

import asyncio
import copy
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class JsonFileStore:
    """A plain JSON document on disk with an in-memory cache.

    The cache is dropped whenever the file's mtime/size no longer matches what
    this process last saw, so hand edits are picked up. Identical rewrites
    inside the cooldown are skipped, and change notifications are suppressed
    while this process is writing.
    """

    def __init__(
        self,
        path: str | Path,
        default: Any,
        write_cooldown_seconds: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.path = Path(path)
        self._default = default
        self._cooldown = write_cooldown_seconds
        self._clock = clock
        self._cache: Any = None
        self._signature: Optional[tuple[int, int]] = None
        self._last_write_at: Optional[float] = None
        self._writing = False
        self._watch_task: Optional[asyncio.Task] = None

    def _stat(self) -> Optional[tuple[int, int]]:
        try:
            st = self.path.stat()
        except FileNotFoundError:
            return None
        return (st.st_mtime_ns, st.st_size)

    @property
    def writing(self) -> bool:
        return self._writing

    def changed_externally(self) -> bool:
        """True if the file changed on disk since this process last read or wrote it."""
        if self._writing:
            return False
        return self._stat() != self._signature

    def invalidate(self) -> None:
        self._cache = None

    def read(self) -> Any:
        """Get the document, reloading it if the file changed on disk."""
        if self._cache is None or self.changed_externally():
            self._cache = self._load()
        return copy.deepcopy(self._cache)

    def _load(self) -> Any:
        signature = self._stat()
        self._signature = signature
        if signature is None:
            return copy.deepcopy(self._default)
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "null")
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Could not read {self.path}, treating it as empty: {e}")
            return copy.deepcopy(self._default)
        if data is None:
            return copy.deepcopy(self._default)
        logger.debug(f"Loaded {self.path}")
        return data

    def write(self, data: Any) -> bool:
        """Persist the document atomically.

        Returns:
            False if the write was skipped because the same content was
            written within the cooldown
        """
        now = self._clock()
        if (
            self._cache is not None
            and self._last_write_at is not None
            and now - self._last_write_at < self._cooldown
            and data == self._cache
            and not self.changed_externally()
        ):
            logger.debug(f"Skipping redundant write to {self.path}")
            return False

        self._writing = True
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2)
                os.replace(tmp_path, self.path)
            except BaseException:
                Path(tmp_path).unlink(missing_ok=True)
                raise
            self._signature = self._stat()
            self._cache = copy.deepcopy(data)
            self._last_write_at = now
        finally:
            self._writing = False
        return True

    async def _watch_loop(
        self, on_change: Callable[[], Awaitable[None]], interval: float
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                if self.changed_externally():
                    logger.info(f"{self.path} changed on disk, reloading")
                    self.invalidate()
                    self.read()
                    await on_change()
            except Exception as e:
                logger.error(f"Error handling change to {self.path}: {e}", exc_info=True)

    def start_watching(
        self, on_change: Callable[[], Awaitable[None]], interval: float = 5.0
    ) -> None:
        """Poll the file and call ``on_change`` after an external edit."""
        if self._watch_task and not self._watch_task.done():
            return
        # Establish the baseline so only later edits count
        self.read()
        self._watch_task = asyncio.create_task(self._watch_loop(on_change, interval))

    async def stop_watching(self) -> None:
        if self._watch_task and not self._watch_task.done():
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass
        self._watch_task = None
