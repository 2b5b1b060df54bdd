"""Durable key-value storage for tokens and the offline request queue.

Storage is intentionally decoupled from the components using it. Custom
backends (for example a browser bridge or a keyring) can implement the
interface; values are opaque bytes.
"""

from __future__ import annotations

import asyncio
import os
import re
import tempfile
from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class AbstractDurableStore(ABC):
    """Abstract durable store interface."""

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Return the value stored under ``key``, or None when missing."""

    @abstractmethod
    async def set(self, key: str, value: bytes) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key``. Missing keys are ignored."""


class InMemoryStore(AbstractDurableStore):
    """Process-local store, mostly useful for tests and ephemeral sessions."""

    def __init__(self, initial: dict[str, bytes] | None = None) -> None:
        self._values: dict[str, bytes] = dict(initial or {})

    async def get(self, key: str) -> bytes | None:
        return self._values.get(key)

    async def set(self, key: str, value: bytes) -> None:
        self._values[key] = bytes(value)

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)

    def keys(self) -> list[str]:
        """Return stored keys, sorted."""
        return sorted(self._values)


class FileStore(AbstractDurableStore):
    """Store one file per key inside a directory.

    Writes go through a temporary file and ``os.replace`` so a crash never
    leaves a half-written value behind. Blocking file I/O runs in a worker
    thread.
    """

    def __init__(self, directory: str | os.PathLike[str]) -> None:
        """Create a file store rooted at ``directory`` (created if missing)."""
        self._directory = Path(directory)
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def directory(self) -> Path:
        return self._directory

    def _path_for(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"invalid store key: {key!r}")
        return self._directory / f"{key}.bin"

    @asynccontextmanager
    async def _locked(self, key: str) -> AsyncIterator[None]:
        async with self._locks[key]:
            yield

    async def get(self, key: str) -> bytes | None:
        path = self._path_for(key)
        async with self._locked(key):
            return await asyncio.to_thread(self._read, path)

    async def set(self, key: str, value: bytes) -> None:
        path = self._path_for(key)
        async with self._locked(key):
            await asyncio.to_thread(self._write, path, bytes(value))

    async def delete(self, key: str) -> None:
        path = self._path_for(key)
        async with self._locked(key):
            await asyncio.to_thread(path.unlink, missing_ok=True)

    @staticmethod
    def _read(path: Path) -> bytes | None:
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def _write(self, path: Path, value: bytes) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._directory, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(value)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
