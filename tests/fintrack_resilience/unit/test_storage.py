from __future__ import annotations

from pathlib import Path

import pytest

from fintrack_resilience.storage import FileStore, InMemoryStore

pytestmark = pytest.mark.asyncio


async def test_in_memory_store_round_trip() -> None:
    store = InMemoryStore({"seed": b"1"})

    assert await store.get("seed") == b"1"
    assert await store.get("missing") is None

    await store.set("tokens", b"abc")
    assert store.keys() == ["seed", "tokens"]

    await store.delete("tokens")
    await store.delete("tokens")
    assert store.keys() == ["seed"]


async def test_file_store_round_trip(tmp_path: Path) -> None:
    store = FileStore(tmp_path / "state")

    assert await store.get("offline_request_queue") is None

    await store.set("offline_request_queue", b"[1, 2]")
    assert await store.get("offline_request_queue") == b"[1, 2]"
    assert (tmp_path / "state" / "offline_request_queue.bin").read_bytes() == b"[1, 2]"

    reopened = FileStore(tmp_path / "state")
    assert await reopened.get("offline_request_queue") == b"[1, 2]"

    await store.delete("offline_request_queue")
    await store.delete("offline_request_queue")
    assert await reopened.get("offline_request_queue") is None


async def test_file_store_replaces_atomically(tmp_path: Path) -> None:
    store = FileStore(tmp_path)

    await store.set("auth_tokens", b"first")
    await store.set("auth_tokens", b"second")

    assert await store.get("auth_tokens") == b"second"
    assert sorted(path.name for path in tmp_path.iterdir()) == ["auth_tokens.bin"]


@pytest.mark.parametrize("key", ["", "../escape", "a/b", "with space"])
async def test_file_store_rejects_unsafe_keys(tmp_path: Path, key: str) -> None:
    store = FileStore(tmp_path)

    with pytest.raises(ValueError, match="invalid store key"):
        await store.set(key, b"x")
