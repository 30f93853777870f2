"""
Bastion — Sharded in-process map.

Keys are spread over a fixed number of shards, each with its own lock,
so read-modify-write on one key never waits on an unrelated key.
Safe to use from the event loop and from worker threads.
"""

from __future__ import annotations

import threading
import zlib
from contextlib import contextmanager
from typing import Callable, Generic, Iterator, Optional, TypeVar

V = TypeVar("V")
R = TypeVar("R")


class _Shard(Generic[V]):
    __slots__ = ("lock", "items")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.items: dict[str, V] = {}


class ShardedMap(Generic[V]):
    """Dict-like store with per-shard locking."""

    def __init__(self, shards: int = 64) -> None:
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._shards: list[_Shard[V]] = [_Shard() for _ in range(shards)]

    def _shard(self, key: str) -> _Shard[V]:
        return self._shards[zlib.crc32(key.encode()) % len(self._shards)]

    def __len__(self) -> int:
        return sum(len(s.items) for s in self._shards)

    def __contains__(self, key: str) -> bool:
        shard = self._shard(key)
        with shard.lock:
            return key in shard.items

    def get(self, key: str) -> Optional[V]:
        shard = self._shard(key)
        with shard.lock:
            return shard.items.get(key)

    def pop(self, key: str) -> Optional[V]:
        shard = self._shard(key)
        with shard.lock:
            return shard.items.pop(key, None)

    def read(self, key: str, fn: Callable[[V], R], default: R) -> R:
        """Apply ``fn`` to the value under the shard lock without creating it."""
        shard = self._shard(key)
        with shard.lock:
            value = shard.items.get(key)
            return default if value is None else fn(value)

    @contextmanager
    def locked(self, key: str, factory: Callable[[], V]) -> Iterator[V]:
        """Hold the key's shard lock while the caller mutates its value."""
        shard = self._shard(key)
        with shard.lock:
            value = shard.items.get(key)
            if value is None:
                value = factory()
                shard.items[key] = value
            yield value

    def sweep(self, visit: Callable[[str, V], bool]) -> int:
        """
        Visit every entry shard by shard under that shard's lock.
        ``visit`` returns True to drop the entry. Returns the number dropped.
        """
        dropped = 0
        for shard in self._shards:
            with shard.lock:
                doomed = [k for k, v in shard.items.items() if visit(k, v)]
                for key in doomed:
                    del shard.items[key]
                dropped += len(doomed)
        return dropped

    def values(self) -> list[V]:
        out: list[V] = []
        for shard in self._shards:
            with shard.lock:
                out.extend(shard.items.values())
        return out

    def clear(self) -> None:
        for shard in self._shards:
            with shard.lock:
                shard.items.clear()
