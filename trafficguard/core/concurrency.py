from __future__ import annotations
import threading
import time
import zlib
from typing import Callable, List

# Every component takes a clock so tests can drive time by hand.
Clock = Callable[[], float]


def system_clock() -> float:
    return time.time()


class StripedLock:
    """
    Fixed pool of locks selected by key hash.

    Two callers only contend when their keys land on the same stripe, so
    scoring one source never waits on unrelated sources.
    """

    def __init__(self, stripes: int = 64):
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(max(1, int(stripes)))]

    def __len__(self) -> int:
        return len(self._locks)

    def for_key(self, key: str) -> threading.Lock:
        # crc32 is stable across processes, unlike hash() on str
        idx = zlib.crc32(key.encode("utf-8")) % len(self._locks)
        return self._locks[idx]
