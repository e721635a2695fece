from __future__ import annotations
import math
import time
from typing import Dict


class Stat:
    """Running count, mean and spread of one kind of call (Welford).

    The service runs indefinitely, so samples are folded in rather than kept.
    """
    __slots__ = ("n", "mean", "_m2", "max")

    def __init__(self) -> None:
        self.n = 0
        self.mean = 0.0
        self._m2 = 0.0
        self.max = 0.0

    def add(self, value: float) -> None:
        self.n += 1
        delta = value - self.mean
        self.mean += delta / self.n
        self._m2 += delta * (value - self.mean)
        if value > self.max:
            self.max = value

    @property
    def std(self) -> float:
        # sample standard deviation
        if self.n < 2:
            return 0.0
        return math.sqrt(self._m2 / (self.n - 1))


# single event loop, no locks
_STATS: Dict[str, Stat] = {}


def record(kind: str, seconds: float) -> None:
    stat = _STATS.get(kind)
    if stat is None:
        stat = _STATS[kind] = Stat()
    stat.add(float(seconds))


class timeit:
    """Time an awaited block under a name.

        async with timeit("payments.create_checkout"):
            await gateway.create_checkout(...)

    Failed calls are recorded too; a slow timeout is still a slow call.
    """
    __slots__ = ("_kind", "_started")

    def __init__(self, kind: str):
        self._kind = kind
        self._started = 0.0

    async def __aenter__(self):
        self._started = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record(self._kind, time.perf_counter() - self._started)


def summary() -> Dict[str, Dict[str, float]]:
    return {
        kind: {"n": s.n, "mean": s.mean, "std": s.std, "max": s.max}
        for kind, s in _STATS.items()
    }


def reset() -> None:
    _STATS.clear()
