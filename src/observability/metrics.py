from __future__ import annotations
from collections import defaultdict

_COUNTERS = defaultdict(int)


def inc(name: str, value: int = 1):
    _COUNTERS[name] += value


def get(name: str) -> int:
    return _COUNTERS.get(name, 0)


def snapshot():
    return dict(_COUNTERS)


def reset():
    _COUNTERS.clear()
