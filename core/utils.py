from __future__ import annotations

import time
from typing import Iterable, Iterator, List, Sequence, TypeVar


T = TypeVar('T')


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Yield consecutive slices of ``items`` of at most ``size`` elements."""
    step = max(1, int(size))
    for i in range(0, len(items), step):
        yield list(items[i:i + step])


def batch_count(total: int, size: int) -> int:
    step = max(1, int(size))
    return (total + step - 1) // step


def elapsed_since(started: float) -> float:
    return max(0.0, time.monotonic() - started)


def format_duration(seconds: float) -> str:
    return f'{int(round(seconds))}s'


def join_names(names: Iterable[str]) -> str:
    return ', '.join(f"'{n}'" for n in names)
