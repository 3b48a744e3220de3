from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

_T = TypeVar("_T")


class PoolError(Exception):
    pass


class PoolEmptyError(PoolError):
    def __init__(self, message: str = "No available accounts") -> None:
        super().__init__(message)
        self.message = message


class PoolContentionError(PoolError):
    def __init__(self, attempts: int) -> None:
        self.message = f"Account selection lost {attempts} consecutive cursor updates"
        super().__init__(self.message)
        self.attempts = attempts


@dataclass(frozen=True, slots=True)
class RoundRobinPick(Generic[_T]):
    item: _T
    index: int
    next_cursor: int


def round_robin_pick(items: Sequence[_T], cursor: int) -> RoundRobinPick[_T]:
    """Pick ``items[cursor mod len]`` and the cursor value that selects its successor."""
    if not items:
        raise PoolEmptyError()
    size = len(items)
    index = cursor % size
    return RoundRobinPick(item=items[index], index=index, next_cursor=(index + 1) % size)
