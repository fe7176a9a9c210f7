from __future__ import annotations

from collections import OrderedDict
from collections.abc import Iterator
from typing import Generic, TypeVar

K = TypeVar("K")


class RecencyList(Generic[K]):
    """Most- to least-recently-used ordering of keys.

    Backed by an ``OrderedDict`` (hash map over a doubly linked list), so
    touching, inserting, removing and popping the coldest key are all O(1).
    The oldest key sits at the front, the newest at the end.
    """

    def __init__(self) -> None:
        self._order: OrderedDict[K, None] = OrderedDict()

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, key: object) -> bool:
        return key in self._order

    def __iter__(self) -> Iterator[K]:
        """Iterate from most to least recently used."""
        return reversed(self._order)

    def touch(self, key: K) -> None:
        if key in self._order:
            self._order.move_to_end(key)
            return
        self._order[key] = None

    def discard(self, key: K) -> bool:
        if key not in self._order:
            return False
        del self._order[key]
        return True

    def pop_oldest(self) -> K | None:
        if not self._order:
            return None
        key, _ = self._order.popitem(last=False)
        return key

    def oldest(self) -> K | None:
        return next(iter(self._order), None)

    def clear(self) -> None:
        self._order.clear()
