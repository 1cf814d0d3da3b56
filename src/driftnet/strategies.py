"""Queue ordering strategies."""

import heapq
import itertools
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Optional

from driftnet.models import CrawlRequest

Pending = OrderedDict[str, CrawlRequest]


class QueueStrategy(ABC):
    """
    Selects the next pending key without removing it.

    The queue calls ``push`` right after every insertion into ``pending``,
    so a strategy may keep its own index alongside the mapping.
    """

    name: str = ""

    @abstractmethod
    def select(self, pending: Pending) -> Optional[str]:
        """
        Pick the next key to dequeue.

        Args:
            pending: Pending requests keyed by unique_key, in insertion order

        Returns:
            Selected unique_key or None if nothing is pending
        """
        pass

    def push(self, pending: Pending, key: str, front: bool = False) -> None:
        """
        Index a key just inserted into ``pending``.

        Args:
            pending: Pending requests, already holding ``key``
            key: Inserted key
            front: Order the key ahead of its equals (a handed-back request)
        """
        pass


class FifoStrategy(QueueStrategy):
    """Breadth-first: oldest insertion first."""

    name = "fifo"

    def select(self, pending: Pending) -> Optional[str]:
        return next(iter(pending), None)

    def push(self, pending: Pending, key: str, front: bool = False) -> None:
        if front:
            pending.move_to_end(key, last=False)


class LifoStrategy(QueueStrategy):
    """Depth-first: newest insertion first."""

    name = "lifo"

    def select(self, pending: Pending) -> Optional[str]:
        return next(reversed(pending), None)


class PriorityStrategy(QueueStrategy):
    """Highest value of ``field`` first, FIFO among equals."""

    name = "priority"

    def __init__(self, field: str = "priority"):
        self.field = field
        self._heap: list[tuple[float, int, str]] = []
        self._seq: dict[str, int] = {}
        self._counter = itertools.count(1)

    def push(self, pending: Pending, key: str, front: bool = False) -> None:
        value = getattr(pending[key], self.field, 0) or 0
        seq = next(self._counter)
        if front:
            seq = -seq
        self._seq[key] = seq
        heapq.heappush(self._heap, (-value, seq, key))

    def select(self, pending: Pending) -> Optional[str]:
        # Entries go stale when their key leaves pending or is pushed again
        while self._heap:
            _, seq, key = self._heap[0]
            if key in pending and self._seq.get(key) == seq:
                return key
            heapq.heappop(self._heap)
            if self._seq.get(key) == seq:
                del self._seq[key]
        return None


_STRATEGIES = {
    "fifo": FifoStrategy,
    "bfs": FifoStrategy,
    "lifo": LifoStrategy,
    "dfs": LifoStrategy,
    "priority": PriorityStrategy,
}


def create_queue_strategy(name: str) -> QueueStrategy:
    """
    Build a queue strategy by name.

    Args:
        name: One of fifo, lifo, priority (bfs/dfs are aliases)

    Returns:
        QueueStrategy instance

    Raises:
        ValueError: If the name is unknown
    """
    try:
        return _STRATEGIES[name.lower()]()
    except KeyError:
        raise ValueError(
            f"Unknown queue strategy: {name!r}. Expected one of {sorted(_STRATEGIES)}"
        ) from None
