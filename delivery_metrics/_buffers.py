"""Time-bounded and single-slot containers shared by the producers.

RollingWindow keeps (timestamp, value) pairs no older than a horizon.
LatestValue is a last-value-wins cell: a producer replaces the reference,
the aggregator reads it without waiting. Replacing one attribute is atomic
under the interpreter lock, so neither container needs a lock for the
single-writer / single-reader usage in this package.
"""

from collections import deque
from typing import Generic, Iterator, Optional, TypeVar

T = TypeVar("T")


class RollingWindow(Generic[T]):
    """Ordered (timestamp, value) pairs bounded by a time horizon.

    Eviction happens from the front on every insert and on explicit
    evict() calls, so after either operation no entry is older than
    ``horizon_s`` relative to the observation time. Timestamps are
    expected to be non-decreasing.

    Args:
        horizon_s: Maximum entry age in seconds.

    Raises:
        ValueError: If horizon_s is not positive.
    """

    def __init__(self, horizon_s: float) -> None:
        if horizon_s <= 0:
            raise ValueError(f"horizon_s must be > 0, got {horizon_s}")
        self._horizon_s = horizon_s
        self._entries: deque[tuple[float, T]] = deque()

    @property
    def horizon_s(self) -> float:
        return self._horizon_s

    def append(self, timestamp: float, value: T) -> None:
        """Insert a value and drop everything older than the horizon."""
        self._entries.append((timestamp, value))
        self.evict(timestamp)

    def extend(self, timestamp: float, values: list[T]) -> None:
        for value in values:
            self._entries.append((timestamp, value))
        self.evict(timestamp)

    def evict(self, now: float) -> None:
        cutoff = now - self._horizon_s
        entries = self._entries
        while entries and entries[0][0] < cutoff:
            entries.popleft()

    def values(self) -> list[T]:
        return [v for _, v in self._entries]

    def timestamps(self) -> list[float]:
        return [t for t, _ in self._entries]

    def oldest(self) -> Optional[float]:
        return self._entries[0][0] if self._entries else None

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[tuple[float, T]]:
        return iter(list(self._entries))

    def __bool__(self) -> bool:
        return bool(self._entries)


class LatestValue(Generic[T]):
    """Single-slot cache holding the most recently written value.

    Writers overwrite, readers never block. ``version`` increases on every
    write so a reader can tell whether the value changed since it last
    looked.
    """

    def __init__(self) -> None:
        self._value: Optional[T] = None
        self._version = 0

    def set(self, value: T) -> None:
        self._value = value
        self._version += 1

    def get(self) -> Optional[T]:
        return self._value

    def take(self) -> Optional[T]:
        """Return the value and empty the slot."""
        value, self._value = self._value, None
        return value

    @property
    def version(self) -> int:
        return self._version

    @property
    def has_value(self) -> bool:
        return self._value is not None

    def clear(self) -> None:
        self._value = None
