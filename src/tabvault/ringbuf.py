"""Fixed-capacity circular buffer.

Backs both the undo/redo change log and the bounded on-change backup
history. Index 0 is always the oldest item, ``len(buf) - 1`` the newest.

The head and tail pointers only grow; once the tail crosses the capacity
boundary both are pulled back by ``capacity`` together, so the pointers
stay bounded while FIFO order is preserved. ``pos(index)`` maps a logical
index to its physical slot, which the change log uses as a stable,
wrapping storage key.
"""

from typing import Any, Callable, Generic, Iterator, TypeVar

from tabvault.errors import VersionMismatchError

T = TypeVar("T")

RINGBUF_TYPE = "RingBuf"
RINGBUF_VERSION = 1


class RingBuffer(Generic[T]):
    """Circular log that overwrites the oldest item when full."""

    def __init__(self, capacity: int):
        self._items: list[T | None] = [None] * max(1, capacity or 1)
        self._head = 0
        self._tail = 0

    @property
    def capacity(self) -> int:
        return len(self._items)

    @property
    def length(self) -> int:
        return self._head - self._tail

    def __len__(self) -> int:
        return self.length

    def __iter__(self) -> Iterator[T]:
        for i in range(self.length):
            yield self.get(i)

    @property
    def empty(self) -> bool:
        return self.length == 0

    @property
    def full(self) -> bool:
        return self.length == self.capacity

    @property
    def oldest_index(self) -> int:
        return -1 if self.empty else 0

    @property
    def newest_index(self) -> int:
        return self.length - 1

    def pos(self, index: int) -> int:
        """Physical array position of a logical index."""
        return (self._tail + index) % self.capacity

    def get(self, index: int) -> T:
        # No bounds check; callers look at length first.
        return self._items[self.pos(index)]  # type: ignore[return-value]

    def set(self, index: int, item: T) -> "RingBuffer[T]":
        self._items[self.pos(index)] = item
        return self

    def oldest(self) -> T | None:
        return None if self.empty else self.get(self.oldest_index)

    def newest(self) -> T | None:
        return None if self.empty else self.get(self.newest_index)

    def clear(self) -> "RingBuffer[T]":
        self._head = self._tail = 0
        return self

    def push(self, item: T) -> "RingBuffer[T]":
        """Append at the head, dropping the oldest item when full."""
        if self.full:
            self._advance_tail()
        self._items[self._head % self.capacity] = item
        self._head += 1
        return self

    def push_items(self, items: list[T]) -> "RingBuffer[T]":
        for item in items:
            self.push(item)
        return self

    def take(self) -> T | None:
        """Remove and return the oldest item."""
        item = self.oldest()
        if not self.empty:
            self._advance_tail()
        return item

    def take_items(self, upto_count: int) -> list[T]:
        """Remove up to ``upto_count`` oldest items; -1 takes everything."""
        taken = []
        while (upto_count == -1 or len(taken) < upto_count) and not self.empty:
            taken.append(self.take())
        return taken

    def pop(self) -> T | None:
        """Remove and return the newest item."""
        item = self.newest()
        if not self.empty:
            self._head -= 1
        return item

    def pop_items(self, upto_count: int) -> list[T]:
        popped = []
        while (upto_count == -1 or len(popped) < upto_count) and not self.empty:
            popped.append(self.pop())
        return popped

    def to_list(self) -> list[T]:
        """Items from oldest to newest."""
        return [self.get(i) for i in range(self.length)]

    def to_list_newest(self) -> list[T]:
        """Items from newest to oldest."""
        return list(reversed(self.to_list()))

    def find_index(self, predicate: Callable[[T], bool]) -> int:
        for i in range(self.length):
            if predicate(self.get(i)):
                return i
        return -1

    def find(self, predicate: Callable[[T], bool]) -> T | None:
        index = self.find_index(predicate)
        return self.get(index) if index > -1 else None

    def fill_to_capacity(self, item: T) -> None:
        for i in range(self.length, self.capacity):
            self.set(i, item)

    def _advance_tail(self) -> None:
        self._tail += 1
        if self._tail == self.capacity:
            self._tail -= self.capacity
            self._head -= self.capacity

    # ── Serialization ───────────────────────────────────────

    def to_dict(self, encode: Callable[[T], Any] | None = None) -> dict[str, Any]:
        # Slots outside [tail, head) hold stale items; they are not written out.
        live = {self.pos(i) for i in range(self.length)}
        items: list[Any] = []
        for slot, item in enumerate(self._items):
            if slot not in live or item is None:
                items.append(None)
            else:
                items.append(encode(item) if encode else item)
        return {
            "_type": RINGBUF_TYPE,
            "_version": RINGBUF_VERSION,
            "items": items,
            "head": self._head,
            "tail": self._tail,
        }

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        decode: Callable[[Any], T] | None = None,
    ) -> "RingBuffer[T]":
        version = data.get("_version")
        if version != RINGBUF_VERSION:
            raise VersionMismatchError(RINGBUF_TYPE, version)

        items = data.get("items") or []
        buf: RingBuffer[T] = cls(len(items) or 1)
        buf._items = list(items) if items else []
        buf._head = data.get("head", 0)
        buf._tail = data.get("tail", 0)
        buf._validate()
        if decode:
            for i in range(buf.length):
                raw = buf.get(i)
                if raw is not None:
                    buf.set(i, decode(raw))
        return buf

    def _validate(self) -> None:
        if not self._items:
            raise ValueError("Invalid item array")
        if self._tail < 0 or self._tail > self.capacity:
            raise ValueError("Invalid tail position")
        if self._head < 0 or self._head > self.capacity * 2 or self._head < self._tail:
            raise ValueError("Invalid head position")
