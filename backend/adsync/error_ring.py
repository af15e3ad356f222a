"""
Fixed-capacity error log kept on connected accounts and campaigns.
Slots are preallocated; once full, each append overwrites the oldest entry.
"""

from datetime import datetime
from typing import Iterator, Optional

from pydantic import BaseModel

ERROR_RING_CAPACITY = 100


class ErrorEntry(BaseModel):
    code: str
    message: str
    timestamp: datetime


class ErrorRing:
    def __init__(self, capacity: int = ERROR_RING_CAPACITY, entries: Optional[list] = None):
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._slots: list[Optional[ErrorEntry]] = [None] * capacity
        self._start = 0  # index of the oldest entry
        self._size = 0
        for entry in entries or []:
            self.append(entry if isinstance(entry, ErrorEntry) else ErrorEntry.model_validate(entry))

    def append(self, entry: ErrorEntry) -> None:
        if self._size < self.capacity:
            self._slots[(self._start + self._size) % self.capacity] = entry
            self._size += 1
        else:
            self._slots[self._start] = entry
            self._start = (self._start + 1) % self.capacity

    def record(self, code: str, message: str, timestamp: datetime) -> ErrorEntry:
        entry = ErrorEntry(code=code, message=message, timestamp=timestamp)
        self.append(entry)
        return entry

    def __len__(self) -> int:
        return self._size

    def __iter__(self) -> Iterator[ErrorEntry]:
        for i in range(self._size):
            yield self._slots[(self._start + i) % self.capacity]

    def latest(self) -> Optional[ErrorEntry]:
        if not self._size:
            return None
        return self._slots[(self._start + self._size - 1) % self.capacity]

    def to_list(self) -> list[dict]:
        """Oldest first, JSON-ready."""
        return [entry.model_dump(mode="json") for entry in self]

    def copy(self) -> "ErrorRing":
        return ErrorRing(self.capacity, list(self))

    def __eq__(self, other) -> bool:
        return isinstance(other, ErrorRing) and list(self) == list(other)

    def __repr__(self) -> str:
        return f"ErrorRing(size={self._size}, capacity={self.capacity})"
