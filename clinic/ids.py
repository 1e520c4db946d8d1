"""Identifier allocation for clinic entities."""
from __future__ import annotations

import re
import threading
from typing import Dict, Iterable, Protocol

__all__ = ["IdAllocator", "SequentialIdAllocator", "ID_PREFIXES"]

ID_PREFIXES: Dict[str, str] = {
    "patient": "P",
    "doctor": "D",
    "appointment": "A",
    "bill": "B",
}
_ID_PATTERN = re.compile(r"^([A-Z])(\d+)$")


class IdAllocator(Protocol):
    """Anything able to hand out unique ids per entity kind."""

    def next_id(self, kind: str) -> str:
        """Return a fresh id for ``kind`` (``patient``, ``doctor``, ...)."""


class SequentialIdAllocator:
    """Thread-safe allocator producing ids such as ``P00001`` or ``A00042``."""

    def __init__(self, width: int = 5, start: int = 1) -> None:
        if width <= 0:
            raise ValueError("width must be positive")
        self._width = width
        self._start = start
        self._counters: Dict[str, int] = {}
        self._lock = threading.Lock()

    def next_id(self, kind: str) -> str:
        prefix = self._prefix(kind)
        with self._lock:
            value = self._counters.get(prefix, self._start - 1) + 1
            self._counters[prefix] = value
        return f"{prefix}{value:0{self._width}d}"

    def observe(self, identifiers: Iterable[str]) -> None:
        """Advance counters past ids that already exist, e.g. after loading CSV files."""

        with self._lock:
            for identifier in identifiers:
                match = _ID_PATTERN.match(identifier or "")
                if not match:
                    continue
                prefix, number = match.group(1), int(match.group(2))
                if number > self._counters.get(prefix, self._start - 1):
                    self._counters[prefix] = number

    def current(self, kind: str) -> int:
        with self._lock:
            return self._counters.get(self._prefix(kind), self._start - 1)

    @staticmethod
    def _prefix(kind: str) -> str:
        try:
            return ID_PREFIXES[kind]
        except KeyError as exc:
            raise ValueError(f"Unknown id kind '{kind}'") from exc
