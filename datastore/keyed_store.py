"""Thread-safe in-memory keyed store.

The store is the single shared mutable resource of the application. Every
doctor, patient, appointment and bill lives in one ``KeyedStore`` instance,
and every other component works on copies handed out by it.

Readers share the lock, writers get exclusive access, and a waiting writer
blocks newly arriving readers so a steady stream of queries cannot starve
updates. Caller supplied callables (predicates, sort keys) always run outside
the lock on a point-in-time copy of the values, which keeps a predicate that
queries the same store from deadlocking.
"""
from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import (
    Any,
    Callable,
    Dict,
    Generic,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Tuple,
    TypeVar,
)

from clinic.errors import ConcurrencyInvariantViolation, ValidationError

__all__ = [
    "KeyedStore",
    "Page",
    "Snapshot",
    "StoreStatistics",
    "StoreValidationResult",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")
Predicate = Callable[[T], bool]
SortKey = Callable[[T], Any]


class _ReadWriteLock:
    """Readers/writer lock with writer preference. Not reentrant."""

    def __init__(self) -> None:
        self._condition = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer_active = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._condition:
            while self._writer_active or self._writers_waiting:
                self._condition.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._condition:
                self._readers -= 1
                if self._readers == 0:
                    self._condition.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._condition:
            self._writers_waiting += 1
            try:
                while self._writer_active or self._readers:
                    self._condition.wait()
            finally:
                self._writers_waiting -= 1
            self._writer_active = True
        try:
            yield
        finally:
            with self._condition:
                self._writer_active = False
                self._condition.notify_all()


@dataclass(frozen=True)
class Page(Generic[T]):
    """One page of a (possibly sorted) listing."""

    content: Tuple[T, ...]
    page_number: int
    page_size: int
    total_elements: int
    total_pages: int

    @property
    def has_next(self) -> bool:
        return self.page_number < self.total_pages - 1

    @property
    def has_previous(self) -> bool:
        return self.page_number > 0

    @property
    def is_first(self) -> bool:
        return self.page_number == 0

    @property
    def is_last(self) -> bool:
        return self.page_number == self.total_pages - 1

    def __len__(self) -> int:
        return len(self.content)

    def __str__(self) -> str:
        return (
            f"Page {self.page_number + 1} of {self.total_pages} "
            f"(showing {len(self.content)} of {self.total_elements} total items)"
        )


class Snapshot(Generic[T]):
    """Immutable, time-frozen copy of a store's contents.

    Values are deep copied on the way in and on the way out, so neither later
    store mutations nor callers holding values from the snapshot can change it.
    """

    __slots__ = ("_store_type", "_data", "_taken_at")

    def __init__(self, store_type: str, data: Mapping[str, T], taken_at: datetime) -> None:
        self._store_type = store_type
        self._data: Mapping[str, T] = MappingProxyType(copy.deepcopy(dict(data)))
        self._taken_at = taken_at

    @property
    def store_type(self) -> str:
        return self._store_type

    @property
    def taken_at(self) -> datetime:
        return self._taken_at

    def keys(self) -> List[str]:
        return list(self._data.keys())

    def get(self, key: str) -> Optional[T]:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    def values(self) -> List[T]:
        return [copy.deepcopy(value) for value in self._data.values()]

    def items(self) -> List[Tuple[str, T]]:
        return [(key, copy.deepcopy(value)) for key, value in self._data.items()]

    def to_dict(self) -> Dict[str, T]:
        return copy.deepcopy(dict(self._data))

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __repr__(self) -> str:
        return (
            f"Snapshot(store_type={self._store_type!r}, entries={len(self._data)}, "
            f"taken_at={self._taken_at.isoformat()})"
        )


@dataclass(frozen=True)
class StoreStatistics:
    store_type: str
    size: int
    created_at: datetime
    last_modified: datetime
    operation_count: int

    def __str__(self) -> str:
        return (
            f"KeyedStore statistics [{self.store_type}]: {self.size} entities, "
            f"{self.operation_count} operations, last modified {self.last_modified:%Y-%m-%d %H:%M:%S}"
        )


@dataclass
class StoreValidationResult:
    entity_count: int = 0
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def _require_key(key: object) -> str:
    if not isinstance(key, str) or not key.strip():
        raise ValidationError("Key cannot be null or empty", field="key")
    return key


def _require_value(value: object) -> None:
    if value is None:
        raise ValidationError("Value cannot be None", field="value")


class KeyedStore(Generic[T]):
    """Generic keyed container with CRUD, query, paging and snapshot support."""

    def __init__(
        self,
        store_type: str = "Generic",
        *,
        default_sort_key: Optional[SortKey] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._store_type = store_type
        self._data: Dict[str, T] = {}
        self._lock = _ReadWriteLock()
        self._clock = clock
        self._default_sort_key = default_sort_key
        self._created_at = clock()
        self._last_modified = self._created_at
        self._operation_count = 0

    @property
    def store_type(self) -> str:
        return self._store_type

    @property
    def default_sort_key(self) -> Optional[SortKey]:
        return self._default_sort_key

    @default_sort_key.setter
    def default_sort_key(self, key: Optional[SortKey]) -> None:
        self._default_sort_key = key

    # CRUD

    def put(self, key: str, value: T) -> Optional[T]:
        """Store ``value`` under ``key`` and return the value it replaced, if any."""

        _require_key(key)
        _require_value(value)
        with self._lock.write():
            previous = self._data.get(key)
            self._data[key] = value
            self._touch()
        return previous

    def get(self, key: str) -> Optional[T]:
        if not isinstance(key, str) or not key.strip():
            return None
        with self._lock.read():
            return self._data.get(key)

    def get_or_default(self, key: str, default: T) -> T:
        value = self.get(key)
        return default if value is None else value

    def update(self, key: str, value: T) -> bool:
        """Overwrite an existing entry. Returns ``False`` when ``key`` is unknown."""

        _require_key(key)
        _require_value(value)
        with self._lock.write():
            if key not in self._data:
                return False
            self._data[key] = value
            self._touch()
        return True

    def remove(self, key: str) -> Optional[T]:
        if not isinstance(key, str) or not key.strip():
            return None
        with self._lock.write():
            removed = self._data.pop(key, None)
            if removed is not None:
                self._touch()
        return removed

    def contains(self, key: str) -> bool:
        if not isinstance(key, str) or not key.strip():
            return False
        with self._lock.read():
            return key in self._data

    def size(self) -> int:
        with self._lock.read():
            return len(self._data)

    def is_empty(self) -> bool:
        return self.size() == 0

    def clear(self) -> None:
        with self._lock.write():
            self._data.clear()
            self._touch()

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.contains(key)

    # Bulk operations

    def put_all(self, entries: Mapping[str, T]) -> None:
        """Store every entry of ``entries`` as one atomic batch.

        All keys and values are validated before the lock is taken, so a bad
        entry leaves the store untouched.
        """

        if entries is None:
            raise ValidationError("Entries mapping cannot be None", field="entries")
        batch = dict(entries)
        for key, value in batch.items():
            _require_key(key)
            _require_value(value)
        if not batch:
            return
        with self._lock.write():
            new_keys = sum(1 for key in batch if key not in self._data)
            expected = len(self._data) + new_keys
            self._data.update(batch)
            if len(self._data) != expected:
                raise ConcurrencyInvariantViolation(
                    f"{self._store_type} store holds {len(self._data)} entries after a batch "
                    f"that should have left {expected}"
                )
            self._touch()

    def remove_all(self, keys: Iterable[str]) -> List[T]:
        if keys is None:
            return []
        if isinstance(keys, str):
            # A bare string would be iterated one character at a time.
            raise ValidationError("Keys must be a collection of strings, not a single string", field="keys")
        wanted = [key for key in keys if isinstance(key, str) and key.strip()]
        if not wanted:
            return []
        removed: List[T] = []
        with self._lock.write():
            for key in wanted:
                value = self._data.pop(key, None)
                if value is not None:
                    removed.append(value)
            if removed:
                self._touch()
        return removed

    # Queries

    def keys(self) -> List[str]:
        with self._lock.read():
            return list(self._data.keys())

    def values(self) -> List[T]:
        with self._lock.read():
            return list(self._data.values())

    def find_where(self, predicate: Optional[Predicate] = None) -> List[T]:
        values = self.values()
        if predicate is None:
            return values
        return [value for value in values if predicate(value)]

    def find_first(self, predicate: Optional[Predicate]) -> Optional[T]:
        if predicate is None:
            return None
        for value in self.values():
            if predicate(value):
                return value
        return None

    def count(self, predicate: Optional[Predicate] = None) -> int:
        if predicate is None:
            return self.size()
        return sum(1 for value in self.values() if predicate(value))

    def any_match(self, predicate: Optional[Predicate] = None) -> bool:
        if predicate is None:
            return not self.is_empty()
        return any(predicate(value) for value in self.values())

    def all_match(self, predicate: Optional[Predicate] = None) -> bool:
        if predicate is None:
            return True
        return all(predicate(value) for value in self.values())

    def search(self, term: Optional[str]) -> List[T]:
        """Case-insensitive substring search over each value's ``search_terms()``."""

        values = self.values()
        if term is None or not term.strip():
            return values
        needle = term.strip().lower()
        matches: List[T] = []
        for value in values:
            terms_of = getattr(value, "search_terms", None)
            if terms_of is None:
                continue
            if any(needle in str(candidate).lower() for candidate in terms_of()):
                matches.append(value)
        return matches

    def list_sorted(self, key: Optional[SortKey] = None, *, reverse: bool = False) -> List[T]:
        sort_key = key or self._default_sort_key
        if sort_key is None:
            raise ValidationError(
                f"No sort key given and no default sort key set for the {self._store_type} store",
                field="key",
            )
        return sorted(self.values(), key=sort_key, reverse=reverse)

    def page(
        self,
        page_number: int,
        page_size: int,
        key: Optional[SortKey] = None,
        *,
        reverse: bool = False,
    ) -> Page[T]:
        """Return one page of the listing; pages past the end are empty, not errors."""

        if page_number < 0:
            raise ValidationError("Page number cannot be negative", field="page_number")
        if page_size <= 0:
            raise ValidationError("Page size must be positive", field="page_size")

        values = self.values()
        if key is not None:
            values.sort(key=key, reverse=reverse)
        total_elements = len(values)
        total_pages = (total_elements + page_size - 1) // page_size
        start = page_number * page_size
        content = tuple(values[start : start + page_size]) if start < total_elements else ()
        return Page(
            content=content,
            page_number=page_number,
            page_size=page_size,
            total_elements=total_elements,
            total_pages=total_pages,
        )

    # Snapshots

    def snapshot(self) -> Snapshot[T]:
        with self._lock.read():
            return Snapshot(self._store_type, self._data, self._clock())

    def restore(self, snapshot: Snapshot[T]) -> None:
        """Atomically replace the contents with the snapshot's contents."""

        if snapshot is None:
            raise ValidationError("Snapshot cannot be None", field="snapshot")
        if snapshot.store_type != self._store_type:
            logger.warning(
                "Restoring %s store from a snapshot of a %s store",
                self._store_type,
                snapshot.store_type,
            )
        restored = snapshot.to_dict()
        with self._lock.write():
            self._data = restored
            self._touch()
        logger.info(
            "Restored %s store with %d entities from snapshot taken at %s",
            self._store_type,
            len(restored),
            snapshot.taken_at.isoformat(),
        )

    # Diagnostics

    def statistics(self) -> StoreStatistics:
        with self._lock.read():
            return StoreStatistics(
                store_type=self._store_type,
                size=len(self._data),
                created_at=self._created_at,
                last_modified=self._last_modified,
                operation_count=self._operation_count,
            )

    def validate(self) -> StoreValidationResult:
        result = StoreValidationResult()
        with self._lock.read():
            entries = list(self._data.items())
        result.entity_count = len(entries)
        for key, value in entries:
            if not key or not key.strip():
                result.errors.append("Found empty key in storage")
            if value is None:
                result.errors.append(f"Found None value for key: {key}")
                continue
            entity_id = getattr(value, "id", None)
            if entity_id is not None and entity_id != key:
                result.errors.append(f"Key {key} holds entity with id {entity_id}")
        return result

    def _touch(self) -> None:
        # Caller holds the write lock.
        self._last_modified = self._clock()
        self._operation_count += 1

    def __repr__(self) -> str:
        return f"KeyedStore[{self._store_type}]: {self.size()} entities"
