"""In-memory keyed store with per-identifier locking and write-through.

The service facade owns one :class:`EntityStore` per entity type. The store
keeps at most one record per identifier and serializes read-modify-write
sequences per identifier through :meth:`EntityStore.locked`. When a
persistence collaborator is attached, writes go to it first; if it raises,
the in-memory record is left untouched and the error propagates unchanged.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Callable, Dict, Generic, Iterable, Iterator, List, Optional, Protocol, TypeVar

from . import log
from .errors import MissingReferenceError

T = TypeVar("T")


class Persistence(Protocol[T]):
    """Collaborator that durably stores entities of one type."""

    def load(self, identifier: str) -> Optional[T]:
        ...

    def save(self, entity: T) -> None:
        ...

    def delete(self, identifier: str) -> None:
        ...


class _KeyLock:
    """Re-entrant lock plus the number of callers currently using it."""

    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.holders = 0


class EntityStore(Generic[T]):
    """Keyed collection of immutable records."""

    def __init__(
        self,
        name: str,
        key: Callable[[T], str],
        *,
        persistence: Optional[Persistence[T]] = None,
    ) -> None:
        self.name = name
        self._key = key
        self._persistence = persistence
        self._records: Dict[str, T] = {}
        self._guard = threading.Lock()
        self._key_locks: Dict[str, _KeyLock] = {}

    def _acquire_entry(self, identifier: str) -> _KeyLock:
        with self._guard:
            entry = self._key_locks.get(identifier)
            if entry is None:
                entry = self._key_locks[identifier] = _KeyLock()
            entry.holders += 1
            return entry

    def _release_entry(self, identifier: str, entry: _KeyLock) -> None:
        with self._guard:
            entry.holders -= 1
            if entry.holders == 0 and self._key_locks.get(identifier) is entry:
                del self._key_locks[identifier]

    @contextmanager
    def locked(self, identifier: str) -> Iterator[None]:
        """Hold the lock for ``identifier`` for a load/transition/write sequence.

        The lock entry lives only while some thread holds or waits for it.
        """

        entry = self._acquire_entry(identifier)
        try:
            with entry.lock:
                yield
        finally:
            self._release_entry(identifier, entry)

    def get(self, identifier: str) -> Optional[T]:
        """Return the record for ``identifier``, consulting persistence on a miss."""

        with self._guard:
            record = self._records.get(identifier)
        if record is not None or self._persistence is None:
            return record

        loaded = self._persistence.load(identifier)
        if loaded is not None:
            with self._guard:
                record = self._records.setdefault(identifier, loaded)
            log.debug("Loaded %s '%s' from persistence", self.name, identifier)
            return record
        return None

    def require(self, identifier: str) -> T:
        """Return the record for ``identifier`` or raise :class:`MissingReferenceError`."""

        record = self.get(identifier)
        if record is None:
            log.warning("%s lookup failed for id '%s'", self.name.capitalize(), identifier)
            raise MissingReferenceError(f"Unknown {self.name} id: {identifier}")
        return record

    def put(self, entity: T) -> T:
        """Write ``entity`` through to persistence, then into memory."""

        identifier = self._key(entity)
        if self._persistence is not None:
            self._persistence.save(entity)
        with self._guard:
            self._records[identifier] = entity
        return entity

    def insert(self, entity: T) -> T:
        """Store a new record; an existing identifier is a programming error."""

        identifier = self._key(entity)
        with self.locked(identifier):
            if self.get(identifier) is not None:
                raise ValueError(f"Duplicate {self.name} id: {identifier}")
            return self.put(entity)

    def remove(self, identifier: str) -> None:
        """Delete ``identifier`` from persistence and memory."""

        if self._persistence is not None:
            self._persistence.delete(identifier)
        with self._guard:
            self._records.pop(identifier, None)

    def preload(self, entities: Iterable[T]) -> int:
        """Seed memory with already-persisted records, bypassing write-through."""

        count = 0
        with self._guard:
            for entity in entities:
                self._records[self._key(entity)] = entity
                count += 1
        log.debug("Preloaded %d %s records", count, self.name)
        return count

    def all(self) -> List[T]:
        """Snapshot of every in-memory record in insertion order."""

        with self._guard:
            return list(self._records.values())

    def find(self, predicate: Callable[[T], bool]) -> Optional[T]:
        for record in self.all():
            if predicate(record):
                return record
        return None

    def __len__(self) -> int:
        with self._guard:
            return len(self._records)

    def __contains__(self, identifier: object) -> bool:
        with self._guard:
            return identifier in self._records


__all__ = ["Persistence", "EntityStore"]
