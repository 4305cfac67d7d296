"""
Per-entity locks that serialize read-modify-write cycles on an entity's
image list.

An in-process implementation covers single-worker deployments and tests;
the Redis-backed one coordinates several API workers.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, Protocol

import redis
from redis import exceptions as redis_exceptions

from shared.errors import StorageError
from shared.types import EntityKind


def lock_key(kind: EntityKind, entity_id: str) -> str:
    return f"{EntityKind(kind).value}:{entity_id}"


class EntityLocks(Protocol):
    """Minimal interface: hold an exclusive lock for one entity."""

    def hold(self, kind: EntityKind, entity_id: str):
        ...


@dataclass
class _LockSlot:
    lock: threading.Lock = field(default_factory=threading.Lock)
    # Holders plus waiters; the slot is dropped when this reaches zero.
    users: int = 0


@dataclass
class InMemoryEntityLocks:
    """threading.Lock per entity key, kept only while someone uses it."""

    timeout_seconds: float = 10.0
    _slots: Dict[str, _LockSlot] = field(default_factory=dict)
    _guard: threading.Lock = field(default_factory=threading.Lock)

    def _checkout(self, key: str) -> _LockSlot:
        with self._guard:
            slot = self._slots.get(key)
            if slot is None:
                slot = _LockSlot()
                self._slots[key] = slot
            slot.users += 1
            return slot

    def _checkin(self, key: str, slot: _LockSlot) -> None:
        with self._guard:
            slot.users -= 1
            if slot.users == 0:
                del self._slots[key]

    @contextmanager
    def hold(self, kind: EntityKind, entity_id: str) -> Iterator[None]:
        key = lock_key(kind, entity_id)
        slot = self._checkout(key)
        try:
            if not slot.lock.acquire(timeout=self.timeout_seconds):
                raise StorageError("Timed out waiting for entity lock", {"entity": key})
            try:
                yield
            finally:
                slot.lock.release()
        finally:
            self._checkin(key, slot)


@dataclass
class RedisEntityLocks:
    """Redis locks with an expiry so a crashed worker cannot hold one forever."""

    url: str
    prefix: str = "brewlog:locks"
    timeout_seconds: float = 10.0

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)

    @contextmanager
    def hold(self, kind: EntityKind, entity_id: str) -> Iterator[None]:
        key = lock_key(kind, entity_id)
        lock = self.client.lock(
            f"{self.prefix}:{key}",
            timeout=self.timeout_seconds * 3,
            blocking_timeout=self.timeout_seconds,
        )
        try:
            acquired = lock.acquire()
        except redis_exceptions.RedisError as e:
            raise StorageError(f"Could not acquire entity lock: {e}", {"entity": key}) from e
        if not acquired:
            raise StorageError("Timed out waiting for entity lock", {"entity": key})
        try:
            yield
        finally:
            try:
                lock.release()
            except redis_exceptions.LockError:
                # Expired while held; the write already happened.
                pass
