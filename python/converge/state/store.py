"""
converge/state/store.py

The StateStore is the only writer of ResourceState. It wraps a StateBackend
with:
  - a scoped lock (acquire at start, release on every exit path, stale locks
    broken after their expiry),
  - per-address asyncio locks so one address is mutated by one executor task
    at a time,
  - incremental persistence: every mutation bumps the serial and writes the
    whole document, so an interrupted run leaves consistent state behind.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, List, Optional

from pydantic import ValidationError

from converge.errors import ConfigError, StateLockError
from converge.models.resource import ResourceAddress
from converge.models.state import (
    DeposedObject,
    ResourceState,
    StateDocument,
    StateLock,
    utcnow,
)
from converge.state.backends import StateBackend

logger = logging.getLogger(__name__)


class StateStore:
    """Durable record of last-known real-world resource state."""

    def __init__(self, backend: StateBackend) -> None:
        self.backend = backend
        self._document: Optional[StateDocument] = None
        self._address_locks: Dict[str, asyncio.Lock] = {}
        self._write_lock = asyncio.Lock()
        self.held_lock: Optional[StateLock] = None

    # ------------------------------------------------------------------
    # Loading and reading
    # ------------------------------------------------------------------
    async def load(self) -> StateDocument:
        """Read the document from the backend, creating and writing an empty one if absent.

        Raises:
            ConfigError: If the stored document cannot be parsed.
        """
        text = await self.backend.read_document()
        if text is None or not text.strip():
            # Written at once: saved plans refer to this lineage.
            self._document = StateDocument()
            await self.backend.write_document(self._document.model_dump_json(indent=2))
        else:
            try:
                self._document = StateDocument.model_validate_json(text)
            except ValidationError as exc:
                raise ConfigError(
                    f"State document at {self.backend.describe()} is invalid: {exc}"
                ) from exc
        return self._document

    @property
    def document(self) -> StateDocument:
        if self._document is None:
            raise RuntimeError("StateStore.load() must be called before use.")
        return self._document

    @property
    def lineage(self) -> str:
        return self.document.lineage

    @property
    def serial(self) -> int:
        return self.document.serial

    def get(self, address: ResourceAddress) -> Optional[ResourceState]:
        state = self.document.resources.get(str(address))
        return state.model_copy(deep=True) if state is not None else None

    def addresses(self) -> List[ResourceAddress]:
        return sorted(state.address for state in self.document.resources.values())

    def snapshot(self) -> Dict[ResourceAddress, ResourceState]:
        """Deep copy of every record, keyed by address."""
        return {
            state.address: state.model_copy(deep=True)
            for state in self.document.resources.values()
        }

    # ------------------------------------------------------------------
    # Mutation (executor only)
    # ------------------------------------------------------------------
    def address_lock(self, address: ResourceAddress) -> asyncio.Lock:
        return self._address_locks.setdefault(str(address), asyncio.Lock())

    async def put(self, state: ResourceState) -> None:
        """Record the state of one resource and persist."""
        async with self.address_lock(state.address):
            state.updated_at = utcnow()
            self.document.resources[str(state.address)] = state.model_copy(deep=True)
            await self._persist()

    async def commit(
        self, state: ResourceState, *, created: bool, depose: bool = False
    ) -> ResourceState:
        """Record the outcome of a create or update and persist.

        The deposed objects already recorded for the address are kept. With
        `depose`, a different current object joins them, since a replacement
        still has to destroy it. After an update, the original creation time
        is kept.

        Returns:
            ResourceState: A copy of the merged record.
        """
        async with self.address_lock(state.address):
            record = state.model_copy(deep=True)
            current = self.document.resources.get(str(state.address))
            if current is not None:
                record.deposed = [obj.model_copy(deep=True) for obj in current.deposed]
                if not created:
                    record.created_at = current.created_at
                elif depose and current.identity not in (None, record.identity):
                    record.deposed.append(
                        DeposedObject(
                            identity=current.identity,
                            attributes=current.attributes,
                            outputs=current.outputs,
                        )
                    )
            record.updated_at = utcnow()
            self.document.resources[str(state.address)] = record
            await self._persist()
            return record.model_copy(deep=True)

    async def remove(
        self, address: ResourceAddress, identity: Optional[str] = None
    ) -> bool:
        """Drop the record for `address` and persist.

        A record that still lists deposed objects is kept without an identity
        until they are destroyed too.

        Args:
            address: The resource whose record goes away.
            identity: If given, only remove when the record still refers to
                this identity (a replacement may already have recorded a new one).

        Returns:
            bool: True if a record was removed.
        """
        async with self.address_lock(address):
            current = self.document.resources.get(str(address))
            if current is None:
                return False
            if identity is not None and current.identity != identity:
                return False
            if current.deposed:
                current.identity = None
                current.attributes = {}
                current.outputs = {}
            else:
                del self.document.resources[str(address)]
            await self._persist()
            return True

    async def add_deposed(self, address: ResourceAddress, deposed: DeposedObject) -> None:
        async with self.address_lock(address):
            current = self.document.resources.get(str(address))
            if current is None:
                return
            current.deposed.append(deposed.model_copy(deep=True))
            await self._persist()

    async def remove_deposed(self, address: ResourceAddress, identity: str) -> bool:
        async with self.address_lock(address):
            current = self.document.resources.get(str(address))
            if current is None:
                return False
            remaining = [obj for obj in current.deposed if obj.identity != identity]
            if len(remaining) == len(current.deposed):
                return False
            if remaining or current.identity is not None:
                current.deposed = remaining
            else:
                del self.document.resources[str(address)]
            await self._persist()
            return True

    async def replace_all(self, states: Dict[ResourceAddress, ResourceState]) -> None:
        """Swap in a full set of records at once (used after a refresh)."""
        async with self._write_lock:
            self.document.resources = {
                str(address): state.model_copy(deep=True)
                for address, state in sorted(states.items())
            }
        await self._persist()

    async def _persist(self) -> None:
        async with self._write_lock:
            self.document.serial += 1
            await self.backend.write_document(self.document.model_dump_json(indent=2))
            logger.debug(
                "Persisted state serial %d to %s",
                self.document.serial,
                self.backend.describe(),
            )

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------
    async def _read_lock(self) -> Optional[StateLock]:
        text = await self.backend.read_lock()
        if text is None:
            return None
        try:
            return StateLock.model_validate_json(text)
        except ValidationError:
            logger.warning(
                "Unreadable lock record at %s; treating it as stale.",
                self.backend.describe(),
            )
            return StateLock.create("unknown", ttl_seconds=0)

    async def acquire(self, operation: str, ttl_seconds: float) -> StateLock:
        """Take the state lock or raise StateLockError.

        A stale lock (past its expiry, e.g. left by a crashed run) is broken
        and replaced. A live lock held by someone else is never broken here.
        """
        lock = StateLock.create(operation, ttl_seconds)
        payload = lock.model_dump_json()

        if not await self.backend.try_create_lock(payload):
            existing = await self._read_lock()
            if existing is not None and not existing.is_stale():
                raise StateLockError("State is locked by another run", existing)
            if existing is not None:
                logger.warning(
                    "Breaking stale state lock %s held by %s since %s.",
                    existing.lock_id,
                    existing.owner,
                    existing.acquired_at.isoformat(),
                )
                await self.backend.delete_lock()
            if not await self.backend.try_create_lock(payload):
                raise StateLockError(
                    "State lock was taken by another run", await self._read_lock()
                )

        confirmed = await self._read_lock()
        if confirmed is None or confirmed.lock_id != lock.lock_id:
            raise StateLockError("State lock was taken by another run", confirmed)

        self.held_lock = lock
        logger.debug("Acquired state lock %s for %s", lock.lock_id, operation)
        return lock

    async def release(self) -> None:
        """Release our lock, leaving anyone else's lock untouched."""
        held = self.held_lock
        if held is None:
            return
        self.held_lock = None
        current = await self._read_lock()
        if current is not None and current.lock_id == held.lock_id:
            await self.backend.delete_lock()
            logger.debug("Released state lock %s", held.lock_id)

    @asynccontextmanager
    async def locked(
        self, operation: str, ttl_seconds: float = 900.0
    ) -> AsyncGenerator[StateStore, None]:
        """
        Async context manager holding the state lock and a freshly loaded document.

        The lock is released on every exit path, including exceptions and
        cancellation.

        Args:
            operation (str): What the lock holder is doing (plan/apply/destroy).
            ttl_seconds (float): After this long the lock is considered stale.

        Yields:
            StateStore: self, loaded.

        Raises:
            StateLockError: If another live run holds the lock.
        """
        await self.acquire(operation, ttl_seconds)
        try:
            await self.load()
            yield self
        finally:
            await self.release()

    async def force_unlock(self, lock_id: str) -> None:
        """Remove the lock if, and only if, its id matches `lock_id`.

        Raises:
            StateLockError: If the state is not locked or the id does not match.
        """
        current = await self._read_lock()
        if current is None:
            raise StateLockError("State is not locked")
        if current.lock_id != lock_id:
            raise StateLockError(f"Lock id {lock_id} does not match", current)
        await self.backend.delete_lock()
        logger.warning("Force-unlocked state lock %s held by %s", lock_id, current.owner)


__all__ = ["StateStore"]
