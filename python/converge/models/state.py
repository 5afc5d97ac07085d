"""
converge/models/state.py

Holds the Pydantic models persisted by the state store:
 - DeposedObject: a remote object left over from an interrupted
   create-before-destroy replacement.
 - ResourceState: the last-applied real-world record of one resource.
 - StateDocument: the versioned document mapping addresses to ResourceState.
 - StateLock: the lock record that keeps concurrent runs apart.
"""

from __future__ import annotations

import getpass
import os
import socket
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from converge.models.resource import ResourceAddress

STATE_VERSION = 1


def utcnow() -> datetime:
    """Timezone-aware current time, used for every timestamp in state."""
    return datetime.now(timezone.utc)


class DeposedObject(BaseModel):
    """An old remote object still awaiting destruction after a replacement.

    Attributes:
        identity: Provider-assigned identifier of the old object.
        attributes: Its last known declared attributes.
        outputs: Its last known computed outputs.
    """

    identity: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)


class ResourceState(BaseModel):
    """Last-applied real-world state of one resource.

    Attributes:
        address: The resource address.
        identity: Provider-assigned identifier (an ARN-equivalent), or None once
            the current object is gone and only deposed objects remain.
        attributes: The resolved declared attributes last applied.
        outputs: Provider-computed values (ids, ARNs, endpoints...).
        dependencies: Addresses this resource depended on when last applied.
        deposed: Old objects from an unfinished create-before-destroy replacement.
        created_at: When the object was first created.
        updated_at: When this record last changed.
    """

    address: ResourceAddress
    identity: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[ResourceAddress] = Field(default_factory=list)
    deposed: List[DeposedObject] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def value_of(self, attribute: str) -> Any:
        """Look up a referenced value; outputs win over declared attributes."""
        if attribute in self.outputs:
            return self.outputs[attribute]
        return self.attributes.get(attribute)


class StateDocument(BaseModel):
    """Versioned, persisted mapping of address -> ResourceState.

    Attributes:
        version: Schema version of the document.
        lineage: Identifier fixed for the whole life of this state.
        serial: Incremented on every persisted mutation.
        resources: ResourceState records keyed by textual address.
    """

    version: int = STATE_VERSION
    lineage: str = Field(default_factory=lambda: str(uuid.uuid4()))
    serial: int = 0
    resources: Dict[str, ResourceState] = Field(default_factory=dict)

    @field_validator("version")
    @classmethod
    def validate_version(cls, value: int) -> int:
        """Refuse documents written by a newer, unknown schema."""
        if value > STATE_VERSION:
            raise ValueError(
                f"State version {value} is newer than supported version {STATE_VERSION}."
            )
        return value

    def is_empty(self) -> bool:
        return not self.resources


def default_lock_owner() -> str:
    """Describe the current process as 'user@host:pid'."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname()}:{os.getpid()}"


class StateLock(BaseModel):
    """Lock record guarding a state document against concurrent runs.

    Attributes:
        lock_id: Random identifier, needed to force-unlock.
        owner: Who holds the lock.
        operation: What the holder is doing (plan, apply, destroy...).
        acquired_at: When the lock was taken.
        expires_at: After this instant the lock is considered stale.
    """

    lock_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner: str = Field(default_factory=default_lock_owner)
    operation: str = "apply"
    acquired_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime

    @classmethod
    def create(cls, operation: str, ttl_seconds: float) -> StateLock:
        """Build a fresh lock expiring `ttl_seconds` from now."""
        now = utcnow()
        return cls(
            operation=operation,
            acquired_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


__all__ = [
    "STATE_VERSION",
    "DeposedObject",
    "ResourceState",
    "StateDocument",
    "StateLock",
    "utcnow",
]
