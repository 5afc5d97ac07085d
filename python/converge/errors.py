"""
converge/errors.py

Error taxonomy shared by every layer of the engine:

  - ConfigError:     malformed or unknown resource specifications (fatal, pre-apply)
  - CycleError:      dependency cycle in the declared resources (fatal, pre-apply)
  - SchemaError:     attribute misuse for a resource type (fatal, pre-apply)
  - ProviderError:   remote API failure, transient (retried) or permanent
  - ResourceNotFound: the provider has no object for an identity
  - StateLockError:  another run holds the state lock
  - StalePlanError:  a saved plan no longer matches the recorded state

Structural errors (Config/Cycle/Schema) abort before any mutation. Provider
errors are isolated to the node that raised them and its dependents.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, List, Optional

if TYPE_CHECKING:
    from converge.models.state import StateLock


class ConvergeError(Exception):
    """Base class for all errors raised by converge."""


class ConfigError(ConvergeError):
    """Raised when the resource specifications are malformed or reference unknown things."""


class CycleError(ConvergeError):
    """Raised when the dependency graph contains a cycle.

    Attributes:
        addresses (List[str]): Every address taking part in a cycle, sorted.
    """

    def __init__(self, addresses: Iterable[str]) -> None:
        self.addresses: List[str] = sorted(set(addresses))
        super().__init__(
            "Dependency cycle between resources: " + ", ".join(self.addresses)
        )


class SchemaError(ConvergeError):
    """Raised when an attribute is unknown, missing or misused for a resource type.

    Attributes:
        address (str): The resource address the error refers to.
        attribute (Optional[str]): The offending attribute, if any.
    """

    def __init__(
        self, message: str, address: str, attribute: Optional[str] = None
    ) -> None:
        super().__init__(f"{address}: {message}")
        self.address = address
        self.attribute = attribute


class ProviderError(ConvergeError):
    """Represents a failure reported by a resource provider.

    Attributes:
        transient (bool): True for rate limiting, timeouts and similar errors
            that are worth retrying. False for validation or permission errors.
        address (Optional[str]): The resource address, when known.
    """

    def __init__(
        self,
        message: str,
        *,
        transient: bool = False,
        address: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.transient = transient
        self.address = address


class TransientProviderError(ProviderError):
    """A provider error that should be retried with backoff."""

    def __init__(self, message: str, *, address: Optional[str] = None) -> None:
        super().__init__(message, transient=True, address=address)


class PermanentProviderError(ProviderError):
    """A provider error that must not be retried."""

    def __init__(self, message: str, *, address: Optional[str] = None) -> None:
        super().__init__(message, transient=False, address=address)


class ResourceNotFound(ConvergeError):
    """Raised by providers when no remote object exists for an identity."""

    def __init__(self, identity: str) -> None:
        super().__init__(f"Remote object not found: {identity}")
        self.identity = identity


class StateLockError(ConvergeError):
    """Raised when the state lock is held by another run.

    Attributes:
        lock (Optional[StateLock]): The lock currently held, if it could be read.
    """

    def __init__(self, message: str, lock: Optional["StateLock"] = None) -> None:
        if lock is not None:
            message = (
                f"{message} (lock id {lock.lock_id}, held by {lock.owner} "
                f"for '{lock.operation}' since {lock.acquired_at.isoformat()}). "
                "Retry later, or run 'force-unlock' with the lock id."
            )
        super().__init__(message)
        self.lock = lock


class StalePlanError(ConvergeError):
    """Raised when a saved plan was computed against a different state serial or lineage."""


__all__ = [
    "ConvergeError",
    "ConfigError",
    "CycleError",
    "SchemaError",
    "ProviderError",
    "TransientProviderError",
    "PermanentProviderError",
    "ResourceNotFound",
    "StateLockError",
    "StalePlanError",
]
