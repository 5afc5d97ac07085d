"""
converge/providers/base.py

The boundary between the engine and remote APIs.

A ResourceProvider implements four capabilities (create/read/update/delete)
for one or more resource types. The ProviderRegistry is a lookup table from
resource type to (schema, provider); there is no per-type class hierarchy.

Transport and authentication belong to concrete providers and are out of
scope here.
"""

from __future__ import annotations

import importlib
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from converge.errors import ConfigError
from converge.models.resource import ResourceTypeSchema


class Observation(BaseModel):
    """What a provider reports about one remote object.

    Attributes:
        identity: Provider-assigned identifier (ARN-equivalent).
        attributes: Declared attributes as the remote side currently has them.
        outputs: Computed values such as ids, ARNs or endpoints.
    """

    identity: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)


class ResourceProvider(ABC):
    """Abstract CRUD contract implemented per resource type (or group of types).

    Every operation must be safe to retry from the caller's perspective.
    `create` receives a request token that stays the same across retries of
    one plan entry; providers that can look objects up by it implement
    `find_by_token`, which the executor consults before re-issuing a create.

    Errors: raise ProviderError(transient=...) for API failures and
    ResourceNotFound when an identity has no remote object.
    """

    #: True if in-flight calls may be cancelled without corrupting remote state.
    supports_abort: bool = False

    @abstractmethod
    async def create(
        self, resource_type: str, attributes: Dict[str, Any], token: str
    ) -> Observation:
        """Create a remote object with fully resolved attributes."""

    @abstractmethod
    async def read(self, resource_type: str, identity: str) -> Observation:
        """Read a remote object; raises ResourceNotFound if it is gone."""

    @abstractmethod
    async def update(
        self,
        resource_type: str,
        identity: str,
        changes: Dict[str, Any],
        attributes: Dict[str, Any],
    ) -> Observation:
        """Change mutable attributes in place.

        Args:
            resource_type: The resource type.
            identity: The object to update.
            changes: Only the attributes that changed, with their new values.
            attributes: The complete resolved desired attributes.
        """

    @abstractmethod
    async def delete(self, resource_type: str, identity: str) -> None:
        """Delete a remote object; raises ResourceNotFound if it is already gone."""

    async def find_by_token(
        self, resource_type: str, token: str
    ) -> Optional[Observation]:
        """Return the object a previous create with `token` produced, if any."""
        return None


class ProviderRegistry:
    """Lookup table: resource type -> (schema, provider)."""

    def __init__(self) -> None:
        self._entries: Dict[str, Tuple[ResourceTypeSchema, ResourceProvider]] = {}

    def register(self, schema: ResourceTypeSchema, provider: ResourceProvider) -> None:
        if schema.type in self._entries:
            raise ConfigError(f"Resource type already registered: {schema.type}")
        self._entries[schema.type] = (schema, provider)

    def register_all(
        self, schemas: List[ResourceTypeSchema], provider: ResourceProvider
    ) -> None:
        for schema in schemas:
            self.register(schema, provider)

    def _lookup(self, resource_type: str) -> Tuple[ResourceTypeSchema, ResourceProvider]:
        try:
            return self._entries[resource_type]
        except KeyError:
            raise ConfigError(f"Unknown resource type: {resource_type}") from None

    def schema(self, resource_type: str) -> ResourceTypeSchema:
        return self._lookup(resource_type)[0]

    def provider(self, resource_type: str) -> ResourceProvider:
        return self._lookup(resource_type)[1]

    def types(self) -> List[str]:
        return sorted(self._entries)

    def __contains__(self, resource_type: object) -> bool:
        return resource_type in self._entries


ProviderFactory = Callable[..., ProviderRegistry]


def load_provider_factory(target: str) -> ProviderFactory:
    """Import a provider factory given as 'package.module:callable'.

    Raises:
        ConfigError: If the target is malformed or cannot be imported.
    """
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(f"Provider must look like 'module:factory': {target!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigError(f"Cannot import provider module {module_name!r}: {exc}") from exc
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigError(f"{target!r} is not a callable provider factory")
    return factory


__all__ = [
    "Observation",
    "ResourceProvider",
    "ProviderRegistry",
    "ProviderFactory",
    "load_provider_factory",
]
