"""
converge/diff/refresh.py

Reconciles recorded state with what providers report before planning.

Each recorded resource (and each deposed object) is read concurrently,
bounded by the configured parallelism. A resource the provider no longer has
is dropped from state, so the next plan recreates it; if deposed objects of it
are still alive, the record stays without an identity so they are destroyed
later. Otherwise the observed attributes and outputs replace the record.
State is only written when something actually changed, and never for a
plan-time refresh.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from converge.errors import ProviderError, ResourceNotFound
from converge.models.resource import ResourceAddress
from converge.models.settings import EngineSettings
from converge.models.state import DeposedObject, ResourceState
from converge.providers.base import Observation, ProviderRegistry
from converge.state.store import StateStore
from converge.utils.async_retry import async_retry

logger = logging.getLogger(__name__)


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.transient


async def refresh(
    store: StateStore,
    registry: ProviderRegistry,
    settings: Optional[EngineSettings] = None,
    persist: bool = True,
) -> Dict[ResourceAddress, ResourceState]:
    """
    Read every recorded resource through its provider and update state.

    Args:
        store (StateStore): A loaded store (normally held under its lock).
        registry (ProviderRegistry): Resolves each record's provider.
        settings (Optional[EngineSettings]): Parallelism and retry policy.
        persist (bool): Write the refreshed records back to the store.
            Planning passes False and works on the returned records only.

    Returns:
        Dict[ResourceAddress, ResourceState]: The refreshed records.

    Raises:
        ConfigError: If a recorded resource type has no provider.
        ProviderError: If a read fails permanently or keeps failing transiently.
    """
    settings = settings or EngineSettings()
    semaphore = asyncio.Semaphore(settings.parallelism)
    current = store.snapshot()

    @async_retry(
        retries=settings.max_attempts,
        delay=settings.backoff_base_seconds,
        noisy=True,
        multiplier=settings.backoff_multiplier,
        max_delay=settings.backoff_max_seconds,
        jitter=settings.backoff_jitter,
        retry_on=_is_transient,
    )
    async def read(resource_type: str, identity: str) -> Optional[Observation]:
        provider = registry.provider(resource_type)
        async with semaphore:
            try:
                return await provider.read(resource_type, identity)
            except ResourceNotFound:
                return None

    async def refresh_one(
        record: ResourceState,
    ) -> Tuple[ResourceAddress, Optional[ResourceState]]:
        resource_type = record.address.type
        observed = None
        if record.identity is not None:
            observed = await read(resource_type, record.identity)
        deposed: List[DeposedObject] = []
        for obj in record.deposed:
            seen = await read(resource_type, obj.identity)
            if seen is None:
                logger.info("Deposed object %s of %s is gone", obj.identity, record.address)
                continue
            deposed.append(
                DeposedObject(
                    identity=obj.identity,
                    attributes=seen.attributes,
                    outputs=seen.outputs,
                )
            )
        refreshed = record.model_copy(deep=True)
        refreshed.deposed = deposed
        if observed is None:
            if record.identity is not None:
                logger.warning(
                    "%s (%s) no longer exists; dropping it from state",
                    record.address,
                    record.identity,
                )
            if not deposed:
                return record.address, None
            refreshed.identity = None
            refreshed.attributes = {}
            refreshed.outputs = {}
            return record.address, refreshed
        refreshed.attributes = observed.attributes
        refreshed.outputs = observed.outputs
        return record.address, refreshed

    for address in sorted(current):
        registry.provider(address.type)

    results = await asyncio.gather(
        *(refresh_one(current[address]) for address in sorted(current))
    )
    refreshed = {address: record for address, record in results if record is not None}

    if persist and _differs(current, refreshed):
        await store.replace_all(refreshed)
        logger.info("Refreshed state: %d resources recorded", len(refreshed))
    return refreshed


def _differs(
    before: Dict[ResourceAddress, ResourceState],
    after: Dict[ResourceAddress, ResourceState],
) -> bool:
    if set(before) != set(after):
        return True
    for address, record in before.items():
        other = after[address]
        if (
            record.identity != other.identity
            or record.attributes != other.attributes
            or record.outputs != other.outputs
            or [obj.identity for obj in record.deposed]
            != [obj.identity for obj in other.deposed]
        ):
            return True
    return False


__all__ = ["refresh"]
