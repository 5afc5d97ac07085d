"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from typing import Callable, List

import pytest

from converge.models.resource import Reference, ResourceAddress, ResourceSpec
from converge.models.settings import EngineSettings
from converge.providers.base import ProviderRegistry
from converge.providers.simulated import SimulatedCloud
from converge.reconciler import Reconciler
from converge.state.backends import MemoryBackend
from converge.state.store import StateStore

pytest_plugins = ("pytest_asyncio",)


def addr(text: str) -> ResourceAddress:
    return ResourceAddress.parse(text)


def ref(text: str) -> Reference:
    reference = Reference.parse(text)
    assert reference is not None, f"bad reference in test: {text}"
    return reference


def spec(address: str, depends_on: List[str] | None = None, **attributes: object) -> ResourceSpec:
    return ResourceSpec(
        address=addr(address),
        attributes=dict(attributes),
        depends_on=[addr(a) for a in depends_on or []],
    )


def vpc_and_subnet(**subnet_overrides: object) -> List[ResourceSpec]:
    """The VPC + Subnet pair used throughout the tests."""
    subnet_attrs: dict = {
        "vpc_id": ref("${vpc.main.id}"),
        "cidr_block": "10.0.1.0/24",
        "availability_zone": "us-east-1a",
    }
    subnet_attrs.update(subnet_overrides)
    return [
        spec("vpc.main", cidr_block="10.0.0.0/16", tags={"env": "test"}),
        spec("subnet.a", **subnet_attrs),
    ]


@pytest.fixture
def settings() -> EngineSettings:
    """Fast retries and no refresh unless a test asks for it."""
    return EngineSettings(
        parallelism=4,
        max_attempts=3,
        backoff_base_seconds=0.0,
        backoff_max_seconds=0.0,
        backoff_jitter=False,
        refresh=False,
    )


@pytest.fixture
def cloud() -> SimulatedCloud:
    return SimulatedCloud()


@pytest.fixture
def registry(cloud: SimulatedCloud) -> ProviderRegistry:
    return cloud.registry()


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def store(backend: MemoryBackend) -> StateStore:
    return StateStore(backend)


@pytest.fixture
def make_reconciler(
    registry: ProviderRegistry, backend: MemoryBackend, settings: EngineSettings
) -> Callable[[], Reconciler]:
    """Fresh Reconciler (and StateStore) over the shared backend and cloud."""

    def factory() -> Reconciler:
        return Reconciler(registry, StateStore(backend), settings)

    return factory
