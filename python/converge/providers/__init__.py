"""
converge/providers/__init__.py

Provides a convenient import interface for the provider boundary:

- base.py for the ResourceProvider contract, Observation and ProviderRegistry
- simulated.py for the in-memory SimulatedCloud used by tests and the CLI
"""

from converge.providers.base import (
    Observation,
    ResourceProvider,
    ProviderRegistry,
    ProviderFactory,
    load_provider_factory,
)
from converge.providers.simulated import (
    FailureRule,
    SIMULATED_SCHEMAS,
    SimulatedCloud,
    simulated_registry,
)

__all__ = [
    "Observation",
    "ResourceProvider",
    "ProviderRegistry",
    "ProviderFactory",
    "load_provider_factory",
    "FailureRule",
    "SIMULATED_SCHEMAS",
    "SimulatedCloud",
    "simulated_registry",
]
