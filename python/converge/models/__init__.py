"""
models/__init__.py

Aggregate imports so the engine's pydantic models can be accessed directly
from this package.
"""

from converge.models.resource import (
    AttributeSchema,
    Reference,
    ResourceAddress,
    ResourceSpec,
    ResourceTypeSchema,
)
from converge.models.state import DeposedObject, ResourceState, StateDocument, StateLock
from converge.models.plan import Action, Plan, PlanEntry, PlanMetadata
from converge.models.apply import ApplyReport, ApplyResult, NodeStatus
from converge.models.settings import EngineSettings

__all__ = [
    "Action",
    "ApplyReport",
    "ApplyResult",
    "AttributeSchema",
    "DeposedObject",
    "EngineSettings",
    "NodeStatus",
    "Plan",
    "PlanEntry",
    "PlanMetadata",
    "Reference",
    "ResourceAddress",
    "ResourceSpec",
    "ResourceState",
    "ResourceTypeSchema",
    "StateDocument",
    "StateLock",
]
