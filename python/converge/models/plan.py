"""
converge/models/plan.py

Pydantic models describing a reconciliation plan:
 - Action: create / update / destroy / no-op.
 - PlanEntry: one action bound to a resource address, with before/after
   snapshots for audit and the data the executor needs to carry it out.
 - PlanMetadata: which state the plan was computed against.
 - Plan: the ordered entries plus the ordering edges between them.

Plans can be saved to and loaded from JSON so that 'apply' can execute exactly
what 'plan' showed.
"""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from converge.models.resource import ResourceAddress
from converge.models.state import utcnow

UNKNOWN_VALUE = "(known after apply)"
SENSITIVE_VALUE = "(sensitive)"


class Action(str, Enum):
    """The operation planned for a resource."""

    CREATE = "create"
    UPDATE = "update"
    DESTROY = "destroy"
    NOOP = "no-op"


class PlanEntry(BaseModel):
    """One planned operation on one resource.

    Attributes:
        address: The resource the entry applies to.
        action: What to do.
        replace: True when this entry is half of a destroy+create replacement.
        deposed: True when the entry destroys a deposed (left-over) object.
        identity: Provider identity the entry operates on (update/destroy).
        desired: Declared attributes to apply, references encoded as
            '${type.name.attr}' strings and resolved at apply time.
        dependencies: Addresses recorded as this resource's dependencies.
        changed: Attributes whose values differ between before and after.
        replace_reasons: Changed attributes that force replacement.
        before: Attribute snapshot prior to the operation (None for create).
        after: Expected attribute snapshot afterwards (None for destroy).
    """

    address: ResourceAddress
    action: Action
    replace: bool = False
    deposed: bool = False
    identity: Optional[str] = None
    desired: Optional[Dict[str, Any]] = None
    dependencies: List[ResourceAddress] = Field(default_factory=list)
    changed: List[str] = Field(default_factory=list)
    replace_reasons: List[str] = Field(default_factory=list)
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None

    @property
    def key(self) -> str:
        """Unique key of the entry inside a plan, e.g. 'destroy:subnet.a'."""
        suffix = f"#{self.identity}" if self.deposed else ""
        return f"{self.action.value}:{self.address}{suffix}"

    @property
    def resource_type(self) -> str:
        return self.address.type


class PlanMetadata(BaseModel):
    """Identifies the state a plan was computed against.

    Attributes:
        lineage: Lineage of the state document.
        serial: Serial of the state document when planned.
        destroy: True if this is a destroy-everything plan.
        created_at: When the plan was computed.
    """

    lineage: str
    serial: int
    destroy: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class Plan(BaseModel):
    """An ordered set of PlanEntry objects and the edges that order them.

    Attributes:
        metadata: The state identity this plan is valid for.
        entries: Entries in a valid dependency order (no-ops included).
        edges: Entry key -> keys of entries that must finish first.
    """

    metadata: PlanMetadata
    entries: List[PlanEntry] = Field(default_factory=list)
    edges: Dict[str, List[str]] = Field(default_factory=dict)

    @property
    def has_changes(self) -> bool:
        return any(entry.action is not Action.NOOP for entry in self.entries)

    def changes(self) -> List[PlanEntry]:
        """All entries other than no-ops, in plan order."""
        return [entry for entry in self.entries if entry.action is not Action.NOOP]

    def entry(self, key: str) -> PlanEntry:
        for candidate in self.entries:
            if candidate.key == key:
                return candidate
        raise KeyError(key)

    def prerequisites(self, key: str) -> List[str]:
        return list(self.edges.get(key, []))

    def summary(self) -> Dict[str, int]:
        """Count entries per action; a replacement counts once as 'replace'."""
        counts: Dict[str, int] = {action.value: 0 for action in Action}
        counts["replace"] = 0
        for entry in self.entries:
            if entry.replace:
                if entry.action is Action.CREATE:
                    counts["replace"] += 1
                continue
            counts[entry.action.value] += 1
        return counts

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(mode="json")
        path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")

    @classmethod
    def load(cls, path: Path) -> Plan:
        return cls.model_validate_json(Path(path).read_text(encoding="utf-8"))


__all__ = [
    "Action",
    "Plan",
    "PlanEntry",
    "PlanMetadata",
    "SENSITIVE_VALUE",
    "UNKNOWN_VALUE",
]
