"""
converge/models/apply.py

Outcome models for plan execution:
 - NodeStatus: the per-entry state machine
   (Pending -> InProgress -> Succeeded | Failed, plus Skipped and Cancelled).
 - ApplyResult: the outcome of one plan entry, never silently dropped.
 - ApplyReport: every result plus summary counts per terminal status.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from converge.models.plan import Action
from converge.models.resource import ResourceAddress
from converge.models.state import ResourceState


class NodeStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = [
    NodeStatus.SUCCEEDED,
    NodeStatus.FAILED,
    NodeStatus.SKIPPED,
    NodeStatus.CANCELLED,
]


class ApplyResult(BaseModel):
    """Outcome of executing one plan entry.

    Attributes:
        key: The plan entry key.
        address: The resource address.
        action: The planned action.
        status: Terminal status of the entry.
        attempts: Number of provider calls made (retries included).
        error: Error detail for failed entries, or the reason for skipping.
        state: Final recorded state after a successful create/update.
        duration_seconds: Wall time spent in the provider.
    """

    key: str
    address: ResourceAddress
    action: Action
    status: NodeStatus
    attempts: int = 0
    error: Optional[str] = None
    state: Optional[ResourceState] = None
    duration_seconds: float = 0.0


class ApplyReport(BaseModel):
    """Structured outcome of a whole apply run.

    Attributes:
        results: One ApplyResult per non-no-op plan entry, in plan order.
        cancelled: True if cancellation was requested during the run.
    """

    results: List[ApplyResult] = Field(default_factory=list)
    cancelled: bool = False

    def summary(self) -> Dict[str, int]:
        counts: Dict[str, int] = {status.value: 0 for status in TERMINAL_STATUSES}
        for result in self.results:
            counts[result.status.value] = counts.get(result.status.value, 0) + 1
        return counts

    @property
    def ok(self) -> bool:
        """True only if every entry succeeded."""
        return all(result.status is NodeStatus.SUCCEEDED for result in self.results)

    def result_for(self, key: str) -> ApplyResult:
        for result in self.results:
            if result.key == key:
                return result
        raise KeyError(key)


__all__ = ["NodeStatus", "TERMINAL_STATUSES", "ApplyResult", "ApplyReport"]
