"""
converge/reconciler.py

Orchestrates one plan / apply / destroy invocation.

Steps for apply:
  1) Acquire the state lock (released on every exit path) and load state.
  2) Optionally refresh recorded resources through their providers (plan
     alone keeps the refreshed records in memory).
  3) Validate and plan; structural errors abort here, before any mutation.
  4) Ask the confirm callback, if any.
  5) Execute the plan and return the per-entry report.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple

from converge.diff.engine import DiffEngine
from converge.diff.refresh import refresh as refresh_state
from converge.executor.executor import PlanExecutor
from converge.models.apply import ApplyReport
from converge.models.plan import Plan
from converge.models.resource import ResourceAddress, ResourceSpec
from converge.models.settings import EngineSettings
from converge.providers.base import ProviderRegistry
from converge.state.store import StateStore

logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[Plan], Awaitable[bool]]


class Reconciler:
    """Ties the DiffEngine, PlanExecutor and StateStore together."""

    def __init__(
        self,
        registry: ProviderRegistry,
        store: StateStore,
        settings: Optional[EngineSettings] = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.settings = settings or EngineSettings()
        self.engine = DiffEngine(registry)
        self.executor = PlanExecutor(registry, store, self.settings)

    async def _refresh_and_plan(
        self,
        specs: List[ResourceSpec],
        destroy: bool,
        targets: Optional[Iterable[ResourceAddress]],
        refresh: Optional[bool],
        persist: bool,
    ) -> Plan:
        # Validate before the refresh so malformed specs never reach a provider.
        self.engine.validate(specs)
        document = self.store.document
        do_refresh = self.settings.refresh if refresh is None else refresh
        if do_refresh:
            refreshed = await refresh_state(
                self.store, self.registry, self.settings, persist=persist
            )
            if not persist:
                document = document.model_copy(
                    update={
                        "resources": {
                            str(address): record
                            for address, record in sorted(refreshed.items())
                        }
                    }
                )
        return self.engine.plan(specs, document, destroy=destroy, targets=targets)

    async def plan(
        self,
        specs: Iterable[ResourceSpec],
        *,
        destroy: bool = False,
        targets: Optional[Iterable[ResourceAddress]] = None,
        refresh: Optional[bool] = None,
    ) -> Plan:
        """Compute a plan under the state lock without executing it.

        A refresh here only informs the plan; recorded state is left untouched.
        """
        async with self.store.locked("plan", self.settings.lock_ttl_seconds):
            return await self._refresh_and_plan(
                list(specs), destroy, targets, refresh, persist=False
            )

    async def apply(
        self,
        specs: Iterable[ResourceSpec],
        *,
        destroy: bool = False,
        targets: Optional[Iterable[ResourceAddress]] = None,
        refresh: Optional[bool] = None,
        confirm: Optional[ConfirmCallback] = None,
    ) -> Tuple[Plan, Optional[ApplyReport]]:
        """
        Plan and execute under one hold of the state lock.

        Args:
            specs: Every declared resource.
            destroy: Remove every recorded (or targeted) resource instead.
            targets: Restrict the run to these addresses.
            refresh: Override the configured refresh setting.
            confirm: Awaited with the plan; returning False stops before execution.

        Returns:
            Tuple[Plan, Optional[ApplyReport]]: The plan, and the report, which
            is None when the plan was declined.

        Raises:
            ConfigError, SchemaError, CycleError: Before any mutation.
            StateLockError: If another run holds the state lock.
        """
        operation = "destroy" if destroy else "apply"
        async with self.store.locked(operation, self.settings.lock_ttl_seconds):
            plan = await self._refresh_and_plan(
                list(specs), destroy, targets, refresh, persist=True
            )
            if not plan.has_changes:
                logger.info("No changes; infrastructure matches the configuration.")
                return plan, ApplyReport()
            if confirm is not None and not await confirm(plan):
                logger.info("%s declined; nothing was changed.", operation.capitalize())
                return plan, None
            return plan, await self.executor.apply(plan)

    async def apply_saved(
        self, plan: Plan, confirm: Optional[ConfirmCallback] = None
    ) -> Optional[ApplyReport]:
        """Execute a previously saved plan exactly as computed.

        Raises:
            StalePlanError: If the state changed since the plan was computed.
        """
        operation = "destroy" if plan.metadata.destroy else "apply"
        async with self.store.locked(operation, self.settings.lock_ttl_seconds):
            self.executor.check_plan(plan)
            if confirm is not None and not await confirm(plan):
                return None
            return await self.executor.apply(plan)

    async def destroy(
        self,
        specs: Iterable[ResourceSpec] = (),
        *,
        targets: Optional[Iterable[ResourceAddress]] = None,
        refresh: Optional[bool] = None,
        confirm: Optional[ConfirmCallback] = None,
    ) -> Tuple[Plan, Optional[ApplyReport]]:
        """Destroy every recorded resource (or the targets and their dependents)."""
        return await self.apply(
            specs, destroy=True, targets=targets, refresh=refresh, confirm=confirm
        )


__all__ = ["ConfirmCallback", "Reconciler"]
