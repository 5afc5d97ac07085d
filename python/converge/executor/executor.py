"""
converge/executor/executor.py

Executes a Plan against providers with bounded parallelism.

Each non-no-op entry moves PENDING -> IN_PROGRESS -> SUCCEEDED | FAILED.
Entries whose prerequisites failed (or were skipped) end SKIPPED; entries
that never started because cancellation was requested end CANCELLED.

  - Every entry whose prerequisites all succeeded is dispatched as an asyncio
    task; an asyncio.Semaphore bounds how many provider calls run at once.
    A slot is held for one call only, never across a retry backoff.
  - Transient provider errors are retried with exponential backoff and
    jitter; permanent errors fail the entry immediately.
  - A create retried after a transient error first asks the provider for an
    object made with the same request token, so a lost response does not
    leave a duplicate behind.
  - After every successful operation the result is committed to the
    StateStore, so an interrupted run leaves consistent state.
  - cancel() stops new dispatches and lets in-flight work finish;
    abort() also cancels in-flight calls to providers that support it.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Tuple

from converge.errors import (
    ConvergeError,
    ProviderError,
    ResourceNotFound,
    StalePlanError,
)
from converge.graph.digraph import Digraph
from converge.models.apply import ApplyReport, ApplyResult, NodeStatus
from converge.models.plan import Action, Plan, PlanEntry
from converge.models.resource import Reference, decode_references, map_references
from converge.models.settings import EngineSettings
from converge.models.state import ResourceState
from converge.providers.base import Observation, ProviderRegistry
from converge.state.store import StateStore
from converge.utils.async_retry import async_retry

logger = logging.getLogger(__name__)


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.transient


def _outcome(
    entry: PlanEntry, status: NodeStatus, error: Optional[str] = None
) -> ApplyResult:
    return ApplyResult(
        key=entry.key,
        address=entry.address,
        action=entry.action,
        status=status,
        error=error,
    )


class _Attempts:
    """Counts provider calls made for one entry across retries."""

    def __init__(self) -> None:
        self.count = 0


class _NotStarted(Exception):
    """Cancellation arrived before an entry made its first provider call."""


class PlanExecutor:
    """Applies plans; one instance may run several plans one after another."""

    def __init__(
        self,
        registry: ProviderRegistry,
        store: StateStore,
        settings: Optional[EngineSettings] = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.settings = settings or EngineSettings()
        self.cancel_event = asyncio.Event()
        self._semaphore = asyncio.Semaphore(self.settings.parallelism)
        self._running: Dict["asyncio.Task[ApplyResult]", PlanEntry] = {}

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------
    def cancel(self) -> None:
        """Stop dispatching new entries; in-flight operations finish normally."""
        if not self.cancel_event.is_set():
            logger.warning("Cancellation requested; waiting for in-flight operations.")
        self.cancel_event.set()

    def abort(self) -> None:
        """Cancel, and interrupt in-flight calls to providers that support it."""
        self.cancel()
        for task, entry in list(self._running.items()):
            if self.registry.provider(entry.resource_type).supports_abort:
                logger.warning("Aborting in-flight %s", entry.key)
                task.cancel()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def check_plan(self, plan: Plan) -> None:
        """Refuse a plan computed against a different state.

        Raises:
            StalePlanError: If lineage or serial no longer match.
        """
        meta = plan.metadata
        if meta.lineage != self.store.lineage:
            raise StalePlanError(
                f"Plan was computed for state lineage {meta.lineage}, "
                f"but the state has lineage {self.store.lineage}"
            )
        if meta.serial != self.store.serial:
            raise StalePlanError(
                f"Plan was computed at state serial {meta.serial}, but the state "
                f"is now at serial {self.store.serial}; plan again"
            )

    async def apply(self, plan: Plan) -> ApplyReport:
        """
        Execute every change in `plan` and report per-entry outcomes.

        Args:
            plan (Plan): A plan computed against the store's current state.

        Returns:
            ApplyReport: One result per non-no-op entry, in plan order.

        Raises:
            StalePlanError: If the state moved since the plan was computed.
        """
        self.check_plan(plan)
        entries = {entry.key: entry for entry in plan.changes()}
        graph: Digraph[str] = Digraph()
        for key in entries:
            graph.add_node(key)
            for prerequisite in plan.prerequisites(key):
                if prerequisite in entries:
                    graph.add_edge(key, prerequisite)

        status: Dict[str, NodeStatus] = {key: NodeStatus.PENDING for key in entries}
        results: Dict[str, ApplyResult] = {}
        order = graph.topological_order()
        self._semaphore = asyncio.Semaphore(self.settings.parallelism)
        token_prefix = f"{plan.metadata.lineage}:{plan.metadata.serial}"

        try:
            while True:
                for key in order:
                    if status[key] is not NodeStatus.PENDING:
                        continue
                    decided = self._decide(key, graph, status)
                    if decided is not None:
                        new_status, reason = decided
                        status[key] = new_status
                        results[key] = _outcome(entries[key], new_status, reason)
                        logger.info("%s: %s (%s)", key, new_status.value, reason)
                    elif all(
                        status[dep] is NodeStatus.SUCCEEDED
                        for dep in graph.dependencies(key)
                    ):
                        status[key] = NodeStatus.IN_PROGRESS
                        task = asyncio.create_task(
                            self._run(entries[key], f"{token_prefix}:{key}")
                        )
                        self._running[task] = entries[key]

                if not self._running:
                    break

                done, _ = await asyncio.wait(
                    list(self._running), return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    entry = self._running.pop(task)
                    if task.cancelled():
                        result = _outcome(entry, NodeStatus.FAILED, "aborted")
                    else:
                        result = task.result()
                    status[entry.key] = result.status
                    results[entry.key] = result
        finally:
            for task in self._running:
                task.cancel()
            if self._running:
                await asyncio.gather(*self._running, return_exceptions=True)
            self._running.clear()

        report = ApplyReport(
            results=[results[key] for key in entries],
            cancelled=self.cancelled,
        )
        logger.info("Apply finished: %s", report.summary())
        return report

    def _decide(
        self, key: str, graph: Digraph[str], status: Dict[str, NodeStatus]
    ) -> Optional[Tuple[NodeStatus, str]]:
        """Settle a pending entry that will never run, or return None."""
        for dep in graph.dependencies(key):
            if status[dep] is NodeStatus.CANCELLED:
                return NodeStatus.CANCELLED, f"prerequisite {dep} was cancelled"
            if status[dep] in (NodeStatus.FAILED, NodeStatus.SKIPPED):
                return NodeStatus.SKIPPED, f"prerequisite {dep} did not succeed"
        if self.cancelled:
            return NodeStatus.CANCELLED, "cancelled before start"
        return None

    # ------------------------------------------------------------------
    # One entry
    # ------------------------------------------------------------------
    async def _run(self, entry: PlanEntry, token: str) -> ApplyResult:
        attempts = _Attempts()
        loop = asyncio.get_running_loop()
        started = loop.time()
        state: Optional[ResourceState] = None
        error: Optional[str] = None
        logger.debug("%s: in progress", entry.key)
        try:
            if entry.action is Action.CREATE:
                state = await self._create(entry, token, attempts)
            elif entry.action is Action.UPDATE:
                state = await self._update(entry, attempts)
            else:
                await self._destroy(entry, attempts)
        except _NotStarted:
            return _outcome(entry, NodeStatus.CANCELLED, "cancelled before start")
        except (ProviderError, ConvergeError) as exc:
            error = str(exc)
            logger.error(
                "%s failed after %d attempt(s): %s", entry.key, attempts.count, exc
            )
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            logger.exception("%s failed unexpectedly", entry.key)

        return ApplyResult(
            key=entry.key,
            address=entry.address,
            action=entry.action,
            status=NodeStatus.FAILED if error else NodeStatus.SUCCEEDED,
            attempts=attempts.count,
            error=error,
            state=state,
            duration_seconds=loop.time() - started,
        )

    @asynccontextmanager
    async def _slot(self, attempts: _Attempts) -> AsyncIterator[None]:
        """Hold one parallelism slot for a single provider call.

        Raises:
            _NotStarted: If cancellation was requested before the entry's
                first call got a slot.
        """
        async with self._semaphore:
            if attempts.count == 0 and self.cancelled:
                raise _NotStarted()
            attempts.count += 1
            yield

    def _retrying(self) -> Any:
        settings = self.settings
        return async_retry(
            retries=settings.max_attempts,
            delay=settings.backoff_base_seconds,
            noisy=True,
            multiplier=settings.backoff_multiplier,
            max_delay=settings.backoff_max_seconds,
            jitter=settings.backoff_jitter,
            retry_on=_is_transient,
        )

    def _resolve(self, entry: PlanEntry) -> Dict[str, Any]:
        """Resolve the entry's references against the live state."""

        def lookup(ref: Reference) -> Any:
            record = self.store.get(ref.address)
            if record is None or record.identity is None:
                raise ConvergeError(
                    f"{entry.address}: cannot resolve {ref}; {ref.address} is not in state"
                )
            return record.value_of(ref.attribute)

        return map_references(decode_references(entry.desired or {}), lookup)

    async def _create(
        self, entry: PlanEntry, token: str, attempts: _Attempts
    ) -> ResourceState:
        provider = self.registry.provider(entry.resource_type)
        attributes = self._resolve(entry)

        @self._retrying()
        async def create() -> Observation:
            async with self._slot(attempts):
                if attempts.count > 1:
                    existing = await provider.find_by_token(entry.resource_type, token)
                    if existing is not None:
                        logger.warning(
                            "%s: adopting %s created by an earlier attempt",
                            entry.key,
                            existing.identity,
                        )
                        return existing
                return await provider.create(entry.resource_type, attributes, token)

        observed = await create()
        state = await self.store.commit(
            ResourceState(
                address=entry.address,
                identity=observed.identity,
                attributes=attributes,
                outputs=observed.outputs,
                dependencies=entry.dependencies,
            ),
            created=True,
            depose=entry.replace,
        )
        logger.info("%s: created %s", entry.key, observed.identity)
        return state

    async def _update(self, entry: PlanEntry, attempts: _Attempts) -> ResourceState:
        provider = self.registry.provider(entry.resource_type)
        attributes = self._resolve(entry)
        changes = {name: attributes.get(name) for name in entry.changed}
        identity = entry.identity or ""

        @self._retrying()
        async def update() -> Observation:
            async with self._slot(attempts):
                return await provider.update(
                    entry.resource_type, identity, changes, attributes
                )

        try:
            observed = await update()
        except ResourceNotFound as exc:
            raise ConvergeError(
                f"{entry.address} ({identity}) vanished; refresh and plan again"
            ) from exc

        state = await self.store.commit(
            ResourceState(
                address=entry.address,
                identity=observed.identity,
                attributes=attributes,
                outputs=observed.outputs,
                dependencies=entry.dependencies,
            ),
            created=False,
        )
        logger.info("%s: updated %s", entry.key, ", ".join(entry.changed))
        return state

    async def _destroy(self, entry: PlanEntry, attempts: _Attempts) -> None:
        provider = self.registry.provider(entry.resource_type)
        identity = entry.identity or ""

        @self._retrying()
        async def delete() -> None:
            async with self._slot(attempts):
                await provider.delete(entry.resource_type, identity)

        try:
            await delete()
        except ResourceNotFound:
            logger.info("%s: %s was already gone", entry.key, identity)

        if not await self.store.remove(entry.address, identity=identity):
            await self.store.remove_deposed(entry.address, identity)
        logger.info("%s: destroyed %s", entry.key, identity)


__all__ = ["PlanExecutor"]
