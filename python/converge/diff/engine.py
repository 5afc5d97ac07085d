"""
converge/diff/engine.py

Computes a Plan from declared ResourceSpecs and the recorded state.

Planning is pure and deterministic: validation (types, attributes, graph)
happens before anything else, references are resolved in topological order,
and entries are ordered by explicit edges with ties broken by resource order.

Ordering rules between entries:
  1. create/update of X waits for create/update of every dependency of X.
  2. destroy of X waits for the destroy of every recorded dependent of X
     (and, for a plain destroy, for the dependents' updates).
  3. a replacement of X destroys the old object before creating the new one.
  4. a create_before_destroy replacement of X destroys the old object after
     the new one exists and every resource referencing X was applied.
A replaced resource that a create_before_destroy replacement depends on is
itself replaced create-before-destroy.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from converge.errors import ConfigError, CycleError, SchemaError
from converge.graph.builder import DependencyGraph, build_graph, index_specs
from converge.graph.digraph import Digraph
from converge.models.plan import (
    SENSITIVE_VALUE,
    UNKNOWN_VALUE,
    Action,
    Plan,
    PlanEntry,
    PlanMetadata,
)
from converge.models.resource import (
    Reference,
    ResourceAddress,
    ResourceSpec,
    ResourceTypeSchema,
    encode_references,
    map_references,
)
from converge.models.state import ResourceState, StateDocument
from converge.providers.base import ProviderRegistry

logger = logging.getLogger(__name__)

_CREATE = "create"
_REPLACE = "replace"
_UPDATE = "update"
_NOOP = "no-op"

_ACTION_RANK = {Action.DESTROY: 0, Action.CREATE: 1, Action.UPDATE: 2, Action.NOOP: 3}


class _Unknown:
    """Marker for a value that will only be known after apply."""

    def __repr__(self) -> str:
        return UNKNOWN_VALUE


UNKNOWN = _Unknown()


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(item) for item in value.values())
    if isinstance(value, list):
        return any(contains_unknown(item) for item in value)
    return False


def display_value(value: Any) -> Any:
    """Render a resolved value for plan output."""
    if value is UNKNOWN:
        return UNKNOWN_VALUE
    if isinstance(value, dict):
        return {key: display_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [display_value(item) for item in value]
    return value


def _snapshot(schema: ResourceTypeSchema, values: Dict[str, Any]) -> Dict[str, Any]:
    return {
        name: (
            SENSITIVE_VALUE
            if schema.is_sensitive(name) and value is not None
            else display_value(value)
        )
        for name, value in sorted(values.items())
    }


class DiffEngine:
    """Turns (specs, state) into a Plan. Holds no state between calls."""

    def __init__(self, registry: ProviderRegistry) -> None:
        self.registry = registry

    def validate(
        self, specs: Iterable[ResourceSpec]
    ) -> Tuple[Dict[ResourceAddress, ResourceSpec], DependencyGraph]:
        """
        Check specs against their schemas and build the dependency graph.

        Raises:
            ConfigError: Duplicate addresses, unknown resource types or
                references to undeclared resources.
            SchemaError: Unknown or missing attributes, or a reference to an
                attribute the target type does not have.
            CycleError: If the references form a cycle.
        """
        indexed = index_specs(specs)
        for address, spec in sorted(indexed.items()):
            self.registry.schema(address.type).validate_spec(spec)

        graph = build_graph(indexed.values())

        for address, spec in sorted(indexed.items()):
            for ref in spec.references():
                if not self.registry.schema(ref.address.type).can_reference(ref.attribute):
                    raise SchemaError(
                        f"reference {ref} names unknown attribute '{ref.attribute}' "
                        f"of resource type '{ref.address.type}'",
                        str(address),
                        ref.attribute,
                    )
        return indexed, graph

    def plan(
        self,
        specs: Iterable[ResourceSpec],
        state: StateDocument,
        *,
        destroy: bool = False,
        targets: Optional[Iterable[ResourceAddress]] = None,
    ) -> Plan:
        """
        Compute the plan reconciling `state` towards `specs`.

        Args:
            specs: Every declared resource.
            state: The recorded (optionally refreshed) state document.
            destroy: Plan the removal of every recorded resource instead.
            targets: Restrict the plan to these addresses and their
                dependencies (or, with destroy, their dependents).

        Returns:
            Plan: Ordered entries, ordering edges and state metadata.
        """
        indexed, graph = self.validate(specs)
        records: Dict[ResourceAddress, ResourceState] = {
            record.address: record for record in state.resources.values()
        }
        for address in sorted(records):
            self.registry.schema(address.type)

        builder = _PlanBuilder(self.registry, indexed, graph, records)
        if destroy:
            builder.select_for_destroy(targets)
            builder.plan_destroy()
        else:
            builder.select_for_apply(targets)
            builder.plan_apply()
        builder.plan_deposed()

        plan = builder.build(
            PlanMetadata(lineage=state.lineage, serial=state.serial, destroy=destroy)
        )
        logger.info("Computed plan: %s", plan.summary())
        return plan


class _PlanBuilder:
    """Working state for one DiffEngine.plan() call."""

    def __init__(
        self,
        registry: ProviderRegistry,
        specs: Dict[ResourceAddress, ResourceSpec],
        graph: DependencyGraph,
        records: Dict[ResourceAddress, ResourceState],
    ) -> None:
        self.registry = registry
        self.specs = specs
        self.graph = graph
        self.records = records
        self.selected_specs: Set[ResourceAddress] = set(specs)
        self.selected_records: Set[ResourceAddress] = set(records)

        self.kind: Dict[ResourceAddress, str] = {}
        self.resolved: Dict[ResourceAddress, Dict[str, Any]] = {}
        self.create_before_destroy: Set[ResourceAddress] = set()
        self.entries: Dict[str, PlanEntry] = {}
        self.destroy_keys: Dict[ResourceAddress, List[str]] = defaultdict(list)

        self.recorded_dependents: Dict[ResourceAddress, List[ResourceAddress]] = (
            defaultdict(list)
        )
        for address, record in sorted(records.items()):
            for dependency in record.dependencies:
                self.recorded_dependents[dependency].append(address)

    # ------------------------------------------------------------------
    # Target selection
    # ------------------------------------------------------------------
    def _check_targets(self, targets: Iterable[ResourceAddress]) -> List[ResourceAddress]:
        chosen = sorted(set(targets))
        for target in chosen:
            if target not in self.specs and target not in self.records:
                raise ConfigError(f"Target {target} is neither declared nor recorded")
        return chosen

    def select_for_apply(self, targets: Optional[Iterable[ResourceAddress]]) -> None:
        if targets is None:
            return
        chosen = self._check_targets(targets)
        keep: Set[ResourceAddress] = set()
        for target in chosen:
            keep.add(target)
            if target in self.graph:
                keep |= self.graph.ancestors(target)
        self.selected_specs = keep & set(self.specs)
        self.selected_records = keep & set(self.records)

    def select_for_destroy(self, targets: Optional[Iterable[ResourceAddress]]) -> None:
        recorded: Digraph[ResourceAddress] = Digraph()
        for address, record in self.records.items():
            recorded.add_node(address)
            for dependency in record.dependencies:
                if dependency in self.records:
                    recorded.add_edge(address, dependency)
        if targets is None:
            self.selected_records = set(self.records)
            return
        keep: Set[ResourceAddress] = set()
        for target in self._check_targets(targets):
            if target in recorded:
                keep.add(target)
                keep |= recorded.descendants(target)
        self.selected_records = keep

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------
    def _resolve(self, ref: Reference) -> Any:
        target = ref.address
        if ref.attribute in self.registry.schema(target.type).attributes:
            return self.resolved[target].get(ref.attribute)
        record = self.records.get(target)
        if (
            record is None
            or record.identity is None
            or self.kind.get(target) in (_CREATE, _REPLACE)
        ):
            return UNKNOWN
        return record.value_of(ref.attribute)

    def plan_apply(self) -> None:
        for address in self.graph.topological_order():
            if address not in self.selected_specs:
                continue
            spec = self.specs[address]
            schema = self.registry.schema(address.type)
            values = map_references(spec.attributes, self._resolve)
            self.resolved[address] = values
            record = self.records.get(address)

            # A record without an identity only carries deposed objects.
            if record is None or record.identity is None:
                self.kind[address] = _CREATE
                self._add(
                    PlanEntry(
                        address=address,
                        action=Action.CREATE,
                        desired=encode_references(spec.attributes),
                        dependencies=spec.dependency_addresses(),
                        changed=sorted(k for k, v in values.items() if v is not None),
                        after=_snapshot(schema, values),
                    )
                )
                continue

            changed = sorted(
                name
                for name in set(values) | set(record.attributes)
                if contains_unknown(values.get(name))
                or values.get(name) != record.attributes.get(name)
            )
            reasons = [name for name in changed if not schema.is_mutable(name)]
            if reasons:
                self.kind[address] = _REPLACE
            elif changed:
                self.kind[address] = _UPDATE
            else:
                self.kind[address] = _NOOP
            self._plan_existing(spec, schema, record, values, changed, reasons)

        for address in sorted(self.selected_records - set(self.specs)):
            if self.records[address].identity is not None:
                self._plan_destroy(self.records[address])

        self._propagate_create_before_destroy()

    def _plan_existing(
        self,
        spec: ResourceSpec,
        schema: ResourceTypeSchema,
        record: ResourceState,
        values: Dict[str, Any],
        changed: List[str],
        reasons: List[str],
    ) -> None:
        address = spec.address
        before = _snapshot(schema, record.attributes)
        kind = self.kind[address]
        if kind == _NOOP:
            self._add(
                PlanEntry(
                    address=address,
                    action=Action.NOOP,
                    identity=record.identity,
                    dependencies=spec.dependency_addresses(),
                    before=before,
                    after=before,
                )
            )
            return
        common: Dict[str, Any] = dict(
            address=address,
            identity=record.identity,
            dependencies=spec.dependency_addresses(),
            changed=changed,
            before=before,
        )
        if kind == _UPDATE:
            self._add(
                PlanEntry(
                    action=Action.UPDATE,
                    desired=encode_references(spec.attributes),
                    after=_snapshot(schema, values),
                    **common,
                )
            )
            return
        self._add(
            PlanEntry(action=Action.DESTROY, replace=True, replace_reasons=reasons, **common)
        )
        self._add(
            PlanEntry(
                action=Action.CREATE,
                replace=True,
                replace_reasons=reasons,
                desired=encode_references(spec.attributes),
                after=_snapshot(schema, values),
                **common,
            )
        )

    def _plan_destroy(self, record: ResourceState) -> None:
        schema = self.registry.schema(record.address.type)
        self._add(
            PlanEntry(
                address=record.address,
                action=Action.DESTROY,
                identity=record.identity,
                dependencies=list(record.dependencies),
                changed=sorted(record.attributes),
                before=_snapshot(schema, record.attributes),
            )
        )

    def plan_destroy(self) -> None:
        for address in sorted(self.selected_records):
            if self.records[address].identity is not None:
                self._plan_destroy(self.records[address])

    def plan_deposed(self) -> None:
        for address in sorted(self.selected_records):
            record = self.records[address]
            schema = self.registry.schema(address.type)
            for obj in record.deposed:
                self._add(
                    PlanEntry(
                        address=address,
                        action=Action.DESTROY,
                        deposed=True,
                        identity=obj.identity,
                        dependencies=list(record.dependencies),
                        changed=sorted(obj.attributes),
                        before=_snapshot(schema, obj.attributes),
                    )
                )

    def _propagate_create_before_destroy(self) -> None:
        replaced = {a for a, kind in self.kind.items() if kind == _REPLACE}
        for address in sorted(replaced):
            if self.registry.schema(address.type).create_before_destroy:
                self.create_before_destroy.add(address)
                self.create_before_destroy |= self.graph.ancestors(address) & replaced

    def _add(self, entry: PlanEntry) -> None:
        self.entries[entry.key] = entry
        if entry.action is Action.DESTROY:
            self.destroy_keys[entry.address].append(entry.key)

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------
    def _apply_key(self, address: ResourceAddress) -> Optional[str]:
        kind = self.kind.get(address)
        if kind in (_CREATE, _REPLACE):
            return f"{Action.CREATE.value}:{address}"
        if kind == _UPDATE:
            return f"{Action.UPDATE.value}:{address}"
        return None

    def _edges(self) -> Dict[str, Set[str]]:
        edges: Dict[str, Set[str]] = defaultdict(set)

        for address in self.kind:
            key = self._apply_key(address)
            if key is None:
                continue
            for dependency in self.graph.dependencies(address):
                dependency_key = self._apply_key(dependency)
                if dependency_key is not None:
                    edges[key].add(dependency_key)

        for address, keys in self.destroy_keys.items():
            for key in keys:
                entry = self.entries[key]
                plain = not entry.replace and not entry.deposed
                for dependent in self.recorded_dependents.get(address, []):
                    for other in self.destroy_keys.get(dependent, []):
                        edges[key].add(other)
                    if plain and self.kind.get(dependent) == _UPDATE:
                        edges[key].add(f"{Action.UPDATE.value}:{dependent}")
                if entry.deposed and address in self.graph:
                    for dependent in self.graph.dependents(address):
                        dependent_key = self._apply_key(dependent)
                        if dependent_key is not None:
                            edges[key].add(dependent_key)

        for address, kind in self.kind.items():
            if kind != _REPLACE:
                continue
            create_key = f"{Action.CREATE.value}:{address}"
            destroy_key = f"{Action.DESTROY.value}:{address}"
            if address not in self.create_before_destroy:
                edges[create_key].add(destroy_key)
                continue
            edges[destroy_key].add(create_key)
            for dependent in self.graph.dependents(address):
                dependent_key = self._apply_key(dependent)
                if dependent_key is not None:
                    edges[destroy_key].add(dependent_key)

        return edges

    def build(self, metadata: PlanMetadata) -> Plan:
        edges = self._edges()
        ordering: Digraph[str] = Digraph()
        for key in self.entries:
            ordering.add_node(key)
        for key, prerequisites in edges.items():
            for prerequisite in prerequisites:
                ordering.add_edge(key, prerequisite)

        cycles = ordering.strongly_connected_cycles()
        if cycles:
            raise CycleError(key for cycle in cycles for key in cycle)

        position: Dict[ResourceAddress, int] = {}
        for address in self.graph.topological_order():
            position.setdefault(address, len(position))
        for address in sorted(self.records):
            position.setdefault(address, len(position))

        def rank(key: str) -> Tuple[int, int]:
            entry = self.entries[key]
            return position[entry.address], _ACTION_RANK[entry.action]

        return Plan(
            metadata=metadata,
            entries=[self.entries[key] for key in ordering.topological_order(key=rank)],
            edges={key: sorted(prereqs) for key, prereqs in sorted(edges.items()) if prereqs},
        )


__all__ = ["DiffEngine", "UNKNOWN", "contains_unknown", "display_value"]
