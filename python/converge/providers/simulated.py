"""
converge/providers/simulated.py

An in-memory cloud implementing ResourceProvider for the example resource
types of a managed Kubernetes deployment (vpc, subnet, iam_role, eks_cluster,
launch_template, node_group).

It behaves like an eventually-unfriendly remote API so the engine can be
exercised without one:
  - identities look like 'sim-<type>-000001' and any attribute value that
    names a missing identity is rejected (a create that runs too early fails),
  - deleting an object that another object still references is rejected
    (a 'DependencyViolation', as real clouds do),
  - failures can be injected per operation, transient or permanent, optionally
    after the operation has already taken effect (a lost response),
  - optional latency, and a log of calls with the peak number in flight.

With a `path`, objects are persisted to a JSON file through aiofiles so CLI
runs see the same "cloud" across invocations.
"""

from __future__ import annotations

import asyncio
import json
import os
from typing import Any, Dict, List, Optional

import aiofiles
from pydantic import BaseModel, Field

from converge.errors import PermanentProviderError, ResourceNotFound, TransientProviderError
from converge.models.resource import ResourceTypeSchema
from converge.providers.base import Observation, ProviderRegistry, ResourceProvider

IDENTITY_PREFIX = "sim-"

SIMULATED_SCHEMAS: List[ResourceTypeSchema] = [
    ResourceTypeSchema.build(
        "vpc",
        replace=["cidr_block"],
        mutable=["enable_dns_support", "enable_dns_hostnames", "tags"],
        required=["cidr_block"],
        outputs=["id", "arn"],
    ),
    ResourceTypeSchema.build(
        "subnet",
        replace=["vpc_id", "cidr_block", "availability_zone"],
        mutable=["map_public_ip_on_launch", "tags"],
        required=["vpc_id", "cidr_block"],
        outputs=["id", "arn"],
    ),
    ResourceTypeSchema.build(
        "iam_role",
        replace=["name"],
        mutable=["assume_role_policy", "managed_policy_arns", "tags"],
        required=["name", "assume_role_policy"],
        outputs=["id", "arn"],
    ),
    ResourceTypeSchema.build(
        "eks_cluster",
        replace=["name", "role_arn"],
        mutable=["version", "subnet_ids", "endpoint_public_access", "tags"],
        required=["name", "role_arn", "subnet_ids"],
        outputs=["id", "arn", "endpoint"],
    ),
    ResourceTypeSchema.build(
        "launch_template",
        replace=["name"],
        mutable=["image_id", "instance_type", "user_data", "tags"],
        required=["name"],
        sensitive=["user_data"],
        outputs=["id", "arn", "latest_version"],
        create_before_destroy=True,
    ),
    ResourceTypeSchema.build(
        "node_group",
        replace=["cluster_name", "node_role_arn", "subnet_ids"],
        mutable=["scaling_config", "launch_template_id", "labels", "tags"],
        required=["cluster_name", "node_role_arn", "subnet_ids"],
        outputs=["id", "arn"],
        create_before_destroy=True,
    ),
]


class FailureRule(BaseModel):
    """
    Describes an injected failure.

    Attributes:
        operation: 'create', 'read', 'update' or 'delete'.
        resource_type: Only calls for this type match.
        match: Attribute subset the target object (or create request) must have.
        times: How many matching calls fail; None means every call.
        transient: Raise TransientProviderError instead of PermanentProviderError.
        after_effect: Perform the operation, then raise (a lost response).
        message: Error text.
    """

    operation: str
    resource_type: str
    match: Dict[str, Any] = Field(default_factory=dict)
    times: Optional[int] = 1
    transient: bool = False
    after_effect: bool = False
    message: str = "injected failure"


class SimulatedObject(BaseModel):
    identity: str
    resource_type: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    token: Optional[str] = None


def _referenced_identities(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value] if value.startswith(IDENTITY_PREFIX) else []
    if isinstance(value, dict):
        return [ident for item in value.values() for ident in _referenced_identities(item)]
    if isinstance(value, list):
        return [ident for item in value for ident in _referenced_identities(item)]
    return []


class SimulatedCloud(ResourceProvider):
    """In-memory (optionally file-backed) cloud with failure injection."""

    supports_abort = True

    def __init__(
        self,
        schemas: Optional[List[ResourceTypeSchema]] = None,
        *,
        path: Optional[str] = None,
        latency: float = 0.0,
    ) -> None:
        self.schemas = {schema.type: schema for schema in (schemas or SIMULATED_SCHEMAS)}
        self.path = path
        self.latency = latency
        self.objects: Dict[str, SimulatedObject] = {}
        self.counter = 0
        self.failures: List[FailureRule] = []
        self.calls: List[tuple[str, str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._loaded = path is None

    # ------------------------------------------------------------------
    # Test hooks
    # ------------------------------------------------------------------
    def inject(self, rule: FailureRule) -> FailureRule:
        self.failures.append(rule)
        return rule

    def fail(
        self,
        operation: str,
        resource_type: str,
        *,
        match: Optional[Dict[str, Any]] = None,
        times: Optional[int] = 1,
        transient: bool = False,
        after_effect: bool = False,
    ) -> FailureRule:
        """Shorthand for inject(FailureRule(...))."""
        return self.inject(
            FailureRule(
                operation=operation,
                resource_type=resource_type,
                match=match or {},
                times=times,
                transient=transient,
                after_effect=after_effect,
                message=f"injected {'transient' if transient else 'permanent'} "
                f"{operation} failure",
            )
        )

    def objects_of(self, resource_type: str) -> List[SimulatedObject]:
        return [obj for obj in self.objects.values() if obj.resource_type == resource_type]

    def call_index(self, operation: str, identity: str) -> int:
        """Position of the first matching call in the call log."""
        for position, (op, _, ident) in enumerate(self.calls):
            if op == operation and ident == identity:
                return position
        raise ValueError(f"No {operation} call for {identity}")

    def registry(self) -> ProviderRegistry:
        """A registry serving every simulated schema from this cloud."""
        registry = ProviderRegistry()
        registry.register_all(list(self.schemas.values()), self)
        return registry

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _take_failure(
        self, operation: str, resource_type: str, attributes: Dict[str, Any]
    ) -> Optional[FailureRule]:
        for rule in self.failures:
            if rule.operation != operation or rule.resource_type != resource_type:
                continue
            if any(attributes.get(key) != value for key, value in rule.match.items()):
                continue
            if rule.times is not None:
                if rule.times <= 0:
                    continue
                rule.times -= 1
            return rule
        return None

    @staticmethod
    def _raise(rule: FailureRule) -> None:
        if rule.transient:
            raise TransientProviderError(rule.message)
        raise PermanentProviderError(rule.message)

    async def _enter(self, operation: str, resource_type: str, identity: str) -> int:
        """Log the call, track concurrency and simulate latency; returns the log index."""
        await self._ensure_loaded()
        self.calls.append((operation, resource_type, identity))
        index = len(self.calls) - 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        if self.latency:
            try:
                await asyncio.sleep(self.latency)
            except asyncio.CancelledError:
                self.in_flight -= 1
                raise
        return index

    def _exit(self) -> None:
        self.in_flight -= 1

    def _outputs(self, resource_type: str, identity: str) -> Dict[str, Any]:
        outputs: Dict[str, Any] = {
            "id": identity,
            "arn": f"arn:sim:{resource_type}:{identity}",
        }
        if resource_type == "eks_cluster":
            outputs["endpoint"] = f"https://{identity}.eks.sim.local"
        if resource_type == "launch_template":
            outputs["latest_version"] = 1
        return outputs

    def _check_references(self, resource_type: str, attributes: Dict[str, Any]) -> None:
        for identity in _referenced_identities(attributes):
            if identity not in self.objects:
                raise PermanentProviderError(
                    f"{resource_type}: referenced object {identity} does not exist"
                )

    def _check_mutable(self, resource_type: str, changes: Dict[str, Any]) -> None:
        schema = self.schemas.get(resource_type)
        if schema is None:
            raise PermanentProviderError(f"Unsupported resource type: {resource_type}")
        for name in changes:
            if not schema.is_mutable(name):
                raise PermanentProviderError(
                    f"{resource_type}: attribute '{name}' cannot be updated in place"
                )

    def _observe(self, obj: SimulatedObject) -> Observation:
        return Observation(
            identity=obj.identity,
            attributes=json.loads(json.dumps(obj.attributes)),
            outputs=dict(obj.outputs),
        )

    # ------------------------------------------------------------------
    # ResourceProvider
    # ------------------------------------------------------------------
    async def create(
        self, resource_type: str, attributes: Dict[str, Any], token: str
    ) -> Observation:
        index = await self._enter("create", resource_type, token)
        try:
            rule = self._take_failure("create", resource_type, attributes)
            if rule is not None and not rule.after_effect:
                self._raise(rule)
            if resource_type not in self.schemas:
                raise PermanentProviderError(f"Unsupported resource type: {resource_type}")
            self._check_references(resource_type, attributes)

            self.counter += 1
            identity = f"{IDENTITY_PREFIX}{resource_type.replace('_', '-')}-{self.counter:06d}"
            obj = SimulatedObject(
                identity=identity,
                resource_type=resource_type,
                attributes=json.loads(json.dumps(attributes)),
                outputs=self._outputs(resource_type, identity),
                token=token,
            )
            self.objects[identity] = obj
            self.calls[index] = ("create", resource_type, identity)
            await self._save()

            if rule is not None:
                self._raise(rule)
            return self._observe(obj)
        finally:
            self._exit()

    async def read(self, resource_type: str, identity: str) -> Observation:
        await self._enter("read", resource_type, identity)
        try:
            obj = self.objects.get(identity)
            if obj is None or obj.resource_type != resource_type:
                raise ResourceNotFound(identity)
            rule = self._take_failure("read", resource_type, obj.attributes)
            if rule is not None:
                self._raise(rule)
            return self._observe(obj)
        finally:
            self._exit()

    async def update(
        self,
        resource_type: str,
        identity: str,
        changes: Dict[str, Any],
        attributes: Dict[str, Any],
    ) -> Observation:
        await self._enter("update", resource_type, identity)
        try:
            obj = self.objects.get(identity)
            if obj is None or obj.resource_type != resource_type:
                raise ResourceNotFound(identity)
            rule = self._take_failure("update", resource_type, obj.attributes)
            if rule is not None and not rule.after_effect:
                self._raise(rule)
            self._check_mutable(resource_type, changes)
            self._check_references(resource_type, changes)

            obj.attributes.update(json.loads(json.dumps(changes)))
            for name in [key for key, value in obj.attributes.items() if value is None]:
                del obj.attributes[name]
            await self._save()

            if rule is not None:
                self._raise(rule)
            return self._observe(obj)
        finally:
            self._exit()

    async def delete(self, resource_type: str, identity: str) -> None:
        await self._enter("delete", resource_type, identity)
        try:
            obj = self.objects.get(identity)
            if obj is None or obj.resource_type != resource_type:
                raise ResourceNotFound(identity)
            rule = self._take_failure("delete", resource_type, obj.attributes)
            if rule is not None and not rule.after_effect:
                self._raise(rule)
            dependents = sorted(
                other.identity
                for other in self.objects.values()
                if identity in _referenced_identities(other.attributes)
            )
            if dependents:
                raise PermanentProviderError(
                    f"DependencyViolation: {identity} is still used by {', '.join(dependents)}"
                )

            del self.objects[identity]
            await self._save()

            if rule is not None:
                self._raise(rule)
        finally:
            self._exit()

    async def find_by_token(
        self, resource_type: str, token: str
    ) -> Optional[Observation]:
        await self._ensure_loaded()
        for obj in self.objects.values():
            if obj.token == token and obj.resource_type == resource_type:
                return self._observe(obj)
        return None

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if self.path is None or not os.path.exists(self.path):
            return
        async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
            data = json.loads(await f.read() or "{}")
        self.counter = int(data.get("counter", 0))
        self.objects = {
            identity: SimulatedObject.model_validate(raw)
            for identity, raw in (data.get("objects") or {}).items()
        }

    async def _save(self) -> None:
        if self.path is None:
            return
        payload = {
            "counter": self.counter,
            "objects": {
                identity: obj.model_dump(mode="json") for identity, obj in self.objects.items()
            },
        }
        async with aiofiles.open(self.path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(payload, indent=2, sort_keys=True))


def simulated_registry(path: Optional[str] = None, latency: float = 0.0) -> ProviderRegistry:
    """Provider factory used by the CLI when no --provider is given."""
    return SimulatedCloud(path=path, latency=latency).registry()


__all__ = [
    "FailureRule",
    "SIMULATED_SCHEMAS",
    "SimulatedCloud",
    "SimulatedObject",
    "simulated_registry",
]
