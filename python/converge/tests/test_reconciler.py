"""
Tests for the plan/apply orchestration: locking, confirmation and refresh.
"""

import pytest

from converge.diff.refresh import refresh
from converge.errors import SchemaError, StateLockError, TransientProviderError
from converge.models.plan import Action
from converge.models.state import ResourceState
from converge.state.store import StateStore

from conftest import addr, spec, vpc_and_subnet


@pytest.mark.asyncio
async def test_no_changes_returns_empty_report_without_confirming(make_reconciler):
    await make_reconciler().apply(vpc_and_subnet())
    asked = []

    async def confirm(plan):
        asked.append(plan)
        return True

    plan, report = await make_reconciler().apply(vpc_and_subnet(), confirm=confirm)

    assert not plan.has_changes
    assert report.results == []
    assert asked == []


@pytest.mark.asyncio
async def test_declined_plan_changes_nothing(make_reconciler, cloud, backend):
    async def decline(plan):
        assert plan.summary()["create"] == 2
        return False

    plan, report = await make_reconciler().apply(vpc_and_subnet(), confirm=decline)

    assert report is None
    assert plan.has_changes
    assert cloud.calls == []
    assert backend.lock is None


@pytest.mark.asyncio
async def test_schema_error_aborts_before_any_call(make_reconciler, cloud):
    specs = vpc_and_subnet(colour="blue")

    with pytest.raises(SchemaError):
        await make_reconciler().apply(specs, refresh=True)

    assert cloud.calls == []


@pytest.mark.asyncio
async def test_run_is_refused_while_another_holds_the_lock(make_reconciler, backend):
    holder = StateStore(backend)

    async with holder.locked("apply"):
        with pytest.raises(StateLockError):
            await make_reconciler().plan(vpc_and_subnet())

    plan = await make_reconciler().plan(vpc_and_subnet())
    assert plan.has_changes


@pytest.mark.asyncio
async def test_lock_released_after_failed_apply(make_reconciler, cloud, backend):
    cloud.fail("create", "vpc", times=None)

    _, report = await make_reconciler().apply(vpc_and_subnet())

    assert not report.ok
    assert backend.lock is None


@pytest.mark.asyncio
async def test_out_of_band_drift_is_planned_as_update(make_reconciler, cloud):
    await make_reconciler().apply(vpc_and_subnet())
    [vpc] = cloud.objects_of("vpc")
    vpc.attributes["tags"] = {"env": "edited-by-hand"}

    plan = await make_reconciler().plan(vpc_and_subnet(), refresh=True)

    [entry] = plan.changes()
    assert entry.action is Action.UPDATE
    assert entry.changed == ["tags"]
    assert entry.before["tags"] == {"env": "edited-by-hand"}

    _, report = await make_reconciler().apply(vpc_and_subnet(), refresh=True)
    assert report.ok
    assert vpc.attributes["tags"] == {"env": "test"}


@pytest.mark.asyncio
async def test_plan_time_refresh_leaves_state_untouched(make_reconciler, cloud, backend):
    await make_reconciler().apply(vpc_and_subnet())
    del cloud.objects[cloud.objects_of("subnet")[0].identity]
    before = backend.document
    writes = backend.writes

    plan = await make_reconciler().plan(vpc_and_subnet(), refresh=True)

    assert [entry.key for entry in plan.changes()] == ["create:subnet.a"]
    assert backend.writes == writes
    assert backend.document == before

    report = await make_reconciler().apply_saved(plan)
    assert report.ok
    assert len(cloud.objects_of("subnet")) == 1


@pytest.mark.asyncio
async def test_plan_without_refresh_ignores_drift(make_reconciler, cloud):
    await make_reconciler().apply(vpc_and_subnet())
    [vpc] = cloud.objects_of("vpc")
    vpc.attributes["tags"] = {"env": "edited-by-hand"}

    plan = await make_reconciler().plan(vpc_and_subnet(), refresh=False)

    assert not plan.has_changes


@pytest.mark.asyncio
async def test_targeted_apply_leaves_other_resources_alone(make_reconciler, cloud):
    specs = vpc_and_subnet() + [spec("iam_role.nodes", name="nodes", assume_role_policy="{}")]

    plan, report = await make_reconciler().apply(specs, targets=[addr("subnet.a")])

    assert [entry.key for entry in plan.changes()] == ["create:vpc.main", "create:subnet.a"]
    assert report.ok
    assert cloud.objects_of("iam_role") == []


@pytest.mark.asyncio
async def test_refresh_persists_only_when_something_changed(
    store, backend, registry, cloud, settings
):
    await store.load()
    writes = backend.writes

    await refresh(store, registry, settings)
    assert backend.writes == writes

    await make_vpc(store, cloud)
    del cloud.objects[store.get(addr("vpc.main")).identity]
    writes = backend.writes

    refreshed = await refresh(store, registry, settings)

    assert refreshed == {}
    assert backend.writes == writes + 1
    assert store.get(addr("vpc.main")) is None


@pytest.mark.asyncio
async def test_refresh_retries_transient_read_errors(store, registry, cloud, settings):
    await store.load()
    await make_vpc(store, cloud)
    cloud.fail("read", "vpc", times=2, transient=True)

    refreshed = await refresh(store, registry, settings)

    assert addr("vpc.main") in refreshed


@pytest.mark.asyncio
async def test_refresh_gives_up_on_persistent_read_errors(store, registry, cloud, settings):
    await store.load()
    await make_vpc(store, cloud)
    cloud.fail("read", "vpc", times=None, transient=True)

    with pytest.raises(TransientProviderError):
        await refresh(store, registry, settings)


async def make_vpc(store, cloud):
    """Create a VPC directly in the cloud and record it."""
    observed = await cloud.create("vpc", {"cidr_block": "10.0.0.0/16"}, "token")
    await store.put(
        ResourceState(
            address=addr("vpc.main"),
            identity=observed.identity,
            attributes=observed.attributes,
            outputs=observed.outputs,
        )
    )
