"""
Tests for the state store and its backends.

Covers:
- Incremental persistence and serial bumps
- Scoped locking, stale lock breaking and force-unlock
- Identity-guarded removal and deposed objects
- Local file backend atomic writes and exclusive lock files
"""

import json
from datetime import timedelta

import pytest

from converge.errors import ConfigError, StateLockError
from converge.models.state import (
    STATE_VERSION,
    DeposedObject,
    ResourceState,
    StateDocument,
    StateLock,
    utcnow,
)
from converge.state.backends import LocalFileBackend, MemoryBackend
from converge.state.store import StateStore

from conftest import addr


def _record(address: str, identity: str, **attributes: object) -> ResourceState:
    return ResourceState(
        address=addr(address),
        identity=identity,
        attributes=dict(attributes),
        outputs={"id": identity},
    )


@pytest.mark.asyncio
async def test_load_creates_and_persists_an_empty_document(backend, store):
    document = await store.load()

    assert document.is_empty()
    assert document.version == STATE_VERSION
    assert backend.document is not None
    again = await StateStore(backend).load()
    assert again.lineage == document.lineage


@pytest.mark.asyncio
async def test_put_and_remove_persist_and_bump_serial(backend, store):
    await store.load()

    await store.put(_record("vpc.main", "sim-vpc-1", cidr_block="10.0.0.0/16"))
    assert store.serial == 1
    persisted = StateDocument.model_validate_json(backend.document)
    assert persisted.serial == 1
    assert persisted.resources["vpc.main"].identity == "sim-vpc-1"

    assert await store.remove(addr("vpc.main"))
    assert store.serial == 2
    assert store.get(addr("vpc.main")) is None


@pytest.mark.asyncio
async def test_remove_with_identity_only_matches_same_object(store):
    await store.load()
    await store.put(_record("subnet.a", "sim-subnet-2"))

    assert not await store.remove(addr("subnet.a"), identity="sim-subnet-1")
    assert store.get(addr("subnet.a")) is not None
    assert await store.remove(addr("subnet.a"), identity="sim-subnet-2")


@pytest.mark.asyncio
async def test_get_returns_a_copy(store):
    await store.load()
    await store.put(_record("vpc.main", "sim-vpc-1", tags={"a": "1"}))

    copy = store.get(addr("vpc.main"))
    copy.attributes["tags"]["a"] = "changed"

    assert store.get(addr("vpc.main")).attributes["tags"] == {"a": "1"}


@pytest.mark.asyncio
async def test_deposed_objects_are_added_and_removed(store):
    await store.load()
    await store.put(_record("launch_template.web", "sim-lt-2"))

    await store.add_deposed(addr("launch_template.web"), DeposedObject(identity="sim-lt-1"))
    assert [obj.identity for obj in store.get(addr("launch_template.web")).deposed] == [
        "sim-lt-1"
    ]

    assert await store.remove_deposed(addr("launch_template.web"), "sim-lt-1")
    assert not await store.remove_deposed(addr("launch_template.web"), "sim-lt-1")
    assert store.get(addr("launch_template.web")).deposed == []


@pytest.mark.asyncio
async def test_commit_after_create_deposes_the_previous_object(store):
    await store.load()
    await store.put(_record("launch_template.web", "sim-lt-2"))
    await store.add_deposed(addr("launch_template.web"), DeposedObject(identity="sim-lt-1"))

    merged = await store.commit(
        _record("launch_template.web", "sim-lt-3"), created=True, depose=True
    )

    assert merged.identity == "sim-lt-3"
    assert [obj.identity for obj in merged.deposed] == ["sim-lt-1", "sim-lt-2"]
    assert store.get(addr("launch_template.web")).deposed == merged.deposed


@pytest.mark.asyncio
async def test_commit_after_update_keeps_creation_time(store):
    await store.load()
    original = _record("vpc.main", "sim-vpc-1", cidr_block="10.0.0.0/16")
    original.created_at = utcnow() - timedelta(days=3)
    await store.put(original)

    merged = await store.commit(
        _record("vpc.main", "sim-vpc-1", cidr_block="10.0.0.0/16", tags={"a": "1"}),
        created=False,
    )

    assert merged.created_at == original.created_at
    assert merged.deposed == []
    assert merged.attributes["tags"] == {"a": "1"}


@pytest.mark.asyncio
async def test_record_outlives_its_object_while_deposed_objects_remain(store):
    await store.load()
    await store.put(_record("launch_template.web", "sim-lt-2"))
    await store.add_deposed(addr("launch_template.web"), DeposedObject(identity="sim-lt-1"))

    assert await store.remove(addr("launch_template.web"), identity="sim-lt-2")
    record = store.get(addr("launch_template.web"))
    assert record.identity is None
    assert [obj.identity for obj in record.deposed] == ["sim-lt-1"]

    assert await store.remove_deposed(addr("launch_template.web"), "sim-lt-1")
    assert store.get(addr("launch_template.web")) is None


@pytest.mark.asyncio
async def test_lock_is_released_on_every_exit_path(backend, store):
    async with store.locked("apply"):
        assert backend.lock is not None
    assert backend.lock is None

    with pytest.raises(RuntimeError):
        async with store.locked("apply"):
            raise RuntimeError("boom")
    assert backend.lock is None


@pytest.mark.asyncio
async def test_live_lock_held_by_another_run_is_refused(backend):
    first = StateStore(backend)
    second = StateStore(backend)

    async with first.locked("apply"):
        with pytest.raises(StateLockError) as excinfo:
            async with second.locked("plan"):
                pass

    assert excinfo.value.lock is not None
    assert excinfo.value.lock.operation == "apply"
    assert "force-unlock" in str(excinfo.value)


@pytest.mark.asyncio
async def test_stale_lock_is_broken(backend, store):
    stale = StateLock(operation="apply", expires_at=utcnow() - timedelta(seconds=1))
    backend.lock = stale.model_dump_json()

    async with store.locked("apply") as locked:
        assert locked.held_lock is not None
        assert locked.held_lock.lock_id != stale.lock_id

    assert backend.lock is None


@pytest.mark.asyncio
async def test_unreadable_lock_is_treated_as_stale(backend, store):
    backend.lock = "not json"

    async with store.locked("apply"):
        assert json.loads(backend.lock)["operation"] == "apply"


@pytest.mark.asyncio
async def test_force_unlock_requires_matching_id(backend, store):
    held = StateLock.create("apply", ttl_seconds=900)
    backend.lock = held.model_dump_json()

    with pytest.raises(StateLockError):
        await store.force_unlock("some-other-id")
    assert backend.lock is not None

    await store.force_unlock(held.lock_id)
    assert backend.lock is None

    with pytest.raises(StateLockError, match="not locked"):
        await store.force_unlock(held.lock_id)


@pytest.mark.asyncio
async def test_newer_state_version_is_rejected():
    document = StateDocument().model_dump(mode="json")
    document["version"] = STATE_VERSION + 1
    store = StateStore(MemoryBackend(json.dumps(document)))

    with pytest.raises(ConfigError, match="newer than supported"):
        await store.load()


@pytest.mark.asyncio
async def test_local_file_backend_round_trip(tmp_path):
    path = tmp_path / "nested" / "state.json"
    store = StateStore(LocalFileBackend(str(path)))

    async with store.locked("apply"):
        await store.put(_record("vpc.main", "sim-vpc-1", cidr_block="10.0.0.0/16"))
        assert (tmp_path / "nested" / "state.json.lock").exists()

    assert not (tmp_path / "nested" / "state.json.lock").exists()
    reloaded = StateStore(LocalFileBackend(str(path)))
    await reloaded.load()
    assert reloaded.get(addr("vpc.main")).attributes == {"cidr_block": "10.0.0.0/16"}
    assert [p.name for p in (tmp_path / "nested").iterdir()] == ["state.json"]


@pytest.mark.asyncio
async def test_local_file_lock_is_exclusive(tmp_path):
    backend = LocalFileBackend(str(tmp_path / "state.json"))

    assert await backend.try_create_lock("first")
    assert not await backend.try_create_lock("second")
    assert await backend.read_lock() == "first"
    await backend.delete_lock()
    await backend.delete_lock()
    assert await backend.read_lock() is None
