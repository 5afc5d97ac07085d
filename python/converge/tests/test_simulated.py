"""
Tests for the simulated cloud provider.

Covers:
- In-memory operation when no file is given
- Objects and the identity counter surviving a reload from file
"""

import pytest

from converge.errors import ResourceNotFound
from converge.providers.simulated import SimulatedCloud


@pytest.mark.asyncio
async def test_in_memory_cloud_needs_no_file():
    cloud = SimulatedCloud()

    created = await cloud.create("vpc", {"cidr_block": "10.0.0.0/16"}, "token-1")

    assert (await cloud.read("vpc", created.identity)).attributes == {
        "cidr_block": "10.0.0.0/16"
    }
    assert await cloud.find_by_token("vpc", "token-1") is not None


@pytest.mark.asyncio
async def test_file_backed_cloud_reloads_objects(tmp_path):
    path = str(tmp_path / "cloud.json")
    first = SimulatedCloud(path=path)
    kept = await first.create("vpc", {"cidr_block": "10.0.0.0/16"}, "token-1")
    gone = await first.create("vpc", {"cidr_block": "10.1.0.0/16"}, "token-2")
    await first.delete("vpc", gone.identity)

    second = SimulatedCloud(path=path)

    assert (await second.read("vpc", kept.identity)).outputs["id"] == kept.identity
    with pytest.raises(ResourceNotFound):
        await second.read("vpc", gone.identity)
    newer = await second.create("vpc", {"cidr_block": "10.2.0.0/16"}, "token-3")
    assert newer.identity not in (kept.identity, gone.identity)


@pytest.mark.asyncio
async def test_missing_file_starts_empty(tmp_path):
    cloud = SimulatedCloud(path=str(tmp_path / "absent.json"))

    assert await cloud.find_by_token("vpc", "token-1") is None
    assert cloud.objects == {}
