"""
Tests for CollectionStore: copy-on-write updates and overlapping loads.
"""

import asyncio

import httpx
import pytest

from campus_admin.core.errors import ErrorKind, NetworkError
from campus_admin.services.collection_store import CollectionStore
from campus_admin.services.entity_kinds import ACTIVITY, STUDENT


def test_patch_never_mutates_previous_snapshot():
    original = {"id": 1, "isActive": True}
    other = {"id": 2, "isActive": True}
    store = CollectionStore(STUDENT, [original, other])
    before = store.entities

    assert store.patch(1, {"isActive": False}) is True

    assert original == {"id": 1, "isActive": True}
    assert before[0] is original
    assert store.entities is not before
    assert store.entities[0] == {"id": 1, "isActive": False}
    assert store.entities[1] is other


def test_patch_unknown_record_is_a_no_op():
    store = CollectionStore(STUDENT, [{"id": 1}])
    before = store.entities

    assert store.patch(99, {"isActive": False}) is False
    assert store.entities is before


def test_find_matches_string_and_int_ids():
    store = CollectionStore(ACTIVITY, [{"Activity_ID": 7, "Activity_Title": "Fair"}, None])

    assert store.find("7")["Activity_Title"] == "Fair"
    assert store.find(8) is None


def test_remove_returns_new_tuple():
    store = CollectionStore(STUDENT, [{"id": 1}, {"id": 2}])
    before = store.entities

    assert store.remove(1) is True
    assert [e["id"] for e in store.entities] == [2]
    assert len(before) == 2
    assert store.remove(1) is False


def test_replace_with_non_list_empties_collection():
    store = CollectionStore(STUDENT, [{"id": 1}])

    store.replace({"data": []})

    assert store.entities == ()


@pytest.mark.asyncio
async def test_load_installs_result_and_clears_loading():
    store = CollectionStore(STUDENT)

    async def _fetch():
        assert store.loading is True
        return [{"id": 1}]

    entities = await store.load(_fetch)

    assert entities == ({"id": 1},)
    assert store.loading is False
    assert store.error is None


@pytest.mark.asyncio
async def test_load_failure_is_classified_and_keeps_previous_entities():
    store = CollectionStore(STUDENT, [{"id": 1}])

    async def _fetch():
        raise httpx.ConnectTimeout("slow")

    with pytest.raises(NetworkError):
        await store.load(_fetch)

    assert store.loading is False
    assert store.error.kind == ErrorKind.NETWORK
    assert store.entities == ({"id": 1},)


@pytest.mark.asyncio
async def test_overlapping_loads_last_response_wins():
    store = CollectionStore(STUDENT)
    first_gate = asyncio.Event()

    async def _slow():
        await first_gate.wait()
        return [{"id": "slow"}]

    async def _fast():
        return [{"id": "fast"}]

    slow_task = asyncio.create_task(store.load(_slow))
    await asyncio.sleep(0)
    await store.load(_fast)
    assert store.entities == ({"id": "fast"},)
    assert store.loading is False

    first_gate.set()
    await slow_task

    assert store.entities == ({"id": "slow"},)
