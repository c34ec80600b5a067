"""
RiskAnalysis - Document Store Unit Tests
=========================================
Test writes, batches, queries and subscriptions.
"""

import asyncio

import pytest

from riskanalysis.exceptions import StoreError
from riskanalysis.services.store import (
    SERVER_TIMESTAMP,
    Query,
    new_document_id,
    split_path,
)


class TestPaths:
    """Test path helpers."""

    def test_split_path(self):
        assert split_path("scans/abc") == ("scans", "abc")

    @pytest.mark.parametrize("path", ["scans", "scans/", "a/b/c", "/abc"])
    def test_invalid_paths(self, path):
        with pytest.raises(ValueError):
            split_path(path)

    def test_generated_ids_are_unique(self):
        ids = {new_document_id() for _ in range(100)}
        assert len(ids) == 100
        assert all(len(i) == 20 and i.isalnum() for i in ids)


class TestWrites:
    """Test set, merge and add."""

    @pytest.mark.asyncio
    async def test_missing_document(self, store):
        snapshot = await store.get("security_metrics/current")
        assert snapshot.exists is False
        assert snapshot.get("secure_score", 0) == 0

    @pytest.mark.asyncio
    async def test_merge_preserves_unmentioned_fields(self, store):
        await store.set("scans/s1", {"status": "in_progress", "sdk_version": 28})
        await store.set("scans/s1", {"sdk_version": 29}, merge=True)

        data = (await store.get("scans/s1")).data
        assert data == {"status": "in_progress", "sdk_version": 29}

    @pytest.mark.asyncio
    async def test_set_without_merge_replaces(self, store):
        await store.set("scans/s1", {"status": "in_progress", "sdk_version": 28})
        await store.set("scans/s1", {"sdk_version": 29})

        assert (await store.get("scans/s1")).data == {"sdk_version": 29}

    @pytest.mark.asyncio
    async def test_add_generates_id(self, store):
        doc_id = await store.add("activity", {"title": "Security Scan in Progress"})

        snapshot = await store.get(f"activity/{doc_id}")
        assert snapshot.exists
        assert snapshot.path == f"activity/{doc_id}"

    @pytest.mark.asyncio
    async def test_server_timestamps_resolve_in_nested_fields(self, store):
        await store.set("scans/s1", {"timestamp": SERVER_TIMESTAMP, "details": {"timestamp": SERVER_TIMESTAMP}})

        data = (await store.get("scans/s1")).data
        assert isinstance(data["timestamp"], str)
        assert data["details"]["timestamp"] == data["timestamp"]


class TestBatches:
    """Test atomic batches."""

    @pytest.mark.asyncio
    async def test_batch_commits_all_writes(self, store):
        batch = store.batch()
        batch.set("threats/threat1", {"title": "Malware Protection"})
        batch.add("recommendations", {"title": "Update System"})
        await batch.commit()

        assert len(batch) == 2
        assert (await store.get("threats/threat1")).exists
        assert len(await store.query("recommendations")) == 1

    @pytest.mark.asyncio
    async def test_failing_write_persists_nothing(self, make_recording_store):
        failing = make_recording_store("recommendations")

        batch = failing.batch()
        batch.set("threats/threat1", {"title": "Malware Protection"})
        batch.add("recommendations", {"title": "Update System"})

        with pytest.raises(StoreError):
            await batch.commit()

        assert not (await failing.get("threats/threat1")).exists
        assert await failing.query("recommendations") == []

    @pytest.mark.asyncio
    async def test_batch_commits_once(self, store):
        batch = store.batch().set("threats/threat1", {"title": "x"})
        await batch.commit()

        with pytest.raises(StoreError, match="already committed"):
            await batch.commit()


class TestQueries:
    """Test ordering and limits."""

    @pytest.mark.asyncio
    async def test_order_desc_and_limit(self, store):
        for i in range(5):
            await store.add("activity", {"title": f"entry {i}", "time": f"2024-01-0{i + 1}T00:00:00+00:00"})
        await store.add("activity", {"title": "no time"})

        docs = await store.query(Query("activity").ordered("time", descending=True).limited(3))

        assert [d.get("title") for d in docs] == ["entry 4", "entry 3", "entry 2"]

    @pytest.mark.asyncio
    async def test_unordered_query_returns_insertion_order(self, store):
        await store.set("threats/b", {"title": "B"})
        await store.set("threats/a", {"title": "A"})

        docs = await store.query("threats")
        assert [d.id for d in docs] == ["b", "a"]


class TestSubscriptions:
    """Test push notifications."""

    @pytest.mark.asyncio
    async def test_document_subscription_sees_current_then_changes(self, store):
        subscription = store.subscribe("security_metrics/current")

        first = await asyncio.wait_for(subscription.__anext__(), timeout=1)
        assert first.exists is False

        await store.set("security_metrics/current", {"secure_score": 75})
        second = await asyncio.wait_for(subscription.__anext__(), timeout=1)
        assert second.get("secure_score") == 75

        subscription.close()
        with pytest.raises(StopAsyncIteration):
            await subscription.__anext__()

    @pytest.mark.asyncio
    async def test_query_subscription_ignores_other_collections(self, store):
        async with store.subscribe("threats") as subscription:
            assert await asyncio.wait_for(subscription.__anext__(), timeout=1) == []

            await store.add("activity", {"title": "unrelated"})
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(asyncio.shield(subscription._changed.wait()), timeout=0.05)

            await store.set("threats/threat1", {"title": "Malware Protection"})
            docs = await asyncio.wait_for(subscription.__anext__(), timeout=1)
            assert [d.id for d in docs] == ["threat1"]

        assert subscription.closed
