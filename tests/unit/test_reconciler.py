"""
Unit tests for the reconciliation engine.

These run the real engine against the in-memory Snowflake mock and the
simulated store (see conftest.py). FFmpeg is deliberately unavailable,
so merged bytes are the plain concatenation of the chunk bytes.
"""

import asyncio

import pytest

from src.core.audio import (
    USE_ALL_CHUNKS,
    Chunk,
    MergeError,
    ReconciliationEngine,
    StorageError,
)
from src.core.audio.models import chunk_key, merged_key


async def upload(store, chunks, session_id: int, index: int, data: bytes, terminal: bool = False) -> Chunk:
    """Store a chunk the way the ingestion service would."""
    locator = await store.put(data, chunk_key(session_id, index), "audio/webm")
    chunk = Chunk.fragment(session_id, index, locator, is_terminal=terminal)
    chunks.save(chunk)
    return chunk


# ---------------------------------------------------------------------------
# Happy Path
# ---------------------------------------------------------------------------

class TestReconcile:

    @pytest.mark.asyncio
    async def test_merges_publishes_and_cleans_up(
        self, reconciler, store, chunk_repository, session_id
    ):
        await upload(store, chunk_repository, session_id, 0, b"AAA")
        await upload(store, chunk_repository, session_id, 1, b"BBB", terminal=True)

        locator = await reconciler.reconcile(session_id, expected_chunk_count=2)

        assert locator == f"s3://session-audio/{merged_key(session_id)}"
        assert store._get_object(merged_key(session_id)) == b"AAABBB"

        sentinel = chunk_repository.find_sentinel(session_id)
        assert sentinel.remote_locator == locator
        assert sentinel.is_terminal
        assert chunk_repository.find_ordered_by_session(session_id) == []
        assert store._keys() == [merged_key(session_id)]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("arrival", [(0, 1, 2), (2, 0, 1), (1, 2, 0), (2, 1, 0)])
    async def test_order_independent(
        self, reconciler, store, chunk_repository, session_id, arrival
    ):
        payloads = {0: b"AAA", 1: b"BBB", 2: b"CCC"}
        for index in arrival:
            await upload(store, chunk_repository, session_id, index, payloads[index])

        await reconciler.reconcile(session_id, expected_chunk_count=3)

        assert store._get_object(merged_key(session_id)) == b"AAABBBCCC"

    @pytest.mark.asyncio
    async def test_use_all_chunks(self, reconciler, store, chunk_repository, session_id):
        await upload(store, chunk_repository, session_id, 0, b"AAA")
        await upload(store, chunk_repository, session_id, 1, b"BBB")

        await reconciler.reconcile(session_id, USE_ALL_CHUNKS)

        assert store._get_object(merged_key(session_id)) == b"AAABBB"

    @pytest.mark.asyncio
    async def test_staging_directory_removed(
        self, reconciler, store, chunk_repository, session_id, tmp_path
    ):
        await upload(store, chunk_repository, session_id, 0, b"AAA")

        await reconciler.reconcile(session_id, expected_chunk_count=1)

        assert list(tmp_path.iterdir()) == []


# ---------------------------------------------------------------------------
# Idempotency and Concurrency
# ---------------------------------------------------------------------------

class TestIdempotency:

    @pytest.mark.asyncio
    async def test_second_call_returns_existing_locator_without_writes(
        self, reconciler, store, chunk_repository, session_id
    ):
        await upload(store, chunk_repository, session_id, 0, b"AAA")
        first = await reconciler.reconcile(session_id, expected_chunk_count=1)
        puts, deletes = list(store.puts), list(store.deletes)

        second = await reconciler.reconcile(session_id, expected_chunk_count=1)

        assert second == first
        assert store.puts == puts
        assert store.deletes == deletes

    @pytest.mark.asyncio
    async def test_duplicate_terminal_produces_one_artifact(
        self, reconciler, store, chunk_repository, session_id, mock_connection
    ):
        await upload(store, chunk_repository, session_id, 0, b"AAA")
        await upload(store, chunk_repository, session_id, 1, b"BBB", terminal=True)

        first, second = await asyncio.gather(
            reconciler.reconcile(session_id, expected_chunk_count=2),
            reconciler.reconcile(session_id, expected_chunk_count=2),
        )

        assert first == second
        assert store.puts.count(merged_key(session_id)) == 1
        assert store._get_object(merged_key(session_id)) == b"AAABBB"
        rows = mock_connection._chunk_rows(session_id)
        assert [row[1] for row in rows] == [-1]

    @pytest.mark.asyncio
    async def test_locks_released_after_reconcile(
        self, reconciler, store, chunk_repository, session_id, locks
    ):
        await upload(store, chunk_repository, session_id, 0, b"AAA")

        await reconciler.reconcile(session_id, expected_chunk_count=1)

        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_stale_sentinel_is_remerged(
        self, reconciler, store, chunk_repository, session_id
    ):
        """A sentinel whose object vanished does not count as merged."""
        chunk_repository.save(Chunk.sentinel(session_id, "s3://session-audio/audio/gone.webm"))
        await upload(store, chunk_repository, session_id, 0, b"AAA")

        locator = await reconciler.reconcile(session_id, expected_chunk_count=1)

        assert locator == f"s3://session-audio/{merged_key(session_id)}"
        assert chunk_repository.find_sentinel(session_id).remote_locator == locator

    @pytest.mark.asyncio
    async def test_fragment_stored_after_merge_is_discarded(
        self, reconciler, store, chunk_repository, session_id, mock_connection
    ):
        """A late duplicate of the terminal chunk must not linger as pending."""
        await upload(store, chunk_repository, session_id, 0, b"AAA")
        await upload(store, chunk_repository, session_id, 1, b"BBB", terminal=True)
        first = await reconciler.reconcile(session_id, expected_chunk_count=2)
        await upload(store, chunk_repository, session_id, 1, b"BBB", terminal=True)

        second = await reconciler.reconcile(session_id, expected_chunk_count=2)

        assert second == first
        assert [row[1] for row in mock_connection._chunk_rows(session_id)] == [-1]
        assert store._keys() == [merged_key(session_id)]
        assert store._get_object(merged_key(session_id)) == b"AAABBB"


# ---------------------------------------------------------------------------
# Partial Failures
# ---------------------------------------------------------------------------

class TestPartialFailure:

    @pytest.mark.asyncio
    async def test_unavailable_chunk_is_skipped(
        self, reconciler, store, chunk_repository, session_id
    ):
        await upload(store, chunk_repository, session_id, 0, b"AAA")
        await upload(store, chunk_repository, session_id, 1, b"BBB")
        await upload(store, chunk_repository, session_id, 2, b"CCC", terminal=True)
        store._objects.pop(chunk_key(session_id, 1))

        await reconciler.reconcile(session_id, expected_chunk_count=3)

        assert store._get_object(merged_key(session_id)) == b"AAACCC"
        # only merged fragments are cleaned up
        remaining = [c.chunk_index for c in chunk_repository.find_ordered_by_session(session_id)]
        assert remaining == [1]

    @pytest.mark.asyncio
    async def test_nothing_staged_raises(self, reconciler, session_id, chunk_repository):
        with pytest.raises(MergeError, match="No chunks could be downloaded"):
            await reconciler.reconcile(session_id, expected_chunk_count=2)

        assert chunk_repository.find_sentinel(session_id) is None

    @pytest.mark.asyncio
    async def test_no_records_and_no_expectation_raises(self, reconciler, session_id):
        with pytest.raises(MergeError):
            await reconciler.reconcile(session_id, USE_ALL_CHUNKS)

    @pytest.mark.asyncio
    async def test_rebuilds_keys_when_records_missing(
        self, reconciler, store, chunk_repository, session_id
    ):
        """Objects exist but the metadata writes never landed."""
        await store.put(b"AAA", chunk_key(session_id, 0), "audio/webm")
        await store.put(b"BBB", chunk_key(session_id, 1), "audio/webm")

        await reconciler.reconcile(session_id, expected_chunk_count=2)

        assert store._get_object(merged_key(session_id)) == b"AAABBB"
        assert chunk_repository.find_sentinel(session_id) is not None
        assert store._keys() == [merged_key(session_id)]

    @pytest.mark.asyncio
    async def test_rebuild_keeps_records_that_exist(
        self, reconciler, store, chunk_repository, session_id
    ):
        await upload(store, chunk_repository, session_id, 0, b"AAA")
        await store.put(b"BBB", chunk_key(session_id, 1), "audio/webm")

        await reconciler.reconcile(session_id, expected_chunk_count=2)

        assert store._get_object(merged_key(session_id)) == b"AAABBB"
        assert chunk_repository.find_ordered_by_session(session_id) == []

    @pytest.mark.asyncio
    async def test_record_landing_after_discovery_is_cleaned_up(
        self, reconciler, store, chunk_repository, session_id, monkeypatch
    ):
        """The metadata write for chunk 1 races the terminal signal and lands mid-merge."""
        await upload(store, chunk_repository, session_id, 0, b"AAA")
        locator = await store.put(b"BBB", chunk_key(session_id, 1), "audio/webm")
        original_get = store.get

        async def get_then_record(source_locator, destination):
            if store.extract_key(source_locator) == chunk_key(session_id, 1):
                chunk_repository.save(Chunk.fragment(session_id, 1, locator, is_terminal=True))
            return await original_get(source_locator, destination)

        monkeypatch.setattr(store, "get", get_then_record)

        await reconciler.reconcile(session_id, expected_chunk_count=2)

        assert store._get_object(merged_key(session_id)) == b"AAABBB"
        assert chunk_repository.find_ordered_by_session(session_id) == []
        assert store._keys() == [merged_key(session_id)]

    @pytest.mark.asyncio
    async def test_missing_objects_are_not_downloaded(
        self, reconciler, store, chunk_repository, session_id, monkeypatch
    ):
        await upload(store, chunk_repository, session_id, 0, b"AAA")
        await upload(store, chunk_repository, session_id, 1, b"BBB", terminal=True)
        store._objects.pop(chunk_key(session_id, 1))
        fetched = []
        original_get = store.get

        async def tracking_get(source_locator, destination):
            fetched.append(store.extract_key(source_locator))
            return await original_get(source_locator, destination)

        monkeypatch.setattr(store, "get", tracking_get)

        await reconciler.reconcile(session_id, expected_chunk_count=2)

        assert fetched == [chunk_key(session_id, 0)]
        assert store._get_object(merged_key(session_id)) == b"AAA"


# ---------------------------------------------------------------------------
# Cleanup Gating
# ---------------------------------------------------------------------------

class TestCleanupGating:
    """Fragments are only deleted after a sentinel was published."""

    @pytest.mark.asyncio
    async def test_merge_failure_leaves_fragments(
        self, store, chunk_repository, locks, failing_merger, session_id
    ):
        engine = ReconciliationEngine(
            store=store,
            chunks=chunk_repository,
            merger=failing_merger,
            locks=locks,
        )
        await upload(store, chunk_repository, session_id, 0, b"AAA")

        with pytest.raises(MergeError, match="cannot merge"):
            await engine.reconcile(session_id, expected_chunk_count=1)

        assert store.deletes == []
        assert chunk_repository.find_sentinel(session_id) is None
        assert len(chunk_repository.find_ordered_by_session(session_id)) == 1

    @pytest.mark.asyncio
    async def test_publish_failure_leaves_fragments(
        self, reconciler, store, chunk_repository, session_id
    ):
        await upload(store, chunk_repository, session_id, 0, b"AAA")
        store.failing_puts.add(merged_key(session_id))

        with pytest.raises(StorageError):
            await reconciler.reconcile(session_id, expected_chunk_count=1)

        assert store.deletes == []
        assert chunk_repository.find_sentinel(session_id) is None
        assert store._get_object(chunk_key(session_id, 0)) == b"AAA"

    @pytest.mark.asyncio
    async def test_failed_reconcile_can_be_retried(
        self, reconciler, store, chunk_repository, session_id
    ):
        await upload(store, chunk_repository, session_id, 0, b"AAA")
        store.failing_puts.add(merged_key(session_id))
        with pytest.raises(StorageError):
            await reconciler.reconcile(session_id, expected_chunk_count=1)

        store.failing_puts.clear()
        await reconciler.reconcile(session_id, expected_chunk_count=1)

        assert store._get_object(merged_key(session_id)) == b"AAA"
