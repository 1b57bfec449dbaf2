"""
Tests for the batch controller: scheduling bound, completion, stop semantics,
reset and the run status payload.
"""

import asyncio
from collections import defaultdict
from unittest.mock import AsyncMock, patch

import pytest

import batch_processor
from batch_processor import RUN_COMPLETE, RUN_RESET, RUN_STOPPED, BatchController
from errors import ExtractionError, ValidationError
from models import IN_FLIGHT_STATUSES, STATUS_RANK, ProductRecord

from conftest import SnapshotRecorder, fake_extract, fake_web, make_config, make_records, wait_until


def _assert_store_invariants(snapshots, concurrency):
    """Progress never decreases, status never goes backwards, terminal is final."""
    history = defaultdict(list)
    for items in snapshots:
        assert sum(1 for i in items if i.status in IN_FLIGHT_STATUSES) <= concurrency
        for item in items:
            history[item.id].append(item)

    for states in history.values():
        for before, after in zip(states, states[1:]):
            assert after.progress >= before.progress
            assert STATUS_RANK[after.status] >= STATUS_RANK[before.status]
            if before.is_terminal:
                assert after.status == before.status


def _blocking_web(started, blocked_from):
    """Web fake that records each call and hangs for article numbers >= blocked_from."""
    async def web(url, article_number=None):
        started.append(article_number)
        if int(article_number.split("-")[1]) >= blocked_from:
            await asyncio.Event().wait()
        await asyncio.sleep(0)
        return f"Web page for {article_number}"
    return web


class TestRunToCompletion:

    @pytest.mark.asyncio
    async def test_all_items_complete(self):
        recorder = SnapshotRecorder()
        summaries = []
        controller = BatchController()

        with patch("item_pipeline.fetch_web_content", new=AsyncMock(side_effect=fake_web)), \
             patch("item_pipeline.extract_product_data", new=AsyncMock(side_effect=fake_extract)):
            handle = controller.start(
                make_records(10),
                make_config(concurrency=3),
                on_update=recorder,
                on_complete=summaries.append,
            )
            summary = await handle.wait()

        assert (summary.completed, summary.failed, summary.stopped, summary.total) == (10, 0, 0, 10)
        assert summaries == [summary]
        assert handle.run.status == RUN_COMPLETE
        assert all(i.status == "completed" and i.progress == 100 for i in handle.run.items)
        assert [r.article_number for r in handle.run.completed_results()] == [
            f"ART-{i}" for i in range(1, 11)
        ]
        _assert_store_invariants(recorder.snapshots, concurrency=3)

    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_siblings(self):
        async def flaky(record, config, **kwargs):
            if record.article_number == "ART-2":
                raise ExtractionError("AI extraction failed with HTTP 500")
            return await fake_extract(record, config, **kwargs)

        controller = BatchController()
        with patch("item_pipeline.fetch_web_content", new=AsyncMock(side_effect=fake_web)), \
             patch("item_pipeline.extract_product_data", new=AsyncMock(side_effect=flaky)):
            handle = controller.start(make_records(4), make_config(concurrency=2))
            summary = await handle.wait()

        assert (summary.completed, summary.failed) == (3, 1)
        failed = handle.run.store.get("item-2")
        assert failed.error == "AI extraction failed with HTTP 500"
        assert len(handle.run.completed_results()) == 3

    @pytest.mark.asyncio
    async def test_pool_scheduling_respects_bound(self):
        recorder = SnapshotRecorder()
        controller = BatchController()

        with patch("item_pipeline.fetch_web_content", new=AsyncMock(side_effect=fake_web)), \
             patch("item_pipeline.extract_product_data", new=AsyncMock(side_effect=fake_extract)):
            handle = controller.start(
                make_records(7),
                make_config(concurrency=3, scheduling="pool"),
                on_update=recorder,
            )
            summary = await handle.wait()

        assert summary.completed == 7
        _assert_store_invariants(recorder.snapshots, concurrency=3)

    @pytest.mark.asyncio
    async def test_empty_input_finishes_immediately(self):
        summaries = []
        controller = BatchController()

        handle = controller.start([], make_config(), on_complete=summaries.append)

        assert len(summaries) == 1
        assert summaries[0].total == 0
        assert handle.run.status == RUN_COMPLETE
        assert await handle.wait() is summaries[0]


class TestValidation:

    @pytest.mark.parametrize("concurrency", [0, -1])
    def test_bad_concurrency(self, concurrency):
        with pytest.raises(ValidationError):
            BatchController().start(make_records(2), make_config(concurrency=concurrency))

    def test_empty_product_name(self):
        records = [ProductRecord(id="1", product_name="  ", url="https://x.test")]
        with pytest.raises(ValidationError, match="empty product name"):
            BatchController().start(records, make_config())

    def test_duplicate_ids(self):
        records = [ProductRecord(id="1", product_name="A"), ProductRecord(id="1", product_name="B")]
        with pytest.raises(ValidationError, match="duplicate"):
            BatchController().start(records, make_config())

    def test_unknown_scheduling(self):
        with pytest.raises(ValidationError):
            BatchController().start(make_records(1), make_config(scheduling="round-robin"))

    def test_rejected_run_is_not_registered(self):
        controller = BatchController()
        with pytest.raises(ValidationError):
            controller.start(make_records(1), make_config(concurrency=0))
        assert controller._runs == {}


class TestStop:

    @pytest.mark.asyncio
    async def test_stop_mid_run(self):
        """20 records, concurrency 5: stop while the second chunk is in flight."""
        started = []
        recorder = SnapshotRecorder()
        summaries = []
        extract = AsyncMock(side_effect=fake_extract)
        controller = BatchController()

        with patch("item_pipeline.fetch_web_content", new=AsyncMock(side_effect=_blocking_web(started, 6))), \
             patch("item_pipeline.extract_product_data", new=extract):
            handle = controller.start(
                make_records(20),
                make_config(concurrency=5),
                on_update=recorder,
                on_complete=summaries.append,
            )
            await wait_until(lambda: len(started) == 10)
            handle.stop()
            summary = await handle.wait()

        assert (summary.completed, summary.failed, summary.stopped, summary.total) == (5, 0, 15, 20)
        assert summaries == [summary]
        assert handle.run.status == RUN_STOPPED
        assert len(started) == 10
        assert extract.await_count == 5

        items = {i.id: i for i in handle.run.items}
        for n in range(1, 6):
            assert items[f"item-{n}"].status == "completed"
        for n in range(6, 11):
            assert (items[f"item-{n}"].status, items[f"item-{n}"].progress) == ("stopped", 50)
        for n in range(11, 21):
            assert (items[f"item-{n}"].status, items[f"item-{n}"].progress) == ("stopped", 0)
        assert all(i.error is None for i in handle.run.items)

        # Completed results survive the stop.
        assert len(handle.run.completed_results()) == 5
        _assert_store_invariants(recorder.snapshots, concurrency=5)

    @pytest.mark.asyncio
    async def test_stop_before_first_chunk(self):
        web = AsyncMock(side_effect=fake_web)
        controller = BatchController()

        with patch("item_pipeline.fetch_web_content", new=web):
            handle = controller.start(make_records(6), make_config(concurrency=2))
            handle.stop()
            summary = await handle.wait()

        assert (summary.completed, summary.stopped) == (0, 6)
        web.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_pool_run(self):
        started = []
        controller = BatchController()

        with patch("item_pipeline.fetch_web_content", new=AsyncMock(side_effect=_blocking_web(started, 1))), \
             patch("item_pipeline.extract_product_data", new=AsyncMock(side_effect=fake_extract)):
            handle = controller.start(make_records(8), make_config(concurrency=3, scheduling="pool"))
            await wait_until(lambda: len(started) == 3)
            handle.stop()
            summary = await handle.wait()

        assert (summary.completed, summary.stopped) == (0, 8)
        assert len(started) == 3

    @pytest.mark.asyncio
    async def test_stop_is_idempotent_and_noop_after_completion(self):
        summaries = []
        controller = BatchController()

        with patch("item_pipeline.fetch_web_content", new=AsyncMock(side_effect=fake_web)), \
             patch("item_pipeline.extract_product_data", new=AsyncMock(side_effect=fake_extract)):
            handle = controller.start(make_records(3), make_config(), on_complete=summaries.append)
            await handle.wait()

        handle.stop()
        handle.stop()

        assert handle.run.status == RUN_COMPLETE
        assert handle.run.cancelled is False
        assert len(summaries) == 1
        assert all(i.status == "completed" for i in handle.run.items)

    @pytest.mark.asyncio
    async def test_reset_on_stop_wipes_the_run(self):
        started = []
        controller = BatchController()

        with patch("item_pipeline.fetch_web_content", new=AsyncMock(side_effect=_blocking_web(started, 3))), \
             patch("item_pipeline.extract_product_data", new=AsyncMock(side_effect=fake_extract)), \
             patch.object(batch_processor, "RESET_DELAY_SECONDS", 0):
            handle = controller.start(make_records(6), make_config(concurrency=2, reset_on_stop=True))
            await wait_until(lambda: len(started) == 4)
            handle.stop()
            summary = await handle.wait()
            await wait_until(lambda: handle.run.status == RUN_RESET)

        assert summary.completed == 2
        assert handle.run.items == []
        assert handle.run.completed_results() == []
        assert handle.run.summary is summary


class TestRegistry:

    @pytest.mark.asyncio
    async def test_status_payload(self):
        controller = BatchController()
        records = [
            ProductRecord(id="a", product_name=" Drill X ", article_number="", url="https://x.test/a"),
            ProductRecord(id="b", product_name="Saw Y", article_number="B-2", url=" "),
        ]

        with patch("item_pipeline.fetch_web_content", new=AsyncMock(side_effect=fake_web)), \
             patch("item_pipeline.extract_product_data", new=AsyncMock(side_effect=fake_extract)):
            handle = controller.start(records, make_config(concurrency=2))
            await handle.wait()

        payload = controller.status_payload(handle.run_id)

        assert payload["status"] == RUN_COMPLETE
        assert payload["summary"] == {"completed": 1, "failed": 1, "stopped": 0, "total": 2}
        first, second = payload["items"]
        assert (first["articleNumber"], first["productName"]) == ("auto_1", "Drill X")
        assert first["result"]["properties"]["Color"]["value"] == "red"
        assert second["url"] is None
        assert second["error"] == "no content extracted"

    @pytest.mark.asyncio
    async def test_reset_forgets_the_run(self):
        started = []
        summaries = []
        controller = BatchController()

        with patch("item_pipeline.fetch_web_content", new=AsyncMock(side_effect=_blocking_web(started, 1))):
            handle = controller.start(make_records(2), make_config(), on_complete=summaries.append)
            await wait_until(lambda: len(started) == 2)
            assert controller.reset(handle.run_id) is True
            summary = await handle.wait()

        assert controller.get(handle.run_id) is None
        assert controller.status_payload(handle.run_id) is None
        assert handle.run.status == RUN_RESET
        assert handle.run.items == []
        assert controller.reset(handle.run_id) is False

        # The summary counts the items as they were when the run was reset.
        assert summaries == [summary]
        assert (summary.completed, summary.stopped, summary.total) == (0, 2, 2)

    @pytest.mark.asyncio
    async def test_wait_on_a_run_that_never_finished_raises(self):
        run = batch_processor.BatchRun(make_records(1), make_config())
        handle = batch_processor.RunHandle(run, BatchController())

        with pytest.raises(RuntimeError, match="without a summary"):
            await handle.wait()

    @pytest.mark.asyncio
    async def test_stop_all(self):
        started = []
        controller = BatchController()

        with patch("item_pipeline.fetch_web_content", new=AsyncMock(side_effect=_blocking_web(started, 1))):
            first = controller.start(make_records(2), make_config())
            second = controller.start(make_records(2), make_config())
            await wait_until(lambda: len(started) == 4)

            assert controller.stop_all() == 2
            await asyncio.gather(first.wait(), second.wait())

        assert first.run.status == RUN_STOPPED
        assert second.run.status == RUN_STOPPED
        assert controller.stop_all() == 0
