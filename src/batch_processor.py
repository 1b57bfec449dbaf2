"""
batch_processor.py

Async orchestration layer for product batch extraction.

Scheduling (default, "chunked"):
    Records are split into consecutive chunks of config.concurrency. One
    worker task is spawned per record of a chunk and the whole chunk is
    awaited (asyncio.gather, return_exceptions=True) before the next chunk
    starts. At most `concurrency` items are ever in flight, at the cost of
    some idle time when one item in a chunk is much slower than the rest.

Scheduling ("pool"):
    `concurrency` long-lived pool workers pull records from a queue until it
    is empty. Same bound, no idle time between chunks, same external
    contract.

Cancellation:
    stop() (a) cancels every in-flight worker task, which aborts its
    outstanding httpx request on the spot, (b) sets the run's cancel event,
    (c) marks every still-pending item "stopped" in one bulk update.
    The scheduling loops re-check the event before each chunk and before
    each worker, so nothing new starts once it is set. Completed and failed
    items keep their state.

    Optionally (config.reset_on_stop) the whole run is wiped shortly after
    a stop settles, leaving a blank slate instead of partial results.

Completion:
    Exactly one RunSummary per run, built after the last chunk settles or after
    cancellation finished marking the remaining items, and stored on the run,
    logged and handed to on_complete.

One item failing never affects its siblings or the controller: workers
convert every error into a failed ItemState (see item_pipeline.py).
"""

import asyncio
import dataclasses
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Sequence

from config import RESET_DELAY_SECONDS
from errors import ValidationError
from item_pipeline import process_item
from models import (
    IN_FLIGHT_STATUSES,
    SCHEDULING_CHUNKED,
    SCHEDULING_POOL,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_STOPPED,
    ExtractionConfig,
    ExtractionResult,
    ItemState,
    ProductRecord,
    RunSummary,
    normalize_records,
)
from pdf_processor import PdfFile
from status_store import Observer, StatusStore

logger = logging.getLogger(__name__)

# ── Run status constants ───────────────────────────────────────────────────────

RUN_RUNNING  = "running"
RUN_COMPLETE = "complete"   # every item finished naturally
RUN_STOPPED  = "stopped"    # stop() was called before the run finished
RUN_RESET    = "reset"      # state cleared after a stop

CompletionCallback = Callable[[RunSummary], None]


def _mark_stopped(state: ItemState) -> ItemState:
    return dataclasses.replace(state, status=STATUS_STOPPED, status_detail="Stopped")


def _mark_abandoned(state: ItemState) -> ItemState:
    return dataclasses.replace(
        state,
        status=STATUS_FAILED,
        progress=100,
        status_detail="Failed",
        error="worker exited without a result",
    )


# ── Run state ──────────────────────────────────────────────────────────────────

class BatchRun:
    """Aggregate state of one batch execution."""

    def __init__(
        self,
        records: Sequence[ProductRecord],
        config: ExtractionConfig,
        pdf_files: Sequence[PdfFile] = (),
        on_update: Optional[Observer] = None,
    ):
        self.run_id = str(uuid.uuid4())
        self.config = config
        self.records: tuple[ProductRecord, ...] = tuple(records)
        self.pdf_files: tuple[PdfFile, ...] = tuple(pdf_files)
        self.store = StatusStore((r.id for r in self.records), on_update)
        self.status = RUN_RUNNING
        self.summary: Optional[RunSummary] = None
        self.created_at = datetime.now(tz=timezone.utc)
        self.finished_at: Optional[datetime] = None
        self.cancel_event = asyncio.Event()
        self.in_flight: set[asyncio.Task] = set()
        self.reset_requested = False   # wipe once the in-flight items have settled

    # ── Live view ──────────────────────────────────────────────────────────────

    @property
    def items(self) -> list[ItemState]:
        return list(self.store.snapshot)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def is_finished(self) -> bool:
        return self.summary is not None

    def _count(self, status: str) -> int:
        return sum(1 for item in self.store.snapshot if item.status == status)

    @property
    def completed_count(self) -> int:
        return self._count(STATUS_COMPLETED)

    @property
    def failed_count(self) -> int:
        return self._count(STATUS_FAILED)

    @property
    def stopped_count(self) -> int:
        return self._count(STATUS_STOPPED)

    @property
    def in_flight_count(self) -> int:
        return sum(1 for item in self.store.snapshot if item.status in IN_FLIGHT_STATUSES)

    def completed_results(self) -> list[ExtractionResult]:
        """Results of completed items, in input order (the export handoff)."""
        return [
            item.result for item in self.store.snapshot
            if item.status == STATUS_COMPLETED and item.result is not None
        ]

    # ── Transitions used by the controller ─────────────────────────────────────

    def stop_remaining(self) -> int:
        """Mark every pending item stopped in a single publish."""
        return self.store.update_where(lambda s: s.status == STATUS_PENDING, _mark_stopped)

    def reset(self) -> None:
        """Drop items, inputs and results. The summary is kept for reference."""
        self.store.reset()
        self.records = ()
        self.pdf_files = ()
        self.status = RUN_RESET
        logger.info(f"Run {self.run_id} reset.")

    def build_summary(self) -> RunSummary:
        return RunSummary(
            completed=self.completed_count,
            failed=self.failed_count,
            stopped=self.stopped_count,
            total=len(self.records),
        )


class RunHandle:
    """What start() hands back: the run plus the means to stop and await it."""

    def __init__(self, run: BatchRun, controller: "BatchController"):
        self.run = run
        self._controller = controller
        self._task: Optional[asyncio.Task] = None

    @property
    def run_id(self) -> str:
        return self.run.run_id

    def stop(self) -> None:
        self._controller.stop(self)

    async def wait(self) -> RunSummary:
        """Wait for the run to settle. Cancelling the waiter does not stop the run."""
        if self._task is not None:
            await asyncio.shield(self._task)
        if self.run.summary is None:
            raise RuntimeError(f"Run {self.run_id} settled without a summary")
        return self.run.summary


# ── Validation ─────────────────────────────────────────────────────────────────

def _validate(records: Sequence[ProductRecord], config: ExtractionConfig) -> None:
    if not isinstance(config.concurrency, int) or config.concurrency < 1:
        raise ValidationError(f"concurrency must be an integer >= 1, got {config.concurrency!r}")

    if config.scheduling not in (SCHEDULING_CHUNKED, SCHEDULING_POOL):
        raise ValidationError(f"unknown scheduling strategy '{config.scheduling}'")

    seen: set[str] = set()
    for position, record in enumerate(records, start=1):
        if not record.product_name or not record.product_name.strip():
            raise ValidationError(f"record {position} (id '{record.id}') has an empty product name")
        if record.id in seen:
            raise ValidationError(f"duplicate record id '{record.id}'")
        seen.add(record.id)


# ── Controller ─────────────────────────────────────────────────────────────────

class BatchController:
    """Starts, stops and tracks batch runs. Must be used inside an event loop."""

    def __init__(self) -> None:
        self._runs: dict[str, RunHandle] = {}

    # ── Public API ─────────────────────────────────────────────────────────────

    def start(
        self,
        records: Sequence[ProductRecord],
        config: ExtractionConfig,
        pdf_files: Iterable[PdfFile] = (),
        on_update: Optional[Observer] = None,
        on_complete: Optional[CompletionCallback] = None,
    ) -> RunHandle:
        """
        Validate inputs and launch a run in the background.

        Raises:
            ValidationError; the run is not created.

        An empty record list is not an error: the returned run is already
        terminal with all-zero counts and on_complete has already fired.
        """
        _validate(records, config)

        run = BatchRun(normalize_records(list(records)), config, tuple(pdf_files), on_update)
        handle = RunHandle(run, self)
        self._runs[run.run_id] = handle

        logger.info(
            f"Run {run.run_id} created: {len(run.records)} record(s), "
            f"concurrency={config.concurrency}, scheduling={config.scheduling}, "
            f"pdf={'on' if config.pdf_enabled else 'off'} ({len(run.pdf_files)} file(s))."
        )

        if not run.records:
            self._finish(run, on_complete, started=time.monotonic())
            return handle

        handle._task = asyncio.get_running_loop().create_task(
            self._execute(run, on_complete),
            name=f"batch-run-{run.run_id}",
        )
        return handle

    def stop(self, handle: RunHandle) -> None:
        """Cancel a run. Idempotent; a no-op once the run has finished."""
        run = handle.run
        if run.is_finished or run.cancelled:
            return

        in_flight = list(run.in_flight)
        for task in in_flight:
            task.cancel()
        run.cancel_event.set()
        stopped = run.stop_remaining()

        logger.info(
            f"Run {run.run_id} stop requested: {len(in_flight)} in-flight item(s) aborted, "
            f"{stopped} pending item(s) stopped."
        )

    def stop_all(self) -> int:
        """Stop every unfinished run. Returns how many were stopped."""
        active = [h for h in self._runs.values() if not h.run.is_finished and not h.run.cancelled]
        for handle in active:
            self.stop(handle)
        return len(active)

    def get(self, run_id: str) -> Optional[RunHandle]:
        return self._runs.get(run_id)

    def reset(self, run_id: str) -> bool:
        """Stop (if needed), wipe and forget a run. Returns False for unknown ids."""
        handle = self._runs.pop(run_id, None)
        if handle is None:
            return False
        self.stop(handle)
        if handle.run.is_finished:
            handle.run.reset()
        else:
            # Wiped by _finish, after the summary has counted the stopped items.
            handle.run.reset_requested = True
        return True

    def status_payload(self, run_id: str) -> Optional[dict]:
        """JSON-serializable live status of a run, or None if unknown."""
        handle = self._runs.get(run_id)
        if handle is None:
            return None
        run = handle.run
        items = run.items
        return {
            "run_id":      run.run_id,
            "status":      run.status,
            "cancelled":   run.cancelled,
            "total":       len(run.records),
            "completed":   run.completed_count,
            "failed":      run.failed_count,
            "stopped":     run.stopped_count,
            "in_progress": run.in_flight_count,
            "summary":     run.summary.to_dict() if run.summary else None,
            "items": [
                {
                    **item.to_dict(),
                    "articleNumber": record.article_number,
                    "productName":   record.product_name,
                    "url":           record.url,
                }
                for record, item in zip(run.records, items)
            ],
        }

    # ── Execution ──────────────────────────────────────────────────────────────

    def _launch(self, run: BatchRun, record: ProductRecord) -> asyncio.Task:
        task = asyncio.create_task(
            process_item(record, run.config, run.store, run.pdf_files, run.cancel_event),
            name=f"item-{record.id}",
        )
        run.in_flight.add(task)
        task.add_done_callback(run.in_flight.discard)
        return task

    async def _execute(self, run: BatchRun, on_complete: Optional[CompletionCallback]) -> None:
        started = time.monotonic()
        try:
            if run.config.scheduling == SCHEDULING_POOL:
                await self._run_pool(run)
            else:
                await self._run_chunked(run)
        finally:
            self._finish(run, on_complete, started)

    async def _run_chunked(self, run: BatchRun) -> None:
        size = run.config.concurrency
        total_chunks = (len(run.records) + size - 1) // size

        for chunk_index, offset in enumerate(range(0, len(run.records), size), start=1):
            if run.cancelled:
                break

            tasks: list[asyncio.Task] = []
            for record in run.records[offset : offset + size]:
                if run.cancelled:
                    break
                tasks.append(self._launch(run, record))

            logger.info(
                f"Run {run.run_id}: chunk {chunk_index}/{total_chunks} "
                f"started with {len(tasks)} item(s)."
            )
            await asyncio.gather(*tasks, return_exceptions=True)

        if run.cancelled:
            run.stop_remaining()

    async def _run_pool(self, run: BatchRun) -> None:
        queue: asyncio.Queue[ProductRecord] = asyncio.Queue()
        for record in run.records:
            queue.put_nowait(record)

        async def pool_worker() -> None:
            while not run.cancelled:
                try:
                    record = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                # Awaiting the item task (not the coroutine) lets stop() cancel
                # the item alone while this pool worker observes the flag.
                await asyncio.gather(self._launch(run, record), return_exceptions=True)

        workers = min(run.config.concurrency, len(run.records))
        await asyncio.gather(*(pool_worker() for _ in range(workers)), return_exceptions=True)

        if run.cancelled:
            run.stop_remaining()

    def _finish(
        self,
        run: BatchRun,
        on_complete: Optional[CompletionCallback],
        started: float,
    ) -> None:
        # Anything not terminal by now never got a worker to finish it.
        if run.cancelled:
            run.store.update_where(lambda s: not s.is_terminal, _mark_stopped)
        else:
            abandoned = run.store.update_where(lambda s: not s.is_terminal, _mark_abandoned)
            if abandoned:
                logger.error(f"Run {run.run_id}: {abandoned} item(s) left without a terminal state.")

        run.summary = run.build_summary()
        if run.status != RUN_RESET:
            run.status = RUN_STOPPED if run.cancelled else RUN_COMPLETE
        run.finished_at = datetime.now(tz=timezone.utc)

        elapsed = time.monotonic() - started
        s = run.summary
        logger.info(
            f"Run {run.run_id} {run.status} in {elapsed:.2f}s: "
            f"{s.completed} completed, {s.failed} failed, {s.stopped} stopped of {s.total}."
        )

        if on_complete is not None:
            try:
                on_complete(run.summary)
            except Exception as exc:
                logger.warning(f"Run {run.run_id} completion callback raised: {exc}", exc_info=True)

        if run.reset_requested:
            run.reset()
        elif run.cancelled and run.config.reset_on_stop:
            asyncio.get_running_loop().call_later(RESET_DELAY_SECONDS, run.reset)
