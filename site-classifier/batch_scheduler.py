"""
Batch analysis runner.

Pending rows are split into fixed-size batches. Each batch is marked
PROCESSING, classified concurrently, joined, and written back before the next
batch starts, so observers only ever see whole batches change state.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

import config
from progress import ProgressListener, ProgressTracker
from row_store import AnalysisResult, AnalysisStatus, RowStore, UnknownColumnError


logger = logging.getLogger(__name__)


class SiteClassifier(Protocol):
    async def classify(self, raw_url: Optional[str]) -> AnalysisResult: ...


@dataclass(frozen=True)
class RunSummary:
    total: int
    pending: int
    processed: int
    batches: int
    cancelled: bool
    elapsed_seconds: float

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "pending": self.pending,
            "processed": self.processed,
            "batches": self.batches,
            "cancelled": self.cancelled,
            "elapsedSeconds": round(self.elapsed_seconds, 3),
        }


def partition(indices: list[int], batch_size: int) -> list[list[int]]:
    size = max(1, int(batch_size))
    return [indices[start:start + size] for start in range(0, len(indices), size)]


async def _classify_row(
    store: RowStore,
    index: int,
    url_column: str,
    classifier: SiteClassifier,
) -> tuple[int, AnalysisResult]:
    url = store.url_for(index, url_column).strip()
    try:
        result = await classifier.classify(url)
    except Exception as exc:
        # Classifiers normally encode failures in the result.
        logger.exception("Classifier raised for row %s", store[index].id)
        result = AnalysisResult(url=url, type="API Error", details=str(exc) or type(exc).__name__)
    return index, result


async def run(
    store: RowStore,
    url_column: str,
    classifier: SiteClassifier,
    *,
    batch_size: int = config.BATCH_SIZE,
    pause_seconds: float = config.BATCH_PAUSE_SECONDS,
    on_update: Optional[ProgressListener] = None,
    cancel_event: Optional[asyncio.Event] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RunSummary:
    """Classify every pending row of `store` in place and report progress per batch."""
    started_at = time.perf_counter()
    if url_column not in store.headers:
        raise UnknownColumnError(f"Unknown URL column: {url_column!r}")

    pending = store.pending_indices()
    # Rows left PROCESSING by an aborted run are picked up again from IDLE.
    stale = [idx for idx in pending if store[idx].status == AnalysisStatus.PROCESSING]
    if stale:
        logger.warning("Reclaiming %d rows left PROCESSING by an interrupted run", len(stale))
        store.reset(stale)
    batches = partition(pending, batch_size)
    tracker = ProgressTracker(store, batch_count=len(batches), listener=on_update)
    tracker.publish("started")
    logger.info("Starting run: %d pending of %d rows in %d batches", len(pending), len(store), len(batches))

    cancelled = False
    completed_batches = 0
    for batch_number, batch in enumerate(batches, start=1):
        if cancel_event is not None and cancel_event.is_set():
            cancelled = True
            break

        store.mark_processing(batch)
        tracker.publish("batch_started", batch_index=batch_number)

        outcomes = await asyncio.gather(
            *(_classify_row(store, idx, url_column, classifier) for idx in batch)
        )

        for index, result in outcomes:
            store.write_result(index, result, AnalysisStatus.COMPLETED)
        tracker.add_processed(len(outcomes))
        completed_batches += 1
        tracker.publish("batch_completed", batch_index=batch_number)
        logger.info(
            "Batch %d/%d done (%d/%d processed)",
            batch_number,
            len(batches),
            tracker.processed,
            len(pending),
        )

        if batch_number < len(batches):
            await sleep(pause_seconds)

    tracker.publish("cancelled" if cancelled else "finished", batch_index=completed_batches)
    elapsed = time.perf_counter() - started_at
    if cancelled:
        logger.info("Run cancelled after %d/%d batches", completed_batches, len(batches))
    else:
        logger.info("Run finished: %d rows in %.2fs", tracker.processed, elapsed)

    return RunSummary(
        total=len(store),
        pending=len(pending),
        processed=tracker.processed,
        batches=completed_batches,
        cancelled=cancelled,
        elapsed_seconds=elapsed,
    )
