"""
Progress projection over a RowStore for observers of a batch run.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Callable, Optional

from row_store import AnalysisStatus, RowStore


@dataclass(frozen=True)
class ProgressSnapshot:
    total: int
    completed: int
    processing: int
    idle: int
    processed: int = 0
    batch_index: int = 0
    batch_count: int = 0
    phase: str = "started"

    @property
    def fraction(self) -> float:
        if self.total <= 0:
            return 1.0
        return self.completed / self.total

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["fraction"] = round(self.fraction, 4)
        return payload


ProgressListener = Callable[[ProgressSnapshot], None]


class ProgressTracker:
    """Counts rows finished in the current run; everything else is read from the store."""

    def __init__(self, store: RowStore, batch_count: int = 0, listener: Optional[ProgressListener] = None) -> None:
        self._store = store
        self.batch_count = batch_count
        self.processed = 0
        self._listeners: list[ProgressListener] = [listener] if listener else []

    def subscribe(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def snapshot(self, phase: str, batch_index: int = 0) -> ProgressSnapshot:
        store = self._store
        return ProgressSnapshot(
            total=len(store),
            completed=store.count(AnalysisStatus.COMPLETED),
            processing=store.count(AnalysisStatus.PROCESSING),
            idle=store.count(AnalysisStatus.IDLE),
            processed=self.processed,
            batch_index=batch_index,
            batch_count=self.batch_count,
            phase=phase,
        )

    def add_processed(self, count: int) -> None:
        self.processed += count

    def publish(self, phase: str, batch_index: int = 0) -> ProgressSnapshot:
        snap = self.snapshot(phase, batch_index=batch_index)
        for listener in self._listeners:
            listener(snap)
        return snap
