"""
In-memory row store: one WorkItem per spreadsheet row plus its analysis state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional


MAX_SOURCES = 3


class AnalysisStatus(str, Enum):
    IDLE = "IDLE"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


class InvalidTransitionError(ValueError):
    """Raised when a row is moved to a status it cannot reach from its current one."""


class UnknownColumnError(ValueError):
    """Raised when a column name is not one of the store's headers."""


@dataclass(frozen=True)
class AnalysisResult:
    url: str
    type: str
    details: str
    sources: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        cleaned = tuple(str(s) for s in (self.sources or ()) if str(s or "").strip())
        object.__setattr__(self, "sources", cleaned[:MAX_SOURCES])

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "type": self.type,
            "details": self.details,
            "sources": list(self.sources),
        }


@dataclass
class WorkItem:
    id: str
    values: dict[str, str] = field(default_factory=dict)
    status: AnalysisStatus = AnalysisStatus.IDLE
    result: Optional[AnalysisResult] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            **self.values,
            "_status": self.status.value,
            "_analysis": self.result.to_dict() if self.result else None,
        }


class RowStore:
    """Ordered rows addressed by index. Items are never reordered or removed."""

    def __init__(self, headers: Optional[list[str]] = None, items: Optional[list[WorkItem]] = None) -> None:
        self.headers: list[str] = list(headers or [])
        self.items: list[WorkItem] = list(items or [])

    @classmethod
    def from_records(cls, headers: list[str], records: Iterable[dict[str, str]]) -> "RowStore":
        items = []
        for index, record in enumerate(records):
            values = {header: str(record.get(header) or "") for header in headers}
            items.append(WorkItem(id=str(index), values=values))
        return cls(headers=headers, items=items)

    def __len__(self) -> int:
        return len(self.items)

    def __getitem__(self, index: int) -> WorkItem:
        return self.items[index]

    def pending_indices(self) -> list[int]:
        return [
            idx
            for idx, item in enumerate(self.items)
            if item.status != AnalysisStatus.COMPLETED and item.id
        ]

    def url_for(self, index: int, column: str) -> str:
        if column not in self.headers:
            raise UnknownColumnError(f"Unknown column: {column!r}")
        return str(self.items[index].values.get(column) or "")

    def mark_processing(self, indices: Iterable[int]) -> None:
        for idx in indices:
            item = self.items[idx]
            if item.status in (AnalysisStatus.PROCESSING, AnalysisStatus.COMPLETED):
                raise InvalidTransitionError(f"Row {item.id} is already {item.status.value}")
            item.status = AnalysisStatus.PROCESSING

    def write_result(
        self,
        index: int,
        result: AnalysisResult,
        status: AnalysisStatus = AnalysisStatus.COMPLETED,
    ) -> None:
        if status not in (AnalysisStatus.COMPLETED, AnalysisStatus.ERROR):
            raise InvalidTransitionError(f"Results can only finish a row, not set {status.value}")
        item = self.items[index]
        if item.status != AnalysisStatus.PROCESSING:
            raise InvalidTransitionError(f"Row {item.id} is {item.status.value}, expected PROCESSING")
        item.result = result
        item.status = status

    def reset(self, indices: Optional[Iterable[int]] = None) -> int:
        """Put rows back to IDLE so the next run picks them up again."""
        targets = range(len(self.items)) if indices is None else indices
        count = 0
        for idx in targets:
            item = self.items[idx]
            item.status = AnalysisStatus.IDLE
            item.result = None
            count += 1
        return count

    def count(self, status: AnalysisStatus) -> int:
        return sum(1 for item in self.items if item.status == status)

    def snapshot(self) -> list[dict]:
        return [item.to_dict() for item in self.items]
