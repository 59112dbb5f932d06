"""In-memory repositories, for tests and embedding."""

from __future__ import annotations

from typing import Generic, Optional

from uidiff.models.batch_task import BatchTask
from uidiff.models.report import Report
from uidiff.models.script import Script
from uidiff.storage.repositories import (
    M,
    RecordTable,
    StoredBatchTaskRepository,
    StoredReportRepository,
    StoredScriptRepository,
)


class MemoryTable(RecordTable[M], Generic[M]):
    """Dict-backed table. Records are deep-copied in and out."""

    def __init__(self):
        self._records: dict[str, M] = {}

    def get(self, record_id: str) -> Optional[M]:
        record = self._records.get(record_id)
        return record.model_copy(deep=True) if record is not None else None

    def put(self, record_id: str, record: M) -> None:
        self._records[record_id] = record.model_copy(deep=True)

    def delete(self, record_id: str) -> bool:
        return self._records.pop(record_id, None) is not None

    def values(self) -> list[M]:
        return [r.model_copy(deep=True) for r in self._records.values()]


class MemoryReportRepository(StoredReportRepository):
    def __init__(self):
        super().__init__(MemoryTable[Report]())


class MemoryBatchTaskRepository(StoredBatchTaskRepository):
    def __init__(self):
        super().__init__(MemoryTable[BatchTask]())


class MemoryScriptRepository(StoredScriptRepository):
    def __init__(self):
        super().__init__(MemoryTable[Script]())
