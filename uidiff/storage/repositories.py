"""Repository interfaces for reports, batch tasks and scripts.

Each backend only supplies a ``RecordTable`` (get/put/delete/values of one
record type); the read-modify-write rules shared by every backend live in
the ``Stored*Repository`` classes here:

* writes to a report or batch in a terminal state are refused (``False``)
* ``progress`` never decreases
* every write replaces exactly one record
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from uidiff.errors import PersistenceError
from uidiff.models.batch_task import BatchTask, BatchTaskItem
from uidiff.models.report import Report
from uidiff.models.script import Script

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


# ----------------------------------------------------------------------
# Interfaces
# ----------------------------------------------------------------------


class ReportRepository(ABC):
    @abstractmethod
    def create(self, report: Report) -> str: ...

    @abstractmethod
    def update(self, report_id: str, patch: dict[str, Any]) -> bool: ...

    @abstractmethod
    def find_by_id(self, report_id: str) -> Optional[Report]: ...

    @abstractmethod
    def find_all(self, limit: int = 50, offset: int = 0,
                 batch_task_id: Optional[str] = None) -> list[Report]: ...

    @abstractmethod
    def delete_by_id(self, report_id: str) -> int: ...


class BatchTaskRepository(ABC):
    @abstractmethod
    def create(self, task: BatchTask) -> str: ...

    @abstractmethod
    def update(self, task_id: str, patch: dict[str, Any]) -> bool: ...

    @abstractmethod
    def find_by_id(self, task_id: str) -> Optional[BatchTask]: ...

    @abstractmethod
    def find_all(self, limit: int = 50, offset: int = 0,
                 status: Optional[str] = None) -> list[BatchTask]: ...

    @abstractmethod
    def get_count(self, status: Optional[str] = None) -> int: ...

    @abstractmethod
    def find_items_by_task_id(self, task_id: str) -> list[BatchTaskItem]: ...

    @abstractmethod
    def update_item(self, task_id: str, url: str, patch: dict[str, Any]) -> bool: ...

    @abstractmethod
    def delete_by_id(self, task_id: str) -> int: ...


class ScriptRepository(ABC):
    @abstractmethod
    def create(self, script: Script) -> str: ...

    @abstractmethod
    def update(self, script_id: str, patch: dict[str, Any]) -> bool: ...

    @abstractmethod
    def find_by_id(self, script_id: str) -> Optional[Script]: ...

    @abstractmethod
    def find_all(self, limit: int = 50, offset: int = 0) -> list[Script]: ...

    @abstractmethod
    def delete_by_id(self, script_id: str) -> int: ...


class RecordTable(ABC, Generic[M]):
    """Keyed storage of one pydantic record type."""

    @abstractmethod
    def get(self, record_id: str) -> Optional[M]: ...

    @abstractmethod
    def put(self, record_id: str, record: M) -> None: ...

    @abstractmethod
    def delete(self, record_id: str) -> bool: ...

    @abstractmethod
    def values(self) -> list[M]: ...


# ----------------------------------------------------------------------
# Patch rules
# ----------------------------------------------------------------------


def apply_patch(record: M, patch: dict[str, Any]) -> M:
    """Return a validated copy of ``record`` with ``patch`` applied.

    ``progress`` is clamped so it never goes backwards.
    """
    unknown = set(patch) - set(type(record).model_fields)
    if unknown:
        raise PersistenceError(f"Unknown fields in patch: {sorted(unknown)}")
    patch = dict(patch)
    if "progress" in patch and hasattr(record, "progress"):
        patch["progress"] = max(int(patch["progress"]), record.progress)
    data = record.model_dump()
    data.update(patch)
    try:
        return type(record).model_validate(data)
    except PydanticValidationError as e:
        raise PersistenceError(f"Invalid patch for {type(record).__name__}: {e}") from e


def _page(records: list[M], limit: int, offset: int) -> list[M]:
    records.sort(key=lambda r: getattr(r, "created_at", 0.0), reverse=True)
    return records[offset:offset + limit] if limit else records[offset:]


# ----------------------------------------------------------------------
# Table-backed implementations
# ----------------------------------------------------------------------


class StoredReportRepository(ReportRepository):
    def __init__(self, table: RecordTable[Report]):
        self._table = table
        self._lock = threading.RLock()

    def create(self, report: Report) -> str:
        with self._lock:
            if self._table.get(report.id) is not None:
                raise PersistenceError(f"Report {report.id} already exists")
            self._table.put(report.id, report)
        return report.id

    def update(self, report_id: str, patch: dict[str, Any]) -> bool:
        with self._lock:
            report = self._table.get(report_id)
            if report is None:
                logger.warning("Update for unknown report %s ignored", report_id)
                return False
            if report.is_terminal:
                logger.warning("Report %s is %s; update %s ignored",
                               report_id, report.status, sorted(patch))
                return False
            updated = apply_patch(report, {**patch, "updated_at": time.time()})
            self._table.put(report_id, updated)
        return True

    def find_by_id(self, report_id: str) -> Optional[Report]:
        return self._table.get(report_id)

    def find_all(self, limit: int = 50, offset: int = 0,
                 batch_task_id: Optional[str] = None) -> list[Report]:
        records = self._table.values()
        if batch_task_id is not None:
            records = [r for r in records if r.batch_task_id == batch_task_id]
        return _page(records, limit, offset)

    def delete_by_id(self, report_id: str) -> int:
        with self._lock:
            return 1 if self._table.delete(report_id) else 0


class StoredBatchTaskRepository(BatchTaskRepository):
    def __init__(self, table: RecordTable[BatchTask]):
        self._table = table
        self._lock = threading.RLock()

    def create(self, task: BatchTask) -> str:
        with self._lock:
            if self._table.get(task.id) is not None:
                raise PersistenceError(f"Batch task {task.id} already exists")
            self._table.put(task.id, task)
        return task.id

    def update(self, task_id: str, patch: dict[str, Any]) -> bool:
        with self._lock:
            task = self._table.get(task_id)
            if task is None:
                logger.warning("Update for unknown batch task %s ignored", task_id)
                return False
            if task.is_terminal:
                logger.warning("Batch task %s is %s; update %s ignored",
                               task_id, task.status, sorted(patch))
                return False
            self._table.put(task_id, apply_patch(task, patch))
        return True

    def find_by_id(self, task_id: str) -> Optional[BatchTask]:
        return self._table.get(task_id)

    def find_all(self, limit: int = 50, offset: int = 0,
                 status: Optional[str] = None) -> list[BatchTask]:
        records = self._table.values()
        if status is not None:
            records = [t for t in records if t.status == status]
        return _page(records, limit, offset)

    def get_count(self, status: Optional[str] = None) -> int:
        if status is None:
            return len(self._table.values())
        return sum(1 for t in self._table.values() if t.status == status)

    def find_items_by_task_id(self, task_id: str) -> list[BatchTaskItem]:
        task = self._table.get(task_id)
        return list(task.items) if task is not None else []

    def update_item(self, task_id: str, url: str, patch: dict[str, Any]) -> bool:
        with self._lock:
            task = self._table.get(task_id)
            if task is None or task.is_terminal:
                return False
            for index, item in enumerate(task.items):
                if item.url == url:
                    if item.status in ("completed", "failed"):
                        logger.warning("Item %s of %s is %s; update ignored", url, task_id, item.status)
                        return False
                    items = list(task.items)
                    items[index] = apply_patch(item, patch)
                    self._table.put(task_id, task.model_copy(update={"items": items}))
                    return True
        logger.warning("Batch task %s has no item for %s", task_id, url)
        return False

    def delete_by_id(self, task_id: str) -> int:
        with self._lock:
            return 1 if self._table.delete(task_id) else 0


class StoredScriptRepository(ScriptRepository):
    def __init__(self, table: RecordTable[Script]):
        self._table = table
        self._lock = threading.RLock()

    def create(self, script: Script) -> str:
        with self._lock:
            if self._table.get(script.id) is not None:
                raise PersistenceError(f"Script {script.id} already exists")
            self._table.put(script.id, script)
        return script.id

    def update(self, script_id: str, patch: dict[str, Any]) -> bool:
        with self._lock:
            script = self._table.get(script_id)
            if script is None:
                return False
            self._table.put(script_id, apply_patch(script, {**patch, "updated_at": time.time()}))
        return True

    def find_by_id(self, script_id: str) -> Optional[Script]:
        return self._table.get(script_id)

    def find_all(self, limit: int = 50, offset: int = 0) -> list[Script]:
        return _page(self._table.values(), limit, offset)

    def delete_by_id(self, script_id: str) -> int:
        with self._lock:
            return 1 if self._table.delete(script_id) else 0
