"""JSON file repositories — one document per record under the data dir."""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Generic, Optional, Type

from pydantic import ValidationError as PydanticValidationError

from uidiff.errors import PersistenceError
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

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


class JsonTable(RecordTable[M], Generic[M]):
    """Stores each record as ``<directory>/<id>.json``.

    Writes go to a temporary file that is then renamed over the target, so a
    failed write never leaves a half-written record behind.
    """

    def __init__(self, directory: str | Path, model: Type[M]):
        self.directory = Path(directory)
        self.model = model

    def _path(self, record_id: str) -> Path:
        if not _SAFE_ID.match(record_id) or record_id in (".", ".."):
            raise PersistenceError(f"Invalid record id: {record_id!r}")
        return self.directory / f"{record_id}.json"

    def get(self, record_id: str) -> Optional[M]:
        path = self._path(record_id)
        if not path.exists():
            return None
        return self._load(path)

    def put(self, record_id: str, record: M) -> None:
        path = self._path(record_id)
        tmp = path.with_name(f".{path.name}.tmp")
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(record.model_dump(mode="json"), f, indent=2)
            os.replace(tmp, path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise PersistenceError(f"Failed to write {path}: {e}") from e
        logger.debug("Saved %s %s", self.model.__name__, record_id)

    def delete(self, record_id: str) -> bool:
        path = self._path(record_id)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise PersistenceError(f"Failed to delete {path}: {e}") from e

    def values(self) -> list[M]:
        if not self.directory.exists():
            return []
        records = []
        for path in sorted(self.directory.glob("*.json")):
            record = self._load(path)
            if record is not None:
                records.append(record)
        return records

    def _load(self, path: Path) -> Optional[M]:
        try:
            with open(path, encoding="utf-8") as f:
                return self.model.model_validate(json.load(f))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError, PydanticValidationError) as e:
            logger.warning("Skipping unreadable record %s: %s", path, e)
            return None


class JsonReportRepository(StoredReportRepository):
    def __init__(self, data_dir: str | Path):
        super().__init__(JsonTable(Path(data_dir) / "db" / "reports", Report))


class JsonBatchTaskRepository(StoredBatchTaskRepository):
    def __init__(self, data_dir: str | Path):
        super().__init__(JsonTable(Path(data_dir) / "db" / "batches", BatchTask))


class JsonScriptRepository(StoredScriptRepository):
    def __init__(self, data_dir: str | Path):
        super().__init__(JsonTable(Path(data_dir) / "db" / "scripts", Script))
