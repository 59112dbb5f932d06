"""JSON export of a finished batch."""

from __future__ import annotations

import json
import time
from pathlib import Path

from uidiff.models.batch_task import BatchTask
from uidiff.models.report import Report


def build_batch_export(task: BatchTask, reports: list[Report]) -> dict:
    """Machine-readable summary of a batch with each item's report snapshot."""
    by_id = {r.id: r for r in reports}
    items = []
    for item in task.items:
        entry = item.model_dump(mode="json")
        report = by_id.get(item.report_id) if item.report_id else None
        entry["report"] = report.to_snapshot() if report is not None else None
        items.append(entry)

    return {
        "exported_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "task": task.model_dump(mode="json", exclude={"items"}),
        "items": items,
    }


def write_batch_export(task: BatchTask, reports: list[Report], output_path: Path) -> Path:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w") as f:
        json.dump(build_batch_export(task, reports), f, indent=2, default=str)
    return output_path
