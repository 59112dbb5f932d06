"""Report state machine: pending -> processing -> completed | failed.

Every transition is one repository write followed by a broadcast of the
report snapshot. Writes to a terminal report are refused by the repository,
so nothing here can move a report out of completed or failed.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Optional

from uidiff.events.broadcaster import EventType, NullBroadcaster, ProgressBroadcaster, ProgressEvent
from uidiff.models.report import Report
from uidiff.storage.repositories import ReportRepository

logger = logging.getLogger(__name__)

STEP_PROGRESS = {
    "capturing": 10,
    "comparing": 40,
    "analyzing-regions": 55,
    "ai-analyzing": 70,
    "completed": 100,
}


def new_report_id() -> str:
    return f"rpt_{uuid.uuid4().hex}"


class ReportLifecycle:
    def __init__(self, reports: ReportRepository, broadcaster: Optional[ProgressBroadcaster] = None):
        self.reports = reports
        self.broadcaster = broadcaster or NullBroadcaster()

    async def create(
        self,
        url: str,
        design_source: str,
        batch_task_id: Optional[str] = None,
    ) -> Report:
        report = Report(
            id=new_report_id(),
            created_at=time.time(),
            url=url,
            design_source=design_source,
            batch_task_id=batch_task_id,
            step_text="pending",
        )
        self.reports.create(report)
        await self._publish(report, "report:progress")
        return report

    async def step(self, report_id: str, step: str, **fields: Any) -> bool:
        patch = {"status": "processing", "step_text": step, "progress": STEP_PROGRESS[step], **fields}
        return await self._write(report_id, patch, "report:progress")

    async def complete(self, report_id: str, **fields: Any) -> bool:
        patch = {"status": "completed", "step_text": "completed", "progress": 100, **fields}
        return await self._write(report_id, patch, "report:completed")

    async def fail(self, report_id: str, reason: str, **fields: Any) -> bool:
        logger.error("Report %s failed: %s", report_id, reason)
        patch = {"status": "failed", "step_text": "failed", "error": reason, **fields}
        return await self._write(report_id, patch, "report:failed")

    async def _write(self, report_id: str, patch: dict[str, Any], event_type: EventType) -> bool:
        if not self.reports.update(report_id, patch):
            return False
        report = self.reports.find_by_id(report_id)
        if report is not None:
            await self._publish(report, event_type)
        return True

    async def _publish(self, report: Report, event_type: EventType) -> None:
        try:
            await self.broadcaster.broadcast(ProgressEvent(
                task_or_report_id=report.id,
                type=event_type,
                data=report.to_snapshot(),
            ))
        except Exception as e:
            logger.warning("Broadcast of %s for %s failed: %s", event_type, report.id, e)
