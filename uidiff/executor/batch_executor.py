"""Batch executor — runs every item of a BatchTask through a bounded worker pool."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Optional

from uidiff.errors import ValidationError
from uidiff.events.broadcaster import NullBroadcaster, ProgressBroadcaster, ProgressEvent
from uidiff.executor.compare_runner import CANCELLED, CompareRequest, CompareRunner, ItemOutcome
from uidiff.models.batch_task import (
    TERMINAL_ITEM_STATUSES,
    BatchTask,
    BatchTaskItem,
    summarize_items,
    terminal_status,
)
from uidiff.models.script import Action
from uidiff.storage.repositories import BatchTaskRepository, ScriptRepository

logger = logging.getLogger(__name__)

INTERRUPTED = "Interrupted before completion"


def task_event_data(task: BatchTask) -> dict[str, Any]:
    """Summary of a batch as carried by task:* events."""
    return {
        "taskId": task.id,
        "name": task.name,
        "status": task.status,
        "progress": task.progress,
        "stepText": task.step_text,
        "total": task.totals.total,
        "success": task.totals.success,
        "failed": task.totals.failed,
        "avgSimilarity": task.avg_similarity,
        "totalDiffCount": task.total_diff_count,
        "duration": task.duration_seconds,
    }


class BatchExecutor:
    def __init__(
        self,
        tasks: BatchTaskRepository,
        runner: CompareRunner,
        broadcaster: Optional[ProgressBroadcaster] = None,
        scripts: Optional[ScriptRepository] = None,
        max_concurrency: int = 3,
    ):
        self.tasks = tasks
        self.runner = runner
        self.broadcaster = broadcaster or NullBroadcaster()
        self.scripts = scripts
        self.max_concurrency = max(1, max_concurrency)

    async def run(self, task_id: str, cancel_event: asyncio.Event | None = None) -> BatchTask:
        """Run all pending items of ``task_id`` and return the finished task.

        Item failures are recorded on the item and never abort the batch.
        Repository failures on the batch record itself propagate.
        """
        task = self.tasks.find_by_id(task_id)
        if task is None:
            raise ValidationError(f"Batch task not found: {task_id}")
        if task.is_terminal:
            logger.info("Batch %s already %s", task_id, task.status)
            return task

        cancel_event = cancel_event or asyncio.Event()
        if task.cancelled:
            cancel_event.set()

        started_at = time.time()
        self.tasks.update(task_id, {
            "status": "running",
            "started_at": started_at,
            "step_text": f"0/{len(task.items)} processed",
        })
        logger.info("Starting batch %s '%s' (%d items, %d workers)",
                    task_id, task.name, len(task.items), self.max_concurrency)
        self._fail_stale_items(task)
        await self._publish(task_id, "task:progress")

        script, script_error = self._resolve_script(task)

        queue: asyncio.Queue[BatchTaskItem] = asyncio.Queue()
        for item in task.items:
            if item.status == "pending":
                queue.put_nowait(item)

        lock = asyncio.Lock()
        worker_count = min(self.max_concurrency, max(1, queue.qsize()))
        workers = [
            asyncio.create_task(self._worker(task, queue, lock, cancel_event, script, script_error))
            for _ in range(worker_count)
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for worker in workers:
                worker.cancel()
            raise

        return await self._finish(task_id, started_at)

    def _fail_stale_items(self, task: BatchTask) -> None:
        """Fail items a previous run left in processing; they are not retried."""
        stale = [i for i in task.items if i.status == "processing"]
        for item in stale:
            logger.warning("Batch %s: %s was interrupted by an earlier run", task.id, item.url)
            self.tasks.update_item(task.id, item.url, {"status": "failed", "error": INTERRUPTED})
        if stale:
            self.tasks.update(task.id, summarize_items(self.tasks.find_items_by_task_id(task.id)))

    def _resolve_script(self, task: BatchTask) -> tuple[list[Action], Optional[str]]:
        if not task.script_id:
            return [], None
        script = self.scripts.find_by_id(task.script_id) if self.scripts else None
        if script is None:
            return [], f"Script not found: {task.script_id}"
        logger.info("Batch %s uses script '%s' (%d actions)", task.id, script.name, len(script.actions))
        return list(script.actions), None

    async def _worker(
        self,
        task: BatchTask,
        queue: asyncio.Queue,
        lock: asyncio.Lock,
        cancel_event: asyncio.Event,
        script: list[Action],
        script_error: Optional[str],
    ) -> None:
        while True:
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            if cancel_event.is_set():
                outcome = ItemOutcome.failed(item.url, CANCELLED)
            elif script_error:
                outcome = ItemOutcome.failed(item.url, script_error)
            else:
                self.tasks.update_item(task.id, item.url, {"status": "processing"})
                outcome = await self.runner.run(
                    CompareRequest(
                        url=item.url,
                        design_source=item.design_source or task.design_source or "",
                        batch_task_id=task.id,
                        overrides=task.compare_config,
                        script=script,
                    ),
                    cancel_event,
                )
            await self._record(task.id, outcome, lock)

    async def _record(self, task_id: str, outcome: ItemOutcome, lock: asyncio.Lock) -> None:
        async with lock:
            self.tasks.update_item(task_id, outcome.url, outcome.item_patch())
            items = self.tasks.find_items_by_task_id(task_id)
            summary = summarize_items(items)
            done = summary["totals"].success + summary["totals"].failed
            total = max(1, len(items))
            self.tasks.update(task_id, {
                **summary,
                "progress": int(done * 100 / total),
                "step_text": f"{done}/{len(items)} processed",
            })
        if outcome.ok:
            logger.info("Batch %s: %s completed (%.2f%%)", task_id, outcome.url, outcome.similarity or 0)
        else:
            logger.warning("Batch %s: %s failed: %s", task_id, outcome.url, outcome.error)
        await self._publish(task_id, "task:progress", last_result={
            "url": outcome.url,
            "status": outcome.status,
            "reportId": outcome.report_id,
            "similarity": outcome.similarity,
            "error": outcome.error,
        })

    async def _finish(self, task_id: str, started_at: float) -> BatchTask:
        items = self.tasks.find_items_by_task_id(task_id)
        unfinished = [i for i in items if i.status not in TERMINAL_ITEM_STATUSES]
        if unfinished:
            # A terminal batch never carries unfinished items
            for item in unfinished:
                logger.warning("Batch %s: %s never finished, failing it", task_id, item.url)
                self.tasks.update_item(task_id, item.url, {"status": "failed", "error": INTERRUPTED})
            items = self.tasks.find_items_by_task_id(task_id)
        summary = summarize_items(items)
        status = terminal_status(summary["totals"])
        completed_at = time.time()
        self.tasks.update(task_id, {
            **summary,
            "status": status,
            "progress": 100,
            "step_text": status,
            "completed_at": completed_at,
            "duration_seconds": round(completed_at - started_at, 2),
        })
        task = self.tasks.find_by_id(task_id)
        logger.info("Batch %s finished: %s (%d ok, %d failed, avg %.2f%%)",
                    task_id, status, summary["totals"].success, summary["totals"].failed,
                    summary["avg_similarity"])
        await self._publish(task_id, "task:completed", task=task)
        return task

    async def _publish(
        self,
        task_id: str,
        event_type: str,
        task: BatchTask | None = None,
        last_result: dict | None = None,
    ) -> None:
        task = task or self.tasks.find_by_id(task_id)
        if task is None:
            return
        data = task_event_data(task)
        if last_result is not None:
            data["lastResult"] = last_result
        if event_type == "task:completed":
            data["results"] = [item.model_dump(mode="json") for item in task.items]
        try:
            await self.broadcaster.broadcast(ProgressEvent(
                task_or_report_id=task_id, type=event_type, data=data,
            ))
        except Exception as e:
            logger.warning("Broadcast of %s for %s failed: %s", event_type, task_id, e)
