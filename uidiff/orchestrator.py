"""Pipeline orchestrator — wires config, storage, browsers and AI into one facade."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from pathlib import Path
from typing import Any, Optional

from uidiff.ai.client import DEFAULT_MODELS
from uidiff.ai.fix_suggester import FixSuggestionGenerator
from uidiff.auth.session import AuthSessionProvider
from uidiff.capture.actions import ACTION_TYPES
from uidiff.capture.browser_pool import BrowserPool
from uidiff.capture.capturer import ScreenshotCapturer
from uidiff.errors import PersistenceError, ValidationError
from uidiff.events.broadcaster import EventHub
from uidiff.executor.batch_executor import BatchExecutor
from uidiff.executor.compare_runner import CompareRequest, CompareRunner, is_remote_source
from uidiff.executor.report_lifecycle import ReportLifecycle
from uidiff.models.batch_task import (
    BatchTask,
    BatchTaskItem,
    BatchTotals,
    CompareConfig,
)
from uidiff.models.config import UIDiffConfig, ViewportConfig
from uidiff.models.report import Report
from uidiff.models.script import Action, Script
from uidiff.reporter.json_report import write_batch_export
from uidiff.storage.assets import ReportAssets
from uidiff.storage.json_store import (
    JsonBatchTaskRepository,
    JsonReportRepository,
    JsonScriptRepository,
)
from uidiff.storage.repositories import BatchTaskRepository, ReportRepository, ScriptRepository
from uidiff.url_utils import is_valid_page_url, normalize_url

logger = logging.getLogger(__name__)

BATCH_STATUSES = ("pending", "running", "completed", "failed", "partial")


class Orchestrator:
    """Entry point for single comparisons, batches, reports and scripts."""

    def __init__(
        self,
        config: UIDiffConfig,
        reports: Optional[ReportRepository] = None,
        tasks: Optional[BatchTaskRepository] = None,
        scripts: Optional[ScriptRepository] = None,
        hub: Optional[EventHub] = None,
        capturer: Optional[ScreenshotCapturer] = None,
        auth_provider: Optional[AuthSessionProvider] = None,
        fix_suggester: Optional[FixSuggestionGenerator] = None,
    ):
        self.config = config
        data_path = config.data_path
        self.reports = reports or JsonReportRepository(data_path)
        self.tasks = tasks or JsonBatchTaskRepository(data_path)
        self.scripts = scripts or JsonScriptRepository(data_path)
        self.hub = hub or EventHub()
        self.assets = ReportAssets(data_path, config.public_prefix)

        self.pool = BrowserPool(size=config.capture.browser_pool_size, headless=config.capture.headless)
        self.capturer = capturer or ScreenshotCapturer(self.pool)
        self.auth_provider = auth_provider or AuthSessionProvider(
            self.pool,
            viewport={"width": config.viewport.width, "height": config.viewport.height},
            user_agent=config.capture.user_agent,
        )
        self.fix_suggester = fix_suggester or FixSuggestionGenerator(debug_dir=data_path / "debug")

        self.lifecycle = ReportLifecycle(self.reports, self.hub)
        self.runner = CompareRunner(
            config, self.lifecycle, self.capturer, self.auth_provider, self.fix_suggester, self.assets,
        )
        self.executor = BatchExecutor(
            self.tasks, self.runner, self.hub, scripts=self.scripts,
            max_concurrency=config.max_concurrency,
        )
        self._cancel_events: dict[str, asyncio.Event] = {}

    async def close(self) -> None:
        await self.pool.close()

    # ------------------------------------------------------------------
    # Single comparison
    # ------------------------------------------------------------------

    async def compare_url(
        self,
        url: str,
        design_source: str,
        viewport: Optional[ViewportConfig] = None,
        compare_config: Optional[CompareConfig] = None,
        script_id: Optional[str] = None,
    ) -> Report:
        """Compare one page with one design and return the terminal report."""
        self._validate_url(url)
        self._validate_design(design_source)
        if compare_config is not None:
            self._validate_compare_config(compare_config)
        script = self._require_script(script_id) if script_id else None

        outcome = await self.runner.run(CompareRequest(
            url=url,
            design_source=design_source,
            overrides=compare_config,
            script=list(script.actions) if script else [],
            viewport=viewport,
        ))
        if outcome.report_id is None:
            raise PersistenceError(outcome.error or "Report could not be created")
        return self.reports.find_by_id(outcome.report_id)

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def create_batch(
        self,
        name: str,
        urls: list[str],
        design_source: Optional[str] = None,
        designs: Optional[dict[str, str]] = None,
        compare_config: Optional[CompareConfig] = None,
        script_id: Optional[str] = None,
    ) -> BatchTask:
        """Validate and persist a new pending batch.

        Each URL's design is ``designs[url]`` when given, else ``design_source``.
        Raises ValidationError before anything is written.
        """
        designs = designs or {}
        if not name or not name.strip():
            raise ValidationError("Batch name is required")
        if not urls:
            raise ValidationError("A batch needs at least one URL")

        seen: dict[str, str] = {}
        items = []
        for url in urls:
            self._validate_url(url)
            key = normalize_url(url)
            if key in seen:
                raise ValidationError(f"Duplicate URL in batch: {url} (same as {seen[key]})")
            seen[key] = url
            design = designs.get(url) or design_source
            if not design:
                raise ValidationError(f"No design source for {url}")
            self._validate_design(design)
            items.append(BatchTaskItem(url=url, design_source=designs.get(url)))

        unknown = set(designs) - set(urls)
        if unknown:
            raise ValidationError(f"Designs given for URLs not in the batch: {sorted(unknown)}")
        if design_source:
            self._validate_design(design_source)
        compare_config = compare_config or CompareConfig()
        self._validate_compare_config(compare_config)
        if script_id:
            self._require_script(script_id)

        task = BatchTask(
            id=f"batch_{uuid.uuid4().hex[:8]}",
            name=name.strip(),
            urls=list(urls),
            totals=BatchTotals(total=len(urls)),
            design_source=design_source,
            compare_config=compare_config,
            script_id=script_id,
            created_at=time.time(),
            step_text="pending",
            items=items,
        )
        self.tasks.create(task)
        logger.info("Created batch %s '%s' with %d URLs", task.id, task.name, len(urls))
        return task

    async def run_batch(self, task_id: str) -> BatchTask:
        event = self._cancel_events.setdefault(task_id, asyncio.Event())
        try:
            return await self.executor.run(task_id, event)
        finally:
            self._cancel_events.pop(task_id, None)

    def cancel_batch(self, task_id: str) -> bool:
        """Request cancellation. Returns False if the batch already finished."""
        task = self._require_task(task_id)
        if task.is_terminal:
            return False
        self.tasks.update(task_id, {"cancelled": True})
        event = self._cancel_events.get(task_id)
        if event is not None:
            event.set()
        logger.info("Cancellation requested for batch %s", task_id)
        return True

    def get_task(self, task_id: str) -> Optional[BatchTask]:
        return self.tasks.find_by_id(task_id)

    def list_tasks(self, limit: int = 50, offset: int = 0, status: Optional[str] = None) -> list[BatchTask]:
        if status is not None and status not in BATCH_STATUSES:
            raise ValidationError(f"Unknown batch status: {status}")
        return self.tasks.find_all(limit=limit, offset=offset, status=status)

    def get_stats(self) -> dict[str, int]:
        stats = {"total": self.tasks.get_count()}
        for status in BATCH_STATUSES:
            stats[status] = self.tasks.get_count(status)
        return stats

    def delete_batch(self, task_id: str, purge_reports: bool = False) -> int:
        """Delete a batch and its items; reports are kept unless ``purge_reports``."""
        task = self._require_task(task_id)
        if task_id in self._cancel_events:
            raise ValidationError(f"Batch {task_id} is running; cancel it first")
        if purge_reports:
            for item in task.items:
                if item.report_id:
                    self.delete_report(item.report_id)
        return self.tasks.delete_by_id(task_id)

    def export_batch(self, task_id: str, output_path: str | Path) -> Path:
        task = self._require_task(task_id)
        reports = [r for r in (self.reports.find_by_id(i.report_id) for i in task.items if i.report_id) if r]
        return write_batch_export(task, reports, Path(output_path))

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    def get_report(self, report_id: str) -> Optional[Report]:
        return self.reports.find_by_id(report_id)

    def list_reports(self, limit: int = 50, offset: int = 0,
                     batch_task_id: Optional[str] = None) -> list[Report]:
        return self.reports.find_all(limit=limit, offset=offset, batch_task_id=batch_task_id)

    def delete_report(self, report_id: str) -> int:
        deleted = self.reports.delete_by_id(report_id)
        if deleted:
            self.assets.remove(report_id)
        return deleted

    # ------------------------------------------------------------------
    # Scripts
    # ------------------------------------------------------------------

    def add_script(self, name: str, actions: list[Action | dict[str, Any]], description: str = "") -> Script:
        if not name or not name.strip():
            raise ValidationError("Script name is required")
        parsed = [a if isinstance(a, Action) else Action.model_validate(a) for a in actions]
        for index, action in enumerate(parsed):
            if action.action_type not in ACTION_TYPES:
                raise ValidationError(
                    f"Action {index + 1}: unknown type '{action.action_type}' "
                    f"(expected one of {', '.join(ACTION_TYPES)})"
                )
        now = time.time()
        script = Script(
            id=f"script_{uuid.uuid4().hex[:8]}",
            name=name.strip(),
            description=description,
            actions=parsed,
            created_at=now,
            updated_at=now,
        )
        self.scripts.create(script)
        return script

    def get_script(self, script_id: str) -> Optional[Script]:
        return self.scripts.find_by_id(script_id)

    def list_scripts(self, limit: int = 50, offset: int = 0) -> list[Script]:
        return self.scripts.find_all(limit=limit, offset=offset)

    def delete_script(self, script_id: str) -> int:
        return self.scripts.delete_by_id(script_id)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_url(url: str) -> None:
        if not url or not is_valid_page_url(url):
            raise ValidationError(f"Invalid page URL: {url!r}")

    @staticmethod
    def _validate_design(source: str) -> None:
        if is_remote_source(source):
            if not is_valid_page_url(source):
                raise ValidationError(f"Invalid design URL: {source!r}")
            return
        if not Path(source).expanduser().is_file():
            raise ValidationError(f"Design image not found: {source}")

    @staticmethod
    def _validate_compare_config(compare_config: CompareConfig) -> None:
        if compare_config.engine != "pixel":
            raise ValidationError(f"Unsupported compare engine: {compare_config.engine}")
        if compare_config.tolerance is not None and not 0 <= compare_config.tolerance <= 100:
            raise ValidationError("tolerance must be between 0 and 100")
        if compare_config.ai_provider is not None and compare_config.ai_provider not in DEFAULT_MODELS:
            raise ValidationError(f"Unknown AI provider: {compare_config.ai_provider}")

    def _require_task(self, task_id: str) -> BatchTask:
        task = self.tasks.find_by_id(task_id)
        if task is None:
            raise ValidationError(f"Batch task not found: {task_id}")
        return task

    def _require_script(self, script_id: str) -> Script:
        script = self.scripts.find_by_id(script_id)
        if script is None:
            raise ValidationError(f"Script not found: {script_id}")
        return script
