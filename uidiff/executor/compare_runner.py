"""Single-item comparison flow: capture, diff, regions, fix suggestions."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from PIL import Image, UnidentifiedImageError

from uidiff.ai.fix_suggester import FixSuggestionGenerator
from uidiff.auth.session import AuthSessionProvider
from uidiff.capture.capturer import CaptureOptions, ScreenshotCapturer
from uidiff.diff.pixel_diff import DiffOptions, DiffResult, compare
from uidiff.diff.region_analyzer import RegionOptions, analyze, annotate_regions
from uidiff.errors import (
    AIError,
    AuthError,
    CaptureError,
    DiffComputeError,
    PersistenceError,
    UIDiffError,
)
from uidiff.executor.report_lifecycle import ReportLifecycle
from uidiff.models.batch_task import CompareConfig
from uidiff.models.config import AuthConfig, UIDiffConfig, ViewportConfig
from uidiff.models.report import CSSFix, DiffRegion, ReportImages
from uidiff.models.script import Action
from uidiff.storage import assets as asset_names
from uidiff.storage.assets import ReportAssets

logger = logging.getLogger(__name__)

CANCELLED = "Cancelled"

# Login navigates, fills, submits and verifies; each step is bounded by login_timeout_ms
AUTH_STEPS = 4
AUTH_TIMEOUT_GRACE_SECONDS = 15.0

# Capture failures meaning the cached session is no longer accepted
SESSION_REJECTED = ("HTTP 401", "HTTP 403")


class _Cancelled(Exception):
    pass


@dataclass
class CompareRequest:
    url: str
    design_source: str
    batch_task_id: Optional[str] = None
    overrides: Optional[CompareConfig] = None
    script: list[Action] = field(default_factory=list)
    viewport: Optional[ViewportConfig] = None  # None: derive from config / design


@dataclass
class ItemOutcome:
    """Tagged result of one comparison; never an exception."""

    url: str
    status: str  # completed | failed
    report_id: Optional[str] = None
    similarity: Optional[float] = None
    diff_count: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "completed"

    @classmethod
    def failed(cls, url: str, error: str, report_id: Optional[str] = None) -> "ItemOutcome":
        return cls(url=url, status="failed", report_id=report_id, error=error)

    def item_patch(self) -> dict:
        return {
            "status": self.status,
            "report_id": self.report_id,
            "similarity": self.similarity,
            "diff_count": self.diff_count,
            "error": self.error,
        }


def effective_config(config: UIDiffConfig, overrides: CompareConfig | None) -> UIDiffConfig:
    """Apply per-batch overrides on top of the global config."""
    if overrides is None:
        return config
    diff_update = {}
    if overrides.tolerance is not None:
        diff_update["tolerance"] = overrides.tolerance
    if overrides.ignore_antialiasing is not None:
        diff_update["ignore_antialiasing"] = overrides.ignore_antialiasing
    ai_update = {}
    if overrides.ai_provider is not None:
        ai_update["provider"] = overrides.ai_provider
        ai_update["model"] = ""
    if overrides.ai_model is not None:
        ai_update["model"] = overrides.ai_model
    capture_update = {}
    if overrides.full_page is not None:
        capture_update["full_page"] = overrides.full_page
    return config.model_copy(update={
        "diff": config.diff.model_copy(update=diff_update),
        "ai": config.ai.model_copy(update=ai_update),
        "capture": config.capture.model_copy(update=capture_update),
    })


def is_remote_source(source: str) -> bool:
    return urlparse(source).scheme.lower() in ("http", "https")


def auth_timeout_seconds(auth: AuthConfig | None) -> float:
    """Upper bound on obtaining a session, including waits for a pooled browser."""
    if auth is None:
        return AUTH_TIMEOUT_GRACE_SECONDS
    return AUTH_STEPS * auth.login_timeout_ms / 1000.0 + AUTH_TIMEOUT_GRACE_SECONDS


class CompareRunner:
    """Runs one URL against one design and drives its Report to a terminal state."""

    def __init__(
        self,
        config: UIDiffConfig,
        lifecycle: ReportLifecycle,
        capturer: ScreenshotCapturer,
        auth_provider: AuthSessionProvider,
        fix_suggester: FixSuggestionGenerator,
        assets: ReportAssets,
    ):
        self.config = config
        self.lifecycle = lifecycle
        self.capturer = capturer
        self.auth_provider = auth_provider
        self.fix_suggester = fix_suggester
        self.assets = assets

    async def run(
        self,
        request: CompareRequest,
        cancel_event: asyncio.Event | None = None,
    ) -> ItemOutcome:
        """Run the full flow. Failures end up on the report and in the outcome."""
        try:
            report = await self.lifecycle.create(request.url, request.design_source, request.batch_task_id)
        except PersistenceError as e:
            logger.error("Could not create report for %s: %s", request.url, e)
            return ItemOutcome.failed(request.url, f"Persistence error: {e}")

        try:
            return await self._run_stages(report.id, request, cancel_event)
        except _Cancelled:
            return await self._fail(report.id, request.url, CANCELLED)
        except AuthError as e:
            return await self._fail(report.id, request.url, f"Authentication failed: {e}")
        except CaptureError as e:
            return await self._fail(report.id, request.url, e.reason)
        except DiffComputeError as e:
            return await self._fail(report.id, request.url, f"Diff failed: {e}")
        except AIError as e:
            return await self._fail(report.id, request.url, f"AI analysis failed: {e.cause}")
        except UIDiffError as e:
            return await self._fail(report.id, request.url, str(e))
        except asyncio.CancelledError:
            await self._fail(report.id, request.url, CANCELLED)
            raise
        except Exception as e:
            logger.exception("Unexpected error comparing %s", request.url)
            return await self._fail(report.id, request.url, f"Internal error: {type(e).__name__}: {e}")

    async def _fail(self, report_id: str, url: str, reason: str) -> ItemOutcome:
        try:
            await self.lifecycle.fail(report_id, reason)
        except PersistenceError as e:
            logger.error("Could not record failure of report %s: %s", report_id, e)
        return ItemOutcome.failed(url, reason, report_id=report_id)

    async def _run_stages(
        self,
        report_id: str,
        request: CompareRequest,
        cancel_event: asyncio.Event | None,
    ) -> ItemOutcome:
        config = effective_config(self.config, request.overrides)
        warnings: list[str] = []

        def checkpoint() -> None:
            if cancel_event is not None and cancel_event.is_set():
                raise _Cancelled()

        # -- capture -----------------------------------------------------
        checkpoint()
        await self.lifecycle.step(report_id, "capturing")
        handle = await self._bounded(
            self.auth_provider.acquire(config.auth), auth_timeout_seconds(config.auth), "Login",
            error_cls=AuthError,
        )
        options = CaptureOptions.from_config(config.capture, script=request.script)
        design_path = self.assets.path(report_id, asset_names.DESIGN)
        actual_path = self.assets.path(report_id, asset_names.ACTUAL)

        viewport = request.viewport
        if is_remote_source(request.design_source):
            viewport = viewport or config.viewport
            design = await self.capturer.capture(
                request.design_source, viewport, handle, options, design_path,
            )
            if isinstance(design, CaptureError):
                raise CaptureError(request.design_source, f"Design capture failed: {design.reason}")
        else:
            design_width = self._import_design(request.design_source, design_path)
            viewport = viewport or ViewportConfig(
                width=design_width, height=config.viewport.height, name=config.viewport.name,
            )

        checkpoint()
        actual = await self.capturer.capture(request.url, viewport, handle, options, actual_path)
        if isinstance(actual, CaptureError):
            if config.auth is not None and actual.reason in SESSION_REJECTED:
                logger.info("Session rejected by %s, dropping it", request.url)
                self.auth_provider.invalidate(config.auth)
            raise actual

        # -- pixel diff --------------------------------------------------
        checkpoint()
        await self.lifecycle.step(report_id, "comparing")
        diff_path = self.assets.path(report_id, asset_names.DIFF)
        diff = await self._bounded(
            asyncio.to_thread(self._compute_diff, design_path, actual_path, config, diff_path),
            config.diff_timeout_seconds,
            "Pixel diff",
        )
        images = ReportImages(
            design=self.assets.web_path(report_id, asset_names.DESIGN),
            actual=self.assets.web_path(report_id, asset_names.ACTUAL),
            diff=self.assets.web_path(report_id, asset_names.DIFF),
        )

        # -- regions -----------------------------------------------------
        checkpoint()
        await self.lifecycle.step(
            report_id, "analyzing-regions",
            similarity=diff.similarity,
            diff_pixel_count=diff.diff_pixel_count,
            total_pixel_count=diff.total_pixel_count,
            images=images,
        )
        regions = await self._bounded(
            asyncio.to_thread(self._compute_regions, diff, config, report_id),
            config.diff_timeout_seconds,
            "Region analysis",
        )

        # -- fix suggestions ---------------------------------------------
        checkpoint()
        await self.lifecycle.step(report_id, "ai-analyzing", diff_regions=regions)
        fixes = await self._suggest_fixes(
            request.url, design_path, actual_path, diff_path, regions, diff, config, warnings,
        )

        checkpoint()
        await self.lifecycle.complete(report_id, fixes=fixes, warnings=warnings)
        logger.info("Report %s completed: %s similarity=%.2f%% regions=%d fixes=%d",
                    report_id, request.url, diff.similarity, len(regions), len(fixes))
        return ItemOutcome(
            url=request.url,
            status="completed",
            report_id=report_id,
            similarity=diff.similarity,
            diff_count=diff.diff_pixel_count,
        )

    async def _suggest_fixes(
        self,
        url: str,
        design_path: Path,
        actual_path: Path,
        diff_path: Path,
        regions: list[DiffRegion],
        diff: DiffResult,
        config: UIDiffConfig,
        warnings: list[str],
    ) -> list[CSSFix]:
        if not regions:
            return []
        if not config.ai.enabled:
            warnings.append("AI suggestions disabled")
            return []
        try:
            return await self._bounded(
                asyncio.to_thread(
                    self.fix_suggester.suggest_fixes,
                    design_path, actual_path, regions, config.ai,
                    diff_image=diff_path,
                    url=url,
                    similarity=diff.similarity,
                    diff_pixels=diff.diff_pixel_count,
                ),
                config.ai_timeout_seconds,
                "AI analysis",
                error_cls=lambda msg: AIError(config.ai.provider, msg),
            )
        except AIError as e:
            if not e.soft:
                raise
            logger.warning("Fix suggestions skipped for %s: %s", url, e.cause)
            warnings.append(f"AI suggestions unavailable: {e.cause}")
            return []

    @staticmethod
    async def _bounded(awaitable, timeout: float, stage: str, error_cls=DiffComputeError):
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            raise error_cls(f"{stage} timed out after {timeout:.0f}s") from None

    @staticmethod
    def _import_design(source: str, target: Path) -> int:
        """Copy a local design image into the report dir; returns its width."""
        path = Path(source).expanduser()
        if not path.is_file():
            raise DiffComputeError(f"Design image not found: {source}")
        try:
            with Image.open(path) as img:
                width = img.width
                if img.format == "PNG":
                    shutil.copyfile(path, target)
                else:
                    img.convert("RGB").save(target, format="PNG")
        except (UnidentifiedImageError, OSError) as e:
            raise DiffComputeError(f"Cannot read design image '{source}': {e}") from e
        return width

    @staticmethod
    def _compute_diff(design_path: Path, actual_path: Path, config: UIDiffConfig, diff_path: Path) -> DiffResult:
        result = compare(design_path, actual_path, DiffOptions.from_config(config.diff))
        result.save_diff_image(diff_path)
        return result

    def _compute_regions(self, diff: DiffResult, config: UIDiffConfig, report_id: str) -> list[DiffRegion]:
        regions = analyze(diff.mask, (diff.width, diff.height), RegionOptions.from_config(config.regions))
        if regions:
            annotated = annotate_regions(diff.diff_image, regions)
            annotated.save(self.assets.path(report_id, asset_names.DIFF_ANNOTATED))
        return regions
