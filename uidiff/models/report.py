"""Report data structures — one single-page visual comparison."""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ReportStatus = Literal["pending", "processing", "completed", "failed"]
TERMINAL_REPORT_STATUSES = ("completed", "failed")

RegionType = Literal["layout", "major", "medium", "minor"]
Priority = Literal["critical", "high", "medium", "low"]
FixType = Literal["color", "font", "spacing", "layout"]


class DiffRegion(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: int  # position in descending-score order, 0-based
    x: int
    y: int
    width: int
    height: int
    pixel_count: int
    type: RegionType
    priority: Priority
    score: float
    description: str = ""

    @property
    def area(self) -> int:
        return self.width * self.height


class CSSFix(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    priority: Priority
    type: FixType
    selector: str = Field(min_length=1)
    current_css: str = Field(default="", alias="currentCSS")
    suggested_css: str = Field(min_length=1, alias="suggestedCSS")
    description: str = ""
    impact: Optional[str] = None
    region_id: Optional[int] = None  # soft reference to DiffRegion.id


class ReportImages(BaseModel):
    design: str = ""  # web-relative paths only
    actual: str = ""
    diff: str = ""


class Report(BaseModel):
    id: str
    created_at: float
    url: str
    design_source: str = ""
    status: ReportStatus = "pending"
    similarity: Optional[float] = None
    diff_pixel_count: Optional[int] = None
    total_pixel_count: Optional[int] = None
    images: Optional[ReportImages] = None
    diff_regions: list[DiffRegion] = Field(default_factory=list)
    fixes: Optional[list[CSSFix]] = None
    error: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)
    progress: int = 0
    step_text: str = ""
    batch_task_id: Optional[str] = None
    updated_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_REPORT_STATUSES

    def to_snapshot(self) -> dict[str, Any]:
        """Outward-facing view of the report (camelCase, web paths only)."""
        return ReportSnapshot(
            id=self.id,
            timestamp=self.created_at,
            url=self.url,
            status=self.status,
            similarity=self.similarity,
            diff_pixels=self.diff_pixel_count,
            total_pixels=self.total_pixel_count,
            images=self.images or ReportImages(),
            diff_regions=self.diff_regions,
            fixes=self.fixes or [],
            error=self.error,
            warnings=self.warnings,
            progress=self.progress,
            step_text=self.step_text,
        ).model_dump(by_alias=True, exclude_none=True)


class ReportSnapshot(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    timestamp: float
    url: str
    status: ReportStatus
    similarity: Optional[float] = None
    diff_pixels: Optional[int] = None
    total_pixels: Optional[int] = None
    images: ReportImages
    diff_regions: list[DiffRegion] = Field(default_factory=list)
    fixes: list[CSSFix] = Field(default_factory=list)
    error: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)
    progress: int = 0
    step_text: str = ""
