"""Batch task data structures — a named group of comparisons run together."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field

BatchStatus = Literal["pending", "running", "completed", "failed", "partial"]
TERMINAL_BATCH_STATUSES = ("completed", "failed", "partial")

ItemStatus = Literal["pending", "processing", "completed", "failed"]
TERMINAL_ITEM_STATUSES = ("completed", "failed")


class CompareConfig(BaseModel):
    """Per-batch overrides applied on top of the global config."""
    engine: str = "pixel"
    ai_provider: Optional[str] = None
    ai_model: Optional[str] = None
    ignore_antialiasing: Optional[bool] = None
    tolerance: Optional[float] = None
    full_page: Optional[bool] = None


class BatchTotals(BaseModel):
    total: int = 0
    success: int = 0
    failed: int = 0


class BatchTaskItem(BaseModel):
    url: str
    design_source: Optional[str] = None  # overrides the task-level design
    status: ItemStatus = "pending"
    report_id: Optional[str] = None
    similarity: Optional[float] = None
    diff_count: int = 0
    error: Optional[str] = None


class BatchTask(BaseModel):
    id: str
    name: str
    urls: list[str] = Field(default_factory=list)
    status: BatchStatus = "pending"
    totals: BatchTotals = Field(default_factory=BatchTotals)
    avg_similarity: float = 0.0
    total_diff_count: int = 0
    progress: int = 0
    step_text: str = ""
    design_source: Optional[str] = None
    compare_config: CompareConfig = Field(default_factory=CompareConfig)
    script_id: Optional[str] = None
    cancelled: bool = False
    created_at: float = 0.0
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    duration_seconds: Optional[float] = None
    items: list[BatchTaskItem] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BATCH_STATUSES


def summarize_items(items: list[BatchTaskItem]) -> dict:
    """Recompute aggregate fields of a batch from its items.

    Totals are always derived from item state, never maintained as counters.
    """
    completed = [i for i in items if i.status == "completed"]
    failed = [i for i in items if i.status == "failed"]
    similarities = [i.similarity for i in completed if i.similarity is not None]
    avg = round(sum(similarities) / len(similarities), 2) if similarities else 0.0
    return {
        "totals": BatchTotals(total=len(items), success=len(completed), failed=len(failed)),
        "avg_similarity": avg,
        "total_diff_count": sum(i.diff_count for i in completed),
    }


def terminal_status(totals: BatchTotals) -> BatchStatus:
    """Terminal batch status once every item has finished."""
    if totals.failed == 0:
        return "completed"
    if totals.success == 0:
        return "failed"
    return "partial"
