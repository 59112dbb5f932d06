"""On-disk image assets for reports, addressed by web-relative paths."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)

DESIGN = "design.png"
ACTUAL = "actual.png"
DIFF = "diff.png"
DIFF_ANNOTATED = "diff_annotated.png"


class ReportAssets:
    """Lays out ``<data_dir>/reports/<report_id>/<name>.png``.

    Filesystem paths stay inside the process; only ``web_path`` values
    (``<public_prefix>/<report_id>/<name>``) are stored on reports.
    """

    def __init__(self, data_dir: str | Path, public_prefix: str = "/reports"):
        self.root = Path(data_dir) / "reports"
        self.public_prefix = "/" + public_prefix.strip("/")

    def report_dir(self, report_id: str) -> Path:
        path = self.root / report_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    def path(self, report_id: str, name: str) -> Path:
        return self.report_dir(report_id) / name

    def web_path(self, report_id: str, name: str) -> str:
        return f"{self.public_prefix}/{report_id}/{name}"

    def remove(self, report_id: str) -> None:
        path = self.root / report_id
        if path.exists():
            shutil.rmtree(path)
            logger.debug("Removed assets for report %s", report_id)
