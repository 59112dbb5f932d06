"""Diff region analyzer — clusters a diff mask into scored rectangles."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import numpy as np
from PIL import Image, ImageDraw
from scipy import ndimage

from uidiff.models.config import RegionConfig
from uidiff.models.report import DiffRegion

logger = logging.getLogger(__name__)

# (minimum score, region type, priority), checked top-down.
SEVERITY_THRESHOLDS: tuple[tuple[float, str, str], ...] = (
    (80.0, "layout", "critical"),
    (50.0, "major", "high"),
    (20.0, "medium", "medium"),
    (0.0, "minor", "low"),
)

# Score weights: bounding-box coverage of the image vs. raw changed-pixel mass.
SIZE_WEIGHT = 120.0
SIZE_CAP = 60.0
MASS_WEIGHT = 10.0
MASS_CAP = 40.0

# A merge is refused when it would produce a mostly empty box.
MERGE_MIN_DENSITY = 0.05
MERGE_MAX_AREA_GROWTH = 1.5

ANNOTATION_COLOR = (255, 200, 0)


@dataclass
class RegionOptions:
    connectivity: int = 8
    min_pixel_count: int = 20
    merge_distance: int = 8
    padding: int = 0
    max_regions: int = 50

    @classmethod
    def from_config(cls, config: RegionConfig) -> "RegionOptions":
        return cls(
            connectivity=config.connectivity,
            min_pixel_count=config.min_pixel_count,
            merge_distance=config.merge_distance,
            padding=config.padding,
            max_regions=config.max_regions,
        )


@dataclass
class _Box:
    x0: int
    y0: int
    x1: int  # exclusive
    y1: int  # exclusive
    pixel_count: int

    @property
    def area(self) -> int:
        return (self.x1 - self.x0) * (self.y1 - self.y0)

    def gap(self, other: "_Box") -> float:
        dx = max(0, self.x0 - other.x1, other.x0 - self.x1)
        dy = max(0, self.y0 - other.y1, other.y0 - self.y1)
        return math.hypot(dx, dy)

    def union(self, other: "_Box") -> "_Box":
        return _Box(
            min(self.x0, other.x0), min(self.y0, other.y0),
            max(self.x1, other.x1), max(self.y1, other.y1),
            self.pixel_count + other.pixel_count,
        )


def analyze(
    mask: np.ndarray,
    image_size: tuple[int, int],
    options: RegionOptions | None = None,
) -> list[DiffRegion]:
    """Cluster a boolean diff mask into regions, most significant first."""
    options = options or RegionOptions()
    width, height = image_size
    if not mask.any():
        return []

    boxes = find_components(mask, options.connectivity)
    candidates = [b for b in boxes if b.pixel_count >= options.min_pixel_count]
    logger.debug("Found %d components, %d above noise threshold (%d px)",
                 len(boxes), len(candidates), options.min_pixel_count)

    if options.padding:
        candidates = [_pad(b, options.padding, width, height) for b in candidates]
    merged = merge_nearby(candidates, options.merge_distance)

    image_area = width * height
    scored = []
    for box in merged:
        score = score_region(box.pixel_count, box.area, image_area)
        region_type, priority = classify_score(score)
        scored.append((score, region_type, priority, box))

    scored.sort(key=lambda s: (-s[0], s[3].y0, s[3].x0, -s[3].pixel_count, s[3].x1, s[3].y1))
    scored = scored[:options.max_regions]

    regions = [
        DiffRegion(
            id=index,
            x=box.x0,
            y=box.y0,
            width=box.x1 - box.x0,
            height=box.y1 - box.y0,
            pixel_count=box.pixel_count,
            type=region_type,
            priority=priority,
            score=score,
            description=_describe(region_type, box),
        )
        for index, (score, region_type, priority, box) in enumerate(scored)
    ]
    logger.info("Region analysis: %d regions (%d before merge)", len(regions), len(candidates))
    return regions


def find_components(mask: np.ndarray, connectivity: int = 8) -> list[_Box]:
    """Connected components of the mask as boxes, in row-major order."""
    structure = ndimage.generate_binary_structure(2, 2 if connectivity == 8 else 1)
    labels, count = ndimage.label(mask, structure=structure)
    if count == 0:
        return []
    pixel_counts = np.bincount(labels.ravel(), minlength=count + 1)

    # Labels are assigned in raster order of each component's first pixel
    boxes = []
    for label_id, found in enumerate(ndimage.find_objects(labels), start=1):
        if found is None:
            continue
        rows, cols = found
        boxes.append(_Box(cols.start, rows.start, cols.stop, rows.stop, int(pixel_counts[label_id])))
    return boxes


def merge_nearby(boxes: list[_Box], max_distance: int) -> list[_Box]:
    """Merge boxes closer than ``max_distance`` unless the result is too sparse."""
    current = sorted(boxes, key=lambda b: (b.y0, b.x0, b.y1, b.x1))
    merged_any = True
    while merged_any and len(current) > 1:
        merged_any = False
        next_round: list[_Box] = []
        used: set[int] = set()
        for i, box in enumerate(current):
            if i in used:
                continue
            acc = box
            for j in range(i + 1, len(current)):
                if j in used:
                    continue
                other = current[j]
                if acc.gap(other) >= max_distance:
                    continue
                candidate = acc.union(other)
                area_before = acc.area + other.area
                density = candidate.pixel_count / candidate.area if candidate.area else 0.0
                if density > MERGE_MIN_DENSITY or candidate.area < area_before * MERGE_MAX_AREA_GROWTH:
                    acc = candidate
                    used.add(j)
                    merged_any = True
            next_round.append(acc)
        current = sorted(next_round, key=lambda b: (b.y0, b.x0, b.y1, b.x1))
    return current


def score_region(pixel_count: int, area: int, image_area: int) -> float:
    """Score 0-100 from bounding-box coverage and changed-pixel count."""
    ratio = area / image_area if image_area else 0.0
    size_score = min(SIZE_CAP, SIZE_WEIGHT * math.sqrt(ratio))
    mass_score = min(MASS_CAP, MASS_WEIGHT * math.log10(pixel_count + 1))
    return round(min(100.0, size_score + mass_score), 2)


def classify_score(score: float) -> tuple[str, str]:
    for minimum, region_type, priority in SEVERITY_THRESHOLDS:
        if score >= minimum:
            return region_type, priority
    return SEVERITY_THRESHOLDS[-1][1], SEVERITY_THRESHOLDS[-1][2]


def annotate_regions(diff_image: Image.Image, regions: list[DiffRegion]) -> Image.Image:
    """Draw numbered region boxes over a copy of the diff image."""
    annotated = diff_image.convert("RGB").copy()
    draw = ImageDraw.Draw(annotated)
    for region in regions:
        draw.rectangle(
            [region.x, region.y, region.x + region.width - 1, region.y + region.height - 1],
            outline=ANNOTATION_COLOR,
            width=2,
        )
        draw.text((region.x + 2, max(0, region.y - 12)), str(region.id), fill=ANNOTATION_COLOR)
    return annotated


def _pad(box: _Box, padding: int, width: int, height: int) -> _Box:
    return _Box(
        max(0, box.x0 - padding), max(0, box.y0 - padding),
        min(width, box.x1 + padding), min(height, box.y1 + padding),
        box.pixel_count,
    )


def _describe(region_type: str, box: _Box) -> str:
    return (f"{region_type.capitalize()} difference at ({box.x0}, {box.y0}), "
            f"{box.x1 - box.x0}x{box.y1 - box.y0}px, {box.pixel_count} changed pixels")
