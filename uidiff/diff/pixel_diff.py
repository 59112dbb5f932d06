"""Pixel diff engine — compares two screenshots and builds a diff mask."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
from PIL import Image, UnidentifiedImageError
from scipy import ndimage

from uidiff.errors import DiffComputeError
from uidiff.models.config import DiffConfig

logger = logging.getLogger(__name__)

DIFF_COLOR = (255, 0, 0)
IGNORED_COLOR = (40, 40, 120)


@dataclass
class DiffOptions:
    tolerance: float = 10.0
    ignore_antialiasing: bool = False
    ignore_regions: list[tuple[int, int, int, int]] = field(default_factory=list)  # x, y, w, h
    aa_edge_threshold: int = 48
    aa_max_delta: int = 96

    @classmethod
    def from_config(cls, config: DiffConfig) -> "DiffOptions":
        return cls(
            tolerance=config.tolerance,
            ignore_antialiasing=config.ignore_antialiasing,
            ignore_regions=[(r.x, r.y, r.width, r.height) for r in config.ignore_regions],
            aa_edge_threshold=config.aa_edge_threshold,
            aa_max_delta=config.aa_max_delta,
        )


@dataclass
class DiffResult:
    similarity: float
    diff_pixel_count: int
    total_pixel_count: int
    width: int
    height: int
    mask: np.ndarray = field(repr=False)  # bool, shape (height, width)
    diff_image: Image.Image = field(repr=False)

    def save_diff_image(self, path: str | Path) -> str:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.diff_image.save(str(path))
        return str(path)


def load_image(source: Image.Image | str | Path) -> Image.Image:
    """Open an image as RGB, raising DiffComputeError if it can't be read."""
    if isinstance(source, Image.Image):
        return source.convert("RGB")
    try:
        with Image.open(source) as img:
            img.load()
            return img.convert("RGB")
    except (FileNotFoundError, UnidentifiedImageError, OSError, ValueError) as e:
        raise DiffComputeError(f"Cannot read image '{source}': {e}") from e


def tolerance_to_threshold(tolerance: float) -> int:
    """Map a 0-100 tolerance to a per-channel color distance (0-255)."""
    tolerance = min(100.0, max(0.0, tolerance))
    return int(round(tolerance / 100.0 * 255))


def compare(
    image_a: Image.Image | str | Path,
    image_b: Image.Image | str | Path,
    options: DiffOptions | None = None,
) -> DiffResult:
    """Compare two images pixel by pixel.

    Only the common box (min width x min height) is compared; pixels outside
    it or inside an ignore region count toward neither the diff nor the total.
    ``image_b`` is the actual screenshot and is used as the diff backdrop.
    """
    options = options or DiffOptions()
    a = load_image(image_a)
    b = load_image(image_b)

    width = min(a.width, b.width)
    height = min(a.height, b.height)
    if a.size != b.size:
        logger.debug("Size mismatch %s vs %s, comparing common box %dx%d",
                     a.size, b.size, width, height)

    arr_a = np.asarray(a.crop((0, 0, width, height)), dtype=np.int16)
    arr_b = np.asarray(b.crop((0, 0, width, height)), dtype=np.int16)

    comparable = _comparable_mask(width, height, options.ignore_regions)
    if width == 0 or height == 0:
        delta = np.zeros((height, width), dtype=np.int16)
    else:
        delta = np.abs(arr_a - arr_b).max(axis=2)

    mask = (delta > tolerance_to_threshold(options.tolerance)) & comparable

    if options.ignore_antialiasing and mask.any():
        edges = _edge_map(arr_a, options.aa_edge_threshold) | _edge_map(arr_b, options.aa_edge_threshold)
        excused = mask & edges & (delta <= options.aa_max_delta)
        logger.debug("Antialiasing mode excused %d pixels", int(excused.sum()))
        mask &= ~excused

    diff_count = int(mask.sum())
    total = int(comparable.sum())
    if total == 0:
        similarity = 100.0
    else:
        similarity = min(100.0, max(0.0, 100.0 * (1.0 - diff_count / total)))

    return DiffResult(
        similarity=similarity,
        diff_pixel_count=diff_count,
        total_pixel_count=total,
        width=width,
        height=height,
        mask=mask,
        diff_image=_render_diff(arr_b, mask, comparable),
    )


def _comparable_mask(width: int, height: int, ignore_regions) -> np.ndarray:
    comparable = np.ones((height, width), dtype=bool)
    for x, y, w, h in ignore_regions:
        if w <= 0 or h <= 0:
            continue
        x0, y0 = max(0, int(x)), max(0, int(y))
        x1, y1 = min(width, int(x + w)), min(height, int(y + h))
        if x0 < x1 and y0 < y1:
            comparable[y0:y1, x0:x1] = False
    return comparable


def _edge_map(arr: np.ndarray, threshold: int) -> np.ndarray:
    """Pixels with any 8-neighbour differing by more than ``threshold``."""
    # Per-channel 3x3 extremes; the centre itself contributes a zero delta
    high = ndimage.maximum_filter(arr, size=(3, 3, 1), mode="nearest")
    low = ndimage.minimum_filter(arr, size=(3, 3, 1), mode="nearest")
    return np.maximum(high - arr, arr - low).max(axis=2) > threshold


def _render_diff(actual: np.ndarray, mask: np.ndarray, comparable: np.ndarray) -> Image.Image:
    """Dimmed actual image with differing pixels in red, ignored areas tinted."""
    h, w = mask.shape
    if h == 0 or w == 0:
        return Image.new("RGB", (w, h))
    canvas = (actual // 3).astype(np.uint8)
    canvas[~comparable] = IGNORED_COLOR
    canvas[mask] = DIFF_COLOR
    return Image.fromarray(canvas, "RGB")
