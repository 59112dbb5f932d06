"""Fix suggestion generator — asks a vision model for CSS fixes per diff region."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable, Optional

from PIL import Image
from pydantic import ValidationError as PydanticValidationError

from uidiff.ai.client import (
    ModelCallError,
    VisionModel,
    create_vision_model,
    encode_image,
    parse_json_payload,
)
from uidiff.ai.prompts.fixes import FIX_SYSTEM_PROMPT, build_fix_prompt
from uidiff.errors import AIError
from uidiff.models.config import AIConfig
from uidiff.models.report import CSSFix, DiffRegion

logger = logging.getLogger(__name__)

TRANSPORT_RETRY_DELAY_SECONDS = 1.0

# Accepted spellings of each CSSFix field, compared lower-cased without underscores.
_FIELD_ALIASES = {
    "priority": "priority",
    "type": "type",
    "selector": "selector",
    "currentcss": "current_css",
    "suggestedcss": "suggested_css",
    "description": "description",
    "impact": "impact",
    "regionid": "region_id",
}


class FixSuggestionGenerator:
    """Turns a design/actual/diff triple plus regions into validated CSS fixes."""

    def __init__(
        self,
        model_factory: Callable[[AIConfig, Optional[Path]], VisionModel] = create_vision_model,
        debug_dir: Optional[Path] = None,
    ):
        self._model_factory = model_factory
        self._debug_dir = debug_dir

    def suggest_fixes(
        self,
        design_image: Image.Image | str | Path,
        actual_image: Image.Image | str | Path,
        regions: list[DiffRegion],
        config: AIConfig,
        diff_image: Image.Image | str | Path | None = None,
        url: str = "",
        similarity: float | None = None,
        diff_pixels: int | None = None,
    ) -> list[CSSFix]:
        """Return fixes for the most significant regions.

        Returns [] without calling the model when there are no regions.
        Raises AIError(soft=True) when the model is unconfigured, the answer
        is unparseable, or no entry survives validation; AIError(soft=False)
        when the provider call itself fails.
        """
        if not regions:
            return []

        model = self._model_factory(config, self._debug_dir)
        if not model.is_configured():
            raise AIError(config.provider, "no API key or endpoint configured", soft=True)

        top = sorted(regions, key=lambda r: (-r.score, r.id))[:config.max_regions]
        region_payload = [
            r.model_dump(include={"id", "x", "y", "width", "height", "pixel_count", "type", "priority"},
                         by_alias=True)
            for r in top
        ]
        user_message = build_fix_prompt(url, similarity, diff_pixels, region_payload)
        images = [
            ("DESIGN", encode_image(design_image)),
            ("ACTUAL", encode_image(actual_image)),
        ]
        if diff_image is not None:
            images.append(("DIFF", encode_image(diff_image)))

        text = self._call_with_retry(model, config.provider, user_message, images)

        try:
            data = parse_json_payload(text)
        except ValueError as e:
            raise AIError(config.provider, f"unparseable response: {e}", soft=True) from e

        fixes = parse_fixes(data, {r.id for r in regions})
        if not fixes:
            raise AIError(config.provider, "response contained no valid fixes", soft=True)
        logger.info("AI suggested %d fixes for %d regions", len(fixes), len(top))
        return fixes

    def _call_with_retry(
        self,
        model: VisionModel,
        provider: str,
        user_message: str,
        images: list[tuple[str, str]],
    ) -> str:
        """One call, plus one retry on transport failure."""
        for attempt in range(2):
            try:
                return model.complete_with_images(FIX_SYSTEM_PROMPT, user_message, images)
            except ModelCallError as e:
                if e.retryable and attempt == 0:
                    logger.warning("Transport error from %s, retrying once: %s", provider, e)
                    time.sleep(TRANSPORT_RETRY_DELAY_SECONDS)
                    continue
                raise AIError(provider, str(e)) from e
        raise AIError(provider, "no response")


def parse_fixes(data: Any, region_ids: set[int] | None = None) -> list[CSSFix]:
    """Validate model output entry by entry, dropping anything malformed."""
    if isinstance(data, dict):
        data = data.get("fixes", [])
    if not isinstance(data, list):
        logger.warning("Fix payload is %s, expected a list", type(data).__name__)
        return []

    fixes = []
    for index, entry in enumerate(data):
        if not isinstance(entry, dict):
            logger.debug("Dropping fix #%d: not an object", index)
            continue
        normalized = _normalize_entry(entry)
        try:
            fix = CSSFix(**normalized)
        except PydanticValidationError as e:
            logger.debug("Dropping fix #%d: %s", index, e.errors()[0].get("msg", e))
            continue
        if region_ids is not None and fix.region_id is not None and fix.region_id not in region_ids:
            fix = fix.model_copy(update={"region_id": None})
        fixes.append(fix)
    return fixes


def _normalize_entry(entry: dict) -> dict:
    normalized: dict[str, Any] = {}
    for key, value in entry.items():
        field_name = _FIELD_ALIASES.get(str(key).replace("_", "").lower())
        if field_name is None:
            continue
        if value is None and field_name in ("current_css", "description"):
            value = ""
        elif field_name in ("priority", "type") and isinstance(value, str):
            value = value.strip().lower()
        elif field_name in ("selector", "current_css", "suggested_css", "description") and isinstance(value, str):
            value = value.strip()
        elif field_name == "region_id" and not isinstance(value, int):
            try:
                value = int(value)
            except (TypeError, ValueError):
                value = None
        normalized[field_name] = value
    return normalized
