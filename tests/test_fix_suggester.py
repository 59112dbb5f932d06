"""Tests for the fix suggestion generator."""

import json
from unittest.mock import patch

import pytest

from uidiff.ai.client import ModelCallError
from uidiff.ai.fix_suggester import FixSuggestionGenerator, parse_fixes
from uidiff.ai.prompts.fixes import FIX_SYSTEM_PROMPT
from uidiff.errors import AIError
from uidiff.models.config import AIConfig
from uidiff.models.report import DiffRegion

from conftest import FakeVisionModel, make_image, model_factory_for


# ============================================================================
# Helpers
# ============================================================================


def _region(region_id: int, score: float = 50.0, **kwargs) -> DiffRegion:
    fields = dict(id=region_id, x=10 * region_id, y=5, width=10, height=10,
                  pixel_count=100, type="medium", priority="medium", score=score)
    fields.update(kwargs)
    return DiffRegion(**fields)


def _fix_json(region_id: int = 0, **overrides) -> dict:
    fix = {
        "regionId": region_id,
        "priority": "high",
        "type": "spacing",
        "selector": ".hero h1",
        "currentCSS": "margin-top: 24px;",
        "suggestedCSS": "margin-top: 32px;",
        "description": "Heading sits too high",
    }
    fix.update(overrides)
    return fix


def _suggest(model, regions, config=None, **kwargs):
    generator = FixSuggestionGenerator(model_factory=model_factory_for(model))
    return generator.suggest_fixes(
        make_image(), make_image(squares=[(5, 5, 10, 10)]), regions,
        config or AIConfig(api_key="test-key"), **kwargs,
    )


# ============================================================================
# suggest_fixes
# ============================================================================


class TestSuggestFixes:
    """Tests for FixSuggestionGenerator.suggest_fixes."""

    def test_no_regions_skips_model(self):
        """An empty region list returns [] without a provider call."""
        model = FakeVisionModel(json.dumps([_fix_json()]))
        assert _suggest(model, []) == []
        assert model.call_count == 0

    def test_returns_validated_fixes(self):
        model = FakeVisionModel(json.dumps([_fix_json(0), _fix_json(1, type="color")]))

        fixes = _suggest(model, [_region(0), _region(1)])

        assert len(fixes) == 2
        assert fixes[0].selector == ".hero h1"
        assert fixes[0].suggested_css == "margin-top: 32px;"
        assert fixes[0].region_id == 0
        assert fixes[1].type == "color"

    def test_images_and_prompt_sent(self):
        """Design, actual and diff images are labelled; regions go in the prompt."""
        model = FakeVisionModel(json.dumps([_fix_json()]))

        _suggest(model, [_region(0)], diff_image=make_image(),
                 url="https://shop.example.com", similarity=97.5, diff_pixels=250)

        system_prompt, user_message, images = model.sent[0]
        assert system_prompt == FIX_SYSTEM_PROMPT
        assert [label for label, _ in images] == ["DESIGN", "ACTUAL", "DIFF"]
        assert "https://shop.example.com" in user_message
        assert "97.50%" in user_message
        assert "250" in user_message
        assert '"pixelCount": 100' in user_message

    def test_only_top_regions_sent(self):
        """Regions are sent most severe first, capped at max_regions."""
        model = FakeVisionModel(json.dumps([_fix_json()]))
        regions = [_region(0, score=10), _region(1, score=90), _region(2, score=50)]

        _suggest(model, regions, config=AIConfig(api_key="k", max_regions=2))

        user_message = model.sent[0][1]
        payload = json.loads(user_message.split("most severe first):\n", 1)[1].rsplit("\n\nReturn", 1)[0])
        assert [r["id"] for r in payload] == [1, 2]

    def test_unconfigured_model_is_soft_error(self):
        model = FakeVisionModel("[]", api_key="")
        with pytest.raises(AIError) as exc_info:
            _suggest(model, [_region(0)])
        assert exc_info.value.soft is True
        assert model.call_count == 0

    def test_unparseable_payload_is_soft_error(self):
        model = FakeVisionModel("I could not find any issues, sorry!")
        with pytest.raises(AIError) as exc_info:
            _suggest(model, [_region(0), _region(1)])
        assert exc_info.value.soft is True
        assert "unparseable" in exc_info.value.cause

    def test_no_valid_fixes_is_soft_error(self):
        model = FakeVisionModel(json.dumps([{"selector": ""}, "junk"]))
        with pytest.raises(AIError) as exc_info:
            _suggest(model, [_region(0)])
        assert exc_info.value.soft is True

    @patch("uidiff.ai.fix_suggester.TRANSPORT_RETRY_DELAY_SECONDS", 0)
    def test_transport_error_retried_once(self):
        model = FakeVisionModel(
            ModelCallError("connection reset", retryable=True),
            json.dumps([_fix_json()]),
        )
        fixes = _suggest(model, [_region(0)])
        assert len(fixes) == 1
        assert model.call_count == 2

    @patch("uidiff.ai.fix_suggester.TRANSPORT_RETRY_DELAY_SECONDS", 0)
    def test_repeated_transport_error_is_hard(self):
        model = FakeVisionModel(ModelCallError("connection reset", retryable=True))
        with pytest.raises(AIError) as exc_info:
            _suggest(model, [_region(0)])
        assert exc_info.value.soft is False
        assert model.call_count == 2

    def test_non_retryable_error_fails_immediately(self):
        model = FakeVisionModel(ModelCallError("HTTP 401: bad key", retryable=False))
        with pytest.raises(AIError) as exc_info:
            _suggest(model, [_region(0)])
        assert exc_info.value.soft is False
        assert "401" in exc_info.value.cause
        assert model.call_count == 1


# ============================================================================
# parse_fixes
# ============================================================================


class TestParseFixes:
    """Tests for entry-level validation of model output."""

    def test_object_with_fixes_key(self):
        fixes = parse_fixes({"fixes": [_fix_json()]})
        assert len(fixes) == 1

    def test_non_list_payload(self):
        assert parse_fixes("nope") == []
        assert parse_fixes({"other": []}) == []

    def test_key_spellings_normalized(self):
        """snake_case and camelCase keys are both accepted."""
        entry = {"region_id": "1", "Priority": " HIGH ", "TYPE": "Font", "selector": " h2 ",
                 "current_css": None, "suggested_css": "font-size: 18px;", "description": None}

        fixes = parse_fixes([entry], {0, 1})

        fix = fixes[0]
        assert fix.region_id == 1
        assert fix.priority == "high"
        assert fix.type == "font"
        assert fix.selector == "h2"
        assert fix.current_css == ""
        assert fix.description == ""

    def test_invalid_entries_dropped(self):
        entries = [
            _fix_json(),
            _fix_json(priority="urgent"),
            _fix_json(type="animation"),
            _fix_json(selector=""),
            _fix_json(suggestedCSS=""),
            42,
        ]
        fixes = parse_fixes(entries)
        assert len(fixes) == 1

    def test_unknown_region_reference_cleared(self):
        """Fixes pointing at a region that does not exist keep no region id."""
        fixes = parse_fixes([_fix_json(7), _fix_json("x")], {0, 1})
        assert [f.region_id for f in fixes] == [None, None]

    def test_extra_keys_ignored(self):
        fixes = parse_fixes([_fix_json(confidence=0.9)])
        assert len(fixes) == 1

    def test_camel_case_dump(self):
        """Fixes serialize with camelCase keys."""
        dumped = parse_fixes([_fix_json()])[0].model_dump(by_alias=True)
        assert dumped["suggestedCSS"] == "margin-top: 32px;"
        assert dumped["regionId"] == 0
