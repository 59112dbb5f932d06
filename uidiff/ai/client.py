"""Vision model clients used for CSS fix suggestions.

Two transports are supported: the Anthropic Messages API, and any
OpenAI-compatible ``/chat/completions`` endpoint (SiliconFlow and Qwen
DashScope are preset). Both take a system prompt, a user message and a
list of images and return the raw text of the model's answer.
"""

from __future__ import annotations

import base64
import io
import json
import logging
import re
import time
from pathlib import Path
from typing import Any, Optional

import anthropic
import httpx
from PIL import Image

from uidiff.models.config import AIConfig

logger = logging.getLogger(__name__)

DEFAULT_MODELS = {
    "anthropic": "claude-sonnet-4-20250514",
    "siliconflow": "Qwen/Qwen2.5-VL-72B-Instruct",
    "qwen": "qwen-vl-max",
    "openai_compatible": "",
}

PROVIDER_ENDPOINTS = {
    "siliconflow": "https://api.siliconflow.cn/v1/chat/completions",
    "qwen": "https://dashscope.aliyuncs.com/compatible-mode/v1/chat/completions",
}

# Longest image edge sent to a provider; larger screenshots are downscaled.
MAX_IMAGE_EDGE = 4096

_PLACEHOLDER_KEYS = {"your-api-key", "sk-xxx", "changeme"}


class ModelCallError(Exception):
    """A provider call failed. ``retryable`` marks transport-level failures."""

    def __init__(self, message: str, retryable: bool):
        super().__init__(message)
        self.retryable = retryable


def encode_image(image: Image.Image | str | Path) -> str:
    """Return a base64 PNG, downscaled so neither edge exceeds MAX_IMAGE_EDGE."""
    if not isinstance(image, Image.Image):
        with Image.open(image) as img:
            img.load()
            image = img.convert("RGB")
    if max(image.size) > MAX_IMAGE_EDGE:
        image = image.copy()
        image.thumbnail((MAX_IMAGE_EDGE, MAX_IMAGE_EDGE))
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("ascii")


class VisionModel:
    """Base class for a provider that answers prompts about images."""

    provider = "base"

    def __init__(
        self,
        model: str,
        api_key: str,
        endpoint: str = "",
        max_tokens: int = 4096,
        temperature: float = 0.1,
        timeout: float = 90.0,
        debug_dir: Optional[Path] = None,
    ):
        self.model = model
        self.api_key = api_key
        self.endpoint = endpoint
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self.debug_dir = debug_dir
        self._call_count = 0

    @property
    def call_count(self) -> int:
        return self._call_count

    def is_configured(self) -> bool:
        key = (self.api_key or "").strip()
        return bool(key) and key.lower() not in _PLACEHOLDER_KEYS and bool(self.model)

    def complete_with_images(
        self,
        system_prompt: str,
        user_message: str,
        images: list[tuple[str, str]],
    ) -> str:
        """Send a prompt with labelled images (``(label, base64_png)``)."""
        self._call_count += 1
        logger.info(
            "Calling %s vision model (call #%d, model=%s, %d images)...",
            self.provider, self._call_count, self.model, len(images),
        )
        call_start = time.time()
        try:
            text = self._send(system_prompt, user_message, images)
        except ModelCallError as e:
            logger.error("%s API error: %s", self.provider, e)
            self._save_exchange_log(system_prompt, user_message, "", str(e))
            raise
        logger.info("%s response received in %.1fs (%d chars)",
                    self.provider, time.time() - call_start, len(text))
        self._save_exchange_log(system_prompt, user_message, text, None)
        return text

    def _send(self, system_prompt: str, user_message: str, images: list[tuple[str, str]]) -> str:
        raise NotImplementedError

    def _save_exchange_log(
        self,
        system_prompt: str,
        user_message: str,
        response_text: str,
        error: str | None,
    ) -> None:
        """Save the full exchange (prompt + response) when a debug dir is set."""
        if self.debug_dir is None:
            return
        try:
            self.debug_dir.mkdir(parents=True, exist_ok=True)
            ts = time.strftime("%Y%m%d_%H%M%S")
            log_file = self.debug_dir / f"ai_call_{ts}_{self.provider}_{self._call_count:03d}.log"
            with open(log_file, "w", encoding="utf-8") as f:
                f.write(f"=== {self.provider} CALL #{self._call_count} model={self.model} ===\n\n")
                f.write(f"=== SYSTEM PROMPT ({len(system_prompt)} chars) ===\n")
                f.write(system_prompt)
                f.write(f"\n\n=== USER MESSAGE ({len(user_message)} chars) ===\n")
                f.write(user_message)
                f.write(f"\n\n=== RESPONSE ({len(response_text)} chars) ===\n")
                f.write(response_text if response_text else "(empty)")
                if error:
                    f.write(f"\n\n=== ERROR ===\n{error}\n")
            logger.debug("AI exchange logged to %s", log_file)
        except OSError as log_err:
            logger.debug("Failed to save AI exchange log: %s", log_err)


class AnthropicVisionModel(VisionModel):
    provider = "anthropic"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._client: anthropic.Anthropic | None = None

    @property
    def client(self) -> anthropic.Anthropic:
        if self._client is None:
            self._client = anthropic.Anthropic(api_key=self.api_key, timeout=self.timeout)
        return self._client

    def _send(self, system_prompt: str, user_message: str, images: list[tuple[str, str]]) -> str:
        content: list[dict[str, Any]] = []
        for label, data in images:
            content.append({"type": "text", "text": f"{label}:"})
            content.append({
                "type": "image",
                "source": {"type": "base64", "media_type": "image/png", "data": data},
            })
        content.append({"type": "text", "text": user_message})

        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                system=system_prompt,
                messages=[{"role": "user", "content": content}],
            )
        except (anthropic.APIConnectionError, anthropic.RateLimitError,
                anthropic.InternalServerError) as e:
            raise ModelCallError(str(e), retryable=True) from e
        except anthropic.APIError as e:
            raise ModelCallError(str(e), retryable=False) from e

        if response.stop_reason == "max_tokens":
            logger.warning("AI response was truncated at max_tokens=%d", self.max_tokens)
        return "".join(block.text for block in response.content if block.type == "text")


class OpenAICompatibleVisionModel(VisionModel):
    """Chat-completions transport for SiliconFlow, Qwen and similar services."""

    provider = "openai_compatible"

    def __init__(self, *args, provider: str = "openai_compatible", **kwargs):
        super().__init__(*args, **kwargs)
        self.provider = provider

    def is_configured(self) -> bool:
        return super().is_configured() and bool(self.endpoint)

    def _send(self, system_prompt: str, user_message: str, images: list[tuple[str, str]]) -> str:
        content: list[dict[str, Any]] = []
        for label, data in images:
            content.append({"type": "text", "text": f"{label}:"})
            content.append({
                "type": "image_url",
                "image_url": {"url": f"data:image/png;base64,{data}"},
            })
        content.append({"type": "text", "text": user_message})
        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": content},
            ],
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(self.endpoint, json=payload, headers=headers)
        except httpx.TransportError as e:
            raise ModelCallError(f"{type(e).__name__}: {e}", retryable=True) from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise ModelCallError(f"HTTP {resp.status_code}: {resp.text[:200]}", retryable=True)
        if resp.status_code >= 400:
            raise ModelCallError(f"HTTP {resp.status_code}: {resp.text[:200]}", retryable=False)

        try:
            data = resp.json()
            return data["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ModelCallError(f"Malformed completion body: {e}", retryable=False) from e


def create_vision_model(config: AIConfig, debug_dir: Optional[Path] = None) -> VisionModel:
    """Build the vision model for ``config.provider``."""
    model = config.model or DEFAULT_MODELS.get(config.provider, "")
    common = dict(
        model=model,
        api_key=config.effective_api_key(),
        max_tokens=config.max_tokens,
        temperature=config.temperature,
        timeout=config.request_timeout_seconds,
        debug_dir=debug_dir,
    )
    match config.provider:
        case "anthropic":
            return AnthropicVisionModel(endpoint=config.endpoint, **common)
        case "siliconflow" | "qwen":
            endpoint = config.endpoint or PROVIDER_ENDPOINTS[config.provider]
            return OpenAICompatibleVisionModel(endpoint=endpoint, provider=config.provider, **common)
        case _:
            return OpenAICompatibleVisionModel(endpoint=config.endpoint, **common)


# ----------------------------------------------------------------------
# JSON parsing with LLM quirk handling
# ----------------------------------------------------------------------

_FENCE_PATTERN = re.compile(
    r'```(?:json|javascript|)?\s*\n(.*?)\n?```',
    re.DOTALL,
)


def parse_json_payload(text: str) -> Any:
    """Parse a model answer as JSON (object or array), tolerating common quirks.

    Handles markdown fences, ``//`` comments, trailing commas, raw control
    characters and prose around the payload. Raises ValueError when nothing
    parseable is left.
    """
    text = (text or "").strip()
    match = _FENCE_PATTERN.search(text)
    if match:
        text = match.group(1).strip()
        logger.debug("Stripped markdown code fences from AI response")

    try:
        return json.loads(text, strict=False)
    except json.JSONDecodeError:
        pass

    cleaned = re.sub(r'(?<=[\s,\]\}])//[^\n]*', '', text)
    cleaned = re.sub(r'^\s*//[^\n]*', '', cleaned, flags=re.MULTILINE)
    cleaned = re.sub(r',\s*([}\]])', r'\1', cleaned)
    cleaned = "".join(
        f"\\u{ord(ch):04x}" if ord(ch) < 0x20 and ch not in ("\n", "\r") else ch
        for ch in cleaned
    )

    # Cut to the outermost array or object, whichever opens first
    starts = [i for i in (cleaned.find("["), cleaned.find("{")) if i != -1]
    if starts:
        first = min(starts)
        closer = "]" if cleaned[first] == "[" else "}"
        last = cleaned.rfind(closer)
        if last > first:
            cleaned = cleaned[first:last + 1]

    try:
        return json.loads(cleaned, strict=False)
    except json.JSONDecodeError as e:
        logger.error("Failed to parse AI response as JSON: %s", e)
        logger.debug("Raw response (first 2000 chars):\n%s", text[:2000])
        raise ValueError(f"AI returned invalid JSON: {e}") from e
