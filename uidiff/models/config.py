"""Configuration models for uidiff."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

# Standard environment variables per AI provider, used when api_key is empty.
PROVIDER_ENV_KEYS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "siliconflow": "SILICONFLOW_API_KEY",
    "qwen": "QWEN_API_KEY",
}


def _resolve_env(v: str) -> str:
    if isinstance(v, str) and v.startswith("env:"):
        env_var = v[4:]
        resolved = os.environ.get(env_var)
        if resolved is None:
            raise ValueError(f"Environment variable '{env_var}' not set")
        return resolved
    return v


class ViewportConfig(BaseModel):
    width: int = 1280
    height: int = 720
    name: str = "desktop"


class Rect(BaseModel):
    x: int
    y: int
    width: int
    height: int


class AuthConfig(BaseModel):
    login_url: str
    username: str
    password: str
    username_selector: str = ""
    password_selector: str = ""
    submit_selector: str = ""
    success_indicator: str = ""
    auto_detect: bool = True
    login_timeout_ms: int = 15000

    @field_validator("password", mode="before")
    @classmethod
    def resolve_env_password(cls, v: str) -> str:
        return _resolve_env(v)


class CaptureConfig(BaseModel):
    headless: bool = True
    full_page: bool = True
    wait_until: Literal["load", "domcontentloaded", "networkidle"] = "networkidle"
    timeout_ms: int = 60000
    settle_ms: int = 300
    retries: int = 2
    retry_backoff_seconds: float = 1.0
    user_agent: Optional[str] = None
    browser_pool_size: int = 2


class DiffConfig(BaseModel):
    tolerance: float = 10.0  # 0-100, mapped to a per-channel threshold
    ignore_antialiasing: bool = False
    ignore_regions: list[Rect] = Field(default_factory=list)
    # Calibration constants for the antialiasing-tolerant mode
    aa_edge_threshold: int = 48
    aa_max_delta: int = 96

    @field_validator("tolerance")
    @classmethod
    def check_tolerance(cls, v: float) -> float:
        if not 0 <= v <= 100:
            raise ValueError("tolerance must be between 0 and 100")
        return v


class RegionConfig(BaseModel):
    connectivity: Literal[4, 8] = 8
    min_pixel_count: int = 20
    merge_distance: int = 8
    padding: int = 0
    max_regions: int = 50


class AIConfig(BaseModel):
    provider: Literal["anthropic", "siliconflow", "qwen", "openai_compatible"] = "anthropic"
    model: str = ""  # empty: provider default
    api_key: str = ""
    endpoint: str = ""
    max_regions: int = 10  # top-N regions sent to the model
    max_tokens: int = 4096
    temperature: float = 0.1
    request_timeout_seconds: float = 90.0
    enabled: bool = True

    @field_validator("api_key", mode="before")
    @classmethod
    def resolve_env_api_key(cls, v: str) -> str:
        return _resolve_env(v)

    def effective_api_key(self) -> str:
        """Return the configured key, or the provider's standard env var."""
        if self.api_key:
            return self.api_key
        env_var = PROVIDER_ENV_KEYS.get(self.provider)
        return os.environ.get(env_var, "") if env_var else ""


class UIDiffConfig(BaseModel):
    # Storage
    data_dir: str = "./.uidiff"
    public_prefix: str = "/reports"

    # Authentication
    auth: Optional[AuthConfig] = None

    # Execution limits
    max_concurrency: int = 3
    diff_timeout_seconds: float = 120.0
    ai_timeout_seconds: float = 180.0

    viewport: ViewportConfig = Field(default_factory=ViewportConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    diff: DiffConfig = Field(default_factory=DiffConfig)
    regions: RegionConfig = Field(default_factory=RegionConfig)
    ai: AIConfig = Field(default_factory=AIConfig)

    @field_validator("max_concurrency")
    @classmethod
    def check_concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_concurrency must be at least 1")
        return v

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir)

    @classmethod
    def load(cls, path: str | Path) -> "UIDiffConfig":
        """Load config from a JSON file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            data = json.load(f)
        return cls(**data)

    def save(self, path: str | Path) -> None:
        """Save config to a JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.model_dump(), f, indent=2)
