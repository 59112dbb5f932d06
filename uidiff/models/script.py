"""Pre-capture script data structures."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class Action(BaseModel):
    action_type: str  # navigate, click, fill, select, hover, scroll, wait, keyboard, evaluate
    selector: Optional[str] = None
    value: Optional[str] = None
    description: str = ""


class Script(BaseModel):
    """Named list of actions run on a page after load, before the screenshot."""
    id: str
    name: str
    description: str = ""
    actions: list[Action] = Field(default_factory=list)
    created_at: float = 0.0
    updated_at: float = 0.0
