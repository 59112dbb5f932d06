"""Pre-capture script actions — translates Action models to Playwright calls."""

from __future__ import annotations

import json
import logging

from playwright.async_api import Error as PlaywrightError, Page

from uidiff.models.script import Action

logger = logging.getLogger(__name__)

ACTION_TYPES = ("navigate", "click", "fill", "select", "hover", "scroll", "wait", "keyboard", "evaluate")


class ScriptActionError(Exception):
    """A script action was malformed or its Playwright call failed."""


async def run_action(page: Page, action: Action, timeout: int = 10000) -> None:
    """Execute a single action on the page.

    Args:
        page: Playwright page instance.
        action: The action to execute.
        timeout: Selector timeout in milliseconds.
    """
    logger.debug("Running action: %s | selector=%s | value=%s | %s",
                 action.action_type, action.selector, action.value,
                 action.description or "")

    match action.action_type:
        case "navigate":
            url = action.value or action.selector or ""
            await page.goto(url, wait_until="domcontentloaded", timeout=timeout)

        case "click":
            await page.click(_require_selector(action), timeout=timeout)

        case "fill":
            await page.fill(_require_selector(action), action.value or "", timeout=timeout)

        case "select":
            await page.select_option(_require_selector(action), action.value or "", timeout=timeout)

        case "hover":
            await page.hover(_require_selector(action), timeout=timeout)

        case "scroll":
            if action.value:
                await page.evaluate("y => window.scrollTo(0, Number(y))", action.value)
            elif action.selector:
                await page.locator(action.selector).first.scroll_into_view_if_needed(timeout=timeout)
            else:
                await page.evaluate("() => window.scrollTo(0, document.body.scrollHeight)")

        case "wait":
            if action.selector:
                await page.wait_for_selector(action.selector, timeout=timeout)
            else:
                await page.wait_for_timeout(int(action.value or 1000))

        case "keyboard":
            await page.keyboard.press(action.value or "Enter")

        case "evaluate":
            if not action.value:
                raise ScriptActionError("evaluate action requires a value")
            result = await page.evaluate(action.value)
            logger.debug("evaluate returned %s", json.dumps(result, default=str)[:200])

        case _:
            raise ScriptActionError(f"Unknown action type: {action.action_type}")


async def run_script(page: Page, actions: list[Action], timeout: int = 10000) -> None:
    """Run actions in order; the first failure aborts the script."""
    for index, action in enumerate(actions):
        try:
            await run_action(page, action, timeout=timeout)
        except PlaywrightError as e:
            raise ScriptActionError(
                f"Script step {index + 1} ({action.action_type}) failed: {e}"
            ) from e
        except ValueError as e:
            raise ScriptActionError(f"Script step {index + 1} ({action.action_type}): {e}") from e


def _require_selector(action: Action) -> str:
    if not action.selector:
        raise ScriptActionError(f"{action.action_type} action requires a selector")
    return action.selector
