"""Exception types raised across the comparison pipeline."""

from __future__ import annotations


class UIDiffError(Exception):
    """Base class for all uidiff errors."""


class AuthError(UIDiffError):
    """Login flow did not reach a post-login state."""


class CaptureError(UIDiffError):
    """Navigation, rendering, or timeout failure for a single URL.

    Returned as a value by the capturer rather than raised past the
    batch boundary, so it also behaves like a plain result object.
    """

    def __init__(self, url: str, reason: str, transient: bool = False):
        super().__init__(f"Capture failed for {url}: {reason}")
        self.url = url
        self.reason = reason
        self.transient = transient


class DiffComputeError(UIDiffError):
    """An input image was missing, unreadable, or malformed."""


class AIError(UIDiffError):
    """Fix suggestion failure.

    ``soft`` errors (unparseable payload, no valid fixes) are absorbed into a
    completed report; hard errors (transport, auth) fail the report.
    """

    def __init__(self, provider: str, cause: str, soft: bool = False):
        kind = "soft" if soft else "hard"
        super().__init__(f"AI provider '{provider}' failed ({kind}): {cause}")
        self.provider = provider
        self.cause = cause
        self.soft = soft


class ValidationError(UIDiffError):
    """Malformed compare or batch request, rejected before any record exists."""


class PersistenceError(UIDiffError):
    """A repository write failed."""
