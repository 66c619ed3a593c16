"""Failure taxonomy for the capture pipeline.

Expected failures are raised as CaptureError subclasses inside the pipeline
and converted to failed CaptureResults by the orchestrator. Browser-level
errors are classified here so that best-effort steps can swallow ordinary
Playwright errors while still letting a dead session propagate to crash
recovery.
"""

from typing import Optional

from ..models.capture import FailureKind


# Substrings of Playwright error messages that mean the browser session is gone
FATAL_ERROR_SUBSTRINGS = (
    "Target page, context or browser has been closed",
    "browser has been closed",
    "Browser closed",
    "Target closed",
    "crashed",
)


class CaptureError(Exception):
    """Base class for expected capture failures."""

    kind: FailureKind = FailureKind.UNEXPECTED

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.url = url


class NavigationTimeout(CaptureError):
    """Page did not load under either wait condition."""
    kind = FailureKind.NAVIGATION_TIMEOUT


class NavigationError(CaptureError):
    """Navigation failed outright (DNS, connection refused, TLS)."""
    kind = FailureKind.NAVIGATION_ERROR


class ChallengePresent(CaptureError):
    """A bot-protection interstitial did not clear in time."""
    kind = FailureKind.CHALLENGE_PRESENT


class ErrorPage(CaptureError):
    """The site served an access-denied or not-found page."""
    kind = FailureKind.ERROR_PAGE


class SessionCrashed(CaptureError):
    """The browser session died and retries were exhausted."""
    kind = FailureKind.SESSION_CRASHED


class ScreenshotFailure(CaptureError):
    """The final screenshot call failed."""
    kind = FailureKind.SCREENSHOT_FAILURE


def is_session_crash(exc: BaseException) -> bool:
    """Check if an exception means the browser session is no longer usable.

    Args:
        exc: Exception raised by a Playwright call

    Returns:
        True if the message contains a known fatal substring
    """
    if isinstance(exc, SessionCrashed):
        return True
    message = str(exc)
    return any(fragment in message for fragment in FATAL_ERROR_SUBSTRINGS)


def raise_if_session_crash(exc: BaseException) -> None:
    """Re-raise exc when it signals a dead session, otherwise return."""
    if is_session_crash(exc):
        raise exc
