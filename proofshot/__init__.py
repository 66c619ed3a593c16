"""proofshot: resilient capture of text fragments on live web pages.

Given a page URL and a piece of text, proofshot loads the page in a
long-lived Chromium session, neutralises consent overlays and popups, finds
the element that renders the text and screenshots it with enough surrounding
context to read naturally.

Usage:
    from proofshot import CaptureOrchestrator, CaptureRequest

    async with CaptureOrchestrator() as orchestrator:
        result = await orchestrator.capture(
            CaptureRequest(url="https://example.com", target_text="Example Domain")
        )
"""

__version__ = "0.1.0"

from .models import (
    BatchJob,
    CaptureRequest,
    CaptureResult,
    ConsentDefenseStats,
    FailureKind,
    RetryPolicy,
    StrategyTag,
)
from .capture import (
    CaptureOrchestrator,
    ProofshotSettings,
    SessionManager,
    load_settings,
)
from .consent import ConsentResilienceEngine
from .batch import BatchCoordinator

__all__ = [
    "__version__",

    # Data models
    "BatchJob",
    "CaptureRequest",
    "CaptureResult",
    "ConsentDefenseStats",
    "FailureKind",
    "RetryPolicy",
    "StrategyTag",

    # Main components
    "CaptureOrchestrator",
    "SessionManager",
    "ConsentResilienceEngine",
    "BatchCoordinator",

    # Configuration
    "ProofshotSettings",
    "load_settings",
]
