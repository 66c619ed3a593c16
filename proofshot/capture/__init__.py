"""Browser capture pipeline.

Main Components:
- Configuration: pydantic settings and the YAML/environment loader (config.py)
- Failure taxonomy and crash classification (errors.py)
- Session Manager: persistent Chromium context with health checks
- Detection: bot-challenge and error-page classifiers
- Element Locator: multi-strategy text-to-element search
- Bounding-Box Calculator: context-aware screenshot framing
- Popup sweep and scroll reveal
- Capture Orchestrator: per-request state machine with crash recovery

Usage:
    from proofshot.capture import CaptureOrchestrator

    orchestrator = CaptureOrchestrator.from_settings(load_settings())
    result = await orchestrator.capture(request)
"""

from .config import (
    ConfigLoadError,
    ConsentConfig,
    OrchestratorConfig,
    ProofshotSettings,
    SessionConfig,
    load_settings,
)
from .errors import (
    CaptureError,
    ChallengePresent,
    ErrorPage,
    NavigationError,
    NavigationTimeout,
    ScreenshotFailure,
    SessionCrashed,
    is_session_crash,
)
from .session_manager import SessionManager
from .locator import ElementLocator
from .framing import BoundingBoxCalculator
from .popups import PopupSweeper
from .orchestrator import CaptureOrchestrator

__all__ = [
    # Configuration
    "ConfigLoadError",
    "ConsentConfig",
    "OrchestratorConfig",
    "ProofshotSettings",
    "SessionConfig",
    "load_settings",

    # Errors
    "CaptureError",
    "ChallengePresent",
    "ErrorPage",
    "NavigationError",
    "NavigationTimeout",
    "ScreenshotFailure",
    "SessionCrashed",
    "is_session_crash",

    # Main components
    "SessionManager",
    "ElementLocator",
    "BoundingBoxCalculator",
    "PopupSweeper",
    "CaptureOrchestrator",
]
