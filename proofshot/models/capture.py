"""Pydantic models for screenshot capture requests, results and diagnostics.

This module defines the data model shared by the capture pipeline: the
request describing what to capture, per-capture consent defense statistics,
the locator and framing outputs, and the terminal CaptureResult that every
request resolves to (successful or not).
"""

import base64
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator


class StrategyTag(str, Enum):
    """Element locator strategy that produced a match."""
    EXACT_MATCH = "exact-match"
    SPLIT_ACROSS_NODES = "split-across-nodes"
    LIBRARY_TEXT_QUERY = "library-text-query"
    CROSS_FRAME = "cross-frame"
    PARTIAL_PREFIX = "partial-prefix"
    KEY_PHRASE = "key-phrase"
    CONTENT_FALLBACK = "content-fallback"

    @property
    def is_degraded(self) -> bool:
        """Check if the match came from an approximate strategy."""
        return self in (
            StrategyTag.PARTIAL_PREFIX,
            StrategyTag.KEY_PHRASE,
            StrategyTag.CONTENT_FALLBACK,
        )


class FailureKind(str, Enum):
    """Reason a capture did not produce an image."""
    NAVIGATION_TIMEOUT = "navigation_timeout"
    NAVIGATION_ERROR = "navigation_error"
    CHALLENGE_PRESENT = "challenge_present"
    ERROR_PAGE = "error_page"
    TEXT_NOT_FOUND = "text_not_found"
    SESSION_CRASHED = "session_crashed"
    SCREENSHOT_FAILURE = "screenshot_failure"
    UNEXPECTED = "unexpected"

    @property
    def is_blocked(self) -> bool:
        """Check if the failure means the site refused to serve the page."""
        return self in (FailureKind.CHALLENGE_PRESENT, FailureKind.ERROR_PAGE)


class LayerStatus(str, Enum):
    """Outcome of a single consent defense layer."""
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


class CaptureMode(str, Enum):
    """How the final screenshot is taken."""
    CLIP = "clip"
    VIEWPORT = "viewport"


class CaptureRequest(BaseModel):
    """A single capture job: find target_text on url and screenshot it."""

    model_config = ConfigDict(frozen=True)

    url: str = Field(description="Page to load")
    target_text: str = Field(description="Text fragment to locate on the page")
    request_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Caller-supplied identifier echoed back in the result"
    )

    @field_validator('url')
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Require an absolute http(s) URL."""
        v = v.strip()
        parsed = urlparse(v)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ValueError(f"URL must be an absolute http(s) URL: {v!r}")
        return v

    @field_validator('target_text')
    @classmethod
    def validate_target_text(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("target_text must not be blank")
        return v

    @property
    def domain(self) -> str:
        """Host portion of the request URL."""
        return urlparse(self.url).hostname or ""


class BoundingBox(BaseModel):
    """Rectangle in visible-viewport coordinates."""

    x: float = Field(ge=0, description="Left edge in CSS pixels")
    y: float = Field(ge=0, description="Top edge in CSS pixels")
    width: float = Field(ge=0, description="Width in CSS pixels")
    height: float = Field(ge=0, description="Height in CSS pixels")

    @property
    def area(self) -> float:
        return self.width * self.height

    def to_clip(self) -> Dict[str, float]:
        """Convert to the dict accepted by page.screenshot(clip=...)."""
        return {
            'x': self.x,
            'y': self.y,
            'width': self.width,
            'height': self.height,
        }


class Dimensions(BaseModel):
    """Pixel dimensions of a captured image."""

    width: int = Field(ge=0)
    height: int = Field(ge=0)


class LayerOutcome(BaseModel):
    """Record of one consent defense layer attempt."""

    layer: int = Field(ge=1, le=4, description="Consent defense layer number")
    status: LayerStatus = Field(description="What happened when the layer ran")
    detail: Optional[str] = Field(default=None, description="Selector used or error text")


class ConsentDefenseStats(BaseModel):
    """Per-capture counters for the consent defense layers.

    A fresh instance is created at the start of every capture and updated in
    place by the consent engine; the final CaptureResult carries a copy.
    """

    blocked_requests: int = Field(default=0, ge=0, description="Requests aborted by layer 1")
    consent_injected: bool = Field(default=False, description="Layer 2 wrote consent state")
    css_applied: bool = Field(default=False, description="Layer 3 stylesheet was added")
    element_strategy: Optional[str] = Field(
        default=None,
        description="Selector of the content container used by layer 4"
    )
    layer_outcomes: List[LayerOutcome] = Field(default_factory=list)

    def record(self, layer: int, status: LayerStatus, detail: Optional[str] = None) -> None:
        """Append a layer outcome."""
        self.layer_outcomes.append(LayerOutcome(layer=layer, status=status, detail=detail))

    def layers_with_status(self, status: LayerStatus) -> List[int]:
        return sorted({o.layer for o in self.layer_outcomes if o.status == status})

    def summary(self) -> str:
        """Human-readable description of what the consent defenses did."""
        parts = []
        if self.blocked_requests > 0:
            parts.append(f"blocked {self.blocked_requests} consent requests")
        if self.consent_injected:
            parts.append("injected consent state")
        if self.css_applied:
            parts.append("applied overlay suppression CSS")
        if self.element_strategy:
            parts.append(f"targeted content element ({self.element_strategy})")

        failed = self.layers_with_status(LayerStatus.FAILED)
        if failed:
            parts.append(f"failed layers: {', '.join(str(n) for n in failed)}")

        return "; ".join(parts) if parts else "no consent defenses applied"


@dataclass
class LocatedElement:
    """A live element matched by the locator.

    Holds a Playwright ElementHandle, so it is only valid while the page that
    produced it is open.
    """
    handle: Any
    strategy: StrategyTag
    score: Optional[int] = None
    matched_text: Optional[str] = None
    frame_url: Optional[str] = None


class CaptureMetadata(BaseModel):
    """Descriptive metadata attached to a successful capture."""

    message_id: str = Field(description="Request identifier")
    message_text: str = Field(description="Text that was searched for")
    url: str = Field(description="Page URL")
    dimensions: Dimensions = Field(description="Image size")
    captured_at: datetime = Field(default_factory=datetime.utcnow)


class CaptureFailure(BaseModel):
    """Why a capture failed."""

    kind: FailureKind
    message: str
    attempts: int = Field(default=1, ge=1, description="Attempts made before giving up")


class CaptureResult(BaseModel):
    """Terminal outcome of one CaptureRequest."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Result identifier")
    request_id: str = Field(description="Identifier of the originating request")
    url: str = Field(description="Requested page URL")
    target_text: str = Field(description="Requested text fragment")

    image_bytes: Optional[bytes] = Field(default=None, description="PNG image data")
    metadata: Optional[CaptureMetadata] = Field(default=None)
    bounding_box: Optional[BoundingBox] = Field(default=None)
    strategy_used: Optional[StrategyTag] = Field(default=None)
    score: Optional[int] = Field(default=None)

    consent_stats: ConsentDefenseStats = Field(default_factory=ConsentDefenseStats)
    failure: Optional[CaptureFailure] = Field(default=None)
    diagnostics: Dict[str, Any] = Field(default_factory=dict)
    captured_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def success(self) -> bool:
        return self.failure is None

    @property
    def is_successful(self) -> bool:
        """Check if an image was produced."""
        return self.success and self.image_bytes is not None

    @property
    def is_blocked(self) -> bool:
        return self.failure is not None and self.failure.kind.is_blocked

    @classmethod
    def succeeded(
        cls,
        request: CaptureRequest,
        image_bytes: bytes,
        dimensions: Dimensions,
        strategy: Optional[StrategyTag] = None,
        score: Optional[int] = None,
        bounding_box: Optional[BoundingBox] = None,
        consent_stats: Optional[ConsentDefenseStats] = None,
        diagnostics: Optional[Dict[str, Any]] = None,
    ) -> "CaptureResult":
        """Build a successful result for a request."""
        captured_at = datetime.utcnow()
        return cls(
            request_id=request.request_id,
            url=request.url,
            target_text=request.target_text,
            image_bytes=image_bytes,
            metadata=CaptureMetadata(
                message_id=request.request_id,
                message_text=request.target_text,
                url=request.url,
                dimensions=dimensions,
                captured_at=captured_at,
            ),
            bounding_box=bounding_box,
            strategy_used=strategy,
            score=score,
            consent_stats=(consent_stats or ConsentDefenseStats()).model_copy(deep=True),
            diagnostics=dict(diagnostics or {}),
            captured_at=captured_at,
        )

    @classmethod
    def failed(
        cls,
        request: CaptureRequest,
        kind: FailureKind,
        message: str,
        attempts: int = 1,
        consent_stats: Optional[ConsentDefenseStats] = None,
        diagnostics: Optional[Dict[str, Any]] = None,
    ) -> "CaptureResult":
        """Build a failed result for a request."""
        return cls(
            request_id=request.request_id,
            url=request.url,
            target_text=request.target_text,
            failure=CaptureFailure(kind=kind, message=message, attempts=attempts),
            consent_stats=(consent_stats or ConsentDefenseStats()).model_copy(deep=True),
            diagnostics=dict(diagnostics or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the camelCase shape returned to callers."""
        diagnostics = dict(self.diagnostics)
        diagnostics.setdefault('consentStats', self.consent_stats.model_dump(mode="json"))
        diagnostics.setdefault('consentSummary', self.consent_stats.summary())
        if self.strategy_used is not None:
            diagnostics.setdefault('strategy', self.strategy_used.value)
        if self.score is not None:
            diagnostics.setdefault('score', self.score)

        if not self.success:
            return {
                'id': self.id,
                'success': False,
                'requestId': self.request_id,
                'error': {
                    'kind': self.failure.kind.value,
                    'message': self.failure.message,
                    'attempts': self.failure.attempts,
                    'blocked': self.failure.kind.is_blocked,
                },
                'diagnostics': diagnostics,
            }

        metadata = self.metadata
        return {
            'id': self.id,
            'success': True,
            'imageBytes': base64.b64encode(self.image_bytes or b"").decode('ascii'),
            'metadata': {
                'messageId': metadata.message_id,
                'messageText': metadata.message_text,
                'url': metadata.url,
                'dimensions': {
                    'width': metadata.dimensions.width,
                    'height': metadata.dimensions.height,
                },
                'capturedAt': metadata.captured_at.isoformat(),
            },
            'diagnostics': diagnostics,
        }


class RetryPolicy(BaseModel):
    """Batching and retry settings for a multi-request capture run."""

    max_retries: int = Field(default=2, ge=0, description="Retries after the first attempt")
    base_delay_ms: int = Field(default=1000, ge=0, description="Backoff base; doubles per retry")
    batch_size: int = Field(default=3, ge=1, description="Requests processed concurrently per window")
    inter_batch_delay_ms: int = Field(default=2000, ge=0, description="Pause between windows")
    intra_batch_stagger_ms: int = Field(default=500, ge=0, description="Start offset between items in a window")

    def backoff_delay_ms(self, attempt: int) -> int:
        """Delay before retry number attempt+1 (attempt is zero-based)."""
        return self.base_delay_ms * (2 ** attempt)


class BatchJob(BaseModel):
    """A list of capture requests processed under one retry policy."""

    requests: List[CaptureRequest] = Field(default_factory=list)
    policy: RetryPolicy = Field(default_factory=RetryPolicy)

    @property
    def total(self) -> int:
        return len(self.requests)
