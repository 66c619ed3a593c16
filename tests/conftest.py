"""Shared test fixtures and configuration for proofshot tests."""

import pytest
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

from proofshot.capture.config import ConsentConfig, OrchestratorConfig, SessionConfig
from proofshot.models.capture import CaptureRequest, ConsentDefenseStats, RetryPolicy


@pytest.fixture
def sample_request():
    """Sample capture request for testing."""
    return CaptureRequest(
        url="https://example.com/article",
        target_text="The quick brown fox jumps over the lazy dog",
        request_id="req-1",
    )


@pytest.fixture
def sample_requests():
    """List of sample capture requests for testing."""
    return [
        CaptureRequest(
            url=f"https://example.com/page{i}",
            target_text=f"Message number {i}",
            request_id=f"req-{i}",
        )
        for i in range(5)
    ]


@pytest.fixture
def consent_stats():
    """Fresh per-capture consent statistics."""
    return ConsentDefenseStats()


@pytest.fixture
def fast_policy():
    """Retry policy without delays."""
    return RetryPolicy(
        max_retries=2,
        base_delay_ms=0,
        batch_size=2,
        inter_batch_delay_ms=0,
        intra_batch_stagger_ms=0,
    )


@pytest.fixture
def fast_orchestrator_config():
    """Orchestrator configuration with all waits disabled."""
    return OrchestratorConfig(
        post_load_wait_ms=0,
        stabilizer_timeout_ms=0,
        challenge_timeout_ms=0,
        crash_retry_delay_ms=0,
        scroll_reveal_enabled=False,
    )


@pytest.fixture
def session_config(tmp_path):
    """Session configuration writing profiles under a temporary directory."""
    return SessionConfig(profile_base_dir=tmp_path)


@pytest.fixture
def consent_config():
    """Default consent configuration."""
    return ConsentConfig()


@pytest.fixture
def mock_page():
    """Mock Playwright page with the methods the pipeline touches."""
    page = AsyncMock()
    page.url = "https://example.com/article"
    page.viewport_size = {'width': 1440, 'height': 900}
    page.keyboard = AsyncMock()
    page.mouse = AsyncMock()
    page.context = AsyncMock()
    page.main_frame = MagicMock()
    page.frames = [page.main_frame]
    return page
