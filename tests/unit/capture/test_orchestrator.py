"""Unit tests for CaptureOrchestrator with mocked browser collaborators."""

import struct

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from proofshot.capture.config import ConsentConfig, ProofshotSettings
from proofshot.capture.orchestrator import CaptureOrchestrator, png_dimensions
from proofshot.consent.engine import ConsentResilienceEngine
from proofshot.models.capture import (
    BoundingBox,
    CaptureMode,
    FailureKind,
    LayerStatus,
    LocatedElement,
    StrategyTag,
)


CRASH_MESSAGE = "Target page, context or browser has been closed"


def png(width, height):
    return b'\x89PNG\r\n\x1a\n' + b'\x00\x00\x00\rIHDR' + struct.pack('>II', width, height) + b'\x08\x06\x00\x00\x00'


def make_handle():
    handle = MagicMock()
    handle.evaluate = AsyncMock(return_value=None)
    handle.scroll_into_view_if_needed = AsyncMock()
    return handle


def make_sessions(page):
    sessions = MagicMock()
    sessions.new_page = AsyncMock(return_value=page)
    sessions.release = AsyncMock()
    sessions.invalidate = AsyncMock()
    sessions.teardown = AsyncMock()
    sessions.sessions_created = 1
    sessions.generation = 1
    sessions.generation_of = MagicMock(return_value=1)
    sessions.is_running = True
    return sessions


@pytest.fixture
def detection():
    """Patch page-level detection and stabilizer waits in the orchestrator."""
    with patch('proofshot.capture.orchestrator.is_bot_challenge', AsyncMock(return_value=False)) as challenge, \
            patch('proofshot.capture.orchestrator.is_error_page', AsyncMock(return_value=False)) as error_page, \
            patch('proofshot.capture.orchestrator.wait_for_challenge_clearance', AsyncMock(return_value=True)) as clearance, \
            patch('proofshot.capture.orchestrator.wait_for_stabilizer', AsyncMock(return_value=True)) as stabilizer:
        yield {
            'challenge': challenge,
            'error_page': error_page,
            'clearance': clearance,
            'stabilizer': stabilizer,
        }


@pytest.fixture
def handle():
    return make_handle()


@pytest.fixture
def orchestrator(mock_page, handle, fast_orchestrator_config, detection):
    """Orchestrator with mocked session, locator and framer."""
    mock_page.screenshot = AsyncMock(return_value=png(420, 180))
    mock_page.query_selector = AsyncMock(return_value=None)

    locator = MagicMock()
    locator.locate = AsyncMock(return_value=LocatedElement(
        handle=handle,
        strategy=StrategyTag.EXACT_MATCH,
        score=100,
        matched_text="The quick brown fox jumps over the lazy dog",
    ))
    framer = MagicMock()
    framer.frame = AsyncMock(return_value=BoundingBox(x=100, y=200, width=420, height=180))

    config = fast_orchestrator_config.model_copy(update={'popup_sweep_enabled': False})
    orchestrator = CaptureOrchestrator(
        config=config,
        session_manager=make_sessions(mock_page),
        consent_engine=ConsentResilienceEngine(ConsentConfig()),
        locator=locator,
        framer=framer,
    )
    orchestrator._sleep = AsyncMock()
    return orchestrator


class TestPngDimensions:
    """Tests for PNG header parsing."""

    def test_reads_header(self):
        dims = png_dimensions(png(640, 480))
        assert (dims.width, dims.height) == (640, 480)

    def test_not_png(self):
        assert png_dimensions(b'GIF89a' + b'\x00' * 30) is None
        assert png_dimensions(b'') is None


class TestSuccessfulCapture:
    """Tests for the happy path."""

    @pytest.mark.asyncio
    async def test_clip_capture(self, orchestrator, mock_page, handle, sample_request):
        result = await orchestrator.capture(sample_request)

        assert result.success
        assert result.image_bytes == png(420, 180)
        assert result.metadata.dimensions.width == 420
        assert result.bounding_box == BoundingBox(x=100, y=200, width=420, height=180)
        assert result.strategy_used == StrategyTag.EXACT_MATCH
        assert result.score == 100

        mock_page.goto.assert_awaited_once_with(sample_request.url, wait_until="load", timeout=60000)
        mock_page.screenshot.assert_awaited_once_with(
            clip={'x': 100, 'y': 200, 'width': 420, 'height': 180},
            type='png',
        )
        orchestrator.sessions.release.assert_awaited_once_with(mock_page)

    @pytest.mark.asyncio
    async def test_state_sequence(self, orchestrator, sample_request):
        result = await orchestrator.capture(sample_request)

        assert result.diagnostics['states'] == [
            'init', 'navigate', 'challenge_check', 'consent_defense',
            'locate', 'frame', 'highlight', 'screenshot', 'done',
        ]
        assert result.diagnostics['wait_until'] == "load"
        assert result.diagnostics['strategy'] == "exact-match"

    @pytest.mark.asyncio
    async def test_consent_layers_recorded(self, orchestrator, mock_page, sample_request):
        result = await orchestrator.capture(sample_request)

        stats = result.consent_stats
        assert stats.css_applied is True
        assert stats.consent_injected is True
        assert 1 in stats.layers_with_status(LayerStatus.APPLIED)
        assert 3 in stats.layers_with_status(LayerStatus.APPLIED)
        mock_page.route.assert_awaited_once()
        mock_page.add_style_tag.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_consent_cookies_use_request_host(self, orchestrator, mock_page, sample_request):
        await orchestrator.capture(sample_request)

        cookies = mock_page.context.add_cookies.await_args.args[0]
        assert {cookie['domain'] for cookie in cookies} == {"example.com"}

    @pytest.mark.asyncio
    async def test_disabled_layers_skipped(self, orchestrator, mock_page, sample_request):
        orchestrator.consent = ConsentResilienceEngine(ConsentConfig(
            network_interception_enabled=False,
            consent_state_enabled=False,
            suppression_styles_enabled=False,
        ))

        result = await orchestrator.capture(sample_request)

        assert result.success
        mock_page.route.assert_not_called()
        mock_page.context.add_cookies.assert_not_called()
        mock_page.add_style_tag.assert_not_called()
        assert result.consent_stats.layers_with_status(LayerStatus.APPLIED) == []

    @pytest.mark.asyncio
    async def test_consent_state_hook(self, orchestrator, sample_request):
        context = AsyncMock()
        await orchestrator._install_consent_state(context)

        result = await orchestrator.capture(sample_request)

        context.add_init_script.assert_awaited_once()
        assert LayerStatus.FAILED not in [o.status for o in result.consent_stats.layer_outcomes]

    @pytest.mark.asyncio
    async def test_element_highlighted_and_scrolled(self, orchestrator, handle, sample_request):
        await orchestrator.capture(sample_request)

        scripts = [call.args[0] for call in handle.evaluate.await_args_list]
        assert any('scrollIntoView' in s for s in scripts)
        assert any('outline' in s for s in scripts)

    @pytest.mark.asyncio
    async def test_highlight_disabled(self, orchestrator, handle, sample_request):
        orchestrator.config = orchestrator.config.model_copy(update={'highlight_enabled': False})

        result = await orchestrator.capture(sample_request)

        assert 'highlight' not in result.diagnostics['states']
        assert handle.evaluate.await_count == 1

    @pytest.mark.asyncio
    async def test_popup_and_scroll_steps(self, orchestrator, sample_request):
        orchestrator.config = orchestrator.config.model_copy(
            update={'popup_sweep_enabled': True, 'scroll_reveal_enabled': True}
        )
        sweep = MagicMock()
        sweep.clicked = ['#newsletter-close']
        orchestrator.popup_sweeper = MagicMock()
        orchestrator.popup_sweeper.sweep = AsyncMock(return_value=sweep)

        with patch('proofshot.capture.orchestrator.scroll_to_reveal', AsyncMock(return_value=4)):
            result = await orchestrator.capture(sample_request)

        assert result.diagnostics['popup_clicks'] == ['#newsletter-close']
        assert result.diagnostics['scroll_steps'] == 4
        assert result.diagnostics['states'][4:6] == ['popup_sweep', 'scroll_reveal']

    @pytest.mark.asyncio
    async def test_viewport_mode_uses_container(self, orchestrator, mock_page, handle, sample_request):
        orchestrator.config = orchestrator.config.model_copy(update={'capture_mode': CaptureMode.VIEWPORT})
        container = MagicMock()
        container.is_visible = AsyncMock(return_value=True)
        container.bounding_box = AsyncMock(return_value={'x': 0, 'y': 0, 'width': 900, 'height': 700})
        container.evaluate = AsyncMock(return_value=True)
        container.screenshot = AsyncMock(return_value=png(900, 700))
        mock_page.query_selector = AsyncMock(return_value=container)

        result = await orchestrator.capture(sample_request)

        assert result.success
        assert result.metadata.dimensions.width == 900
        assert result.bounding_box is None
        assert result.consent_stats.element_strategy == "main"
        mock_page.screenshot.assert_not_called()

    @pytest.mark.asyncio
    async def test_viewport_mode_without_container(self, orchestrator, mock_page, sample_request):
        orchestrator.config = orchestrator.config.model_copy(update={'capture_mode': CaptureMode.VIEWPORT})

        result = await orchestrator.capture(sample_request)

        assert result.success
        mock_page.screenshot.assert_awaited_once_with(full_page=False, type='png')

    @pytest.mark.asyncio
    async def test_content_fallback_targets_container(self, orchestrator, mock_page, handle, sample_request):
        orchestrator.locator.locate = AsyncMock(return_value=LocatedElement(
            handle=handle,
            strategy=StrategyTag.CONTENT_FALLBACK,
        ))
        container = MagicMock()
        container.is_visible = AsyncMock(return_value=True)
        container.bounding_box = AsyncMock(return_value={'x': 0, 'y': 0, 'width': 800, 'height': 600})
        container.screenshot = AsyncMock(return_value=png(800, 600))
        mock_page.query_selector = AsyncMock(return_value=container)

        result = await orchestrator.capture(sample_request)

        assert result.success
        assert result.strategy_used == StrategyTag.CONTENT_FALLBACK
        assert 'highlight' not in result.diagnostics['states']
        orchestrator.framer.frame.assert_not_called()
        container.screenshot.assert_awaited_once()


class TestFailures:
    """Tests for failed results."""

    @pytest.mark.asyncio
    async def test_text_not_found(self, orchestrator, mock_page, sample_request):
        orchestrator.locator.locate = AsyncMock(return_value=None)

        result = await orchestrator.capture(sample_request)

        assert not result.success
        assert result.failure.kind == FailureKind.TEXT_NOT_FOUND
        assert result.image_bytes is None
        mock_page.screenshot.assert_not_called()
        orchestrator.sessions.release.assert_awaited_once_with(mock_page)

    @pytest.mark.asyncio
    async def test_navigation_falls_back_to_domcontentloaded(self, orchestrator, mock_page, sample_request):
        mock_page.goto = AsyncMock(side_effect=[PlaywrightTimeoutError("Timeout 60000ms exceeded."), None])

        result = await orchestrator.capture(sample_request)

        assert result.success
        assert result.diagnostics['wait_until'] == "domcontentloaded"
        assert mock_page.goto.await_args_list[1].kwargs['wait_until'] == "domcontentloaded"

    @pytest.mark.asyncio
    async def test_navigation_timeout(self, orchestrator, mock_page, sample_request):
        mock_page.goto = AsyncMock(side_effect=PlaywrightTimeoutError("Timeout 60000ms exceeded."))

        result = await orchestrator.capture(sample_request)

        assert result.failure.kind == FailureKind.NAVIGATION_TIMEOUT
        assert mock_page.goto.await_count == 2

    @pytest.mark.asyncio
    async def test_navigation_error(self, orchestrator, mock_page, sample_request):
        mock_page.goto = AsyncMock(side_effect=PlaywrightError("net::ERR_NAME_NOT_RESOLVED"))

        result = await orchestrator.capture(sample_request)

        assert result.failure.kind == FailureKind.NAVIGATION_ERROR
        assert "ERR_NAME_NOT_RESOLVED" in result.failure.message

    @pytest.mark.asyncio
    async def test_challenge_not_cleared(self, orchestrator, detection, sample_request):
        detection['challenge'].return_value = True
        detection['clearance'].return_value = False

        result = await orchestrator.capture(sample_request)

        assert result.failure.kind == FailureKind.CHALLENGE_PRESENT
        assert result.diagnostics['challenge_detected'] is True

    @pytest.mark.asyncio
    async def test_challenge_cleared(self, orchestrator, detection, sample_request):
        detection['challenge'].return_value = True

        result = await orchestrator.capture(sample_request)

        assert result.success
        assert detection['stabilizer'].await_count == 2

    @pytest.mark.asyncio
    async def test_error_page(self, orchestrator, detection, sample_request):
        detection['error_page'].return_value = True

        result = await orchestrator.capture(sample_request)

        assert result.failure.kind == FailureKind.ERROR_PAGE
        assert result.failure.kind.is_blocked

    @pytest.mark.asyncio
    async def test_error_page_before_unframed_capture(self, orchestrator, detection, sample_request):
        orchestrator.framer.frame = AsyncMock(return_value=None)
        detection['error_page'].side_effect = [False, True]

        result = await orchestrator.capture(sample_request)

        assert result.failure.kind == FailureKind.ERROR_PAGE

    @pytest.mark.asyncio
    async def test_screenshot_failure(self, orchestrator, mock_page, sample_request):
        mock_page.screenshot = AsyncMock(side_effect=PlaywrightError("Cannot take screenshot larger than 32767"))

        result = await orchestrator.capture(sample_request)

        assert result.failure.kind == FailureKind.SCREENSHOT_FAILURE

    @pytest.mark.asyncio
    async def test_unexpected_error_propagates(self, orchestrator, sample_request):
        orchestrator.locator.locate = AsyncMock(side_effect=ValueError("bad selector"))

        with pytest.raises(ValueError):
            await orchestrator.capture(sample_request)

        orchestrator.sessions.release.assert_awaited_once()


class TestCrashRecovery:
    """Tests for session crash handling."""

    @pytest.mark.asyncio
    async def test_crash_then_success(self, orchestrator, mock_page, sample_request):
        mock_page.goto = AsyncMock(side_effect=[PlaywrightError(CRASH_MESSAGE), None])

        result = await orchestrator.capture(sample_request)

        assert result.success
        assert result.diagnostics['attempt'] == 2
        orchestrator.sessions.invalidate.assert_awaited_once()
        orchestrator._sleep.assert_any_await(orchestrator.config.crash_retry_delay_ms)
        assert orchestrator.stats['session_crashes'] == 1
        assert orchestrator.sessions.new_page.await_count == 2

    @pytest.mark.asyncio
    async def test_crash_invalidates_only_its_own_session(self, orchestrator, mock_page, sample_request):
        mock_page.goto = AsyncMock(side_effect=[PlaywrightError(CRASH_MESSAGE), None])
        orchestrator.sessions.generation = 4
        orchestrator.sessions.generation_of = MagicMock(return_value=3)

        await orchestrator.capture(sample_request)

        orchestrator.sessions.generation_of.assert_any_call(mock_page)
        assert orchestrator.sessions.invalidate.await_args.kwargs['generation'] == 3

    @pytest.mark.asyncio
    async def test_crash_opening_page_reports_live_session(self, orchestrator, mock_page, sample_request):
        orchestrator.sessions.new_page = AsyncMock(side_effect=[PlaywrightError(CRASH_MESSAGE), mock_page])
        orchestrator.sessions.generation = 2

        result = await orchestrator.capture(sample_request)

        assert result.success
        assert orchestrator.sessions.invalidate.await_args.kwargs['generation'] == 2

    @pytest.mark.asyncio
    async def test_crash_retries_exhausted(self, orchestrator, mock_page, sample_request):
        mock_page.goto = AsyncMock(side_effect=PlaywrightError(CRASH_MESSAGE))

        result = await orchestrator.capture(sample_request)

        retries = orchestrator.config.crash_retries
        assert result.failure.kind == FailureKind.SESSION_CRASHED
        assert result.failure.attempts == retries + 1
        assert orchestrator.sessions.invalidate.await_count == retries + 1

    @pytest.mark.asyncio
    async def test_crash_during_screenshot(self, orchestrator, mock_page, sample_request):
        mock_page.screenshot = AsyncMock(side_effect=[PlaywrightError("Page crashed"), png(420, 180)])

        result = await orchestrator.capture(sample_request)

        assert result.success
        assert orchestrator.stats['session_crashes'] == 1


class TestBatchAndStats:
    """Tests for capture_batch and statistics."""

    @pytest.mark.asyncio
    async def test_capture_batch(self, orchestrator, sample_requests, fast_policy):
        results = await orchestrator.capture_batch(sample_requests, policy=fast_policy)

        assert [r.request_id for r in results] == [r.request_id for r in sample_requests]
        assert all(r.success for r in results)

    @pytest.mark.asyncio
    async def test_capture_batch_retries_failures(self, orchestrator, sample_request, fast_policy):
        orchestrator.locator.locate = AsyncMock(side_effect=[None, None, None])

        results = await orchestrator.capture_batch([sample_request], policy=fast_policy)

        assert results[0].failure.kind == FailureKind.TEXT_NOT_FOUND
        assert orchestrator.locator.locate.await_count == fast_policy.max_retries + 1

    @pytest.mark.asyncio
    async def test_stats(self, orchestrator, sample_request):
        await orchestrator.capture(sample_request)
        orchestrator.locator.locate = AsyncMock(return_value=None)
        await orchestrator.capture(sample_request)

        stats = orchestrator.get_stats()

        assert stats['captures_attempted'] == 2
        assert stats['captures_successful'] == 1
        assert stats['success_rate'] == 50
        assert stats['strategies'] == {'exact-match': 1}
        assert stats['failures_by_kind'] == {'text_not_found': 1}
        assert stats['sessions_created'] == 1
        assert stats['start_time'] is not None

    @pytest.mark.asyncio
    async def test_close(self, orchestrator):
        async with orchestrator:
            pass

        orchestrator.sessions.teardown.assert_awaited_once()

    def test_from_settings(self):
        settings = ProofshotSettings()

        orchestrator = CaptureOrchestrator.from_settings(settings)

        assert orchestrator.config is settings.orchestrator
        assert orchestrator.sessions.config is settings.session
        assert orchestrator.default_policy is settings.batch
        assert orchestrator._install_consent_state in orchestrator.sessions._session_hooks
