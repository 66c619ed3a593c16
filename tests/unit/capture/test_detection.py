"""Unit tests for challenge and error-page detection."""

import pytest
from unittest.mock import AsyncMock, patch

from playwright.async_api import Error as PlaywrightError

from proofshot.capture.detection import (
    PageSignals,
    classify_bot_challenge,
    classify_error_page,
    is_bot_challenge,
    is_error_page,
    wait_for_challenge_clearance,
)


LONG_BODY = "Lorem ipsum dolor sit amet. " * 20


def signals(**kwargs):
    defaults = {
        'title': "Example article",
        'body_text': LONG_BODY,
        'body_length': len(LONG_BODY),
        'url': "https://example.com/article",
    }
    defaults.update(kwargs)
    return PageSignals(**defaults)


def signals_dict(**kwargs):
    data = {
        'title': "Example article",
        'bodyText': LONG_BODY,
        'bodyLength': len(LONG_BODY),
        'url': "https://example.com/article",
        'markupMarkers': [],
        'wrappers': [],
        'bypassComplete': False,
    }
    data.update(kwargs)
    return data


class TestPageSignals:
    """Tests for PageSignals parsing."""

    def test_from_dict(self):
        parsed = PageSignals.from_dict(signals_dict(wrappers=['#cf-wrapper'], bypassComplete=True))

        assert parsed.title == "Example article"
        assert parsed.body_length == len(LONG_BODY)
        assert parsed.wrappers == ['#cf-wrapper']
        assert parsed.bypass_complete is True

    def test_from_empty_dict(self):
        parsed = PageSignals.from_dict({})

        assert parsed.title == ""
        assert parsed.body_length == 0
        assert parsed.wrappers == []


class TestClassifyBotChallenge:
    """Tests for classify_bot_challenge."""

    def test_phrase_with_wrapper(self):
        assert classify_bot_challenge(signals(
            title="Just a moment...",
            body_text="Checking your browser before accessing example.com",
            wrappers=['#challenge-running'],
        ))

    def test_markup_marker_with_wrapper(self):
        assert classify_bot_challenge(signals(markup_markers=['cf_chl_opt'], wrappers=['#cf-wrapper']))

    def test_phrase_without_wrapper(self):
        assert not classify_bot_challenge(signals(
            title="How Cloudflare decides when to show 'Just a moment'",
            body_text="Articles about checking your browser are not challenges.",
        ))

    def test_wrapper_without_phrase(self):
        assert not classify_bot_challenge(signals(wrappers=['.g-recaptcha']))


class TestClassifyErrorPage:
    """Tests for classify_error_page."""

    def test_forbidden_page(self):
        assert classify_error_page(signals(
            title="Access Denied",
            body_text="403 Forbidden",
            body_length=13,
        ))

    def test_phrase_in_body(self):
        assert classify_error_page(signals(body_text=LONG_BODY + " Your request has been blocked."))

    def test_phrase_in_url(self):
        assert classify_error_page(signals(url="https://errors.edgesuite.net/18.abc"))

    def test_short_body_with_error_title(self):
        assert classify_error_page(signals(title="Service Unavailable", body_text="Try later", body_length=9))

    def test_long_body_with_error_title(self):
        assert not classify_error_page(signals(title="Fixing error handling in Python"))

    def test_challenge_is_error_page(self):
        assert classify_error_page(signals(title="Just a moment...", wrappers=['#cf-wrapper']))

    def test_normal_page(self):
        assert not classify_error_page(signals())


class TestAsyncDetection:
    """Tests for the page-level detection wrappers."""

    @pytest.mark.asyncio
    async def test_is_bot_challenge(self, mock_page):
        mock_page.evaluate = AsyncMock(return_value=signals_dict(
            title="Just a moment...",
            wrappers=['#challenge-stage'],
        ))

        assert await is_bot_challenge(mock_page) is True

    @pytest.mark.asyncio
    async def test_evaluation_failure_is_not_detected(self, mock_page):
        mock_page.evaluate = AsyncMock(side_effect=PlaywrightError("Execution context was destroyed"))

        assert await is_bot_challenge(mock_page) is False
        assert await is_error_page(mock_page) is False

    @pytest.mark.asyncio
    async def test_evaluation_crash_propagates(self, mock_page):
        mock_page.evaluate = AsyncMock(side_effect=PlaywrightError("Target page, context or browser has been closed"))

        with pytest.raises(PlaywrightError):
            await is_error_page(mock_page)

    @pytest.mark.asyncio
    async def test_is_error_page(self, mock_page):
        mock_page.evaluate = AsyncMock(return_value=signals_dict(
            title="Access Denied",
            bodyText="403 Forbidden",
            bodyLength=13,
        ))

        assert await is_error_page(mock_page) is True


class TestChallengeClearance:
    """Tests for wait_for_challenge_clearance."""

    @pytest.mark.asyncio
    async def test_clears_after_polls(self, mock_page):
        challenged = signals_dict(title="Just a moment...", wrappers=['#cf-wrapper'])
        mock_page.evaluate = AsyncMock(side_effect=[challenged, challenged, signals_dict()])

        with patch('proofshot.capture.detection.asyncio.sleep', AsyncMock()) as sleep:
            cleared = await wait_for_challenge_clearance(mock_page, timeout_ms=5000, interval_ms=1000)

        assert cleared is True
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_bypass_flag(self, mock_page):
        mock_page.evaluate = AsyncMock(return_value=signals_dict(
            title="Just a moment...",
            wrappers=['#cf-wrapper'],
            bypassComplete=True,
        ))

        assert await wait_for_challenge_clearance(mock_page, timeout_ms=0) is True

    @pytest.mark.asyncio
    async def test_times_out(self, mock_page):
        mock_page.evaluate = AsyncMock(return_value=signals_dict(title="Just a moment...", wrappers=['#cf-wrapper']))

        with patch('proofshot.capture.detection.asyncio.sleep', AsyncMock()) as sleep:
            cleared = await wait_for_challenge_clearance(mock_page, timeout_ms=3000, interval_ms=1000)

        assert cleared is False
        assert sleep.await_count == 3

    @pytest.mark.asyncio
    async def test_poll_errors_tolerated(self, mock_page):
        mock_page.evaluate = AsyncMock(side_effect=[
            PlaywrightError("Execution context was destroyed, most likely because of a navigation"),
            signals_dict(),
        ])

        with patch('proofshot.capture.detection.asyncio.sleep', AsyncMock()):
            assert await wait_for_challenge_clearance(mock_page, timeout_ms=5000) is True
