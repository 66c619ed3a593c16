"""Capture orchestrator that drives one request from URL to framed screenshot.

This module provides the CaptureOrchestrator class, which coordinates the
session manager, consent defense layers, popup sweep, element locator and
bounding-box calculator. Each capture walks a fixed state sequence:

    init -> navigate -> challenge_check -> consent_defense -> popup_sweep
    -> scroll_reveal -> locate -> frame -> highlight -> screenshot -> done

Expected failures end as failed CaptureResults. A dead browser session
triggers crash recovery: the session is rebuilt and the whole capture is
retried on a fresh page.
"""

import asyncio
import logging
import struct
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from playwright.async_api import BrowserContext, ElementHandle, Page
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..batch.coordinator import BatchCoordinator
from ..consent.engine import ConsentResilienceEngine
from ..models.capture import (
    BoundingBox,
    CaptureMode,
    CaptureRequest,
    CaptureResult,
    ConsentDefenseStats,
    Dimensions,
    FailureKind,
    LayerStatus,
    LocatedElement,
    RetryPolicy,
    StrategyTag,
)
from .config import OrchestratorConfig, ProofshotSettings
from .detection import is_bot_challenge, is_error_page, wait_for_challenge_clearance
from .errors import (
    CaptureError,
    ChallengePresent,
    ErrorPage,
    NavigationError,
    NavigationTimeout,
    ScreenshotFailure,
    is_session_crash,
    raise_if_session_crash,
)
from .framing import BoundingBoxCalculator
from .locator import ElementLocator
from .popups import PopupSweeper, scroll_to_reveal
from .session_manager import SessionManager
from .stabilizer import wait_for_stabilizer

logger = logging.getLogger(__name__)


SCROLL_SETTLE_MS = 200

_SCROLL_INTO_VIEW_SCRIPT = '''
(element) => element.scrollIntoView({block: 'center', inline: 'center', behavior: 'instant'})
'''

_HIGHLIGHT_SCRIPT = '''
(element) => {
    element.style.outline = '3px solid rgba(255, 196, 0, 0.85)';
    element.style.outlineOffset = '4px';
    element.style.borderRadius = element.style.borderRadius || '4px';
}
'''

_CONTAINS_SCRIPT = '(container, element) => container.contains(element)'


def png_dimensions(data: bytes) -> Optional[Dimensions]:
    """Read width and height from a PNG header."""
    if len(data) < 24 or data[:8] != b'\x89PNG\r\n\x1a\n':
        return None
    width, height = struct.unpack('>II', data[16:24])
    return Dimensions(width=width, height=height)


class CaptureOrchestrator:
    """Runs captures against a shared browser session."""

    def __init__(
        self,
        config: Optional[OrchestratorConfig] = None,
        session_manager: Optional[SessionManager] = None,
        consent_engine: Optional[ConsentResilienceEngine] = None,
        locator: Optional[ElementLocator] = None,
        framer: Optional[BoundingBoxCalculator] = None,
        popup_sweeper: Optional[PopupSweeper] = None,
        default_policy: Optional[RetryPolicy] = None,
    ):
        """Initialize capture orchestrator.

        Args:
            config: Timing and behaviour settings
            session_manager: Owner of the browser session
            consent_engine: Consent defense layers
            locator: Text-to-element locator
            framer: Bounding-box calculator
            popup_sweeper: Popup dismissal helper
            default_policy: Retry policy used by capture_batch when none is given
        """
        self.config = config or OrchestratorConfig()
        self.sessions = session_manager or SessionManager()
        self.consent = consent_engine or ConsentResilienceEngine()
        self.locator = locator or ElementLocator(text_query_timeout_ms=self.config.locate_timeout_ms)
        self.framer = framer or BoundingBoxCalculator()
        self.popup_sweeper = popup_sweeper or PopupSweeper(click_timeout_ms=self.config.popup_click_timeout_ms)
        self.default_policy = default_policy or RetryPolicy()

        self._consent_state_active = False
        self.sessions.add_session_hook(self._install_consent_state)

        self.stats: Dict[str, Any] = {
            'captures_attempted': 0,
            'captures_successful': 0,
            'captures_failed': 0,
            'session_crashes': 0,
            'failures_by_kind': {},
            'strategies': {},
            'start_time': None,
        }

    @classmethod
    def from_settings(cls, settings: ProofshotSettings) -> "CaptureOrchestrator":
        """Build an orchestrator and its collaborators from loaded settings."""
        orchestrator_config = settings.orchestrator
        return cls(
            config=orchestrator_config,
            session_manager=SessionManager(settings.session),
            consent_engine=ConsentResilienceEngine(settings.consent),
            locator=ElementLocator(text_query_timeout_ms=orchestrator_config.locate_timeout_ms),
            popup_sweeper=PopupSweeper(click_timeout_ms=orchestrator_config.popup_click_timeout_ms),
            default_policy=settings.batch,
        )

    async def _install_consent_state(self, context: BrowserContext) -> None:
        self._consent_state_active = await self.consent.install_consent_state(context)

    async def capture(self, request: CaptureRequest) -> CaptureResult:
        """Capture the target text of one request.

        Args:
            request: What to capture

        Returns:
            Successful or failed CaptureResult; expected failures never raise

        Raises:
            Exception: Unexpected errors that are not session crashes
        """
        if self.stats['start_time'] is None:
            self.stats['start_time'] = datetime.utcnow()

        attempts = 0
        while True:
            attempts += 1
            consent_stats = ConsentDefenseStats()
            diagnostics: Dict[str, Any] = {'states': [], 'attempt': attempts}

            try:
                result = await self._capture_once(request, consent_stats, diagnostics)
            except CaptureError as e:
                logger.warning(f"Capture {request.request_id} failed ({e.kind.value}): {e.message}")
                result = CaptureResult.failed(
                    request,
                    e.kind,
                    e.message,
                    attempts=attempts,
                    consent_stats=consent_stats,
                    diagnostics=diagnostics,
                )
            except Exception as e:
                if not is_session_crash(e):
                    raise

                self.stats['session_crashes'] += 1
                await self.sessions.invalidate(str(e), generation=diagnostics.get('session_generation'))

                if attempts > self.config.crash_retries:
                    logger.error(f"Capture {request.request_id} abandoned after {attempts} session crash(es)")
                    result = CaptureResult.failed(
                        request,
                        FailureKind.SESSION_CRASHED,
                        f"Browser session crashed: {e}",
                        attempts=attempts,
                        consent_stats=consent_stats,
                        diagnostics=diagnostics,
                    )
                else:
                    logger.warning(
                        f"Browser session crashed during capture {request.request_id}, "
                        f"retrying in {self.config.crash_retry_delay_ms}ms "
                        f"(attempt {attempts + 1}/{self.config.crash_retries + 1})"
                    )
                    await self._sleep(self.config.crash_retry_delay_ms)
                    continue

            self._update_stats(result)
            return result

    async def _capture_once(
        self,
        request: CaptureRequest,
        consent_stats: ConsentDefenseStats,
        diagnostics: Dict[str, Any],
    ) -> CaptureResult:
        page: Optional[Page] = None
        try:
            self._enter(diagnostics, 'init')
            # Live session until the page exists, in case opening it crashes
            diagnostics['session_generation'] = self.sessions.generation
            page = await self.sessions.new_page()
            diagnostics['session_generation'] = self.sessions.generation_of(page)

            if self.consent.config.layer_enabled(2):
                if self._consent_state_active:
                    consent_stats.consent_injected = True
                    consent_stats.record(2, LayerStatus.APPLIED, "context init script")
                else:
                    consent_stats.record(2, LayerStatus.FAILED, "context init script not installed")
            await self.consent.install_network_interception(page, consent_stats)
            await self.consent.inject_consent_cookies(
                page, request.url, consent_stats, domain=request.domain or None
            )

            self._enter(diagnostics, 'navigate')
            diagnostics['wait_until'] = await self._navigate(page, request.url)
            diagnostics['stabilizer_ready'] = await wait_for_stabilizer(
                page, timeout_ms=self.config.stabilizer_timeout_ms
            )
            if self.config.post_load_wait_ms > 0:
                await self._sleep(self.config.post_load_wait_ms)

            self._enter(diagnostics, 'challenge_check')
            await self._check_challenge(page, request.url, diagnostics)

            self._enter(diagnostics, 'consent_defense')
            await self.consent.apply_suppression_styles(page, consent_stats)

            if self.config.popup_sweep_enabled:
                self._enter(diagnostics, 'popup_sweep')
                sweep = await self.popup_sweeper.sweep(page)
                diagnostics['popup_clicks'] = list(sweep.clicked)

            if self.config.scroll_reveal_enabled:
                self._enter(diagnostics, 'scroll_reveal')
                diagnostics['scroll_steps'] = await scroll_to_reveal(
                    page,
                    step_px=self.config.scroll_step_px,
                    max_steps=self.config.scroll_max_steps,
                    step_delay_ms=self.config.scroll_step_delay_ms,
                )

            self._enter(diagnostics, 'locate')
            located = await self.locator.locate(page, request.target_text)
            if located is None:
                return CaptureResult.failed(
                    request,
                    FailureKind.TEXT_NOT_FOUND,
                    f"Text not found on page: {request.target_text[:80]!r}",
                    consent_stats=consent_stats,
                    diagnostics=diagnostics,
                )
            diagnostics['strategy'] = located.strategy.value
            if located.frame_url:
                diagnostics['frame_url'] = located.frame_url

            self._enter(diagnostics, 'frame')
            await self._scroll_into_view(located.handle)
            box: Optional[BoundingBox] = None
            if located.strategy != StrategyTag.CONTENT_FALLBACK:
                box = await self.framer.frame(located.handle, page)

            if self.config.highlight_enabled and located.strategy != StrategyTag.CONTENT_FALLBACK:
                self._enter(diagnostics, 'highlight')
                await self._highlight(located.handle)

            self._enter(diagnostics, 'screenshot')
            image, dimensions, captured_box = await self._screenshot(page, located, box, consent_stats)

            self._enter(diagnostics, 'done')
            logger.info(
                f"Captured {request.request_id} from {request.url} "
                f"({dimensions.width}x{dimensions.height}, strategy={located.strategy.value})"
            )
            return CaptureResult.succeeded(
                request,
                image_bytes=image,
                dimensions=dimensions,
                strategy=located.strategy,
                score=located.score,
                bounding_box=captured_box,
                consent_stats=consent_stats,
                diagnostics=diagnostics,
            )
        finally:
            await self.sessions.release(page)

    async def _navigate(self, page: Page, url: str) -> str:
        """Load url, falling back from the load event to domcontentloaded.

        Returns:
            The wait condition that succeeded
        """
        timeout = self.config.navigation_timeout_ms
        try:
            await page.goto(url, wait_until="load", timeout=timeout)
            return "load"
        except PlaywrightTimeoutError:
            logger.warning(f"Load event timed out for {url}, retrying with domcontentloaded")
        except PlaywrightError as e:
            raise_if_session_crash(e)
            raise NavigationError(f"Navigation to {url} failed: {e}", url=url) from e

        try:
            await page.goto(url, wait_until="domcontentloaded", timeout=timeout)
            return "domcontentloaded"
        except PlaywrightTimeoutError as e:
            raise NavigationTimeout(f"Navigation to {url} timed out after {timeout}ms", url=url) from e
        except PlaywrightError as e:
            raise_if_session_crash(e)
            raise NavigationError(f"Navigation to {url} failed: {e}", url=url) from e

    async def _check_challenge(self, page: Page, url: str, diagnostics: Dict[str, Any]) -> None:
        if await is_bot_challenge(page):
            diagnostics['challenge_detected'] = True
            cleared = await wait_for_challenge_clearance(
                page,
                timeout_ms=self.config.challenge_timeout_ms,
                interval_ms=self.config.challenge_poll_interval_ms,
            )
            if not cleared:
                raise ChallengePresent(
                    f"Bot challenge did not clear within {self.config.challenge_timeout_ms}ms",
                    url=url,
                )
            await wait_for_stabilizer(page, timeout_ms=self.config.stabilizer_timeout_ms)

        if await is_error_page(page):
            raise ErrorPage(f"Site served an error or access-denied page: {page.url}", url=url)

    async def _scroll_into_view(self, element: ElementHandle) -> None:
        try:
            await element.evaluate(_SCROLL_INTO_VIEW_SCRIPT)
        except Exception as e:
            raise_if_session_crash(e)
            logger.debug(f"scrollIntoView failed, using Playwright scroll: {e}")
            try:
                await element.scroll_into_view_if_needed(timeout=self.config.popup_click_timeout_ms)
            except Exception as inner:
                raise_if_session_crash(inner)
                logger.debug(f"Scroll into view failed: {inner}")
        await self._sleep(SCROLL_SETTLE_MS)

    async def _highlight(self, element: ElementHandle) -> None:
        try:
            await element.evaluate(_HIGHLIGHT_SCRIPT)
        except Exception as e:
            raise_if_session_crash(e)
            logger.debug(f"Highlight failed: {e}")

    async def _screenshot(
        self,
        page: Page,
        located: LocatedElement,
        box: Optional[BoundingBox],
        consent_stats: ConsentDefenseStats,
    ) -> Tuple[bytes, Dimensions, Optional[BoundingBox]]:
        """Take the final screenshot.

        Clip mode with a framed box captures the clip. Anything that would
        otherwise capture the whole viewport first tries the layer 4 content
        container.

        Returns:
            (image bytes, image dimensions, captured box in viewport coordinates)
        """
        if box is not None and self.config.capture_mode == CaptureMode.CLIP:
            image = await self._take(page.screenshot(clip=box.to_clip(), type='png'))
            dimensions = png_dimensions(image) or Dimensions(width=int(box.width), height=int(box.height))
            return image, dimensions, box

        if box is None and await is_error_page(page):
            raise ErrorPage(f"Refusing full-page capture of error page: {page.url}", url=page.url)

        container = await self.consent.find_content_container(page, consent_stats)
        if container is not None and (box is None or await self._contains(container, located.handle)):
            container_box = await container.bounding_box()
            image = await self._take(container.screenshot(type='png'))
            dimensions = png_dimensions(image) or _box_dimensions(container_box)
            return image, dimensions, None

        image = await self._take(page.screenshot(full_page=False, type='png'))
        viewport = page.viewport_size or {}
        dimensions = png_dimensions(image) or Dimensions(
            width=viewport.get('width', 0),
            height=viewport.get('height', 0),
        )
        return image, dimensions, None

    async def _take(self, screenshot) -> bytes:
        try:
            return await screenshot
        except Exception as e:
            raise_if_session_crash(e)
            raise ScreenshotFailure(f"Screenshot failed: {e}") from e

    async def _contains(self, container: ElementHandle, element: ElementHandle) -> bool:
        try:
            return bool(await container.evaluate(_CONTAINS_SCRIPT, element))
        except Exception as e:
            raise_if_session_crash(e)
            return False

    def _enter(self, diagnostics: Dict[str, Any], state: str) -> None:
        diagnostics['states'].append(state)
        logger.debug(f"Capture state: {state}")

    async def capture_batch(
        self,
        requests: Sequence[CaptureRequest],
        policy: Optional[RetryPolicy] = None,
        should_retry: Optional[Callable[[Optional[CaptureResult]], bool]] = None,
        on_progress: Optional[Callable[[int, int, CaptureRequest], Any]] = None,
    ) -> List[CaptureResult]:
        """Capture many requests with batching and retries.

        Returns:
            One result per request, in request order
        """
        coordinator = BatchCoordinator(
            self.capture,
            policy or self.default_policy,
            should_retry=should_retry,
            on_progress=on_progress,
        )
        return await coordinator.run(requests)

    def _update_stats(self, result: CaptureResult) -> None:
        self.stats['captures_attempted'] += 1
        if result.success:
            self.stats['captures_successful'] += 1
            if result.strategy_used is not None:
                tag = result.strategy_used.value
                self.stats['strategies'][tag] = self.stats['strategies'].get(tag, 0) + 1
        else:
            self.stats['captures_failed'] += 1
            kind = result.failure.kind.value
            self.stats['failures_by_kind'][kind] = self.stats['failures_by_kind'].get(kind, 0) + 1

    def get_stats(self) -> Dict[str, Any]:
        """Get capture statistics."""
        stats = dict(self.stats)
        stats['failures_by_kind'] = dict(self.stats['failures_by_kind'])
        stats['strategies'] = dict(self.stats['strategies'])

        if stats['captures_attempted'] > 0:
            stats['success_rate'] = (stats['captures_successful'] / stats['captures_attempted']) * 100
        else:
            stats['success_rate'] = 0

        stats['sessions_created'] = self.sessions.sessions_created
        stats['session_running'] = self.sessions.is_running
        return stats

    async def close(self) -> None:
        """Tear down the browser session."""
        await self.sessions.teardown()

    async def _sleep(self, delay_ms: int) -> None:
        await asyncio.sleep(delay_ms / 1000.0)

    async def __aenter__(self) -> "CaptureOrchestrator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        return (
            f"CaptureOrchestrator(mode={self.config.capture_mode.value}, "
            f"attempted={self.stats['captures_attempted']}, "
            f"successful={self.stats['captures_successful']})"
        )


def _box_dimensions(box: Optional[Dict[str, float]]) -> Dimensions:
    if not box:
        return Dimensions(width=0, height=0)
    return Dimensions(width=int(round(box['width'])), height=int(round(box['height'])))
