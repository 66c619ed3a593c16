"""Page stabilizer hook installed before navigation.

When no companion browser extension is loaded, the session manager installs
STABILIZER_SCRIPT as a context init script. It eagerly loads lazy images and
iframes, and exposes a readiness flag plus font/animation wait helpers that
the orchestrator polls after navigation.
"""

import asyncio
import logging

from playwright.async_api import Page, Error as PlaywrightError

from .errors import raise_if_session_crash

logger = logging.getLogger(__name__)


STABILIZER_SCRIPT = '''
(() => {
    if (window.screenshotStabilizer) {
        return;
    }

    function waitForFonts() {
        return new Promise((resolve) => {
            if (document.fonts && document.fonts.ready) {
                document.fonts.ready
                    .then(() => setTimeout(resolve, 100))
                    .catch(() => setTimeout(resolve, 500));
            } else {
                setTimeout(resolve, 500);
            }
        });
    }

    function waitForAnimations(maxMs) {
        const cap = typeof maxMs === 'number' ? maxMs : 2000;
        return new Promise((resolve) => {
            let longest = 0;
            document.querySelectorAll('*').forEach((el) => {
                const style = window.getComputedStyle(el);
                const transition = parseFloat(style.transitionDuration) || 0;
                const animation = parseFloat(style.animationDuration) || 0;
                longest = Math.max(longest, Math.max(transition, animation) * 1000);
            });
            setTimeout(resolve, Math.min(longest, cap) + 200);
        });
    }

    function forceLoadLazyContent() {
        document.querySelectorAll('img[loading="lazy"], img[data-src], img[data-lazy]').forEach((img) => {
            if (img.dataset.src) {
                img.src = img.dataset.src;
            } else if (img.dataset.lazy) {
                img.src = img.dataset.lazy;
            }
            img.loading = 'eager';
        });
        document.querySelectorAll('iframe[loading="lazy"], iframe[data-src]').forEach((frame) => {
            if (frame.dataset.src) {
                frame.src = frame.dataset.src;
            }
            frame.loading = 'eager';
        });
    }

    function initialize() {
        forceLoadLazyContent();
        window.screenshotStabilizer = {
            waitForFonts,
            waitForAnimations,
            forceLoadLazyContent,
            ready: true
        };
        window.screenshotStabilizerReady = true;
    }

    if (document.readyState === 'loading') {
        document.addEventListener('DOMContentLoaded', initialize);
    } else {
        initialize();
    }

    window.addEventListener('load', () => {
        forceLoadLazyContent();
        window.screenshotStabilizerFullyLoaded = true;
    });
})();
'''


async def wait_for_stabilizer(page: Page, timeout_ms: int = 3000, poll_interval_ms: int = 100) -> bool:
    """Wait for the stabilizer readiness flag, then for fonts and animations.

    Args:
        page: Page to check
        timeout_ms: Maximum time to wait for the readiness flag, and separately
            for pending fonts and animations once the flag is set
        poll_interval_ms: Delay between flag checks

    Returns:
        True if the stabilizer reported ready, False on timeout or error
    """
    elapsed = 0
    ready = False

    try:
        while elapsed <= timeout_ms:
            ready = bool(await page.evaluate('() => window.screenshotStabilizerReady === true'))
            if ready:
                break
            await asyncio.sleep(poll_interval_ms / 1000.0)
            elapsed += poll_interval_ms

        if not ready:
            logger.debug(f"Stabilizer not ready after {timeout_ms}ms on {page.url}")
            return False

        # page.evaluate has no timeout of its own and document.fonts.ready may never settle
        settle = page.evaluate('''async (capMs) => {
            const s = window.screenshotStabilizer;
            if (!s) { return; }
            if (s.waitForFonts) { await s.waitForFonts(); }
            if (s.waitForAnimations) { await s.waitForAnimations(capMs); }
        }''', timeout_ms)
        try:
            await asyncio.wait_for(settle, timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            logger.warning(f"Fonts/animations still pending after {timeout_ms}ms on {page.url}, proceeding")
        return True

    except PlaywrightError as e:
        raise_if_session_crash(e)
        logger.debug(f"Stabilizer wait failed: {e}")
        return False
