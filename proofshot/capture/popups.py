"""Best-effort popup dismissal and lazy-content scrolling.

Neither step is required to succeed. Ordinary Playwright errors are logged
and swallowed; only a dead browser session propagates.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import List

from playwright.async_api import Page

from .errors import raise_if_session_crash

logger = logging.getLogger(__name__)


# Vendor accept buttons, clicked first when visible
KNOWN_ACCEPT_SELECTORS = [
    '#onetrust-accept-btn-handler',
    '#accept-recommended-btn-handler',
    '#CybotCookiebotDialogBodyLevelButtonLevelOptinAllowAll',
    '#CybotCookiebotDialogBodyButtonAccept',
    '.cc-btn.cc-dismiss',
    '.cc-btn.cc-allow',
]

# Clickables inside popup-like containers, plus explicit close controls
DISMISS_CANDIDATE_SELECTOR = ', '.join([
    '[id*="cookie" i] button',
    '[class*="cookie" i] button',
    '[id*="consent" i] button',
    '[class*="consent" i] button',
    '[id*="gdpr" i] button',
    '[class*="gdpr" i] button',
    '[role="dialog"] button',
    '[aria-modal="true"] button',
    '[class*="modal" i] button',
    '[class*="popup" i] button',
    '[class*="overlay" i] button',
    '[class*="newsletter" i] button',
    'button[aria-label*="close" i]',
    'button[aria-label*="dismiss" i]',
    'button[aria-label*="accept" i]',
    '[role="button"][aria-label*="close" i]',
    '.modal-close',
    '.close-modal',
    '.popup-close',
    '.close-popup',
])

EXACT_DISMISS_LABELS = {
    'x', '×', '✕', 'ok', 'okay', 'close', 'dismiss', 'got it',
    'no thanks', 'not now', 'maybe later', 'continue',
}

_DISMISS_WORDS = re.compile(r"\b(accept|allow all|allow|agree|got it|close|dismiss|ok|okay)\b")
_NEGATIVE_WORDS = re.compile(
    r"\b(reject|decline|deny|manage|settings|preferences|customi[sz]e|options|more info|learn more)\b"
)

_CANDIDATES_SCRIPT = '''
(selector) => {
    const out = [];
    document.querySelectorAll(selector).forEach((el, index) => {
        const rect = el.getBoundingClientRect();
        const style = window.getComputedStyle(el);
        if (rect.width <= 0 || rect.height <= 0 || style.visibility === 'hidden' || style.display === 'none') {
            return;
        }
        const label = (el.innerText || el.textContent || '').trim() || el.getAttribute('aria-label') || '';
        out.push({index, label: label.slice(0, 80)});
    });
    return out;
}
'''

_NTH_SCRIPT = '([selector, index]) => document.querySelectorAll(selector)[index] || null'

_HIDE_ONETRUST_SCRIPT = '''
() => {
    ['onetrust-consent-sdk', 'onetrust-banner-sdk'].forEach((id) => {
        const el = document.getElementById(id);
        if (el) {
            el.style.display = 'none';
            el.style.visibility = 'hidden';
        }
    });
    const filter = document.querySelector('.onetrust-pc-dark-filter');
    if (filter) { filter.style.display = 'none'; }
    if (document.body) {
        document.body.style.overflow = 'auto';
        document.body.classList.remove('onetrust-consent-sdk-modal-open');
    }
}
'''

_AT_BOTTOM_SCRIPT = '''
() => {
    const height = Math.max(
        document.body ? document.body.scrollHeight : 0,
        document.documentElement ? document.documentElement.scrollHeight : 0
    );
    return window.scrollY + window.innerHeight >= height - 2;
}
'''


def is_dismiss_label(label: str) -> bool:
    """Check if a control's label reads as accept/close/dismiss/ok.

    Words are matched on word boundaries, so "cookie" does not match "ok".
    Labels that also offer rejection or settings are ignored.
    """
    text = re.sub(r"\s+", " ", label.strip().lower())
    if not text:
        return False
    if text in EXACT_DISMISS_LABELS:
        return True
    if len(text) > 40 or _NEGATIVE_WORDS.search(text):
        return False
    return bool(_DISMISS_WORDS.search(text))


@dataclass
class SweepResult:
    """What the popup sweep did."""
    onetrust_hidden: bool = False
    clicked: List[str] = field(default_factory=list)
    escape_pressed: bool = False


class PopupSweeper:
    """Dismisses cookie banners, modals and newsletter prompts."""

    def __init__(self, click_timeout_ms: int = 1000, settle_ms: int = 300, max_clicks: int = 5):
        self.click_timeout_ms = click_timeout_ms
        self.settle_ms = settle_ms
        self.max_clicks = max_clicks

    async def sweep(self, page: Page) -> SweepResult:
        """Run every dismissal step once; never raises for ordinary failures."""
        result = SweepResult()

        try:
            await page.evaluate(_HIDE_ONETRUST_SCRIPT)
            result.onetrust_hidden = True
        except Exception as e:
            raise_if_session_crash(e)
            logger.debug(f"OneTrust hide failed: {e}")

        for selector in KNOWN_ACCEPT_SELECTORS:
            if len(result.clicked) >= self.max_clicks:
                break
            await self._click_if_visible(page, selector, result)

        await self._click_dismiss_controls(page, result)

        try:
            await page.keyboard.press('Escape')
            result.escape_pressed = True
            await asyncio.sleep(self.settle_ms / 1000.0)
        except Exception as e:
            raise_if_session_crash(e)
            logger.debug(f"Escape key press failed: {e}")

        if result.clicked:
            logger.info(f"Popup sweep clicked {len(result.clicked)} control(s): {result.clicked}")
        return result

    async def _click_if_visible(self, page: Page, selector: str, result: SweepResult) -> None:
        try:
            element = await page.query_selector(selector)
            if element is None or not await element.is_visible():
                return
            await element.click(timeout=self.click_timeout_ms)
            result.clicked.append(selector)
            await asyncio.sleep(self.settle_ms / 1000.0)
        except Exception as e:
            raise_if_session_crash(e)
            logger.debug(f"Click on {selector} failed: {e}")

    async def _click_dismiss_controls(self, page: Page, result: SweepResult) -> None:
        try:
            candidates = await page.evaluate(_CANDIDATES_SCRIPT, DISMISS_CANDIDATE_SELECTOR)
        except Exception as e:
            raise_if_session_crash(e)
            logger.debug(f"Popup candidate scan failed: {e}")
            return

        for candidate in candidates or []:
            if len(result.clicked) >= self.max_clicks:
                break
            label = candidate.get('label', '')
            if not is_dismiss_label(label):
                continue
            try:
                handle = await page.evaluate_handle(_NTH_SCRIPT, [DISMISS_CANDIDATE_SELECTOR, candidate['index']])
                element = handle.as_element() if handle else None
                if element is None:
                    continue
                await element.click(timeout=self.click_timeout_ms)
                result.clicked.append(label)
                await asyncio.sleep(self.settle_ms / 1000.0)
            except Exception as e:
                raise_if_session_crash(e)
                logger.debug(f"Click on dismiss control {label!r} failed: {e}")


async def scroll_to_reveal(
    page: Page,
    step_px: int = 800,
    max_steps: int = 20,
    step_delay_ms: int = 150,
) -> int:
    """Wheel-scroll down to trigger lazy content, then return to the top.

    Args:
        page: Loaded page
        step_px: Pixels per wheel step
        max_steps: Upper bound on wheel steps
        step_delay_ms: Pause after each step

    Returns:
        Number of wheel steps taken
    """
    steps = 0
    try:
        while steps < max_steps:
            if await page.evaluate(_AT_BOTTOM_SCRIPT):
                break
            await page.mouse.wheel(0, step_px)
            steps += 1
            await asyncio.sleep(step_delay_ms / 1000.0)
    except Exception as e:
        raise_if_session_crash(e)
        logger.debug(f"Scroll reveal stopped after {steps} steps: {e}")

    try:
        await page.evaluate('() => window.scrollTo(0, 0)')
    except Exception as e:
        raise_if_session_crash(e)
        logger.debug(f"Scroll to top failed: {e}")

    return steps
