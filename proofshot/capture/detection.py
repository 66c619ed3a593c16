"""Bot-challenge and error-page detection.

A single page evaluation collects a PageSignals snapshot (title, body text,
URL, challenge markup markers and which wrapper elements exist); pure
classifiers then decide whether the page is a bot challenge or an error page.
Text alone never classifies a challenge: a wrapper element must also exist,
so articles that merely discuss "checking your browser" are not flagged.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List

from playwright.async_api import Page, Error as PlaywrightError

from .errors import raise_if_session_crash

logger = logging.getLogger(__name__)


CHALLENGE_PHRASES = [
    'verifying you are human',
    'verify you are human',
    'checking your browser',
    'just a moment',
    'checking if the site connection is secure',
    'needs to review the security',
    'ddos protection',
    'performance & security by cloudflare',
    'press & hold',
    'are you a robot',
]

# Found in page source of challenge interstitials
CHALLENGE_MARKUP_MARKERS = [
    'cf_chl_opt',
    'cf-browser-verification',
    'challenge-platform',
    '_pxcaptcha',
    'captcha-delivery.com',
]

CHALLENGE_WRAPPER_SELECTORS = [
    '#cf-wrapper',
    '.cf-browser-verification',
    '#challenge-running',
    '#challenge-stage',
    '#challenge-form',
    '.challenge-form',
    '[data-cf-settings]',
    '#px-captcha',
    '#ddg-challenge',
    'iframe[src*="challenges.cloudflare.com"]',
    'iframe[src*="captcha"]',
    '.g-recaptcha',
    '.h-captcha',
]

ERROR_PHRASES = [
    'access denied',
    'access forbidden',
    '403 forbidden',
    '404 not found',
    'page not found',
    "you don't have permission",
    'you do not have permission',
    'your request has been blocked',
    'errors.edgesuite.net',
]

ERROR_TITLE_WORDS = [
    'error',
    'denied',
    'forbidden',
    'not found',
    'blocked',
    'unavailable',
    'attention required',
    '403',
    '404',
    '429',
    '500',
    '503',
]

SHORT_BODY_THRESHOLD = 200

_SIGNALS_SCRIPT = '''
([markers, wrappers]) => {
    const body = document.body;
    const text = body ? (body.innerText || body.textContent || '') : '';
    const html = document.documentElement ? document.documentElement.outerHTML : '';
    const lowerHtml = html.slice(0, 200000).toLowerCase();
    return {
        title: document.title || '',
        bodyText: text.slice(0, 10000),
        bodyLength: text.trim().length,
        url: window.location.href,
        markupMarkers: markers.filter((m) => lowerHtml.includes(m)),
        wrappers: wrappers.filter((sel) => {
            try { return !!document.querySelector(sel); } catch (e) { return false; }
        }),
        bypassComplete: window.cloudflareBypassComplete === true
    };
}
'''


@dataclass
class PageSignals:
    """Snapshot of the page properties used by the classifiers."""
    title: str = ""
    body_text: str = ""
    body_length: int = 0
    url: str = ""
    markup_markers: List[str] = field(default_factory=list)
    wrappers: List[str] = field(default_factory=list)
    bypass_complete: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "PageSignals":
        return cls(
            title=data.get('title') or "",
            body_text=data.get('bodyText') or "",
            body_length=int(data.get('bodyLength') or 0),
            url=data.get('url') or "",
            markup_markers=list(data.get('markupMarkers') or []),
            wrappers=list(data.get('wrappers') or []),
            bypass_complete=bool(data.get('bypassComplete')),
        )


def classify_bot_challenge(signals: PageSignals) -> bool:
    """True when challenge wording (or markup) and a challenge wrapper both exist."""
    if not signals.wrappers:
        return False

    title = signals.title.lower()
    body = signals.body_text.lower()
    phrase_match = any(p in title or p in body for p in CHALLENGE_PHRASES)
    return phrase_match or bool(signals.markup_markers)


def classify_error_page(signals: PageSignals) -> bool:
    """True for challenges, access-denied/not-found pages and near-empty error pages."""
    if classify_bot_challenge(signals):
        return True

    title = signals.title.lower()
    body = signals.body_text.lower()
    url = signals.url.lower()

    for phrase in ERROR_PHRASES:
        if phrase in title or phrase in body or phrase in url:
            return True

    if signals.body_length < SHORT_BODY_THRESHOLD:
        return any(word in title for word in ERROR_TITLE_WORDS)

    return False


async def collect_page_signals(page: Page) -> PageSignals:
    """Evaluate the signals script on the page."""
    data = await page.evaluate(_SIGNALS_SCRIPT, [CHALLENGE_MARKUP_MARKERS, CHALLENGE_WRAPPER_SELECTORS])
    return PageSignals.from_dict(data or {})


async def is_bot_challenge(page: Page) -> bool:
    """Check if the page is a bot-challenge interstitial.

    A failed evaluation counts as "not a challenge" unless the session died.
    """
    try:
        return classify_bot_challenge(await collect_page_signals(page))
    except PlaywrightError as e:
        raise_if_session_crash(e)
        logger.debug(f"Challenge check failed on {page.url}: {e}")
        return False


async def is_error_page(page: Page) -> bool:
    """Check if the page is an error, access-denied or challenge page."""
    try:
        signals = await collect_page_signals(page)
    except PlaywrightError as e:
        raise_if_session_crash(e)
        logger.debug(f"Error-page check failed on {page.url}: {e}")
        return False

    flagged = classify_error_page(signals)
    if flagged:
        logger.warning(f"Page classified as error page: {signals.url} (title={signals.title!r})")
    return flagged


async def wait_for_challenge_clearance(
    page: Page,
    timeout_ms: int = 30000,
    interval_ms: int = 1000,
) -> bool:
    """Poll until a bot challenge disappears.

    Also returns early when a companion extension reports that it completed
    the challenge via window.cloudflareBypassComplete.

    Args:
        page: Page showing the challenge
        timeout_ms: Maximum total wait
        interval_ms: Delay between checks

    Returns:
        True if the page is no longer challenged
    """
    elapsed = 0
    logger.info(f"Bot challenge detected on {page.url}, waiting up to {timeout_ms}ms")

    while True:
        try:
            signals = await collect_page_signals(page)
        except PlaywrightError as e:
            raise_if_session_crash(e)
            # Challenge pages often navigate mid-check
            logger.debug(f"Challenge poll failed, retrying: {e}")
            signals = None

        if signals is not None and (signals.bypass_complete or not classify_bot_challenge(signals)):
            logger.info(f"Bot challenge cleared after {elapsed}ms")
            return True

        if elapsed >= timeout_ms:
            logger.warning(f"Bot challenge did not clear within {timeout_ms}ms")
            return False

        await asyncio.sleep(interval_ms / 1000.0)
        elapsed += interval_ms
