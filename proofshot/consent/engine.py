"""Layered consent-overlay defenses for headless captures.

Four independent layers, applied in order and each individually toggleable:

1. Network interception: abort script/xhr/fetch/iframe requests to known
   consent providers before navigation.
2. Pre-injected consent state: localStorage entries, window flags and vendor
   API stubs written before any page script runs, plus first-party consent
   cookies for the target domain.
3. Post-load suppression styling: a stylesheet hiding overlay elements and
   restoring page scrolling.
4. Element-level capture targeting: pick a content container to screenshot
   instead of the whole viewport.

Every layer is fail-open. Errors are logged and recorded in the capture's
ConsentDefenseStats; they never abort a capture.
"""

import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlparse

from playwright.async_api import BrowserContext, ElementHandle, Page, Route

from ..capture.config import ConsentConfig
from ..models.capture import ConsentDefenseStats, LayerStatus
from . import providers

logger = logging.getLogger(__name__)


def should_block_request(url: str, resource_type: str, patterns: Iterable[str]) -> bool:
    """Decide whether layer 1 aborts a request.

    Args:
        url: Request URL
        resource_type: Playwright resource type, with child-frame documents
            reported as "iframe"
        patterns: Lowercase provider substrings

    Returns:
        True when the URL names a consent provider and the resource is blockable
    """
    if resource_type not in providers.BLOCKABLE_RESOURCE_TYPES:
        return False
    lowered = url.lower()
    return any(pattern in lowered for pattern in patterns)


def build_suppression_css(selectors: Iterable[str]) -> str:
    """Build the layer 3 stylesheet.

    Each selector is guarded with :not(html):not(body) so that broad attribute
    matches can never hide the document itself.
    """
    rules = []
    for selector in selectors:
        rules.append(
            f"{selector}:not(html):not(body) "
            "{ display: none !important; visibility: hidden !important; opacity: 0 !important; }"
        )

    rules.append(
        "html, body { overflow: auto !important; }\n"
        "body { position: static !important; }\n"
        "[style*=\"position: fixed\"][style*=\"z-index\"]:not(html):not(body) "
        "{ display: none !important; }"
    )
    return "\n".join(rules)


def build_consent_state_script(
    local_storage: Dict[str, str],
    window_flags: Iterable[str],
    include_cmp_stubs: bool = True,
) -> str:
    """Build the layer 2 init script."""
    script = f'''
(() => {{
    const now = new Date().toISOString();
    const stamp = String(Date.now());
    const entries = {json.dumps(local_storage)};
    try {{
        Object.entries(entries).forEach(([key, value]) => {{
            localStorage.setItem(key, value.split('{{now}}').join(now).split('{{stamp}}').join(stamp));
        }});
    }} catch (e) {{}}
    {json.dumps(list(window_flags))}.forEach((flag) => {{ window[flag] = true; }});
'''
    if include_cmp_stubs:
        script += providers.CMP_API_STUBS
    script += '\n})();\n'
    return script


class ConsentResilienceEngine:
    """Applies the four consent defense layers to sessions and pages."""

    def __init__(self, config: Optional[ConsentConfig] = None):
        """Initialize consent engine.

        Args:
            config: Layer toggles and table extensions (defaults if None)
        """
        self.config = config or ConsentConfig()

        self.provider_patterns: List[str] = [p.lower() for p in providers.CONSENT_PROVIDER_PATTERNS]
        self.local_storage: Dict[str, str] = dict(providers.CONSENT_LOCAL_STORAGE)
        self.overlay_selectors: List[str] = list(providers.OVERLAY_SELECTORS)
        self.content_selectors: List[str] = list(providers.CONTENT_SELECTORS)

        for pattern in self.config.extra_provider_patterns:
            self.add_provider_pattern(pattern)
        for selector in self.config.extra_overlay_selectors:
            self.add_overlay_selector(selector)

    # Layer 1

    async def install_network_interception(self, page: Page, stats: ConsentDefenseStats) -> None:
        """Route every request on the page through the consent blocklist.

        Must be called before navigation.
        """
        if not self.config.layer_enabled(1):
            stats.record(1, LayerStatus.SKIPPED, "disabled")
            return

        async def handle_route(route: Route) -> None:
            request = route.request
            resource_type = _effective_resource_type(request)
            if should_block_request(request.url, resource_type, self.provider_patterns):
                stats.blocked_requests += 1
                logger.debug(f"Layer 1: blocked {resource_type} request to {request.url[:100]}")
                await route.abort()
            else:
                await route.continue_()

        try:
            await page.route("**/*", handle_route)
            stats.record(1, LayerStatus.APPLIED)
            logger.debug("Layer 1 (network interception) activated")
        except Exception as e:
            stats.record(1, LayerStatus.FAILED, str(e))
            logger.warning(f"Layer 1 (network interception) failed: {e}")

    # Layer 2

    async def install_consent_state(self, context: BrowserContext) -> bool:
        """Add the consent state init script to a session context.

        Applies to every page opened in the context afterwards.

        Returns:
            True if the script was installed
        """
        if not self.config.layer_enabled(2):
            return False

        try:
            await context.add_init_script(script=build_consent_state_script(
                self.local_storage,
                providers.CONSENT_WINDOW_FLAGS,
                include_cmp_stubs=self.config.cmp_api_stubs_enabled,
            ))
            logger.info("Layer 2 (consent state) installed on session context")
            return True
        except Exception as e:
            logger.warning(f"Layer 2 (consent state) failed: {e}")
            return False

    async def inject_consent_cookies(
        self,
        page: Page,
        url: str,
        stats: ConsentDefenseStats,
        domain: Optional[str] = None,
    ) -> None:
        """Add first-party consent cookies for the target domain.

        Args:
            page: Page whose context receives the cookies
            url: Target URL, used to derive the domain when not given
            stats: Per-capture statistics to update
            domain: Explicit cookie domain
        """
        if not self.config.layer_enabled(2):
            stats.record(2, LayerStatus.SKIPPED, "disabled")
            return

        try:
            target_domain = domain or urlparse(url).hostname
            if not target_domain:
                raise ValueError(f"No hostname in {url!r}")

            cookies = self.build_consent_cookies(target_domain)
            await page.context.add_cookies(cookies)
            stats.consent_injected = True
            stats.record(2, LayerStatus.APPLIED, target_domain)
            logger.debug(f"Layer 2: injected {len(cookies)} consent cookies for {target_domain}")
        except Exception as e:
            stats.record(2, LayerStatus.FAILED, str(e))
            logger.warning(f"Layer 2 (consent cookies) failed: {e}")

    def build_consent_cookies(self, domain: str) -> List[Dict[str, Any]]:
        now_iso = datetime.now(timezone.utc).isoformat()
        expires = int(time.time()) + providers.CONSENT_COOKIE_TTL_SECONDS
        return [
            {
                'name': name,
                'value': value.replace('{now}', now_iso),
                'domain': domain,
                'path': '/',
                'expires': expires,
            }
            for name, value in providers.CONSENT_COOKIES
        ]

    # Layer 3

    async def apply_suppression_styles(self, page: Page, stats: ConsentDefenseStats) -> None:
        """Hide overlay elements with an injected stylesheet. Call after navigation."""
        if not self.config.layer_enabled(3):
            stats.record(3, LayerStatus.SKIPPED, "disabled")
            return

        try:
            await page.add_style_tag(content=build_suppression_css(self.overlay_selectors))
            stats.css_applied = True
            stats.record(3, LayerStatus.APPLIED, f"{len(self.overlay_selectors)} selectors")
            logger.debug(f"Layer 3 (suppression styles) applied with {len(self.overlay_selectors)} selectors")
        except Exception as e:
            stats.record(3, LayerStatus.FAILED, str(e))
            logger.warning(f"Layer 3 (suppression styles) failed: {e}")

    # Layer 4

    async def find_content_container(
        self,
        page: Page,
        stats: ConsentDefenseStats,
    ) -> Optional[ElementHandle]:
        """Find the first visible, sufficiently large content container.

        Returns:
            Element handle, or None when no container qualifies
        """
        if not self.config.layer_enabled(4):
            stats.record(4, LayerStatus.SKIPPED, "disabled")
            return None

        try:
            for selector in self.content_selectors:
                element = await self._qualifying_element(page, selector)
                if element is not None:
                    stats.element_strategy = selector
                    stats.record(4, LayerStatus.APPLIED, selector)
                    logger.debug(f"Layer 4: using content container {selector}")
                    return element

            stats.record(4, LayerStatus.SKIPPED, "no qualifying container")
            return None
        except Exception as e:
            stats.record(4, LayerStatus.FAILED, str(e))
            logger.warning(f"Layer 4 (element targeting) failed: {e}")
            return None

    async def _qualifying_element(self, page: Page, selector: str) -> Optional[ElementHandle]:
        try:
            element = await page.query_selector(selector)
            if element is None or not await element.is_visible():
                return None
            box = await element.bounding_box()
        except Exception as e:
            logger.debug(f"Layer 4: selector {selector} unusable: {e}")
            return None

        if (
            box
            and box['width'] > self.config.min_container_width
            and box['height'] > self.config.min_container_height
        ):
            return element
        return None

    # Runtime extension

    def add_provider_pattern(self, pattern: str) -> None:
        """Add a URL substring to the layer 1 blocklist."""
        pattern = pattern.lower()
        if pattern and pattern not in self.provider_patterns:
            self.provider_patterns.append(pattern)
            logger.info(f"Added consent provider pattern: {pattern}")

    def add_overlay_selector(self, selector: str) -> None:
        """Add a selector hidden by layer 3."""
        if selector and selector not in self.overlay_selectors:
            self.overlay_selectors.append(selector)

    def add_local_storage_key(self, key: str, value: str) -> None:
        """Add or replace a layer 2 localStorage entry."""
        self.local_storage[key] = value


def _effective_resource_type(request: Any) -> str:
    """Resource type with child-frame documents reported as "iframe"."""
    resource_type = request.resource_type
    if resource_type == "document":
        try:
            frame = request.frame
            if frame.parent_frame is not None:
                return "iframe"
        except Exception:
            # Requests without a frame (e.g. service worker fetches)
            pass
    return resource_type
