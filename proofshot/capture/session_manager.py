"""Long-lived browser session management.

SessionManager owns one persistent Chromium context at a time. Each session
gets its own uniquely named profile directory, which is deleted on teardown.
Captures borrow pages from the shared session and release them when done;
only crash recovery tears the whole session down.
"""

import asyncio
import logging
import shutil
import tempfile
import time
import uuid
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from playwright.async_api import BrowserContext, Page, Playwright, async_playwright

from .config import SessionConfig
from .stabilizer import STABILIZER_SCRIPT

logger = logging.getLogger(__name__)


SessionHook = Callable[[BrowserContext], Awaitable[object]]


def cleanup_stale_profiles(
    base_dir: Path,
    prefix: str,
    max_age_minutes: int = 60,
    exclude: Optional[Path] = None,
) -> Tuple[int, int]:
    """Delete leftover profile directories older than max_age_minutes.

    Args:
        base_dir: Directory holding profile directories
        prefix: Profile directory name prefix
        max_age_minutes: Minimum age (by mtime) before removal
        exclude: Directory to keep regardless of age (the live profile)

    Returns:
        (cleaned, errors)
    """
    base_dir = Path(base_dir)
    if not base_dir.exists():
        return 0, 0

    cleaned = 0
    errors = 0
    cutoff = time.time() - max_age_minutes * 60

    for entry in base_dir.iterdir():
        if not entry.is_dir() or not entry.name.startswith(prefix):
            continue
        if exclude is not None and entry.resolve() == Path(exclude).resolve():
            continue
        try:
            if entry.stat().st_mtime < cutoff:
                shutil.rmtree(entry)
                cleaned += 1
                logger.info(f"Removed stale profile directory: {entry.name}")
        except OSError as e:
            errors += 1
            logger.warning(f"Failed to remove profile directory {entry.name}: {e}")

    if cleaned or errors:
        logger.info(f"Profile cleanup: {cleaned} removed, {errors} errors")
    return cleaned, errors


class SessionManager:
    """Creates, health-checks and tears down the shared browser session."""

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        session_hooks: Optional[List[SessionHook]] = None,
    ):
        """Initialize session manager.

        Args:
            config: Session configuration (defaults if None)
            session_hooks: Async callables run with every newly created context
        """
        self.config = config or SessionConfig()
        self.playwright: Optional[Playwright] = None
        self.context: Optional[BrowserContext] = None
        self.profile_dir: Optional[Path] = None
        self.sessions_created = 0
        # Sequence number of the live session, None when there is none
        self.generation: Optional[int] = None

        self._lock = asyncio.Lock()
        self._page_generations: Dict[Page, int] = {}
        self._closed = False
        self._session_hooks: List[SessionHook] = list(session_hooks or [])

    def add_session_hook(self, hook: SessionHook) -> None:
        """Register a callable run against each new session context."""
        self._session_hooks.append(hook)

    @property
    def base_dir(self) -> Path:
        return Path(self.config.profile_base_dir or tempfile.gettempdir())

    @property
    def is_running(self) -> bool:
        return self.context is not None and not self._closed

    async def acquire(self) -> BrowserContext:
        """Return the live session, creating or replacing it as needed.

        Concurrent callers wait on a single in-flight initialisation.

        Returns:
            Healthy browser context
        """
        async with self._lock:
            if self.context is not None:
                if await self._is_healthy():
                    return self.context
                logger.warning("Browser session failed health check, rebuilding")
                await self._teardown_locked()

            await self._create_session()
            return self.context

    async def new_page(self) -> Page:
        """Open a page in the shared session.

        The generation of the session that served the page is available
        from generation_of() until the page is released.
        """
        context = await self.acquire()
        generation = self.generation
        page = await context.new_page()
        page.set_default_timeout(self.config.default_timeout_ms)
        self._page_generations[page] = generation
        return page

    def generation_of(self, page: Optional[Page]) -> Optional[int]:
        """Return the session generation a page was opened in."""
        if page is None:
            return None
        return self._page_generations.get(page)

    async def release(self, page: Optional[Page]) -> None:
        """Close a page without touching the session."""
        if page is None:
            return
        self._page_generations.pop(page, None)
        try:
            await page.close()
        except Exception as e:
            logger.warning(f"Error closing page: {e}")

    async def invalidate(self, reason: str = "", generation: Optional[int] = None) -> bool:
        """Tear down the session after a crash so the next acquire rebuilds it.

        Several captures can share a session that crashes, and each of them
        reports the crash. Passing the generation the failing capture used
        keeps a late report from tearing down a session that has already
        been replaced.

        Args:
            reason: Crash description for the log
            generation: Session generation the crash was observed in, or None
                to tear down whatever session is live

        Returns:
            True if a session was torn down
        """
        async with self._lock:
            if generation is not None and generation != self.generation:
                logger.debug(
                    f"Ignoring crash report for session #{generation}, "
                    f"live session is {'#' + str(self.generation) if self.generation else 'none'}"
                )
                return False
            logger.warning(f"Invalidating browser session{': ' + reason if reason else ''}")
            await self._teardown_locked()
            return True

    async def teardown(self) -> None:
        """Close the session, stop Playwright and delete the profile directory."""
        async with self._lock:
            await self._teardown_locked()

    def cleanup_stale_profiles(self, max_age_minutes: int = 60) -> Tuple[int, int]:
        """Remove stale profile directories other than the live one."""
        return cleanup_stale_profiles(
            self.base_dir,
            self.config.profile_prefix,
            max_age_minutes=max_age_minutes,
            exclude=self.profile_dir,
        )

    async def _is_healthy(self) -> bool:
        if self._closed or self.context is None:
            return False
        try:
            _ = len(self.context.pages)
            await self.context.cookies()
            return True
        except Exception as e:
            logger.warning(f"Browser session health check failed: {e}")
            return False

    def _extension_dir(self) -> Optional[Path]:
        path = self.config.extension_path
        if path is None:
            return None
        path = Path(path)
        if not path.exists():
            logger.warning(f"Extension path not found, using stabilizer init script: {path}")
            return None
        return path.resolve()

    async def _create_session(self) -> None:
        profile_dir = self.base_dir / f"{self.config.profile_prefix}{uuid.uuid4()}"
        profile_dir.mkdir(parents=True, exist_ok=True)
        self.profile_dir = profile_dir

        extension_dir = self._extension_dir()
        logger.info(
            f"Launching browser session (headless={self.config.headless}, "
            f"extension={'yes' if extension_dir else 'no'}, profile={profile_dir.name})"
        )

        try:
            self.playwright = await async_playwright().start()
            context = await self.playwright.chromium.launch_persistent_context(
                str(profile_dir),
                **self.config.to_context_options(extension_dir)
            )
        except Exception as e:
            logger.error(f"Failed to launch browser session: {e}")
            await self._teardown_locked()
            raise

        self.context = context
        self._closed = False
        context.on("close", lambda ctx: self._mark_closed(ctx))

        if extension_dir is None:
            await context.add_init_script(script=STABILIZER_SCRIPT)

        for hook in self._session_hooks:
            try:
                await hook(context)
            except Exception as e:
                logger.warning(f"Session hook {getattr(hook, '__name__', hook)!r} failed: {e}")

        self.sessions_created += 1
        self.generation = self.sessions_created
        logger.info(f"Browser session #{self.sessions_created} ready")

    def _mark_closed(self, context: BrowserContext) -> None:
        if context is self.context:
            logger.warning("Browser session closed unexpectedly")
            self._closed = True

    async def _teardown_locked(self) -> None:
        context, self.context = self.context, None
        playwright, self.playwright = self.playwright, None
        profile_dir, self.profile_dir = self.profile_dir, None
        self.generation = None

        if context is not None:
            try:
                await context.close()
            except Exception as e:
                logger.warning(f"Error closing browser session: {e}")

        if playwright is not None:
            try:
                await playwright.stop()
            except Exception as e:
                logger.warning(f"Error stopping Playwright: {e}")

        if profile_dir is not None and profile_dir.exists():
            try:
                shutil.rmtree(profile_dir)
            except OSError as e:
                logger.warning(f"Failed to delete profile directory {profile_dir}: {e}")

        self._closed = False
        if context is not None:
            logger.info("Browser session torn down")

    async def __aenter__(self) -> "SessionManager":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.teardown()

    def __repr__(self) -> str:
        return (
            f"SessionManager(running={self.is_running}, "
            f"sessions_created={self.sessions_created})"
        )
