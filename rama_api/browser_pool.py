from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional, Tuple

import structlog

# Playwright types only; the driver itself is imported when the first browser launches
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from playwright.async_api import Browser, BrowserContext, Page, Playwright  # type: ignore

from rama_api.exceptions import ResourceClosed, ResourceCreationFailure


logger = structlog.get_logger(__name__)


# -----------------------------
# Tunables / defaults
# -----------------------------

DEFAULT_USER_AGENT: str = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
DEFAULT_VIEWPORT = {"width": 1365, "height": 768}
CHROMIUM_ARGS = ["--no-sandbox", "--disable-setuid-sandbox", "--disable-dev-shm-usage"]

Launcher = Callable[[bool], Awaitable[Tuple[Optional["Playwright"], "Browser"]]]


async def launch_chromium(headless: bool) -> Tuple["Playwright", "Browser"]:
    """Start the Playwright driver and one headless Chromium."""
    from playwright.async_api import async_playwright  # type: ignore

    pw = await async_playwright().start()
    try:
        browser = await pw.chromium.launch(headless=headless, args=CHROMIUM_ARGS)
    except BaseException:
        await pw.stop()
        raise
    return pw, browser


def _consume_exception(fut: "asyncio.Future") -> None:
    # A creation whose waiters were all cancelled would otherwise log
    # "exception was never retrieved".
    if not fut.cancelled():
        fut.exception()


# -----------------------------
# BrowserPool
# -----------------------------

class BrowserPool:
    """
    Process-wide holder of the one Chromium instance every scrape shares.

    Lifecycle: uninitialized -> initializing -> ready -> closed.
      - acquire(): first caller starts the launch, later callers await the same
        launch. A failed launch resets to uninitialized; the next acquire retries.
      - session(): fresh context + page per execution, always closed on exit.
      - shutdown(): closes the browser; acquire() fails from then on.
    """

    def __init__(
        self,
        *,
        headless: bool = True,
        user_agent: str = DEFAULT_USER_AGENT,
        launcher: Optional[Launcher] = None,
    ) -> None:
        self.headless = headless
        self.user_agent = user_agent
        self._launcher: Launcher = launcher or launch_chromium

        self._pw: Optional["Playwright"] = None
        self._browser: Optional["Browser"] = None
        self._creation: Optional["asyncio.Task[Browser]"] = None
        self._closed = False

        self.launch_count = 0
        self.active_sessions = 0

    @property
    def state(self) -> str:
        if self._closed:
            return "closed"
        if self._browser is not None:
            return "ready"
        if self._creation is not None:
            return "initializing"
        return "uninitialized"

    async def acquire(self) -> "Browser":
        if self._closed:
            raise ResourceClosed("El pool de navegador fue cerrado")

        if self._browser is not None:
            if self._browser.is_connected():
                return self._browser
            logger.warning("browser_disconnected", launch=self.launch_count)
            pw, browser = self._pw, self._browser
            self._pw = None
            self._browser = None
            await self._close_handles(pw, browser)
            if self._closed:
                raise ResourceClosed("El pool de navegador fue cerrado")

        if self._creation is None or self._creation.done():
            self._creation = asyncio.create_task(self._create())
            self._creation.add_done_callback(_consume_exception)

        # shield: a waiter hitting its own timeout must not abort the launch for the others
        return await asyncio.shield(self._creation)

    async def _create(self) -> "Browser":
        logger.info("browser_launching", headless=self.headless)
        try:
            pw, browser = await self._launcher(self.headless)
        except Exception as exc:
            logger.error("browser_launch_failed", error=str(exc))
            raise ResourceCreationFailure(f"No se pudo iniciar el navegador: {exc}") from exc
        finally:
            self._creation = None

        if self._closed:
            await self._close_handles(pw, browser)
            raise ResourceClosed("El pool de navegador fue cerrado durante el arranque")

        self._pw = pw
        self._browser = browser
        self.launch_count += 1
        logger.info("browser_ready", launch=self.launch_count)
        return browser

    async def _new_context(self, browser: "Browser") -> "BrowserContext":
        return await browser.new_context(
            user_agent=self.user_agent,
            java_script_enabled=True,
            viewport=DEFAULT_VIEWPORT,
        )

    @asynccontextmanager
    async def session(self) -> AsyncIterator["Page"]:
        """Borrow one page for exclusive use by a single execution."""
        browser = await self.acquire()
        ctx = await self._new_context(browser)
        self.active_sessions += 1
        page: Optional["Page"] = None
        try:
            page = await ctx.new_page()
            yield page
        finally:
            self.active_sessions -= 1
            try:
                if page:
                    await page.close()
            except Exception as exc:
                logger.debug("page_close_failed", error=str(exc))
            try:
                await ctx.close()
            except Exception as exc:
                logger.debug("context_close_failed", error=str(exc))

    async def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        pw, browser = self._pw, self._browser
        self._pw = None
        self._browser = None
        await self._close_handles(pw, browser)
        logger.info("browser_pool_closed")

    async def _close_handles(self, pw: Optional["Playwright"], browser: Optional["Browser"]) -> None:
        if browser is not None:
            try:
                await browser.close()
            except Exception as exc:
                logger.warning("browser_close_failed", error=str(exc))
        if pw is not None:
            try:
                await pw.stop()
            except Exception as exc:
                logger.warning("playwright_stop_failed", error=str(exc))
