import logging
from typing import Optional

from playwright.async_api import Browser as PlaywrightBrowser
from playwright.async_api import Playwright, async_playwright

from .config import BrowserConfig, BrowserContextConfig

logger = logging.getLogger(__name__)

DISABLE_SECURITY_ARGS = [
    "--disable-web-security",
    "--disable-site-isolation-trials",
    "--disable-features=IsolateOrigins,site-per-process",
]


class Browser:
    """Owns the Playwright driver and one chromium instance shared by its contexts."""

    def __init__(self, config: Optional[BrowserConfig] = None):
        self.config = config or BrowserConfig()
        self.playwright: Optional[Playwright] = None
        self.playwright_browser: Optional[PlaywrightBrowser] = None

    async def new_context(self, config: Optional[BrowserContextConfig] = None):
        from .context import BrowserContext

        return BrowserContext(self, config or self.config.new_context_config)

    async def get_playwright_browser(self) -> PlaywrightBrowser:
        if self.playwright_browser is None:
            return await self._init()
        return self.playwright_browser

    async def _init(self) -> PlaywrightBrowser:
        self.playwright = await async_playwright().start()
        self.playwright_browser = await self._setup_browser(self.playwright)
        return self.playwright_browser

    async def _setup_browser(self, playwright: Playwright) -> PlaywrightBrowser:
        if self.config.cdp_url:
            logger.info(f"[Browser] Connecting to remote browser via CDP {self.config.cdp_url}")
            return await playwright.chromium.connect_over_cdp(self.config.cdp_url)

        args = ["--no-sandbox", "--disable-blink-features=AutomationControlled", "--no-first-run"]
        if self.config.disable_security:
            args += DISABLE_SECURITY_ARGS
        args += self.config.extra_chromium_args

        logger.info(f"[Browser] Launching chromium (headless={self.config.headless})")
        return await playwright.chromium.launch(
            headless=self.config.headless,
            executable_path=self.config.chrome_instance_path,
            args=args,
            proxy=self.config.proxy,
        )

    async def close(self) -> None:
        try:
            if self.playwright_browser:
                await self.playwright_browser.close()
            if self.playwright:
                await self.playwright.stop()
        except Exception as e:
            logger.debug(f"[Browser] Failed to close browser properly: {e}")
        finally:
            self.playwright_browser = None
            self.playwright = None
