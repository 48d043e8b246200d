import asyncio
import base64
import json
import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple
from urllib.parse import urlparse

from playwright.async_api import BrowserContext as PlaywrightBrowserContext
from playwright.async_api import ElementHandle, FrameLocator, Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..dom.service import DomService
from ..dom.views import DOMElementNode, SelectorMap
from .config import BrowserContextConfig
from .views import BrowserError, BrowserState, TabInfo, URLNotAllowedError

logger = logging.getLogger(__name__)

# Request filtering for the network-idle wait
RELEVANT_RESOURCE_TYPES = {
    "document",
    "stylesheet",
    "image",
    "font",
    "script",
    "fetch",
    "xhr",
    "iframe",
}

RELEVANT_CONTENT_TYPES = (
    "text/html",
    "text/css",
    "application/javascript",
    "image/",
    "font/",
    "application/json",
)

STREAMING_CONTENT_TYPES = (
    "streaming",
    "video",
    "audio",
    "webm",
    "mp4",
    "event-stream",
    "websocket",
    "protobuf",
)

IGNORED_URL_PATTERNS = (
    # Analytics and tracking
    "analytics",
    "tracking",
    "telemetry",
    "beacon",
    "metrics",
    # Ad-related
    "doubleclick",
    "adsystem",
    "adserver",
    "advertising",
    # Social media widgets
    "facebook.com/plugins",
    "platform.twitter",
    "linkedin.com/embed",
    # Live chat and support
    "livechat",
    "zendesk",
    "intercom",
    "crisp.chat",
    "hotjar",
    # Push notifications
    "push-notifications",
    "onesignal",
    "pushwoosh",
    # Background sync/heartbeat
    "heartbeat",
    "ping",
    "alive",
    # WebRTC and streaming
    "webrtc",
    "rtmp://",
    "wss://",
    # Common CDNs for dynamic content
    "cloudfront.net",
    "fastly.net",
)

MAX_RESPONSE_BYTES = 5 * 1024 * 1024

SAFE_ATTRIBUTES = {
    "id",
    "name",
    "type",
    "placeholder",
    "aria-label",
    "aria-labelledby",
    "aria-describedby",
    "role",
    "for",
    "autocomplete",
    "required",
    "readonly",
    "alt",
    "title",
    "src",
    "href",
    "target",
}

DYNAMIC_ATTRIBUTES = {"data-id", "data-qa", "data-cy", "data-testid"}

_VALID_CLASS_NAME = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_-]*$")


@dataclass
class BrowserSession:
    context: PlaywrightBrowserContext
    cached_state: Optional[BrowserState] = None
    current_page_index: int = 0


def is_relevant_request(request) -> bool:
    if request.resource_type not in RELEVANT_RESOURCE_TYPES:
        return False
    if request.resource_type in {"websocket", "media", "eventsource", "manifest", "other"}:
        return False

    url = request.url.lower()
    if any(pattern in url for pattern in IGNORED_URL_PATTERNS):
        return False
    if url.startswith(("data:", "blob:")):
        return False

    headers = request.headers
    if headers.get("purpose") == "prefetch" or headers.get("sec-fetch-dest") in ("video", "audio"):
        return False
    return True


def is_relevant_response(content_type: str, content_length: Optional[str]) -> bool:
    content_type = (content_type or "").lower()
    if any(t in content_type for t in STREAMING_CONTENT_TYPES):
        return False
    if not any(content_type.startswith(t) for t in RELEVANT_CONTENT_TYPES):
        return False
    if content_length and content_length.isdigit() and int(content_length) > MAX_RESPONSE_BYTES:
        return False
    return True


class BrowserContext:
    def __init__(self, browser, config: Optional[BrowserContextConfig] = None):
        self.browser = browser
        self.config = config or BrowserContextConfig()
        self.session: Optional[BrowserSession] = None

    async def __aenter__(self) -> "BrowserContext":
        await self._initialize_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self.session is None:
            return
        try:
            await self.save_cookies()
            if self.config.trace_path:
                try:
                    await self.session.context.tracing.stop(
                        path=os.path.join(self.config.trace_path, "trace.zip"))
                except Exception as e:
                    logger.debug(f"[Browser] Failed to stop tracing: {e}")
            await self.session.context.close()
        except Exception as e:
            logger.debug(f"[Browser] Session close failed: {e}")
        finally:
            self.session = None

    # ------------------------------------------------------------------ session

    async def _initialize_session(self) -> BrowserSession:
        logger.debug("[Browser] Initializing browser context")
        playwright_browser = await self.browser.get_playwright_browser()
        context = await self._create_context(playwright_browser)

        page = context.pages[0] if context.pages else await context.new_page()
        self.session = BrowserSession(context=context)
        self.session.current_page_index = context.pages.index(page)
        return self.session

    async def _create_context(self, playwright_browser) -> PlaywrightBrowserContext:
        if self.browser.config.cdp_url and playwright_browser.contexts:
            context = playwright_browser.contexts[0]
        else:
            context = await playwright_browser.new_context(
                viewport=self.config.browser_window_size,
                user_agent=self.config.user_agent,
                java_script_enabled=True,
                bypass_csp=self.config.disable_security,
                ignore_https_errors=self.config.disable_security,
                record_video_dir=self.config.save_recording_path,
                locale=self.config.locale,
            )

        if self.config.trace_path:
            await context.tracing.start(screenshots=True, snapshots=True, sources=True)

        if self.config.cookies_file and os.path.exists(self.config.cookies_file):
            with open(self.config.cookies_file, "r") as f:
                cookies = json.load(f)
            logger.info(f"[Browser] Loaded {len(cookies)} cookies from {self.config.cookies_file}")
            await context.add_cookies(cookies)

        # Hide the automation flag from simple bot checks
        await context.add_init_script(
            "Object.defineProperty(navigator, 'webdriver', { get: () => undefined });")
        return context

    async def get_session(self) -> BrowserSession:
        if self.session is None:
            return await self._initialize_session()
        return self.session

    async def get_current_page(self) -> Page:
        session = await self.get_session()
        pages = session.context.pages
        if not pages:
            page = await session.context.new_page()
            session.current_page_index = 0
            return page
        index = min(session.current_page_index, len(pages) - 1)
        return pages[index]

    # ------------------------------------------------------------------ state

    async def get_state(self) -> BrowserState:
        await self._wait_for_page_and_frames_load()
        session = await self.get_session()
        session.cached_state = await self._update_state()

        if self.config.cookies_file:
            await self.save_cookies()

        return session.cached_state

    async def _update_state(self, focus_element: int = -1) -> BrowserState:
        session = await self.get_session()
        page = await self.get_current_page()

        try:
            await page.evaluate("1")
        except Exception as e:
            logger.warning(f"[Browser] Current page is no longer accessible: {e}")
            pages = session.context.pages
            if not pages:
                raise BrowserError("Browser closed: no valid pages available") from e
            session.current_page_index = len(pages) - 1
            page = pages[-1]

        try:
            await self.remove_highlights()
            dom_state = await DomService(page).get_clickable_elements(
                highlight_elements=self.config.highlight_elements,
                focus_element=focus_element,
                viewport_expansion=self.config.viewport_expansion,
            )

            screenshot_b64 = await self.take_screenshot()
            pixels_above, pixels_below = await self.get_scroll_info(page)

            return BrowserState(
                element_tree=dom_state.element_tree,
                selector_map=dom_state.selector_map,
                url=page.url,
                title=await page.title(),
                tabs=await self.get_tabs_info(),
                screenshot=screenshot_b64,
                pixels_above=pixels_above,
                pixels_below=pixels_below,
            )
        except Exception as e:
            logger.error(f"[Browser] Failed to update state: {e}")
            raise

    async def _wait_for_stable_network(self) -> None:
        page = await self.get_current_page()
        pending: Set[Any] = set()
        last_activity = time.monotonic()

        def on_request(request) -> None:
            nonlocal last_activity
            if not is_relevant_request(request):
                return
            pending.add(request)
            last_activity = time.monotonic()

        def on_response(response) -> None:
            nonlocal last_activity
            request = response.request
            if request not in pending:
                return
            headers = response.headers
            if not is_relevant_response(headers.get("content-type", ""), headers.get("content-length")):
                pending.discard(request)
                return
            pending.discard(request)
            last_activity = time.monotonic()

        page.on("request", on_request)
        page.on("response", on_response)
        try:
            start_time = time.monotonic()
            while True:
                await asyncio.sleep(0.1)
                now = time.monotonic()
                if not pending and (now - last_activity) >= self.config.wait_for_network_idle_page_load_time:
                    break
                if now - start_time > self.config.maximum_wait_page_load_time:
                    logger.debug(
                        f"[Browser] Network timeout after {self.config.maximum_wait_page_load_time}s "
                        f"with {len(pending)} pending requests")
                    break
        finally:
            page.remove_listener("request", on_request)
            page.remove_listener("response", on_response)

        logger.debug(f"[Browser] Network stabilized for {self.config.wait_for_network_idle_page_load_time}s")

    async def _wait_for_page_and_frames_load(self, timeout_overwrite: Optional[float] = None) -> None:
        start_time = time.monotonic()
        try:
            await self._wait_for_stable_network()
            page = await self.get_current_page()
            await self._check_and_handle_navigation(page)
        except URLNotAllowedError:
            raise
        except Exception as e:
            logger.warning(f"[Browser] Page load failed, continuing: {e}")

        elapsed = time.monotonic() - start_time
        remaining = max((timeout_overwrite or self.config.minimum_wait_page_load_time) - elapsed, 0)
        logger.debug(f"[Browser] Page loaded in {elapsed:.2f}s, waiting {remaining:.2f}s more")
        if remaining > 0:
            await asyncio.sleep(remaining)

    # ------------------------------------------------------------------ navigation

    def _is_url_allowed(self, url: str) -> bool:
        if not self.config.allowed_domains:
            return True
        try:
            parsed = urlparse(url)
        except ValueError:
            return False
        if parsed.scheme not in ("http", "https"):
            # about:blank, chrome://newtab and friends
            return True
        domain = (parsed.hostname or "").lower()
        return any(
            domain == allowed.lower() or domain.endswith("." + allowed.lower())
            for allowed in self.config.allowed_domains
        )

    async def _check_and_handle_navigation(self, page: Page) -> None:
        if not self._is_url_allowed(page.url):
            logger.warning(f"[Browser] Navigation to non-allowed URL detected: {page.url}")
            try:
                await self.go_to_blank(page)
            except Exception as e:
                logger.error(f"[Browser] Failed to leave non-allowed URL: {e}")
            raise URLNotAllowedError(f"Navigation to non-allowed URL: {page.url}")

    async def go_to_blank(self, page: Page) -> None:
        await page.goto("about:blank")

    async def navigate_to(self, url: str) -> None:
        if not self._is_url_allowed(url):
            raise URLNotAllowedError(f"Navigation to non-allowed URL: {url}")
        page = await self.get_current_page()
        await page.goto(url)
        await page.wait_for_load_state()

    async def refresh_page(self) -> None:
        page = await self.get_current_page()
        await page.reload()
        await page.wait_for_load_state()

    async def go_back(self) -> None:
        page = await self.get_current_page()
        try:
            await page.go_back(timeout=10, wait_until="domcontentloaded")
        except Exception as e:
            # Single-page apps often never fire the load event here
            logger.debug(f"[Browser] During go_back: {e}")

    async def go_forward(self) -> None:
        page = await self.get_current_page()
        try:
            await page.go_forward(timeout=10, wait_until="domcontentloaded")
        except Exception as e:
            logger.debug(f"[Browser] During go_forward: {e}")

    # ------------------------------------------------------------------ tabs

    async def get_tabs_info(self) -> List[TabInfo]:
        session = await self.get_session()
        tabs: List[TabInfo] = []
        for page_id, page in enumerate(session.context.pages):
            try:
                title = await asyncio.wait_for(page.title(), timeout=1)
            except Exception:
                title = "(title unavailable)"
            tabs.append(TabInfo(page_id=page_id, url=page.url, title=title))
        return tabs

    async def switch_to_tab(self, page_id: int) -> None:
        session = await self.get_session()
        pages = session.context.pages
        if page_id >= len(pages) or page_id < -len(pages):
            raise BrowserError(f"No tab found with page_id: {page_id}")

        page = pages[page_id]
        if not self._is_url_allowed(page.url):
            raise URLNotAllowedError(f"Cannot switch to tab with non-allowed URL: {page.url}")

        session.current_page_index = page_id % len(pages)
        await page.bring_to_front()
        await page.wait_for_load_state()

    async def create_new_tab(self, url: Optional[str] = None) -> None:
        if url and not self._is_url_allowed(url):
            raise URLNotAllowedError(f"Cannot create new tab with non-allowed URL: {url}")

        session = await self.get_session()
        new_page = await session.context.new_page()
        session.current_page_index = len(session.context.pages) - 1
        await new_page.wait_for_load_state()
        if url:
            await new_page.goto(url)
            await self._wait_for_page_and_frames_load(timeout_overwrite=1)

    async def close_current_tab(self) -> None:
        session = await self.get_session()
        page = await self.get_current_page()
        await page.close()
        if session.context.pages:
            await self.switch_to_tab(0)

    # ------------------------------------------------------------------ page helpers

    async def take_screenshot(self, full_page: bool = False) -> str:
        page = await self.get_current_page()
        await page.bring_to_front()
        await page.wait_for_load_state()
        screenshot = await page.screenshot(full_page=full_page, animations="disabled")
        return base64.b64encode(screenshot).decode("utf-8")

    async def remove_highlights(self) -> None:
        try:
            page = await self.get_current_page()
            await page.evaluate(
                """
                try {
                    const container = document.getElementById('browser-agent-highlight-container');
                    if (container) { container.remove(); }
                } catch (e) {
                    console.error('Failed to remove highlights:', e);
                }
                """
            )
        except Exception as e:
            # Closed or navigating pages cannot be cleaned up
            logger.debug(f"[Browser] Failed to remove highlights (this is usually ok): {e}")

    async def get_scroll_info(self, page: Page) -> Tuple[int, int]:
        scroll_y = await page.evaluate("window.scrollY")
        viewport_height = await page.evaluate("window.innerHeight")
        total_height = await page.evaluate("document.documentElement.scrollHeight")
        pixels_above = int(scroll_y)
        pixels_below = int(max(total_height - (scroll_y + viewport_height), 0))
        return pixels_above, pixels_below

    async def get_page_html(self) -> str:
        page = await self.get_current_page()
        return await page.content()

    async def execute_javascript(self, script: str) -> Any:
        page = await self.get_current_page()
        return await page.evaluate(script)

    # ------------------------------------------------------------------ elements

    async def get_selector_map(self) -> SelectorMap:
        session = await self.get_session()
        if session.cached_state is None:
            return {}
        return session.cached_state.selector_map

    async def get_dom_element_by_index(self, index: int) -> DOMElementNode:
        selector_map = await self.get_selector_map()
        element = selector_map.get(str(index))
        if element is None:
            raise BrowserError(f"Element with index {index} does not exist - retry or use alternative actions")
        return element

    async def get_element_by_index(self, index: int) -> Optional[ElementHandle]:
        element = await self.get_dom_element_by_index(index)
        return await self.get_locate_element(element)

    @staticmethod
    def _convert_simple_xpath_to_css_selector(xpath: str) -> str:
        if not xpath:
            return ""

        css_parts = []
        for part in xpath.strip("/").split("/"):
            if not part:
                continue

            if "[" not in part:
                css_parts.append(part.replace(":", r"\:"))
                continue

            base_part = part[: part.find("[")].replace(":", r"\:")
            index_part = part[part.find("["):]
            indices = [i.strip("[]") for i in index_part.split("]")[:-1]]

            for idx in indices:
                if idx.isdigit():
                    base_part += f":nth-of-type({int(idx)})"
                elif idx == "last()":
                    base_part += ":last-of-type"
                elif "position()" in idx and ">1" in idx:
                    base_part += ":nth-of-type(n+2)"
            css_parts.append(base_part)

        return " > ".join(css_parts)

    @staticmethod
    def _enhanced_css_selector_for_element(element: DOMElementNode, include_dynamic_attributes: bool = True) -> str:
        """Stable CSS selector for an element built from its xpath and safe attributes."""
        try:
            css_selector = BrowserContext._convert_simple_xpath_to_css_selector(element.xpath) or element.tag_name

            class_value = element.attributes.get("class")
            if class_value and include_dynamic_attributes:
                for class_name in class_value.split():
                    if _VALID_CLASS_NAME.match(class_name):
                        css_selector += f".{class_name}"

            safe_attributes = SAFE_ATTRIBUTES | DYNAMIC_ATTRIBUTES if include_dynamic_attributes else SAFE_ATTRIBUTES

            for attribute, value in element.attributes.items():
                if attribute == "class" or not attribute.strip() or attribute not in safe_attributes:
                    continue

                safe_attribute = attribute.replace(":", r"\:")
                if value == "":
                    css_selector += f"[{safe_attribute}]"
                elif any(char in value for char in "\"'<>`\n\r\t"):
                    collapsed = re.sub(r"\s+", " ", value).strip()
                    safe_value = collapsed.replace('"', '\\"')
                    css_selector += f'[{safe_attribute}*="{safe_value}"]'
                else:
                    css_selector += f'[{safe_attribute}="{value}"]'

            return css_selector
        except Exception:
            tag_name = element.tag_name or "*"
            return f"{tag_name}[highlight_index='{element.highlight_index}']"

    async def get_locate_element(self, element: DOMElementNode) -> Optional[ElementHandle]:
        current_frame: Any = await self.get_current_page()

        parents: List[DOMElementNode] = []
        current = element
        while current.parent is not None:
            parents.append(current.parent)
            current = current.parent
        parents.reverse()

        for parent in parents:
            if parent.tag_name == "iframe":
                selector = self._enhanced_css_selector_for_element(parent, self.config.include_dynamic_attributes)
                current_frame = current_frame.frame_locator(selector)

        css_selector = self._enhanced_css_selector_for_element(element, self.config.include_dynamic_attributes)

        try:
            if isinstance(current_frame, FrameLocator):
                return await current_frame.locator(css_selector).element_handle()

            element_handle = await current_frame.query_selector(css_selector)
            if element_handle:
                await element_handle.scroll_into_view_if_needed()
            return element_handle
        except Exception as e:
            logger.error(f"[Browser] Failed to locate element: {e}")
            return None

    async def _click_element_node(self, element_node: DOMElementNode) -> Optional[str]:
        """Click the element; returns the saved path when the click triggered a download."""
        page = await self.get_current_page()

        element_handle = await self.get_locate_element(element_node)
        if element_handle is None:
            raise BrowserError(f"Element: {element_node!r} not found")

        async def perform_click(click_func) -> Optional[str]:
            if self.config.save_downloads_path:
                try:
                    async with page.expect_download(timeout=5000) as download_info:
                        await click_func()
                    download = await download_info.value
                    filename = await self._get_unique_filename(
                        self.config.save_downloads_path, download.suggested_filename)
                    download_path = os.path.join(self.config.save_downloads_path, filename)
                    await download.save_as(download_path)
                    logger.debug(f"[Browser] Download triggered. Saved file to: {download_path}")
                    return download_path
                except PlaywrightTimeoutError:
                    logger.debug("[Browser] No download triggered within timeout. Checking navigation...")
                    await page.wait_for_load_state()
                    await self._check_and_handle_navigation(page)
            else:
                await click_func()
                await page.wait_for_load_state()
                await self._check_and_handle_navigation(page)
            return None

        try:
            return await perform_click(lambda: element_handle.click(timeout=1500))
        except URLNotAllowedError:
            raise
        except Exception:
            try:
                return await perform_click(lambda: page.evaluate("(el) => el.click()", element_handle))
            except URLNotAllowedError:
                raise
            except Exception as e:
                raise BrowserError(f"Failed to click element: {e}") from e

    async def _input_text_element_node(self, element_node: DOMElementNode, text: str) -> None:
        try:
            element_handle = await self.get_locate_element(element_node)
            if element_handle is None:
                raise BrowserError(f"Element: {element_node!r} not found")

            try:
                await element_handle.wait_for_element_state("stable", timeout=1000)
                await element_handle.scroll_into_view_if_needed(timeout=1000)
            except Exception:
                pass

            tag_name = (await (await element_handle.get_property("tagName")).json_value()).lower()
            is_contenteditable = await (await element_handle.get_property("isContentEditable")).json_value()
            readonly = await (await element_handle.get_property("readOnly")).json_value()
            disabled = await (await element_handle.get_property("disabled")).json_value()

            if (is_contenteditable or tag_name == "input") and not (readonly or disabled):
                await element_handle.evaluate('el => el.textContent = ""')
                await element_handle.type(text, delay=5)
            else:
                await element_handle.fill(text)
        except BrowserError:
            raise
        except Exception as e:
            logger.debug(f"[Browser] Failed to input text into element: {element_node!r}. Error: {e}")
            raise BrowserError(f"Failed to input text into index {element_node.highlight_index}") from e

    async def is_file_uploader(self, element_node: DOMElementNode, max_depth: int = 3, current_depth: int = 0) -> bool:
        if current_depth > max_depth:
            return False

        if element_node.tag_name == "input":
            if element_node.attributes.get("type") == "file" or element_node.attributes.get("accept"):
                return True

        if element_node.children and current_depth < max_depth:
            for child in element_node.children:
                if isinstance(child, DOMElementNode):
                    if await self.is_file_uploader(child, max_depth, current_depth + 1):
                        return True
        return False

    async def _get_unique_filename(self, directory: str, filename: str) -> str:
        base, ext = os.path.splitext(filename)
        counter = 1
        new_filename = filename
        while os.path.exists(os.path.join(directory, new_filename)):
            new_filename = f"{base} ({counter}){ext}"
            counter += 1
        return new_filename

    # ------------------------------------------------------------------ cookies

    async def save_cookies(self) -> None:
        if self.session is None or not self.config.cookies_file:
            return
        try:
            cookies = await self.session.context.cookies()
            dirname = os.path.dirname(self.config.cookies_file)
            if dirname:
                os.makedirs(dirname, exist_ok=True)
            with open(self.config.cookies_file, "w") as f:
                json.dump(cookies, f)
            logger.debug(f"[Browser] Saved {len(cookies)} cookies to {self.config.cookies_file}")
        except Exception as e:
            logger.warning(f"[Browser] Failed to save cookies: {e}")
