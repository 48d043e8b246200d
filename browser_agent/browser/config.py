from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..core.config import HEADLESS


@dataclass
class BrowserContextConfig:
    """
    Per-context settings.

    Waits are in seconds. `viewport_expansion` is the number of pixels around
    the viewport whose elements are still indexed (-1 indexes the whole page,
    0 only the visible viewport).
    """

    cookies_file: Optional[str] = None
    minimum_wait_page_load_time: float = 0.25
    wait_for_network_idle_page_load_time: float = 0.5
    maximum_wait_page_load_time: float = 5
    wait_between_actions: float = 0.5

    disable_security: bool = True
    browser_window_size: Dict[str, int] = field(default_factory=lambda: {"width": 1280, "height": 1100})
    save_recording_path: Optional[str] = None
    save_downloads_path: Optional[str] = None
    trace_path: Optional[str] = None
    locale: Optional[str] = None
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/85.0.4183.102 Safari/537.36"
    )

    highlight_elements: bool = True
    viewport_expansion: int = 500
    allowed_domains: Optional[List[str]] = None
    include_dynamic_attributes: bool = True


@dataclass
class BrowserConfig:
    headless: bool = HEADLESS
    disable_security: bool = True
    extra_chromium_args: List[str] = field(default_factory=list)
    chrome_instance_path: Optional[str] = None
    cdp_url: Optional[str] = None
    proxy: Optional[Dict[str, Any]] = None
    new_context_config: BrowserContextConfig = field(default_factory=BrowserContextConfig)
