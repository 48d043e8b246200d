from .browser import Browser
from .config import BrowserConfig, BrowserContextConfig
from .context import BrowserContext

__all__ = ["Browser", "BrowserConfig", "BrowserContext", "BrowserContextConfig"]
