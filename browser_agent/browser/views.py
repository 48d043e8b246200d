from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..core.errors import BrowserAgentError
from ..dom.history_tree_processor import DOMHistoryElement
from ..dom.views import DOMState


@dataclass
class TabInfo:
    page_id: int
    url: str
    title: str

    def to_dict(self) -> Dict[str, Any]:
        return {"page_id": self.page_id, "url": self.url, "title": self.title}


@dataclass
class BrowserState(DOMState):
    url: str = ""
    title: str = ""
    tabs: List[TabInfo] = field(default_factory=list)
    screenshot: Optional[str] = None
    pixels_above: int = 0
    pixels_below: int = 0
    browser_errors: List[str] = field(default_factory=list)


@dataclass
class BrowserStateHistory:
    url: str
    title: str
    tabs: List[TabInfo]
    interacted_element: List[Optional[DOMHistoryElement]]
    screenshot: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "title": self.title,
            "tabs": [tab.to_dict() for tab in self.tabs],
            "interacted_element": [el.to_dict() if el else None for el in self.interacted_element],
            "screenshot": self.screenshot,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BrowserStateHistory":
        return cls(
            url=data.get("url", ""),
            title=data.get("title", ""),
            tabs=[TabInfo(**tab) for tab in data.get("tabs") or []],
            interacted_element=[
                DOMHistoryElement.from_dict(el) if el else None
                for el in data.get("interacted_element") or []
            ],
            screenshot=data.get("screenshot"),
        )


class BrowserError(BrowserAgentError):
    """Base class for all browser errors."""


class URLNotAllowedError(BrowserError):
    """Navigation left the configured allowed domains."""
