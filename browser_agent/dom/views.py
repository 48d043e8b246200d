from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union


@dataclass
class CoordinateSet:
    x: float = 0
    y: float = 0
    width: float = 0
    height: float = 0

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass
class ViewportInfo:
    width: int
    height: int
    scroll_x: int = 0
    scroll_y: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "width": self.width,
            "height": self.height,
            "scroll_x": self.scroll_x,
            "scroll_y": self.scroll_y,
        }


@dataclass(eq=False)
class DOMBaseNode:
    is_visible: bool
    # Back-reference only; the parent owns its children.
    parent: Optional["DOMElementNode"] = field(default=None, repr=False)


@dataclass(eq=False)
class DOMTextNode(DOMBaseNode):
    text: str = ""
    type: str = "TEXT_NODE"

    def has_parent_with_highlight_index(self) -> bool:
        current = self.parent
        while current is not None:
            if current.highlight_index is not None:
                return True
            current = current.parent
        return False


@dataclass(eq=False)
class DOMElementNode(DOMBaseNode):
    """
    An element of the page snapshot. `xpath` is relative to the last root
    (document, iframe or shadow root) the element lives in.
    """

    tag_name: str = ""
    xpath: str = ""
    attributes: Dict[str, str] = field(default_factory=dict)
    children: List[DOMNode] = field(default_factory=list, repr=False)
    is_interactive: bool = False
    is_top_element: bool = False
    is_in_viewport: bool = False
    shadow_root: bool = False
    highlight_index: Optional[int] = None
    viewport_info: Optional[ViewportInfo] = None
    page_coordinates: Optional[CoordinateSet] = None
    viewport_coordinates: Optional[CoordinateSet] = None

    def __post_init__(self) -> None:
        self.tag_name = (self.tag_name or "").lower()

    def __repr__(self) -> str:
        tag_str = f"<{self.tag_name}"
        for key, value in self.attributes.items():
            tag_str += f' {key}="{value}"'
        tag_str += ">"

        extras = []
        if self.is_interactive:
            extras.append("interactive")
        if self.is_top_element:
            extras.append("top")
        if self.shadow_root:
            extras.append("shadow-root")
        if self.highlight_index is not None:
            extras.append(f"highlight:{self.highlight_index}")
        if self.is_in_viewport:
            extras.append("in-viewport")
        if extras:
            tag_str += f" [{', '.join(extras)}]"
        return tag_str

    def get_all_text_till_next_clickable_element(self, max_depth: int = -1) -> str:
        from .serializer import get_all_text_till_next_clickable_element

        return get_all_text_till_next_clickable_element(self, max_depth)

    def clickable_elements_to_string(self, include_attributes: Optional[List[str]] = None) -> str:
        from .serializer import serialize

        return serialize(self, include_attributes or [])

    def get_file_upload_element(self, check_siblings: bool = True) -> Optional["DOMElementNode"]:
        if self.tag_name == "input" and self.attributes.get("type") == "file":
            return self

        for child in self.children:
            if isinstance(child, DOMElementNode):
                found = child.get_file_upload_element(check_siblings=False)
                if found:
                    return found

        if check_siblings and self.parent:
            for sibling in self.parent.children:
                if sibling is not self and isinstance(sibling, DOMElementNode):
                    found = sibling.get_file_upload_element(check_siblings=False)
                    if found:
                        return found
        return None


DOMNode = Union[DOMElementNode, DOMTextNode]
SelectorMap = Dict[str, DOMElementNode]


@dataclass
class DOMState:
    element_tree: DOMElementNode
    selector_map: SelectorMap
