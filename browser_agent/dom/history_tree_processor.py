import hashlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from .views import CoordinateSet, DOMElementNode, SelectorMap, ViewportInfo


@dataclass
class DOMHistoryElement:
    """Copied projection of an interacted element; never references the live tree."""

    tag_name: str
    xpath: str
    highlight_index: Optional[int]
    entire_parent_branch_path: List[str]
    attributes: Dict[str, str]
    shadow_root: bool = False
    css_selector: Optional[str] = None
    page_coordinates: Optional[CoordinateSet] = None
    viewport_coordinates: Optional[CoordinateSet] = None
    viewport_info: Optional[ViewportInfo] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tag_name": self.tag_name,
            "xpath": self.xpath,
            "highlight_index": self.highlight_index,
            "entire_parent_branch_path": self.entire_parent_branch_path,
            "attributes": self.attributes,
            "shadow_root": self.shadow_root,
            "css_selector": self.css_selector,
            "page_coordinates": self.page_coordinates.to_dict() if self.page_coordinates else None,
            "viewport_coordinates": self.viewport_coordinates.to_dict() if self.viewport_coordinates else None,
            "viewport_info": self.viewport_info.to_dict() if self.viewport_info else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DOMHistoryElement":
        def coords(raw):
            return CoordinateSet(**raw) if raw else None

        viewport = data.get("viewport_info")
        return cls(
            tag_name=data["tag_name"],
            xpath=data["xpath"],
            highlight_index=data.get("highlight_index"),
            entire_parent_branch_path=list(data.get("entire_parent_branch_path") or []),
            attributes=dict(data.get("attributes") or {}),
            shadow_root=bool(data.get("shadow_root")),
            css_selector=data.get("css_selector"),
            page_coordinates=coords(data.get("page_coordinates")),
            viewport_coordinates=coords(data.get("viewport_coordinates")),
            viewport_info=ViewportInfo(**viewport) if viewport else None,
        )


@dataclass(frozen=True)
class HashedDomElement:
    branch_path_hash: str
    attributes_hash: str
    xpath_hash: str = field(default="")


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode()).hexdigest()


class HistoryTreeProcessor:
    """Projects live elements into history records and re-finds them in later snapshots."""

    @staticmethod
    def convert_dom_element_to_history_element(dom_element: DOMElementNode) -> DOMHistoryElement:
        from ..browser.context import BrowserContext

        parent_branch_path = HistoryTreeProcessor.get_parent_branch_path(dom_element)
        css_selector = BrowserContext._enhanced_css_selector_for_element(dom_element)
        return DOMHistoryElement(
            tag_name=dom_element.tag_name,
            xpath=dom_element.xpath,
            highlight_index=dom_element.highlight_index,
            entire_parent_branch_path=parent_branch_path,
            attributes=dict(dom_element.attributes),
            shadow_root=dom_element.shadow_root,
            css_selector=css_selector,
            page_coordinates=dom_element.page_coordinates,
            viewport_coordinates=dom_element.viewport_coordinates,
            viewport_info=dom_element.viewport_info,
        )

    @staticmethod
    def find_history_element_in_tree(
        dom_history_element: DOMHistoryElement, tree: DOMElementNode
    ) -> Optional[DOMElementNode]:
        wanted = HistoryTreeProcessor._hash_dom_history_element(dom_history_element)

        def process_node(node: DOMElementNode) -> Optional[DOMElementNode]:
            if node.highlight_index is not None:
                if HistoryTreeProcessor.hash_dom_element(node) == wanted:
                    return node
            for child in node.children:
                if isinstance(child, DOMElementNode):
                    found = process_node(child)
                    if found is not None:
                        return found
            return None

        return process_node(tree)

    @staticmethod
    def compare_history_element_and_dom_element(
        dom_history_element: DOMHistoryElement, dom_element: DOMElementNode
    ) -> bool:
        return (
            HistoryTreeProcessor._hash_dom_history_element(dom_history_element)
            == HistoryTreeProcessor.hash_dom_element(dom_element)
        )

    @staticmethod
    def _hash_dom_history_element(dom_history_element: DOMHistoryElement) -> HashedDomElement:
        return HashedDomElement(
            branch_path_hash=HistoryTreeProcessor._parent_branch_path_hash(
                dom_history_element.entire_parent_branch_path),
            attributes_hash=HistoryTreeProcessor._attributes_hash(dom_history_element.attributes),
            xpath_hash=_sha256(dom_history_element.xpath),
        )

    @staticmethod
    def hash_dom_element(dom_element: DOMElementNode) -> HashedDomElement:
        parent_branch_path = HistoryTreeProcessor.get_parent_branch_path(dom_element)
        return HashedDomElement(
            branch_path_hash=HistoryTreeProcessor._parent_branch_path_hash(parent_branch_path),
            attributes_hash=HistoryTreeProcessor._attributes_hash(dom_element.attributes),
            xpath_hash=_sha256(dom_element.xpath),
        )

    @staticmethod
    def branch_path_hash(dom_element: DOMElementNode) -> str:
        """Single fingerprint over ancestor tag path, attributes and xpath."""
        hashed = HistoryTreeProcessor.hash_dom_element(dom_element)
        return _sha256(f"{hashed.branch_path_hash}-{hashed.attributes_hash}-{hashed.xpath_hash}")

    @staticmethod
    def get_parent_branch_path(dom_element: DOMElementNode) -> List[str]:
        parents: List[DOMElementNode] = []
        current: Optional[DOMElementNode] = dom_element
        while current is not None:
            parents.append(current)
            current = current.parent
        parents.reverse()
        return [parent.tag_name for parent in parents]

    @staticmethod
    def _parent_branch_path_hash(parent_branch_path: List[str]) -> str:
        return _sha256("/".join(parent_branch_path))

    @staticmethod
    def _attributes_hash(attributes: Dict[str, str]) -> str:
        return _sha256("".join(f"{key}={value}" for key, value in attributes.items()))


def branch_path_hashes(selector_map: SelectorMap) -> Set[str]:
    return {HistoryTreeProcessor.branch_path_hash(element) for element in selector_map.values()}
