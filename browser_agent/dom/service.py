import json
import logging
from importlib import resources
from typing import Any, Dict, List, Optional, Tuple

from ..core.errors import DOMTreeConstructionError
from .views import (
    CoordinateSet,
    DOMElementNode,
    DOMNode,
    DOMState,
    DOMTextNode,
    SelectorMap,
    ViewportInfo,
)

logger = logging.getLogger(__name__)


def _coordinates(raw: Optional[Dict[str, Any]]) -> Optional[CoordinateSet]:
    if not raw:
        return None
    return CoordinateSet(
        x=raw.get("x") or 0,
        y=raw.get("y") or 0,
        width=raw.get("width") or 0,
        height=raw.get("height") or 0,
    )


def parse_node(node_data: Dict[str, Any]) -> Tuple[Optional[DOMNode], List[str]]:
    """Turn one raw descriptor into a node plus the ids of its children."""
    if not node_data:
        return None, []

    if node_data.get("type") == "TEXT_NODE":
        text_node = DOMTextNode(
            is_visible=bool(node_data.get("isVisible")),
            text=node_data.get("text") or "",
        )
        return text_node, []

    viewport_info = None
    if node_data.get("viewport"):
        viewport = node_data["viewport"]
        viewport_info = ViewportInfo(
            width=viewport.get("width") or 0,
            height=viewport.get("height") or 0,
            scroll_x=viewport.get("scrollX") or 0,
            scroll_y=viewport.get("scrollY") or 0,
        )

    element = DOMElementNode(
        is_visible=bool(node_data.get("isVisible")),
        tag_name=node_data.get("tagName") or "",
        xpath=node_data.get("xpath") or "",
        attributes=dict(node_data.get("attributes") or {}),
        is_interactive=bool(node_data.get("isInteractive")),
        is_top_element=bool(node_data.get("isTopElement")),
        is_in_viewport=bool(node_data.get("isInViewport")),
        shadow_root=bool(node_data.get("shadowRoot")),
        highlight_index=node_data.get("highlightIndex"),
        viewport_info=viewport_info,
        page_coordinates=_coordinates(node_data.get("rect")),
        viewport_coordinates=_coordinates(node_data.get("viewportRect")),
    )
    return element, [str(c) for c in node_data.get("children") or []]


def build_dom_tree(eval_page: Dict[str, Any]) -> Tuple[DOMElementNode, SelectorMap]:
    """
    Build the element tree and selector map from the flat `{rootId, map}`
    payload produced by buildDomTree.js.

    Children whose ids are missing from the map are skipped, so a partial
    extraction still yields a usable tree.
    """
    if not isinstance(eval_page, dict):
        raise DOMTreeConstructionError("DOM snapshot is not an object")

    js_node_map = eval_page.get("map")
    js_root_id = eval_page.get("rootId")
    if not js_node_map or js_root_id is None:
        raise DOMTreeConstructionError(
            f"Missing DOM tree data: map={bool(js_node_map)}, rootId={js_root_id!r}")
    js_root_id = str(js_root_id)

    node_map: Dict[str, DOMNode] = {}
    children_ids: Dict[str, List[str]] = {}
    selector_map: SelectorMap = {}

    for node_id, node_data in js_node_map.items():
        node, child_ids = parse_node(node_data)
        if node is None:
            continue
        node_map[str(node_id)] = node
        children_ids[str(node_id)] = child_ids

        if isinstance(node, DOMElementNode) and node.highlight_index is not None:
            key = str(node.highlight_index)
            if key in selector_map:
                raise DOMTreeConstructionError(f"Duplicate highlight index {key} in DOM snapshot")
            selector_map[key] = node

    for node_id, child_ids in children_ids.items():
        parent = node_map[node_id]
        if not isinstance(parent, DOMElementNode):
            continue
        for child_id in child_ids:
            child = node_map.get(child_id)
            if child is None:
                continue
            child.parent = parent
            parent.children.append(child)

    root = node_map.get(js_root_id)

    # The tree is the sole owner of reachable nodes from here on.
    for node_id in list(node_map):
        if node_id != js_root_id:
            del node_map[node_id]

    if not isinstance(root, DOMElementNode):
        raise DOMTreeConstructionError(f"Root node {js_root_id!r} is missing or not an element")

    return root, selector_map


class DomService:
    def __init__(self, page):
        self.page = page
        self.js_code = resources.files(__package__).joinpath("buildDomTree.js").read_text(encoding="utf-8")

    async def get_clickable_elements(
        self,
        highlight_elements: bool = True,
        focus_element: int = -1,
        viewport_expansion: int = 500,
    ) -> DOMState:
        element_tree, selector_map = await self._build_dom_tree(
            highlight_elements, focus_element, viewport_expansion)
        return DOMState(element_tree=element_tree, selector_map=selector_map)

    async def _build_dom_tree(
        self,
        highlight_elements: bool,
        focus_element: int,
        viewport_expansion: int,
    ) -> Tuple[DOMElementNode, SelectorMap]:
        if await self.page.evaluate("1+1") != 2:
            raise ValueError("The page cannot evaluate javascript code properly")

        args = {
            "doHighlightElements": highlight_elements,
            "focusHighlightIndex": focus_element,
            "viewportExpansion": viewport_expansion,
            "debugMode": logger.isEnabledFor(logging.DEBUG),
        }

        try:
            eval_page = await self.page.evaluate(self.js_code, args)
        except Exception as e:
            logger.error(f"[DOM] Error evaluating buildDomTree.js: {type(e).__name__}: {e}")
            raise

        if isinstance(eval_page, dict) and eval_page.get("error"):
            raise DOMTreeConstructionError(f"Error in page evaluation: {eval_page['error']}")

        if args["debugMode"] and isinstance(eval_page, dict) and eval_page.get("perfMetrics"):
            logger.debug(f"[DOM] buildDomTree perf: {json.dumps(eval_page['perfMetrics'])}")

        root, selector_map = build_dom_tree(eval_page)
        logger.debug(f"[DOM] Snapshot built with {len(selector_map)} interactive elements")
        return root, selector_map
