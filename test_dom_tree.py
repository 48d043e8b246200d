import pytest

from browser_agent.core.errors import DOMTreeConstructionError
from browser_agent.dom.service import build_dom_tree
from browser_agent.dom.views import DOMElementNode, DOMTextNode


def _snapshot():
    # root div -> button[0] -> "Go"
    return {
        "rootId": "1",
        "map": {
            "1": {"tagName": "DIV", "xpath": "/html/body/div", "attributes": {}, "children": ["2"], "isVisible": True},
            "2": {
                "tagName": "button",
                "xpath": "/html/body/div/button",
                "attributes": {"type": "submit"},
                "children": ["3"],
                "isVisible": True,
                "isInteractive": True,
                "isTopElement": True,
                "highlightIndex": 0,
                "viewportRect": {"x": 10, "y": 20, "width": 80, "height": 30},
            },
            "3": {"type": "TEXT_NODE", "text": "Go", "isVisible": True},
        },
    }


def test_three_node_map_builds_selector_map():
    root, selector_map = build_dom_tree(_snapshot())

    assert root.tag_name == "div"
    assert list(selector_map.keys()) == ["0"]
    button = selector_map["0"]
    assert button.tag_name == "button"
    assert button.parent is root
    assert root.children == [button]
    assert isinstance(button.children[0], DOMTextNode)
    assert button.children[0].text == "Go"
    assert button.children[0].parent is button
    assert button.viewport_coordinates.width == 80


def test_missing_child_ids_are_skipped():
    snapshot = _snapshot()
    snapshot["map"]["1"]["children"] = ["2", "99"]
    root, selector_map = build_dom_tree(snapshot)
    assert len(root.children) == 1
    assert "0" in selector_map


def test_integer_ids_are_normalised():
    snapshot = _snapshot()
    snapshot["rootId"] = 1
    snapshot["map"]["1"]["children"] = [2]
    root, selector_map = build_dom_tree(snapshot)
    assert root.children[0] is selector_map["0"]


def test_missing_root_raises():
    with pytest.raises(DOMTreeConstructionError):
        build_dom_tree({"map": _snapshot()["map"]})
    with pytest.raises(DOMTreeConstructionError):
        build_dom_tree({"rootId": "1", "map": {}})
    with pytest.raises(DOMTreeConstructionError):
        build_dom_tree({"rootId": "42", "map": _snapshot()["map"]})


def test_text_root_raises():
    snapshot = {"rootId": "3", "map": {"3": {"type": "TEXT_NODE", "text": "x", "isVisible": True}}}
    with pytest.raises(DOMTreeConstructionError):
        build_dom_tree(snapshot)


def test_duplicate_highlight_index_raises():
    snapshot = _snapshot()
    snapshot["map"]["4"] = {"tagName": "a", "xpath": "/html/body/div/a", "highlightIndex": 0, "isVisible": True}
    snapshot["map"]["1"]["children"].append("4")
    with pytest.raises(DOMTreeConstructionError):
        build_dom_tree(snapshot)


def test_highlight_indices_are_unique_across_tree():
    snapshot = _snapshot()
    for i in range(1, 5):
        node_id = str(10 + i)
        snapshot["map"][node_id] = {
            "tagName": "a",
            "xpath": f"/html/body/div/a[{i}]",
            "highlightIndex": i,
            "isVisible": True,
        }
        snapshot["map"]["1"]["children"].append(node_id)
    root, selector_map = build_dom_tree(snapshot)

    seen = []

    def walk(node):
        if isinstance(node, DOMElementNode):
            if node.highlight_index is not None:
                seen.append(node.highlight_index)
            for child in node.children:
                walk(child)

    walk(root)
    assert sorted(seen) == [0, 1, 2, 3, 4]
    assert len(set(seen)) == len(seen)
    assert sorted(selector_map) == ["0", "1", "2", "3", "4"]


if __name__ == "__main__":
    test_three_node_map_builds_selector_map()
    test_missing_child_ids_are_skipped()
    test_integer_ids_are_normalised()
    test_missing_root_raises()
    test_text_root_raises()
    test_duplicate_highlight_index_raises()
    test_highlight_indices_are_unique_across_tree()
    print("DOM tree tests passed.")
