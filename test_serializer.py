from browser_agent.core.config import DEFAULT_INCLUDE_ATTRIBUTES
from browser_agent.dom.serializer import get_all_text_till_next_clickable_element, serialize
from browser_agent.dom.service import build_dom_tree
from browser_agent.dom.views import DOMElementNode, DOMTextNode


def _el(tag, index=None, attributes=None, parent=None, visible=True):
    node = DOMElementNode(
        is_visible=visible,
        tag_name=tag,
        xpath=f"/{tag}",
        attributes=attributes or {},
        highlight_index=index,
        parent=parent,
    )
    if parent is not None:
        parent.children.append(node)
    return node


def _text(value, parent, visible=True):
    node = DOMTextNode(is_visible=visible, text=value, parent=parent)
    parent.children.append(node)
    return node


def test_button_with_text():
    snapshot = {
        "rootId": "1",
        "map": {
            "1": {"tagName": "div", "xpath": "/div", "children": ["2"], "isVisible": True},
            "2": {"tagName": "button", "xpath": "/div/button", "children": ["3"], "isVisible": True, "highlightIndex": 0},
            "3": {"type": "TEXT_NODE", "text": "Go", "isVisible": True},
        },
    }
    root, _ = build_dom_tree(snapshot)
    assert serialize(root, DEFAULT_INCLUDE_ATTRIBUTES) == "[0]<button>Go</>"


def test_bare_element_and_attributes_only():
    root = _el("div")
    _el("button", index=1, parent=root)
    _el("input", index=2, attributes={"type": "text", "placeholder": "Search"}, parent=root)

    lines = serialize(root, ["type", "placeholder"]).split("\n")
    assert lines == ["[1]<button/>", "[2]<input text;Search/>"]


def test_attribute_values_are_deduplicated():
    root = _el("div")
    link = _el(
        "a",
        index=3,
        attributes={"title": "Home", "aria-label": "Home", "role": "a", "name": ""},
        parent=root,
    )
    _text("Start", link)

    # role equals the tag, name is empty and aria-label repeats title
    assert serialize(root, ["title", "role", "name", "aria-label"]) == "[3]<a Home>Start</>"


def test_value_equal_to_text_is_dropped():
    root = _el("div")
    button = _el("button", index=0, attributes={"aria-label": "Submit"}, parent=root)
    _text("Submit", button)
    assert serialize(root, ["aria-label"]) == "[0]<button>Submit</>"


def test_text_is_not_duplicated_under_highlighted_ancestor():
    root = _el("div")
    _text("Heading", root)
    button = _el("button", index=0, parent=root)
    span = _el("span", parent=button)
    _text("Inner", span)
    _text("hidden", root, visible=False)

    output = serialize(root, [])
    assert output.split("\n") == ["Heading", "[0]<button>Inner</>"]
    assert output.count("Inner") == 1


def test_inline_text_stops_at_nested_clickable():
    root = _el("div")
    row = _el("li", index=0, parent=root)
    _text("Row title", row)
    nested = _el("button", index=1, parent=row)
    _text("Delete", nested)

    assert get_all_text_till_next_clickable_element(row) == "Row title"
    assert serialize(root, []).split("\n") == ["[0]<li>Row title</>", "[1]<button>Delete</>"]


def test_inline_text_respects_max_depth():
    root = _el("div", index=0)
    wrapper = _el("div", parent=root)
    deeper = _el("span", parent=wrapper)
    _text("near", wrapper)
    _text("far", deeper)

    assert get_all_text_till_next_clickable_element(root, max_depth=2) == "near"
    assert get_all_text_till_next_clickable_element(root) == "far\nnear"


def test_clickable_elements_to_string_delegates():
    root = _el("div")
    _el("button", index=5, parent=root)
    assert root.clickable_elements_to_string(include_attributes=[]) == serialize(root, [])


def test_file_upload_element_found_in_siblings():
    root = _el("form")
    label = _el("label", index=0, parent=root)
    upload = _el("input", attributes={"type": "file"}, parent=root)
    assert label.get_file_upload_element() is upload
    assert _el("p", parent=_el("div")).get_file_upload_element() is None


if __name__ == "__main__":
    test_button_with_text()
    test_bare_element_and_attributes_only()
    test_attribute_values_are_deduplicated()
    test_value_equal_to_text_is_dropped()
    test_text_is_not_duplicated_under_highlighted_ancestor()
    test_inline_text_stops_at_nested_clickable()
    test_inline_text_respects_max_depth()
    test_clickable_elements_to_string_delegates()
    test_file_upload_element_found_in_siblings()
    print("Serializer tests passed.")
