"""
Render a DOM snapshot as the compact, line-oriented text the LLM reads.

Only highlighted (interactive) elements and free-standing visible text are
emitted, so the output grows with the interactive surface of the page and not
with raw DOM size:

    [0]<button>Go</>
    [1]<input text;Search/>
    Some visible paragraph text
"""

from typing import List

from .views import DOMElementNode, DOMNode, DOMTextNode


def get_all_text_till_next_clickable_element(node: DOMElementNode, max_depth: int = -1) -> str:
    text_parts: List[str] = []

    def collect_text(current: DOMNode, current_depth: int) -> None:
        if max_depth != -1 and current_depth > max_depth:
            return

        # Text of a nested highlighted element belongs to that element.
        if isinstance(current, DOMElementNode) and current is not node and current.highlight_index is not None:
            return

        if isinstance(current, DOMTextNode):
            text_parts.append(current.text)
        elif isinstance(current, DOMElementNode):
            for child in current.children:
                collect_text(child, current_depth + 1)

    collect_text(node, 0)
    return "\n".join(text_parts).strip()


def _attribute_values(node: DOMElementNode, include_attributes: List[str], text: str) -> List[str]:
    values: List[str] = []
    for key in include_attributes:
        value = node.attributes.get(key)
        if value is None:
            continue
        value = str(value).strip()
        if not value or value == node.tag_name or value in values:
            continue
        values.append(value)

    if text and text in values:
        values.remove(text)
    return values


def serialize(node: DOMElementNode, include_attributes: List[str]) -> str:
    lines: List[str] = []

    def process_node(current: DOMNode) -> None:
        if isinstance(current, DOMElementNode):
            if current.highlight_index is not None:
                text = get_all_text_till_next_clickable_element(current)
                values = _attribute_values(current, include_attributes, text)

                line = f"[{current.highlight_index}]<{current.tag_name}"
                if values:
                    line += " " + ";".join(values)
                if text:
                    line += f">{text}</>"
                else:
                    line += "/>"
                lines.append(line)

            for child in current.children:
                process_node(child)

        elif isinstance(current, DOMTextNode):
            if current.is_visible and not current.has_parent_with_highlight_index():
                lines.append(current.text)

    process_node(node)
    return "\n".join(lines)
