import json
import logging
import re
from pathlib import Path
from typing import Any, List, Optional, Type, Union

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage

from ...core.errors import ModelOutputParseError

logger = logging.getLogger(__name__)

_LANGUAGE_TAG = re.compile(r"^[A-Za-z0-9_+-]*$")


def extract_json_from_model_output(content: str) -> dict:
    """Parse a JSON object from model text, optionally wrapped in a ``` fenced block."""
    try:
        if "```" in content:
            content = content.split("```")[1]
            first_line, _, rest = content.partition("\n")
            if rest and _LANGUAGE_TAG.match(first_line.strip()):
                content = rest
        return json.loads(content.strip())
    except (json.JSONDecodeError, IndexError) as e:
        logger.warning(f"[Messages] Failed to parse model output: {content} {e}")
        raise ModelOutputParseError("Could not parse response.") from e


def convert_input_messages(input_messages: List[BaseMessage], model_name: Optional[str]) -> List[BaseMessage]:
    """Rewrite tool-calling history for models that accept plain chat turns only."""
    if model_name is None:
        return input_messages
    if model_name == "deepseek-reasoner" or "deepseek-r1" in model_name:
        converted = _convert_messages_for_non_function_calling_models(input_messages)
        merged = _merge_successive_messages(converted, HumanMessage)
        merged = _merge_successive_messages(merged, AIMessage)
        return merged
    return input_messages


def _convert_messages_for_non_function_calling_models(input_messages: List[BaseMessage]) -> List[BaseMessage]:
    output_messages: List[BaseMessage] = []
    for message in input_messages:
        if isinstance(message, (HumanMessage, SystemMessage)):
            output_messages.append(message)
        elif isinstance(message, ToolMessage):
            output_messages.append(HumanMessage(content=message.content))
        elif isinstance(message, AIMessage):
            if message.tool_calls:
                tool_calls = json.dumps(message.tool_calls)
                output_messages.append(AIMessage(content=tool_calls))
            else:
                output_messages.append(message)
        else:
            raise ValueError(f"Unknown message type: {type(message)}")
    return output_messages


def _merge_successive_messages(messages: List[BaseMessage], class_to_merge: Type[BaseMessage]) -> List[BaseMessage]:
    """deepseek-reasoner rejects two messages of the same role in a row."""
    merged_messages: List[BaseMessage] = []
    streak = 0
    for message in messages:
        if isinstance(message, class_to_merge):
            streak += 1
            if streak > 1:
                previous = merged_messages[-1]
                addition = message.content[0]["text"] if isinstance(message.content, list) else message.content
                if isinstance(previous.content, list):
                    previous.content[0]["text"] += addition
                else:
                    previous.content += addition
            else:
                merged_messages.append(message)
        else:
            merged_messages.append(message)
            streak = 0
    return merged_messages


def save_conversation(
    input_messages: List[BaseMessage],
    response: Any,
    target: Union[str, Path],
    encoding: Optional[str] = None,
) -> None:
    """Write one step's prompt and the model's response as a plain-text log."""
    target = Path(target)
    target.parent.mkdir(parents=True, exist_ok=True)

    with target.open("w", encoding=encoding) as f:
        _write_messages_to_file(f, input_messages)
        _write_response_to_file(f, response)


def _write_messages_to_file(f, messages: List[BaseMessage]) -> None:
    for message in messages:
        f.write(f" {message.__class__.__name__} \n")

        if isinstance(message.content, list):
            for item in message.content:
                if isinstance(item, dict) and item.get("type") == "text":
                    f.write(item["text"].strip() + "\n")
        elif isinstance(message.content, str):
            try:
                content = json.loads(message.content)
                f.write(json.dumps(content, indent=2) + "\n")
            except json.JSONDecodeError:
                f.write(message.content.strip() + "\n")

        f.write("\n")


def _write_response_to_file(f, response: Any) -> None:
    f.write(" RESPONSE\n")
    if hasattr(response, "model_dump_json"):
        f.write(json.dumps(json.loads(response.model_dump_json(exclude_unset=True)), indent=2))
    else:
        f.write(json.dumps(response, indent=2, default=str))
