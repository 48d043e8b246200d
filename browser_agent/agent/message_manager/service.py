from __future__ import annotations

import json
import logging
from typing import Dict, List, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
from pydantic import BaseModel, ConfigDict, Field

from ...browser.views import BrowserState
from ...core.config import DEFAULT_INCLUDE_ATTRIBUTES
from ...core.errors import TokenBudgetExhausted
from ..prompts import FORCED_DONE_DIRECTIVE, AgentMessagePrompt
from ..views import ActionResult, AgentOutput, AgentStepInfo
from .views import MessageMetadata, MessageManagerState

logger = logging.getLogger(__name__)


class MessageManagerSettings(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    max_input_tokens: int = 128000
    estimated_characters_per_token: int = 3
    image_tokens: int = 800
    include_attributes: List[str] = Field(default_factory=lambda: list(DEFAULT_INCLUDE_ATTRIBUTES))
    message_context: Optional[str] = None
    sensitive_data: Optional[Dict[str, str]] = None
    available_file_paths: Optional[List[str]] = None


class MessageManager:
    """
    Owns the conversation sent to the LLM on every step.

    Layout: the system message and a fixed seed prefix, then the permanent
    memory (model outputs, tool acks, folded action results), then at most one
    trailing state message which is replaced every step.
    """

    def __init__(
        self,
        task: str,
        system_message: SystemMessage,
        settings: Optional[MessageManagerSettings] = None,
        state: Optional[MessageManagerState] = None,
    ):
        self.task = task
        self.settings = settings or MessageManagerSettings()
        self.state = state or MessageManagerState()
        self.system_prompt = system_message

        # Only seed a fresh conversation; an injected state is resumed as is
        if len(self.state.history.messages) == 0:
            self._init_messages()

    def _init_messages(self) -> None:
        self._add_message_with_tokens(self.system_prompt)

        if self.settings.message_context:
            self._add_message_with_tokens(HumanMessage(content="Context for the task: " + self.settings.message_context))

        self._add_message_with_tokens(HumanMessage(content=self.task_instructions(self.task)))

        if self.settings.sensitive_data:
            info = f"Here are placeholders for sensitve data: {list(self.settings.sensitive_data.keys())}"
            info += "\nTo use them, write <secret>the placeholder name</secret>"
            self._add_message_with_tokens(HumanMessage(content=info))

        self._add_message_with_tokens(HumanMessage(content="Example output:"))

        tool_calls = [
            {
                "name": "AgentOutput",
                "args": {
                    "current_state": {
                        "evaluation_previous_goal": "Success - I opend the first page",
                        "memory": "Starting with the new task. I have completed 1/10 steps",
                        "next_goal": "Click on company a",
                    },
                    "action": [{"click_element": {"index": 0}}],
                },
                "id": str(self.state.tool_id),
                "type": "tool_call",
            }
        ]
        self._add_message_with_tokens(AIMessage(content="", tool_calls=tool_calls))
        self.add_tool_message(content="Browser started")

        self._add_message_with_tokens(HumanMessage(content="[Your task history memory starts here]"))

        if self.settings.available_file_paths:
            self._add_message_with_tokens(
                HumanMessage(content=f"Here are file paths you can use: {self.settings.available_file_paths}")
            )

    @staticmethod
    def task_instructions(task: str) -> str:
        return (
            f'Your ultimate task is: """{task}""". If you achieved your ultimate task, stop everything '
            "and use the done action in the next step to complete the task. If not, continue as usual."
        )

    def add_new_task(self, new_task: str) -> None:
        content = (
            f'Now the ultimate task is: """{new_task}""". Take the previous context into account '
            "and finish your new ultimate task. "
        )
        self._add_message_with_tokens(HumanMessage(content=content))
        self.task = new_task

    def add_state_message(
        self,
        state: BrowserState,
        result: Optional[List[ActionResult]] = None,
        step_info: Optional[AgentStepInfo] = None,
        use_vision: bool = True,
    ) -> None:
        """Fold memory-worthy results into the history, then append the transient state message."""
        if result:
            for r in result:
                if r.include_in_memory:
                    if r.extracted_content:
                        self._add_message_with_tokens(HumanMessage(content="Action result: " + str(r.extracted_content)))
                    if r.error:
                        last_line = r.error.split("\n")[-1]
                        self._add_message_with_tokens(HumanMessage(content="Action error: " + last_line))
                    result = None  # folded, so the state message does not repeat it

        state_message = AgentMessagePrompt(
            state,
            result,
            include_attributes=self.settings.include_attributes,
            step_info=step_info,
        ).get_user_message(use_vision)
        self._add_message_with_tokens(state_message)

    def add_model_output(self, model_output: AgentOutput) -> None:
        tool_calls = [
            {
                "name": "AgentOutput",
                "args": model_output.model_dump(mode="json", exclude_unset=True),
                "id": str(self.state.tool_id),
                "type": "tool_call",
            }
        ]
        self._add_message_with_tokens(AIMessage(content="", tool_calls=tool_calls))
        # empty tool response keeps the tool-call pairing valid
        self.add_tool_message(content="")

    def add_plan(self, plan: Optional[str], position: Optional[int] = None) -> None:
        if plan:
            self._add_message_with_tokens(AIMessage(content=plan), position)

    def add_forced_done_directive(self) -> None:
        """Ask for a single done action; removed together with the state message."""
        self._add_message_with_tokens(HumanMessage(content=FORCED_DONE_DIRECTIVE))

    def add_tool_message(self, content: str) -> None:
        self._add_message_with_tokens(ToolMessage(content=content, tool_call_id=str(self.state.tool_id)))
        self.state.tool_id += 1

    def get_messages(self) -> List[BaseMessage]:
        msg = [m.message for m in self.state.history.messages]

        total_input_tokens = 0
        logger.debug(f"[Messages] History has {len(self.state.history.messages)} messages")
        for m in self.state.history.messages:
            total_input_tokens += m.metadata.tokens
            logger.debug(f"[Messages] {m.message.__class__.__name__} - Token count: {m.metadata.tokens}")
        logger.debug(f"[Messages] Total input tokens: {total_input_tokens}")

        return msg

    def _add_message_with_tokens(self, message: BaseMessage, position: Optional[int] = None) -> None:
        if self.settings.sensitive_data:
            message = self._filter_sensitive_data(message)

        token_count = self._count_tokens(message)
        metadata = MessageMetadata(tokens=token_count)
        self.state.history.add_message(message, metadata, position)

    def _filter_sensitive_data(self, message: BaseMessage) -> BaseMessage:
        """Replace secret values with <secret>key</secret> before anything is stored."""

        def replace_sensitive(value: str) -> str:
            for key, val in (self.settings.sensitive_data or {}).items():
                if not val:
                    continue
                value = value.replace(val, f"<secret>{key}</secret>")
            return value

        if isinstance(message.content, str):
            message.content = replace_sensitive(message.content)
        elif isinstance(message.content, list):
            for i, item in enumerate(message.content):
                if isinstance(item, dict) and "text" in item:
                    item["text"] = replace_sensitive(item["text"])
                    message.content[i] = item
        return message

    def _count_tokens(self, message: BaseMessage) -> int:
        tokens = 0
        if isinstance(message.content, list):
            for item in message.content:
                if isinstance(item, dict) and "image_url" in item:
                    tokens += self.settings.image_tokens
                elif isinstance(item, dict) and "text" in item:
                    tokens += self._count_text_tokens(item["text"])
                elif isinstance(item, str):
                    tokens += self._count_text_tokens(item)
        else:
            tokens += self._count_text_tokens(message.content)
        if isinstance(message, AIMessage):
            # tool-call payloads are priced by their serialized arguments
            for call in message.tool_calls:
                tokens += self._count_text_tokens(json.dumps(call.get("args", {})))
        return tokens

    def _count_text_tokens(self, text: str) -> int:
        # rough estimate, no tokenizer
        return len(text) // self.settings.estimated_characters_per_token

    def cut_messages(self) -> None:
        """Shrink the last (state) message until the history fits max_input_tokens."""
        diff = self.state.history.current_tokens - self.settings.max_input_tokens
        if diff <= 0:
            return

        msg = self.state.history.messages[-1]

        # images go first
        if isinstance(msg.message.content, list):
            text = ""
            for item in msg.message.content:
                if isinstance(item, dict) and "image_url" in item:
                    diff -= self.settings.image_tokens
                    msg.metadata.tokens -= self.settings.image_tokens
                    self.state.history.current_tokens -= self.settings.image_tokens
                    logger.debug(
                        f"[Messages] Removed image with {self.settings.image_tokens} tokens - "
                        f"total tokens now: {self.state.history.current_tokens}/{self.settings.max_input_tokens}"
                    )
                elif isinstance(item, dict) and "text" in item:
                    text += item["text"]
                elif isinstance(item, str):
                    text += item
            msg.message.content = text

        if diff <= 0:
            return

        proportion_to_remove = diff / msg.metadata.tokens if msg.metadata.tokens else 1.0
        if proportion_to_remove > 0.99:
            raise TokenBudgetExhausted(
                f"Max token limit reached - history is too long - reduce the system prompt or task. "
                f"proportion_to_remove: {proportion_to_remove}"
            )
        logger.debug(
            f"[Messages] Removing {proportion_to_remove * 100:.2f}% of the last message "
            f"({proportion_to_remove * msg.metadata.tokens:.2f} / {msg.metadata.tokens:.2f} tokens)"
        )

        content = msg.message.content
        characters_to_remove = int(len(content) * proportion_to_remove)
        content = content[: len(content) - characters_to_remove]

        self.state.history.remove_message(index=-1)
        self._add_message_with_tokens(HumanMessage(content=content))

        last_msg = self.state.history.messages[-1]
        logger.debug(
            f"[Messages] Added message with {last_msg.metadata.tokens} tokens - total tokens now: "
            f"{self.state.history.current_tokens}/{self.settings.max_input_tokens} - "
            f"total messages: {len(self.state.history.messages)}"
        )

    def remove_oldest_message(self) -> None:
        self.state.history.remove_oldest_message()

    def remove_last_state_message(self) -> None:
        self.state.history.remove_last_state_message()
