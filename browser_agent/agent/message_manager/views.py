from __future__ import annotations

from typing import Any, List, Optional

from langchain_core.load import dumpd, load
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel, ConfigDict, Field, model_serializer, model_validator


class MessageMetadata(BaseModel):
    tokens: int = 0


class ManagedMessage(BaseModel):
    message: BaseMessage
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @model_serializer(mode="wrap")
    def to_json(self, original_dump):
        data = original_dump(self)
        data["message"] = dumpd(self.message)
        return data

    @model_validator(mode="before")
    @classmethod
    def load_message(cls, value: Any) -> Any:
        if isinstance(value, dict) and isinstance(value.get("message"), dict):
            value["message"] = load(value["message"])
        return value


class MessageHistory(BaseModel):
    """
    Role-tagged messages with a running token estimate.

    `current_tokens` always equals the sum of the stored per-message costs;
    every add or remove updates both in the same call.
    """

    messages: List[ManagedMessage] = Field(default_factory=list)
    current_tokens: int = 0

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def add_message(self, message: BaseMessage, metadata: MessageMetadata, position: Optional[int] = None) -> None:
        if position is None:
            self.messages.append(ManagedMessage(message=message, metadata=metadata))
        else:
            self.messages.insert(position, ManagedMessage(message=message, metadata=metadata))
        self.current_tokens += metadata.tokens

    def get_messages(self) -> List[BaseMessage]:
        return [m.message for m in self.messages]

    def get_total_tokens(self) -> int:
        return self.current_tokens

    def remove_message(self, index: int = -1) -> None:
        if self.messages:
            msg = self.messages.pop(index)
            self.current_tokens -= msg.metadata.tokens

    def remove_oldest_message(self) -> None:
        """Evict the oldest non-system message."""
        for i, msg in enumerate(self.messages):
            if not isinstance(msg.message, SystemMessage):
                self.current_tokens -= msg.metadata.tokens
                self.messages.pop(i)
                break

    def remove_last_state_message(self) -> None:
        """Drop the trailing human (state) message, keeping the seeded prefix."""
        if len(self.messages) > 2 and isinstance(self.messages[-1].message, HumanMessage):
            self.current_tokens -= self.messages[-1].metadata.tokens
            self.messages.pop()


class MessageManagerState(BaseModel):
    history: MessageHistory = Field(default_factory=MessageHistory)
    tool_id: int = 1

    model_config = ConfigDict(arbitrary_types_allowed=True)
