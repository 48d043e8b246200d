from __future__ import annotations

import json
import traceback
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, Union

import openai
from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model

from ..browser.views import BrowserStateHistory
from ..controller.registry.views import ActionModel
from ..core.config import DEFAULT_INCLUDE_ATTRIBUTES
from ..core.errors import RateLimitError
from ..dom.history_tree_processor import DOMHistoryElement, HistoryTreeProcessor
from ..dom.views import SelectorMap
from .message_manager.views import MessageManagerState

ToolCallingMethod = Optional[str]  # "function_calling" | "json_mode" | "raw" | "auto" | None


class StepMode(str, Enum):
    NORMAL = "normal"
    FORCED_DONE = "forced_done"


class AgentSettings(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    use_vision: bool = True
    use_vision_for_planner: bool = False
    save_conversation_path: Optional[str] = None
    save_conversation_path_encoding: Optional[str] = "utf-8"
    max_failures: int = 3
    retry_delay: int = 10
    override_system_message: Optional[str] = None
    extend_system_message: Optional[str] = None
    max_input_tokens: int = 128000
    validate_output: bool = False
    message_context: Optional[str] = None
    available_file_paths: Optional[List[str]] = None
    include_attributes: List[str] = Field(default_factory=lambda: list(DEFAULT_INCLUDE_ATTRIBUTES))
    max_actions_per_step: int = 10

    tool_calling_method: ToolCallingMethod = "auto"
    page_extraction_llm: Optional[Any] = None
    planner_llm: Optional[Any] = None
    planner_interval: int = 1  # Run planner every N steps


class ActionResult(BaseModel):
    """Outcome of one executed action."""

    is_done: bool = False
    success: Optional[bool] = None
    extracted_content: Optional[str] = None
    error: Optional[str] = None
    include_in_memory: bool = False  # whether to fold this result permanently into memory


class AgentHistoryList:
    """Ordered, append-only step history of one run."""

    def __init__(self, history: Optional[List["AgentHistory"]] = None):
        self.history: List[AgentHistory] = list(history or [])

    def total_duration_seconds(self) -> float:
        return sum(h.metadata.duration_seconds for h in self.history if h.metadata)

    def total_input_tokens(self) -> int:
        return sum(h.metadata.input_tokens for h in self.history if h.metadata)

    def input_token_usage(self) -> List[int]:
        return [h.metadata.input_tokens for h in self.history if h.metadata]

    def __len__(self) -> int:
        return len(self.history)

    def __str__(self) -> str:
        return f"AgentHistoryList(all_results={self.action_results()}, all_model_outputs={self.model_actions()})"

    def append(self, item: "AgentHistory") -> None:
        self.history.append(item)

    def is_done(self) -> bool:
        if self.history and self.history[-1].result:
            return self.history[-1].result[-1].is_done
        return False

    def is_successful(self) -> Optional[bool]:
        """None when the run has not finished with a done action."""
        if self.history and self.history[-1].result:
            last_result = self.history[-1].result[-1]
            if last_result.is_done:
                return last_result.success
        return None

    def has_errors(self) -> bool:
        return any(error is not None for error in self.errors())

    def errors(self) -> List[Optional[str]]:
        """One entry per step: the first error of that step, or None."""
        step_errors = []
        for h in self.history:
            step_errors.append(next((r.error for r in h.result if r.error), None))
        return step_errors

    def final_result(self) -> Optional[str]:
        if self.history and self.history[-1].result:
            return self.history[-1].result[-1].extracted_content
        return None

    def urls(self) -> List[Optional[str]]:
        return [h.state.url if h.state.url else None for h in self.history]

    def screenshots(self) -> List[Optional[str]]:
        return [h.state.screenshot for h in self.history]

    def action_names(self) -> List[str]:
        names = []
        for action in self.model_actions():
            actions = [k for k in action.keys() if k != "interacted_element"]
            if actions:
                names.append(actions[0])
        return names

    def model_thoughts(self) -> List["AgentBrain"]:
        return [h.model_output.current_state for h in self.history if h.model_output]

    def model_outputs(self) -> List["AgentOutput"]:
        return [h.model_output for h in self.history if h.model_output]

    def model_actions(self) -> List[Dict[str, Any]]:
        outputs = []
        for h in self.history:
            if h.model_output:
                for action, interacted_element in zip(h.model_output.action, h.state.interacted_element):
                    output = action.model_dump(exclude_none=True)
                    output["interacted_element"] = interacted_element
                    outputs.append(output)
        return outputs

    def action_results(self) -> List[ActionResult]:
        return [r for h in self.history for r in h.result if r]

    def extracted_content(self) -> List[str]:
        return [r.extracted_content for h in self.history for r in h.result if r.extracted_content]

    def number_of_steps(self) -> int:
        return len(self.history)

    def to_dict(self) -> Dict[str, Any]:
        return {"history": [h.to_dict() for h in self.history]}

    def save_to_file(self, filepath: Union[str, Path]) -> None:
        path = Path(filepath)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")

    @classmethod
    def load_from_file(cls, filepath: Union[str, Path], output_model: Type["AgentOutput"]) -> "AgentHistoryList":
        data = json.loads(Path(filepath).read_text(encoding="utf-8"))
        items = []
        for h in data["history"]:
            model_output = output_model.model_validate(h["model_output"]) if h.get("model_output") else None
            metadata = StepMetadata(**h["metadata"]) if h.get("metadata") else None
            items.append(
                AgentHistory(
                    model_output=model_output,
                    result=[ActionResult.model_validate(r) for r in h["result"]],
                    state=BrowserStateHistory.from_dict(h["state"]),
                    metadata=metadata,
                )
            )
        return cls(history=items)


class AgentState(BaseModel):
    """Mutable state of one agent; inject it to resume an earlier run."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    agent_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    n_steps: int = 1
    consecutive_failures: int = 0
    last_result: Optional[List[ActionResult]] = None
    history: AgentHistoryList = Field(default_factory=AgentHistoryList)
    last_plan: Optional[str] = None
    paused: bool = False
    stopped: bool = False

    message_manager_state: MessageManagerState = Field(default_factory=MessageManagerState)


@dataclass
class AgentStepInfo:
    step_number: int
    max_steps: int

    def is_last_step(self) -> bool:
        return self.step_number >= self.max_steps - 1

    @property
    def mode(self) -> StepMode:
        return StepMode.FORCED_DONE if self.is_last_step() else StepMode.NORMAL


@dataclass
class StepMetadata:
    step_start_time: float
    step_end_time: float
    input_tokens: int  # approximate, from the message manager's estimate
    step_number: int

    @property
    def duration_seconds(self) -> float:
        return self.step_end_time - self.step_start_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_start_time": self.step_start_time,
            "step_end_time": self.step_end_time,
            "input_tokens": self.input_tokens,
            "step_number": self.step_number,
        }


class AgentBrain(BaseModel):
    evaluation_previous_goal: str
    memory: str
    next_goal: str


class AgentOutput(BaseModel):
    """
    Parsed LLM response. Use `type_with_custom_actions` to bind the action
    union of a concrete controller.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    current_state: AgentBrain
    action: List[ActionModel] = Field(..., json_schema_extra={"min_items": 1})

    @staticmethod
    def type_with_custom_actions(custom_actions: Type[ActionModel]) -> Type["AgentOutput"]:
        model_ = create_model(
            "AgentOutput",
            __base__=AgentOutput,
            action=(List[custom_actions], Field(..., description="List of actions to execute", json_schema_extra={"min_items": 1})),
            __module__=AgentOutput.__module__,
        )
        model_.__doc__ = "AgentOutput model with custom actions"
        return model_


@dataclass(frozen=True)
class AgentHistory:
    """One completed step; never mutated after creation."""

    model_output: Optional[AgentOutput]
    result: List[ActionResult]
    state: BrowserStateHistory
    metadata: Optional[StepMetadata] = None

    @staticmethod
    def get_interacted_element(model_output: AgentOutput, selector_map: SelectorMap) -> List[Optional[DOMHistoryElement]]:
        elements: List[Optional[DOMHistoryElement]] = []
        for action in model_output.action:
            index = action.get_index()
            if index is not None and str(index) in selector_map:
                el = selector_map[str(index)]
                elements.append(HistoryTreeProcessor.convert_dom_element_to_history_element(el))
            else:
                elements.append(None)
        return elements

    def to_dict(self) -> Dict[str, Any]:
        model_output_dump = None
        if self.model_output:
            model_output_dump = {
                "current_state": self.model_output.current_state.model_dump(),
                "action": [action.model_dump(exclude_none=True) for action in self.model_output.action],
            }
        return {
            "model_output": model_output_dump,
            "result": [r.model_dump(exclude_none=True) for r in self.result],
            "state": self.state.to_dict(),
            "metadata": self.metadata.to_dict() if self.metadata else None,
        }


class AgentError:
    """Canonical error texts shown to the model."""

    VALIDATION_ERROR = "Invalid model output format. Please follow the correct schema."
    RATE_LIMIT_ERROR = "Rate limit reached. Waiting before retry."
    NO_VALID_ACTION = "No valid action found"

    @staticmethod
    def format_error(error: BaseException, include_trace: bool = False) -> str:
        if isinstance(error, ValidationError):
            return f"{AgentError.VALIDATION_ERROR}\nDetails: {str(error)}"
        if isinstance(error, (RateLimitError, openai.RateLimitError)):
            return AgentError.RATE_LIMIT_ERROR
        if include_trace:
            return f"{str(error)}\nStacktrace:\n{traceback.format_exc()}"
        return f"{str(error)}"
