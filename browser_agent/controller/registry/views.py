from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict

ActionHandler = Callable[..., Awaitable[Any]]


@dataclass
class ActionContext:
    """Everything a handler may need besides its validated params."""

    browser: Any = None
    page_extraction_llm: Any = None
    sensitive_data: Optional[Dict[str, str]] = None
    available_file_paths: Optional[List[str]] = None
    context: Any = None
    has_sensitive_data: bool = False


@dataclass
class RegisteredAction:
    name: str
    description: str
    param_model: Type[BaseModel]
    handler: ActionHandler
    domains: Optional[List[str]] = None

    def prompt_description(self) -> str:
        skip_keys = {"title"}
        properties = self.param_model.model_json_schema().get("properties", {})
        params = {
            key: {sub_key: sub_value for sub_key, sub_value in value.items() if sub_key not in skip_keys}
            for key, value in properties.items()
        }
        return f"{self.description}: \n{{{self.name}: {params}}}"


class ActionModel(BaseModel):
    """One action call: exactly one field set, named after the action."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def get_index(self) -> Optional[int]:
        params = self.model_dump(exclude_unset=True).values()
        for param in params:
            if isinstance(param, dict) and param.get("index") is not None:
                return param["index"]
        return None

    def set_index(self, index: int) -> None:
        action_data = self.model_dump(exclude_unset=True)
        if not action_data:
            return
        action_name = next(iter(action_data.keys()))
        action_params = getattr(self, action_name)
        if hasattr(action_params, "index"):
            action_params.index = index

    def action_name(self) -> Optional[str]:
        data = self.model_dump(exclude_unset=True)
        return next(iter(data.keys()), None)


@dataclass
class ActionRegistry:
    actions: Dict[str, RegisteredAction] = field(default_factory=dict)

    def get_prompt_description(self) -> str:
        return "\n".join(action.prompt_description() for action in self.actions.values())
