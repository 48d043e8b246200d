import logging
import re
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, Field, ValidationError, create_model

from ...core.errors import (
    ActionExecutionError,
    ActionNotFoundError,
    ActionValidationError,
)
from .views import ActionContext, ActionHandler, ActionModel, ActionRegistry, RegisteredAction

logger = logging.getLogger(__name__)

SECRET_PATTERN = re.compile(r"<secret>(.*?)</secret>")


class Registry:
    """
    Explicit name -> (param schema, handler) table.

    Every action declares its pydantic parameter model up front; handlers are
    called as ``await handler(params, ctx)`` with an ActionContext.
    """

    def __init__(self, exclude_actions: Optional[List[str]] = None):
        self.registry = ActionRegistry()
        self.exclude_actions = exclude_actions or []

    def register(
        self,
        name: str,
        description: str,
        param_model: Type[BaseModel],
        handler: ActionHandler,
        domains: Optional[List[str]] = None,
    ) -> None:
        if name in self.exclude_actions:
            logger.debug(f"[Controller] Skipping excluded action {name}")
            return
        self.registry.actions[name] = RegisteredAction(
            name=name,
            description=description,
            param_model=param_model,
            handler=handler,
            domains=domains,
        )

    def action(
        self,
        description: str,
        param_model: Type[BaseModel],
        name: Optional[str] = None,
        domains: Optional[List[str]] = None,
    ):
        """Decorator form of register(); the function name is the default action name."""

        def decorator(func: ActionHandler) -> ActionHandler:
            self.register(name or func.__name__, description, param_model, func, domains)
            return func

        return decorator

    async def execute_action(
        self,
        action_name: str,
        params: Dict[str, Any],
        browser: Any = None,
        page_extraction_llm: Any = None,
        sensitive_data: Optional[Dict[str, str]] = None,
        available_file_paths: Optional[List[str]] = None,
        context: Any = None,
    ) -> Any:
        action = self.registry.actions.get(action_name)
        if action is None:
            raise ActionNotFoundError(f"Action {action_name} not found")

        try:
            validated_params = action.param_model(**(params or {}))
        except ValidationError as e:
            raise ActionValidationError(f"Invalid parameters {params} for action {action_name}: {e}") from e

        has_sensitive_data = False
        if sensitive_data:
            validated_params, has_sensitive_data = self._replace_sensitive_data(validated_params, sensitive_data)

        file_path = getattr(validated_params, "file_path", None)
        if file_path is not None and file_path not in (available_file_paths or []):
            raise ActionExecutionError(f"File path {file_path} is not available")

        ctx = ActionContext(
            browser=browser,
            page_extraction_llm=page_extraction_llm,
            sensitive_data=sensitive_data,
            available_file_paths=available_file_paths,
            context=context,
            has_sensitive_data=has_sensitive_data,
        )

        try:
            return await action.handler(validated_params, ctx)
        except ActionExecutionError:
            raise
        except Exception as e:
            raise ActionExecutionError(f"Error executing action {action_name}: {e}") from e

    def _replace_sensitive_data(self, params: BaseModel, sensitive_data: Dict[str, str]):
        """Swap <secret>name</secret> placeholders for their real values, recursively."""
        replaced = False

        def replace_secrets(value):
            nonlocal replaced
            if isinstance(value, str):
                def substitute(match):
                    nonlocal replaced
                    key = match.group(1)
                    if key in sensitive_data:
                        replaced = True
                        return sensitive_data[key]
                    logger.warning(f"[Controller] No value for secret placeholder '{key}'")
                    return match.group(0)

                return SECRET_PATTERN.sub(substitute, value)
            if isinstance(value, dict):
                return {k: replace_secrets(v) for k, v in value.items()}
            if isinstance(value, list):
                return [replace_secrets(v) for v in value]
            return value

        data = replace_secrets(params.model_dump())
        return type(params).model_validate(data), replaced

    def create_action_model(self, include_actions: Optional[List[str]] = None) -> Type[ActionModel]:
        fields: Dict[str, Any] = {
            name: (
                Optional[action.param_model],
                Field(default=None, description=action.description),
            )
            for name, action in self.registry.actions.items()
            if include_actions is None or name in include_actions
        }
        return create_model("ActionModel", __base__=ActionModel, **fields)

    def get_prompt_description(self) -> str:
        return self.registry.get_prompt_description()
