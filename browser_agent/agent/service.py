from __future__ import annotations

import asyncio
import inspect
import json
import logging
import re
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage

from ..browser.browser import Browser
from ..browser.context import BrowserContext
from ..browser.views import BrowserState, BrowserStateHistory
from ..controller.registry.views import ActionModel
from ..controller.service import Controller
from ..core.errors import (
    AgentInterrupted,
    BrowserAgentError,
    ErrorKind,
    ModelOutputParseError,
    TokenBudgetExhausted,
    classify_error,
)
from ..core.logging_config import setup_logging
from ..dom.history_tree_processor import DOMHistoryElement, HistoryTreeProcessor, branch_path_hashes
from ..utils.imaging import draw_highlight_indices
from .graph import build_run_graph
from .message_manager.service import MessageManager, MessageManagerSettings
from .message_manager.utils import convert_input_messages, extract_json_from_model_output, save_conversation
from .prompts import PlannerPrompt, SystemPrompt
from .views import (
    ActionResult,
    AgentError,
    AgentHistory,
    AgentHistoryList,
    AgentOutput,
    AgentSettings,
    AgentState,
    AgentStepInfo,
    StepMetadata,
    StepMode,
)

logger = logging.getLogger(__name__)

THINK_TAGS = re.compile(r"<think>.*?</think>", re.DOTALL)
STRAY_CLOSE_THINK_TAG = re.compile(r".*?</think>", re.DOTALL)

PAUSED_RESULT = "The agent was paused - now continuing actions might need to be repeated"


def log_response(response: AgentOutput) -> None:
    """Log the model's reasoning and the actions it chose."""
    if "Success" in response.current_state.evaluation_previous_goal:
        emoji = "👍"
    elif "Failed" in response.current_state.evaluation_previous_goal:
        emoji = "⚠"
    else:
        emoji = "🤷"

    logger.info(f"[Agent] {emoji} Eval: {response.current_state.evaluation_previous_goal}")
    logger.info(f"[Agent] 🧠 Memory: {response.current_state.memory}")
    logger.info(f"[Agent] 🎯 Next goal: {response.current_state.next_goal}")
    for i, action in enumerate(response.action):
        logger.info(f"[Agent] 🛠️  Action {i + 1}/{len(response.action)}: {action.model_dump_json(exclude_unset=True)}")


async def _maybe_await(func: Callable[..., Any], *args: Any) -> Any:
    if inspect.iscoroutinefunction(func):
        return await func(*args)
    return func(*args)


class Agent:
    def __init__(
        self,
        task: str,
        llm: BaseChatModel,
        browser: Optional[Browser] = None,
        browser_context: Optional[BrowserContext] = None,
        controller: Optional[Controller] = None,
        sensitive_data: Optional[Dict[str, str]] = None,
        initial_actions: Optional[List[Dict[str, Dict[str, Any]]]] = None,
        register_new_step_callback: Optional[Callable[[BrowserState, AgentOutput, int], Any]] = None,
        register_done_callback: Optional[Callable[[AgentHistoryList], Any]] = None,
        register_external_agent_status_raise_error_callback: Optional[Callable[[], Awaitable[bool]]] = None,
        injected_agent_state: Optional[AgentState] = None,
        context: Any = None,
        **settings: Any,
    ):
        setup_logging()

        self.task = task
        self.llm = llm
        self.controller = controller or Controller()
        self.sensitive_data = sensitive_data
        self.context = context
        self.settings = AgentSettings(**settings)
        self.state = injected_agent_state or AgentState()

        self.register_new_step_callback = register_new_step_callback
        self.register_done_callback = register_done_callback
        self.register_external_agent_status_raise_error_callback = register_external_agent_status_raise_error_callback

        self._setup_action_models()
        self.available_actions = self.controller.registry.get_prompt_description()

        self.model_name = getattr(llm, "model_name", None) or getattr(llm, "model", None) or "Unknown"
        self.chat_model_library = llm.__class__.__name__
        self.planner_model_name = self._planner_model_name()
        self.tool_calling_method = self._set_tool_calling_method()

        # raw mode has no tool schema, so the model needs the actions in plain text
        if self.tool_calling_method == "raw":
            available = f"Available actions: {self.available_actions}"
            if self.settings.message_context:
                self.settings.message_context += f"\n\n{available}"
            else:
                self.settings.message_context = available

        self.initial_actions = self._convert_initial_actions(initial_actions) if initial_actions else None

        logger.info(
            f"[Agent] 🧠 Starting an agent with main_model={self.model_name}, "
            f"tool_calling_method={self.tool_calling_method}, "
            f"planner_model={self.planner_model_name}, vision={self.settings.use_vision}"
        )

        self.message_manager = MessageManager(
            task=task,
            system_message=SystemPrompt(
                action_description=self.available_actions,
                max_actions_per_step=self.settings.max_actions_per_step,
                override_system_message=self.settings.override_system_message,
                extend_system_message=self.settings.extend_system_message,
            ).get_system_message(),
            settings=MessageManagerSettings(
                max_input_tokens=self.settings.max_input_tokens,
                include_attributes=self.settings.include_attributes,
                message_context=self.settings.message_context,
                sensitive_data=sensitive_data,
                available_file_paths=self.settings.available_file_paths,
            ),
            state=self.state.message_manager_state,
        )

        self.injected_browser = browser is not None
        self.injected_browser_context = browser_context is not None
        if browser_context is not None:
            self.browser = browser
            self.browser_context = browser_context
        else:
            self.browser = browser or Browser()
            self.browser_context = BrowserContext(browser=self.browser, config=self.browser.config.new_context_config)

        if self.settings.save_conversation_path:
            logger.info(f"[Agent] Saving conversation to {self.settings.save_conversation_path}")

    def _setup_action_models(self) -> None:
        self.ActionModel = self.controller.registry.create_action_model()
        self.AgentOutput = AgentOutput.type_with_custom_actions(self.ActionModel)

    def _planner_model_name(self) -> Optional[str]:
        planner = self.settings.planner_llm
        if planner is None:
            return None
        return getattr(planner, "model_name", None) or getattr(planner, "model", None) or "Unknown"

    def _set_tool_calling_method(self) -> Optional[str]:
        tool_calling_method = self.settings.tool_calling_method
        if tool_calling_method != "auto":
            return tool_calling_method
        if self.model_name == "deepseek-reasoner" or "deepseek-r1" in self.model_name:
            return "raw"
        if self.chat_model_library in ("ChatOpenAI", "AzureChatOpenAI"):
            return "function_calling"
        return None

    def _convert_initial_actions(self, actions: List[Dict[str, Dict[str, Any]]]) -> List[ActionModel]:
        converted_actions = []
        for action_dict in actions:
            action_name = next(iter(action_dict))
            params = action_dict[action_name]

            action_info = self.controller.registry.registry.actions[action_name]
            validated_params = action_info.param_model(**params)
            converted_actions.append(self.ActionModel(**{action_name: validated_params}))
        return converted_actions

    # ------------------------------------------------------------------ control

    def add_new_task(self, new_task: str) -> None:
        self.message_manager.add_new_task(new_task)
        self.task = new_task

    def pause(self) -> None:
        logger.info("[Agent] 🔄 Pausing agent")
        self.state.paused = True

    def resume(self) -> None:
        logger.info("[Agent] ▶️ Resuming agent")
        self.state.paused = False

    def stop(self) -> None:
        logger.info("[Agent] ⏹️ Stopping agent")
        self.state.stopped = True

    async def _raise_if_stopped_or_paused(self) -> None:
        if self.register_external_agent_status_raise_error_callback:
            if await self.register_external_agent_status_raise_error_callback():
                raise AgentInterrupted("External status callback requested a stop")

        if self.state.stopped or self.state.paused:
            raise AgentInterrupted("Agent was paused or stopped")

    # ------------------------------------------------------------------ step

    async def step(self, step_info: Optional[AgentStepInfo] = None, mode: StepMode = StepMode.NORMAL) -> None:
        """Snapshot, prompt, decide, act, record; errors are folded into last_result."""
        logger.info(f"[Agent] 📍 Step {self.state.n_steps}")
        state: Optional[BrowserState] = None
        model_output: Optional[AgentOutput] = None
        result: List[ActionResult] = []
        step_start_time = time.time()
        tokens = 0
        interrupted = False

        try:
            state = await self.browser_context.get_state()
            await self._raise_if_stopped_or_paused()

            self.message_manager.add_state_message(state, self.state.last_result, step_info, self.settings.use_vision)
            transient = 1

            try:
                if self.settings.planner_llm and self.state.n_steps % self.settings.planner_interval == 0:
                    plan = await self._run_planner()
                    # just before the state message
                    self.message_manager.add_plan(plan, position=-1)

                # trims the state message, so it must still be last
                self.message_manager.cut_messages()

                if mode == StepMode.FORCED_DONE:
                    self.message_manager.add_forced_done_directive()
                    transient += 1

                input_messages = self.message_manager.get_messages()
                tokens = self.message_manager.state.history.current_tokens

                model_output = await self.get_next_action(input_messages)
                self.state.n_steps += 1

                if self.register_new_step_callback:
                    await _maybe_await(self.register_new_step_callback, state, model_output, self.state.n_steps)

                if self.settings.save_conversation_path:
                    self._save_step_artifacts(input_messages, model_output, state)
            finally:
                self._remove_transient_messages(transient)

            await self._raise_if_stopped_or_paused()
            self.message_manager.add_model_output(model_output)

            result = await self.multi_act(model_output.action)
            self.state.last_result = result

            if len(result) > 0 and result[-1].is_done:
                logger.info(f"[Agent] 📄 Result: {result[-1].extracted_content}")

            self.state.consecutive_failures = 0

        except AgentInterrupted:
            logger.debug("[Agent] Agent paused")
            interrupted = True
            self.state.last_result = [ActionResult(error=PAUSED_RESULT, include_in_memory=True)]
        except Exception as e:
            result = await self._handle_step_error(e)
            self.state.last_result = result

        finally:
            step_end_time = time.time()
            if state is not None and not interrupted:
                metadata = StepMetadata(
                    step_number=self.state.n_steps,
                    step_start_time=step_start_time,
                    step_end_time=step_end_time,
                    input_tokens=tokens,
                )
                self._make_history_item(model_output, state, result, metadata)

    def _remove_transient_messages(self, count: int) -> None:
        # the state message, plus the forced-done directive when present
        for _ in range(count):
            self.message_manager.remove_last_state_message()

    def _save_step_artifacts(self, input_messages: List[BaseMessage], model_output: AgentOutput, state: BrowserState) -> None:
        target = f"{self.settings.save_conversation_path}_{self.state.n_steps}"
        save_conversation(input_messages, model_output, f"{target}.txt", self.settings.save_conversation_path_encoding)
        if state.screenshot:
            draw_highlight_indices(state.screenshot, state.selector_map, f"{target}.png")

    async def _handle_step_error(self, error: Exception) -> List[ActionResult]:
        include_trace = logger.isEnabledFor(logging.DEBUG)
        error_msg = AgentError.format_error(error, include_trace=include_trace)
        prefix = f"❌ Result failed {self.state.consecutive_failures + 1}/{self.settings.max_failures} times:\n "

        kind = classify_error(error)
        if kind == ErrorKind.BUDGET:
            self.settings.max_input_tokens -= 500
            self.message_manager.settings.max_input_tokens = self.settings.max_input_tokens
            logger.info(f"[Agent] Cutting tokens from history - new max input tokens: {self.settings.max_input_tokens}")
            try:
                self.message_manager.cut_messages()
            except TokenBudgetExhausted:
                self.message_manager.remove_oldest_message()
        elif kind == ErrorKind.PARSE:
            error_msg += "\n\nReturn a valid JSON object with the required fields."
        elif kind == ErrorKind.RATE_LIMIT:
            logger.warning(f"[Agent] {prefix}{error_msg}")
            await asyncio.sleep(self.settings.retry_delay)

        self.state.consecutive_failures += 1
        if kind != ErrorKind.RATE_LIMIT:
            logger.error(f"[Agent] {prefix}{error_msg}")
        return [ActionResult(error=error_msg, include_in_memory=True)]

    def _make_history_item(
        self,
        model_output: Optional[AgentOutput],
        state: BrowserState,
        result: List[ActionResult],
        metadata: Optional[StepMetadata] = None,
    ) -> None:
        if model_output:
            interacted_elements = AgentHistory.get_interacted_element(model_output, state.selector_map)
        else:
            interacted_elements = [None]

        state_history = BrowserStateHistory(
            url=state.url,
            title=state.title,
            tabs=state.tabs,
            interacted_element=interacted_elements,
            screenshot=state.screenshot,
        )
        self.state.history.append(
            AgentHistory(model_output=model_output, result=result, state=state_history, metadata=metadata))

    @staticmethod
    def _remove_think_tags(text: str) -> str:
        text = THINK_TAGS.sub("", text)
        # an unmatched closing tag means everything before it was reasoning
        text = STRAY_CLOSE_THINK_TAG.sub("", text)
        return text.strip()

    async def get_next_action(self, input_messages: List[BaseMessage]) -> AgentOutput:
        input_messages = convert_input_messages(input_messages, self.model_name)

        if self.tool_calling_method == "raw":
            output = await self.llm.ainvoke(input_messages)
            parsed = self._parse_raw_output(str(output.content))
        else:
            if self.tool_calling_method is None:
                structured_llm = self.llm.with_structured_output(self.AgentOutput, include_raw=True)
            else:
                structured_llm = self.llm.with_structured_output(
                    self.AgentOutput, include_raw=True, method=self.tool_calling_method)
            response: Dict[str, Any] = await structured_llm.ainvoke(input_messages)
            parsed = response.get("parsed")
            raw = response.get("raw")
            if parsed is None and raw is not None and raw.content:
                parsed = self._parse_raw_output(str(raw.content))

        if parsed is None:
            raise ModelOutputParseError("Could not parse response.")

        # cut the number of actions to max_actions_per_step
        if len(parsed.action) > self.settings.max_actions_per_step:
            parsed.action = parsed.action[: self.settings.max_actions_per_step]

        log_response(parsed)
        return parsed

    def _parse_raw_output(self, content: str) -> AgentOutput:
        content = self._remove_think_tags(content)
        parsed_json = extract_json_from_model_output(content)
        return self.AgentOutput(**parsed_json)

    async def multi_act(self, actions: List[ActionModel], check_for_new_elements: bool = True) -> List[ActionResult]:
        """Run actions in order, stopping early once the page grows new interactive elements."""
        results: List[ActionResult] = []

        cached_selector_map = await self.browser_context.get_selector_map()
        cached_path_hashes = branch_path_hashes(cached_selector_map)

        await self.browser_context.remove_highlights()

        for i, action in enumerate(actions):
            if action.get_index() is not None and i != 0:
                new_state = await self.browser_context.get_state()
                new_path_hashes = branch_path_hashes(new_state.selector_map)
                if check_for_new_elements and not new_path_hashes.issubset(cached_path_hashes):
                    msg = (
                        f"Something new appeared after action {i} / {len(actions)}, "
                        f"stopped before action {i + 1}/{len(actions)}"
                    )
                    logger.info(f"[Agent] {msg}")
                    results.append(ActionResult(extracted_content=msg, include_in_memory=True))
                    break

            await self._raise_if_stopped_or_paused()

            result = await self.controller.act(
                action,
                self.browser_context,
                self.settings.page_extraction_llm or self.llm,
                self.sensitive_data,
                self.settings.available_file_paths,
                context=self.context,
            )
            results.append(result)

            logger.debug(f"[Agent] Executed action {i + 1} / {len(actions)}")
            if results[-1].is_done or results[-1].error or i == len(actions) - 1:
                break

            await asyncio.sleep(self.browser_context.config.wait_between_actions)

        return results

    async def _run_planner(self) -> Optional[str]:
        if not self.settings.planner_llm:
            return None

        planner_messages: List[BaseMessage] = [
            PlannerPrompt(self.available_actions).get_system_message(),
            *self.message_manager.get_messages()[1:],
        ]

        if not self.settings.use_vision_for_planner and self.settings.use_vision:
            last_state_message = planner_messages[-1]
            new_msg = ""
            if isinstance(last_state_message.content, list):
                for msg in last_state_message.content:
                    if isinstance(msg, dict) and msg.get("type") == "text":
                        new_msg += msg["text"]
            else:
                new_msg = last_state_message.content
            planner_messages[-1] = HumanMessage(content=new_msg)

        planner_messages = convert_input_messages(planner_messages, self.planner_model_name)

        response = await self.settings.planner_llm.ainvoke(planner_messages)
        plan = str(response.content)
        if self.planner_model_name and (
            "deepseek-r1" in self.planner_model_name or self.planner_model_name == "deepseek-reasoner"
        ):
            plan = self._remove_think_tags(plan)

        try:
            plan_json = json.loads(plan)
            logger.info(f"[Planner] Planning Analysis:\n{json.dumps(plan_json, indent=4)}")
        except json.JSONDecodeError:
            logger.info(f"[Planner] Planning Analysis:\n{plan}")

        self.state.last_plan = plan
        return plan

    # ------------------------------------------------------------------ run

    async def run(self, max_steps: int = 100) -> AgentHistoryList:
        try:
            logger.info(f"[Agent] 🚀 Starting task: {self.task}")

            if self.initial_actions:
                result = await self.multi_act(self.initial_actions, check_for_new_elements=False)
                self.state.last_result = result

            app = build_run_graph(self)
            final_state = await app.ainvoke(
                {"step": 0, "max_steps": max_steps},
                config={"run_name": "browser_agent_run", "recursion_limit": max_steps * 2 + 10},
            )

            if self.state.history.is_done():
                self.log_completion()
                if self.register_done_callback:
                    await _maybe_await(self.register_done_callback, self.state.history)
            elif final_state.get("step", 0) >= max_steps:
                logger.info("[Agent] ❌ Failed to complete task in maximum steps")

            return self.state.history
        finally:
            if not self.injected_browser_context:
                await self.browser_context.close()
            if not self.injected_browser and self.browser:
                await self.browser.close()

    def log_completion(self) -> None:
        logger.info("[Agent] ✅ Task completed")
        if self.state.history.is_successful():
            logger.info("[Agent] ✅ Successfully")
        else:
            logger.info("[Agent] ❌ Unfinished")

        total_tokens = self.state.history.total_input_tokens()
        logger.info(f"[Agent] 📝 Total input tokens used (approximate): {total_tokens}")

    def save_history(self, file_path: Optional[Union[str, Path]] = None) -> None:
        self.state.history.save_to_file(file_path or "AgentHistory.json")

    # ------------------------------------------------------------------ replay

    async def rerun_history(
        self,
        history: AgentHistoryList,
        max_retries: int = 3,
        skip_failures: bool = True,
        delay_between_actions: float = 2.0,
    ) -> List[ActionResult]:
        """Replay a recorded run, re-locating each interacted element in the live page."""
        if self.initial_actions:
            result = await self.multi_act(self.initial_actions)
            self.state.last_result = result

        results: List[ActionResult] = []

        for i, history_item in enumerate(history.history):
            goal = history_item.model_output.current_state.next_goal if history_item.model_output else ""
            logger.info(f"[Agent] Replaying step {i + 1}/{len(history.history)}: goal: {goal}")

            if not history_item.model_output or not history_item.model_output.action:
                logger.warning(f"[Agent] Step {i + 1}: No action to replay, skipping")
                results.append(ActionResult(error="No action to replay"))
                continue

            retry_count = 0
            while retry_count < max_retries:
                try:
                    result = await self._execute_history_step(history_item, delay_between_actions)
                    results.extend(result)
                    break
                except BrowserAgentError as e:
                    retry_count += 1
                    if retry_count == max_retries:
                        error_msg = f"Step {i + 1} failed after {max_retries} attempts: {e}"
                        logger.error(f"[Agent] {error_msg}")
                        if not skip_failures:
                            results.append(ActionResult(error=error_msg))
                            raise BrowserAgentError(error_msg) from e
                    else:
                        logger.warning(f"[Agent] Step {i + 1} failed (attempt {retry_count}/{max_retries}), retrying...")
                        await asyncio.sleep(delay_between_actions)

        return results

    async def _execute_history_step(self, history_item: AgentHistory, delay: float) -> List[ActionResult]:
        state = await self.browser_context.get_state()
        if not state or not history_item.model_output:
            raise BrowserAgentError("Invalid state or model output")

        updated_actions = []
        for i, action in enumerate(history_item.model_output.action):
            historical_element = history_item.state.interacted_element[i] if i < len(history_item.state.interacted_element) else None
            updated_action = self._update_action_indices(historical_element, action, state)
            if updated_action is None:
                raise BrowserAgentError(f"Could not find matching element {i} in current page")
            updated_actions.append(updated_action)

        result = await self.multi_act(updated_actions)
        await asyncio.sleep(delay)
        return result

    def _update_action_indices(
        self,
        historical_element: Optional[DOMHistoryElement],
        action: ActionModel,
        current_state: BrowserState,
    ) -> Optional[ActionModel]:
        if not historical_element or not current_state.element_tree:
            return action

        current_element = HistoryTreeProcessor.find_history_element_in_tree(historical_element, current_state.element_tree)
        if not current_element or current_element.highlight_index is None:
            return None

        old_index = action.get_index()
        if old_index != current_element.highlight_index:
            action.set_index(current_element.highlight_index)
            logger.info(f"[Agent] Element moved in DOM, updated index from {old_index} to {current_element.highlight_index}")
        return action

    async def load_and_rerun(self, history_file: Optional[Union[str, Path]] = None, **kwargs: Any) -> List[ActionResult]:
        history = AgentHistoryList.load_from_file(history_file or "AgentHistory.json", self.AgentOutput)
        return await self.rerun_history(history, **kwargs)
