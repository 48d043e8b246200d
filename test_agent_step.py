import asyncio
import json

import httpx
import openai
from langchain_core.messages import AIMessage, HumanMessage, ToolMessage
from pydantic import BaseModel

from browser_agent.agent.prompts import FORCED_DONE_DIRECTIVE
from browser_agent.agent.service import Agent
from browser_agent.agent.views import ActionResult, AgentStepInfo, StepMode
from browser_agent.browser.config import BrowserContextConfig
from browser_agent.browser.views import BrowserState
from browser_agent.controller.service import Controller
from browser_agent.controller.views import ClickElementAction, InputTextAction
from browser_agent.core.errors import RateLimitError
from browser_agent.dom.views import DOMElementNode, DOMTextNode


def _state(xpaths):
    root = DOMElementNode(is_visible=True, tag_name="body", xpath="/body")
    selector_map = {}
    for i, xpath in enumerate(xpaths):
        element = DOMElementNode(is_visible=True, tag_name="button", xpath=xpath, highlight_index=i, parent=root)
        root.children.append(element)
        selector_map[str(i)] = element
    return BrowserState(element_tree=root, selector_map=selector_map, url="https://shop.example.com", title="Shop")


def _long_state(n=60):
    root = DOMElementNode(is_visible=True, tag_name="body", xpath="/body")
    selector_map = {}
    for i in range(n):
        button = DOMElementNode(
            is_visible=True, tag_name="button", xpath=f"/body/button[{i + 1}]", highlight_index=i, parent=root)
        button.children.append(DOMTextNode(is_visible=True, text=f"Add blue mug variant {i} to the cart", parent=button))
        root.children.append(button)
        selector_map[str(i)] = button
    return BrowserState(
        element_tree=root,
        selector_map=selector_map,
        url="https://shop.example.com",
        title="Shop",
        screenshot="aGVsbG8=",
    )


def _output(*actions):
    return json.dumps(
        {
            "current_state": {"evaluation_previous_goal": "Success", "memory": "on the shop page", "next_goal": "act"},
            "action": list(actions),
        }
    )


DONE = {"done": {"text": "finished", "success": True}}


class FakeLLM:
    model_name = "fake-model"

    def __init__(self, responses=None, error=None):
        self.responses = list(responses or [])
        self.error = error
        self.calls = []

    async def ainvoke(self, messages):
        self.calls.append(list(messages))
        if self.error is not None:
            raise self.error
        content = self.responses.pop(0) if self.responses else "no json here"
        return AIMessage(content=content)


class FakeBrowserContext:
    """Serves queued snapshots; the last one served stays current."""

    def __init__(self, current, queued=None):
        self.current = current
        self.queued = list(queued or [])
        self.config = BrowserContextConfig(wait_between_actions=0)
        self.closed = False

    async def get_state(self):
        if self.queued:
            self.current = self.queued.pop(0)
        return self.current

    async def get_selector_map(self):
        return self.current.selector_map

    async def remove_highlights(self):
        pass

    async def close(self):
        self.closed = True


def _controller(calls):
    controller = Controller()

    async def click(params, ctx):
        calls.append(("click", params.index))
        return ActionResult(extracted_content=f"clicked {params.index}")

    async def type_text(params, ctx):
        calls.append(("input", params.index, params.text))
        return ActionResult(extracted_content=f"typed into {params.index}")

    controller.registry.register("click_element", "Click element by index", ClickElementAction, click)
    controller.registry.register("input_text", "Input text", InputTextAction, type_text)
    return controller


def _agent(llm, browser_context, calls=None, **settings):
    settings.setdefault("use_vision", False)
    settings.setdefault("tool_calling_method", "raw")
    return Agent(
        task="Add the blue mug to the cart",
        llm=llm,
        browser_context=browser_context,
        controller=_controller(calls if calls is not None else []),
        **settings,
    )


def test_new_element_aborts_remaining_actions():
    calls = []
    context = FakeBrowserContext(_state(["/a", "/b", "/c"]), queued=[_state(["/a", "/b", "/c", "/d"])])
    agent = _agent(FakeLLM(), context, calls)
    actions = [
        agent.ActionModel(click_element={"index": 5}),
        agent.ActionModel(input_text={"index": 7, "text": "x"}),
    ]

    results = asyncio.run(agent.multi_act(actions))

    assert calls == [("click", 5)]
    assert len(results) == 2
    assert "action 2/2" in results[-1].extracted_content
    assert results[-1].include_in_memory


def test_unchanged_page_runs_all_actions():
    calls = []
    context = FakeBrowserContext(_state(["/a", "/b"]), queued=[_state(["/a", "/b"])])
    agent = _agent(FakeLLM(), context, calls)
    actions = [
        agent.ActionModel(click_element={"index": 0}),
        agent.ActionModel(input_text={"index": 1, "text": "mug"}),
    ]

    results = asyncio.run(agent.multi_act(actions))
    assert calls == [("click", 0), ("input", 1, "mug")]
    assert [r.extracted_content for r in results] == ["clicked 0", "typed into 1"]


def test_staleness_check_can_be_disabled():
    calls = []
    context = FakeBrowserContext(_state(["/a"]), queued=[_state(["/a", "/new"])])
    agent = _agent(FakeLLM(), context, calls)
    actions = [
        agent.ActionModel(click_element={"index": 0}),
        agent.ActionModel(click_element={"index": 1}),
    ]
    asyncio.run(agent.multi_act(actions, check_for_new_elements=False))
    assert calls == [("click", 0), ("click", 1)]


def test_run_stops_after_max_failures():
    llm = FakeLLM()
    agent = _agent(llm, FakeBrowserContext(_state(["/a"])), max_failures=3)

    history = asyncio.run(agent.run(max_steps=10))

    assert len(llm.calls) == 3
    assert len(history) == 3
    assert agent.state.consecutive_failures == 3
    assert all(history.errors())
    assert "Return a valid JSON object" in history.errors()[-1]
    assert not history.is_done()


def test_success_resets_failure_counter():
    llm = FakeLLM(["garbage", _output({"click_element": {"index": 0}})])
    calls = []
    agent = _agent(llm, FakeBrowserContext(_state(["/a"])), calls)

    asyncio.run(agent.step())
    assert agent.state.consecutive_failures == 1
    asyncio.run(agent.step())
    assert agent.state.consecutive_failures == 0
    assert calls == [("click", 0)]


def test_done_ends_run_and_calls_back():
    finished = []
    llm = FakeLLM([_output(DONE)])
    agent = Agent(
        task="Say hi",
        llm=llm,
        browser_context=FakeBrowserContext(_state(["/a"])),
        register_done_callback=lambda history: finished.append(history),
        use_vision=False,
        tool_calling_method="raw",
    )

    history = asyncio.run(agent.run(max_steps=5))

    assert history.is_done()
    assert history.is_successful()
    assert history.final_result() == "finished"
    assert len(llm.calls) == 1
    assert finished == [history]
    assert not agent.browser_context.closed


def test_actions_are_capped_per_step():
    llm = FakeLLM([_output(*({"click_element": {"index": i}} for i in range(4)))])
    agent = _agent(llm, FakeBrowserContext(_state(["/a"])), max_actions_per_step=2)

    output = asyncio.run(agent.get_next_action([HumanMessage(content="state")]))
    assert len(output.action) == 2


def test_pause_is_not_counted_as_failure():
    llm = FakeLLM([_output(DONE)])
    agent = _agent(llm, FakeBrowserContext(_state(["/a"])))
    agent.pause()
    steps_before = agent.state.n_steps

    asyncio.run(agent.step())

    assert agent.state.consecutive_failures == 0
    assert "paused" in agent.state.last_result[0].error
    assert llm.calls == []
    assert agent.state.n_steps == steps_before
    assert len(agent.state.history) == 0


def test_external_status_callback_interrupts():
    async def should_stop():
        return True

    agent = _agent(FakeLLM([_output(DONE)]), FakeBrowserContext(_state(["/a"])))
    agent.register_external_agent_status_raise_error_callback = should_stop

    asyncio.run(agent.step())
    assert agent.state.consecutive_failures == 0
    assert agent.state.last_result[0].include_in_memory


def test_forced_done_directive_is_transient():
    llm = FakeLLM([_output(DONE)])
    agent = _agent(llm, FakeBrowserContext(_state(["/a"])))
    step_info = AgentStepInfo(step_number=4, max_steps=5)
    assert step_info.mode == StepMode.FORCED_DONE

    asyncio.run(agent.step(step_info, mode=step_info.mode))

    sent = llm.calls[0]
    assert sent[-1].content == FORCED_DONE_DIRECTIVE
    assert "[Current state starts here]" in sent[-2].content[:200]

    messages = agent.message_manager.get_messages()
    assert isinstance(messages[-1], ToolMessage)
    assert isinstance(messages[-2], AIMessage)
    assert not any(isinstance(m.content, str) and m.content == FORCED_DONE_DIRECTIVE for m in messages)


def test_state_message_does_not_accumulate():
    llm = FakeLLM([_output({"click_element": {"index": 0}}), _output({"click_element": {"index": 0}})])
    agent = _agent(llm, FakeBrowserContext(_state(["/a"])))

    asyncio.run(agent.step())
    asyncio.run(agent.step())

    state_messages = [
        m for m in agent.message_manager.get_messages()
        if isinstance(m.content, str) and "[Current state starts here]" in m.content
    ]
    assert state_messages == []
    history = agent.message_manager.state.history
    assert history.current_tokens == sum(m.metadata.tokens for m in history.messages)


def test_state_message_is_trimmed_to_budget():
    llm = FakeLLM([_output(DONE)])
    agent = _agent(llm, FakeBrowserContext(_long_state()), use_vision=True)
    budget = agent.message_manager.state.history.current_tokens + 300
    agent.message_manager.settings.max_input_tokens = budget

    asyncio.run(agent.step())

    sent_state = llm.calls[0][-1]
    assert isinstance(sent_state.content, str)
    assert "[Current state starts here]" in sent_state.content
    assert "Current date and time" not in sent_state.content
    # integer division leaves at most one token of slack
    assert agent.state.history.history[-1].metadata.input_tokens <= budget + 1
    assert agent.state.history.is_done()


def test_context_length_error_shrinks_budget():
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    error = openai.BadRequestError(
        "maximum context length exceeded",
        response=httpx.Response(400, request=request),
        body={"code": "context_length_exceeded"},
    )
    agent = _agent(FakeLLM(error=error), FakeBrowserContext(_state(["/a"])))

    asyncio.run(agent.step())

    assert agent.settings.max_input_tokens == 128000 - 500
    assert agent.message_manager.settings.max_input_tokens == 128000 - 500
    assert agent.state.consecutive_failures == 1


def test_failed_planner_leaves_no_state_message():
    planner = FakeLLM(error=RuntimeError("planner offline"))
    agent = _agent(FakeLLM([_output(DONE)]), FakeBrowserContext(_state(["/a"])), planner_llm=planner)

    asyncio.run(agent.step())
    asyncio.run(agent.step())

    state_messages = [
        m for m in agent.message_manager.get_messages()
        if isinstance(m.content, str) and "[Current state starts here]" in m.content
    ]
    assert state_messages == []
    assert agent.state.consecutive_failures == 2
    assert agent.state.n_steps == 0
    assert "planner offline" in agent.state.last_result[0].error


class GoalParams(BaseModel):
    goal: str


def _extraction_agent(llm, seen, **settings):
    controller = Controller()

    async def read_page(params, ctx):
        seen.append(ctx.page_extraction_llm)

    controller.registry.register("read_page", "Read the page", GoalParams, read_page)
    return Agent(
        task="Read the prices",
        llm=llm,
        browser_context=FakeBrowserContext(_state(["/a"])),
        controller=controller,
        use_vision=False,
        tool_calling_method="raw",
        **settings,
    )


def test_extraction_uses_main_llm_by_default():
    seen = []
    llm = FakeLLM()
    agent = _extraction_agent(llm, seen)
    asyncio.run(agent.multi_act([agent.ActionModel(read_page={"goal": "prices"})]))
    assert seen[0] is llm

    seen = []
    extractor = FakeLLM()
    agent = _extraction_agent(llm, seen, page_extraction_llm=extractor)
    asyncio.run(agent.multi_act([agent.ActionModel(read_page={"goal": "prices"})]))
    assert seen[0] is extractor


def test_rate_limit_waits_and_counts():
    agent = _agent(FakeLLM(error=RateLimitError("slow down")), FakeBrowserContext(_state(["/a"])), retry_delay=0)

    asyncio.run(agent.step())

    assert agent.state.consecutive_failures == 1
    assert agent.state.last_result[0].error == "Rate limit reached. Waiting before retry."


def test_planner_output_is_recorded():
    planner = FakeLLM(['{"next_steps": "open the cart"}'])
    agent = _agent(FakeLLM([_output(DONE)]), FakeBrowserContext(_state(["/a"])), planner_llm=planner)

    asyncio.run(agent.step())

    assert agent.state.last_plan == '{"next_steps": "open the cart"}'
    assert len(planner.calls) == 1
    assert any(
        isinstance(m, AIMessage) and m.content == agent.state.last_plan
        for m in agent.message_manager.get_messages()
    )


def test_initial_actions_run_before_first_step():
    calls = []
    agent = _agent(
        FakeLLM([_output(DONE)]),
        FakeBrowserContext(_state(["/a", "/b"])),
        calls,
        initial_actions=[{"click_element": {"index": 1}}],
    )
    asyncio.run(agent.run(max_steps=3))
    assert calls[0] == ("click", 1)


if __name__ == "__main__":
    test_new_element_aborts_remaining_actions()
    test_unchanged_page_runs_all_actions()
    test_staleness_check_can_be_disabled()
    test_run_stops_after_max_failures()
    test_success_resets_failure_counter()
    test_done_ends_run_and_calls_back()
    test_actions_are_capped_per_step()
    test_pause_is_not_counted_as_failure()
    test_external_status_callback_interrupts()
    test_forced_done_directive_is_transient()
    test_state_message_does_not_accumulate()
    test_state_message_is_trimmed_to_budget()
    test_context_length_error_shrinks_budget()
    test_failed_planner_leaves_no_state_message()
    test_extraction_uses_main_llm_by_default()
    test_rate_limit_waits_and_counts()
    test_planner_output_is_recorded()
    test_initial_actions_run_before_first_step()
    print("Agent step tests passed.")
