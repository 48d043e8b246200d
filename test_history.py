import asyncio

from langchain_core.messages import AIMessage

from browser_agent.agent.service import Agent
from browser_agent.agent.views import (
    ActionResult,
    AgentBrain,
    AgentHistory,
    AgentHistoryList,
    StepMetadata,
)
from browser_agent.browser.config import BrowserContextConfig
from browser_agent.browser.views import BrowserState, BrowserStateHistory, TabInfo
from browser_agent.controller.service import Controller
from browser_agent.controller.views import ClickElementAction
from browser_agent.dom.history_tree_processor import HistoryTreeProcessor
from browser_agent.dom.views import DOMElementNode

BRAIN = AgentBrain(evaluation_previous_goal="Unknown", memory="", next_goal="Open the cart")


def _page(index, with_cart=True):
    root = DOMElementNode(is_visible=True, tag_name="body", xpath="/body")
    selector_map = {}
    if with_cart:
        cart = DOMElementNode(
            is_visible=True,
            tag_name="a",
            xpath="/body/a[2]",
            attributes={"href": "/cart"},
            highlight_index=index,
            parent=root,
        )
        root.children.append(cart)
        selector_map[str(index)] = cart
    return BrowserState(element_tree=root, selector_map=selector_map, url="https://shop.example.com", title="Shop")


class FakeLLM:
    model_name = "fake-model"

    async def ainvoke(self, messages):
        return AIMessage(content="")


class FakeBrowserContext:
    def __init__(self, state):
        self.state = state
        self.config = BrowserContextConfig(wait_between_actions=0)

    async def get_state(self):
        return self.state

    async def get_selector_map(self):
        return self.state.selector_map

    async def remove_highlights(self):
        pass

    async def close(self):
        pass


def _agent(state, clicks):
    controller = Controller()

    async def click(params, ctx):
        clicks.append(params.index)
        return ActionResult(extracted_content=f"clicked {params.index}")

    controller.registry.register("click_element", "Click element by index", ClickElementAction, click)
    return Agent(
        task="Open the cart",
        llm=FakeLLM(),
        browser_context=FakeBrowserContext(state),
        controller=controller,
        use_vision=False,
        tool_calling_method="raw",
    )


def _recorded_history(agent, old_page):
    output = agent.AgentOutput(current_state=BRAIN, action=[{"click_element": {"index": 0}}])
    return AgentHistoryList(
        [
            AgentHistory(
                model_output=output,
                result=[ActionResult(is_done=True, success=True, extracted_content="cart opened")],
                state=BrowserStateHistory(
                    url=old_page.url,
                    title=old_page.title,
                    tabs=[TabInfo(page_id=0, url=old_page.url, title=old_page.title)],
                    interacted_element=AgentHistory.get_interacted_element(output, old_page.selector_map),
                ),
                metadata=StepMetadata(step_start_time=1.0, step_end_time=3.5, input_tokens=120, step_number=1),
            )
        ]
    )


def test_history_survives_save_and_load(tmp_path):
    agent = _agent(_page(0), [])
    history = _recorded_history(agent, _page(0))
    target = tmp_path / "runs" / "history.json"

    history.save_to_file(target)
    loaded = AgentHistoryList.load_from_file(target, agent.AgentOutput)

    assert len(loaded) == 1
    assert loaded.is_done()
    assert loaded.is_successful()
    assert loaded.final_result() == "cart opened"
    assert loaded.urls() == ["https://shop.example.com"]
    assert loaded.action_names() == ["click_element"]
    assert loaded.total_input_tokens() == 120
    assert loaded.total_duration_seconds() == 2.5
    element = loaded.history[0].state.interacted_element[0]
    assert element.xpath == "/body/a[2]"
    assert element.entire_parent_branch_path == ["body", "a"]


def test_history_element_is_found_after_reindexing():
    old_element = _page(0).selector_map["0"]
    recorded = HistoryTreeProcessor.convert_dom_element_to_history_element(old_element)

    new_page = _page(3)
    found = HistoryTreeProcessor.find_history_element_in_tree(recorded, new_page.element_tree)
    assert found is not None
    assert found.highlight_index == 3


def test_replay_remaps_moved_element():
    clicks = []
    agent = _agent(_page(3), clicks)
    history = _recorded_history(agent, _page(0))

    results = asyncio.run(agent.rerun_history(history, delay_between_actions=0))

    assert clicks == [3]
    assert results[0].extracted_content == "clicked 3"


def test_replay_skips_step_when_element_is_gone():
    clicks = []
    agent = _agent(_page(0, with_cart=False), clicks)
    history = _recorded_history(agent, _page(0))

    results = asyncio.run(agent.rerun_history(history, max_retries=2, delay_between_actions=0))

    assert clicks == []
    assert results == []


if __name__ == "__main__":
    import tempfile
    from pathlib import Path

    with tempfile.TemporaryDirectory() as tmp:
        test_history_survives_save_and_load(Path(tmp))
    test_history_element_is_found_after_reindexing()
    test_replay_remaps_moved_element()
    test_replay_skips_step_when_element_is_gone()
    print("History tests passed.")
