import logging
from typing import TYPE_CHECKING, TypedDict

from langgraph.graph import END, START, StateGraph

from .views import AgentStepInfo

if TYPE_CHECKING:
    from .service import Agent

logger = logging.getLogger(__name__)


class RunState(TypedDict):
    step: int
    max_steps: int


def build_run_graph(agent: "Agent"):
    """One `step` node looping on itself until the agent is done, halted or out of budget."""

    async def step(state: RunState) -> RunState:
        step_info = AgentStepInfo(step_number=state["step"], max_steps=state["max_steps"])
        await agent.step(step_info, mode=step_info.mode)
        return {"step": state["step"] + 1, "max_steps": state["max_steps"]}

    def should_continue(state: RunState) -> str:
        if agent.state.stopped:
            logger.info("[Agent] Agent stopped")
            return END
        if agent.state.paused:
            logger.info("[Agent] Agent paused")
            return END
        if agent.state.consecutive_failures >= agent.settings.max_failures:
            logger.error(f"[Agent] ❌ Stopping due to {agent.settings.max_failures} consecutive failures")
            return END
        if agent.state.history.is_done():
            return END
        if state["step"] >= state["max_steps"]:
            return END
        return "step"

    graph = StateGraph(RunState)
    graph.add_node("step", step)

    graph.add_conditional_edges(START, should_continue, {END: END, "step": "step"})
    graph.add_conditional_edges("step", should_continue, {END: END, "step": "step"})

    return graph.compile()
