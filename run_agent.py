"""
Entry point: runs the browser agent on a task given on the command line,
then prints a short summary and saves the step history under OUT_DIR.
"""

from __future__ import annotations

import asyncio
import sys

from browser_agent import Agent, AgentHistoryList, setup_logging
from browser_agent.core.config import OUT_DIR
from browser_agent.core.llm import make_chat_model

DEFAULT_TASK = "Open https://news.ycombinator.com and return the titles of the top 3 stories."


async def run(task: str, max_steps: int = 25) -> tuple[Agent, AgentHistoryList]:
    agent = Agent(task=task, llm=make_chat_model())
    history = await agent.run(max_steps=max_steps)

    run_dir = OUT_DIR / f"run_{agent.state.agent_id}"
    agent.save_history(run_dir / "history.json")
    return agent, history


def print_summary(task: str, agent: Agent, history: AgentHistoryList) -> None:
    print("\n=== Browser agent result ===")
    print("Task:", task)
    print("Run dir:", OUT_DIR / f"run_{agent.state.agent_id}")
    print("Steps:", history.number_of_steps())
    print("Done:", history.is_done(), "| Success:", history.is_successful())
    names = history.action_names()
    if names:
        print("Actions:")
        for name in names:
            print(f"  - {name}")
    errors = [e for e in history.errors() if e]
    if errors:
        print("Errors:")
        for e in errors:
            print(f"  - {e.splitlines()[-1]}")
    print("Final result:", history.final_result())


def main():
    setup_logging()
    task = " ".join(sys.argv[1:]) or DEFAULT_TASK
    agent, history = asyncio.run(run(task))
    print_summary(task, agent, history)


if __name__ == "__main__":
    main()
