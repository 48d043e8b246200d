"""
Browser-driving LLM agent.

Each step snapshots the page into an indexed element tree, renders it as a
compact prompt, asks the model for a short action sequence and runs it
through the controller until the task is done or the failure budget is spent.
"""

from .agent.service import Agent
from .agent.views import ActionResult, AgentHistoryList, AgentSettings, AgentState, StepMode
from .browser import Browser, BrowserConfig, BrowserContext, BrowserContextConfig
from .controller.service import Controller
from .core.logging_config import setup_logging

__all__ = [
    "Agent",
    "ActionResult",
    "AgentHistoryList",
    "AgentSettings",
    "AgentState",
    "StepMode",
    "Browser",
    "BrowserConfig",
    "BrowserContext",
    "BrowserContextConfig",
    "Controller",
    "setup_logging",
]
