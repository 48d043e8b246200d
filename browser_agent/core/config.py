import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# LLM
DEFAULT_MODEL = os.getenv("BROWSER_AGENT_MODEL", "gpt-4o-mini")

# Browser
HEADLESS = os.getenv("BROWSER_AGENT_HEADLESS", "false").lower() in ("1", "true", "yes")

# Logging
LOG_LEVEL = os.getenv("BROWSER_AGENT_LOG_LEVEL", "INFO").upper()

# Output paths
OUT_DIR = Path(os.getenv("BROWSER_AGENT_OUT_DIR", "artifacts/browser_agent/"))

# Attributes rendered next to interactive elements in the prompt
DEFAULT_INCLUDE_ATTRIBUTES = [
    "title",
    "type",
    "name",
    "role",
    "aria-label",
    "placeholder",
    "value",
    "alt",
    "aria-expanded",
    "data-date-format",
]
