from enum import Enum

import openai
from langchain_core.exceptions import OutputParserException
from pydantic import ValidationError


class BrowserAgentError(Exception):
    """Base class for every error raised by browser_agent."""


class DOMTreeConstructionError(BrowserAgentError):
    """The in-page extraction returned no usable node map or root."""


class ModelOutputParseError(BrowserAgentError):
    """The LLM response could not be turned into an AgentOutput."""


class TokenBudgetExhausted(BrowserAgentError):
    """Trimming would have to drop (almost) the whole state message."""


class AgentInterrupted(BrowserAgentError):
    """Raised at cancellation points when the agent is paused or stopped."""


class RateLimitError(BrowserAgentError):
    """Raise from custom LLM clients to signal throttling or exhausted quota."""


class ActionNotFoundError(BrowserAgentError):
    pass


class ActionValidationError(BrowserAgentError):
    pass


class ActionExecutionError(BrowserAgentError):
    pass


class ErrorKind(str, Enum):
    BUDGET = "budget"
    PARSE = "parse"
    VALIDATION = "validation"
    RATE_LIMIT = "rate_limit"
    INTERRUPTED = "interrupted"
    OTHER = "other"


# 429 too many requests, 503 over capacity, 529 overloaded
_RATE_LIMIT_STATUS = {429, 503, 529}
_CONTEXT_LENGTH_CODE = "context_length_exceeded"


def classify_error(error: BaseException) -> ErrorKind:
    """Map an exception raised inside a step onto the failure taxonomy by type."""
    if isinstance(error, AgentInterrupted):
        return ErrorKind.INTERRUPTED
    if isinstance(error, TokenBudgetExhausted):
        return ErrorKind.BUDGET
    if isinstance(error, openai.BadRequestError) and error.code == _CONTEXT_LENGTH_CODE:
        return ErrorKind.BUDGET
    if isinstance(error, (ModelOutputParseError, OutputParserException)):
        return ErrorKind.PARSE
    if isinstance(error, (RateLimitError, openai.RateLimitError)):
        return ErrorKind.RATE_LIMIT
    if isinstance(error, openai.APIStatusError) and error.status_code in _RATE_LIMIT_STATUS:
        return ErrorKind.RATE_LIMIT
    if isinstance(error, (ValidationError, ActionValidationError, ValueError)):
        return ErrorKind.VALIDATION
    return ErrorKind.OTHER
