from typing import Optional

from langchain_openai import ChatOpenAI

from .config import DEFAULT_MODEL


def make_chat_model(
    model: Optional[str] = None,
    temperature: float = 0.1,
    timeout: int = 45,
    max_retries: int = 1,
) -> ChatOpenAI:
    return ChatOpenAI(
        model=model or DEFAULT_MODEL,
        temperature=temperature,
        timeout=timeout,
        max_retries=max_retries,
    )
