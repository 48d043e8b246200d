from typing import Optional

from pydantic import BaseModel, ConfigDict


class SearchGoogleAction(BaseModel):
    query: str


class GoToUrlAction(BaseModel):
    url: str


class ClickElementAction(BaseModel):
    index: int
    xpath: Optional[str] = None


class InputTextAction(BaseModel):
    index: int
    text: str
    xpath: Optional[str] = None


class DoneAction(BaseModel):
    text: str
    success: bool


class SwitchTabAction(BaseModel):
    page_id: int


class OpenTabAction(BaseModel):
    url: str


class ScrollAction(BaseModel):
    amount: Optional[int] = None


class SendKeysAction(BaseModel):
    keys: str


class ExtractPageContentAction(BaseModel):
    goal: str


class WaitAction(BaseModel):
    seconds: int = 3


class ScrollToTextAction(BaseModel):
    text: str


class GetDropdownOptionsAction(BaseModel):
    index: int


class SelectDropdownOptionAction(BaseModel):
    index: int
    text: str


class NoParamsAction(BaseModel):
    """Accepts and discards any payload, e.g. `{"go_back": {}}`."""

    model_config = ConfigDict(extra="allow")
