import asyncio
from typing import Optional

import pytest
from pydantic import BaseModel

from browser_agent.agent.views import ActionResult
from browser_agent.controller.registry.service import Registry
from browser_agent.controller.service import Controller
from browser_agent.core.errors import ActionExecutionError, ActionNotFoundError, ActionValidationError


class EchoParams(BaseModel):
    text: str


class UploadParams(BaseModel):
    index: int
    file_path: str


class LoginParams(BaseModel):
    username: str
    password: str
    extra: Optional[dict] = None


def _controller_with(name, handler, param_model=EchoParams):
    controller = Controller()
    controller.registry.register(name, f"{name} action", param_model, handler)
    return controller


def _act(controller, name, params):
    action_model = controller.registry.create_action_model()
    action = action_model(**{name: params})
    return asyncio.run(controller.act(action, browser_context=None))


def test_string_result_becomes_extracted_content():
    async def echo(params, ctx):
        return params.text

    result = _act(_controller_with("echo", echo), "echo", {"text": "hi"})
    assert result == ActionResult(extracted_content="hi")


def test_none_result_becomes_empty_action_result():
    async def noop(params, ctx):
        return None

    result = _act(_controller_with("noop", noop), "noop", {"text": "x"})
    assert result == ActionResult()


def test_action_result_passes_through():
    async def finish(params, ctx):
        return ActionResult(is_done=True, success=True, extracted_content=params.text)

    result = _act(_controller_with("finish", finish), "finish", {"text": "ok"})
    assert result.is_done and result.success and result.extracted_content == "ok"


def test_other_result_types_are_rejected():
    async def bad(params, ctx):
        return 42

    with pytest.raises(ValueError):
        _act(_controller_with("bad", bad), "bad", {"text": "x"})


def test_handler_exception_becomes_error_result():
    async def boom(params, ctx):
        raise RuntimeError("element detached")

    result = _act(_controller_with("boom", boom), "boom", {"text": "x"})
    assert "element detached" in result.error
    assert result.include_in_memory


def test_unknown_action_raises():
    registry = Registry()
    with pytest.raises(ActionNotFoundError):
        asyncio.run(registry.execute_action("missing", {}))


def test_invalid_params_raise():
    registry = Registry()

    async def echo(params, ctx):
        return params.text

    registry.register("echo", "echo", EchoParams, echo)
    with pytest.raises(ActionValidationError):
        asyncio.run(registry.execute_action("echo", {"wrong": 1}))


def test_secret_placeholders_are_substituted_recursively():
    registry = Registry()
    seen = {}

    async def login(params, ctx):
        seen["params"] = params
        seen["has_sensitive_data"] = ctx.has_sensitive_data

    registry.register("login", "log in", LoginParams, login)
    asyncio.run(
        registry.execute_action(
            "login",
            {
                "username": "<secret>user</secret>",
                "password": "<secret>pw</secret>",
                "extra": {"otp": ["<secret>otp</secret>"]},
            },
            sensitive_data={"user": "alice", "pw": "s3cret"},
        )
    )

    params = seen["params"]
    assert params.username == "alice"
    assert params.password == "s3cret"
    # no value for "otp": the placeholder stays
    assert params.extra == {"otp": ["<secret>otp</secret>"]}
    assert seen["has_sensitive_data"] is True


def test_file_path_must_be_available():
    registry = Registry()

    async def upload(params, ctx):
        return params.file_path

    registry.register("upload", "upload", UploadParams, upload)
    with pytest.raises(ActionExecutionError):
        asyncio.run(registry.execute_action("upload", {"index": 1, "file_path": "/etc/passwd"}))

    result = asyncio.run(
        registry.execute_action("upload", {"index": 1, "file_path": "/tmp/cv.pdf"}, available_file_paths=["/tmp/cv.pdf"])
    )
    assert result == "/tmp/cv.pdf"


def test_excluded_actions_are_not_registered():
    controller = Controller(exclude_actions=["search_google"])
    assert "search_google" not in controller.registry.registry.actions
    assert "click_element" in controller.registry.registry.actions


def test_action_decorator_and_prompt_description():
    controller = Controller()

    @controller.action("Say something", param_model=EchoParams)
    async def say(params, ctx):
        return params.text

    description = controller.registry.get_prompt_description()
    assert "Say something: \n{say: {'text': {'type': 'string'}}}" in description
    assert "click_element" in description


def test_action_model_index_helpers():
    controller = Controller()
    action_model = controller.registry.create_action_model()
    action = action_model(click_element={"index": 4})
    assert action.get_index() == 4
    action.set_index(9)
    assert action.get_index() == 9
    assert action_model(go_to_url={"url": "https://example.com"}).get_index() is None


def test_done_action():
    controller = Controller()
    result = _act(controller, "done", {"text": "3 flights found", "success": True})
    assert result.is_done and result.success
    assert result.extracted_content == "3 flights found"


def test_structured_done_action():
    class Flights(BaseModel):
        cheapest: int

    controller = Controller(output_model=Flights)
    result = _act(controller, "done", {"success": True, "data": {"cheapest": 120}})
    assert result.is_done
    assert result.extracted_content == '{"cheapest": 120}'


if __name__ == "__main__":
    test_string_result_becomes_extracted_content()
    test_none_result_becomes_empty_action_result()
    test_action_result_passes_through()
    test_other_result_types_are_rejected()
    test_handler_exception_becomes_error_result()
    test_unknown_action_raises()
    test_invalid_params_raise()
    test_secret_placeholders_are_substituted_recursively()
    test_file_path_must_be_available()
    test_excluded_actions_are_not_registered()
    test_action_decorator_and_prompt_description()
    test_action_model_index_helpers()
    test_done_action()
    test_structured_done_action()
    print("Registry tests passed.")
