import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Type

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.prompts import PromptTemplate
from pydantic import BaseModel, create_model

from ..agent.views import ActionResult
from ..browser.context import BrowserContext
from ..core.errors import ActionExecutionError
from .registry.service import Registry
from .registry.views import ActionContext, ActionModel
from .views import (
    ClickElementAction,
    DoneAction,
    ExtractPageContentAction,
    GetDropdownOptionsAction,
    GoToUrlAction,
    InputTextAction,
    NoParamsAction,
    OpenTabAction,
    ScrollAction,
    ScrollToTextAction,
    SearchGoogleAction,
    SelectDropdownOptionAction,
    SendKeysAction,
    SwitchTabAction,
    WaitAction,
)

logger = logging.getLogger(__name__)

EXTRACTION_PROMPT = (
    "Your task is to extract the content of the page. You will be given a page and a goal "
    "and you should extract all relevant information around this goal from the page. "
    "If the goal is vague, summarize the page. Respond in json format. "
    "Extraction goal: {goal}, Page: {page}"
)

DROPDOWN_OPTIONS_JS = """(xpath) => {
    const select = document.evaluate(xpath, document, null,
        XPathResult.FIRST_ORDERED_NODE_TYPE, null).singleNodeValue;
    if (!select) return null;
    return {
        options: Array.from(select.options).map(opt => ({
            text: opt.text,
            value: opt.value,
            index: opt.index
        })),
        id: select.id,
        name: select.name
    };
}"""


class Controller:
    """The built-in browser actions, plus act() to run one ActionModel."""

    def __init__(
        self,
        exclude_actions: Optional[List[str]] = None,
        output_model: Optional[Type[BaseModel]] = None,
    ):
        self.registry = Registry(exclude_actions)
        self._register_done(output_model)
        self._register_navigation()
        self._register_element_actions()
        self._register_tab_actions()
        self._register_content_actions()
        self._register_dropdown_actions()

    def _register_done(self, output_model: Optional[Type[BaseModel]]) -> None:
        if output_model is not None:
            structured_done = create_model(
                "StructuredDoneAction",
                success=(bool, True),
                data=(output_model, ...),
            )

            @self.registry.action(
                "Complete task - with return text and if the task is finished (success=True) "
                "or not yet completely finished (success=False), because last step is reached",
                param_model=structured_done,
                name="done",
            )
            async def structured_done_handler(params, ctx: ActionContext):
                return ActionResult(
                    is_done=True,
                    success=params.success,
                    extracted_content=json.dumps(params.data.model_dump(mode="json")),
                )

            return

        @self.registry.action(
            "Complete task - with return text and if the task is finished (success=True) "
            "or not yet completely finished (success=False), because last step is reached",
            param_model=DoneAction,
        )
        async def done(params: DoneAction, ctx: ActionContext):
            return ActionResult(is_done=True, success=params.success, extracted_content=params.text)

    def _register_navigation(self) -> None:
        @self.registry.action(
            "Search the query in Google in the current tab, the query should be a search query like "
            "humans search in Google, concrete and not vague or super long. More the single most important items.",
            param_model=SearchGoogleAction,
        )
        async def search_google(params: SearchGoogleAction, ctx: ActionContext):
            page = await ctx.browser.get_current_page()
            await page.goto(f"https://www.google.com/search?q={params.query}&udm=14")
            await page.wait_for_load_state()
            msg = f'🔍  Searched for "{params.query}" in Google'
            logger.info(f"[Controller] {msg}")
            return ActionResult(extracted_content=msg, include_in_memory=True)

        @self.registry.action("Navigate to URL in the current tab", param_model=GoToUrlAction)
        async def go_to_url(params: GoToUrlAction, ctx: ActionContext):
            page = await ctx.browser.get_current_page()
            await page.goto(params.url)
            await page.wait_for_load_state()
            msg = f"🔗  Navigated to {params.url}"
            logger.info(f"[Controller] {msg}")
            return ActionResult(extracted_content=msg, include_in_memory=True)

        @self.registry.action("Go back", param_model=NoParamsAction)
        async def go_back(params: NoParamsAction, ctx: ActionContext):
            await ctx.browser.go_back()
            msg = "🔙  Navigated back"
            logger.info(f"[Controller] {msg}")
            return ActionResult(extracted_content=msg, include_in_memory=True)

        @self.registry.action("Wait for x seconds default 3", param_model=WaitAction)
        async def wait(params: WaitAction, ctx: ActionContext):
            msg = f"🕒  Waiting for {params.seconds} seconds"
            logger.info(f"[Controller] {msg}")
            await asyncio.sleep(params.seconds)
            return ActionResult(extracted_content=msg, include_in_memory=True)

    def _register_element_actions(self) -> None:
        @self.registry.action("Click element by index", param_model=ClickElementAction)
        async def click_element(params: ClickElementAction, ctx: ActionContext):
            browser: BrowserContext = ctx.browser
            session = await browser.get_session()

            selector_map = await browser.get_selector_map()
            if str(params.index) not in selector_map:
                raise ActionExecutionError(
                    f"Element with index {params.index} does not exist - retry or use alternative actions")

            element_node = await browser.get_dom_element_by_index(params.index)
            initial_pages = len(session.context.pages)

            # uploads need a dedicated action; clicking would open a native dialog
            if await browser.is_file_uploader(element_node):
                msg = (
                    f"Index {params.index} - has an element which opens file upload dialog. "
                    "To upload files please use a specific function to upload files "
                )
                logger.info(f"[Controller] {msg}")
                return ActionResult(extracted_content=msg, include_in_memory=True)

            download_path = await browser._click_element_node(element_node)
            if download_path:
                msg = f"💾  Downloaded file to {download_path}"
            else:
                msg = (
                    f"🖱️  Clicked button with index {params.index}: "
                    f"{element_node.get_all_text_till_next_clickable_element(max_depth=2)}"
                )
            logger.info(f"[Controller] {msg}")
            logger.debug(f"[Controller] Element xpath: {element_node.xpath}")

            if len(session.context.pages) > initial_pages:
                new_tab_msg = "New tab opened - switching to it"
                msg += f" - {new_tab_msg}"
                logger.info(f"[Controller] {new_tab_msg}")
                await browser.switch_to_tab(-1)
            return ActionResult(extracted_content=msg, include_in_memory=True)

        @self.registry.action("Input text into a input interactive element", param_model=InputTextAction)
        async def input_text(params: InputTextAction, ctx: ActionContext):
            browser: BrowserContext = ctx.browser
            selector_map = await browser.get_selector_map()
            if str(params.index) not in selector_map:
                raise ActionExecutionError(
                    f"Element index {params.index} does not exist - retry or use alternative actions")

            element_node = await browser.get_dom_element_by_index(params.index)
            await browser._input_text_element_node(element_node, params.text)
            if not ctx.has_sensitive_data:
                msg = f"⌨️  Input {params.text} into index {params.index}"
            else:
                msg = f"⌨️  Input sensitive data into index {params.index}"
            logger.info(f"[Controller] {msg}")
            logger.debug(f"[Controller] Element xpath: {element_node.xpath}")
            return ActionResult(extracted_content=msg, include_in_memory=True)

        @self.registry.action(
            "Send strings of special keys like Escape,Backspace, Insert, PageDown, Delete, Enter, "
            "Shortcuts such as `Control+o`, `Control+Shift+T` are supported as well. "
            "This gets used in keyboard.press.",
            param_model=SendKeysAction,
        )
        async def send_keys(params: SendKeysAction, ctx: ActionContext):
            page = await ctx.browser.get_current_page()
            try:
                await page.keyboard.press(params.keys)
            except Exception as e:
                if "Unknown key" not in str(e):
                    raise
                # plain text: press character by character
                for key in params.keys:
                    await page.keyboard.press(key)
            msg = f"⌨️  Sent keys: {params.keys}"
            logger.info(f"[Controller] {msg}")
            return ActionResult(extracted_content=msg, include_in_memory=True)

    def _register_tab_actions(self) -> None:
        @self.registry.action("Switch tab", param_model=SwitchTabAction)
        async def switch_tab(params: SwitchTabAction, ctx: ActionContext):
            await ctx.browser.switch_to_tab(params.page_id)
            page = await ctx.browser.get_current_page()
            await page.wait_for_load_state()
            msg = f"🔄  Switched to tab {params.page_id}"
            logger.info(f"[Controller] {msg}")
            return ActionResult(extracted_content=msg, include_in_memory=True)

        @self.registry.action("Open url in new tab", param_model=OpenTabAction)
        async def open_tab(params: OpenTabAction, ctx: ActionContext):
            await ctx.browser.create_new_tab(params.url)
            msg = f"🔗  Opened new tab with {params.url}"
            logger.info(f"[Controller] {msg}")
            return ActionResult(extracted_content=msg, include_in_memory=True)

    def _register_content_actions(self) -> None:
        @self.registry.action(
            "Extract page content to retrieve specific information from the page, "
            "e.g. all company names, a specific description, all information about, links with companies "
            "in structured format or simply links",
            param_model=ExtractPageContentAction,
        )
        async def extract_content(params: ExtractPageContentAction, ctx: ActionContext):
            page = await ctx.browser.get_current_page()
            content = await page.inner_text("body")

            llm: Optional[BaseChatModel] = ctx.page_extraction_llm
            if llm is None:
                raise ActionExecutionError("extract_content needs a page_extraction_llm")

            template = PromptTemplate(input_variables=["goal", "page"], template=EXTRACTION_PROMPT)
            try:
                output = await llm.ainvoke(template.format(goal=params.goal, page=content))
                msg = f"📄  Extracted from page\n: {output.content}\n"
                logger.info(f"[Controller] {msg}")
                return ActionResult(extracted_content=msg, include_in_memory=True)
            except Exception as e:
                logger.debug(f"[Controller] Error extracting content: {e}")
                msg = f"📄  Extracted from page\n: {content}\n"
                logger.info(f"[Controller] {msg}")
                return ActionResult(extracted_content=msg)

        @self.registry.action(
            "Scroll down the page by pixel amount - if no amount is specified, scroll down one page",
            param_model=ScrollAction,
        )
        async def scroll_down(params: ScrollAction, ctx: ActionContext):
            page = await ctx.browser.get_current_page()
            if params.amount is not None:
                await page.evaluate(f"window.scrollBy(0, {params.amount});")
            else:
                await page.evaluate("window.scrollBy(0, window.innerHeight);")

            amount = f"{params.amount} pixels" if params.amount is not None else "one page"
            msg = f"🔍  Scrolled down the page by {amount}"
            logger.info(f"[Controller] {msg}")
            return ActionResult(extracted_content=msg, include_in_memory=True)

        @self.registry.action(
            "Scroll up the page by pixel amount - if no amount is specified, scroll up one page",
            param_model=ScrollAction,
        )
        async def scroll_up(params: ScrollAction, ctx: ActionContext):
            page = await ctx.browser.get_current_page()
            if params.amount is not None:
                await page.evaluate(f"window.scrollBy(0, -{params.amount});")
            else:
                await page.evaluate("window.scrollBy(0, -window.innerHeight);")

            amount = f"{params.amount} pixels" if params.amount is not None else "one page"
            msg = f"🔍  Scrolled up the page by {amount}"
            logger.info(f"[Controller] {msg}")
            return ActionResult(extracted_content=msg, include_in_memory=True)

        @self.registry.action(
            "If you dont find something which you want to interact with, scroll to it",
            param_model=ScrollToTextAction,
        )
        async def scroll_to_text(params: ScrollToTextAction, ctx: ActionContext):
            page = await ctx.browser.get_current_page()
            locators = [
                page.get_by_text(params.text, exact=False),
                page.locator(f"text={params.text}"),
                page.locator(f"//*[contains(text(), '{params.text}')]"),
            ]

            for locator in locators:
                try:
                    if await locator.count() > 0 and await locator.first.is_visible():
                        await locator.first.scroll_into_view_if_needed()
                        await asyncio.sleep(0.5)  # let the scroll settle
                        msg = f"🔍  Scrolled to text: {params.text}"
                        logger.info(f"[Controller] {msg}")
                        return ActionResult(extracted_content=msg, include_in_memory=True)
                except Exception as e:
                    logger.debug(f"[Controller] Locator attempt failed: {e}")
                    continue

            msg = f"Text '{params.text}' not found or not visible on page"
            logger.info(f"[Controller] {msg}")
            return ActionResult(extracted_content=msg, include_in_memory=True)

    def _register_dropdown_actions(self) -> None:
        @self.registry.action("Get all options from a native dropdown", param_model=GetDropdownOptionsAction)
        async def get_dropdown_options(params: GetDropdownOptionsAction, ctx: ActionContext):
            page = await ctx.browser.get_current_page()
            selector_map = await ctx.browser.get_selector_map()
            dom_element = selector_map[str(params.index)]

            all_options: List[str] = []
            for frame_index, frame in enumerate(page.frames):
                try:
                    options = await frame.evaluate(DROPDOWN_OPTIONS_JS, dom_element.xpath)
                except Exception as frame_e:
                    logger.debug(f"[Controller] Frame {frame_index} evaluation error: {frame_e}")
                    continue
                if options:
                    logger.debug(f"[Controller] Found dropdown in frame {frame_index}: {options['id']}")
                    for opt in options["options"]:
                        # encoded so the model can reuse the exact string
                        all_options.append(f"{opt['index']}: text={json.dumps(opt['text'])}")
                    break

            if all_options:
                msg = "\n".join(all_options)
                msg += "\nUse the exact text string in select_dropdown_option"
            else:
                msg = "No options found in any frame for dropdown"
            logger.info(f"[Controller] {msg}")
            return ActionResult(extracted_content=msg, include_in_memory=True)

        @self.registry.action(
            "Select dropdown option for interactive element index by the text of the option you want to select",
            param_model=SelectDropdownOptionAction,
        )
        async def select_dropdown_option(params: SelectDropdownOptionAction, ctx: ActionContext):
            page = await ctx.browser.get_current_page()
            selector_map = await ctx.browser.get_selector_map()
            dom_element = selector_map[str(params.index)]

            if dom_element.tag_name != "select":
                msg = f"Cannot select option: Element with index {params.index} is a {dom_element.tag_name}, not a select"
                logger.error(f"[Controller] {msg}")
                return ActionResult(extracted_content=msg, include_in_memory=True)

            xpath = "//" + dom_element.xpath
            for frame_index, frame in enumerate(page.frames):
                try:
                    selected = await frame.locator(xpath).nth(0).select_option(label=params.text, timeout=1000)
                except Exception as frame_e:
                    logger.debug(f"[Controller] Frame {frame_index} select failed: {frame_e}")
                    continue
                msg = f"selected option {params.text} with value {selected}"
                logger.info(f"[Controller] {msg} in frame {frame_index}")
                return ActionResult(extracted_content=msg, include_in_memory=True)

            msg = f"Could not select option '{params.text}' in any frame"
            logger.info(f"[Controller] {msg}")
            return ActionResult(extracted_content=msg, include_in_memory=True)

    def action(self, description: str, param_model: Type[BaseModel], **kwargs):
        """Register a custom action on this controller."""
        return self.registry.action(description, param_model=param_model, **kwargs)

    async def act(
        self,
        action: ActionModel,
        browser_context: Any,
        page_extraction_llm: Any = None,
        sensitive_data: Optional[Dict[str, str]] = None,
        available_file_paths: Optional[List[str]] = None,
        context: Any = None,
    ) -> ActionResult:
        """Execute one action and normalise its return value into an ActionResult."""
        for action_name, params in action.model_dump(exclude_unset=True).items():
            if params is None:
                continue
            try:
                result = await self.registry.execute_action(
                    action_name,
                    params,
                    browser=browser_context,
                    page_extraction_llm=page_extraction_llm,
                    sensitive_data=sensitive_data,
                    available_file_paths=available_file_paths,
                    context=context,
                )
            except ActionExecutionError as e:
                logger.error(f"[Controller] {e}")
                return ActionResult(error=str(e), include_in_memory=True)

            if isinstance(result, str):
                return ActionResult(extracted_content=result)
            if isinstance(result, ActionResult):
                return result
            if result is None:
                return ActionResult()
            raise ValueError(f"Invalid action result type: {type(result)} of {result}")
        return ActionResult()
