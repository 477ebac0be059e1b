from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from pydantic import BaseModel, ValidationError

from browser_task.agent.views import ActionResult, ExtractionSchema, StepTool
from browser_task.browser.provider import BrowserAction
from browser_task.controller.views import (
    ActAction,
    ExtractAction,
    GoToUrlAction,
    NoParamsAction,
    ObserveAction,
    WaitAction,
)
from browser_task.exceptions import ProviderActionError, SessionUnavailableError
from browser_task.observability import observe_debug
from browser_task.utils import time_execution_async

if TYPE_CHECKING:
    from browser_task.browser.provider import SessionProvider

logger = logging.getLogger(__name__)

ParamBuilder = Callable[[str, Optional[ExtractionSchema]], dict[str, Any]]
Handler = Callable[[BaseModel, str, 'SessionProvider'], Awaitable[ActionResult]]


@dataclass
class RegisteredAction:
    tool: StepTool
    description: str
    param_model: type[BaseModel]
    build_params: ParamBuilder
    function: Handler


class Registry:
    """Maps each step tool to the primitive that executes it."""

    def __init__(self, exclude_tools: Optional[list[StepTool]] = None):
        self.exclude_tools = set(exclude_tools or [])
        self.actions: dict[StepTool, RegisteredAction] = {}

    def action(self, tool: StepTool, description: str, param_model: type[BaseModel], build_params: ParamBuilder):
        def decorator(func: Handler) -> Handler:
            if tool not in self.exclude_tools:
                self.actions[tool] = RegisteredAction(tool, description, param_model, build_params, func)
            return func
        return decorator

    def get_prompt_description(self) -> str:
        return '\n'.join(f'- {tool.value}: {action.description}' for tool, action in self.actions.items())


class Controller:
    """
    Executes primitive browser actions against a remote session.

    Each step tool is registered with a param model that validates the resolved
    instruction before anything is sent to the provider. `act` never raises for
    action-level failures: they come back as `ActionResult(success=False)`.
    Transport failures (`SessionUnavailableError`) propagate.
    """

    registry: Registry

    def __init__(self, exclude_tools: Optional[list[StepTool]] = None):
        self.registry = Registry(exclude_tools)
        self._register_default_actions()

    def _register_default_actions(self) -> None:
        @self.registry.action(
            StepTool.GOTO,
            'Navigate the current tab to a URL. Instruction: the absolute URL.',
            GoToUrlAction,
            lambda instruction, schema: {'url': instruction},
        )
        async def goto(params: GoToUrlAction, session_id: str, provider: SessionProvider) -> ActionResult:
            await provider.dispatch(session_id, BrowserAction(tool=StepTool.GOTO, instruction=params.url))
            return ActionResult(tool=StepTool.GOTO)

        @self.registry.action(
            StepTool.ACT,
            'Perform one interaction on the page (click, type, select, scroll). Instruction: what to do, in plain words.',
            ActAction,
            lambda instruction, schema: {'action': instruction},
        )
        async def act(params: ActAction, session_id: str, provider: SessionProvider) -> ActionResult:
            await provider.dispatch(session_id, BrowserAction(tool=StepTool.ACT, instruction=params.action))
            return ActionResult(tool=StepTool.ACT)

        @self.registry.action(
            StepTool.EXTRACT,
            'Extract structured data from the current page. Instruction: what data to extract.',
            ExtractAction,
            lambda instruction, schema: {'instruction': instruction, 'extraction_schema': schema},
        )
        async def extract(params: ExtractAction, session_id: str, provider: SessionProvider) -> ActionResult:
            outcome = await provider.dispatch(session_id, BrowserAction(
                tool=StepTool.EXTRACT, instruction=params.instruction, extraction_schema=params.extraction_schema))
            return ActionResult(tool=StepTool.EXTRACT, data=outcome.data)

        @self.registry.action(
            StepTool.OBSERVE,
            'List the elements on the page that match a description. Instruction: what to look for.',
            ObserveAction,
            lambda instruction, schema: {'instruction': instruction},
        )
        async def observe(params: ObserveAction, session_id: str, provider: SessionProvider) -> ActionResult:
            outcome = await provider.dispatch(session_id, BrowserAction(tool=StepTool.OBSERVE, instruction=params.instruction))
            return ActionResult(tool=StepTool.OBSERVE, data=outcome.data)

        @self.registry.action(
            StepTool.WAIT,
            'Wait for the page to settle. Instruction: milliseconds to wait.',
            WaitAction,
            lambda instruction, schema: {'milliseconds': instruction.strip()},
        )
        async def wait(params: WaitAction, session_id: str, provider: SessionProvider) -> ActionResult:
            await provider.dispatch(session_id, BrowserAction(tool=StepTool.WAIT, instruction=str(params.milliseconds)))
            return ActionResult(tool=StepTool.WAIT)

        @self.registry.action(
            StepTool.NAVBACK,
            'Go back to the previous page. Instruction: empty.',
            NoParamsAction,
            lambda instruction, schema: {},
        )
        async def go_back(_: NoParamsAction, session_id: str, provider: SessionProvider) -> ActionResult:
            await provider.dispatch(session_id, BrowserAction(tool=StepTool.NAVBACK))
            return ActionResult(tool=StepTool.NAVBACK)

        @self.registry.action(
            StepTool.CLOSE,
            'The goal is reached or cannot be reached; stop browsing. Instruction: a short summary.',
            NoParamsAction,
            lambda instruction, schema: {},
        )
        async def close(_: NoParamsAction, session_id: str, provider: SessionProvider) -> ActionResult:
            await provider.dispatch(session_id, BrowserAction(tool=StepTool.CLOSE))
            return ActionResult(tool=StepTool.CLOSE)

    # the instruction may hold resolved secrets, so spans only see the tool and session
    @observe_debug(
        name='act',
        span_type='TOOL',
        input_args=('tool', 'session_id'),
        output=lambda result: {'success': result.success, 'error': result.error},
    )
    @time_execution_async('--act')
    async def act(
        self,
        tool: StepTool,
        instruction: str,
        session_id: str,
        provider: SessionProvider,
        extraction_schema: Optional[ExtractionSchema] = None,
    ) -> ActionResult:
        """Executes a single primitive. `instruction` must already be resolved."""
        registered = self.registry.actions.get(tool)
        if registered is None:
            return ActionResult(tool=tool, success=False, error=f"Unsupported step type: {tool.value}")

        try:
            params = registered.param_model.model_validate(registered.build_params(instruction, extraction_schema))
            return await registered.function(params, session_id, provider)
        except SessionUnavailableError:
            raise
        except ValidationError as e:
            logger.warning(f"Rejected {tool.value} step: invalid instruction ({e.error_count()} error(s)).")
            return ActionResult(tool=tool, success=False, error=f"Invalid instruction for {tool.value}: {e.errors()[0]['msg']}")
        except ProviderActionError as e:
            logger.info(f"{tool.value} failed on session {session_id}: {e.message}")
            return ActionResult(tool=tool, success=False, error=e.message)
        except Exception as e:
            logger.error(f"Error executing '{tool.value}' on session {session_id}: {e}", exc_info=True)
            return ActionResult(tool=tool, success=False, error=str(e) or type(e).__name__)
