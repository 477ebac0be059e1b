from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from browser_task.agent.events import TaskEventListener
from browser_task.agent.orchestrator import TaskOrchestrator
from browser_task.agent.planner import ActionPlanner
from browser_task.agent.settings import TaskSettings
from browser_task.agent.views import DEFAULT_MAX_STEPS, Step, StepTool, Task, TaskError, TaskResult
from browser_task.browser.provider import SessionProvider
from browser_task.controller.service import Controller
from browser_task.exceptions import BrowserTaskError, InvalidRequestError
from browser_task.utils import LRUDict

logger = logging.getLogger(__name__)


class ControlAction(str, enum.Enum):
    START = "START"; GET_NEXT_STEP = "GET_NEXT_STEP"; EXECUTE_STEP = "EXECUTE_STEP"
    CLOSE = "CLOSE"; GET_RECORDING = "GET_RECORDING"


class TaskControlRequest(BaseModel):
    """A tool-layer request. Accepts both snake_case and camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    action: ControlAction
    session_id: Optional[str] = None
    goal: Optional[str] = None
    start_url: Optional[str] = None
    step: Optional[Step] = None
    previous_steps: list[Step] = Field(default_factory=list)
    variables: dict[str, str] = Field(default_factory=dict, repr=False)
    extraction_schema: Optional[dict[str, Any]] = None
    max_steps: int = DEFAULT_MAX_STEPS
    timezone: Optional[str] = None
    context_id: Optional[str] = None
    preserve: bool = False


class ControlResponse(BaseModel):
    success: bool
    result: Any = None
    error: Optional[str] = None
    done: Optional[bool] = None
    status_code: int = 200


class BrowserTaskService:
    """
    Routes control requests to task orchestrators and maps failures to status codes.

    Each started task gets its own `TaskOrchestrator`, registered under its session id
    until its loop has ended and the session is released. Released sessions are then
    remembered, up to `max_finished`, so their results stay readable and a repeated
    CLOSE is a no-op. Requests for sessions this service did not start are served
    statelessly against the provider.
    """

    def __init__(
        self,
        planner: ActionPlanner,
        provider: SessionProvider,
        controller: Optional[Controller] = None,
        listener_factory: Optional[Callable[[str], TaskEventListener]] = None,
        lock_timeout_seconds: float = 5.0,
        max_finished: int = 256,
    ):
        self.planner = planner
        self.provider = provider
        self.controller = controller or Controller()
        self.listener_factory = listener_factory
        self.lock_timeout_seconds = lock_timeout_seconds
        self._orchestrators: dict[str, TaskOrchestrator] = {}
        self._finished: LRUDict = LRUDict(max_size=max_finished)
        self._stateless = TaskOrchestrator(self._settings())

    def _settings(self, preserve_session: bool = False) -> TaskSettings:
        return TaskSettings(
            planner=self.planner,
            provider=self.provider,
            controller=self.controller,
            lock_timeout_seconds=self.lock_timeout_seconds,
            preserve_session=preserve_session,
        )

    def orchestrator_for(self, session_id: str) -> Optional[TaskOrchestrator]:
        return self._orchestrators.get(session_id)

    async def result(self, session_id: str) -> TaskResult:
        orchestrator = self._orchestrators.get(session_id)
        if orchestrator is not None:
            return await orchestrator.result()
        loop_task = self._finished.get(session_id)
        if loop_task is None:
            raise InvalidRequestError(f"No task is known for session {session_id}.")
        return await loop_task

    def _on_loop_done(self, session_id: str, loop_task: asyncio.Task[TaskResult]) -> None:
        if loop_task.cancelled():
            logger.info(f"Task on session {session_id} was cancelled.")
        elif loop_task.exception() is not None:
            logger.error(f"Task on session {session_id} ended with an error: "
                         f"{TaskError.format_error(loop_task.exception())}")
        orchestrator = self._orchestrators.get(session_id)
        # preserved sessions stay registered until an explicit CLOSE
        if orchestrator is not None and orchestrator.session_id is None:
            self._retire(session_id, orchestrator)

    def _retire(self, session_id: str, orchestrator: TaskOrchestrator) -> None:
        self._orchestrators.pop(session_id, None)
        self._finished[session_id] = orchestrator.loop_task
        logger.debug(f"Released orchestrator for session {session_id}.")

    async def handle_payload(self, payload: dict[str, Any]) -> ControlResponse:
        try:
            request = TaskControlRequest.model_validate(payload)
        except ValidationError as e:
            return ControlResponse(success=False, error=f"Invalid request: {e.errors()[0]['msg']}", status_code=400)
        return await self.handle(request)

    async def handle(self, request: TaskControlRequest) -> ControlResponse:
        try:
            if request.action == ControlAction.START:
                return await self._start(request)
            if not request.session_id:
                raise InvalidRequestError("Session ID is required")
            if request.action == ControlAction.GET_NEXT_STEP:
                return await self._get_next_step(request)
            if request.action == ControlAction.EXECUTE_STEP:
                return await self._execute_step(request)
            if request.action == ControlAction.CLOSE:
                return await self._close(request)
            return await self._get_recording(request)
        except BrowserTaskError as e:
            logger.warning(f"{request.action.value} failed ({e.status_code}): {e.message}")
            return ControlResponse(success=False, error=e.message, status_code=e.status_code)
        except ValidationError as e:
            return ControlResponse(success=False, error=TaskError.format_error(e), status_code=400)
        except Exception as e:
            logger.error(f"Error handling {request.action.value}: {e}", exc_info=True)
            return ControlResponse(success=False, error='Failed to process request', status_code=500)

    async def _start(self, request: TaskControlRequest) -> ControlResponse:
        if not request.goal or not request.goal.strip():
            raise InvalidRequestError("Goal is required for START")
        task = Task(
            goal=request.goal,
            start_url=request.start_url,
            variables=request.variables,
            extraction_schema=request.extraction_schema,
            max_steps=request.max_steps,
            timezone=request.timezone,
            context_id=request.context_id,
        )
        orchestrator = TaskOrchestrator(self._settings(preserve_session=request.preserve))
        if self.listener_factory:
            orchestrator.subscribe(self.listener_factory(task.task_id))
        started = await orchestrator.start(task)
        self._orchestrators[started.session_id] = orchestrator
        orchestrator.loop_task.add_done_callback(lambda t: self._on_loop_done(started.session_id, t))
        return ControlResponse(
            success=True,
            result={
                'task_id': task.task_id,
                'session_id': started.session_id,
                'live_view_url': started.live_view_url,
                'context_id': orchestrator.state_manager.state.context_id,
                'first_step': started.first_step.to_wire() if started.first_step else None,
            },
            done=started.done,
        )

    async def _get_next_step(self, request: TaskControlRequest) -> ControlResponse:
        if not request.goal:
            raise InvalidRequestError("Goal is required for GET_NEXT_STEP")
        orchestrator = self._orchestrators.get(request.session_id, self._stateless)
        next_step = await orchestrator.advance(request.session_id, request.goal, request.previous_steps)
        return ControlResponse(
            success=True,
            result=next_step.step.to_wire() if next_step.step else {'reasoning': next_step.reasoning},
            done=next_step.done,
        )

    async def _execute_step(self, request: TaskControlRequest) -> ControlResponse:
        if request.step is None:
            raise InvalidRequestError("Step is required for EXECUTE_STEP")
        orchestrator = self._orchestrators.get(request.session_id, self._stateless)
        execution = await orchestrator.execute_step(request.session_id, request.step)
        task = orchestrator.task
        return ControlResponse(
            success=execution.outcome.ok,
            result={
                'step': execution.step.for_display(task.variables if task else None).to_wire(),
                'extraction': execution.extraction.data if execution.extraction else None,
            },
            error=execution.outcome.error,
            done=request.step.tool == StepTool.CLOSE,
        )

    async def _close(self, request: TaskControlRequest) -> ControlResponse:
        orchestrator = self._orchestrators.get(request.session_id)
        if orchestrator is not None:
            await orchestrator.cancel()
            try:
                await orchestrator.close(request.session_id, explicit=True)
            finally:
                # a still-running loop stops at its next step boundary and retires itself
                if orchestrator.loop_task.done():
                    self._retire(request.session_id, orchestrator)
        elif request.session_id in self._finished:
            logger.debug(f"Session {request.session_id} was already released.")
        else:
            await self.provider.destroy_session(request.session_id)
        return ControlResponse(success=True, done=True)

    async def _get_recording(self, request: TaskControlRequest) -> ControlResponse:
        events = await self.provider.recording_events(request.session_id)
        return ControlResponse(success=True, result=events)
