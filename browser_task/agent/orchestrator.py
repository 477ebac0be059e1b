from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Sequence

from browser_task.agent.actuator import Actuator
from browser_task.agent.events import NextStep, StartResult, StepExecution, TaskEvent, TaskEventListener, TaskEventType
from browser_task.agent.settings import TaskSettings
from browser_task.agent.state_manager import StateManager, task_log
from browser_task.agent.views import (
    ExtractionResult,
    ExtractionSchema,
    Step,
    StepStatus,
    StepTool,
    Task,
    TaskError,
    TaskResult,
    TaskStatus,
    is_empty_payload,
)
from browser_task.browser.provider import SessionOptions
from browser_task.exceptions import AlreadyRunningError, ExecutionFailure, InvalidRequestError
from browser_task.utils import redact_sensitive_data

logger = logging.getLogger(__name__)


class TaskOrchestrator:
    """
    Owns the step loop and the lifecycle of the one remote session a task uses.

    The session is created once per `start`, destroyed at most once, and never
    leaked: every path out of the loop, including errors and cancellation, goes
    through `close`. A preserved session is the exception, it is left open until
    a caller closes it explicitly.
    """

    def __init__(self, settings: TaskSettings):
        self.settings = settings
        self.provider = settings.provider
        self.planner = settings.planner
        self.actuator = Actuator(settings.controller, settings.provider)
        self.state_manager = StateManager(lock_timeout_seconds=settings.lock_timeout_seconds)
        self._listeners: list[TaskEventListener] = list(settings.listeners)
        self._manual_steps: set[str] = set()
        self._task: Optional[Task] = None
        self._loop_task: Optional[asyncio.Task[TaskResult]] = None

    @property
    def task(self) -> Optional[Task]:
        return self._task

    @property
    def session_id(self) -> Optional[str]:
        return self.state_manager.state.session_id

    @property
    def loop_task(self) -> Optional[asyncio.Task[TaskResult]]:
        return self._loop_task

    async def is_running(self) -> bool:
        """True from `start` until the background loop, final extraction included, has finished."""
        if self._loop_task is not None and not self._loop_task.done():
            return True
        return await self.state_manager.get_status() == TaskStatus.RUNNING

    def subscribe(self, listener: TaskEventListener) -> None:
        self._listeners.append(listener)

    def _emit(self, event_type: TaskEventType, **kwargs: Any) -> None:
        state = self.state_manager.state
        event = TaskEvent(
            type=event_type,
            task_id=state.task_id,
            session_id=kwargs.pop('session_id', state.session_id),
            **kwargs,
        )
        for listener in self._listeners:
            listener(event)

    def _log(self, level: int, message: str, **kwargs: Any) -> None:
        state = self.state_manager.state
        task_log(level, state.task_id, state.n_steps, message, **kwargs)

    # Public API -------------------------------------------------------------

    async def run(self, task: Task) -> TaskResult:
        await self.start(task)
        return await self.result()

    async def start(self, task: Task) -> StartResult:
        """Creates the session and runs the first step.

        Returns once that step has settled; the rest of the loop continues in the
        background and `result()` awaits it.
        """
        await self.state_manager.begin_run(task)
        self._task = task
        self._loop_task = None
        self._log(logging.INFO, f"🚀 Starting task: \"{task.display_goal[:70]}\"")

        try:
            if self.settings.on_run_start:
                await self.settings.on_run_start(self)
            await self._open_session(task)
            first, stop = await self._iterate(task)
        except (Exception, asyncio.CancelledError) as e:
            await self._abort(e)
            raise

        state = self.state_manager.state
        self._loop_task = asyncio.create_task(self._run_remaining(task, stop))
        return StartResult(
            session_id=state.last_session.session_id,
            live_view_url=state.last_session.live_view_url,
            first_step=first.step.for_display(task.variables) if first else None,
            first_step_outcome=first.outcome if first else None,
            done=stop,
        )

    async def result(self) -> TaskResult:
        if self._loop_task is None:
            raise InvalidRequestError("No task has been started on this orchestrator.")
        return await self._loop_task

    async def advance(self, session_id: str, goal: str, prior_steps: Sequence[Step]) -> NextStep:
        """Asks the planner for one more action. Nothing is executed."""
        planned = await self.planner.next_action(goal, list(prior_steps), self._page_state(session_id, prior_steps))
        if planned.done:
            return NextStep(step=None, done=True, reasoning=planned.reasoning)
        step = planned.step
        if step.extraction_schema is None and planned.extraction_schema is not None:
            step = step.model_copy(update={'extraction_schema': planned.extraction_schema})
        return NextStep(step=step, done=False, reasoning=planned.reasoning)

    def _page_state(self, session_id: str, prior_steps: Sequence[Step]) -> dict[str, Any]:
        page_state: dict[str, Any] = {'session_id': session_id, 'steps_taken': len(prior_steps)}
        last_url = next(
            (s.instruction for s in reversed(prior_steps) if s.tool == StepTool.GOTO and s.status == StepStatus.COMPLETED),
            None,
        )
        if last_url:
            page_state['last_navigated_url'] = last_url
        return page_state

    async def execute_step(self, session_id: str, step: Step) -> StepExecution:
        """Applies one step to the session. Task-level completion state is left untouched.

        Raises `AlreadyRunningError` while the step loop owns the session or another
        step is still running on it.
        """
        if await self.is_running():
            raise AlreadyRunningError(f"Session {session_id} is busy: its task is still running steps.")
        if session_id in self._manual_steps:
            raise AlreadyRunningError(f"A step is already running on session {session_id}.")

        task = self._task
        variables = task.variables if task else {}
        schema = task.extraction_schema if task else None
        running = step.running(step.step_number or 1)
        self._manual_steps.add(session_id)
        try:
            self._emit(TaskEventType.STEP_STARTED, session_id=session_id, step=running.for_display(variables))
            execution = await self._execute(session_id, running, task, schema)
            self._emit(TaskEventType.STEP_FINISHED, session_id=session_id, step=execution.step.for_display(variables))
        finally:
            self._manual_steps.discard(session_id)
        return execution

    async def preserve(self) -> None:
        await self.state_manager.preserve()

    async def cancel(self) -> None:
        """Stops the loop at the next step boundary. A running step is never interrupted."""
        await self.state_manager.request_cancel()

    async def close(self, session_id: Optional[str] = None, *, explicit: bool = False) -> bool:
        """Destroys the live session. Returns False when there was nothing to close.

        Idempotent. Session identity is cleared even if the remote destroy fails.
        """
        target = await self.state_manager.begin_close(session_id, explicit)
        if target is None:
            return False
        try:
            await self.provider.destroy_session(target)
        finally:
            await self.state_manager.finish_close()
            self._emit(TaskEventType.SESSION_CLOSED, session_id=target)
            self._log(logging.INFO, f"Session {target} closed.")
        return True

    # Step loop --------------------------------------------------------------

    async def _open_session(self, task: Task) -> None:
        try:
            handle = await self.provider.create_session(
                SessionOptions(timezone=task.timezone, context_id=task.context_id))
        except (Exception, asyncio.CancelledError):
            await self.state_manager.session_creation_failed()
            raise
        await self.state_manager.session_created(handle)
        self._emit(
            TaskEventType.SESSION_CREATED,
            session_id=handle.session_id,
            live_view_url=handle.live_view_url,
            context_id=handle.context_id,
        )
        if self.settings.preserve_session:
            await self.state_manager.preserve()

    async def _run_remaining(self, task: Task, stop: bool) -> TaskResult:
        try:
            while not stop:
                _, stop = await self._iterate(task)
            await self._finalize(task)
        except (Exception, asyncio.CancelledError) as e:
            await self._abort(e)
            raise
        return await self._finish()

    async def _iterate(self, task: Task) -> tuple[Optional[StepExecution], bool]:
        """One loop iteration. Returns the executed step, if any, and whether the loop should stop."""
        state = self.state_manager.state
        if await self.state_manager.is_cancel_requested():
            self._log(logging.INFO, "Cancellation requested; stopping before the next step.")
            await self.state_manager.set_status(TaskStatus.CANCELLED)
            return None, True
        if state.session_id is None:
            self._log(logging.INFO, "Session was closed by the caller; stopping.")
            await self.state_manager.set_status(TaskStatus.CANCELLED)
            return None, True

        if self.settings.on_step_start:
            await self.settings.on_step_start(self)

        next_step = await self.advance(state.session_id, task.goal, state.history)
        if next_step.done:
            self._log(logging.INFO, f"Planner signalled completion: {redact_sensitive_data(next_step.reasoning, task.variables)[:200]}")
            await self.state_manager.mark_completed()
            return None, True

        running = next_step.step.running(state.n_steps + 1)
        await self.state_manager.begin_step(running)
        self._emit(TaskEventType.STEP_STARTED, step=running.for_display(task.variables))

        execution = await self._execute(state.session_id, running, task, task.extraction_schema)
        await self.state_manager.finish_step(execution.step)
        self._emit(TaskEventType.STEP_FINISHED, step=execution.step.for_display(task.variables))

        if execution.step.status == StepStatus.FAILED:
            failure = ExecutionFailure(execution.step.error.message, step_number=running.step_number)
            self._log(logging.WARNING, f"Step {running.step_number} ({running.tool.value}) failed: {failure.message}")
            await self.state_manager.record_failure(failure)
            return execution, True

        if execution.extraction is not None and await self.state_manager.record_extraction(execution.extraction):
            self._emit(TaskEventType.EXTRACTION_CAPTURED, extraction=execution.extraction)
            await self.state_manager.mark_completed()
            return execution, True

        if self.settings.on_step_end:
            await self.settings.on_step_end(self)

        if state.n_steps >= task.max_steps:
            self._log(logging.INFO, f"Step budget of {task.max_steps} exhausted.")
            await self.state_manager.set_status(TaskStatus.MAX_STEPS_REACHED)
            return execution, True
        return execution, False

    async def _execute(
        self,
        session_id: str,
        step: Step,
        task: Optional[Task],
        task_schema: Optional[ExtractionSchema],
    ) -> StepExecution:
        variables = task.variables if task else None
        outcome = await self.actuator.execute(session_id, step, variables, extraction_schema=task_schema)
        if not outcome.ok:
            return StepExecution(step=step.failed(outcome.error or f"{step.tool.value} failed."), outcome=outcome)

        extraction = None
        if step.tool == StepTool.EXTRACT:
            extraction = self._accept_extraction(
                outcome.extraction, step.extraction_schema or task_schema, step.step_number, source='step')
        return StepExecution(step=step.completed(), outcome=outcome, extraction=extraction)

    def _accept_extraction(
        self,
        data: Any,
        schema: Optional[ExtractionSchema],
        step_number: Optional[int],
        source: str,
    ) -> Optional[ExtractionResult]:
        if is_empty_payload(data):
            self._log(logging.DEBUG, "Extraction returned no data.")
            return None
        if schema is not None:
            try:
                data = schema.validate_payload(data)
            except ValueError as e:
                self._log(logging.WARNING, f"Discarding extracted data that does not match the schema: {e}")
                return None
        return ExtractionResult(data=data, source=source, step_number=step_number)

    async def _finalize(self, task: Task) -> None:
        state = self.state_manager.state
        status = await self.state_manager.get_status()
        if (
            self.settings.final_extraction
            and state.extraction is None
            and state.n_steps > 0
            and state.session_id is not None
            and status != TaskStatus.CANCELLED
        ):
            await self._final_extraction(task)
        await self._close_quietly()

    async def _final_extraction(self, task: Task) -> None:
        """Best effort: failures are logged and never change the task outcome."""
        session_id = self.state_manager.state.session_id
        schema = task.extraction_schema or ExtractionSchema.text()
        try:
            result = await self.settings.controller.act(
                tool=StepTool.EXTRACT,
                instruction=task.display_goal,
                session_id=session_id,
                provider=self.provider,
                extraction_schema=schema,
            )
            if not result.success:
                self._log(logging.WARNING, f"Final extraction failed: {redact_sensitive_data(result.error, task.variables)}")
                return
            extraction = self._accept_extraction(result.data, schema, None, source='final')
            if extraction is not None and await self.state_manager.record_extraction(extraction):
                self._emit(TaskEventType.EXTRACTION_CAPTURED, extraction=extraction)
        except Exception as e:
            self._log(logging.WARNING, f"Final extraction failed: {TaskError.format_error(e)}")

    async def _close_quietly(self) -> None:
        try:
            await self.close()
        except Exception as e:
            self._log(logging.ERROR, f"Failed to release session during cleanup: {TaskError.format_error(e)}")

    async def _abort(self, error: BaseException) -> None:
        """Records an unrecoverable error and releases the session before it propagates."""
        if isinstance(error, asyncio.CancelledError):
            message = "Task was cancelled."
            await self.state_manager.set_status(TaskStatus.CANCELLED, force=True)
        else:
            message = TaskError.format_error(error)
            self._log(logging.ERROR, f"Task aborted: {message}", exc_info=error)
            await self.state_manager.record_error(message)
        await self.state_manager.fail_running_step(message)
        await self.state_manager.session_creation_failed()
        # aborted runs release preserved sessions too
        target = self.state_manager.state.session_id
        if target is not None:
            try:
                await self.close(target, explicit=True)
            except Exception as e:
                self._log(logging.ERROR, f"Failed to release session during cleanup: {TaskError.format_error(e)}")
        await self._finish()

    async def _finish(self) -> TaskResult:
        task = self._task
        result = self.state_manager.build_result(task.variables if task else None)
        self._emit(TaskEventType.TASK_FINISHED, status=result.status, error=result.error, extraction=result.extraction)
        log_level = logging.ERROR if result.status == TaskStatus.FAILED else logging.INFO
        self._log(log_level, f"🏁 Task finished. Status: {result.status.value}. Steps: {result.attempts}. "
                             f"Data captured: {result.extraction is not None}.")
        if self.settings.on_run_end:
            await self.settings.on_run_end(result)
        return result
