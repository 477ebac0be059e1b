from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from browser_task.agent.views import (
    ExtractionResult,
    Step,
    StepStatus,
    Task,
    TaskResult,
    TaskStatus,
    TERMINAL_STATES,
)
from browser_task.browser.provider import SessionHandle
from browser_task.exceptions import AlreadyRunningError, ExecutionFailure, InvalidRequestError, LockTimeoutError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _bulletproof_lock(lock: asyncio.Lock, timeout: float):
    """Acquires a lock with a timeout, raising a custom error on failure."""
    try:
        await asyncio.wait_for(lock.acquire(), timeout=timeout)
    except asyncio.TimeoutError:
        raise LockTimeoutError(f"Lock acquisition failed after {timeout}s: potential deadlock detected")
    try:
        yield
    finally:
        lock.release()


class SessionStatus(Enum):
    NONE = "NONE"; CREATING = "CREATING"; ACTIVE = "ACTIVE"; CLOSING = "CLOSING"


STATE_PRIORITY = {
    TaskStatus.CANCELLED: 5, TaskStatus.FAILED: 4, TaskStatus.COMPLETED: 1,
    TaskStatus.MAX_STEPS_REACHED: 1, TaskStatus.RUNNING: 0, TaskStatus.PENDING: -1,
}


def task_log(level: int, task_id: str, step: int, message: str, **kwargs):
    log_extras = {'task_id': task_id, 'step': step}
    logger.log(level, message, extra=log_extras, **kwargs)


class TaskState(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    task_id: str = ''
    status: TaskStatus = TaskStatus.PENDING
    session_status: SessionStatus = SessionStatus.NONE
    session_id: Optional[str] = None
    live_view_url: Optional[str] = None
    context_id: Optional[str] = None
    last_session: Optional[SessionHandle] = None
    preserved: bool = False
    cancel_requested: bool = False
    n_steps: int = 0
    history: list[Step] = Field(default_factory=list)
    extraction: Optional[ExtractionResult] = None
    task_completed: bool = False
    last_error: Optional[str] = None


class StateManager:
    """Owns the per-instance task and session state behind a single lock.

    The lock is only ever held for bookkeeping, never across a provider or planner
    call, so two concurrent callers observe each other's transitions immediately.
    """

    def __init__(self, lock_timeout_seconds: float):
        self._state = TaskState()
        self._lock = asyncio.Lock()
        self.lock_timeout_seconds = lock_timeout_seconds

    @property
    def state(self) -> TaskState:
        return self._state

    def _log(self, level: int, message: str, **kwargs):
        task_log(level, self._state.task_id, self._state.n_steps, message, **kwargs)

    async def get_status(self) -> TaskStatus:
        async with _bulletproof_lock(self._lock, self.lock_timeout_seconds):
            return self._state.status

    def _set_status_internal(self, new_status: TaskStatus, force: bool = False):
        """Internal, non-locking version of set_status. Must be called from within a held lock."""
        current_priority = STATE_PRIORITY.get(self._state.status, -1)
        new_priority = STATE_PRIORITY.get(new_status, -1)
        if force or (new_priority >= current_priority and self._state.status != new_status):
            self._log(logging.DEBUG, f"State transition: {self._state.status.value} -> {new_status.value}")
            self._state.status = new_status

    async def set_status(self, new_status: TaskStatus, force: bool = False):
        async with _bulletproof_lock(self._lock, self.lock_timeout_seconds):
            self._set_status_internal(new_status, force=force)

    # Session lifecycle -------------------------------------------------------

    async def begin_run(self, task: Task):
        """The single-flight guard for `start`: claims the instance for `task` or raises."""
        async with _bulletproof_lock(self._lock, self.lock_timeout_seconds):
            if self._state.session_status != SessionStatus.NONE or self._state.session_id is not None:
                raise AlreadyRunningError(
                    f"A session is already {self._state.session_status.value.lower()} for task {self._state.task_id}.")
            if self._state.status == TaskStatus.RUNNING:
                raise AlreadyRunningError(f"Task {self._state.task_id} is still running.")
            self._state = TaskState(
                task_id=task.task_id,
                status=TaskStatus.RUNNING,
                session_status=SessionStatus.CREATING,
                context_id=task.context_id,
            )

    async def session_created(self, handle: SessionHandle):
        async with _bulletproof_lock(self._lock, self.lock_timeout_seconds):
            self._state.session_id = handle.session_id
            self._state.live_view_url = handle.live_view_url
            self._state.context_id = handle.context_id
            self._state.last_session = handle
            self._state.session_status = SessionStatus.ACTIVE
            self._log(logging.INFO, f"Session {handle.session_id} is active.")

    async def session_creation_failed(self):
        async with _bulletproof_lock(self._lock, self.lock_timeout_seconds):
            if self._state.session_status == SessionStatus.CREATING:
                self._state.session_status = SessionStatus.NONE

    async def preserve(self):
        async with _bulletproof_lock(self._lock, self.lock_timeout_seconds):
            if self._state.session_id is None:
                raise InvalidRequestError("Cannot preserve a session before it has been created.")
            self._state.preserved = True
            self._log(logging.INFO, f"Session {self._state.session_id} preserved; only an explicit close will end it.")

    async def begin_close(self, session_id: Optional[str], explicit: bool) -> Optional[str]:
        """Claims the live session for destruction. Returns None when there is nothing to do."""
        async with _bulletproof_lock(self._lock, self.lock_timeout_seconds):
            state = self._state
            if state.session_id is None or state.session_status != SessionStatus.ACTIVE:
                return None
            if session_id is not None and session_id != state.session_id:
                return None
            if state.preserved and not explicit:
                self._log(logging.DEBUG, f"Session {state.session_id} is preserved; skipping automatic close.")
                return None
            state.session_status = SessionStatus.CLOSING
            return state.session_id

    async def finish_close(self):
        async with _bulletproof_lock(self._lock, self.lock_timeout_seconds):
            self._state.session_id = None
            self._state.live_view_url = None
            self._state.preserved = False
            self._state.session_status = SessionStatus.NONE

    # Step loop ---------------------------------------------------------------

    async def request_cancel(self):
        async with _bulletproof_lock(self._lock, self.lock_timeout_seconds):
            if self._state.status not in TERMINAL_STATES:
                self._state.cancel_requested = True

    async def is_cancel_requested(self) -> bool:
        async with _bulletproof_lock(self._lock, self.lock_timeout_seconds):
            return self._state.cancel_requested

    async def begin_step(self, step: Step):
        async with _bulletproof_lock(self._lock, self.lock_timeout_seconds):
            if self._state.history and self._state.history[-1].status == StepStatus.RUNNING:
                raise RuntimeError("A step is already running for this task.")
            self._state.history.append(step)
            self._state.n_steps += 1

    async def finish_step(self, step: Step):
        async with _bulletproof_lock(self._lock, self.lock_timeout_seconds):
            self._state.history[-1] = step

    async def fail_running_step(self, message: str):
        async with _bulletproof_lock(self._lock, self.lock_timeout_seconds):
            if self._state.history and self._state.history[-1].status == StepStatus.RUNNING:
                self._state.history[-1] = self._state.history[-1].failed(message)

    async def record_failure(self, failure: ExecutionFailure):
        async with _bulletproof_lock(self._lock, self.lock_timeout_seconds):
            self._state.last_error = failure.message
            self._set_status_internal(TaskStatus.FAILED, force=True)

    async def record_error(self, error_msg: str):
        async with _bulletproof_lock(self._lock, self.lock_timeout_seconds):
            self._state.last_error = error_msg
            self._set_status_internal(TaskStatus.FAILED, force=True)

    async def record_extraction(self, extraction: ExtractionResult) -> bool:
        """Stores the extraction unless one exists already. The final fallback may overwrite."""
        async with _bulletproof_lock(self._lock, self.lock_timeout_seconds):
            if self._state.extraction is not None and extraction.source != 'final':
                return False
            self._state.extraction = extraction
            return True

    async def mark_completed(self):
        async with _bulletproof_lock(self._lock, self.lock_timeout_seconds):
            self._state.task_completed = True
            self._set_status_internal(TaskStatus.COMPLETED)

    def build_result(self, variables: Optional[Mapping[str, str]] = None) -> TaskResult:
        state = self._state
        handle = state.last_session
        return TaskResult(
            task_id=state.task_id,
            status=state.status,
            session_id=handle.session_id if handle else None,
            live_view_url=handle.live_view_url if handle else None,
            steps=[step.for_display(variables) for step in state.history],
            extraction=state.extraction,
            task_completed=state.task_completed,
            error=state.last_error,
            attempts=state.n_steps,
        )
