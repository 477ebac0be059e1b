from __future__ import annotations

from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

from browser_task.agent.events import TaskEventListener
from browser_task.agent.planner import ActionPlanner
from browser_task.agent.views import TaskResult
from browser_task.browser.provider import SessionProvider
from browser_task.controller.service import Controller

# receives the running TaskOrchestrator
TaskHookFunc = Callable[..., Awaitable[None]]
TaskDoneHookFunc = Callable[[TaskResult], Awaitable[None]]


class TaskSettings(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    planner: ActionPlanner
    provider: SessionProvider
    controller: Controller = Field(default_factory=Controller)
    lock_timeout_seconds: float = Field(5.0, description="Timeout in seconds for acquiring the state lock to prevent deadlocks.")
    preserve_session: bool = Field(
        False, description="Hand the live session over to the caller once created; only an explicit close ends it.")
    final_extraction: bool = Field(True, description="Run one best-effort extraction when the loop ends without data.")
    listeners: list[TaskEventListener] = Field(default_factory=list)
    on_run_start: Optional[TaskHookFunc] = None
    on_step_start: Optional[TaskHookFunc] = None
    on_step_end: Optional[TaskHookFunc] = None
    on_run_end: Optional[TaskDoneHookFunc] = None
