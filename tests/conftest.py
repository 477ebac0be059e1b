import asyncio
import os
from typing import Any, Callable, Optional, Sequence

os.environ.setdefault('BROWSER_TASK_SETUP_LOGGING', 'false')

import pytest

from browser_task.agent.planner import ActionPlanner
from browser_task.agent.settings import TaskSettings
from browser_task.agent.views import PlannedAction, Step, StepTool
from browser_task.browser.provider import ActionOutcome, BrowserAction, SessionHandle, SessionOptions, SessionProvider
from browser_task.exceptions import ProviderActionError


class FakeProvider(SessionProvider):
    """In-memory provider that records every call."""

    def __init__(
        self,
        extract_data: Any = None,
        fail_when: Optional[Callable[[BrowserAction], Optional[Exception]]] = None,
        create_error: Optional[Exception] = None,
        destroy_error: Optional[Exception] = None,
        create_delay: float = 0.0,
        dispatch_delay: float = 0.0,
    ):
        self.extract_data = extract_data
        self.fail_when = fail_when
        self.create_error = create_error
        self.destroy_error = destroy_error
        self.create_delay = create_delay
        self.dispatch_delay = dispatch_delay
        self.in_flight = 0
        self.max_in_flight = 0
        self.create_calls: list[SessionOptions] = []
        self.destroy_calls: list[str] = []
        self.dispatched: list[tuple[str, BrowserAction]] = []

    async def create_session(self, options: SessionOptions) -> SessionHandle:
        self.create_calls.append(options)
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self.create_error:
            raise self.create_error
        n = len(self.create_calls)
        return SessionHandle(
            session_id=f'sess-{n}',
            live_view_url=f'https://live.example.com/sess-{n}',
            context_id=options.context_id or 'ctx-1',
            region='us-west-2',
        )

    async def destroy_session(self, session_id: str) -> None:
        self.destroy_calls.append(session_id)
        if self.destroy_error:
            raise self.destroy_error

    async def dispatch(self, session_id: str, action: BrowserAction) -> ActionOutcome:
        self.dispatched.append((session_id, action))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.dispatch_delay:
                await asyncio.sleep(self.dispatch_delay)
        finally:
            self.in_flight -= 1
        if self.fail_when:
            error = self.fail_when(action)
            if error is not None:
                raise error
        if action.tool == StepTool.EXTRACT:
            return ActionOutcome(data=self.extract_data)
        return ActionOutcome()

    @property
    def step_dispatches(self) -> list[BrowserAction]:
        return [action for _, action in self.dispatched]


class ScriptedPlanner(ActionPlanner):
    """Replays a fixed list of planned actions, then signals completion."""

    def __init__(self, script: Sequence[PlannedAction] = (), repeat: Optional[PlannedAction] = None):
        self.script = list(script)
        self.repeat = repeat
        self.calls: list[tuple[str, list[Step], Any]] = []

    async def next_action(self, goal, history, page_state=None) -> PlannedAction:
        self.calls.append((goal, list(history), page_state))
        if self.script:
            return self.script.pop(0)
        if self.repeat is not None:
            return self.repeat
        return PlannedAction(done=True, reasoning='Nothing left to do.')


class FailingPlanner(ActionPlanner):
    def __init__(self, error: Exception, after: int = 0, step: Optional[PlannedAction] = None):
        self.error = error
        self.after = after
        self.step = step
        self.calls = 0

    async def next_action(self, goal, history, page_state=None) -> PlannedAction:
        self.calls += 1
        if self.calls > self.after:
            raise self.error
        return self.step


def planned(tool: StepTool, instruction: str = '', text: str = '', **kwargs) -> PlannedAction:
    step = Step(text=text or f'{tool.value} {instruction}'.strip(), reasoning='scripted', tool=tool,
                instruction=instruction, **kwargs)
    return PlannedAction(step=step, reasoning='scripted')


def fail_on(tool: StepTool, message: str = 'element not found'):
    def _check(action: BrowserAction):
        return ProviderActionError(message) if action.tool == tool else None
    return _check


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def make_settings():
    def _make(planner: ActionPlanner, provider: SessionProvider, **kwargs) -> TaskSettings:
        return TaskSettings(planner=planner, provider=provider, lock_timeout_seconds=1.0, **kwargs)
    return _make
