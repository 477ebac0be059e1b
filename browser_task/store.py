from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict

from browser_task.agent.events import TaskEvent, TaskEventListener, TaskEventType
from browser_task.agent.views import Step, StepError, StepStatus

logger = logging.getLogger(__name__)


class BrowserViewState(BaseModel):
    """What a UI needs to render one task: a projection, never the source of truth."""
    model_config = ConfigDict(frozen=True)

    session_id: Optional[str] = None
    live_view_url: Optional[str] = None
    context_id: Optional[str] = None
    current_step: int = 0
    steps: tuple[Step, ...] = ()
    extracted_data: Any = None
    error: Optional[str] = None
    is_loading: bool = False


INITIAL_VIEW_STATE = BrowserViewState()


# Pure transforms ---------------------------------------------------------------
# Each returns a new state and leaves its input untouched.

def set_session(state: BrowserViewState, session_id: str, live_view_url: str, context_id: Optional[str]) -> BrowserViewState:
    return state.model_copy(update={
        'session_id': session_id,
        'live_view_url': live_view_url,
        'context_id': context_id,
        'current_step': 0,
        'steps': (),
        'extracted_data': None,
        'error': None,
    })


def add_step(state: BrowserViewState, step: Step) -> BrowserViewState:
    status = step.status if step.status != StepStatus.PENDING else StepStatus.RUNNING
    added = step.model_copy(update={'status': status, 'step_number': len(state.steps) + 1})
    return state.model_copy(update={
        'steps': (*state.steps, added),
        'current_step': state.current_step + 1,
    })


def update_step_status(
    state: BrowserViewState,
    step_index: int,
    status: StepStatus,
    error: Optional[str] = None,
) -> BrowserViewState:
    if not 0 <= step_index < len(state.steps):
        logger.debug(f"Ignoring status update for unknown step index {step_index}.")
        return state
    step_error = StepError(message=error or 'Step failed.') if status == StepStatus.FAILED else None
    steps = tuple(
        step.model_copy(update={'status': status, 'error': step_error}) if index == step_index else step
        for index, step in enumerate(state.steps)
    )
    return state.model_copy(update={'steps': steps})


def set_extracted_data(state: BrowserViewState, data: Any) -> BrowserViewState:
    return state.model_copy(update={'extracted_data': data})


def set_error(state: BrowserViewState, error: Optional[str]) -> BrowserViewState:
    return state.model_copy(update={'error': error})


def set_loading(state: BrowserViewState, is_loading: bool) -> BrowserViewState:
    return state.model_copy(update={'is_loading': is_loading})


def reset() -> BrowserViewState:
    return INITIAL_VIEW_STATE


# Keyed registry ----------------------------------------------------------------

class SessionStore:
    """Holds one `BrowserViewState` per task instance. Create one per use; it is not shared."""

    def __init__(self):
        self._states: dict[str, BrowserViewState] = {}

    def get(self, instance_id: str) -> BrowserViewState:
        return self._states.get(instance_id, INITIAL_VIEW_STATE)

    def update(self, instance_id: str, transform: Callable[..., BrowserViewState], *args: Any) -> BrowserViewState:
        new_state = transform(self.get(instance_id), *args)
        self._states[instance_id] = new_state
        return new_state

    def reset(self, instance_id: str) -> BrowserViewState:
        self._states.pop(instance_id, None)
        return INITIAL_VIEW_STATE

    def instance_ids(self) -> list[str]:
        return list(self._states)

    def apply_event(self, instance_id: str, event: TaskEvent) -> BrowserViewState:
        """Folds one orchestrator event into the instance's view state."""
        if event.type == TaskEventType.SESSION_CREATED:
            self.update(instance_id, set_session, event.session_id, event.live_view_url, event.context_id)
            return self.update(instance_id, set_loading, True)

        if event.type == TaskEventType.STEP_STARTED and event.step is not None:
            return self.update(instance_id, add_step, event.step)

        if event.type == TaskEventType.STEP_FINISHED and event.step is not None:
            state = self.get(instance_id)
            index = event.step.step_number - 1 if event.step.step_number else len(state.steps) - 1
            error = event.step.error.message if event.step.error else None
            return self.update(instance_id, update_step_status, index, event.step.status, error)

        if event.type == TaskEventType.EXTRACTION_CAPTURED and event.extraction is not None:
            return self.update(instance_id, set_extracted_data, event.extraction.data)

        if event.type == TaskEventType.TASK_FINISHED:
            if event.error:
                self.update(instance_id, set_error, event.error)
            return self.update(instance_id, set_loading, False)

        if event.type == TaskEventType.SESSION_CLOSED:
            return self.update(instance_id, set_loading, False)

        return self.get(instance_id)

    def listener(self, instance_id: str) -> TaskEventListener:
        def _on_event(event: TaskEvent) -> None:
            self.apply_event(instance_id, event)
        return _on_event
