import pytest

from conftest import FakeProvider, ScriptedPlanner, planned

from browser_task.agent.orchestrator import TaskOrchestrator
from browser_task.agent.views import Step, StepStatus, StepTool, Task
from browser_task import store
from browser_task.store import BrowserViewState, SessionStore


def make_step(instruction='https://example.com', tool=StepTool.GOTO, status=StepStatus.PENDING):
    return Step(text=f'{tool.value} {instruction}', reasoning='r', tool=tool, instruction=instruction, status=status)


def test_set_session_clears_previous_task_data():
    state = BrowserViewState(steps=(make_step(),), current_step=1, extracted_data={'a': 1}, error='old')

    new_state = store.set_session(state, 'sess-1', 'https://live/sess-1', 'ctx-1')

    assert new_state.session_id == 'sess-1'
    assert new_state.steps == ()
    assert new_state.current_step == 0
    assert new_state.extracted_data is None
    assert new_state.error is None
    # the input is untouched
    assert state.steps != ()
    assert state.error == 'old'


def test_add_step_numbers_and_marks_running():
    state = store.add_step(store.reset(), make_step())
    state = store.add_step(state, make_step('click', StepTool.ACT))

    assert [s.step_number for s in state.steps] == [1, 2]
    assert all(s.status == StepStatus.RUNNING for s in state.steps)
    assert state.current_step == 2


def test_update_step_status_only_touches_the_target():
    before = store.add_step(store.add_step(store.reset(), make_step()), make_step('click', StepTool.ACT))

    after = store.update_step_status(before, 1, StepStatus.FAILED, 'element not found')

    assert after.steps[0].status == StepStatus.RUNNING
    assert after.steps[1].status == StepStatus.FAILED
    assert after.steps[1].error.message == 'element not found'
    assert before.steps[1].status == StepStatus.RUNNING


def test_update_step_status_ignores_unknown_index():
    state = store.add_step(store.reset(), make_step())
    assert store.update_step_status(state, 5, StepStatus.COMPLETED) is state


def test_reset_returns_idle_shape():
    state = store.set_loading(store.set_error(store.reset(), 'boom'), True)
    assert store.reset() == BrowserViewState()
    assert state.is_loading is True
    assert state.error == 'boom'


def test_view_state_is_frozen():
    with pytest.raises(Exception):
        store.reset().error = 'nope'


def test_store_keeps_instances_isolated():
    registry = SessionStore()
    registry.update('a', store.set_extracted_data, {'price': 1})

    assert registry.get('a').extracted_data == {'price': 1}
    assert registry.get('b') == BrowserViewState()

    registry.reset('a')
    assert registry.get('a') == BrowserViewState()
    assert registry.instance_ids() == []


@pytest.mark.asyncio
async def test_listener_projects_orchestrator_events(make_settings):
    provider = FakeProvider(extract_data={'price': '$99'})
    planner = ScriptedPlanner([
        planned(StepTool.GOTO, 'https://example.com/pricing'),
        planned(StepTool.EXTRACT, 'the enterprise price'),
    ])
    orchestrator = TaskOrchestrator(make_settings(planner, provider))
    registry = SessionStore()
    orchestrator.subscribe(registry.listener('chat-1'))

    await orchestrator.run(Task(goal='find the enterprise price', max_steps=3))

    view = registry.get('chat-1')
    assert view.session_id == 'sess-1'
    assert view.live_view_url == 'https://live.example.com/sess-1'
    assert [s.status for s in view.steps] == [StepStatus.COMPLETED, StepStatus.COMPLETED]
    assert view.extracted_data == {'price': '$99'}
    assert view.error is None
    assert view.is_loading is False
