import pytest
from pydantic import ValidationError

from browser_task.agent.views import (
    ExtractionResult,
    ExtractionSchema,
    PlannedAction,
    Step,
    StepError,
    StepStatus,
    StepTool,
    Task,
    TaskResult,
    TaskStatus,
    is_empty_payload,
)
from browser_task.utils import find_placeholders, redact_sensitive_data, substitute_variables


def test_schema_from_flat_mapping():
    schema = ExtractionSchema.from_dict({'name': 'string', 'price': {'type': 'number', 'description': 'USD'}})

    assert schema.kind == 'object'
    assert schema.properties['name'].type == 'string'
    assert schema.properties['price'].description == 'USD'
    assert all(spec.required for spec in schema.properties.values())


def test_schema_from_json_schema_honours_required():
    schema = ExtractionSchema.from_dict({
        'type': 'object',
        'properties': {'title': {'type': 'string'}, 'tags': {'type': 'array'}},
        'required': ['title'],
    })

    assert schema.properties['title'].required is True
    assert schema.properties['tags'].required is False
    assert schema.to_json_schema()['required'] == ['title']


def test_schema_rejects_unknown_types_and_empty_shapes():
    with pytest.raises(ValidationError):
        ExtractionSchema.from_dict({'when': 'date'})
    with pytest.raises(ValidationError):
        ExtractionSchema.from_dict({})
    with pytest.raises(ValueError):
        ExtractionSchema.from_dict(['price'])


def test_text_schema_wraps_plain_strings():
    schema = ExtractionSchema.text()
    assert schema.validate_payload('Enterprise: $99') == {'content': 'Enterprise: $99'}


def test_text_schema_only_allows_strings():
    with pytest.raises(ValidationError):
        ExtractionSchema(kind='text', properties={'n': {'type': 'number'}})


def test_validate_payload_checks_types():
    schema = ExtractionSchema.from_dict({'price': 'number', 'available': 'boolean'})

    assert schema.validate_payload({'price': 99.5, 'available': True}) == {'price': 99.5, 'available': True}
    with pytest.raises(ValueError, match="should be number"):
        schema.validate_payload({'price': True, 'available': True})
    with pytest.raises(ValueError, match="missing required field 'available'"):
        schema.validate_payload({'price': 1})
    with pytest.raises(ValueError):
        schema.validate_payload(['not', 'an', 'object'])


@pytest.mark.parametrize('value,empty', [
    (None, True), ('   ', True), ({}, True), ({'a': None, 'b': ''}, True), ([], True),
    ('text', False), ({'a': 0}, False), ([1], False), (False, False),
])
def test_is_empty_payload(value, empty):
    assert is_empty_payload(value) is empty


def test_failed_step_requires_error_and_only_failed_steps_carry_one():
    with pytest.raises(ValidationError):
        Step(tool=StepTool.ACT, status=StepStatus.FAILED)
    with pytest.raises(ValidationError):
        Step(tool=StepTool.ACT, status=StepStatus.COMPLETED, error=StepError(message='x'))

    failed = Step(tool=StepTool.ACT).running(1).failed('timeout')
    assert failed.error.message == 'timeout'
    assert failed.step_number == 1


def test_step_wire_shape():
    wire = Step(text='Open', reasoning='start', tool=StepTool.GOTO, instruction='https://a.example').running(1).to_wire()
    assert wire == {
        'text': 'Open',
        'reasoning': 'start',
        'tool': 'GOTO',
        'instruction': 'https://a.example',
        'status': 'running',
        'step_number': 1,
    }


def test_step_for_display_redacts_tokens_and_values():
    step = Step(text='Log in as alice', reasoning='use %username%', tool=StepTool.ACT,
                instruction='type %username% and %password%')

    shown = step.for_display({'username': 'alice', 'password': 'hunter2'})

    assert shown.text == 'Log in as <secret>username</secret>'
    assert shown.reasoning == 'use <secret>username</secret>'
    assert shown.instruction == 'type <secret>username</secret> and <secret>password</secret>'
    assert step.instruction == 'type %username% and %password%'


def test_planned_action_rules():
    with pytest.raises(ValidationError):
        PlannedAction(done=False)

    closing = PlannedAction(step=Step(tool=StepTool.CLOSE))
    assert closing.done is True

    finished = PlannedAction(done=True, reasoning='goal reached')
    assert finished.step is None


def test_task_bounds_and_immutability():
    with pytest.raises(ValidationError):
        Task(goal='x', max_steps=0)
    with pytest.raises(ValidationError):
        Task(goal='x', max_steps=51)

    task = Task(goal='sign in with %password%', variables={'password': 'hunter2'})
    assert task.max_steps == 10
    assert task.task_id
    assert 'hunter2' not in repr(task)
    assert task.display_goal == 'sign in with <secret>password</secret>'
    with pytest.raises(ValidationError):
        task.goal = 'changed'


def test_task_result_success():
    partial = TaskResult(task_id='t', status=TaskStatus.MAX_STEPS_REACHED)
    assert partial.success is False
    assert partial.is_partial is True
    assert partial.data is None

    with_data = TaskResult(task_id='t', status=TaskStatus.MAX_STEPS_REACHED,
                           extraction=ExtractionResult(data={'a': 1}, source='final'))
    assert with_data.success is True
    assert with_data.data == {'a': 1}
    assert with_data.model_dump()['success'] is True


def test_placeholder_helpers():
    assert find_placeholders('log in as %user_name% with %pass-word%') == ['user_name', 'pass-word']
    assert substitute_variables('hi %name%, %unknown%', {'name': 'bob'}) == 'hi bob, %unknown%'
    assert substitute_variables('no vars', None) == 'no vars'
    assert redact_sensitive_data('token abc123 and %token%', {'token': 'abc123'}) == \
        'token <secret>token</secret> and <secret>token</secret>'
    assert redact_sensitive_data('%token% leaked abc123', {'token': 'abc123'}, keep_placeholders=True) == \
        '%token% leaked <secret>token</secret>'


def test_longer_secrets_are_masked_first():
    variables = {'short': 'abc', 'long': 'abcdef'}
    assert redact_sensitive_data('value abcdef', variables) == 'value <secret>long</secret>'
