from __future__ import annotations

import enum
import logging
import traceback
from collections.abc import Mapping
from typing import Any, Literal, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    computed_field,
    field_validator,
    model_validator,
)
from uuid_extensions import uuid7str

from browser_task.exceptions import BrowserTaskError
from browser_task.utils import redact_sensitive_data

logger = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 10
MAX_STEPS_LIMIT = 50


class StepTool(str, enum.Enum):
    GOTO = "GOTO"; ACT = "ACT"; EXTRACT = "EXTRACT"; OBSERVE = "OBSERVE"
    CLOSE = "CLOSE"; WAIT = "WAIT"; NAVBACK = "NAVBACK"


class StepStatus(str, enum.Enum):
    PENDING = "pending"; RUNNING = "running"; COMPLETED = "completed"; FAILED = "failed"


class TaskStatus(enum.Enum):
    PENDING = "PENDING"; RUNNING = "RUNNING"; CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"; FAILED = "FAILED"; MAX_STEPS_REACHED = "MAX_STEPS_REACHED"


TERMINAL_STATES = {TaskStatus.CANCELLED, TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.MAX_STEPS_REACHED}


# Extraction schema ---------------------------------------------------------

FieldType = Literal['string', 'number', 'boolean', 'array', 'object']

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    'string': (str,),
    'number': (int, float),
    'boolean': (bool,),
    'array': (list, tuple),
    'object': (Mapping,),
}


class FieldSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: FieldType = 'string'
    description: Optional[str] = None
    required: bool = True

    def accepts(self, value: Any) -> bool:
        if self.type == 'number' and isinstance(value, bool):
            return False
        return isinstance(value, _JSON_TYPES[self.type])


class ExtractionSchema(BaseModel):
    """A tagged description of the data an extraction is expected to return."""
    model_config = ConfigDict(frozen=True)

    kind: Literal['text', 'object'] = 'object'
    properties: dict[str, FieldSpec] = Field(default_factory=dict)

    @model_validator(mode='after')
    def validate_fields(self):
        if not self.properties:
            raise ValueError("An extraction schema needs at least one field.")
        if self.kind == 'text' and not all(f.type == 'string' for f in self.properties.values()):
            raise ValueError("A `text` extraction schema may only contain string fields.")
        return self

    @classmethod
    def text(cls) -> ExtractionSchema:
        """The default schema: capture the visible content of the page as text."""
        return cls(kind='text', properties={'content': FieldSpec(type='string', description='The visible content of the page as text.')})

    @classmethod
    def from_dict(cls, raw: Any) -> ExtractionSchema:
        """Parses the loose shapes the tool layer sends.

        Accepts an already tagged schema (`{"kind": ..., "properties": ...}`), a JSON-schema
        object (`{"type": "object", "properties": {...}}`) or a flat mapping of field
        names to either a type name or a `{"type": ...}` description.
        """
        if isinstance(raw, ExtractionSchema):
            return raw
        if not isinstance(raw, Mapping):
            raise ValueError(f"Extraction schema must be a mapping, got {type(raw).__name__}.")
        if 'kind' in raw and 'properties' in raw:
            return cls.model_validate(raw)

        required: Optional[set[str]] = None
        properties: Mapping[str, Any] = raw
        if raw.get('type') == 'object' and isinstance(raw.get('properties'), Mapping):
            properties = raw['properties']
            required = set(raw['required']) if isinstance(raw.get('required'), list) else None

        fields: dict[str, FieldSpec] = {}
        for name, spec in properties.items():
            if isinstance(spec, str):
                fields[name] = FieldSpec(type=spec, required=required is None or name in required)
            elif isinstance(spec, Mapping):
                default_type = 'object' if 'properties' in spec else 'string'
                fields[name] = FieldSpec(
                    type=spec.get('type', default_type),
                    description=spec.get('description'),
                    required=required is None or name in required,
                )
            else:
                raise ValueError(f"Unsupported field description for '{name}': {spec!r}")
        return cls(kind='object', properties=fields)

    def to_json_schema(self) -> dict[str, Any]:
        properties: dict[str, Any] = {}
        for name, spec in self.properties.items():
            properties[name] = {'type': spec.type}
            if spec.description:
                properties[name]['description'] = spec.description
        return {
            'type': 'object',
            'properties': properties,
            'required': [name for name, spec in self.properties.items() if spec.required],
        }

    def validate_payload(self, data: Any) -> dict[str, Any]:
        """Checks the top-level shape of extracted data and returns it as a dict.

        A bare string is accepted for `text` schemas and wrapped into the first field.
        """
        if self.kind == 'text' and isinstance(data, str):
            data = {next(iter(self.properties)): data}
        if not isinstance(data, Mapping):
            raise ValueError(f"Extracted data must be an object, got {type(data).__name__}.")
        for name, spec in self.properties.items():
            if name not in data or data[name] is None:
                if spec.required:
                    raise ValueError(f"Extracted data is missing required field '{name}'.")
                continue
            if not spec.accepts(data[name]):
                raise ValueError(f"Field '{name}' should be {spec.type}, got {type(data[name]).__name__}.")
        return dict(data)


def is_empty_payload(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, Mapping):
        return all(is_empty_payload(v) for v in value.values())
    if isinstance(value, (list, tuple, set)):
        return len(value) == 0
    return False


class ExtractionResult(BaseModel):
    """The single authoritative piece of structured data attached to a task."""
    data: Any
    source: Literal['step', 'final'] = 'step'
    step_number: Optional[int] = None


class ActionResult(BaseModel):
    """The result of a single dispatched primitive."""
    tool: Optional[StepTool] = None
    success: bool = True
    error: Optional[str] = None
    data: Any = None

    @model_validator(mode='after')
    def validate_error(self):
        if self.success and self.error is not None:
            raise ValueError("`error` can only be set when `success=False`.")
        return self


# Steps ---------------------------------------------------------------------

class StepError(BaseModel):
    message: str


class Step(BaseModel):
    """One planned-and-executed primitive action. Also the wire shape shared with the UI."""
    model_config = ConfigDict(protected_namespaces=())

    text: str = ''
    reasoning: str = ''
    tool: StepTool
    instruction: str = ''
    status: StepStatus = StepStatus.PENDING
    error: Optional[StepError] = None
    step_number: Optional[int] = None
    extraction_schema: Optional[ExtractionSchema] = None

    @field_validator('extraction_schema', mode='before')
    @classmethod
    def parse_schema(cls, value: Any) -> Any:
        return None if value is None else ExtractionSchema.from_dict(value)

    @model_validator(mode='after')
    def validate_error(self):
        if self.status == StepStatus.FAILED and self.error is None:
            raise ValueError("A failed step must carry an error.")
        if self.status != StepStatus.FAILED and self.error is not None:
            raise ValueError("Only a failed step may carry an error.")
        return self

    def running(self, step_number: int) -> Step:
        return self.model_copy(update={'status': StepStatus.RUNNING, 'error': None, 'step_number': step_number})

    def completed(self) -> Step:
        return self.model_copy(update={'status': StepStatus.COMPLETED, 'error': None})

    def failed(self, message: str) -> Step:
        return self.model_copy(update={'status': StepStatus.FAILED, 'error': StepError(message=message)})

    def for_display(self, variables: Optional[Mapping[str, str]] = None) -> Step:
        """Returns a copy safe for long-term display: no placeholder tokens, no secret values."""
        error = StepError(message=redact_sensitive_data(self.error.message, variables)) if self.error else None
        return self.model_copy(update={
            'text': redact_sensitive_data(self.text, variables),
            'reasoning': redact_sensitive_data(self.reasoning, variables),
            'instruction': redact_sensitive_data(self.instruction, variables),
            'error': error,
        })

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode='json', exclude_none=True)


class PlannedAction(BaseModel):
    """The planner's answer: exactly one next step, or a completion signal."""
    step: Optional[Step] = None
    reasoning: str = ''
    done: bool = False
    extraction_schema: Optional[ExtractionSchema] = None

    @field_validator('extraction_schema', mode='before')
    @classmethod
    def parse_schema(cls, value: Any) -> Any:
        return None if value is None else ExtractionSchema.from_dict(value)

    @model_validator(mode='after')
    def validate_step(self):
        if self.step is not None and self.step.tool == StepTool.CLOSE:
            self.done = True
        if not self.done and self.step is None:
            raise ValueError("A planned action must carry a step unless it signals completion.")
        return self


# Tasks ---------------------------------------------------------------------

class Task(BaseModel):
    """The unit of work. Frozen: it never changes once the step loop begins."""
    model_config = ConfigDict(frozen=True)

    task_id: str = Field(default_factory=uuid7str)
    goal: str
    start_url: Optional[str] = None
    variables: dict[str, str] = Field(default_factory=dict, repr=False)
    extraction_schema: Optional[ExtractionSchema] = None
    max_steps: int = Field(DEFAULT_MAX_STEPS, ge=1, le=MAX_STEPS_LIMIT)
    timezone: Optional[str] = None
    context_id: Optional[str] = None

    @field_validator('extraction_schema', mode='before')
    @classmethod
    def parse_schema(cls, value: Any) -> Any:
        return None if value is None else ExtractionSchema.from_dict(value)

    @property
    def display_goal(self) -> str:
        return redact_sensitive_data(self.goal, self.variables)


class TaskResult(BaseModel):
    """What a caller gets back once a task reaches a terminal state."""
    task_id: str
    status: TaskStatus
    session_id: Optional[str] = None
    live_view_url: Optional[str] = None
    steps: list[Step] = Field(default_factory=list)
    extraction: Optional[ExtractionResult] = None
    task_completed: bool = False
    error: Optional[str] = None
    attempts: int = 0

    @computed_field
    @property
    def success(self) -> bool:
        return self.task_completed or self.extraction is not None

    @property
    def data(self) -> Any:
        return self.extraction.data if self.extraction else None

    @property
    def is_partial(self) -> bool:
        """True when nothing broke but the step budget ran out before the goal was reached."""
        return self.error is None and not self.task_completed


class TaskError:
    """Container for task error formatting"""

    VALIDATION_ERROR = 'Invalid planner output format. Please follow the correct schema.'

    @staticmethod
    def format_error(error: BaseException, include_trace: bool = False) -> str:
        if isinstance(error, ValidationError):
            return f'{TaskError.VALIDATION_ERROR}\nDetails: {str(error)}'
        if isinstance(error, BrowserTaskError):
            return error.message
        if include_trace:
            return f'{str(error)}\nStacktrace:\n{traceback.format_exc()}'
        return f'{str(error)}' or type(error).__name__
