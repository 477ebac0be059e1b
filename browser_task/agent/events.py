from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Optional

if TYPE_CHECKING:
    from browser_task.agent.views import ExtractionResult, Step, TaskStatus


@dataclass
class StepOutcome:
    """Data produced by the Actuator for one dispatched step."""
    ok: bool
    error: Optional[str] = None
    extraction: Any = None
    duration_seconds: float = 0.0


@dataclass
class StartResult:
    """Returned by `TaskOrchestrator.start` once the first step has settled."""
    session_id: str
    live_view_url: str
    first_step: Optional[Step]
    first_step_outcome: Optional[StepOutcome]
    done: bool = False


@dataclass
class NextStep:
    """Returned by `TaskOrchestrator.advance`."""
    step: Optional[Step]
    done: bool
    reasoning: str = ''


@dataclass
class StepExecution:
    """Returned by `TaskOrchestrator.execute_step`."""
    step: Step
    outcome: StepOutcome
    extraction: Optional[ExtractionResult] = None


class TaskEventType(enum.Enum):
    SESSION_CREATED = "SESSION_CREATED"
    STEP_STARTED = "STEP_STARTED"
    STEP_FINISHED = "STEP_FINISHED"
    EXTRACTION_CAPTURED = "EXTRACTION_CAPTURED"
    TASK_FINISHED = "TASK_FINISHED"
    SESSION_CLOSED = "SESSION_CLOSED"


@dataclass
class TaskEvent:
    """A state transition, emitted by the orchestrator in the order it happened."""
    type: TaskEventType
    task_id: str
    session_id: Optional[str] = None
    live_view_url: Optional[str] = None
    context_id: Optional[str] = None
    step: Optional[Step] = None
    extraction: Optional[ExtractionResult] = None
    status: Optional[TaskStatus] = None
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


TaskEventListener = Callable[[TaskEvent], None]
