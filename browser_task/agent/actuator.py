from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Mapping, Optional

from browser_task.agent.events import StepOutcome
from browser_task.agent.views import StepTool
from browser_task.utils import redact_sensitive_data, substitute_variables

if TYPE_CHECKING:
    from browser_task.agent.views import ExtractionSchema, Step
    from browser_task.browser.provider import SessionProvider
    from browser_task.controller.service import Controller

logger = logging.getLogger(__name__)


class Actuator:
    """
    The Step Executor.
    Applies one planned step to a live session through the `Controller`. Variable
    placeholders are resolved here, right before dispatch, and the resolved text
    never leaves this method. It performs no persistence of any kind.
    """

    def __init__(self, controller: Controller, provider: SessionProvider):
        self.controller = controller
        self.provider = provider

    async def execute(
        self,
        session_id: str,
        step: Step,
        variables: Optional[Mapping[str, str]] = None,
        extraction_schema: Optional[ExtractionSchema] = None,
    ) -> StepOutcome:
        """Runs the step and returns its outcome.

        Action-level failures come back as `StepOutcome(ok=False)`; transport failures
        raise `SessionUnavailableError`.
        """
        step_start_time = time.monotonic()
        schema = step.extraction_schema or extraction_schema

        result = await self.controller.act(
            tool=step.tool,
            instruction=substitute_variables(step.instruction, variables),
            session_id=session_id,
            provider=self.provider,
            extraction_schema=schema if step.tool == StepTool.EXTRACT else None,
        )

        return StepOutcome(
            ok=result.success,
            # providers sometimes echo the instruction back in their error text
            error=redact_sensitive_data(result.error, variables) if result.error else None,
            extraction=result.data if step.tool == StepTool.EXTRACT else None,
            duration_seconds=time.monotonic() - step_start_time,
        )
