from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from browser_task.agent.views import PlannedAction, Step, StepStatus, StepTool, TaskError
from browser_task.exceptions import PlannerError
from browser_task.utils import redact_sensitive_data

logger = logging.getLogger(__name__)


class ActionPlanner(ABC):
    """The planning oracle, as seen by the orchestrator.

    `next_action` must tolerate an empty history and must not touch the session.
    Returning `done=True` ends planning regardless of the remaining step budget.
    """

    @abstractmethod
    async def next_action(
        self,
        goal: str,
        history: Sequence[Step],
        page_state: Optional[Mapping[str, Any]] = None,
    ) -> PlannedAction:
        ...


class StructuredChatModel(Protocol):
    def with_structured_output(self, schema: type[BaseModel]) -> Any: ...


# Step history formatting ----------------------------------------------------

class HistoryItem(BaseModel):
    """A single step rendered for the planner prompt"""

    step_number: int | None = None
    tool: StepTool | None = None
    instruction: str = ''
    reasoning: str = ''
    status: StepStatus | None = None
    error: str | None = None
    system_message: str | None = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def model_post_init(self, __context) -> None:
        if self.error is not None and self.system_message is not None:
            raise ValueError('Cannot have both error and system_message at the same time')

    @classmethod
    def from_step(cls, step: Step, position: int, variables: Optional[Mapping[str, str]] = None) -> HistoryItem:
        return cls(
            step_number=step.step_number if step.step_number is not None else position,
            tool=step.tool,
            instruction=redact_sensitive_data(step.instruction, variables, keep_placeholders=True),
            reasoning=redact_sensitive_data(step.reasoning, variables, keep_placeholders=True),
            status=step.status,
            error=redact_sensitive_data(step.error.message, variables) if step.error else None,
        )

    def to_string(self) -> str:
        step_str = f'step_{self.step_number}' if self.step_number is not None else 'step_unknown'

        if self.system_message:
            return f"""<sys>
{self.system_message}
</sys>"""

        status = self.status.value if self.status else 'unknown'
        content_parts = [
            f'Action: {self.tool.value if self.tool else "?"} {self.instruction}'.rstrip(),
            f'Reasoning: {self.reasoning or "N/A"}',
            f'Result: {status}' + (f' - {self.error[:150]}' if self.error else ''),
        ]
        content = '\n'.join(content_parts)
        return f"""<{step_str}>
{content}
</{step_str}>"""


def format_step_history(
    history: Sequence[Step],
    variables: Optional[Mapping[str, str]] = None,
    max_items: Optional[int] = None,
) -> str:
    """Builds the step history string, keeping the first and the most recent items when truncating."""
    if not history:
        return '<sys>\nNo steps taken yet.\n</sys>'

    items = [HistoryItem.from_step(step, i + 1, variables).to_string() for i, step in enumerate(history)]
    if not max_items or len(items) <= max_items:
        return '\n'.join(items)
    if max_items == 1:
        return '\n'.join([f'<system_note>... {len(items) - 1} older steps omitted ...</system_note>', items[-1]])

    omitted_count = len(items) - max_items
    return '\n'.join([
        items[0],
        f'<system_note>... {omitted_count} older steps omitted ...</system_note>',
        *items[-max_items + 1:],
    ])


# LLM-backed planner -----------------------------------------------------------

class PlannerOutput(BaseModel):
    """The structured output requested from the planning model."""
    model_config = ConfigDict(extra='forbid')

    done: bool = Field(..., description="True when the goal is reached or cannot be reached.")
    reasoning: str = Field(..., description="Why this is the right next action.")
    text: str = Field('', description="A short human-readable description of the action.")
    tool: Optional[StepTool] = Field(None, description="The primitive to run next; omit when done.")
    instruction: str = Field('', description="The tool-specific payload (URL, interaction, extraction query, milliseconds).")
    extraction_schema: Optional[dict[str, Any]] = Field(None, description="Optional shape of the data to extract.")

    def to_planned_action(self) -> PlannedAction:
        if self.tool is None:
            if not self.done:
                raise PlannerError("Planner returned neither a tool nor a completion signal.")
            return PlannedAction(done=True, reasoning=self.reasoning)
        step = Step(
            text=self.text or f'{self.tool.value} {self.instruction}'.strip(),
            reasoning=self.reasoning,
            tool=self.tool,
            instruction=self.instruction,
            extraction_schema=self.extraction_schema,
        )
        return PlannedAction(step=step, reasoning=self.reasoning, done=self.done, extraction_schema=self.extraction_schema)


PLANNER_SYSTEM_PROMPT = """You are the planner of a browser automation agent.
You drive a remote browser one primitive action at a time towards the user's goal.
Available tools:
{tools}
Rules:
- Return exactly one next action, or done=true when the goal is reached or cannot be reached.
- Never repeat an action that just failed in the same way.
- Prefer EXTRACT as soon as the requested information is visible.
- Refer to sensitive values only through their %placeholder% names."""


class LLMActionPlanner(ActionPlanner):
    """Asks a chat model for the next step, using structured output."""

    def __init__(
        self,
        llm: StructuredChatModel,
        tool_descriptions: str,
        max_history_items: Optional[int] = 10,
        max_retries: int = 2,
        retry_backoff_seconds: float = 1.0,
        variables: Optional[Mapping[str, str]] = None,
    ):
        self.llm = llm
        self.tool_descriptions = tool_descriptions
        self.max_history_items = max_history_items
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self.variables = dict(variables or {})

    def _sensitive_data_description(self) -> str:
        if not self.variables:
            return ''
        placeholders = ', '.join(f'%{name}%' for name in sorted(self.variables))
        return f'Available sensitive data placeholders: {placeholders}. Use them verbatim in instructions.'

    def build_messages(
        self,
        goal: str,
        history: Sequence[Step],
        page_state: Optional[Mapping[str, Any]] = None,
    ) -> list[tuple[str, str]]:
        parts = [
            f'<user_request>\n{redact_sensitive_data(goal, self.variables, keep_placeholders=True)}\n</user_request>',
            f'<agent_history>\n{format_step_history(history, self.variables, self.max_history_items)}\n</agent_history>',
        ]
        if page_state:
            state = redact_sensitive_data(json.dumps(dict(page_state), default=str), self.variables, keep_placeholders=True)
            parts.append(f'<page_state>\n{state}\n</page_state>')
        sensitive = self._sensitive_data_description()
        if sensitive:
            parts.append(f'<sensitive_data>\n{sensitive}\n</sensitive_data>')
        return [
            ('system', PLANNER_SYSTEM_PROMPT.format(tools=self.tool_descriptions)),
            ('user', '\n'.join(parts)),
        ]

    async def next_action(
        self,
        goal: str,
        history: Sequence[Step],
        page_state: Optional[Mapping[str, Any]] = None,
    ) -> PlannedAction:
        messages = self.build_messages(goal, history, page_state)
        output = await self._invoke_llm_with_retry(messages)
        try:
            return output.to_planned_action()
        except ValidationError as e:
            raise PlannerError(TaskError.format_error(e)) from e

    async def _invoke_llm_with_retry(self, messages: list[tuple[str, str]]) -> PlannerOutput:
        for attempt in range(self.max_retries + 1):
            try:
                llm_with_schema = self.llm.with_structured_output(PlannerOutput)
                response = await llm_with_schema.ainvoke(messages)
                if isinstance(response, dict):
                    response = PlannerOutput.model_validate(response)
                if not isinstance(response, PlannerOutput):
                    raise PlannerError(f"Planner returned {type(response).__name__} instead of a planner output.")
                return response
            except Exception as e:
                if attempt >= self.max_retries:
                    raise PlannerError(f"Planner call failed after {attempt + 1} attempt(s): {TaskError.format_error(e)}") from e
                logger.warning(f"Planner call failed (attempt {attempt + 1}/{self.max_retries + 1}): {e}")
                await asyncio.sleep(self.retry_backoff_seconds * (2 ** attempt))
        raise PlannerError("Planner call failed.")
