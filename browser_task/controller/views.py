from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from browser_task.agent.views import ExtractionSchema

MAX_WAIT_MS = 60000


# Primitive Input Models
class GoToUrlAction(BaseModel):
	url: str = Field(..., min_length=1, description="The absolute URL to open in the current tab.")

	@field_validator('url')
	@classmethod
	def strip_url(cls, value: str) -> str:
		value = value.strip()
		if not value:
			raise ValueError('URL must not be blank.')
		return value


class ActAction(BaseModel):
	action: str = Field(..., min_length=1, description="A single natural-language interaction, e.g. 'click the Pricing link'.")


class ExtractAction(BaseModel):
	instruction: str = Field(..., min_length=1, description="What to pull out of the current page.")
	extraction_schema: Optional[ExtractionSchema] = None


class ObserveAction(BaseModel):
	instruction: str = Field('', description="What to look for on the current page.")


class WaitAction(BaseModel):
	milliseconds: int = Field(..., ge=0, le=MAX_WAIT_MS, description="How long to wait, in milliseconds.")


class NoParamsAction(BaseModel):
	"""
	Accepts absolutely anything in the incoming data
	and discards it, so the final parsed model is empty.
	"""

	model_config = ConfigDict(extra='ignore')
