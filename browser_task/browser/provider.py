from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone as dt_timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field

from browser_task.agent.views import ExtractionSchema, StepTool
from browser_task.exceptions import ProviderActionError

logger = logging.getLogger(__name__)

DEFAULT_REGION = 'us-west-2'

EXACT_TIMEZONE_REGIONS = {
    'America/New_York': 'us-east-1',
    'America/Detroit': 'us-east-1',
    'America/Toronto': 'us-east-1',
    'America/Montreal': 'us-east-1',
    'America/Boston': 'us-east-1',
    'America/Chicago': 'us-east-1',
}

PREFIX_REGIONS = {
    'America': 'us-west-2',
    'US': 'us-west-2',
    'Canada': 'us-west-2',
    'Europe': 'eu-central-1',
    'Africa': 'eu-central-1',
    'Asia': 'ap-southeast-1',
    'Australia': 'ap-southeast-1',
    'Pacific': 'ap-southeast-1',
}

# (min_hours, max_hours, region), inclusive on both ends
OFFSET_REGIONS = [
    (-24, -4, 'us-west-2'),
    (-3, 4, 'eu-central-1'),
    (5, 24, 'ap-southeast-1'),
]


def closest_region(timezone: Optional[str], now: Optional[datetime] = None) -> str:
    """Picks the provider region nearest to an IANA timezone name."""
    if not timezone:
        return DEFAULT_REGION
    if timezone in EXACT_TIMEZONE_REGIONS:
        return EXACT_TIMEZONE_REGIONS[timezone]
    prefix = timezone.split('/')[0]
    if prefix in PREFIX_REGIONS:
        return PREFIX_REGIONS[prefix]
    try:
        offset = (now or datetime.now(dt_timezone.utc)).astimezone(ZoneInfo(timezone)).utcoffset()
    except (ZoneInfoNotFoundError, ValueError) as e:
        logger.debug(f"Could not resolve timezone '{timezone}': {e}")
        return DEFAULT_REGION
    if offset is None:
        return DEFAULT_REGION
    hours = offset.total_seconds() / 3600
    for low, high, region in OFFSET_REGIONS:
        if low <= hours <= high:
            return region
    return DEFAULT_REGION


class SessionOptions(BaseModel):
    timezone: Optional[str] = None
    context_id: Optional[str] = Field(None, description="Continuation token to resume cookies/storage from an earlier session.")
    keep_alive: bool = True


class SessionHandle(BaseModel):
    """A live remote browser, addressable by id and live-view URL."""
    session_id: str
    live_view_url: str
    context_id: Optional[str] = None
    region: Optional[str] = None


class BrowserAction(BaseModel):
    """A primitive action with its instruction already resolved. Never persisted."""
    tool: StepTool
    instruction: str = Field('', repr=False)
    extraction_schema: Optional[ExtractionSchema] = None


class ActionOutcome(BaseModel):
    success: bool = True
    data: Any = None
    error: Optional[str] = None


class SessionProvider(ABC):
    """Interface for a remote browser/session provider.

    `destroy_session` must succeed silently for unknown or already destroyed ids;
    cleanup paths rely on it. Preventing double creation is the orchestrator's job.
    """

    @abstractmethod
    async def create_session(self, options: SessionOptions) -> SessionHandle:
        """Opens a new remote browser session."""

    @abstractmethod
    async def destroy_session(self, session_id: str) -> None:
        """Releases a session. Idempotent."""

    @abstractmethod
    async def dispatch(self, session_id: str, action: BrowserAction) -> ActionOutcome:
        """Runs one primitive action against the session.

        Raises `ProviderActionError` when the page rejects the action and
        `SessionUnavailableError` when the provider cannot be reached.
        """

    async def recording_events(self, session_id: str) -> list[dict[str, Any]]:
        """Returns the replay events recorded for a session, when the provider keeps them."""
        raise ProviderActionError(f"{type(self).__name__} does not keep session recordings.")

    async def aclose(self) -> None:
        """Releases client-side resources held by the provider itself."""
        return None
