from __future__ import annotations

import os
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from browser_task.exceptions import TaskConfigurationError

DEFAULT_API_URL = 'https://api.browserbase.com'
DEFAULT_ACTIONS_URL = 'https://api.stagehand.browserbase.com/v1'

LogLevel = Literal['debug', 'info', 'result']


class BrowserTaskConfig(BaseModel):
    """Process-wide settings, read from the environment."""
    api_key: Optional[str] = Field(None, description="Provider API key (BROWSERBASE_API_KEY).")
    project_id: Optional[str] = Field(None, description="Provider project id (BROWSERBASE_PROJECT_ID).")
    api_url: str = Field(DEFAULT_API_URL, description="Base URL of the session API.")
    actions_url: str = Field(DEFAULT_ACTIONS_URL, description="Base URL of the primitive-action API.")
    logging_level: LogLevel = 'info'
    request_timeout: float = Field(60.0, gt=0, description="Timeout in seconds for a single provider round-trip.")

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> BrowserTaskConfig:
        load_dotenv(env_file)
        return cls(
            api_key=os.getenv('BROWSERBASE_API_KEY'),
            project_id=os.getenv('BROWSERBASE_PROJECT_ID'),
            api_url=os.getenv('BROWSERBASE_API_URL', DEFAULT_API_URL),
            actions_url=os.getenv('BROWSERBASE_ACTIONS_URL', DEFAULT_ACTIONS_URL),
            logging_level=os.getenv('BROWSER_TASK_LOGGING_LEVEL', 'info').lower(),
            request_timeout=float(os.getenv('BROWSER_TASK_REQUEST_TIMEOUT', '60')),
        )

    def require_credentials(self) -> tuple[str, str]:
        if not self.api_key or not self.project_id:
            raise TaskConfigurationError("BROWSERBASE_API_KEY and BROWSERBASE_PROJECT_ID must both be set.")
        return self.api_key, self.project_id
