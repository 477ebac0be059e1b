from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from browser_task.agent.views import StepTool
from browser_task.browser.provider import (
    ActionOutcome,
    BrowserAction,
    SessionHandle,
    SessionOptions,
    SessionProvider,
    closest_region,
)
from browser_task.config import DEFAULT_ACTIONS_URL, DEFAULT_API_URL, BrowserTaskConfig
from browser_task.exceptions import ProviderActionError, SessionUnavailableError
from browser_task.utils import LRUDict

logger = logging.getLogger(__name__)

PRIMITIVE_ENDPOINTS = {
    StepTool.GOTO: 'navigate',
    StepTool.ACT: 'act',
    StepTool.EXTRACT: 'extract',
    StepTool.OBSERVE: 'observe',
    StepTool.WAIT: 'wait',
    StepTool.NAVBACK: 'back',
    StepTool.CLOSE: 'close',
}

NAVIGATION_TIMEOUT_MS = 60000
# statuses the session API answers with when a session is already released
GONE_STATUSES = {404, 409, 410}


class RemoteSessionProvider(SessionProvider):
    """Talks to a hosted browser provider over its HTTP API."""

    def __init__(
        self,
        api_key: str,
        project_id: str,
        api_url: str = DEFAULT_API_URL,
        actions_url: str = DEFAULT_ACTIONS_URL,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
        max_released_ids: int = 1024,
    ):
        self.api_key = api_key
        self.project_id = project_id
        self.api_url = api_url.rstrip('/')
        self.actions_url = actions_url.rstrip('/')
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._released: LRUDict = LRUDict(max_size=max_released_ids)

    @classmethod
    def from_config(cls, config: BrowserTaskConfig, client: Optional[httpx.AsyncClient] = None) -> RemoteSessionProvider:
        api_key, project_id = config.require_credentials()
        return cls(
            api_key=api_key,
            project_id=project_id,
            api_url=config.api_url,
            actions_url=config.actions_url,
            timeout=config.request_timeout,
            client=client,
        )

    @property
    def _headers(self) -> dict[str, str]:
        return {
            'X-BB-API-Key': self.api_key,
            'X-BB-Project-Id': self.project_id,
            'Content-Type': 'application/json',
        }

    async def _request(self, method: str, url: str, json: Optional[dict[str, Any]] = None) -> httpx.Response:
        try:
            response = await self._client.request(method, url, json=json, headers=self._headers)
        except httpx.TransportError as e:
            raise SessionUnavailableError(f"{method} {url} failed: {type(e).__name__}: {e}") from e
        if response.status_code >= 500:
            raise SessionUnavailableError(f"Provider answered {response.status_code} to {method} {url}.")
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    def _expect_ok(self, response: httpx.Response, what: str) -> dict[str, Any]:
        body = self._json(response)
        if response.is_error or not isinstance(body, dict):
            raise SessionUnavailableError(f"Failed to {what}: HTTP {response.status_code}.")
        return body

    # Sessions ---------------------------------------------------------------

    async def create_session(self, options: SessionOptions) -> SessionHandle:
        context_id = options.context_id
        if not context_id:
            response = await self._request('POST', f'{self.api_url}/v1/contexts', json={'projectId': self.project_id})
            context_id = self._expect_ok(response, 'create browser context').get('id')
            if not context_id:
                raise SessionUnavailableError("Provider returned a context without an id.")

        region = closest_region(options.timezone)
        response = await self._request('POST', f'{self.api_url}/v1/sessions', json={
            'projectId': self.project_id,
            'browserSettings': {'context': {'id': context_id, 'persist': True}},
            'keepAlive': options.keep_alive,
            'region': region,
        })
        session_id = self._expect_ok(response, 'create session').get('id')
        if not session_id:
            raise SessionUnavailableError("Provider returned a session without an id.")

        try:
            response = await self._request('GET', f'{self.api_url}/v1/sessions/{session_id}/debug')
            live_view_url = self._expect_ok(response, 'fetch live view URL').get('debuggerFullscreenUrl')
            if not live_view_url:
                raise SessionUnavailableError(f"Provider returned no live view URL for session {session_id}.")
        except SessionUnavailableError:
            # the session exists remotely at this point and nobody else knows its id
            await self.destroy_session(session_id)
            raise

        logger.info(f"Created session {session_id} in {region} (context {context_id}).")
        return SessionHandle(session_id=session_id, live_view_url=live_view_url, context_id=context_id, region=region)

    async def destroy_session(self, session_id: str) -> None:
        if not session_id or session_id in self._released:
            return
        response = await self._request('POST', f'{self.api_url}/v1/sessions/{session_id}', json={
            'projectId': self.project_id,
            'status': 'REQUEST_RELEASE',
        })
        if response.status_code in GONE_STATUSES:
            logger.debug(f"Session {session_id} was already released (HTTP {response.status_code}).")
        elif response.is_error:
            raise SessionUnavailableError(f"Failed to release session {session_id}: HTTP {response.status_code}.")
        self._released[session_id] = True
        logger.info(f"Released session {session_id}.")

    async def recording_events(self, session_id: str) -> list[dict[str, Any]]:
        response = await self._request('GET', f'{self.api_url}/v1/sessions/{session_id}/recording')
        body = self._json(response)
        if response.is_error or not isinstance(body, list):
            raise SessionUnavailableError(f"Invalid recording events for session {session_id}.")
        return body

    # Actions ----------------------------------------------------------------

    def _payload(self, action: BrowserAction) -> dict[str, Any]:
        if action.tool == StepTool.GOTO:
            return {'url': action.instruction, 'options': {'waitUntil': 'commit', 'timeout': NAVIGATION_TIMEOUT_MS}}
        if action.tool == StepTool.ACT:
            return {'action': action.instruction}
        if action.tool == StepTool.EXTRACT:
            payload: dict[str, Any] = {'instruction': action.instruction}
            if action.extraction_schema:
                payload['schemaDefinition'] = action.extraction_schema.to_json_schema()
            return payload
        if action.tool == StepTool.OBSERVE:
            return {'instruction': action.instruction}
        if action.tool == StepTool.WAIT:
            try:
                return {'timeout': int(action.instruction.strip())}
            except ValueError:
                raise ProviderActionError(f"WAIT expects a duration in milliseconds, got '{action.instruction}'.")
        return {}

    async def dispatch(self, session_id: str, action: BrowserAction) -> ActionOutcome:
        if session_id in self._released:
            raise SessionUnavailableError(f"Session {session_id} has already been released.")

        endpoint = PRIMITIVE_ENDPOINTS[action.tool]
        payload = self._payload(action)
        response = await self._request('POST', f'{self.actions_url}/sessions/{session_id}/{endpoint}', json=payload)
        if response.status_code == 404:
            raise SessionUnavailableError(f"Session {session_id} is unknown to the provider.")

        body = self._json(response)
        body = body if isinstance(body, dict) else {}
        if response.is_error or body.get('success') is False:
            raise ProviderActionError(body.get('error') or f"{action.tool.value} failed with HTTP {response.status_code}.")
        return ActionOutcome(success=True, data=body.get('data'))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
