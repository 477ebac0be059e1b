import json

import httpx
import pytest

from browser_task.agent.views import ExtractionSchema, StepTool
from browser_task.browser.provider import BrowserAction, SessionOptions, closest_region
from browser_task.browser.remote import RemoteSessionProvider
from browser_task.config import BrowserTaskConfig
from browser_task.exceptions import ProviderActionError, SessionUnavailableError, TaskConfigurationError

API = 'https://api.test'
ACTIONS = 'https://actions.test/v1'


class Recorder:
    """Collects requests and answers them from a route table."""

    def __init__(self, routes):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, str(request.url))
        if key not in self.routes:
            return httpx.Response(404, json={'error': 'not found'})
        handler = self.routes[key]
        return handler(request) if callable(handler) else handler

    def bodies(self, method: str, url: str) -> list[dict]:
        return [json.loads(r.content) for r in self.requests if r.method == method and str(r.url) == url]


def make_provider(routes, **kwargs) -> tuple[RemoteSessionProvider, Recorder]:
    recorder = Recorder(routes)
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    provider = RemoteSessionProvider(api_key='key', project_id='proj', api_url=API, actions_url=ACTIONS, client=client, **kwargs)
    return provider, recorder


def session_routes(overrides=None):
    routes = {
        ('POST', f'{API}/v1/contexts'): httpx.Response(200, json={'id': 'ctx-9'}),
        ('POST', f'{API}/v1/sessions'): httpx.Response(200, json={'id': 'sess-9'}),
        ('GET', f'{API}/v1/sessions/sess-9/debug'): httpx.Response(200, json={'debuggerFullscreenUrl': 'https://live.test/sess-9'}),
        ('POST', f'{API}/v1/sessions/sess-9'): httpx.Response(200, json={'id': 'sess-9', 'status': 'COMPLETED'}),
    }
    routes.update(overrides or {})
    return routes


@pytest.mark.asyncio
async def test_create_session_creates_context_and_fetches_live_view():
    provider, recorder = make_provider(session_routes())

    handle = await provider.create_session(SessionOptions(timezone='America/New_York'))

    assert handle.session_id == 'sess-9'
    assert handle.live_view_url == 'https://live.test/sess-9'
    assert handle.context_id == 'ctx-9'
    assert handle.region == 'us-east-1'
    body = recorder.bodies('POST', f'{API}/v1/sessions')[0]
    assert body == {
        'projectId': 'proj',
        'browserSettings': {'context': {'id': 'ctx-9', 'persist': True}},
        'keepAlive': True,
        'region': 'us-east-1',
    }
    assert recorder.requests[0].headers['X-BB-API-Key'] == 'key'


@pytest.mark.asyncio
async def test_create_session_reuses_given_context():
    provider, recorder = make_provider(session_routes())

    handle = await provider.create_session(SessionOptions(context_id='ctx-existing'))

    assert handle.context_id == 'ctx-existing'
    assert recorder.bodies('POST', f'{API}/v1/contexts') == []


@pytest.mark.asyncio
async def test_missing_live_view_releases_the_session():
    provider, recorder = make_provider(session_routes({
        ('GET', f'{API}/v1/sessions/sess-9/debug'): httpx.Response(200, json={}),
    }))

    with pytest.raises(SessionUnavailableError):
        await provider.create_session(SessionOptions())
    assert recorder.bodies('POST', f'{API}/v1/sessions/sess-9') == [{'projectId': 'proj', 'status': 'REQUEST_RELEASE'}]


@pytest.mark.asyncio
async def test_server_error_maps_to_session_unavailable():
    provider, _ = make_provider(session_routes({
        ('POST', f'{API}/v1/sessions'): httpx.Response(503, json={'error': 'busy'}),
    }))

    with pytest.raises(SessionUnavailableError):
        await provider.create_session(SessionOptions(context_id='ctx-1'))


@pytest.mark.asyncio
async def test_transport_error_maps_to_session_unavailable():
    def boom(request):
        raise httpx.ConnectError('connection refused', request=request)

    provider, _ = make_provider({('POST', f'{API}/v1/sessions'): boom})

    with pytest.raises(SessionUnavailableError):
        await provider.create_session(SessionOptions(context_id='ctx-1'))


@pytest.mark.asyncio
async def test_destroy_unknown_session_is_silent():
    provider, recorder = make_provider({
        ('POST', f'{API}/v1/sessions/gone'): httpx.Response(404, json={'error': 'not found'}),
    })

    await provider.destroy_session('gone')
    await provider.destroy_session('gone')

    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_released_session_memory_is_bounded():
    provider, recorder = make_provider({
        ('POST', f'{API}/v1/sessions/sess-{n}'): httpx.Response(200, json={'status': 'COMPLETED'}) for n in range(3)
    }, max_released_ids=2)

    for n in range(3):
        await provider.destroy_session(f'sess-{n}')
    await provider.destroy_session('sess-2')
    await provider.destroy_session('sess-0')

    assert len(provider._released) == 2
    # sess-0 was forgotten, so releasing it again goes back to the provider
    assert len(recorder.requests) == 4


@pytest.mark.asyncio
async def test_destroy_server_error_raises():
    provider, _ = make_provider({
        ('POST', f'{API}/v1/sessions/sess-9'): httpx.Response(500),
    })

    with pytest.raises(SessionUnavailableError):
        await provider.destroy_session('sess-9')


@pytest.mark.asyncio
async def test_dispatch_navigate_payload():
    provider, recorder = make_provider({
        ('POST', f'{ACTIONS}/sessions/sess-9/navigate'): httpx.Response(200, json={'success': True}),
    })

    outcome = await provider.dispatch('sess-9', BrowserAction(tool=StepTool.GOTO, instruction='https://example.com'))

    assert outcome.success is True
    body = recorder.bodies('POST', f'{ACTIONS}/sessions/sess-9/navigate')[0]
    assert body == {'url': 'https://example.com', 'options': {'waitUntil': 'commit', 'timeout': 60000}}


@pytest.mark.asyncio
async def test_dispatch_extract_sends_schema_and_returns_data():
    provider, recorder = make_provider({
        ('POST', f'{ACTIONS}/sessions/sess-9/extract'): httpx.Response(200, json={'success': True, 'data': {'price': 99}}),
    })
    schema = ExtractionSchema.from_dict({'price': 'number'})

    outcome = await provider.dispatch('sess-9', BrowserAction(
        tool=StepTool.EXTRACT, instruction='the price', extraction_schema=schema))

    assert outcome.data == {'price': 99}
    body = recorder.bodies('POST', f'{ACTIONS}/sessions/sess-9/extract')[0]
    assert body['schemaDefinition']['properties'] == {'price': {'type': 'number'}}


@pytest.mark.asyncio
async def test_dispatch_action_failure_maps_to_provider_action_error():
    provider, _ = make_provider({
        ('POST', f'{ACTIONS}/sessions/sess-9/act'): httpx.Response(200, json={'success': False, 'error': 'no such button'}),
    })

    with pytest.raises(ProviderActionError, match='no such button'):
        await provider.dispatch('sess-9', BrowserAction(tool=StepTool.ACT, instruction='click buy'))


@pytest.mark.asyncio
async def test_dispatch_on_unknown_session_is_unavailable():
    provider, _ = make_provider({})

    with pytest.raises(SessionUnavailableError):
        await provider.dispatch('sess-9', BrowserAction(tool=StepTool.NAVBACK))


@pytest.mark.asyncio
async def test_dispatch_after_release_is_unavailable():
    provider, recorder = make_provider(session_routes())
    await provider.destroy_session('sess-9')

    with pytest.raises(SessionUnavailableError):
        await provider.dispatch('sess-9', BrowserAction(tool=StepTool.GOTO, instruction='https://example.com'))
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_recording_events():
    provider, _ = make_provider({
        ('GET', f'{API}/v1/sessions/sess-9/recording'): httpx.Response(200, json=[{'type': 2, 'timestamp': 1}]),
    })

    assert await provider.recording_events('sess-9') == [{'type': 2, 'timestamp': 1}]


def test_closest_region():
    assert closest_region(None) == 'us-west-2'
    assert closest_region('America/Chicago') == 'us-east-1'
    assert closest_region('America/Los_Angeles') == 'us-west-2'
    assert closest_region('Europe/Berlin') == 'eu-central-1'
    assert closest_region('Asia/Tokyo') == 'ap-southeast-1'
    assert closest_region('Not/AZone') == 'us-west-2'


def test_from_config_requires_credentials():
    with pytest.raises(TaskConfigurationError):
        RemoteSessionProvider.from_config(BrowserTaskConfig(api_key=None, project_id='proj'))


def test_config_from_env(monkeypatch):
    monkeypatch.setenv('BROWSERBASE_API_KEY', 'k')
    monkeypatch.setenv('BROWSERBASE_PROJECT_ID', 'p')
    monkeypatch.setenv('BROWSER_TASK_LOGGING_LEVEL', 'DEBUG')
    monkeypatch.setenv('BROWSER_TASK_REQUEST_TIMEOUT', '12.5')

    config = BrowserTaskConfig.from_env()

    assert config.require_credentials() == ('k', 'p')
    assert config.logging_level == 'debug'
    assert config.request_timeout == 12.5
