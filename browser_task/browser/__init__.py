from browser_task.browser.provider import (
    ActionOutcome,
    BrowserAction,
    SessionHandle,
    SessionOptions,
    SessionProvider,
    closest_region,
)
from browser_task.browser.remote import RemoteSessionProvider

__all__ = [
    'ActionOutcome',
    'BrowserAction',
    'RemoteSessionProvider',
    'SessionHandle',
    'SessionOptions',
    'SessionProvider',
    'closest_region',
]
