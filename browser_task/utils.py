from __future__ import annotations

import logging
import re
import time
from collections import OrderedDict
from functools import wraps
from typing import Any, Awaitable, Callable, Mapping, TypeVar

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r'%([A-Za-z0-9_\-]+)%')

R = TypeVar('R')


def find_placeholders(text: str) -> list[str]:
    """Returns the variable names referenced as `%name%` in `text`, in order of appearance."""
    return PLACEHOLDER_PATTERN.findall(text or '')


def substitute_variables(text: str, variables: Mapping[str, str] | None) -> str:
    """Resolves `%name%` placeholders. Unknown names are left untouched."""
    if not text or not variables:
        return text

    def _replace(match: re.Match) -> str:
        name = match.group(1)
        if name in variables:
            return str(variables[name])
        logger.warning(f"No value provided for placeholder '%{name}%', leaving it unresolved.")
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_replace, text)


def redact_sensitive_data(text: str, variables: Mapping[str, str] | None, keep_placeholders: bool = False) -> str:
    """Replaces placeholder tokens and any leaked secret values with `<secret>name</secret>`.

    With `keep_placeholders=True` only the resolved values are masked, so text meant
    for the planner can still reference `%name%`.
    """
    if not text:
        return text

    redacted = text
    if not keep_placeholders:
        redacted = PLACEHOLDER_PATTERN.sub(lambda m: f'<secret>{m.group(1)}</secret>', text)
    if not variables:
        return redacted

    # longest values first so a secret that contains another one is masked whole
    for name, value in sorted(variables.items(), key=lambda kv: len(str(kv[1] or '')), reverse=True):
        if value:
            redacted = redacted.replace(str(value), f'<secret>{name}</secret>')
    return redacted


def time_execution_async(additional_text: str = '') -> Callable[[Callable[..., Awaitable[R]]], Callable[..., Awaitable[R]]]:
    def decorator(func: Callable[..., Awaitable[R]]) -> Callable[..., Awaitable[R]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> R:
            start_time = time.monotonic()
            try:
                return await func(*args, **kwargs)
            finally:
                execution_time = time.monotonic() - start_time
                logger.debug(f'{additional_text} Execution time: {execution_time:.2f} seconds')

        return wrapper

    return decorator


class LRUDict(OrderedDict):
    """An OrderedDict that forgets its oldest entries once it holds more than `max_size`."""

    def __init__(self, max_size: int = 1024):
        super().__init__()
        self.max_size = max_size

    def __setitem__(self, key: Any, value: Any) -> None:
        super().__setitem__(key, value)
        self.move_to_end(key)
        while len(self) > self.max_size:
            self.popitem(last=False)
