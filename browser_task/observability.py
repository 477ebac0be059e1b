from __future__ import annotations

import inspect
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

try:
    from lmnr import Laminar
except ImportError:
    Laminar = None

R = TypeVar('R')


def observe_debug(
    name: Optional[str] = None,
    span_type: str = 'DEFAULT',
    input_args: Optional[Sequence[str]] = None,
    output: Optional[Callable[[Any], Any]] = None,
) -> Callable[[Callable[..., Awaitable[R]]], Callable[..., Awaitable[R]]]:
    """
    Runs an async function inside a Laminar span when lmnr is installed.

    Only the arguments named in `input_args` are recorded on the span, and the
    return value is recorded through `output`. Leave either unset to record nothing.
    """

    def decorator(func: Callable[..., Awaitable[R]]) -> Callable[..., Awaitable[R]]:
        span_name = name or func.__name__
        signature = inspect.signature(func)

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> R:
            if Laminar is None:
                return await func(*args, **kwargs)

            span_input = None
            if input_args:
                bound = signature.bind_partial(*args, **kwargs).arguments
                span_input = {arg: bound[arg] for arg in input_args if arg in bound}

            with Laminar.start_as_current_span(name=span_name, input=span_input, span_type=span_type):
                result = await func(*args, **kwargs)
                if output is not None:
                    Laminar.set_span_output(output(result))
                return result

        return wrapper

    return decorator
