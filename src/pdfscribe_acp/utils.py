"""Small helpers shared across the client."""

from __future__ import annotations

import inspect
from collections.abc import Callable
from typing import Any


async def maybe_await(handler: Callable[..., Any], *args: Any) -> Any:
    """Call a handler that may be a plain function or a coroutine function."""
    result = handler(*args)
    if inspect.isawaitable(result):
        return await result
    return result
