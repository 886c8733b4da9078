"""
Host callback invocation.

Negotiation transitions call back into the host wallet synchronously.
`invoke` turns anything a callback raises into `ExternalFailure`;
`CallbackBridge` lets coroutine callbacks living on an asyncio loop be
used from a transition running in a worker thread (`run_transition`).
"""

from __future__ import annotations

import asyncio
import functools
from typing import Any, Awaitable, Callable, Optional

from .errors import ExternalFailure, PayjoinError, ProtocolViolation


def invoke(name: str, fn: Callable[..., Any], *args: Any) -> Any:
    try:
        return fn(*args)
    except PayjoinError:
        raise
    except Exception as e:
        raise ExternalFailure(name, f"{type(e).__name__}: {e}") from e


def invoke_predicate(name: str, fn: Callable[..., Any], *args: Any) -> bool:
    result = invoke(name, fn, *args)
    if not isinstance(result, bool):
        raise ExternalFailure(name, f"expected a bool, got {type(result).__name__}")
    return result


class CallbackBridge:
    """Expose coroutine functions on `loop` as blocking callables for other threads."""

    def __init__(self, loop: asyncio.AbstractEventLoop, timeout: Optional[float] = None):
        self.loop = loop
        self.timeout = timeout

    def wrap(self, coro_fn: Callable[..., Awaitable[Any]]) -> Callable[..., Any]:
        @functools.wraps(coro_fn)
        def blocking(*args: Any) -> Any:
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is self.loop:
                raise ProtocolViolation(
                    "Bridged callback called on its own event loop; run the transition with run_transition()"
                )
            future = asyncio.run_coroutine_threadsafe(coro_fn(*args), self.loop)
            return future.result(self.timeout)

        return blocking


async def run_transition(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run a synchronous transition in a worker thread."""
    return await asyncio.to_thread(fn, *args, **kwargs)
