"""
collection-bridge in-process event bus.

The WebSocket server doesn't know which handler owns which message.
It fires an action on the bus and moves on:

    emitter.emit_action("websocket.message", {"client": client, "message": msg})

Handlers register for the actions they care about and filter on the
message type themselves. Delivery is synchronous and fire-and-forget:

  - listeners run in registration order, inside emit_action()
  - a listener that returns a coroutine gets it scheduled as a task on
    the running loop; emit_action() does not wait for it
  - nothing is returned to the emitter's caller, and a failing listener
    is logged — it never breaks the emitter or the other listeners

The emitter keeps a reference to every task it scheduled until the task
finishes. drain() waits for all of them (graceful shutdown, tests).
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

Listener = Callable[[Any], Any]


class Emitter:

    def __init__(self):
        # action name → listeners in registration order
        self._actions: dict[str, list[Listener]] = defaultdict(list)
        self._pending: set[asyncio.Task] = set()

    # ── Registration ──────────────────────────────────────────

    def on_action(self, action: str, listener: Listener) -> Listener:
        self._actions[action].append(listener)
        return listener

    def off_action(self, action: str, listener: Listener) -> None:
        listeners = self._actions.get(action, [])
        if listener in listeners:
            listeners.remove(listener)

    def off_all(self) -> None:
        self._actions.clear()

    def listeners(self, action: str) -> list[Listener]:
        return list(self._actions.get(action, []))

    # ── Delivery ──────────────────────────────────────────────

    def emit_action(self, action: str, payload: Any = None) -> None:
        """Call every listener for ``action``. Never raises, never waits."""
        for listener in self.listeners(action):
            try:
                result = listener(payload)
            except Exception:
                logger.exception(f"Listener {listener!r} failed on {action!r}")
                continue
            if inspect.isawaitable(result):
                self._schedule(action, result)

    def _schedule(self, action: str, awaitable) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error(f"No running event loop for async listener on {action!r}; dropped")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        task = asyncio.ensure_future(awaitable, loop=loop)
        self._pending.add(task)
        task.add_done_callback(lambda t: self._finished(action, t))

    def _finished(self, action: str, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"Async listener failed on {action!r}: {exc!r}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait until every scheduled listener task has finished."""
        while self._pending:
            await asyncio.wait(set(self._pending), timeout=timeout)
            if timeout is not None:
                break
