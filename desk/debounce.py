"""
debounce.py — Debounced async actions.

A DebouncedTask runs an async action once input has been quiet for `delay`
seconds. Each trigger() replaces the pending value and restarts the window,
so a burst of keystrokes produces a single save with the last value.

The task owns its cancellation: cancel() drops anything still waiting in the
window, but an action that has already started is left to finish.

Usage:
    autosave = DebouncedTask(2.0, save_code, name="autosave")
    autosave.trigger("def initialize(context): ...")
    await autosave.flush()      # run now instead of waiting
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from loguru import logger


T = TypeVar("T")


class DebouncedTask(Generic[T]):
    """Runs `action(value)` after `delay` seconds without a new trigger."""

    def __init__(
        self,
        delay: float,
        action: Callable[[T], Awaitable[Any]],
        name: str = "debounce",
    ) -> None:
        if delay < 0:
            raise ValueError(f"delay must be >= 0, got {delay}")
        self.delay = delay
        self.action = action
        self.name = name

        self.runs: int = 0
        self.last_error: Optional[Exception] = None

        self._timer: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None
        self._value: Optional[T] = None
        self._has_value = False

    # ─── State ────────────────────────────────────────────────────────────────

    @property
    def pending(self) -> bool:
        """True while a value is waiting for its quiet window to elapse."""
        return self._has_value

    @property
    def pending_value(self) -> Optional[T]:
        return self._value if self._has_value else None

    @property
    def running(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    # ─── Control ──────────────────────────────────────────────────────────────

    def trigger(self, value: T) -> None:
        """Schedule `value`, replacing any earlier pending value."""
        self._cancel_timer()
        self._value = value
        self._has_value = True
        self._timer = asyncio.get_running_loop().create_task(self._wait_then_run())

    def cancel(self) -> None:
        """Drop the pending value. An action already running is not interrupted."""
        self._cancel_timer()
        self._value = None
        self._has_value = False

    def detach(self) -> Optional[T]:
        """
        Take the pending value out of the window without running it.

        Returns None if nothing was pending. Pair with run() when the value
        must not be replaced by a later trigger().
        """
        if not self._has_value:
            return None
        self._cancel_timer()
        return self._take()

    async def run(self, value: T) -> None:
        """Run the action for `value` now, outside the debounce window."""
        await self._execute(value)

    async def flush(self) -> bool:
        """
        Run the pending action immediately.

        Returns True if there was something pending, False otherwise.
        """
        if not self._has_value:
            return False
        self._cancel_timer()
        value = self._take()
        await self._execute(value)
        return True

    async def wait(self) -> None:
        """Wait until nothing is pending or running."""
        while True:
            task = self._timer or self._inflight
            if task is None:
                return
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                # A re-trigger cancels the old timer; keep waiting on the new one
                if not task.cancelled():
                    raise

    # ─── Internals ────────────────────────────────────────────────────────────

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            if not self._timer.done():
                self._timer.cancel()
            self._timer = None

    def _take(self) -> Optional[T]:
        value = self._value
        self._value = None
        self._has_value = False
        return value

    async def _wait_then_run(self) -> None:
        await asyncio.sleep(self.delay)
        # Past the window: from here on cancel() must not touch this task
        self._timer = None
        self._inflight = asyncio.current_task()
        try:
            await self._execute(self._take())
        finally:
            self._inflight = None

    async def _execute(self, value: Optional[T]) -> None:
        self.runs += 1
        try:
            await self.action(value)
            self.last_error = None
        except Exception as exc:
            self.last_error = exc
            logger.error(f"{self.name}: action failed: {exc}")
