"""
editor.py — Which code source owns the strategy editor.

Three writers compete for the editor's single code value: the persisted
strategy code, an external injection (AI-generated code, templates) and the
user's keystrokes. EditorArbiter decides who wins:

  idle                   no strategy selected; the scaffold is shown
  server-authoritative   persisted code shown; autosave active
  externally-injected    injected code shown; autosave suspended until a
                         refresh shows the backend has persisted it
  user-editing           user has typed; autosave fires after a quiet period

Keystrokes always beat a pending injection; an injection beats a stale
persisted copy. Validation runs on its own, shorter quiet period and never
raises.

Usage:
    editor = EditorArbiter(save=save_code, autosave_delay=2.0, validate=check_code)
    editor.select_strategy("s1", strategy.code)
    editor.inject(generated_code)
    editor.observe_persisted(refreshed.code)   # after re-fetching the strategy
    editor.edit(editor.value + "\\n# tweak")
    await editor.close()
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from loguru import logger

from debounce import DebouncedTask
from errors import DeskError, describe_error
from strategies_api import ValidationResult


# ─── Constants ────────────────────────────────────────────────────────────────

DEFAULT_CODE = (
    "def initialize(context):\n"
    "    # Strategy initialization\n"
    "    pass\n"
    "\n"
    "def handle_data(context, data):\n"
    "    # Strategy logic\n"
    "    pass\n"
)

SaveFn = Callable[[str, str, bool], Awaitable[Any]]  # (strategy_id, code, auto_save)
ValidateFn = Callable[[str], Awaitable[ValidationResult]]


class EditorState(str, Enum):
    IDLE = "idle"
    SERVER_AUTHORITATIVE = "server-authoritative"
    EXTERNALLY_INJECTED = "externally-injected"
    USER_EDITING = "user-editing"


def normalize_code(code: str) -> str:
    """Line endings unified and trailing blank lines dropped."""
    return code.replace("\r\n", "\n").replace("\r", "\n").rstrip("\n")


def codes_match(a: Optional[str], b: Optional[str]) -> bool:
    if a is None or b is None:
        return a is b
    return normalize_code(a) == normalize_code(b)


# ─── Arbiter ──────────────────────────────────────────────────────────────────

class EditorArbiter:
    """State machine owning the editor value, autosave and validation."""

    def __init__(
        self,
        save: SaveFn,
        autosave_delay: float = 2.0,
        validate: Optional[ValidateFn] = None,
        validation_delay: float = 1.0,
    ) -> None:
        self._save = save
        self._validate = validate

        self.state = EditorState.IDLE
        self.value = DEFAULT_CODE
        self.strategy_id: Optional[str] = None
        self.injected: Optional[str] = None
        self.last_saved: Optional[str] = None

        self.validation: Optional[ValidationResult] = None
        self.save_error: Optional[str] = None
        self.saves = 0

        self._autosave: DebouncedTask[Tuple[str, str]] = DebouncedTask(
            autosave_delay, self._autosave_action, name="autosave"
        )
        self._flushes: List[asyncio.Task] = []
        self._validation: Optional[DebouncedTask[str]] = None
        if validate is not None:
            self._validation = DebouncedTask(validation_delay, self._validate_action, name="validate")

    # ─── Queries ──────────────────────────────────────────────────────────────

    @property
    def autosave_enabled(self) -> bool:
        return self.state in (EditorState.SERVER_AUTHORITATIVE, EditorState.USER_EDITING)

    @property
    def autosave_pending(self) -> bool:
        return self._autosave.pending

    @property
    def dirty(self) -> bool:
        return self.state != EditorState.IDLE and not codes_match(self.value, self.last_saved)

    # ─── Transitions ──────────────────────────────────────────────────────────

    def select_strategy(self, strategy_id: Optional[str], persisted_code: Optional[str] = None) -> None:
        """
        Show a strategy's persisted code (None deselects). A pending autosave
        for the previous strategy is saved to that strategy straight away.
        """
        if strategy_id is None:
            self.deselect()
            return
        self._flush_previous()
        self.strategy_id = strategy_id
        self.state = EditorState.SERVER_AUTHORITATIVE
        self.injected = None
        self.last_saved = persisted_code or ""
        self.value = persisted_code or DEFAULT_CODE
        self.save_error = None
        self.validation = None
        logger.debug(f"Editor: strategy {strategy_id} selected")

    def deselect(self) -> None:
        self._flush_previous()
        self.state = EditorState.IDLE
        self.strategy_id = None
        self.injected = None
        self.last_saved = None
        self.value = DEFAULT_CODE
        self.validation = None
        if self._validation is not None:
            self._validation.cancel()

    def inject(self, code: str) -> bool:
        """External code arrives: show it at once and hold autosave back."""
        if not code or not code.strip():
            return False
        self.value = code
        self._schedule_validation(code)
        if self.state == EditorState.IDLE:
            # Nothing to persist to; the scaffold is simply replaced
            return True
        self._cancel_autosave_for_current()
        self.injected = code
        self.state = EditorState.EXTERNALLY_INJECTED
        logger.info(f"Editor: external code injected into {self.strategy_id}, autosave suspended")
        return True

    def observe_persisted(self, code: Optional[str]) -> None:
        """A refresh delivered the strategy's persisted code."""
        if self.state == EditorState.IDLE or code is None:
            return
        self.last_saved = code

        if self.state == EditorState.EXTERNALLY_INJECTED:
            if codes_match(code, self.injected):
                self.state = EditorState.SERVER_AUTHORITATIVE
                self.injected = None
                logger.info("Editor: injected code confirmed persisted, autosave resumed")
            # A stale copy never overwrites a pending injection
            return

        if self.state == EditorState.SERVER_AUTHORITATIVE and not self._autosave.pending:
            self.value = code

    def edit(self, code: str) -> None:
        """A keystroke. Always wins over a pending injection."""
        self.value = code
        self._schedule_validation(code)
        if self.state == EditorState.IDLE:
            return
        if self.state == EditorState.EXTERNALLY_INJECTED:
            logger.debug("Editor: user typed over injected code, autosave resumed")
        self.injected = None
        self.state = EditorState.USER_EDITING
        self._autosave.trigger((self.strategy_id or "", code))

    async def save_now(self) -> None:
        """
        Explicit save of the current value (auto_save=False). Errors are
        raised to the caller and also kept in save_error.
        """
        if self.state == EditorState.IDLE or not self.strategy_id:
            raise ValueError("no strategy selected")
        pending = self._autosave.pending_value
        if pending is not None and pending[0] != self.strategy_id:
            await self._autosave.flush()
        else:
            self._autosave.cancel()

        strategy_id, code = self.strategy_id, self.value
        try:
            await self._save(strategy_id, code, False)
        except DeskError as exc:
            self.save_error = describe_error(exc)
            raise
        self.saves += 1
        self.save_error = None
        if strategy_id == self.strategy_id:
            self.last_saved = code
            self.injected = None
            if codes_match(self.value, code):
                self.state = EditorState.SERVER_AUTHORITATIVE
        logger.info(f"Editor: saved {strategy_id}")

    async def flush(self) -> None:
        """Run a pending autosave now."""
        await self._autosave.flush()

    async def wait_idle(self) -> None:
        await self._drain_flushes()
        await self._autosave.wait()
        if self._validation is not None:
            await self._validation.wait()

    async def close(self) -> None:
        await self._drain_flushes()
        await self._autosave.flush()
        await self._autosave.wait()
        if self._validation is not None:
            self._validation.cancel()

    # ─── Internals ────────────────────────────────────────────────────────────

    def _flush_previous(self) -> None:
        # Taken now so a later edit cannot replace it before the save runs.
        # A pending autosave implies a running loop (trigger() needs one)
        if self._autosave.pending:
            item = self._autosave.detach()
            self._flushes.append(asyncio.get_running_loop().create_task(self._autosave.run(item)))

    async def _drain_flushes(self) -> None:
        while self._flushes:
            await self._flushes.pop(0)

    def _cancel_autosave_for_current(self) -> None:
        pending = self._autosave.pending_value
        if pending is not None and pending[0] == self.strategy_id:
            self._autosave.cancel()

    def _schedule_validation(self, code: str) -> None:
        if self._validation is not None:
            self._validation.trigger(code)

    async def _autosave_action(self, item: Tuple[str, str]) -> None:
        strategy_id, code = item
        current = strategy_id == self.strategy_id
        if current and self.state == EditorState.EXTERNALLY_INJECTED:
            return
        if current and codes_match(code, self.last_saved):
            logger.debug(f"Editor: autosave skipped, {strategy_id} unchanged")
            if self.state == EditorState.USER_EDITING and self.value == code:
                self.state = EditorState.SERVER_AUTHORITATIVE
            return

        try:
            await self._save(strategy_id, code, True)
        except DeskError as exc:
            self.save_error = describe_error(exc)
            logger.error(f"Editor: autosave of {strategy_id} failed: {self.save_error}")
            return

        self.saves += 1
        self.save_error = None
        logger.info(f"Editor: autosaved {strategy_id}")
        if strategy_id == self.strategy_id:
            self.last_saved = code
            if self.state == EditorState.USER_EDITING and self.value == code:
                self.state = EditorState.SERVER_AUTHORITATIVE

    async def _validate_action(self, code: str) -> None:
        if code != self.value or self._validate is None:
            return
        try:
            result = await self._validate(code)
        except DeskError as exc:
            self.validation = None
            logger.warning(f"Editor: validation failed: {describe_error(exc)}")
            return
        if code == self.value:
            self.validation = result
