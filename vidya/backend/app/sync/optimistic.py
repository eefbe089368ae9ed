"""
Vidya Optimistic State — one commit/rollback pattern for every mutating call.

Each key holds two values:
  - the *visible* value the UI renders (may be optimistic)
  - the *confirmed* value last acknowledged by the server (response or push)

    apply(changes, call):
        snapshot visible values ─▶ show optimistic values ─▶ await call (timeout)
          success ─▶ confirmed := server result (or the optimistic value)
          failure ─▶ visible := confirmed (or the snapshot when other calls
                     on the same key are still in flight); error re-raised

Server pushes go through ``confirm()``: they update the confirmed value at
once and the visible value only when no mutation on that key is in flight,
so a push never clobbers a click the server has not answered yet.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable, Iterator, List, Mapping, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

MISSING = object()


class OptimisticStore:

    def __init__(self):
        self._visible: Dict[Hashable, Any] = {}
        self._confirmed: Dict[Hashable, Any] = {}
        self._inflight: Dict[Hashable, int] = {}
        self._listeners: List[Callable[[Hashable, Any], None]] = []

    # ── Reads ────────────────────────────────────────────────────────

    def get(self, key: Hashable, default: Any = None) -> Any:
        value = self._visible.get(key, MISSING)
        return default if value is MISSING else value

    def confirmed(self, key: Hashable, default: Any = None) -> Any:
        value = self._confirmed.get(key, MISSING)
        return default if value is MISSING else value

    def is_pending(self, key: Hashable) -> bool:
        return self._inflight.get(key, 0) > 0

    def items(self, kind: Optional[str] = None) -> Iterator[Tuple[Hashable, Any]]:
        """Visible (key, value) pairs, optionally only tuple keys tagged ``kind``."""
        for key, value in list(self._visible.items()):
            if kind is not None and not (isinstance(key, tuple) and key and key[0] == kind):
                continue
            yield key, value

    # ── Listeners ────────────────────────────────────────────────────

    def add_listener(self, fn: Callable[[Hashable, Any], None]):
        self._listeners.append(fn)

    def remove_listener(self, fn: Callable[[Hashable, Any], None]):
        if fn in self._listeners:
            self._listeners.remove(fn)

    def _set_visible(self, key: Hashable, value: Any):
        if value is MISSING:
            self._visible.pop(key, None)
        else:
            self._visible[key] = value
        for fn in list(self._listeners):
            try:
                fn(key, None if value is MISSING else value)
            except Exception as e:
                logger.warning(f"State listener failed for {key!r}: {e}")

    # ── Authoritative updates ────────────────────────────────────────

    def confirm(self, key: Hashable, value: Any):
        """Record a server-confirmed value (from a response or a push)."""
        self._confirmed[key] = value
        if not self.is_pending(key):
            self._set_visible(key, value)

    def forget(self, key: Hashable):
        self._confirmed.pop(key, None)
        if not self.is_pending(key):
            self._set_visible(key, MISSING)

    # ── Optimistic mutations ─────────────────────────────────────────

    async def apply(
        self,
        changes: Mapping[Hashable, Any],
        call: Callable[[], Awaitable[T]],
        timeout: Optional[float] = None,
        confirm: Optional[Callable[[T], Mapping[Hashable, Any]]] = None,
    ) -> T:
        """Show ``changes`` now, run ``call``, keep or roll back on its outcome."""
        snapshot = {key: self._visible.get(key, MISSING) for key in changes}
        for key, value in changes.items():
            self._confirmed.setdefault(key, snapshot[key])
            self._inflight[key] = self._inflight.get(key, 0) + 1
            self._set_visible(key, value)

        try:
            if timeout is not None:
                result = await asyncio.wait_for(call(), timeout=timeout)
            else:
                result = await call()
        except BaseException:
            for key in changes:
                self._release(key)
                if self.is_pending(key):
                    restore = snapshot[key]
                else:
                    restore = self._confirmed.get(key, snapshot[key])
                self._set_visible(key, restore)
            raise

        authoritative = dict(confirm(result)) if confirm is not None else dict(changes)
        for key in changes:
            self._release(key)
        for key, value in authoritative.items():
            self.confirm(key, value)
        return result

    async def mutate(
        self,
        key: Hashable,
        value: Any,
        call: Callable[[], Awaitable[T]],
        timeout: Optional[float] = None,
        confirm: Optional[Callable[[T], Any]] = None,
    ) -> T:
        """Single-key form of ``apply``."""
        wrapped = (lambda result: {key: confirm(result)}) if confirm is not None else None
        return await self.apply({key: value}, call, timeout=timeout, confirm=wrapped)

    def _release(self, key: Hashable):
        remaining = self._inflight.get(key, 0) - 1
        if remaining > 0:
            self._inflight[key] = remaining
        else:
            self._inflight.pop(key, None)
