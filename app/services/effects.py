# app/services/effects.py
#
# Side effects that must never block or undo a committed state change
# (payout transfers, notifications, emails). They are queued while a request
# runs and flushed after the transaction commits, typically from a FastAPI
# BackgroundTask. Every effect's outcome is logged; failures are returned,
# never raised.
from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable

from starlette.concurrency import run_in_threadpool

from app.core.log import component_logger

_log = component_logger("effects")


@dataclass(frozen=True)
class EffectOutcome:
    name: str
    ok: bool
    result: Any = None
    error: str | None = None


async def run_effect(name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> EffectOutcome:
    try:
        if inspect.iscoroutinefunction(fn):
            result = await fn(*args, **kwargs)
        else:
            # blocking SDK / DB calls stay off the event loop
            result = await run_in_threadpool(fn, *args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
    except Exception as e:
        err = f"{type(e).__name__}: {str(e)}"
        _log("effect failed:", name, err, level=logging.WARNING)
        return EffectOutcome(name=name, ok=False, error=err)

    _log("effect ok:", name, level=logging.DEBUG)
    return EffectOutcome(name=name, ok=True, result=result)


class EffectQueue:
    def __init__(self) -> None:
        self._pending: list[tuple[str, Callable[..., Any], tuple, dict]] = []

    def defer(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        self._pending.append((name, fn, args, kwargs))

    def discard(self) -> None:
        self._pending.clear()

    @property
    def names(self) -> list[str]:
        return [p[0] for p in self._pending]

    def __len__(self) -> int:
        return len(self._pending)

    async def flush(self) -> list[EffectOutcome]:
        pending, self._pending = self._pending, []
        outcomes: list[EffectOutcome] = []
        for name, fn, args, kwargs in pending:
            outcomes.append(await run_effect(name, fn, *args, **kwargs))
        return outcomes
