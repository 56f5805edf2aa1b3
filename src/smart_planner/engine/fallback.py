# src/smart_planner/engine/fallback.py

"""
Bounded-timeout calls to external estimators.

Every oracle/store lookup made while scoring or optimizing goes through
call_with_fallback(): the call gets a fixed timeout, and a timeout or any error
is replaced by the documented default. Estimation failure degrades the estimate,
it never aborts scheduling.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class Estimate(Generic[T]):
    value: T
    fallback: bool = False
    error: str | None = None


async def call_with_fallback(
        call: Callable[[], Awaitable[T]],
        *,
        default: T,
        timeout: float,
        label: str,
) -> Estimate[T]:
    """Await `call()` for at most `timeout` seconds; return `default` on timeout or error."""
    try:
        value = await asyncio.wait_for(call(), timeout=max(0.001, float(timeout)))
    except asyncio.TimeoutError:
        logger.warning("%s timed out after %.1fs; using default %r", label, timeout, default)
        return Estimate(default, fallback=True, error="timeout")
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.warning("%s failed (%s); using default %r", label, e.__class__.__name__, default)
        return Estimate(default, fallback=True, error=f"{e.__class__.__name__}: {e}")
    return Estimate(value)


async def run_blocking(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a synchronous port call (e.g. SQLite) off the event loop."""
    return await asyncio.to_thread(fn, *args, **kwargs)


def clamp_unit(value: Any, default: float) -> float:
    """Coerce an oracle answer into [0, 1]; non-numeric answers become the default."""
    try:
        v = float(value)
    except (TypeError, ValueError):
        return default
    if v != v:  # NaN
        return default
    return max(0.0, min(1.0, v))
