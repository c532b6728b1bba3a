"""Deadline-bounded provider calls: a timeout degrades, it never raises"""
from __future__ import annotations
import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Completed(Generic[T]):
    value: T
    elapsed_ms: float


@dataclass(frozen=True)
class TimedOut:
    timeout_s: float


DeadlineResult = Union[Completed[T], TimedOut]


async def run_with_deadline(aw: Awaitable[T], timeout_s: float) -> "DeadlineResult[T]":
    """Await ``aw`` for at most ``timeout_s`` seconds.

    On expiry the task is cancelled best-effort (a call running in a worker
    thread keeps going and its result is discarded) and ``TimedOut`` is
    returned. Exceptions raised by ``aw`` before the deadline propagate.
    """
    start = time.time()
    task = asyncio.ensure_future(aw)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout_s)
    except asyncio.CancelledError:
        task.cancel()
        raise
    if task in done:
        return Completed(task.result(), (time.time() - start) * 1000.0)
    task.cancel()
    task.add_done_callback(_discard)
    return TimedOut(timeout_s)


def _discard(task: "asyncio.Future") -> None:
    # Retrieve the late outcome so asyncio does not warn about it.
    if not task.cancelled():
        task.exception()
