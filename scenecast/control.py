"""Cooperative cancel / pause signalling for long pipeline runs.

A RunControl is created per run and shared between whoever drives the run
(an HTTP handler, the CLI, a test) and the pipeline. The pipeline checks it
before each unit of work and wraps every suspending call with guard():

    control = RunControl()
    text = await control.guard(llm("segmenter", prompt))
    await control.checkpoint()

Cancellation is a signal, not an error condition: Cancelled is raised so
callers can unwind, and partial results produced before it stay valid.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

POLL_INTERVAL = 0.25  # seconds between cancel checks while paused


class Cancelled(Exception):
    """Raised inside a run once its RunControl has been cancelled."""


class RunControl:
    def __init__(self, poll_interval: float = POLL_INTERVAL) -> None:
        self._cancelled = asyncio.Event()
        self._paused = False
        self._poll_interval = poll_interval

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def paused(self) -> bool:
        return self._paused

    def cancel(self) -> None:
        logger.debug("run cancelled")
        self._cancelled.set()

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False

    async def checkpoint(self) -> None:
        """Raise Cancelled if cancelled; block while paused.

        While paused the cancel flag is re-checked every poll_interval, so a
        paused run still stops promptly when cancelled.
        """
        if self.cancelled:
            raise Cancelled()
        while self._paused:
            try:
                await asyncio.wait_for(self._cancelled.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                continue
            raise Cancelled()
        if self.cancelled:
            raise Cancelled()

    async def guard(self, call: Awaitable[T]) -> T:
        """Await `call`, aborting it as soon as the run is cancelled."""
        if self.cancelled:
            if asyncio.iscoroutine(call):
                call.close()
            raise Cancelled()
        task = asyncio.ensure_future(call)
        waiter = asyncio.ensure_future(self._cancelled.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task.done():
            return task.result()
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug("aborted call failed while cancelling: %s", e)
        raise Cancelled()
