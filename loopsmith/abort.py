"""Cancellation signal shared by everything running inside one turn.

One AbortController is created per turn. Its signal is handed to the model
client, every tool call, every permission prompt and the shell session.
Aborting is idempotent: the first call fires listeners, later calls are no-ops.
"""

import asyncio
import logging

from .errors import AbortError

logger = logging.getLogger(__name__)


class AbortSignal:
    """Read side of an AbortController."""

    def __init__(self):
        self._event = asyncio.Event()
        self._listeners = []
        self.reason = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def add_listener(self, callback):
        """Register a zero-argument callback to run when the signal fires.

        If the signal has already fired, the callback runs immediately.
        """
        if self.aborted:
            self._run_listener(callback)
            return
        self._listeners.append(callback)

    def remove_listener(self, callback):
        if callback in self._listeners:
            self._listeners.remove(callback)

    async def wait(self):
        """Block until the signal fires."""
        await self._event.wait()

    def _fire(self, reason):
        if self.aborted:
            return
        self.reason = reason
        self._event.set()
        listeners, self._listeners = self._listeners, []
        for callback in listeners:
            self._run_listener(callback)

    @staticmethod
    def _run_listener(callback):
        try:
            callback()
        except Exception:
            logger.exception("Abort listener failed")


class AbortController:
    """Owns an AbortSignal and is the only thing allowed to fire it."""

    def __init__(self):
        self.signal = AbortSignal()

    def abort(self, reason=None):
        """Fire the signal. Safe to call any number of times."""
        if self.signal.aborted:
            return
        logger.debug(f"Abort requested: {reason or 'user cancelled'}")
        self.signal._fire(reason)

    @property
    def aborted(self) -> bool:
        return self.signal.aborted


async def run_until_aborted(awaitable, signal):
    """Await `awaitable` unless `signal` fires first.

    Returns:
        Tuple of (completed, result). When the signal wins, the awaitable is
        cancelled and (False, None) is returned.
    """
    if signal is None:
        return True, await awaitable

    task = asyncio.ensure_future(awaitable)
    if signal.aborted:
        await _cancel_quietly(task)
        return False, None

    waiter = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return True, task.result()

    await _cancel_quietly(task)
    return False, None


async def _cancel_quietly(task):
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.debug("Task raised while being cancelled", exc_info=True)


def raise_if_aborted(signal):
    """Raise AbortError if `signal` has fired. For loops that check between steps."""
    if signal is not None and signal.aborted:
        raise AbortError(signal.reason or "Operation aborted")
