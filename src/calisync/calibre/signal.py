# ABOUTME: A resettable async completion gate for push-producer / pull-consumer bridging.
# ABOUTME: One set() wakes every waiter; reset() re-arms without touching released waiters.

import asyncio


class AsyncSignal:
    """Manual-reset signal built on an ``asyncio.Future``.

    The subprocess reader task calls :meth:`set` whenever it queues records or
    finishes; the consumer drains its queue, calls :meth:`reset`, re-checks
    the queue and only then waits. Re-checking after the reset is what keeps
    a ``set()`` landing between "drained" and "wait" from being lost.
    """

    def __init__(self, is_set: bool = False) -> None:
        self._future: asyncio.Future[bool] | None = None
        self._is_set = is_set

    def _current(self) -> "asyncio.Future[bool]":
        if self._future is None:
            self._future = asyncio.get_running_loop().create_future()
            if self._is_set:
                self._future.set_result(True)
        return self._future

    def is_set(self) -> bool:
        if self._future is None:
            return self._is_set
        return self._future.done()

    def set(self) -> None:
        """Release every current waiter. Idempotent."""
        if self._future is None:
            self._is_set = True
            return
        if not self._future.done():
            self._future.set_result(True)

    def reset(self) -> None:
        """Re-arm the signal. No-op while unset."""
        if not self.is_set():
            return
        # Waiters already released hold the old, completed future.
        self._future = None
        self._is_set = False

    async def wait(
        self,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> bool:
        """Wait until the signal is set.

        Args:
            timeout: Seconds to wait; ``None`` waits indefinitely.
            cancel: Optional event that aborts the wait when set.

        Returns:
            True if the signal was set, False if the timeout expired first.

        Raises:
            asyncio.CancelledError: If ``cancel`` fires before the signal.
        """
        future = self._current()
        if future.done():
            return True
        if cancel is not None and cancel.is_set():
            raise asyncio.CancelledError("signal wait cancelled")

        waiters: set[asyncio.Future] = {asyncio.ensure_future(asyncio.shield(future))}
        cancel_task: asyncio.Task | None = None
        if cancel is not None:
            cancel_task = asyncio.ensure_future(cancel.wait())
            waiters.add(cancel_task)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()

        if future.done():
            return True
        if cancel_task is not None and cancel_task in done:
            raise asyncio.CancelledError("signal wait cancelled")
        return False
