"""
Single-flight execution keyed by session.

Concurrent refresh attempts for the same browser session collapse into one
outbound IdP call; every caller receives that call's result or exception.
"""

import asyncio
import logging
import threading
from typing import Any, Awaitable, Callable, Dict

logger = logging.getLogger(__name__)


class SingleFlight:
    """
    In-process call coalescer.

    The registry lock is held only while entries are added or removed, never
    across an await. Entries live exactly as long as the shared call; the
    call itself must be bounded (IdP calls carry their own timeout).
    """

    def __init__(self):
        self._calls: Dict[str, "asyncio.Future[Any]"] = {}
        self._lock = threading.Lock()

    def in_flight(self, key: str) -> bool:
        with self._lock:
            return key in self._calls

    async def do(self, key: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run ``fn`` once per key among concurrent callers.

        If the leading caller is cancelled, its waiters are not: the first
        waiter to resume starts the call again and leads it.

        Args:
            key: Session identifier (e.g. hash of the refresh token)
            fn: Zero-argument coroutine factory performing the call

        Returns:
            The shared call's result

        Raises:
            Whatever the shared call raised, to every caller
        """
        while True:
            with self._lock:
                future = self._calls.get(key)
                leader = future is None
                if leader:
                    future = asyncio.get_running_loop().create_future()
                    self._calls[key] = future

            if leader:
                return await self._lead(key, future, fn)

            logger.debug("Joining in-flight call", extra={"flight_key": key[:12]})
            # asyncio.wait never cancels the shared future; only this caller's
            # own cancellation surfaces here
            await asyncio.wait([future])
            if not future.cancelled():
                return future.result()
            logger.info("In-flight call abandoned by its leader, retrying", extra={"flight_key": key[:12]})

    async def _lead(self, key: str, future: "asyncio.Future[Any]", fn: Callable[[], Awaitable[Any]]) -> Any:
        try:
            result = await fn()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # retrieve so an exception nobody else awaited is not reported
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._lock:
                if self._calls.get(key) is future:
                    del self._calls[key]
