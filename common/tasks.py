"""Background event loop for driving async services from sync request handlers."""

from __future__ import annotations

import asyncio
import inspect
import threading
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from typing import Any, Awaitable, Callable, Coroutine, TypeVar

from .logging import get_logger

T = TypeVar("T")

logger = get_logger("sr_server.tasks")


class BackgroundLoop:
    """One asyncio loop running on a daemon thread.

    Every coroutine submitted here runs on the same loop, so the services
    it hosts see single-threaded cooperative scheduling no matter how many
    request threads submit work.
    """

    def __init__(self, name: str = "sr-server-loop"):
        self._name = name
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self, started: threading.Event) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        started.set()
        try:
            loop.run_forever()
        finally:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.close()

    def start(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self.running and self._loop is not None:
                return self._loop
            started = threading.Event()
            self._thread = threading.Thread(
                target=self._run, args=(started,), name=self._name, daemon=True
            )
            self._thread.start()
            started.wait()
            logger.info("Started background loop %s", self._name)
            assert self._loop is not None
            return self._loop

    def submit(self, coro: Coroutine[Any, Any, T]) -> Future:
        loop = self.start()
        return asyncio.run_coroutine_threadsafe(coro, loop)

    def run(self, coro: Coroutine[Any, Any, T], timeout: float | None = None) -> T:
        """Run ``coro`` on the loop and wait for its result.

        Raises ``TimeoutError`` when ``timeout`` elapses, after cancelling
        the coroutine so it settles on the loop without a waiter.
        """

        future = self.submit(coro)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as exc:
            future.cancel()
            raise TimeoutError(f"Operation did not finish within {timeout}s") from exc

    def call(self, func: Callable[[], T | Awaitable[T]], timeout: float | None = None) -> T:
        """Invoke ``func`` on the loop thread (awaiting it if it returns an awaitable)."""

        async def _invoke() -> T:
            result = func()
            if inspect.isawaitable(result):
                return await result
            return result  # type: ignore[return-value]

        return self.run(_invoke(), timeout=timeout)

    def call_soon(self, func: Callable[[], Any]) -> None:
        """Schedule ``func`` on the loop thread without waiting for it."""

        loop = self.start()
        loop.call_soon_threadsafe(func)

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            loop, thread = self._loop, self._thread
            if loop is None or thread is None:
                return
            loop.call_soon_threadsafe(loop.stop)
            thread.join(timeout)
            self._loop = None
            self._thread = None
        logger.info("Stopped background loop %s", self._name)


__all__ = ["BackgroundLoop"]
