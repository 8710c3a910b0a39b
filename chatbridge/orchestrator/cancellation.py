"""Per-turn cancellation signal and credential scope."""

import asyncio
from typing import Awaitable, TypeVar

T = TypeVar("T")


class TurnCancelled(Exception):
    """Raised inside a turn once its signal has been cancelled."""


class CancellationSignal:
    """A single cancellation flag threaded through model, tools and fetches.

    ``guard`` races an awaitable against cancellation so long provider or
    tool calls stop promptly.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnCancelled()

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await awaitable unless the signal fires first.

        Raises:
            TurnCancelled: The signal fired before awaitable completed.
        """
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        raise TurnCancelled()


class TurnCredentials:
    """Credentials acquired for the duration of one turn.

    Tools receive this object instead of reading process-wide state; the
    turn engine calls ``clear()`` in a finally block.
    """

    def __init__(self) -> None:
        self._values: dict[str, str] = {}

    def set(self, name: str, value: str | None) -> None:
        if value:
            self._values[name] = value

    def get(self, name: str) -> str | None:
        return self._values.get(name)

    def clear(self) -> None:
        self._values.clear()

    def __contains__(self, name: str) -> bool:
        return name in self._values
