"""
A one-shot rendezvous of a fixed number of asyncio tasks.

All participants wait until the last one arrives, then all proceed at once.
If any participant cannot arrive (e.g. it has failed during the startup),
the barrier is aborted, and all the current and future waiters fail.
"""
import asyncio
from typing import Optional


class BrokenBarrierError(RuntimeError):
    """ The barrier was aborted before all the participants have arrived. """


class Barrier:

    def __init__(self, parties: int) -> None:
        super().__init__()
        if parties < 1:
            raise ValueError(f"A barrier needs at least one participant, got {parties!r}.")
        self._parties = parties
        self._arrived = 0
        self._cause: Optional[BaseException] = None
        self._broken = False
        self._condition = asyncio.Condition()

    def __repr__(self) -> str:
        state = 'broken' if self._broken else f'{self._arrived}/{self._parties}'
        return f'<{self.__class__.__name__}: {state}>'

    @property
    def parties(self) -> int:
        return self._parties

    @property
    def arrived(self) -> int:
        return self._arrived

    @property
    def broken(self) -> bool:
        return self._broken

    def _passable(self) -> bool:
        return self._broken or self._arrived >= self._parties

    async def wait(self) -> None:
        async with self._condition:
            self._check()
            self._arrived += 1
            self._condition.notify_all()
            await self._condition.wait_for(self._passable)
            self._check()

    async def abort(self, exc: Optional[BaseException] = None) -> None:
        async with self._condition:
            self._broken = True
            self._cause = exc
            self._condition.notify_all()

    def _check(self) -> None:
        # A barrier that was already passed by everyone stays passable despite later aborts.
        if self._broken and self._arrived < self._parties:
            raise BrokenBarrierError("The readiness barrier is aborted.") from self._cause
