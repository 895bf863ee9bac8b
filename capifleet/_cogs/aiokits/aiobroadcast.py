"""
A bounded broadcast channel: one producer, many independent receivers.

Every receiver sees every item sent after it has subscribed, in the order sent.
The producer never waits for the receivers: the channel keeps only the last
``capacity`` items, and a receiver that falls behind by more than that
loses the overwritten items. It is told so once (via :class:`Lagged`)
and then continues from the oldest item still retained.

There is no replay: a receiver subscribed after an item was sent
never sees that item, even if it is still retained for other receivers.

Usage::

    channel = Channel(capacity=128)
    receiver = channel.subscribe()
    await channel.send(item)
    item = await receiver.recv()
"""
import asyncio
import collections
from typing import AsyncIterator, Deque, Generic, TypeVar

_T = TypeVar('_T')


class Lagged(Exception):
    """ The receiver fell behind; some items were overwritten before received. """

    def __init__(self, skipped: int) -> None:
        super().__init__(f"The receiver has lagged behind and skipped {skipped} items.")
        self.skipped = skipped


class ChannelClosed(Exception):
    """ The channel is closed, and all the remaining items are already received. """


class Channel(Generic[_T]):

    def __init__(self, capacity: int = 128) -> None:
        super().__init__()
        if capacity < 1:
            raise ValueError(f"The channel capacity must be positive, got {capacity!r}.")
        self._capacity = capacity
        self._buffer: Deque[_T] = collections.deque(maxlen=capacity)
        self._sent = 0  # the sequence number of the next item to be sent.
        self._closed = False
        self._condition = asyncio.Condition()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self) -> "Receiver[_T]":
        return Receiver(self, position=self._sent)

    async def send(self, item: _T) -> None:
        if self._closed:
            raise ChannelClosed("Cannot send to a closed channel.")
        async with self._condition:
            self._buffer.append(item)
            self._sent += 1
            self._condition.notify_all()

    async def close(self) -> None:
        async with self._condition:
            self._closed = True
            self._condition.notify_all()


class Receiver(Generic[_T]):
    """
    A subscriber's own reading position in the channel.
    """

    def __init__(self, channel: Channel[_T], *, position: int) -> None:
        super().__init__()
        self._channel = channel
        self._position = position

    def __aiter__(self) -> AsyncIterator[_T]:
        return self

    async def __anext__(self) -> _T:
        try:
            return await self.recv()
        except ChannelClosed:
            raise StopAsyncIteration

    @property
    def pending(self) -> int:
        """ How many items are sent but not yet received (including the lost ones). """
        return self._channel._sent - self._position

    def _ready(self) -> bool:
        return self._position < self._channel._sent or self._channel._closed

    async def recv(self) -> _T:
        channel = self._channel
        async with channel._condition:
            await channel._condition.wait_for(self._ready)

            oldest = channel._sent - len(channel._buffer)
            if self._position < oldest:
                skipped = oldest - self._position
                self._position = oldest
                raise Lagged(skipped)
            if self._position >= channel._sent:
                raise ChannelClosed("The channel is closed.")

            item = channel._buffer[self._position - oldest]
            self._position += 1
            return item
