import asyncio

import pytest


async def stream_of(*items, forever=True):
    """ A watch-stream for the controllers: the items, then nothing forever. """
    for item in items:
        if callable(item):
            await item()
        else:
            yield item
    if forever:
        await asyncio.Event().wait()


@pytest.fixture()
def make_stream():
    return stream_of
