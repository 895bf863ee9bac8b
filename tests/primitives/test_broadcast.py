import asyncio

import pytest

from capifleet._cogs.aiokits.aiobroadcast import Channel, ChannelClosed, Lagged


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        Channel(capacity=0)


async def test_every_receiver_gets_every_item_in_order():
    channel = Channel(capacity=8)
    receiver1 = channel.subscribe()
    receiver2 = channel.subscribe()

    for item in ['a', 'b', 'c']:
        await channel.send(item)

    assert [await receiver1.recv() for _ in range(3)] == ['a', 'b', 'c']
    assert [await receiver2.recv() for _ in range(3)] == ['a', 'b', 'c']


async def test_no_replay_for_late_subscribers():
    channel = Channel(capacity=8)
    await channel.send('early')
    receiver = channel.subscribe()
    await channel.send('late')

    assert await receiver.recv() == 'late'
    assert receiver.pending == 0


async def test_lagging_receiver_is_told_once_and_continues_from_oldest_retained():
    channel = Channel(capacity=3)
    receiver = channel.subscribe()
    for item in range(5):
        await channel.send(item)

    with pytest.raises(Lagged) as err:
        await receiver.recv()
    assert err.value.skipped == 2

    assert await receiver.recv() == 2
    assert await receiver.recv() == 3
    assert await receiver.recv() == 4


async def test_lagging_receiver_does_not_affect_others():
    channel = Channel(capacity=2)
    slow = channel.subscribe()
    fast = channel.subscribe()
    for item in range(4):
        await channel.send(item)
        assert await fast.recv() == item

    with pytest.raises(Lagged):
        await slow.recv()
    assert await slow.recv() == 2


async def test_sending_never_waits_for_receivers():
    channel = Channel(capacity=128)
    channel.subscribe()  # never read
    await asyncio.wait_for(asyncio.gather(*[channel.send(i) for i in range(1000)]), timeout=1)


async def test_receiver_waits_for_items():
    channel = Channel(capacity=8)
    receiver = channel.subscribe()
    task = asyncio.create_task(receiver.recv())
    await asyncio.sleep(0.01)
    assert not task.done()

    await channel.send('item')
    assert await asyncio.wait_for(task, timeout=1) == 'item'


async def test_closed_channel_lets_receivers_drain_then_stops_them():
    channel = Channel(capacity=8)
    receiver = channel.subscribe()
    await channel.send('last')
    await channel.close()

    assert channel.closed
    assert [item async for item in receiver] == ['last']
    with pytest.raises(ChannelClosed):
        await receiver.recv()


async def test_closed_channel_wakes_up_the_waiting_receivers():
    channel = Channel(capacity=8)
    receiver = channel.subscribe()
    task = asyncio.create_task(receiver.recv())
    await asyncio.sleep(0.01)
    await channel.close()

    with pytest.raises(ChannelClosed):
        await asyncio.wait_for(task, timeout=1)


async def test_sending_to_closed_channel_fails():
    channel = Channel(capacity=8)
    await channel.close()
    with pytest.raises(ChannelClosed):
        await channel.send('item')
