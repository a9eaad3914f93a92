import asyncio

import pytest

from studio.progress import ProgressChannel


async def test_consumer_sees_only_latest_unread_message():
    channel = ProgressChannel()
    channel.publish("first")
    channel.publish("second")
    channel.close()

    received = [message async for message in channel]

    assert received == ["second"]


async def test_consumer_waits_for_later_messages():
    channel = ProgressChannel()
    received = []

    async def consume():
        async for message in channel:
            received.append(message)

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0)
    channel.publish("one")
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    channel.publish("two")
    channel.close()
    await asyncio.wait_for(consumer, timeout=1.0)

    assert received[-1] == "two"
    assert channel.latest == "two"


async def test_publish_after_close_is_dropped():
    channel = ProgressChannel()
    channel.publish("kept")
    channel.close()
    channel.publish("late")

    assert channel.latest == "kept"
    assert channel.closed


async def test_empty_closed_channel_ends_iteration():
    channel = ProgressChannel()
    channel.close()

    assert [message async for message in channel] == []


def test_single_consumer_only():
    channel = ProgressChannel()
    channel.__aiter__()

    with pytest.raises(RuntimeError):
        channel.__aiter__()
