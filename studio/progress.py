import asyncio
import logging

logger = logging.getLogger(__name__)


class ProgressChannel:
    """Single-consumer stream of progress messages for one generation.

    The producer calls ``publish`` any number of times. The consumer iterates
    with ``async for`` and always receives the most recent unread message;
    intermediate messages published between two reads are overwritten.
    Iteration ends once the channel is closed and the last message was read.
    """

    def __init__(self):
        self._latest: str | None = None
        self._unread = False
        self._closed = False
        self._wakeup = asyncio.Event()
        self._consumer_attached = False

    @property
    def latest(self) -> str | None:
        return self._latest

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, message: str) -> None:
        if self._closed:
            logger.debug("Dropping progress after close: %r", message)
            return
        self._latest = message
        self._unread = True
        self._wakeup.set()

    def close(self) -> None:
        self._closed = True
        self._wakeup.set()

    def __aiter__(self):
        if self._consumer_attached:
            raise RuntimeError("ProgressChannel supports a single consumer")
        self._consumer_attached = True
        return self

    async def __anext__(self) -> str:
        while not self._unread:
            if self._closed:
                raise StopAsyncIteration
            self._wakeup.clear()
            await self._wakeup.wait()
        self._unread = False
        return self._latest
