import asyncio
import os
import tempfile

os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="studio-test-"))
os.environ.setdefault("GEMINI_API_KEY", "test-key")

import pytest


async def wait_until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class FakeGenerator:
    """Stand-in for the video service that the test releases explicitly."""

    def __init__(self, result="https://example/video123.mp4", error=None, progress=()):
        self.result = result
        self.error = error
        self.progress = list(progress)
        self.calls = []
        self.gate = asyncio.Event()

    async def __call__(self, prompt, image, duration, on_progress):
        self.calls.append((prompt, image, duration))
        for message in self.progress:
            on_progress(message)
        await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def fake_generator():
    return FakeGenerator()
