import base64
import json

import httpx
import pytest

from studio import config, veo_client
from studio.models import Duration, ReferenceImage
from studio.veo_client import VideoGenerationError

OPERATION = "models/veo-2.0-generate-001/operations/op123"
VIDEO_URI = "https://files.example/v1beta/files/abc:download?alt=media"


def _done(response=None, error=None):
    body = {"name": OPERATION, "done": True}
    if response is not None:
        body["response"] = {"generateVideoResponse": response}
    if error is not None:
        body["error"] = error
    return body


def _samples(uri=VIDEO_URI):
    return {"generatedSamples": [{"video": {"uri": uri}}]}


class FakeVeoApi:
    def __init__(self, polls, submit_status=200, submit_body=None):
        self.polls = list(polls)
        self.submit_status = submit_status
        self.submit_body = submit_body if submit_body is not None else {"name": OPERATION}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith(":predictLongRunning"):
            return httpx.Response(self.submit_status, json=self.submit_body)
        if request.url.path.endswith(OPERATION):
            return httpx.Response(200, json=self.polls.pop(0))
        if request.url.host == "files.example":
            return httpx.Response(200, content=b"fake-mp4")
        return httpx.Response(404, json={"error": {"message": "not found"}})


@pytest.fixture(autouse=True)
def fast_config(monkeypatch, tmp_path):
    monkeypatch.setattr(config, "POLL_INTERVAL_SECONDS", 0)
    monkeypatch.setattr(config, "GEMINI_API_KEY", "test-key")
    monkeypatch.setattr(config, "VIDEOS_DIR", tmp_path / "videos")


@pytest.fixture
async def use_api():
    async def install(api):
        veo_client.create_client(transport=httpx.MockTransport(api))
        return api

    yield install
    await veo_client.close_client()


async def test_generates_and_downloads_video(use_api):
    api = await use_api(FakeVeoApi([{"name": OPERATION, "done": False}, _done(_samples())]))
    progress = []

    url = await veo_client.generate_video("a cat surfing", None, Duration.SECONDS_5, progress.append)

    assert url.startswith("/api/videos/") and url.endswith(".mp4")
    saved = config.VIDEOS_DIR / url.rsplit("/", 1)[1]
    assert saved.read_bytes() == b"fake-mp4"
    assert progress[0] == "Submitting your prompt to the video model..."
    assert progress[1] == "Video generation started. This may take a few minutes..."
    assert progress[2].startswith("Still generating...")
    assert progress[-1] == "Downloading the generated video..."

    submit = api.requests[0]
    assert submit.url.path == "/v1beta/models/veo-2.0-generate-001:predictLongRunning"
    assert submit.headers["x-goog-api-key"] == "test-key"
    body = json.loads(submit.content)
    assert body["instances"] == [{"prompt": "a cat surfing"}]
    assert body["parameters"]["durationSeconds"] == 5


async def test_sends_reference_image(use_api):
    api = await use_api(FakeVeoApi([_done(_samples())]))
    image = ReferenceImage(mime_type="image/png", data=b"\x89PNG-bytes")

    await veo_client.generate_video("waves", image, Duration.SECONDS_8, lambda message: None)

    body = json.loads(api.requests[0].content)
    assert body["instances"][0]["image"] == {
        "bytesBase64Encoded": base64.b64encode(b"\x89PNG-bytes").decode(),
        "mimeType": "image/png",
    }
    assert body["parameters"]["durationSeconds"] == 8


async def test_operation_error_message_is_raised(use_api):
    await use_api(FakeVeoApi([_done(error={"code": 8, "message": "Quota exceeded"})]))

    with pytest.raises(VideoGenerationError, match="Quota exceeded"):
        await veo_client.generate_video("a cat", None, Duration.SECONDS_5, lambda message: None)


async def test_content_filter_is_reported(use_api):
    filtered = {"raiMediaFilteredCount": 1, "raiMediaFilteredReasons": ["Unsafe content"]}
    await use_api(FakeVeoApi([_done(filtered)]))

    with pytest.raises(VideoGenerationError, match="content policy: Unsafe content"):
        await veo_client.generate_video("a cat", None, Duration.SECONDS_5, lambda message: None)


async def test_missing_samples_fail(use_api):
    await use_api(FakeVeoApi([_done({"generatedSamples": []})]))

    with pytest.raises(VideoGenerationError, match="no video"):
        await veo_client.generate_video("a cat", None, Duration.SECONDS_5, lambda message: None)


async def test_http_error_uses_api_message(use_api):
    await use_api(FakeVeoApi([], submit_status=400, submit_body={"error": {"message": "Invalid prompt"}}))

    with pytest.raises(VideoGenerationError, match="API error 400: Invalid prompt"):
        await veo_client.generate_video("a cat", None, Duration.SECONDS_5, lambda message: None)


async def test_missing_operation_name_fails(use_api):
    await use_api(FakeVeoApi([], submit_body={}))

    with pytest.raises(VideoGenerationError, match="operation name"):
        await veo_client.generate_video("a cat", None, Duration.SECONDS_5, lambda message: None)


async def test_transport_error_is_wrapped(use_api):
    def unreachable(request):
        raise httpx.ConnectError("connection refused", request=request)

    await use_api(unreachable)

    with pytest.raises(VideoGenerationError, match="Could not reach the video service"):
        await veo_client.generate_video("a cat", None, Duration.SECONDS_5, lambda message: None)


async def test_poll_timeout(use_api, monkeypatch):
    monkeypatch.setattr(config, "MAX_POLL_DURATION_SECONDS", 0)
    await use_api(FakeVeoApi([]))

    with pytest.raises(VideoGenerationError, match="Timed out"):
        await veo_client.generate_video("a cat", None, Duration.SECONDS_5, lambda message: None)


async def test_missing_api_key(use_api, monkeypatch):
    api = await use_api(FakeVeoApi([]))
    monkeypatch.setattr(config, "GEMINI_API_KEY", "")

    with pytest.raises(VideoGenerationError, match="GEMINI_API_KEY"):
        await veo_client.generate_video("a cat", None, Duration.SECONDS_5, lambda message: None)
    assert api.requests == []


def test_purge_videos(tmp_path):
    config.VIDEOS_DIR.mkdir(parents=True)
    (config.VIDEOS_DIR / "old.mp4").write_bytes(b"x")

    assert veo_client.purge_videos() == 1
    assert list(config.VIDEOS_DIR.iterdir()) == []
