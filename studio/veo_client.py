import asyncio
import logging
import uuid
from typing import Callable

import httpx
from studio import config
from studio.models import Duration, ReferenceImage

logger = logging.getLogger(__name__)

client: httpx.AsyncClient | None = None

ProgressSink = Callable[[str], None]


class VideoGenerationError(RuntimeError):
    """Raised when the video service cannot produce a video."""


def create_client(transport: httpx.AsyncBaseTransport | None = None):
    global client
    client = httpx.AsyncClient(
        base_url=config.GEMINI_BASE_URL,
        headers={"x-goog-api-key": config.GEMINI_API_KEY},
        timeout=60.0,
        transport=transport,
    )


async def close_client():
    global client
    if client:
        await client.aclose()
        client = None


def _api_error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = {}
    error = body.get("error") if isinstance(body, dict) else None
    message = error.get("message") if isinstance(error, dict) else None
    return message or resp.text[:200] or resp.reason_phrase


async def _request(method: str, url: str, **kwargs) -> httpx.Response:
    try:
        resp = await client.request(method, url, **kwargs)
    except httpx.RequestError as e:
        logger.error("Request to %s failed: %s", url, e)
        raise VideoGenerationError(f"Could not reach the video service: {e}") from e
    if resp.is_error:
        logger.error("Video API error: status=%s body=%s", resp.status_code, resp.text[:500])
        raise VideoGenerationError(f"API error {resp.status_code}: {_api_error_message(resp)}")
    return resp


async def submit_generation(
    prompt: str,
    image: ReferenceImage | None,
    duration: Duration,
) -> str:
    instance = {"prompt": prompt}
    if image:
        instance["image"] = {"bytesBase64Encoded": image.to_base64(), "mimeType": image.mime_type}
    body = {
        "instances": [instance],
        "parameters": {
            "sampleCount": 1,
            "durationSeconds": int(duration),
            "aspectRatio": config.VEO_ASPECT_RATIO,
        },
    }

    logger.info("Submitting generation: prompt=%r, duration=%s, model=%s, has_image=%s",
                prompt[:80], int(duration), config.VEO_MODEL, image is not None)
    resp = await _request("POST", f"/models/{config.VEO_MODEL}:predictLongRunning", json=body)
    operation_name = resp.json().get("name")
    if not operation_name:
        raise VideoGenerationError("The video service did not return an operation name.")
    logger.info("Generation submitted: operation=%s", operation_name)
    return operation_name


def _extract_video_uri(operation: dict) -> str:
    if operation.get("error"):
        error = operation["error"]
        message = error.get("message") if isinstance(error, dict) else str(error)
        raise VideoGenerationError(message or "The video service reported an error.")

    gen_resp = (operation.get("response") or {}).get("generateVideoResponse") or {}
    reasons = gen_resp.get("raiMediaFilteredReasons") or []
    if reasons:
        raise VideoGenerationError(f"Blocked by content policy: {'; '.join(reasons)}")
    if gen_resp.get("raiMediaFilteredCount"):
        raise VideoGenerationError("Blocked by content policy.")

    samples = gen_resp.get("generatedSamples") or []
    if not samples:
        raise VideoGenerationError("The video service returned no video.")
    uri = (samples[0].get("video") or {}).get("uri")
    if not uri:
        raise VideoGenerationError("The video service returned a video without a download link.")
    return uri


async def poll_operation(operation_name: str, on_progress: ProgressSink) -> str:
    logger.info("Starting poll for operation=%s", operation_name)
    loop = asyncio.get_running_loop()
    started = loop.time()
    while True:
        elapsed = loop.time() - started
        if elapsed >= config.MAX_POLL_DURATION_SECONDS:
            logger.error("Polling timeout for %s after %ds", operation_name, elapsed)
            raise VideoGenerationError(
                f"Timed out after {int(config.MAX_POLL_DURATION_SECONDS)}s waiting for the video."
            )

        await asyncio.sleep(config.POLL_INTERVAL_SECONDS)
        resp = await _request("GET", f"/{operation_name}")
        operation = resp.json()
        elapsed = loop.time() - started
        logger.debug("Poll %s: done=%s (elapsed=%ds)", operation_name, operation.get("done"), elapsed)

        if operation.get("done"):
            return _extract_video_uri(operation)
        on_progress(f"Still generating... ({int(elapsed)}s elapsed)")


async def download_video(uri: str) -> str:
    filename = f"{uuid.uuid4().hex}.mp4"
    filepath = config.VIDEOS_DIR / filename
    logger.info("Downloading video from %s", uri[:100])
    resp = await _request("GET", uri, follow_redirects=True, timeout=120.0)
    config.VIDEOS_DIR.mkdir(parents=True, exist_ok=True)
    filepath.write_bytes(resp.content)
    logger.info("Video saved: %s (%d bytes)", filename, len(resp.content))
    return f"/api/videos/{filename}"


async def generate_video(
    prompt: str,
    image: ReferenceImage | None,
    duration: Duration,
    on_progress: ProgressSink,
) -> str:
    """Run one text/image-to-video generation and return a playable URL.

    ``on_progress`` receives human-readable status lines while the model
    works. Every failure is raised as ``VideoGenerationError``.
    """
    if client is None:
        raise VideoGenerationError("Video client is not initialised.")
    if not config.GEMINI_API_KEY:
        raise VideoGenerationError("GEMINI_API_KEY is not configured.")

    on_progress("Submitting your prompt to the video model...")
    operation_name = await submit_generation(prompt, image, duration)
    on_progress("Video generation started. This may take a few minutes...")
    uri = await poll_operation(operation_name, on_progress)
    on_progress("Downloading the generated video...")
    return await download_video(uri)


def purge_videos() -> int:
    removed = 0
    if not config.VIDEOS_DIR.exists():
        return removed
    for path in config.VIDEOS_DIR.glob("*.mp4"):
        path.unlink(missing_ok=True)
        removed += 1
    if removed:
        logger.info("Removed %d cached video(s) from %s", removed, config.VIDEOS_DIR)
    return removed
