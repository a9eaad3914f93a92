import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles

from studio import config, veo_client
from studio.controller import GenerationController, SessionRegistry, StateConflictError
from studio.models import GenerateRequest, StateSnapshot

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

STATIC_DIR = Path(__file__).parent / "static"

sessions = SessionRegistry(veo_client.generate_video, max_sessions=config.MAX_SESSIONS)


def _task_done_callback(task: asyncio.Task):
    if task.cancelled():
        return
    exc = task.exception()
    if exc:
        logger.error("Background task failed: %s", exc, exc_info=exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    config.VIDEOS_DIR.mkdir(parents=True, exist_ok=True)
    veo_client.purge_videos()
    veo_client.create_client()

    yield

    await sessions.aclose()
    await veo_client.close_client()
    veo_client.purge_videos()


app = FastAPI(lifespan=lifespan)


def _session(request: Request) -> tuple[str, GenerationController]:
    return sessions.get_or_create(request.cookies.get(config.SESSION_COOKIE))


def _respond(session_id: str, snapshot: StateSnapshot, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(content=snapshot.model_dump(mode="json"), status_code=status_code)
    resp.set_cookie(config.SESSION_COOKIE, session_id, httponly=True, samesite="lax")
    return resp


@app.get("/")
async def index():
    return FileResponse(
        STATIC_DIR / "index.html",
        headers={"Cache-Control": "no-cache"},
    )


app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")


@app.get("/api/state")
async def get_state(request: Request):
    session_id, controller = _session(request)
    return _respond(session_id, controller.snapshot())


@app.post("/api/generate")
async def generate(req: GenerateRequest, request: Request):
    session_id, controller = _session(request)
    logger.info("Generate request: prompt=%r, has_image=%s, duration=%s",
                req.prompt[:80], req.image_data is not None, int(req.duration))
    try:
        controller.update_form(prompt=req.prompt, image=req.reference_image(), duration=req.duration)
        generation = controller.begin_submit()
    except StateConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))

    if generation is None:
        return _respond(session_id, controller.snapshot(), status_code=400)

    task = controller.start(generation)
    task.add_done_callback(_task_done_callback)

    return _respond(session_id, controller.snapshot(), status_code=202)


@app.post("/api/reset")
async def reset(request: Request):
    session_id, controller = _session(request)
    try:
        controller.reset()
    except StateConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _respond(session_id, controller.snapshot())


@app.get("/api/events")
async def events(request: Request):
    session_id, controller = _session(request)

    async def stream():
        async for snapshot in controller.watch():
            if await request.is_disconnected():
                break
            yield f"data: {snapshot.model_dump_json()}\n\n"

    resp = StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )
    resp.set_cookie(config.SESSION_COOKIE, session_id, httponly=True, samesite="lax")
    return resp


def _parse_range(range_header: str, file_size: int) -> tuple[int, int] | None:
    """Parse a single "bytes=start-end" range.

    Returns None for headers that should be ignored (multiple ranges, other
    units, malformed values), in which case the whole file is served. A
    returned start greater than end means the range is not satisfiable.
    """
    unit, _, range_spec = range_header.partition("=")
    if unit.strip().lower() != "bytes" or "," in range_spec:
        return None
    first, sep, last = range_spec.strip().partition("-")
    if not sep or not (first or last):
        return None
    try:
        if not first:
            # Suffix range: the last N bytes
            start = max(file_size - int(last), 0)
            end = file_size - 1
        else:
            start = int(first)
            end = min(int(last), file_size - 1) if last else file_size - 1
    except ValueError:
        return None
    if start < 0 or (last and first and int(last) < start):
        return None
    return start, end


@app.get("/api/videos/{filename}")
async def serve_video(filename: str, request: Request):
    path = config.VIDEOS_DIR / Path(filename).name
    if not path.exists():
        raise HTTPException(status_code=404, detail="Video not found")

    file_size = path.stat().st_size
    range_header = request.headers.get("range")

    byte_range = _parse_range(range_header, file_size) if range_header else None
    if byte_range:
        start, end = byte_range
        if start > end:
            raise HTTPException(
                status_code=416,
                detail="Requested range not satisfiable",
                headers={"Content-Range": f"bytes */{file_size}"},
            )
        length = end - start + 1

        def iter_range():
            with open(path, "rb") as f:
                f.seek(start)
                remaining = length
                while remaining > 0:
                    chunk = f.read(min(8192, remaining))
                    if not chunk:
                        break
                    remaining -= len(chunk)
                    yield chunk

        return StreamingResponse(
            iter_range(),
            status_code=206,
            media_type="video/mp4",
            headers={
                "Content-Range": f"bytes {start}-{end}/{file_size}",
                "Content-Length": str(length),
                "Accept-Ranges": "bytes",
            },
        )

    return FileResponse(
        str(path),
        media_type="video/mp4",
        headers={"Accept-Ranges": "bytes"},
    )
