import asyncio
import logging
import secrets
from collections import OrderedDict
from typing import AsyncIterator, Awaitable, Callable, Optional

from studio.models import (
    DEFAULT_DURATION,
    Duration,
    ErrorState,
    FormState,
    FormView,
    GeneratingState,
    GenerationRequest,
    IdleState,
    ReferenceImage,
    StateSnapshot,
    SuccessState,
)
from studio.progress import ProgressChannel

logger = logging.getLogger(__name__)

EMPTY_PROMPT_MESSAGE = "Please enter a prompt."
UNKNOWN_ERROR_MESSAGE = "An unknown error occurred."

Generator = Callable[
    [str, Optional[ReferenceImage], Duration, Callable[[str], None]],
    Awaitable[str],
]

_UNSET = object()


class StateConflictError(RuntimeError):
    """Raised when an action is not reachable from the current state."""


def derive_error_message(exc: BaseException) -> str:
    message = str(exc) if isinstance(exc, Exception) else ""
    if not message.strip():
        message = UNKNOWN_ERROR_MESSAGE
    return f"Video generation failed: {message}"


class GenerationController:
    """Owns the form fields and the idle/generating/success/error state
    machine for one UI session, and mediates the calls to ``generator``.
    """

    def __init__(self, generator: Generator):
        self._generator = generator
        self.form = FormState()
        self.state = IdleState()
        self._changed = asyncio.Event()
        self.task: asyncio.Task | None = None

    @property
    def busy(self) -> bool:
        return self.task is not None and not self.task.done()

    def _set_state(self, state) -> None:
        if state.status != self.state.status:
            logger.info("Generation state %s -> %s", self.state.status, state.status)
        self.state = state
        self._notify()

    def _notify(self) -> None:
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    def _form_reachable(self) -> bool:
        return isinstance(self.state, (IdleState, ErrorState))

    def update_form(self, prompt=_UNSET, image=_UNSET, duration=_UNSET) -> None:
        if not self._form_reachable():
            raise StateConflictError(f"Form cannot be edited while {self.state.status}.")
        changes = {}
        if prompt is not _UNSET:
            changes["prompt"] = prompt
        if image is not _UNSET:
            changes["image"] = image
        if duration is not _UNSET:
            changes["duration"] = Duration(duration)
        self.form = self.form.model_copy(update=changes)
        self._notify()

    def begin_submit(self) -> Optional[GenerationRequest]:
        """Validate the form and enter ``generating``.

        Returns the request to pass to ``run``, or None when the prompt is
        blank; in that case the state becomes idle with the validation error.
        """
        if not self._form_reachable():
            raise StateConflictError(f"Cannot submit while {self.state.status}.")
        if not self.form.prompt.strip():
            logger.info("Rejected submission with an empty prompt")
            self._set_state(IdleState(error=EMPTY_PROMPT_MESSAGE))
            return None

        request = GenerationRequest(
            prompt=self.form.prompt,
            image=self.form.image,
            duration=self.form.duration,
        )
        self._set_state(GeneratingState())
        return request

    async def run(self, request: GenerationRequest) -> None:
        channel = ProgressChannel()
        consumer = asyncio.create_task(self._consume_progress(channel))
        try:
            try:
                video_url = await self._generator(
                    request.prompt, request.image, request.duration, channel.publish
                )
            except Exception as exc:
                logger.exception("Video generation failed")
                outcome = ErrorState(message=derive_error_message(exc))
            else:
                if video_url:
                    outcome = SuccessState(video_url=video_url)
                else:
                    outcome = ErrorState(message=derive_error_message(Exception()))
        finally:
            channel.close()
            await consumer
        self._set_state(outcome)

    def start(self, request: GenerationRequest) -> asyncio.Task:
        """Run ``request`` in the background and keep a handle to it."""
        self.task = asyncio.create_task(self.run(request))
        return self.task

    async def cancel(self) -> None:
        if self.busy:
            self.task.cancel()
            await asyncio.gather(self.task, return_exceptions=True)

    async def submit(self) -> None:
        request = self.begin_submit()
        if request is not None:
            await self.run(request)

    async def _consume_progress(self, channel: ProgressChannel) -> None:
        async for message in channel:
            if isinstance(self.state, GeneratingState):
                self._set_state(GeneratingState(progress=message))

    def reset(self) -> None:
        if isinstance(self.state, GeneratingState):
            raise StateConflictError("Cannot reset while a video is generating.")
        self.form = FormState(prompt="", image=None, duration=DEFAULT_DURATION)
        self._set_state(IdleState())

    def snapshot(self) -> StateSnapshot:
        image = self.form.image
        return StateSnapshot(
            form=FormView(
                prompt=self.form.prompt,
                duration=self.form.duration,
                has_image=image is not None,
                image_name=image.name if image else None,
                is_loading=isinstance(self.state, GeneratingState),
            ),
            state=self.state,
        )

    async def watch(self) -> AsyncIterator[StateSnapshot]:
        while True:
            changed = self._changed
            yield self.snapshot()
            await changed.wait()


class SessionRegistry:
    """In-memory map of UI session ids to their controllers.

    Holds at most ``max_sessions`` entries; when full, the least recently
    used session without a generation in flight is dropped.
    """

    def __init__(self, generator: Generator, max_sessions: int = 100):
        self.generator = generator
        self.max_sessions = max_sessions
        self._sessions: OrderedDict[str, GenerationController] = OrderedDict()

    def get_or_create(self, session_id: str | None) -> tuple[str, GenerationController]:
        if session_id and session_id in self._sessions:
            self._sessions.move_to_end(session_id)
            return session_id, self._sessions[session_id]
        self._evict()
        session_id = secrets.token_urlsafe(16)
        controller = GenerationController(self.generator)
        self._sessions[session_id] = controller
        logger.info("Created UI session %s", session_id[:8])
        return session_id, controller

    def _evict(self) -> None:
        for session_id in list(self._sessions):
            if len(self._sessions) < self.max_sessions:
                return
            if not self._sessions[session_id].busy:
                del self._sessions[session_id]
                logger.info("Evicted UI session %s", session_id[:8])

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    async def aclose(self) -> None:
        await asyncio.gather(*(controller.cancel() for controller in self._sessions.values()))
        self._sessions.clear()

    def clear(self) -> None:
        self._sessions.clear()
