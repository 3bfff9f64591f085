"""
Session State Machine — the interaction orchestrator.

Owns the per-widget ``Session`` and every transition on it::

    hidden -> input-active -> generating -> response-active
                   ^               |               |
                   +---- cancel ---+               |
                   +------------ click_input ------+
    any non-generating state -> hidden

Transition methods are synchronous and run on the event loop thread, so two
transitions never interleave. Generation and persistence run in a background
task; that task re-checks a generation epoch after every await so a
cancellation observed by the machine always wins over a late fragment.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from dataclasses import dataclass

from . import events
from .config import WidgetConfig
from .events import EventBus
from .exceptions import GenerationFailure, QuickPromptError, ValidationError
from .gateway import GenerationGateway, QueuedPrompt, TimeoutStream
from .records import validate_embedding, validate_prompt
from .store import RecordStore

logger = logging.getLogger("quickprompt.session")

PROGRESS_EVERY = 10


class Visibility(str, enum.Enum):
    HIDDEN = "hidden"
    INPUT_ACTIVE = "input-active"
    GENERATING = "generating"
    RESPONSE_ACTIVE = "response-active"


class FocusTarget(str, enum.Enum):
    INPUT = "input"
    RESPONSE = "response"
    NONE = "none"


@dataclass
class Session:
    """Ephemeral interaction state for one widget instance."""

    visibility: Visibility = Visibility.HIDDEN
    current_prompt: str = ""
    current_response: str = ""
    was_cancelled: bool = False
    awaiting_model: bool = False
    loading: bool = False
    error_message: str | None = None
    error_kind: str | None = None
    validation_message: str | None = None
    focus_target: FocusTarget = FocusTarget.NONE

    @property
    def is_generating(self) -> bool:
        return self.visibility is Visibility.GENERATING

    @property
    def visible(self) -> bool:
        return self.visibility is not Visibility.HIDDEN

    def clear_error(self) -> None:
        self.error_message = None
        self.error_kind = None


class SessionStateMachine:
    """Mediates activation, submission, streaming, cancellation and persistence."""

    def __init__(
        self,
        gateway: GenerationGateway,
        store: RecordStore,
        bus: EventBus | None = None,
        config: WidgetConfig | None = None,
        progress_every: int = PROGRESS_EVERY,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.bus = bus if bus is not None else EventBus()
        self.config = config if config is not None else gateway.config
        self.progress_every = progress_every
        self.session = Session()
        self.record_count = 0
        self._epoch = 0
        self._task: asyncio.Task | None = None
        self._ticket: QueuedPrompt | None = None
        self._fragments = 0

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def activate(self) -> bool:
        """hidden -> input-active. No-op when already visible."""
        if self.session.visible:
            return False
        self.session.visibility = Visibility.INPUT_ACTIVE
        self.session.focus_target = FocusTarget.INPUT
        self.bus.emit(events.CHAT_ACTIVATED)
        return True

    def hide(self) -> bool:
        """Any state -> hidden, clearing all working text.

        A running generation is cancelled first so it is never dropped silently.
        """
        if not self.session.visible:
            return False
        if self.session.is_generating:
            self.cancel()
        self.session.visibility = Visibility.HIDDEN
        self.session.current_prompt = ""
        self.session.current_response = ""
        self.session.validation_message = None
        self.session.loading = False
        self.session.clear_error()
        self.session.focus_target = FocusTarget.NONE
        self.bus.emit(events.CHAT_HIDDEN)
        return True

    def dismiss(self) -> bool:
        """Dismiss key: cancel while generating, hide otherwise."""
        if self.session.is_generating:
            return self.cancel()
        return self.hide()

    def update_draft(self, text: str) -> bool:
        """Edit the input buffer. Only meaningful while the input is active."""
        if self.session.visibility is not Visibility.INPUT_ACTIVE:
            return False
        self.session.current_prompt = text
        self.session.validation_message = None
        return True

    def click_input(self) -> bool:
        """response-active -> input-active, keeping the prompt for editing."""
        if self.session.visibility is Visibility.INPUT_ACTIVE:
            self.session.focus_target = FocusTarget.INPUT
            return False
        if self.session.visibility is not Visibility.RESPONSE_ACTIVE:
            return False
        self.session.visibility = Visibility.INPUT_ACTIVE
        self.session.current_response = ""
        self.session.clear_error()
        self.session.focus_target = FocusTarget.INPUT
        return True

    def submit(self, text: str) -> bool:
        """input-active -> generating. Rejected prompts leave the state untouched."""
        if self.session.visibility is not Visibility.INPUT_ACTIVE:
            logger.debug("[QuickPrompt Session] submit ignored in state %s", self.session.visibility.value)
            return False
        try:
            prompt = validate_prompt(text)
        except ValidationError as exc:
            self.session.validation_message = str(exc)
            return False
        self._start(prompt)
        return True

    def retry(self) -> bool:
        """Re-submit the preserved prompt after an error or a cancellation."""
        prompt = self.session.current_prompt
        if not prompt or self.session.visibility in (Visibility.HIDDEN, Visibility.GENERATING):
            return False
        self.session.clear_error()
        self.session.current_response = ""
        self.session.visibility = Visibility.INPUT_ACTIVE
        return self.submit(prompt)

    def cancel(self) -> bool:
        """generating -> input-active. The response is discarded, the prompt survives."""
        if not self.session.is_generating:
            return False
        partial = self.session.current_response
        self._epoch += 1
        self.gateway.cancel()
        ticket = self._ticket
        if ticket is not None and not ticket.granted:
            self.gateway.discard(ticket)
        if self._task is not None and not self._task.done():
            self._task.cancel()

        self.session.visibility = Visibility.INPUT_ACTIVE
        self.session.current_response = ""
        self.session.was_cancelled = True
        self.session.loading = False
        self.session.awaiting_model = False
        self.session.focus_target = FocusTarget.INPUT
        self.bus.emit(
            events.GENERATION_CANCELLED,
            prompt=self.session.current_prompt,
            partial_response=partial,
            token_count=self._fragments,
        )
        return True

    # ------------------------------------------------------------------
    # Generation pipeline
    # ------------------------------------------------------------------

    def _start(self, prompt: str) -> None:
        session = self.session
        session.current_prompt = prompt
        session.current_response = ""
        session.validation_message = None
        session.was_cancelled = False
        session.clear_error()
        session.visibility = Visibility.GENERATING
        session.loading = True

        self._epoch += 1
        self._fragments = 0
        epoch = self._epoch
        ready = self.gateway.is_ready()
        ticket = self.gateway.enqueue(prompt)
        self._ticket = ticket
        if not ready:
            session.awaiting_model = True
            self.bus.emit(events.MODEL_LOADING_NEEDED, prompt=prompt)
        self._task = asyncio.create_task(self._run(epoch, prompt, ticket))

    def _is_current(self, epoch: int) -> bool:
        return epoch == self._epoch and self.session.is_generating

    async def _run(self, epoch: int, prompt: str, ticket: QueuedPrompt) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        stream: TimeoutStream | None = None
        token_count = 0
        try:
            await ticket
            if not self._is_current(epoch):
                return
            self.session.awaiting_model = False
            self.bus.emit(events.GENERATION_STARTED, prompt=prompt)
            started = loop.time()
            stream = self.gateway.with_timeout(prompt, self.config.generation_timeout_ms)
            token_count = await self._consume(epoch, stream)
        except QuickPromptError as exc:
            if self._is_current(epoch):
                self._fail(prompt, exc)
            return
        except Exception as exc:
            logger.error("[QuickPrompt Session] Unexpected generation error.", exc_info=True)
            if self._is_current(epoch):
                self._fail(prompt, GenerationFailure(str(exc) or type(exc).__name__))
            return
        finally:
            if stream is not None:
                await stream.aclose()
            ticket.finish()
            if self._ticket is ticket:
                self._ticket = None

        if not self._is_current(epoch):
            return
        response = self.session.current_response
        if not response.strip():
            logger.info("[QuickPrompt Session] Skipping save - empty response (likely cancelled)")
            self._fall_back_cancelled()
            return

        duration_ms = int((loop.time() - started) * 1000)
        self.session.visibility = Visibility.RESPONSE_ACTIVE
        self.session.loading = False
        self.session.focus_target = FocusTarget.RESPONSE

        saved = await self._persist(prompt, response)
        self.bus.emit(
            events.GENERATION_COMPLETE,
            prompt=prompt,
            response=response,
            token_count=token_count,
            duration_ms=duration_ms,
            saved=saved,
        )

    async def _consume(self, epoch: int, stream: TimeoutStream) -> int:
        """Pull fragments into the session. Returns how many were appended."""
        # The loading indicator stays up for at least min_loading_ms.
        min_loading = self.config.min_loading_ms / 1000
        fragment, _ = await asyncio.gather(_next_fragment(stream), asyncio.sleep(min_loading))
        if not self._is_current(epoch):
            return 0
        self.session.loading = False

        count = 0
        while fragment is not None:
            if not self._is_current(epoch):
                break
            self.session.current_response += fragment
            count += 1
            self._fragments = count
            if count % self.progress_every == 0:
                self.bus.emit(
                    events.GENERATION_PROGRESS,
                    token_count=count,
                    partial_response=self.session.current_response,
                )
            fragment = await _next_fragment(stream)
        return count

    def _fall_back_cancelled(self) -> None:
        session = self.session
        session.visibility = Visibility.INPUT_ACTIVE
        session.current_response = ""
        session.was_cancelled = True
        session.loading = False
        session.focus_target = FocusTarget.INPUT
        self.bus.emit(
            events.GENERATION_CANCELLED,
            prompt=session.current_prompt,
            partial_response="",
            token_count=0,
        )

    def _fail(self, prompt: str, error: QuickPromptError) -> None:
        session = self.session
        session.visibility = Visibility.RESPONSE_ACTIVE
        session.current_response = ""
        session.error_message = str(error)
        session.error_kind = error.kind
        session.loading = False
        session.awaiting_model = False
        session.focus_target = FocusTarget.RESPONSE
        logger.error("[QuickPrompt Session] Generation failed: %s", error)
        self.bus.emit(
            events.GENERATION_ERROR,
            prompt=prompt,
            error=str(error),
            error_type=error.kind,
        )

    def _usable_embedding(self, embedding: tuple[float, ...] | None) -> tuple[float, ...] | None:
        if embedding is None:
            return None
        try:
            validate_embedding(embedding, self.store.accepted_dimensions)
        except ValidationError as exc:
            logger.warning("[QuickPrompt Session] Storing conversation without embedding: %s", exc)
            return None
        return embedding

    async def _persist(self, prompt: str, response: str) -> bool:
        """Embed and store the exchange. Failures are reported, never raised."""
        try:
            embedding = self._usable_embedding(await self.gateway.embed(prompt))
            record = self.store.build_record(prompt, response, self.gateway.model_version, embedding)
            result = await self.store.save(record)
        except Exception:
            logger.error("[QuickPrompt Session] Error saving conversation.", exc_info=True)
            return False

        if result.ok:
            self.record_count += 1
            return True
        error = result.error
        if result.capacity_exceeded:
            logger.warning("[QuickPrompt Session] Storage quota exceeded: %s", error)
        else:
            logger.error("[QuickPrompt Session] Failed to save conversation: %s", error)
        self.bus.emit(
            events.STORAGE_WARNING,
            prompt=prompt,
            error=str(error),
            error_type=getattr(error, "kind", "storage-error"),
        )
        return False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def wait_idle(self) -> None:
        """Wait for the in-flight generation (and its persistence) to settle."""
        task = self._task
        if task is None:
            return
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def close(self) -> None:
        """Cancel any in-flight generation and wait for its task to unwind."""
        self.cancel()
        await self.wait_idle()
        self._task = None

    def __repr__(self) -> str:
        return (
            f"SessionStateMachine(visibility={self.session.visibility.value!r}, "
            f"records={self.record_count})"
        )


async def _next_fragment(stream: TimeoutStream) -> str | None:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return None
