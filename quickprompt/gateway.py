"""
Generation Gateway — the seam between the widget and the generation capability.

The gateway hides model-load latency behind a FIFO queue of prompts, hands out
one lazy fragment stream at a time, and gives every stream its own
cancellation token. Consumers pull fragments; the gateway never pushes.

Typical use::

    ticket = gateway.enqueue(prompt)      # queued until the model is ready
    await ticket                          # our turn (FIFO, one at a time)
    try:
        async for fragment in gateway.with_timeout(prompt, 30_000):
            ...
    finally:
        ticket.finish()                   # lets the next queued prompt run
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from collections.abc import AsyncIterator, Callable, Generator
from typing import Any

from .config import WidgetConfig
from .exceptions import (
    AppleFMSetupError,
    GenerationFailure,
    GenerationTimeout,
    ModelLoadError,
    NotReadyError,
    QuickPromptError,
)
from .protocols import EmbeddingBackend, GenerationBackend, GenerationOptions, ProgressCallback
from .records import coerce_embedding

logger = logging.getLogger("quickprompt.gateway")


class CancellationToken:
    """Cooperative cancellation flag, checked at fragment boundaries."""

    __slots__ = ("_cancelled",)

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled})"


class QueuedPrompt:
    """A prompt waiting for its turn on the gateway.

    Awaiting the ticket returns once the model is ready and every prompt queued
    before it has finished. ``finish()`` must be called when the holder is done
    (or gives up) so the queue can advance.
    """

    def __init__(self, prompt: str) -> None:
        self.prompt = prompt
        self._turn: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._finished = asyncio.Event()

    def __await__(self) -> Generator[Any, None, None]:
        return self._turn.__await__()

    @property
    def granted(self) -> bool:
        return self._turn.done() and not self._turn.cancelled() and self._turn.exception() is None

    @property
    def discarded(self) -> bool:
        return self._turn.cancelled()

    def finish(self) -> None:
        if not self._turn.done():
            self._turn.cancel()
        self._finished.set()

    def _grant(self) -> None:
        if not self._turn.done():
            self._turn.set_result(None)

    def _fail(self, error: BaseException) -> None:
        if not self._turn.done():
            self._turn.set_exception(error)
            # The holder may already have given up; mark retrieved to avoid noisy warnings.
            self._turn.exception()
        self._finished.set()

    def __repr__(self) -> str:
        preview = self.prompt if len(self.prompt) <= 30 else self.prompt[:27] + "..."
        return f"QueuedPrompt(prompt={preview!r}, granted={self.granted})"


class FragmentStream:
    """Lazy, finite, non-restartable stream of text fragments.

    Ends silently at the next fragment boundary once its token is cancelled.
    Capability errors are re-raised as ``GenerationFailure``.
    """

    def __init__(
        self,
        source: AsyncIterator[str],
        token: CancellationToken,
        on_close: Callable[[FragmentStream], None] | None = None,
    ) -> None:
        self._source = source
        self.token = token
        self._on_close = on_close
        self._closed = False
        self.fragment_count = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> FragmentStream:
        return self

    async def __anext__(self) -> str:
        if self._closed:
            raise StopAsyncIteration
        if self.token.cancelled:
            logger.debug("[QuickPrompt Gateway] Generation cancelled")
            await self.aclose()
            raise StopAsyncIteration
        try:
            fragment = await self._source.__anext__()
        except StopAsyncIteration:
            await self.aclose()
            raise
        except asyncio.CancelledError:
            self._release()
            raise
        except QuickPromptError:
            await self.aclose()
            raise
        except Exception as exc:
            await self.aclose()
            raise GenerationFailure(str(exc) or type(exc).__name__) from exc

        if self.token.cancelled:
            # A fragment that lands after cancellation is dropped.
            await self.aclose()
            raise StopAsyncIteration
        self.fragment_count += 1
        return str(fragment)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._release()
        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            # The source may still be mid-step if a timeout interrupted it.
            with contextlib.suppress(RuntimeError):
                await aclose()

    def _release(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            self._on_close(self)


class TimeoutStream:
    """Wraps a ``FragmentStream`` with a deadline measured from the first pull."""

    def __init__(
        self,
        inner: FragmentStream,
        timeout_ms: int,
        on_expire: Callable[[], None] | None = None,
    ) -> None:
        self.inner = inner
        self.timeout_ms = timeout_ms
        self._on_expire = on_expire
        self._deadline: float | None = None

    @property
    def token(self) -> CancellationToken:
        return self.inner.token

    def __aiter__(self) -> TimeoutStream:
        return self

    async def __anext__(self) -> str:
        loop = asyncio.get_running_loop()
        if self._deadline is None:
            self._deadline = loop.time() + self.timeout_ms / 1000
        remaining = self._deadline - loop.time()
        if remaining > 0:
            try:
                fragment = await asyncio.wait_for(self._pull(), timeout=remaining)
            except GenerationTimeout:
                raise
            except TimeoutError:
                pass
            else:
                if fragment is None:
                    raise StopAsyncIteration
                return fragment
        await self._expire()
        raise GenerationTimeout(self.timeout_ms)

    async def _pull(self) -> str | None:
        try:
            return await self.inner.__anext__()
        except StopAsyncIteration:
            return None

    async def _expire(self) -> None:
        logger.warning("[QuickPrompt Gateway] Inference timeout after %sms", self.timeout_ms)
        self.inner.token.cancel()
        if self._on_expire is not None:
            self._on_expire()
        await self.inner.aclose()

    async def aclose(self) -> None:
        await self.inner.aclose()


def categorize_load_error(exc: BaseException, model_id: str | None, kind: str = "llm") -> ModelLoadError:
    """Translate a raw load failure into a user-facing ``ModelLoadError``."""
    if isinstance(exc, ModelLoadError):
        return exc
    message = str(exc)
    lowered = message.lower()
    if isinstance(exc, AppleFMSetupError):
        return ModelLoadError(message, category="unavailable", model_id=model_id)
    if "404" in lowered or "not found" in lowered or "failed to fetch" in lowered:
        return ModelLoadError(
            f"Model not found: {model_id}. Check model ID or file path.",
            category="not-found",
            model_id=model_id,
        )
    if "cors" in lowered or "connection" in lowered or "network" in lowered:
        return ModelLoadError(
            f"Network error loading model {model_id}. Check that the model server is reachable.",
            category="network",
            model_id=model_id,
        )
    if "memory" in lowered:
        return ModelLoadError(
            "Out of memory loading model. Try a smaller or more quantized model.",
            category="memory",
            model_id=model_id,
        )
    if "format" in lowered or "invalid" in lowered:
        return ModelLoadError(
            "Invalid model format. Ensure the model is compatible with the configured backend.",
            category="format",
            model_id=model_id,
        )
    return ModelLoadError(
        f"Failed to load {kind} model: {message}", category="unknown", model_id=model_id
    )


class GenerationGateway:
    """Owns the generation capability, its readiness, its queue and its cancellation."""

    def __init__(self, config: WidgetConfig | None = None) -> None:
        self.config = config if config is not None else WidgetConfig()
        self.backend: GenerationBackend | None = None
        self.embedder: EmbeddingBackend | None = None
        self.load_progress = 0
        self.load_error: ModelLoadError | None = None
        self.loading = False
        self._ready = False
        self._queue: deque[QueuedPrompt] = deque()
        self._drain_task: asyncio.Task | None = None
        self._active: FragmentStream | None = None

    # -- readiness ---------------------------------------------------------

    def is_ready(self) -> bool:
        return self._ready and self.backend is not None

    @property
    def model_version(self) -> str:
        if self.backend is None:
            return "unknown"
        return str(getattr(self.backend, "model_id", None) or type(self.backend).__name__)

    @property
    def pending(self) -> int:
        return sum(1 for ticket in self._queue if not ticket._turn.done())

    async def load(
        self, backend: GenerationBackend, on_progress: ProgressCallback | None = None
    ) -> None:
        """Load *backend*, then release queued prompts in FIFO order.

        Raises ``ModelLoadError``; every prompt still queued fails with it.
        """
        model_id = getattr(backend, "model_id", None)
        self._ready = False
        self.loading = True
        self.load_error = None
        self._set_progress(0, on_progress)

        def progress(value: int) -> None:
            self._set_progress(value, on_progress)

        logger.info("[QuickPrompt Gateway] Loading LLM model: %s", model_id)
        try:
            await backend.load(on_progress=progress)
        except Exception as exc:
            error = categorize_load_error(exc, model_id)
            self.load_error = error
            logger.error("[QuickPrompt Gateway] Failed to load model %s: %s", model_id, exc)
            self._fail_queued(error)
            raise error from exc
        finally:
            self.loading = False

        self.backend = backend
        self._ready = True
        self._set_progress(100, on_progress)
        if self._queue:
            logger.info("[QuickPrompt Gateway] Processing %d queued prompts", len(self._queue))
        self._schedule_drain()

    async def load_embedder(
        self, embedder: EmbeddingBackend, on_progress: ProgressCallback | None = None
    ) -> bool:
        """Load the optional embedding capability. Failure is logged, never raised."""
        try:
            await embedder.load(on_progress=on_progress)
        except Exception as exc:
            logger.warning(
                "[QuickPrompt Gateway] Failed to load embedding model %s: %s",
                getattr(embedder, "model_id", None),
                exc,
            )
            return False
        self.embedder = embedder
        logger.info("[QuickPrompt Gateway] Embedding model loaded")
        return True

    def _set_progress(self, value: int, on_progress: ProgressCallback | None) -> None:
        self.load_progress = max(0, min(100, int(value)))
        if on_progress is not None:
            on_progress(self.load_progress)

    # -- queue -------------------------------------------------------------

    def enqueue(self, prompt: str) -> QueuedPrompt:
        """Queue *prompt*. The ticket is granted as soon as it reaches the front."""
        ticket = QueuedPrompt(prompt)
        self._queue.append(ticket)
        if self.is_ready():
            self._schedule_drain()
        return ticket

    async def submit(self, prompt: str) -> QueuedPrompt:
        """Queue *prompt* and wait for its turn."""
        ticket = self.enqueue(prompt)
        await ticket
        return ticket

    def discard(self, ticket: QueuedPrompt) -> None:
        """Drop a ticket that has not run yet, or release one that has."""
        with contextlib.suppress(ValueError):
            self._queue.remove(ticket)
        ticket.finish()

    def _schedule_drain(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        while self._queue and self.is_ready():
            ticket = self._queue.popleft()
            if ticket._turn.done():
                continue
            ticket._grant()
            await ticket._finished.wait()

    def _fail_queued(self, error: BaseException) -> None:
        while self._queue:
            self._queue.popleft()._fail(error)

    # -- generation --------------------------------------------------------

    def options(self) -> GenerationOptions:
        return GenerationOptions(
            system_preamble=self.config.system_preamble,
            temperature=self.config.temperature,
            max_output_units=self.config.max_output_units,
        )

    def stream(self, prompt: str) -> FragmentStream:
        """Start a generation. Fails fast when the capability is not loaded."""
        backend = self.backend
        if backend is None or not self.is_ready():
            if self.load_error is not None:
                raise NotReadyError(f"LLM model failed to load: {self.load_error}")
            raise NotReadyError("LLM model not loaded. Load model before generating.")
        if self._active is not None and not self._active.closed:
            raise GenerationFailure("A generation is already in progress")

        token = CancellationToken()
        try:
            source = backend.stream(prompt, self.options()).__aiter__()
        except Exception as exc:
            raise GenerationFailure(str(exc) or type(exc).__name__) from exc
        stream = FragmentStream(source, token, on_close=self._on_stream_closed)
        self._active = stream
        return stream

    def with_timeout(self, prompt: str, timeout_ms: int | None = None) -> TimeoutStream:
        if timeout_ms is None:
            timeout_ms = self.config.generation_timeout_ms
        return TimeoutStream(self.stream(prompt), timeout_ms, on_expire=self.cancel)

    def cancel(self) -> None:
        """Invalidate the current token. No-op when nothing is streaming."""
        if self._active is not None:
            self._active.token.cancel()

    def _on_stream_closed(self, stream: FragmentStream) -> None:
        if self._active is stream:
            self._active = None

    @property
    def generating(self) -> bool:
        return self._active is not None and not self._active.closed

    # -- embeddings --------------------------------------------------------

    async def embed(self, text: str) -> tuple[float, ...] | None:
        """Vector for *text*, or ``None`` when no embedder is loaded or it fails."""
        if self.embedder is None:
            logger.debug("[QuickPrompt Gateway] No embedding model loaded; storing without vector.")
            return None
        try:
            return coerce_embedding(await self.embedder.embed(text))
        except Exception as exc:
            logger.warning("[QuickPrompt Gateway] Embedding generation failed: %s", exc)
            return None

    # -- teardown ----------------------------------------------------------

    async def dispose(self) -> None:
        """Cancel everything in flight and release the capabilities."""
        self.cancel()
        self._fail_queued(NotReadyError("LLM model was released before this prompt could run."))
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._drain_task
        self._drain_task = None
        for capability in (self.backend, self.embedder):
            close = getattr(capability, "close", None)
            if close is None:
                continue
            try:
                result = close()
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.warning("[QuickPrompt Gateway] Failed to release capability.", exc_info=True)
        self.backend = None
        self.embedder = None
        self._ready = False
        self._active = None

    def __repr__(self) -> str:
        return (
            f"GenerationGateway(model={self.model_version!r}, ready={self.is_ready()}, "
            f"queued={self.pending})"
        )
