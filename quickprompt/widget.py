"""
ChatWidget — the public control surface a host embeds.

One widget owns one of each component (store, gateway, state machine,
activation surface, event bus) and ties their lifecycles together::

    widget = ChatWidget(backend=OpenAICompatibleBackend("qwen2.5-7b-instruct"),
                        store=RecordStore.open("history.sqlite3"))
    widget.bus.subscribe("generation-complete", on_complete)
    await widget.mount(host_events)
    ...
    await widget.unmount()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from . import events
from .activation import ActivationSurface, Bounds, EventTarget, Hotkey
from .config import WidgetConfig
from .events import EventBus, Notification
from .exceptions import ModelLoadError, StorageFailure
from .gateway import GenerationGateway
from .protocols import EmbeddingBackend, GenerationBackend
from .records import RecordSummary
from .session import Session, SessionStateMachine
from .store import RecordStore

logger = logging.getLogger("quickprompt.widget")


class ChatWidget:
    def __init__(
        self,
        config: WidgetConfig | None = None,
        *,
        backend: GenerationBackend | None = None,
        embedder: EmbeddingBackend | None = None,
        store: RecordStore | None = None,
        bus: EventBus | None = None,
        hotkey: Hotkey | None = None,
        bounds: Bounds | None = None,
        input_bounds: Bounds | None = None,
    ) -> None:
        self.config = config if config is not None else WidgetConfig()
        self.backend = backend
        self.embedder = embedder
        self.bus = bus if bus is not None else EventBus()
        self.store = store if store is not None else RecordStore()
        self.gateway = GenerationGateway(self.config)
        self.machine = SessionStateMachine(self.gateway, self.store, self.bus, self.config)
        self.surface = ActivationSurface(self.machine, hotkey, bounds, input_bounds)
        self._load_task: asyncio.Task | None = None
        self._subscriptions: list[Any] = []
        self._mounted = False

    # -- lifecycle ---------------------------------------------------------

    async def mount(self, host: EventTarget) -> None:
        """Open the store, start listening on *host* and begin loading the model."""
        if self._mounted:
            return
        try:
            await self.store.initialize()
        except StorageFailure as exc:
            logger.warning("[QuickPrompt Widget] Conversation store unavailable: %s", exc)
        try:
            self.machine.record_count = await self.store.count()
        except StorageFailure as exc:
            logger.warning("[QuickPrompt Widget] Could not count stored conversations: %s", exc)
            self.machine.record_count = 0

        self.surface.mount(host)
        self._subscriptions.append(
            self.bus.subscribe(events.MODEL_LOADING_NEEDED, self._on_loading_needed)
        )
        self._mounted = True
        logger.info("[QuickPrompt Widget] Connected (%s)", self.surface.hotkey)
        self.bus.emit(
            events.CHAT_CONNECTED,
            hotkey=str(self.surface.hotkey),
            record_count=self.machine.record_count,
        )
        if self.backend is not None:
            self.load_model()

    async def unmount(self) -> None:
        """Remove every listener, cancel work in flight and release resources."""
        if not self._mounted:
            return
        self._mounted = False
        self.surface.unmount()
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions.clear()
        await self.machine.close()
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._load_task
        self._load_task = None
        await self.gateway.dispose()
        await self.store.close()
        logger.info("[QuickPrompt Widget] Disconnected")

    @property
    def mounted(self) -> bool:
        return self._mounted

    # -- model loading -----------------------------------------------------

    def load_model(self, backend: GenerationBackend | None = None) -> asyncio.Task | None:
        """Start loading *backend* (or the configured one) in the background."""
        if backend is not None:
            self.backend = backend
        if self.backend is None:
            logger.warning("[QuickPrompt Widget] No generation backend configured.")
            return None
        if self._load_task is not None and not self._load_task.done():
            return self._load_task
        self._load_task = asyncio.create_task(self._load(self.backend))
        return self._load_task

    async def wait_model(self) -> bool:
        """Wait for the current load attempt. Returns whether the model is ready."""
        if self._load_task is not None:
            await self._load_task
        return self.gateway.is_ready()

    async def _load(self, backend: GenerationBackend) -> None:
        model_id = getattr(backend, "model_id", None)
        self.bus.emit(events.MODEL_LOADING, model_id=model_id, type="llm")

        def on_progress(progress: int) -> None:
            self.bus.emit(events.MODEL_PROGRESS, model_id=model_id, progress=progress)

        try:
            await self.gateway.load(backend, on_progress=on_progress)
        except ModelLoadError as exc:
            # Queued prompts have already been failed by the gateway.
            self.bus.emit(
                events.MODEL_ERROR,
                model_id=model_id,
                error=str(exc),
                category=exc.category,
                type="llm",
            )
            return
        self.bus.emit(events.MODEL_LOADED, model_id=model_id, type="llm")

        if self.embedder is not None and self.gateway.embedder is None:
            if await self.gateway.load_embedder(self.embedder):
                self.bus.emit(
                    events.MODEL_LOADED,
                    model_id=getattr(self.embedder, "model_id", None),
                    type="embedding",
                )

    def _on_loading_needed(self, notification: Notification) -> None:
        if self.gateway.loading or self.gateway.is_ready():
            return
        logger.info("[QuickPrompt Widget] Prompt queued before the model was ready; loading.")
        self.load_model()

    # -- control surface ---------------------------------------------------

    def activate(self) -> bool:
        return self.machine.activate()

    def hide(self) -> bool:
        return self.machine.hide()

    def retry(self) -> bool:
        return self.machine.retry()

    async def clear_history(self) -> int:
        """Delete every stored conversation. Storage errors propagate."""
        try:
            removed = await self.store.clear_all()
        except StorageFailure:
            logger.error("[QuickPrompt Widget] Failed to clear history.", exc_info=True)
            raise
        self.machine.record_count = 0
        self.bus.emit(events.HISTORY_CLEARED, count=removed)
        return removed

    async def get_history(self, limit: int = 10) -> list[RecordSummary]:
        """Newest-first history; an empty list when the store cannot be read."""
        try:
            return await self.store.recent(limit)
        except StorageFailure as exc:
            logger.error("[QuickPrompt Widget] Failed to retrieve history: %s", exc)
            return []

    async def search_history(self, text: str, limit: int = 5) -> list[tuple[float, RecordSummary]]:
        """Past conversations most similar to *text*. Empty without an embedder."""
        embedding = await self.gateway.embed(text)
        if embedding is None:
            return []
        try:
            return await self.store.similar(embedding, limit)
        except StorageFailure as exc:
            logger.error("[QuickPrompt Widget] History search failed: %s", exc)
            return []

    # -- configuration -----------------------------------------------------

    @property
    def system_preamble(self) -> str:
        return self.config.system_preamble

    @system_preamble.setter
    def system_preamble(self, value: str | None) -> None:
        self.config.system_preamble = value

    @property
    def temperature(self) -> float:
        return self.config.temperature

    @temperature.setter
    def temperature(self, value: Any) -> None:
        self.config.temperature = value

    @property
    def max_output_units(self) -> int:
        return self.config.max_output_units

    @max_output_units.setter
    def max_output_units(self, value: Any) -> None:
        self.config.max_output_units = value

    @property
    def generation_timeout_ms(self) -> int:
        return self.config.generation_timeout_ms

    @generation_timeout_ms.setter
    def generation_timeout_ms(self, value: Any) -> None:
        self.config.generation_timeout_ms = value

    # -- status ------------------------------------------------------------

    @property
    def session(self) -> Session:
        return self.machine.session

    @property
    def visible(self) -> bool:
        return self.machine.session.visible

    @property
    def generating(self) -> bool:
        return self.machine.session.is_generating

    @property
    def model_ready(self) -> bool:
        return self.gateway.is_ready()

    @property
    def record_count(self) -> int:
        return self.machine.record_count

    def __repr__(self) -> str:
        return (
            f"ChatWidget(visibility={self.session.visibility.value!r}, "
            f"model_ready={self.model_ready}, records={self.record_count})"
        )
