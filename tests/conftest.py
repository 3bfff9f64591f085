"""
Shared fixtures and fake capabilities for the QuickPrompt test suite.

The fakes stand in for a real model server: they honour the
``GenerationBackend`` / ``EmbeddingBackend`` protocols and record what they
were asked to do.
"""

import asyncio

import pytest

from quickprompt.config import WidgetConfig
from quickprompt.events import WILDCARD, EventBus
from quickprompt.gateway import GenerationGateway
from quickprompt.session import SessionStateMachine
from quickprompt.store import MemoryRecordBackend, RecordStore


class FakeBackend:
    """Yields scripted fragments, optionally pausing between them."""

    def __init__(self, fragments=("pong",), model_id="fake-model", delay=0.0, fail_after=None):
        self.model_id = model_id
        self.fragments = list(fragments)
        self.delay = delay
        self.fail_after = fail_after
        self.loaded = False
        self.closed = False
        self.prompts = []
        self.options = []

    async def load(self, on_progress=None):
        if on_progress is not None:
            on_progress(50)
        self.loaded = True

    async def stream(self, prompt, options):
        self.prompts.append(prompt)
        self.options.append(options)
        for index, fragment in enumerate(self.fragments):
            if self.fail_after is not None and index == self.fail_after:
                raise RuntimeError("backend exploded")
            if self.delay:
                await asyncio.sleep(self.delay)
            else:
                await asyncio.sleep(0)
            yield fragment

    def close(self):
        self.closed = True


class GatedBackend(FakeBackend):
    """Yields its first ``release_after`` fragments, then waits on ``gate``."""

    def __init__(self, fragments=("a", "b", "c", "d", "e"), release_after=3, **kwargs):
        super().__init__(fragments, **kwargs)
        self.release_after = release_after
        self.gate = asyncio.Event()
        self.reached_gate = asyncio.Event()

    async def stream(self, prompt, options):
        self.prompts.append(prompt)
        for index, fragment in enumerate(self.fragments):
            if index == self.release_after:
                self.reached_gate.set()
                await self.gate.wait()
            yield fragment


class HangingBackend(FakeBackend):
    """Never yields a fragment."""

    async def stream(self, prompt, options):
        self.prompts.append(prompt)
        await asyncio.Event().wait()
        yield ""  # pragma: no cover


class SlowLoadBackend(FakeBackend):
    """Load blocks until ``release`` is set."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.release = asyncio.Event()

    async def load(self, on_progress=None):
        await self.release.wait()
        self.loaded = True


class FailingLoadBackend(FakeBackend):
    def __init__(self, error=None, **kwargs):
        super().__init__(**kwargs)
        self.error = error if error is not None else RuntimeError("HTTP 404: not found")
        self.attempts = 0

    async def load(self, on_progress=None):
        self.attempts += 1
        raise self.error


class FakeEmbedder:
    def __init__(self, dimensions=384, model_id="fake-embedder", fail=False):
        self.model_id = model_id
        self.dimensions = dimensions
        self.fail = fail
        self.texts = []

    async def load(self, on_progress=None):
        if on_progress is not None:
            on_progress(100)

    async def embed(self, text):
        self.texts.append(text)
        if self.fail:
            raise RuntimeError("embedding failed")
        # Deterministic, text-dependent, non-zero vector.
        seed = sum(ord(ch) for ch in text) or 1
        return [((seed * (i + 1)) % 97 + 1) / 97 for i in range(self.dimensions)]


class EventRecorder:
    """Collects every notification emitted on a bus."""

    def __init__(self, bus):
        self.notifications = []
        bus.subscribe(WILDCARD, self.notifications.append)

    @property
    def names(self):
        return [n.name for n in self.notifications]

    def of(self, name):
        return [n for n in self.notifications if n.name == name]

    def last(self, name):
        matches = self.of(name)
        return matches[-1] if matches else None


async def settle(machine, rounds=3):
    """Let background tasks run, then wait for the current generation."""
    for _ in range(rounds):
        await asyncio.sleep(0)
    await machine.wait_idle()


@pytest.fixture
def config():
    return WidgetConfig(min_loading_ms=0)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    return EventRecorder(bus)


@pytest.fixture
def store():
    return RecordStore(MemoryRecordBackend())


@pytest.fixture
def gateway(config):
    return GenerationGateway(config)


@pytest.fixture
async def ready_gateway(gateway):
    await gateway.load(FakeBackend())
    return gateway


@pytest.fixture
def machine(gateway, store, bus, config):
    return SessionStateMachine(gateway, store, bus, config)
