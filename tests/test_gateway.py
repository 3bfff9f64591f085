"""
Tests for quickprompt.gateway (GenerationGateway and its streams).

Covers:
  - Readiness and load progress
  - Load-error categorisation and failing queued prompts
  - FIFO queue drain, one ticket at a time
  - Fragment streaming, concurrent-stream rejection
  - Cooperative cancellation at fragment boundaries
  - Capability errors -> GenerationFailure
  - Timeout measured from the first pull
  - Embeddings and teardown (queued prompts fail with NotReadyError)
"""

import asyncio

import pytest

from quickprompt.config import WidgetConfig
from quickprompt.exceptions import (
    AppleFMSetupError,
    GenerationFailure,
    GenerationTimeout,
    ModelLoadError,
    NotReadyError,
)
from quickprompt.gateway import GenerationGateway, categorize_load_error
from quickprompt.session import SessionStateMachine, Visibility
from quickprompt.store import MemoryRecordBackend, RecordStore

from .conftest import FailingLoadBackend, FakeBackend, FakeEmbedder, GatedBackend, HangingBackend


async def drain(stream):
    return [fragment async for fragment in stream]


async def spin(rounds=5):
    for _ in range(rounds):
        await asyncio.sleep(0)


# ========================================================================
# Loading
# ========================================================================


class TestLoading:
    async def test_not_ready_before_load(self, gateway):
        assert not gateway.is_ready()
        assert gateway.model_version == "unknown"
        with pytest.raises(NotReadyError, match="not loaded"):
            gateway.stream("hi")

    async def test_load_reports_progress(self, gateway):
        seen = []
        await gateway.load(FakeBackend(model_id="m-1"), on_progress=seen.append)
        assert gateway.is_ready()
        assert seen == [0, 50, 100]
        assert gateway.load_progress == 100
        assert gateway.model_version == "m-1"

    async def test_load_failure_is_categorised(self, gateway):
        with pytest.raises(ModelLoadError) as excinfo:
            await gateway.load(FailingLoadBackend(model_id="ghost"))
        assert excinfo.value.category == "not-found"
        assert "ghost" in str(excinfo.value)
        assert not gateway.is_ready()
        assert not gateway.loading
        with pytest.raises(NotReadyError, match="failed to load"):
            gateway.stream("hi")

    async def test_load_failure_fails_queued_prompts(self, gateway):
        ticket = gateway.enqueue("waiting")
        with pytest.raises(ModelLoadError):
            await gateway.load(FailingLoadBackend())
        with pytest.raises(ModelLoadError):
            await ticket

    @pytest.mark.parametrize(
        ("error", "category"),
        [
            (RuntimeError("HTTP 404"), "not-found"),
            (RuntimeError("Failed to fetch weights"), "not-found"),
            (ConnectionError("Connection refused"), "network"),
            (RuntimeError("CORS policy blocked"), "network"),
            (MemoryError("out of memory"), "memory"),
            (ValueError("invalid header"), "format"),
            (AppleFMSetupError("SDK missing"), "unavailable"),
            (RuntimeError("boom"), "unknown"),
        ],
    )
    def test_categorize_load_error(self, error, category):
        result = categorize_load_error(error, "model-x")
        assert result.category == category
        assert result.model_id == "model-x"
        assert result.kind == "model-load-error"

    def test_categorize_passes_through_model_load_error(self):
        original = ModelLoadError("already", category="memory")
        assert categorize_load_error(original, None) is original


# ========================================================================
# Queue
# ========================================================================


class TestQueue:
    async def test_prompts_queued_before_load_run_in_order(self, gateway):
        tickets = [gateway.enqueue(f"p{n}") for n in range(3)]
        assert gateway.pending == 3
        await spin()
        assert not any(t.granted for t in tickets)

        await gateway.load(FakeBackend())
        await spin()
        assert [t.granted for t in tickets] == [True, False, False]

        tickets[0].finish()
        await spin()
        assert [t.granted for t in tickets] == [True, True, False]

        tickets[1].finish()
        await spin()
        assert tickets[2].granted
        tickets[2].finish()

    async def test_discarded_ticket_is_skipped(self, gateway):
        first, second, third = (gateway.enqueue(f"p{n}") for n in range(3))
        gateway.discard(second)
        assert second.discarded
        await gateway.load(FakeBackend())
        await spin()
        first.finish()
        await spin()
        assert third.granted
        assert not second.granted
        third.finish()

    async def test_submit_waits_for_turn(self, ready_gateway):
        ticket = await ready_gateway.submit("hello")
        assert ticket.granted
        ticket.finish()


# ========================================================================
# Streaming
# ========================================================================


class TestStreaming:
    async def test_stream_yields_all_fragments(self, gateway):
        backend = FakeBackend(["Hel", "lo", "!"])
        await gateway.load(backend)
        stream = gateway.stream("greet")
        assert gateway.generating
        assert await drain(stream) == ["Hel", "lo", "!"]
        assert stream.fragment_count == 3
        assert not gateway.generating
        assert backend.prompts == ["greet"]

    async def test_options_follow_config(self):
        config = WidgetConfig(temperature=0.1, max_output_units=32, system_preamble="Be brief.")
        gateway = GenerationGateway(config)
        backend = FakeBackend()
        await gateway.load(backend)
        await drain(gateway.stream("x"))
        (options,) = backend.options
        assert options.temperature == 0.1
        assert options.max_output_units == 32
        assert options.system_preamble == "Be brief."
        assert options.render_prompt("x") == "Be brief.\n\nUser: x\n\nAssistant:"

    async def test_second_stream_rejected_while_active(self, ready_gateway):
        stream = ready_gateway.stream("one")
        with pytest.raises(GenerationFailure, match="already in progress"):
            ready_gateway.stream("two")
        await stream.aclose()
        await drain(ready_gateway.stream("three"))

    async def test_cancel_ends_stream_at_next_boundary(self, gateway):
        await gateway.load(FakeBackend(["a", "b", "c", "d", "e"]))
        stream = gateway.stream("x")
        got = [await stream.__anext__(), await stream.__anext__()]
        gateway.cancel()
        assert stream.token.cancelled
        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()
        assert got == ["a", "b"]
        assert stream.closed
        assert not gateway.generating

    async def test_cancel_without_stream_is_noop(self, ready_gateway):
        ready_gateway.cancel()
        assert not ready_gateway.generating

    async def test_backend_error_becomes_generation_failure(self, gateway):
        await gateway.load(FakeBackend(["a", "b", "c"], fail_after=1))
        stream = gateway.stream("x")
        assert await stream.__anext__() == "a"
        with pytest.raises(GenerationFailure, match="backend exploded"):
            await stream.__anext__()
        assert not gateway.generating


# ========================================================================
# Timeout
# ========================================================================


class TestTimeout:
    async def test_timeout_raises_and_releases_stream(self, gateway):
        await gateway.load(HangingBackend())
        stream = gateway.with_timeout("x", 50)
        with pytest.raises(GenerationTimeout, match="Inference timeout after 50ms") as excinfo:
            await stream.__anext__()
        assert excinfo.value.kind == "inference-timeout"
        assert stream.token.cancelled
        assert not gateway.generating

    async def test_deadline_starts_at_first_pull(self, gateway):
        await gateway.load(FakeBackend(["ok"]))
        stream = gateway.with_timeout("x", 100)
        await asyncio.sleep(0.2)
        assert await drain(stream) == ["ok"]

    async def test_default_timeout_from_config(self, ready_gateway):
        stream = ready_gateway.with_timeout("x")
        assert stream.timeout_ms == ready_gateway.config.generation_timeout_ms
        await stream.aclose()


# ========================================================================
# Embeddings / teardown
# ========================================================================


class TestEmbeddingAndDispose:
    async def test_embed_without_embedder(self, ready_gateway):
        assert await ready_gateway.embed("x") is None

    async def test_embed_with_embedder(self, ready_gateway):
        assert await ready_gateway.load_embedder(FakeEmbedder(dimensions=8))
        vector = await ready_gateway.embed("hello")
        assert isinstance(vector, tuple)
        assert len(vector) == 8

    async def test_embed_failure_returns_none(self, ready_gateway):
        await ready_gateway.load_embedder(FakeEmbedder(fail=True))
        assert await ready_gateway.embed("hello") is None

    async def test_dispose_releases_backend(self, gateway):
        backend = FakeBackend()
        await gateway.load(backend)
        waiting = gateway.enqueue("never runs")
        await gateway.dispose()
        assert backend.closed
        assert not gateway.is_ready()
        assert waiting._finished.is_set()
        with pytest.raises(NotReadyError, match="released"):
            await waiting
        with pytest.raises(NotReadyError, match="not loaded"):
            gateway.stream("after dispose")

    async def test_dispose_fails_waiting_session(self, gateway):
        backend = GatedBackend(["a", "b"], release_after=1)
        await gateway.load(backend)
        other = SessionStateMachine(gateway, RecordStore(MemoryRecordBackend()), config=gateway.config)
        first = SessionStateMachine(gateway, RecordStore(MemoryRecordBackend()), config=gateway.config)
        first.activate()
        first.submit("running")
        await asyncio.wait_for(backend.reached_gate.wait(), timeout=1)
        other.activate()
        other.submit("queued")
        await asyncio.sleep(0)

        await gateway.dispose()
        backend.gate.set()
        await asyncio.wait_for(other.wait_idle(), timeout=1)
        assert other.session.visibility is Visibility.RESPONSE_ACTIVE
        assert other.session.error_kind == "not-ready"
        assert other.session.current_prompt == "queued"
        await asyncio.wait_for(first.wait_idle(), timeout=1)
