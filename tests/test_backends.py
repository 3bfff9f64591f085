"""
Tests for quickprompt.backends.

Covers:
  - snapshot -> delta conversion for cumulative SDK streams
  - AppleFMBackend: availability check, streaming deltas, missing SDK
  - OpenAICompatibleBackend: model check on load, chat-completions streaming
  - OpenAICompatibleEmbedder: embeddings endpoint
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from quickprompt.backends import (
    AppleFMBackend,
    OpenAICompatibleBackend,
    OpenAICompatibleEmbedder,
    snapshot_delta,
)
from quickprompt.exceptions import AppleFMSetupError, ModelLoadError
from quickprompt.gateway import GenerationGateway
from quickprompt.protocols import EmbeddingBackend, GenerationBackend, GenerationOptions

OPTIONS = GenerationOptions(system_preamble="Be kind.", temperature=0.3, max_output_units=64)


def make_mock_model(available=True, reason=None):
    model = MagicMock()
    model.is_available.return_value = (available, reason)
    return model


def make_mock_fm(snapshots=("Hel", "Hello", "Hello!"), available=True):
    fm = MagicMock()
    fm.SystemLanguageModel.return_value = make_mock_model(available, None if available else "disabled")

    async def stream_response(prompt):
        for snapshot in snapshots:
            yield snapshot

    session = MagicMock()
    session.stream_response = stream_response
    fm.LanguageModelSession.return_value = session
    return fm


class FakeCompletionStream:
    def __init__(self, contents):
        self.chunks = []
        for content in contents:
            if content is None:
                self.chunks.append(SimpleNamespace(choices=[]))
            else:
                delta = SimpleNamespace(content=content)
                self.chunks.append(SimpleNamespace(choices=[SimpleNamespace(delta=delta)]))
        self.closed = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.closed = True
        return False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for chunk in self.chunks:
            yield chunk


def make_openai_client(models=("local-model",), contents=("Hi", None, "", " there")):
    client = MagicMock()
    client.models.list = AsyncMock(
        return_value=SimpleNamespace(data=[SimpleNamespace(id=m) for m in models])
    )
    client.chat.completions.create = AsyncMock(return_value=FakeCompletionStream(contents))
    client.embeddings.create = AsyncMock(
        return_value=SimpleNamespace(data=[SimpleNamespace(embedding=[0.1, 0.2, 0.3])])
    )
    client.close = AsyncMock()
    return client


# ========================================================================
# Snapshot deltas
# ========================================================================


class TestSnapshotDelta:
    def test_extension(self):
        assert snapshot_delta("Hel", "Hello") == "lo"

    def test_first_snapshot(self):
        assert snapshot_delta("", "Hi") == "Hi"

    def test_rewrite_returns_whole_snapshot(self):
        assert snapshot_delta("Hello", "Goodbye") == "Goodbye"


# ========================================================================
# Apple Foundation Models
# ========================================================================


class TestAppleFMBackend:
    def test_satisfies_protocol(self):
        assert isinstance(AppleFMBackend(), GenerationBackend)

    async def test_streams_deltas(self):
        fm = make_mock_fm()
        backend = AppleFMBackend()
        with patch("quickprompt.backends.require_apple_fm", return_value=fm):
            progress = []
            await backend.load(on_progress=progress.append)
            fragments = [f async for f in backend.stream("greet", OPTIONS)]
        assert fragments == ["Hel", "lo", "!"]
        assert progress == [10, 100]
        fm.LanguageModelSession.assert_called_once_with(
            model=fm.SystemLanguageModel.return_value, instructions="Be kind."
        )

    async def test_unavailable_model_raises_setup_error(self):
        fm = make_mock_fm(available=False)
        with patch("quickprompt.backends.require_apple_fm", return_value=fm):
            with pytest.raises(AppleFMSetupError, match="disabled"):
                await AppleFMBackend().load()

    async def test_missing_sdk_is_unavailable_category(self):
        gateway = GenerationGateway()
        with patch(
            "quickprompt.backends.require_apple_fm",
            side_effect=AppleFMSetupError("'apple-fm-sdk' is not installed"),
        ):
            with pytest.raises(ModelLoadError) as excinfo:
                await gateway.load(AppleFMBackend())
        assert excinfo.value.category == "unavailable"

    def test_session_requires_load(self):
        with pytest.raises(RuntimeError, match="not loaded"):
            AppleFMBackend().create_session("x")


# ========================================================================
# OpenAI-compatible servers
# ========================================================================


class TestOpenAICompatibleBackend:
    def test_satisfies_protocol(self):
        backend = OpenAICompatibleBackend("m", client=make_openai_client())
        assert isinstance(backend, GenerationBackend)

    async def test_load_checks_model(self):
        client = make_openai_client(models=("local-model", "other"))
        progress = []
        await OpenAICompatibleBackend("local-model", client=client).load(progress.append)
        assert progress == [10, 100]

    async def test_load_missing_model_is_not_found(self):
        client = make_openai_client(models=("other",))
        gateway = GenerationGateway()
        with pytest.raises(ModelLoadError) as excinfo:
            await gateway.load(OpenAICompatibleBackend("local-model", client=client))
        assert excinfo.value.category == "not-found"

    async def test_load_accepts_server_without_model_listing(self):
        client = make_openai_client(models=())
        await OpenAICompatibleBackend("anything", client=client).load()

    async def test_stream_skips_empty_chunks(self):
        client = make_openai_client()
        backend = OpenAICompatibleBackend("local-model", client=client)
        fragments = [f async for f in backend.stream("hello", OPTIONS)]
        assert fragments == ["Hi", " there"]

        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "local-model"
        assert kwargs["stream"] is True
        assert kwargs["temperature"] == 0.3
        assert kwargs["max_tokens"] == 64
        assert kwargs["messages"] == [
            {"role": "system", "content": "Be kind."},
            {"role": "user", "content": "hello"},
        ]
        assert client.chat.completions.create.return_value.closed

    async def test_close_closes_client(self):
        client = make_openai_client()
        await OpenAICompatibleBackend("m", client=client).close()
        client.close.assert_awaited_once()

    def test_default_client_construction(self):
        backend = OpenAICompatibleBackend("m", base_url="http://localhost:8080/v1")
        assert str(backend.client.base_url).startswith("http://localhost:8080/v1")


class TestOpenAICompatibleEmbedder:
    async def test_embed(self):
        client = make_openai_client()
        embedder = OpenAICompatibleEmbedder("embed-model", client=client)
        assert isinstance(embedder, EmbeddingBackend)
        assert await embedder.embed("text") == [0.1, 0.2, 0.3]
        client.embeddings.create.assert_awaited_with(model="embed-model", input="text")

    async def test_load_probes_endpoint(self):
        client = make_openai_client()
        progress = []
        await OpenAICompatibleEmbedder("embed-model", client=client).load(progress.append)
        assert progress == [100]
        client.embeddings.create.assert_awaited_once()

    async def test_failed_embedder_load_is_not_fatal(self):
        client = make_openai_client()
        client.embeddings.create.side_effect = RuntimeError("no such model")
        gateway = GenerationGateway()
        assert not await gateway.load_embedder(OpenAICompatibleEmbedder("e", client=client))
        assert gateway.embedder is None
