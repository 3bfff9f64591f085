"""
Concrete generation and embedding capabilities.

- ``AppleFMBackend``: the on-device Apple Foundation Model (``apple_fm_sdk``),
  imported lazily because the SDK is a manual, macOS-only install.
- ``OpenAICompatibleBackend`` / ``OpenAICompatibleEmbedder``: any server that
  speaks the OpenAI HTTP API (LM Studio, llama.cpp server, vLLM, ...).
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence
from typing import Any

from openai import AsyncOpenAI

from .exceptions import ensure_model_available, require_apple_fm
from .protocols import GenerationOptions, ProgressCallback

logger = logging.getLogger("quickprompt.backends")

DEFAULT_BASE_URL = "http://127.0.0.1:1234/v1"
DEFAULT_API_KEY = "lm-studio"  # local servers accept any string


def snapshot_delta(previous: str, snapshot: str) -> str:
    """Text added by *snapshot* relative to the cumulative *previous* one.

    A snapshot that does not extend the previous one is returned whole.
    """
    if snapshot.startswith(previous):
        return snapshot[len(previous) :]
    return snapshot


class AppleFMBackend:
    """Apple Foundation Models capability.

    The SDK streams cumulative snapshots; they are turned into deltas here so
    the gateway only ever sees fresh fragments.
    """

    model_id = "apple-foundation-model"

    def __init__(self) -> None:
        self._fm: Any = None
        self._model: Any = None

    def create_model(self) -> Any:
        fm = require_apple_fm()
        model = fm.SystemLanguageModel()
        ensure_model_available(model, context="generation")
        self._fm = fm
        return model

    def create_session(self, instructions: str) -> Any:
        if self._model is None:
            raise RuntimeError("Apple Foundation Model is not loaded")
        return self._fm.LanguageModelSession(model=self._model, instructions=instructions)

    async def load(self, on_progress: ProgressCallback | None = None) -> None:
        if on_progress is not None:
            on_progress(10)
        self._model = self.create_model()
        logger.info("[QuickPrompt Apple FM] System language model available")
        if on_progress is not None:
            on_progress(100)

    async def stream(self, prompt: str, options: GenerationOptions) -> AsyncIterator[str]:
        session = self.create_session(options.system_preamble)
        seen = ""
        async for snapshot in session.stream_response(prompt):
            text = str(snapshot)
            delta = snapshot_delta(seen, text)
            seen = text
            if delta:
                yield delta

    def close(self) -> None:
        self._model = None


class OpenAICompatibleBackend:
    """Chat-completions streaming against an OpenAI-compatible server."""

    def __init__(
        self,
        model_id: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        api_key: str = DEFAULT_API_KEY,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.model_id = model_id
        self.client = client if client is not None else AsyncOpenAI(base_url=base_url, api_key=api_key)

    async def load(self, on_progress: ProgressCallback | None = None) -> None:
        """Confirm the server is reachable and serves ``model_id``."""
        if on_progress is not None:
            on_progress(10)
        page = await self.client.models.list()
        available = [model.id for model in page.data]
        if available and self.model_id not in available:
            raise LookupError(f"Model '{self.model_id}' not found (404); server offers {available}")
        logger.info("[QuickPrompt OpenAI] Model '%s' available", self.model_id)
        if on_progress is not None:
            on_progress(100)

    async def stream(self, prompt: str, options: GenerationOptions) -> AsyncIterator[str]:
        response = await self.client.chat.completions.create(
            model=self.model_id,
            messages=[
                {"role": "system", "content": options.system_preamble},
                {"role": "user", "content": prompt},
            ],
            temperature=options.temperature,
            max_tokens=options.max_output_units,
            stream=True,
        )
        async with response:
            async for chunk in response:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content

    async def close(self) -> None:
        await self.client.close()


class OpenAICompatibleEmbedder:
    """Embeddings endpoint of an OpenAI-compatible server."""

    def __init__(
        self,
        model_id: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        api_key: str = DEFAULT_API_KEY,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self.model_id = model_id
        self.client = client if client is not None else AsyncOpenAI(base_url=base_url, api_key=api_key)

    async def load(self, on_progress: ProgressCallback | None = None) -> None:
        # A probe embedding both checks the model and warms it up.
        await self.embed("warmup")
        if on_progress is not None:
            on_progress(100)

    async def embed(self, text: str) -> Sequence[float]:
        response = await self.client.embeddings.create(model=self.model_id, input=text)
        return response.data[0].embedding

    async def close(self) -> None:
        await self.client.close()
