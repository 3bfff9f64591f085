"""
Capability protocols — the seams between the widget core and the outside world.

A generation capability turns a prompt into a lazy, finite stream of text
fragments. An embedding capability turns text into a fixed-length vector. A
record backend is an asynchronous key-value store keyed by numeric id. The
core never looks past these protocols.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .records import ConversationRecord, RecordSummary

ProgressCallback = Callable[[int], None]


@dataclass(frozen=True)
class GenerationOptions:
    """Per-generation knobs handed to the capability."""

    system_preamble: str
    temperature: float
    max_output_units: int

    def render_prompt(self, prompt: str) -> str:
        """Plain-text chat framing for capabilities without a chat template."""
        if self.system_preamble:
            return f"{self.system_preamble}\n\nUser: {prompt}\n\nAssistant:"
        return f"User: {prompt}\n\nAssistant:"


@runtime_checkable
class GenerationBackend(Protocol):
    model_id: str

    async def load(self, on_progress: ProgressCallback | None = None) -> None: ...

    def stream(self, prompt: str, options: GenerationOptions) -> AsyncIterator[str]: ...


@runtime_checkable
class EmbeddingBackend(Protocol):
    model_id: str

    async def load(self, on_progress: ProgressCallback | None = None) -> None: ...

    async def embed(self, text: str) -> Sequence[float]: ...


@runtime_checkable
class RecordBackend(Protocol):
    async def add(self, record: ConversationRecord) -> None: ...

    async def recent(self, limit: int) -> list[RecordSummary]: ...

    async def all(self) -> list[ConversationRecord]: ...

    async def count(self) -> int: ...

    async def clear(self) -> int: ...

    async def max_id(self) -> int: ...

    async def close(self) -> None: ...
