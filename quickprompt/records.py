"""Conversation records and their validation rules."""

from __future__ import annotations

import math
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .exceptions import ValidationError

PROMPT_MAX_CHARS = 10_000
RESPONSE_MAX_CHARS = 100_000

# Common sentence-embedding widths. Passing ``accepted_dimensions=None`` to
# ``validate_record`` lifts the restriction to "any positive length".
DEFAULT_EMBEDDING_DIMENSIONS = frozenset({256, 384, 512, 768, 1024, 1536, 3072})


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class ConversationRecord:
    """A persisted prompt/response pair. Never mutated once written."""

    id: int
    prompt: str
    response: str
    model_version: str
    created_at: datetime = field(default_factory=utc_now)
    embedding: tuple[float, ...] | None = None

    @property
    def embedding_dim(self) -> int | None:
        return None if self.embedding is None else len(self.embedding)

    def summary(self) -> RecordSummary:
        return RecordSummary(
            id=self.id,
            prompt=self.prompt,
            response=self.response,
            model_version=self.model_version,
            created_at=self.created_at,
            embedding_dim=self.embedding_dim,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "response": self.response,
            "model_version": self.model_version,
            "created_at": self.created_at.isoformat(),
            "embedding": None if self.embedding is None else list(self.embedding),
        }


@dataclass(frozen=True)
class RecordSummary:
    """Record as returned by bulk reads: everything except the vector itself."""

    id: int
    prompt: str
    response: str
    model_version: str
    created_at: datetime
    embedding_dim: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "response": self.response,
            "model_version": self.model_version,
            "created_at": self.created_at.isoformat(),
            "embedding_dim": self.embedding_dim,
        }


def validate_prompt(text: Any) -> str:
    """Return the trimmed prompt, or raise ``ValidationError``."""
    if not isinstance(text, str):
        raise ValidationError("Prompt must be a string")
    trimmed = text.strip()
    if not trimmed:
        raise ValidationError("Prompt cannot be empty")
    if len(trimmed) > PROMPT_MAX_CHARS:
        raise ValidationError(f"Prompt too long (max {PROMPT_MAX_CHARS:,} characters)")
    return trimmed


def coerce_embedding(values: Iterable[Any] | None) -> tuple[float, ...] | None:
    """Normalise a vector-like value (list, array, tensor data) into a tuple of floats."""
    if values is None:
        return None
    try:
        vector = tuple(float(v) for v in values)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Embedding must be a sequence of numbers: {exc}") from None
    return vector


def validate_record(
    record: ConversationRecord,
    *,
    accepted_dimensions: Iterable[int] | None = DEFAULT_EMBEDDING_DIMENSIONS,
    now: datetime | None = None,
) -> None:
    """Check every field of *record*; raise ``ValidationError`` on the first problem."""
    if not isinstance(record.id, int) or isinstance(record.id, bool) or record.id <= 0:
        raise ValidationError("ConversationRecord must have a positive integer id")

    if not isinstance(record.prompt, str):
        raise ValidationError("ConversationRecord must have prompt string")
    if not isinstance(record.response, str):
        raise ValidationError("ConversationRecord must have response string")

    prompt_length = len(record.prompt.strip())
    if prompt_length < 1 or prompt_length > PROMPT_MAX_CHARS:
        raise ValidationError(
            f"Prompt length must be 1-{PROMPT_MAX_CHARS} characters, got {prompt_length}"
        )

    response_length = len(record.response.strip())
    if response_length < 1 or response_length > RESPONSE_MAX_CHARS:
        raise ValidationError(
            f"Response length must be 1-{RESPONSE_MAX_CHARS} characters, got {response_length}"
        )

    if record.embedding is not None:
        validate_embedding(record.embedding, accepted_dimensions)

    if not isinstance(record.model_version, str) or not record.model_version.strip():
        raise ValidationError("ConversationRecord must have modelVersion string")

    if not isinstance(record.created_at, datetime):
        raise ValidationError("ConversationRecord must have created_at as datetime")
    if record.created_at.tzinfo is None:
        raise ValidationError("created_at must be timezone-aware")
    if record.created_at > (now or utc_now()):
        raise ValidationError("Timestamp cannot be in the future")


def validate_embedding(embedding: Sequence[float], accepted_dimensions: Iterable[int] | None) -> None:
    length = len(embedding)
    if length == 0:
        raise ValidationError("Embedding must not be empty")
    if accepted_dimensions is not None:
        accepted = frozenset(accepted_dimensions)
        if length not in accepted:
            allowed = ", ".join(str(d) for d in sorted(accepted))
            raise ValidationError(f"Embedding must have one of [{allowed}] dimensions, got {length}")
    for value in embedding:
        if not isinstance(value, (int, float)) or isinstance(value, bool) or not math.isfinite(value):
            raise ValidationError("Embedding values must be finite numbers")


class RecordIdFactory:
    """Issue ids from the wall clock in milliseconds, strictly increasing."""

    def __init__(self, last_id: int = 0) -> None:
        self._last = last_id

    def observe(self, existing_id: int) -> None:
        self._last = max(self._last, existing_id)

    def __call__(self) -> int:
        candidate = time.time_ns() // 1_000_000
        self._last = max(candidate, self._last + 1)
        return self._last
