"""
Error taxonomy for QuickPrompt.

Every failure the widget can surface derives from ``QuickPromptError`` so a host
can catch the whole family in one place. ``kind`` is the stable, host-facing
name used in notifications (``generation-error`` carries it as ``error_type``).
"""

from __future__ import annotations

import importlib
from typing import Any


class QuickPromptError(Exception):
    """Base class for all QuickPrompt errors."""

    kind = "error"


class ValidationError(QuickPromptError, ValueError):
    """A prompt or record failed local validation. Never reaches storage or a model."""

    kind = "validation"


class NotReadyError(QuickPromptError):
    """Generation was requested before the capability finished loading."""

    kind = "not-ready"


class GenerationFailure(QuickPromptError):
    """The generation capability reported an error."""

    kind = "inference-error"


class ModelLoadError(GenerationFailure):
    """The generation capability could not be loaded."""

    kind = "model-load-error"

    def __init__(self, message: str, *, category: str = "unknown", model_id: str | None = None):
        super().__init__(message)
        self.category = category
        self.model_id = model_id


class GenerationTimeout(QuickPromptError, TimeoutError):
    """Generation exceeded the configured time budget."""

    kind = "inference-timeout"

    def __init__(self, timeout_ms: int):
        super().__init__(f"Inference timeout after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class StorageFailure(QuickPromptError):
    """A persistence operation failed for a reason other than capacity."""

    kind = "storage-error"


class CapacityExceededError(StorageFailure):
    """The record store is full."""

    kind = "capacity-exceeded"

    def __init__(
        self,
        message: str = "Storage quota exceeded. Clear history to continue saving conversations.",
    ):
        super().__init__(message)


class AppleFMSetupError(QuickPromptError, RuntimeError):
    """Apple Foundation Models SDK is missing or the system model is unavailable."""

    kind = "model-load-error"


def require_apple_fm() -> Any:
    """Import ``apple_fm_sdk`` or raise a setup error with install guidance."""
    try:
        return importlib.import_module("apple_fm_sdk")
    except ImportError:
        raise AppleFMSetupError(
            "[QuickPrompt] 'apple-fm-sdk' is not installed. "
            "The Apple Foundation Models backend requires the SDK to be installed manually "
            "on macOS with Apple Intelligence enabled."
        ) from None


def ensure_model_available(model: Any, context: str = "generation") -> None:
    """Raise ``AppleFMSetupError`` when the system model reports it cannot run."""
    is_available, reason = model.is_available()
    if not is_available:
        raise AppleFMSetupError(
            f"[QuickPrompt] Foundation Model is not available for {context}: {reason}"
        )
