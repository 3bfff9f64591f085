"""Widget configuration with clamp-on-write numeric fields."""

from __future__ import annotations

import logging
import math
import os
from collections.abc import Mapping
from typing import Any

logger = logging.getLogger("quickprompt")

DEFAULT_SYSTEM_PREAMBLE = "You are a helpful AI assistant."

TEMPERATURE_RANGE = (0.0, 2.0)
MAX_OUTPUT_UNITS_RANGE = (1, 2048)
GENERATION_TIMEOUT_MS_RANGE = (1000, 120_000)
MIN_LOADING_MS_RANGE = (0, 5000)

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_OUTPUT_UNITS = 512
DEFAULT_GENERATION_TIMEOUT_MS = 30_000
DEFAULT_MIN_LOADING_MS = 800

ENV_PREFIX = "QUICKPROMPT_"

# Attribute-style names a host may forward, mapped onto field names.
_ALIASES = {
    "system-prompt": "system_preamble",
    "system_prompt": "system_preamble",
    "max-tokens": "max_output_units",
    "max_tokens": "max_output_units",
    "inference-timeout": "generation_timeout_ms",
    "inference_timeout": "generation_timeout_ms",
    "model-url": "model_id",
    "model_url": "model_id",
    "embedding-url": "embedding_model_id",
    "embedding_url": "embedding_model_id",
    "min-loading-ms": "min_loading_ms",
}

FIELDS = (
    "system_preamble",
    "temperature",
    "max_output_units",
    "generation_timeout_ms",
    "min_loading_ms",
    "model_id",
    "embedding_model_id",
)


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _parse_number(value: Any, fallback: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        logger.warning("[QuickPrompt Config] Unparsable number %r; using %s.", value, fallback)
        return fallback
    if math.isnan(parsed):
        return fallback
    return parsed


class WidgetConfig:
    """Configuration read by the gateway and the session state machine.

    Numeric fields are clamped into range on every write instead of being
    rejected, so a slightly wrong attribute never breaks the widget.
    """

    def __init__(
        self,
        system_preamble: str | None = DEFAULT_SYSTEM_PREAMBLE,
        temperature: Any = DEFAULT_TEMPERATURE,
        max_output_units: Any = DEFAULT_MAX_OUTPUT_UNITS,
        generation_timeout_ms: Any = DEFAULT_GENERATION_TIMEOUT_MS,
        min_loading_ms: Any = DEFAULT_MIN_LOADING_MS,
        model_id: str | None = None,
        embedding_model_id: str | None = None,
    ) -> None:
        self.system_preamble = system_preamble
        self.temperature = temperature
        self.max_output_units = max_output_units
        self.generation_timeout_ms = generation_timeout_ms
        self.min_loading_ms = min_loading_ms
        self.model_id = model_id
        self.embedding_model_id = embedding_model_id

    @property
    def system_preamble(self) -> str:
        return self._system_preamble

    @system_preamble.setter
    def system_preamble(self, value: str | None) -> None:
        self._system_preamble = str(value) if value else DEFAULT_SYSTEM_PREAMBLE

    @property
    def temperature(self) -> float:
        return self._temperature

    @temperature.setter
    def temperature(self, value: Any) -> None:
        parsed = _parse_number(value, DEFAULT_TEMPERATURE)
        self._temperature = clamp(parsed, *TEMPERATURE_RANGE)

    @property
    def max_output_units(self) -> int:
        return self._max_output_units

    @max_output_units.setter
    def max_output_units(self, value: Any) -> None:
        parsed = _parse_number(value, DEFAULT_MAX_OUTPUT_UNITS)
        self._max_output_units = int(clamp(parsed, *MAX_OUTPUT_UNITS_RANGE))

    @property
    def generation_timeout_ms(self) -> int:
        return self._generation_timeout_ms

    @generation_timeout_ms.setter
    def generation_timeout_ms(self, value: Any) -> None:
        parsed = _parse_number(value, DEFAULT_GENERATION_TIMEOUT_MS)
        self._generation_timeout_ms = int(clamp(parsed, *GENERATION_TIMEOUT_MS_RANGE))

    @property
    def min_loading_ms(self) -> int:
        return self._min_loading_ms

    @min_loading_ms.setter
    def min_loading_ms(self, value: Any) -> None:
        parsed = _parse_number(value, DEFAULT_MIN_LOADING_MS)
        self._min_loading_ms = int(clamp(parsed, *MIN_LOADING_MS_RANGE))

    def update(self, values: Mapping[str, Any]) -> None:
        """Apply a partial update. Unknown keys are ignored with a warning."""
        for key, value in values.items():
            name = _ALIASES.get(key, key.replace("-", "_"))
            if name not in FIELDS:
                logger.warning("[QuickPrompt Config] Ignoring unknown setting '%s'.", key)
                continue
            setattr(self, name, value)

    def to_dict(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in FIELDS}

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> WidgetConfig:
        """Build from attribute-style or snake_case keys, defaults for the rest."""
        config = cls()
        config.update(values)
        return config

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> WidgetConfig:
        """Build from ``QUICKPROMPT_<FIELD>`` environment variables."""
        environ = os.environ if environ is None else environ
        values = {}
        for name in FIELDS:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is not None:
                values[name] = raw
        return cls.from_mapping(values)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, WidgetConfig):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self) -> str:
        fields = ", ".join(f"{name}={value!r}" for name, value in self.to_dict().items())
        return f"WidgetConfig({fields})"
