"""Runtime settings for the reconciliation engine.

Settings are plain values resolved once by the host (CLI or service) and then
passed explicitly into the orchestrator. Nothing here is read at import time.

Environment variables (all optional):

- ``STATEMENT_ENGINE_AI_DELAY_MS``: pause after each AI categorization call.
- ``STATEMENT_ENGINE_PREVIOUS_BALANCE_MARKERS``: comma-separated phrases that
  identify a "previous balance" row among the first transactions.
- ``STATEMENT_ENGINE_OPENAI_MODEL``: model used for single-token
  categorization.
- ``STATEMENT_ENGINE_EXTRACTION_MODEL``: vision model used for page
  extraction.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

DEFAULT_AI_DELAY_MS: int = 2000

# Spanish and English variants seen on Mexican and US statements.
DEFAULT_PREVIOUS_BALANCE_MARKERS: tuple[str, ...] = (
    "saldo anterior",
    "balance anterior",
    "saldo previo",
    "saldo inicial",
    "balance inicial",
    "previous balance",
    "balance brought forward",
)

DEFAULT_OPENAI_MODEL: str = "gpt-4o-mini"
DEFAULT_EXTRACTION_MODEL: str = "gpt-4o"


def _int_from_env(raw: str | None, default: int) -> int:
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        return default
    return value if value >= 0 else default


def _markers_from_env(raw: str | None) -> tuple[str, ...]:
    if raw is None:
        return DEFAULT_PREVIOUS_BALANCE_MARKERS
    markers = tuple(m.strip().lower() for m in raw.split(",") if m.strip())
    return markers or DEFAULT_PREVIOUS_BALANCE_MARKERS


@dataclass(frozen=True, slots=True)
class EngineSettings:
    """Tunables shared by the orchestrator and its components."""

    ai_delay_ms: int = DEFAULT_AI_DELAY_MS
    previous_balance_markers: tuple[str, ...] = DEFAULT_PREVIOUS_BALANCE_MARKERS
    openai_model: str = DEFAULT_OPENAI_MODEL
    extraction_model: str = DEFAULT_EXTRACTION_MODEL

    def __post_init__(self) -> None:
        if isinstance(self.ai_delay_ms, bool) or not isinstance(self.ai_delay_ms, int):
            raise ValueError("EngineSettings.ai_delay_ms must be an integer")
        if self.ai_delay_ms < 0:
            raise ValueError("EngineSettings.ai_delay_ms must be >= 0")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> EngineSettings:
        """Build settings from ``environ`` (defaults to ``os.environ``)."""

        env = os.environ if environ is None else environ
        return cls(
            ai_delay_ms=_int_from_env(
                env.get("STATEMENT_ENGINE_AI_DELAY_MS"), DEFAULT_AI_DELAY_MS
            ),
            previous_balance_markers=_markers_from_env(
                env.get("STATEMENT_ENGINE_PREVIOUS_BALANCE_MARKERS")
            ),
            openai_model=(env.get("STATEMENT_ENGINE_OPENAI_MODEL") or DEFAULT_OPENAI_MODEL).strip(),
            extraction_model=(
                env.get("STATEMENT_ENGINE_EXTRACTION_MODEL") or DEFAULT_EXTRACTION_MODEL
            ).strip(),
        )


__all__ = [
    "DEFAULT_AI_DELAY_MS",
    "DEFAULT_EXTRACTION_MODEL",
    "DEFAULT_OPENAI_MODEL",
    "DEFAULT_PREVIOUS_BALANCE_MARKERS",
    "EngineSettings",
]
