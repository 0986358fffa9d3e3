"""Injected AI capabilities backed by the OpenAI Responses API.

The engine only ever sees plain callables:

- ``AiCall``: ``prompt -> text`` for single-item categorization.
- ``PageExtractor``: ``(prompt, image_data_url) -> text`` for statement pages.

:class:`OpenAITextClient` provides both. It is constructed explicitly by the
host and passed in; no client is created at import time and there is no
module-level singleton. Failures propagate unchanged so that callers can
classify them (see :func:`statement_engine.categorize.is_quota_error`).
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeAlias

from openai import OpenAI

from .logging_setup import format_fields, get_logger
from .settings import DEFAULT_EXTRACTION_MODEL, DEFAULT_OPENAI_MODEL

AiCall: TypeAlias = Callable[[str], str]
PageExtractor: TypeAlias = Callable[[str, str | None], str]

_logger = get_logger("statement_engine.ai_client")


def _create_client() -> OpenAI:
    return OpenAI()


def extract_response_text(resp: Any) -> str:
    """Return the text of a Responses SDK result.

    Prefers ``resp.output_text``; falls back to the first content part of the
    first output item. Raises ``ValueError`` when no text can be located.
    """

    text: str | None = getattr(resp, "output_text", None)
    if not text:
        try:
            first = resp.output[0] if getattr(resp, "output", None) else None
            content = getattr(first, "content", None)
            if content:
                txt_obj = getattr(content[0], "text", None)
                if isinstance(txt_obj, str):
                    text = txt_obj
                else:
                    maybe_val = getattr(txt_obj, "value", None)
                    if isinstance(maybe_val, str):
                        text = maybe_val
        except Exception:  # noqa: BLE001 - tolerate SDK shape differences
            text = None
    if not text or not isinstance(text, str):
        raise ValueError("Unexpected Responses API shape; unable to locate text output")
    return text


class OpenAITextClient:
    """Explicit handle around an ``openai.OpenAI`` client.

    Parameters
    ----------
    client:
        Pre-built SDK client. When omitted one is created on first use, which
        reads ``OPENAI_API_KEY`` from the environment.
    model:
        Model for categorization prompts.
    extraction_model:
        Vision-capable model for :meth:`extract_page`.
    """

    def __init__(
        self,
        client: OpenAI | None = None,
        *,
        model: str = DEFAULT_OPENAI_MODEL,
        extraction_model: str = DEFAULT_EXTRACTION_MODEL,
    ) -> None:
        self._client = client
        self.model = model
        self.extraction_model = extraction_model

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = _create_client()
        return self._client

    def __call__(self, prompt: str) -> str:
        resp = self.client.responses.create(model=self.model, input=prompt)
        text = extract_response_text(resp).strip()
        _logger.debug("ai:categorize_reply %s", format_fields(model=self.model, chars=len(text)))
        return text

    def extract_page(self, prompt: str, image_data_url: str | None = None) -> str:
        """Send ``prompt`` (plus an optional page image) and return the reply text."""

        content: list[dict[str, Any]] = [{"type": "input_text", "text": prompt}]
        if image_data_url:
            content.append({"type": "input_image", "image_url": image_data_url})
        resp = self.client.responses.create(
            model=self.extraction_model,
            input=[{"role": "user", "content": content}],
        )
        text = extract_response_text(resp)
        _logger.info(
            "ai:extract_page %s",
            format_fields(model=self.extraction_model, image=bool(image_data_url), chars=len(text)),
        )
        return text


__all__ = ["AiCall", "OpenAITextClient", "PageExtractor", "extract_response_text"]
