from __future__ import annotations

from types import SimpleNamespace

import pytest

import statement_engine.ai_client as ai_client_mod
from statement_engine.ai_client import OpenAITextClient, extract_response_text
from tests.helpers.ai_stub import OpenAIStub


def test_call_uses_categorization_model_and_strips_reply():
    stub = OpenAIStub(reply="  food \n")
    client = OpenAITextClient(stub, model="small-model")
    assert client("Classify this") == "food"
    (call,) = stub.calls
    assert call == {"model": "small-model", "input": "Classify this"}


def test_extract_page_sends_image_content():
    stub = OpenAIStub(reply='{"totalBalance": 1}')
    client = OpenAITextClient(stub, extraction_model="vision-model")
    text = client.extract_page("Extract", "data:image/png;base64,AAAA")
    assert text == '{"totalBalance": 1}'
    (call,) = stub.calls
    assert call["model"] == "vision-model"
    (message,) = call["input"]
    assert [part["type"] for part in message["content"]] == ["input_text", "input_image"]
    assert message["content"][1]["image_url"] == "data:image/png;base64,AAAA"


def test_extract_page_without_image_sends_text_only():
    stub = OpenAIStub(reply="{}")
    OpenAITextClient(stub).extract_page("Extract")
    assert [p["type"] for p in stub.calls[0]["input"][0]["content"]] == ["input_text"]


def test_client_is_created_lazily(monkeypatch: pytest.MonkeyPatch):
    created: list[OpenAIStub] = []

    def _factory() -> OpenAIStub:
        stub = OpenAIStub(reply="travel")
        created.append(stub)
        return stub

    monkeypatch.setattr(ai_client_mod, "_create_client", _factory)
    client = OpenAITextClient()
    assert created == []
    assert client("x") == "travel"
    assert client("y") == "travel"
    assert len(created) == 1


def test_extract_response_text_fallback_shapes():
    nested = SimpleNamespace(output=[SimpleNamespace(content=[SimpleNamespace(text="hola")])])
    assert extract_response_text(nested) == "hola"

    valued = SimpleNamespace(
        output=[SimpleNamespace(content=[SimpleNamespace(text=SimpleNamespace(value="adios"))])]
    )
    assert extract_response_text(valued) == "adios"

    with pytest.raises(ValueError):
        extract_response_text(SimpleNamespace(output=[]))
