# ruff: noqa: E402, I001
from __future__ import annotations

import json
import sys
from decimal import Decimal
from pathlib import Path

import pytest

# Make sure the workspace `packages/` dir is on sys.path so `statement_engine` is importable
_ROOT = Path(__file__).resolve().parents[2]
_PKG_DIR = _ROOT / "packages"
sys.path[:0] = [p for p in [str(_PKG_DIR), str(_ROOT)] if p not in sys.path]

from db.client import session_scope  # noqa: E402

import statement_engine.ai_client as ai_client_mod  # noqa: E402
from statement_engine.cli import cmd_reconcile, cmd_teach  # noqa: E402
from statement_engine.persistence import get_card, load_existing_cards, load_statements  # noqa: E402

from tests.helpers.ai_stub import OpenAIStub  # noqa: E402
from tests.helpers.db import bootstrap_sqlite_db  # noqa: E402

# Two pages as a vision model would return them: header fields and the first
# movements on page one, the remaining movements on page two.
PAGE_ONE = """Here is the extracted data:
```json
{
  "bankName": "Banorte",
  "lastFourDigits": "4321",
  "cardHolderName": "María López",
  "statementDate": "2024-05-05",
  "dueDate": "2024-05-25",
  "previousBalance": 2000,
  "totalBalance": 2350,
  "minimumPayment": 300,
  "creditLimit": 40000,
  "transactions": [
    {"description": "SALDO ANTERIOR", "amount": 2000},
    {"description": "ZQX MERCADITO 77", "amount": 450, "type": "cargo"}
  ]
}
```"""

PAGE_TWO = """{"transactions": [
  {"description": "UBER TRIP HELP.UBER.COM", "amount": 150, "type": "cargo"},
  {"description": "SU PAGO GRACIAS", "amount": -250, "type": "abono"}
]}"""


def _write_pages(pages_dir: Path) -> Path:
    pages_dir.mkdir()
    (pages_dir / "page-01.txt").write_text(PAGE_ONE, encoding="utf-8")
    (pages_dir / "page-02.txt").write_text(PAGE_TWO, encoding="utf-8")
    return pages_dir


def test_e2e_reconcile_pages_creates_then_links_card(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys: pytest.CaptureFixture[str]
):
    # -------------------------
    # DB bootstrap + AI stub
    # -------------------------
    db_url = bootstrap_sqlite_db(tmp_path / "se-e2e.db")
    pages = _write_pages(tmp_path / "pages")

    stub = OpenAIStub(reply="food")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("STATEMENT_ENGINE_AI_DELAY_MS", "0")
    monkeypatch.setattr(ai_client_mod, "_create_client", lambda: stub)

    # -------------------------
    # First upload: no cards yet
    # -------------------------
    assert cmd_reconcile(pages, database_url=db_url, persist=True) == 0
    out = capsys.readouterr().out
    assert "Decision: create_new" in out
    assert "(created card " in out

    # Rows without a static rule reached the model; UBER did not.
    prompts = [c["input"] for c in stub.calls]
    assert len(prompts) == 3
    assert any("ZQX MERCADITO 77" in p for p in prompts)
    assert not any("UBER" in p for p in prompts)
    assert stub.calls[0]["model"] == "gpt-4o-mini"

    with session_scope(database_url=db_url) as s:
        (card,) = load_existing_cards(s)
        statements = load_statements(s, card.id)
    assert card.name == "Banorte 4321"
    assert card.card_number == "**** 4321"
    assert card.current_balance == Decimal(2350)

    (stored,) = statements
    assert stored["isValid"] is True
    categories = [t.get("category") for t in stored["transactions"]]
    descriptions = [t["description"] for t in stored["transactions"]]
    assert descriptions == [
        "SALDO ANTERIOR",
        "ZQX MERCADITO 77",
        "UBER TRIP HELP.UBER.COM",
        "SU PAGO GRACIAS",
    ]
    assert categories[1:3] == ["food", "transport"]

    # -------------------------
    # Teach a correction, then upload a newer statement
    # -------------------------
    assert cmd_teach("ZQX MERCADITO 77", "shopping", database_url=db_url) == 0
    capsys.readouterr()

    newer = json.loads(PAGE_ONE.split("```json", 1)[1].rsplit("```", 1)[0])
    newer.update(statementDate="2024-06-05", dueDate="2024-06-25", totalBalance=2800)
    (pages / "page-01.txt").write_text(json.dumps(newer), encoding="utf-8")

    assert cmd_reconcile(pages, database_url=db_url, persist=True) == 0
    out = capsys.readouterr().out
    assert "Decision: link_existing" in out
    assert f"(linked card {card.id})" in out
    # The learned pattern answered for the corrected row.
    assert len(stub.calls) == 5
    assert not any("ZQX" in c["input"] for c in stub.calls[3:])

    with session_scope(database_url=db_url) as s:
        updated = get_card(s, card.id)
        statements = load_statements(s, card.id)
    assert updated.last_statement_date == "2024-06-05"
    assert updated.due_date == "2024-06-25"
    assert updated.current_balance == Decimal(2800)
    assert len(statements) == 2
    assert statements[1]["transactions"][1]["category"] == "shopping"
