from __future__ import annotations

import json
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy import select

from db.client import session_scope
from db.models.statements import FaStatement
from statement_engine.models import CardRecord
from statement_engine.persistence import (
    apply_card_update,
    create_card,
    get_card,
    insert_statement,
    load_existing_cards,
    load_statements,
    load_user_category_patterns,
    persist_outcome,
    save_user_category_pattern,
)
from statement_engine.reconcile import CardUpdate, Decision, reconcile_statement
from tests.helpers.db import bootstrap_sqlite_db, seed_card

STATEMENT = json.dumps(
    {
        "bankName": "BBVA",
        "lastFourDigits": "1234",
        "cardHolderName": "Juan Perez",
        "totalBalance": 1300,
        "previousBalance": 1000,
        "minimumPayment": 200,
        "creditLimit": 50000,
        "statementDate": "2024-03-01",
        "dueDate": "2024-03-21",
        "transactions": [
            {"description": "OXXO SUCURSAL", "amount": 500, "type": "cargo"},
            {"description": "PAGO GRACIAS", "amount": 200, "type": "abono"},
        ],
    }
)


@pytest.fixture()
def db_url(tmp_path: Path) -> str:
    return bootstrap_sqlite_db(tmp_path / "statements.db")


def _reconcile(url: str, text: str = STATEMENT):
    with session_scope(database_url=url) as s:
        cards = load_existing_cards(s)
    return reconcile_statement(text, existing_cards=cards, sleep=lambda _s: None)


# ---- Cards ---------------------------------------------------------------------


def test_create_and_load_cards(db_url: str):
    with session_scope(database_url=db_url) as s:
        created = create_card(s, CardRecord(name="BBVA 1234", bank="BBVA", card_number="**** 1234", limit=50000))
    assert created.id and len(created.id) == 32

    with session_scope(database_url=db_url) as s:
        (loaded,) = load_existing_cards(s)
        assert loaded.id == created.id
        assert loaded.limit == Decimal(50000)
        assert get_card(s, created.id).bank == "BBVA"
        assert get_card(s, "missing") is None


def test_apply_card_update_maps_limit_and_reports_missing(db_url: str):
    seed_card(
        database_url=db_url,
        card_id="c1",
        name="BBVA Oro",
        bank="BBVA",
        card_number="**** 1234",
        holder_name="Juan Perez",
    )
    update = CardUpdate(card_id="c1", current_balance=Decimal("99.50"), limit=Decimal(7000))
    with session_scope(database_url=db_url) as s:
        assert apply_card_update(s, "c1", update)
        assert not apply_card_update(s, "nope", update)
        assert not apply_card_update(s, None, update)

    with session_scope(database_url=db_url) as s:
        card = get_card(s, "c1")
    assert card.current_balance == Decimal("99.50")
    assert card.limit == Decimal(7000)
    assert card.due_date is None


def test_session_scope_rolls_back_on_error(db_url: str):
    with pytest.raises(RuntimeError):
        with session_scope(database_url=db_url) as s:
            create_card(s, CardRecord(name="Temp"))
            raise RuntimeError("abort")
    with session_scope(database_url=db_url) as s:
        assert load_existing_cards(s) == []


# ---- Statements ----------------------------------------------------------------


def test_create_new_then_link_on_second_upload(db_url: str):
    first = _reconcile(db_url)
    assert first.decision is Decision.CREATE_NEW
    with session_scope(database_url=db_url) as s:
        persisted = persist_outcome(s, first)
    assert persisted.created_card

    second = _reconcile(db_url)
    assert second.decision is Decision.LINK_EXISTING
    assert second.linked_card.id == persisted.card_id
    # Same statement date and a complete card: nothing to update.
    assert second.card_update is None
    with session_scope(database_url=db_url) as s:
        again = persist_outcome(s, second)
    assert again.card_id == persisted.card_id
    assert not again.created_card

    with session_scope(database_url=db_url) as s:
        stored = load_statements(s, persisted.card_id)
    assert [row["id"] for row in stored] == [persisted.statement_id, again.statement_id]
    assert stored[0]["isValid"] is True
    assert stored[0]["confidence"] == 100
    assert stored[0]["transactions"][0]["category"] == "food"
    assert stored[0]["totalBalance"] == Decimal(1300)


def test_link_updates_card_from_newer_statement(db_url: str):
    seed_card(
        database_url=db_url,
        card_id="c1",
        name="BBVA Oro",
        bank="BBVA",
        card_number="**** 1234",
        holder_name="Juan Perez",
        current_balance="800",
        last_statement_date="2024-02-01",
    )
    outcome = _reconcile(db_url)
    assert outcome.decision is Decision.LINK_EXISTING
    with session_scope(database_url=db_url) as s:
        persist_outcome(s, outcome)
    with session_scope(database_url=db_url) as s:
        card = get_card(s, "c1")
    assert card.current_balance == Decimal(1300)
    assert card.last_statement_date == "2024-03-01"
    assert card.due_date == "2024-03-21"


def test_link_to_card_missing_from_storage_writes_nothing(db_url: str):
    # Matched against a card list that never came from this database.
    outside = CardRecord(id="c1", name="BBVA Oro", bank="BBVA", card_number="**** 1234", holder_name="Juan Perez")
    outcome = reconcile_statement(STATEMENT, existing_cards=[outside], sleep=lambda _s: None)
    assert outcome.decision is Decision.LINK_EXISTING

    with pytest.raises(ValueError, match="Unknown card id: c1"):
        with session_scope(database_url=db_url) as s:
            persist_outcome(s, outcome)
    with session_scope(database_url=db_url) as s:
        assert s.scalars(select(FaStatement)).all() == []


def test_ask_human_needs_an_answer(db_url: str):
    seed_card(
        database_url=db_url,
        card_id="o1",
        name="BBVA Azul",
        bank="BBVA",
        card_number="**** 0000",
        holder_name="Ana Ruiz",
    )
    outcome = _reconcile(db_url)
    assert outcome.decision is Decision.ASK_HUMAN

    with session_scope(database_url=db_url) as s:
        assert persist_outcome(s, outcome) is None
        with pytest.raises(ValueError):
            persist_outcome(s, outcome, selected_card_id="ghost")

    with session_scope(database_url=db_url) as s:
        linked = persist_outcome(s, outcome, selected_card_id="o1")
    assert linked.card_id == "o1" and not linked.created_card

    with session_scope(database_url=db_url) as s:
        created = persist_outcome(s, outcome, create_new=True)
        assert created.created_card
        assert len(load_existing_cards(s)) == 2


def test_no_data_is_never_persisted(db_url: str):
    outcome = _reconcile(db_url, "unreadable")
    with session_scope(database_url=db_url) as s:
        assert persist_outcome(s, outcome, create_new=True) is None
        assert load_existing_cards(s) == []


def test_insert_statement_stores_validation_payload(db_url: str):
    outcome = _reconcile(db_url)
    with session_scope(database_url=db_url) as s:
        card = create_card(s, CardRecord(name="BBVA 1234", bank="BBVA"))
        statement_id = insert_statement(s, card.id, outcome.statement, outcome.validation)
    with session_scope(database_url=db_url) as s:
        row = s.get(FaStatement, statement_id)
        assert row.validation["isValid"] is True
        assert row.last_four_digits == "1234"
        assert row.confidence == 100


# ---- Category patterns ---------------------------------------------------------


def test_save_pattern_then_repeat_increments(db_url: str):
    stamp = datetime(2024, 3, 1, tzinfo=UTC)
    with session_scope(database_url=db_url) as s:
        first = save_user_category_pattern(s, "Oxxo Reforma", "food", now=stamp)
        assert first.times_used == 1
    with session_scope(database_url=db_url) as s:
        second = save_user_category_pattern(s, "  OXXO REFORMA ", "services")
    assert second.id == first.id
    assert second.times_used == 2

    with session_scope(database_url=db_url) as s:
        patterns = load_user_category_patterns(s)
    assert list(patterns) == ["OXXO REFORMA"]
    assert patterns["OXXO REFORMA"].category == "services"
    assert patterns["OXXO REFORMA"].original_description == "Oxxo Reforma"


def test_saved_pattern_feeds_categorization(db_url: str):
    with session_scope(database_url=db_url) as s:
        save_user_category_pattern(s, "OXXO SUCURSAL", "services")
        patterns = load_user_category_patterns(s)
    outcome = reconcile_statement(STATEMENT, user_patterns=patterns, sleep=lambda _s: None)
    assert outcome.statement.transactions[0].category == "services"


def test_blank_description_is_rejected(db_url: str):
    with session_scope(database_url=db_url) as s, pytest.raises(ValueError):
        save_user_category_pattern(s, "   ", "food")
