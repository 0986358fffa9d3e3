"""Persistence integration for statement_engine.

Functions here read and write cards, statements and learned category patterns
in the shared database owned by ``libs/db``. They rely on the ORM models in
``db.models.statements`` and a session provided by ``db.client``; the caller
owns the transaction (use ``db.client.session_scope``).

Scope:
- Load cards and user category patterns for reconciliation.
- Create cards, apply card updates and store reconciled statements.
- Record user category corrections (``times_used`` counts repeats).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from db.models.statements import FaCard, FaCategoryPattern, FaStatement

from .logging_setup import format_fields, get_logger
from .models import CardRecord, ParsedStatement, UserCategoryPattern, ValidationResult
from .reconcile import CardUpdate, Decision, ReconciliationOutcome, card_from_statement, plan_card_update
from .user_patterns import normalize_description
from .validation import get_confidence_score, validation_to_dict

_logger = get_logger("statement_engine.persistence")


def _new_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(UTC)


def _card_record(row: FaCard) -> CardRecord:
    return CardRecord(
        id=row.id,
        name=row.name,
        bank=row.bank,
        card_number=row.card_number,
        holder_name=row.holder_name,
        limit=row.credit_limit,
        current_balance=row.current_balance,
        due_date=row.due_date,
        last_statement_date=row.last_statement_date,
    )


# ---- Cards ---------------------------------------------------------------------


def load_existing_cards(session: Session) -> list[CardRecord]:
    rows = session.execute(select(FaCard).order_by(FaCard.created_at, FaCard.id)).scalars()
    return [_card_record(r) for r in rows]


def get_card(session: Session, card_id: str) -> CardRecord | None:
    row = session.get(FaCard, card_id)
    return _card_record(row) if row is not None else None


def create_card(session: Session, card: CardRecord) -> CardRecord:
    """Insert ``card`` and return it with its assigned id."""

    now = _now()
    row = FaCard(
        id=card.id or _new_id(),
        name=card.name,
        bank=card.bank,
        card_number=card.card_number,
        holder_name=card.holder_name,
        credit_limit=card.limit,
        current_balance=card.current_balance,
        due_date=card.due_date,
        last_statement_date=card.last_statement_date,
        created_at=now,
        updated_at=now,
    )
    session.add(row)
    session.flush()
    _logger.info("persist:card_created %s", format_fields(card_id=row.id, bank=row.bank or ""))
    return _card_record(row)


def apply_card_update(session: Session, card_id: str | None, update: CardUpdate) -> bool:
    """Write the non-null fields of ``update`` onto ``card_id``; False when the card is gone."""

    if card_id is None:
        return False
    row = session.get(FaCard, card_id)
    if row is None:
        _logger.warning("persist:card_missing %s", format_fields(card_id=card_id))
        return False
    values = update.as_dict()
    if "limit" in values:
        values["credit_limit"] = values.pop("limit")
    for key, value in values.items():
        setattr(row, key, value)
    row.updated_at = _now()
    session.flush()
    _logger.info(
        "persist:card_updated %s", format_fields(card_id=row.id, fields=",".join(sorted(values)))
    )
    return True


# ---- Statements ----------------------------------------------------------------


def insert_statement(
    session: Session,
    card_id: str,
    statement: ParsedStatement,
    validation: ValidationResult,
    *,
    confidence: int | None = None,
) -> str:
    """Store a reconciled statement against ``card_id`` and return its id."""

    score = get_confidence_score(validation) if confidence is None else confidence
    row = FaStatement(
        id=_new_id(),
        card_id=card_id,
        statement_date=statement.statement_date,
        due_date=statement.due_date,
        total_balance=statement.total_balance,
        previous_balance=statement.previous_balance,
        minimum_payment=statement.minimum_payment,
        credit_limit=statement.credit_limit,
        bank_name=statement.bank_name,
        card_holder_name=statement.card_holder_name,
        last_four_digits=(statement.last_four_digits or "")[-4:] or None,
        transactions=[
            tx.model_dump(mode="json", by_alias=True, exclude_none=True)
            for tx in statement.transactions
        ],
        validation=validation_to_dict(validation),
        is_valid=validation.is_valid,
        confidence=score,
        created_at=_now(),
    )
    session.add(row)
    session.flush()
    _logger.info(
        "persist:statement_inserted %s",
        format_fields(statement_id=row.id, card_id=card_id, transactions=len(row.transactions)),
    )
    return row.id


def load_statements(session: Session, card_id: str) -> list[dict[str, Any]]:
    """Stored statements for ``card_id``, oldest first, as plain dicts."""

    rows = session.execute(
        select(FaStatement).where(FaStatement.card_id == card_id).order_by(FaStatement.created_at)
    ).scalars()
    return [
        {
            "id": r.id,
            "statementDate": r.statement_date,
            "dueDate": r.due_date,
            "totalBalance": r.total_balance,
            "isValid": r.is_valid,
            "confidence": r.confidence,
            "transactions": list(r.transactions),
        }
        for r in rows
    ]


@dataclass(frozen=True, slots=True)
class PersistedOutcome:
    card_id: str
    statement_id: str
    created_card: bool


def persist_outcome(
    session: Session,
    outcome: ReconciliationOutcome,
    *,
    selected_card_id: str | None = None,
    create_new: bool = False,
) -> PersistedOutcome | None:
    """Apply a reconciliation decision to storage.

    ``link_existing`` and ``create_new`` decisions are applied as planned. An
    ``ask_human`` decision needs the human's answer: ``selected_card_id`` links
    to that card, ``create_new`` creates one. Returns ``None`` when nothing was
    written (no data, or a pending question).
    """

    if outcome.decision is Decision.NO_DATA:
        return None

    statement = outcome.statement
    card_id: str | None = None
    created = False

    if outcome.decision is Decision.LINK_EXISTING and outcome.linked_card is not None:
        card_id = outcome.linked_card.id
        if card_id is None or get_card(session, card_id) is None:
            raise ValueError(f"Unknown card id: {card_id}")
        if outcome.card_update is not None:
            apply_card_update(session, card_id, outcome.card_update)
    elif outcome.decision is Decision.CREATE_NEW and outcome.new_card is not None:
        card_id = create_card(session, outcome.new_card).id
        created = True
    elif selected_card_id is not None:
        card = get_card(session, selected_card_id)
        if card is None:
            raise ValueError(f"Unknown card id: {selected_card_id}")
        card_id = card.id
        update = plan_card_update(card, statement)
        if update is not None:
            apply_card_update(session, card_id, update)
    elif create_new:
        card_id = create_card(session, card_from_statement(statement)).id
        created = True

    if card_id is None:
        return None

    statement_id = insert_statement(
        session,
        card_id=card_id,
        statement=statement,
        validation=outcome.validation,
        confidence=outcome.confidence,
    )
    return PersistedOutcome(card_id=card_id, statement_id=statement_id, created_card=created)


# ---- User category patterns ----------------------------------------------------


def load_user_category_patterns(session: Session) -> dict[str, UserCategoryPattern]:
    rows = session.execute(select(FaCategoryPattern)).scalars()
    return {
        r.normalized_description: UserCategoryPattern(
            id=r.id,
            category=r.category,
            confidence=r.confidence,
            times_used=r.times_used,
            last_updated=r.last_updated,
            original_description=r.original_description,
        )
        for r in rows
    }


def save_user_category_pattern(
    session: Session,
    description: str,
    category: str,
    *,
    now: datetime | None = None,
) -> UserCategoryPattern:
    """Record that ``description`` belongs to ``category``.

    A repeat correction for the same normalized description overwrites the
    category and increments ``times_used``.
    """

    key = normalize_description(description)
    if not key:
        raise ValueError("description must not be empty")
    stamp = now or _now()
    row = session.execute(
        select(FaCategoryPattern).where(FaCategoryPattern.normalized_description == key)
    ).scalar_one_or_none()
    if row is None:
        row = FaCategoryPattern(
            id=_new_id(),
            normalized_description=key,
            original_description=description,
            category=category,
            confidence="user",
            times_used=1,
            created_at=stamp,
            last_updated=stamp,
        )
        session.add(row)
    else:
        row.category = category
        row.times_used = row.times_used + 1
        row.last_updated = stamp
    session.flush()
    _logger.info(
        "persist:pattern_saved %s",
        format_fields(category=category, times_used=row.times_used),
    )
    return UserCategoryPattern(
        id=row.id,
        category=row.category,
        confidence=row.confidence,
        times_used=row.times_used,
        last_updated=row.last_updated,
        original_description=row.original_description,
    )


__all__ = [
    "PersistedOutcome",
    "apply_card_update",
    "create_card",
    "get_card",
    "insert_statement",
    "load_existing_cards",
    "load_statements",
    "load_user_category_patterns",
    "persist_outcome",
    "save_user_category_pattern",
]
