"""Reconciliation of one extracted statement against the user's records.

Sequence: parse -> validate -> categorize -> match -> decide. The result says
what should be persisted (link, create, or ask a human); storage itself is
the caller's job (see :mod:`statement_engine.persistence`).
"""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum
from typing import Any

from . import prompting
from .ai_client import AiCall, PageExtractor
from .card_matcher import (
    CardSuggestions,
    find_matches,
    generate_card_suggestions,
    is_safe_to_auto_create,
    normalize_card_data,
)
from .categorize import BatchCategorization, categorize_all
from .logging_setup import format_fields, get_logger
from .models import (
    STATEMENT_DECIMAL_FIELDS,
    STATEMENT_TEXT_FIELDS,
    CardRecord,
    MatchAnalysis,
    ParsedStatement,
    ParseMethod,
    ParseResult,
    Transaction,
    ValidationResult,
)
from .response_parser import parse_statement_response
from .settings import EngineSettings
from .user_patterns import UserPatterns
from .validation import get_confidence_score, parse_statement_date, validate_statement

_logger = get_logger("statement_engine.reconcile")


class Decision(StrEnum):
    LINK_EXISTING = "link_existing"
    CREATE_NEW = "create_new"
    ASK_HUMAN = "ask_human"
    NO_DATA = "no_data"


@dataclass(frozen=True, slots=True)
class CardUpdate:
    """Fields to write onto an existing card after linking a statement."""

    card_id: str | None
    current_balance: Decimal | None = None
    limit: Decimal | None = None
    due_date: str | None = None
    last_statement_date: str | None = None

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key in ("current_balance", "limit", "due_date", "last_statement_date"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        return out


@dataclass(frozen=True, slots=True)
class ReconciliationOutcome:
    decision: Decision
    statement: ParsedStatement
    parse_result: ParseResult
    validation: ValidationResult
    confidence: int
    categorization: BatchCategorization
    analysis: MatchAnalysis | None = None
    suggestions: CardSuggestions | None = None
    linked_card: CardRecord | None = None
    new_card: CardRecord | None = None
    card_update: CardUpdate | None = None

    @property
    def quota_exceeded(self) -> bool:
        return self.categorization.quota_exceeded


# ---- Card lifecycle helpers ---------------------------------------------------


def _has_any_field(statement: ParsedStatement) -> bool:
    if statement.transactions:
        return True
    return any(getattr(statement, f) is not None for f in STATEMENT_DECIMAL_FIELDS + STATEMENT_TEXT_FIELDS)


def plan_card_update(card: CardRecord, statement: ParsedStatement) -> CardUpdate | None:
    """Return the update a newer statement implies for ``card``, or ``None``.

    A strictly later statement date updates every known field. On the same
    date only fields the card lacks are filled. An undated statement never
    touches a card that already has a statement date.
    """

    stmt_date = parse_statement_date(statement.statement_date)
    card_date = parse_statement_date(card.last_statement_date)

    if stmt_date is None and card.last_statement_date:
        return None

    fields: dict[str, Any] = {
        "current_balance": statement.total_balance,
        "limit": statement.credit_limit,
        "due_date": statement.due_date,
        "last_statement_date": statement.statement_date,
    }

    if stmt_date is not None and card_date is not None:
        if stmt_date < card_date:
            return None
        if stmt_date == card_date:
            fields = {
                "current_balance": statement.total_balance if card.current_balance is None else None,
                "limit": statement.credit_limit if card.limit is None else None,
                "due_date": statement.due_date if not card.due_date else None,
                "last_statement_date": None,
            }

    update = CardUpdate(card_id=card.id, **fields)
    return update if update.as_dict() else None


def card_from_statement(statement: ParsedStatement, *, name: str | None = None) -> CardRecord:
    """Attributes for a card created from ``statement``; the id is assigned by storage."""

    last_four = normalize_card_data(statement).last_four or None
    default_name = " ".join(p for p in (statement.bank_name, last_four) if p) or "New card"
    return CardRecord(
        name=name or default_name,
        bank=statement.bank_name,
        card_number=f"**** {last_four}" if last_four else None,
        holder_name=statement.card_holder_name,
        limit=statement.credit_limit,
        current_balance=statement.total_balance,
        due_date=statement.due_date,
        last_statement_date=statement.statement_date,
    )


# ---- Multi-page extraction ----------------------------------------------------


def extract_statement_text(
    pages: Sequence[str],
    extract_page: PageExtractor,
    *,
    prompt: str | None = None,
) -> list[str]:
    """Run the extraction prompt once per page, sequentially, in page order.

    A page that is a ``data:image/...`` URL is sent as an image; anything else
    is treated as page text appended to the prompt.
    """

    base = prompt or prompting.build_statement_extraction_prompt()
    texts: list[str] = []
    for idx, page in enumerate(pages):
        if page.startswith("data:image"):
            texts.append(extract_page(base, page))
        else:
            texts.append(extract_page(f"{base}\n\nPage text:\n{page}", None))
        _logger.debug("extract:page_done %s", format_fields(page=idx + 1, total=len(pages)))
    return texts


def merge_page_results(texts: Sequence[str]) -> tuple[ParsedStatement, ParseResult]:
    """Combine per-page replies into one statement.

    The first page that parses supplies the statement fields; every page
    contributes its transactions in page order.
    """

    base: ParsedStatement | None = None
    base_result: ParseResult | None = None
    transactions: list[Transaction] = []
    for text in texts:
        statement, result = parse_statement_response(text)
        if result.is_empty_fallback:
            continue
        transactions.extend(statement.transactions)
        if base is None:
            base, base_result = statement, result

    if base is None or base_result is None:
        return ParsedStatement(), ParseResult(
            success=True,
            data={},
            method=ParseMethod.FALLBACK_EMPTY,
            error="no page could be parsed",
        )
    _logger.info(
        "extract:merged %s", format_fields(pages=len(texts), transactions=len(transactions))
    )
    return base.model_copy(update={"transactions": transactions}), base_result


# ---- Orchestration ------------------------------------------------------------


def reconcile_parsed(
    statement: ParsedStatement,
    parse_result: ParseResult,
    *,
    existing_cards: Sequence[CardRecord] = (),
    user_patterns: UserPatterns | None = None,
    ai_call: AiCall | None = None,
    settings: EngineSettings | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ReconciliationOutcome:
    cfg = settings or EngineSettings()
    validation = validate_statement(statement, previous_balance_markers=cfg.previous_balance_markers)
    confidence = get_confidence_score(validation)

    if parse_result.is_empty_fallback or not _has_any_field(statement):
        _logger.warning("reconcile:no_data %s", format_fields(error=parse_result.error or ""))
        return ReconciliationOutcome(
            decision=Decision.NO_DATA,
            statement=statement,
            parse_result=parse_result,
            validation=validation,
            confidence=confidence,
            categorization=BatchCategorization(items=()),
        )

    batch = categorize_all(
        statement.transactions,
        user_patterns,
        ai_call=ai_call,
        rate_limit_ms=cfg.ai_delay_ms,
        sleep=sleep,
    )
    statement = statement.model_copy(update={"transactions": batch.transactions})

    cards = tuple(existing_cards)
    analysis = find_matches(cards, statement)
    suggestions = generate_card_suggestions(analysis, statement, cards)

    linked: CardRecord | None = None
    new_card: CardRecord | None = None
    update: CardUpdate | None = None
    if len(analysis.exact_matches) == 1:
        decision = Decision.LINK_EXISTING
        linked = analysis.exact_matches[0].card
        update = plan_card_update(linked, statement)
    elif is_safe_to_auto_create(analysis, statement, cards):
        decision = Decision.CREATE_NEW
        new_card = card_from_statement(statement)
    else:
        decision = Decision.ASK_HUMAN

    _logger.info(
        "reconcile:decision %s",
        format_fields(
            decision=decision.value,
            valid=validation.is_valid,
            confidence=confidence,
            quota_stop=batch.quota_exceeded,
        ),
    )
    return ReconciliationOutcome(
        decision=decision,
        statement=statement,
        parse_result=parse_result,
        validation=validation,
        confidence=confidence,
        categorization=batch,
        analysis=analysis,
        suggestions=suggestions,
        linked_card=linked,
        new_card=new_card,
        card_update=update,
    )


def reconcile_statement(
    raw_text: str,
    *,
    existing_cards: Sequence[CardRecord] = (),
    user_patterns: UserPatterns | None = None,
    ai_call: AiCall | None = None,
    settings: EngineSettings | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ReconciliationOutcome:
    """Parse ``raw_text`` and reconcile it; see :func:`reconcile_parsed`."""

    statement, parse_result = parse_statement_response(raw_text)
    return reconcile_parsed(
        statement,
        parse_result,
        existing_cards=existing_cards,
        user_patterns=user_patterns,
        ai_call=ai_call,
        settings=settings,
        sleep=sleep,
    )


def reconcile_pages(
    page_texts: Sequence[str],
    *,
    existing_cards: Sequence[CardRecord] = (),
    user_patterns: UserPatterns | None = None,
    ai_call: AiCall | None = None,
    settings: EngineSettings | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ReconciliationOutcome:
    """Merge per-page model replies, then reconcile the combined statement."""

    statement, parse_result = merge_page_results(page_texts)
    return reconcile_parsed(
        statement,
        parse_result,
        existing_cards=existing_cards,
        user_patterns=user_patterns,
        ai_call=ai_call,
        settings=settings,
        sleep=sleep,
    )


__all__ = [
    "CardUpdate",
    "Decision",
    "ReconciliationOutcome",
    "card_from_statement",
    "extract_statement_text",
    "merge_page_results",
    "plan_card_update",
    "reconcile_pages",
    "reconcile_parsed",
    "reconcile_statement",
]
