"""Prompt construction for statement extraction and single-item categorization.

This module builds:
- The per-transaction categorization prompt (category keys and names plus the
  transaction's description, absolute amount and type).
- The parser for the single-token category reply.
- The JSON template prompt sent with each statement page image.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from decimal import Decimal

from .categories import OTHER_CATEGORY, TRANSACTION_CATEGORIES, CategoryInfo
from .models import Transaction

_TOKEN_STRIP_RE = re.compile(r"^[\s\"'`*.:,;()\[\]{}]+|[\s\"'`*.:,;()\[\]{}]+$")

# Field order of the extraction template; mirrors ParsedStatement's aliases.
STATEMENT_TEMPLATE: dict[str, object] = {
    "totalBalance": "decimal (current total balance, may be 0)",
    "minimumPayment": "decimal (minimum payment due)",
    "dueDate": "YYYY-MM-DD (payment due date)",
    "creditLimit": "decimal (total credit limit)",
    "availableCredit": "decimal (available credit)",
    "previousBalance": "decimal (balance of the previous period)",
    "payments": "decimal (payments made in the period)",
    "charges": "decimal (new charges in the period)",
    "fees": "decimal (fees charged)",
    "interest": "decimal (interest charged)",
    "bankName": "issuing bank name",
    "cardHolderName": "full card holder name",
    "lastFourDigits": "1234 (last four digits)",
    "statementDate": "YYYY-MM-DD (statement closing date)",
    "transactions": [
        {
            "date": "YYYY-MM-DD",
            "description": "transaction description",
            "amount": "decimal",
            "type": "charge|payment|adjustment",
        }
    ],
}


def _format_amount(amount: Decimal | None) -> str:
    if amount is None:
        return "unknown"
    return f"${abs(amount)}"


def build_category_prompt(
    transaction: Transaction,
    categories: Mapping[str, CategoryInfo] = TRANSACTION_CATEGORIES,
) -> str:
    """Return the prompt asking for exactly one category key."""

    category_list = ", ".join(f"{key}: {info.name}" for key, info in categories.items())
    tx_type = transaction.type.value if transaction.type is not None else (transaction.raw_type or "charge")
    return (
        "Classify this credit card transaction into one spending category.\n\n"
        f'Description: "{transaction.description or ""}"\n'
        f"Amount: {_format_amount(transaction.amount)}\n"
        f"Type: {tx_type}\n\n"
        f"Available categories: {category_list}\n\n"
        "Instructions:\n"
        '- Reply ONLY with the category key (e.g. "food", "transport").\n'
        f'- If you are not sure, reply "{OTHER_CATEGORY}".\n'
        "- Merchants are often Mexican or Latin American; small amounts at "
        'convenience stores such as OXXO are usually "food".\n\n'
        "Category:"
    )


def parse_category_token(
    text: str | None,
    categories: Mapping[str, CategoryInfo] = TRANSACTION_CATEGORIES,
) -> str:
    """Map a model reply to a known category key; anything else is ``other``."""

    if not text:
        return OTHER_CATEGORY
    first_line = text.strip().splitlines()[0] if text.strip() else ""
    tokens = [t for t in (_TOKEN_STRIP_RE.sub("", p).lower() for p in first_line.split()) if t]
    if tokens and tokens[0] in {"category", "categoría", "categoria"}:
        tokens = tokens[1:]
    if not tokens:
        return OTHER_CATEGORY
    return tokens[0] if tokens[0] in categories else OTHER_CATEGORY


def build_statement_extraction_prompt() -> str:
    """Return the instructions sent alongside a statement page image."""

    template = json.dumps(STATEMENT_TEMPLATE, indent=2, ensure_ascii=False)
    return (
        "Analyze this credit card statement page and extract the following "
        "information as strict JSON. Look carefully for every field:\n\n"
        f"{template}\n\n"
        "IMPORTANT:\n"
        "- Return ONLY the JSON, without any extra text.\n"
        "- If a field is not visible, use null (never 0 for a value you cannot see).\n"
        '- Amounts are plain decimal numbers (1234.56, not "$1,234.56").\n'
        "- Dates use YYYY-MM-DD.\n"
        "- Negative amounts indicate payments or credits.\n"
        '- If the page lists a previous balance row, keep it as a transaction whose type is "previous_balance".\n'
        "- Search the whole page, not only the summary box."
    )


__all__ = [
    "STATEMENT_TEMPLATE",
    "build_category_prompt",
    "build_statement_extraction_prompt",
    "parse_category_token",
]
