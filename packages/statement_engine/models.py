"""Data models, enums and result types for ``statement_engine``.

Two families live here:

- pydantic models for the shapes that arrive from untrusted sources (model
  output, persisted documents): :class:`Transaction`, :class:`ParsedStatement`,
  :class:`CardRecord` and :class:`UserCategoryPattern`. They accept the
  camelCase keys the AI prompt asks for and expose snake_case attributes.
  Validation is lenient: garbage becomes ``None`` instead of raising, because
  a half-readable statement is still worth reconciling.
- frozen dataclasses for values the engine itself produces and hands to the
  orchestrator (parse, match and validation results).

Monetary values are :class:`~decimal.Decimal`. ``None`` always means
"unknown"; a present ``0`` stays ``0``.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field as dataclass_field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import StrEnum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# ---------------------------------------------------------------------------
# Closed enums
# ---------------------------------------------------------------------------


class TransactionType(StrEnum):
    CHARGE = "charge"
    PAYMENT = "payment"
    ADJUSTMENT = "adjustment"


class TransactionGroup(StrEnum):
    PAYMENTS = "payments"
    FEES = "fees"
    INTEREST = "interest"
    SUPPLEMENTARY_CARD = "supplementary_card"
    PURCHASES = "purchases"
    GENERAL = "general"


class CategoryConfidence(StrEnum):
    USER = "user"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class CategoryMethod(StrEnum):
    USER_PATTERN = "user_pattern"
    PATTERN = "pattern"
    AI = "ai"
    FALLBACK = "fallback"


class ParseMethod(StrEnum):
    BASIC_CLEANUP = "basic_cleanup"
    JSON_EXTRACTION = "json_extraction"
    AGGRESSIVE_REPAIR = "aggressive_repair"
    LINE_BY_LINE = "line_by_line"
    FALLBACK_EMPTY = "fallback_empty"


class ExpectedShape(StrEnum):
    OBJECT = "object"
    ARRAY = "array"


class Severity(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class MatchBucket(StrEnum):
    EXACT = "exact"
    STRONG = "strong"
    POSSIBLE = "possible"
    NONE = "none"


# Statement extraction prompts historically asked for Spanish type labels;
# both vocabularies are accepted.
_TYPE_ALIASES: dict[str, TransactionType] = {
    "charge": TransactionType.CHARGE,
    "cargo": TransactionType.CHARGE,
    "purchase": TransactionType.CHARGE,
    "compra": TransactionType.CHARGE,
    "payment": TransactionType.PAYMENT,
    "pago": TransactionType.PAYMENT,
    "abono": TransactionType.PAYMENT,
    "credit": TransactionType.PAYMENT,
    "adjustment": TransactionType.ADJUSTMENT,
    "ajuste": TransactionType.ADJUSTMENT,
}

_GROUP_ALIASES: dict[str, TransactionGroup] = {
    "payments": TransactionGroup.PAYMENTS,
    "pagos": TransactionGroup.PAYMENTS,
    "fees": TransactionGroup.FEES,
    "comisiones": TransactionGroup.FEES,
    "interest": TransactionGroup.INTEREST,
    "intereses": TransactionGroup.INTEREST,
    "supplementary_card": TransactionGroup.SUPPLEMENTARY_CARD,
    "tarjeta_adicional": TransactionGroup.SUPPLEMENTARY_CARD,
    "purchases": TransactionGroup.PURCHASES,
    "compras": TransactionGroup.PURCHASES,
    "general": TransactionGroup.GENERAL,
}


def transaction_type_from_label(label: Any) -> TransactionType | None:
    """Map a model-provided type label to :class:`TransactionType` (or ``None``)."""

    if not isinstance(label, str):
        return None
    return _TYPE_ALIASES.get(label.strip().lower())


def transaction_group_from_label(label: Any) -> TransactionGroup | None:
    if not isinstance(label, str):
        return None
    return _GROUP_ALIASES.get(label.strip().lower().replace(" ", "_"))


# ---------------------------------------------------------------------------
# Lenient scalar coercion
# ---------------------------------------------------------------------------

_NULL_WORDS: frozenset[str] = frozenset({"null", "none", "nan", "n/a", "na", "-", "--"})
_CURRENCY_TOKENS: tuple[str, ...] = ("MXN", "USD", "MN", "M.N.")


def coerce_decimal(value: Any) -> Decimal | None:
    """Return ``value`` as a finite :class:`Decimal`, or ``None`` when unknown.

    Accepts ints, floats, Decimals and strings such as ``"$1,234.56"``,
    ``"(12.00)"`` or ``"-$5"``. Booleans, containers and unparseable text are
    unknown. Zero in any spelling stays zero.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value)) if math.isfinite(value) else None
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s or s.lower() in _NULL_WORDS:
        return None
    for token in _CURRENCY_TOKENS:
        s = s.replace(token, "")
    s = s.strip()

    negative = False
    while True:
        changed = False
        if s.startswith("+"):
            s = s[1:].lstrip()
            changed = True
        elif s.startswith("-"):
            negative = not negative
            s = s[1:].lstrip()
            changed = True
        if s.startswith("$"):
            s = s[1:].lstrip()
            changed = True
        if len(s) >= 2 and s.startswith("(") and s.endswith(")"):
            negative = True
            s = s[1:-1].strip()
            changed = True
        if not changed:
            break

    s = s.replace(",", "").replace(" ", "")
    try:
        d = Decimal(s)
    except InvalidOperation:
        return None
    if not d.is_finite():
        return None
    return -d if negative else d


def clean_text(value: Any) -> str | None:
    """Trim strings; render scalars as text; map blanks and containers to ``None``."""

    if value is None or isinstance(value, (Mapping, list, tuple, set)):
        return None
    if isinstance(value, bool):
        return None
    s = value.strip() if isinstance(value, str) else str(value).strip()
    if not s or s.lower() in {"null", "none"}:
        return None
    return s


def _enum_or_none(enum_cls: type[StrEnum], value: Any) -> Any:
    if value is None or isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls(value.strip().lower())
        except ValueError:
            return None
    return None


# ---------------------------------------------------------------------------
# Records parsed from model output
# ---------------------------------------------------------------------------

_WIRE_CONFIG = ConfigDict(
    alias_generator=to_camel,
    populate_by_name=True,
    extra="ignore",
    frozen=True,
)


class Transaction(BaseModel):
    """A single statement line.

    ``amount`` is a magnitude whose meaning is carried by ``type``; a negative
    amount is still accepted because extraction often keeps printed signs.
    ``raw_type`` keeps the label the model emitted (e.g. ``"saldo_anterior"``)
    when it does not map onto :class:`TransactionType`.
    """

    model_config = _WIRE_CONFIG

    date: str | None = None
    description: str | None = None
    amount: Decimal | None = None
    type: TransactionType | None = None
    raw_type: str | None = None
    group: TransactionGroup | None = None
    category: str | None = None
    category_confidence: CategoryConfidence | None = None
    category_method: CategoryMethod | None = None
    category_pattern_id: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _map_labels(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        out = dict(data)
        raw_type = out.get("type")
        if "rawType" not in out and "raw_type" not in out:
            out["rawType"] = clean_text(raw_type)
        if raw_type is not None and not isinstance(raw_type, TransactionType):
            out["type"] = transaction_type_from_label(raw_type)
        raw_group = out.get("group")
        if raw_group is not None and not isinstance(raw_group, TransactionGroup):
            out["group"] = transaction_group_from_label(raw_group)
        return out

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, v: Any) -> Decimal | None:
        return coerce_decimal(v)

    @field_validator(
        "date", "description", "raw_type", "category", "category_pattern_id", mode="before"
    )
    @classmethod
    def _text(cls, v: Any) -> str | None:
        return clean_text(v)

    @field_validator("category_confidence", mode="before")
    @classmethod
    def _confidence(cls, v: Any) -> Any:
        return _enum_or_none(CategoryConfidence, v)

    @field_validator("category_method", mode="before")
    @classmethod
    def _method(cls, v: Any) -> Any:
        return _enum_or_none(CategoryMethod, v)


STATEMENT_DECIMAL_FIELDS: tuple[str, ...] = (
    "total_balance",
    "previous_balance",
    "credit_limit",
    "minimum_payment",
    "available_credit",
    "payments",
    "charges",
    "fees",
    "interest",
)

STATEMENT_TEXT_FIELDS: tuple[str, ...] = (
    "bank_name",
    "card_holder_name",
    "last_four_digits",
    "statement_date",
    "due_date",
)


class ParsedStatement(BaseModel):
    """Structured statement fields extracted by the model.

    Invariant: ``transactions`` is always a list after validation. Elements
    that are not objects become all-null :class:`Transaction` placeholders so
    positions stay auditable.
    """

    model_config = _WIRE_CONFIG

    total_balance: Decimal | None = None
    previous_balance: Decimal | None = None
    credit_limit: Decimal | None = None
    minimum_payment: Decimal | None = None
    available_credit: Decimal | None = None
    payments: Decimal | None = None
    charges: Decimal | None = None
    fees: Decimal | None = None
    interest: Decimal | None = None

    bank_name: str | None = None
    card_holder_name: str | None = None
    last_four_digits: str | None = None
    statement_date: str | None = None
    due_date: str | None = None

    transactions: list[Transaction] = Field(default_factory=list)

    @field_validator(*STATEMENT_DECIMAL_FIELDS, mode="before")
    @classmethod
    def _decimals(cls, v: Any) -> Decimal | None:
        return coerce_decimal(v)

    @field_validator(*STATEMENT_TEXT_FIELDS, mode="before")
    @classmethod
    def _texts(cls, v: Any) -> str | None:
        return clean_text(v)

    @field_validator("transactions", mode="before")
    @classmethod
    def _transactions(cls, v: Any) -> list[Any]:
        if not isinstance(v, list):
            return []
        return [
            item if isinstance(item, (Mapping, Transaction)) else Transaction() for item in v
        ]


class CardRecord(BaseModel):
    """A card entity owned by the persistence layer.

    ``card_number`` holds either a full or a masked number (``"**** 1234"``);
    only its trailing digits are ever compared.
    """

    model_config = _WIRE_CONFIG

    id: str | None = None
    name: str | None = None
    bank: str | None = None
    card_number: str | None = Field(
        default=None,
        validation_alias=AliasChoices("cardNumber", "cardNumberOrMasked", "card_number"),
    )
    holder_name: str | None = Field(
        default=None,
        validation_alias=AliasChoices("holderName", "cardHolderName", "holder_name"),
    )
    limit: Decimal | None = None
    current_balance: Decimal | None = None
    due_date: str | None = None
    last_statement_date: str | None = None

    @field_validator("limit", "current_balance", mode="before")
    @classmethod
    def _decimals(cls, v: Any) -> Decimal | None:
        return coerce_decimal(v)

    @field_validator(
        "id", "name", "bank", "card_number", "holder_name", "due_date", "last_statement_date",
        mode="before",
    )
    @classmethod
    def _texts(cls, v: Any) -> str | None:
        return clean_text(v)


class UserCategoryPattern(BaseModel):
    """A category correction a user made for a specific description."""

    model_config = _WIRE_CONFIG

    id: str | None = None
    category: str
    confidence: str = "user"
    times_used: int = 1
    last_updated: datetime | None = None
    original_description: str | None = None

    @field_validator("id", "original_description", mode="before")
    @classmethod
    def _texts(cls, v: Any) -> str | None:
        return clean_text(v)


# ---------------------------------------------------------------------------
# Engine-produced values
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ParseResult:
    """Outcome of :func:`statement_engine.response_parser.parse_ai_response`.

    ``success`` is true even for ``fallback_empty``; callers check
    :attr:`is_empty_fallback` to show a "could not extract" state.
    """

    success: bool
    data: Any
    method: ParseMethod
    error: str | None = None

    @property
    def is_empty_fallback(self) -> bool:
        return self.method is ParseMethod.FALLBACK_EMPTY


@dataclass(frozen=True, slots=True)
class Finding:
    """One validation finding (an error, a warning or a skipped-check note)."""

    type: str
    message: str
    severity: Severity
    field: str | None = None
    details: Mapping[str, Any] = dataclass_field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ValidationSuggestion:
    type: str
    message: str
    action: str


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """Findings and derived figures for one statement.

    ``notes`` holds low-severity "could not check" findings; they never affect
    ``is_valid`` but do lower the confidence score.
    """

    is_valid: bool
    errors: tuple[Finding, ...]
    warnings: tuple[Finding, ...]
    notes: tuple[Finding, ...]
    calculations: Mapping[str, Any]
    suggestions: tuple[ValidationSuggestion, ...]


@dataclass(frozen=True, slots=True)
class MatchScore:
    """Similarity between one stored card and the extracted attributes."""

    total: int
    reasons: tuple[str, ...]
    details: Mapping[str, int]


@dataclass(frozen=True, slots=True)
class CardMatch:
    card: CardRecord
    score: MatchScore
    bucket: MatchBucket


@dataclass(frozen=True, slots=True)
class MatchAnalysis:
    """Bucketed candidates for an extracted card, best first within buckets."""

    exact_matches: tuple[CardMatch, ...]
    strong_matches: tuple[CardMatch, ...]
    possible_matches: tuple[CardMatch, ...]
    can_create_safely: bool


__all__ = [
    "CardMatch",
    "CardRecord",
    "CategoryConfidence",
    "CategoryMethod",
    "ExpectedShape",
    "Finding",
    "MatchAnalysis",
    "MatchBucket",
    "MatchScore",
    "ParseMethod",
    "ParseResult",
    "ParsedStatement",
    "STATEMENT_DECIMAL_FIELDS",
    "STATEMENT_TEXT_FIELDS",
    "Severity",
    "Transaction",
    "TransactionGroup",
    "TransactionType",
    "UserCategoryPattern",
    "ValidationResult",
    "ValidationSuggestion",
    "clean_text",
    "coerce_decimal",
    "transaction_group_from_label",
    "transaction_type_from_label",
]
