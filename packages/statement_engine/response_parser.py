"""Best-effort recovery of JSON values from free-form model text.

Public API:
    - :func:`parse_ai_response` runs the recovery cascade and never raises.
    - :func:`parse_transactions_response` / :func:`coerce_transactions` turn an
      array result into :class:`~statement_engine.models.Transaction` records.
    - :func:`parse_statement_response` turns an object result into a
      :class:`~statement_engine.models.ParsedStatement`.
    - :func:`infer_transaction_group` assigns a group from description
      keywords and amount sign.

Cascade order (first success wins), least destructive first:

1. ``basic_cleanup``: direct parse, then strip fences and surrounding prose.
2. ``json_extraction``: regex spans longest first, then first-open/last-close.
3. ``aggressive_repair``: quote, comma and literal repairs.
4. ``line_by_line``: array mode only; each ``{...}`` line parsed on its own.
5. ``fallback_empty``: empty value of the expected shape, ``success=True``.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Mapping
from decimal import Decimal
from typing import Any

from pydantic import ValidationError

from .logging_setup import format_fields, get_logger
from .models import (
    ExpectedShape,
    ParsedStatement,
    ParseMethod,
    ParseResult,
    Transaction,
    TransactionGroup,
)

_logger = get_logger("statement_engine.response_parser")

_PREVIEW_CHARS: int = 200

# ---- Group inference keywords (checked in this order) ------------------------

_PAYMENT_KEYWORDS: tuple[str, ...] = (
    "pago",
    "abono",
    "payment",
    "transferencia",
    "depósito",
    "deposito",
    "deposit",
    "crédito",
    "credito",
    "credit",
    "reembolso",
    "refund",
)
_FEE_KEYWORDS: tuple[str, ...] = (
    "comisión",
    "comision",
    "fee",
    "cargo por",
    "cargo financiero",
    "financial charge",
    "usage charge",
    "cash advance fee",
)
_INTEREST_KEYWORDS: tuple[str, ...] = (
    "interés",
    "interes",
    "interest",
    "financiamiento",
    "financing",
)
_SUPPLEMENTARY_KEYWORDS: tuple[str, ...] = (
    "tarjeta adicional",
    "additional card",
    "titular",
    "cardholder",
    "tarjeta suplementaria",
    "supplementary card",
)
_PURCHASE_KEYWORDS: tuple[str, ...] = (
    "compra",
    "cargo",
    "purchase",
    "débito",
    "debito",
    "debit",
    "transacción",
    "transaction",
)

# ---- Repair patterns ---------------------------------------------------------

_FENCE_OPEN_RE = re.compile(r"```json\s*", re.IGNORECASE)
_FENCE_RE = re.compile(r"```\s*")
_SMART_DOUBLE_RE = re.compile("[“”„‟″]")
_SMART_SINGLE_RE = re.compile("[‘’‚‛′]")
_MISSING_OBJ_COMMA_RE = re.compile(r"}\s*{")
_MISSING_ARR_COMMA_RE = re.compile(r"]\s*\[")
_TRAILING_OBJ_COMMA_RE = re.compile(r",\s*}")
_TRAILING_ARR_COMMA_RE = re.compile(r",\s*]")
_BARE_KEY_RE = re.compile(r"(\w+):")
_BARE_VALUE_RE = re.compile(r':\s*([^",}\]\[{\s][^",}\]]*)(?=[,}\]])')
_QUOTED_LITERAL_RE = re.compile(r':\s*"(true|false|null|-?\d+(?:\.\d+)?)"(?=[,}\]])')

_OBJECT_SPAN_RES = (re.compile(r"\{[\s\S]*\}"), re.compile(r"\{[\s\S]*?\}"))
_ARRAY_SPAN_RES = (re.compile(r"\[[\s\S]*\]"), re.compile(r"\[[\s\S]*?\]"))


def _empty_for(shape: ExpectedShape) -> dict[str, Any] | list[Any]:
    return [] if shape is ExpectedShape.ARRAY else {}


def _preview(text: str) -> str:
    return text[:_PREVIEW_CHARS].replace("\n", " ")


# ---- Cascade steps -----------------------------------------------------------


def _basic_cleanup(text: str) -> str:
    cleaned = text.strip()
    cleaned = _FENCE_OPEN_RE.sub("", cleaned)
    cleaned = _FENCE_RE.sub("", cleaned)

    # Leading prose: only dropped when it is the minor part of the text.
    starts = [i for i in (cleaned.find("{"), cleaned.find("[")) if i != -1]
    if starts:
        first = min(starts)
        if first < len(cleaned) / 2:
            cleaned = cleaned[first:]

    end = max(cleaned.rfind("}"), cleaned.rfind("]"))
    if end != -1 and end < len(cleaned) - 1:
        cleaned = cleaned[: end + 1]
    return cleaned.strip()


def _try_basic_cleanup(text: str) -> Any:
    try:
        return json.loads(text.strip())
    except ValueError:
        pass
    return json.loads(_basic_cleanup(text))


def _try_json_extraction(text: str, shape: ExpectedShape) -> Any:
    patterns = _ARRAY_SPAN_RES if shape is ExpectedShape.ARRAY else _OBJECT_SPAN_RES
    for pattern in patterns:
        spans = sorted(pattern.findall(text), key=len, reverse=True)
        for span in spans:
            try:
                return json.loads(span)
            except ValueError:
                continue

    open_ch, close_ch = ("[", "]") if shape is ExpectedShape.ARRAY else ("{", "}")
    start = text.find(open_ch)
    end = text.rfind(close_ch)
    if start != -1 and end > start:
        return json.loads(text[start : end + 1])
    raise ValueError("no JSON span found")


def repair_json_text(text: str) -> str:
    """Apply the aggressive repairs to ``text`` and return the rewritten text.

    Exposed for testing; the rewrite is heuristic and may corrupt values that
    legitimately contain colons or quotes.
    """

    repaired = _basic_cleanup(text)
    repaired = _SMART_DOUBLE_RE.sub('"', repaired)
    repaired = _SMART_SINGLE_RE.sub("'", repaired)
    repaired = repaired.replace("'", '"')

    repaired = _MISSING_OBJ_COMMA_RE.sub("},{", repaired)
    repaired = _MISSING_ARR_COMMA_RE.sub("],[", repaired)
    repaired = _TRAILING_OBJ_COMMA_RE.sub("}", repaired)
    repaired = _TRAILING_ARR_COMMA_RE.sub("]", repaired)

    repaired = _BARE_KEY_RE.sub(r'"\1":', repaired)
    repaired = _BARE_VALUE_RE.sub(lambda m: ': "' + m.group(1).strip() + '"', repaired)
    repaired = _QUOTED_LITERAL_RE.sub(r": \1", repaired)
    return repaired


def _try_aggressive_repair(text: str) -> Any:
    return json.loads(repair_json_text(text))


def _try_line_by_line(text: str) -> list[Any]:
    items: list[Any] = []
    for line in text.splitlines():
        candidate = line.strip().rstrip(",")
        if not (candidate.startswith("{") and "}" in candidate):
            continue
        try:
            items.append(json.loads(candidate))
            continue
        except ValueError:
            pass
        try:
            items.append(_try_aggressive_repair(candidate))
        except Exception:  # noqa: BLE001 - unsalvageable line is skipped
            _logger.debug("parse:line_skipped %s", format_fields(line=_preview(candidate)))
    if not items:
        raise ValueError("no parseable lines")
    return items


def parse_ai_response(text: Any, expected_shape: ExpectedShape | str = "object") -> ParseResult:
    """Recover a JSON value from ``text``.

    Never raises. On total failure returns ``success=True`` with an empty
    value of ``expected_shape``, ``method=fallback_empty`` and a diagnostic in
    ``error``.
    """

    try:
        shape = ExpectedShape(expected_shape)
    except ValueError:
        shape = ExpectedShape.OBJECT

    if not isinstance(text, str) or not text.strip():
        _logger.warning("parse:fallback reason=empty_or_non_string shape=%s", shape.value)
        return ParseResult(
            success=True,
            data=_empty_for(shape),
            method=ParseMethod.FALLBACK_EMPTY,
            error="empty or non-string input",
        )

    steps: list[tuple[ParseMethod, Any]] = [
        (ParseMethod.BASIC_CLEANUP, lambda: _try_basic_cleanup(text)),
        (ParseMethod.JSON_EXTRACTION, lambda: _try_json_extraction(text, shape)),
        (ParseMethod.AGGRESSIVE_REPAIR, lambda: _try_aggressive_repair(text)),
    ]
    if shape is ExpectedShape.ARRAY:
        steps.append((ParseMethod.LINE_BY_LINE, lambda: _try_line_by_line(text)))

    last_error: str | None = None
    for method, attempt in steps:
        try:
            data = attempt()
        except Exception as exc:  # noqa: BLE001 - includes RecursionError on deep nesting
            last_error = f"{type(exc).__name__}: {exc}"
            _logger.debug(
                "parse:attempt_failed %s",
                format_fields(method=method.value, error=type(exc).__name__),
            )
            continue
        _logger.info("parse:success %s", format_fields(method=method.value, shape=shape.value))
        return ParseResult(success=True, data=data, method=method)

    _logger.warning(
        "parse:fallback %s",
        format_fields(shape=shape.value, chars=len(text), preview=_preview(text)),
    )
    return ParseResult(
        success=True,
        data=_empty_for(shape),
        method=ParseMethod.FALLBACK_EMPTY,
        error=f"could not parse model output; using empty value (last error: {last_error})",
    )


# ---- Transaction specialization ----------------------------------------------


def _contains_any(text: str, keywords: Iterable[str]) -> bool:
    return any(k in text for k in keywords)


def infer_transaction_group(description: str | None, amount: Decimal | None) -> TransactionGroup:
    """Infer a group from description keywords, then the amount sign.

    Keyword evidence outranks sign evidence: a positive amount described as a
    payment is a payment.
    """

    desc = (description or "").lower()
    if _contains_any(desc, _PAYMENT_KEYWORDS) or (amount is not None and amount < 0):
        return TransactionGroup.PAYMENTS
    if _contains_any(desc, _FEE_KEYWORDS):
        return TransactionGroup.FEES
    if _contains_any(desc, _INTEREST_KEYWORDS):
        return TransactionGroup.INTEREST
    if _contains_any(desc, _SUPPLEMENTARY_KEYWORDS):
        return TransactionGroup.SUPPLEMENTARY_CARD
    if _contains_any(desc, _PURCHASE_KEYWORDS) or (amount is not None and amount > 0):
        return TransactionGroup.PURCHASES
    return TransactionGroup.GENERAL


def coerce_transactions(items: Any) -> list[Transaction]:
    """Coerce raw elements into transactions, one output per input element.

    Non-object elements become all-null placeholders; a missing group is
    inferred for real rows.
    """

    if not isinstance(items, list):
        return []
    out: list[Transaction] = []
    placeholders = 0
    for idx, item in enumerate(items):
        if isinstance(item, Transaction):
            tx = item
        elif isinstance(item, Mapping):
            try:
                tx = Transaction.model_validate(item)
            except ValidationError as exc:
                _logger.warning(
                    "transactions:invalid_item %s",
                    format_fields(index=idx, errors=exc.error_count()),
                )
                out.append(Transaction())
                placeholders += 1
                continue
        else:
            out.append(Transaction())
            placeholders += 1
            continue
        if tx.group is None:
            tx = tx.model_copy(update={"group": infer_transaction_group(tx.description, tx.amount)})
        out.append(tx)
    if placeholders:
        _logger.info(
            "transactions:placeholders %s", format_fields(count=placeholders, total=len(items))
        )
    return out


def parse_transactions_response(text: Any) -> list[Transaction]:
    """Parse an array response into transactions (empty list when nothing usable)."""

    result = parse_ai_response(text, ExpectedShape.ARRAY)
    data = result.data
    if isinstance(data, Mapping) and isinstance(data.get("transactions"), list):
        data = data["transactions"]
    transactions = coerce_transactions(data)
    _logger.info(
        "transactions:parsed %s", format_fields(count=len(transactions), method=result.method.value)
    )
    return transactions


# ---- Statement specialization ------------------------------------------------


def statement_from_mapping(data: Any) -> ParsedStatement:
    """Build a :class:`ParsedStatement` from a decoded mapping, leniently."""

    if isinstance(data, ParsedStatement):
        return data
    if not isinstance(data, Mapping):
        return ParsedStatement()
    payload = dict(data)
    payload["transactions"] = coerce_transactions(payload.get("transactions"))
    try:
        return ParsedStatement.model_validate(payload)
    except ValidationError as exc:
        _logger.warning("statement:invalid %s", format_fields(errors=exc.error_count()))
        return ParsedStatement(transactions=payload["transactions"])


def parse_statement_response(text: Any) -> tuple[ParsedStatement, ParseResult]:
    """Parse an object response into a statement plus the underlying parse result.

    A present ``0`` stays ``Decimal(0)``; an absent or unparseable figure is
    ``None``.
    """

    result = parse_ai_response(text, ExpectedShape.OBJECT)
    statement = statement_from_mapping(result.data)
    _logger.info(
        "statement:parsed %s",
        format_fields(
            method=result.method.value,
            transactions=len(statement.transactions),
            has_total=statement.total_balance is not None,
        ),
    )
    return statement, result


__all__ = [
    "coerce_transactions",
    "infer_transaction_group",
    "parse_ai_response",
    "parse_statement_response",
    "parse_transactions_response",
    "repair_json_text",
    "statement_from_mapping",
]
