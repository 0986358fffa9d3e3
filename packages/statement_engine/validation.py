"""Consistency checks for an extracted statement.

Public API:
    - :func:`validate_statement`
    - :func:`find_previous_balance`
    - :func:`calculate_totals`
    - :func:`get_confidence_score`
    - :func:`format_validation_result` / :func:`render_validation_report`
    - :func:`parse_statement_date`

Three bounded-tolerance rules are checked: the balance identity
(``|previous| + charges - payments ~ |total|``), the minimum payment bound, and
the due-date window. Findings are data; nothing here raises for bad input.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from .logging_setup import format_fields, get_logger
from .models import (
    Finding,
    ParsedStatement,
    Severity,
    Transaction,
    TransactionType,
    ValidationResult,
    ValidationSuggestion,
)
from .response_parser import statement_from_mapping
from .settings import DEFAULT_PREVIOUS_BALANCE_MARKERS

_logger = get_logger("statement_engine.validation")

_PREVIOUS_BALANCE_SCAN_LIMIT: int = 5
_PREVIOUS_BALANCE_RAW_TYPES: frozenset[str] = frozenset({"previous_balance", "saldo_anterior"})
_MAX_DUE_DAYS: int = 25
_MIN_TOLERANCE: Decimal = Decimal("10")
_TOLERANCE_RATIO: Decimal = Decimal("0.01")

_PAYMENT_KEYWORDS: tuple[str, ...] = ("pago", "abono", "payment", "transferencia")
_CHARGE_KEYWORDS: tuple[str, ...] = ("compra", "cargo", "purchase", "débito")
_FEE_KEYWORDS: tuple[str, ...] = ("comisión", "comision", "fee", "cargo por")
_INTEREST_KEYWORDS: tuple[str, ...] = ("interés", "interes", "interest", "financiamiento")
_CREDIT_BALANCE_KEYWORDS: tuple[str, ...] = (
    "saldo a favor",
    "balance a favor",
    "credit balance",
    "favor",
)

_SEVERITY_PENALTY: Mapping[Severity, int] = {
    Severity.HIGH: 15,
    Severity.MEDIUM: 8,
    Severity.LOW: 3,
}
_ERROR_PENALTY: int = 25

# ---- Date parsing ------------------------------------------------------------

_SPANISH_MONTHS: Mapping[str, int] = {
    "ene": 1,
    "feb": 2,
    "mar": 3,
    "abr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "ago": 8,
    "sep": 9,
    "set": 9,
    "oct": 10,
    "nov": 11,
    "dic": 12,
}
_ENGLISH_MONTHS: Mapping[str, int] = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}
_NUMERIC_FORMATS: tuple[str, ...] = ("%Y-%m-%d", "%Y/%m/%d", "%d/%m/%Y", "%d-%m-%Y", "%d.%m.%Y")
_TEXT_DATE_RE = re.compile(r"^(\d{1,2})[\s\-/]+(?:de\s+)?([A-Za-zñÑ]{3,})\.?[\s\-/]+(?:de\s+)?(\d{2,4})$")
_MONTH_FIRST_RE = re.compile(r"^([A-Za-z]{3,})\.?\s+(\d{1,2}),?\s+(\d{2,4})$")


def parse_statement_date(value: str | None) -> date | None:
    """Parse the date spellings seen on statements; ``None`` when unrecognised.

    Numeric dates are read day-first (``05/03/2024`` is 5 March). Month names
    may be Spanish or English, abbreviated or not, day-first
    (``15 de marzo de 2024``) or month-first (``March 21, 2024``).
    """

    if not value:
        return None
    s = value.strip()
    head = s.split("T", 1)[0].split(" ", 1)[0] if s[:4].isdigit() else s
    for fmt in _NUMERIC_FORMATS:
        try:
            return datetime.strptime(head, fmt).date()
        except ValueError:
            continue

    m = _TEXT_DATE_RE.match(s)
    if m:
        day_s, month_s, year_s = m.groups()
    else:
        m = _MONTH_FIRST_RE.match(s)
        if not m:
            return None
        month_s, day_s, year_s = m.groups()
    key = month_s.lower()[:3]
    month = _SPANISH_MONTHS.get(key) or _ENGLISH_MONTHS.get(key)
    if month is None:
        return None
    year = int(year_s)
    if year < 100:
        year += 2000
    try:
        return date(year, month, int(day_s))
    except ValueError:
        return None


# ---- Transaction scanning ----------------------------------------------------


def _contains_any(text: str, keywords: Sequence[str]) -> bool:
    return any(k in text for k in keywords)


def find_previous_balance(
    transactions: Sequence[Transaction],
    markers: Sequence[str] = DEFAULT_PREVIOUS_BALANCE_MARKERS,
) -> tuple[Decimal | None, int | None]:
    """Return ``(amount, index)`` of a previous-balance row among the first five.

    The amount keeps its sign: negative means a balance in the holder's
    favour. Rows with a zero or missing amount are not previous balances.
    """

    lowered = tuple(m.lower() for m in markers)
    for idx, tx in enumerate(transactions[:_PREVIOUS_BALANCE_SCAN_LIMIT]):
        if tx.amount is None or tx.amount == 0:
            continue
        desc = (tx.description or "").lower()
        raw_type = (tx.raw_type or "").lower()
        if _contains_any(desc, lowered) or raw_type in _PREVIOUS_BALANCE_RAW_TYPES:
            return tx.amount, idx
    return None, None


def _classify(tx: Transaction) -> str:
    """Return ``"payment"``, ``"charge"`` or ``"credit_interest"`` for a row."""

    desc = (tx.description or "").lower()
    if _contains_any(desc, _INTEREST_KEYWORDS[:3]) and _contains_any(desc, _CREDIT_BALANCE_KEYWORDS):
        return "credit_interest"
    if _contains_any(desc, _PAYMENT_KEYWORDS):
        return "payment"
    if _contains_any(desc, _CHARGE_KEYWORDS):
        return "charge"
    if tx.type is TransactionType.PAYMENT:
        return "payment"
    if tx.type is TransactionType.CHARGE:
        return "charge"
    if tx.amount is not None and tx.amount < 0:
        return "payment"
    return "charge"


def calculate_totals(
    transactions: Sequence[Transaction], *, skip_index: int | None = None
) -> dict[str, Any]:
    """Sum absolute amounts into charge/payment buckets.

    Adjustments and the row at ``skip_index`` (the previous-balance row) are
    excluded. Fees and interest are sub-tallies of charges.
    """

    charges = Decimal(0)
    payments = Decimal(0)
    fees = Decimal(0)
    interest = Decimal(0)
    adjustments = 0
    credit_interest = False

    for idx, tx in enumerate(transactions):
        if idx == skip_index:
            continue
        if tx.type is TransactionType.ADJUSTMENT:
            adjustments += 1
            continue
        amount = abs(tx.amount) if tx.amount is not None else Decimal(0)
        kind = _classify(tx)
        if kind == "credit_interest":
            payments += amount
            credit_interest = True
        elif kind == "payment":
            payments += amount
        else:
            charges += amount
            desc = (tx.description or "").lower()
            if _contains_any(desc, _FEE_KEYWORDS):
                fees += amount
            if _contains_any(desc, _INTEREST_KEYWORDS):
                interest += amount

    return {
        "total_charges": charges,
        "total_payments": payments,
        "total_fees": fees,
        "total_interest": interest,
        "transaction_count": len(transactions),
        "adjustments_excluded": adjustments,
        "pays_interest_on_credit_balance": credit_interest,
    }


# ---- Rule checks -------------------------------------------------------------


class _Findings:
    def __init__(self) -> None:
        self.errors: list[Finding] = []
        self.warnings: list[Finding] = []
        self.notes: list[Finding] = []

    def warn(self, finding: Finding) -> None:
        if finding.severity is Severity.LOW:
            self.notes.append(finding)
        else:
            self.warnings.append(finding)


def _check_balance_formula(
    findings: _Findings,
    calculations: dict[str, Any],
    previous: Decimal | None,
    total: Decimal | None,
) -> None:
    if previous is None and total is None:
        calculations["balance_formula_valid"] = None
        return
    if previous is None or total is None:
        missing = [n for n, v in (("previous balance", previous), ("total balance", total)) if v is None]
        findings.warn(
            Finding(
                type="missing_balance_data",
                message=f"Cannot check the balance formula: missing {' and '.join(missing)}",
                severity=Severity.MEDIUM,
            )
        )
        calculations["balance_formula_valid"] = None
        return

    charges: Decimal = calculations["total_charges"]
    payments: Decimal = calculations["total_payments"]
    prev_abs = abs(previous)
    actual = abs(total)
    expected = prev_abs + charges - payments
    difference = abs(expected - actual)
    tolerance = max(_MIN_TOLERANCE, actual * _TOLERANCE_RATIO)
    details = {
        "previous_balance": previous,
        "total_charges": charges,
        "total_payments": payments,
        "expected": expected,
        "actual": actual,
        "difference": difference,
        "tolerance": tolerance,
    }
    calculations["balance_formula_details"] = details

    if prev_abs == 0 and actual == 0 and charges == 0 and payments == 0:
        calculations["balance_formula_valid"] = True
        return
    if difference <= tolerance:
        calculations["balance_formula_valid"] = True
        return

    calculations["balance_formula_valid"] = False
    findings.warn(
        Finding(
            type="balance_formula_mismatch",
            field="total_balance",
            message=(
                f"Balance formula does not add up: previous {prev_abs} + charges {charges}"
                f" - payments {payments} = {expected}, but the statement reports {actual}"
            ),
            severity=Severity.HIGH,
            details=details,
        )
    )


def _check_minimum_payment(
    findings: _Findings, minimum: Decimal | None, total: Decimal | None
) -> None:
    if minimum is None or total is None:
        missing = [n for n, v in (("minimum payment", minimum), ("total balance", total)) if v is None]
        findings.warn(
            Finding(
                type="missing_payment_data",
                message=f"Cannot check the minimum payment: missing {' and '.join(missing)}",
                severity=Severity.LOW,
            )
        )
        return
    min_abs = abs(minimum)
    total_abs = abs(total)
    if min_abs == 0 and total_abs == 0:
        return
    if min_abs > total_abs:
        findings.warn(
            Finding(
                type="minimum_payment_exceeds_balance",
                field="minimum_payment",
                message=(
                    f"Minimum payment ({min_abs}) is greater than the total balance ({total_abs})"
                ),
                severity=Severity.HIGH,
                details={
                    "minimum_payment": min_abs,
                    "total_balance": total_abs,
                    "difference": min_abs - total_abs,
                },
            )
        )


def _check_due_date(
    findings: _Findings, statement_date: str | None, due_date: str | None
) -> int | None:
    if not statement_date or not due_date:
        findings.warn(
            Finding(
                type="missing_date_data",
                message="Cannot check the due date: statement date or due date is missing",
                severity=Severity.LOW,
            )
        )
        return None

    start = parse_statement_date(statement_date)
    due = parse_statement_date(due_date)
    if start is None or due is None:
        findings.warn(
            Finding(
                type="invalid_date_format",
                message=f"Unrecognised date format: statement={statement_date!r} due={due_date!r}",
                severity=Severity.MEDIUM,
            )
        )
        return None

    days = (due - start).days
    if days > _MAX_DUE_DAYS:
        findings.warn(
            Finding(
                type="due_date_too_far",
                field="due_date",
                message=(
                    f"Due date ({due_date}) is {days} days after the statement date"
                    f" ({statement_date}); at most {_MAX_DUE_DAYS} are expected"
                ),
                severity=Severity.MEDIUM,
                details={"days_difference": days, "max_allowed": _MAX_DUE_DAYS},
            )
        )
    elif days < 0:
        findings.warn(
            Finding(
                type="due_date_before_statement",
                field="due_date",
                message=f"Due date ({due_date}) is before the statement date ({statement_date})",
                severity=Severity.HIGH,
                details={"days_difference": days},
            )
        )
    return days


def _suggestions_for(findings: _Findings) -> list[ValidationSuggestion]:
    kinds = {w.type for w in findings.warnings}
    out: list[ValidationSuggestion] = []
    if "balance_formula_mismatch" in kinds:
        out.append(
            ValidationSuggestion(
                type="balance_formula_error",
                message="The balance formula does not add up. Check that every transaction was captured.",
                action="review_transactions",
            )
        )
    if "minimum_payment_exceeds_balance" in kinds:
        out.append(
            ValidationSuggestion(
                type="minimum_payment_error",
                message="The minimum payment exceeds the balance. Verify the extracted figures.",
                action="verify_minimum_payment",
            )
        )
    if kinds & {"due_date_too_far", "due_date_before_statement"}:
        out.append(
            ValidationSuggestion(
                type="date_error",
                message="The dates look wrong. Verify the statement and due dates.",
                action="verify_dates",
            )
        )
    if findings.errors or any(w.severity is Severity.HIGH for w in findings.warnings):
        out.append(
            ValidationSuggestion(
                type="manual_review",
                message="Important problems were found. Review the data manually before relying on it.",
                action="manual_verification",
            )
        )
    return out


# ---- Entry points ------------------------------------------------------------


def _validate(statement: ParsedStatement, markers: Sequence[str]) -> ValidationResult:
    findings = _Findings()
    txs = statement.transactions

    found_amount, found_index = find_previous_balance(txs, markers)
    if statement.previous_balance is not None:
        previous = statement.previous_balance
        source = "statement"
    else:
        previous = found_amount
        source = "transactions" if found_amount is not None else None

    calculations = calculate_totals(txs, skip_index=found_index)
    calculations.update(
        {
            "effective_previous_balance": previous,
            "previous_balance_source": source,
            "previous_balance_index": found_index,
            "has_previous_balance": previous is not None,
            "has_current_balance": statement.total_balance is not None,
            "has_minimum_payment": statement.minimum_payment is not None,
            "has_payments": calculations["total_payments"] > 0,
            "has_statement_date": bool(statement.statement_date),
            "has_due_date": bool(statement.due_date),
        }
    )

    _check_balance_formula(findings, calculations, previous, statement.total_balance)
    _check_minimum_payment(findings, statement.minimum_payment, statement.total_balance)
    calculations["due_days"] = _check_due_date(findings, statement.statement_date, statement.due_date)

    is_valid = not findings.errors and not any(
        w.severity is Severity.HIGH for w in findings.warnings
    )
    return ValidationResult(
        is_valid=is_valid,
        errors=tuple(findings.errors),
        warnings=tuple(findings.warnings),
        notes=tuple(findings.notes),
        calculations=calculations,
        suggestions=tuple(_suggestions_for(findings)),
    )


def validate_statement(
    statement: ParsedStatement | Mapping[str, Any],
    *,
    previous_balance_markers: Sequence[str] | None = None,
) -> ValidationResult:
    """Validate ``statement`` and return findings; never raises.

    ``previous_balance_markers`` overrides the phrases used to find a previous
    balance row when the statement does not state it.
    """

    markers = previous_balance_markers or DEFAULT_PREVIOUS_BALANCE_MARKERS
    try:
        parsed = statement_from_mapping(statement)
        result = _validate(parsed, markers)
    except Exception as exc:  # noqa: BLE001 - reported as a finding
        _logger.exception("validate:error")
        return ValidationResult(
            is_valid=False,
            errors=(
                Finding(
                    type="validation_error",
                    message=f"Validation failed: {exc}",
                    severity=Severity.HIGH,
                ),
            ),
            warnings=(),
            notes=(),
            calculations={},
            suggestions=(),
        )

    _logger.info(
        "validate:done %s",
        format_fields(
            valid=result.is_valid,
            errors=len(result.errors),
            warnings=len(result.warnings),
            notes=len(result.notes),
        ),
    )
    return result


def get_confidence_score(result: ValidationResult, *, penalize_missing_data: bool = False) -> int:
    """Score 0-100 from the findings.

    -25 per error, -15/-8/-3 per high/medium/low warning or note. With
    ``penalize_missing_data`` the completeness penalties are applied as well and
    the score is capped at 50 when balance, payment and transaction data are
    all absent.
    """

    score = 100
    score -= _ERROR_PENALTY * len(result.errors)
    for finding in result.warnings + result.notes:
        score -= _SEVERITY_PENALTY[finding.severity]

    if penalize_missing_data:
        calc = result.calculations
        has_balance = bool(calc.get("has_previous_balance") or calc.get("has_current_balance"))
        has_payment = bool(calc.get("has_minimum_payment") or calc.get("has_payments"))
        has_transactions = bool(calc.get("transaction_count"))
        has_dates = bool(calc.get("has_statement_date") or calc.get("has_due_date"))
        if not has_balance:
            score -= 30
        if not has_payment:
            score -= 25
        if not has_transactions:
            score -= 20
        if not has_dates:
            score -= 15
        if not (has_balance or has_payment or has_transactions):
            score = min(score, 50)

    return max(0, score)


# ---- Human-readable rendering ------------------------------------------------


@dataclass(frozen=True, slots=True)
class ReportLine:
    kind: str
    icon: str
    message: str
    severity: Severity | None = None


@dataclass(frozen=True, slots=True)
class ValidationReport:
    status: str
    title: str
    summary: str
    details: tuple[ReportLine, ...]


_ICON_ERROR = "❌"
_ICON_HIGH = "⚠️"
_ICON_INFO = "ℹ️"
_ICON_SUGGESTION = "💡"


def format_validation_result(result: ValidationResult) -> ValidationReport:
    if result.is_valid:
        status, title = "success", "✅ Data validated"
        summary = "The extracted figures look consistent."
    else:
        serious = len(result.errors) + sum(
            1 for w in result.warnings if w.severity is Severity.HIGH
        )
        status, title = "warning", f"{_ICON_HIGH} Data needs attention"
        summary = f"{serious} important problem(s) need attention."

    lines: list[ReportLine] = [
        ReportLine("error", _ICON_ERROR, e.message, e.severity) for e in result.errors
    ]
    for w in result.warnings:
        icon = _ICON_HIGH if w.severity is Severity.HIGH else _ICON_INFO
        lines.append(ReportLine("warning", icon, w.message, w.severity))
    lines.extend(ReportLine("note", _ICON_INFO, n.message, n.severity) for n in result.notes)
    lines.extend(ReportLine("suggestion", _ICON_SUGGESTION, s.message) for s in result.suggestions)
    return ValidationReport(status=status, title=title, summary=summary, details=tuple(lines))


def render_validation_report(report: ValidationReport) -> str:
    out = [report.title, report.summary]
    out.extend(f"  {line.icon} {line.message}" for line in report.details)
    return "\n".join(out)


def _json_safe(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


def _finding_dict(finding: Finding) -> dict[str, Any]:
    return {
        "type": finding.type,
        "message": finding.message,
        "severity": finding.severity.value,
        "field": finding.field,
        "details": _json_safe(finding.details),
    }


def validation_to_dict(result: ValidationResult, *, confidence: int | None = None) -> dict[str, Any]:
    """JSON-safe rendering of ``result`` (decimals become strings)."""

    out: dict[str, Any] = {
        "isValid": result.is_valid,
        "errors": [_finding_dict(f) for f in result.errors],
        "warnings": [_finding_dict(f) for f in result.warnings],
        "notes": [_finding_dict(f) for f in result.notes],
        "calculations": _json_safe(result.calculations),
        "suggestions": [
            {"type": s.type, "message": s.message, "action": s.action} for s in result.suggestions
        ],
    }
    if confidence is not None:
        out["confidence"] = confidence
    return out


__all__ = [
    "ReportLine",
    "ValidationReport",
    "calculate_totals",
    "find_previous_balance",
    "format_validation_result",
    "get_confidence_score",
    "parse_statement_date",
    "render_validation_report",
    "validate_statement",
    "validation_to_dict",
]
