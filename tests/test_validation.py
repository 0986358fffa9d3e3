from __future__ import annotations

import json
from datetime import date
from decimal import Decimal

import pytest

import statement_engine.validation as validation_mod
from statement_engine.models import ParsedStatement, Severity, Transaction
from statement_engine.validation import (
    calculate_totals,
    find_previous_balance,
    format_validation_result,
    get_confidence_score,
    parse_statement_date,
    render_validation_report,
    validate_statement,
    validation_to_dict,
)


def _statement(**overrides) -> ParsedStatement:
    base = {
        "previousBalance": 1000,
        "totalBalance": 1300,
        "minimumPayment": 200,
        "statementDate": "2024-03-01",
        "dueDate": "2024-03-21",
        "transactions": [
            {"description": "OXXO SUCURSAL", "amount": 500, "type": "cargo"},
            {"description": "PAGO GRACIAS", "amount": 200, "type": "abono"},
        ],
    }
    base.update(overrides)
    return ParsedStatement.model_validate(base)


def _types(findings) -> list[str]:
    return [f.type for f in findings]


def test_consistent_statement_is_valid_with_full_confidence():
    result = validate_statement(_statement())
    assert result.is_valid
    assert result.errors == () and result.warnings == () and result.notes == ()
    assert result.calculations["balance_formula_valid"] is True
    assert result.calculations["due_days"] == 20
    assert get_confidence_score(result) == 100


def test_balance_mismatch_is_a_high_warning():
    result = validate_statement(_statement(totalBalance=2000))
    assert not result.is_valid
    assert _types(result.warnings) == ["balance_formula_mismatch"]
    assert result.warnings[0].severity is Severity.HIGH
    assert result.warnings[0].details["difference"] == Decimal(700)
    assert [s.action for s in result.suggestions] == ["review_transactions", "manual_verification"]
    assert get_confidence_score(result) == 85


def test_small_difference_within_tolerance_passes():
    result = validate_statement(_statement(totalBalance="1309.99"))
    assert result.is_valid
    assert result.calculations["balance_formula_valid"] is True


def test_previous_balance_row_is_found_and_excluded_from_totals():
    statement = _statement(
        previousBalance=None,
        transactions=[
            {"description": "SALDO ANTERIOR", "amount": 1000},
            {"description": "OXXO SUCURSAL", "amount": 500, "type": "cargo"},
            {"description": "PAGO GRACIAS", "amount": 200, "type": "abono"},
        ],
    )
    result = validate_statement(statement)
    calc = result.calculations
    assert calc["previous_balance_source"] == "transactions"
    assert calc["previous_balance_index"] == 0
    assert calc["total_charges"] == Decimal(500)
    assert result.is_valid


def test_previous_balance_markers_are_configurable():
    statement = _statement(
        previousBalance=None,
        transactions=[
            {"description": "BALANCE PRIOR PERIOD", "amount": 1000},
            {"description": "OXXO SUCURSAL", "amount": 300, "type": "cargo"},
        ],
    )
    default = validate_statement(statement)
    assert default.calculations["previous_balance_source"] is None
    assert "missing_balance_data" in _types(default.warnings)

    custom = validate_statement(statement, previous_balance_markers=("balance prior period",))
    assert custom.calculations["previous_balance_source"] == "transactions"
    assert custom.calculations["effective_previous_balance"] == Decimal(1000)


def test_find_previous_balance_ignores_zero_rows_and_scans_five():
    txs = [Transaction(description="SALDO ANTERIOR", amount=0)]
    txs += [Transaction(description=f"COMPRA {i}", amount=10) for i in range(5)]
    txs.append(Transaction(description="SALDO ANTERIOR", amount=900))
    assert find_previous_balance(txs) == (None, None)

    raw = [Transaction(description="Carry over", amount=-250, type="saldo_anterior")]
    assert find_previous_balance(raw) == (Decimal(-250), 0)


def test_minimum_payment_above_balance_is_high():
    result = validate_statement(_statement(minimumPayment=5000))
    assert not result.is_valid
    assert "minimum_payment_exceeds_balance" in _types(result.warnings)
    assert "verify_minimum_payment" in [s.action for s in result.suggestions]


def test_missing_data_becomes_notes_not_warnings():
    result = validate_statement(ParsedStatement())
    assert result.is_valid
    assert result.warnings == ()
    assert _types(result.notes) == ["missing_payment_data", "missing_date_data"]
    assert result.calculations["balance_formula_valid"] is None
    assert get_confidence_score(result) == 94


def test_penalize_missing_data_caps_score():
    result = validate_statement(ParsedStatement())
    assert get_confidence_score(result, penalize_missing_data=True) == 4


def test_one_sided_balance_is_medium():
    result = validate_statement(_statement(totalBalance=None, minimumPayment=None))
    assert result.is_valid
    assert _types(result.warnings) == ["missing_balance_data"]
    assert result.warnings[0].severity is Severity.MEDIUM
    assert _types(result.notes) == ["missing_payment_data"]
    assert get_confidence_score(result) == 100 - 8 - 3


def test_all_zero_statement_passes():
    result = validate_statement({"previousBalance": 0, "totalBalance": 0, "minimumPayment": 0})
    assert result.calculations["balance_formula_valid"] is True
    assert "minimum_payment_exceeds_balance" not in _types(result.warnings)


@pytest.mark.parametrize(
    ("due", "kind", "severity"),
    [
        ("2024-04-15", "due_date_too_far", Severity.MEDIUM),
        ("2024-02-20", "due_date_before_statement", Severity.HIGH),
        ("pronto", "invalid_date_format", Severity.MEDIUM),
    ],
)
def test_due_date_rules(due, kind, severity):
    result = validate_statement(_statement(dueDate=due))
    (finding,) = result.warnings
    assert finding.type == kind
    assert finding.severity is severity
    assert result.is_valid is (severity is not Severity.HIGH)


def test_parse_statement_date_spellings():
    assert parse_statement_date("2024-03-05") == date(2024, 3, 5)
    assert parse_statement_date("05/03/2024") == date(2024, 3, 5)
    assert parse_statement_date("2024-03-05T10:00:00") == date(2024, 3, 5)
    assert parse_statement_date("15 de marzo de 2024") == date(2024, 3, 15)
    assert parse_statement_date("12-Jan-24") == date(2024, 1, 12)
    assert parse_statement_date("March 21, 2024") == date(2024, 3, 21)
    assert parse_statement_date("Mar. 1 2024") == date(2024, 3, 1)
    assert parse_statement_date("Sept 30, 24") == date(2024, 9, 30)
    assert parse_statement_date("Foo 30, 2024") is None
    assert parse_statement_date("31/02/2024") is None
    assert parse_statement_date("soon") is None
    assert parse_statement_date(None) is None


def test_calculate_totals_buckets():
    txs = [
        Transaction(description="AJUSTE", amount=50, type="ajuste"),
        Transaction(description="INTERES SALDO A FAVOR", amount=5, type="charge"),
        Transaction(description="COMISION ANUALIDAD", amount=300, type="charge"),
        Transaction(description="INTERESES", amount=40, type="charge"),
        Transaction(description="PAGO RECIBIDO", amount=-1000, type="payment"),
    ]
    totals = calculate_totals(txs)
    assert totals["total_charges"] == Decimal(340)
    assert totals["total_payments"] == Decimal(1005)
    assert totals["total_fees"] == Decimal(300)
    assert totals["total_interest"] == Decimal(40)
    assert totals["adjustments_excluded"] == 1
    assert totals["pays_interest_on_credit_balance"] is True
    assert totals["transaction_count"] == 5


def test_description_outranks_stated_type():
    # Labelled a charge, but the description says it is a payment.
    txs = [Transaction(description="PAGO SPEI", amount=100, type="charge")]
    totals = calculate_totals(txs)
    assert totals["total_payments"] == Decimal(100)
    assert totals["total_charges"] == Decimal(0)


def test_unexpected_failure_is_reported_as_error(monkeypatch: pytest.MonkeyPatch):
    def boom(*_a, **_k):
        raise RuntimeError("kaput")

    monkeypatch.setattr(validation_mod, "_validate", boom)
    result = validate_statement(_statement())
    assert not result.is_valid
    assert _types(result.errors) == ["validation_error"]
    assert get_confidence_score(result) == 75


def test_report_rendering():
    bad = format_validation_result(validate_statement(_statement(totalBalance=2000)))
    assert bad.status == "warning"
    assert [line.kind for line in bad.details] == ["warning", "suggestion", "suggestion"]
    text = render_validation_report(bad)
    assert "needs attention" in text
    assert "⚠️" in text and "💡" in text

    good = format_validation_result(validate_statement(_statement()))
    assert good.status == "success"
    assert good.details == ()


def test_validation_to_dict_is_json_safe():
    result = validate_statement(_statement(totalBalance=2000))
    payload = validation_to_dict(result, confidence=85)
    encoded = json.loads(json.dumps(payload))
    assert encoded["isValid"] is False
    assert encoded["confidence"] == 85
    assert encoded["warnings"][0]["severity"] == "high"
    assert encoded["calculations"]["total_charges"] == "500"


def test_month_first_english_due_date_is_accepted():
    result = validate_statement(_statement(statementDate="March 1, 2024", dueDate="March 21, 2024"))
    assert result.warnings == ()
    assert result.calculations["due_days"] == 20
    assert get_confidence_score(result) == 100
