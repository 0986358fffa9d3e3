from __future__ import annotations

from decimal import Decimal

import pytest

from statement_engine.categorize import (
    QuotaExceededError,
    categorize_all,
    categorize_transaction,
    is_quota_error,
)
from statement_engine.models import CategoryConfidence, CategoryMethod, Transaction, UserCategoryPattern
from statement_engine.prompting import build_category_prompt, parse_category_token
from tests.helpers.ai_stub import RateLimitError, ScriptedAi


def _tx(description: str, amount: str = "100") -> Transaction:
    return Transaction(description=description, amount=Decimal(amount), type="charge")


# ---- Single item ----------------------------------------------------------------


def test_user_pattern_outranks_static_rules():
    patterns = {"OXXO CENTRO": UserCategoryPattern(id="u1", category="services")}
    result = categorize_transaction(_tx("oxxo centro"), patterns)
    assert result.category == "services"
    assert result.confidence is CategoryConfidence.USER
    assert result.method is CategoryMethod.USER_PATTERN
    assert result.pattern_id == "u1"


def test_static_rule_skips_ai():
    ai = ScriptedAi([])
    result = categorize_transaction(_tx("UBER TRIP"), ai_call=ai)
    assert (result.category, result.confidence, result.method) == (
        "transport",
        CategoryConfidence.HIGH,
        CategoryMethod.PATTERN,
    )
    assert ai.calls == 0


def test_without_ai_unknown_falls_back():
    result = categorize_transaction(_tx("ZQX 001"))
    assert (result.category, result.confidence, result.method) == (
        "other",
        CategoryConfidence.LOW,
        CategoryMethod.FALLBACK,
    )


def test_ai_reply_is_normalized():
    ai = ScriptedAi(["Category: Travel."])
    result = categorize_transaction(_tx("ZQX 001"), ai_call=ai)
    assert result.category == "travel"
    assert result.confidence is CategoryConfidence.MEDIUM
    assert result.method is CategoryMethod.AI
    assert "ZQX 001" in ai.prompts[0]


def test_ai_unknown_reply_becomes_other():
    result = categorize_transaction(_tx("ZQX 001"), ai_call=ScriptedAi(["groceries"]))
    assert result.category == "other"
    assert result.method is CategoryMethod.AI


def test_ai_generic_error_degrades_to_fallback():
    result = categorize_transaction(_tx("ZQX 001"), ai_call=ScriptedAi([RuntimeError("boom")]))
    assert result.method is CategoryMethod.FALLBACK


def test_ai_quota_error_raises():
    with pytest.raises(QuotaExceededError):
        categorize_transaction(
            _tx("ZQX 001"), ai_call=ScriptedAi([RuntimeError("You exceeded your current quota")])
        )


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (RateLimitError("slow down", 429), True),
        (Exception("HTTP 429"), True),
        (Exception("Too Many Requests"), True),
        (Exception("google.rpc.QuotaFailure"), True),
        (QuotaExceededError("stop"), True),
        (RateLimitError("server error", 500), False),
        (ValueError("bad input"), False),
    ],
)
def test_is_quota_error(exc, expected):
    assert is_quota_error(exc) is expected


# ---- Batch ----------------------------------------------------------------------


def test_batch_stops_at_quota_and_leaves_rest_unclassified():
    txs = [_tx("ZQX 001"), _tx("OXXO CENTRO"), _tx("ZQX 002"), _tx("ZQX 003"), _tx("ZQX 004")]
    ai = ScriptedAi(["food", RateLimitError("Too Many Requests", 429)])
    sleeps: list[float] = []

    batch = categorize_all(txs, ai_call=ai, sleep=sleeps.append)

    assert batch.quota_exceeded
    assert batch.quota_error is not None and batch.quota_error.index == 2
    assert batch.counts() == {"ai": 1, "pattern": 1, "unclassified": 3}
    assert batch.ai_calls == 2
    assert sleeps == [2.0]

    assert [item.category for item in batch.items] == ["food", "food", None, None, None]
    assert [item.quota_blocked for item in batch.items] == [False, False, True, True, True]
    # Every input position is present exactly once, in order.
    assert [t.description for t in batch.transactions] == [t.description for t in txs]
    assert batch.transactions[0].category_method is CategoryMethod.AI
    assert batch.transactions[2].category is None


def test_batch_sleeps_only_after_ai_calls():
    txs = [_tx("ZQX 001"), _tx("NETFLIX"), _tx("ZQX 002")]
    sleeps: list[float] = []
    batch = categorize_all(
        txs, ai_call=ScriptedAi(["food", "bills"]), rate_limit_ms=500, sleep=sleeps.append
    )
    assert sleeps == [0.5, 0.5]
    assert [t.category for t in batch.transactions] == ["food", "entertainment", "bills"]
    assert not batch.quota_exceeded


def test_batch_without_ai_never_sleeps():
    sleeps: list[float] = []
    batch = categorize_all([_tx("ZQX 001"), _tx("ZQX 002")], sleep=sleeps.append)
    assert sleeps == []
    assert batch.counts() == {"fallback": 2}
    assert batch.ai_calls == 0


def test_negative_rate_limit_is_rejected():
    with pytest.raises(ValueError):
        categorize_all([], rate_limit_ms=-1)


# ---- Prompt helpers -------------------------------------------------------------


def test_category_prompt_lists_keys_and_absolute_amount():
    prompt = build_category_prompt(
        Transaction(description="PAGO SPEI", amount=Decimal("-150.50"), type="abono")
    )
    assert "food: Food" in prompt
    assert '"PAGO SPEI"' in prompt
    assert "$150.50" in prompt
    assert "Type: payment" in prompt


@pytest.mark.parametrize(
    ("reply", "expected"),
    [
        ('"Transport"', "transport"),
        ("category: food", "food"),
        ("shopping\nBecause it is a store.", "shopping"),
        ("", "other"),
        (None, "other"),
        ("I think it is food", "other"),
    ],
)
def test_parse_category_token(reply, expected):
    assert parse_category_token(reply) == expected
