"""Transaction categorization with a strict priority chain.

Public API:
    - :func:`categorize_transaction`
    - :func:`categorize_all`
    - :func:`is_quota_error`
    - :class:`QuotaExceededError`

Resolution order, first hit wins: user pattern, static merchant/keyword
rules, AI fallback. The batch form is sequential and pauses after each AI
call only. A quota failure stops the batch; any other AI failure degrades the
one item to ``other/low/fallback``.
"""

from __future__ import annotations

import time
from collections import Counter
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass

from . import prompting
from .ai_client import AiCall
from .categories import OTHER_CATEGORY, TRANSACTION_CATEGORIES, CategoryInfo, categorize_by_patterns
from .logging_setup import format_fields, get_logger
from .models import CategoryConfidence, CategoryMethod, Transaction
from .user_patterns import UserPatterns, find_user_category_pattern

# ---- Tunables (private) ------------------------------------------------------

_DEFAULT_RATE_LIMIT_MS: int = 2000
_QUOTA_MARKERS: tuple[str, ...] = ("429", "quota", "too many requests", "quotafailure")

_logger = get_logger("statement_engine.categorize")


class QuotaExceededError(RuntimeError):
    """The AI provider refused a call for quota or rate-limit reasons.

    ``index`` is the batch position at which the batch stopped, when known.
    """

    def __init__(self, message: str, *, index: int | None = None) -> None:
        super().__init__(message)
        self.index = index


def is_quota_error(exc: BaseException) -> bool:
    """Return True for HTTP 429 errors and errors whose text carries a quota marker."""

    if isinstance(exc, QuotaExceededError):
        return True
    sc = getattr(exc, "status_code", None)
    if isinstance(sc, int) and sc == 429:
        return True
    text = f"{type(exc).__name__} {exc}".lower()
    return any(marker in text for marker in _QUOTA_MARKERS)


@dataclass(frozen=True, slots=True)
class CategorizationResult:
    category: str
    confidence: CategoryConfidence
    method: CategoryMethod
    pattern_id: str | None = None


_FALLBACK = CategorizationResult(OTHER_CATEGORY, CategoryConfidence.LOW, CategoryMethod.FALLBACK)


@dataclass(frozen=True, slots=True)
class CategorizedTransaction:
    """One batch position: the (possibly updated) transaction and its outcome.

    ``result`` is ``None`` only for items left unclassified after a quota stop.
    """

    transaction: Transaction
    result: CategorizationResult | None
    quota_blocked: bool = False

    @property
    def category(self) -> str | None:
        return self.result.category if self.result is not None else None


@dataclass(frozen=True, slots=True)
class BatchCategorization:
    items: tuple[CategorizedTransaction, ...]
    quota_error: QuotaExceededError | None = None
    ai_calls: int = 0

    @property
    def transactions(self) -> list[Transaction]:
        return [item.transaction for item in self.items]

    @property
    def quota_exceeded(self) -> bool:
        return self.quota_error is not None

    def counts(self) -> Counter[str]:
        """Count items per method value; quota-blocked items count as ``unclassified``."""

        return Counter(
            item.result.method.value if item.result is not None else "unclassified"
            for item in self.items
        )


def _apply(tx: Transaction, result: CategorizationResult) -> Transaction:
    return tx.model_copy(
        update={
            "category": result.category,
            "category_confidence": result.confidence,
            "category_method": result.method,
            "category_pattern_id": result.pattern_id,
        }
    )


def categorize_transaction(
    tx: Transaction,
    user_patterns: UserPatterns | None = None,
    *,
    ai_call: AiCall | None = None,
    categories: Mapping[str, CategoryInfo] = TRANSACTION_CATEGORIES,
) -> CategorizationResult:
    """Categorize one transaction.

    Raises :class:`QuotaExceededError` when ``ai_call`` fails for quota
    reasons; every other AI failure yields ``other/low/fallback``.
    """

    pattern = find_user_category_pattern(user_patterns, tx.description)
    if pattern is not None:
        return CategorizationResult(
            pattern.category, CategoryConfidence.USER, CategoryMethod.USER_PATTERN, pattern.id
        )

    static = categorize_by_patterns(tx.description)
    if static is not None:
        return CategorizationResult(static, CategoryConfidence.HIGH, CategoryMethod.PATTERN)

    if ai_call is None:
        return _FALLBACK

    prompt = prompting.build_category_prompt(tx, categories)
    try:
        reply = ai_call(prompt)
    except Exception as exc:  # noqa: BLE001 - classified below, degrade unless quota
        if is_quota_error(exc):
            raise QuotaExceededError(f"AI quota exceeded: {exc}") from exc
        _logger.warning(
            "categorize:ai_error %s",
            format_fields(error=type(exc).__name__, description=(tx.description or "")[:40]),
        )
        return _FALLBACK
    category = prompting.parse_category_token(reply, categories)
    return CategorizationResult(category, CategoryConfidence.MEDIUM, CategoryMethod.AI)


def categorize_all(
    transactions: Sequence[Transaction],
    user_patterns: UserPatterns | None = None,
    *,
    ai_call: AiCall | None = None,
    rate_limit_ms: int = _DEFAULT_RATE_LIMIT_MS,
    sleep: Callable[[float], None] = time.sleep,
    categories: Mapping[str, CategoryInfo] = TRANSACTION_CATEGORIES,
) -> BatchCategorization:
    """Categorize every transaction, in order, exactly once.

    Pauses ``rate_limit_ms`` after each AI-classified item. On a quota error
    the loop stops: the failing item and all later ones are returned
    unclassified with ``quota_blocked=True`` and the error is attached to the
    result instead of being raised.
    """

    if rate_limit_ms < 0:
        raise ValueError("rate_limit_ms must be >= 0")

    items: list[CategorizedTransaction] = []
    ai_calls = 0
    quota_error: QuotaExceededError | None = None

    for idx, tx in enumerate(transactions):
        try:
            result = categorize_transaction(tx, user_patterns, ai_call=ai_call, categories=categories)
        except QuotaExceededError as exc:
            ai_calls += 1
            exc.index = idx
            quota_error = exc
            _logger.warning(
                "categorize_all:quota_stop %s",
                format_fields(index=idx, remaining=len(transactions) - idx),
            )
            items.extend(
                CategorizedTransaction(rest, None, quota_blocked=True) for rest in transactions[idx:]
            )
            break

        items.append(CategorizedTransaction(_apply(tx, result), result))
        if result.method is CategoryMethod.AI:
            ai_calls += 1
            if rate_limit_ms:
                sleep(rate_limit_ms / 1000.0)

    batch = BatchCategorization(items=tuple(items), quota_error=quota_error, ai_calls=ai_calls)
    counts = batch.counts()
    _logger.info(
        "categorize_all:done %s",
        format_fields(
            total=len(items),
            user_pattern=counts.get(CategoryMethod.USER_PATTERN.value, 0),
            pattern=counts.get(CategoryMethod.PATTERN.value, 0),
            ai=counts.get(CategoryMethod.AI.value, 0),
            fallback=counts.get(CategoryMethod.FALLBACK.value, 0),
            unclassified=counts.get("unclassified", 0),
        ),
    )
    return batch


__all__ = [
    "BatchCategorization",
    "CategorizationResult",
    "CategorizedTransaction",
    "QuotaExceededError",
    "categorize_all",
    "categorize_transaction",
    "is_quota_error",
]
