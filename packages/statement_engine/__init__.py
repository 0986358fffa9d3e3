"""Public interface for the ``statement_engine`` package.

This module exposes the reconciliation entry points and the public models as
the stable import surface. There is no runtime logic here, only re-exports.
Storage helpers live in ``statement_engine.persistence`` and are imported
explicitly by hosts that need them.
"""

from .ai_client import AiCall, OpenAITextClient, PageExtractor
from .card_matcher import (
    CardSuggestions,
    find_existing_duplicates,
    find_matches,
    generate_card_suggestions,
    is_safe_to_auto_create,
)
from .categorize import (
    BatchCategorization,
    QuotaExceededError,
    categorize_all,
    categorize_transaction,
    is_quota_error,
)
from .models import (
    CardRecord,
    MatchAnalysis,
    ParsedStatement,
    ParseResult,
    Transaction,
    UserCategoryPattern,
    ValidationResult,
)
from .reconcile import (
    Decision,
    ReconciliationOutcome,
    reconcile_pages,
    reconcile_parsed,
    reconcile_statement,
)
from .response_parser import parse_ai_response, parse_statement_response, parse_transactions_response
from .settings import EngineSettings
from .validation import get_confidence_score, validate_statement

__all__ = [
    # Orchestration
    "Decision",
    "ReconciliationOutcome",
    "reconcile_pages",
    "reconcile_parsed",
    "reconcile_statement",
    "EngineSettings",
    # Components
    "parse_ai_response",
    "parse_statement_response",
    "parse_transactions_response",
    "validate_statement",
    "get_confidence_score",
    "categorize_all",
    "categorize_transaction",
    "is_quota_error",
    "QuotaExceededError",
    "find_matches",
    "find_existing_duplicates",
    "generate_card_suggestions",
    "is_safe_to_auto_create",
    # AI capability
    "AiCall",
    "PageExtractor",
    "OpenAITextClient",
    # Models / types
    "BatchCategorization",
    "CardRecord",
    "CardSuggestions",
    "MatchAnalysis",
    "ParseResult",
    "ParsedStatement",
    "Transaction",
    "UserCategoryPattern",
    "ValidationResult",
]
