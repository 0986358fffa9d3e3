"""Card identity matching and duplicate detection.

Public surface:
- ``normalize_text`` / ``normalize_card_data``: canonical bank, last-four and
  holder values from a stored card, a parsed statement or a plain mapping.
- ``calculate_match_score`` / ``bucket_for`` / ``find_matches``: weighted
  similarity (last four 30, bank 35, holder 35) bucketed into exact (>=90),
  strong (>=70) and possible (>=40).
- ``is_safe_to_auto_create``: an independent, stricter gate for creating a
  card without asking anyone.
- ``generate_card_suggestions``: the options shown when a human decides.
- ``find_existing_duplicates``: groups of stored cards that look like the
  same card.

Credit limits are never compared; they change between statements.
"""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from .logging_setup import format_fields, get_logger
from .models import (
    CardMatch,
    CardRecord,
    MatchAnalysis,
    MatchBucket,
    MatchScore,
    ParsedStatement,
    clean_text,
    coerce_decimal,
)

_logger = get_logger("statement_engine.card_matcher")

# ---- Scoring constants -------------------------------------------------------

_LAST_FOUR_POINTS: int = 30
_BANK_POINTS: int = 35
_BANK_NEAR_POINTS: int = 25
_HOLDER_POINTS: int = 35
_HOLDER_NEAR_POINTS: int = 20
_BANK_HIGH_SIM: float = 0.9
_BANK_MID_SIM: float = 0.7
_HOLDER_HIGH_SIM: float = 0.8
_HOLDER_MID_SIM: float = 0.5
_OVERRIDE_FLOOR: int = 75

_EXACT_THRESHOLD: int = 90
_STRONG_THRESHOLD: int = 70
_POSSIBLE_THRESHOLD: int = 40
_MAX_POSSIBLE_SUGGESTIONS: int = 3

# Compared after normalize_text.
_PLACEHOLDERS: frozenset[str] = frozenset(
    {
        "banco desconocido",
        "unknown bank",
        "unknown",
        "desconocido",
        "n a",
        "na",
        "none",
        "null",
        "xxxx",
        "titular principal",
        "titular",
        "main holder",
        "primary holder",
        "card holder",
        "cardholder",
        "tarjetahabiente",
        "nombre del titular",
    }
)

_KNOWN_BANKS: tuple[str, ...] = (
    "american express",
    "bank of america",
    "capital one",
    "wells fargo",
    "banco azteca",
    "hey banco",
    "citibanamex",
    "banamex",
    "bbva",
    "santander",
    "banorte",
    "hsbc",
    "scotiabank",
    "inbursa",
    "banregio",
    "invex",
    "liverpool",
    "rappi",
    "amex",
    "chase",
    "citi",
    "discover",
    "nu",
)
_NETWORK_WORDS: frozenset[str] = frozenset(
    {
        "visa",
        "mastercard",
        "master",
        "amex",
        "oro",
        "gold",
        "platinum",
        "platino",
        "clasica",
        "classic",
        "black",
        "infinite",
        "signature",
        "credito",
        "credit",
        "debito",
        "debit",
        "tarjeta",
        "card",
        "banco",
        "bank",
    }
)

_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")
_WS_RE = re.compile(r"\s+")
_FOUR_DIGITS_RE = re.compile(r"\d{4}")
_LAST_FOUR_RE = re.compile(r"^\d{4}$")


# ---- Normalization -----------------------------------------------------------


def normalize_text(value: Any) -> str:
    """Lowercase, strip accents and punctuation, collapse whitespace."""

    text = clean_text(value)
    if text is None:
        return ""
    decomposed = unicodedata.normalize("NFKD", text)
    no_marks = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    lowered = _NON_ALNUM_RE.sub(" ", no_marks.lower())
    return _WS_RE.sub(" ", lowered).strip()


def _last_four(value: Any) -> str:
    digits = "".join(ch for ch in (clean_text(value) or "") if ch.isdigit())
    return digits[-4:] if len(digits) >= 4 else ""


def _bank_in(text: str) -> str:
    words = f" {text} "
    for bank in _KNOWN_BANKS:
        if f" {bank} " in words:
            return bank
    return ""


def _looks_like_holder(text: str) -> bool:
    words = text.split()
    if len(words) < 2 or any(ch.isdigit() for ch in text):
        return False
    if _bank_in(text):
        return False
    return not any(w in _NETWORK_WORDS for w in words)


@dataclass(frozen=True, slots=True)
class NormalizedCard:
    bank: str
    last_four: str
    holder_name: str


def _first_present(source: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = source.get(key)
        if clean_text(value) is not None:
            return value
    return None


def _fields_of(source: Any) -> tuple[Any, Any, Any, Any]:
    """Return raw ``(bank, number, holder, name)`` from any supported source."""

    if isinstance(source, CardRecord):
        return source.bank, source.card_number, source.holder_name, source.name
    if isinstance(source, ParsedStatement):
        return source.bank_name, source.last_four_digits, source.card_holder_name, None
    if isinstance(source, Mapping):
        return (
            _first_present(source, "bank", "bankName", "bank_name"),
            _first_present(
                source,
                "lastFourDigits",
                "last_four_digits",
                "cardNumber",
                "card_number",
                "cardNumberOrMasked",
            ),
            _first_present(
                source, "holderName", "holder_name", "cardHolderName", "card_holder_name"
            ),
            _first_present(source, "name"),
        )
    return None, None, None, None


def normalize_card_data(source: Any) -> NormalizedCard:
    """Canonical bank, last four and holder for a card-like value.

    Structured fields win; when one is missing it is recovered from the free
    text ``name`` (a known bank name, the last 4-digit run, or a multi-word
    name without bank or network words treated as the holder).
    """

    bank_raw, number_raw, holder_raw, name_raw = _fields_of(source)
    bank = normalize_text(bank_raw)
    last_four = _last_four(number_raw)
    holder = normalize_text(holder_raw)

    name = normalize_text(name_raw)
    if name:
        if not bank:
            bank = _bank_in(name)
        if not last_four:
            runs = _FOUR_DIGITS_RE.findall(name)
            if runs:
                last_four = runs[-1]
        if not holder and _looks_like_holder(name):
            holder = name
    return NormalizedCard(bank=bank, last_four=last_four, holder_name=holder)


def jaccard_similarity(a: str, b: str) -> float:
    """Word-set Jaccard similarity of two normalized strings (0.0 when either is empty)."""

    sa, sb = set(a.split()), set(b.split())
    if not sa or not sb:
        return 0.0
    return len(sa & sb) / len(sa | sb)


# ---- Scoring -----------------------------------------------------------------


def calculate_match_score(card: Any, extracted: Any) -> MatchScore:
    """Score how likely ``card`` and ``extracted`` describe the same card (0-100)."""

    a = normalize_card_data(card)
    b = normalize_card_data(extracted)
    details: dict[str, int] = {"last_four": 0, "bank": 0, "holder_name": 0, "override": 0}
    reasons: list[str] = []

    if a.last_four and b.last_four and a.last_four == b.last_four:
        details["last_four"] = _LAST_FOUR_POINTS
        reasons.append(f"Last four digits match ({a.last_four})")

    bank_exact = bool(a.bank) and a.bank == b.bank
    if bank_exact:
        details["bank"] = _BANK_POINTS
        reasons.append(f"Same bank ({a.bank})")
    elif a.bank and b.bank:
        sim = jaccard_similarity(a.bank, b.bank)
        if sim >= _BANK_HIGH_SIM:
            details["bank"] = _BANK_POINTS
            reasons.append(f"Bank names nearly identical ({sim:.0%})")
        elif sim >= _BANK_MID_SIM:
            details["bank"] = _BANK_NEAR_POINTS
            reasons.append(f"Bank names similar ({sim:.0%})")

    holder_exact = bool(a.holder_name) and a.holder_name == b.holder_name
    if holder_exact:
        details["holder_name"] = _HOLDER_POINTS
        reasons.append(f"Same holder ({a.holder_name})")
    elif a.holder_name and b.holder_name:
        sim = jaccard_similarity(a.holder_name, b.holder_name)
        if sim >= _HOLDER_HIGH_SIM:
            details["holder_name"] = _HOLDER_POINTS
            reasons.append(f"Holder names nearly identical ({sim:.0%})")
        elif sim >= _HOLDER_MID_SIM:
            details["holder_name"] = _HOLDER_NEAR_POINTS
            reasons.append(f"Holder names similar ({sim:.0%})")

    total = details["last_four"] + details["bank"] + details["holder_name"]
    if (
        bank_exact
        and holder_exact
        and a.last_four
        and b.last_four
        and a.last_four != b.last_four
        and total < _OVERRIDE_FLOOR
    ):
        details["override"] = _OVERRIDE_FLOOR - total
        total = _OVERRIDE_FLOOR
        reasons.append(
            f"Same bank and holder but different last four digits ({a.last_four} vs"
            f" {b.last_four}); possible duplicate or reissued card"
        )

    return MatchScore(total=min(total, 100), reasons=tuple(reasons), details=details)


def bucket_for(total: int) -> MatchBucket:
    if total >= _EXACT_THRESHOLD:
        return MatchBucket.EXACT
    if total >= _STRONG_THRESHOLD:
        return MatchBucket.STRONG
    if total >= _POSSIBLE_THRESHOLD:
        return MatchBucket.POSSIBLE
    return MatchBucket.NONE


def find_matches(existing_cards: Sequence[CardRecord], extracted: Any) -> MatchAnalysis:
    """Score every existing card and bucket the candidates, best first.

    ``can_create_safely`` is false when any exact, strong or possible match
    exists.
    """

    buckets: dict[MatchBucket, list[CardMatch]] = {
        MatchBucket.EXACT: [],
        MatchBucket.STRONG: [],
        MatchBucket.POSSIBLE: [],
    }
    for card in existing_cards:
        score = calculate_match_score(card, extracted)
        bucket = bucket_for(score.total)
        if bucket is MatchBucket.NONE:
            continue
        buckets[bucket].append(CardMatch(card=card, score=score, bucket=bucket))

    for matches in buckets.values():
        matches.sort(key=lambda m: m.score.total, reverse=True)

    analysis = MatchAnalysis(
        exact_matches=tuple(buckets[MatchBucket.EXACT]),
        strong_matches=tuple(buckets[MatchBucket.STRONG]),
        possible_matches=tuple(buckets[MatchBucket.POSSIBLE]),
        can_create_safely=not any(buckets.values()),
    )
    _logger.info(
        "match:analysis %s",
        format_fields(
            cards=len(existing_cards),
            exact=len(analysis.exact_matches),
            strong=len(analysis.strong_matches),
            possible=len(analysis.possible_matches),
        ),
    )
    return analysis


# ---- Auto-create gate --------------------------------------------------------


def _is_placeholder(normalized: str) -> bool:
    return not normalized or normalized in _PLACEHOLDERS


def _raw_last_four(extracted: Any) -> str:
    """A stated last-four field verbatim, else the digits recovered from the card number."""

    if isinstance(extracted, ParsedStatement):
        raw = extracted.last_four_digits
    elif isinstance(extracted, Mapping):
        raw = _first_present(extracted, "lastFourDigits", "last_four_digits")
    else:
        raw = None
    return clean_text(raw) or normalize_card_data(extracted).last_four


def _extracted_balance(extracted: Any) -> Decimal | None:
    if isinstance(extracted, ParsedStatement):
        return extracted.total_balance
    if isinstance(extracted, Mapping):
        return coerce_decimal(
            _first_present(extracted, "totalBalance", "total_balance", "currentBalance", "balance")
        )
    return None


def has_sufficient_data_for_card_creation(extracted: Any) -> bool:
    """True when a real bank name and a 4-digit last four were extracted."""

    norm = normalize_card_data(extracted)
    return not _is_placeholder(norm.bank) and bool(_LAST_FOUR_RE.match(_raw_last_four(extracted)))


def is_safe_to_auto_create(
    analysis: MatchAnalysis, extracted: Any, existing_cards: Sequence[CardRecord]
) -> bool:
    """Whether a new card may be created without human confirmation.

    Every gate must pass: no exact, strong or possible match; bank, last four,
    holder and balance present and not placeholders; last four exactly four
    digits; and no stored card already at the same bank.
    """

    if analysis.exact_matches or analysis.strong_matches or not analysis.can_create_safely:
        return False
    norm = normalize_card_data(extracted)
    if not has_sufficient_data_for_card_creation(extracted):
        return False
    if _is_placeholder(norm.holder_name):
        return False
    if _extracted_balance(extracted) is None:
        return False
    for card in existing_cards:
        if normalize_card_data(card).bank == norm.bank:
            _logger.info("match:auto_create_blocked %s", format_fields(reason="same_bank", bank=norm.bank))
            return False
    return True


# ---- Suggestions for the human-in-the-loop path -------------------------------


@dataclass(frozen=True, slots=True)
class SuggestionOption:
    id: str
    label: str
    recommended: bool
    card: CardRecord | None = None
    score: int | None = None
    reasons: tuple[str, ...] = ()

    @property
    def creates_new(self) -> bool:
        return self.card is None


@dataclass(frozen=True, slots=True)
class CardSuggestions:
    action: str
    title: str
    message: str
    severity: str
    options: tuple[SuggestionOption, ...]

    @property
    def recommended(self) -> SuggestionOption | None:
        return next((o for o in self.options if o.recommended), None)


def _card_label(card: CardRecord) -> str:
    return card.name or card.bank or card.id or "card"


def _link_option(match: CardMatch, *, recommended: bool) -> SuggestionOption:
    return SuggestionOption(
        id=f"link:{match.card.id or _card_label(match.card)}",
        label=f'Link to "{_card_label(match.card)}" ({match.score.total}%)',
        recommended=recommended,
        card=match.card,
        score=match.score.total,
        reasons=match.score.reasons,
    )


def _create_option(label: str, *, recommended: bool) -> SuggestionOption:
    return SuggestionOption(id="create_new", label=label, recommended=recommended)


def generate_card_suggestions(
    analysis: MatchAnalysis, extracted: Any, existing_cards: Sequence[CardRecord]
) -> CardSuggestions:
    if analysis.exact_matches:
        best = analysis.exact_matches[0]
        return CardSuggestions(
            action="link_existing",
            title="Card found",
            message="An existing card matches this statement.",
            severity="success",
            options=(
                _link_option(best, recommended=True),
                _create_option("Create a new card anyway", recommended=False),
            ),
        )

    if analysis.strong_matches:
        return CardSuggestions(
            action="confirm_match",
            title="Possible duplicate card",
            message="Very similar cards already exist. Choose the right one or create a new card.",
            severity="warning",
            options=tuple(_link_option(m, recommended=False) for m in analysis.strong_matches)
            + (_create_option("Create a new card", recommended=False),),
        )

    if analysis.possible_matches:
        top = analysis.possible_matches[:_MAX_POSSIBLE_SUGGESTIONS]
        return CardSuggestions(
            action="review_possible",
            title="Some cards look similar",
            message="These cards share some details with the statement.",
            severity="info",
            options=tuple(_link_option(m, recommended=False) for m in top)
            + (_create_option("Create a new card", recommended=True),),
        )

    if is_safe_to_auto_create(analysis, extracted, existing_cards):
        return CardSuggestions(
            action="safe_create",
            title="Create new card",
            message="No matching card exists; a new card will be created.",
            severity="success",
            options=(_create_option("Create a new card", recommended=True),),
        )

    bank = normalize_card_data(extracted).bank
    ordered = sorted(
        existing_cards,
        key=lambda c: 0 if bank and normalize_card_data(c).bank == bank else 1,
    )
    options = [
        SuggestionOption(
            id=f"link:{card.id or _card_label(card)}",
            label=f'Link to "{_card_label(card)}"',
            recommended=False,
            card=card,
            reasons=(f"Bank: {card.bank or 'unknown'}", f"Number: {card.card_number or 'unknown'}"),
        )
        for card in ordered
    ]
    options.append(_create_option("Create a new card", recommended=False))
    return CardSuggestions(
        action="select_card",
        title="Select card",
        message="No matching card was found. Choose the card this statement belongs to or create a new one.",
        severity="info",
        options=tuple(options),
    )


# ---- Duplicates among stored cards -------------------------------------------


@dataclass(frozen=True, slots=True)
class DuplicateGroup:
    cards: tuple[CardRecord, ...]
    similarity: float
    primary: CardRecord
    duplicates: tuple[CardRecord, ...]


def _shares_two(a: NormalizedCard, b: NormalizedCard) -> bool:
    same_bank = bool(a.bank) and a.bank == b.bank
    same_holder = bool(a.holder_name) and a.holder_name == b.holder_name
    same_four = bool(a.last_four) and a.last_four == b.last_four
    return (same_bank and same_holder) or (same_bank and same_four) or (same_holder and same_four)


def _completeness(card: CardRecord) -> int:
    score = 0
    if card.name:
        score += 20
    if card.bank:
        score += 20
    if card.card_number:
        score += 20
    if card.limit is not None and card.limit > 0:
        score += 15
    if card.current_balance is not None:
        score += 15
    if card.due_date:
        score += 10
    return score


def _group_similarity(norms: Sequence[NormalizedCard]) -> float:
    total = 0.0
    pairs = 0
    for i in range(len(norms)):
        for j in range(i + 1, len(norms)):
            a, b = norms[i], norms[j]
            shared = sum((a.bank == b.bank, a.holder_name == b.holder_name, a.last_four == b.last_four))
            total += shared * 100 / 3
            pairs += 1
    return round(total / pairs, 2) if pairs else 100.0


def find_existing_duplicates(cards: Sequence[CardRecord]) -> list[DuplicateGroup]:
    """Group stored cards sharing two of bank, holder and last four.

    The most complete card of each group is its primary; ties keep the
    earlier card.
    """

    norms = [normalize_card_data(c) for c in cards]
    seen: set[int] = set()
    groups: list[DuplicateGroup] = []
    for i, card in enumerate(cards):
        if i in seen:
            continue
        seen.add(i)
        members = [i]
        for j in range(i + 1, len(cards)):
            if j not in seen and _shares_two(norms[i], norms[j]):
                members.append(j)
                seen.add(j)
        if len(members) < 2:
            continue
        group_cards = [cards[k] for k in members]
        primary = group_cards[0]
        for candidate in group_cards[1:]:
            if _completeness(candidate) > _completeness(primary):
                primary = candidate
        groups.append(
            DuplicateGroup(
                cards=tuple(group_cards),
                similarity=_group_similarity([norms[k] for k in members]),
                primary=primary,
                duplicates=tuple(c for c in group_cards if c is not primary),
            )
        )
    _logger.info("match:existing_duplicates %s", format_fields(cards=len(cards), groups=len(groups)))
    return groups


__all__ = [
    "CardSuggestions",
    "DuplicateGroup",
    "NormalizedCard",
    "SuggestionOption",
    "bucket_for",
    "calculate_match_score",
    "find_existing_duplicates",
    "find_matches",
    "generate_card_suggestions",
    "has_sufficient_data_for_card_creation",
    "is_safe_to_auto_create",
    "jaccard_similarity",
    "normalize_card_data",
    "normalize_text",
]
