"""Static spending taxonomy and merchant rules.

Exports
-------
- ``TRANSACTION_CATEGORIES``: ordered ``key -> CategoryInfo`` mapping. Order
  matters: keyword matching walks categories in this order.
- ``MERCHANT_PATTERNS``: ordered ``merchant fragment -> category key`` table,
  checked before keywords.
- ``categorize_by_patterns(...)``: first static hit for a description.
- ``get_category_stats(...)``: per-category counts, amounts and percentages.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache

from .models import Transaction

OTHER_CATEGORY: str = "other"

# Fragments this short match only as whole words ("BP" must not hit "BBPP").
_WORD_BOUNDARY_MAX_LEN: int = 3


@dataclass(frozen=True, slots=True)
class CategoryInfo:
    key: str
    name: str
    icon: str
    color: str
    keywords: tuple[str, ...] = ()


def _cat(key: str, name: str, icon: str, color: str, keywords: Iterable[str]) -> tuple[str, CategoryInfo]:
    return key, CategoryInfo(key=key, name=name, icon=icon, color=color, keywords=tuple(keywords))


TRANSACTION_CATEGORIES: Mapping[str, CategoryInfo] = dict(
    [
        _cat(
            "food",
            "Food",
            "🍔",
            "#EF4444",
            [
                "restaurante", "comida", "pizza", "mcdonald", "burger", "kfc", "subway",
                "domino", "starbucks", "cafe", "bar", "cerveza", "supermercado", "mercado",
                "grocery", "walmart", "soriana", "oxxo", "seven", "7-eleven",
            ],
        ),
        _cat(
            "transport",
            "Transport",
            "🚗",
            "#3B82F6",
            [
                "uber", "taxi", "gasolina", "pemex", "shell", "bp", "mobil", "gas",
                "combustible", "autobus", "metro", "tren", "parking", "estacionamiento",
                "autopista", "peaje", "toll",
            ],
        ),
        _cat(
            "shopping",
            "Shopping",
            "🛍️",
            "#8B5CF6",
            [
                "amazon", "mercadolibre", "liverpool", "palacio", "sears", "coppel", "elektra",
                "best buy", "office depot", "costco", "sams", "tienda", "plaza", "mall",
                "centro comercial",
            ],
        ),
        _cat(
            "entertainment",
            "Entertainment",
            "🎬",
            "#F59E0B",
            [
                "netflix", "spotify", "disney", "hbo", "prime video", "youtube", "cinema",
                "cine", "teatro", "concierto", "bar", "club", "discoteca", "juego", "game",
                "xbox", "playstation", "steam",
            ],
        ),
        _cat(
            "health",
            "Health",
            "⚕️",
            "#10B981",
            [
                "farmacia", "doctor", "medico", "hospital", "clinica", "laboratorio", "dental",
                "dentista", "optica", "guadalajara", "benavides", "similares", "del ahorro",
                "pharmacy",
            ],
        ),
        _cat(
            "services",
            "Services",
            "🔧",
            "#6B7280",
            [
                "banco", "comision", "fee", "transferencia", "cajero", "atm", "mantenimiento",
                "reparacion", "servicio", "taller", "mecanico", "plomero", "electricista",
                "limpieza",
            ],
        ),
        _cat(
            "bills",
            "Bills & utilities",
            "📄",
            "#DC2626",
            [
                "cfe", "luz", "agua", "gas", "telefono", "internet", "telmex", "telcel",
                "movistar", "at&t", "totalplay", "megacable", "dish", "sky", "netflix",
                "spotify",
            ],
        ),
        _cat(
            "education",
            "Education",
            "📚",
            "#7C3AED",
            [
                "escuela", "universidad", "colegio", "curso", "libro", "libreria",
                "material escolar", "educacion", "tuition", "udemy", "coursera", "platzi",
            ],
        ),
        _cat(
            "travel",
            "Travel",
            "✈️",
            "#0EA5E9",
            [
                "hotel", "airbnb", "booking", "expedia", "volaris", "aeromexico", "interjet",
                "viva aerobus", "despegar", "vuelo", "flight", "avion", "renta", "rental",
                "hertz", "avis",
            ],
        ),
        _cat(
            "investment",
            "Investments",
            "📈",
            "#059669",
            [
                "inversion", "broker", "gbm", "kuspit", "biva", "bolsa", "acciones", "cetes",
                "bonds", "etf", "crypto", "bitcoin", "binance", "bitso",
            ],
        ),
        _cat(OTHER_CATEGORY, "Other", "❓", "#9CA3AF", []),
    ]
)

MERCHANT_PATTERNS: Mapping[str, str] = {
    # food
    "OXXO": "food",
    "SEVEN ELEVEN": "food",
    "WALMART": "food",
    "SORIANA": "food",
    "CHEDRAUI": "food",
    "AURRERA": "food",
    "MCDONALD": "food",
    "BURGER KING": "food",
    "KFC": "food",
    "SUBWAY": "food",
    "DOMINOS": "food",
    "PIZZA HUT": "food",
    "STARBUCKS": "food",
    # transport
    "PEMEX": "transport",
    "SHELL": "transport",
    "BP": "transport",
    "MOBIL": "transport",
    "UBER": "transport",
    "DIDI": "transport",
    # shopping
    "AMAZON": "shopping",
    "MERCADOLIBRE": "shopping",
    "LIVERPOOL": "shopping",
    "PALACIO DE HIERRO": "shopping",
    "SEARS": "shopping",
    "COPPEL": "shopping",
    "ELEKTRA": "shopping",
    "BEST BUY": "shopping",
    "COSTCO": "shopping",
    "SAMS CLUB": "shopping",
    # entertainment
    "NETFLIX": "entertainment",
    "SPOTIFY": "entertainment",
    "DISNEY": "entertainment",
    "HBO": "entertainment",
    "AMAZON PRIME": "entertainment",
    "YOUTUBE": "entertainment",
    "CINEPOLIS": "entertainment",
    "CINEMEX": "entertainment",
    # health
    "FARMACIA GUADALAJARA": "health",
    "FARMACIAS BENAVIDES": "health",
    "FARMACIAS SIMILARES": "health",
    "FARMACIA DEL AHORRO": "health",
    "HOSPITAL": "health",
    "CLINICA": "health",
    # bills
    "CFE": "bills",
    "TELMEX": "bills",
    "TELCEL": "bills",
    "MOVISTAR": "bills",
    "AT&T": "bills",
    "TOTALPLAY": "bills",
    "MEGACABLE": "bills",
    "DISH": "bills",
    "SKY": "bills",
}


def is_known_category(key: str | None) -> bool:
    return key is not None and key in TRANSACTION_CATEGORIES


@lru_cache(maxsize=512)
def _word_re(fragment: str) -> re.Pattern[str]:
    return re.compile(rf"(?<![A-Z0-9]){re.escape(fragment)}(?![A-Z0-9])")


def _matches(description: str, fragment: str) -> bool:
    frag = fragment.upper()
    if len(frag) <= _WORD_BOUNDARY_MAX_LEN:
        return _word_re(frag).search(description) is not None
    return frag in description


def categorize_by_patterns(description: str | None) -> str | None:
    """Return the first static category for ``description`` or ``None``.

    Merchant fragments are tried in table order, then category keywords in
    category order.
    """

    if not description:
        return None
    clean = description.upper().strip()
    for merchant, category in MERCHANT_PATTERNS.items():
        if _matches(clean, merchant):
            return category
    for key, info in TRANSACTION_CATEGORIES.items():
        for keyword in info.keywords:
            if _matches(clean, keyword):
                return key
    return None


# ---- Aggregate statistics ----------------------------------------------------


@dataclass(slots=True)
class CategoryTotals:
    count: int = 0
    amount: Decimal = Decimal(0)
    percentage: float = 0.0


@dataclass(frozen=True, slots=True)
class CategoryStats:
    categories: Mapping[str, CategoryTotals]
    total_amount: Decimal
    total_transactions: int
    uncounted: int = 0
    extra: Mapping[str, int] = field(default_factory=dict)


def get_category_stats(transactions: Iterable[Transaction]) -> CategoryStats:
    """Tally absolute amounts per category.

    Uncategorized rows count as ``other``. Rows whose category is not in the
    taxonomy are reported in ``extra`` and left out of the totals.
    """

    totals = {key: CategoryTotals() for key in TRANSACTION_CATEGORIES}
    extra: dict[str, int] = {}
    total_amount = Decimal(0)
    n = 0
    for tx in transactions:
        n += 1
        key = tx.category or OTHER_CATEGORY
        bucket = totals.get(key)
        if bucket is None:
            extra[key] = extra.get(key, 0) + 1
            continue
        amount = abs(tx.amount) if tx.amount is not None else Decimal(0)
        bucket.count += 1
        bucket.amount += amount
        total_amount += amount

    for bucket in totals.values():
        bucket.percentage = float(bucket.amount / total_amount * 100) if total_amount > 0 else 0.0

    return CategoryStats(
        categories=totals,
        total_amount=total_amount,
        total_transactions=n,
        uncounted=sum(extra.values()),
        extra=extra,
    )


__all__ = [
    "MERCHANT_PATTERNS",
    "OTHER_CATEGORY",
    "TRANSACTION_CATEGORIES",
    "CategoryInfo",
    "CategoryStats",
    "CategoryTotals",
    "categorize_by_patterns",
    "get_category_stats",
    "is_known_category",
]
