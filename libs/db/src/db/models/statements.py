from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


# ---------------------------
# Core: fa_cards
# ---------------------------


class FaCard(Base):
    __tablename__ = "fa_cards"

    # Opaque identity assigned by the persistence layer (uuid4 hex).
    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    bank: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Full or masked number; only trailing digits are ever compared.
    card_number: Mapped[str | None] = mapped_column(String, nullable=True)
    holder_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    credit_limit: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    current_balance: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    # Statement dates are stored as extracted; parsing happens in the engine.
    due_date: Mapped[str | None] = mapped_column(String, nullable=True)
    last_statement_date: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


# ---------------------------
# Core: fa_statements
# ---------------------------


class FaStatement(Base):
    __tablename__ = "fa_statements"
    __table_args__ = (
        CheckConstraint("confidence >= 0 AND confidence <= 100", name="ck_fa_statements_confidence"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    card_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("fa_cards.id", ondelete="CASCADE"), nullable=False, index=True
    )
    statement_date: Mapped[str | None] = mapped_column(String, nullable=True)
    due_date: Mapped[str | None] = mapped_column(String, nullable=True)
    total_balance: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    previous_balance: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    minimum_payment: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    credit_limit: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    bank_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    card_holder_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_four_digits: Mapped[str | None] = mapped_column(String(4), nullable=True)
    # Categorized transactions in their camelCase wire shape.
    transactions: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    # Findings and calculations, JSON-safe.
    validation: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    is_valid: Mapped[bool] = mapped_column(Boolean, nullable=False)
    confidence: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


# ---------------------------
# Learned: fa_category_patterns
# ---------------------------


class FaCategoryPattern(Base):
    __tablename__ = "fa_category_patterns"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    # Uppercased, trimmed description; the lookup key.
    normalized_description: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    original_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String, nullable=False)
    confidence: Mapped[str] = mapped_column(String, nullable=False, server_default="user")
    times_used: Mapped[int] = mapped_column(Integer, nullable=False, server_default="1")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
