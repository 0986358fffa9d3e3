"""Shared SQLAlchemy models registry for the workspace database.

Currently includes the card, statement and learned-pattern models used by
``statement_engine.persistence``.
"""

from .statements import Base, FaCard, FaCategoryPattern, FaStatement

__all__ = [
    "Base",
    "FaCard",
    "FaCategoryPattern",
    "FaStatement",
]
