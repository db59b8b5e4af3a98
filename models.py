from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


CATEGORIES = (
    "fuel",
    "food",
    "medical",
    "shopping",
    "entertainment",
    "bills",
    "salary",
    "other",
)


def utcnow() -> datetime:
    """Current instant as a naive UTC datetime, the storage representation."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class Division(str, Enum):
    office = "office"
    personal = "personal"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(100))
    division: Mapped[Division] = mapped_column(
        SAEnum(Division), nullable=False, default=Division.personal
    )
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    is_transfer: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    transfer_to: Mapped[Optional[str]] = mapped_column(String(200))

    __table_args__ = (
        Index("ix_transactions_date", "date"),
        Index("ix_transactions_type", "type"),
        Index("ix_transactions_category", "category"),
        Index("ix_transactions_division", "division"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "is_transfer OR category IS NOT NULL",
            name="ck_transactions_category_required",
        ),
    )
