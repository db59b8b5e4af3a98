from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from models import Division, Transaction, TransactionType
from periods import parse_timestamp, to_utc_naive

# Keeps amount_cents inside a signed 64-bit INTEGER column.
MAX_AMOUNT = Decimal("999999999999999.99")


def amount_to_cents(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


def cents_to_amount(cents: int) -> float:
    return cents / 100


def epoch_millis_to_datetime(value: float) -> datetime:
    """Numeric timestamps are milliseconds since the Unix epoch."""
    try:
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as exc:
        raise ValueError(f"Timestamp out of range: {value!r}") from exc


def validation_message(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        loc = ".".join(str(item) for item in error["loc"])
        parts.append(f"{loc}: {error['msg']}" if loc else error["msg"])
    return "; ".join(parts)


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class _TransactionFields(_WireModel):
    @field_validator(
        "description", "category", "transfer_to", mode="before", check_fields=False
    )
    @classmethod
    def _strip_text(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("amount", mode="before", check_fields=False)
    @classmethod
    def _float_amount_as_text(cls, value):
        # 19.99 must become Decimal("19.99"), not its binary expansion.
        return Decimal(str(value)) if isinstance(value, float) else value

    @field_validator("description", check_fields=False)
    @classmethod
    def _description_required(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            raise ValueError("description is required")
        return value

    @field_validator("category", "transfer_to", check_fields=False)
    @classmethod
    def _empty_to_none(cls, value: Optional[str]) -> Optional[str]:
        return value or None

    @field_validator("date", mode="before", check_fields=False)
    @classmethod
    def _parse_date(cls, value):
        if isinstance(value, str):
            return parse_timestamp(value)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return epoch_millis_to_datetime(value)
        return value

    @field_validator("date", check_fields=False)
    @classmethod
    def _date_to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_utc_naive(value) if value is not None else None


class TransactionIn(_TransactionFields):
    type: TransactionType
    amount: Decimal = Field(..., ge=0, le=MAX_AMOUNT, decimal_places=2)
    description: str
    category: Optional[str] = Field(default=None, max_length=100)
    division: Division = Division.personal
    date: Optional[datetime] = None
    is_transfer: bool = False
    transfer_to: Optional[str] = Field(default=None, max_length=200)

    @model_validator(mode="after")
    def _category_required_unless_transfer(self) -> "TransactionIn":
        if not self.is_transfer and not self.category:
            raise ValueError("category is required unless isTransfer is true")
        return self

    @property
    def amount_cents(self) -> int:
        return amount_to_cents(self.amount)

    @classmethod
    def from_model(cls, txn: Transaction) -> "TransactionIn":
        return cls(
            type=txn.type,
            amount=Decimal(txn.amount_cents) / 100,
            description=txn.description,
            category=txn.category,
            division=txn.division,
            date=txn.date,
            is_transfer=txn.is_transfer,
            transfer_to=txn.transfer_to,
        )


class TransactionPatch(_TransactionFields):
    """Partial update body; only fields present in the request are merged."""

    type: Optional[TransactionType] = None
    amount: Optional[Decimal] = None
    description: Optional[str] = None
    category: Optional[str] = None
    division: Optional[Division] = None
    date: Optional[datetime] = None
    is_transfer: Optional[bool] = None
    transfer_to: Optional[str] = None


class TransactionOut(_WireModel):
    id: int
    type: TransactionType
    amount: float
    description: str
    category: Optional[str]
    division: Division
    date: datetime
    is_transfer: bool
    transfer_to: Optional[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, txn: Transaction) -> "TransactionOut":
        return cls(
            id=txn.id,
            type=txn.type,
            amount=cents_to_amount(txn.amount_cents),
            description=txn.description,
            category=txn.category,
            division=txn.division,
            date=txn.date.replace(tzinfo=timezone.utc),
            is_transfer=txn.is_transfer,
            transfer_to=txn.transfer_to,
            created_at=txn.created_at.replace(tzinfo=timezone.utc),
            updated_at=txn.updated_at.replace(tzinfo=timezone.utc),
        )


class SummaryOut(BaseModel):
    income: float
    expense: float
    balance: float
