from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional, Union

from pydantic import ValidationError
from sqlalchemy import select

from database import Storage
from models import Division, Transaction, TransactionType, utcnow
from periods import DateWindow
from schemas import TransactionIn, TransactionPatch, validation_message

logger = logging.getLogger(__name__)

EDIT_WINDOW = timedelta(hours=12)
LIST_LIMIT = 1000


class TransactionValidationError(ValueError):
    pass


class TransactionNotFound(ValueError):
    pass


class EditWindowClosed(ValueError):
    pass


def validate_transaction(payload: Any) -> TransactionIn:
    try:
        return TransactionIn.model_validate(payload)
    except ValidationError as exc:
        raise TransactionValidationError(validation_message(exc)) from exc


@dataclass(frozen=True)
class TransactionFilters:
    window: DateWindow
    category: Optional[str] = None
    division: Optional[Division] = None

    def clauses(self) -> list:
        clauses = []
        if self.window.start is not None:
            clauses.append(Transaction.date >= self.window.start)
        if self.window.end is not None:
            clauses.append(Transaction.date <= self.window.end)
        if self.category is not None:
            clauses.append(Transaction.category == self.category)
        if self.division is not None:
            clauses.append(Transaction.division == self.division)
        return clauses


def build_filters(
    window: DateWindow,
    category: Optional[str] = None,
    division: Union[Division, str, None] = None,
) -> TransactionFilters:
    """Combine a date window with optional category and division equality.

    Missing or empty category/division values match everything.
    """
    division_value = None
    if division:
        try:
            division_value = Division(division)
        except ValueError as exc:
            raise ValueError(f"Invalid division: {division!r}") from exc
    return TransactionFilters(
        window=window, category=category or None, division=division_value
    )


@dataclass(frozen=True)
class Summary:
    income_cents: int = 0
    expense_cents: int = 0

    @property
    def balance_cents(self) -> int:
        return self.income_cents - self.expense_cents


def summarize(transactions: Iterable[Any]) -> Summary:
    """Reduce rows carrying ``type`` and ``amount_cents`` to income/expense totals."""
    income = 0
    expense = 0
    for txn in transactions:
        if txn.type == TransactionType.income:
            income += txn.amount_cents
        else:
            expense += txn.amount_cents
    return Summary(income_cents=income, expense_cents=expense)


def can_edit(created_at: datetime, now: datetime) -> bool:
    return now - created_at <= EDIT_WINDOW


class TransactionService:
    def __init__(
        self, storage: Storage, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.storage = storage
        self.clock = clock

    def list(
        self, filters: TransactionFilters, limit: int = LIST_LIMIT
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(*filters.clauses())
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(min(limit, LIST_LIMIT))
        )
        with self.storage.session_scope() as session:
            return list(session.scalars(stmt).all())

    def summary(self, filters: TransactionFilters) -> Summary:
        stmt = select(Transaction.type, Transaction.amount_cents).where(
            *filters.clauses()
        )
        with self.storage.session_scope() as session:
            rows = session.execute(stmt).all()
        return summarize(rows)

    def get(self, transaction_id: int) -> Transaction:
        with self.storage.session_scope() as session:
            txn = session.get(Transaction, transaction_id)
            if txn is None:
                raise TransactionNotFound("Transaction not found")
            return txn

    def create(self, data: TransactionIn) -> Transaction:
        now = self.clock()
        txn = Transaction(
            type=data.type,
            amount_cents=data.amount_cents,
            description=data.description,
            category=data.category,
            division=data.division,
            date=data.date or now,
            is_transfer=data.is_transfer,
            transfer_to=data.transfer_to,
            created_at=now,
            updated_at=now,
        )
        with self.storage.session_scope() as session:
            session.add(txn)
            session.flush()
        logger.info(
            f"transaction_created: id={txn.id} type={txn.type.value} "
            f"division={txn.division.value}"
        )
        return txn

    def update(self, transaction_id: int, patch: TransactionPatch) -> Transaction:
        with self.storage.session_scope() as session:
            txn = session.get(Transaction, transaction_id)
            if txn is None:
                raise TransactionNotFound("Transaction not found")
            now = self.clock()
            if not can_edit(txn.created_at, now):
                raise EditWindowClosed("Cannot edit transaction after 12 hours")

            merged = TransactionIn.from_model(txn).model_dump()
            merged.update(patch.model_dump(exclude_unset=True))
            data = validate_transaction(merged)
            if data.date is None:
                raise TransactionValidationError("date: date is required")

            txn.type = data.type
            txn.amount_cents = data.amount_cents
            txn.description = data.description
            txn.category = data.category
            txn.division = data.division
            txn.date = data.date
            txn.is_transfer = data.is_transfer
            txn.transfer_to = data.transfer_to
            txn.updated_at = now
            session.flush()
        logger.info(f"transaction_updated: id={txn.id}")
        return txn

    def delete(self, transaction_id: int) -> None:
        # Deletes are not bound by the edit window.
        with self.storage.session_scope() as session:
            txn = session.get(Transaction, transaction_id)
            if txn is None:
                raise TransactionNotFound("Transaction not found")
            session.delete(txn)
        logger.info(f"transaction_deleted: id={transaction_id}")
