import random
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from database import Base, Storage, StorageUnavailable
from models import Division, TransactionType
from periods import DateWindow, resolve_window
from schemas import MAX_AMOUNT, TransactionPatch
from services import (
    EDIT_WINDOW,
    LIST_LIMIT,
    EditWindowClosed,
    TransactionNotFound,
    TransactionService,
    TransactionValidationError,
    build_filters,
    can_edit,
    summarize,
    validate_transaction,
)

T0 = datetime(2026, 10, 18, 9, 0)
OCTOBER = DateWindow(datetime(2026, 10, 1), datetime(2026, 10, 31, 23, 59, 59, 999999))


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def make_storage() -> Storage:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    storage = Storage(engine)
    storage.ping()
    return storage


def lunch(**overrides):
    payload = {
        "type": "expense",
        "amount": 42.50,
        "description": "lunch",
        "category": "food",
        "division": "personal",
        "date": "2026-10-18T08:00:00",
    }
    payload.update(overrides)
    return validate_transaction(payload)


def test_build_filters_always_constrains_the_date_window() -> None:
    filters = build_filters(OCTOBER)

    assert filters.category is None
    assert filters.division is None
    assert len(filters.clauses()) == 2


def test_build_filters_treats_empty_values_as_match_any() -> None:
    filters = build_filters(OCTOBER, category="", division="")

    assert filters.category is None
    assert filters.division is None
    assert len(filters.clauses()) == 2


def test_build_filters_combines_category_and_division() -> None:
    filters = build_filters(OCTOBER, category="food", division="office")

    assert filters.category == "food"
    assert filters.division == Division.office
    assert len(filters.clauses()) == 4


def test_build_filters_with_open_window_only_constrains_given_side() -> None:
    assert len(build_filters(DateWindow(start=T0)).clauses()) == 1
    assert build_filters(DateWindow()).clauses() == []


def test_build_filters_rejects_unknown_division() -> None:
    with pytest.raises(ValueError, match="Invalid division"):
        build_filters(OCTOBER, division="household")


def test_summarize_empty_is_all_zeros() -> None:
    summary = summarize([])

    assert (summary.income_cents, summary.expense_cents, summary.balance_cents) == (0, 0, 0)


def test_summarize_balance_is_income_minus_expense_in_any_order() -> None:
    rows = [
        SimpleNamespace(type=TransactionType.income, amount_cents=250_000),
        SimpleNamespace(type=TransactionType.expense, amount_cents=4_250),
        SimpleNamespace(type=TransactionType.expense, amount_cents=10),
        SimpleNamespace(type=TransactionType.income, amount_cents=1),
        SimpleNamespace(type=TransactionType.expense, amount_cents=99_999),
    ]
    expected = summarize(rows)

    assert expected.income_cents == 250_001
    assert expected.expense_cents == 104_259
    assert expected.balance_cents == expected.income_cents - expected.expense_cents

    shuffled = rows[:]
    for seed in range(5):
        random.Random(seed).shuffle(shuffled)
        assert summarize(shuffled) == expected


def test_edit_window_boundaries() -> None:
    created = T0

    assert can_edit(created, created + timedelta(hours=11, minutes=59))
    assert can_edit(created, created + EDIT_WINDOW)
    assert not can_edit(created, created + EDIT_WINDOW + timedelta(microseconds=1))
    assert not can_edit(created, created + timedelta(hours=12, minutes=1))


def test_negative_amount_is_rejected_and_zero_accepted() -> None:
    with pytest.raises(TransactionValidationError, match="amount"):
        lunch(amount=-1)

    storage = make_storage()
    txn = TransactionService(storage, clock=Clock(T0)).create(lunch(amount=0))
    assert txn.amount_cents == 0


def test_float_amounts_convert_to_exact_cents() -> None:
    assert lunch(amount=19.99).amount_cents == 1_999
    assert lunch(amount=0.1).amount_cents == 10


def test_amount_with_sub_cent_precision_is_rejected() -> None:
    with pytest.raises(TransactionValidationError):
        lunch(amount="1.005")


def test_amount_is_bounded_to_storable_cents() -> None:
    storage = make_storage()
    txn = TransactionService(storage, clock=Clock(T0)).create(
        lunch(amount=str(MAX_AMOUNT))
    )
    assert txn.amount_cents == 99_999_999_999_999_999

    with pytest.raises(TransactionValidationError, match="amount"):
        lunch(amount=1e20)


def test_update_cannot_push_amount_past_the_bound() -> None:
    service = TransactionService(make_storage(), clock=Clock(T0))
    txn = service.create(lunch())

    with pytest.raises(TransactionValidationError, match="amount"):
        service.update(txn.id, TransactionPatch.model_validate({"amount": 1e20}))


def test_date_before_year_one_in_utc_is_rejected() -> None:
    with pytest.raises(TransactionValidationError, match="out of range"):
        lunch(date="0001-01-01T00:00:00+01:00")


def test_numeric_date_is_epoch_milliseconds() -> None:
    assert lunch(date=12345).date == datetime(1970, 1, 1, 0, 0, 12, 345000)
    assert lunch(date=1_760_774_400_000).date == datetime(2025, 10, 18, 8, 0)

    with pytest.raises(TransactionValidationError, match="out of range"):
        lunch(date=1e300)


def test_category_required_unless_transfer() -> None:
    storage = make_storage()
    service = TransactionService(storage, clock=Clock(T0))

    transfer = service.create(
        lunch(category=None, isTransfer=True, transferTo="  savings  ")
    )
    assert transfer.category is None
    assert transfer.transfer_to == "savings"

    with pytest.raises(TransactionValidationError, match="category is required"):
        lunch(category=None)
    with pytest.raises(TransactionValidationError, match="category is required"):
        lunch(category="   ")


def test_description_is_trimmed_and_required() -> None:
    assert lunch(description="  lunch  ").description == "lunch"

    with pytest.raises(TransactionValidationError, match="description"):
        lunch(description="   ")


def test_invalid_enum_values_are_rejected() -> None:
    with pytest.raises(TransactionValidationError):
        lunch(type="refund")
    with pytest.raises(TransactionValidationError):
        lunch(division="household")


def test_create_sets_defaults_and_timestamps() -> None:
    storage = make_storage()
    service = TransactionService(storage, clock=Clock(T0))

    txn = service.create(
        validate_transaction(
            {"type": "income", "amount": 1000, "description": "pay", "category": "salary"}
        )
    )

    assert txn.id is not None
    assert txn.division == Division.personal
    assert txn.date == T0
    assert txn.is_transfer is False
    assert txn.created_at == T0
    assert txn.updated_at == T0


def test_update_within_window_merges_fields() -> None:
    storage = make_storage()
    clock = Clock(T0)
    service = TransactionService(storage, clock=clock)
    txn = service.create(lunch())

    clock.now = T0 + timedelta(hours=2)
    updated = service.update(
        txn.id, TransactionPatch.model_validate({"amount": 50, "division": "office"})
    )

    assert updated.amount_cents == 5_000
    assert updated.division == Division.office
    assert updated.description == "lunch"
    assert updated.category == "food"
    assert updated.created_at == T0
    assert updated.updated_at == T0 + timedelta(hours=2)


def test_update_revalidates_merged_record() -> None:
    storage = make_storage()
    service = TransactionService(storage, clock=Clock(T0))
    txn = service.create(lunch(category=None, isTransfer=True))

    with pytest.raises(TransactionValidationError, match="category is required"):
        service.update(txn.id, TransactionPatch.model_validate({"isTransfer": False}))
    with pytest.raises(TransactionValidationError, match="amount"):
        service.update(txn.id, TransactionPatch.model_validate({"amount": -5}))

    assert service.get(txn.id).is_transfer is True


def test_update_ignores_attempts_to_change_created_at() -> None:
    storage = make_storage()
    service = TransactionService(storage, clock=Clock(T0))
    txn = service.create(lunch())

    updated = service.update(
        txn.id, TransactionPatch.model_validate({"createdAt": "2020-01-01T00:00:00"})
    )

    assert updated.created_at == T0


def test_update_after_thirteen_hours_is_forbidden_but_delete_succeeds() -> None:
    storage = make_storage()
    clock = Clock(T0)
    service = TransactionService(storage, clock=clock)
    txn = service.create(lunch())

    clock.now = T0 + timedelta(hours=13)
    with pytest.raises(EditWindowClosed):
        service.update(txn.id, TransactionPatch.model_validate({"description": "dinner"}))

    service.delete(txn.id)
    with pytest.raises(TransactionNotFound):
        service.get(txn.id)


def test_update_and_delete_unknown_id() -> None:
    service = TransactionService(make_storage(), clock=Clock(T0))

    with pytest.raises(TransactionNotFound):
        service.update(999, TransactionPatch())
    with pytest.raises(TransactionNotFound):
        service.delete(999)


def test_list_filters_and_sorts_newest_first() -> None:
    storage = make_storage()
    service = TransactionService(storage, clock=Clock(T0))
    oldest = service.create(lunch(date="2026-10-02T12:00:00"))
    newest = service.create(lunch(date="2026-10-17T12:00:00"))
    office = service.create(lunch(date="2026-10-10T12:00:00", division="office"))
    service.create(lunch(date="2026-09-30T12:00:00"))
    service.create(lunch(date="2026-10-05T12:00:00", category="fuel"))

    food = service.list(build_filters(OCTOBER, category="food"))
    assert [t.id for t in food] == [newest.id, office.id, oldest.id]

    office_only = service.list(build_filters(OCTOBER, division="office"))
    assert [t.id for t in office_only] == [office.id]


def test_list_is_capped() -> None:
    storage = make_storage()
    service = TransactionService(storage, clock=Clock(T0))
    for _ in range(3):
        service.create(lunch())

    assert len(service.list(build_filters(OCTOBER), limit=2)) == 2
    assert len(service.list(build_filters(OCTOBER), limit=LIST_LIMIT * 10)) == 3


def test_lunch_example_end_to_end() -> None:
    storage = make_storage()
    service = TransactionService(storage, clock=Clock(T0))
    created = service.create(lunch(date=None))

    window = resolve_window(None, now=datetime(2026, 10, 18, 12, 0), tz=timezone.utc)
    filters = build_filters(window)

    assert [t.id for t in service.list(filters)] == [created.id]
    summary = service.summary(filters)
    assert summary.expense_cents == 4_250
    assert summary.income_cents == 0
    assert summary.balance_cents == -4_250


def test_disconnected_storage_fails_fast() -> None:
    storage = make_storage()
    storage.mark_disconnected()
    service = TransactionService(storage, clock=Clock(T0))

    assert storage.status() == "disconnected"
    with pytest.raises(StorageUnavailable):
        service.list(build_filters(OCTOBER))
    with pytest.raises(StorageUnavailable):
        service.create(lunch())
