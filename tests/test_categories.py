from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from models import Category, Transaction, TransactionType
from schemas import CategoryIn, CategoryUpdate, TransactionIn
from services import (
    CategoryService,
    DuplicateName,
    HasReferences,
    NotFound,
    TransactionService,
    TypeMismatch,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def add_expense(session, user_id: int, category_id: int) -> Transaction:
    return TransactionService(session, user_id).create(
        TransactionIn(
            amount=Decimal("12.50"),
            type=TransactionType.expense,
            description="Groceries",
            occurred_at=datetime(2025, 1, 5, 12, 0),
            category_id=category_id,
        )
    )


def test_create_category_applies_defaults() -> None:
    session = make_session()

    category = CategoryService(session, 1).create(
        CategoryIn(name="  Food ", type=TransactionType.expense)
    )

    assert category.id is not None
    assert category.user_id == 1
    assert category.name == "Food"
    assert category.color == "#3B82F6"
    assert category.icon == "💰"


def test_duplicate_name_rejected_for_same_user() -> None:
    session = make_session()
    categories = CategoryService(session, 1)
    categories.create(CategoryIn(name="Travel", type=TransactionType.expense))

    with pytest.raises(DuplicateName):
        categories.create(CategoryIn(name="Travel", type=TransactionType.expense))
    with pytest.raises(DuplicateName):
        categories.create(CategoryIn(name="Travel", type=TransactionType.income))

    assert [c.name for c in categories.list_all()] == ["Travel"]


def test_same_name_allowed_for_different_users() -> None:
    session = make_session()

    first = CategoryService(session, 1).create(
        CategoryIn(name="Travel", type=TransactionType.expense)
    )
    second = CategoryService(session, 2).create(
        CategoryIn(name="Travel", type=TransactionType.expense)
    )

    assert first.id != second.id


def test_unique_constraint_reports_duplicate_when_precheck_misses(monkeypatch) -> None:
    session = make_session()
    categories = CategoryService(session, 1)
    categories.create(CategoryIn(name="Travel", type=TransactionType.expense))

    # Simulates a concurrent writer that inserted between check and commit.
    monkeypatch.setattr(CategoryService, "_name_taken", lambda self, *a, **k: False)

    with pytest.raises(DuplicateName):
        categories.create(CategoryIn(name="Travel", type=TransactionType.expense))

    assert [c.name for c in categories.list_all()] == ["Travel"]


def test_rename_to_existing_name_rejected() -> None:
    session = make_session()
    categories = CategoryService(session, 1)
    categories.create(CategoryIn(name="Food", type=TransactionType.expense))
    rent = categories.create(CategoryIn(name="Rent", type=TransactionType.expense))

    with pytest.raises(DuplicateName):
        categories.update(rent.id, CategoryUpdate(name="Food"))

    assert categories.get(rent.id).name == "Rent"


def test_partial_update_keeps_untouched_fields() -> None:
    session = make_session()
    categories = CategoryService(session, 1)
    food = categories.create(
        CategoryIn(name="Food", type=TransactionType.expense, icon="🍔")
    )

    updated = categories.update(food.id, CategoryUpdate(color="#ff0000"))
    assert updated.color == "#ff0000"
    assert updated.name == "Food"
    assert updated.icon == "🍔"

    same_name = categories.update(food.id, CategoryUpdate(name="Food"))
    assert same_name.name == "Food"


def test_list_sorted_by_type_then_name() -> None:
    session = make_session()
    categories = CategoryService(session, 1)
    categories.create(CategoryIn(name="Salary", type=TransactionType.income))
    categories.create(CategoryIn(name="Rent", type=TransactionType.expense))
    categories.create(CategoryIn(name="Food", type=TransactionType.expense))
    CategoryService(session, 2).create(
        CategoryIn(name="Bonus", type=TransactionType.income)
    )

    assert [c.name for c in categories.list_all()] == ["Food", "Rent", "Salary"]


def test_other_users_category_is_not_found() -> None:
    session = make_session()
    food = CategoryService(session, 1).create(
        CategoryIn(name="Food", type=TransactionType.expense)
    )
    intruder = CategoryService(session, 2)

    with pytest.raises(NotFound):
        intruder.get(food.id)
    with pytest.raises(NotFound):
        intruder.update(food.id, CategoryUpdate(name="Mine"))
    with pytest.raises(NotFound):
        intruder.delete(food.id)


def test_delete_blocked_while_transactions_reference_category() -> None:
    session = make_session()
    categories = CategoryService(session, 1)
    food = categories.create(CategoryIn(name="Food", type=TransactionType.expense))
    txn = add_expense(session, 1, food.id)

    with pytest.raises(HasReferences):
        categories.delete(food.id)

    assert [c.name for c in categories.list_all()] == ["Food"]
    assert TransactionService(session, 1).get(txn.id).category_id == food.id


def test_delete_unreferenced_category() -> None:
    session = make_session()
    categories = CategoryService(session, 1)
    food = categories.create(CategoryIn(name="Food", type=TransactionType.expense))
    txn = add_expense(session, 1, food.id)
    TransactionService(session, 1).delete(txn.id)

    categories.delete(food.id)

    assert categories.list_all() == []
    with pytest.raises(NotFound):
        categories.get(food.id)


def test_foreign_key_blocks_delete_when_count_is_stale(monkeypatch, caplog) -> None:
    session = make_session()
    categories = CategoryService(session, 1)
    food = categories.create(CategoryIn(name="Food", type=TransactionType.expense))
    add_expense(session, 1, food.id)

    monkeypatch.setattr(
        TransactionService, "count_by_category", lambda self, category_id: 0
    )

    with pytest.raises(HasReferences):
        categories.delete(food.id)

    remaining = session.scalar(select(func.count(Category.id)))
    assert remaining == 1
    assert "reason=has_references" in caplog.text
    assert "source=constraint" in caplog.text


def test_type_change_rejected_when_transactions_exist() -> None:
    session = make_session()
    categories = CategoryService(session, 1)
    food = categories.create(CategoryIn(name="Food", type=TransactionType.expense))
    add_expense(session, 1, food.id)

    with pytest.raises(TypeMismatch):
        categories.update(food.id, CategoryUpdate(type=TransactionType.income))

    assert categories.get(food.id).type == TransactionType.expense


def test_type_change_allowed_for_unused_category() -> None:
    session = make_session()
    categories = CategoryService(session, 1)
    gifts = categories.create(CategoryIn(name="Gifts", type=TransactionType.expense))

    updated = categories.update(gifts.id, CategoryUpdate(type=TransactionType.income))

    assert updated.type == TransactionType.income
