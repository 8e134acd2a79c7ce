from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from models import Category, Transaction, TransactionType
from money import to_cents
from schemas import CategoryIn, CategoryUpdate, TransactionIn, TransactionUpdate

logger = logging.getLogger(__name__)


class LedgerError(ValueError):
    kind = "ledger_error"
    default_message = "Ledger operation failed"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFound(LedgerError):
    kind = "not_found"
    default_message = "Not found"


class DuplicateName(LedgerError):
    kind = "duplicate_name"
    default_message = "Category with this name already exists"


class TypeMismatch(LedgerError):
    kind = "type_mismatch"
    default_message = "Transaction type must match category type"


class HasReferences(LedgerError):
    kind = "has_references"
    default_message = "Cannot delete category with existing transactions"


def local_now() -> datetime:
    tz = ZoneInfo(get_settings().timezone)
    return datetime.now(tz).replace(tzinfo=None, microsecond=0)


def to_local_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    tz = ZoneInfo(get_settings().timezone)
    return value.astimezone(tz).replace(tzinfo=None)


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    page: int = 1
    page_size: int = 10


@dataclass
class TransactionPage:
    items: list[Transaction]
    total: int
    page: int
    page_size: int

    @property
    def page_count(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0


@dataclass(frozen=True)
class CategoryBreakdown:
    amount_cents: int
    type: TransactionType
    color: str


@dataclass
class Summary:
    total_income_cents: int = 0
    total_expenses_cents: int = 0
    category_breakdown: dict[str, CategoryBreakdown] = field(default_factory=dict)
    transaction_count: int = 0

    @property
    def balance_cents(self) -> int:
        return self.total_income_cents - self.total_expenses_cents


class ConsistencyEnforcer:
    """Cross-entity checks that every transaction write has to pass.

    The enforcer never writes. It resolves the category a transaction will point
    at (the candidate one, else the one already stored) and checks it belongs to
    the acting user and carries the same type as the transaction will.
    """

    INVARIANT_FIELDS = frozenset({"category_id", "type"})

    def __init__(self, session: Session) -> None:
        self.session = session

    @classmethod
    def touches_invariant(cls, fields: dict[str, Any]) -> bool:
        return bool(cls.INVARIANT_FIELDS.intersection(fields))

    def validate_transaction_write(
        self,
        user_id: int,
        fields: dict[str, Any],
        existing: Optional[Transaction] = None,
    ) -> Category:
        category_id = fields.get("category_id")
        if category_id is None and existing is not None:
            category_id = existing.category_id
        txn_type = fields.get("type")
        if txn_type is None and existing is not None:
            txn_type = existing.type

        category = self.session.get(Category, category_id) if category_id else None
        if not category or category.user_id != user_id:
            raise NotFound("Category not found")
        if txn_type is None or category.type != TransactionType(txn_type):
            logger.warning(
                f"transaction_rejected: user_id={user_id} reason=type_mismatch "
                f"category_id={category.id}"
            )
            raise TypeMismatch()
        return category


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type, Category.name)
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFound("Category not found")
        return category

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Category.id).where(
            Category.user_id == self.user_id, Category.name == name
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def _commit_unique(self, name: str) -> None:
        # The unique index settles races the pre-check cannot see.
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            logger.warning(
                f"category_rejected: user_id={self.user_id} reason=duplicate_name "
                f"name={name!r} source=constraint"
            )
            raise DuplicateName() from exc

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if self._name_taken(name):
            logger.warning(
                f"category_rejected: user_id={self.user_id} reason=duplicate_name "
                f"name={name!r}"
            )
            raise DuplicateName()
        category = Category(
            user_id=self.user_id,
            name=name,
            type=data.type,
            color=data.color,
            icon=data.icon,
        )
        self.session.add(category)
        self._commit_unique(name)
        self.session.refresh(category)
        logger.info(
            f"category_created: user_id={self.user_id} category_id={category.id} "
            f"type={category.type.value}"
        )
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self.get(category_id)
        fields = data.model_dump(exclude_unset=True, exclude_none=True)

        if "name" in fields:
            fields["name"] = fields["name"].strip()
            if self._name_taken(fields["name"], exclude_id=category.id):
                logger.warning(
                    f"category_rejected: user_id={self.user_id} reason=duplicate_name "
                    f"name={fields['name']!r}"
                )
                raise DuplicateName()

        if "type" in fields and fields["type"] != category.type:
            references = TransactionService(self.session, self.user_id).count_by_category(
                category.id
            )
            if references:
                logger.warning(
                    f"category_rejected: user_id={self.user_id} reason=type_mismatch "
                    f"category_id={category.id} references={references}"
                )
                raise TypeMismatch(
                    "Cannot change the type of a category with existing transactions"
                )

        for key, value in fields.items():
            setattr(category, key, value)
        self._commit_unique(category.name)
        self.session.refresh(category)
        logger.info(
            f"category_updated: user_id={self.user_id} category_id={category.id} "
            f"fields={sorted(fields)}"
        )
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        references = TransactionService(self.session, self.user_id).count_by_category(
            category.id
        )
        if references:
            logger.warning(
                f"category_rejected: user_id={self.user_id} reason=has_references "
                f"category_id={category.id} references={references}"
            )
            raise HasReferences()

        self.session.delete(category)
        try:
            self.session.commit()
        except IntegrityError as exc:
            # A transaction was attached between the count and the delete.
            self.session.rollback()
            logger.warning(
                f"category_rejected: user_id={self.user_id} reason=has_references "
                f"category_id={category_id} source=constraint"
            )
            raise HasReferences() from exc
        logger.info(f"category_deleted: user_id={self.user_id} category_id={category_id}")


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.enforcer = ConsistencyEnforcer(session)

    def _apply_filters(self, stmt, filters: TransactionFilters):
        stmt = stmt.where(Transaction.user_id == self.user_id)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category_id is not None:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.date_from is not None:
            stmt = stmt.where(Transaction.occurred_at >= filters.date_from)
        if filters.date_to is not None:
            stmt = stmt.where(Transaction.occurred_at <= filters.date_to)
        return stmt

    def list(self, filters: TransactionFilters) -> TransactionPage:
        page = max(filters.page, 1)
        page_size = max(filters.page_size, 1)

        total = int(
            self.session.execute(
                self._apply_filters(select(func.count(Transaction.id)), filters)
            ).scalar_one()
            or 0
        )
        stmt = (
            self._apply_filters(
                select(Transaction).options(joinedload(Transaction.category)), filters
            )
            .order_by(Transaction.occurred_at.desc(), Transaction.id.asc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        items = self.session.scalars(stmt).all()
        return TransactionPage(
            items=items, total=total, page=page, page_size=page_size
        )

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def count_by_category(self, category_id: int) -> int:
        stmt = select(func.count(Transaction.id)).where(
            Transaction.user_id == self.user_id,
            Transaction.category_id == category_id,
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def _commit(self) -> None:
        try:
            self.session.commit()
        except IntegrityError as exc:
            # The category vanished after validation.
            self.session.rollback()
            raise NotFound("Category not found") from exc

    def create(self, data: TransactionIn) -> Transaction:
        fields = data.model_dump(exclude_none=True)
        category = self.enforcer.validate_transaction_write(self.user_id, fields)
        txn = Transaction(
            user_id=self.user_id,
            occurred_at=(
                to_local_naive(data.occurred_at) if data.occurred_at else local_now()
            ),
            type=data.type,
            amount_cents=to_cents(data.amount),
            description=data.description.strip(),
            category_id=category.id,
        )
        self.session.add(txn)
        self._commit()
        self.session.refresh(txn)
        logger.info(
            f"transaction_created: user_id={self.user_id} transaction_id={txn.id} "
            f"type={txn.type.value} amount_cents={txn.amount_cents} "
            f"category_id={txn.category_id}"
        )
        return txn

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        fields = data.model_dump(exclude_unset=True, exclude_none=True)
        if ConsistencyEnforcer.touches_invariant(fields):
            self.enforcer.validate_transaction_write(self.user_id, fields, existing=txn)

        if "amount" in fields:
            txn.amount_cents = to_cents(fields["amount"])
        if "type" in fields:
            txn.type = fields["type"]
        if "description" in fields:
            txn.description = fields["description"].strip()
        if "occurred_at" in fields:
            txn.occurred_at = to_local_naive(fields["occurred_at"])
        if "category_id" in fields:
            txn.category_id = fields["category_id"]

        self._commit()
        self.session.refresh(txn)
        logger.info(
            f"transaction_updated: user_id={self.user_id} transaction_id={txn.id} "
            f"fields={sorted(fields)}"
        )
        return txn

    def delete(self, transaction_id: int) -> None:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise NotFound("Transaction not found")
        self.session.delete(txn)
        self.session.commit()
        logger.info(
            f"transaction_deleted: user_id={self.user_id} transaction_id={transaction_id}"
        )


class SummaryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def summarize(
        self,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> Summary:
        """Totals, balance and per-category breakdown over an inclusive window.

        Sums are taken over integer cents. Breakdown entries are keyed by category
        name and carry the category's current type and color; they are ordered by
        amount, largest first.
        """
        window = [Transaction.user_id == self.user_id]
        if date_from is not None:
            window.append(Transaction.occurred_at >= date_from)
        if date_to is not None:
            window.append(Transaction.occurred_at <= date_to)

        totals = self.session.execute(
            select(
                func.count(Transaction.id).label("transaction_count"),
                func.coalesce(
                    func.sum(
                        case(
                            (
                                Transaction.type == TransactionType.income,
                                Transaction.amount_cents,
                            ),
                            else_=0,
                        )
                    ),
                    0,
                ).label("income"),
                func.coalesce(
                    func.sum(
                        case(
                            (
                                Transaction.type == TransactionType.expense,
                                Transaction.amount_cents,
                            ),
                            else_=0,
                        )
                    ),
                    0,
                ).label("expenses"),
            ).where(*window)
        ).one()

        total = func.sum(Transaction.amount_cents)
        rows = self.session.execute(
            select(
                Category.name,
                Category.type,
                Category.color,
                total.label("total"),
            )
            .join(Category, Category.id == Transaction.category_id)
            .where(*window)
            .group_by(Category.id, Category.name, Category.type, Category.color)
            .order_by(total.desc(), Category.name)
        ).all()

        breakdown: dict[str, CategoryBreakdown] = {}
        for row in rows:
            amount = int(row.total or 0)
            seen = breakdown.get(row.name)
            if seen is None:
                breakdown[row.name] = CategoryBreakdown(amount, row.type, row.color)
            else:
                breakdown[row.name] = CategoryBreakdown(
                    seen.amount_cents + amount, seen.type, seen.color
                )

        return Summary(
            total_income_cents=int(totals.income or 0),
            total_expenses_cents=int(totals.expenses or 0),
            category_breakdown=breakdown,
            transaction_count=int(totals.transaction_count or 0),
        )
