from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import (
    DEFAULT_CATEGORY_COLOR,
    DEFAULT_CATEGORY_ICON,
    Category,
    Transaction,
    TransactionType,
)
from money import cents_to_decimal

HEX_COLOR_PATTERN = r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$"


class CategoryIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=30)
    type: TransactionType
    color: str = Field(DEFAULT_CATEGORY_COLOR, pattern=HEX_COLOR_PATTERN)
    icon: str = Field(DEFAULT_CATEGORY_ICON, min_length=1, max_length=5)


class CategoryUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(None, min_length=1, max_length=30)
    type: Optional[TransactionType] = None
    color: Optional[str] = Field(None, pattern=HEX_COLOR_PATTERN)
    icon: Optional[str] = Field(None, min_length=1, max_length=5)


class TransactionIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    type: TransactionType
    description: str = Field(..., min_length=1, max_length=100)
    occurred_at: Optional[datetime] = None
    category_id: int


class TransactionUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    amount: Optional[Decimal] = Field(None, gt=0, max_digits=12, decimal_places=2)
    type: Optional[TransactionType] = None
    description: Optional[str] = Field(None, min_length=1, max_length=100)
    occurred_at: Optional[datetime] = None
    category_id: Optional[int] = None


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: TransactionType
    color: str
    icon: str
    created_at: datetime
    updated_at: datetime


class CategoryProjection(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    type: TransactionType
    color: str
    icon: str


class TransactionOut(BaseModel):
    id: int
    amount: Decimal
    amount_cents: int
    type: TransactionType
    description: str
    occurred_at: datetime
    category_id: int
    category: CategoryProjection
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, txn: Transaction) -> "TransactionOut":
        category: Category = txn.category
        return cls(
            id=txn.id,
            amount=cents_to_decimal(txn.amount_cents),
            amount_cents=txn.amount_cents,
            type=txn.type,
            description=txn.description,
            occurred_at=txn.occurred_at,
            category_id=txn.category_id,
            category=CategoryProjection.model_validate(category),
            created_at=txn.created_at,
            updated_at=txn.updated_at,
        )


class TransactionPageOut(BaseModel):
    items: list[TransactionOut]
    total: int
    page: int
    page_size: int
    page_count: int


class CategoryBreakdownOut(BaseModel):
    amount: Decimal
    type: TransactionType
    color: str


class SummaryOut(BaseModel):
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    total_income: Decimal
    total_expenses: Decimal
    balance: Decimal
    category_breakdown: dict[str, CategoryBreakdownOut]
    transaction_count: int
