import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.schema import UniqueConstraint

from medalapi.models.base import BaseModel, BigIntId


class ExchangeStatusEnum(enum.Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"  # 관리자 취소(무효화)된 교환


class ExchangeItem(BaseModel):
    __tablename__ = "exchange_items"
    __table_args__ = (
        CheckConstraint("medal_cost > 0", name="ck_exchange_items_cost_positive"),
        CheckConstraint(
            "current_stock >= 0 AND current_stock <= total_stock",
            name="ck_exchange_items_stock_range",
        ),
        CheckConstraint("daily_limit >= 0", name="ck_exchange_items_daily_limit"),
        CheckConstraint("user_limit >= 0", name="ck_exchange_items_user_limit"),
        Index("ix_exchange_items_issuer_active", "issuer_id", "is_active"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    issuer_id: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    medal_cost: Mapped[int] = mapped_column(Integer, nullable=False)
    total_stock: Mapped[int] = mapped_column(Integer, nullable=False)
    current_stock: Mapped[int] = mapped_column(Integer, nullable=False)
    daily_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    user_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ends_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class ExchangeTransaction(BaseModel):
    __tablename__ = "exchange_transactions"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_exchange_transactions_quantity"),
        # 일일/누적 제한 카운트 조회용
        Index(
            "ix_exchange_transactions_limit_lookup",
            "user_id",
            "exchange_item_id",
            "status",
            "executed_at",
        ),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    exchange_item_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("exchange_items.id"), nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    medal_cost: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[ExchangeStatusEnum] = mapped_column(
        Enum(ExchangeStatusEnum), nullable=False
    )
    executed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    ledger_transaction_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("medal_transactions.id"), nullable=True
    )


class UserExchangeItem(BaseModel):
    __tablename__ = "user_exchange_items"
    __table_args__ = (
        UniqueConstraint("transaction_id", name="uq_user_exchange_items_transaction"),
        Index("ix_user_exchange_items_user_active", "user_id", "is_active"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    exchange_item_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("exchange_items.id"), nullable=False
    )
    transaction_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("exchange_transactions.id"), nullable=False
    )
    acquired_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
