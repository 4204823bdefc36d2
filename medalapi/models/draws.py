"""
뽑기 정산 데이터 모델

DrawPaymentRecord는 외부 결제 참조(payment_reference)와 뽑기 결과를 1:1로
연결합니다. payment_reference의 유니크 제약이 결제 1건당 정산 1회를 보장하는
멱등성의 기준점입니다.
"""

from typing import List, Optional

from sqlalchemy import BigInteger, ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.schema import UniqueConstraint

from medalapi.models.base import BaseModel, BigIntId, JSONType


class DrawResult(BaseModel):
    __tablename__ = "draw_results"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    gacha_id: Mapped[str] = mapped_column(Text, nullable=False)
    issuer_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    draw_count: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_reference: Mapped[str] = mapped_column(Text, nullable=False)
    payment_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    medals_earned: Mapped[int] = mapped_column(Integer, nullable=False)
    items: Mapped[List[dict]] = mapped_column(JSONType, nullable=False)
    ledger_transaction_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("medal_transactions.id"), nullable=True
    )


class DrawPaymentRecord(BaseModel):
    __tablename__ = "draw_payment_records"
    __table_args__ = (
        UniqueConstraint(
            "payment_reference", name="uq_draw_payment_records_payment_reference"
        ),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    payment_reference: Mapped[str] = mapped_column(Text, nullable=False)
    draw_result_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("draw_results.id"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
