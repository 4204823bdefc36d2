"""
푸시 메달 데이터 모델

사용자별/발행자(VTuber)별 메달 잔액 테이블과, 모든 잔액 변동을 기록하는
원장(Ledger) 테이블을 정의합니다. 잔액 변동은 반드시 원장 기록과 함께
하나의 트랜잭션으로 처리되어 완전한 감사 추적(Audit Trail)을 제공합니다.
"""

import enum

from sqlalchemy import (
    Column,
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum,
    Index,
    Text,
)
from sqlalchemy.schema import UniqueConstraint

from medalapi.models.base import BaseModel, BigIntId

# issuer_id가 NULL인 풀(pool) 잔액을 유니크 키에서 구분하기 위한 값
POOL_SCOPE_KEY = "__pool__"


def normalize_issuer_id(issuer_id):
    """빈 문자열 issuer_id는 풀(None)로 취급"""
    return issuer_id or None


def scope_key_for(issuer_id):
    """issuer_id를 유니크 제약에 사용할 scope_key로 변환"""
    return normalize_issuer_id(issuer_id) or POOL_SCOPE_KEY


class MedalTransactionType(str, enum.Enum):
    DRAW_REWARD = "DRAW_REWARD"  # 뽑기 보상 지급
    EXCHANGE_DEBIT = "EXCHANGE_DEBIT"  # 교환소 사용
    POOL_TRANSFER = "POOL_TRANSFER"  # 풀 → 발행자 이동
    ADMIN_ADJUSTMENT = "ADMIN_ADJUSTMENT"  # 관리자 조정


class MedalBalance(BaseModel):
    """
    메달 잔액 테이블 - (user_id, issuer_id) 당 한 행

    특징:
    - issuer_id가 NULL이면 특정 발행자에 귀속되지 않은 풀 잔액
    - balance >= 0 은 DB CHECK 제약으로도 보장
    - 직접 수정하지 않고 원장 적용(MedalRepository.apply_delta)으로만 변경
    """

    __tablename__ = "medal_balances"
    __table_args__ = (
        UniqueConstraint("user_id", "scope_key", name="uq_medal_balances_user_scope"),
        CheckConstraint("balance >= 0", name="ck_medal_balances_non_negative"),
    )

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False, index=True)
    issuer_id = Column(Text, nullable=True)
    scope_key = Column(Text, nullable=False)
    balance = Column(BigInteger, nullable=False, default=0, server_default="0")


class MedalTransaction(BaseModel):
    """
    메달 원장 테이블 - 모든 잔액 변동 내역

    원칙:
    1. 불변성(Immutable): 한번 생성된 레코드는 수정/삭제되지 않음
    2. 완전성(Complete): 잔액 변동 1건당 정확히 1행
    3. 정합성(Integrity): balance_after = balance_before + amount,
       (user, scope) 별 amount 합계 = 저장된 잔액
    """

    __tablename__ = "medal_transactions"
    __table_args__ = (
        Index("ix_medal_transactions_user_scope", "user_id", "scope_key"),
        CheckConstraint("amount <> 0", name="ck_medal_transactions_non_zero"),
        CheckConstraint(
            "balance_after = balance_before + amount",
            name="ck_medal_transactions_running_balance",
        ),
    )

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False)
    issuer_id = Column(Text, nullable=True)
    scope_key = Column(Text, nullable=False)

    transaction_type = Column(Enum(MedalTransactionType), nullable=False)

    # 변동량 - 양수면 증가, 음수면 감소
    amount = Column(BigInteger, nullable=False)
    balance_before = Column(BigInteger, nullable=False)
    balance_after = Column(BigInteger, nullable=False)

    reason = Column(Text, nullable=True)

    # 변동을 일으킨 대상 (draw_result id, exchange id, admin id 등)
    reference_id = Column(Text, nullable=True)
    reference_type = Column(Text, nullable=True)

    occurred_at = Column(DateTime(timezone=True), nullable=False)


class MedalBalanceAudit(BaseModel):
    """
    관리자 잔액 복구(reconcile) 감사 기록

    복구는 원장 항목을 만들지 않으므로 관리자와 사유, 복구 전후 잔액을
    이 테이블에 남깁니다. 잔액 덮어쓰기와 같은 트랜잭션에서 기록됩니다.
    """

    __tablename__ = "medal_balance_audits"
    __table_args__ = (
        Index("ix_medal_balance_audits_user_scope", "user_id", "scope_key"),
    )

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False)
    issuer_id = Column(Text, nullable=True)
    scope_key = Column(Text, nullable=False)

    admin_id = Column(BigInteger, nullable=False)
    reason = Column(Text, nullable=False)
    previous_balance = Column(BigInteger, nullable=False)
    reconciled_balance = Column(BigInteger, nullable=False)

    occurred_at = Column(DateTime(timezone=True), nullable=False)
