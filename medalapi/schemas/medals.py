from pydantic import BaseModel, Field, field_validator
from typing import Any, Dict, List, Optional
from datetime import datetime

from medalapi.core.exceptions import MedalErrorCode
from medalapi.models.medals import MedalTransactionType


class MedalBalanceResponse(BaseModel):
    """메달 잔액 응답"""

    user_id: int = Field(..., description="사용자 ID")
    issuer_id: Optional[str] = Field(None, description="발행자 ID (없으면 풀 잔액)")
    balance: int = Field(..., description="현재 메달 잔액")

    class Config:
        from_attributes = True


class IssuerBalance(BaseModel):
    issuer_id: str
    balance: int


class PoolBalanceResponse(BaseModel):
    """풀 잔액 + 발행자별 잔액 요약"""

    user_id: int
    pool_balance: int = Field(..., description="발행자에 귀속되지 않은 잔액")
    issuer_balances: List[IssuerBalance] = Field(default_factory=list)
    total_balance: int = Field(..., description="전체 합계")


class MedalTransactionEntry(BaseModel):
    """메달 원장 항목"""

    id: int = Field(..., description="원장 항목 ID")
    user_id: int
    issuer_id: Optional[str] = None
    transaction_type: MedalTransactionType
    amount: int = Field(..., description="변동량 (부호 포함)")
    balance_before: int
    balance_after: int
    reason: Optional[str] = None
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    occurred_at: datetime

    class Config:
        from_attributes = True


class MedalTransactionHistoryResponse(BaseModel):
    """메달 원장 조회 응답"""

    balance: int = Field(..., description="조회 범위의 현재 잔액 합계")
    entries: List[MedalTransactionEntry] = Field(..., description="원장 항목 목록")
    total_count: int = Field(..., description="전체 항목 수")
    limit: int
    offset: int
    has_next: bool = Field(..., description="다음 페이지 존재 여부")


class MedalOperationResult(BaseModel):
    """잔액 변경 결과 - 실패 시 error_code로 원인 구분"""

    success: bool
    error_code: Optional[MedalErrorCode] = None
    message: str = ""
    details: Dict[str, Any] = Field(default_factory=dict)
    transaction: Optional[MedalTransactionEntry] = None
    transactions: List[MedalTransactionEntry] = Field(default_factory=list)


class AdminAdjustBalanceRequest(BaseModel):
    """관리자 잔액 조정 요청"""

    user_id: int = Field(..., gt=0, description="사용자 ID")
    issuer_id: Optional[str] = Field(None, description="발행자 ID (없으면 풀)")
    amount: int = Field(..., description="조정할 메달 (양수: 추가, 음수: 차감)")
    reason: str = Field(..., min_length=1, max_length=255, description="조정 사유")

    @field_validator("amount")
    @classmethod
    def amount_must_not_be_zero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("amount must not be zero")
        return v


class TransferFromPoolRequest(BaseModel):
    """풀(또는 다른 발행자) 잔액을 발행자 잔액으로 이동"""

    from_issuer_id: Optional[str] = Field(None, description="출발 발행자 ID (없으면 풀)")
    to_issuer_id: str = Field(..., min_length=1, description="도착 발행자 ID")
    amount: int = Field(..., gt=0, description="이동할 메달")


class ReconcileBalanceRequest(BaseModel):
    """원장 합계 기준 잔액 복구 요청 (관리자)"""

    user_id: int = Field(..., gt=0)
    issuer_id: Optional[str] = None
    reason: str = Field(..., min_length=1, max_length=255)


class BalanceDiscrepancy(BaseModel):
    user_id: int
    issuer_id: Optional[str] = None
    expected_balance: int = Field(..., description="원장 합계")
    actual_balance: int = Field(..., description="저장된 잔액")
    discrepancy: int
    last_transaction_at: Optional[datetime] = None


class IntegrityReport(BaseModel):
    """원장 정합성 검증 결과"""

    checked: int
    valid: int
    invalid: int
    discrepancies: List[BalanceDiscrepancy] = Field(default_factory=list)
    checked_at: datetime


class ReconcileResult(BaseModel):
    user_id: int
    issuer_id: Optional[str] = None
    previous_balance: int
    reconciled_balance: int
    changed: bool
    audit_id: int = Field(..., description="잔액 복구 감사 기록 ID")
