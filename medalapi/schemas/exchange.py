from pydantic import BaseModel, Field, model_validator
from typing import Any, Dict, List, Optional
from datetime import datetime

from medalapi.core.exceptions import MedalErrorCode
from medalapi.models.exchange import ExchangeStatusEnum
from medalapi.schemas.pagination import PageMeta


# ==================== 교환 아이템 ====================

# 수정 요청에서 null로 비울 수 있는 필드
NULLABLE_ITEM_FIELDS = frozenset({"description", "ends_at"})


class ExchangeItemCreate(BaseModel):
    """교환 아이템 생성 요청 (관리자)"""

    issuer_id: str = Field(..., min_length=1, description="발행자(VTuber) ID")
    name: str = Field(..., min_length=1, max_length=200, description="아이템명")
    description: Optional[str] = Field(None, description="아이템 설명")
    medal_cost: int = Field(..., gt=0, description="1개당 필요 메달")
    total_stock: int = Field(..., ge=0, description="총 재고")
    daily_limit: int = Field(..., ge=0, description="사용자당 일일 교환 제한")
    user_limit: int = Field(..., ge=0, description="사용자당 누적 교환 제한")
    starts_at: Optional[datetime] = Field(None, description="교환 시작 시간 (기본: 지금)")
    ends_at: Optional[datetime] = Field(None, description="교환 종료 시간 (없으면 무기한)")

    @model_validator(mode="after")
    def check_period(self):
        if self.starts_at and self.ends_at and self.ends_at <= self.starts_at:
            raise ValueError("ends_at must be after starts_at")
        return self


class ExchangeItemUpdate(BaseModel):
    """교환 아이템 수정 요청 (관리자) - 재고는 restock으로만 변경

    description, ends_at만 null로 비울 수 있습니다.
    """

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    medal_cost: Optional[int] = Field(None, gt=0)
    daily_limit: Optional[int] = Field(None, ge=0)
    user_limit: Optional[int] = Field(None, ge=0)
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    is_active: Optional[bool] = None

    @model_validator(mode="after")
    def check_required_fields_not_null(self):
        nulled = sorted(
            field
            for field in self.model_fields_set - NULLABLE_ITEM_FIELDS
            if getattr(self, field) is None
        )
        if nulled:
            raise ValueError(f"{', '.join(nulled)} cannot be null")
        return self


class RestockRequest(BaseModel):
    quantity: int = Field(..., gt=0, description="추가할 재고 수량")


class ExchangeItemResponse(BaseModel):
    """교환 아이템 응답"""

    id: int
    issuer_id: str
    name: str
    description: Optional[str] = None
    medal_cost: int
    total_stock: int
    current_stock: int
    daily_limit: int
    user_limit: int
    starts_at: datetime
    ends_at: Optional[datetime] = None
    is_active: bool

    class Config:
        from_attributes = True


class ExchangeItemListResponse(BaseModel):
    items: List[ExchangeItemResponse] = Field(..., description="교환 가능 아이템 목록")
    pagination: PageMeta


class ItemOperationResult(BaseModel):
    """아이템 관리 작업 결과"""

    success: bool
    error_code: Optional[MedalErrorCode] = None
    message: str = ""
    details: Dict[str, Any] = Field(default_factory=dict)
    item: Optional[ExchangeItemResponse] = None


# ==================== 교환 실행 ====================


class ExchangeRequest(BaseModel):
    """교환 실행 요청"""

    item_id: int = Field(..., description="교환 아이템 ID")
    quantity: int = Field(1, description="교환 수량 (1 이상)")


class ExchangeTransactionResponse(BaseModel):
    """교환 거래 응답"""

    id: int
    user_id: int
    exchange_item_id: int
    quantity: int
    medal_cost: int = Field(..., description="총 사용 메달")
    status: ExchangeStatusEnum
    executed_at: datetime
    ledger_transaction_id: Optional[int] = None

    class Config:
        from_attributes = True


class UserExchangeItemResponse(BaseModel):
    """사용자 보유 아이템 (교환 지급 기록)"""

    id: int
    user_id: int
    exchange_item_id: int
    transaction_id: int
    acquired_at: datetime
    is_active: bool
    item_name: Optional[str] = None
    issuer_id: Optional[str] = None

    class Config:
        from_attributes = True


class ExchangeResult(BaseModel):
    """교환 실행 결과 - 실패 시 error_code로 원인 구분"""

    success: bool
    error_code: Optional[MedalErrorCode] = None
    message: str = ""
    details: Dict[str, Any] = Field(default_factory=dict)
    transaction: Optional[ExchangeTransactionResponse] = None
    grant: Optional[UserExchangeItemResponse] = None
    remaining_balance: Optional[int] = None


class ExchangeHistoryResponse(BaseModel):
    transactions: List[ExchangeTransactionResponse]
    pagination: PageMeta


class UserInventoryResponse(BaseModel):
    items: List[UserExchangeItemResponse]
    pagination: PageMeta


class CancelExchangeRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=255, description="취소 사유")


# ==================== 통계 ====================


class ExchangeItemStat(BaseModel):
    item_id: int
    name: str
    exchange_count: int
    total_quantity: int
    medals_spent: int


class ExchangeStatisticsResponse(BaseModel):
    """교환 통계 (관리자)"""

    issuer_id: Optional[str] = None
    total_exchanges: int
    total_quantity: int
    total_medals_spent: int
    unique_users: int
    top_items: List[ExchangeItemStat] = Field(default_factory=list)
