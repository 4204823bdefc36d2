from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime

from medalapi.core.exceptions import MedalErrorCode


class DrawRequest(BaseModel):
    """뽑기 요청 - 결제 완료 후 결제 참조와 함께 호출"""

    gacha_id: str = Field(..., min_length=1, description="가챠 ID")
    count: int = Field(..., description="뽑기 횟수 (1 또는 10)")
    payment_reference: str = Field(
        ..., min_length=1, max_length=255, description="외부 결제 참조 ID"
    )


class DrawnItemResponse(BaseModel):
    item_id: str
    name: str
    rarity: str


class DrawResultResponse(BaseModel):
    """뽑기 결과"""

    id: int
    user_id: int
    gacha_id: str
    issuer_id: Optional[str] = None
    draw_count: int
    payment_reference: str
    payment_amount: int
    medals_earned: int
    items: List[DrawnItemResponse]
    ledger_transaction_id: Optional[int] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DrawSettlementResult(BaseModel):
    """뽑기 정산 결과 - 실패 시 error_code로 원인 구분"""

    success: bool
    error_code: Optional[MedalErrorCode] = None
    message: str = ""
    details: Dict[str, Any] = Field(default_factory=dict)
    draw_result: Optional[DrawResultResponse] = None


class DrawHistoryResponse(BaseModel):
    draws: List[DrawResultResponse]
    total_count: int
    limit: int
    offset: int
    has_next: bool
