"""
뽑기 정산 API 라우터

- POST /draws: 결제 완료된 뽑기 실행 (결제 참조당 1회)
- GET /draws/payments/{payment_reference}: 결제 참조로 기존 결과 조회
- GET /draws/history: 내 뽑기 내역
"""

from fastapi import APIRouter, Depends, Query

from medalapi.core.auth import AuthContext, get_current_user
from medalapi.core.exceptions import NotFoundError, raise_for_result
from medalapi.deps import get_draw_service
from medalapi.schemas.draws import (
    DrawHistoryResponse,
    DrawRequest,
    DrawResultResponse,
    DrawSettlementResult,
)
from medalapi.services.draw_service import DrawSettlementService

router = APIRouter(prefix="/draws", tags=["draws"])


@router.post("", response_model=DrawSettlementResult)
def settle_draw(
    request: DrawRequest,
    current_user: AuthContext = Depends(get_current_user),
    draw_service: DrawSettlementService = Depends(get_draw_service),
) -> DrawSettlementResult:
    """
    뽑기 실행 및 메달 적립

    같은 결제 참조로 재시도하면 409 PAYMENT_ALREADY_USED가 반환되며,
    details.draw_result_id 또는 GET /draws/payments/{ref}로 기존 결과를
    조회할 수 있습니다.
    """
    result = draw_service.settle_draw(
        user_id=current_user.user_id,
        gacha_id=request.gacha_id,
        count=request.count,
        payment_reference=request.payment_reference,
    )
    raise_for_result(result)
    return result


@router.get("/payments/{payment_reference}", response_model=DrawResultResponse)
def get_draw_by_payment(
    payment_reference: str,
    current_user: AuthContext = Depends(get_current_user),
    draw_service: DrawSettlementService = Depends(get_draw_service),
) -> DrawResultResponse:
    draw = draw_service.get_draw_by_payment_reference(payment_reference)
    # 다른 사용자의 결제는 존재 여부도 노출하지 않음
    if draw is None or (draw.user_id != current_user.user_id and not current_user.is_admin):
        raise NotFoundError(f"No draw settled for payment {payment_reference}")
    return draw


@router.get("/history", response_model=DrawHistoryResponse)
def get_my_draw_history(
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: AuthContext = Depends(get_current_user),
    draw_service: DrawSettlementService = Depends(get_draw_service),
) -> DrawHistoryResponse:
    return draw_service.get_draw_history(current_user.user_id, limit=limit, offset=offset)
