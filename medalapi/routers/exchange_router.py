"""
교환소 API 라우터

사용자용 엔드포인트:
- POST /exchange/execute: 아이템 교환
- GET /exchange/history: 내 교환 내역
- GET /exchange/items: 교환 가능 아이템 목록
- GET /exchange/items/{item_id}: 아이템 상세
- GET /exchange/inventory: 내 보유 아이템

관리자용 엔드포인트:
- POST /exchange/admin/items: 아이템 생성
- PATCH /exchange/admin/items/{item_id}: 아이템 수정
- POST /exchange/admin/items/{item_id}/restock: 재고 추가
- DELETE /exchange/admin/items/{item_id}: 아이템 비활성화
- POST /exchange/admin/transactions/{transaction_id}/cancel: 교환 취소/환불
- GET /exchange/admin/stats: 교환 통계
"""

from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, status

from medalapi.config import settings
from medalapi.core.auth import AuthContext, get_current_user, require_admin
from medalapi.core.exceptions import raise_for_result
from medalapi.deps import get_exchange_service
from medalapi.schemas.exchange import (
    CancelExchangeRequest,
    ExchangeHistoryResponse,
    ExchangeItemCreate,
    ExchangeItemListResponse,
    ExchangeItemResponse,
    ExchangeItemUpdate,
    ExchangeRequest,
    ExchangeResult,
    ExchangeStatisticsResponse,
    ItemOperationResult,
    RestockRequest,
    UserInventoryResponse,
)
from medalapi.services.exchange_service import ExchangeService

router = APIRouter(prefix="/exchange", tags=["exchange"])


@router.post("/execute", response_model=ExchangeResult)
def execute_exchange(
    request: ExchangeRequest,
    current_user: AuthContext = Depends(get_current_user),
    exchange_service: ExchangeService = Depends(get_exchange_service),
) -> ExchangeResult:
    """
    메달로 아이템 교환

    HTTP Status:
        200: 교환 완료 (transaction, grant 포함)
        400: OUT_OF_STOCK / INSUFFICIENT_BALANCE / *_LIMIT_EXCEEDED /
             EXCHANGE_PERIOD_EXPIRED / INVALID_QUANTITY
        404: EXCHANGE_ITEM_NOT_FOUND
        503: TRANSIENT_FAILURE
    """
    result = exchange_service.execute_exchange(
        user_id=current_user.user_id,
        item_id=request.item_id,
        quantity=request.quantity,
    )
    raise_for_result(result)
    return result


@router.get("/history", response_model=ExchangeHistoryResponse)
def get_my_exchange_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=settings.EXCHANGE_PAGE_LIMIT_MAX),
    current_user: AuthContext = Depends(get_current_user),
    exchange_service: ExchangeService = Depends(get_exchange_service),
) -> ExchangeHistoryResponse:
    return exchange_service.get_exchange_history(current_user.user_id, page, limit)


@router.get("/items", response_model=ExchangeItemListResponse)
def list_available_items(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=settings.EXCHANGE_PAGE_LIMIT_MAX),
    issuer_id: Optional[str] = Query(None, description="발행자 ID 필터"),
    current_user: AuthContext = Depends(get_current_user),
    exchange_service: ExchangeService = Depends(get_exchange_service),
) -> ExchangeItemListResponse:
    """현재 교환 가능한 아이템 (활성, 기간 내, 재고 있음)"""
    return exchange_service.list_available_items(page=page, limit=limit, issuer_id=issuer_id)


@router.get("/items/{item_id}", response_model=ExchangeItemResponse)
def get_item(
    item_id: int = Path(..., ge=1),
    current_user: AuthContext = Depends(get_current_user),
    exchange_service: ExchangeService = Depends(get_exchange_service),
) -> ExchangeItemResponse:
    result = exchange_service.get_item(item_id)
    raise_for_result(result)
    return result.item


@router.get("/inventory", response_model=UserInventoryResponse)
def get_my_inventory(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=settings.EXCHANGE_PAGE_LIMIT_MAX),
    current_user: AuthContext = Depends(get_current_user),
    exchange_service: ExchangeService = Depends(get_exchange_service),
) -> UserInventoryResponse:
    return exchange_service.get_user_inventory(current_user.user_id, page, limit)


# ==================== 관리자 ====================


@router.post(
    "/admin/items",
    response_model=ExchangeItemResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_item(
    request: ExchangeItemCreate,
    admin: AuthContext = Depends(require_admin),
    exchange_service: ExchangeService = Depends(get_exchange_service),
) -> ExchangeItemResponse:
    return exchange_service.create_item(request)


@router.patch("/admin/items/{item_id}", response_model=ItemOperationResult)
def update_item(
    request: ExchangeItemUpdate,
    item_id: int = Path(..., ge=1),
    admin: AuthContext = Depends(require_admin),
    exchange_service: ExchangeService = Depends(get_exchange_service),
) -> ItemOperationResult:
    result = exchange_service.update_item(item_id, request)
    raise_for_result(result)
    return result


@router.post("/admin/items/{item_id}/restock", response_model=ItemOperationResult)
def restock_item(
    request: RestockRequest,
    item_id: int = Path(..., ge=1),
    admin: AuthContext = Depends(require_admin),
    exchange_service: ExchangeService = Depends(get_exchange_service),
) -> ItemOperationResult:
    result = exchange_service.restock_item(item_id, request.quantity)
    raise_for_result(result)
    return result


@router.delete("/admin/items/{item_id}", response_model=ItemOperationResult)
def deactivate_item(
    item_id: int = Path(..., ge=1),
    admin: AuthContext = Depends(require_admin),
    exchange_service: ExchangeService = Depends(get_exchange_service),
) -> ItemOperationResult:
    """소프트 삭제 - 아이템을 비활성화"""
    result = exchange_service.deactivate_item(item_id)
    raise_for_result(result)
    return result


@router.post(
    "/admin/transactions/{transaction_id}/cancel", response_model=ExchangeResult
)
def cancel_exchange(
    request: CancelExchangeRequest,
    transaction_id: int = Path(..., ge=1),
    admin: AuthContext = Depends(require_admin),
    exchange_service: ExchangeService = Depends(get_exchange_service),
) -> ExchangeResult:
    """완료된 교환 취소 - 재고 복구, 메달 환불"""
    result = exchange_service.cancel_exchange(transaction_id, admin.user_id, request.reason)
    raise_for_result(result)
    return result


@router.get("/admin/stats", response_model=ExchangeStatisticsResponse)
def get_exchange_statistics(
    issuer_id: Optional[str] = Query(None),
    admin: AuthContext = Depends(require_admin),
    exchange_service: ExchangeService = Depends(get_exchange_service),
) -> ExchangeStatisticsResponse:
    return exchange_service.get_exchange_statistics(issuer_id)
