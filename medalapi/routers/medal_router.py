"""
메달 잔액 API 라우터

사용자용 엔드포인트:
- GET /medals/balance: 내 메달 잔액 (issuer_id 없으면 풀 잔액)
- GET /medals/balances: 풀 + 발행자별 잔액 요약
- GET /medals/transactions: 내 메달 원장
- POST /medals/transfer: 풀 잔액을 발행자 잔액으로 이동

관리자용 엔드포인트:
- POST /medals/admin/adjust: 잔액 조정
- GET /medals/admin/integrity: 원장 정합성 검증
- POST /medals/admin/reconcile: 원장 합계 기준 잔액 복구

인증 및 권한:
- 모든 엔드포인트는 Bearer 토큰 인증 필요
- 관리자 엔드포인트는 role=admin 필요
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from medalapi.config import settings
from medalapi.core.auth import AuthContext, get_current_user, require_admin
from medalapi.core.exceptions import raise_for_result
from medalapi.deps import get_medal_service
from medalapi.models.medals import MedalTransactionType
from medalapi.schemas.medals import (
    AdminAdjustBalanceRequest,
    IntegrityReport,
    MedalBalanceResponse,
    MedalOperationResult,
    MedalTransactionHistoryResponse,
    PoolBalanceResponse,
    ReconcileBalanceRequest,
    ReconcileResult,
    TransferFromPoolRequest,
)
from medalapi.services.medal_service import MedalLedgerService

router = APIRouter(prefix="/medals", tags=["medals"])


@router.get("/balance", response_model=MedalBalanceResponse)
def get_my_balance(
    issuer_id: Optional[str] = Query(None, description="발행자 ID (없으면 풀)"),
    current_user: AuthContext = Depends(get_current_user),
    medal_service: MedalLedgerService = Depends(get_medal_service),
) -> MedalBalanceResponse:
    """내 메달 잔액 조회 - 잔액 행이 없으면 0"""
    return medal_service.get_balance_response(current_user.user_id, issuer_id)


@router.get("/balances", response_model=PoolBalanceResponse)
def get_my_balances(
    current_user: AuthContext = Depends(get_current_user),
    medal_service: MedalLedgerService = Depends(get_medal_service),
) -> PoolBalanceResponse:
    return medal_service.get_pool_balance(current_user.user_id)


@router.get("/transactions", response_model=MedalTransactionHistoryResponse)
def get_my_transactions(
    issuer_id: Optional[str] = Query(None, description="발행자 ID 필터"),
    transaction_type: Optional[MedalTransactionType] = Query(None, description="거래 유형 필터"),
    limit: int = Query(50, ge=1, le=settings.LEDGER_PAGE_LIMIT_MAX, description="페이지 크기"),
    offset: int = Query(0, ge=0, description="오프셋"),
    current_user: AuthContext = Depends(get_current_user),
    medal_service: MedalLedgerService = Depends(get_medal_service),
) -> MedalTransactionHistoryResponse:
    """
    내 메달 원장 조회 (최신순)

    Returns:
        MedalTransactionHistoryResponse:
        - balance: 조회 범위의 현재 잔액
        - entries: 원장 항목
        - total_count / has_next: 페이징 정보
    """
    return medal_service.get_transaction_history(
        user_id=current_user.user_id,
        issuer_id=issuer_id,
        transaction_type=transaction_type,
        limit=limit,
        offset=offset,
    )


@router.post("/transfer", response_model=MedalOperationResult)
def transfer_from_pool(
    request: TransferFromPoolRequest,
    current_user: AuthContext = Depends(get_current_user),
    medal_service: MedalLedgerService = Depends(get_medal_service),
) -> MedalOperationResult:
    """풀(또는 다른 발행자) 잔액을 발행자 잔액으로 이동"""
    result = medal_service.transfer_from_pool(
        user_id=current_user.user_id,
        to_issuer_id=request.to_issuer_id,
        amount=request.amount,
        from_issuer_id=request.from_issuer_id,
    )
    raise_for_result(result)
    return result


# ==================== 관리자 ====================


@router.post("/admin/adjust", response_model=MedalOperationResult)
def admin_adjust_balance(
    request: AdminAdjustBalanceRequest,
    admin: AuthContext = Depends(require_admin),
    medal_service: MedalLedgerService = Depends(get_medal_service),
) -> MedalOperationResult:
    """
    관리자 잔액 조정 - ADMIN_ADJUSTMENT 원장 항목 생성

    HTTP Status:
        200: 조정 완료
        400: INVALID_AMOUNT / INSUFFICIENT_BALANCE
        403: 관리자 권한 없음
    """
    result = medal_service.adjust_admin(
        user_id=request.user_id,
        issuer_id=request.issuer_id,
        amount=request.amount,
        reason=request.reason,
        admin_id=admin.user_id,
    )
    raise_for_result(result)
    return result


@router.get("/admin/integrity", response_model=IntegrityReport)
def verify_integrity(
    user_id: Optional[int] = Query(None, description="특정 사용자만 검증"),
    admin: AuthContext = Depends(require_admin),
    medal_service: MedalLedgerService = Depends(get_medal_service),
) -> IntegrityReport:
    """원장 정합성 검증 (읽기 전용, 자동 복구하지 않음)"""
    return medal_service.verify_integrity(user_id)


@router.post("/admin/reconcile", response_model=ReconcileResult)
def reconcile_balance(
    request: ReconcileBalanceRequest,
    admin: AuthContext = Depends(require_admin),
    medal_service: MedalLedgerService = Depends(get_medal_service),
) -> ReconcileResult:
    """저장된 잔액을 원장 합계로 복구 (감사 로그 기록)"""
    return medal_service.reconcile_balance(
        user_id=request.user_id,
        issuer_id=request.issuer_id,
        admin_id=admin.user_id,
        reason=request.reason,
    )
