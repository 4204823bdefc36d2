"""
교환소 서비스 - 메달로 한정 재고 아이템 교환

교환은 두 단계로 처리됩니다:
1. 검증 (변경 없음): 아이템 존재/기간, 재고, 일일/누적 제한, 잔액
2. 실행 (하나의 DB 트랜잭션): 조건부 재고 차감 → 제한 재확인 →
   원장 차감 → 교환 거래/지급 기록 생성 → 커밋

검증과 실행 사이에 다른 요청이 끼어들어도 실행 단계의 조건부 UPDATE가
최종 판정을 내리므로 초과 판매, 음수 잔액, 제한 초과가 발생하지 않습니다.
"""

from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from medalapi.core.exceptions import (
    ExchangeItemNotFoundError,
    ExchangeLimitExceededError,
    ExchangePeriodExpiredError,
    ExchangeTransactionNotFoundError,
    InsufficientMedalBalanceError,
    InvalidExchangeQuantityError,
    MedalErrorCode,
    OutOfStockError,
    ServiceException,
    ValidationError,
    failure_result,
)
from medalapi.models.medals import MedalTransactionType
from medalapi.repositories.exchange_repository import ExchangeRepository
from medalapi.schemas.exchange import (
    ExchangeHistoryResponse,
    ExchangeItemCreate,
    ExchangeItemListResponse,
    ExchangeItemResponse,
    ExchangeItemUpdate,
    ExchangeResult,
    ExchangeStatisticsResponse,
    ItemOperationResult,
    UserInventoryResponse,
)
from medalapi.schemas.pagination import PageMeta
from medalapi.services.medal_service import MedalLedgerService
from medalapi.utils.db_retry import TRANSIENT_DB_ERRORS, retry_once
from medalapi.utils.timezone_utils import business_day_bounds, ensure_utc, utcnow
import logging

logger = logging.getLogger(__name__)


class ExchangeService:
    """교환소 비즈니스 로직 서비스"""

    def __init__(
        self,
        db: Session,
        ledger: Optional[MedalLedgerService] = None,
        repository: Optional[ExchangeRepository] = None,
    ):
        self.db = db
        self.ledger = ledger or MedalLedgerService(db)
        self.exchange_repo = repository or ExchangeRepository(db)

    # ==================== 교환 실행 ====================

    def execute_exchange(
        self, user_id: int, item_id: int, quantity: int = 1
    ) -> ExchangeResult:
        """아이템 교환

        Args:
            user_id: 사용자 ID
            item_id: 교환 아이템 ID
            quantity: 교환 수량 (1 이상)

        Returns:
            ExchangeResult: 성공 시 교환 거래와 지급 기록, 실패 시 error_code
        """
        now = utcnow()
        return self._run(
            "execute_exchange",
            lambda: self._apply(
                user_id, self.validate_exchange(user_id, item_id, quantity, now), quantity, now
            ),
        )

    def apply_validated_exchange(
        self,
        user_id: int,
        item: ExchangeItemResponse,
        quantity: int,
        now: Optional[datetime] = None,
    ) -> ExchangeResult:
        """이미 검증된 교환을 원자적으로 실행 (검증 이후 상태 변화는 실행 단계에서 판정)"""
        now = now or utcnow()
        return self._run(
            "apply_exchange", lambda: self._apply(user_id, item, quantity, now)
        )

    def validate_exchange(
        self,
        user_id: int,
        item_id: int,
        quantity: int,
        now: Optional[datetime] = None,
    ) -> ExchangeItemResponse:
        """
        교환 가능 여부 검증 (상태 변경 없음)

        검증 순서:
        1. 수량 >= 1
        2. 아이템 존재, 활성, 교환 기간 내
        3. 재고 충분
        4. 일일 제한 / 누적 제한
        5. 발행자 잔액 충분

        Raises:
            ServiceException: 검증 실패 (error code 포함)
        """
        now = now or utcnow()
        if quantity < 1:
            raise InvalidExchangeQuantityError(quantity)

        item = retry_once(
            self.db, "load_exchange_item", lambda: self.exchange_repo.get_item(item_id)
        )
        if item is None:
            raise ExchangeItemNotFoundError(item_id)

        self._check_period(item, now)

        if item.current_stock < quantity:
            raise OutOfStockError(item.id, quantity, item.current_stock)

        self._check_limits(user_id, item, now)

        required = item.medal_cost * quantity
        available = self.ledger.get_balance(user_id, item.issuer_id)
        if available < required:
            raise InsufficientMedalBalanceError(required=required, available=available)

        return item

    def _apply(
        self,
        user_id: int,
        item: ExchangeItemResponse,
        quantity: int,
        now: datetime,
    ) -> ExchangeResult:
        # 1. 조건부 재고 차감 - 이 시점부터 아이템 행 락 보유
        remaining = self.exchange_repo.decrement_stock(item.id, quantity)
        if remaining is None:
            current = self.exchange_repo.get_item(item.id)
            if current is None:
                raise ExchangeItemNotFoundError(item.id)
            if not current.is_active:
                raise ExchangePeriodExpiredError(item.id)
            raise OutOfStockError(item.id, quantity, current.current_stock)

        # 2. 락을 잡은 상태에서 제한 재확인
        self._check_limits(user_id, item, now)

        # 3. 원장 차감 (같은 트랜잭션)
        total_cost = item.medal_cost * quantity
        debit = self.ledger.debit(
            user_id=user_id,
            issuer_id=item.issuer_id,
            amount=total_cost,
            transaction_type=MedalTransactionType.EXCHANGE_DEBIT,
            reason=f"Exchange {quantity} x {item.name}",
            reference_id=str(item.id),
            reference_type="exchange_item",
            commit=False,
        )

        # 4. 교환 거래 + 지급 기록
        transaction, grant = self.exchange_repo.create_completed_exchange(
            user_id=user_id,
            item_id=item.id,
            quantity=quantity,
            medal_cost=total_cost,
            executed_at=now,
            ledger_transaction_id=debit.transaction.id,
        )

        # 5. 커밋
        self.db.commit()

        logger.info(
            f"User {user_id} exchanged {quantity} x item {item.id} "
            f"for {total_cost} medals (stock left: {remaining})"
        )
        return ExchangeResult(
            success=True,
            message="Exchange completed successfully",
            transaction=transaction,
            grant=grant,
            remaining_balance=debit.transaction.balance_after,
        )

    def _check_period(self, item: ExchangeItemResponse, now: datetime) -> None:
        starts_at = ensure_utc(item.starts_at)
        ends_at = ensure_utc(item.ends_at)
        if not item.is_active or now < starts_at or (ends_at is not None and now > ends_at):
            raise ExchangePeriodExpiredError(item.id)

    def _check_limits(
        self, user_id: int, item: ExchangeItemResponse, now: datetime
    ) -> None:
        """완료된 교환 수 기준 일일/누적 제한 (일일은 비즈니스 타임존의 하루)"""
        day_start, day_end = business_day_bounds(now)
        daily_count = self.exchange_repo.count_completed_exchanges(
            user_id, item.id, since=day_start, until=day_end
        )
        if daily_count >= item.daily_limit:
            raise ExchangeLimitExceededError("daily", item.daily_limit)

        total_count = self.exchange_repo.count_completed_exchanges(user_id, item.id)
        if total_count >= item.user_limit:
            raise ExchangeLimitExceededError("user", item.user_limit)

    def cancel_exchange(
        self, transaction_id: int, admin_id: int, reason: str
    ) -> ExchangeResult:
        """관리자 교환 취소

        하나의 트랜잭션에서 상태를 FAILED로 전환하고, 지급 기록을 비활성화하고,
        재고를 복구하고, 사용한 메달을 ADMIN_ADJUSTMENT로 환불합니다.
        """

        def cancel() -> ExchangeResult:
            transaction = self.exchange_repo.mark_transaction_failed(transaction_id)
            if transaction is None:
                raise ExchangeTransactionNotFoundError(transaction_id)

            self.exchange_repo.deactivate_grant(transaction_id)

            item = self.exchange_repo.get_item(transaction.exchange_item_id)
            if self.exchange_repo.restore_stock(item.id, transaction.quantity) is None:
                logger.warning(
                    f"Stock for item {item.id} not restored on cancel of "
                    f"exchange {transaction_id}: total stock would be exceeded"
                )

            refund = self.ledger.credit(
                user_id=transaction.user_id,
                issuer_id=item.issuer_id,
                amount=transaction.medal_cost,
                transaction_type=MedalTransactionType.ADMIN_ADJUSTMENT,
                reason=f"Exchange {transaction_id} cancelled by {admin_id}: {reason}",
                reference_id=str(transaction_id),
                reference_type="exchange_cancel",
                commit=False,
            )
            self.db.commit()

            logger.warning(
                f"Admin {admin_id} cancelled exchange {transaction_id} "
                f"(user {transaction.user_id}, refund {transaction.medal_cost})"
            )
            return ExchangeResult(
                success=True,
                message="Exchange cancelled and refunded",
                transaction=transaction,
                remaining_balance=refund.transaction.balance_after,
            )

        return self._run("cancel_exchange", cancel)

    def _run(self, operation: str, unit: Callable[[], ExchangeResult]) -> ExchangeResult:
        """원자적 단위 실행 - 실패 시 전체 롤백 후 결과값으로 변환"""
        try:
            return unit()
        except ServiceException as e:
            self.db.rollback()
            logger.info(f"{operation} rejected [{e.code.value}]: {e.message}")
            return failure_result(ExchangeResult, e)
        except TRANSIENT_DB_ERRORS as e:
            # 교환은 멱등하지 않으므로 재시도하지 않음
            self.db.rollback()
            logger.error(f"{operation} failed on storage error: {str(e)}")
            return ExchangeResult(
                success=False,
                error_code=MedalErrorCode.TRANSIENT_FAILURE,
                message=f"Storage temporarily unavailable during {operation}",
            )
        except Exception as e:
            self.db.rollback()
            logger.error(f"{operation} failed unexpectedly: {str(e)}")
            raise

    # ==================== 아이템 관리 (관리자) ====================

    def create_item(self, request: ExchangeItemCreate) -> ExchangeItemResponse:
        """교환 아이템 생성 - 현재 재고는 총 재고로 시작"""
        item = self.exchange_repo.create(
            issuer_id=request.issuer_id,
            name=request.name,
            description=request.description,
            medal_cost=request.medal_cost,
            total_stock=request.total_stock,
            current_stock=request.total_stock,
            daily_limit=request.daily_limit,
            user_limit=request.user_limit,
            starts_at=ensure_utc(request.starts_at) or utcnow(),
            ends_at=ensure_utc(request.ends_at),
            is_active=True,
        )
        logger.info(f"Created exchange item {item.id} for issuer {item.issuer_id}")
        return item

    def update_item(self, item_id: int, request: ExchangeItemUpdate) -> ItemOperationResult:
        """교환 아이템 수정 (재고 제외)"""
        current = self.exchange_repo.get_item(item_id)
        if current is None:
            return failure_result(ItemOperationResult, ExchangeItemNotFoundError(item_id))

        changes = request.model_dump(exclude_unset=True)
        for field in ("starts_at", "ends_at"):
            if changes.get(field) is not None:
                changes[field] = ensure_utc(changes[field])

        starts_at = changes.get("starts_at", ensure_utc(current.starts_at))
        ends_at = changes.get("ends_at", ensure_utc(current.ends_at))
        if starts_at and ends_at and ends_at <= starts_at:
            raise ValidationError("ends_at must be after starts_at")

        item = self.exchange_repo.update(item_id, **changes)
        logger.info(f"Updated exchange item {item_id}: {sorted(changes)}")
        return ItemOperationResult(success=True, message="Item updated", item=item)

    def restock_item(self, item_id: int, quantity: int) -> ItemOperationResult:
        if quantity <= 0:
            return failure_result(ItemOperationResult, InvalidExchangeQuantityError(quantity))

        item = self.exchange_repo.restock(item_id, quantity)
        if item is None:
            return failure_result(ItemOperationResult, ExchangeItemNotFoundError(item_id))

        logger.info(f"Restocked exchange item {item_id} by {quantity}")
        return ItemOperationResult(success=True, message="Item restocked", item=item)

    def deactivate_item(self, item_id: int) -> ItemOperationResult:
        """소프트 삭제 - 기존 교환/지급 기록은 유지"""
        item = self.exchange_repo.update(item_id, is_active=False)
        if item is None:
            return failure_result(ItemOperationResult, ExchangeItemNotFoundError(item_id))

        logger.info(f"Deactivated exchange item {item_id}")
        return ItemOperationResult(success=True, message="Item deactivated", item=item)

    # ==================== 조회 ====================

    def get_item(self, item_id: int) -> ItemOperationResult:
        item = retry_once(
            self.db, "get_exchange_item", lambda: self.exchange_repo.get_item(item_id)
        )
        if item is None:
            return failure_result(ItemOperationResult, ExchangeItemNotFoundError(item_id))
        return ItemOperationResult(success=True, item=item)

    def list_available_items(
        self, page: int = 1, limit: int = 20, issuer_id: Optional[str] = None
    ) -> ExchangeItemListResponse:
        """현재 교환 가능한 아이템 목록"""
        items, total = retry_once(
            self.db,
            "list_available_items",
            lambda: self.exchange_repo.list_available_items(
                now=utcnow(), issuer_id=issuer_id, limit=limit, offset=(page - 1) * limit
            ),
        )
        return ExchangeItemListResponse(
            items=items, pagination=PageMeta.build(page, limit, total)
        )

    def get_exchange_history(
        self, user_id: int, page: int = 1, limit: int = 10
    ) -> ExchangeHistoryResponse:
        transactions, total = retry_once(
            self.db,
            "get_exchange_history",
            lambda: self.exchange_repo.get_user_history(
                user_id, limit=limit, offset=(page - 1) * limit
            ),
        )
        return ExchangeHistoryResponse(
            transactions=transactions, pagination=PageMeta.build(page, limit, total)
        )

    def get_user_inventory(
        self, user_id: int, page: int = 1, limit: int = 10
    ) -> UserInventoryResponse:
        """사용자 보유 아이템 (취소된 교환 제외)"""
        items, total = retry_once(
            self.db,
            "get_user_inventory",
            lambda: self.exchange_repo.get_user_inventory(
                user_id, limit=limit, offset=(page - 1) * limit
            ),
        )
        return UserInventoryResponse(items=items, pagination=PageMeta.build(page, limit, total))

    def get_exchange_statistics(
        self, issuer_id: Optional[str] = None
    ) -> ExchangeStatisticsResponse:
        return retry_once(
            self.db,
            "get_exchange_statistics",
            lambda: self.exchange_repo.get_statistics(issuer_id),
        )
