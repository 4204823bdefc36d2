from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import and_, desc, func, or_, select, update
from sqlalchemy.orm import Session

from medalapi.models.exchange import (
    ExchangeItem as ExchangeItemModel,
    ExchangeStatusEnum,
    ExchangeTransaction as ExchangeTransactionModel,
    UserExchangeItem as UserExchangeItemModel,
)
from medalapi.repositories.base import BaseRepository
from medalapi.schemas.exchange import (
    ExchangeItemResponse,
    ExchangeItemStat,
    ExchangeStatisticsResponse,
    ExchangeTransactionResponse,
    UserExchangeItemResponse,
)


class ExchangeRepository(BaseRepository[ExchangeItemModel, ExchangeItemResponse]):
    """교환소 리포지토리 - 아이템 재고, 교환 거래, 지급 기록 관리"""

    def __init__(self, db: Session):
        super().__init__(ExchangeItemModel, ExchangeItemResponse, db)

    # ==================== 아이템 ====================

    def list_available_items(
        self, now: datetime, issuer_id: Optional[str] = None, limit: int = 20, offset: int = 0
    ) -> Tuple[List[ExchangeItemResponse], int]:
        """교환 가능한 아이템 (활성, 기간 내, 재고 있음)"""
        query = self.db.query(ExchangeItemModel).filter(
            ExchangeItemModel.is_active.is_(True),
            ExchangeItemModel.current_stock > 0,
            ExchangeItemModel.starts_at <= now,
            or_(ExchangeItemModel.ends_at.is_(None), ExchangeItemModel.ends_at >= now),
        )
        if issuer_id:
            query = query.filter(ExchangeItemModel.issuer_id == issuer_id)

        total = query.count()
        items = (
            query.order_by(desc(ExchangeItemModel.id)).limit(limit).offset(offset).all()
        )
        return self._to_schemas(items), total

    def decrement_stock(self, item_id: int, quantity: int) -> Optional[int]:
        """
        조건부 재고 차감 - 활성 상태이고 재고가 충분할 때만 성공

        Returns:
            Optional[int]: 차감 후 재고 (조건 불충족 시 None)

        Note:
            - 갱신된 행은 트랜잭션 종료까지 락이 유지되어 같은 아이템의
              교환이 직렬화됩니다
            - 커밋하지 않습니다
        """
        return self.db.execute(
            update(ExchangeItemModel)
            .where(
                ExchangeItemModel.id == item_id,
                ExchangeItemModel.is_active.is_(True),
                ExchangeItemModel.current_stock >= quantity,
            )
            .values(current_stock=ExchangeItemModel.current_stock - quantity)
            .returning(ExchangeItemModel.current_stock)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()

    def restore_stock(self, item_id: int, quantity: int) -> Optional[int]:
        """취소된 교환의 재고 복구 (총 재고를 넘지 않음, 커밋하지 않음)"""
        return self.db.execute(
            update(ExchangeItemModel)
            .where(
                ExchangeItemModel.id == item_id,
                ExchangeItemModel.current_stock + quantity
                <= ExchangeItemModel.total_stock,
            )
            .values(current_stock=ExchangeItemModel.current_stock + quantity)
            .returning(ExchangeItemModel.current_stock)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()

    def restock(self, item_id: int, quantity: int) -> Optional[ExchangeItemResponse]:
        """총 재고와 현재 재고를 함께 증가"""
        updated_id = self.db.execute(
            update(ExchangeItemModel)
            .where(ExchangeItemModel.id == item_id)
            .values(
                total_stock=ExchangeItemModel.total_stock + quantity,
                current_stock=ExchangeItemModel.current_stock + quantity,
            )
            .returning(ExchangeItemModel.id)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()

        if updated_id is None:
            self.db.rollback()
            return None

        self.db.commit()
        return self.get_item(item_id)

    def get_item(self, item_id: int) -> Optional[ExchangeItemResponse]:
        """DB의 최신 값으로 아이템 조회 (세션 캐시 무시)"""
        instance = (
            self.db.query(ExchangeItemModel)
            .filter(ExchangeItemModel.id == item_id)
            .populate_existing()
            .first()
        )
        return self._to_schema(instance)

    # ==================== 교환 거래 ====================

    def count_completed_exchanges(
        self,
        user_id: int,
        item_id: int,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        """사용자의 아이템별 완료된 교환 수 (기간 지정 시 [since, until))"""
        conditions = [
            ExchangeTransactionModel.user_id == user_id,
            ExchangeTransactionModel.exchange_item_id == item_id,
            ExchangeTransactionModel.status == ExchangeStatusEnum.COMPLETED,
        ]
        if since is not None:
            conditions.append(ExchangeTransactionModel.executed_at >= since)
        if until is not None:
            conditions.append(ExchangeTransactionModel.executed_at < until)

        return self.db.execute(
            select(func.count(ExchangeTransactionModel.id)).where(and_(*conditions))
        ).scalar_one()

    def create_completed_exchange(
        self,
        user_id: int,
        item_id: int,
        quantity: int,
        medal_cost: int,
        executed_at: datetime,
        ledger_transaction_id: int,
    ) -> Tuple[ExchangeTransactionResponse, UserExchangeItemResponse]:
        """완료된 교환 거래와 지급 기록 생성 (커밋하지 않음)"""
        transaction = ExchangeTransactionModel(
            user_id=user_id,
            exchange_item_id=item_id,
            quantity=quantity,
            medal_cost=medal_cost,
            status=ExchangeStatusEnum.COMPLETED,
            executed_at=executed_at,
            ledger_transaction_id=ledger_transaction_id,
        )
        self.db.add(transaction)
        self.db.flush()

        grant = UserExchangeItemModel(
            user_id=user_id,
            exchange_item_id=item_id,
            transaction_id=transaction.id,
            acquired_at=executed_at,
            is_active=True,
        )
        self.db.add(grant)
        self.db.flush()

        return (
            ExchangeTransactionResponse.model_validate(transaction),
            UserExchangeItemResponse.model_validate(grant),
        )

    def mark_transaction_failed(
        self, transaction_id: int
    ) -> Optional[ExchangeTransactionResponse]:
        """COMPLETED → FAILED 전환 (이미 취소된 거래는 None, 커밋하지 않음)"""
        updated_id = self.db.execute(
            update(ExchangeTransactionModel)
            .where(
                ExchangeTransactionModel.id == transaction_id,
                ExchangeTransactionModel.status == ExchangeStatusEnum.COMPLETED,
            )
            .values(status=ExchangeStatusEnum.FAILED)
            .returning(ExchangeTransactionModel.id)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()
        if updated_id is None:
            return None

        instance = (
            self.db.query(ExchangeTransactionModel)
            .filter(ExchangeTransactionModel.id == transaction_id)
            .populate_existing()
            .one()
        )
        return ExchangeTransactionResponse.model_validate(instance)

    def deactivate_grant(self, transaction_id: int) -> None:
        self.db.execute(
            update(UserExchangeItemModel)
            .where(UserExchangeItemModel.transaction_id == transaction_id)
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )

    # ==================== 조회 ====================

    def get_user_history(
        self, user_id: int, limit: int, offset: int
    ) -> Tuple[List[ExchangeTransactionResponse], int]:
        """사용자 교환 내역 (최신순)"""
        query = self.db.query(ExchangeTransactionModel).filter(
            ExchangeTransactionModel.user_id == user_id
        )
        total = query.count()
        instances = (
            query.order_by(
                desc(ExchangeTransactionModel.executed_at),
                desc(ExchangeTransactionModel.id),
            )
            .limit(limit)
            .offset(offset)
            .all()
        )
        return [ExchangeTransactionResponse.model_validate(i) for i in instances], total

    def get_user_inventory(
        self, user_id: int, limit: int, offset: int
    ) -> Tuple[List[UserExchangeItemResponse], int]:
        """사용자 보유 아이템 (활성 지급 기록만, 아이템 정보 포함)"""
        query = (
            self.db.query(
                UserExchangeItemModel,
                ExchangeItemModel.name,
                ExchangeItemModel.issuer_id,
            )
            .join(
                ExchangeItemModel,
                ExchangeItemModel.id == UserExchangeItemModel.exchange_item_id,
            )
            .filter(
                UserExchangeItemModel.user_id == user_id,
                UserExchangeItemModel.is_active.is_(True),
            )
        )
        total = query.count()
        rows = (
            query.order_by(desc(UserExchangeItemModel.acquired_at), desc(UserExchangeItemModel.id))
            .limit(limit)
            .offset(offset)
            .all()
        )

        items = []
        for grant, item_name, issuer_id in rows:
            response = UserExchangeItemResponse.model_validate(grant)
            response.item_name = item_name
            response.issuer_id = issuer_id
            items.append(response)
        return items, total

    def get_statistics(self, issuer_id: Optional[str] = None) -> ExchangeStatisticsResponse:
        """완료된 교환 통계 + 상위 5개 아이템"""
        base_conditions = [ExchangeTransactionModel.status == ExchangeStatusEnum.COMPLETED]
        if issuer_id:
            base_conditions.append(ExchangeItemModel.issuer_id == issuer_id)

        totals = self.db.execute(
            select(
                func.count(ExchangeTransactionModel.id).label("total_exchanges"),
                func.coalesce(func.sum(ExchangeTransactionModel.quantity), 0).label(
                    "total_quantity"
                ),
                func.coalesce(func.sum(ExchangeTransactionModel.medal_cost), 0).label(
                    "total_medals_spent"
                ),
                func.count(func.distinct(ExchangeTransactionModel.user_id)).label(
                    "unique_users"
                ),
            )
            .select_from(ExchangeTransactionModel)
            .join(
                ExchangeItemModel,
                ExchangeItemModel.id == ExchangeTransactionModel.exchange_item_id,
            )
            .where(and_(*base_conditions))
        ).one()

        exchange_count = func.count(ExchangeTransactionModel.id).label("exchange_count")
        top_rows = self.db.execute(
            select(
                ExchangeItemModel.id,
                ExchangeItemModel.name,
                exchange_count,
                func.sum(ExchangeTransactionModel.quantity).label("total_quantity"),
                func.sum(ExchangeTransactionModel.medal_cost).label("medals_spent"),
            )
            .select_from(ExchangeTransactionModel)
            .join(
                ExchangeItemModel,
                ExchangeItemModel.id == ExchangeTransactionModel.exchange_item_id,
            )
            .where(and_(*base_conditions))
            .group_by(ExchangeItemModel.id, ExchangeItemModel.name)
            .order_by(desc(exchange_count), ExchangeItemModel.id)
            .limit(5)
        ).all()

        return ExchangeStatisticsResponse(
            issuer_id=issuer_id,
            total_exchanges=totals.total_exchanges,
            total_quantity=int(totals.total_quantity),
            total_medals_spent=int(totals.total_medals_spent),
            unique_users=totals.unique_users,
            top_items=[
                ExchangeItemStat(
                    item_id=row.id,
                    name=row.name,
                    exchange_count=row.exchange_count,
                    total_quantity=int(row.total_quantity or 0),
                    medals_spent=int(row.medals_spent or 0),
                )
                for row in top_rows
            ],
        )
