"""
메달 리포지토리 - 잔액/원장 데이터베이스 접근

이 파일은 메달 잔액 변경의 핵심 저장 로직을 담당합니다:
1. 잔액 행 지연 생성 (insert-if-absent)
2. 조건부 원자적 잔액 변경 (음수 잔액 방지)
3. 원장(Ledger) 기록
4. 원장 기반 정합성 검증용 집계
5. 관리자 잔액 복구와 감사 기록

핵심 특징:
- 잔액 검사와 변경이 하나의 UPDATE 문에서 수행되어 동시 요청에도
  음수 잔액이 발생하지 않습니다
- UPDATE가 잡은 행 락이 같은 (user, scope)의 변경을 직렬화합니다
- commit=False로 호출하면 호출자의 트랜잭션에 참여합니다
"""

from typing import Dict, List, Optional, Tuple

from sqlalchemy import desc, func, select, update
from sqlalchemy.orm import Session

from medalapi.core.exceptions import (
    InsufficientMedalBalanceError,
    InvalidMedalAmountError,
)
from medalapi.models.medals import (
    MedalBalance,
    MedalBalanceAudit,
    MedalTransaction,
    MedalTransactionType,
    normalize_issuer_id,
    scope_key_for,
)
from medalapi.repositories.base import BaseRepository, dialect_insert
from medalapi.schemas.medals import MedalTransactionEntry
from medalapi.utils.timezone_utils import ensure_utc, utcnow


class MedalRepository(BaseRepository[MedalTransaction, MedalTransactionEntry]):
    """
    메달 리포지토리 - 잔액 테이블과 원장 테이블을 함께 관리

    잔액 테이블은 원장 적용(apply_delta)으로만 변경됩니다.
    예외: reconcile_balance는 관리자 복구 전용입니다.
    """

    def __init__(self, db: Session):
        super().__init__(MedalTransaction, MedalTransactionEntry, db)

    # ==================== 잔액 조회 ====================

    def get_balance(self, user_id: int, issuer_id: Optional[str] = None) -> int:
        """
        (user_id, issuer_id) 잔액 조회

        Returns:
            int: 현재 잔액 (행이 없으면 0)
        """
        balance = self.db.execute(
            select(MedalBalance.balance).where(
                MedalBalance.user_id == user_id,
                MedalBalance.scope_key == scope_key_for(issuer_id),
            )
        ).scalar_one_or_none()
        return int(balance) if balance is not None else 0

    def get_scope_balances(self, user_id: int) -> List[Tuple[Optional[str], int]]:
        """사용자의 모든 (issuer_id, balance) 목록 - 풀은 issuer_id None"""
        rows = self.db.execute(
            select(MedalBalance.issuer_id, MedalBalance.balance)
            .where(MedalBalance.user_id == user_id)
            .order_by(MedalBalance.scope_key)
        ).all()
        return [(row.issuer_id, int(row.balance)) for row in rows]

    # ==================== 잔액 변경 ====================

    def _ensure_balance_row(self, user_id: int, issuer_id: Optional[str]) -> None:
        """잔액 행이 없으면 0으로 생성 (동시 생성 시 충돌은 무시)"""
        issuer_id = normalize_issuer_id(issuer_id)
        stmt = (
            dialect_insert(self.db, MedalBalance.__table__)
            .values(
                user_id=user_id,
                issuer_id=issuer_id,
                scope_key=scope_key_for(issuer_id),
                balance=0,
            )
            .on_conflict_do_nothing(index_elements=["user_id", "scope_key"])
        )
        self.db.execute(stmt)

    def apply_delta(
        self,
        user_id: int,
        issuer_id: Optional[str],
        delta: int,
        transaction_type: MedalTransactionType,
        reason: Optional[str] = None,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
        commit: bool = True,
    ) -> MedalTransactionEntry:
        """
        잔액 변경 + 원장 기록 (원자적)

        Args:
            user_id: 대상 사용자 ID
            issuer_id: 발행자 ID (None이면 풀)
            delta: 변동량 (양수=증가, 음수=감소, 0 불가)
            transaction_type: 원장 거래 유형
            reason: 변동 사유
            reference_id: 변동을 일으킨 대상 ID
            reference_type: 대상 종류 (draw, exchange, admin 등)
            commit: False면 호출자의 트랜잭션에 참여 (커밋/롤백은 호출자 책임)

        Returns:
            MedalTransactionEntry: 생성된 원장 항목

        Raises:
            InvalidMedalAmountError: delta == 0
            InsufficientMedalBalanceError: 적용 후 잔액이 음수가 되는 경우
        """
        if delta == 0:
            raise InvalidMedalAmountError(delta)

        issuer_id = normalize_issuer_id(issuer_id)
        scope_key = scope_key_for(issuer_id)
        try:
            self._ensure_balance_row(user_id, issuer_id)

            # 검사와 변경을 하나의 문장으로 - 조건 불충족 시 0행
            new_balance = self.db.execute(
                update(MedalBalance)
                .where(
                    MedalBalance.user_id == user_id,
                    MedalBalance.scope_key == scope_key,
                    MedalBalance.balance + delta >= 0,
                )
                .values(balance=MedalBalance.balance + delta)
                .returning(MedalBalance.balance)
                .execution_options(synchronize_session=False)
            ).scalar_one_or_none()

            if new_balance is None:
                raise InsufficientMedalBalanceError(
                    required=-delta, available=self.get_balance(user_id, issuer_id)
                )

            entry = MedalTransaction(
                user_id=user_id,
                issuer_id=issuer_id,
                scope_key=scope_key,
                transaction_type=transaction_type,
                amount=delta,
                balance_before=int(new_balance) - delta,
                balance_after=int(new_balance),
                reason=reason,
                reference_id=reference_id,
                reference_type=reference_type,
                occurred_at=utcnow(),
            )
            self.db.add(entry)
            self.db.flush()
            self.db.refresh(entry)

            if commit:
                self.db.commit()
        except Exception:
            if commit:
                self.db.rollback()
            raise

        return self._to_schema(entry)

    def lock_balance(self, user_id: int, issuer_id: Optional[str]) -> int:
        """
        잔액 행을 (없으면 생성 후) 행 락으로 잡고 현재 잔액 반환

        락은 호출자의 트랜잭션이 끝날 때까지 유지됩니다.
        """
        self._ensure_balance_row(user_id, issuer_id)
        balance = self.db.execute(
            select(MedalBalance.balance)
            .where(
                MedalBalance.user_id == user_id,
                MedalBalance.scope_key == scope_key_for(issuer_id),
            )
            .with_for_update()
        ).scalar_one()
        return int(balance)

    def reconcile_balance(
        self, user_id: int, issuer_id: Optional[str], admin_id: int, reason: str
    ) -> MedalBalanceAudit:
        """
        저장된 잔액을 원장 합계로 덮어쓰고 감사 기록 추가 (관리자 복구 전용, 커밋은 호출자)

        잔액 행 락을 먼저 잡은 뒤 원장 합계를 계산하므로, 그 사이에 같은
        (user, scope)로 들어온 변경은 합계에 포함되거나 락이 풀릴 때까지 대기합니다.

        Returns:
            MedalBalanceAudit: 복구 전후 잔액이 담긴 감사 기록
        """
        issuer_id = normalize_issuer_id(issuer_id)
        scope_key = scope_key_for(issuer_id)

        previous = self.lock_balance(user_id, issuer_id)
        expected = self.get_ledger_sum(user_id, issuer_id)

        self.db.execute(
            update(MedalBalance)
            .where(
                MedalBalance.user_id == user_id,
                MedalBalance.scope_key == scope_key,
            )
            .values(balance=expected)
            .execution_options(synchronize_session=False)
        )

        audit = MedalBalanceAudit(
            user_id=user_id,
            issuer_id=issuer_id,
            scope_key=scope_key,
            admin_id=admin_id,
            reason=reason,
            previous_balance=previous,
            reconciled_balance=expected,
            occurred_at=utcnow(),
        )
        self.db.add(audit)
        self.db.flush()
        return audit

    # ==================== 원장 조회 ====================

    def get_transaction_history(
        self,
        user_id: int,
        issuer_id: Optional[str] = None,
        transaction_type: Optional[MedalTransactionType] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[MedalTransactionEntry], int]:
        """사용자 원장 조회 (최신순, 페이징) - (항목 목록, 전체 수)"""
        query = self.db.query(MedalTransaction).filter(
            MedalTransaction.user_id == user_id
        )
        if issuer_id is not None:
            query = query.filter(MedalTransaction.scope_key == scope_key_for(issuer_id))
        if transaction_type is not None:
            query = query.filter(MedalTransaction.transaction_type == transaction_type)

        total_count = query.count()
        model_instances = (
            query.order_by(desc(MedalTransaction.id)).limit(limit).offset(offset).all()
        )
        return self._to_schemas(model_instances), total_count

    # ==================== 정합성 집계 ====================

    def get_stored_balances(
        self, user_id: Optional[int] = None
    ) -> Dict[Tuple[int, str], int]:
        """{(user_id, scope_key): balance}"""
        stmt = select(
            MedalBalance.user_id,
            MedalBalance.scope_key,
            MedalBalance.balance,
        )
        if user_id is not None:
            stmt = stmt.where(MedalBalance.user_id == user_id)

        return {
            (row.user_id, row.scope_key): int(row.balance)
            for row in self.db.execute(stmt).all()
        }

    def get_ledger_sums(self, user_id: Optional[int] = None) -> Dict[Tuple[int, str], dict]:
        """{(user_id, scope_key): {total, last_transaction_at}}"""
        stmt = select(
            MedalTransaction.user_id,
            MedalTransaction.scope_key,
            func.sum(MedalTransaction.amount).label("total"),
            func.max(MedalTransaction.occurred_at).label("last_transaction_at"),
        ).group_by(MedalTransaction.user_id, MedalTransaction.scope_key)
        if user_id is not None:
            stmt = stmt.where(MedalTransaction.user_id == user_id)

        return {
            (row.user_id, row.scope_key): {
                "total": int(row.total or 0),
                "last_transaction_at": ensure_utc(row.last_transaction_at),
            }
            for row in self.db.execute(stmt).all()
        }

    def get_ledger_sum(self, user_id: int, issuer_id: Optional[str]) -> int:
        """단일 (user, scope)의 원장 amount 합계"""
        total = self.db.execute(
            select(func.coalesce(func.sum(MedalTransaction.amount), 0)).where(
                MedalTransaction.user_id == user_id,
                MedalTransaction.scope_key == scope_key_for(issuer_id),
            )
        ).scalar_one()
        return int(total)
