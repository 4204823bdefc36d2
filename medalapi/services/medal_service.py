from typing import Callable, Optional

from sqlalchemy.orm import Session

from medalapi.core.exceptions import (
    IntegrityViolationError,
    InvalidMedalAmountError,
    MedalErrorCode,
    ServiceException,
    failure_result,
)
from medalapi.models.medals import (
    POOL_SCOPE_KEY,
    MedalTransactionType,
    normalize_issuer_id,
    scope_key_for,
)
from medalapi.repositories.medal_repository import MedalRepository
from medalapi.schemas.medals import (
    BalanceDiscrepancy,
    IntegrityReport,
    IssuerBalance,
    MedalBalanceResponse,
    MedalOperationResult,
    MedalTransactionEntry,
    MedalTransactionHistoryResponse,
    PoolBalanceResponse,
    ReconcileResult,
)
from medalapi.utils.db_retry import TRANSIENT_DB_ERRORS, retry_once
from medalapi.utils.timezone_utils import utcnow
import logging

logger = logging.getLogger(__name__)


class MedalLedgerService:
    """
    메달 잔액 원장 서비스

    모든 잔액 변경은 이 서비스를 거칩니다. 비즈니스 실패(잔액 부족 등)는
    예외가 아니라 MedalOperationResult(success=False)로 반환합니다.

    commit=False로 호출하면 호출자(교환/뽑기 서비스)의 원자적 단위에
    참여하며, 이때는 실패가 ServiceException으로 전파되어 호출자가
    전체 단위를 롤백합니다.
    """

    def __init__(self, db: Session, repository: Optional[MedalRepository] = None):
        self.db = db
        self.medal_repo = repository or MedalRepository(db)

    # ==================== 조회 ====================

    def get_balance(self, user_id: int, issuer_id: Optional[str] = None) -> int:
        """(user, issuer) 잔액 조회 - 행이 없으면 0"""
        issuer_id = normalize_issuer_id(issuer_id)
        return retry_once(
            self.db,
            "get_balance",
            lambda: self.medal_repo.get_balance(user_id, issuer_id),
        )

    def get_balance_response(
        self, user_id: int, issuer_id: Optional[str] = None
    ) -> MedalBalanceResponse:
        issuer_id = normalize_issuer_id(issuer_id)
        balance = self.get_balance(user_id, issuer_id)
        return MedalBalanceResponse(user_id=user_id, issuer_id=issuer_id, balance=balance)

    def get_pool_balance(self, user_id: int) -> PoolBalanceResponse:
        """풀 잔액과 발행자별 잔액 요약

        Args:
            user_id: 사용자 ID

        Returns:
            PoolBalanceResponse: 풀 잔액, 발행자별 잔액, 합계
        """
        scopes = retry_once(
            self.db,
            "get_pool_balance",
            lambda: self.medal_repo.get_scope_balances(user_id),
        )

        pool_balance = 0
        issuer_balances = []
        for issuer_id, balance in scopes:
            if issuer_id is None:
                pool_balance = balance
            else:
                issuer_balances.append(IssuerBalance(issuer_id=issuer_id, balance=balance))

        return PoolBalanceResponse(
            user_id=user_id,
            pool_balance=pool_balance,
            issuer_balances=issuer_balances,
            total_balance=pool_balance + sum(b.balance for b in issuer_balances),
        )

    def get_transaction_history(
        self,
        user_id: int,
        issuer_id: Optional[str] = None,
        transaction_type: Optional[MedalTransactionType] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> MedalTransactionHistoryResponse:
        """사용자 원장 조회 (최신순)

        issuer_id가 없으면 모든 범위(풀 포함)의 내역과 전체 잔액 합계를 반환합니다.
        """
        issuer_id = normalize_issuer_id(issuer_id)
        entries, total_count = retry_once(
            self.db,
            "get_transaction_history",
            lambda: self.medal_repo.get_transaction_history(
                user_id=user_id,
                issuer_id=issuer_id,
                transaction_type=transaction_type,
                limit=limit,
                offset=offset,
            ),
        )

        if issuer_id is not None:
            balance = self.get_balance(user_id, issuer_id)
        else:
            balance = self.get_pool_balance(user_id).total_balance

        return MedalTransactionHistoryResponse(
            balance=balance,
            entries=entries,
            total_count=total_count,
            limit=limit,
            offset=offset,
            has_next=offset + limit < total_count,
        )

    # ==================== 변경 ====================

    def credit(
        self,
        user_id: int,
        issuer_id: Optional[str],
        amount: int,
        transaction_type: MedalTransactionType,
        reason: Optional[str] = None,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
        commit: bool = True,
    ) -> MedalOperationResult:
        """메달 지급 (amount > 0)"""
        if amount <= 0:
            return self._reject(InvalidMedalAmountError(amount), commit)

        return self._mutate(
            "credit",
            lambda: self.medal_repo.apply_delta(
                user_id=user_id,
                issuer_id=issuer_id,
                delta=amount,
                transaction_type=transaction_type,
                reason=reason,
                reference_id=reference_id,
                reference_type=reference_type,
                commit=commit,
            ),
            commit,
        )

    def debit(
        self,
        user_id: int,
        issuer_id: Optional[str],
        amount: int,
        transaction_type: MedalTransactionType,
        reason: Optional[str] = None,
        reference_id: Optional[str] = None,
        reference_type: Optional[str] = None,
        commit: bool = True,
    ) -> MedalOperationResult:
        """메달 차감 (amount > 0) - 잔액 부족 시 INSUFFICIENT_BALANCE"""
        if amount <= 0:
            return self._reject(InvalidMedalAmountError(amount), commit)

        return self._mutate(
            "debit",
            lambda: self.medal_repo.apply_delta(
                user_id=user_id,
                issuer_id=issuer_id,
                delta=-amount,
                transaction_type=transaction_type,
                reason=reason,
                reference_id=reference_id,
                reference_type=reference_type,
                commit=commit,
            ),
            commit,
        )

    def adjust_admin(
        self,
        user_id: int,
        issuer_id: Optional[str],
        amount: int,
        reason: str,
        admin_id: int,
    ) -> MedalOperationResult:
        """관리자 잔액 조정

        Args:
            user_id: 대상 사용자 ID
            issuer_id: 발행자 ID (None이면 풀)
            amount: 조정량 (양수: 추가, 음수: 차감, 0 불가)
            reason: 조정 사유
            admin_id: 조정한 관리자 ID

        Returns:
            MedalOperationResult: 조정 결과
        """
        if amount == 0:
            return self._reject(InvalidMedalAmountError(amount), commit=True)

        logger.info(
            f"Admin {admin_id} adjusting medals for user {user_id} "
            f"(issuer={issuer_id}): {amount:+d}, reason={reason}"
        )
        return self._mutate(
            "adjust_admin",
            lambda: self.medal_repo.apply_delta(
                user_id=user_id,
                issuer_id=issuer_id,
                delta=amount,
                transaction_type=MedalTransactionType.ADMIN_ADJUSTMENT,
                reason=f"Admin adjustment by {admin_id}: {reason}",
                reference_id=str(admin_id),
                reference_type="admin",
            ),
            commit=True,
        )

    def transfer_from_pool(
        self,
        user_id: int,
        to_issuer_id: str,
        amount: int,
        from_issuer_id: Optional[str] = None,
    ) -> MedalOperationResult:
        """풀(또는 다른 발행자) 잔액을 발행자 잔액으로 이동

        출금/입금 두 원장 항목(POOL_TRANSFER)이 하나의 트랜잭션으로 기록됩니다.
        두 잔액 행은 scope_key 순서로 먼저 락을 잡아 반대 방향 이동과 교착되지 않습니다.
        """
        from_issuer_id = normalize_issuer_id(from_issuer_id)
        if amount <= 0 or not to_issuer_id or from_issuer_id == to_issuer_id:
            return self._reject(InvalidMedalAmountError(amount), commit=True)

        reference_id = f"{from_issuer_id or POOL_SCOPE_KEY}->{to_issuer_id}"

        def transfer() -> list:
            for issuer_id in sorted((from_issuer_id, to_issuer_id), key=scope_key_for):
                self.medal_repo.lock_balance(user_id, issuer_id)

            outgoing = self.medal_repo.apply_delta(
                user_id=user_id,
                issuer_id=from_issuer_id,
                delta=-amount,
                transaction_type=MedalTransactionType.POOL_TRANSFER,
                reason=f"Transfer to {to_issuer_id}",
                reference_id=reference_id,
                reference_type="transfer",
                commit=False,
            )
            incoming = self.medal_repo.apply_delta(
                user_id=user_id,
                issuer_id=to_issuer_id,
                delta=amount,
                transaction_type=MedalTransactionType.POOL_TRANSFER,
                reason=f"Transfer from {from_issuer_id or 'pool'}",
                reference_id=reference_id,
                reference_type="transfer",
                commit=False,
            )
            self.db.commit()
            return [outgoing, incoming]

        try:
            entries = transfer()
        except ServiceException as e:
            self.db.rollback()
            logger.info(f"Medal transfer rejected for user {user_id}: {e.message}")
            return failure_result(MedalOperationResult, e)
        except TRANSIENT_DB_ERRORS as e:
            self.db.rollback()
            logger.error(f"Medal transfer failed for user {user_id}: {str(e)}")
            return self._transient_failure("transfer_from_pool")
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"Transferred {amount} medals for user {user_id}: {reference_id}"
        )
        return MedalOperationResult(
            success=True,
            message="Transfer completed successfully",
            transaction=entries[-1],
            transactions=entries,
        )

    # ==================== 정합성 ====================

    def verify_integrity(self, user_id: Optional[int] = None) -> IntegrityReport:
        """
        원장 재계산 기반 정합성 검증 (읽기 전용, 복구하지 않음)

        검증 방식:
        1. (user, scope)별 원장 amount 합계 계산
        2. 저장된 잔액과 비교
        3. 원장만 있고 잔액 행이 없는 경우도 불일치로 취급

        Args:
            user_id: 특정 사용자만 검증 (None이면 전체)

        Returns:
            IntegrityReport: 검증 결과
        """
        stored = self.medal_repo.get_stored_balances(user_id)
        ledger = self.medal_repo.get_ledger_sums(user_id)

        discrepancies = []
        keys = set(stored) | set(ledger)
        for key in sorted(keys):
            actual = stored.get(key, 0)
            summary = ledger.get(key)
            expected = summary["total"] if summary else 0
            if expected == actual:
                continue

            uid, scope_key = key
            discrepancy = BalanceDiscrepancy(
                user_id=uid,
                issuer_id=None if scope_key == POOL_SCOPE_KEY else scope_key,
                expected_balance=expected,
                actual_balance=actual,
                discrepancy=actual - expected,
                last_transaction_at=summary["last_transaction_at"] if summary else None,
            )
            discrepancies.append(discrepancy)
            logger.warning(
                f"Medal balance mismatch for user {uid} scope {scope_key}: "
                f"stored={actual}, ledger={expected}"
            )

        report = IntegrityReport(
            checked=len(keys),
            valid=len(keys) - len(discrepancies),
            invalid=len(discrepancies),
            discrepancies=discrepancies,
            checked_at=utcnow(),
        )
        logger.info(
            f"Integrity check completed: {report.checked} checked, {report.invalid} invalid"
        )
        return report

    def run_integrity_job(self, user_id: Optional[int] = None) -> IntegrityReport:
        """정합성 검증 배치 - 불일치가 있으면 IntegrityViolationError"""
        report = self.verify_integrity(user_id)
        if report.invalid:
            logger.error(
                f"Ledger integrity violation detected: {report.invalid} balance(s)"
            )
            raise IntegrityViolationError(
                report.invalid,
                {"discrepancies": [d.model_dump(mode="json") for d in report.discrepancies]},
            )
        return report

    def reconcile_balance(
        self, user_id: int, issuer_id: Optional[str], admin_id: int, reason: str
    ) -> ReconcileResult:
        """저장된 잔액을 원장 합계로 복구 (관리자 전용, 감사 기록 저장)"""
        issuer_id = normalize_issuer_id(issuer_id)
        try:
            audit = self.medal_repo.reconcile_balance(user_id, issuer_id, admin_id, reason)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        changed = audit.previous_balance != audit.reconciled_balance
        log = logger.warning if changed else logger.info
        log(
            f"Admin {admin_id} reconciled medal balance for user {user_id} "
            f"scope {audit.scope_key}: {audit.previous_balance} -> "
            f"{audit.reconciled_balance}, reason={reason} (audit {audit.id})"
        )
        return ReconcileResult(
            user_id=user_id,
            issuer_id=issuer_id,
            previous_balance=audit.previous_balance,
            reconciled_balance=audit.reconciled_balance,
            changed=changed,
            audit_id=audit.id,
        )

    # ==================== 내부 ====================

    def _mutate(
        self,
        operation: str,
        apply: Callable[[], MedalTransactionEntry],
        commit: bool,
    ) -> MedalOperationResult:
        if not commit:
            # 호출자의 원자적 단위 - 실패는 예외로 전파
            entry = apply()
            return MedalOperationResult(success=True, transaction=entry, transactions=[entry])

        try:
            entry = apply()
        except ServiceException as e:
            logger.info(f"Medal {operation} rejected: {e.message}")
            return failure_result(MedalOperationResult, e)
        except TRANSIENT_DB_ERRORS as e:
            logger.error(f"Medal {operation} failed: {str(e)}")
            return self._transient_failure(operation)

        logger.info(
            f"Medal {operation} applied for user {entry.user_id} "
            f"(issuer={entry.issuer_id}): {entry.amount:+d} -> {entry.balance_after}"
        )
        return MedalOperationResult(
            success=True,
            message="Transaction completed successfully",
            transaction=entry,
            transactions=[entry],
        )

    def _reject(self, error: ServiceException, commit: bool) -> MedalOperationResult:
        if not commit:
            raise error
        return failure_result(MedalOperationResult, error)

    @staticmethod
    def _transient_failure(operation: str) -> MedalOperationResult:
        return MedalOperationResult(
            success=False,
            error_code=MedalErrorCode.TRANSIENT_FAILURE,
            message=f"Storage temporarily unavailable during {operation}",
        )
