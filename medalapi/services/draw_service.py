"""
뽑기 정산 서비스 - 결제 1건당 뽑기 1회 보장

처리 흐름:
1. 결제 참조 사용 여부 확인 (이미 사용 → PAYMENT_ALREADY_USED)
2. 외부 결제 확인 (미확인 → PAYMENT_NOT_CONFIRMED, 결제 시스템 장애 → TRANSIENT_FAILURE)
3. 외부 추첨 로직 실행, 보상 메달 계산
4. 원자적 단위: 뽑기 결과 저장 → 결제 사용 기록 insert-if-absent →
   메달 적립 → 커밋

외부 호출(결제 확인, 추첨)은 모두 원자적 단위 이전에 수행되어 네트워크
대기 중에는 어떤 락도 잡고 있지 않습니다. 동시에 같은 결제 참조로 들어온
요청은 결제 사용 기록의 유니크 제약에서 하나만 성공합니다.
"""

from typing import List, Optional

from sqlalchemy.orm import Session

from medalapi.config import settings
from medalapi.core.exceptions import (
    InvalidDrawCountError,
    PaymentAlreadyUsedError,
    PaymentNotConfirmedError,
    ServiceException,
    failure_result,
)
from medalapi.models.medals import MedalTransactionType
from medalapi.providers.draw_logic import DrawLogic, DrawnItem
from medalapi.providers.payment_gateway import PaymentGateway
from medalapi.repositories.draw_repository import DrawRepository
from medalapi.schemas.draws import (
    DrawHistoryResponse,
    DrawResultResponse,
    DrawSettlementResult,
)
from medalapi.services.medal_service import MedalLedgerService
from medalapi.services.reward_policy import MedalRewardPolicy, TieredMedalRewardPolicy
from medalapi.utils.db_retry import retry_once
import logging

logger = logging.getLogger(__name__)


class DrawSettlementService:
    """뽑기 정산 서비스 - 결제 멱등성과 메달 적립"""

    def __init__(
        self,
        db: Session,
        ledger: MedalLedgerService,
        payment_gateway: PaymentGateway,
        draw_logic: DrawLogic,
        reward_policy: Optional[MedalRewardPolicy] = None,
        repository: Optional[DrawRepository] = None,
    ):
        self.db = db
        self.ledger = ledger
        self.payment_gateway = payment_gateway
        self.draw_logic = draw_logic
        self.reward_policy = reward_policy or TieredMedalRewardPolicy()
        self.draw_repo = repository or DrawRepository(db)

    def settle_draw(
        self, user_id: int, gacha_id: str, count: int, payment_reference: str
    ) -> DrawSettlementResult:
        """결제 완료된 뽑기 실행 및 메달 적립

        Args:
            user_id: 사용자 ID
            gacha_id: 가챠 ID
            count: 뽑기 횟수 (허용 값: settings.ALLOWED_DRAW_COUNTS)
            payment_reference: 외부 결제 참조 ID (재시도 시 같은 값 사용)

        Returns:
            DrawSettlementResult: 성공 시 뽑기 결과, 실패 시 error_code
        """
        try:
            items, issuer_id, payment_amount, medals = self._prepare(
                user_id, gacha_id, count, payment_reference
            )
            draw_result = retry_once(
                self.db,
                "settle_draw",
                lambda: self._persist(
                    user_id,
                    gacha_id,
                    count,
                    payment_reference,
                    items,
                    issuer_id,
                    payment_amount,
                    medals,
                ),
            )
        except ServiceException as e:
            self.db.rollback()
            logger.info(
                f"Draw settlement rejected for payment {payment_reference} "
                f"[{e.code.value}]: {e.message}"
            )
            return failure_result(DrawSettlementResult, e)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Draw settlement failed for payment {payment_reference}: {str(e)}")
            raise

        logger.info(
            f"Settled draw {draw_result.id} for user {user_id}: {count}x {gacha_id}, "
            f"{medals} medals (payment {payment_reference})"
        )
        return DrawSettlementResult(
            success=True, message="Draw completed successfully", draw_result=draw_result
        )

    def _prepare(
        self, user_id: int, gacha_id: str, count: int, payment_reference: str
    ):
        """원자적 단위 이전 단계: 검증, 결제 확인, 추첨, 보상 계산"""
        if count not in settings.ALLOWED_DRAW_COUNTS:
            raise InvalidDrawCountError(count, settings.ALLOWED_DRAW_COUNTS)

        if retry_once(
            self.db,
            "check_payment_reference",
            lambda: self.draw_repo.is_payment_used(payment_reference),
        ):
            raise PaymentAlreadyUsedError(payment_reference, self._settled_draw_id(payment_reference))

        if not self.payment_gateway.confirm_payment(payment_reference):
            raise PaymentNotConfirmedError(payment_reference)

        items: List[DrawnItem] = self.draw_logic.execute_draw_logic(gacha_id, count)
        issuer_id = self.draw_logic.issuer_for(gacha_id)

        payment_amount = settings.GACHA_PRICE_PER_DRAW * count
        medals = self.reward_policy.calculate_medals(payment_amount, count)
        return items, issuer_id, payment_amount, medals

    def _persist(
        self,
        user_id: int,
        gacha_id: str,
        count: int,
        payment_reference: str,
        items: List[DrawnItem],
        issuer_id: Optional[str],
        payment_amount: int,
        medals: int,
    ) -> DrawResultResponse:
        """
        원자적 단위 - 결제 사용 기록의 유니크 제약으로 보호되어 재시도해도 안전
        """
        draw_result_id = self.draw_repo.add_draw_result(
            user_id=user_id,
            gacha_id=gacha_id,
            issuer_id=issuer_id,
            draw_count=count,
            payment_reference=payment_reference,
            payment_amount=payment_amount,
            medals_earned=medals,
            items=[item.to_dict() for item in items],
        )

        if self.draw_repo.claim_payment_reference(payment_reference, draw_result_id, user_id) is None:
            # 동시 요청이 먼저 결제를 사용함 - 뽑기 결과 삽입까지 롤백
            self.db.rollback()
            raise PaymentAlreadyUsedError(
                payment_reference, self._settled_draw_id(payment_reference)
            )

        if medals > 0:
            credit = self.ledger.credit(
                user_id=user_id,
                issuer_id=issuer_id,
                amount=medals,
                transaction_type=MedalTransactionType.DRAW_REWARD,
                reason=f"Gacha {gacha_id} x{count}",
                reference_id=str(draw_result_id),
                reference_type="draw",
                commit=False,
            )
            self.draw_repo.link_ledger_transaction(draw_result_id, credit.transaction.id)

        self.db.commit()
        return self.draw_repo.get_draw(draw_result_id)

    def _settled_draw_id(self, payment_reference: str) -> Optional[int]:
        draw = self.draw_repo.find_by_payment_reference(payment_reference)
        return draw.id if draw else None

    # ==================== 조회 ====================

    def get_draw_by_payment_reference(
        self, payment_reference: str
    ) -> Optional[DrawResultResponse]:
        """PAYMENT_ALREADY_USED를 받은 호출자가 기존 결과를 조회할 때 사용"""
        return retry_once(
            self.db,
            "get_draw_by_payment_reference",
            lambda: self.draw_repo.find_by_payment_reference(payment_reference),
        )

    def get_draw_history(
        self, user_id: int, limit: int = 20, offset: int = 0
    ) -> DrawHistoryResponse:
        draws, total = retry_once(
            self.db,
            "get_draw_history",
            lambda: self.draw_repo.get_user_draws(user_id, limit=limit, offset=offset),
        )
        return DrawHistoryResponse(
            draws=draws,
            total_count=total,
            limit=limit,
            offset=offset,
            has_next=offset + limit < total,
        )

