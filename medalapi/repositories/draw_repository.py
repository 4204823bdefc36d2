from typing import List, Optional, Tuple

from sqlalchemy import desc, select, update
from sqlalchemy.orm import Session

from medalapi.models.draws import DrawPaymentRecord, DrawResult as DrawResultModel
from medalapi.repositories.base import BaseRepository, dialect_insert
from medalapi.schemas.draws import DrawResultResponse


class DrawRepository(BaseRepository[DrawResultModel, DrawResultResponse]):
    """뽑기 결과 및 결제 사용 기록 리포지토리"""

    def __init__(self, db: Session):
        super().__init__(DrawResultModel, DrawResultResponse, db)

    def find_by_payment_reference(
        self, payment_reference: str
    ) -> Optional[DrawResultResponse]:
        """결제 참조로 정산된 뽑기 결과 조회 (없으면 None)"""
        instance = (
            self.db.query(DrawResultModel)
            .join(DrawPaymentRecord, DrawPaymentRecord.draw_result_id == DrawResultModel.id)
            .filter(DrawPaymentRecord.payment_reference == payment_reference)
            .first()
        )
        return self._to_schema(instance)

    def is_payment_used(self, payment_reference: str) -> bool:
        return (
            self.db.execute(
                select(DrawPaymentRecord.id).where(
                    DrawPaymentRecord.payment_reference == payment_reference
                )
            ).first()
            is not None
        )

    def add_draw_result(
        self,
        user_id: int,
        gacha_id: str,
        issuer_id: Optional[str],
        draw_count: int,
        payment_reference: str,
        payment_amount: int,
        medals_earned: int,
        items: List[dict],
    ) -> int:
        """뽑기 결과 삽입 (커밋하지 않음) - 생성된 ID 반환"""
        instance = DrawResultModel(
            user_id=user_id,
            gacha_id=gacha_id,
            issuer_id=issuer_id,
            draw_count=draw_count,
            payment_reference=payment_reference,
            payment_amount=payment_amount,
            medals_earned=medals_earned,
            items=items,
        )
        self.db.add(instance)
        self.db.flush()
        return instance.id

    def claim_payment_reference(
        self, payment_reference: str, draw_result_id: int, user_id: int
    ) -> Optional[int]:
        """
        결제 사용 기록 insert-if-absent (커밋하지 않음)

        Returns:
            Optional[int]: 생성된 기록 ID. 이미 사용된 결제면 None
        """
        stmt = (
            dialect_insert(self.db, DrawPaymentRecord.__table__)
            .values(
                payment_reference=payment_reference,
                draw_result_id=draw_result_id,
                user_id=user_id,
            )
            .on_conflict_do_nothing(index_elements=["payment_reference"])
            .returning(DrawPaymentRecord.__table__.c.id)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def link_ledger_transaction(self, draw_result_id: int, ledger_transaction_id: int) -> None:
        self.db.execute(
            update(DrawResultModel)
            .where(DrawResultModel.id == draw_result_id)
            .values(ledger_transaction_id=ledger_transaction_id)
            .execution_options(synchronize_session=False)
        )

    def get_draw(self, draw_result_id: int) -> Optional[DrawResultResponse]:
        instance = (
            self.db.query(DrawResultModel)
            .filter(DrawResultModel.id == draw_result_id)
            .populate_existing()
            .first()
        )
        return self._to_schema(instance)

    def get_user_draws(
        self, user_id: int, limit: int = 20, offset: int = 0
    ) -> Tuple[List[DrawResultResponse], int]:
        """사용자 뽑기 내역 (최신순)"""
        query = self.db.query(DrawResultModel).filter(DrawResultModel.user_id == user_id)
        total = query.count()
        instances = query.order_by(desc(DrawResultModel.id)).limit(limit).offset(offset).all()
        return self._to_schemas(instances), total
