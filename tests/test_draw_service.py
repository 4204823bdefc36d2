import httpx
from unittest.mock import patch
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from medalapi.core.exceptions import MedalErrorCode
from medalapi.models.draws import DrawPaymentRecord, DrawResult
from medalapi.models.medals import MedalTransactionType
from medalapi.providers.payment_gateway import HttpPaymentGateway
from medalapi.services.draw_service import DrawSettlementService


def _draw_count(db_session):
    return len(db_session.execute(select(DrawResult.id)).all())


def _payment_record_count(db_session):
    return len(db_session.execute(select(DrawPaymentRecord.id)).all())


class ReentrantPaymentGateway:
    """결제 확인 도중 같은 결제 참조로 다른 요청이 먼저 정산을 끝내는 상황 재현"""

    def __init__(self):
        self.service = None
        self.entered = False
        self.inner_result = None

    def confirm_payment(self, payment_reference: str) -> bool:
        if not self.entered and self.service is not None:
            self.entered = True
            self.inner_result = self.service.settle_draw(
                1, "gacha-vtuber", 1, payment_reference
            )
        return True


class FixedRewardPolicy:
    def __init__(self, medals: int):
        self.medals = medals

    def calculate_medals(self, payment_amount: int, draw_count: int) -> int:
        return self.medals


class TestSettleDraw:
    """결제 완료된 뽑기 정산"""

    def test_single_draw_credits_issuer_balance(self, draw_service, ledger, db_session):
        # When
        result = draw_service.settle_draw(1, "gacha-vtuber", 1, "pay-001")

        # Then
        assert result.success is True
        draw = result.draw_result
        assert draw.user_id == 1
        assert draw.issuer_id == "vtuber-1"
        assert draw.draw_count == 1
        assert draw.payment_amount == 100
        assert draw.medals_earned == 10
        assert len(draw.items) == 1
        assert draw.ledger_transaction_id is not None
        assert ledger.get_balance(1, "vtuber-1") == 10

        credit = ledger.get_transaction_history(1).entries[0]
        assert credit.id == draw.ledger_transaction_id
        assert credit.transaction_type == MedalTransactionType.DRAW_REWARD
        assert credit.reference_id == str(draw.id)
        assert credit.reference_type == "draw"

    def test_ten_draw_includes_bonus(self, draw_service, ledger):
        result = draw_service.settle_draw(1, "gacha-vtuber", 10, "pay-010")

        assert result.success is True
        assert result.draw_result.payment_amount == 1000
        assert result.draw_result.medals_earned == 150
        assert len(result.draw_result.items) == 10
        assert ledger.get_balance(1, "vtuber-1") == 150

    def test_gacha_without_issuer_credits_pool(self, draw_service, ledger):
        result = draw_service.settle_draw(1, "gacha-general", 1, "pay-pool")

        assert result.success is True
        assert result.draw_result.issuer_id is None
        assert ledger.get_balance(1) == 10

    def test_invalid_count_is_rejected_before_payment_check(
        self, draw_service, payment_gateway, db_session
    ):
        result = draw_service.settle_draw(1, "gacha-vtuber", 5, "pay-005")

        assert result.success is False
        assert result.error_code == MedalErrorCode.INVALID_DRAW_COUNT
        assert result.details["allowed"] == [1, 10]
        assert payment_gateway.calls == []
        assert _draw_count(db_session) == 0

    def test_unconfirmed_payment_leaves_reference_unused(
        self, draw_service, payment_gateway, draw_logic, ledger, db_session
    ):
        # Given
        payment_gateway.rejected_references.add("pay-pending")

        # When
        rejected = draw_service.settle_draw(1, "gacha-vtuber", 1, "pay-pending")

        # Then
        assert rejected.error_code == MedalErrorCode.PAYMENT_NOT_CONFIRMED
        assert draw_logic.calls == []
        assert _draw_count(db_session) == 0
        assert ledger.get_balance(1, "vtuber-1") == 0

        # 결제가 확인된 후에는 같은 참조로 정산 가능
        payment_gateway.rejected_references.clear()
        assert draw_service.settle_draw(1, "gacha-vtuber", 1, "pay-pending").success is True


class TestPaymentIdempotency:
    def test_retry_with_same_reference_returns_existing_draw(
        self, draw_service, payment_gateway, ledger, db_session
    ):
        # Given
        first = draw_service.settle_draw(1, "gacha-vtuber", 1, "pay-dup")

        # When
        second = draw_service.settle_draw(1, "gacha-vtuber", 1, "pay-dup")

        # Then
        assert second.success is False
        assert second.error_code == MedalErrorCode.PAYMENT_ALREADY_USED
        assert second.details["draw_result_id"] == first.draw_result.id
        assert payment_gateway.calls == ["pay-dup"]
        assert ledger.get_balance(1, "vtuber-1") == 10
        assert _draw_count(db_session) == 1

    def test_concurrent_settlement_of_same_payment(
        self, db_session, ledger, draw_logic
    ):
        # Given - 바깥 요청이 결제 확인을 기다리는 사이 안쪽 요청이 정산 완료
        gateway = ReentrantPaymentGateway()
        service = DrawSettlementService(
            db_session, ledger=ledger, payment_gateway=gateway, draw_logic=draw_logic
        )
        gateway.service = service

        # When
        outer = service.settle_draw(1, "gacha-vtuber", 1, "pay-race")

        # Then
        inner = gateway.inner_result
        assert inner.success is True
        assert outer.success is False
        assert outer.error_code == MedalErrorCode.PAYMENT_ALREADY_USED
        assert outer.details["draw_result_id"] == inner.draw_result.id
        assert _draw_count(db_session) == 1
        assert _payment_record_count(db_session) == 1
        assert ledger.get_balance(1, "vtuber-1") == 10
        assert ledger.verify_integrity().invalid == 0


class TestRewardPolicy:
    def test_custom_policy_is_applied(self, db_session, ledger, payment_gateway, draw_logic):
        service = DrawSettlementService(
            db_session,
            ledger=ledger,
            payment_gateway=payment_gateway,
            draw_logic=draw_logic,
            reward_policy=FixedRewardPolicy(7),
        )

        result = service.settle_draw(1, "gacha-vtuber", 10, "pay-policy")

        assert result.draw_result.medals_earned == 7
        assert ledger.get_balance(1, "vtuber-1") == 7

    def test_zero_medal_reward_records_draw_without_ledger_entry(
        self, db_session, ledger, payment_gateway, draw_logic
    ):
        service = DrawSettlementService(
            db_session,
            ledger=ledger,
            payment_gateway=payment_gateway,
            draw_logic=draw_logic,
            reward_policy=FixedRewardPolicy(0),
        )

        result = service.settle_draw(1, "gacha-vtuber", 1, "pay-zero")

        assert result.success is True
        assert result.draw_result.medals_earned == 0
        assert result.draw_result.ledger_transaction_id is None
        assert ledger.get_transaction_history(1).total_count == 0


class TestTransientFailures:
    def test_persist_is_retried_once(self, draw_service, ledger, db_session):
        # Given - 첫 번째 저장 시도만 실패
        original = draw_service.draw_repo.add_draw_result
        attempts = []

        def flaky_add_draw_result(**kwargs):
            attempts.append(kwargs["payment_reference"])
            if len(attempts) == 1:
                raise OperationalError("INSERT draw_results", {}, Exception("connection reset"))
            return original(**kwargs)

        # When
        with patch.object(draw_service.draw_repo, "add_draw_result", side_effect=flaky_add_draw_result):
            result = draw_service.settle_draw(1, "gacha-vtuber", 1, "pay-flaky")

        # Then
        assert result.success is True
        assert len(attempts) == 2
        assert _draw_count(db_session) == 1
        assert ledger.get_balance(1, "vtuber-1") == 10

    def test_second_failure_reports_transient_failure(self, draw_service, ledger, db_session):
        error = OperationalError("INSERT draw_results", {}, Exception("database down"))

        with patch.object(draw_service.draw_repo, "add_draw_result", side_effect=error):
            result = draw_service.settle_draw(1, "gacha-vtuber", 1, "pay-down")

        assert result.success is False
        assert result.error_code == MedalErrorCode.TRANSIENT_FAILURE
        assert _draw_count(db_session) == 0
        assert ledger.get_balance(1, "vtuber-1") == 0

        # 결제 참조는 소모되지 않았으므로 재시도 가능
        assert draw_service.settle_draw(1, "gacha-vtuber", 1, "pay-down").success is True

    def test_gateway_outage_is_transient_not_unconfirmed(
        self, db_session, ledger, draw_logic
    ):
        # Given - 결제 시스템에 연결할 수 없는 상황
        def handler(request):
            raise httpx.ConnectTimeout("connect timed out", request=request)

        service = DrawSettlementService(
            db_session,
            ledger=ledger,
            payment_gateway=HttpPaymentGateway(
                confirm_url="https://payments.example.com/v1/payments/{payment_reference}",
                timeout=1.0,
                transport=httpx.MockTransport(handler),
            ),
            draw_logic=draw_logic,
        )

        # When
        result = service.settle_draw(1, "gacha-vtuber", 1, "pay-outage")

        # Then
        assert result.success is False
        assert result.error_code == MedalErrorCode.TRANSIENT_FAILURE
        assert result.details["payment_reference"] == "pay-outage"
        assert draw_logic.calls == []
        assert _payment_record_count(db_session) == 0
        assert ledger.get_balance(1, "vtuber-1") == 0


class TestDrawQueries:
    def test_lookup_by_payment_reference(self, draw_service):
        settled = draw_service.settle_draw(1, "gacha-vtuber", 1, "pay-lookup")

        found = draw_service.get_draw_by_payment_reference("pay-lookup")

        assert found.id == settled.draw_result.id
        assert draw_service.get_draw_by_payment_reference("pay-unknown") is None

    def test_history_is_newest_first(self, draw_service):
        first = draw_service.settle_draw(1, "gacha-vtuber", 1, "pay-h1")
        second = draw_service.settle_draw(1, "gacha-vtuber", 10, "pay-h2")
        draw_service.settle_draw(2, "gacha-vtuber", 1, "pay-other-user")

        page = draw_service.get_draw_history(1, limit=1, offset=0)
        rest = draw_service.get_draw_history(1, limit=1, offset=1)

        assert page.total_count == 2
        assert page.has_next is True
        assert page.draws[0].id == second.draw_result.id
        assert rest.draws[0].id == first.draw_result.id
        assert rest.has_next is False
