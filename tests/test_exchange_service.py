import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from datetime import datetime, timedelta, timezone
from pydantic import ValidationError as SchemaValidationError
from unittest.mock import patch
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from medalapi.core.exceptions import MedalErrorCode, ValidationError
from medalapi.models.exchange import ExchangeStatusEnum, ExchangeTransaction
from medalapi.models.medals import MedalTransactionType
from medalapi.schemas.exchange import ExchangeItemCreate, ExchangeItemUpdate
from medalapi.services.exchange_service import ExchangeService
from medalapi.services.medal_service import MedalLedgerService
from medalapi.utils.timezone_utils import utcnow

UTCNOW_PATH = "medalapi.services.exchange_service.utcnow"


def _stock(exchange_service, item_id):
    return exchange_service.exchange_repo.get_item(item_id).current_stock


def _transaction_count(db_session):
    return len(db_session.execute(select(ExchangeTransaction.id)).all())


class TestExecuteExchange:
    """교환 실행 기본 흐름"""

    def test_successful_exchange_updates_stock_balance_and_records(
        self, exchange_service, ledger, fund, make_item
    ):
        # Given
        fund(1, 500)
        item = make_item(medal_cost=100, total_stock=5)

        # When
        result = exchange_service.execute_exchange(1, item.id, quantity=2)

        # Then
        assert result.success is True
        assert result.remaining_balance == 300
        assert result.transaction.status == ExchangeStatusEnum.COMPLETED
        assert result.transaction.quantity == 2
        assert result.transaction.medal_cost == 200
        assert result.grant.transaction_id == result.transaction.id
        assert result.grant.is_active is True
        assert _stock(exchange_service, item.id) == 3
        assert ledger.get_balance(1, "vtuber-1") == 300

        debit = ledger.get_transaction_history(1, transaction_type=MedalTransactionType.EXCHANGE_DEBIT)
        assert debit.total_count == 1
        assert debit.entries[0].id == result.transaction.ledger_transaction_id
        assert debit.entries[0].amount == -200

    def test_invalid_quantity(self, exchange_service, fund, make_item):
        fund(1, 500)
        item = make_item()

        result = exchange_service.execute_exchange(1, item.id, quantity=0)

        assert result.success is False
        assert result.error_code == MedalErrorCode.INVALID_QUANTITY

    def test_unknown_item(self, exchange_service):
        result = exchange_service.execute_exchange(1, 9999)

        assert result.error_code == MedalErrorCode.EXCHANGE_ITEM_NOT_FOUND
        assert result.details == {"item_id": 9999}

    def test_balance_in_another_scope_does_not_count(
        self, exchange_service, fund, make_item
    ):
        fund(1, 1000, issuer_id=None)
        fund(1, 1000, issuer_id="vtuber-2")
        item = make_item(issuer_id="vtuber-1")

        result = exchange_service.execute_exchange(1, item.id)

        assert result.error_code == MedalErrorCode.INSUFFICIENT_BALANCE

    def test_insufficient_balance_for_quantity_changes_nothing(
        self, exchange_service, ledger, fund, make_item, db_session
    ):
        # Given - 250 메달로 100 메달 아이템 3개 교환 시도
        fund(1, 250)
        item = make_item(medal_cost=100, total_stock=10)

        # When
        result = exchange_service.execute_exchange(1, item.id, quantity=3)

        # Then
        assert result.error_code == MedalErrorCode.INSUFFICIENT_BALANCE
        assert result.details == {"required": 300, "available": 250}
        assert ledger.get_balance(1, "vtuber-1") == 250
        assert _stock(exchange_service, item.id) == 10
        assert _transaction_count(db_session) == 0


class TestExchangePeriod:
    def test_expired_item(self, exchange_service, fund, make_item):
        fund(1, 500)
        now = utcnow()
        item = make_item(starts_at=now - timedelta(days=2), ends_at=now - timedelta(days=1))

        result = exchange_service.execute_exchange(1, item.id)

        assert result.error_code == MedalErrorCode.EXCHANGE_PERIOD_EXPIRED

    def test_not_yet_started_item(self, exchange_service, fund, make_item):
        fund(1, 500)
        item = make_item(starts_at=utcnow() + timedelta(hours=1))

        result = exchange_service.execute_exchange(1, item.id)

        assert result.error_code == MedalErrorCode.EXCHANGE_PERIOD_EXPIRED

    def test_deactivated_item(self, exchange_service, fund, make_item):
        fund(1, 500)
        item = make_item()
        exchange_service.deactivate_item(item.id)

        result = exchange_service.execute_exchange(1, item.id)

        assert result.error_code == MedalErrorCode.EXCHANGE_PERIOD_EXPIRED


class TestStock:
    def test_last_unit_goes_to_first_buyer(self, exchange_service, ledger, fund, make_item):
        fund(1, 100)
        fund(2, 100)
        item = make_item(total_stock=1)

        first = exchange_service.execute_exchange(1, item.id)
        second = exchange_service.execute_exchange(2, item.id)

        assert first.success is True
        assert second.error_code == MedalErrorCode.OUT_OF_STOCK
        assert ledger.get_balance(2, "vtuber-1") == 100
        assert _stock(exchange_service, item.id) == 0

    def test_interleaved_buyers_cannot_oversell(
        self, exchange_service, ledger, fund, make_item, db_session
    ):
        # Given - 두 요청이 모두 검증을 통과한 뒤 실행
        fund(1, 100)
        fund(2, 100)
        item = make_item(total_stock=1)
        validated_1 = exchange_service.validate_exchange(1, item.id, 1)
        validated_2 = exchange_service.validate_exchange(2, item.id, 1)

        # When
        first = exchange_service.apply_validated_exchange(1, validated_1, 1)
        second = exchange_service.apply_validated_exchange(2, validated_2, 1)

        # Then
        assert first.success is True
        assert second.success is False
        assert second.error_code == MedalErrorCode.OUT_OF_STOCK
        assert _stock(exchange_service, item.id) == 0
        assert ledger.get_balance(2, "vtuber-1") == 100
        assert _transaction_count(db_session) == 1


class TestBalanceRace:
    def test_interleaved_exchanges_cannot_overdraw(
        self, exchange_service, ledger, fund, make_item, db_session
    ):
        fund(1, 150)
        item_a = make_item(name="Poster", medal_cost=100)
        item_b = make_item(name="Sticker", medal_cost=100)
        validated_a = exchange_service.validate_exchange(1, item_a.id, 1)
        validated_b = exchange_service.validate_exchange(1, item_b.id, 1)

        first = exchange_service.apply_validated_exchange(1, validated_a, 1)
        second = exchange_service.apply_validated_exchange(1, validated_b, 1)

        assert first.success is True
        assert second.error_code == MedalErrorCode.INSUFFICIENT_BALANCE
        assert ledger.get_balance(1, "vtuber-1") == 50
        # 실패한 교환의 재고 차감은 롤백됨
        assert _stock(exchange_service, item_b.id) == 10
        assert _transaction_count(db_session) == 1


class TestExchangeLimits:
    def test_user_limit(self, exchange_service, fund, make_item):
        fund(1, 1000)
        item = make_item(user_limit=2, daily_limit=5)

        results = [exchange_service.execute_exchange(1, item.id) for _ in range(3)]

        assert [r.success for r in results] == [True, True, False]
        assert results[2].error_code == MedalErrorCode.USER_LIMIT_EXCEEDED

    def test_zero_daily_limit_blocks_all_exchanges(self, exchange_service, fund, make_item):
        fund(1, 1000)
        item = make_item(daily_limit=0)

        result = exchange_service.execute_exchange(1, item.id)

        assert result.error_code == MedalErrorCode.DAILY_LIMIT_EXCEEDED

    def test_limits_are_per_user(self, exchange_service, fund, make_item):
        fund(1, 1000)
        fund(2, 1000)
        item = make_item(user_limit=1)

        assert exchange_service.execute_exchange(1, item.id).success is True
        assert exchange_service.execute_exchange(2, item.id).success is True

    def test_daily_limit_resets_at_business_day_boundary(
        self, exchange_service, fund, make_item
    ):
        # Given - JST 기준 하루 (UTC 15:00 경계)
        fund(1, 1000)
        item = make_item(
            daily_limit=1,
            user_limit=10,
            starts_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        )
        late_evening_jst = datetime(2026, 3, 1, 14, 30, tzinfo=timezone.utc)
        still_same_day = datetime(2026, 3, 1, 14, 50, tzinfo=timezone.utc)
        next_day_jst = datetime(2026, 3, 1, 15, 10, tzinfo=timezone.utc)

        # When / Then
        with patch(UTCNOW_PATH, return_value=late_evening_jst):
            assert exchange_service.execute_exchange(1, item.id).success is True
        with patch(UTCNOW_PATH, return_value=still_same_day):
            blocked = exchange_service.execute_exchange(1, item.id)
            assert blocked.error_code == MedalErrorCode.DAILY_LIMIT_EXCEEDED
        with patch(UTCNOW_PATH, return_value=next_day_jst):
            assert exchange_service.execute_exchange(1, item.id).success is True

    def test_interleaved_requests_respect_user_limit(
        self, exchange_service, ledger, fund, make_item, db_session
    ):
        fund(1, 1000)
        item = make_item(user_limit=1)
        validated_1 = exchange_service.validate_exchange(1, item.id, 1)
        validated_2 = exchange_service.validate_exchange(1, item.id, 1)

        first = exchange_service.apply_validated_exchange(1, validated_1, 1)
        second = exchange_service.apply_validated_exchange(1, validated_2, 1)

        assert first.success is True
        assert second.error_code == MedalErrorCode.USER_LIMIT_EXCEEDED
        assert ledger.get_balance(1, "vtuber-1") == 900
        assert _stock(exchange_service, item.id) == 9
        assert _transaction_count(db_session) == 1

    def test_interleaved_requests_respect_daily_limit(
        self, exchange_service, ledger, fund, make_item, db_session
    ):
        # Given - 한도 3, 네 요청이 모두 검증을 통과한 뒤 차례로 적용
        fund(1, 1000)
        item = make_item(daily_limit=3, user_limit=10)
        validated = [exchange_service.validate_exchange(1, item.id, 1) for _ in range(4)]

        # When
        results = [
            exchange_service.apply_validated_exchange(1, checked, 1) for checked in validated
        ]

        # Then
        assert [r.success for r in results] == [True, True, True, False]
        assert results[3].error_code == MedalErrorCode.DAILY_LIMIT_EXCEEDED
        assert ledger.get_balance(1, "vtuber-1") == 700
        assert _stock(exchange_service, item.id) == 7
        assert _transaction_count(db_session) == 3
        assert ledger.verify_integrity().invalid == 0


class TestExchangeAtomicity:
    """실행 단계 중간 실패 시 전체 롤백"""

    def test_unexpected_error_rolls_back_stock(
        self, exchange_service, ledger, fund, make_item, db_session
    ):
        fund(1, 500)
        item = make_item(total_stock=3)

        with patch.object(exchange_service.ledger, "debit", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                exchange_service.execute_exchange(1, item.id)

        assert _stock(exchange_service, item.id) == 3
        assert ledger.get_balance(1, "vtuber-1") == 500
        assert _transaction_count(db_session) == 0

    def test_storage_error_after_debit_rolls_back_everything(
        self, exchange_service, ledger, fund, make_item, db_session
    ):
        fund(1, 500)
        item = make_item(total_stock=3)
        error = OperationalError("INSERT exchange_transactions", {}, Exception("timeout"))

        with patch.object(
            exchange_service.exchange_repo, "create_completed_exchange", side_effect=error
        ):
            result = exchange_service.execute_exchange(1, item.id)

        assert result.success is False
        assert result.error_code == MedalErrorCode.TRANSIENT_FAILURE
        assert _stock(exchange_service, item.id) == 3
        assert ledger.get_balance(1, "vtuber-1") == 500
        history = ledger.get_transaction_history(1)
        assert history.total_count == 1
        assert ledger.verify_integrity().invalid == 0


class TestCancelExchange:
    def test_cancel_refunds_restores_stock_and_revokes_grant(
        self, exchange_service, ledger, fund, make_item
    ):
        # Given
        fund(1, 300)
        item = make_item(medal_cost=100, total_stock=5, user_limit=1)
        exchanged = exchange_service.execute_exchange(1, item.id, quantity=2)
        assert exchanged.success is True

        # When
        cancelled = exchange_service.cancel_exchange(
            exchanged.transaction.id, admin_id=99, reason="duplicate order"
        )

        # Then
        assert cancelled.success is True
        assert cancelled.transaction.status == ExchangeStatusEnum.FAILED
        assert cancelled.remaining_balance == 300
        assert ledger.get_balance(1, "vtuber-1") == 300
        assert _stock(exchange_service, item.id) == 5
        assert exchange_service.get_user_inventory(1).items == []

        refund = ledger.get_transaction_history(
            1, transaction_type=MedalTransactionType.ADMIN_ADJUSTMENT
        ).entries[0]
        assert refund.amount == 200
        assert refund.reference_id == str(exchanged.transaction.id)
        assert refund.reference_type == "exchange_cancel"

        # 취소된 교환은 제한 계산에서 제외
        assert exchange_service.execute_exchange(1, item.id).success is True

    def test_cancel_twice(self, exchange_service, ledger, fund, make_item):
        fund(1, 100)
        item = make_item()
        exchanged = exchange_service.execute_exchange(1, item.id)
        exchange_service.cancel_exchange(exchanged.transaction.id, 99, "first")

        second = exchange_service.cancel_exchange(exchanged.transaction.id, 99, "again")

        assert second.error_code == MedalErrorCode.EXCHANGE_TRANSACTION_NOT_FOUND
        assert ledger.get_balance(1, "vtuber-1") == 100

    def test_cancel_unknown_transaction(self, exchange_service):
        result = exchange_service.cancel_exchange(12345, 99, "missing")

        assert result.error_code == MedalErrorCode.EXCHANGE_TRANSACTION_NOT_FOUND


class TestItemManagement:
    def test_create_item_starts_with_full_stock(self, make_item):
        item = make_item(total_stock=7)

        assert item.current_stock == 7
        assert item.is_active is True

    def test_update_item(self, exchange_service, make_item):
        item = make_item()

        result = exchange_service.update_item(
            item.id, ExchangeItemUpdate(name="Limited Photo", medal_cost=150)
        )

        assert result.success is True
        assert result.item.name == "Limited Photo"
        assert result.item.medal_cost == 150
        assert result.item.current_stock == item.current_stock

    def test_update_item_with_inverted_period(self, exchange_service, make_item):
        item = make_item()

        with pytest.raises(ValidationError):
            exchange_service.update_item(
                item.id, ExchangeItemUpdate(ends_at=utcnow() - timedelta(days=1))
            )

    def test_update_unknown_item(self, exchange_service):
        result = exchange_service.update_item(404, ExchangeItemUpdate(name="x"))

        assert result.error_code == MedalErrorCode.EXCHANGE_ITEM_NOT_FOUND

    @pytest.mark.parametrize(
        "field",
        ["name", "medal_cost", "daily_limit", "user_limit", "starts_at", "is_active"],
    )
    def test_update_rejects_null_for_required_fields(self, field):
        with pytest.raises(SchemaValidationError, match="cannot be null"):
            ExchangeItemUpdate(**{field: None})

    def test_update_can_clear_end_time(self, exchange_service, make_item):
        item = make_item(ends_at=utcnow() + timedelta(days=3))

        result = exchange_service.update_item(
            item.id, ExchangeItemUpdate(ends_at=None, description=None)
        )

        assert result.success is True
        assert result.item.ends_at is None
        assert result.item.name == item.name

    def test_restock_after_sell_out(self, exchange_service, fund, make_item):
        fund(1, 100)
        item = make_item(total_stock=1)
        exchange_service.execute_exchange(1, item.id)

        result = exchange_service.restock_item(item.id, 4)

        assert result.success is True
        assert result.item.total_stock == 5
        assert result.item.current_stock == 4

    @pytest.mark.parametrize(
        "item_id,quantity,code",
        [
            (None, 0, MedalErrorCode.INVALID_QUANTITY),
            (404, 3, MedalErrorCode.EXCHANGE_ITEM_NOT_FOUND),
        ],
    )
    def test_restock_rejections(self, exchange_service, make_item, item_id, quantity, code):
        target = item_id or make_item().id

        result = exchange_service.restock_item(target, quantity)

        assert result.error_code == code

    def test_deactivate_unknown_item(self, exchange_service):
        assert (
            exchange_service.deactivate_item(404).error_code
            == MedalErrorCode.EXCHANGE_ITEM_NOT_FOUND
        )


class TestExchangeQueries:
    def test_list_only_exchangeable_items(self, exchange_service, make_item):
        now = utcnow()
        open_item = make_item(name="Open")
        make_item(name="Expired", starts_at=now - timedelta(days=2), ends_at=now - timedelta(days=1))
        make_item(name="Upcoming", starts_at=now + timedelta(days=1))
        make_item(name="Sold out", total_stock=0)
        inactive = make_item(name="Inactive")
        exchange_service.deactivate_item(inactive.id)
        other = make_item(name="Other issuer", issuer_id="vtuber-2")

        listing = exchange_service.list_available_items()
        filtered = exchange_service.list_available_items(issuer_id="vtuber-1")

        assert {i.id for i in listing.items} == {open_item.id, other.id}
        assert listing.pagination.total == 2
        assert [i.id for i in filtered.items] == [open_item.id]

    def test_history_pagination_newest_first(self, exchange_service, fund, make_item):
        fund(1, 1000)
        item = make_item()
        ids = [exchange_service.execute_exchange(1, item.id).transaction.id for _ in range(3)]

        page_1 = exchange_service.get_exchange_history(1, page=1, limit=2)
        page_2 = exchange_service.get_exchange_history(1, page=2, limit=2)

        assert page_1.pagination.total == 3
        assert page_1.pagination.total_pages == 2
        assert [t.id for t in page_1.transactions + page_2.transactions] == ids[::-1]

    def test_inventory_includes_item_details(self, exchange_service, fund, make_item):
        fund(1, 100)
        item = make_item(name="Voice Pack")
        exchange_service.execute_exchange(1, item.id)

        inventory = exchange_service.get_user_inventory(1)

        assert len(inventory.items) == 1
        assert inventory.items[0].item_name == "Voice Pack"
        assert inventory.items[0].issuer_id == "vtuber-1"

    def test_statistics_exclude_cancelled_exchanges(self, exchange_service, fund, make_item):
        fund(1, 1000)
        fund(2, 1000)
        poster = make_item(name="Poster", medal_cost=100)
        sticker = make_item(name="Sticker", medal_cost=50)
        exchange_service.execute_exchange(1, poster.id, quantity=2)
        exchange_service.execute_exchange(2, poster.id)
        cancelled = exchange_service.execute_exchange(2, sticker.id)
        exchange_service.cancel_exchange(cancelled.transaction.id, 99, "refund")

        stats = exchange_service.get_exchange_statistics("vtuber-1")

        assert stats.total_exchanges == 2
        assert stats.total_quantity == 3
        assert stats.total_medals_spent == 300
        assert stats.unique_users == 2
        assert [s.item_id for s in stats.top_items] == [poster.id]
        assert stats.top_items[0].exchange_count == 2


def _services(session):
    ledger = MedalLedgerService(session)
    return ExchangeService(session, ledger=ledger), ledger


def _exchange_concurrently(session_factory, requests):
    """(user_id, item_id) 요청을 스레드마다 별도 세션으로 동시에 실행"""
    barrier = threading.Barrier(len(requests))

    def worker(user_id, item_id):
        session = session_factory()
        try:
            service, _ = _services(session)
            barrier.wait()
            return service.execute_exchange(user_id, item_id)
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=len(requests)) as pool:
        futures = [pool.submit(worker, user_id, item_id) for user_id, item_id in requests]
        return [future.result() for future in futures]


class TestThreadedExchanges:
    """공유 파일 DB에 대한 실제 동시 요청"""

    def _seed(self, session_factory, balances, **item_fields):
        session = session_factory()
        try:
            service, ledger = _services(session)
            for user_id, amount in balances.items():
                assert ledger.credit(
                    user_id, "vtuber-1", amount, MedalTransactionType.DRAW_REWARD
                ).success
            data = {
                "issuer_id": "vtuber-1",
                "name": "Signed Photo",
                "medal_cost": 100,
                "total_stock": 10,
                "daily_limit": 10,
                "user_limit": 10,
                "starts_at": utcnow() - timedelta(hours=1),
            }
            data.update(item_fields)
            return service.create_item(ExchangeItemCreate(**data))
        finally:
            session.close()

    def test_concurrent_buyers_never_oversell(self, file_sessions):
        users = range(1, 9)
        item = self._seed(file_sessions, {user_id: 100 for user_id in users}, total_stock=3)

        results = _exchange_concurrently(file_sessions, [(user_id, item.id) for user_id in users])

        completed = [r for r in results if r.success]
        assert 1 <= len(completed) <= 3
        assert {r.error_code for r in results if not r.success} <= {
            MedalErrorCode.OUT_OF_STOCK,
            MedalErrorCode.TRANSIENT_FAILURE,
        }

        session = file_sessions()
        try:
            service, ledger = _services(session)
            assert service.exchange_repo.get_item(item.id).current_stock == 3 - len(completed)
            assert sum(ledger.get_balance(u, "vtuber-1") for u in users) == 800 - 100 * len(
                completed
            )
            assert ledger.verify_integrity().invalid == 0
        finally:
            session.close()

    def test_concurrent_spends_never_overdraw(self, file_sessions):
        # 잔액 250, 100 메달 교환 6건 동시 요청
        item = self._seed(file_sessions, {1: 250})

        results = _exchange_concurrently(file_sessions, [(1, item.id)] * 6)

        completed = [r for r in results if r.success]
        assert 1 <= len(completed) <= 2
        assert {r.error_code for r in results if not r.success} <= {
            MedalErrorCode.INSUFFICIENT_BALANCE,
            MedalErrorCode.TRANSIENT_FAILURE,
        }

        session = file_sessions()
        try:
            service, ledger = _services(session)
            assert ledger.get_balance(1, "vtuber-1") == 250 - 100 * len(completed)
            assert service.exchange_repo.get_item(item.id).current_stock == 10 - len(completed)
            assert ledger.verify_integrity().invalid == 0
        finally:
            session.close()

    def test_concurrent_requests_respect_daily_limit(self, file_sessions):
        item = self._seed(file_sessions, {1: 1000}, daily_limit=3)

        results = _exchange_concurrently(file_sessions, [(1, item.id)] * 6)

        completed = [r for r in results if r.success]
        assert 1 <= len(completed) <= 3
        assert {r.error_code for r in results if not r.success} <= {
            MedalErrorCode.DAILY_LIMIT_EXCEEDED,
            MedalErrorCode.TRANSIENT_FAILURE,
        }

        session = file_sessions()
        try:
            _, ledger = _services(session)
            assert ledger.get_balance(1, "vtuber-1") == 1000 - 100 * len(completed)
            assert ledger.verify_integrity().invalid == 0
        finally:
            session.close()
