import os

# 설정 객체가 만들어지기 전에 테스트용 DB/시크릿 지정
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

from datetime import timedelta
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from medalapi.core.auth import UserRole, create_access_token
from medalapi.database.session import get_db
from medalapi.deps import get_draw_logic, get_payment_gateway
from medalapi.models.base import Base
from medalapi.models import draws, exchange, medals  # noqa: F401
from medalapi.models.medals import MedalTransactionType
from medalapi.providers.draw_logic import DrawnItem
from medalapi.schemas.exchange import ExchangeItemCreate
from medalapi.services.draw_service import DrawSettlementService
from medalapi.services.exchange_service import ExchangeService
from medalapi.services.medal_service import MedalLedgerService
from medalapi.utils.timezone_utils import utcnow


class FakePaymentGateway:
    """결제 확인 스텁 - 기본은 모두 확인됨"""

    def __init__(self, confirmed: bool = True):
        self.confirmed = confirmed
        self.rejected_references = set()
        self.calls: List[str] = []

    def confirm_payment(self, payment_reference: str) -> bool:
        self.calls.append(payment_reference)
        if payment_reference in self.rejected_references:
            return False
        return self.confirmed


class FakeDrawLogic:
    """결정적 추첨 스텁"""

    def __init__(self, issuers: Optional[Dict[str, str]] = None):
        self.issuers = issuers or {}
        self.calls: List[tuple] = []

    def execute_draw_logic(self, gacha_id: str, count: int) -> List[DrawnItem]:
        self.calls.append((gacha_id, count))
        return [
            DrawnItem(item_id=f"{gacha_id}-{i}", name=f"Card {i}", rarity="R")
            for i in range(count)
        ]

    def issuer_for(self, gacha_id: str) -> Optional[str]:
        return self.issuers.get(gacha_id)


@pytest.fixture
def engine():
    """테스트별 인메모리 sqlite 엔진 (단일 커넥션 공유)"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def file_sessions(tmp_path):
    """파일 sqlite 세션 팩토리 - 스레드마다 별도 커넥션으로 같은 DB를 공유"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'medals.db'}",
        connect_args={"check_same_thread": False, "timeout": 10},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(
        autocommit=False, autoflush=False, bind=engine, expire_on_commit=False
    )
    engine.dispose()


@pytest.fixture
def db_session(engine):
    TestingSessionLocal = sessionmaker(
        autocommit=False, autoflush=False, bind=engine, expire_on_commit=False
    )
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def ledger(db_session):
    return MedalLedgerService(db_session)


@pytest.fixture
def exchange_service(db_session, ledger):
    return ExchangeService(db_session, ledger=ledger)


@pytest.fixture
def payment_gateway():
    return FakePaymentGateway()


@pytest.fixture
def draw_logic():
    return FakeDrawLogic(issuers={"gacha-vtuber": "vtuber-1"})


@pytest.fixture
def draw_service(db_session, ledger, payment_gateway, draw_logic):
    return DrawSettlementService(
        db_session,
        ledger=ledger,
        payment_gateway=payment_gateway,
        draw_logic=draw_logic,
    )


@pytest.fixture
def fund(ledger):
    """사용자 잔액 충전 헬퍼"""

    def _fund(user_id: int, amount: int, issuer_id: Optional[str] = "vtuber-1"):
        result = ledger.credit(
            user_id, issuer_id, amount, MedalTransactionType.DRAW_REWARD, reason="test funding"
        )
        assert result.success
        return result

    return _fund


@pytest.fixture
def make_item(exchange_service):
    """교환 아이템 생성 헬퍼 - 기본은 1시간 전부터 무기한"""

    def _make_item(**overrides):
        data = {
            "issuer_id": "vtuber-1",
            "name": "Signed Photo",
            "medal_cost": 100,
            "total_stock": 10,
            "daily_limit": 5,
            "user_limit": 10,
            "starts_at": utcnow() - timedelta(hours=1),
        }
        data.update(overrides)
        return exchange_service.create_item(ExchangeItemCreate(**data))

    return _make_item


@pytest.fixture
def app(db_session, payment_gateway, draw_logic):
    from medalapi.main import create_app

    app = create_app()

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: payment_gateway
    app.dependency_overrides[get_draw_logic] = lambda: draw_logic
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    """테스트 클라이언트 픽스처"""
    return TestClient(app)


@pytest.fixture
def user_headers():
    def _headers(user_id: int = 1):
        return {"Authorization": f"Bearer {create_access_token(user_id)}"}

    return _headers


@pytest.fixture
def admin_headers():
    token = create_access_token(99, role=UserRole.ADMIN)
    return {"Authorization": f"Bearer {token}"}
