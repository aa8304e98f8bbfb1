"""
Pytest configuration and shared fixtures
"""

from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from deliverypay.config import TestSettings
from deliverypay.gateways import GatewayRegistry
from deliverypay.main import create_app
from deliverypay.models import Base, PaymentRecord
from deliverypay.services.container import ServiceContainer, build_services
from deliverypay.services.payment_orchestrator import CreatePaymentCommand
from tests.fakes import FakeGatewayAdapter, FakeIpReputation, FakeNotifier, FakeOrderService


TOSS_WEBHOOK_SECRET = "test-toss-webhook-secret"


@pytest.fixture
def settings() -> TestSettings:
    return TestSettings()


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    테스트마다 새 SQLite 파일 DB

    동시 요청 테스트가 여러 커넥션을 쓰므로 인메모리 대신 파일 DB를 사용합니다.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'deliverypay.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    yield factory

    await engine.dispose()


@pytest.fixture
def gateway() -> FakeGatewayAdapter:
    return FakeGatewayAdapter("toss", webhook_secret=TOSS_WEBHOOK_SECRET)


@pytest.fixture
def order_service() -> FakeOrderService:
    return FakeOrderService()


@pytest.fixture
def ip_reputation() -> FakeIpReputation:
    return FakeIpReputation(high_risk_ips={"185.220.100.45"})


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest_asyncio.fixture(scope="function")
async def services(
    settings,
    session_factory,
    gateway,
    order_service,
    ip_reputation,
    notifier,
) -> AsyncGenerator[ServiceContainer, None]:
    container = build_services(
        settings,
        session_factory,
        gateways=GatewayRegistry([gateway]),
        order_service=order_service,
        ip_reputation=ip_reputation,
        notifier=notifier,
    )
    yield container
    await container.close()


@pytest.fixture
def orchestrator(services):
    return services.orchestrator


@pytest_asyncio.fixture(scope="function")
async def confirmed_payment(orchestrator, order_service) -> PaymentRecord:
    """주문 O1 (25,000원) 토스 결제 승인 완료 상태"""
    order_service.add_order("O1", 25000, delivery_fee=3000)
    result = await orchestrator.create_payment(
        CreatePaymentCommand(order_id="O1", amount=25000, provider="toss")
    )
    return await orchestrator.confirm_payment(result.payment.payment_id, order_id="O1", amount=25000)


@pytest_asyncio.fixture(scope="function")
async def api_client(settings, services) -> AsyncGenerator[AsyncClient, None]:
    """
    API 테스트용 HTTP 클라이언트

    ASGITransport는 lifespan을 실행하지 않으므로 조립된 서비스를 직접 주입합니다.
    """
    app = create_app(settings=settings, services=services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def interleaved_writer(monkeypatch, services, session_factory):
    """
    결제 조회 직후 다른 트랜잭션이 같은 결제를 먼저 커밋하도록 끼워 넣음

    반환된 함수에 횟수를 넘기면 그 횟수의 조회까지만 version을 올립니다 (None이면 매번).
    올린 결제 ID 목록을 돌려줍니다.
    """
    ledger = services.ledger
    original = ledger.get_by_payment_id

    def arm(times: Optional[int] = 1) -> list[str]:
        bumped: list[str] = []

        async def get_then_bump(session, payment_id):
            record = await original(session, payment_id)
            if record is not None and (times is None or len(bumped) < times):
                async with session_factory() as other:
                    ledger.touch(await original(other, payment_id))
                    await other.commit()
                bumped.append(payment_id)
            return record

        monkeypatch.setattr(ledger, "get_by_payment_id", get_then_bump)
        return bumped

    return arm
