"""
Shared fixtures for the settlement engine test suite

Key components:
1. In-memory SQLite engine per test (StaticPool, schema created from models)
2. Seeded users and a payment factory
3. Fake rate source and blockchain built on AsyncMock
4. A fully wired ConversionService with zero-interval confirmation polling
"""

import logging
import uuid
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from models import Base, Payment, PaymentStatus, User
from services.confirmation_poller import ConfirmationPoller
from services.conversion_service import ConversionService
from services.fee_service import FeeService
from services.rate_lock_service import RateLockManager
from services.stars_p2p_service import StarsP2PService
from services.ton_blockchain_service import TX_CONFIRMED, TX_FAILED, TX_PENDING, TransactionState
from services.webhook_service import WebhookService
from utils.background_task_runner import BackgroundTaskRunner

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

ALICE_WALLET = "EQ" + "A" * 46
BOB_WALLET = "UQ" + "B" * 46
CAROL_WALLET = "EQ" + "C" * 46
TEST_RATE = Decimal("0.001")
NANOTON = Decimal("0.000000001")


def as_ton(value) -> Decimal:
    """Normalise an amount read back from SQLite (stored as float) to nanotons"""
    return Decimal(value).quantize(NANOTON)


async def async_noop(*_args, **_kwargs):
    return None


# ============================================================================
# DATABASE
# ============================================================================

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def users(session_factory):
    """alice and bob have wallets (bob also a webhook URL); carol has neither"""
    session = session_factory()
    try:
        alice = User(username="alice", ton_wallet_address=ALICE_WALLET)
        bob = User(username="bob", ton_wallet_address=BOB_WALLET, webhook_url="https://hooks.example.com/bob")
        carol = User(username="carol")
        session.add_all([alice, bob, carol])
        session.commit()
        return {"alice": alice, "bob": bob, "carol": carol}
    finally:
        session.close()


@pytest.fixture
def make_payment(session_factory):
    def _make(user_id: int, stars_amount, status: PaymentStatus = PaymentStatus.RECEIVED, total_amount=None):
        session = session_factory()
        try:
            payment = Payment(
                user_id=user_id,
                telegram_payment_id=f"tg_{uuid.uuid4().hex}",
                stars_amount=Decimal(str(stars_amount)),
                status=status.value,
                raw_payload={
                    "successful_payment": {
                        "currency": "XTR",
                        "total_amount": int(stars_amount) if total_amount is None else total_amount,
                    }
                },
            )
            session.add(payment)
            session.commit()
            return payment
        finally:
            session.close()

    return _make


# ============================================================================
# COLLABORATORS
# ============================================================================

@pytest.fixture
def rate_source():
    source = AsyncMock()
    source.get_conversion_rate.return_value = TEST_RATE
    return source


@pytest.fixture
def blockchain():
    """Transfers succeed with sequential refs; every transaction confirms on the first poll"""
    chain = AsyncMock()
    counter = {"n": 0}

    async def _send(to_address, amount, memo):
        counter["n"] += 1
        return f"tx_{counter['n']:04d}"

    chain.send_transfer.side_effect = _send
    chain.get_transaction_state.return_value = TransactionState(
        status=TX_CONFIRMED, confirmations=3, exit_code=0, amount=Decimal("0.9799")
    )
    chain.sent = counter
    return chain


def pending_state() -> TransactionState:
    return TransactionState(status=TX_PENDING)


def failed_state(exit_code: int = 35) -> TransactionState:
    return TransactionState(status=TX_FAILED, exit_code=exit_code, reason=f"compute phase exit code {exit_code}")


@pytest.fixture
def task_runner():
    return BackgroundTaskRunner()


@pytest.fixture
def poller(blockchain):
    return ConfirmationPoller(blockchain, interval_seconds=0, max_polls=5, min_confirmations=1, sleep=async_noop)


@pytest.fixture
def rate_locks():
    return RateLockManager()


@pytest.fixture
def fee_service(session_factory):
    return FeeService(session_factory)


@pytest.fixture
def webhook_service(session_factory):
    service = WebhookService(session_factory, secret="test-secret")
    service._post = AsyncMock(return_value=200)
    return service


@pytest.fixture
def p2p_service(session_factory, blockchain, poller, task_runner):
    return StarsP2PService(session_factory, blockchain=blockchain, poller=poller, task_runner=task_runner)


@pytest.fixture
def conversion_service(
    session_factory, rate_source, fee_service, blockchain, rate_locks, p2p_service,
    webhook_service, task_runner, poller,
):
    return ConversionService(
        session_factory=session_factory,
        rate_source=rate_source,
        fee_service=fee_service,
        blockchain=blockchain,
        rate_locks=rate_locks,
        p2p_service=p2p_service,
        webhook_service=webhook_service,
        task_runner=task_runner,
        poller=poller,
        settlement_route="direct",
    )
