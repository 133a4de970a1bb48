"""
Fee Service Tests
Breakdown arithmetic, platform_config overrides and the fee ledger lifecycle
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from models import Conversion, ConversionStatus, PlatformConfig, PlatformFee, PlatformFeeStatus
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now

from conftest import as_ton


@pytest.fixture
def conversion(session_factory, users):
    session = session_factory()
    try:
        conversion = Conversion(
            user_id=users["alice"].id,
            payment_ids=[],
            source_currency="STARS",
            target_currency="TON",
            source_amount=Decimal("1000"),
            status=ConversionStatus.PHASE1_PREPARED.value,
        )
        session.add(conversion)
        session.commit()
        return conversion
    finally:
        session.close()


def _record(fee_service, session_factory, conversion, stars="20", ton="0.02"):
    with atomic_transaction(session_factory) as session:
        fee_service.record_fee(session, conversion.id, conversion.user_id, Decimal(stars), Decimal(ton))


def _fee(session_factory, conversion_id) -> PlatformFee:
    session = session_factory()
    try:
        return session.query(PlatformFee).filter_by(conversion_id=conversion_id).one()
    finally:
        session.close()


class TestFeeBreakdown:

    def test_default_breakdown(self, fee_service):
        breakdown = fee_service.calculate_fee_breakdown(Decimal("1000"))

        assert breakdown.platform == Decimal("20")
        assert breakdown.network == Decimal("0.1")
        assert breakdown.total == Decimal("20.1")
        assert breakdown.platform_percentage == Decimal("2")

    def test_fractional_platform_fee(self, fee_service):
        breakdown = fee_service.calculate_fee_breakdown(Decimal("123"))
        assert breakdown.platform == Decimal("2.46")
        assert breakdown.total == Decimal("2.56")

    def test_breakdown_serialises_as_strings(self, fee_service):
        data = fee_service.calculate_fee_breakdown(Decimal("1000")).to_dict()
        assert set(data) == {"platform", "network", "total", "platform_percentage"}
        assert all(isinstance(value, str) for value in data.values())
        assert Decimal(data["total"]) == Decimal("20.1")

    def test_platform_config_row_overrides_environment(self, fee_service, session_factory):
        assert fee_service.get_config().platform_fee_percentage == Decimal("2")

        with atomic_transaction(session_factory) as session:
            session.add(PlatformConfig(
                platform_fee_percentage=Decimal("1.5"),
                network_fee_stars=Decimal("0.5"),
                min_conversion_amount=Decimal("50"),
                max_conversion_amount=Decimal("5000"),
                rate_lock_duration_seconds=120,
                platform_wallet_address="EQ" + "F" * 46,
            ))

        # Cached until explicitly refreshed
        assert fee_service.get_config().platform_fee_percentage == Decimal("2")

        config = fee_service.get_config(refresh=True)
        assert config.platform_fee_percentage == Decimal("1.5")
        assert config.min_conversion_amount == Decimal("50")
        assert config.rate_lock_duration_seconds == 120
        assert fee_service.get_platform_wallet() == "EQ" + "F" * 46

        breakdown = fee_service.calculate_fee_breakdown(Decimal("1000"))
        assert breakdown.platform == Decimal("15")
        assert breakdown.total == Decimal("15.5")


class TestFeeLedger:

    def test_record_fee_is_pending(self, fee_service, session_factory, conversion):
        _record(fee_service, session_factory, conversion)

        fee = _fee(session_factory, conversion.id)
        assert fee.status == PlatformFeeStatus.PENDING.value
        assert as_ton(fee.fee_amount_ton) == Decimal("0.02")
        assert fee.collected_at is None

    def test_mark_collected(self, fee_service, session_factory, conversion):
        _record(fee_service, session_factory, conversion)

        assert fee_service.mark_fee_collected(conversion.id, "tx_abc") is True

        fee = _fee(session_factory, conversion.id)
        assert fee.status == PlatformFeeStatus.COLLECTED.value
        assert fee.ton_tx_hash == "tx_abc"
        assert fee.collected_at is not None

    def test_collect_is_not_repeated(self, fee_service, session_factory, conversion):
        _record(fee_service, session_factory, conversion)
        assert fee_service.mark_fee_collected(conversion.id, "tx_abc") is True
        assert fee_service.mark_fee_collected(conversion.id, "tx_other") is False
        assert _fee(session_factory, conversion.id).ton_tx_hash == "tx_abc"

    def test_cancel_pending_fee(self, fee_service, session_factory, conversion):
        _record(fee_service, session_factory, conversion)

        with atomic_transaction(session_factory) as session:
            assert fee_service.cancel_fee(session, conversion.id) is True

        assert _fee(session_factory, conversion.id).status == PlatformFeeStatus.CANCELLED.value
        assert fee_service.mark_fee_collected(conversion.id, "tx_late") is False

    def test_collected_fee_cannot_be_cancelled(self, fee_service, session_factory, conversion):
        _record(fee_service, session_factory, conversion)
        fee_service.mark_fee_collected(conversion.id, "tx_abc")

        with atomic_transaction(session_factory) as session:
            assert fee_service.cancel_fee(session, conversion.id) is False

    def test_summary_counts_collected_only(self, fee_service, session_factory, conversion):
        _record(fee_service, session_factory, conversion)
        now = get_naive_utc_now()
        window = (now - timedelta(hours=1), now + timedelta(hours=1))

        assert fee_service.get_fee_summary(*window)["fee_count"] == 0

        fee_service.mark_fee_collected(conversion.id, "tx_abc")
        summary = fee_service.get_fee_summary(*window)

        assert summary["fee_count"] == 1
        assert summary["total_fees_stars"] == Decimal("20")
        assert as_ton(summary["total_fees_ton"]) == Decimal("0.02")

        revenue = fee_service.get_total_revenue()
        assert revenue["total_revenue_stars"] == Decimal("20")

    def test_summary_window_excludes_other_periods(self, fee_service, session_factory, conversion):
        _record(fee_service, session_factory, conversion)
        fee_service.mark_fee_collected(conversion.id, "tx_abc")
        past = get_naive_utc_now() - timedelta(days=2)

        summary = fee_service.get_fee_summary(past - timedelta(days=1), past)
        assert summary["fee_count"] == 0
        assert summary["total_fees_stars"] == Decimal("0")
