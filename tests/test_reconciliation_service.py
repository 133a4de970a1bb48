"""
Reconciliation Service Tests
Tolerance matching, pending records, stale checks and the periodic sweep
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import as_ton, failed_state, pending_state
from models import (
    AtomicSwap, Conversion, ConversionStatus, Deposit, OrderType, PaymentStatus, ReconciliationRecord,
    ReconciliationStatus, ReconciliationType, StarsOrder, SwapStatus,
)
from services.reconciliation_service import ReconciliationService
from services.ton_blockchain_service import TX_CONFIRMED, TransactionState
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import NotFoundError, ReconciliationMismatch


def _confirmed(amount: str) -> TransactionState:
    return TransactionState(status=TX_CONFIRMED, confirmations=3, exit_code=0, amount=Decimal(amount))


@pytest.fixture
def reconciliation(session_factory, blockchain):
    return ReconciliationService(session_factory, blockchain=blockchain)


@pytest.fixture
def make_conversion(session_factory, users):
    def _make(target_amount="0.9799", tx_ref="tx_0001", status=ConversionStatus.COMPLETED, created_at=None,
              payment_ids=None):
        with atomic_transaction(session_factory) as session:
            now = get_naive_utc_now()
            conversion = Conversion(
                user_id=users["alice"].id,
                payment_ids=payment_ids or [],
                source_currency="STARS",
                target_currency="TON",
                source_amount=Decimal("1000"),
                target_amount=Decimal(target_amount),
                exchange_rate=Decimal("0.001"),
                status=status.value,
                on_chain_tx_ref=tx_ref,
                created_at=created_at or now,
                completed_at=now if status == ConversionStatus.COMPLETED else None,
            )
            session.add(conversion)
            session.flush()
            return conversion

    return _make


def _records(session_factory):
    session = session_factory()
    try:
        return session.query(ReconciliationRecord).order_by(ReconciliationRecord.id).all()
    finally:
        session.close()


class TestConversionReconciliation:

    @pytest.mark.asyncio
    async def test_exact_amount_matches(self, reconciliation, make_conversion):
        conversion = make_conversion()

        record = await reconciliation.reconcile_conversion(conversion.id)

        assert record.status == ReconciliationStatus.MATCHED.value
        assert record.reconciliation_type == ReconciliationType.CONVERSION.value
        assert record.external_reference == "tx_0001"
        assert as_ton(record.difference) == Decimal("0")

    @pytest.mark.asyncio
    async def test_difference_within_tolerance_matches(self, reconciliation, make_conversion, blockchain):
        blockchain.get_transaction_state.return_value = _confirmed("0.9709")
        conversion = make_conversion()

        record = await reconciliation.reconcile_conversion(conversion.id)

        assert record.status == ReconciliationStatus.MATCHED.value
        assert as_ton(record.difference) == Decimal("0.009")

    @pytest.mark.asyncio
    async def test_difference_beyond_tolerance_is_mismatch(self, reconciliation, make_conversion, blockchain):
        blockchain.get_transaction_state.return_value = _confirmed("0.95")
        conversion = make_conversion()

        record = await reconciliation.reconcile_conversion(conversion.id)

        assert record.status == ReconciliationStatus.MISMATCH.value
        assert as_ton(record.actual_amount) == Decimal("0.95")
        assert as_ton(record.difference) == Decimal("0.0299")

    @pytest.mark.asyncio
    async def test_strict_mismatch_raises_after_recording(self, reconciliation, make_conversion, blockchain, session_factory):
        blockchain.get_transaction_state.return_value = _confirmed("1.5")
        conversion = make_conversion()

        with pytest.raises(ReconciliationMismatch) as exc_info:
            await reconciliation.reconcile_conversion(conversion.id, strict=True)

        assert exc_info.value.conversion_id == conversion.id
        assert [r.status for r in _records(session_factory)] == [ReconciliationStatus.MISMATCH.value]

    @pytest.mark.asyncio
    async def test_missing_transaction_is_pending(self, reconciliation, make_conversion, blockchain):
        conversion = make_conversion(tx_ref=None, status=ConversionStatus.PHASE1_PREPARED)

        record = await reconciliation.reconcile_conversion(conversion.id)

        assert record.status == ReconciliationStatus.PENDING.value
        assert record.notes == "No on-chain transaction yet"
        blockchain.get_transaction_state.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unconfirmed_transaction_is_pending(self, reconciliation, make_conversion, blockchain):
        blockchain.get_transaction_state.return_value = pending_state()
        conversion = make_conversion()

        record = await reconciliation.reconcile_conversion(conversion.id)
        assert record.status == ReconciliationStatus.PENDING.value
        assert "pending" in record.notes

    @pytest.mark.asyncio
    async def test_failed_transaction_is_pending_with_reason(self, reconciliation, make_conversion, blockchain):
        blockchain.get_transaction_state.return_value = failed_state()
        conversion = make_conversion()

        record = await reconciliation.reconcile_conversion(conversion.id)
        assert record.status == ReconciliationStatus.PENDING.value
        assert "compute phase exit code 35" in record.notes

    @pytest.mark.asyncio
    async def test_unknown_conversion(self, reconciliation):
        with pytest.raises(NotFoundError):
            await reconciliation.reconcile_conversion(424242)

    @pytest.mark.asyncio
    async def test_conversion_is_never_modified(self, reconciliation, make_conversion, blockchain, session_factory):
        blockchain.get_transaction_state.return_value = _confirmed("0.5")
        conversion = make_conversion()

        await reconciliation.reconcile_conversion(conversion.id)

        session = session_factory()
        try:
            stored = session.get(Conversion, conversion.id)
            assert stored.status == ConversionStatus.COMPLETED.value
            assert as_ton(stored.target_amount) == Decimal("0.9799")
        finally:
            session.close()


class TestPaymentReconciliation:

    def test_payload_total_matches(self, reconciliation, make_payment, users):
        payment = make_payment(users["alice"].id, 1000)

        record = reconciliation.reconcile_payment(payment.id)

        assert record.status == ReconciliationStatus.MATCHED.value
        assert record.reconciliation_type == ReconciliationType.PAYMENT.value
        assert record.external_reference == payment.telegram_payment_id

    def test_payload_total_differs(self, reconciliation, make_payment, users):
        payment = make_payment(users["alice"].id, 1000, total_amount=999)

        record = reconciliation.reconcile_payment(payment.id)

        assert record.status == ReconciliationStatus.MISMATCH.value
        assert Decimal(record.difference) == Decimal("1")

    def test_unknown_payment(self, reconciliation):
        with pytest.raises(NotFoundError):
            reconciliation.reconcile_payment(424242)


class TestStaleChecks:

    @pytest.fixture
    def later(self, session_factory, blockchain):
        """A service whose clock runs two days ahead"""
        future = get_naive_utc_now() + timedelta(days=2)
        return ReconciliationService(session_factory, blockchain=blockchain, clock=lambda: future)

    def test_received_payments_become_stale(self, reconciliation, later, make_payment, users):
        payment = make_payment(users["alice"].id, 500)
        make_payment(users["alice"].id, 500, status=PaymentStatus.COMPLETED)

        assert reconciliation.check_stale_pending_payments() == []

        stale = later.check_stale_pending_payments()
        assert [p.payment_id for p in stale] == [payment.id]
        assert stale[0].age_hours >= 47

    def test_pending_conversions_become_stale(self, reconciliation, later, make_conversion):
        pending = make_conversion(tx_ref=None, status=ConversionStatus.PENDING)
        make_conversion()

        assert reconciliation.check_stale_pending_conversions() == []
        assert [c.conversion_id for c in later.check_stale_pending_conversions()] == [pending.id]

    def test_unsettled_conversions_past_pending_become_stale(self, later, make_conversion):
        earlier = get_naive_utc_now() - timedelta(minutes=10)
        prepared = make_conversion(
            tx_ref=None, status=ConversionStatus.PHASE1_PREPARED, payment_ids=[1], created_at=earlier
        )
        promoted = make_conversion(tx_ref=None, status=ConversionStatus.RATE_LOCKED, payment_ids=[2])
        make_conversion(tx_ref=None, status=ConversionStatus.RATE_LOCKED)
        make_conversion(status=ConversionStatus.PHASE2_COMMITTED)

        stale = later.check_stale_pending_conversions()

        assert [c.conversion_id for c in stale] == [prepared.id, promoted.id]
        assert [c.status for c in stale] == ["phase1_prepared", "rate_locked"]

    def test_open_swaps_become_stuck(self, reconciliation, later, session_factory, users):
        with atomic_transaction(session_factory) as session:
            sell = StarsOrder(user_id=users["alice"].id, order_type=OrderType.SELL.value,
                              stars_amount=Decimal("1000"), rate=Decimal("0.001"), status="matched")
            buy = StarsOrder(user_id=users["bob"].id, order_type=OrderType.BUY.value,
                             ton_amount=Decimal("1"), rate=Decimal("0.001"), status="matched")
            session.add_all([sell, buy])
            session.flush()
            swap = AtomicSwap(sell_order_id=sell.id, buy_order_id=buy.id, status=SwapStatus.IN_PROGRESS.value)
            session.add(swap)
            session.flush()
            swap_id = swap.id

        assert reconciliation.check_stuck_atomic_swaps() == []
        assert [s.swap_id for s in later.check_stuck_atomic_swaps()] == [swap_id]

    def test_unconfirmed_deposits(self, reconciliation, later, session_factory, users):
        with atomic_transaction(session_factory) as session:
            deposit = Deposit(user_id=users["bob"].id, amount=Decimal("5"), tx_hash="dep_1")
            session.add(deposit)
            session.flush()
            deposit_id = deposit.id

        assert reconciliation.check_unverified_deposits() == []
        unverified = later.check_unverified_deposits()
        assert [d.deposit_id for d in unverified] == [deposit_id]
        assert unverified[0].currency == "TON"


class TestReportAndSweep:

    @pytest.mark.asyncio
    async def test_report_groups_by_status(self, reconciliation, make_conversion, blockchain):
        first = make_conversion()
        second = make_conversion(tx_ref="tx_0002")
        third = make_conversion(tx_ref=None, status=ConversionStatus.PHASE1_PREPARED)

        await reconciliation.reconcile_conversion(first.id)
        blockchain.get_transaction_state.return_value = _confirmed("2")
        await reconciliation.reconcile_conversion(second.id)
        await reconciliation.reconcile_conversion(third.id)

        now = get_naive_utc_now()
        summary, records = reconciliation.get_reconciliation_report(now - timedelta(hours=1), now + timedelta(hours=1))

        assert summary.total_checked == 3
        assert (summary.matched, summary.mismatched, summary.pending) == (1, 1, 1)
        assert [r.conversion_id for r in summary.discrepancies] == [second.id]
        assert len(records) == 3

    @pytest.mark.asyncio
    async def test_sweep_reconciles_each_completed_conversion_once(self, reconciliation, make_conversion, blockchain):
        make_conversion()
        make_conversion(tx_ref="tx_0002")
        make_conversion(tx_ref=None, status=ConversionStatus.PHASE1_PREPARED)

        report = await reconciliation.run_reconciliation_sweep()
        assert (report.reconciled, report.matched, report.mismatched, report.errors) == (2, 2, 0, 0)

        again = await reconciliation.run_reconciliation_sweep()
        assert again.reconciled == 0
        assert blockchain.get_transaction_state.await_count == 2

    @pytest.mark.asyncio
    async def test_sweep_retries_pending_records(self, reconciliation, make_conversion, blockchain):
        make_conversion()
        blockchain.get_transaction_state.return_value = pending_state()

        first = await reconciliation.run_reconciliation_sweep()
        assert first.pending == 1

        blockchain.get_transaction_state.return_value = _confirmed("0.9799")
        second = await reconciliation.run_reconciliation_sweep()
        assert (second.reconciled, second.matched) == (1, 1)

    @pytest.mark.asyncio
    async def test_sweep_counts_errors_and_continues(self, reconciliation, make_conversion, blockchain):
        make_conversion()
        make_conversion(tx_ref="tx_0002")
        blockchain.get_transaction_state.side_effect = [RuntimeError("indexer down"), _confirmed("0.9799")]

        report = await reconciliation.run_reconciliation_sweep()

        assert report.errors == 1
        assert report.matched == 1
