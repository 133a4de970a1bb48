"""
Reconciliation Service - independent audit of settled amounts

Every check appends a ReconciliationRecord; conversions and payments are only
read, never corrected. Mismatches are for operators to act on.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from config import Config
from models import (
    AtomicSwap, Conversion, ConversionStatus, Deposit, DepositStatus, Payment, PaymentStatus,
    ReconciliationRecord, ReconciliationStatus, ReconciliationType, SwapStatus,
)
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import NotFoundError, ReconciliationMismatch

logger = logging.getLogger(__name__)


@dataclass
class StalePayment:
    payment_id: int
    user_id: int
    stars_amount: Decimal
    status: str
    age_hours: int


@dataclass
class StaleConversion:
    conversion_id: int
    user_id: int
    source_amount: Decimal
    target_amount: Optional[Decimal]
    status: str
    age_hours: int


@dataclass
class StuckAtomicSwap:
    swap_id: int
    sell_order_id: int
    buy_order_id: int
    status: str
    age_hours: int


@dataclass
class UnverifiedDeposit:
    deposit_id: int
    user_id: int
    amount: Decimal
    currency: str
    status: str
    age_hours: int


@dataclass
class ReconciliationSummary:
    matched: int = 0
    mismatched: int = 0
    pending: int = 0
    total_checked: int = 0
    discrepancies: List[ReconciliationRecord] = field(default_factory=list)


@dataclass
class SweepReport:
    reconciled: int = 0
    matched: int = 0
    mismatched: int = 0
    pending: int = 0
    errors: int = 0
    stale_payments: List[StalePayment] = field(default_factory=list)
    stale_conversions: List[StaleConversion] = field(default_factory=list)
    stuck_swaps: List[StuckAtomicSwap] = field(default_factory=list)
    unverified_deposits: List[UnverifiedDeposit] = field(default_factory=list)


class ReconciliationService:
    """Read-only auditor over payments, conversions, swaps and deposits"""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        blockchain=None,
        tolerance: Decimal = Config.RECONCILIATION_TOLERANCE_TON,
        batch_size: int = Config.RECONCILIATION_BATCH_SIZE,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory
        self.blockchain = blockchain
        self.tolerance = tolerance
        self.batch_size = batch_size
        self._clock = clock or get_naive_utc_now

    def _age_hours(self, created_at: datetime) -> int:
        return int((self._clock() - created_at).total_seconds() // 3600)

    def _append(self, **fields: Any) -> ReconciliationRecord:
        with atomic_transaction(self.session_factory) as session:
            now = self._clock()
            record = ReconciliationRecord(reconciled_at=now, created_at=now, **fields)
            session.add(record)
            session.flush()
            return record

    def reconcile_payment(self, payment_id: int) -> ReconciliationRecord:
        """Recorded stars_amount vs the Telegram payload total; any difference is a mismatch"""
        with atomic_transaction(self.session_factory) as session:
            payment = session.get(Payment, payment_id)
            if payment is None:
                raise NotFoundError(f"Payment {payment_id} not found")
            expected = Decimal(payment.stars_amount)
            payload = payment.raw_payload or {}
            reported = (payload.get("successful_payment") or {}).get("total_amount")
            external_reference = payment.telegram_payment_id

        actual = Decimal(str(reported)) if reported is not None else Decimal("0")
        difference = abs(expected - actual)
        status = ReconciliationStatus.MATCHED if difference == 0 else ReconciliationStatus.MISMATCH

        record = self._append(
            payment_id=payment_id,
            expected_amount=expected,
            actual_amount=actual,
            difference=difference,
            status=status.value,
            reconciliation_type=ReconciliationType.PAYMENT.value,
            external_reference=external_reference,
            notes=None if reported is not None else "No total_amount in payment payload",
        )

        if status == ReconciliationStatus.MISMATCH:
            logger.warning(f"⚠️ RECONCILIATION_MISMATCH: payment {payment_id} expected {expected} got {actual}")
        else:
            logger.info(f"✅ Payment reconciled: {payment_id} - Status: {status.value}")
        return record

    async def reconcile_conversion(self, conversion_id: int, strict: bool = False) -> ReconciliationRecord:
        """
        Compare a conversion's target_amount with the amount observed on-chain.

        Differences up to the tolerance (0.01 TON) count as matched. Without a
        transaction reference, or before the transaction confirms, the record
        is pending. With strict=True a mismatch raises ReconciliationMismatch
        after it has been recorded.
        """
        with atomic_transaction(self.session_factory) as session:
            conversion = session.get(Conversion, conversion_id)
            if conversion is None:
                raise NotFoundError(f"Conversion {conversion_id} not found")
            expected = Decimal(conversion.target_amount or 0)
            tx_ref = conversion.on_chain_tx_ref

        actual = Decimal("0")
        difference = Decimal("0")
        status = ReconciliationStatus.PENDING
        notes = None

        if not tx_ref:
            notes = "No on-chain transaction yet"
        else:
            state = await self.blockchain.get_transaction_state(tx_ref, Config.TON_MIN_CONFIRMATIONS)
            if state.is_confirmed and state.amount is not None:
                actual = state.amount
                difference = abs(expected - actual)
                status = (
                    ReconciliationStatus.MATCHED if difference <= self.tolerance
                    else ReconciliationStatus.MISMATCH
                )
            else:
                notes = f"Transaction {state.status}" + (f" ({state.reason})" if state.reason else "")

        record = self._append(
            conversion_id=conversion_id,
            expected_amount=expected,
            actual_amount=actual,
            difference=difference,
            status=status.value,
            reconciliation_type=ReconciliationType.CONVERSION.value,
            external_reference=tx_ref,
            notes=notes,
        )

        if status == ReconciliationStatus.MISMATCH:
            logger.error(
                f"🚨 RECONCILIATION_MISMATCH: conversion {conversion_id} expected {expected} TON, "
                f"chain shows {actual} TON (diff {difference})"
            )
            if strict:
                raise ReconciliationMismatch(conversion_id, expected, actual)
        else:
            logger.info(f"✅ Conversion reconciled: {conversion_id} - Status: {status.value}")
        return record

    def check_stale_pending_payments(self) -> List[StalePayment]:
        cutoff = self._clock() - timedelta(hours=Config.STALE_PAYMENT_HOURS)
        with atomic_transaction(self.session_factory) as session:
            rows = session.execute(
                select(Payment).where(
                    Payment.status == PaymentStatus.RECEIVED.value,
                    Payment.created_at < cutoff,
                ).order_by(Payment.created_at)
            ).scalars().all()
            return [
                StalePayment(p.id, p.user_id, Decimal(p.stars_amount), p.status, self._age_hours(p.created_at))
                for p in rows
            ]

    def check_stale_pending_conversions(self) -> List[StaleConversion]:
        """Conversions holding payments that never reached an on-chain transfer"""
        cutoff = self._clock() - timedelta(hours=Config.STALE_CONVERSION_HOURS)
        with atomic_transaction(self.session_factory) as session:
            rows = session.execute(
                select(Conversion).where(
                    Conversion.status.in_([
                        ConversionStatus.PENDING.value,
                        ConversionStatus.RATE_LOCKED.value,
                        ConversionStatus.PHASE1_PREPARED.value,
                    ]),
                    Conversion.created_at < cutoff,
                ).order_by(Conversion.created_at)
            ).scalars().all()
            return [
                StaleConversion(
                    c.id, c.user_id, Decimal(c.source_amount),
                    Decimal(c.target_amount) if c.target_amount is not None else None,
                    c.status, self._age_hours(c.created_at),
                )
                for c in rows
                # rate_locked shells without payments are left to the expiry sweep
                if c.status != ConversionStatus.RATE_LOCKED.value or c.payment_ids
            ]

    def check_stuck_atomic_swaps(self) -> List[StuckAtomicSwap]:
        cutoff = self._clock() - timedelta(hours=Config.STUCK_SWAP_HOURS)
        with atomic_transaction(self.session_factory) as session:
            rows = session.execute(
                select(AtomicSwap).where(
                    AtomicSwap.status.notin_([SwapStatus.COMPLETED.value, SwapStatus.FAILED.value]),
                    AtomicSwap.created_at < cutoff,
                ).order_by(AtomicSwap.created_at)
            ).scalars().all()
            return [
                StuckAtomicSwap(s.id, s.sell_order_id, s.buy_order_id, s.status, self._age_hours(s.created_at))
                for s in rows
            ]

    def check_unverified_deposits(self) -> List[UnverifiedDeposit]:
        cutoff = self._clock() - timedelta(hours=Config.UNVERIFIED_DEPOSIT_HOURS)
        with atomic_transaction(self.session_factory) as session:
            rows = session.execute(
                select(Deposit).where(
                    Deposit.status == DepositStatus.AWAITING_CONFIRMATION.value,
                    Deposit.created_at < cutoff,
                ).order_by(Deposit.created_at)
            ).scalars().all()
            return [
                UnverifiedDeposit(d.id, d.user_id, Decimal(d.amount), d.currency, d.status, self._age_hours(d.created_at))
                for d in rows
            ]

    def get_reconciliation_report(
        self, start: datetime, end: datetime
    ) -> Tuple[ReconciliationSummary, List[ReconciliationRecord]]:
        with atomic_transaction(self.session_factory) as session:
            records = list(session.execute(
                select(ReconciliationRecord)
                .where(ReconciliationRecord.created_at >= start, ReconciliationRecord.created_at <= end)
                .order_by(ReconciliationRecord.created_at.desc(), ReconciliationRecord.id.desc())
            ).scalars().all())

        discrepancies = [r for r in records if r.status == ReconciliationStatus.MISMATCH.value]
        summary = ReconciliationSummary(
            matched=sum(1 for r in records if r.status == ReconciliationStatus.MATCHED.value),
            mismatched=len(discrepancies),
            pending=sum(1 for r in records if r.status == ReconciliationStatus.PENDING.value),
            total_checked=len(records),
            discrepancies=discrepancies,
        )
        return summary, records

    def _unreconciled_conversion_ids(self) -> List[int]:
        settled = (
            select(ReconciliationRecord.conversion_id)
            .where(
                ReconciliationRecord.conversion_id.is_not(None),
                ReconciliationRecord.status.in_([
                    ReconciliationStatus.MATCHED.value, ReconciliationStatus.MISMATCH.value,
                ]),
            )
        )
        with atomic_transaction(self.session_factory) as session:
            return list(session.execute(
                select(Conversion.id)
                .where(
                    Conversion.status == ConversionStatus.COMPLETED.value,
                    Conversion.on_chain_tx_ref.is_not(None),
                    Conversion.id.notin_(settled),
                )
                .order_by(Conversion.completed_at)
                .limit(self.batch_size)
            ).scalars().all())

    async def run_reconciliation_sweep(self) -> SweepReport:
        """Reconcile completed conversions lacking a final record, then run the stale checks"""
        report = SweepReport()

        for conversion_id in self._unreconciled_conversion_ids():
            try:
                record = await self.reconcile_conversion(conversion_id)
            except Exception as e:
                report.errors += 1
                logger.error(f"❌ Reconciliation of conversion {conversion_id} failed: {e}", exc_info=True)
                continue
            report.reconciled += 1
            if record.status == ReconciliationStatus.MATCHED.value:
                report.matched += 1
            elif record.status == ReconciliationStatus.MISMATCH.value:
                report.mismatched += 1
            else:
                report.pending += 1

        report.stale_payments = self.check_stale_pending_payments()
        report.stale_conversions = self.check_stale_pending_conversions()
        report.stuck_swaps = self.check_stuck_atomic_swaps()
        report.unverified_deposits = self.check_unverified_deposits()

        for label, items in (
            ("stale payments", report.stale_payments),
            ("stale conversions", report.stale_conversions),
            ("stuck atomic swaps", report.stuck_swaps),
            ("unverified deposits", report.unverified_deposits),
        ):
            if items:
                logger.warning(f"⚠️ RECONCILIATION: {len(items)} {label} need operator attention")

        logger.info(
            f"📊 Reconciliation sweep: {report.reconciled} checked, {report.matched} matched, "
            f"{report.mismatched} mismatched, {report.pending} pending"
        )
        return report
