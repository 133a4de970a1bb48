"""
Conversion Service - Stars -> TON conversion orchestrator

Flow:
    get_quote -> (lock_rate) -> create_conversion -> execute_settlement
        -> poll_conversion_status -> completed | failed

create_conversion returns as soon as the conversion row exists; settlement
and confirmation polling run as tracked background tasks keyed per
conversion. A transfer whose outcome is unknown (the signer raised, timed out
or returned no reference) leaves the conversion queued in phase1_prepared.
Anything else that goes wrong in those tasks ends in a terminal state: the
conversion is failed, its payments go back to `received` and its pending
platform fee is cancelled.

Database blocks are short synchronous transactions and never span an await.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from models import (
    Conversion, ConversionStatus, Payment, PaymentStatus, SettlementRoute, User,
)
from services.confirmation_poller import ConfirmationPoller, PollOutcome, PollResult
from services.fee_service import FeeBreakdown, FeeService
from services.rate_lock_service import RateLockManager
from services.ton_blockchain_service import TransactionState, validate_ton_address
from utils.atomic_transactions import atomic_transaction
from utils.background_task_runner import BackgroundTaskRunner
from utils.conversion_state_machine import ConversionStateMachine, TERMINAL_STATES, as_status
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import (
    MinimumAmountNotMet, NotFoundError, OnChainFailure, PollingTimeout, ValidationError,
)

logger = logging.getLogger(__name__)

CONVERSION_COMPLETED_EVENT = "conversion.completed"
CONVERSION_FAILED_EVENT = "conversion.failed"

SETTLEABLE_STATES = (
    ConversionStatus.PENDING.value,
    ConversionStatus.RATE_LOCKED.value,
    ConversionStatus.PHASE1_PREPARED.value,
)


@dataclass(frozen=True)
class RateQuote:
    source_amount: Decimal
    source_currency: str
    target_currency: str
    exchange_rate: Decimal
    fee_breakdown: FeeBreakdown
    net_source_amount: Decimal
    target_amount: Decimal
    valid_until: datetime
    estimated_arrival: Optional[datetime]


@dataclass(frozen=True)
class RateLockResult:
    lock_id: str
    conversion_id: int
    exchange_rate: Decimal
    source_amount: Decimal
    target_amount: Decimal
    fee_breakdown: FeeBreakdown
    locked_at: datetime
    valid_until: datetime
    duration_seconds: int


@dataclass(frozen=True)
class ConversionStatusView:
    conversion_id: int
    status: str
    phase_name: str
    progress_percentage: int
    estimated_completion: Optional[datetime]
    source_amount: Decimal
    target_amount: Optional[Decimal]
    exchange_rate: Optional[Decimal]
    on_chain_tx_ref: Optional[str]
    error_message: Optional[str]
    created_at: datetime
    completed_at: Optional[datetime]


def failure_reason(error: Exception) -> str:
    message = getattr(error, "message", None) or str(error)
    if not message:
        return type(error).__name__
    return f"{type(error).__name__}: {message}"


class ConversionService:
    """Drives conversions from quote to on-chain completion"""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        rate_source=None,
        fee_service: Optional[FeeService] = None,
        blockchain=None,
        rate_locks: Optional[RateLockManager] = None,
        p2p_service=None,
        webhook_service=None,
        task_runner: Optional[BackgroundTaskRunner] = None,
        poller: Optional[ConfirmationPoller] = None,
        settlement_route: str = Config.CONVERSION_ROUTE,
        quote_validity_seconds: int = Config.QUOTE_VALIDITY_SECONDS,
        settlement_max_attempts: int = Config.SETTLEMENT_MAX_ATTEMPTS,
        settlement_retry_interval_seconds: int = Config.SETTLEMENT_RETRY_INTERVAL_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory
        self.rate_source = rate_source
        self.fee_service = fee_service or FeeService(session_factory)
        self.blockchain = blockchain
        self.rate_locks = rate_locks if rate_locks is not None else RateLockManager()
        self.p2p_service = p2p_service
        self.webhook_service = webhook_service
        self.task_runner = task_runner or BackgroundTaskRunner()
        self.poller = poller or ConfirmationPoller(blockchain)
        self.settlement_route = SettlementRoute(settlement_route)
        self.quote_validity_seconds = quote_validity_seconds
        self.settlement_max_attempts = settlement_max_attempts
        self.settlement_retry_interval_seconds = settlement_retry_interval_seconds
        self._clock = clock or get_naive_utc_now

    # ------------------------------------------------------------------
    # Quotes and locks
    # ------------------------------------------------------------------

    def _check_limits(self, amount: Decimal) -> None:
        config = self.fee_service.get_config()
        if amount < config.min_conversion_amount:
            raise MinimumAmountNotMet(amount, config.min_conversion_amount)
        if amount > config.max_conversion_amount:
            raise ValidationError(
                f"Maximum conversion amount is {config.max_conversion_amount} STARS, got {amount}"
            )

    def _price(self, amount: Decimal, rate: Decimal):
        fees = self.fee_service.calculate_fee_breakdown(amount)
        net = amount - fees.total
        if net <= 0:
            raise ValidationError(f"Amount {amount} does not cover fees of {fees.total}")
        return fees, net, MonetaryDecimal.quantize_ton(net * rate)

    async def get_quote(
        self, source_amount, source_currency: str = Config.SOURCE_CURRENCY, target_currency: str = Config.TARGET_CURRENCY
    ) -> RateQuote:
        """
        Price a conversion at the current aggregated rate.

        target_amount = (source_amount - total fees) * rate, rounded down to
        whole nanotons. The quote is valid for QUOTE_VALIDITY_SECONDS.
        """
        amount = MonetaryDecimal.to_decimal(source_amount, "source amount")
        self._check_limits(amount)
        rate = await self.rate_source.get_conversion_rate(source_currency, target_currency)
        fees, net, target_amount = self._price(amount, rate)

        now = self._clock()
        return RateQuote(
            source_amount=amount,
            source_currency=source_currency,
            target_currency=target_currency,
            exchange_rate=rate,
            fee_breakdown=fees,
            net_source_amount=net,
            target_amount=target_amount,
            valid_until=now + timedelta(seconds=self.quote_validity_seconds),
            estimated_arrival=ConversionStateMachine().get_estimated_completion(now),
        )

    async def estimate_conversion(
        self, source_amount, source_currency: str = Config.SOURCE_CURRENCY, target_currency: str = Config.TARGET_CURRENCY
    ) -> RateQuote:
        return await self.get_quote(source_amount, source_currency, target_currency)

    async def lock_rate(
        self,
        user_id: int,
        source_amount,
        source_currency: str = Config.SOURCE_CURRENCY,
        target_currency: str = Config.TARGET_CURRENCY,
        duration_seconds: Optional[int] = None,
    ) -> RateLockResult:
        """Quote, reserve the rate and persist a rate_locked conversion shell; no funds move"""
        quote = await self.get_quote(source_amount, source_currency, target_currency)
        duration = duration_seconds or self.fee_service.get_config().rate_lock_duration_seconds

        with atomic_transaction(self.session_factory) as session:
            if session.get(User, user_id) is None:
                raise NotFoundError(f"User {user_id} not found")

            lock = self.rate_locks.create_lock(
                quote.exchange_rate, source_currency, target_currency, quote.source_amount, duration
            )
            machine = ConversionStateMachine(ConversionStatus.PENDING)
            machine.transition(ConversionStatus.RATE_LOCKED, {"lock_id": lock.id})

            shell = Conversion(
                user_id=user_id,
                payment_ids=[],
                source_currency=source_currency,
                target_currency=target_currency,
                source_amount=quote.source_amount,
                target_amount=quote.target_amount,
                exchange_rate=quote.exchange_rate,
                rate_lock_id=lock.id,
                rate_locked_until=lock.expires_at,
                status=machine.get_state().value,
                fee_breakdown=quote.fee_breakdown.to_dict(),
                platform_fee_amount=quote.fee_breakdown.platform,
                platform_fee_percentage=quote.fee_breakdown.platform_percentage,
            )
            session.add(shell)
            session.flush()
            shell_id = shell.id

        logger.info(f"🔒 Rate locked for user {user_id}: conversion {shell_id} @ {quote.exchange_rate} until {lock.expires_at}")
        return RateLockResult(
            lock_id=lock.id,
            conversion_id=shell_id,
            exchange_rate=quote.exchange_rate,
            source_amount=quote.source_amount,
            target_amount=quote.target_amount,
            fee_breakdown=quote.fee_breakdown,
            locked_at=lock.locked_at,
            valid_until=lock.expires_at,
            duration_seconds=lock.duration_seconds,
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_conversion(
        self,
        user_id: int,
        payment_ids: Sequence[int],
        target_currency: str = Config.TARGET_CURRENCY,
        rate_lock_id: Optional[str] = None,
        destination_address: Optional[str] = None,
    ) -> Conversion:
        """
        Turn received payments into a conversion and start settlement.

        Returns once the conversion is persisted; settlement continues in the
        background. Raises ValidationError / MinimumAmountNotMet /
        NotFoundError synchronously for bad input.
        """
        ids = sorted(set(int(pid) for pid in payment_ids))
        if not ids:
            raise ValidationError("At least one payment is required")

        with atomic_transaction(self.session_factory) as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError(f"User {user_id} not found")
            payments = session.execute(select(Payment).where(Payment.id.in_(ids))).scalars().all()
            found = {p.id for p in payments}
            missing = [pid for pid in ids if pid not in found]
            if missing:
                raise NotFoundError(f"Payments not found: {missing}")
            for payment in payments:
                if payment.user_id != user_id:
                    raise ValidationError(f"Payment {payment.id} does not belong to user {user_id}")
                if payment.status != PaymentStatus.RECEIVED.value:
                    raise ValidationError(f"Payment {payment.id} is {payment.status}, expected received")
            total = sum((Decimal(p.stars_amount) for p in payments), Decimal("0"))

            destination = destination_address or user.ton_wallet_address
            shell = None
            if rate_lock_id:
                shell = session.execute(
                    select(Conversion).where(
                        Conversion.rate_lock_id == rate_lock_id,
                        Conversion.user_id == user_id,
                        Conversion.status == ConversionStatus.RATE_LOCKED.value,
                    )
                ).scalar_one_or_none()
            shell_id = shell.id if shell is not None else None
            shell_unused = shell is not None and not shell.payment_ids

        if not validate_ton_address(destination):
            raise ValidationError("A valid TON destination address is required")

        source_currency = Config.SOURCE_CURRENCY
        lock = self.rate_locks.get_lock(rate_lock_id) if rate_lock_id else None
        use_lock = (
            lock is not None
            and shell_unused
            and lock.source_amount == total
            and lock.source_currency == source_currency
            and lock.target_currency == target_currency
        )

        if use_lock:
            self._check_limits(total)
            rate = lock.exchange_rate
            fees, _, target_amount = self._price(total, rate)
        else:
            if rate_lock_id:
                reason = "expired" if lock is None else "does not match the payments"
                logger.warning(f"⚠️ Rate lock {rate_lock_id} {reason}; re-quoting for user {user_id}")
            quote = await self.get_quote(total, source_currency, target_currency)
            rate, fees, target_amount = quote.exchange_rate, quote.fee_breakdown, quote.target_amount

        with atomic_transaction(self.session_factory) as session:
            flipped = session.execute(
                update(Payment)
                .where(
                    Payment.id.in_(ids),
                    Payment.user_id == user_id,
                    Payment.status == PaymentStatus.RECEIVED.value,
                )
                .values(status=PaymentStatus.CONVERTING.value, updated_at=self._clock())
                .execution_options(synchronize_session=False)
            ).rowcount
            if flipped != len(ids):
                raise ValidationError("Payments are no longer available for conversion")

            route = self.settlement_route.value
            if use_lock:
                claimed = session.execute(
                    update(Conversion)
                    .where(
                        Conversion.id == shell_id,
                        Conversion.status == ConversionStatus.RATE_LOCKED.value,
                    )
                    .values(
                        payment_ids=ids,
                        destination_address=destination,
                        settlement_route=route,
                        updated_at=self._clock(),
                    )
                    .execution_options(synchronize_session=False)
                ).rowcount
                if claimed != 1:
                    raise ValidationError(f"Rate lock {rate_lock_id} has already been used")
                conversion = session.get(Conversion, shell_id)
                session.refresh(conversion)
            else:
                if shell_id is not None:
                    self._fail_in_session(session, shell_id, "RateLockExpired: Rate lock expired before use")
                conversion = Conversion(
                    user_id=user_id,
                    payment_ids=ids,
                    source_currency=source_currency,
                    target_currency=target_currency,
                    source_amount=total,
                    target_amount=target_amount,
                    exchange_rate=rate,
                    status=ConversionStatus.PENDING.value,
                    fee_breakdown=fees.to_dict(),
                    platform_fee_amount=fees.platform,
                    platform_fee_percentage=fees.platform_percentage,
                    settlement_route=route,
                    destination_address=destination,
                )
                session.add(conversion)
                session.flush()

            self.fee_service.record_fee(
                session,
                conversion.id,
                user_id,
                fees.platform,
                MonetaryDecimal.quantize_ton(fees.platform * rate),
            )

        if use_lock:
            self.rate_locks.release_lock(rate_lock_id)

        logger.info(
            f"🔄 Conversion {conversion.id} created: {total} STARS -> {target_amount} TON "
            f"@ {rate} for user {user_id} (payments {ids})"
        )
        self._spawn_settlement(conversion.id)
        return conversion

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def _spawn_settlement(self, conversion_id: int):
        return self.task_runner.spawn(
            f"settlement:{conversion_id}",
            lambda: self.execute_settlement(conversion_id),
            on_failure=lambda error: self._fail_conversion(conversion_id, failure_reason(error)),
        )

    def _spawn_poll(self, conversion_id: int, tx_ref: str):
        return self.task_runner.spawn(
            f"poll:{conversion_id}",
            lambda: self.poll_conversion_status(conversion_id, tx_ref),
            on_failure=lambda error: self._fail_conversion(conversion_id, failure_reason(error)),
        )

    async def execute_settlement(self, conversion_id: int) -> Optional[str]:
        """
        Move a conversion to phase1_prepared and obtain an on-chain transfer.

        With a transaction reference the conversion moves to phase2_committed
        and confirmation polling starts. Without one it stays queued in
        phase1_prepared for retry_queued_settlements, until
        SETTLEMENT_MAX_ATTEMPTS is exhausted.
        """
        with atomic_transaction(self.session_factory) as session:
            conversion = session.get(Conversion, conversion_id)
            if conversion is None:
                raise NotFoundError(f"Conversion {conversion_id} not found")
            current = as_status(conversion.status)
            if current not in (ConversionStatus.PENDING, ConversionStatus.RATE_LOCKED, ConversionStatus.PHASE1_PREPARED):
                logger.info(f"Conversion {conversion_id} is {current.value}; settlement skipped")
                return None
            if current != ConversionStatus.PHASE1_PREPARED:
                self._advance(session, conversion, ConversionStatus.PHASE1_PREPARED)

            destination = conversion.destination_address
            target_amount = MonetaryDecimal.stored_ton(conversion.target_amount)
            rate = MonetaryDecimal.quantize_rate(conversion.exchange_rate)
            fees = (conversion.fee_breakdown or {}).get("total", "0")
            net_stars = MonetaryDecimal.quantize_stars(conversion.source_amount) - Decimal(fees)
            route = conversion.settlement_route or self.settlement_route.value

        tx_ref, swap_id, transfer_error = None, None, None
        try:
            if route == SettlementRoute.P2P.value and self.p2p_service is not None:
                routed = await self.p2p_service.settle_conversion(
                    conversion_id, net_stars, rate, target_amount, destination
                )
                if routed:
                    tx_ref, swap_id = routed
            if not tx_ref:
                tx_ref = await self.blockchain.send_transfer(destination, target_amount, f"Conversion {conversion_id}")
        except Exception as e:
            # Outcome of the transfer is unknown, so queue rather than fail
            transfer_error = failure_reason(e)
            logger.warning(f"⚠️ Settlement transfer for conversion {conversion_id} raised {transfer_error}")

        exhausted = False
        with atomic_transaction(self.session_factory) as session:
            conversion = session.get(Conversion, conversion_id)
            if conversion.status != ConversionStatus.PHASE1_PREPARED.value:
                logger.warning(
                    f"⚠️ Conversion {conversion_id} moved to {conversion.status} during settlement"
                )
                return tx_ref
            if tx_ref:
                conversion.on_chain_tx_ref = tx_ref
                conversion.swap_id = swap_id
                conversion.settlement_route = SettlementRoute.P2P.value if swap_id else SettlementRoute.DIRECT.value
                conversion.error_message = None
                self._advance(session, conversion, ConversionStatus.PHASE2_COMMITTED, tx_ref=tx_ref)
            else:
                conversion.settlement_attempts = (conversion.settlement_attempts or 0) + 1
                attempts = conversion.settlement_attempts
                exhausted = attempts >= self.settlement_max_attempts
                conversion.error_message = (
                    f"Settlement queued for retry (attempt {attempts}/{self.settlement_max_attempts}): "
                    f"{transfer_error or 'no transaction reference obtained'}"
                )
                conversion.updated_at = self._clock()

        if tx_ref:
            logger.info(f"📤 Conversion {conversion_id} committed on-chain: {tx_ref}")
            self._spawn_poll(conversion_id, tx_ref)
        elif exhausted:
            await self._fail_conversion(
                conversion_id,
                f"Settlement failed: no transaction reference after {self.settlement_max_attempts} attempts",
            )
        else:
            logger.warning(f"⚠️ Conversion {conversion_id} queued for settlement retry")
        return tx_ref

    async def retry_queued_settlements(self, limit: int = 50) -> int:
        """
        Re-spawn queued settlements and resume orphaned confirmation polls.

        Only conversions idle for at least the retry interval are picked, so a
        settlement still running elsewhere is left alone. Conversions whose
        first settlement never ran (pending, a promoted rate_locked shell, or
        phase1_prepared with no attempt recorded) are picked up the same way.
        """
        cutoff = self._clock() - timedelta(seconds=self.settlement_retry_interval_seconds)
        with atomic_transaction(self.session_factory) as session:
            candidates = session.execute(
                select(Conversion.id, Conversion.payment_ids)
                .where(
                    Conversion.status.in_(SETTLEABLE_STATES),
                    Conversion.updated_at <= cutoff,
                )
                .order_by(Conversion.updated_at)
                .limit(limit)
            ).all()
            # Unpromoted rate_locked shells have no payments and belong to the expiry sweep
            queued = [conversion_id for conversion_id, payment_ids in candidates if payment_ids]
            committed = session.execute(
                select(Conversion.id, Conversion.on_chain_tx_ref)
                .where(
                    Conversion.status == ConversionStatus.PHASE2_COMMITTED.value,
                    Conversion.on_chain_tx_ref.is_not(None),
                    Conversion.updated_at <= cutoff,
                )
                .order_by(Conversion.updated_at)
                .limit(limit)
            ).all()

        spawned = 0
        for conversion_id in queued:
            if not self.task_runner.is_running(f"settlement:{conversion_id}"):
                self._spawn_settlement(conversion_id)
                spawned += 1
        for conversion_id, tx_ref in committed:
            if not self.task_runner.is_running(f"poll:{conversion_id}"):
                self._spawn_poll(conversion_id, tx_ref)
                spawned += 1

        if spawned:
            logger.info(f"🔁 Resumed {spawned} settlements/polls")
        return spawned

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    def _awaiting_confirmation(self, conversion_id: int) -> bool:
        with atomic_transaction(self.session_factory) as session:
            conversion = session.get(Conversion, conversion_id)
            return conversion is not None and conversion.status == ConversionStatus.PHASE2_COMMITTED.value

    async def poll_conversion_status(self, conversion_id: int, tx_ref: str) -> PollResult:
        """Poll tx_ref to a terminal outcome and apply it to the conversion"""
        result = await self.poller.poll(tx_ref, should_continue=lambda: self._awaiting_confirmation(conversion_id))

        if result.outcome == PollOutcome.CONFIRMED:
            await self._complete_conversion(conversion_id, tx_ref, result.state)
        elif result.outcome == PollOutcome.FAILED:
            error = OnChainFailure(tx_ref, result.state.exit_code, result.state.reason)
            await self._fail_conversion(conversion_id, failure_reason(error))
        elif result.outcome == PollOutcome.TIMEOUT:
            await self._fail_conversion(conversion_id, failure_reason(PollingTimeout(tx_ref, result.attempts)))
        return result

    async def _complete_conversion(self, conversion_id: int, tx_ref: str, state: Optional[TransactionState]) -> bool:
        with atomic_transaction(self.session_factory) as session:
            conversion = session.get(Conversion, conversion_id)
            if conversion is None or conversion.status != ConversionStatus.PHASE2_COMMITTED.value:
                return False

            machine = ConversionStateMachine(conversion.status, conversion_id)
            for step in machine.path_to(ConversionStatus.COMPLETED):
                machine.transition(step, {"tx_ref": tx_ref})
            now = self._clock()
            conversion.status = machine.get_state().value
            conversion.completed_at = now
            conversion.updated_at = now
            conversion.error_message = None

            session.execute(
                update(Payment)
                .where(
                    Payment.id.in_(conversion.payment_ids),
                    Payment.status == PaymentStatus.CONVERTING.value,
                )
                .values(status=PaymentStatus.COMPLETED.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            self.fee_service.mark_fee_collected(conversion_id, tx_ref, session=session)
            if conversion.swap_id and self.p2p_service is not None:
                self.p2p_service.complete_swap(conversion.swap_id, tx_ref, session=session)

            user_id = conversion.user_id
            payload = self._event_payload(conversion)
            if state is not None and state.confirmations:
                payload["confirmations"] = state.confirmations

        logger.info(f"✅ Conversion {conversion_id} completed ({tx_ref})")
        await self._notify(user_id, CONVERSION_COMPLETED_EVENT, payload)
        return True

    # ------------------------------------------------------------------
    # Failure
    # ------------------------------------------------------------------

    def _advance(self, session: Session, conversion: Conversion, target: ConversionStatus, **metadata: Any) -> None:
        machine = ConversionStateMachine(conversion.status, conversion.id)
        machine.transition(target, metadata)
        conversion.status = machine.get_state().value
        conversion.updated_at = self._clock()
        session.flush()

    def _fail_in_session(self, session: Session, conversion_id: int, reason: str) -> Optional[Conversion]:
        conversion = session.get(Conversion, conversion_id)
        if conversion is None or as_status(conversion.status) in TERMINAL_STATES:
            return None

        self._advance(session, conversion, ConversionStatus.FAILED, reason=reason)
        conversion.error_message = reason

        if conversion.payment_ids:
            session.execute(
                update(Payment)
                .where(
                    Payment.id.in_(conversion.payment_ids),
                    Payment.status == PaymentStatus.CONVERTING.value,
                )
                .values(status=PaymentStatus.RECEIVED.value, updated_at=self._clock())
                .execution_options(synchronize_session=False)
            )
        self.fee_service.cancel_fee(session, conversion_id)
        if conversion.swap_id and self.p2p_service is not None:
            self.p2p_service.fail_swap(conversion.swap_id, reason, session=session)
        if conversion.rate_lock_id:
            self.rate_locks.release_lock(conversion.rate_lock_id)
        return conversion

    async def _fail_conversion(self, conversion_id: int, reason: str) -> bool:
        """Terminal failure: payments back to received, fee cancelled, webhook sent"""
        with atomic_transaction(self.session_factory) as session:
            conversion = self._fail_in_session(session, conversion_id, reason)
            if conversion is None:
                return False
            user_id = conversion.user_id
            has_payments = bool(conversion.payment_ids)
            payload = self._event_payload(conversion)

        logger.error(f"❌ Conversion {conversion_id} failed: {reason}")
        if has_payments:
            await self._notify(user_id, CONVERSION_FAILED_EVENT, payload)
        return True

    async def expire_rate_locked_conversions(self) -> int:
        """Fail rate_locked shells whose lock window has passed without use"""
        now = self._clock()
        with atomic_transaction(self.session_factory) as session:
            shells = session.execute(
                select(Conversion).where(
                    Conversion.status == ConversionStatus.RATE_LOCKED.value,
                    Conversion.rate_locked_until <= now,
                )
            ).scalars().all()
            expired = 0
            for shell in shells:
                if shell.payment_ids:
                    # Promoted to a real conversion; settlement owns it
                    continue
                self._fail_in_session(session, shell.id, "RateLockExpired: Rate lock expired before use")
                expired += 1

        if expired:
            logger.info(f"⏰ Expired {expired} unused rate-locked conversions")
        return expired

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    @staticmethod
    def _event_payload(conversion: Conversion) -> Dict[str, Any]:
        return {
            "conversion_id": conversion.id,
            "status": conversion.status,
            "source_amount": str(conversion.source_amount),
            "source_currency": conversion.source_currency,
            "target_amount": str(MonetaryDecimal.stored_ton(conversion.target_amount)) if conversion.target_amount is not None else None,
            "target_currency": conversion.target_currency,
            "exchange_rate": str(conversion.exchange_rate) if conversion.exchange_rate is not None else None,
            "tx_hash": conversion.on_chain_tx_ref,
            "error_message": conversion.error_message,
            "completed_at": conversion.completed_at.isoformat() if conversion.completed_at else None,
        }

    async def _notify(self, user_id: int, event: str, payload: Dict[str, Any]) -> None:
        if self.webhook_service is None:
            return
        with atomic_transaction(self.session_factory) as session:
            user = session.get(User, user_id)
            webhook_url = user.webhook_url if user else None
        if not webhook_url:
            logger.debug(f"User {user_id} has no webhook URL; {event} not sent")
            return
        try:
            await self.webhook_service.queue_event(user_id, webhook_url, event, payload)
        except Exception as e:
            # Delivery has its own retry path; the conversion outcome stands
            logger.error(f"❌ Could not queue {event} webhook for user {user_id}: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_conversion(self, conversion_id: int) -> Optional[Conversion]:
        with atomic_transaction(self.session_factory) as session:
            return session.get(Conversion, conversion_id)

    def get_user_conversions(self, user_id: int, limit: int = 20, offset: int = 0) -> List[Conversion]:
        with atomic_transaction(self.session_factory) as session:
            return list(session.execute(
                select(Conversion)
                .where(Conversion.user_id == user_id)
                .order_by(Conversion.created_at.desc(), Conversion.id.desc())
                .limit(limit)
                .offset(offset)
            ).scalars().all())

    def get_status(self, conversion_id: int, user_id: Optional[int] = None) -> ConversionStatusView:
        conversion = self.get_conversion(conversion_id)
        if conversion is None or (user_id is not None and conversion.user_id != user_id):
            raise NotFoundError(f"Conversion {conversion_id} not found")

        machine = ConversionStateMachine(conversion.status, conversion.id)
        return ConversionStatusView(
            conversion_id=conversion.id,
            status=conversion.status,
            phase_name=machine.get_phase_name(),
            progress_percentage=machine.get_progress_percentage(),
            estimated_completion=machine.get_estimated_completion(self._clock()),
            source_amount=Decimal(conversion.source_amount),
            target_amount=MonetaryDecimal.stored_ton(conversion.target_amount) if conversion.target_amount is not None else None,
            exchange_rate=Decimal(conversion.exchange_rate) if conversion.exchange_rate is not None else None,
            on_chain_tx_ref=conversion.on_chain_tx_ref,
            error_message=conversion.error_message,
            created_at=conversion.created_at,
            completed_at=conversion.completed_at,
        )
