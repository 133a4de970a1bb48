"""
Stars P2P Service - order book matching and atomic swap settlement

Matching rule:
    sell (Stars for TON, minimum rate) matches buys with rate >= sell.rate
    buy  (TON for Stars, maximum rate) matches sells with rate <= buy.rate
Best price first; equal prices go to the oldest order. A user's own orders
never match each other. One match attempt per call, no partial fills.

The single point of correctness for "at most one swap per order" is
create_swap_and_lock: a SERIALIZABLE transaction that compare-and-sets both
orders open -> matched and inserts the swap, backed by UNIQUE constraints on
atomic_swaps.sell_order_id / buy_order_id.
"""

import asyncio
import logging
import uuid
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from models import AtomicSwap, Conversion, OrderStatus, OrderType, StarsOrder, SwapStatus, User
from services.confirmation_poller import ConfirmationPoller, PollOutcome
from utils.atomic_transactions import atomic_transaction, serializable_transaction
from utils.background_task_runner import BackgroundTaskRunner
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import (
    NotFoundError, OnChainFailure, OrderAlreadyMatched, PollingTimeout, SwapTransferFailed, ValidationError,
    supervised_job,
)

logger = logging.getLogger(__name__)

OPEN_SWAP_STATES = (SwapStatus.INITIATED.value, SwapStatus.IN_PROGRESS.value)


class StarsP2PService:
    """Matches Stars/TON orders and settles each matched pair exactly once"""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        blockchain=None,
        poller: Optional[ConfirmationPoller] = None,
        task_runner: Optional[BackgroundTaskRunner] = None,
        batch_size: int = Config.P2P_MATCHING_BATCH_SIZE,
    ):
        self.session_factory = session_factory
        self.blockchain = blockchain
        self.poller = poller or (ConfirmationPoller(blockchain) if blockchain is not None else None)
        self.task_runner = task_runner or BackgroundTaskRunner()
        self.batch_size = batch_size
        self._loop_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def create_sell_order(
        self, user_id: int, stars_amount, rate, conversion_id: Optional[int] = None
    ) -> StarsOrder:
        """Offer stars_amount Stars at a minimum of rate TON per Star"""
        stars_amount = MonetaryDecimal.to_decimal(stars_amount, "stars amount")
        order = self._insert_order(user_id, OrderType.SELL, rate, stars_amount=stars_amount, conversion_id=conversion_id)
        await self.try_match_order(order.id)
        return self.get_order(order.id)

    async def create_buy_order(self, user_id: int, ton_amount, rate) -> StarsOrder:
        """Offer ton_amount TON for Stars at a maximum of rate TON per Star"""
        ton_amount = MonetaryDecimal.to_decimal(ton_amount, "ton amount")
        order = self._insert_order(user_id, OrderType.BUY, rate, ton_amount=ton_amount)
        await self.try_match_order(order.id)
        return self.get_order(order.id)

    def _insert_order(
        self,
        user_id: int,
        order_type: OrderType,
        rate,
        stars_amount: Optional[Decimal] = None,
        ton_amount: Optional[Decimal] = None,
        conversion_id: Optional[int] = None,
    ) -> StarsOrder:
        rate = MonetaryDecimal.to_decimal(rate, "rate")
        if rate <= 0:
            raise ValidationError("Rate must be positive")
        amount = stars_amount if order_type == OrderType.SELL else ton_amount
        if amount is None or amount <= 0:
            raise ValidationError(f"{order_type.value} order amount must be positive")

        with atomic_transaction(self.session_factory) as session:
            if session.get(User, user_id) is None:
                raise NotFoundError(f"User {user_id} not found")
            order = StarsOrder(
                user_id=user_id,
                order_type=order_type.value,
                stars_amount=stars_amount,
                ton_amount=ton_amount,
                rate=rate,
                status=OrderStatus.OPEN.value,
                conversion_id=conversion_id,
            )
            session.add(order)
            session.flush()

        logger.info(f"📝 {order_type.value.upper()} order {order.id}: user {user_id} {amount} @ {rate}")
        return order

    def get_order(self, order_id: int) -> Optional[StarsOrder]:
        with atomic_transaction(self.session_factory) as session:
            return session.get(StarsOrder, order_id)

    def get_swap(self, swap_id: int) -> Optional[AtomicSwap]:
        with atomic_transaction(self.session_factory) as session:
            return session.get(AtomicSwap, swap_id)

    def list_open_orders(self, order_type: Optional[str] = None, limit: int = 50) -> List[StarsOrder]:
        query = select(StarsOrder).where(StarsOrder.status == OrderStatus.OPEN.value)
        if order_type:
            query = query.where(StarsOrder.order_type == OrderType(order_type).value)
        with atomic_transaction(self.session_factory) as session:
            return list(session.execute(
                query.order_by(StarsOrder.created_at, StarsOrder.id).limit(limit)
            ).scalars().all())

    def cancel_order(self, order_id: int, user_id: int) -> bool:
        """Cancel an open order; False if it is no longer open"""
        with atomic_transaction(self.session_factory) as session:
            order = session.get(StarsOrder, order_id)
            if order is None or order.user_id != user_id:
                raise NotFoundError(f"Order {order_id} not found")
            cancelled = self._cancel_if_open(session, order_id)

        if cancelled:
            logger.info(f"🚫 Order {order_id} cancelled by user {user_id}")
        return cancelled

    @staticmethod
    def _cancel_if_open(session: Session, order_id: int) -> bool:
        result = session.execute(
            update(StarsOrder)
            .where(StarsOrder.id == order_id, StarsOrder.status == OrderStatus.OPEN.value)
            .values(status=OrderStatus.CANCELLED.value)
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def _find_counter_order(self, session: Session, order: StarsOrder) -> Optional[StarsOrder]:
        query = select(StarsOrder).where(
            StarsOrder.status == OrderStatus.OPEN.value,
            StarsOrder.user_id != order.user_id,
        )
        if order.order_type == OrderType.SELL.value:
            query = query.where(
                StarsOrder.order_type == OrderType.BUY.value,
                StarsOrder.rate >= order.rate,
            ).order_by(StarsOrder.rate.desc(), StarsOrder.id)
        else:
            query = query.where(
                StarsOrder.order_type == OrderType.SELL.value,
                StarsOrder.rate <= order.rate,
            ).order_by(StarsOrder.rate.asc(), StarsOrder.id)
        return session.execute(query.limit(1)).scalar_one_or_none()

    async def try_match_order(self, order_id: int) -> Optional[AtomicSwap]:
        """One match attempt for order_id; a no-op for orders that are not open"""
        with atomic_transaction(self.session_factory) as session:
            order = session.get(StarsOrder, order_id)
            if order is None or order.status != OrderStatus.OPEN.value:
                return None
            counter = self._find_counter_order(session, order)
            if counter is None:
                return None
            if order.order_type == OrderType.SELL.value:
                sell, buy = order, counter
            else:
                sell, buy = counter, order
            sell_id, buy_id, conversion_id = sell.id, buy.id, sell.conversion_id

        try:
            swap = self.create_swap_and_lock(sell_id, buy_id)
        except OrderAlreadyMatched as e:
            logger.info(f"Match attempt for order {order_id} lost a race: {e.message}")
            return None
        except OperationalError as e:
            # Serialization failure under concurrent matching; the next cycle retries
            logger.warning(f"⚠️ Match attempt for order {order_id} aborted by the database: {e}")
            return None

        logger.info(f"🤝 Matched sell {sell_id} with buy {buy_id} -> swap {swap.id}")

        # Conversion liquidity orders are settled by settle_conversion
        if conversion_id is None and self.blockchain is not None:
            swap_id = swap.id
            self.task_runner.spawn(
                f"swap:{swap_id}",
                lambda: self.execute_atomic_swap(swap_id),
                on_failure=lambda error: self.fail_swap(swap_id, f"Swap execution error: {error}"),
            )
        return swap

    def create_swap_and_lock(self, sell_order_id: int, buy_order_id: int) -> AtomicSwap:
        """
        Atomically flip both orders open -> matched and create their swap.

        Raises:
            OrderAlreadyMatched: either order was no longer open (or a swap
            already references it); nothing is changed.
        """
        try:
            with serializable_transaction(self.session_factory) as session:
                result = session.execute(
                    update(StarsOrder)
                    .where(
                        or_(
                            and_(StarsOrder.id == sell_order_id, StarsOrder.order_type == OrderType.SELL.value),
                            and_(StarsOrder.id == buy_order_id, StarsOrder.order_type == OrderType.BUY.value),
                        ),
                        StarsOrder.status == OrderStatus.OPEN.value,
                    )
                    .values(status=OrderStatus.MATCHED.value)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 2:
                    raise OrderAlreadyMatched(sell_order_id, buy_order_id)

                swap = AtomicSwap(
                    sell_order_id=sell_order_id,
                    buy_order_id=buy_order_id,
                    status=SwapStatus.INITIATED.value,
                )
                session.add(swap)
                session.flush()
        except IntegrityError:
            raise OrderAlreadyMatched(sell_order_id, buy_order_id)
        return swap

    async def run_matching_cycle(self) -> int:
        """Retry matching for the oldest open sell orders; returns the number of swaps created"""
        with atomic_transaction(self.session_factory) as session:
            order_ids = session.execute(
                select(StarsOrder.id)
                .where(
                    StarsOrder.order_type == OrderType.SELL.value,
                    StarsOrder.status == OrderStatus.OPEN.value,
                )
                .order_by(StarsOrder.created_at, StarsOrder.id)
                .limit(self.batch_size)
            ).scalars().all()

        matched = 0
        for order_id in order_ids:
            try:
                if await self.try_match_order(order_id) is not None:
                    matched += 1
            except Exception as e:
                logger.error(f"❌ Matching failed for order {order_id}: {e}", exc_info=True)

        if matched:
            logger.info(f"🔄 Matching cycle created {matched} swaps from {len(order_ids)} open sells")
        return matched

    def start_loop(self, interval_seconds: float = Config.P2P_MATCHING_INTERVAL_SECONDS) -> asyncio.Task:
        """Run run_matching_cycle every interval_seconds on the current event loop"""
        if self.is_loop_running():
            return self._loop_task

        cycle = supervised_job("p2p_matching", timeout_seconds=max(interval_seconds * 10, 1))(self.run_matching_cycle)

        async def _loop():
            while True:
                await cycle()
                await asyncio.sleep(interval_seconds)

        self._loop_task = asyncio.get_running_loop().create_task(_loop(), name="p2p_matching_loop")
        logger.info(f"P2P matching loop started ({interval_seconds}s interval)")
        return self._loop_task

    async def stop_loop(self) -> None:
        if self._loop_task is None:
            return
        self._loop_task.cancel()
        try:
            await self._loop_task
        except asyncio.CancelledError:
            pass
        self._loop_task = None
        logger.info("P2P matching loop stopped")

    def is_loop_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    # ------------------------------------------------------------------
    # Swap settlement
    # ------------------------------------------------------------------

    async def execute_atomic_swap(self, swap_id: int) -> Optional[AtomicSwap]:
        """Pay the seller sell.stars_amount * sell.rate TON, then poll to a terminal state"""
        with atomic_transaction(self.session_factory) as session:
            claimed = session.execute(
                update(AtomicSwap)
                .where(AtomicSwap.id == swap_id, AtomicSwap.status == SwapStatus.INITIATED.value)
                .values(
                    status=SwapStatus.IN_PROGRESS.value,
                    stars_transfer_id=f"stars-xfer-{uuid.uuid4()}",
                )
            ).rowcount
            if not claimed:
                return None
            swap = session.get(AtomicSwap, swap_id)
            sell = session.get(StarsOrder, swap.sell_order_id)
            seller = session.get(User, sell.user_id)
            destination = seller.ton_wallet_address if seller else None
            ton_amount = MonetaryDecimal.quantize_ton(Decimal(sell.stars_amount) * Decimal(sell.rate))

        if not destination:
            self.fail_swap(swap_id, "Seller has no TON wallet address")
            return self.get_swap(swap_id)

        tx_ref = await self.blockchain.send_transfer(destination, ton_amount, f"P2P swap {swap_id}")
        if not tx_ref:
            self.fail_swap(swap_id, "No transaction reference obtained for TON transfer")
            return self.get_swap(swap_id)

        self._record_transfer(swap_id, tx_ref)

        result = await self.poller.poll(tx_ref, should_continue=lambda: self._swap_in_progress(swap_id))
        if result.outcome == PollOutcome.CONFIRMED:
            self.complete_swap(swap_id, tx_ref)
        elif result.outcome == PollOutcome.FAILED:
            failure = OnChainFailure(tx_ref, result.state.exit_code, result.state.reason)
            self.fail_swap(swap_id, f"OnChainFailure: {failure.message}")
        elif result.outcome == PollOutcome.TIMEOUT:
            self.fail_swap(swap_id, f"PollingTimeout: {PollingTimeout(tx_ref, result.attempts).message}")
        return self.get_swap(swap_id)

    def _record_transfer(self, swap_id: int, tx_ref: str) -> None:
        with atomic_transaction(self.session_factory) as session:
            session.execute(
                update(AtomicSwap).where(AtomicSwap.id == swap_id).values(ton_transfer_tx=tx_ref)
            )

    def _swap_in_progress(self, swap_id: int) -> bool:
        with atomic_transaction(self.session_factory) as session:
            swap = session.get(AtomicSwap, swap_id)
            return swap is not None and swap.status == SwapStatus.IN_PROGRESS.value

    async def settle_conversion(
        self,
        conversion_id: int,
        stars_amount: Decimal,
        rate: Decimal,
        target_amount: Decimal,
        destination: str,
    ) -> Optional[Tuple[str, int]]:
        """
        Route a conversion through resting buy liquidity.

        Places a sell order for the conversion and, if it matches, sends
        target_amount TON to destination. Returns (tx_ref, swap_id), or None
        when no counter-order exists (the order is cancelled). A transfer that
        raises or yields no reference fails the swap and raises, so the caller
        does not pay the same conversion a second way.
        """
        existing = self._find_conversion_swap(conversion_id)
        if existing is not None:
            return existing

        with atomic_transaction(self.session_factory) as session:
            conversion = session.get(Conversion, conversion_id)
            if conversion is None:
                raise NotFoundError(f"Conversion {conversion_id} not found")
            user_id = conversion.user_id

        order = await self.create_sell_order(user_id, stars_amount, rate, conversion_id=conversion_id)
        swap = self._swap_for_sell_order(order.id)
        if swap is None:
            with atomic_transaction(self.session_factory) as session:
                cancelled = self._cancel_if_open(session, order.id)
            if cancelled:
                logger.info(f"No P2P liquidity for conversion {conversion_id}; order {order.id} cancelled")
                return None
            # Matched by a concurrent cycle between the attempt and the cancel
            swap = self._swap_for_sell_order(order.id)
            if swap is None:
                return None

        swap_id = swap.id
        with atomic_transaction(self.session_factory) as session:
            claimed = session.execute(
                update(AtomicSwap)
                .where(AtomicSwap.id == swap_id, AtomicSwap.status == SwapStatus.INITIATED.value)
                .values(
                    status=SwapStatus.IN_PROGRESS.value,
                    stars_transfer_id=f"stars-xfer-{uuid.uuid4()}",
                )
            ).rowcount
        if not claimed:
            return None

        try:
            tx_ref = await self.blockchain.send_transfer(
                destination, target_amount, f"Conversion {conversion_id} via swap {swap_id}"
            )
        except Exception as e:
            self.fail_swap(swap_id, f"TON transfer error: {type(e).__name__}: {e}")
            raise
        if not tx_ref:
            reason = "No transaction reference obtained for TON transfer"
            self.fail_swap(swap_id, reason)
            raise SwapTransferFailed(swap_id, reason)

        self._record_transfer(swap_id, tx_ref)
        logger.info(f"🔀 Conversion {conversion_id} settling through swap {swap_id} ({tx_ref})")
        return tx_ref, swap_id

    def _swap_for_sell_order(self, order_id: int) -> Optional[AtomicSwap]:
        with atomic_transaction(self.session_factory) as session:
            return session.execute(
                select(AtomicSwap).where(AtomicSwap.sell_order_id == order_id)
            ).scalar_one_or_none()

    def _find_conversion_swap(self, conversion_id: int) -> Optional[Tuple[str, int]]:
        """A swap for this conversion that already has a TON transfer in flight"""
        with atomic_transaction(self.session_factory) as session:
            swap = session.execute(
                select(AtomicSwap)
                .join(StarsOrder, StarsOrder.id == AtomicSwap.sell_order_id)
                .where(
                    StarsOrder.conversion_id == conversion_id,
                    AtomicSwap.status == SwapStatus.IN_PROGRESS.value,
                    AtomicSwap.ton_transfer_tx.is_not(None),
                )
                .limit(1)
            ).scalar_one_or_none()
            return (swap.ton_transfer_tx, swap.id) if swap is not None else None

    def complete_swap(self, swap_id: int, tx_ref: Optional[str] = None, session: Optional[Session] = None) -> bool:
        if session is not None:
            return self._complete_swap(session, swap_id, tx_ref)
        with atomic_transaction(self.session_factory) as own_session:
            return self._complete_swap(own_session, swap_id, tx_ref)

    def _complete_swap(self, session: Session, swap_id: int, tx_ref: Optional[str]) -> bool:
        swap = session.get(AtomicSwap, swap_id)
        if swap is None or swap.status not in OPEN_SWAP_STATES:
            return False
        now = get_naive_utc_now()
        swap.status = SwapStatus.COMPLETED.value
        swap.completed_at = now
        if tx_ref:
            swap.ton_transfer_tx = tx_ref
        session.execute(
            update(StarsOrder)
            .where(
                StarsOrder.id.in_([swap.sell_order_id, swap.buy_order_id]),
                StarsOrder.status == OrderStatus.MATCHED.value,
            )
            .values(status=OrderStatus.COMPLETED.value, completed_at=now)
            .execution_options(synchronize_session=False)
        )
        logger.info(f"✅ Swap {swap_id} completed ({swap.ton_transfer_tx})")
        return True

    def fail_swap(self, swap_id: int, reason: str, session: Optional[Session] = None) -> bool:
        if session is not None:
            return self._fail_swap(session, swap_id, reason)
        with atomic_transaction(self.session_factory) as own_session:
            return self._fail_swap(own_session, swap_id, reason)

    def _fail_swap(self, session: Session, swap_id: int, reason: str) -> bool:
        swap = session.get(AtomicSwap, swap_id)
        if swap is None or swap.status not in OPEN_SWAP_STATES:
            return False
        swap.status = SwapStatus.FAILED.value
        swap.error_message = reason
        session.execute(
            update(StarsOrder)
            .where(
                StarsOrder.id.in_([swap.sell_order_id, swap.buy_order_id]),
                StarsOrder.status == OrderStatus.MATCHED.value,
            )
            .values(status=OrderStatus.CANCELLED.value)
            .execution_options(synchronize_session=False)
        )
        logger.error(f"❌ Swap {swap_id} failed: {reason}")
        return True
