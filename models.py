"""
Stars to TON Conversion Engine - Database Schema
===============================================

Schema for the conversion and settlement core:
- Telegram Stars payments that feed conversions
- Conversions driven through the settlement state machine
- Platform fee ledger
- P2P Stars/TON order book and atomic swaps
- Append-only reconciliation audit trail
- Outbound webhook events with retry bookkeeping

Every amount column is Numeric(38, 18); floats are never used for money.
"""

import uuid
from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, Integer, String, Numeric, DateTime, Text, JSON,
    ForeignKey, UniqueConstraint, Index, CheckConstraint
)
from sqlalchemy.orm import DeclarativeBase, relationship

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def _uuid() -> str:
    return str(uuid.uuid4())


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class PaymentStatus(Enum):
    """Upstream Stars payment lifecycle"""
    PENDING = "pending"
    RECEIVED = "received"        # Paid and available for conversion
    CONVERTING = "converting"    # Locked by an in-flight conversion
    COMPLETED = "completed"      # Converted to TON
    REFUNDED = "refunded"


class ConversionStatus(Enum):
    """Conversion settlement lifecycle (see utils.conversion_state_machine)"""
    PENDING = "pending"
    RATE_LOCKED = "rate_locked"
    PHASE1_PREPARED = "phase1_prepared"
    PHASE2_COMMITTED = "phase2_committed"
    PHASE3_CONFIRMED = "phase3_confirmed"
    IN_PROGRESS = "in_progress"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    FAILED = "failed"


class SettlementRoute(Enum):
    DIRECT = "direct"
    P2P = "p2p"


class PlatformFeeStatus(Enum):
    PENDING = "pending"
    COLLECTED = "collected"
    CANCELLED = "cancelled"


class OrderType(Enum):
    BUY = "buy"    # Offers TON for Stars at a maximum rate
    SELL = "sell"  # Offers Stars for TON at a minimum rate


class OrderStatus(Enum):
    OPEN = "open"
    MATCHED = "matched"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SwapStatus(Enum):
    INITIATED = "initiated"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ReconciliationStatus(Enum):
    MATCHED = "matched"
    MISMATCH = "mismatch"
    PENDING = "pending"


class ReconciliationType(Enum):
    PAYMENT = "payment"
    CONVERSION = "conversion"


class WebhookEventStatus(Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class DepositStatus(Enum):
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"
    FAILED = "failed"


# ============================================================================
# CORE MODELS
# ============================================================================

class User(Base):
    """End user owning payments, conversions and orders"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    username = Column(String(100), nullable=True)
    ton_wallet_address = Column(String(100), nullable=True)
    webhook_url = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    def __repr__(self):
        return f"<User(id={self.id}, username={self.username})>"


class Payment(Base):
    """Telegram Stars payment received from the upstream payment flow"""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    telegram_payment_id = Column(String(200), nullable=True, unique=True)
    stars_amount = Column(Numeric(38, 18), nullable=False)
    status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False)
    # Original Telegram webhook body, used by reconciliation
    raw_payload = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    user = relationship("User", foreign_keys=[user_id])

    __table_args__ = (
        Index("ix_payments_user_status", "user_id", "status"),
        Index("ix_payments_status_created", "status", "created_at"),
    )

    def __repr__(self):
        return f"<Payment(id={self.id}, stars={self.stars_amount}, status={self.status})>"


class PlatformConfig(Base):
    """Operator-managed fee and limit overrides; the newest row wins"""
    __tablename__ = "platform_config"

    id = Column(Integer, primary_key=True)
    platform_fee_percentage = Column(Numeric(10, 4), nullable=False)
    network_fee_stars = Column(Numeric(38, 18), nullable=False)
    min_conversion_amount = Column(Numeric(38, 18), nullable=False)
    max_conversion_amount = Column(Numeric(38, 18), nullable=False)
    rate_lock_duration_seconds = Column(Integer, nullable=False, default=300)
    platform_wallet_address = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)


class Conversion(Base):
    """
    Stars -> TON conversion.

    source_amount, payment_ids and source_currency are fixed at creation;
    status only moves through ConversionStateMachine.
    """
    __tablename__ = "conversions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    payment_ids = Column(JSON, nullable=False, default=list)
    source_currency = Column(String(10), nullable=False)
    target_currency = Column(String(10), nullable=False)
    source_amount = Column(Numeric(38, 18), nullable=False)
    target_amount = Column(Numeric(38, 18), nullable=True)
    exchange_rate = Column(Numeric(38, 18), nullable=True)
    rate_lock_id = Column(String(64), nullable=True, index=True)
    rate_locked_until = Column(DateTime, nullable=True)
    status = Column(String(30), default=ConversionStatus.PENDING.value, nullable=False)

    fee_breakdown = Column(JSON, nullable=True)
    platform_fee_amount = Column(Numeric(38, 18), nullable=False, default=0)
    platform_fee_percentage = Column(Numeric(10, 4), nullable=False, default=0)

    settlement_route = Column(String(10), nullable=True)
    destination_address = Column(String(100), nullable=True)
    swap_id = Column(Integer, nullable=True)
    on_chain_tx_ref = Column(String(200), nullable=True)
    settlement_attempts = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    user = relationship("User", foreign_keys=[user_id])

    __table_args__ = (
        Index("ix_conversions_user_created", "user_id", "created_at"),
        Index("ix_conversions_status_created", "status", "created_at"),
    )

    def __repr__(self):
        return (
            f"<Conversion(id={self.id}, user_id={self.user_id}, "
            f"source={self.source_amount} {self.source_currency}, status={self.status})>"
        )


class PlatformFee(Base):
    """Platform fee taken from a conversion, collected once it settles on-chain"""
    __tablename__ = "platform_fees"

    id = Column(Integer, primary_key=True)
    conversion_id = Column(Integer, ForeignKey("conversions.id"), nullable=False, unique=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    fee_amount_stars = Column(Numeric(38, 18), nullable=False)
    fee_amount_ton = Column(Numeric(38, 18), nullable=False)
    ton_usd_rate = Column(Numeric(38, 18), nullable=True)
    status = Column(String(20), default=PlatformFeeStatus.PENDING.value, nullable=False)
    ton_tx_hash = Column(String(200), nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    collected_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_platform_fees_status_collected", "status", "collected_at"),
    )

    def __repr__(self):
        return f"<PlatformFee(conversion_id={self.conversion_id}, stars={self.fee_amount_stars}, status={self.status})>"


class StarsOrder(Base):
    """P2P order: sell Stars for TON or buy Stars with TON"""
    __tablename__ = "stars_orders"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    order_type = Column(String(4), nullable=False)
    stars_amount = Column(Numeric(38, 18), nullable=True)
    ton_amount = Column(Numeric(38, 18), nullable=True)
    # TON per Star
    rate = Column(Numeric(38, 18), nullable=False)
    status = Column(String(20), default=OrderStatus.OPEN.value, nullable=False)
    # Set when the order was placed by the conversion liquidity route
    conversion_id = Column(Integer, ForeignKey("conversions.id"), nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_stars_orders_book", "order_type", "status", "rate"),
        CheckConstraint("order_type IN ('buy', 'sell')", name="chk_order_type"),
    )

    def __repr__(self):
        return f"<StarsOrder(id={self.id}, type={self.order_type}, rate={self.rate}, status={self.status})>"


class AtomicSwap(Base):
    """Paired settlement of one sell and one buy order"""
    __tablename__ = "atomic_swaps"

    id = Column(Integer, primary_key=True)
    sell_order_id = Column(Integer, ForeignKey("stars_orders.id"), nullable=False)
    buy_order_id = Column(Integer, ForeignKey("stars_orders.id"), nullable=False)
    status = Column(String(20), default=SwapStatus.INITIATED.value, nullable=False)
    ton_transfer_tx = Column(String(200), nullable=True)
    stars_transfer_id = Column(String(100), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    # At most one swap per order, enforced by the database
    __table_args__ = (
        UniqueConstraint("sell_order_id", name="uq_atomic_swaps_sell_order"),
        UniqueConstraint("buy_order_id", name="uq_atomic_swaps_buy_order"),
        Index("ix_atomic_swaps_status_created", "status", "created_at"),
    )

    def __repr__(self):
        return f"<AtomicSwap(id={self.id}, sell={self.sell_order_id}, buy={self.buy_order_id}, status={self.status})>"


class ReconciliationRecord(Base):
    """Append-only reconciliation audit trail"""
    __tablename__ = "reconciliation_records"

    id = Column(Integer, primary_key=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True, index=True)
    conversion_id = Column(Integer, ForeignKey("conversions.id"), nullable=True, index=True)
    expected_amount = Column(Numeric(38, 18), nullable=False)
    actual_amount = Column(Numeric(38, 18), nullable=False)
    difference = Column(Numeric(38, 18), nullable=False)
    status = Column(String(20), nullable=False)
    reconciliation_type = Column(String(20), nullable=False)
    external_reference = Column(String(200), nullable=True)
    notes = Column(Text, nullable=True)
    reconciled_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        Index("ix_reconciliation_status_created", "status", "created_at"),
        CheckConstraint("status IN ('matched', 'mismatch', 'pending')", name="chk_reconciliation_status"),
    )

    def __repr__(self):
        return f"<ReconciliationRecord(id={self.id}, type={self.reconciliation_type}, status={self.status})>"


class WebhookEvent(Base):
    """Outbound webhook notification with retry bookkeeping"""
    __tablename__ = "webhook_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    webhook_url = Column(String(500), nullable=False)
    event = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)
    signature = Column(String(128), nullable=False)
    status = Column(String(20), default=WebhookEventStatus.PENDING.value, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=5, nullable=False)
    last_attempt_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        Index("ix_webhook_events_retry", "status", "next_retry_at"),
    )

    def __repr__(self):
        return f"<WebhookEvent(id={self.id}, event={self.event}, status={self.status}, attempts={self.attempts})>"


class Deposit(Base):
    """On-chain TON deposit awaiting verification"""
    __tablename__ = "deposits"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    amount = Column(Numeric(38, 18), nullable=False)
    currency = Column(String(10), nullable=False, default="TON")
    tx_hash = Column(String(200), nullable=True)
    status = Column(String(30), default=DepositStatus.AWAITING_CONFIRMATION.value, nullable=False)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    __table_args__ = (
        Index("ix_deposits_status_created", "status", "created_at"),
    )
