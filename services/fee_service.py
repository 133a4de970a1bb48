"""
Fee Service - platform fee configuration, calculation and ledger

Fees are computed in Stars on the source amount:
    platform = amount * platform_fee_percentage / 100
    network  = fixed NETWORK_FEE_STARS
and recorded per conversion in platform_fees, pending until the conversion's
TON transfer confirms on-chain.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, sessionmaker

from config import Config
from models import PlatformConfig, PlatformFee, PlatformFeeStatus
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeeConfig:
    platform_fee_percentage: Decimal
    network_fee_stars: Decimal
    min_conversion_amount: Decimal
    max_conversion_amount: Decimal
    rate_lock_duration_seconds: int
    platform_wallet_address: str


@dataclass(frozen=True)
class FeeBreakdown:
    platform: Decimal
    network: Decimal
    total: Decimal
    platform_percentage: Decimal

    def to_dict(self) -> Dict[str, str]:
        """JSON-safe form stored on the conversion"""
        return {
            "platform": str(self.platform),
            "network": str(self.network),
            "total": str(self.total),
            "platform_percentage": str(self.platform_percentage),
        }


class FeeService:
    """Reads fee configuration and maintains the platform fee ledger"""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory
        self._config: Optional[FeeConfig] = None

    def get_config(self, refresh: bool = False) -> FeeConfig:
        """Latest platform_config row, falling back to environment defaults"""
        if self._config is not None and not refresh:
            return self._config

        with atomic_transaction(self.session_factory) as session:
            row = session.execute(
                select(PlatformConfig).order_by(PlatformConfig.created_at.desc(), PlatformConfig.id.desc()).limit(1)
            ).scalar_one_or_none()

            if row is None:
                config = FeeConfig(
                    platform_fee_percentage=Config.PLATFORM_FEE_PERCENTAGE,
                    network_fee_stars=Config.NETWORK_FEE_STARS,
                    min_conversion_amount=Config.MIN_CONVERSION_AMOUNT,
                    max_conversion_amount=Config.MAX_CONVERSION_AMOUNT,
                    rate_lock_duration_seconds=Config.RATE_LOCK_DEFAULT_SECONDS,
                    platform_wallet_address=Config.PLATFORM_WALLET_ADDRESS,
                )
            else:
                config = FeeConfig(
                    platform_fee_percentage=Decimal(row.platform_fee_percentage),
                    network_fee_stars=Decimal(row.network_fee_stars),
                    min_conversion_amount=Decimal(row.min_conversion_amount),
                    max_conversion_amount=Decimal(row.max_conversion_amount),
                    rate_lock_duration_seconds=row.rate_lock_duration_seconds,
                    platform_wallet_address=row.platform_wallet_address or Config.PLATFORM_WALLET_ADDRESS,
                )

        self._config = config
        return config

    def calculate_fee_breakdown(self, amount: Decimal) -> FeeBreakdown:
        config = self.get_config()
        platform = MonetaryDecimal.percentage_of(amount, config.platform_fee_percentage)
        network = MonetaryDecimal.quantize_stars(config.network_fee_stars)
        return FeeBreakdown(
            platform=platform,
            network=network,
            total=platform + network,
            platform_percentage=config.platform_fee_percentage,
        )

    def get_platform_wallet(self) -> str:
        return self.get_config().platform_wallet_address

    def record_fee(
        self,
        session: Session,
        conversion_id: int,
        user_id: int,
        fee_amount_stars: Decimal,
        fee_amount_ton: Decimal,
        ton_usd_rate: Optional[Decimal] = None,
    ) -> PlatformFee:
        """Insert a pending fee row inside the caller's transaction"""
        fee = PlatformFee(
            conversion_id=conversion_id,
            user_id=user_id,
            fee_amount_stars=fee_amount_stars,
            fee_amount_ton=fee_amount_ton,
            ton_usd_rate=ton_usd_rate,
            status=PlatformFeeStatus.PENDING.value,
        )
        session.add(fee)
        session.flush()
        logger.info(
            f"💰 Fee recorded for conversion {conversion_id}: {fee_amount_stars} STARS / {fee_amount_ton} TON"
        )
        return fee

    def mark_fee_collected(self, conversion_id: int, tx_hash: str, session: Optional[Session] = None) -> bool:
        """Flip the conversion's pending fee to collected; False when nothing was pending"""
        if session is not None:
            return self._mark_collected(session, conversion_id, tx_hash)
        with atomic_transaction(self.session_factory) as own_session:
            return self._mark_collected(own_session, conversion_id, tx_hash)

    def _mark_collected(self, session: Session, conversion_id: int, tx_hash: str) -> bool:
        result = session.execute(
            update(PlatformFee)
            .where(
                PlatformFee.conversion_id == conversion_id,
                PlatformFee.status == PlatformFeeStatus.PENDING.value,
            )
            .values(
                status=PlatformFeeStatus.COLLECTED.value,
                ton_tx_hash=tx_hash,
                collected_at=get_naive_utc_now(),
            )
        )
        if result.rowcount:
            logger.info(f"✅ Fee for conversion {conversion_id} marked as collected ({tx_hash})")
        return bool(result.rowcount)

    def cancel_fee(self, session: Session, conversion_id: int) -> bool:
        result = session.execute(
            update(PlatformFee)
            .where(
                PlatformFee.conversion_id == conversion_id,
                PlatformFee.status == PlatformFeeStatus.PENDING.value,
            )
            .values(status=PlatformFeeStatus.CANCELLED.value)
        )
        return bool(result.rowcount)

    def get_fee_summary(self, start: datetime, end: datetime) -> Dict[str, Any]:
        with atomic_transaction(self.session_factory) as session:
            row = session.execute(
                select(
                    func.coalesce(func.sum(PlatformFee.fee_amount_stars), 0),
                    func.coalesce(func.sum(PlatformFee.fee_amount_ton), 0),
                    func.count(PlatformFee.id),
                ).where(
                    PlatformFee.status == PlatformFeeStatus.COLLECTED.value,
                    PlatformFee.collected_at >= start,
                    PlatformFee.collected_at <= end,
                )
            ).one()
        return {
            "total_fees_stars": Decimal(str(row[0])),
            "total_fees_ton": Decimal(str(row[1])),
            "fee_count": row[2],
        }

    def get_total_revenue(self) -> Dict[str, Decimal]:
        with atomic_transaction(self.session_factory) as session:
            row = session.execute(
                select(
                    func.coalesce(func.sum(PlatformFee.fee_amount_stars), 0),
                    func.coalesce(func.sum(PlatformFee.fee_amount_ton), 0),
                ).where(PlatformFee.status == PlatformFeeStatus.COLLECTED.value)
            ).one()
        return {
            "total_revenue_stars": Decimal(str(row[0])),
            "total_revenue_ton": Decimal(str(row[1])),
        }
