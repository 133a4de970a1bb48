"""
Exception Handler Module
Provides the conversion engine's exceptions and the periodic job supervisor
"""

import asyncio
import logging
import functools
import time
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class ConversionEngineError(Exception):
    """Base error for the conversion and settlement engine"""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(ConversionEngineError):
    """Custom validation error for input validation failures"""


class MinimumAmountNotMet(ValidationError):
    def __init__(self, amount, minimum):
        self.amount = amount
        self.minimum = minimum
        super().__init__(f"Minimum conversion amount is {minimum} STARS, got {amount}")


class NotFoundError(ValidationError):
    """Referenced entity does not exist or is not visible to the caller"""


class RateLockExpired(ValidationError):
    def __init__(self, lock_id: str):
        self.lock_id = lock_id
        super().__init__(f"Rate lock {lock_id} has expired")


class RateUnavailable(ConversionEngineError):
    """No rate source returned a usable price"""


class InvalidTransition(ConversionEngineError):
    """Illegal state machine move; indicates a programming or race defect"""

    def __init__(self, from_state: str, to_state: str, entity_id: Optional[int] = None):
        self.from_state = from_state
        self.to_state = to_state
        self.entity_id = entity_id
        super().__init__(f"Invalid transition {from_state} -> {to_state} (id={entity_id})")


class PollingTimeout(ConversionEngineError):
    def __init__(self, tx_ref: str, attempts: int):
        self.tx_ref = tx_ref
        self.attempts = attempts
        super().__init__(f"Transaction polling timeout after {attempts} attempts ({tx_ref})")


class OnChainFailure(ConversionEngineError):
    def __init__(self, tx_ref: str, exit_code: Optional[int] = None, reason: Optional[str] = None):
        self.tx_ref = tx_ref
        self.exit_code = exit_code
        detail = reason or f"exit code: {exit_code}"
        super().__init__(f"Transaction failed on-chain ({detail})")


class WebhookDeliveryFailure(ConversionEngineError):
    def __init__(self, event_id: str, message: str, status_code: Optional[int] = None):
        self.event_id = event_id
        self.status_code = status_code
        super().__init__(message)


class ReconciliationMismatch(ConversionEngineError):
    def __init__(self, conversion_id: int, expected, actual):
        self.conversion_id = conversion_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Conversion {conversion_id} settled {actual} but {expected} was expected"
        )


class OrderAlreadyMatched(ConversionEngineError):
    def __init__(self, sell_order_id: int, buy_order_id: int):
        self.sell_order_id = sell_order_id
        self.buy_order_id = buy_order_id
        super().__init__(f"Order pair sell={sell_order_id} buy={buy_order_id} is no longer open")


class SwapTransferFailed(ConversionEngineError):
    """A claimed swap produced no TON transfer reference"""

    def __init__(self, swap_id: int, reason: str):
        self.swap_id = swap_id
        super().__init__(f"Swap {swap_id}: {reason}")


def supervised_job(name: str, timeout_seconds: float) -> Callable:
    """
    Decorator for periodic job coroutines.

    Each tick is bounded by timeout_seconds; an overrun is logged as a warning
    and any other exception is logged, so a failing job never takes the
    scheduler or its sibling jobs down with it.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            started = time.monotonic()
            try:
                return await asyncio.wait_for(func(*args, **kwargs), timeout=timeout_seconds)
            except asyncio.TimeoutError:
                logger.warning(
                    f"⏱️ JOB_OVERRUN: {name} exceeded {timeout_seconds}s and was cut short"
                )
            except Exception as e:
                logger.error(f"❌ JOB_FAILED: {name}: {type(e).__name__}: {e}", exc_info=True)
            finally:
                elapsed = time.monotonic() - started
                logger.debug(f"JOB_TICK: {name} took {elapsed:.2f}s")
            return None

        return wrapper

    return decorator
