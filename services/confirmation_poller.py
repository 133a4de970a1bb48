"""Bounded blockchain confirmation polling shared by conversions and swaps"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from config import Config
from services.ton_blockchain_service import TransactionState

logger = logging.getLogger(__name__)


class PollOutcome(Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"        # Chain reported an abort or non-zero exit code
    TIMEOUT = "timeout"      # Ran out of attempts
    ABANDONED = "abandoned"  # Owner reached a terminal state elsewhere


@dataclass
class PollResult:
    outcome: PollOutcome
    attempts: int
    state: Optional[TransactionState] = None
    last_error: Optional[str] = None


class ConfirmationPoller:
    """
    Polls get_transaction_state on a fixed interval.

    Only an explicit on-chain failure or running out of attempts is terminal;
    query errors are logged and retried on the next tick.
    """

    def __init__(
        self,
        blockchain,
        interval_seconds: float = Config.CONFIRMATION_POLL_INTERVAL_SECONDS,
        max_polls: int = Config.CONFIRMATION_MAX_POLLS,
        min_confirmations: int = Config.TON_MIN_CONFIRMATIONS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.blockchain = blockchain
        self.interval_seconds = interval_seconds
        self.max_polls = max_polls
        self.min_confirmations = min_confirmations
        self._sleep = sleep

    async def poll(self, tx_ref: str, should_continue: Optional[Callable[[], bool]] = None) -> PollResult:
        last_error = None
        for attempt in range(1, self.max_polls + 1):
            if should_continue is not None and not should_continue():
                logger.info(f"Polling for {tx_ref} abandoned at attempt {attempt}")
                return PollResult(PollOutcome.ABANDONED, attempt - 1, last_error=last_error)

            try:
                state = await self.blockchain.get_transaction_state(tx_ref, self.min_confirmations)
            except Exception as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(f"⚠️ Poll {attempt}/{self.max_polls} for {tx_ref} failed: {last_error}")
            else:
                if state.is_confirmed:
                    logger.info(
                        f"✅ {tx_ref} confirmed after {attempt} polls ({state.confirmations} confirmations)"
                    )
                    return PollResult(PollOutcome.CONFIRMED, attempt, state=state)
                if state.is_failed:
                    logger.error(f"❌ {tx_ref} failed on-chain: {state.reason}")
                    return PollResult(PollOutcome.FAILED, attempt, state=state)

            if attempt < self.max_polls:
                await self._sleep(self.interval_seconds)

        logger.error(f"⏱️ {tx_ref} unresolved after {self.max_polls} polls")
        return PollResult(PollOutcome.TIMEOUT, self.max_polls, last_error=last_error)
