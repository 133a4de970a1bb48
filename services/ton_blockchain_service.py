"""
TON blockchain client.

Reads go to a toncenter v3 compatible HTTP API. Transfers are delegated to
the custody signer endpoint (TON_SIGNER_URL); keys never live in this process.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from utils.decimal_precision import MonetaryDecimal
from utils.exception_handler import ValidationError

logger = logging.getLogger(__name__)

USER_FRIENDLY_ADDRESS = re.compile(r"^[UEk][Qf][A-Za-z0-9_-]{46}$")
RAW_ADDRESS = re.compile(r"^-?\d+:[0-9a-fA-F]{64}$")

TX_PENDING = "pending"
TX_CONFIRMED = "confirmed"
TX_FAILED = "failed"


@dataclass(frozen=True)
class TransactionState:
    status: str
    confirmations: int = 0
    exit_code: Optional[int] = None
    amount: Optional[Decimal] = None
    reason: Optional[str] = None

    @property
    def is_confirmed(self) -> bool:
        return self.status == TX_CONFIRMED

    @property
    def is_failed(self) -> bool:
        return self.status == TX_FAILED


def validate_ton_address(address: Optional[str]) -> bool:
    if not address:
        return False
    return bool(USER_FRIENDLY_ADDRESS.match(address) or RAW_ADDRESS.match(address))


class TonBlockchainService:
    """Thin async client over the TON HTTP API and the custody signer"""

    def __init__(
        self,
        api_url: str = Config.TON_API_URL,
        api_key: Optional[str] = Config.TON_API_KEY,
        signer_url: str = Config.TON_SIGNER_URL,
        signer_token: Optional[str] = Config.TON_SIGNER_TOKEN,
        timeout_seconds: int = Config.TON_REQUEST_TIMEOUT_SECONDS,
    ):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.signer_url = signer_url.rstrip("/")
        self.signer_token = signer_token
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    def _api_headers(self) -> Dict[str, str]:
        return {"X-API-Key": self.api_key} if self.api_key else {}

    async def _get_json(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        async with aiohttp.ClientSession(headers=self._api_headers()) as session:
            async with session.get(f"{self.api_url}{path}", params=params, timeout=self.timeout) as response:
                response.raise_for_status()
                return await response.json()

    async def get_transaction(self, tx_ref: str) -> Optional[Dict[str, Any]]:
        data = await self._get_json("/transactions", {"hash": tx_ref, "limit": 1})
        transactions = data.get("transactions") or []
        return transactions[0] if transactions else None

    async def get_masterchain_seqno(self) -> int:
        data = await self._get_json("/masterchainInfo", {})
        return int(data["last"]["seqno"])

    async def get_transaction_state(self, tx_ref: str, min_confirmations: int = Config.TON_MIN_CONFIRMATIONS) -> TransactionState:
        """
        Resolve a transaction to pending, confirmed or failed.

        Network errors propagate; callers that poll are expected to retry them.
        """
        tx = await self.get_transaction(tx_ref)
        if tx is None:
            return TransactionState(status=TX_PENDING)

        description = tx.get("description") or {}
        compute = description.get("compute_ph") or {}
        action = description.get("action") or {}
        exit_code = compute.get("exit_code")
        amount = self._outgoing_amount(tx)

        if description.get("aborted") or (exit_code not in (None, 0, 1)) or action.get("success") is False:
            code = exit_code if exit_code not in (None, 0, 1) else action.get("result_code")
            return TransactionState(
                status=TX_FAILED,
                exit_code=code,
                amount=amount,
                reason=f"exit code: {code}",
            )

        block_seqno = tx.get("mc_block_seqno")
        confirmations = 0
        if block_seqno is not None:
            confirmations = max(0, await self.get_masterchain_seqno() - int(block_seqno) + 1)

        status = TX_CONFIRMED if confirmations >= min_confirmations else TX_PENDING
        return TransactionState(status=status, confirmations=confirmations, exit_code=exit_code, amount=amount)

    @staticmethod
    def _outgoing_amount(tx: Dict[str, Any]) -> Optional[Decimal]:
        out_msgs = tx.get("out_msgs") or []
        if not out_msgs:
            return None
        return MonetaryDecimal.from_nanotons(sum(int(msg.get("value") or 0) for msg in out_msgs))

    async def send_transfer(self, to_address: str, amount: Decimal, memo: str) -> Optional[str]:
        """
        Ask the signer to send amount TON to to_address.

        Returns the transaction hash, or None when the signer did not produce
        one (callers queue the settlement for retry).
        """
        if not validate_ton_address(to_address):
            raise ValidationError(f"Invalid TON address: {to_address}")
        if amount <= 0:
            raise ValidationError(f"Transfer amount must be positive, got {amount}")

        headers = {"Content-Type": "application/json"}
        if self.signer_token:
            headers["Authorization"] = f"Bearer {self.signer_token}"
        body = {
            "to": to_address,
            "amount_nano": str(MonetaryDecimal.to_nanotons(amount)),
            "memo": memo,
        }

        try:
            async with aiohttp.ClientSession(headers=headers) as session:
                async with session.post(f"{self.signer_url}/v1/transfers", json=body, timeout=self.timeout) as response:
                    if response.status not in (200, 201, 202):
                        text = await response.text()
                        logger.warning(f"⚠️ Signer rejected transfer to {to_address}: HTTP {response.status} {text[:200]}")
                        return None
                    data = await response.json()
        except aiohttp.ClientError as e:
            logger.warning(f"⚠️ Signer unreachable for transfer to {to_address}: {e}")
            return None
        except asyncio.TimeoutError:
            # The signer may still broadcast; the retry reuses the same memo
            logger.warning(f"⚠️ Signer timed out on transfer to {to_address} ({memo})")
            return None

        tx_hash = data.get("tx_hash") or data.get("hash")
        if tx_hash:
            logger.info(f"📤 Sent {amount} TON to {to_address} ({memo}): {tx_hash}")
        else:
            logger.warning(f"⚠️ Signer accepted transfer to {to_address} without a transaction hash")
        return tx_hash
