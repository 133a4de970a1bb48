"""
Webhook Delivery Service - at-least-once notification of conversion outcomes

Wire contract:
    POST <user webhook url>
    Content-Type: application/json
    X-Webhook-Signature: hex HMAC-SHA256 of the canonical JSON payload
    X-Event-Id: <event uuid>
    body: {"event": ..., "timestamp": <ms>, "data": <payload>}

Failed deliveries are retried on a fixed backoff schedule (30s, 60s, 5m, 15m,
1h; the last step repeats) until max_attempts, then the event is failed.
"""

import asyncio
import hashlib
import hmac
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import aiohttp
from sqlalchemy import case, func, or_, select, update
from sqlalchemy.orm import sessionmaker

from config import Config
from models import WebhookEvent, WebhookEventStatus
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now, to_epoch_millis
from utils.exception_handler import NotFoundError, WebhookDeliveryFailure

logger = logging.getLogger(__name__)


def canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


class WebhookService:
    """Signs, persists, delivers and retries webhook events"""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        secret: str = Config.WEBHOOK_SECRET,
        max_attempts: int = Config.WEBHOOK_MAX_ATTEMPTS,
        retry_delays: Sequence[int] = Config.WEBHOOK_RETRY_DELAYS,
        timeout_seconds: int = Config.WEBHOOK_TIMEOUT_SECONDS,
        batch_size: int = Config.WEBHOOK_RETRY_BATCH_SIZE,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not retry_delays:
            raise ValueError("retry_delays must not be empty")
        self.session_factory = session_factory
        self.secret = secret
        self.max_attempts = max_attempts
        self.retry_delays = tuple(retry_delays)
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.lease_seconds = timeout_seconds * 2
        self.batch_size = batch_size
        self._clock = clock or get_naive_utc_now

    # ------------------------------------------------------------------
    # Signatures
    # ------------------------------------------------------------------

    def generate_signature(self, payload: Any) -> str:
        data = payload if isinstance(payload, str) else canonical_json(payload)
        return hmac.new(self.secret.encode(), data.encode(), hashlib.sha256).hexdigest()

    def verify_signature(self, payload: Any, signature: str) -> bool:
        """Constant-time check of a received signature"""
        if not signature:
            return False
        return hmac.compare_digest(self.generate_signature(payload), signature)

    def next_retry_delay(self, attempts: int) -> int:
        """Delay in seconds after the attempts-th failed delivery"""
        index = min(max(attempts, 1) - 1, len(self.retry_delays) - 1)
        return self.retry_delays[index]

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def queue_event(self, user_id: int, webhook_url: str, event: str, payload: Dict[str, Any]) -> WebhookEvent:
        """Persist a pending event and attempt delivery right away"""
        with atomic_transaction(self.session_factory) as session:
            webhook_event = WebhookEvent(
                user_id=user_id,
                webhook_url=webhook_url,
                event=event,
                payload=payload,
                signature=self.generate_signature(payload),
                status=WebhookEventStatus.PENDING.value,
                attempts=0,
                max_attempts=self.max_attempts,
                created_at=self._clock(),
            )
            session.add(webhook_event)
            session.flush()
            event_id = webhook_event.id

        logger.info(f"📨 Queued webhook {event} ({event_id}) for user {user_id}")
        await self.deliver_event(event_id)
        return self.get_event(event_id)

    def get_event(self, event_id: str) -> WebhookEvent:
        with atomic_transaction(self.session_factory) as session:
            webhook_event = session.get(WebhookEvent, event_id)
            if webhook_event is None:
                raise NotFoundError(f"Webhook event {event_id} not found")
            return webhook_event

    async def deliver_event(self, event_id: str) -> bool:
        """
        One delivery attempt; True when the receiver acknowledged with 2xx.

        The attempt first claims the event by pushing next_retry_at out by
        lease_seconds. An event that is not yet due, or whose lease is held by
        an attempt still in flight, is skipped and False is returned.
        """
        with atomic_transaction(self.session_factory) as session:
            webhook_event = session.get(WebhookEvent, event_id)
            if webhook_event is None:
                raise NotFoundError(f"Webhook event {event_id} not found")
            if webhook_event.status != WebhookEventStatus.PENDING.value:
                return webhook_event.status == WebhookEventStatus.DELIVERED.value
            if webhook_event.attempts >= webhook_event.max_attempts:
                webhook_event.status = WebhookEventStatus.FAILED.value
                webhook_event.error_message = webhook_event.error_message or "Max delivery attempts reached"
                return False

            now = self._clock()
            claimed = session.execute(
                update(WebhookEvent)
                .where(
                    WebhookEvent.id == event_id,
                    WebhookEvent.status == WebhookEventStatus.PENDING.value,
                    or_(WebhookEvent.next_retry_at.is_(None), WebhookEvent.next_retry_at <= now),
                )
                .values(next_retry_at=now + timedelta(seconds=self.lease_seconds))
                .execution_options(synchronize_session=False)
            ).rowcount
            if not claimed:
                logger.info(f"Webhook {event_id} not due or already in flight; skipped")
                return False

            url = webhook_event.webhook_url
            body = {
                "event": webhook_event.event,
                "timestamp": to_epoch_millis(self._clock()),
                "data": webhook_event.payload,
            }
            headers = {
                "Content-Type": "application/json",
                "X-Webhook-Signature": webhook_event.signature,
                "X-Event-Id": webhook_event.id,
                "User-Agent": Config.WEBHOOK_USER_AGENT,
            }

        try:
            status_code = await self._post(url, body, headers)
            if not 200 <= status_code < 300:
                raise WebhookDeliveryFailure(event_id, f"HTTP {status_code}", status_code=status_code)
        except WebhookDeliveryFailure as e:
            self._record_failure(event_id, e.message)
            return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._record_failure(event_id, f"{type(e).__name__}: {e}" if str(e) else type(e).__name__)
            return False

        with atomic_transaction(self.session_factory) as session:
            webhook_event = session.get(WebhookEvent, event_id)
            now = self._clock()
            webhook_event.status = WebhookEventStatus.DELIVERED.value
            webhook_event.attempts += 1
            webhook_event.last_attempt_at = now
            webhook_event.delivered_at = now
            webhook_event.next_retry_at = None

        logger.info(f"✅ Webhook delivered: {event_id} to {url}")
        return True

    async def _post(self, url: str, body: Dict[str, Any], headers: Dict[str, str]) -> int:
        async with aiohttp.ClientSession(headers=headers) as session:
            async with session.post(url, data=json.dumps(body, default=str), timeout=self.timeout) as response:
                return response.status

    def _record_failure(self, event_id: str, error_message: str) -> None:
        with atomic_transaction(self.session_factory) as session:
            webhook_event = session.get(WebhookEvent, event_id)
            now = self._clock()
            webhook_event.attempts += 1
            webhook_event.last_attempt_at = now
            webhook_event.error_message = error_message
            webhook_event.next_retry_at = now + timedelta(seconds=self.next_retry_delay(webhook_event.attempts))
            attempts, max_attempts = webhook_event.attempts, webhook_event.max_attempts

            if attempts >= max_attempts:
                webhook_event.status = WebhookEventStatus.FAILED.value
                webhook_event.next_retry_at = None

        if attempts >= max_attempts:
            logger.error(f"❌ Webhook {event_id} permanently failed after {attempts} attempts: {error_message}")
        else:
            logger.warning(
                f"⚠️ Webhook delivery failed (attempt {attempts}/{max_attempts}): {event_id} {error_message}"
            )

    async def retry_failed_webhooks(self) -> int:
        """Redeliver due pending events; returns how many were attempted"""
        now = self._clock()
        with atomic_transaction(self.session_factory) as session:
            event_ids = session.execute(
                select(WebhookEvent.id)
                .where(
                    WebhookEvent.status == WebhookEventStatus.PENDING.value,
                    WebhookEvent.attempts < WebhookEvent.max_attempts,
                    or_(WebhookEvent.next_retry_at.is_(None), WebhookEvent.next_retry_at <= now),
                )
                .order_by(WebhookEvent.created_at)
                .limit(self.batch_size)
            ).scalars().all()

        retried = 0
        for event_id in event_ids:
            try:
                await self.deliver_event(event_id)
                retried += 1
            except Exception as e:
                logger.error(f"Failed to retry webhook {event_id}: {e}", exc_info=True)

        if retried:
            logger.info(f"🔁 Retried {retried} webhook deliveries")
        return retried

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_events_by_user(
        self, user_id: int, status: Optional[str] = None, limit: int = 20, offset: int = 0
    ) -> Tuple[List[WebhookEvent], int]:
        filters = [WebhookEvent.user_id == user_id]
        if status:
            filters.append(WebhookEvent.status == status)

        with atomic_transaction(self.session_factory) as session:
            events = session.execute(
                select(WebhookEvent)
                .where(*filters)
                .order_by(WebhookEvent.created_at.desc())
                .limit(limit)
                .offset(offset)
            ).scalars().all()
            total = session.execute(select(func.count(WebhookEvent.id)).where(*filters)).scalar_one()
        return list(events), total

    def get_stats(self, user_id: Optional[int] = None) -> Dict[str, Any]:
        def _count(status: WebhookEventStatus):
            return func.coalesce(func.sum(case((WebhookEvent.status == status.value, 1), else_=0)), 0)

        query = select(
            func.count(WebhookEvent.id),
            _count(WebhookEventStatus.DELIVERED),
            _count(WebhookEventStatus.PENDING),
            _count(WebhookEventStatus.FAILED),
        )
        if user_id is not None:
            query = query.where(WebhookEvent.user_id == user_id)

        with atomic_transaction(self.session_factory) as session:
            total, delivered, pending, failed = session.execute(query).one()

        return {
            "total": total,
            "delivered": delivered,
            "pending": pending,
            "failed": failed,
            "success_rate": round(delivered / total * 100, 2) if total else 0.0,
        }
