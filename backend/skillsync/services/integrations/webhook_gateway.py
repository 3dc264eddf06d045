"""
Webhook Ingestion Gateway

Per inbound request:

    received -> verified -> dedup check -> logged -> normalized -> dispatched -> processed | failed

- A failed signature check is rejected before anything is written.
- A delivery id already in the log is acknowledged and skipped.
- A malformed payload is logged as a terminal failure and rejected.
- Events that carry no skill evidence, or whose sender has no active
  connection, are logged and marked processed straight away.
- Everything else is dispatched to the orchestrator through the ordered
  dispatcher. The gateway waits a bounded time for the outcome; a slow
  dispatch is still "accepted" and finishes in the background.

Dispatch failures leave the event unprocessed so ``retry_failed`` can pick
it up again.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from skillsync.core.config import settings
from skillsync.core.errors import (
    DuplicateDeliveryError,
    IntegrationError,
    SignatureVerificationError,
    ValidationError,
)
from skillsync.core.logging_config import get_logger
from skillsync.connectors.base import ProviderAdapter, lower_headers
from skillsync.schemas.integration import Activity, Provider, WebhookEvent
from skillsync.services.integrations.dispatcher import DispatcherClosedError, WebhookDispatcher
from skillsync.services.integrations.orchestrator import SyncOrchestrator
from skillsync.services.integrations.registry import ConnectionRegistry
from skillsync.stores.base import WebhookLog

logger = get_logger("skillsync.webhooks")

ACCEPTED = "accepted"
DUPLICATE = "duplicate"
IGNORED = "ignored"
HANDSHAKE = "handshake"


@dataclass
class WebhookResult:
    status: str
    delivery_id: Optional[str] = None
    event_id: Optional[str] = None
    # Body to send back instead of the status (provider handshakes)
    response: Optional[Dict[str, Any]] = None

    def to_response(self) -> Dict[str, Any]:
        if self.response is not None:
            return self.response
        return {"status": self.status, "delivery_id": self.delivery_id}


class WebhookGateway:

    def __init__(
        self,
        registry: ConnectionRegistry,
        orchestrator: SyncOrchestrator,
        log: WebhookLog,
        dispatcher: WebhookDispatcher,
        *,
        dispatch_timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ):
        self.registry = registry
        self.orchestrator = orchestrator
        self.log = log
        self.dispatcher = dispatcher
        self.dispatch_timeout = dispatch_timeout if dispatch_timeout is not None else settings.WEBHOOK_DISPATCH_TIMEOUT_SECONDS
        self.max_attempts = max_attempts or settings.WEBHOOK_MAX_ATTEMPTS

    async def receive(self, provider: Provider, raw_body: bytes, headers: Mapping[str, str]) -> WebhookResult:
        """
        Ingest one webhook request.

        Raises:
            SignatureVerificationError: Signature or shared token did not match
            ValidationError: Body is not a JSON object or names no event type
        """
        adapter = self.registry.adapter_for(provider)
        headers = lower_headers(headers)
        log = logger.bind(provider=provider.value)

        if not adapter.verify_webhook_signature(raw_body, headers, adapter.config.webhook_secret):
            log.warning("Rejected webhook: signature verification failed")
            raise SignatureVerificationError("Webhook signature verification failed", provider=provider.value)

        try:
            payload = json.loads(raw_body)
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            return await self._reject_malformed(adapter, raw_body, headers, "Body is not a JSON object")

        event_type = adapter.extract_event_type(headers, payload)
        handshake = adapter.handshake_response(payload, event_type)
        if handshake is not None:
            log.info("Answered webhook handshake")
            return WebhookResult(status=HANDSHAKE, response=handshake)

        delivery_id = adapter.extract_delivery_id(headers, payload, raw_body)
        log = log.bind(delivery_id=delivery_id)
        if await self.log.exists(provider, delivery_id):
            log.info("Duplicate webhook delivery skipped")
            return WebhookResult(status=DUPLICATE, delivery_id=delivery_id)

        event = WebhookEvent(
            provider=provider,
            delivery_id=delivery_id,
            event_type=event_type or "unknown",
            raw_payload=payload,
            action=adapter.extract_action(payload),
            subject_identifier=adapter.subject_for(payload),
        )
        try:
            event = await self.log.append(event)
        except DuplicateDeliveryError:
            log.info("Duplicate webhook delivery skipped (concurrent redelivery)")
            return WebhookResult(status=DUPLICATE, delivery_id=delivery_id)

        if not event_type:
            await self.log.mark_processed(event.id, "No event type in request", retryable=False)
            log.warning("Rejected webhook: no event type")
            raise ValidationError("Webhook names no event type", provider=provider.value)

        activity = await self._normalize(adapter, event)
        if activity is None:
            log.info(f"Logged {event.event_type} webhook; not skill evidence")
            return WebhookResult(status=IGNORED, delivery_id=delivery_id, event_id=event.id)

        log.info(f"Accepted {event.event_type} webhook")
        status = await self._dispatch(event, activity, log)
        return WebhookResult(status=status, delivery_id=delivery_id, event_id=event.id)

    async def _reject_malformed(
        self,
        adapter: ProviderAdapter,
        raw_body: bytes,
        headers: Mapping[str, str],
        reason: str,
    ) -> WebhookResult:
        provider = adapter.PROVIDER
        delivery_id = adapter.extract_delivery_id(headers, {}, raw_body)
        if await self.log.exists(provider, delivery_id):
            return WebhookResult(status=DUPLICATE, delivery_id=delivery_id)
        event = WebhookEvent(
            provider=provider,
            delivery_id=delivery_id,
            event_type="malformed",
            raw_payload={"raw": raw_body[:4096].decode("utf-8", errors="replace")},
        )
        try:
            event = await self.log.append(event)
        except DuplicateDeliveryError:
            return WebhookResult(status=DUPLICATE, delivery_id=delivery_id)
        await self.log.mark_processed(event.id, reason, retryable=False)
        logger.warning(f"Rejected malformed webhook: {reason}", extra={"provider": provider.value, "delivery_id": delivery_id})
        raise ValidationError(reason, provider=provider.value)

    async def _normalize(self, adapter: ProviderAdapter, event: WebhookEvent) -> Optional[Activity]:
        try:
            activity = adapter.normalize_webhook_payload(event.raw_payload, event.event_type)
        except ValidationError as e:
            await self.log.mark_processed(event.id, e.message, retryable=False)
            logger.warning(
                f"Rejected malformed {event.event_type} webhook: {e.message}",
                extra={"provider": event.provider.value, "delivery_id": event.delivery_id},
            )
            raise
        if activity is None:
            await self.log.mark_processed(event.id)
        return activity

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _lane(self, event: WebhookEvent) -> tuple:
        return (event.provider.value, event.subject_identifier or event.delivery_id)

    async def _dispatch(self, event: WebhookEvent, activity: Activity, log) -> str:
        try:
            future = self.dispatcher.submit(self._lane(event), lambda: self.process(event, activity))
        except (asyncio.QueueFull, DispatcherClosedError) as e:
            # Logged unprocessed; the retry sweep picks it up later
            log.warning(f"Webhook dispatch deferred: {e}")
            return ACCEPTED
        # The outcome may land after we stop waiting; consume it so it is not reported as lost
        future.add_done_callback(lambda f: f.cancelled() or f.exception())

        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=self.dispatch_timeout)
        except asyncio.TimeoutError:
            log.info(f"Webhook still processing after {self.dispatch_timeout}s; answering accepted")
            return ACCEPTED
        except Exception as e:
            # process() already recorded the error on the event
            log.error(f"Webhook dispatch failed: {type(e).__name__}: {e}")
            return ACCEPTED

    async def process(self, event: WebhookEvent, activity: Activity) -> str:
        """Resolve the sender and apply the activity. Runs inside a dispatcher lane."""
        log = logger.bind(provider=event.provider.value, delivery_id=event.delivery_id)
        try:
            connection = await self.registry.find_owner(event.provider, activity.external_account_id)
            if connection is None:
                await self.log.mark_processed(event.id)
                log.info(f"No active connection for account {activity.external_account_id}; event logged only")
                return IGNORED

            summary = await self.orchestrator.handle_webhook_activity(connection.owner_id, activity, connection)
        except IntegrationError as e:
            await self.log.mark_processed(event.id, e.message, retryable=True)
            log.warning(f"Webhook dispatch failed: {type(e).__name__}: {e.message}")
            raise
        except Exception as e:
            await self.log.mark_processed(event.id, f"{type(e).__name__}: {e}", retryable=True)
            raise

        if summary.item_errors:
            # Inference failures are deterministic; retrying would fail the same way
            await self.log.mark_processed(event.id, "; ".join(summary.item_errors), retryable=False)
            log.warning(f"Webhook activity skipped by inference: {summary.item_errors}")
        else:
            await self.log.mark_processed(event.id)
            log.info(f"Webhook applied: {summary.skills_touched} skill(s) touched")
        return ACCEPTED

    async def retry_failed(self, limit: int = 100) -> Dict[str, int]:
        """
        Background sweep: re-dispatch unprocessed events below the attempt
        limit, oldest first, and wait for them.
        """
        events = await self.log.list_unprocessed(self.max_attempts, limit)
        counts = {"retried": 0, "succeeded": 0, "failed": 0, "ignored": 0}
        futures = []
        for event in events:
            adapter = self.registry.adapters.get(event.provider)
            if adapter is None:
                continue
            try:
                activity = await self._normalize(adapter, event)
            except ValidationError:
                counts["failed"] += 1
                continue
            if activity is None:
                counts["ignored"] += 1
                continue
            try:
                future = self.dispatcher.submit(self._lane(event), lambda e=event, a=activity: self.process(e, a))
            except (asyncio.QueueFull, DispatcherClosedError) as e:
                logger.warning(f"Webhook retry sweep stopped early: {e}")
                break
            counts["retried"] += 1
            futures.append(future)

        for outcome in await asyncio.gather(*futures, return_exceptions=True):
            if isinstance(outcome, BaseException):
                counts["failed"] += 1
            else:
                counts["succeeded"] += 1
        if events:
            logger.info(f"Webhook retry sweep: {counts}")
        return counts
