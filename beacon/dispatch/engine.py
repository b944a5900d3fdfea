"""Dispatch engine: the entry point that turns a request into deliveries."""

import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from beacon.domain.models import ChannelType, DeliveryFrequency, DeliveryOutcome, Severity
from beacon.logging import get_logger
from beacon.logging.context import log_context
from beacon.providers.base import ChatMessage, DeliveryProvider
from beacon.providers.failover import FailoverController, SendOutcome
from beacon.utils.timestamps import utc_now

from .batching import BatchAggregator
from .collaborators import DeferredStore, DispatchRecordStore, InMemoryDeferredStore
from .exceptions import NoEligibleRecipientsError, NotificationTemplateError
from .filtering import RecipientFilter
from .grouping import group_by_channel
from .models import DispatchRequest, DispatchResult, Recipient
from .payloads import build_channel_message, build_template_context
from .rules import RuleEngine
from .templates import DEFAULT_TEMPLATE, TemplateRenderer

logger = get_logger(__name__, component="dispatch")

NO_ELIGIBLE_RECIPIENTS = "No eligible recipients"


class DispatchEngine:
    """
    Orchestrates one dispatch: rules, filtering, then batching, deferral or
    immediate delivery.

    Immediate deliveries fan out on a thread pool, one task per
    (recipient, channel) pair, each going through provider failover.
    `dispatch()` never raises for delivery failures; they are reported in
    the returned DispatchResult.
    """

    def __init__(
        self,
        providers: Mapping[ChannelType, Sequence[DeliveryProvider]],
        rule_engine: Optional[RuleEngine] = None,
        renderer: Optional[TemplateRenderer] = None,
        failover: Optional[FailoverController] = None,
        deferred_store: Optional[DeferredStore] = None,
        record_store: Optional[DispatchRecordStore] = None,
        batch_interval_seconds: int = 300,
        fallback_channel: Optional[str] = None,
        max_workers: int = 8,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the dispatch engine.

        Args:
            providers: Ordered providers per channel
            rule_engine: Rules applied to every new request
            renderer: Template renderer (defaults to the packaged templates)
            failover: Retry policy for provider delivery
            deferred_store: Storage for requests scheduled in the future
            record_store: Audit storage written after every dispatch
            batch_interval_seconds: Flush interval of the batch aggregator
            fallback_channel: Chat channel notified when no recipient is eligible
            max_workers: Maximum concurrent deliveries
            clock: Source of "now" (injectable for tests)
        """
        self.providers: Dict[ChannelType, List[DeliveryProvider]] = {
            channel: list(items) for channel, items in providers.items()
        }
        self.rule_engine = rule_engine or RuleEngine()
        self.renderer = renderer or TemplateRenderer()
        self.failover = failover or FailoverController()
        self.deferred_store = deferred_store or InMemoryDeferredStore()
        self.record_store = record_store
        self.fallback_channel = fallback_channel
        self.clock = clock
        self.recipient_filter = RecipientFilter(clock=clock)
        self.batcher = BatchAggregator(self.deliver_now, interval_seconds=batch_interval_seconds, clock=clock)

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="delivery")
        # Record writes are fire-and-forget and must never delay a dispatch
        self._record_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dispatch-record")

    def start(self) -> None:
        """Start the batch flush timer."""
        self.batcher.start()

    def close(self) -> None:
        """Flush pending batches, wait for record writes and release providers."""
        self.batcher.shutdown(flush=True)
        self._executor.shutdown(wait=True)
        self._record_executor.shutdown(wait=True)
        for channel_providers in self.providers.values():
            for provider in channel_providers:
                provider.close()
        logger.info("Dispatch engine closed", extra={"event": "dispatch.closed"})

    def dispatch(self, request: DispatchRequest, apply_rules: bool = True) -> DispatchResult:
        """
        Dispatch a request.

        Steps: drop if expired, apply rules, filter recipients (falling back
        when none remain), queue for batching if any recipient prefers it and
        the request is not critical, defer if scheduled in the future, and
        otherwise deliver immediately.

        Args:
            request: Request to dispatch
            apply_rules: False for re-submitted requests whose rules already ran

        Returns:
            DispatchResult; `status` tells which path was taken
        """
        if request.id is None:
            request = request.model_copy(update={"id": f"notif_{uuid.uuid4().hex[:12]}"})

        started = time.monotonic()
        now = self.clock()

        with log_context(dispatch_id=request.id):
            logger.info(
                f"Dispatching {request.type} to {len(request.recipients)} recipients",
                extra={
                    "event": "dispatch.started",
                    "notification_type": request.type,
                    "category": request.category,
                    "severity": request.severity,
                },
            )

            if request.is_expired(now):
                logger.info(
                    "Request expired before dispatch",
                    extra={"event": "dispatch.expired", "expires_at": request.expires_at},
                )
                return self._finish(
                    request,
                    DispatchResult(
                        dispatch_id=request.id,
                        success=False,
                        status="expired",
                        total_recipients=len(request.recipients),
                        error="Request expired",
                    ),
                    started,
                )

            if apply_rules:
                request = self.rule_engine.apply(request, now)

            try:
                eligible = self.recipient_filter.filter(request, now=now)
            except NoEligibleRecipientsError as e:
                logger.info(
                    str(e),
                    extra={"event": "dispatch.no_recipients", "reasons": e.reasons},
                )
                return self._finish(request, self._fallback(request, now), started)

            # Nothing is sent before scheduled_for, batched or not
            if request.is_deferred(now):
                scheduled_id = self.deferred_store.save_scheduled(request, eligible, request.scheduled_for)
                logger.info(
                    f"Request deferred until {request.scheduled_for.isoformat()}",
                    extra={
                        "event": "dispatch.deferred",
                        "scheduled_id": scheduled_id,
                        "scheduled_for": request.scheduled_for,
                    },
                )
                return self._finish(
                    request,
                    DispatchResult(
                        dispatch_id=request.id,
                        success=True,
                        status="scheduled",
                        total_recipients=len(eligible),
                    ),
                    started,
                    record=False,
                )

            if request.severity != Severity.CRITICAL and any(
                r.preferences.frequency == DeliveryFrequency.BATCHED for r in eligible
            ):
                self.batcher.enqueue(request, eligible)
                return self._finish(
                    request,
                    DispatchResult(
                        dispatch_id=request.id,
                        success=True,
                        status="batched",
                        total_recipients=len(eligible),
                    ),
                    started,
                    record=False,
                )

            result = self._deliver(request, eligible, now)
            return self._finish(request, result, started)

    def deliver_now(self, request: DispatchRequest, recipients: Sequence[Recipient]) -> DispatchResult:
        """Deliver immediately to already-filtered recipients.

        Used for batch digests; no rules, filtering or batching are applied.
        """
        if request.id is None:
            request = request.model_copy(update={"id": f"notif_{uuid.uuid4().hex[:12]}"})

        started = time.monotonic()
        with log_context(dispatch_id=request.id):
            result = self._deliver(request, list(recipients), self.clock())
            return self._finish(request, result, started)

    def _deliver(self, request: DispatchRequest, recipients: List[Recipient], now: datetime) -> DispatchResult:
        groups = group_by_channel(recipients, request.channels)

        futures = []
        for channel, members in groups.items():
            for recipient in members:
                futures.append(
                    (recipient.id, channel, self._executor.submit(self._deliver_one, request, recipient, channel, now))
                )

        outcomes: Dict[Tuple[str, ChannelType], DeliveryOutcome] = {}
        for recipient_id, channel, future in futures:
            outcomes.setdefault((recipient_id, channel), future.result())

        result = DispatchResult(
            dispatch_id=request.id,
            success=False,
            status="delivered",
            outcomes=list(outcomes.values()),
            total_recipients=len(recipients),
        )
        result.success = result.successful_count > 0

        if not result.outcomes:
            result.error = "No recipient has an allowed channel"
        elif not result.success:
            result.error = f"All {result.failed_count} deliveries failed"
        elif result.failed_count:
            result.error = f"{result.failed_count} deliveries failed"

        return result

    def _deliver_one(
        self, request: DispatchRequest, recipient: Recipient, channel: ChannelType, now: datetime
    ) -> DeliveryOutcome:
        """Deliver to one recipient on one channel. Never raises."""
        with log_context(dispatch_id=request.id, channel=channel.value, recipient_id=recipient.id):
            address = recipient.address_for(channel)
            if not address:
                return self._failed(channel, recipient, recipient.label, f"No {channel.value} address available")

            template = request.template or DEFAULT_TEMPLATE
            try:
                content = self.renderer.render(template, build_template_context(request, recipient))
            except NotificationTemplateError as e:
                return self._failed(channel, recipient, address, str(e))

            try:
                message = build_channel_message(channel, address, request, recipient, content, now)
                sent = self.failover.send(self.providers.get(channel, []), message)
            except Exception as e:
                logger.error(
                    f"Unexpected delivery error: {e}",
                    exc_info=True,
                    extra={"event": "delivery.unexpected_error"},
                )
                return self._failed(channel, recipient, address, f"Unexpected delivery error: {e}")

            return self._outcome(channel, recipient, address, sent)

    def _fallback(self, request: DispatchRequest, now: datetime) -> DispatchResult:
        total = len(request.recipients)
        channel_providers = self.providers.get(ChannelType.SLACK, [])

        if not self.fallback_channel or not request.allows(ChannelType.SLACK) or not channel_providers:
            return DispatchResult(
                dispatch_id=request.id,
                success=False,
                status="no_recipients",
                total_recipients=total,
                error=NO_ELIGIBLE_RECIPIENTS,
            )

        message = ChatMessage(channel=self.fallback_channel, text=f"*{request.title}*\n{request.message}")
        sent = self.failover.send(channel_providers, message)
        outcome = DeliveryOutcome(
            channel=ChannelType.SLACK,
            recipient=self.fallback_channel,
            success=sent.success,
            provider=sent.provider,
            message_id=sent.message_id,
            error=sent.error,
            attempts=sent.attempts,
            timestamp=self.clock(),
        )
        logger.info(
            f"Delivered to fallback channel {self.fallback_channel}",
            extra={"event": "dispatch.fallback", "success": sent.success},
        )
        return DispatchResult(
            dispatch_id=request.id,
            success=sent.success,
            status="fallback",
            outcomes=[outcome],
            total_recipients=total,
            error=None if sent.success else sent.error,
        )

    def _outcome(
        self, channel: ChannelType, recipient: Recipient, address: str, sent: SendOutcome
    ) -> DeliveryOutcome:
        return DeliveryOutcome(
            channel=channel,
            recipient=address,
            recipient_id=recipient.id,
            success=sent.success,
            provider=sent.provider,
            message_id=sent.message_id,
            error=sent.error,
            attempts=sent.attempts,
            timestamp=self.clock(),
        )

    def _failed(self, channel: ChannelType, recipient: Recipient, address: str, error: str) -> DeliveryOutcome:
        logger.warning(
            f"Delivery to recipient {recipient.id} failed: {error}",
            extra={"event": "delivery.failed", "recipient_id": recipient.id},
        )
        return DeliveryOutcome(
            channel=channel,
            recipient=address,
            recipient_id=recipient.id,
            success=False,
            error=error,
            timestamp=self.clock(),
        )

    def _finish(
        self, request: DispatchRequest, result: DispatchResult, started: float, record: bool = True
    ) -> DispatchResult:
        result.duration_seconds = round(time.monotonic() - started, 3)
        logger.info(
            f"Dispatch {result.status}: {result.successful_count} delivered, {result.failed_count} failed",
            extra={
                "event": "dispatch.completed",
                "status": result.status,
                "success": result.success,
                "successful": result.successful_count,
                "failed": result.failed_count,
                "duration_seconds": result.duration_seconds,
            },
        )
        if record and self.record_store is not None:
            self._record_executor.submit(self._save_record, request, result)
        return result

    def _save_record(self, request: DispatchRequest, result: DispatchResult) -> None:
        try:
            self.record_store.save_dispatch_result(result.dispatch_id, request, result.outcomes)
        except Exception as e:
            logger.error(
                f"Failed to save dispatch record {result.dispatch_id}: {e}",
                exc_info=True,
                extra={"event": "dispatch.record.failed", "dispatch_id": result.dispatch_id},
            )
