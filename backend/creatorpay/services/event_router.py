"""Event routing - dispatches verified webhook events to handlers and maps outcomes to HTTP statuses

The provider retries any non-2xx response. Critical events (money moved or subscription
state defined) answer 500 on failure so they are retried; non-critical ones are logged
in the ledger and acknowledged with 200 so a permanently failing event cannot loop.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional

from sqlalchemy.orm import Session

from creatorpay.core.metrics import webhook_events_counter, webhook_processing_seconds
from creatorpay.schemas.metadata import sanitize_for_log
from creatorpay.services import webhook_ledger

logger = logging.getLogger(__name__)

RESULT_PROCESSED = "processed"
RESULT_SKIPPED = "skipped"


@dataclass
class HandlerResult:
    status: str
    reason: Optional[str] = None

    @classmethod
    def processed(cls, reason: Optional[str] = None) -> "HandlerResult":
        return cls(RESULT_PROCESSED, reason)

    @classmethod
    def skipped(cls, reason: str) -> "HandlerResult":
        return cls(RESULT_SKIPPED, reason)


@dataclass
class WebhookResponse:
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)


# handler(event, db, services) -> HandlerResult | None
Handler = Callable[[Any, Session, Any], Optional[HandlerResult]]


class EventRouter:
    """Routes one provider's events through the idempotency ledger to its handlers"""

    def __init__(
        self,
        provider: str,
        handlers: Dict[str, Handler],
        critical_events: Iterable[str],
        non_critical_events: Iterable[str] = (),
        retry_unlisted_failures: bool = True,
    ):
        self.provider = provider
        self.handlers = dict(handlers)
        self.critical_events: FrozenSet[str] = frozenset(critical_events)
        self.non_critical_events: FrozenSet[str] = frozenset(non_critical_events)
        self.retry_unlisted_failures = retry_unlisted_failures

        overlap = self.critical_events & self.non_critical_events
        if overlap:
            raise ValueError(f"Events listed as both critical and non-critical: {sorted(overlap)}")

    def is_critical(self, event_type: str) -> bool:
        """Whether a handler failure for this type should make the provider retry"""
        if event_type in self.critical_events:
            return True
        if event_type in self.non_critical_events:
            return False
        return self.retry_unlisted_failures

    def dispatch(self, event: Any, db: Session, services: Any, raw_payload: Optional[Dict[str, Any]] = None) -> WebhookResponse:
        """Run the handler for a verified event exactly once per ledger id.

        Args:
            event: Parsed StripeEvent or PaystackEvent (needs .type and .ledger_id)
            db: Database session
            services: WebhookServices passed through to the handler
            raw_payload: Original payload, reduced to a snapshot for the ledger
        """
        event_type = event.type
        ledger_id = event.ledger_id

        snapshot = webhook_ledger.build_payload_snapshot(self.provider, raw_payload)
        ledger_row = webhook_ledger.record_event(db, ledger_id, self.provider, event_type, snapshot)

        if webhook_ledger.is_processed(ledger_row):
            logger.info(f"Webhook event {ledger_id} already processed")
            self._count(event_type, "already_processed")
            return WebhookResponse(200, {"received": True, "status": "already_processed"})

        handler = self.handlers.get(event_type)
        if handler is None:
            logger.info(f"Ignoring unhandled {self.provider} event type {sanitize_for_log(event_type)}")
            webhook_ledger.mark_skipped(db, ledger_row, "unhandled_event_type")
            self._count(event_type, "ignored")
            return WebhookResponse(200, {"received": True, "status": "ignored"})

        webhook_ledger.mark_processing(db, ledger_row)
        started = time.monotonic()
        try:
            result = handler(event, db, services) or HandlerResult.processed()
        except Exception as e:
            elapsed_ms = self._elapsed_ms(started)
            db.rollback()
            webhook_ledger.mark_failed(db, ledger_id, f"{type(e).__name__}: {e}", elapsed_ms)

            if self.is_critical(event_type):
                logger.error(
                    f"Critical {self.provider} event {ledger_id} ({event_type}) failed, requesting retry: {e}",
                    exc_info=True,
                )
                self._count(event_type, "failed_retry")
                return WebhookResponse(500, {"error": "Webhook processing failed", "retry": True})

            logger.error(
                f"Non-critical {self.provider} event {ledger_id} ({event_type}) failed, acknowledging: {e}",
                exc_info=True,
            )
            self._count(event_type, "failed_acknowledged")
            return WebhookResponse(200, {"received": True, "status": "error_logged"})

        elapsed_ms = self._elapsed_ms(started)
        if result.status == RESULT_SKIPPED:
            logger.info(f"Skipped {self.provider} event {ledger_id} ({event_type}): {result.reason}")
            webhook_ledger.mark_skipped(db, ledger_row, result.reason, elapsed_ms)
        else:
            logger.info(f"Processed {self.provider} event {ledger_id} ({event_type}) in {elapsed_ms}ms")
            webhook_ledger.mark_processed(db, ledger_row, elapsed_ms)
        self._count(event_type, result.status)
        return WebhookResponse(200, {"received": True, "status": result.status})

    def _elapsed_ms(self, started: float) -> int:
        elapsed = time.monotonic() - started
        webhook_processing_seconds.labels(provider=self.provider).observe(elapsed)
        return int(elapsed * 1000)

    def _count(self, event_type: str, outcome: str) -> None:
        # Unknown types would explode label cardinality
        label = event_type if event_type in self.handlers else "unhandled"
        webhook_events_counter.labels(provider=self.provider, event_type=label, outcome=outcome).inc()
