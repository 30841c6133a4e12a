"""Event router tests - ledger gating and HTTP status mapping"""
import pytest
from types import SimpleNamespace
from unittest.mock import Mock

from creatorpay.models.webhook_event import WebhookEvent, STATUS_FAILED, STATUS_PROCESSED, STATUS_SKIPPED
from creatorpay.services.event_router import EventRouter, HandlerResult
from creatorpay.services.paystack_webhooks import PAYSTACK_CRITICAL_EVENTS, PAYSTACK_NON_CRITICAL_EVENTS, build_paystack_router
from creatorpay.services.stripe_webhooks import STRIPE_CRITICAL_EVENTS, STRIPE_HANDLERS, STRIPE_NON_CRITICAL_EVENTS, build_stripe_router


def _event(event_type="invoice.paid", event_id="evt_1"):
    return SimpleNamespace(type=event_type, ledger_id=f"stripe_{event_id}")


def _router(handler, critical=("invoice.paid",), non_critical=("account.updated",), retry_unlisted=True):
    handlers = {"invoice.paid": handler, "account.updated": handler, "custom.event": handler}
    return EventRouter("stripe", handlers, critical, non_critical, retry_unlisted_failures=retry_unlisted)


def _ledger_row(db_session, ledger_id="stripe_evt_1"):
    return db_session.query(WebhookEvent).filter(WebhookEvent.event_id == ledger_id).first()


@pytest.mark.critical
class TestDispatch:
    """A verified event runs its handler at most once to completion"""

    def test_success_marks_processed(self, db_session, services):
        handler = Mock(return_value=HandlerResult.processed())
        response = _router(handler).dispatch(_event(), db_session, services)

        assert response.status_code == 200
        assert response.body == {"received": True, "status": "processed"}
        assert _ledger_row(db_session).status == STATUS_PROCESSED
        handler.assert_called_once()

    def test_handler_returning_none_counts_as_processed(self, db_session, services):
        response = _router(Mock(return_value=None)).dispatch(_event(), db_session, services)
        assert response.body["status"] == "processed"

    def test_processed_event_short_circuits(self, db_session, services):
        handler = Mock(return_value=HandlerResult.processed())
        router = _router(handler)

        router.dispatch(_event(), db_session, services)
        response = router.dispatch(_event(), db_session, services)

        assert response.status_code == 200
        assert response.body == {"received": True, "status": "already_processed"}
        assert handler.call_count == 1
        assert _ledger_row(db_session).retry_count == 1

    def test_skipped_event_is_rerun_on_redelivery(self, db_session, services):
        handler = Mock(side_effect=[HandlerResult.skipped("lock_not_acquired"), HandlerResult.processed()])
        router = _router(handler)

        first = router.dispatch(_event(), db_session, services)
        assert first.body["status"] == "skipped"
        assert _ledger_row(db_session).status == STATUS_SKIPPED
        assert _ledger_row(db_session).error == "lock_not_acquired"

        second = router.dispatch(_event(), db_session, services)
        assert second.body["status"] == "processed"
        assert handler.call_count == 2

    def test_unhandled_type_is_ignored(self, db_session, services):
        response = _router(Mock()).dispatch(_event("customer.created"), db_session, services)
        assert response.status_code == 200
        assert response.body["status"] == "ignored"
        row = _ledger_row(db_session)
        assert row.status == STATUS_SKIPPED
        assert row.error == "unhandled_event_type"

    def test_critical_failure_returns_500(self, db_session, services):
        handler = Mock(side_effect=RuntimeError("db exploded"))
        response = _router(handler).dispatch(_event(), db_session, services)

        assert response.status_code == 500
        assert response.body == {"error": "Webhook processing failed", "retry": True}
        row = _ledger_row(db_session)
        assert row.status == STATUS_FAILED
        assert "RuntimeError: db exploded" in row.error

    def test_failed_critical_event_is_retried(self, db_session, services):
        handler = Mock(side_effect=[RuntimeError("transient"), HandlerResult.processed()])
        router = _router(handler)

        assert router.dispatch(_event(), db_session, services).status_code == 500
        assert router.dispatch(_event(), db_session, services).status_code == 200
        assert _ledger_row(db_session).status == STATUS_PROCESSED

    def test_non_critical_failure_returns_200(self, db_session, services):
        handler = Mock(side_effect=ValueError("bad data"))
        response = _router(handler).dispatch(_event("account.updated"), db_session, services)

        assert response.status_code == 200
        assert response.body == {"received": True, "status": "error_logged"}
        assert _ledger_row(db_session).status == STATUS_FAILED

    def test_unlisted_failure_follows_retry_setting(self, db_session, services):
        handler = Mock(side_effect=RuntimeError("boom"))

        retried = _router(handler, retry_unlisted=True).dispatch(_event("custom.event", "evt_a"), db_session, services)
        acked = _router(handler, retry_unlisted=False).dispatch(_event("custom.event", "evt_b"), db_session, services)

        assert retried.status_code == 500
        assert acked.status_code == 200

    def test_failure_rolls_back_handler_writes(self, db_session, services, subscriber):
        def handler(event, db, services):
            subscriber.name = "Changed"
            db.flush()
            raise RuntimeError("after write")

        _router(handler).dispatch(_event(), db_session, services)
        db_session.refresh(subscriber)
        assert subscriber.name == "Test Fan"


@pytest.mark.high
class TestRouterConfiguration:
    """Critical and non-critical sets are disjoint"""

    def test_overlap_rejected(self):
        with pytest.raises(ValueError):
            EventRouter("stripe", {}, ["invoice.paid"], ["invoice.paid"])

    def test_stripe_sets_disjoint_and_handled(self):
        assert not STRIPE_CRITICAL_EVENTS & STRIPE_NON_CRITICAL_EVENTS
        assert (STRIPE_CRITICAL_EVENTS | STRIPE_NON_CRITICAL_EVENTS) == set(STRIPE_HANDLERS)

    def test_paystack_sets_disjoint(self):
        assert not PAYSTACK_CRITICAL_EVENTS & PAYSTACK_NON_CRITICAL_EVENTS

    def test_classification(self):
        stripe_router = build_stripe_router()
        assert stripe_router.is_critical("invoice.paid") is True
        assert stripe_router.is_critical("charge.dispute.created") is True
        assert stripe_router.is_critical("customer.subscription.updated") is False
        assert stripe_router.is_critical("payout.failed") is False

        paystack_router = build_paystack_router()
        assert paystack_router.is_critical("charge.success") is True
        assert paystack_router.is_critical("transfer.success") is True
        assert paystack_router.is_critical("charge.failed") is False
