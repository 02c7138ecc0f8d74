from datetime import timedelta
from decimal import Decimal

import pytest

import confirmation
from confirmation import PaymentConfirmationBridge, notification_payment_id
from conftest import make_payment, make_pix_payment
from errors import (
    AlreadyPaidError,
    AmountMismatchError,
    GatewayError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from links import LinkLifecycleManager
from models import LinkStatus, PaymentNotification, utc_now


@pytest.fixture
def bridge(db, gateway):
    return PaymentConfirmationBridge(db, gateway, webhook_url="https://example.com/api/v1/webhooks/mercadopago")


@pytest.fixture
def link(manager, merchant):
    return manager.create_link(merchant.id, "Curso de violao", "25.50")


def card_payment_data(amount="25.50"):
    return {
        "transaction_amount": amount,
        "token": "card-token",
        "installments": 1,
        "payment_method_id": "visa",
        "payer": {"email": "payer@example.com"},
    }


class RecordingLogger:
    def __init__(self, records=None, context=None):
        self.records = [] if records is None else records
        self.context = context or {}

    def bind(self, **kw):
        return RecordingLogger(self.records, dict(self.context, **kw))

    def _record(self, level, event, **kw):
        self.records.append((level, event, dict(self.context, **kw)))

    def info(self, event, **kw):
        self._record("info", event, **kw)

    def warning(self, event, **kw):
        self._record("warning", event, **kw)

    def error(self, event, **kw):
        self._record("error", event, **kw)

class TestSubmitPayment:
    def test_approved_payment_marks_link_paid(self, db, bridge, gateway, manager, link):
        gateway.next_payment = make_payment("approved", payment_id="MP123")

        result = bridge.submit_payment(link.id, card_payment_data())

        assert result.status == "approved"
        assert result.payment_id == "MP123"
        assert result.newly_paid is True
        stored = manager.get_link(link.id)
        assert stored.status == LinkStatus.PAID
        assert stored.payment_id == "MP123"
        assert stored.paid_at is not None
        assert db.query(PaymentNotification).filter(PaymentNotification.link_id == link.id).count() == 1

    def test_request_is_enriched_from_link(self, bridge, gateway, merchant, link):
        gateway.next_payment = make_payment("approved")

        bridge.submit_payment(link.id, card_payment_data())

        access_token, request = gateway.created[0]
        assert access_token == merchant.access_token
        assert request["transaction_amount"] == Decimal("25.50")
        assert request["description"] == "Curso de violao"
        assert request["external_reference"] == link.id
        assert request["statement_descriptor"] == merchant.store_name[:22]
        assert request["notification_url"] == "https://example.com/api/v1/webhooks/mercadopago"
        assert request["metadata"] == {"link_id": link.id, "merchant_id": merchant.id}
        assert request["token"] == "card-token"

    def test_same_approval_confirmed_twice(self, db, bridge, gateway, manager, link):
        gateway.next_payment = make_payment("approved", payment_id="MP123")
        bridge.submit_payment(link.id, card_payment_data())
        paid_at = manager.get_link(link.id).paid_at

        again = bridge.apply_gateway_payment(manager.get_link(link.id), make_payment("approved", payment_id="MP123"), "webhook")

        assert again.newly_paid is False
        stored = manager.get_link(link.id)
        assert stored.status == LinkStatus.PAID
        assert stored.paid_at == paid_at
        assert db.query(PaymentNotification).count() == 1

    def test_amount_mismatch_rejected_before_gateway(self, bridge, gateway, manager, merchant):
        link = manager.create_link(merchant.id, "Camiseta", "10.00")

        with pytest.raises(AmountMismatchError):
            bridge.submit_payment(link.id, card_payment_data(amount="9.99"))

        assert gateway.created == []
        assert manager.get_link(link.id).status == LinkStatus.PENDING

    def test_amount_within_tolerance_is_accepted(self, bridge, gateway, link):
        gateway.next_payment = make_payment("approved")
        bridge.submit_payment(link.id, card_payment_data(amount=25.504))
        assert len(gateway.created) == 1

    def test_missing_amount(self, bridge, gateway, link):
        data = card_payment_data()
        del data["transaction_amount"]
        with pytest.raises(ValidationError):
            bridge.submit_payment(link.id, data)
        assert gateway.created == []

    def test_already_paid_rejected_before_gateway(self, bridge, gateway, manager, link):
        manager.mark_paid(link.id, "MP1", "payer@example.com", "pix")

        with pytest.raises(AlreadyPaidError):
            bridge.submit_payment(link.id, card_payment_data())
        assert gateway.created == []

    def test_cancelled_link_rejected_before_gateway(self, bridge, gateway, manager, merchant, link):
        manager.cancel_link(link.id, merchant.id)

        with pytest.raises(InvalidStateError) as excinfo:
            bridge.submit_payment(link.id, card_payment_data())
        assert excinfo.value.status == LinkStatus.CANCELLED
        assert gateway.created == []

    def test_expired_link_rejected_before_gateway(self, db, gateway, merchant):
        old = LinkLifecycleManager(db, clock=lambda: utc_now() - timedelta(days=31))
        link = old.create_link(merchant.id, "Camiseta", "25.50")

        with pytest.raises(InvalidStateError) as excinfo:
            PaymentConfirmationBridge(db, gateway).submit_payment(link.id, card_payment_data())
        assert excinfo.value.status == LinkStatus.EXPIRED
        assert gateway.created == []

    def test_unknown_link(self, bridge):
        with pytest.raises(NotFoundError):
            bridge.submit_payment("missing", card_payment_data())

    @pytest.mark.parametrize("payment_data", [None, {}])
    def test_missing_payment_data(self, bridge, link, payment_data):
        with pytest.raises(ValidationError):
            bridge.submit_payment(link.id, payment_data)

    def test_rejected_payment_leaves_link_pending(self, db, bridge, gateway, manager, link):
        gateway.next_payment = make_payment(
            "rejected", payment_id="MP-R1", status_detail="cc_rejected_insufficient_amount"
        )

        result = bridge.submit_payment(link.id, card_payment_data())

        assert result.status == "rejected"
        assert result.rejection_reason == "Insufficient balance"
        stored = manager.get_link(link.id)
        assert stored.status == LinkStatus.PENDING
        assert stored.payment_id is None
        assert db.query(PaymentNotification).count() == 0

    def test_unmapped_rejection_falls_back_to_generic_message(self, bridge, gateway, link):
        gateway.next_payment = make_payment("rejected", status_detail="cc_rejected_something_new")

        result = bridge.submit_payment(link.id, card_payment_data())

        assert "another payment method" in result.rejection_reason

    def test_pending_pix_tracks_payment(self, db, bridge, gateway, manager, link):
        gateway.next_payment = make_pix_payment(payment_id="MP-PIX-1")

        result = bridge.submit_payment(
            link.id, {"transaction_amount": 25.5, "payment_method_id": "pix", "payer": {"email": "payer@example.com"}}
        )

        assert result.status == "pending"
        assert result.pix.qr_code == "000201010212"
        assert result.to_dict()["pix_ticket_url"] == "https://mp.test/ticket"
        stored = manager.get_link(link.id)
        assert stored.status == LinkStatus.PENDING
        assert stored.payment_id == "MP-PIX-1"
        assert stored.payer_email == "payer@example.com"
        assert stored.paid_at is None
        assert db.query(PaymentNotification).count() == 0

    def test_gateway_error_propagates_and_leaves_link_pending(self, bridge, gateway, manager, link):
        gateway.error = GatewayError("Payment gateway unavailable")

        with pytest.raises(GatewayError):
            bridge.submit_payment(link.id, card_payment_data())
        assert manager.get_link(link.id).status == LinkStatus.PENDING


class TestPollStatus:
    def test_pending_link_without_payment(self, bridge, gateway, link):
        status = bridge.poll_status(link.id)
        assert status == {"status": "pending", "is_paid": False, "payment_id": None, "payment_method": None}
        assert gateway.fetched == []

    def test_refresh_confirms_tracked_pix_payment(self, db, bridge, gateway, manager, link):
        gateway.next_payment = make_pix_payment(payment_id="MP-PIX-1", external_reference=link.id)
        bridge.submit_payment(link.id, {"transaction_amount": "25.50", "payment_method_id": "pix"})
        gateway.payments["MP-PIX-1"] = make_payment(
            "approved", payment_id="MP-PIX-1", payment_method="pix", external_reference=link.id
        )

        status = bridge.poll_status(link.id)

        assert status["is_paid"] is True
        assert status["status"] == LinkStatus.PAID
        assert status["payment_id"] == "MP-PIX-1"
        assert db.query(PaymentNotification).count() == 1

    def test_refresh_disabled_is_a_plain_read(self, db, gateway, manager, link):
        manager.track_payment(link.id, "MP-PIX-1", "payer@example.com", "pix")
        bridge = PaymentConfirmationBridge(db, gateway, refresh_on_poll=False)

        status = bridge.poll_status(link.id)

        assert status["status"] == LinkStatus.PENDING
        assert status["payment_method"] == "pix"
        assert gateway.fetched == []

    def test_gateway_failure_returns_stored_status(self, bridge, gateway, manager, link):
        manager.track_payment(link.id, "MP-PIX-1", "payer@example.com", "pix")
        gateway.error = GatewayError("Payment gateway unavailable")

        status = bridge.poll_status(link.id)

        assert status["status"] == LinkStatus.PENDING
        assert status["is_paid"] is False

    def test_paid_link(self, bridge, gateway, manager, link):
        manager.mark_paid(link.id, "MP123", "payer@example.com", "credit_card")
        status = bridge.poll_status(link.id)
        assert status == {"status": "paid", "is_paid": True, "payment_id": "MP123", "payment_method": "credit_card"}
        assert gateway.fetched == []

    def test_unknown_link(self, bridge):
        with pytest.raises(NotFoundError):
            bridge.poll_status("missing")


class TestHandleNotification:
    @pytest.fixture
    def tracked_link(self, manager, link):
        manager.track_payment(link.id, "MP-PIX-1", "payer@example.com", "pix")
        return link

    def test_refetches_and_confirms(self, db, bridge, gateway, merchant, manager, tracked_link):
        gateway.payments["MP-PIX-1"] = make_payment(
            "approved", payment_id="MP-PIX-1", payment_method="pix", external_reference=tracked_link.id
        )

        applied = bridge.handle_notification({"type": "payment", "data": {"id": "MP-PIX-1"}})

        assert applied is True
        assert gateway.fetched == [(merchant.access_token, "MP-PIX-1")]
        assert manager.get_link(tracked_link.id).status == LinkStatus.PAID

    def test_payload_status_is_not_trusted(self, bridge, gateway, manager, tracked_link):
        gateway.payments["MP-PIX-1"] = make_pix_payment(payment_id="MP-PIX-1")

        bridge.handle_notification(
            {"type": "payment", "action": "payment.updated", "status": "approved", "data": {"id": "MP-PIX-1"}}
        )

        assert manager.get_link(tracked_link.id).status == LinkStatus.PENDING

    def test_duplicate_delivery_pays_once(self, db, bridge, gateway, manager, tracked_link):
        gateway.payments["MP-PIX-1"] = make_payment("approved", payment_id="MP-PIX-1", payment_method="pix")
        envelope = {"type": "payment", "data": {"id": "MP-PIX-1"}}

        assert bridge.handle_notification(envelope) is True
        paid_at = manager.get_link(tracked_link.id).paid_at
        assert bridge.handle_notification(envelope) is False

        stored = manager.get_link(tracked_link.id)
        assert stored.paid_at == paid_at
        assert db.query(PaymentNotification).count() == 1
        assert len(gateway.fetched) == 1

    def test_legacy_query_string_form(self, bridge, gateway, manager, tracked_link):
        gateway.payments["MP-PIX-1"] = make_payment("approved", payment_id="MP-PIX-1")

        assert bridge.handle_notification(None, {"topic": "payment", "id": "MP-PIX-1"}) is True
        assert manager.get_link(tracked_link.id).status == LinkStatus.PAID

    def test_reference_to_other_link_is_ignored(self, bridge, gateway, manager, tracked_link):
        gateway.payments["MP-PIX-1"] = make_payment(
            "approved", payment_id="MP-PIX-1", external_reference="some-other-link"
        )

        assert bridge.handle_notification({"type": "payment", "data": {"id": "MP-PIX-1"}}) is False
        assert manager.get_link(tracked_link.id).status == LinkStatus.PENDING

    def test_unknown_payment_is_ignored(self, bridge, gateway):
        assert bridge.handle_notification({"type": "payment", "data": {"id": "MP-NOPE"}}) is False
        assert gateway.fetched == []

    def test_non_payment_topic_is_ignored(self, bridge, gateway, tracked_link):
        assert bridge.handle_notification({"type": "merchant_order", "data": {"id": "MP-PIX-1"}}) is False
        assert gateway.fetched == []

    def test_gateway_error_propagates(self, bridge, gateway, tracked_link):
        gateway.error = GatewayError("Payment gateway unavailable")
        with pytest.raises(GatewayError):
            bridge.handle_notification({"type": "payment", "data": {"id": "MP-PIX-1"}})


class TestStaleTrackedLink:
    @pytest.fixture
    def stale_link(self, db, gateway, merchant):
        old = LinkLifecycleManager(db, clock=lambda: utc_now() - timedelta(days=31))
        link = old.create_link(merchant.id, "Curso", "25.50")
        old.track_payment(link.id, "PIX-9", "payer@example.com", "pix")
        gateway.payments["PIX-9"] = make_payment(
            "approved", payment_id="PIX-9", payment_method="pix", external_reference=link.id
        )
        return link

    @pytest.mark.parametrize("channel", ["webhook", "poll"])
    def test_every_channel_expires_the_link(self, db, bridge, manager, stale_link, channel):
        if channel == "webhook":
            assert bridge.handle_notification({"type": "payment", "data": {"id": "PIX-9"}}) is False
        else:
            assert bridge.poll_status(stale_link.id)["status"] == LinkStatus.EXPIRED

        stored = manager.get_link(stale_link.id)
        assert stored.status == LinkStatus.EXPIRED
        assert stored.paid_at is None
        assert db.query(PaymentNotification).count() == 0

    def test_approval_after_window_closes_mid_flight(self, db, gateway, manager, link):
        later = LinkLifecycleManager(db, clock=lambda: utc_now() + timedelta(days=31))
        bridge = PaymentConfirmationBridge(db, gateway, manager=later)

        with pytest.raises(InvalidStateError) as excinfo:
            bridge.apply_gateway_payment(link, make_payment("approved", payment_id="MP777"), source="webhook")

        assert excinfo.value.status == LinkStatus.EXPIRED
        assert db.query(PaymentNotification).count() == 0


class TestApprovalOnClosedLink:
    def test_charge_is_logged_for_reconciliation(self, monkeypatch, bridge, manager, merchant, link):
        log = RecordingLogger()
        monkeypatch.setattr(confirmation, "logger", log)
        manager.cancel_link(link.id, merchant.id)

        with pytest.raises(InvalidStateError):
            bridge.apply_gateway_payment(link, make_payment("approved", payment_id="MP777"), source="checkout")

        warnings = [r for r in log.records if r[1] == "approved_payment_on_closed_link"]
        assert len(warnings) == 1
        level, _, fields = warnings[0]
        assert level == "warning"
        assert fields["link_id"] == link.id
        assert fields["payment_id"] == "MP777"
        assert fields["link_status"] == LinkStatus.CANCELLED
        assert manager.get_link(link.id).payment_id is None

class TestNotificationPaymentId:
    @pytest.mark.parametrize(
        "envelope, query, expected",
        [
            ({"type": "payment", "data": {"id": 123}}, None, "123"),
            (None, {"type": "payment", "data.id": "456"}, "456"),
            (None, {"topic": "payment", "id": "789"}, "789"),
            ({"type": "payment", "data": {}}, None, None),
            ({"type": "plan", "data": {"id": 1}}, None, None),
            ("not a dict", None, None),
        ],
    )
    def test_extraction(self, envelope, query, expected):
        assert notification_payment_id(envelope, query) == expected
