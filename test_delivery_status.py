"""
Tests for delivery status tracking.

Tests cover:
- Status transitions and their timestamp side effects
- Provider detection from external ids
- Unknown external ids (not found, nothing created)
- Permissive ordering of late status reports
- SendGrid and Twilio webhooks: signatures, mapping, unknown ids, undecodable bodies
- Delivery report history per communication
"""

import json
from urllib.parse import urlencode

import pytest

from app import audit_service
from app.errors import AuthorizationError, NotFoundError, ValidationError
from app.models import CommunicationLog, NotificationDeliveryLog
from app.utils import determine_provider, map_sendgrid_event, map_twilio_status


SENDGRID_URL = "/api/communication-audit/webhooks/sendgrid"
TWILIO_URL = "/api/communication-audit/webhooks/twilio"


class TestUpdateDeliveryStatus:
    """audit_service.update_delivery_status."""

    def test_delivered_sets_delivered_at(self, db, seed, make_log):
        log = make_log(seed.order_a, external_message_id="sendgrid-abc")

        delivery_log = audit_service.update_delivery_status(db, "sendgrid-abc", "Delivered")

        db.refresh(log)
        assert log.delivery_status == "Delivered"
        assert log.delivered_at is not None
        assert log.read_at is None
        assert delivery_log.delivery_provider == "SendGrid"
        assert delivery_log.communication_log_id == log.id

    def test_read_backfills_delivered_at(self, db, seed, make_log):
        log = make_log(seed.order_a, external_message_id="sg-read-1")

        audit_service.update_delivery_status(db, "sg-read-1", "Read")

        db.refresh(log)
        assert log.read_at is not None
        assert log.delivered_at == log.read_at

    def test_read_keeps_existing_delivered_at(self, db, seed, make_log):
        log = make_log(seed.order_a, external_message_id="sg-read-2")
        audit_service.update_delivery_status(db, "sg-read-2", "Delivered")
        db.refresh(log)
        delivered_at = log.delivered_at

        audit_service.update_delivery_status(db, "sg-read-2", "Read")

        db.refresh(log)
        assert log.delivered_at == delivered_at

    def test_failure_records_reason(self, db, seed, make_log):
        log = make_log(seed.order_a, external_message_id="SM123", communication_type="SMS")

        audit_service.update_delivery_status(db, "SM123", "Failed", status_details="Unreachable handset")

        db.refresh(log)
        assert log.delivery_status == "Failed"
        assert log.failure_reason == "Unreachable handset"

    def test_failure_without_details_keeps_reason(self, db, seed, make_log):
        log = make_log(seed.order_a, external_message_id="sg-bounce")
        audit_service.update_delivery_status(db, "sg-bounce", "Failed", status_details="Mailbox full")

        audit_service.update_delivery_status(db, "sg-bounce", "Bounced")

        db.refresh(log)
        assert log.delivery_status == "Bounced"
        assert log.failure_reason == "Mailbox full"

    def test_each_transition_appends_a_delivery_log(self, db, seed, make_log):
        log = make_log(seed.order_a, external_message_id="twilio-1")

        audit_service.update_delivery_status(db, "twilio-1", "Sent")
        audit_service.update_delivery_status(db, "twilio-1", "Delivered")

        rows = db.query(NotificationDeliveryLog).filter_by(communication_log_id=log.id).all()
        assert sorted(r.status for r in rows) == ["Delivered", "Sent"]
        assert {r.delivery_provider for r in rows} == {"Twilio"}

    def test_late_sent_overwrites_delivered(self, db, seed, make_log):
        """Reports are applied in arrival order without a progression guard."""
        log = make_log(seed.order_a, external_message_id="sg-late")

        audit_service.update_delivery_status(db, "sg-late", "Delivered")
        audit_service.update_delivery_status(db, "sg-late", "Sent")

        db.refresh(log)
        assert log.delivery_status == "Sent"
        assert log.delivered_at is not None

    def test_unknown_external_id_is_not_found(self, db, seed, make_log):
        make_log(seed.order_a, external_message_id="sg-known")
        before = db.query(CommunicationLog).count()

        with pytest.raises(NotFoundError):
            audit_service.update_delivery_status(db, "sg-missing", "Delivered")

        assert db.query(CommunicationLog).count() == before
        assert db.query(NotificationDeliveryLog).count() == 0

    @pytest.mark.parametrize("external_id,status", [("", "Delivered"), ("sg-1", "")])
    def test_missing_arguments(self, db, seed, external_id, status):
        with pytest.raises(ValidationError):
            audit_service.update_delivery_status(db, external_id, status)


class TestProviderMapping:
    """Pure mapping helpers."""

    @pytest.mark.parametrize("external_id,provider", [
        ("sendgrid-123", "SendGrid"),
        ("sg-123", "SendGrid"),
        ("twilio-123", "Twilio"),
        ("SM0123456789", "Twilio"),
        ("internal-42", "Internal"),
        ("abc", "Unknown"),
    ])
    def test_determine_provider(self, external_id, provider):
        assert determine_provider(external_id) == provider

    def test_sendgrid_events(self):
        assert map_sendgrid_event("delivered") == "Delivered"
        assert map_sendgrid_event("open") == "Read"
        assert map_sendgrid_event("bounce") == "Bounced"
        assert map_sendgrid_event("dropped") == "Failed"
        assert map_sendgrid_event("spamreport") == "Sent"

    def test_twilio_statuses(self):
        assert map_twilio_status("delivered") == "Delivered"
        assert map_twilio_status("undelivered") == "Failed"
        assert map_twilio_status("queued") == "Sent"


class TestSendGridWebhook:
    """POST /webhooks/sendgrid."""

    def test_batch_applied(self, client, db, seed, make_log, sign):
        first = make_log(seed.order_a, external_message_id="sg-1")
        second = make_log(seed.order_a, external_message_id="sg-2")
        body = json.dumps([
            {"event": "delivered", "sg_message_id": "sg-1", "email": "a@example.test", "timestamp": 1736935200},
            {"event": "bounce", "sg_message_id": "sg-2", "reason": "550 mailbox unavailable"},
        ]).encode()

        response = client.post(SENDGRID_URL, content=body, headers={
            "Content-Type": "application/json",
            "X-Signature": sign(body),
        })

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "processed": 2, "unknown": 0}
        db.refresh(first)
        db.refresh(second)
        assert first.delivery_status == "Delivered"
        assert second.delivery_status == "Bounced"
        assert second.failure_reason == "550 mailbox unavailable"

    def test_unknown_ids_are_counted_not_fatal(self, client, db, seed, make_log, sign):
        make_log(seed.order_a, external_message_id="sg-1")
        body = json.dumps([
            {"event": "delivered", "sg_message_id": "sg-1"},
            {"event": "delivered", "sg_message_id": "sg-unknown"},
            {"event": "processed"},
        ]).encode()

        response = client.post(SENDGRID_URL, content=body, headers={"X-Signature": sign(body)})

        assert response.status_code == 200
        assert response.json()["processed"] == 1
        assert response.json()["unknown"] == 2
        assert db.query(CommunicationLog).count() == 1

    def test_raw_payload_is_kept(self, client, db, seed, make_log, sign):
        log = make_log(seed.order_a, external_message_id="sg-raw")
        body = json.dumps([{"event": "open", "sg_message_id": "sg-raw", "useragent": "Mail/1.0"}]).encode()

        client.post(SENDGRID_URL, content=body, headers={"X-Signature": sign(body)})

        row = db.query(NotificationDeliveryLog).filter_by(communication_log_id=log.id).one()
        assert json.loads(row.webhook_data)["useragent"] == "Mail/1.0"

    def test_missing_signature(self, client, seed):
        response = client.post(SENDGRID_URL, content=b"[]")
        assert response.status_code == 401
        assert response.json() == {"detail": "invalid signature"}

    def test_invalid_signature(self, client, seed):
        response = client.post(SENDGRID_URL, content=b"[]", headers={"X-Signature": "0" * 64})
        assert response.status_code == 401

    def test_malformed_payload(self, client, seed, sign):
        body = b'{"event": "delivered"}'
        response = client.post(SENDGRID_URL, content=body, headers={"X-Signature": sign(body)})
        assert response.status_code == 422

    def test_body_not_utf8(self, client, db, seed, make_log, sign):
        make_log(seed.order_a, external_message_id="sg-1")
        body = b'[{"event": "delivered", "sg_message_id": "sg-\xff"}]'

        response = client.post(SENDGRID_URL, content=body, headers={"X-Signature": sign(body)})

        assert response.status_code == 422
        assert db.query(NotificationDeliveryLog).count() == 0


class TestTwilioWebhook:
    """POST /webhooks/twilio."""

    def test_status_callback_applied(self, client, db, seed, make_log, sign):
        log = make_log(seed.order_a, communication_type="SMS", external_message_id="SM42",
                       recipient_phone="+15550100")
        body = urlencode({"MessageSid": "SM42", "MessageStatus": "undelivered",
                          "ErrorCode": "30003", "ErrorMessage": "Unreachable"}).encode()

        response = client.post(TWILIO_URL, content=body, headers={
            "Content-Type": "application/x-www-form-urlencoded",
            "X-Signature": sign(body),
        })

        assert response.status_code == 200
        assert response.json()["processed"] == 1
        db.refresh(log)
        assert log.delivery_status == "Failed"
        assert log.failure_reason == "Error 30003: Unreachable"

    def test_unknown_message_sid(self, client, seed, sign):
        body = urlencode({"MessageSid": "SM-missing", "MessageStatus": "delivered"}).encode()
        response = client.post(TWILIO_URL, content=body, headers={"X-Signature": sign(body)})
        assert response.status_code == 404

    def test_missing_fields(self, client, seed, sign):
        body = urlencode({"MessageStatus": "delivered"}).encode()
        response = client.post(TWILIO_URL, content=body, headers={"X-Signature": sign(body)})
        assert response.status_code == 422

    @pytest.mark.parametrize("body", [
        b"MessageSid=SM\xff&MessageStatus=delivered",
        b"MessageSid=SM%FF&MessageStatus=delivered",
    ])
    def test_body_not_utf8(self, client, db, seed, sign, body):
        response = client.post(TWILIO_URL, content=body, headers={"X-Signature": sign(body)})

        assert response.status_code == 422
        assert db.query(NotificationDeliveryLog).count() == 0

    def test_invalid_signature(self, client, seed):
        body = urlencode({"MessageSid": "SM42", "MessageStatus": "delivered"}).encode()
        response = client.post(TWILIO_URL, content=body, headers={"X-Signature": "bad"})
        assert response.status_code == 401


class TestDeliveryHistory:
    """Provider status reports recorded for one communication."""

    def test_reports_in_arrival_order(self, db, seed, make_log):
        log = make_log(seed.order_a, external_message_id="sg-history")
        audit_service.update_delivery_status(db, "sg-history", "Delivered")
        audit_service.update_delivery_status(db, "sg-history", "Read")

        rows = audit_service.get_delivery_history(db, log.id, seed.org_a.id)

        assert [r.status for r in rows] == ["Delivered", "Read"]
        assert all(r.external_id == "sg-history" for r in rows)

    def test_unknown_and_foreign_communications(self, db, seed, make_log):
        foreign = make_log(seed.order_b)

        with pytest.raises(NotFoundError):
            audit_service.get_delivery_history(db, "missing")
        with pytest.raises(AuthorizationError):
            audit_service.get_delivery_history(db, foreign.id, seed.org_a.id)

    def test_endpoint(self, client, db, seed, make_log, headers_for):
        log = make_log(seed.order_a, external_message_id="SM77")
        audit_service.update_delivery_status(db, "SM77", "Failed", status_details="Carrier rejected")
        url = f"/api/communication-audit/communications/{log.id}/delivery-logs"

        own = client.get(url, headers=headers_for(seed.user_a))
        other = client.get(url, headers=headers_for(seed.user_b))

        assert own.status_code == 200
        assert [(r["status"], r["delivery_provider"], r["status_details"]) for r in own.json()] == [
            ("Failed", "Twilio", "Carrier rejected"),
        ]
        assert other.status_code == 403
