"""
Tests for order communication history and logging new communications.

Tests cover:
- GET /orders/{order_id}: ordering, delivery logs, organization isolation
- POST /communications: staff-only logging, order validation
- audit_service.validate_audit_access
"""

from datetime import datetime

import pytest

from app import audit_service
from app.errors import AuthorizationError, NotFoundError, ValidationError
from app.models import CommunicationLog


ORDERS_URL = "/api/communication-audit/orders"
COMMUNICATIONS_URL = "/api/communication-audit/communications"


class TestOrderHistory:
    """GET /api/communication-audit/orders/{order_id}."""

    def test_newest_first_with_delivery_logs(self, client, db, seed, make_log, headers_for):
        older = make_log(seed.order_a, sent_at=datetime(2025, 1, 1), external_message_id="sg-old")
        newer = make_log(seed.order_a, sent_at=datetime(2025, 1, 2))
        audit_service.update_delivery_status(db, "sg-old", "Delivered")

        response = client.get(f"{ORDERS_URL}/{seed.order_a.id}", headers=headers_for(seed.user_a))

        assert response.status_code == 200
        logs = response.json()
        assert [log["id"] for log in logs] == [newer.id, older.id]
        assert [d["status"] for d in logs[1]["delivery_logs"]] == ["Delivered"]
        assert logs[1]["delivery_logs"][0]["delivery_provider"] == "SendGrid"

    def test_other_organization_is_forbidden(self, client, seed, make_log, headers_for):
        make_log(seed.order_b)

        response = client.get(f"{ORDERS_URL}/{seed.order_b.id}", headers=headers_for(seed.user_a))

        assert response.status_code == 403

    def test_staff_reads_any_order(self, client, seed, make_log, headers_for):
        make_log(seed.order_b)

        response = client.get(f"{ORDERS_URL}/{seed.order_b.id}", headers=headers_for(seed.staff))

        assert response.status_code == 200
        assert len(response.json()) == 1

    def test_unknown_order(self, client, seed, headers_for):
        response = client.get(f"{ORDERS_URL}/does-not-exist", headers=headers_for(seed.staff))
        assert response.status_code == 404

    def test_order_without_communications(self, client, seed, headers_for):
        response = client.get(f"{ORDERS_URL}/{seed.order_a.id}", headers=headers_for(seed.user_a))
        assert response.status_code == 200
        assert response.json() == []

    def test_member_never_sees_foreign_rows(self, db, seed, make_log):
        make_log(seed.order_a)
        make_log(seed.order_b)

        logs = audit_service.get_order_communication_history(db, seed.order_a.id, seed.org_a.id)

        assert logs
        assert all(log.order.organization_id == seed.org_a.id for log in logs)
        with pytest.raises(AuthorizationError):
            audit_service.get_order_communication_history(db, seed.order_b.id, seed.org_a.id)
        with pytest.raises(NotFoundError):
            audit_service.get_order_communication_history(db, "missing", None)


class TestLogCommunication:
    """POST /api/communication-audit/communications."""

    def test_staff_logs_communication(self, client, db, seed, headers_for):
        payload = {
            "order_id": seed.order_a.id,
            "communication_type": "Email",
            "sender_id": seed.staff.id,
            "recipient_email": "avery@lincoln.test",
            "subject": "Measurements received",
            "content": "Thanks, we have your measurements.",
            "template_used": "measurements-received",
            "external_message_id": "sendgrid-new-1",
            "metadata": '{"campaign": "spring"}',
        }

        response = client.post(COMMUNICATIONS_URL, json=payload, headers=headers_for(seed.staff))

        assert response.status_code == 201
        data = response.json()
        assert data["delivery_status"] == "Sent"
        assert data["metadata"] == '{"campaign": "spring"}'
        assert data["sent_at"] is not None
        stored = db.query(CommunicationLog).filter_by(external_message_id="sendgrid-new-1").one()
        assert stored.template_used == "measurements-received"

    def test_member_cannot_log(self, client, seed, headers_for):
        payload = {"order_id": seed.order_a.id, "communication_type": "Email", "sender_id": seed.user_a.id}
        response = client.post(COMMUNICATIONS_URL, json=payload, headers=headers_for(seed.user_a))
        assert response.status_code == 403

    def test_unknown_order_rejected(self, client, seed, headers_for):
        payload = {"order_id": "missing", "communication_type": "Email", "sender_id": seed.staff.id}
        response = client.post(COMMUNICATIONS_URL, json=payload, headers=headers_for(seed.staff))
        assert response.status_code == 422

    def test_invalid_type_rejected(self, client, seed, headers_for):
        payload = {"order_id": seed.order_a.id, "communication_type": "Pigeon", "sender_id": seed.staff.id}
        response = client.post(COMMUNICATIONS_URL, json=payload, headers=headers_for(seed.staff))
        assert response.status_code == 422

    def test_service_rejects_unknown_order(self, db, seed):
        log = CommunicationLog(order_id="missing", communication_type="Email", sender_id="system")
        with pytest.raises(ValidationError):
            audit_service.log_communication(db, log)


class TestValidateAuditAccess:
    """Access decisions return booleans, never raise."""

    def test_staff_has_access_everywhere(self, db, seed):
        assert audit_service.validate_audit_access(db, seed.staff.id, seed.org_b.id) is True

    def test_member_of_organization(self, db, seed):
        assert audit_service.validate_audit_access(db, seed.user_a.id, seed.org_a.id) is True

    def test_member_of_other_organization(self, db, seed):
        assert audit_service.validate_audit_access(db, seed.user_a.id, seed.org_b.id) is False

    def test_unknown_user(self, db, seed):
        assert audit_service.validate_audit_access(db, "nobody", seed.org_a.id) is False
