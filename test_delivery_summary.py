"""
Tests for delivery status summaries.

Tests cover:
- Counts, success rate and closed date window
- Daily and hourly volume, peak hour, average delivery time
- Top failure reasons
- GET /delivery-summary scoping and validation
"""

from datetime import datetime

from app import audit_service


SUMMARY_URL = "/api/communication-audit/delivery-summary"
WINDOW = {"from": "2025-01-01T00:00:00", "to": "2025-01-31T23:59:59"}


class TestDeliveryStatusSummary:
    """audit_service.get_delivery_status_summary."""

    def test_counts_and_success_rate(self, db, seed, make_log):
        make_log(seed.order_a, delivery_status="Delivered")
        make_log(seed.order_a, delivery_status="Read")
        make_log(seed.order_a, delivery_status="Failed", failure_reason="Bad address")
        make_log(seed.order_a, communication_type="SMS", delivery_status="Sent")
        make_log(seed.order_b, delivery_status="Delivered")

        summary = audit_service.get_delivery_status_summary(
            db, seed.org_a.id, datetime(2025, 1, 1), datetime(2025, 1, 31)
        )

        assert summary.total_communications == 4
        assert summary.status_counts == {"Delivered": 1, "Read": 1, "Failed": 1, "Sent": 1}
        assert summary.type_counts == {"Email": 3, "SMS": 1}
        assert summary.delivery_success_rate == 50.0

    def test_empty_window(self, db, seed):
        summary = audit_service.get_delivery_status_summary(
            db, seed.org_a.id, datetime(2025, 1, 1), datetime(2025, 1, 31)
        )

        assert summary.total_communications == 0
        assert summary.delivery_success_rate == 0.0
        assert summary.peak_hour is None
        assert summary.average_delivery_time_minutes is None
        assert summary.daily_volume == []

    def test_window_bounds_are_inclusive(self, db, seed, make_log):
        make_log(seed.order_a, sent_at=datetime(2025, 1, 1, 0, 0))
        make_log(seed.order_a, sent_at=datetime(2025, 1, 31, 0, 0))
        make_log(seed.order_a, sent_at=datetime(2025, 1, 31, 0, 1))

        summary = audit_service.get_delivery_status_summary(
            db, seed.org_a.id, datetime(2025, 1, 1), datetime(2025, 1, 31)
        )

        assert summary.total_communications == 2

    def test_volume_and_timing(self, db, seed, make_log):
        make_log(seed.order_a, delivery_status="Delivered",
                 sent_at=datetime(2025, 1, 2, 9, 0), delivered_at=datetime(2025, 1, 2, 9, 4))
        make_log(seed.order_a, delivery_status="Delivered",
                 sent_at=datetime(2025, 1, 2, 9, 30), delivered_at=datetime(2025, 1, 2, 9, 36))
        make_log(seed.order_a, delivery_status="Failed", sent_at=datetime(2025, 1, 3, 14, 0))

        summary = audit_service.get_delivery_status_summary(
            db, seed.org_a.id, datetime(2025, 1, 1), datetime(2025, 1, 31)
        )

        assert summary.average_delivery_time_minutes == 5.0
        assert summary.peak_hour == 9
        assert summary.hourly_volume == {9: 2, 14: 1}
        assert [(d.date, d.total_sent, d.delivered, d.failed) for d in summary.daily_volume] == [
            ("2025-01-02", 2, 2, 0),
            ("2025-01-03", 1, 0, 1),
        ]
        assert summary.daily_volume[0].delivery_rate == 100.0

    def test_top_failure_reasons(self, db, seed, make_log):
        for day in (2, 3, 4):
            make_log(seed.order_a, delivery_status="Bounced", failure_reason="Mailbox full",
                     sent_at=datetime(2025, 1, day))
        make_log(seed.order_a, delivery_status="Failed", failure_reason="Invalid number",
                 sent_at=datetime(2025, 1, 5))

        reasons = audit_service.get_delivery_status_summary(
            db, seed.org_a.id, datetime(2025, 1, 1), datetime(2025, 1, 31)
        ).top_failure_reasons

        assert [(r.reason, r.count, r.percentage) for r in reasons] == [
            ("Mailbox full", 3, 75.0),
            ("Invalid number", 1, 25.0),
        ]
        assert reasons[0].last_occurrence == datetime(2025, 1, 4)


class TestDeliverySummaryEndpoint:
    """GET /api/communication-audit/delivery-summary."""

    def test_member_defaults_to_own_organization(self, client, seed, make_log, headers_for):
        make_log(seed.order_a, delivery_status="Delivered")
        make_log(seed.order_b, delivery_status="Delivered")

        response = client.get(SUMMARY_URL, params=WINDOW, headers=headers_for(seed.user_a))

        assert response.status_code == 200
        data = response.json()
        assert data["organization_id"] == seed.org_a.id
        assert data["total_communications"] == 1
        assert data["delivery_success_rate"] == 100.0

    def test_member_naming_other_organization(self, client, seed, headers_for):
        response = client.get(
            SUMMARY_URL,
            params={**WINDOW, "organizationId": seed.org_b.id},
            headers=headers_for(seed.user_a),
        )
        assert response.status_code == 403

    def test_staff_must_name_organization(self, client, seed, headers_for):
        response = client.get(SUMMARY_URL, params=WINDOW, headers=headers_for(seed.staff))
        assert response.status_code == 422

    def test_staff_with_organization(self, client, seed, make_log, headers_for):
        make_log(seed.order_b)

        response = client.get(
            SUMMARY_URL,
            params={**WINDOW, "organizationId": seed.org_b.id},
            headers=headers_for(seed.staff),
        )

        assert response.status_code == 200
        assert response.json()["total_communications"] == 1

    def test_inverted_range(self, client, seed, headers_for):
        response = client.get(
            SUMMARY_URL,
            params={"from": "2025-02-01T00:00:00", "to": "2025-01-01T00:00:00"},
            headers=headers_for(seed.user_a),
        )
        assert response.status_code == 422
