"""
Business rules for the communication audit trail.

Validates order and organization references, enforces the staff /
organization access policy, and builds the summaries used for compliance
reporting. Data access is delegated to app.repository.
"""

import logging
import math
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app import repository
from app.errors import AuthorizationError, NotFoundError, ValidationError
from app.models import CommunicationLog, MessageAuditTrail, MessageEdit, NotificationDeliveryLog, Order, User
from app.schemas import (
    CommunicationAuditSearchRequest,
    DailyCommunicationVolume,
    DateRangeSummary,
    DeliveryStatusSummary,
    FailureReasonSummary,
)
from app.utils import determine_provider, utc_now

logger = logging.getLogger(__name__)

DELIVERED_STATUSES = ("Delivered", "Read")
FAILED_STATUSES = ("Failed", "Bounced")
TOP_FAILURE_REASONS = 5


@dataclass
class CommunicationAuditResult:
    logs: list[CommunicationLog]
    total_count: int
    page: int
    page_size: int
    has_next_page: bool
    status_summary: dict[str, int] = field(default_factory=dict)
    type_summary: dict[str, int] = field(default_factory=dict)
    date_range: Optional[DateRangeSummary] = None

    @property
    def has_previous_page(self) -> bool:
        return self.page > 1

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_count / self.page_size) if self.page_size else 0


def log_communication(db: Session, log: CommunicationLog) -> CommunicationLog:
    """
    Persist a communication event.

    Raises:
        ValidationError: the referenced order does not exist
    """
    logger.debug(f"Logging communication for order {log.order_id}, type {log.communication_type}")

    if not log.order_id or db.get(Order, log.order_id) is None:
        raise ValidationError(f"Order {log.order_id} not found")

    if log.sent_at is None:
        log.sent_at = utc_now()

    saved = repository.create_communication_log(db, log)
    logger.info(
        f"Communication logged: {saved.id} type={saved.communication_type} "
        f"order={saved.order_id} status={saved.delivery_status}"
    )
    return saved


def update_delivery_status(
    db: Session,
    external_id: str,
    status: str,
    status_details: Optional[str] = None,
    webhook_data: Optional[str] = None
) -> NotificationDeliveryLog:
    """
    Apply a provider status report to the matching communication log.

    Transitions are applied in arrival order without a monotonic guard, so a
    late "Sent" overwrites an earlier "Delivered". Each report appends one
    NotificationDeliveryLog row.

    Raises:
        ValidationError: external_id or status is empty
        NotFoundError: no communication log carries external_id
    """
    if not external_id:
        raise ValidationError("external_id is required")
    if not status:
        raise ValidationError("status is required")

    logger.debug(f"Updating delivery status for external ID {external_id} to {status}")

    communication_log = repository.get_communication_log_by_external_id(db, external_id)
    if communication_log is None:
        raise NotFoundError(f"Communication with external ID {external_id} not found")

    now = utc_now()
    communication_log.delivery_status = status

    normalized = status.lower()
    if normalized == "delivered":
        communication_log.delivered_at = now
    elif normalized in ("read", "opened"):
        communication_log.read_at = now
        if communication_log.delivered_at is None:
            communication_log.delivered_at = now
    elif normalized in ("failed", "bounced") and status_details:
        communication_log.failure_reason = status_details

    delivery_log = repository.create_delivery_log(db, NotificationDeliveryLog(
        communication_log_id=communication_log.id,
        delivery_provider=determine_provider(external_id),
        external_id=external_id,
        status=status,
        status_details=status_details,
        webhook_data=webhook_data,
        updated_at=now,
    ))

    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error updating delivery status for external ID {external_id}: {e}")
        raise
    db.refresh(delivery_log)

    logger.info(f"Updated delivery status for {external_id}: {status}")
    return delivery_log


def search_communication_logs(db: Session, request: CommunicationAuditSearchRequest) -> CommunicationAuditResult:
    """
    Run a paginated search and summarize the returned page.

    The status/type summaries and date range cover the page only; total_count
    covers every matching row.
    """
    logs = repository.search_communication_logs(db, request)
    total_count = repository.count_communication_logs(db, request)

    status_summary = dict(Counter(log.delivery_status for log in logs))
    type_summary = dict(Counter(log.communication_type for log in logs))

    date_range = None
    if logs:
        earliest = min(log.sent_at for log in logs)
        latest = max(log.sent_at for log in logs)
        date_range = DateRangeSummary(
            earliest_date=earliest,
            latest_date=latest,
            days_spanned=(latest - earliest).days + 1,
        )

    logger.debug(f"Communication search returned {len(logs)} logs out of {total_count} total")

    return CommunicationAuditResult(
        logs=logs,
        total_count=total_count,
        page=request.page,
        page_size=request.page_size,
        has_next_page=request.page * request.page_size < total_count,
        status_summary=status_summary,
        type_summary=type_summary,
        date_range=date_range,
    )


def get_order_communication_history(
    db: Session,
    order_id: str,
    organization_id: Optional[str] = None
) -> list[CommunicationLog]:
    """
    All communications for an order, newest first.

    Args:
        organization_id: caller's organization; None for staff callers

    Raises:
        NotFoundError: the order does not exist
        AuthorizationError: the order belongs to another organization
    """
    order = db.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")

    if organization_id is not None and order.organization_id != organization_id:
        logger.warning(f"Organization {organization_id} denied access to order {order_id}")
        raise AuthorizationError(f"Access denied to order {order_id}")

    return repository.get_order_communication_history(db, order_id, include_delivery_logs=True)


def get_delivery_history(
    db: Session,
    communication_log_id: str,
    organization_id: Optional[str] = None
) -> list[NotificationDeliveryLog]:
    """
    Provider status reports for one communication, oldest first.

    Raises:
        NotFoundError: the communication log does not exist
        AuthorizationError: it belongs to another organization
    """
    communication_log = repository.get_communication_log_by_id(db, communication_log_id)
    if communication_log is None:
        raise NotFoundError(f"Communication {communication_log_id} not found")

    if organization_id is not None and communication_log.order.organization_id != organization_id:
        logger.warning(f"Organization {organization_id} denied access to communication {communication_log_id}")
        raise AuthorizationError(f"Access denied to communication {communication_log_id}")

    return repository.get_delivery_logs(db, communication_log_id)


def get_delivery_status_summary(
    db: Session,
    organization_id: str,
    date_from: datetime,
    date_to: datetime
) -> DeliveryStatusSummary:
    """Aggregate one organization's communications with date_from <= sent_at <= date_to."""
    logger.debug(f"Generating delivery status summary for organization {organization_id} from {date_from} to {date_to}")

    logs = repository.get_logs_for_summary(db, organization_id, date_from, date_to)
    total = len(logs)

    status_counts = dict(Counter(log.delivery_status for log in logs))
    type_counts = dict(Counter(log.communication_type for log in logs))
    delivered = sum(status_counts.get(s, 0) for s in DELIVERED_STATUSES)
    success_rate = round(delivered / total * 100, 2) if total else 0.0

    delivery_minutes = [
        (log.delivered_at - log.sent_at).total_seconds() / 60
        for log in logs
        if log.delivered_at is not None and log.delivered_at >= log.sent_at
    ]
    average_delivery = round(sum(delivery_minutes) / len(delivery_minutes), 2) if delivery_minutes else None

    daily = defaultdict(lambda: {"total": 0, "delivered": 0, "failed": 0})
    hourly = Counter()
    for log in logs:
        bucket = daily[log.sent_at.date().isoformat()]
        bucket["total"] += 1
        if log.delivery_status in DELIVERED_STATUSES:
            bucket["delivered"] += 1
        elif log.delivery_status in FAILED_STATUSES:
            bucket["failed"] += 1
        hourly[log.sent_at.hour] += 1

    daily_volume = [
        DailyCommunicationVolume(
            date=day,
            total_sent=counts["total"],
            delivered=counts["delivered"],
            failed=counts["failed"],
            delivery_rate=round(counts["delivered"] / counts["total"] * 100, 2),
        )
        for day, counts in sorted(daily.items())
    ]

    # Lowest hour wins a tie
    peak_hour = min(hourly, key=lambda h: (-hourly[h], h)) if hourly else None

    summary = DeliveryStatusSummary(
        organization_id=organization_id,
        date_from=date_from,
        date_to=date_to,
        total_communications=total,
        status_counts=status_counts,
        type_counts=type_counts,
        delivery_success_rate=success_rate,
        average_delivery_time_minutes=average_delivery,
        daily_volume=daily_volume,
        hourly_volume=dict(sorted(hourly.items())),
        peak_hour=peak_hour,
        top_failure_reasons=_top_failure_reasons(logs),
    )
    logger.debug(f"Generated summary for {total} communications")
    return summary


def _top_failure_reasons(logs: list[CommunicationLog]) -> list[FailureReasonSummary]:
    failed = [log for log in logs if log.delivery_status in FAILED_STATUSES and log.failure_reason]
    if not failed:
        return []

    counts = Counter(log.failure_reason for log in failed)
    last_seen = {}
    for log in failed:
        if log.failure_reason not in last_seen or log.sent_at > last_seen[log.failure_reason]:
            last_seen[log.failure_reason] = log.sent_at

    return [
        FailureReasonSummary(
            reason=reason,
            count=count,
            percentage=round(count / len(failed) * 100, 1),
            last_occurrence=last_seen[reason],
        )
        for reason, count in counts.most_common(TOP_FAILURE_REASONS)
    ]


# =============================================================================
# Message Audit Trail
# =============================================================================

def create_message_audit_trail(
    db: Session,
    message_id: str,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None
) -> MessageAuditTrail:
    """
    Return the audit trail for a message, creating it on first use.

    Calling this twice for the same message returns the same row.
    """
    existing = repository.get_message_audit_trail(db, message_id)
    if existing is not None:
        logger.debug(f"Message audit trail already exists for message {message_id}")
        return existing

    try:
        return repository.create_message_audit_trail(db, MessageAuditTrail(
            message_id=message_id,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=utc_now(),
        ))
    except IntegrityError:
        # Lost a race with a concurrent creator; the unique message_id row exists now
        existing = repository.get_message_audit_trail(db, message_id)
        if existing is None:
            raise
        logger.info(f"Duplicate audit trail creation detected for message {message_id}")
        return existing


def record_message_edit(
    db: Session,
    message_id: str,
    edited_by: str,
    previous_content: str,
    change_reason: Optional[str] = None
) -> MessageEdit:
    """Append an edit record, creating the message's audit trail if needed."""
    if not message_id or not edited_by:
        raise ValidationError("message_id and edited_by are required")

    audit_trail = create_message_audit_trail(db, message_id)
    edit = repository.create_message_edit(db, MessageEdit(
        message_audit_trail_id=audit_trail.id,
        edited_at=utc_now(),
        edited_by=edited_by,
        previous_content=previous_content,
        change_reason=change_reason,
    ))
    logger.info(f"Recorded message edit {edit.id} for message {message_id}")
    return edit


def get_message_edit_history(db: Session, message_id: str) -> list[MessageEdit]:
    return repository.get_message_edit_history(db, message_id)


def validate_audit_access(db: Session, user_id: str, organization_id: Optional[str] = None) -> bool:
    """
    Whether a user may read audit data of an organization.

    Staff may read everything; other users only their own organization.
    Returns False rather than raising so callers choose the response.
    """
    user = db.get(User, user_id) if user_id else None
    if user is None:
        logger.warning(f"User {user_id} not found for audit access validation")
        return False

    if user.is_staff:
        logger.debug(f"Staff user {user_id} granted full audit access")
        return True

    if organization_id is not None and user.organization_id == organization_id:
        return True

    logger.warning(f"User {user_id} denied audit access to organization {organization_id}")
    return False
