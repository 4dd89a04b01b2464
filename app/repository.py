"""
Data access for the communication audit trail.

Every function takes the request's Session. SQLAlchemy errors are logged, the
session is rolled back and the error is re-raised; retries belong to callers.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query, Session, joinedload, selectinload

from app.models import (
    CommunicationLog,
    MessageAuditTrail,
    MessageEdit,
    NotificationDeliveryLog,
    Order,
)
from app.schemas import CommunicationAuditSearchRequest

logger = logging.getLogger(__name__)


SORT_COLUMNS = {
    "sentat": CommunicationLog.sent_at,
    "deliveredat": CommunicationLog.delivered_at,
    "readat": CommunicationLog.read_at,
    "createdat": CommunicationLog.created_at,
}


def _apply_filters(query: Query, request: CommunicationAuditSearchRequest) -> Query:
    """Apply the conjunctive filter set shared by search and count."""
    if request.organization_id:
        query = query.join(Order, CommunicationLog.order_id == Order.id).filter(
            Order.organization_id == request.organization_id
        )

    if request.order_id:
        query = query.filter(CommunicationLog.order_id == request.order_id)

    if request.communication_type:
        query = query.filter(CommunicationLog.communication_type.in_(request.communication_type))

    if request.sender_id:
        query = query.filter(CommunicationLog.sender_id == request.sender_id)

    if request.recipient_id:
        query = query.filter(CommunicationLog.recipient_id == request.recipient_id)

    if request.delivery_status:
        query = query.filter(CommunicationLog.delivery_status.in_(request.delivery_status))

    if request.date_from:
        query = query.filter(CommunicationLog.sent_at >= request.date_from)

    if request.date_to:
        # Include the entire end day
        end = datetime.combine(request.date_to.date(), datetime.min.time()) + timedelta(days=1)
        query = query.filter(CommunicationLog.sent_at < end)

    if request.search_term and request.search_term.strip():
        pattern = f"%{request.search_term.strip()}%"
        query = query.filter(or_(
            CommunicationLog.content.ilike(pattern),
            CommunicationLog.subject.ilike(pattern),
            CommunicationLog.recipient_email.ilike(pattern),
            CommunicationLog.recipient_phone.ilike(pattern),
        ))

    return query


def search_communication_logs(db: Session, request: CommunicationAuditSearchRequest) -> list[CommunicationLog]:
    """
    Retrieve one page of communication logs matching the request.

    Returns:
        Logs ordered by the requested column (sent_at descending by default),
        with id as a deterministic tie-breaker.
    """
    logger.debug(
        f"Searching communication logs: term={request.search_term!r}, "
        f"page={request.page}, page_size={request.page_size}"
    )
    try:
        query = _apply_filters(db.query(CommunicationLog), request)

        if request.include_content:
            query = query.options(selectinload(CommunicationLog.delivery_logs))

        column = SORT_COLUMNS.get(request.sort_by.lower(), CommunicationLog.sent_at)
        if request.sort_direction.lower() == "asc":
            query = query.order_by(column.asc(), CommunicationLog.id.asc())
        else:
            query = query.order_by(column.desc(), CommunicationLog.id.desc())

        logs = query.offset((request.page - 1) * request.page_size).limit(request.page_size).all()
        logger.debug(f"Found {len(logs)} communication logs matching search criteria")
        return logs
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error searching communication logs: {e}")
        raise


def count_communication_logs(db: Session, request: CommunicationAuditSearchRequest) -> int:
    """Count logs matching the same predicates as search_communication_logs."""
    try:
        count = _apply_filters(db.query(func.count(CommunicationLog.id)), request).scalar() or 0
        logger.debug(f"Found {count} total communication logs matching criteria")
        return count
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error counting communication logs: {e}")
        raise


def create_communication_log(db: Session, log: CommunicationLog) -> CommunicationLog:
    logger.debug(f"Creating communication log for order {log.order_id}, type {log.communication_type}")
    try:
        db.add(log)
        db.commit()
        db.refresh(log)
        logger.info(f"Created communication log {log.id} for order {log.order_id}")
        return log
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating communication log for order {log.order_id}: {e}")
        raise


def get_communication_log_by_id(db: Session, log_id: str) -> Optional[CommunicationLog]:
    log = (
        db.query(CommunicationLog)
        .options(selectinload(CommunicationLog.delivery_logs))
        .filter(CommunicationLog.id == log_id)
        .first()
    )
    if log is None:
        logger.warning(f"Communication log {log_id} not found")
    return log


def get_communication_log_by_external_id(db: Session, external_message_id: str) -> Optional[CommunicationLog]:
    """Correlate a provider webhook with the log row it reports on."""
    logger.debug(f"Retrieving communication log by external ID {external_message_id}")
    log = (
        db.query(CommunicationLog)
        .filter(CommunicationLog.external_message_id == external_message_id)
        .first()
    )
    if log is None:
        logger.warning(f"Communication log with external ID {external_message_id} not found")
    return log


def get_order_communication_history(
    db: Session,
    order_id: str,
    include_delivery_logs: bool = True
) -> list[CommunicationLog]:
    """All communications for one order, newest first."""
    logger.debug(f"Retrieving communication history for order {order_id}")
    query = db.query(CommunicationLog).filter(CommunicationLog.order_id == order_id)
    if include_delivery_logs:
        query = query.options(selectinload(CommunicationLog.delivery_logs))
    logs = query.order_by(CommunicationLog.sent_at.desc(), CommunicationLog.id.desc()).all()
    logger.debug(f"Retrieved {len(logs)} communication logs for order {order_id}")
    return logs


def get_logs_for_summary(
    db: Session,
    organization_id: str,
    date_from: datetime,
    date_to: datetime
) -> list[CommunicationLog]:
    """Logs of one organization with date_from <= sent_at <= date_to."""
    return (
        db.query(CommunicationLog)
        .join(Order, CommunicationLog.order_id == Order.id)
        .filter(
            Order.organization_id == organization_id,
            CommunicationLog.sent_at >= date_from,
            CommunicationLog.sent_at <= date_to,
        )
        .all()
    )


# =============================================================================
# Delivery Log Functions
# =============================================================================

def create_delivery_log(db: Session, delivery_log: NotificationDeliveryLog) -> NotificationDeliveryLog:
    """Stage a delivery log; the caller commits it with the parent update."""
    logger.debug(
        f"Creating delivery log for communication {delivery_log.communication_log_id}, "
        f"provider {delivery_log.delivery_provider}"
    )
    db.add(delivery_log)
    return delivery_log


def get_delivery_logs(db: Session, communication_log_id: str) -> list[NotificationDeliveryLog]:
    return (
        db.query(NotificationDeliveryLog)
        .filter(NotificationDeliveryLog.communication_log_id == communication_log_id)
        .order_by(NotificationDeliveryLog.updated_at.asc(), NotificationDeliveryLog.id.asc())
        .all()
    )


# =============================================================================
# Message Audit Trail Functions
# =============================================================================

def get_message_audit_trail(db: Session, message_id: str) -> Optional[MessageAuditTrail]:
    return db.query(MessageAuditTrail).filter(MessageAuditTrail.message_id == message_id).first()


def create_message_audit_trail(db: Session, audit_trail: MessageAuditTrail) -> MessageAuditTrail:
    """
    Insert an audit trail row.

    Raises IntegrityError when a trail already exists for the message; the
    service turns that into a read of the existing row.
    """
    logger.debug(f"Creating message audit trail for message {audit_trail.message_id}")
    try:
        db.add(audit_trail)
        db.commit()
        db.refresh(audit_trail)
        logger.info(f"Created message audit trail {audit_trail.id} for message {audit_trail.message_id}")
        return audit_trail
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating message audit trail for message {audit_trail.message_id}: {e}")
        raise


def create_message_edit(db: Session, message_edit: MessageEdit) -> MessageEdit:
    try:
        db.add(message_edit)
        db.commit()
        db.refresh(message_edit)
        logger.info(f"Created message edit {message_edit.id} for audit trail {message_edit.message_audit_trail_id}")
        return message_edit
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating message edit for audit trail {message_edit.message_audit_trail_id}: {e}")
        raise


def get_message_edit_history(db: Session, message_id: str) -> list[MessageEdit]:
    """Edits of one message in chronological order, editor eagerly loaded."""
    edits = (
        db.query(MessageEdit)
        .join(MessageAuditTrail, MessageEdit.message_audit_trail_id == MessageAuditTrail.id)
        .options(joinedload(MessageEdit.editor))
        .filter(MessageAuditTrail.message_id == message_id)
        .order_by(MessageEdit.edited_at.asc(), MessageEdit.id.asc())
        .all()
    )
    logger.debug(f"Retrieved {len(edits)} message edits for message {message_id}")
    return edits
