"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.

Organizations, users, orders and messages are owned by the wider portal; only
the columns the audit subsystem reads are mapped here.
"""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import relationship

from app.storage import Base
from app.utils import utc_now

STAFF_ROLE = "ColorGarbStaff"


def new_id() -> str:
    return str(uuid.uuid4())


class Organization(Base):
    __tablename__ = "organizations"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(200), nullable=False)


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(200), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    role = Column(String(50), nullable=False)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=True, index=True)

    @property
    def is_staff(self) -> bool:
        return self.role == STAFF_ROLE


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=new_id)
    order_number = Column(String(50), nullable=False)
    description = Column(String(500), nullable=True)
    organization_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)

    organization = relationship("Organization")


class Message(Base):
    """Order-thread message. Current content lives here; prior versions in MessageEdit."""
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    sender_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    order = relationship("Order")


class CommunicationLog(Base):
    """
    One row per outbound/inbound communication event.

    Table: communication_logs
    Rows are compliance records and are never deleted. external_message_id
    correlates provider webhooks with the row to update.
    """
    __tablename__ = "communication_logs"

    id = Column(String(36), primary_key=True, default=new_id)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    communication_type = Column(String(50), nullable=False, index=True)  # Email, SMS, Message, SystemNotification
    sender_id = Column(String(36), nullable=False, index=True)
    recipient_id = Column(String(36), nullable=True, index=True)
    recipient_email = Column(String(255), nullable=True)
    recipient_phone = Column(String(20), nullable=True)
    subject = Column(String(200), nullable=True)
    content = Column(Text, nullable=False, default="")
    template_used = Column(String(100), nullable=True)
    delivery_status = Column(String(20), nullable=False, default="Sent", index=True)  # Sent, Delivered, Read, Failed, Bounced
    external_message_id = Column(String(255), nullable=True, unique=True)
    sent_at = Column(DateTime, nullable=False, default=utc_now, index=True)
    delivered_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)
    failure_reason = Column(String(500), nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_json = Column("metadata", Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    order = relationship("Order")
    delivery_logs = relationship(
        "NotificationDeliveryLog",
        back_populates="communication_log",
        order_by="NotificationDeliveryLog.updated_at",
    )


class NotificationDeliveryLog(Base):
    """Provider-reported status transition, appended per webhook."""
    __tablename__ = "notification_delivery_logs"

    id = Column(String(36), primary_key=True, default=new_id)
    communication_log_id = Column(String(36), ForeignKey("communication_logs.id"), nullable=False, index=True)
    delivery_provider = Column(String(50), nullable=False)  # SendGrid, Twilio, Internal, Unknown
    external_id = Column(String(255), nullable=False, index=True)
    status = Column(String(50), nullable=False)
    status_details = Column(String(500), nullable=True)
    webhook_data = Column(Text, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utc_now)

    communication_log = relationship("CommunicationLog", back_populates="delivery_logs")


class MessageAuditTrail(Base):
    __tablename__ = "message_audit_trails"

    id = Column(String(36), primary_key=True, default=new_id)
    message_id = Column(String(36), ForeignKey("messages.id"), nullable=False, unique=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    edits = relationship("MessageEdit", back_populates="audit_trail", order_by="MessageEdit.edited_at")


class MessageEdit(Base):
    """Append-only; previous_content is the text before the edit."""
    __tablename__ = "message_edits"

    id = Column(String(36), primary_key=True, default=new_id)
    message_audit_trail_id = Column(String(36), ForeignKey("message_audit_trails.id"), nullable=False, index=True)
    edited_at = Column(DateTime, nullable=False, default=utc_now)
    edited_by = Column(String(36), ForeignKey("users.id"), nullable=False)
    previous_content = Column(Text, nullable=False)
    change_reason = Column(String(500), nullable=True)

    audit_trail = relationship("MessageAuditTrail", back_populates="edits")
    editor = relationship("User")
