"""
Pydantic schemas for request/response validation.

This module contains:
- Search and export request models
- Response models for API responses
- Provider webhook payload models
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.utils import to_naive_utc


VALID_COMMUNICATION_TYPES = ("Email", "SMS", "Message", "SystemNotification")
VALID_DELIVERY_STATUSES = ("Sent", "Delivered", "Read", "Failed", "Bounced")
VALID_SORT_FIELDS = ("sentAt", "deliveredAt", "readAt", "createdAt")
MAX_DATE_RANGE_DAYS = 365


# =============================================================================
# Search Request Models
# =============================================================================

class CommunicationAuditSearchRequest(BaseModel):
    """
    Filters for searching communication logs.

    Every filter left unset is ignored. date_to is inclusive of the whole day.
    page_size is capped at 100 for API callers; exports raise it internally.
    """
    organization_id: Optional[str] = Field(None, description="Organization to search (forced for non-staff)")
    order_id: Optional[str] = Field(None, description="Restrict to one order")
    communication_type: Optional[list[str]] = Field(None, description="Email, SMS, Message, SystemNotification")
    sender_id: Optional[str] = None
    recipient_id: Optional[str] = None
    delivery_status: Optional[list[str]] = Field(None, description="Sent, Delivered, Read, Failed, Bounced")
    date_from: Optional[datetime] = Field(None, description="Inclusive lower bound on sent_at")
    date_to: Optional[datetime] = Field(None, description="Inclusive upper bound (whole day) on sent_at")
    search_term: Optional[str] = Field(
        None,
        max_length=200,
        description="Case-insensitive match against content, subject, recipient email and phone"
    )
    include_content: bool = Field(False, description="Include message content and delivery logs")
    page: int = Field(1, ge=1)
    page_size: int = Field(20, ge=1, le=100)
    sort_by: str = Field("sentAt", description="sentAt, deliveredAt, readAt or createdAt")
    sort_direction: str = Field("desc", description="asc or desc")

    @field_validator("date_from", "date_to")
    @classmethod
    def normalize_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v) if v is not None else None

    @model_validator(mode="after")
    def validate_filters(self):
        errors = []

        if self.date_from and self.date_to:
            if self.date_from > self.date_to:
                errors.append("date_from cannot be greater than date_to")
            elif (self.date_to - self.date_from).days > MAX_DATE_RANGE_DAYS:
                errors.append(f"Date range cannot exceed {MAX_DATE_RANGE_DAYS} days")

        if self.sort_by.lower() not in {f.lower() for f in VALID_SORT_FIELDS}:
            errors.append(f"Invalid sort field. Valid options: {', '.join(VALID_SORT_FIELDS)}")

        if self.sort_direction.lower() not in ("asc", "desc"):
            errors.append("Sort direction must be 'asc' or 'desc'")

        invalid_types = [t for t in self.communication_type or [] if t not in VALID_COMMUNICATION_TYPES]
        if invalid_types:
            errors.append(f"Invalid communication types: {', '.join(invalid_types)}")

        invalid_statuses = [s for s in self.delivery_status or [] if s not in VALID_DELIVERY_STATUSES]
        if invalid_statuses:
            errors.append(f"Invalid delivery statuses: {', '.join(invalid_statuses)}")

        if errors:
            raise ValueError("; ".join(errors))
        return self


class CommunicationLogCreate(BaseModel):
    """Payload used by the sending services to record a communication."""
    order_id: str = Field(..., min_length=1)
    communication_type: str
    sender_id: str = Field(..., min_length=1)
    recipient_id: Optional[str] = None
    recipient_email: Optional[str] = Field(None, max_length=255)
    recipient_phone: Optional[str] = Field(None, max_length=20)
    subject: Optional[str] = Field(None, max_length=200)
    content: str = Field("", max_length=10000)
    template_used: Optional[str] = Field(None, max_length=100)
    delivery_status: str = "Sent"
    external_message_id: Optional[str] = Field(None, max_length=255)
    sent_at: Optional[datetime] = None
    metadata: Optional[str] = None

    @field_validator("communication_type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in VALID_COMMUNICATION_TYPES:
            raise ValueError(f"communication_type must be one of {', '.join(VALID_COMMUNICATION_TYPES)}")
        return v

    @field_validator("delivery_status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        if v not in VALID_DELIVERY_STATUSES:
            raise ValueError(f"delivery_status must be one of {', '.join(VALID_DELIVERY_STATUSES)}")
        return v

    @field_validator("sent_at")
    @classmethod
    def normalize_sent_at(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v) if v is not None else None


class MessageEditRequest(BaseModel):
    previous_content: str = Field(..., max_length=5000)
    change_reason: Optional[str] = Field(None, max_length=500)


# =============================================================================
# Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class DeliveryLogResponse(BaseModel):
    id: str
    delivery_provider: str
    external_id: str
    status: str
    status_details: Optional[str] = None
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CommunicationLogResponse(BaseModel):
    """
    A single communication log row.

    content and delivery_logs are only populated when the caller asked for
    content; see CommunicationAuditSearchRequest.include_content.
    """
    id: str
    order_id: str
    communication_type: str
    sender_id: str
    recipient_id: Optional[str] = None
    recipient_email: Optional[str] = None
    recipient_phone: Optional[str] = None
    subject: Optional[str] = None
    content: Optional[str] = None
    template_used: Optional[str] = None
    delivery_status: str
    external_message_id: Optional[str] = None
    sent_at: datetime
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    metadata: Optional[str] = Field(None, validation_alias="metadata_json")
    created_at: datetime
    delivery_logs: Optional[list[DeliveryLogResponse]] = None

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    @classmethod
    def from_log(cls, log, include_content: bool = True) -> "CommunicationLogResponse":
        # delivery_logs is only touched when requested so it is never lazy-loaded per row
        return cls(
            id=log.id,
            order_id=log.order_id,
            communication_type=log.communication_type,
            sender_id=log.sender_id,
            recipient_id=log.recipient_id,
            recipient_email=log.recipient_email,
            recipient_phone=log.recipient_phone,
            subject=log.subject,
            content=log.content if include_content else None,
            template_used=log.template_used,
            delivery_status=log.delivery_status,
            external_message_id=log.external_message_id,
            sent_at=log.sent_at,
            delivered_at=log.delivered_at,
            read_at=log.read_at,
            failure_reason=log.failure_reason,
            metadata=log.metadata_json,
            created_at=log.created_at,
            delivery_logs=(
                [DeliveryLogResponse.model_validate(d) for d in log.delivery_logs]
                if include_content else None
            ),
        )


class DateRangeSummary(BaseModel):
    earliest_date: datetime
    latest_date: datetime
    days_spanned: int


class CommunicationAuditResultResponse(BaseModel):
    """
    Paginated search result.

    status_summary, type_summary and date_range describe the returned page,
    not the whole match set.
    """
    logs: list[CommunicationLogResponse] = Field(default_factory=list)
    total_count: int = Field(..., ge=0)
    page: int
    page_size: int
    has_next_page: bool
    has_previous_page: bool
    total_pages: int
    status_summary: dict[str, int] = Field(default_factory=dict)
    type_summary: dict[str, int] = Field(default_factory=dict)
    date_range: Optional[DateRangeSummary] = None


class DailyCommunicationVolume(BaseModel):
    date: str
    total_sent: int
    delivered: int
    failed: int
    delivery_rate: float


class FailureReasonSummary(BaseModel):
    reason: str
    count: int
    percentage: float
    last_occurrence: datetime


class DeliveryStatusSummary(BaseModel):
    """Aggregate counts for one organization over a closed date window."""
    organization_id: str
    date_from: datetime
    date_to: datetime
    total_communications: int
    status_counts: dict[str, int] = Field(default_factory=dict)
    type_counts: dict[str, int] = Field(default_factory=dict)
    delivery_success_rate: float
    average_delivery_time_minutes: Optional[float] = None
    daily_volume: list[DailyCommunicationVolume] = Field(default_factory=list)
    hourly_volume: dict[int, int] = Field(default_factory=dict)
    peak_hour: Optional[int] = None
    top_failure_reasons: list[FailureReasonSummary] = Field(default_factory=list)


class MessageEditResponse(BaseModel):
    id: str
    message_audit_trail_id: str
    edited_at: datetime
    edited_by: str
    editor_name: Optional[str] = None
    previous_content: str
    change_reason: Optional[str] = None

    @classmethod
    def from_edit(cls, edit) -> "MessageEditResponse":
        return cls(
            id=edit.id,
            message_audit_trail_id=edit.message_audit_trail_id,
            edited_at=edit.edited_at,
            edited_by=edit.edited_by,
            editor_name=edit.editor.name if edit.editor else None,
            previous_content=edit.previous_content,
            change_reason=edit.change_reason,
        )


# =============================================================================
# Export Models
# =============================================================================

class ExportCommunicationRequest(BaseModel):
    """Export of a search result set to CSV or Excel."""
    search_criteria: CommunicationAuditSearchRequest = Field(default_factory=CommunicationAuditSearchRequest)
    include_content: bool = Field(False, description="Add Content and Template Used columns")
    include_metadata: bool = Field(False, description="Add the Metadata column")
    max_records: int = Field(10000, ge=1, le=100000)
    custom_filename: Optional[str] = Field(None, max_length=100, pattern=r"^[\w\-. ]+$")
    date_format: Optional[str] = Field(None, description="strftime format; ISO-8601 when omitted")
    description: Optional[str] = Field(None, max_length=500)


class ComplianceReportRequest(BaseModel):
    organization_id: Optional[str] = Field(None, description="Defaults to the caller's organization")
    date_from: datetime
    date_to: datetime
    include_detailed_logs: bool = False
    include_failure_analysis: bool = True
    report_title: Optional[str] = Field(None, max_length=200)

    @field_validator("date_from", "date_to")
    @classmethod
    def normalize_utc(cls, v: datetime) -> datetime:
        return to_naive_utc(v)

    @model_validator(mode="after")
    def validate_period(self):
        if self.date_from >= self.date_to:
            raise ValueError("Invalid date range: date_from must be before date_to")
        if (self.date_to - self.date_from).days > MAX_DATE_RANGE_DAYS:
            raise ValueError(f"Date range cannot exceed {MAX_DATE_RANGE_DAYS} days")
        return self


class ExportJobResponse(BaseModel):
    """Status of a background export job."""
    job_id: str
    status: str
    format: str
    record_count: int
    estimated_size: int
    file_size: Optional[int] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    expires_at: datetime
    download_url: Optional[str] = None
    error_message: Optional[str] = None


class ExportEstimateResponse(BaseModel):
    estimated_records: int
    estimated_size_kb: int
    recommended_format: str
    requires_async_processing: bool
    estimated_processing_minutes: int


class CleanupResponse(BaseModel):
    removed: int


# =============================================================================
# Provider Webhook Models
# =============================================================================

class SendGridEvent(BaseModel):
    """One entry of a SendGrid event webhook batch."""
    event: str
    sg_message_id: Optional[str] = None
    email: Optional[str] = None
    timestamp: Optional[int] = None
    reason: Optional[str] = None
    response: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class TwilioStatusCallback(BaseModel):
    """Twilio SMS status callback (form-encoded)."""
    MessageSid: str = Field(..., min_length=1)
    MessageStatus: str
    To: Optional[str] = None
    From: Optional[str] = None
    ErrorCode: Optional[str] = None
    ErrorMessage: Optional[str] = None


class WebhookResponse(BaseModel):
    """Response model for processed provider webhooks."""
    status: str = Field(default="ok", description="Operation status")
    processed: int = 0
    unknown: int = 0
