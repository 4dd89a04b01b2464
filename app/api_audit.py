"""
Communication audit routes: search, order history, delivery summaries,
message edit trails and provider delivery-status webhooks.
"""

import json
import logging
from datetime import datetime
from typing import Annotated, Optional
from urllib.parse import parse_qs

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from app import audit_service
from app.auth import CurrentUser, get_current_user, require_staff
from app.config import settings
from app.errors import AuthorizationError, NotFoundError, ValidationError
from app.logging_utils import log_webhook_data
from app.metrics import record_webhook_outcome
from app.models import CommunicationLog, Message
from app.schemas import (
    CommunicationAuditResultResponse,
    CommunicationAuditSearchRequest,
    CommunicationLogCreate,
    CommunicationLogResponse,
    DeliveryLogResponse,
    DeliveryStatusSummary,
    ErrorResponse,
    MessageEditRequest,
    MessageEditResponse,
    SendGridEvent,
    TwilioStatusCallback,
    WebhookResponse,
)
from app.storage import get_db
from app.utils import map_sendgrid_event, map_twilio_status, to_naive_utc, verify_hmac_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/communication-audit", tags=["communication-audit"])

_sendgrid_events = TypeAdapter(list[SendGridEvent])


# =============================================================================
# Search & History
# =============================================================================

@router.post("/logs", response_model=CommunicationAuditResultResponse)
def search_logs(
    request: CommunicationAuditSearchRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> CommunicationAuditResultResponse:
    """
    Search communication logs with filtering and pagination.

    Non-staff callers are restricted to their own organization; naming
    another organization is rejected with 403.
    """
    scoped = request.model_copy(update={"organization_id": user.scope_organization(request.organization_id)})
    logger.info(f"Searching communication logs for user {user.user_id}, organization {scoped.organization_id}")

    result = audit_service.search_communication_logs(db, scoped)

    return CommunicationAuditResultResponse(
        logs=[CommunicationLogResponse.from_log(log, scoped.include_content) for log in result.logs],
        total_count=result.total_count,
        page=result.page,
        page_size=result.page_size,
        has_next_page=result.has_next_page,
        has_previous_page=result.has_previous_page,
        total_pages=result.total_pages,
        status_summary=result.status_summary,
        type_summary=result.type_summary,
        date_range=result.date_range,
    )


@router.post(
    "/communications",
    response_model=CommunicationLogResponse,
    status_code=status.HTTP_201_CREATED,
)
def log_communication(
    payload: CommunicationLogCreate,
    user: CurrentUser = Depends(require_staff),
    db: Session = Depends(get_db)
) -> CommunicationLogResponse:
    """Record an outbound communication. Called by the sending services."""
    log = CommunicationLog(
        order_id=payload.order_id,
        communication_type=payload.communication_type,
        sender_id=payload.sender_id,
        recipient_id=payload.recipient_id,
        recipient_email=payload.recipient_email,
        recipient_phone=payload.recipient_phone,
        subject=payload.subject,
        content=payload.content,
        template_used=payload.template_used,
        delivery_status=payload.delivery_status,
        external_message_id=payload.external_message_id,
        sent_at=payload.sent_at,
        metadata_json=payload.metadata,
    )
    saved = audit_service.log_communication(db, log)
    return CommunicationLogResponse.from_log(saved, include_content=True)


@router.get("/orders/{order_id}", response_model=list[CommunicationLogResponse])
def get_order_history(
    order_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> list[CommunicationLogResponse]:
    """Complete communication history of an order, newest first."""
    organization_id = user.scope_organization(None)
    logs = audit_service.get_order_communication_history(db, order_id, organization_id)
    logger.info(f"Retrieved {len(logs)} communications for order {order_id}")
    return [CommunicationLogResponse.from_log(log, include_content=True) for log in logs]


@router.get("/communications/{communication_id}/delivery-logs", response_model=list[DeliveryLogResponse])
def get_delivery_history(
    communication_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> list[DeliveryLogResponse]:
    """Every provider status report received for one communication."""
    delivery_logs = audit_service.get_delivery_history(db, communication_id, user.scope_organization(None))
    return [DeliveryLogResponse.model_validate(delivery_log) for delivery_log in delivery_logs]


@router.get("/delivery-summary", response_model=DeliveryStatusSummary)
def get_delivery_summary(
    date_from: Annotated[datetime, Query(alias="from")],
    date_to: Annotated[datetime, Query(alias="to")],
    organization_id: Annotated[Optional[str], Query(alias="organizationId")] = None,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> DeliveryStatusSummary:
    """Delivery statistics of one organization for from <= sent_at <= to."""
    organization_id = user.scope_organization(organization_id)
    if not organization_id:
        raise ValidationError("organizationId is required")

    date_from, date_to = to_naive_utc(date_from), to_naive_utc(date_to)
    if date_from >= date_to:
        raise ValidationError("Invalid date range: from must be before to")

    if not audit_service.validate_audit_access(db, user.user_id, organization_id):
        raise AuthorizationError(f"Access denied to organization {organization_id}")

    return audit_service.get_delivery_status_summary(db, organization_id, date_from, date_to)


# =============================================================================
# Message Audit Trail
# =============================================================================

def _get_accessible_message(db: Session, message_id: str, user: CurrentUser) -> Message:
    message = db.get(Message, message_id)
    if message is None:
        raise NotFoundError(f"Message {message_id} not found")
    if not user.is_staff and message.order.organization_id != user.scope_organization(None):
        raise AuthorizationError(f"Access denied to message {message_id}")
    return message


@router.get("/messages/{message_id}/edit-history", response_model=list[MessageEditResponse])
def get_message_edit_history(
    message_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> list[MessageEditResponse]:
    _get_accessible_message(db, message_id, user)
    return [MessageEditResponse.from_edit(edit) for edit in audit_service.get_message_edit_history(db, message_id)]


@router.post(
    "/messages/{message_id}/edits",
    response_model=MessageEditResponse,
    status_code=status.HTTP_201_CREATED,
)
def record_message_edit(
    message_id: str,
    payload: MessageEditRequest,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> MessageEditResponse:
    """Append an edit to the message's audit trail, opening the trail on first edit."""
    _get_accessible_message(db, message_id, user)
    audit_service.create_message_audit_trail(
        db,
        message_id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    edit = audit_service.record_message_edit(
        db,
        message_id,
        edited_by=user.user_id,
        previous_content=payload.previous_content,
        change_reason=payload.change_reason,
    )
    return MessageEditResponse.from_edit(edit)


# =============================================================================
# Provider Webhooks
# =============================================================================

def _verify_webhook_signature(request: Request, provider: str, raw_body: bytes, signature: Optional[str]):
    if signature and verify_hmac_signature(raw_body, signature, settings.WEBHOOK_SECRET):
        return
    logger.error(f"Invalid {provider} webhook signature")
    record_webhook_outcome(provider, "invalid_signature")
    log_webhook_data(request=request, provider=provider, result="invalid_signature")
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="invalid signature"
    )


@router.post(
    "/webhooks/sendgrid",
    response_model=WebhookResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        422: {"description": "Validation error"},
    }
)
async def sendgrid_webhook(
    request: Request,
    x_signature: Annotated[Optional[str], Header(alias="X-Signature")] = None,
    db: Session = Depends(get_db)
) -> WebhookResponse:
    """
    Apply a batch of SendGrid email events.

    Events naming an unknown sg_message_id are skipped and counted as
    unknown; the rest of the batch is still applied.
    """
    provider = "SendGrid"
    raw_body = await request.body()
    _verify_webhook_signature(request, provider, raw_body, x_signature)

    try:
        events = _sendgrid_events.validate_python(json.loads(raw_body))
    except (UnicodeDecodeError, json.JSONDecodeError, PydanticValidationError) as e:
        logger.error(f"Invalid SendGrid payload: {e}")
        record_webhook_outcome(provider, "validation_error")
        log_webhook_data(request=request, provider=provider, result="validation_error")
        raise ValidationError(f"Invalid SendGrid payload: {e}") from e

    processed = unknown = 0
    for event in events:
        if not event.sg_message_id:
            logger.warning(f"SendGrid {event.event} event without sg_message_id skipped")
            unknown += 1
            continue
        try:
            audit_service.update_delivery_status(
                db,
                event.sg_message_id,
                map_sendgrid_event(event.event),
                status_details=event.reason or event.response,
                webhook_data=event.model_dump_json(),
            )
            processed += 1
        except NotFoundError:
            logger.warning(f"SendGrid event for unknown message {event.sg_message_id} skipped")
            unknown += 1

    logger.info(f"Processed {processed} SendGrid events, {unknown} unknown")
    record_webhook_outcome(provider, "applied", processed)
    if unknown:
        record_webhook_outcome(provider, "unknown", unknown)
    log_webhook_data(
        request=request,
        provider=provider,
        result="applied" if processed else "unknown",
        events=len(events),
    )
    return WebhookResponse(processed=processed, unknown=unknown)


@router.post(
    "/webhooks/twilio",
    response_model=WebhookResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        404: {"model": ErrorResponse, "description": "Unknown MessageSid"},
        422: {"description": "Validation error"},
    }
)
async def twilio_webhook(
    request: Request,
    x_signature: Annotated[Optional[str], Header(alias="X-Signature")] = None,
    db: Session = Depends(get_db)
) -> WebhookResponse:
    """Apply one Twilio SMS status callback (application/x-www-form-urlencoded)."""
    provider = "Twilio"
    raw_body = await request.body()
    _verify_webhook_signature(request, provider, raw_body, x_signature)

    try:
        form = {
            key: values[-1]
            for key, values in parse_qs(raw_body.decode("utf-8"), errors="strict").items()
        }
        callback = TwilioStatusCallback.model_validate(form)
    except (UnicodeDecodeError, PydanticValidationError) as e:
        logger.error(f"Invalid Twilio payload: {e}")
        record_webhook_outcome(provider, "validation_error")
        log_webhook_data(request=request, provider=provider, result="validation_error")
        raise ValidationError(f"Invalid Twilio payload: {e}") from e

    details = None
    if callback.ErrorCode or callback.ErrorMessage:
        details = f"Error {callback.ErrorCode}: {callback.ErrorMessage or ''}".strip()

    try:
        audit_service.update_delivery_status(
            db,
            callback.MessageSid,
            map_twilio_status(callback.MessageStatus),
            status_details=details,
            webhook_data=json.dumps(form),
        )
    except NotFoundError:
        record_webhook_outcome(provider, "unknown")
        log_webhook_data(request=request, provider=provider, result="unknown", external_id=callback.MessageSid)
        raise

    logger.info(f"Processed Twilio webhook event for MessageSid: {callback.MessageSid}")
    record_webhook_outcome(provider, "applied")
    log_webhook_data(request=request, provider=provider, result="applied", external_id=callback.MessageSid)
    return WebhookResponse(processed=1)
