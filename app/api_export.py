"""
Communication export routes.

CSV and Excel exports answer with the file itself (200) when small and with
an export job (202) otherwise; clients branch on the Content-Type.
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.auth import CurrentUser, get_current_user, require_staff
from app.config import settings
from app.errors import NotFoundError, ValidationError
from app.export_service import CommunicationExportService, ExportFile, ExportJob
from app.exporters import ExportFormat
from app.logging_utils import annotate_request_log
from app.schemas import (
    CleanupResponse,
    CommunicationAuditSearchRequest,
    ComplianceReportRequest,
    ErrorResponse,
    ExportCommunicationRequest,
    ExportEstimateResponse,
    ExportJobResponse,
)
from app.storage import get_db
from app.utils import utc_now

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/communication-export", tags=["communication-export"])

EXPORT_RESPONSES = {
    200: {"description": "Export file", "content": {
        "text/csv": {},
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": {},
    }},
    202: {"model": ExportJobResponse, "description": "Export queued as a background job"},
    403: {"model": ErrorResponse},
}


def get_export_service(request: Request) -> CommunicationExportService:
    return request.app.state.export_service


def _file_response(export_file: ExportFile) -> Response:
    return Response(
        content=export_file.data,
        media_type=export_file.content_type,
        headers={"Content-Disposition": f'attachment; filename="{export_file.file_name}"'},
    )


def _job_response(job: ExportJob) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=job.to_response().model_dump(mode="json"),
    )


def _scope_request(request: ExportCommunicationRequest, user: CurrentUser) -> ExportCommunicationRequest:
    criteria = request.search_criteria.model_copy(
        update={"organization_id": user.scope_organization(request.search_criteria.organization_id)}
    )
    return request.model_copy(update={
        "search_criteria": criteria,
        "max_records": min(request.max_records, settings.EXPORT_MAX_RECORDS),
    })


def _get_visible_job(service: CommunicationExportService, job_id: str, user: CurrentUser) -> ExportJob:
    job = service.get_export_status(job_id)
    # Jobs of other organizations are reported as missing
    if job is None or (not user.is_staff and job.organization_id != user.organization_id):
        raise NotFoundError(f"Export job {job_id} not found")
    return job


def _export(
    http_request: Request,
    format: ExportFormat,
    request: ExportCommunicationRequest,
    background_tasks: BackgroundTasks,
    user: CurrentUser,
    db: Session,
    service: CommunicationExportService
) -> Response:
    scoped = _scope_request(request, user)
    logger.info(f"{format.label} export requested by user {user.user_id}, organization {scoped.search_criteria.organization_id}")

    result = service.start_export(db, scoped, format, initiated_by=user.user_id)
    annotate_request_log(
        http_request,
        export_format=format.value,
        export_mode="async" if result.is_async else "sync",
        job_id=result.job.job_id if result.is_async else None,
    )
    if result.is_async:
        background_tasks.add_task(service.run_export_job, result.job.job_id)
        return _job_response(result.job)
    return _file_response(result.file)


@router.post("/csv", responses=EXPORT_RESPONSES)
def export_csv(
    http_request: Request,
    request: ExportCommunicationRequest,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    service: CommunicationExportService = Depends(get_export_service)
) -> Response:
    return _export(http_request, ExportFormat.CSV, request, background_tasks, user, db, service)


@router.post("/excel", responses=EXPORT_RESPONSES)
def export_excel(
    http_request: Request,
    request: ExportCommunicationRequest,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    service: CommunicationExportService = Depends(get_export_service)
) -> Response:
    return _export(http_request, ExportFormat.EXCEL, request, background_tasks, user, db, service)


@router.post(
    "/compliance-report",
    responses={200: {"description": "PDF report", "content": {"application/pdf": {}}}},
)
def generate_compliance_report(
    request: ComplianceReportRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    service: CommunicationExportService = Depends(get_export_service)
) -> Response:
    """PDF compliance report for one organization; always rendered inline."""
    organization_id = user.scope_organization(request.organization_id)
    if not organization_id:
        raise ValidationError("organization_id is required")

    data = service.generate_compliance_pdf(db, request, organization_id)
    return _file_response(ExportFile(
        file_name=f"compliance-report-{utc_now():%Y%m%d-%H%M%S}.{ExportFormat.PDF.extension}",
        content_type=ExportFormat.PDF.content_type,
        data=data,
    ))


@router.post("/estimate", response_model=ExportEstimateResponse)
def estimate_export(
    criteria: CommunicationAuditSearchRequest,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    service: CommunicationExportService = Depends(get_export_service)
) -> ExportEstimateResponse:
    scoped = criteria.model_copy(update={"organization_id": user.scope_organization(criteria.organization_id)})
    return service.estimate_export(db, scoped)


@router.post(
    "/queue/{format}",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=ExportJobResponse,
)
def queue_export(
    http_request: Request,
    format: ExportFormat,
    request: ExportCommunicationRequest,
    background_tasks: BackgroundTasks,
    user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    service: CommunicationExportService = Depends(get_export_service)
) -> ExportJobResponse:
    """Queue an export regardless of its size."""
    job = service.queue_export(db, _scope_request(request, user), format, initiated_by=user.user_id)
    annotate_request_log(http_request, export_format=format.value, export_mode="async", job_id=job.job_id)
    background_tasks.add_task(service.run_export_job, job.job_id)
    return job.to_response()


@router.get(
    "/jobs/{job_id}/status",
    response_model=ExportJobResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_export_status(
    job_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: CommunicationExportService = Depends(get_export_service)
) -> ExportJobResponse:
    return _get_visible_job(service, job_id, user).to_response()


@router.get(
    "/jobs/{job_id}/download",
    responses={404: {"model": ErrorResponse}},
)
def download_export(
    job_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: CommunicationExportService = Depends(get_export_service)
) -> Response:
    _get_visible_job(service, job_id, user)
    export_file = service.get_export_file(job_id)
    if export_file is None:
        raise NotFoundError(f"Export file for job {job_id} not found or not ready")
    return _file_response(export_file)


@router.post("/jobs/cleanup", response_model=CleanupResponse)
def cleanup_exports(
    user: CurrentUser = Depends(require_staff),
    service: CommunicationExportService = Depends(get_export_service)
) -> CleanupResponse:
    return CleanupResponse(removed=service.cleanup_expired_exports())
