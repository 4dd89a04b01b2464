"""
Communication export orchestration.

Every export goes estimate -> decide -> render. Small result sets are rendered
inline and returned as bytes; large ones become an ExportJob that is rendered
in the background and polled through the job store.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app import audit_service
from app.config import Settings, get_settings
from app.errors import ExportError, ValidationError
from app.exporters import RENDERERS, ExportContent, ExportFormat, ExportOptions, build_columns
from app.metrics import record_export_job, record_export_request, set_stored_export_jobs, time_export_render
from app.models import CommunicationLog, Organization
from app.schemas import (
    CommunicationAuditSearchRequest,
    ComplianceReportRequest,
    DeliveryStatusSummary,
    ExportCommunicationRequest,
    ExportEstimateResponse,
    ExportJobResponse,
)
from app.storage import SessionLocal
from app.utils import end_of_day, utc_now

logger = logging.getLogger(__name__)

STATUS_PROCESSING = "Processing"
STATUS_COMPLETED = "Completed"
STATUS_FAILED = "Failed"

# Bytes per exported row, used for job size estimates
ESTIMATED_BYTES_PER_RECORD = 200
SUMMARY_DEFAULT_DAYS = 30


@dataclass
class ExportJob:
    job_id: str
    format: ExportFormat
    request: ExportCommunicationRequest
    record_count: int
    estimated_size: int
    created_at: datetime
    expires_at: datetime
    status: str = STATUS_PROCESSING
    initiated_by: Optional[str] = None
    organization_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    data: Optional[bytes] = None
    error_message: Optional[str] = None

    def to_response(self) -> ExportJobResponse:
        return ExportJobResponse(
            job_id=self.job_id,
            status=self.status,
            format=self.format.value,
            record_count=self.record_count,
            estimated_size=self.estimated_size,
            file_size=self.file_size,
            created_at=self.created_at,
            completed_at=self.completed_at,
            expires_at=self.expires_at,
            download_url=(
                f"/api/communication-export/jobs/{self.job_id}/download"
                if self.status == STATUS_COMPLETED else None
            ),
            error_message=self.error_message,
        )


@dataclass
class ExportFile:
    file_name: str
    content_type: str
    data: bytes
    record_count: int = 0


@dataclass
class ExportResult:
    """Outcome of start_export: either an inline file or a queued job."""
    file: Optional[ExportFile] = None
    job: Optional[ExportJob] = None

    @property
    def is_async(self) -> bool:
        return self.job is not None


# =============================================================================
# Job Store
# =============================================================================

class ExportJobStore(ABC):
    """Registry of export jobs shared by request handlers and background workers."""

    @abstractmethod
    def add(self, job: ExportJob) -> None:
        ...

    @abstractmethod
    def get(self, job_id: str) -> Optional[ExportJob]:
        ...

    @abstractmethod
    def update(self, job_id: str, **changes) -> Optional[ExportJob]:
        ...

    @abstractmethod
    def remove_expired(self, now: datetime) -> int:
        ...

    @abstractmethod
    def __len__(self) -> int:
        ...


class InMemoryExportJobStore(ExportJobStore):
    """
    Process-local job registry.

    Jobs are lost on restart. Every read and write holds the lock, and get()
    hands out copies so callers never observe a job mid-update.
    """

    def __init__(self):
        self._jobs: dict[str, ExportJob] = {}
        self._lock = threading.Lock()

    def add(self, job: ExportJob) -> None:
        with self._lock:
            self._jobs[job.job_id] = job

    def get(self, job_id: str) -> Optional[ExportJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job is not None else None

    def update(self, job_id: str, **changes) -> Optional[ExportJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            updated = replace(job, **changes)
            self._jobs[job_id] = updated
            return replace(updated)

    def remove_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [job_id for job_id, job in self._jobs.items() if job.expires_at <= now]
            for job_id in expired:
                del self._jobs[job_id]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)


# =============================================================================
# Export Service
# =============================================================================

class CommunicationExportService:
    """Renders communication logs to CSV, Excel and PDF and tracks background jobs."""

    def __init__(
        self,
        job_store: ExportJobStore,
        settings: Optional[Settings] = None,
        session_factory: Callable[[], Session] = SessionLocal
    ):
        self.job_store = job_store
        self.settings = settings or get_settings()
        self.session_factory = session_factory

    # -------------------------------------------------------------------------
    # Estimate
    # -------------------------------------------------------------------------

    def estimate_record_count(self, db: Session, criteria: CommunicationAuditSearchRequest) -> int:
        """Total matching rows, found with a single-row probe search."""
        probe = criteria.model_copy(update={"page": 1, "page_size": 1, "include_content": False})
        total = audit_service.search_communication_logs(db, probe).total_count
        logger.debug(f"Estimated {total} records for export")
        return total

    def estimate_export(self, db: Session, criteria: CommunicationAuditSearchRequest) -> ExportEstimateResponse:
        count = self.estimate_record_count(db, criteria)
        return ExportEstimateResponse(
            estimated_records=count,
            estimated_size_kb=count * 2,
            recommended_format="CSV" if count > 10000 else "Excel",
            requires_async_processing=count > self.settings.EXPORT_SYNC_THRESHOLD,
            estimated_processing_minutes=max(1, count // 1000),
        )

    # -------------------------------------------------------------------------
    # Synchronous rendering
    # -------------------------------------------------------------------------

    def export_csv(self, db: Session, request: ExportCommunicationRequest) -> bytes:
        try:
            return self._render_tabular(db, request, ExportFormat.CSV)
        except Exception as e:
            logger.error(f"CSV export failed: {e}")
            raise ExportError(f"CSV export failed: {e}") from e

    def export_excel(self, db: Session, request: ExportCommunicationRequest) -> bytes:
        try:
            return self._render_tabular(db, request, ExportFormat.EXCEL)
        except Exception as e:
            logger.error(f"Excel export failed: {e}")
            raise ExportError(f"Excel export failed: {e}") from e

    def generate_compliance_pdf(
        self,
        db: Session,
        request: ComplianceReportRequest,
        organization_id: str
    ) -> bytes:
        """
        Render the compliance report of one organization.

        organization_id is resolved by the caller (request value or the
        caller's own organization) so access checks stay at the boundary.
        """
        logger.debug(f"Starting compliance report for organization {organization_id}")
        try:
            # Same whole-day upper bound as the detailed log search
            summary = audit_service.get_delivery_status_summary(
                db, organization_id, request.date_from, end_of_day(request.date_to)
            )

            logs = []
            if request.include_detailed_logs:
                criteria = CommunicationAuditSearchRequest(
                    organization_id=organization_id,
                    date_from=request.date_from,
                    date_to=request.date_to,
                    sort_direction="asc",
                )
                logs = self._load_logs(db, criteria, self.settings.PDF_DETAIL_ROW_LIMIT)

            organization = db.get(Organization, organization_id)
            content = ExportContent(
                logs=logs,
                summary=summary,
                organization_id=organization_id,
                organization_name=organization.name if organization else None,
                generated_at=utc_now(),
            )
            options = ExportOptions(
                title=request.report_title,
                include_detailed_logs=request.include_detailed_logs,
                include_failure_analysis=request.include_failure_analysis,
                detail_row_limit=self.settings.PDF_DETAIL_ROW_LIMIT,
            )
            with time_export_render(ExportFormat.PDF.value):
                data = RENDERERS[ExportFormat.PDF].render(content, options)
        except Exception as e:
            logger.error(f"PDF report generation failed: {e}")
            raise ExportError(f"PDF report generation failed: {e}") from e

        record_export_request(ExportFormat.PDF.value, "sync")
        logger.info(f"Compliance report generated for organization {organization_id}: {len(data)} bytes")
        return data

    # -------------------------------------------------------------------------
    # Decide
    # -------------------------------------------------------------------------

    def start_export(
        self,
        db: Session,
        request: ExportCommunicationRequest,
        format: ExportFormat,
        initiated_by: Optional[str] = None
    ) -> ExportResult:
        """
        Render inline when the export is small, otherwise queue a job.

        The caller schedules run_export_job for a returned job.
        """
        if format == ExportFormat.PDF:
            raise ValidationError("Use the compliance report endpoint for PDF exports")

        total = self.estimate_record_count(db, request.search_criteria)
        record_count = min(total, request.max_records)

        if record_count > self.settings.EXPORT_SYNC_THRESHOLD:
            logger.info(f"Export of {record_count} records exceeds sync threshold, queueing {format.value} job")
            return ExportResult(job=self.queue_export(db, request, format, initiated_by, record_count))

        render = self.export_csv if format == ExportFormat.CSV else self.export_excel
        data = render(db, request)
        record_export_request(format.value, "sync")
        logger.info(f"{format.label} export completed: {record_count} records, {len(data)} bytes")
        return ExportResult(file=ExportFile(
            file_name=self.build_filename(format, request.custom_filename),
            content_type=format.content_type,
            data=data,
            record_count=record_count,
        ))

    def queue_export(
        self,
        db: Session,
        request: ExportCommunicationRequest,
        format: ExportFormat,
        initiated_by: Optional[str] = None,
        record_count: Optional[int] = None
    ) -> ExportJob:
        """Register a Processing job; run_export_job does the rendering."""
        if format == ExportFormat.PDF:
            raise ValidationError("PDF reports cannot be queued")

        if record_count is None:
            record_count = min(self.estimate_record_count(db, request.search_criteria), request.max_records)

        now = utc_now()
        job = ExportJob(
            job_id=uuid.uuid4().hex,
            format=format,
            request=request,
            record_count=record_count,
            estimated_size=record_count * ESTIMATED_BYTES_PER_RECORD,
            created_at=now,
            expires_at=now + timedelta(hours=self.settings.EXPORT_JOB_RETENTION_HOURS),
            initiated_by=initiated_by,
            organization_id=request.search_criteria.organization_id,
        )
        self.job_store.add(job)
        set_stored_export_jobs(len(self.job_store))
        record_export_request(format.value, "async")
        logger.info(f"Export job queued: {job.job_id}, format={format.value}, records={record_count}")
        return job

    def run_export_job(self, job_id: str) -> None:
        """
        Render a queued job with its own database session.

        Failures are recorded on the job rather than raised; nobody is waiting
        on this call.
        """
        job = self.job_store.get(job_id)
        if job is None:
            logger.warning(f"Export job {job_id} not found")
            return

        logger.info(f"Processing export job {job_id}")
        db = self.session_factory()
        try:
            render = self.export_csv if job.format == ExportFormat.CSV else self.export_excel
            data = render(db, job.request)
        except ExportError as e:
            logger.error(f"Export job {job_id} failed: {e.message}")
            self.job_store.update(job_id, status=STATUS_FAILED, error_message=e.message, completed_at=utc_now())
            record_export_job(STATUS_FAILED)
            return
        finally:
            db.close()

        self.job_store.update(
            job_id,
            status=STATUS_COMPLETED,
            data=data,
            file_size=len(data),
            file_name=self.build_filename(job.format, job.request.custom_filename, job.created_at),
            completed_at=utc_now(),
        )
        record_export_job(STATUS_COMPLETED)
        logger.info(f"Export job {job_id} completed: {len(data)} bytes")

    # -------------------------------------------------------------------------
    # Job queries
    # -------------------------------------------------------------------------

    def get_export_status(self, job_id: Optional[str]) -> Optional[ExportJob]:
        """The job, or None for an empty or unknown id."""
        if not job_id:
            return None
        return self.job_store.get(job_id)

    def get_export_file(self, job_id: Optional[str]) -> Optional[ExportFile]:
        """The finished artifact, or None when the job is unknown or not completed."""
        job = self.get_export_status(job_id)
        if job is None or job.status != STATUS_COMPLETED or job.data is None:
            return None
        return ExportFile(
            file_name=job.file_name,
            content_type=job.format.content_type,
            data=job.data,
            record_count=job.record_count,
        )

    def cleanup_expired_exports(self, now: Optional[datetime] = None) -> int:
        removed = self.job_store.remove_expired(now or utc_now())
        set_stored_export_jobs(len(self.job_store))
        if removed:
            logger.info(f"Removed {removed} expired export jobs")
        return removed

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def build_filename(
        format: ExportFormat,
        custom_filename: Optional[str] = None,
        timestamp: Optional[datetime] = None
    ) -> str:
        if custom_filename:
            name = custom_filename.strip()
            suffix = f".{format.extension}"
            return name if name.lower().endswith(suffix) else f"{name}{suffix}"
        return f"communication-export-{(timestamp or utc_now()):%Y%m%d-%H%M%S}.{format.extension}"

    def _render_tabular(self, db: Session, request: ExportCommunicationRequest, format: ExportFormat) -> bytes:
        logs = self._load_logs(db, request.search_criteria, request.max_records)
        content = ExportContent(
            logs=logs,
            columns=build_columns(request.include_content, request.include_metadata),
            organization_id=request.search_criteria.organization_id,
            generated_at=utc_now(),
        )
        if format == ExportFormat.EXCEL:
            content.summary = self._excel_summary(db, request.search_criteria)
        with time_export_render(format.value):
            return RENDERERS[format].render(content, ExportOptions(date_format=request.date_format))

    def _load_logs(
        self,
        db: Session,
        criteria: CommunicationAuditSearchRequest,
        max_records: int
    ) -> list[CommunicationLog]:
        """Walk the search result in EXPORT_BATCH_SIZE pages up to max_records rows."""
        batch_size = min(self.settings.EXPORT_BATCH_SIZE, max_records)
        logs: list[CommunicationLog] = []
        page = 1
        while len(logs) < max_records:
            batch_request = criteria.model_copy(
                update={"page": page, "page_size": batch_size, "include_content": False}
            )
            batch = audit_service.search_communication_logs(db, batch_request).logs
            logs.extend(batch)
            if len(batch) < batch_size:
                break
            page += 1
        return logs[:max_records]

    def _excel_summary(
        self,
        db: Session,
        criteria: CommunicationAuditSearchRequest
    ) -> Optional[DeliveryStatusSummary]:
        if not criteria.organization_id:
            return None
        date_to = end_of_day(criteria.date_to or utc_now())
        date_from = criteria.date_from or date_to - timedelta(days=SUMMARY_DEFAULT_DAYS)
        return audit_service.get_delivery_status_summary(db, criteria.organization_id, date_from, date_to)
