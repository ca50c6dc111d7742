import logging
import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, Response, UploadFile
from pydantic import BaseModel
from sqlalchemy.orm import Session

from corpwell.database import get_db
from corpwell.dependencies import (
    get_current_tenant_id,
    get_current_user_id,
    get_onboarding_service,
    require_admin,
)
from corpwell.schemas.onboarding import (
    JobStatus,
    JobStatusReport,
    JobSummary,
    Recommendation,
    UploadOptions,
    UploadResult,
)
from corpwell.schemas.roster import InvalidEmployee
from corpwell.services.audit import log_action
from corpwell.services.bulk_onboarding import TEMPLATE_CSV, TEMPLATE_FILENAME, BulkOnboardingService
from corpwell.services.errors import (
    EmployeeNotFoundError,
    JobNotFoundError,
    RosterFormatError,
    StoreUnavailableError,
    TenantNotFoundError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/onboarding", tags=["Onboarding"])


class ValidateResponse(BaseModel):
    valid: bool
    total_records: int
    valid_records: int
    invalid_records: int
    invalid_employees: list[InvalidEmployee] = []
    errors: list[str] = []
    estimated_completion: Optional[datetime] = None


class CancelResponse(BaseModel):
    job_id: str
    status: JobStatus
    message: str


def _form_flag(value: Optional[str], default: bool) -> bool:
    """Multipart fields arrive as text; only an explicit 'true'/'false' overrides the default."""
    if value is None:
        return default
    value = value.strip().lower()
    if default:
        return value != "false"
    return value == "true"


def _read_roster(file: UploadFile, service: BulkOnboardingService) -> bytes:
    limit = service.settings.max_upload_bytes
    content = file.file.read(limit + 1)
    if len(content) > limit:
        raise HTTPException(status_code=413, detail=f"File exceeds the {limit} byte upload limit")
    return content


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


# --- Upload ---

@router.post("/upload", response_model=UploadResult, status_code=202)
def upload_roster(
    request: Request,
    response: Response,
    file: UploadFile = File(...),
    send_welcome_emails: Optional[str] = Form(default=None, alias="sendWelcomeEmails"),
    auto_activate: Optional[str] = Form(default=None, alias="autoActivate"),
    dry_run: Optional[str] = Form(default=None, alias="dryRun"),
    db: Session = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_current_tenant_id),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    role: str = Depends(require_admin),
    service: BulkOnboardingService = Depends(get_onboarding_service),
):
    options = UploadOptions(
        send_welcome_emails=_form_flag(send_welcome_emails, True),
        auto_activate=_form_flag(auto_activate, True),
        dry_run=_form_flag(dry_run, False),
    )
    content = _read_roster(file, service)

    try:
        result = service.process_csv_upload(tenant_id, content, filename=file.filename, options=options)
    except RosterFormatError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TenantNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreUnavailableError as e:
        logger.error("Upload rejected, job store unavailable: tenant=%s error=%s", tenant_id, e)
        raise HTTPException(status_code=503, detail="Onboarding is temporarily unavailable")

    if result.dry_run:
        response.status_code = 200
        return result

    log_action(
        db,
        tenant_id,
        current_user_id,
        "bulk_onboarding_upload",
        "onboarding_job",
        result.job_id,
        {
            "filename": file.filename,
            "status": result.status,
            "total_employees": result.total_employees,
            "total_batches": result.total_batches,
            "invalid_records": result.invalid_records,
        },
        ip_address=_client_ip(request),
    )
    if result.status == JobStatus.failed.value:
        response.status_code = 422
    return result


@router.post("/validate", response_model=ValidateResponse)
def validate_roster_file(
    file: UploadFile = File(...),
    tenant_id: uuid.UUID = Depends(get_current_tenant_id),
    service: BulkOnboardingService = Depends(get_onboarding_service),
):
    content = _read_roster(file, service)
    try:
        result = service.process_csv_upload(
            tenant_id, content, filename=file.filename, options=UploadOptions(dry_run=True)
        )
    except RosterFormatError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TenantNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return ValidateResponse(
        valid=result.invalid_records == 0 and result.total_employees > 0,
        total_records=result.total_rows,
        valid_records=result.total_employees,
        invalid_records=result.invalid_records,
        invalid_employees=result.invalid_employees,
        errors=result.errors,
        estimated_completion=result.estimated_completion,
    )


# --- Job status ---

@router.get("/status/{job_id}", response_model=JobStatusReport)
def get_job_status(
    job_id: str,
    tenant_id: uuid.UUID = Depends(get_current_tenant_id),
    service: BulkOnboardingService = Depends(get_onboarding_service),
):
    try:
        return service.get_status(tenant_id, job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreUnavailableError:
        raise HTTPException(status_code=503, detail="Onboarding status is temporarily unavailable")


@router.get("/template")
def download_template():
    return Response(
        content=TEMPLATE_CSV,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{TEMPLATE_FILENAME}"'},
    )


@router.get("/history", response_model=list[JobSummary])
def onboarding_history(
    limit: int = Query(default=20, ge=1, le=200),
    tenant_id: uuid.UUID = Depends(get_current_tenant_id),
    service: BulkOnboardingService = Depends(get_onboarding_service),
):
    try:
        return service.history(tenant_id, limit=limit)
    except StoreUnavailableError:
        raise HTTPException(status_code=503, detail="Onboarding history is temporarily unavailable")


@router.get("/apps/recommendations/{employee_id}", response_model=list[Recommendation])
def employee_recommendations(
    employee_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(get_current_tenant_id),
    service: BulkOnboardingService = Depends(get_onboarding_service),
):
    try:
        return service.recommend_for_employee(tenant_id, employee_id)
    except EmployeeNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.delete("/{job_id}", response_model=CancelResponse)
def cancel_job(
    job_id: str,
    request: Request,
    db: Session = Depends(get_db),
    tenant_id: uuid.UUID = Depends(get_current_tenant_id),
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    role: str = Depends(require_admin),
    service: BulkOnboardingService = Depends(get_onboarding_service),
):
    try:
        job = service.cancel_job(tenant_id, job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreUnavailableError:
        raise HTTPException(status_code=503, detail="Onboarding is temporarily unavailable")

    log_action(
        db,
        tenant_id,
        current_user_id,
        "bulk_onboarding_cancel",
        "onboarding_job",
        job_id,
        {"status": job.status.value},
        ip_address=_client_ip(request),
    )
    if job.status == JobStatus.cancelled:
        message = "Onboarding job cancelled"
    else:
        message = f"Onboarding job already {job.status.value}"
    return CancelResponse(job_id=job_id, status=job.status, message=message)
