import enum
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from corpwell.models.app_assignment import AppName
from corpwell.schemas.roster import EmployeeRecord, InvalidEmployee


class JobStatus(str, enum.Enum):
    started = "started"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


class BatchState(str, enum.Enum):
    queued = "queued"
    processing = "processing"
    completed = "completed"
    failed = "failed"


TERMINAL_BATCH_STATES = {BatchState.completed, BatchState.failed}
TERMINAL_JOB_STATES = {JobStatus.completed, JobStatus.failed, JobStatus.cancelled}


class Priority(str, enum.Enum):
    high = "high"
    medium = "medium"
    low = "low"


# --- Upload ---

class UploadOptions(BaseModel):
    send_welcome_emails: bool = True
    auto_activate: bool = True
    dry_run: bool = False


class UploadResult(BaseModel):
    job_id: Optional[str] = None
    status: str
    dry_run: bool = False
    total_rows: int = 0
    total_employees: int = 0
    total_batches: int = 0
    invalid_records: int = 0
    invalid_employees: list[InvalidEmployee] = []
    errors: list[str] = []
    processing_time_ms: int = 0
    estimated_completion: Optional[datetime] = None


# --- Recommendations ---

class Recommendation(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    app: AppName
    reason: str = ""
    priority: Priority = Priority.medium
    include_spouse: bool = Field(default=False, alias="includeSpouse")


class AssignmentResult(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    employee_id: str
    app_name: AppName
    access_level: str
    assigned_to_spouse: bool
    status: str


# --- Job / batch status ---

class EmployeeOutcome(BaseModel):
    email: Optional[str] = None
    employee_id: Optional[str] = None
    status: str  # "success" | "failed"
    apps_assigned: int = 0
    error: Optional[str] = None


class OnboardingJob(BaseModel):
    tenant_id: str
    job_id: str
    status: JobStatus = JobStatus.started
    filename: Optional[str] = None
    total_rows: int = 0
    total_employees: int = 0
    total_batches: int = 0
    invalid_records: int = 0
    batch_ids: list[str] = []
    options: UploadOptions = UploadOptions()
    start_time: datetime
    last_update: Optional[datetime] = None
    estimated_completion: Optional[datetime] = None
    error: Optional[str] = None


class BatchStatus(BaseModel):
    job_id: str
    batch_index: int
    status: BatchState = BatchState.queued
    employee_count: int = 0
    processed_count: int = 0
    success_count: int = 0
    results: list[EmployeeOutcome] = []
    processing_time_ms: Optional[int] = None
    attempts: int = 0
    error: Optional[str] = None
    updated_at: Optional[datetime] = None


class BatchTask(BaseModel):
    """Queue payload for one batch. Carries everything needed to run it."""

    tenant_id: str
    job_id: str
    batch_index: int
    employees: list[EmployeeRecord]
    options: UploadOptions = UploadOptions()


class JobProgress(BaseModel):
    percentage: int
    completed_batches: int
    failed_batches: int
    total_batches: int
    total_employees: int
    total_processed: int
    total_successful: int
    total_failed: int


class JobTiming(BaseModel):
    start_time: datetime
    last_update: Optional[datetime] = None
    estimated_completion: Optional[datetime] = None


class JobStatusReport(BaseModel):
    job_id: str
    status: JobStatus
    progress: JobProgress
    timing: JobTiming
    batch_details: list[BatchStatus]
    error: Optional[str] = None


class JobSummary(BaseModel):
    job_id: str
    status: JobStatus
    filename: Optional[str] = None
    start_time: datetime
    last_update: Optional[datetime] = None
    total_employees: int = 0
    total_batches: int = 0
    invalid_records: int = 0
