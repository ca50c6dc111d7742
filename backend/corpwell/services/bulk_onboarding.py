"""
Bulk employee onboarding: roster upload -> validation -> batched provisioning.

The upload call returns as soon as the job is recorded and its batches are
queued. Everything per batch and per employee happens on the batch worker
pool and is only visible through get_status().
"""

import logging
import math
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session
from tenacity import retry, stop_after_attempt, wait_exponential

from corpwell.config import OnboardingSettings
from corpwell.schemas.onboarding import (
    TERMINAL_BATCH_STATES,
    TERMINAL_JOB_STATES,
    BatchState,
    BatchStatus,
    BatchTask,
    JobProgress,
    JobStatus,
    JobStatusReport,
    JobSummary,
    JobTiming,
    OnboardingJob,
    Recommendation,
    UploadOptions,
    UploadResult,
)
from corpwell.schemas.roster import EmployeeRecord, ValidationResult
from corpwell.services.app_recommender import RecommendationClient
from corpwell.services.batch_queue import TaskQueue, WorkerPool
from corpwell.services.batch_worker import BatchWorker
from corpwell.services.batching import plan_batches, new_job_id
from corpwell.services.employee_directory import EmployeeDirectory, TenantCapacity
from corpwell.services.errors import EmployeeNotFoundError
from corpwell.services.job_store import InMemoryJobStore, JobStore, RedisJobStore
from corpwell.services.notifications import NotificationQueue, WelcomeSender
from corpwell.services.provisioner import PiiEncryptor, Provisioner
from corpwell.services.roster_normalizer import NormalizedRow, parse_roster
from corpwell.services.roster_validator import validate_roster

logger = logging.getLogger(__name__)

NO_VALID_EMPLOYEES = "No valid employees found in roster"

TEMPLATE_FILENAME = "employee_bulk_upload_template.csv"

TEMPLATE_CSV = (
    "email,first_name,last_name,employee_id,department,role,manager_id,location,birth_year,"
    "gender,marital_status,has_dependents,include_spouse,spouse_email,health_conditions,stress_level\n"
    "john.doe@company.com,John,Doe,EMP001,Engineering,Software Engineer,MGR001,San Francisco,1985,"
    "male,married,true,true,jane.doe@email.com,none,medium\n"
    "jane.smith@company.com,Jane,Smith,EMP002,Marketing,Marketing Manager,MGR002,New York,1990,"
    "female,single,false,false,,anxiety,high\n"
    "bob.johnson@company.com,Bob,Johnson,EMP003,Sales,Sales Representative,MGR003,Chicago,1982,"
    "male,married,true,false,,diabetes,low\n"
    "alice.brown@company.com,Alice,Brown,EMP004,HR,HR Specialist,MGR004,Austin,1988,"
    "female,married,false,true,spouse@email.com,none,medium\n"
)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


@retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=0.1, max=1), reraise=True)
def _submit_with_retry(queue: TaskQueue, fn, payload: dict, delay: float) -> None:
    queue.submit(fn, payload, delay=delay)


class BulkOnboardingService:
    def __init__(
        self,
        settings: OnboardingSettings,
        job_store: JobStore,
        directory: EmployeeDirectory,
        recommender: RecommendationClient,
        batch_queue: TaskQueue,
        worker: BatchWorker,
        notification_queue: Optional[TaskQueue] = None,
    ):
        self.settings = settings
        self.job_store = job_store
        self.directory = directory
        self.recommender = recommender
        self.batch_queue = batch_queue
        self.worker = worker
        self.notification_queue = notification_queue

    # ---------- upload ----------

    def process_csv_upload(
        self,
        tenant_id,
        content: bytes,
        filename: Optional[str] = None,
        options: Optional[UploadOptions] = None,
    ) -> UploadResult:
        """Parse, validate and (unless dry run) queue a roster for provisioning.

        Raises RosterFormatError for files that cannot be read as a roster and
        TenantNotFoundError for unknown tenants; neither creates a job.
        """
        options = options or UploadOptions()
        tenant_id = str(tenant_id)
        started = time.monotonic()

        logger.info(
            "Roster upload received: tenant=%s file=%s bytes=%d dry_run=%s",
            tenant_id, filename, len(content), options.dry_run,
        )
        rows = parse_roster(content)
        capacity = self.directory.tenant_capacity(tenant_id)

        if options.dry_run:
            validation = self._validate(tenant_id, rows, capacity)
            return self._result(
                None, "validated", rows, validation, started, dry_run=True,
                estimated_completion=self.estimate_completion(len(validation.valid_employees)),
            )

        job_id = new_job_id(tenant_id)
        self.job_store.create_job(
            tenant_id, job_id,
            filename=filename,
            total_rows=len(rows),
            options=options,
        )

        try:
            validation = self._validate(tenant_id, rows, capacity)
        except Exception as e:
            logger.exception("Roster validation failed: tenant=%s job=%s", tenant_id, job_id)
            error = f"Validation failed: {e}"
            self.job_store.update_job(tenant_id, job_id, status=JobStatus.failed, error=error)
            return UploadResult(
                job_id=job_id,
                status=JobStatus.failed.value,
                total_rows=len(rows),
                errors=[error],
                processing_time_ms=_elapsed_ms(started),
            )

        if not validation.valid_employees:
            logger.warning(
                "Roster has no valid employees: tenant=%s job=%s invalid=%d",
                tenant_id, job_id, len(validation.invalid_employees),
            )
            self.job_store.update_job(
                tenant_id, job_id,
                status=JobStatus.failed,
                invalid_records=len(validation.invalid_employees),
                error=NO_VALID_EMPLOYEES,
            )
            return self._result(job_id, JobStatus.failed.value, rows, validation, started)

        plan = plan_batches(validation.valid_employees, tenant_id, self.settings.batch_size, job_id=job_id)
        estimated = self.estimate_completion(len(validation.valid_employees))

        # totals must be on the job before any batch can report back
        self.job_store.update_job(
            tenant_id, job_id,
            status=JobStatus.processing,
            total_employees=len(validation.valid_employees),
            total_batches=plan.total_batches,
            invalid_records=len(validation.invalid_employees),
            batch_ids=plan.batch_ids,
            estimated_completion=estimated,
        )

        dispatch_failures = 0
        for index, employees in enumerate(plan.batches):
            if not self._dispatch(tenant_id, job_id, index, employees, options):
                dispatch_failures += 1
        if dispatch_failures:
            self.worker.refresh_job(tenant_id, job_id)

        logger.info(
            "Bulk onboarding job queued: tenant=%s job=%s employees=%d batches=%d invalid=%d",
            tenant_id, job_id, len(validation.valid_employees), plan.total_batches,
            len(validation.invalid_employees),
        )
        return self._result(
            job_id, JobStatus.processing.value, rows, validation, started,
            total_batches=plan.total_batches, estimated_completion=estimated,
        )

    def _validate(self, tenant_id: str, rows: list[NormalizedRow], capacity: TenantCapacity) -> ValidationResult:
        return validate_roster(
            rows,
            existing_emails=lambda emails: self.directory.existing_emails(tenant_id, emails),
            current_count=capacity.current_count,
            max_employees=capacity.max_employees,
        )

    def _dispatch(self, tenant_id: str, job_id: str, index: int,
                  employees: list[EmployeeRecord], options: UploadOptions) -> bool:
        payload = BatchTask(
            tenant_id=tenant_id,
            job_id=job_id,
            batch_index=index,
            employees=employees,
            options=options,
        ).model_dump(mode="json")
        try:
            _submit_with_retry(
                self.batch_queue, self.worker.run, payload, index * self.settings.batch_stagger_seconds
            )
        except Exception as e:
            logger.error("Failed to dispatch batch: job=%s batch=%d error=%s", job_id, index, e)
            self.job_store.update_batch(
                job_id, index,
                status=BatchState.failed,
                employee_count=len(employees),
                error=f"Dispatch failed: {e}",
            )
            return False
        return True

    def _result(self, job_id, status: str, rows: list[NormalizedRow], validation: ValidationResult,
                started: float, *, dry_run: bool = False, total_batches: Optional[int] = None,
                estimated_completion: Optional[datetime] = None) -> UploadResult:
        valid = len(validation.valid_employees)
        if total_batches is None:
            total_batches = math.ceil(valid / self.settings.batch_size)
        return UploadResult(
            job_id=job_id,
            status=status,
            dry_run=dry_run,
            total_rows=len(rows),
            total_employees=valid,
            total_batches=total_batches,
            invalid_records=len(validation.invalid_employees),
            invalid_employees=validation.invalid_employees,
            errors=validation.errors,
            processing_time_ms=_elapsed_ms(started),
            estimated_completion=estimated_completion,
        )

    def estimate_completion(self, employee_count: int) -> datetime:
        return _now_utc() + timedelta(seconds=employee_count * self.settings.seconds_per_employee_estimate)

    # ---------- status ----------

    def get_status(self, tenant_id, job_id: str) -> JobStatusReport:
        job = self.job_store.get_job(tenant_id, job_id)
        reported = {b.batch_index: b for b in self.job_store.list_batches(job_id)}

        # batches that have not reported yet are still queued
        batches = [
            reported.get(i) or BatchStatus(job_id=job_id, batch_index=i)
            for i in range(job.total_batches)
        ]
        completed = sum(1 for b in batches if b.status == BatchState.completed)
        failed = sum(1 for b in batches if b.status == BatchState.failed)
        processed = sum(b.processed_count for b in batches)
        successful = sum(b.success_count for b in batches)

        total = job.total_batches
        percentage = math.floor(completed * 100 / total + 0.5) if total else 0

        status = job.status
        finished = sum(1 for b in batches if b.status in TERMINAL_BATCH_STATES)
        if status == JobStatus.processing and total and finished == total:
            status = JobStatus.completed

        return JobStatusReport(
            job_id=job_id,
            status=status,
            progress=JobProgress(
                percentage=percentage,
                completed_batches=completed,
                failed_batches=failed,
                total_batches=total,
                total_employees=job.total_employees,
                total_processed=processed,
                total_successful=successful,
                total_failed=processed - successful,
            ),
            timing=JobTiming(
                start_time=job.start_time,
                last_update=job.last_update,
                estimated_completion=job.estimated_completion,
            ),
            batch_details=batches,
            error=job.error,
        )

    def cancel_job(self, tenant_id, job_id: str) -> OnboardingJob:
        """Stop batches that have not started yet. Running batches finish normally."""
        job = self.job_store.get_job(tenant_id, job_id)
        if job.status in TERMINAL_JOB_STATES:
            logger.info("Cancel ignored, job already %s: tenant=%s job=%s", job.status.value, tenant_id, job_id)
            return job
        self.job_store.update_job(tenant_id, job_id, status=JobStatus.cancelled)
        logger.info("Onboarding job cancelled: tenant=%s job=%s", tenant_id, job_id)
        return self.job_store.get_job(tenant_id, job_id)

    def history(self, tenant_id, limit: Optional[int] = None) -> list[JobSummary]:
        jobs = self.job_store.list_jobs(tenant_id)
        if limit is not None:
            jobs = jobs[:limit]
        return [
            JobSummary(
                job_id=j.job_id,
                status=j.status,
                filename=j.filename,
                start_time=j.start_time,
                last_update=j.last_update,
                total_employees=j.total_employees,
                total_batches=j.total_batches,
                invalid_records=j.invalid_records,
            )
            for j in jobs
        ]

    def recommend_for_employee(self, tenant_id, employee_id) -> list[Recommendation]:
        record = self.directory.get_employee(tenant_id, employee_id)
        if record is None:
            raise EmployeeNotFoundError(f"Employee {employee_id} not found")
        return self.recommender.recommend(record, tenant_id=str(tenant_id))

    def shutdown(self, wait: bool = True) -> None:
        self.batch_queue.shutdown(wait=wait)
        if self.notification_queue is not None:
            self.notification_queue.shutdown(wait=wait)
        self.recommender.close()


def build_job_store(settings: OnboardingSettings) -> JobStore:
    if settings.job_store_backend == "redis":
        logger.info("Using redis job store")
        return RedisJobStore.from_url(settings.redis_url, ttl_seconds=settings.job_ttl_seconds)
    return InMemoryJobStore(ttl_seconds=settings.job_ttl_seconds)


def build_onboarding_service(
    settings: OnboardingSettings,
    session_factory: Callable[[], Session],
    *,
    job_store: Optional[JobStore] = None,
    recommender: Optional[RecommendationClient] = None,
    batch_queue: Optional[TaskQueue] = None,
    notification_queue: Optional[TaskQueue] = None,
    sender: Optional[WelcomeSender] = None,
    encryptor: Optional[PiiEncryptor] = None,
) -> BulkOnboardingService:
    """Wire the pipeline once at process start. Any piece can be swapped in."""
    job_store = job_store or build_job_store(settings)
    recommender = recommender or RecommendationClient(settings)
    batch_queue = batch_queue or WorkerPool(settings.max_concurrent_batches, name="onboarding-batch")
    notification_queue = notification_queue or WorkerPool(settings.notification_workers, name="onboarding-notify")

    worker = BatchWorker(
        settings,
        job_store,
        recommender,
        Provisioner(session_factory, encryptor=encryptor),
        NotificationQueue(notification_queue, sender=sender),
    )
    return BulkOnboardingService(
        settings,
        job_store,
        EmployeeDirectory(session_factory),
        recommender,
        batch_queue,
        worker,
        notification_queue=notification_queue,
    )
