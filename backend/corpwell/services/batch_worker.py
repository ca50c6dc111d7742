"""
Executes one onboarding batch: per employee recommend -> provision -> notify.

A single employee's failure is recorded in the batch outcome list and the
batch moves on. Only failures of the batch operation itself (bad payload,
unexpected errors outside the per-employee handler) trigger a batch retry.
"""

import logging
import time
from typing import Optional

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from corpwell.config import OnboardingSettings
from corpwell.schemas.onboarding import (
    TERMINAL_BATCH_STATES,
    BatchState,
    BatchTask,
    EmployeeOutcome,
    JobStatus,
)
from corpwell.schemas.roster import EmployeeRecord
from corpwell.services.app_recommender import RecommendationClient
from corpwell.services.errors import JobNotFoundError, StoreUnavailableError
from corpwell.services.job_store import JobStore
from corpwell.services.notifications import NotificationQueue, WelcomeNotification
from corpwell.services.provisioner import Provisioner

logger = logging.getLogger(__name__)

CANCELLED_ERROR = "Job cancelled before batch started"


def _task_ref(payload) -> tuple[Optional[str], Optional[str], Optional[int]]:
    """Best-effort (tenant_id, job_id, batch_index) from a payload that may not validate."""
    if not isinstance(payload, dict):
        return None, None, None
    batch_index = payload.get("batch_index")
    return (
        payload.get("tenant_id"),
        payload.get("job_id"),
        batch_index if isinstance(batch_index, int) else None,
    )


class BatchWorker:
    def __init__(
        self,
        settings: OnboardingSettings,
        job_store: JobStore,
        recommender: RecommendationClient,
        provisioner: Provisioner,
        notifier: Optional[NotificationQueue] = None,
    ):
        self.settings = settings
        self.job_store = job_store
        self.recommender = recommender
        self.provisioner = provisioner
        self.notifier = notifier

    def run(self, payload: dict) -> None:
        """Queue entry point. Retries the whole batch with exponential backoff."""
        tenant_id, job_id, batch_index = _task_ref(payload)
        retrying = Retrying(
            stop=stop_after_attempt(self.settings.batch_max_attempts),
            wait=wait_exponential(multiplier=self.settings.batch_backoff_seconds, max=60),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    self.process(payload, attempt.retry_state.attempt_number)
        except Exception as e:
            logger.error(
                "Employee batch failed after %d attempts: tenant=%s job=%s batch=%s error=%s",
                self.settings.batch_max_attempts, tenant_id, job_id, batch_index, e,
            )
            if job_id is not None and batch_index is not None:
                self._write_batch(job_id, batch_index, status=BatchState.failed, error=str(e))
                if tenant_id is not None:
                    self.refresh_job(tenant_id, job_id)

    def process(self, payload: dict, attempt: int = 1) -> None:
        task = BatchTask.model_validate(payload)

        current = self._current_status(task.job_id, task.batch_index)
        if current == BatchState.completed:
            logger.info("Batch already completed, skipping redelivery: job=%s batch=%d", task.job_id, task.batch_index)
            return

        if self._job_cancelled(task):
            logger.info("Job cancelled, not starting batch: job=%s batch=%d", task.job_id, task.batch_index)
            self._write_batch(
                task.job_id, task.batch_index,
                status=BatchState.failed,
                employee_count=len(task.employees),
                error=CANCELLED_ERROR,
            )
            return

        logger.info(
            "Processing employee batch: tenant=%s job=%s batch=%d employees=%d attempt=%d",
            task.tenant_id, task.job_id, task.batch_index, len(task.employees), attempt,
        )
        started = time.monotonic()
        self._write_batch(
            task.job_id, task.batch_index,
            status=BatchState.processing,
            employee_count=len(task.employees),
            attempts=attempt,
        )

        outcomes: list[EmployeeOutcome] = []
        success_count = 0
        interval = self.settings.progress_interval
        for n, employee in enumerate(task.employees, start=1):
            outcome = self._process_employee(task, employee)
            outcomes.append(outcome)
            if outcome.status == "success":
                success_count += 1
            if interval > 0 and n % interval == 0 and n < len(task.employees):
                self._write_batch(task.job_id, task.batch_index, processed_count=n, success_count=success_count)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        confirmed = self._write_batch(
            task.job_id, task.batch_index,
            status=BatchState.completed,
            processed_count=len(outcomes),
            success_count=success_count,
            results=outcomes,
            processing_time_ms=elapsed_ms,
            error=None,
        )
        logger.info(
            "Employee batch completed: tenant=%s job=%s batch=%d success=%d failed=%d time_ms=%d",
            task.tenant_id, task.job_id, task.batch_index,
            success_count, len(outcomes) - success_count, elapsed_ms,
        )
        if confirmed:
            self.refresh_job(task.tenant_id, task.job_id)

    def _process_employee(self, task: BatchTask, employee: EmployeeRecord) -> EmployeeOutcome:
        try:
            recommendations = self.recommender.recommend(employee, tenant_id=task.tenant_id)
            provisioned = self.provisioner.provision(
                task.tenant_id, employee, auto_activate=task.options.auto_activate
            )
            assignments = self.provisioner.provision_apps(
                task.tenant_id, provisioned.employee_id, recommendations, employee
            )
        except Exception as e:
            logger.error(
                "Failed to process individual employee: tenant=%s job=%s row=%d error=%s",
                task.tenant_id, task.job_id, employee.row_index, e,
            )
            return EmployeeOutcome(email=employee.email, status="failed", error=str(e))

        if task.options.send_welcome_emails and provisioned.created and self.notifier is not None:
            try:
                self.notifier.enqueue_welcome(WelcomeNotification(
                    tenant_id=task.tenant_id,
                    job_id=task.job_id,
                    employee_id=str(provisioned.employee_id),
                    email=employee.email,
                    login_url=self.settings.login_url,
                    app_assignments=assignments,
                ))
            except Exception as e:
                logger.error(
                    "Could not enqueue welcome notification: tenant=%s employee=%s error=%s",
                    task.tenant_id, provisioned.employee_id, e,
                )

        return EmployeeOutcome(
            email=employee.email,
            employee_id=str(provisioned.employee_id),
            status="success",
            apps_assigned=len(assignments),
        )

    # ---------- job store access ----------

    def _write_batch(self, job_id: str, batch_index: int, **fields) -> bool:
        """Write batch status, retrying while the store is unreachable.

        Final status writes get `final_write_attempts` tries so a store
        failover does not strand the batch in processing. Returns False when
        the write could not be confirmed; the batch result then stays
        unconfirmed rather than being reported as failed.
        """
        final = fields.get("status") in TERMINAL_BATCH_STATES
        retrying = Retrying(
            retry=retry_if_exception_type(StoreUnavailableError),
            stop=stop_after_attempt(self.settings.final_write_attempts if final else 3),
            wait=wait_exponential(multiplier=min(0.5, self.settings.batch_backoff_seconds), max=5),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    return self.job_store.update_batch(job_id, batch_index, **fields)
        except StoreUnavailableError as e:
            logger.warning(
                "Batch status not confirmed, store unavailable: job=%s batch=%d status=%s error=%s",
                job_id, batch_index, fields.get("status"), e,
            )
        return False

    def _current_status(self, job_id: str, batch_index: int) -> Optional[BatchState]:
        try:
            for b in self.job_store.list_batches(job_id):
                if b.batch_index == batch_index:
                    return b.status
        except StoreUnavailableError as e:
            logger.warning("Could not read batch status: job=%s batch=%d error=%s", job_id, batch_index, e)
        return None

    def _job_cancelled(self, task: BatchTask) -> bool:
        try:
            job = self.job_store.get_job(task.tenant_id, task.job_id)
        except (StoreUnavailableError, JobNotFoundError) as e:
            logger.warning("Could not check job status, continuing: job=%s error=%s", task.job_id, e)
            return False
        return job.status == JobStatus.cancelled

    def refresh_job(self, tenant_id: str, job_id: str) -> None:
        """Mark the job completed once every batch is in a final state."""
        try:
            job = self.job_store.get_job(tenant_id, job_id)
            if job.status != JobStatus.processing or not job.total_batches:
                return
            finished = sum(1 for b in self.job_store.list_batches(job_id) if b.status in TERMINAL_BATCH_STATES)
            if finished >= job.total_batches:
                self.job_store.update_job(tenant_id, job_id, status=JobStatus.completed)
                logger.info("Onboarding job completed: tenant=%s job=%s batches=%d", tenant_id, job_id, finished)
        except (StoreUnavailableError, JobNotFoundError) as e:
            logger.warning("Could not refresh job status: job=%s error=%s", job_id, e)
