import math
from dataclasses import replace

import pytest

from corpwell.models.app_assignment import AppAssignment
from corpwell.models.employee import Employee
from corpwell.schemas.onboarding import BatchState, JobStatus, UploadOptions
from corpwell.services.batch_queue import InlineQueue, TaskQueue
from corpwell.services.bulk_onboarding import TEMPLATE_CSV, build_onboarding_service
from corpwell.services.errors import (
    EmployeeNotFoundError,
    JobNotFoundError,
    RosterFormatError,
    TenantNotFoundError,
)
from corpwell.services.job_store import InMemoryJobStore
from corpwell.services.roster_normalizer import parse_roster


class HeldQueue(TaskQueue):
    """Collects submissions without running them, so tests control when batches execute."""

    def __init__(self):
        self.tasks = []

    def submit(self, fn, *args, delay=0.0):
        self.tasks.append((fn, args, delay))

    def run_all(self):
        tasks, self.tasks = self.tasks, []
        for fn, args, _ in tasks:
            fn(*args)

    def join(self, timeout=None):
        return not self.tasks

    def shutdown(self, wait=True):
        pass


class BrokenQueue(HeldQueue):
    def submit(self, fn, *args, delay=0.0):
        raise ConnectionError("broker unreachable")


@pytest.fixture()
def store():
    return InMemoryJobStore()


@pytest.fixture()
def make_service(settings, session_factory, store):
    def _make(batch_queue=None, **overrides):
        return build_onboarding_service(
            replace(settings, **overrides),
            session_factory,
            job_store=store,
            batch_queue=batch_queue or InlineQueue(),
            notification_queue=InlineQueue(),
        )
    return _make


def _people(count):
    return [{"email": f"p{i}@x.com", "first_name": "P", "last_name": str(i)} for i in range(count)]


def test_upload_processes_every_batch(make_service, tenant_id, roster_csv, session_factory):
    service = make_service(batch_size=2)
    rows = _people(5) + [{"email": "p0@x.com", "first_name": "Dup", "last_name": "Row"}]

    result = service.process_csv_upload(tenant_id, roster_csv(rows), filename="roster.csv")

    assert result.status == JobStatus.processing.value
    assert result.total_rows == 6
    assert result.total_employees == 5
    assert result.total_batches == math.ceil(5 / 2)
    assert result.invalid_records == 1
    assert result.errors == ["Row 7: Duplicate email address"]

    report = service.get_status(tenant_id, result.job_id)
    assert report.status == JobStatus.completed
    assert report.progress.percentage == 100
    assert report.progress.completed_batches == 3
    assert report.progress.total_processed == 5
    assert report.progress.total_successful == 5
    assert report.progress.total_failed == 0
    assert [b.employee_count for b in report.batch_details] == [2, 2, 1]
    with session_factory() as db:
        assert db.query(Employee).count() == 5


def test_dry_run_has_no_side_effects(make_service, store, tenant_id, roster_csv, session_factory):
    queue = HeldQueue()
    service = make_service(batch_queue=queue)

    result = service.process_csv_upload(
        tenant_id, roster_csv(_people(3)), options=UploadOptions(dry_run=True)
    )

    assert result.dry_run is True
    assert result.job_id is None
    assert result.total_employees == 3
    assert result.total_batches == 1
    assert store.list_jobs(tenant_id) == []
    assert queue.tasks == []
    with session_factory() as db:
        assert db.query(Employee).count() == 0
        assert db.query(AppAssignment).count() == 0


def test_batches_are_staggered_by_index(make_service, tenant_id, roster_csv):
    queue = HeldQueue()
    service = make_service(batch_queue=queue, batch_size=1, batch_stagger_seconds=1.5)

    service.process_csv_upload(tenant_id, roster_csv(_people(3)))

    assert [delay for _, _, delay in queue.tasks] == [0.0, 1.5, 3.0]
    assert [args[0]["batch_index"] for _, args, _ in queue.tasks] == [0, 1, 2]


def test_status_reports_queued_batches_and_monotonic_progress(make_service, tenant_id, roster_csv):
    queue = HeldQueue()
    service = make_service(batch_queue=queue, batch_size=2)
    result = service.process_csv_upload(tenant_id, roster_csv(_people(4)))

    before = service.get_status(tenant_id, result.job_id)
    assert before.status == JobStatus.processing
    assert [b.status for b in before.batch_details] == [BatchState.queued, BatchState.queued]
    assert before.progress.percentage == 0
    assert before.timing.estimated_completion is not None

    # second batch finishes first
    fn, args, _ = queue.tasks.pop(1)
    fn(*args)
    middle = service.get_status(tenant_id, result.job_id)
    assert middle.progress.completed_batches == 1
    assert middle.progress.percentage == 50
    assert middle.status == JobStatus.processing

    queue.run_all()
    after = service.get_status(tenant_id, result.job_id)
    assert after.progress.completed_batches == 2 <= after.progress.total_batches
    assert after.status == JobStatus.completed


def test_roster_without_valid_rows_fails_the_job(make_service, store, tenant_id, roster_csv):
    service = make_service()
    rows = [{"email": "nope", "first_name": "A", "last_name": "B"}]

    result = service.process_csv_upload(tenant_id, roster_csv(rows))

    assert result.status == JobStatus.failed.value
    assert result.total_batches == 0
    job = store.get_job(tenant_id, result.job_id)
    assert job.status == JobStatus.failed
    assert job.error


def test_structural_errors_create_no_job(make_service, store, tenant_id):
    service = make_service()
    with pytest.raises(RosterFormatError):
        service.process_csv_upload(tenant_id, b"name,department\nBob,Sales\n")
    assert store.list_jobs(tenant_id) == []


def test_unknown_or_inactive_tenant(make_service, make_company, roster_csv):
    service = make_service()
    inactive = make_company(is_active=False)
    with pytest.raises(TenantNotFoundError):
        service.process_csv_upload(inactive, roster_csv(_people(1)))


def test_tenant_capacity_is_enforced(make_service, make_company, roster_csv):
    tenant = make_company(max_employees=2)
    service = make_service()

    result = service.process_csv_upload(tenant, roster_csv(_people(4)))

    assert result.total_employees == 2
    assert result.invalid_records == 2
    assert all("Exceeds tenant employee limit" in r.reasons for r in result.invalid_employees)


def test_existing_employees_are_rejected_on_second_upload(make_service, tenant_id, roster_csv):
    service = make_service()
    service.process_csv_upload(tenant_id, roster_csv(_people(2)))

    again = service.process_csv_upload(tenant_id, roster_csv(_people(3)))

    assert again.total_employees == 1
    assert [r.reasons for r in again.invalid_employees] == [["Employee already exists"]] * 2


def test_dispatch_failure_marks_batch_failed(make_service, tenant_id, roster_csv):
    service = make_service(batch_queue=BrokenQueue(), batch_size=1)
    result = service.process_csv_upload(tenant_id, roster_csv(_people(2)))

    report = service.get_status(tenant_id, result.job_id)
    assert [b.status for b in report.batch_details] == [BatchState.failed, BatchState.failed]
    assert report.batch_details[0].error.startswith("Dispatch failed")
    assert report.status == JobStatus.completed
    assert report.progress.percentage == 0


def test_cancel_stops_batches_that_have_not_started(make_service, tenant_id, roster_csv, session_factory):
    queue = HeldQueue()
    service = make_service(batch_queue=queue, batch_size=2)
    result = service.process_csv_upload(tenant_id, roster_csv(_people(4)))

    fn, args, _ = queue.tasks.pop(0)
    fn(*args)
    job = service.cancel_job(tenant_id, result.job_id)
    assert job.status == JobStatus.cancelled
    queue.run_all()

    report = service.get_status(tenant_id, result.job_id)
    assert report.status == JobStatus.cancelled
    assert [b.status for b in report.batch_details] == [BatchState.completed, BatchState.failed]
    # the batch that ran before the cancel keeps its results
    with session_factory() as db:
        assert db.query(Employee).count() == 2

    # cancelling again is a no-op
    assert service.cancel_job(tenant_id, result.job_id).status == JobStatus.cancelled


def test_unknown_job(make_service, tenant_id):
    with pytest.raises(JobNotFoundError):
        make_service().get_status(tenant_id, "onboarding_missing")


def test_history_lists_tenant_jobs(make_service, tenant_id, roster_csv):
    service = make_service()
    first = service.process_csv_upload(tenant_id, roster_csv(_people(1)), filename="a.csv")

    history = service.history(tenant_id)
    assert [h.job_id for h in history] == [first.job_id]
    assert history[0].filename == "a.csv"
    assert history[0].status == JobStatus.completed


def test_recommendations_for_existing_employee(make_service, tenant_id, roster_csv, session_factory):
    service = make_service()
    rows = [{"email": "m@x.com", "first_name": "M", "last_name": "N", "department": "Finance"}]
    service.process_csv_upload(tenant_id, roster_csv(rows, headers=["email", "first_name", "last_name", "department"]))
    with session_factory() as db:
        employee_id = db.query(Employee.id).scalar()

    recs = service.recommend_for_employee(tenant_id, employee_id)
    assert [r.app.value for r in recs] == ["innerarchitect"]

    with pytest.raises(EmployeeNotFoundError):
        service.recommend_for_employee(tenant_id, "00000000-0000-0000-0000-000000000001")


def test_template_parses_cleanly():
    rows = parse_roster(TEMPLATE_CSV.encode("utf-8"))
    assert len(rows) == 4
    assert all(r.email for r in rows)
