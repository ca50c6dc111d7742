"""
Provisioning: create the employee row and its app assignments.

Both writes are idempotent. Re-provisioning an employee returns the existing
row; re-assigning an app updates the existing assignment's config. Unique
constraint violations are resolved the same way instead of surfacing as
errors. Transient database failures are retried with backoff.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session
from tenacity import before_sleep_log, retry, retry_if_exception, stop_after_attempt, wait_exponential

from corpwell.models.app_assignment import AppAssignment, AppName
from corpwell.models.employee import Employee
from corpwell.schemas.onboarding import AssignmentResult, Recommendation
from corpwell.schemas.roster import EmployeeRecord
from corpwell.services.errors import ProvisioningError

logger = logging.getLogger(__name__)

EMPLOYEE_ACCESS_LEVEL = "basic"
SPOUSE_ACCESS_LEVEL = "spouse"


def is_transient_db_error(exc: BaseException) -> bool:
    """Connection resets, timeouts and pool exhaustion. Constraint violations are not transient."""
    if isinstance(exc, IntegrityError):
        return False
    if isinstance(exc, (OperationalError, PoolTimeoutError)):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


_retry_transient = retry(
    retry=retry_if_exception(is_transient_db_error),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, max=2),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


class PiiEncryptor(Protocol):
    def encrypt(self, value: Optional[str], tenant_id: str, subject: str) -> Optional[str]: ...


class PlaintextEncryptor:
    """Stores PII as given. For local development only; production wires the
    tenant's encryption service in its place."""

    def encrypt(self, value, tenant_id, subject):
        return value


@dataclass
class ProvisionedEmployee:
    employee_id: uuid.UUID
    created: bool


def _assignment_result(row: AppAssignment) -> AssignmentResult:
    return AssignmentResult(
        id=str(row.id),
        employee_id=str(row.employee_id),
        app_name=AppName(row.app_name),
        access_level=row.access_level,
        assigned_to_spouse=bool(row.assigned_to_spouse),
        status=row.status,
    )


class Provisioner:
    def __init__(self, session_factory: Callable[[], Session], encryptor: Optional[PiiEncryptor] = None):
        self._session_factory = session_factory
        self._encryptor = encryptor or PlaintextEncryptor()

    def provision(self, tenant_id, record: EmployeeRecord, *, auto_activate: bool = True) -> ProvisionedEmployee:
        if not record.email:
            raise ProvisioningError("Employee email is required")
        return self._create_employee(uuid.UUID(str(tenant_id)), record, "active" if auto_activate else "pending")

    @_retry_transient
    def _create_employee(self, tenant_uuid: uuid.UUID, record: EmployeeRecord, account_status: str) -> ProvisionedEmployee:
        email = record.email.strip().lower()
        with self._session_factory() as db:
            existing = (
                db.query(Employee.id)
                .filter(Employee.company_id == tenant_uuid, Employee.email == email)
                .first()
            )
            if existing:
                return ProvisionedEmployee(employee_id=existing[0], created=False)

            e = Employee(
                id=uuid.uuid4(),
                company_id=tenant_uuid,
                email=email,
                employee_number=record.employee_id,
                first_name_encrypted=self._encryptor.encrypt(record.first_name, str(tenant_uuid), email),
                last_name_encrypted=self._encryptor.encrypt(record.last_name, str(tenant_uuid), email),
                department=record.department,
                role=record.role,
                manager_ref=record.manager_id,
                location=record.location,
                birth_year=record.birth_year,
                gender=record.gender,
                marital_status=record.marital_status,
                has_dependents=record.has_dependents,
                stress_level=record.stress_level,
                health_conditions=list(record.health_conditions),
                custom_fields=dict(record.custom_fields),
                account_status=account_status,
            )
            db.add(e)
            try:
                db.commit()
            except IntegrityError:
                # another worker inserted the same (tenant, email) first
                db.rollback()
                existing = (
                    db.query(Employee.id)
                    .filter(Employee.company_id == tenant_uuid, Employee.email == email)
                    .first()
                )
                if not existing:
                    raise
                return ProvisionedEmployee(employee_id=existing[0], created=False)
            return ProvisionedEmployee(employee_id=e.id, created=True)

    @_retry_transient
    def assign(
        self,
        tenant_id,
        employee_id: uuid.UUID,
        recommendation: Recommendation,
        *,
        spouse_email: Optional[str] = None,
    ) -> AssignmentResult:
        app = AppName(recommendation.app)
        to_spouse = spouse_email is not None
        config = {
            "priority": recommendation.priority.value,
            "reason": recommendation.reason,
            "auto_provisioned": True,
            "tenant_id": str(tenant_id),
        }
        with self._session_factory() as db:
            row = self._find_assignment(db, employee_id, app, to_spouse)
            if row is None:
                row = AppAssignment(
                    id=uuid.uuid4(),
                    employee_id=employee_id,
                    app_name=app.value,
                    access_level=SPOUSE_ACCESS_LEVEL if to_spouse else EMPLOYEE_ACCESS_LEVEL,
                    app_config=config,
                    status="active",
                    assigned_to_spouse=to_spouse,
                    spouse_email=spouse_email,
                )
                db.add(row)
                try:
                    db.commit()
                    return _assignment_result(row)
                except IntegrityError:
                    db.rollback()
                    row = self._find_assignment(db, employee_id, app, to_spouse)
                    if row is None:
                        raise

            row.app_config = config
            row.status = "active"
            if to_spouse:
                row.spouse_email = spouse_email
            db.commit()
            return _assignment_result(row)

    def provision_apps(
        self,
        tenant_id,
        employee_id: uuid.UUID,
        recommendations: list[Recommendation],
        record: EmployeeRecord,
    ) -> list[AssignmentResult]:
        assignments = []
        for rec in recommendations:
            assignments.append(self.assign(tenant_id, employee_id, rec))
            if rec.include_spouse and record.spouse_email:
                assignments.append(self.assign(tenant_id, employee_id, rec, spouse_email=record.spouse_email))
        return assignments

    @staticmethod
    def _find_assignment(db: Session, employee_id, app: AppName, to_spouse: bool) -> Optional[AppAssignment]:
        return (
            db.query(AppAssignment)
            .filter(
                AppAssignment.employee_id == employee_id,
                AppAssignment.app_name == app.value,
                AppAssignment.assigned_to_spouse == to_spouse,
            )
            .first()
        )
