"""Read-side lookups against the tenant's employee table."""

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Callable, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from corpwell.models.company import Company
from corpwell.models.employee import Employee
from corpwell.schemas.roster import EmployeeRecord
from corpwell.services.errors import TenantNotFoundError

logger = logging.getLogger(__name__)

IN_CLAUSE_CHUNK = 500


def _as_uuid(value) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


@dataclass
class TenantCapacity:
    current_count: int
    max_employees: Optional[int]


class EmployeeDirectory:
    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def tenant_capacity(self, tenant_id) -> TenantCapacity:
        tenant_uuid = _as_uuid(tenant_id)
        with self._session_factory() as db:
            company = db.query(Company).filter(Company.company_id == tenant_uuid).first()
            if not company or not company.is_active:
                raise TenantNotFoundError(f"Tenant {tenant_id} not found")
            count = (
                db.query(func.count(Employee.id))
                .filter(Employee.company_id == tenant_uuid)
                .scalar()
            )
            return TenantCapacity(current_count=count or 0, max_employees=company.max_employees)

    def existing_emails(self, tenant_id, emails: Sequence[str]) -> set[str]:
        tenant_uuid = _as_uuid(tenant_id)
        wanted = [e.lower() for e in emails if e]
        found: set[str] = set()
        with self._session_factory() as db:
            for i in range(0, len(wanted), IN_CLAUSE_CHUNK):
                chunk = wanted[i:i + IN_CLAUSE_CHUNK]
                rows = (
                    db.query(Employee.email)
                    .filter(Employee.company_id == tenant_uuid, Employee.email.in_(chunk))
                    .all()
                )
                found.update(r[0] for r in rows)
        return found

    def get_employee(self, tenant_id, employee_id) -> Optional[EmployeeRecord]:
        """Rebuild a recommendation profile for an already provisioned employee.

        Names stay encrypted and are not part of the profile.
        """
        with self._session_factory() as db:
            e = (
                db.query(Employee)
                .filter(Employee.company_id == _as_uuid(tenant_id), Employee.id == _as_uuid(employee_id))
                .first()
            )
            if not e:
                return None
            return EmployeeRecord(
                row_index=0,
                email=e.email,
                employee_id=e.employee_number,
                department=e.department,
                role=e.role,
                manager_id=e.manager_ref,
                location=e.location,
                birth_year=e.birth_year,
                age=date.today().year - e.birth_year if e.birth_year else None,
                gender=e.gender,
                marital_status=e.marital_status,
                has_dependents=bool(e.has_dependents),
                health_conditions=list(e.health_conditions or []),
                stress_level=e.stress_level,
                custom_fields=dict(e.custom_fields or {}),
            )
