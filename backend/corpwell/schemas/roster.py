from pydantic import BaseModel
from typing import Optional

from corpwell.services.errors import NormalizationIssue


class EmployeeRecord(BaseModel):
    """One roster row after normalization. `row_index` is the CSV line number."""

    row_index: int

    email: Optional[str] = None
    employee_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    department: Optional[str] = None
    role: Optional[str] = None
    manager_id: Optional[str] = None
    location: Optional[str] = None

    # Demographics used by the recommender
    birth_year: Optional[int] = None
    age: Optional[int] = None
    gender: Optional[str] = None
    marital_status: Optional[str] = None
    has_dependents: bool = False

    # Spouse / partner
    include_spouse: bool = False
    spouse_email: Optional[str] = None

    health_conditions: list[str] = []
    stress_level: Optional[str] = None

    custom_fields: dict[str, str] = {}

    def recommendation_profile(self) -> dict:
        """The subset of the record shared with the recommendation capability."""
        return {
            "age": self.age,
            "gender": self.gender,
            "marital_status": self.marital_status,
            "department": self.department,
            "has_dependents": self.has_dependents,
            "include_spouse": self.include_spouse,
            "health_conditions": list(self.health_conditions),
            "stress_level": self.stress_level,
        }


class NormalizationFailure(BaseModel):
    row_index: int
    issue: NormalizationIssue
    reason: str
    raw: dict[str, str] = {}


class InvalidEmployee(BaseModel):
    row_index: int
    email: Optional[str] = None
    reasons: list[str]
    employee: Optional[EmployeeRecord] = None


class ValidationResult(BaseModel):
    valid_employees: list[EmployeeRecord] = []
    invalid_employees: list[InvalidEmployee] = []
    errors: list[str] = []

    @property
    def total_rows(self) -> int:
        return len(self.valid_employees) + len(self.invalid_employees)
