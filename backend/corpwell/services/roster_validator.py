"""
Roster validation: split normalized rows into accepted and rejected sets.

Rules per record, in order:
  1. email present and well formed
  2. email not already seen earlier in this upload
  3. first and last name present
  4. employee does not already exist for the tenant (external lookup)
  5. tenant capacity not exceeded, counting records accepted so far

Once capacity is used up, later rows still get the cheap checks (1-3) but
the existence lookup is no longer performed for them.
"""
import logging
import re
from typing import Callable, Iterable, Optional, Sequence

from pydantic import EmailStr, TypeAdapter, ValidationError

from corpwell.schemas.roster import EmployeeRecord, InvalidEmployee, NormalizationFailure, ValidationResult

logger = logging.getLogger(__name__)

EMAIL_REQUIRED = "Email is required"
EMAIL_INVALID = "Invalid email format"
EMAIL_DUPLICATE = "Duplicate email address"
FIRST_NAME_REQUIRED = "First name is required"
LAST_NAME_REQUIRED = "Last name is required"
EMPLOYEE_EXISTS = "Employee already exists"
CAPACITY_EXCEEDED = "Exceeds tenant employee limit"

DEFAULT_LOOKUP_CHUNK = 500

_email_adapter = TypeAdapter(EmailStr)

EMAIL_SHAPE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# email_validator refuses these even with deliverability checks off
SPECIAL_USE_TLDS = {"local", "localhost", "test", "invalid", "example", "internal", "lan", "corp", "home"}

# Takes a list of emails, returns the subset that already exist for the tenant.
ExistingEmailsLookup = Callable[[Sequence[str]], Iterable[str]]


def is_valid_email(email: str) -> bool:
    # EmailStr also accepts the "Name <addr>" form; a roster cell must be a bare address
    if "<" in email or any(c.isspace() for c in email):
        return False
    if not EMAIL_SHAPE.match(email):
        return False
    try:
        _email_adapter.validate_python(email)
    except ValidationError:
        # on-prem directories export addresses like jane@corp.local
        return email.rsplit(".", 1)[-1].lower() in SPECIAL_USE_TLDS
    return True


class _ExistenceCache:
    """Resolves existence lazily in chunks so per-row attribution is kept
    while the lookup callable is hit once per chunk, not once per row."""

    def __init__(self, lookup: ExistingEmailsLookup, chunk_size: int):
        self._lookup = lookup
        self._chunk_size = max(1, chunk_size)
        self._checked: set[str] = set()
        self._existing: set[str] = set()
        self.calls = 0

    def exists(self, email: str, upcoming: list[str], limit: Optional[int]) -> bool:
        if email not in self._checked:
            size = self._chunk_size if limit is None else max(1, min(self._chunk_size, limit))
            chunk = [email]
            for candidate in upcoming:
                if len(chunk) >= size:
                    break
                if candidate not in self._checked and candidate not in chunk:
                    chunk.append(candidate)
            self.calls += 1
            self._existing.update(e.lower() for e in self._lookup(chunk))
            self._checked.update(chunk)
        return email in self._existing


def validate_roster(
    rows: Sequence[EmployeeRecord | NormalizationFailure],
    *,
    existing_emails: ExistingEmailsLookup,
    current_count: int = 0,
    max_employees: Optional[int] = None,
    lookup_chunk_size: int = DEFAULT_LOOKUP_CHUNK,
) -> ValidationResult:
    result = ValidationResult()
    seen: set[str] = set()
    cache = _ExistenceCache(existing_emails, lookup_chunk_size)

    # well-formed emails in row order, used to fill lookup chunks ahead of time
    upcoming = [
        r.email for r in rows
        if isinstance(r, EmployeeRecord) and r.email and is_valid_email(r.email)
    ]
    cursor = 0

    def remaining_capacity() -> Optional[int]:
        if max_employees is None:
            return None
        return max_employees - current_count - len(result.valid_employees)

    for row in rows:
        if isinstance(row, NormalizationFailure):
            _reject(result, row.row_index, None, [row.reason], None)
            continue

        reasons: list[str] = []
        email_ok = False

        if not row.email:
            reasons.append(EMAIL_REQUIRED)
        elif not is_valid_email(row.email):
            reasons.append(EMAIL_INVALID)
        elif row.email in seen:
            reasons.append(EMAIL_DUPLICATE)
        else:
            seen.add(row.email)
            email_ok = True

        if row.email and email_ok:
            # keep the look-ahead window positioned after this row
            while cursor < len(upcoming) and upcoming[cursor] != row.email:
                cursor += 1
            cursor += 1

        if not row.first_name:
            reasons.append(FIRST_NAME_REQUIRED)
        if not row.last_name:
            reasons.append(LAST_NAME_REQUIRED)

        capacity = remaining_capacity()
        full = capacity is not None and capacity <= 0

        if email_ok and not full:
            if cache.exists(row.email, upcoming[cursor:], capacity):
                reasons.append(EMPLOYEE_EXISTS)

        if full:
            reasons.append(CAPACITY_EXCEEDED)

        if reasons:
            _reject(result, row.row_index, row.email, reasons, row)
        else:
            result.valid_employees.append(row)

    logger.info(
        "Roster validated: %d valid, %d invalid, %d existence lookups",
        len(result.valid_employees), len(result.invalid_employees), cache.calls,
    )
    return result


def _reject(result: ValidationResult, row_index: int, email, reasons: list[str], record) -> None:
    result.invalid_employees.append(
        InvalidEmployee(row_index=row_index, email=email, reasons=reasons, employee=record)
    )
    result.errors.append(f"Row {row_index}: {', '.join(reasons)}")
