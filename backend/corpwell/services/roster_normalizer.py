"""
Turn uploaded roster bytes into canonical EmployeeRecord objects.

Parsing (bytes -> rows) can fail for the whole file; normalization
(row -> record) fails per row and never touches anything outside the row.
"""
import csv
import io
import logging
import re
from datetime import date
from typing import Optional, Union

from corpwell.schemas.roster import EmployeeRecord, NormalizationFailure
from corpwell.services.errors import NormalizationError, NormalizationIssue, RosterFormatError

logger = logging.getLogger(__name__)

# First data row sits on line 2, under the header.
FIRST_DATA_ROW = 2

TRUE_VALUES = {"true", "yes", "1", "y"}

# canonical field -> accepted header spellings, first match wins
FIELD_ALIASES = {
    "email": ("email",),
    "employee_id": ("employee_id", "id"),
    "first_name": ("first_name", "firstname"),
    "last_name": ("last_name", "lastname"),
    "department": ("department",),
    "role": ("role", "position", "job_title"),
    "manager_id": ("manager_id", "manager_employee_id"),
    "location": ("location", "office"),
    "birth_year": ("birth_year",),
    "age": ("age",),
    "gender": ("gender",),
    "marital_status": ("marital_status",),
    "has_dependents": ("has_dependents", "dependents"),
    "include_spouse": ("include_spouse", "spouse_access"),
    "spouse_email": ("spouse_email",),
    "health_conditions": ("health_conditions",),
    "stress_level": ("stress_level",),
}

KNOWN_HEADERS = {alias for aliases in FIELD_ALIASES.values() for alias in aliases}

TEMPLATE_HEADERS = [
    "email", "first_name", "last_name", "employee_id", "department", "role",
    "manager_id", "location", "birth_year", "gender", "marital_status",
    "has_dependents", "include_spouse", "spouse_email", "health_conditions",
    "stress_level",
]

NormalizedRow = Union[EmployeeRecord, NormalizationFailure]


def normalize_header(header: Optional[str]) -> str:
    key = (header or "").strip().lower()
    return re.sub(r"[\s\-]+", "_", key)


def column_key(header: Optional[str]) -> str:
    """Row key for a header: the alias spelling for known columns, otherwise
    the header itself, only stripped and lower-cased."""
    alias = normalize_header(header)
    if alias in KNOWN_HEADERS:
        return alias
    return (header or "").strip().lower()


def parse_boolean(value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in TRUE_VALUES
    return False


def parse_roster_bytes(content: bytes) -> list[dict[str, str]]:
    """Decode CSV bytes into rows keyed by column_key(header).

    Raises RosterFormatError for anything that makes the file as a whole unusable.
    """
    if not content or not content.strip():
        raise RosterFormatError("Uploaded file is empty")

    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise RosterFormatError(f"File is not valid UTF-8 text: {e}") from e

    if "\x00" in text:
        raise RosterFormatError("File looks binary, expected CSV text")

    reader = csv.reader(io.StringIO(text))
    try:
        header_row = next(reader, None)
        if not header_row or not any(h.strip() for h in header_row):
            raise RosterFormatError("File has no header row")

        headers = [column_key(h) for h in header_row]
        if "email" not in headers:
            raise RosterFormatError(
                f"No email column detected. Found headers: {', '.join(header_row[:10])}. "
                "Download the template CSV for the expected format."
            )

        rows = []
        for cells in reader:
            # csv.reader yields [] for blank lines; those are not records
            if not cells:
                continue
            row = {}
            for i, cell in enumerate(cells):
                if i < len(headers):
                    if headers[i]:
                        row[headers[i]] = cell
                else:
                    # extra cells land under a reserved key, normalize_row rejects them
                    row.setdefault(None, []).append(cell)
            rows.append(row)
    except csv.Error as e:
        raise RosterFormatError(f"CSV parsing failed: {e}") from e

    return rows


def _first(row: dict, field: str) -> Optional[str]:
    for alias in FIELD_ALIASES[field]:
        value = row.get(alias)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def _lower(value: Optional[str]) -> Optional[str]:
    return value.lower() if value else None


def _parse_int(value: Optional[str], issue: NormalizationIssue, label: str, low: int, high: int) -> Optional[int]:
    if value is None:
        return None
    try:
        number = int(float(value)) if re.fullmatch(r"\d+(\.0+)?", value) else int(value)
    except ValueError:
        raise NormalizationError(issue, f"Invalid {label}: {value!r}")
    if not low <= number <= high:
        raise NormalizationError(issue, f"Invalid {label}: {value!r}")
    return number


def normalize_row(row: dict, row_index: int, reference_year: Optional[int] = None) -> EmployeeRecord:
    """Map one raw row to an EmployeeRecord or raise NormalizationError."""
    if None in row:
        raise NormalizationError(NormalizationIssue.MALFORMED_ROW, "Row has more cells than header columns")

    if all(not str(v).strip() for v in row.values()):
        raise NormalizationError(NormalizationIssue.EMPTY_ROW, "Row is empty")

    year = reference_year or date.today().year
    birth_year = _parse_int(_first(row, "birth_year"), NormalizationIssue.INVALID_BIRTH_YEAR, "birth year", 1900, year)
    age = _parse_int(_first(row, "age"), NormalizationIssue.INVALID_AGE, "age", 0, 130)
    if age is None and birth_year is not None:
        age = year - birth_year

    conditions = _first(row, "health_conditions")
    custom_fields = {
        key: value
        for key, value in row.items()
        if key not in KNOWN_HEADERS and value is not None and str(value).strip()
    }

    return EmployeeRecord(
        row_index=row_index,
        email=_lower(_first(row, "email")),
        employee_id=_first(row, "employee_id"),
        first_name=_first(row, "first_name"),
        last_name=_first(row, "last_name"),
        department=_first(row, "department"),
        role=_first(row, "role"),
        manager_id=_first(row, "manager_id"),
        location=_first(row, "location"),
        birth_year=birth_year,
        age=age,
        gender=_lower(_first(row, "gender")),
        marital_status=_lower(_first(row, "marital_status")),
        has_dependents=parse_boolean(_first(row, "has_dependents")),
        include_spouse=parse_boolean(_first(row, "include_spouse")),
        spouse_email=_lower(_first(row, "spouse_email")),
        health_conditions=[c.strip() for c in conditions.split(",") if c.strip()] if conditions else [],
        stress_level=_lower(_first(row, "stress_level")),
        custom_fields=custom_fields,
    )


def normalize_rows(rows: list[dict], reference_year: Optional[int] = None) -> list[NormalizedRow]:
    """Normalize every row, keeping failures in place so row order and count survive."""
    normalized: list[NormalizedRow] = []
    for i, row in enumerate(rows):
        row_index = i + FIRST_DATA_ROW
        try:
            normalized.append(normalize_row(row, row_index, reference_year))
        except NormalizationError as e:
            logger.debug("Row %d failed normalization: %s", row_index, e.detail)
            raw = {k: v for k, v in row.items() if isinstance(k, str)}
            normalized.append(NormalizationFailure(row_index=row_index, issue=e.issue, reason=e.detail, raw=raw))
    return normalized


def parse_roster(content: bytes, reference_year: Optional[int] = None) -> list[NormalizedRow]:
    return normalize_rows(parse_roster_bytes(content), reference_year)
