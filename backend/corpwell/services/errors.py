"""Exceptions raised by the bulk onboarding pipeline."""

import enum


class OnboardingError(Exception):
    """Base class for onboarding pipeline failures."""


class RosterFormatError(OnboardingError):
    """The uploaded file cannot be read as a roster. Aborts the whole upload."""


class TenantNotFoundError(OnboardingError):
    pass


class JobNotFoundError(OnboardingError):
    pass


class EmployeeNotFoundError(OnboardingError):
    pass


class StoreUnavailableError(OnboardingError):
    """The job store backend could not be reached."""


class ProvisioningError(OnboardingError):
    pass


class RecommendationError(OnboardingError):
    """The AI recommendation path failed; callers degrade to the rule table."""


class NormalizationIssue(str, enum.Enum):
    EMPTY_ROW = "empty_row"
    MALFORMED_ROW = "malformed_row"
    INVALID_BIRTH_YEAR = "invalid_birth_year"
    INVALID_AGE = "invalid_age"


class NormalizationError(ValueError):
    def __init__(self, issue: NormalizationIssue, detail: str):
        super().__init__(detail)
        self.issue = issue
        self.detail = detail
