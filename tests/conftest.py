import os
import uuid
from dataclasses import replace

# corpwell.database builds its engine at import time
os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from corpwell.config import OnboardingSettings
from corpwell.database import Base
from corpwell.models.app_assignment import AppAssignment  # noqa: F401
from corpwell.models.audit_log import AuditLog  # noqa: F401
from corpwell.models.company import Company
from corpwell.models.employee import Employee  # noqa: F401


@pytest.fixture()
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def make_company(session_factory):
    def _make(max_employees=None, is_active=True, name="Acme Corp"):
        company_id = uuid.uuid4()
        with session_factory() as db:
            db.add(Company(company_id=company_id, name=name, max_employees=max_employees, is_active=is_active))
            db.commit()
        return company_id

    return _make


@pytest.fixture()
def tenant_id(make_company):
    return make_company()


@pytest.fixture()
def settings():
    # no AI provider, no backoff, no stagger: everything runs immediately and offline
    return replace(
        OnboardingSettings(),
        recommender_provider="none",
        batch_backoff_seconds=0.0,
        batch_stagger_seconds=0.0,
    )


def _roster_csv(rows, headers=None) -> bytes:
    headers = headers or ["email", "first_name", "last_name"]
    lines = [",".join(headers)]
    for row in rows:
        lines.append(",".join(str(row.get(h, "")) for h in headers))
    return ("\n".join(lines) + "\n").encode("utf-8")


@pytest.fixture()
def roster_csv():
    """Build CSV bytes from a list of dicts."""
    return _roster_csv
