import uuid

from sqlalchemy import Column, String, Boolean, DateTime, Integer, Text, ForeignKey, JSON, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from corpwell.database import Base


class Employee(Base):
    __tablename__ = "employees"
    __table_args__ = (
        UniqueConstraint("company_id", "email", name="uq_employees_company_email"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, nullable=False)
    company_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("companies.company_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    email = Column(String(255), nullable=False, index=True)
    employee_number = Column(String(100), nullable=True)

    # PII columns hold whatever the encryption collaborator returns
    first_name_encrypted = Column(Text, nullable=True)
    last_name_encrypted = Column(Text, nullable=True)

    department = Column(String(100), nullable=True)
    role = Column(String(200), nullable=True)
    manager_ref = Column(String(100), nullable=True)
    location = Column(String(200), nullable=True)

    birth_year = Column(Integer, nullable=True)
    gender = Column(String(50), nullable=True)
    marital_status = Column(String(50), nullable=True)
    has_dependents = Column(Boolean, default=False, nullable=False)
    stress_level = Column(String(50), nullable=True)
    health_conditions = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=True)
    custom_fields = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=True)

    # "pending" until activated, "active" when autoActivate was requested
    account_status = Column(String(50), nullable=False, default="pending")

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
