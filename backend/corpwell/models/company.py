import uuid

from sqlalchemy import Column, String, Boolean, DateTime, Integer, Uuid
from sqlalchemy.sql import func

from corpwell.database import Base


# ---------------------------------------------------
# Company (tenant)
# ---------------------------------------------------

class Company(Base):
    __tablename__ = "companies"

    company_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, nullable=False)
    name = Column(String(200), nullable=False)

    # null = no employee ceiling for this tenant
    max_employees = Column(Integer, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
