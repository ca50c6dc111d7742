import enum
import uuid

from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, JSON, UniqueConstraint, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from corpwell.database import Base


class AppName(str, enum.Enum):
    fertilitytracker = "fertilitytracker"      # conception monitoring
    pregnancycompanion = "pregnancycompanion"  # pregnancy journey support
    postpartumsupport = "postpartumsupport"    # postpartum & new parent wellness
    menowellness = "menowellness"              # menopause & hormone health
    supportpartner = "supportpartner"          # partner support during transitions
    myconfidant = "myconfidant"                # relationship support
    soberpal = "soberpal"                      # addiction recovery
    innerarchitect = "innerarchitect"          # personal development


APP_DESCRIPTIONS = {
    AppName.fertilitytracker: "Conception monitoring & fertility optimization",
    AppName.pregnancycompanion: "Comprehensive pregnancy journey support",
    AppName.postpartumsupport: "Postpartum depression & new parent wellness",
    AppName.menowellness: "Menopause symptoms & hormone health",
    AppName.supportpartner: "Partner support during health transitions",
    AppName.myconfidant: "Erectile dysfunction & relationship support",
    AppName.soberpal: "Addiction recovery & sobriety support",
    AppName.innerarchitect: "Personal development with 50+ NLP techniques",
}


class AppAssignment(Base):
    __tablename__ = "app_assignments"
    __table_args__ = (
        # one row per (employee, app, spouse flag); re-provisioning updates it
        UniqueConstraint("employee_id", "app_name", "assigned_to_spouse", name="uq_app_assignments_employee_app"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, nullable=False)
    employee_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    app_name = Column(String(100), nullable=False, index=True)
    access_level = Column(String(50), nullable=False, default="basic")
    app_config = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=True)

    status = Column(String(50), nullable=False, default="active", index=True)
    assigned_to_spouse = Column(Boolean, default=False, nullable=False)
    spouse_email = Column(String(255), nullable=True)

    provisioned_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
