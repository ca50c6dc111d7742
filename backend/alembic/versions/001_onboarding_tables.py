"""Onboarding tables: companies, employees, app_assignments, audit_log

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_JSON = sa.JSON().with_variant(JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "companies",
        sa.Column("company_id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("max_employees", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "employees",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "company_id", sa.Uuid(),
            sa.ForeignKey("companies.company_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("employee_number", sa.String(100), nullable=True),
        sa.Column("first_name_encrypted", sa.Text(), nullable=True),
        sa.Column("last_name_encrypted", sa.Text(), nullable=True),
        sa.Column("department", sa.String(100), nullable=True),
        sa.Column("role", sa.String(200), nullable=True),
        sa.Column("manager_ref", sa.String(100), nullable=True),
        sa.Column("location", sa.String(200), nullable=True),
        sa.Column("birth_year", sa.Integer(), nullable=True),
        sa.Column("gender", sa.String(50), nullable=True),
        sa.Column("marital_status", sa.String(50), nullable=True),
        sa.Column("has_dependents", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("stress_level", sa.String(50), nullable=True),
        sa.Column("health_conditions", _JSON, nullable=True),
        sa.Column("custom_fields", _JSON, nullable=True),
        sa.Column("account_status", sa.String(50), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("company_id", "email", name="uq_employees_company_email"),
    )
    op.create_index("ix_employees_company_id", "employees", ["company_id"])
    op.create_index("ix_employees_email", "employees", ["email"])

    op.create_table(
        "app_assignments",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "employee_id", sa.Uuid(),
            sa.ForeignKey("employees.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("app_name", sa.String(100), nullable=False),
        sa.Column("access_level", sa.String(50), nullable=False, server_default="basic"),
        sa.Column("app_config", _JSON, nullable=True),
        sa.Column("status", sa.String(50), nullable=False, server_default="active"),
        sa.Column("assigned_to_spouse", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("spouse_email", sa.String(255), nullable=True),
        sa.Column("provisioned_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint(
            "employee_id", "app_name", "assigned_to_spouse", name="uq_app_assignments_employee_app"
        ),
    )
    op.create_index("ix_app_assignments_employee_id", "app_assignments", ["employee_id"])
    op.create_index("ix_app_assignments_app_name", "app_assignments", ["app_name"])
    op.create_index("ix_app_assignments_status", "app_assignments", ["status"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("resource_type", sa.String(100), nullable=False),
        sa.Column("resource_id", sa.String(255), nullable=True),
        sa.Column("details", _JSON, nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_audit_log_tenant_id", "audit_log", ["tenant_id"])


def downgrade() -> None:
    op.drop_table("audit_log")
    op.drop_table("app_assignments")
    op.drop_table("employees")
    op.drop_table("companies")
