"""Initial attendance and leave schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 09:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

employee_role = postgresql.ENUM("EMPLOYEE", "MANAGER", "HR", "ADMIN", name="employee_role", create_type=False)
employment_status = postgresql.ENUM(
    "ACTIVE",
    "RESIGNED",
    "TERMINATED",
    name="employment_status",
    create_type=False,
)
holiday_type = postgresql.ENUM("NATIONAL", "REGIONAL", "COMPANY", name="holiday_type", create_type=False)
attendance_status = postgresql.ENUM(
    "PRESENT",
    "LATE",
    "HALF_DAY",
    "ABSENT",
    "ON_LEAVE",
    "HOLIDAY",
    name="attendance_status",
    create_type=False,
)
leave_type = postgresql.ENUM("CASUAL", "SICK", "ANNUAL", "UNPAID", name="leave_type", create_type=False)
leave_status = postgresql.ENUM(
    "PENDING",
    "APPROVED",
    "REJECTED",
    "CANCELLED",
    name="leave_status",
    create_type=False,
)
reconciliation_trigger = postgresql.ENUM(
    "SCHEDULE",
    "MANUAL",
    "CLI",
    name="reconciliation_trigger",
    create_type=False,
)
reconciliation_run_status = postgresql.ENUM(
    "RUNNING",
    "COMPLETED",
    "FAILED",
    name="reconciliation_run_status",
    create_type=False,
)
audit_actor_type = postgresql.ENUM(
    "EMPLOYEE",
    "MANAGER",
    "HR",
    "ADMIN",
    "SYSTEM",
    name="audit_actor_type",
    create_type=False,
)

ALL_ENUMS = (
    employee_role,
    employment_status,
    holiday_type,
    attendance_status,
    leave_type,
    leave_status,
    reconciliation_trigger,
    reconciliation_run_status,
    audit_actor_type,
)


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ALL_ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "departments",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("code", sa.String(length=32), nullable=True),
        sa.Column("manager_id", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.UniqueConstraint("name", name="uq_departments_name"),
        sa.UniqueConstraint("code", name="uq_departments_code"),
    )
    op.create_index("ix_departments_manager_id", "departments", ["manager_id"], unique=False)

    op.create_table(
        "employees",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("role", employee_role, nullable=False, server_default=sa.text("'EMPLOYEE'")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "employment_status",
            employment_status,
            nullable=False,
            server_default=sa.text("'ACTIVE'"),
        ),
        sa.Column("department_id", sa.Integer(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["department_id"], ["departments.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("email", name="uq_employees_email"),
    )
    op.create_index("ix_employees_department_id", "employees", ["department_id"], unique=False)

    op.create_foreign_key(
        "fk_departments_manager_id",
        "departments",
        "employees",
        ["manager_id"],
        ["id"],
        ondelete="SET NULL",
    )

    op.create_table(
        "holidays",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("day_date", sa.Date(), nullable=False),
        sa.Column("holiday_type", holiday_type, nullable=False, server_default=sa.text("'COMPANY'")),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_by_id", sa.Integer(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["created_by_id"], ["employees.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("day_date", name="uq_holidays_day_date"),
    )
    op.create_index("ix_holidays_year", "holidays", ["year"], unique=False)

    op.create_table(
        "attendance_records",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("day_date", sa.Date(), nullable=False),
        sa.Column("check_in", sa.DateTime(timezone=True), nullable=True),
        sa.Column("check_out", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", attendance_status, nullable=False, server_default=sa.text("'ABSENT'")),
        sa.Column("work_hours", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("marked_by_id", sa.Integer(), nullable=True),
        sa.Column("is_manual", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _created_at(),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["marked_by_id"], ["employees.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("employee_id", "day_date", name="uq_attendance_records_employee_day"),
    )
    op.create_index("ix_attendance_records_employee_id", "attendance_records", ["employee_id"], unique=False)
    op.create_index(
        "ix_attendance_records_day_status",
        "attendance_records",
        ["day_date", "status"],
        unique=False,
    )

    op.create_table(
        "leave_applications",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("leave_type", leave_type, nullable=False),
        sa.Column("from_date", sa.Date(), nullable=False),
        sa.Column("to_date", sa.Date(), nullable=False),
        sa.Column("total_days", sa.Float(), nullable=False),
        sa.Column("reason", sa.String(length=500), nullable=False),
        sa.Column("status", leave_status, nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("is_half_day", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column(
            "applied_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("reviewed_by_id", sa.Integer(), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.String(length=300), nullable=True),
        sa.Column("attendance_marked", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["reviewed_by_id"], ["employees.id"], ondelete="SET NULL"),
        sa.CheckConstraint("to_date >= from_date", name="ck_leave_applications_date_range"),
    )
    op.create_index(
        "ix_leave_applications_employee_range",
        "leave_applications",
        ["employee_id", "from_date", "to_date"],
        unique=False,
    )
    op.create_index(
        "ix_leave_applications_status_applied",
        "leave_applications",
        ["status", "applied_at"],
        unique=False,
    )

    op.create_table(
        "leave_balances",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("leave_type", leave_type, nullable=False),
        sa.Column("total", sa.Float(), nullable=False),
        sa.Column("used", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("remaining", sa.Float(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["employee_id"], ["employees.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("employee_id", "year", "leave_type", name="uq_leave_balances_employee_year_type"),
        sa.CheckConstraint("used >= 0", name="ck_leave_balances_used_non_negative"),
    )
    op.create_index("ix_leave_balances_employee_id", "leave_balances", ["employee_id"], unique=False)

    op.create_table(
        "reconciliation_runs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("run_day", sa.Date(), nullable=False),
        sa.Column("trigger", reconciliation_trigger, nullable=False),
        sa.Column("status", reconciliation_run_status, nullable=False, server_default=sa.text("'RUNNING'")),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "summary",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("error", sa.Text(), nullable=True),
    )
    op.create_index("ix_reconciliation_runs_run_day", "reconciliation_runs", ["run_day"], unique=False)
    op.create_index(
        "uq_reconciliation_runs_single_running",
        "reconciliation_runs",
        ["status"],
        unique=True,
        postgresql_where=sa.text("status = 'RUNNING'"),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "ts_utc",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("ip", sa.String(length=128), nullable=True),
        sa.Column("user_agent", sa.String(length=1024), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_logs_ts_utc", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("uq_reconciliation_runs_single_running", table_name="reconciliation_runs")
    op.drop_index("ix_reconciliation_runs_run_day", table_name="reconciliation_runs")
    op.drop_table("reconciliation_runs")
    op.drop_index("ix_leave_balances_employee_id", table_name="leave_balances")
    op.drop_table("leave_balances")
    op.drop_index("ix_leave_applications_status_applied", table_name="leave_applications")
    op.drop_index("ix_leave_applications_employee_range", table_name="leave_applications")
    op.drop_table("leave_applications")
    op.drop_index("ix_attendance_records_day_status", table_name="attendance_records")
    op.drop_index("ix_attendance_records_employee_id", table_name="attendance_records")
    op.drop_table("attendance_records")
    op.drop_index("ix_holidays_year", table_name="holidays")
    op.drop_table("holidays")
    op.drop_constraint("fk_departments_manager_id", "departments", type_="foreignkey")
    op.drop_index("ix_employees_department_id", table_name="employees")
    op.drop_table("employees")
    op.drop_index("ix_departments_manager_id", table_name="departments")
    op.drop_table("departments")

    bind = op.get_bind()
    for enum_type in reversed(ALL_ENUMS):
        enum_type.drop(bind, checkfirst=True)
