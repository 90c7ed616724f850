"""Initial time and attendance schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 00:00:00
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

user_role = postgresql.ENUM("user", "admin", name="user_role", create_type=False)
user_status = postgresql.ENUM("active", "disabled", name="user_status", create_type=False)
attendance_session_status = postgresql.ENUM(
    "OPEN",
    "CLOSED",
    name="attendance_session_status",
    create_type=False,
)
leave_grant_type = postgresql.ENUM(
    "MONTHLY",
    "DEDUCTION",
    name="leave_grant_type",
    create_type=False,
)

_ENUMS = (user_role, user_status, attendance_session_status, leave_grant_type)


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in _ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "departments",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.UniqueConstraint("name", name="uq_departments_name"),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("role", user_role, nullable=False),
        sa.Column("status", user_status, nullable=False),
        sa.Column("department_id", sa.Integer(), nullable=True),
        sa.Column("birthday", sa.Date(), nullable=True),
        sa.Column("paid_leave", sa.Numeric(5, 1), nullable=False, server_default=sa.text("0")),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(
            ["department_id"],
            ["departments.id"],
            name="fk_users_department_id_departments",
            ondelete="SET NULL",
        ),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )
    op.create_index("ix_users_department_id", "users", ["department_id"], unique=False)

    op.create_table(
        "attendance_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("work_date", sa.Date(), nullable=False),
        sa.Column("check_in_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("check_out_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("worked_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("day_unit", sa.Numeric(2, 1), nullable=False, server_default=sa.text("0")),
        sa.Column("status", attendance_session_status, nullable=False),
        sa.Column("checkout_reason", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(
            ["user_id"],
            ["users.id"],
            name="fk_attendance_sessions_user_id_users",
            ondelete="CASCADE",
        ),
        sa.UniqueConstraint("user_id", "work_date", name="uq_attendance_sessions_user_work_date"),
    )
    op.create_index("ix_attendance_sessions_user_id", "attendance_sessions", ["user_id"], unique=False)
    op.create_index("ix_attendance_sessions_work_date", "attendance_sessions", ["work_date"], unique=False)

    op.create_table(
        "work_calendar",
        sa.Column("work_date", sa.Date(), primary_key=True, nullable=False),
        sa.Column("is_working_day", sa.Boolean(), nullable=False),
        sa.Column("work_unit", sa.Numeric(2, 1), nullable=False, server_default=sa.text("1.0")),
        sa.Column("note", sa.String(length=255), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )

    op.create_table(
        "leave_monthly_summary",
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("year", sa.SmallInteger(), nullable=False),
        sa.Column("month", sa.SmallInteger(), nullable=False),
        sa.Column("expected_units", sa.Numeric(6, 2), nullable=False),
        sa.Column("worked_units", sa.Numeric(6, 2), nullable=False),
        sa.Column("missing_units", sa.Numeric(6, 2), nullable=False),
        sa.Column("paid_used_units", sa.Numeric(6, 2), nullable=False),
        sa.Column("unpaid_units", sa.Numeric(6, 2), nullable=False),
        sa.Column("is_birthday", sa.Boolean(), nullable=False),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("user_id", "year", "month", name="pk_leave_monthly_summary"),
        sa.ForeignKeyConstraint(
            ["user_id"],
            ["users.id"],
            name="fk_leave_monthly_summary_user_id_users",
            ondelete="CASCADE",
        ),
    )

    op.create_table(
        "leave_grants",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("grant_year", sa.SmallInteger(), nullable=False),
        sa.Column("grant_month", sa.SmallInteger(), nullable=False),
        sa.Column("grant_type", leave_grant_type, nullable=False),
        _timestamp("created_at"),
        sa.UniqueConstraint(
            "grant_year",
            "grant_month",
            "grant_type",
            name="uq_leave_grants_year_month_type",
        ),
    )


def downgrade() -> None:
    op.drop_table("leave_grants")
    op.drop_table("leave_monthly_summary")
    op.drop_table("work_calendar")
    op.drop_index("ix_attendance_sessions_work_date", table_name="attendance_sessions")
    op.drop_index("ix_attendance_sessions_user_id", table_name="attendance_sessions")
    op.drop_table("attendance_sessions")
    op.drop_index("ix_users_department_id", table_name="users")
    op.drop_table("users")
    op.drop_table("departments")

    bind = op.get_bind()
    for enum_type in reversed(_ENUMS):
        enum_type.drop(bind, checkfirst=True)
