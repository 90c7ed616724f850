from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from timekeeping.db import Base, utcnow


class UserRole(str, enum.Enum):
    user = "user"
    admin = "admin"


class UserStatus(str, enum.Enum):
    active = "active"
    disabled = "disabled"


class SessionStatus(str, enum.Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class LeaveGrantType(str, enum.Enum):
    MONTHLY = "MONTHLY"
    DEDUCTION = "DEDUCTION"


class Department(Base):
    __tablename__ = "departments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    users: Mapped[list[User]] = relationship(back_populates="department")


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, name="user_role"),
        nullable=False,
        default=UserRole.user,
    )
    status: Mapped[UserStatus] = mapped_column(
        Enum(UserStatus, name="user_status"),
        nullable=False,
        default=UserStatus.active,
    )
    department_id: Mapped[int | None] = mapped_column(
        ForeignKey("departments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    birthday: Mapped[date | None] = mapped_column(Date, nullable=True)
    paid_leave: Mapped[float] = mapped_column(
        Numeric(5, 1, asdecimal=False),
        nullable=False,
        default=0.0,
        server_default=text("0"),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=utcnow,
    )

    department: Mapped[Department | None] = relationship(back_populates="users")
    sessions: Mapped[list[AttendanceSession]] = relationship(back_populates="user")


class AttendanceSession(Base):
    __tablename__ = "attendance_sessions"
    __table_args__ = (
        UniqueConstraint("user_id", "work_date", name="uq_attendance_sessions_user_work_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    work_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    check_in_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    check_out_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    worked_minutes: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )
    day_unit: Mapped[float] = mapped_column(
        Numeric(2, 1, asdecimal=False),
        nullable=False,
        default=0.0,
        server_default=text("0"),
    )
    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus, name="attendance_session_status"),
        nullable=False,
        default=SessionStatus.OPEN,
    )
    checkout_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=utcnow,
    )

    user: Mapped[User] = relationship(back_populates="sessions")


class WorkCalendarDay(Base):
    __tablename__ = "work_calendar"

    work_date: Mapped[date] = mapped_column(Date, primary_key=True)
    is_working_day: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    work_unit: Mapped[float] = mapped_column(
        Numeric(2, 1, asdecimal=False),
        nullable=False,
        default=1.0,
        server_default=text("1.0"),
    )
    note: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=utcnow,
    )


class LeaveMonthlySummary(Base):
    __tablename__ = "leave_monthly_summary"

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )
    year: Mapped[int] = mapped_column(SmallInteger, primary_key=True)
    month: Mapped[int] = mapped_column(SmallInteger, primary_key=True)
    expected_units: Mapped[float] = mapped_column(Numeric(6, 2, asdecimal=False), nullable=False, default=0.0)
    worked_units: Mapped[float] = mapped_column(Numeric(6, 2, asdecimal=False), nullable=False, default=0.0)
    missing_units: Mapped[float] = mapped_column(Numeric(6, 2, asdecimal=False), nullable=False, default=0.0)
    paid_used_units: Mapped[float] = mapped_column(Numeric(6, 2, asdecimal=False), nullable=False, default=0.0)
    unpaid_units: Mapped[float] = mapped_column(Numeric(6, 2, asdecimal=False), nullable=False, default=0.0)
    is_birthday: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    user: Mapped[User] = relationship()


class LeaveGrant(Base):
    __tablename__ = "leave_grants"
    __table_args__ = (
        UniqueConstraint(
            "grant_year",
            "grant_month",
            "grant_type",
            name="uq_leave_grants_year_month_type",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    grant_year: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    grant_month: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    grant_type: Mapped[LeaveGrantType] = mapped_column(
        Enum(LeaveGrantType, name="leave_grant_type"),
        nullable=False,
        default=LeaveGrantType.MONTHLY,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
