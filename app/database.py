from __future__ import annotations

import datetime
import json
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    select,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker

from settings import DATA_DIR, DEFAULT_MODULE_KEY, database_url


DATA_DIR.mkdir(parents=True, exist_ok=True)
WORK_STATUS_CHOICES = {"present", "absent"}


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class Base(DeclarativeBase):
    """Metadata for report, directory and audit tables living in reports.db."""

    pass


class DailyReport(Base):
    __tablename__ = "daily_reports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    report_date: Mapped[datetime.date] = mapped_column(Date, nullable=False, index=True)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    module_key: Mapped[str] = mapped_column(String(64), nullable=False, default=DEFAULT_MODULE_KEY)
    notes: Mapped[str] = mapped_column(String(2000), nullable=False, default="")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    orders: Mapped[List["DailyReportOrder"]] = relationship(
        back_populates="report", cascade="all, delete-orphan"
    )
    staff: Mapped[List["DailyReportStaff"]] = relationship(
        back_populates="report", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("report_date", "created_by", "module_key", name="uq_daily_report_date_creator_module"),
    )


class DailyReportOrder(Base):
    __tablename__ = "daily_report_orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    daily_report_id: Mapped[int] = mapped_column(
        ForeignKey("daily_reports.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    activity_description: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    service_details: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    team_name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    notes: Mapped[str] = mapped_column(String(1000), nullable=False, default="")
    row_color: Mapped[str] = mapped_column(String(16), nullable=False, default="yellow")

    report: Mapped[DailyReport] = relationship(back_populates="orders")


class DailyReportStaff(Base):
    __tablename__ = "daily_report_staff"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    daily_report_id: Mapped[int] = mapped_column(
        ForeignKey("daily_reports.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    staff_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    staff_name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    work_status: Mapped[str] = mapped_column(String(12), nullable=False, default="absent")
    overtime_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    amount_received: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    receiving_notes: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    amount_spent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    spending_notes: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    notes: Mapped[str] = mapped_column(String(1000), nullable=False, default="")
    is_cash_box: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    report: Mapped[DailyReport] = relationship(back_populates="staff")


class DateLock(Base):
    __tablename__ = "daily_report_date_locks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    report_date: Mapped[datetime.date] = mapped_column(Date, nullable=False, unique=True)
    locked_by: Mapped[str] = mapped_column(String(64), nullable=False)
    locked_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class UserRole(Base):
    __tablename__ = "user_roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(80), nullable=False)

    __table_args__ = (UniqueConstraint("user_id", "role", name="uq_user_role"),)


class UserProfile(Base):
    __tablename__ = "profiles"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    full_name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False, default="")


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False, default="DailyReport")
    target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payloadJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    def payload_dict(self) -> Dict:
        try:
            value = json.loads(self.payloadJSON or "{}")
            if isinstance(value, dict):
                return value
        except json.JSONDecodeError:
            pass
        return {}


reports_engine = create_engine(
    database_url(),
    echo=False,
    future=True,
)
SessionLocal = sessionmaker(bind=reports_engine, expire_on_commit=False, future=True)


def init_database(engine=None) -> None:
    engine = engine or reports_engine
    Base.metadata.create_all(engine)
    if engine.dialect.name != "sqlite":
        return
    with engine.begin() as conn:
        columns = {row[1]: True for row in conn.execute(text("PRAGMA table_info(daily_reports)"))}
        if "module_key" not in columns:
            conn.execute(
                text(
                    "ALTER TABLE daily_reports ADD COLUMN module_key VARCHAR(64) "
                    f"NOT NULL DEFAULT '{DEFAULT_MODULE_KEY}'"
                )
            )
        staff_columns = {row[1]: True for row in conn.execute(text("PRAGMA table_info(daily_report_staff)"))}
        if "position" not in staff_columns:
            conn.execute(text("ALTER TABLE daily_report_staff ADD COLUMN position INTEGER NOT NULL DEFAULT 0"))
        order_columns = {row[1]: True for row in conn.execute(text("PRAGMA table_info(daily_report_orders)"))}
        if "position" not in order_columns:
            conn.execute(text("ALTER TABLE daily_report_orders ADD COLUMN position INTEGER NOT NULL DEFAULT 0"))


def list_staff_members(session, roles: Iterable[str]) -> List[Dict[str, str]]:
    """Return the staff directory for the given role tags, sorted by name."""
    role_list = sorted({role for role in roles if role})
    if not role_list:
        return []
    user_ids = set(session.scalars(select(UserRole.user_id).where(UserRole.role.in_(role_list))))
    if not user_ids:
        return []
    profiles = {
        profile.user_id: profile
        for profile in session.scalars(select(UserProfile).where(UserProfile.user_id.in_(user_ids)))
    }
    members: List[Dict[str, str]] = []
    for user_id in user_ids:
        profile = profiles.get(user_id)
        members.append(
            {
                "user_id": user_id,
                "full_name": (profile.full_name if profile else "") or "Unnamed",
                "phone_number": (profile.phone_number if profile else "") or "",
            }
        )
    members.sort(key=lambda item: (item["full_name"].lower(), item["user_id"]))
    return members


def record_audit_log(
    session,
    user_id: str,
    action: str,
    target_type: str = "DailyReport",
    target_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    log = AuditLog(
        user_id=user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        payloadJSON=json.dumps(payload or {}),
    )
    session.add(log)
    session.commit()
    return log
