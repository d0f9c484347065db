from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from database import DailyReport, DailyReportOrder, DailyReportStaff, DateLock, record_audit_log
from errors import FetchError, WriteError
from report_rows import (
    OrderRow,
    StaffRow,
    coerce_work_status,
    meaningful_order_rows,
    meaningful_staff_rows,
)
from settings import DEFAULT_MODULE_KEY


logger = logging.getLogger(__name__)


@dataclass
class ReportChildren:
    order_rows: List[OrderRow] = field(default_factory=list)
    staff_rows: List[StaffRow] = field(default_factory=list)


def _order_from_model(model: DailyReportOrder) -> OrderRow:
    return OrderRow(
        order_id=model.order_id or None,
        activity_description=model.activity_description or "",
        service_details=model.service_details or "",
        team_name=model.team_name or "",
        notes=model.notes or "",
        row_color=model.row_color or "yellow",
    )


def _staff_from_model(model: DailyReportStaff) -> StaffRow:
    return StaffRow(
        staff_user_id=model.staff_user_id or None,
        staff_name=model.staff_name or "",
        work_status=coerce_work_status(model.work_status),
        overtime_hours=float(model.overtime_hours or 0.0),
        amount_received=float(model.amount_received or 0.0),
        receiving_notes=model.receiving_notes or "",
        amount_spent=float(model.amount_spent or 0.0),
        spending_notes=model.spending_notes or "",
        notes=model.notes or "",
        is_cash_box=bool(model.is_cash_box),
    )


class PersistenceGateway:
    """The only component that talks to the report tables.

    All lookups are scoped to one module key. Child rows are written with
    full-replace semantics: every write deletes the record's rows and inserts
    the meaningful subset of the rows passed in, so row ids change per write.
    """

    def __init__(self, session_factory: Callable, *, module_key: str = DEFAULT_MODULE_KEY) -> None:
        self.session_factory = session_factory
        self.module_key = module_key

    def _reports_for_date(self, report_date: datetime.date):
        return select(DailyReport.id).where(
            DailyReport.report_date == report_date,
            DailyReport.module_key == self.module_key,
        )

    def create_record(self, report_date: datetime.date, creator_id: str) -> int:
        try:
            with self.session_factory() as session:
                report = DailyReport(report_date=report_date, created_by=creator_id, module_key=self.module_key)
                session.add(report)
                session.commit()
                record_id = report.id
        except SQLAlchemyError as exc:
            raise WriteError(f"Could not create a report for {creator_id} on {report_date}") from exc
        logger.info("Created daily report %s for %s on %s", record_id, creator_id, report_date)
        self.record_event(
            creator_id,
            "REPORT_CREATED",
            record_id,
            {"report_date": report_date.isoformat(), "module_key": self.module_key},
        )
        return record_id

    def ensure_record(self, report_date: datetime.date, creator_id: str) -> int:
        """Return the creator's record for the date, creating it when absent.

        A concurrent insert that wins the unique constraint is resolved by
        re-reading the winner's id.
        """
        try:
            existing = self.find_record_for_date_and_creator(report_date, creator_id)
        except FetchError as exc:
            raise WriteError(f"Could not check for an existing report on {report_date}") from exc
        if existing is not None:
            return existing
        try:
            return self.create_record(report_date, creator_id)
        except WriteError as exc:
            if not isinstance(exc.__cause__, IntegrityError):
                raise
            logger.warning("Report for %s on %s was created concurrently; reusing it", creator_id, report_date)
            try:
                existing = self.find_record_for_date_and_creator(report_date, creator_id)
            except FetchError as retry_exc:
                raise WriteError(f"Could not re-read the report for {report_date}") from retry_exc
            if existing is None:
                raise
            return existing

    def fetch_children(self, record_id: int) -> ReportChildren:
        try:
            with self.session_factory() as session:
                orders = session.scalars(
                    select(DailyReportOrder)
                    .where(DailyReportOrder.daily_report_id == record_id)
                    .order_by(DailyReportOrder.position, DailyReportOrder.id)
                ).all()
                staff = session.scalars(
                    select(DailyReportStaff)
                    .where(DailyReportStaff.daily_report_id == record_id)
                    .order_by(DailyReportStaff.position, DailyReportStaff.id)
                ).all()
                return ReportChildren(
                    order_rows=[_order_from_model(item) for item in orders],
                    staff_rows=[_staff_from_model(item) for item in staff],
                )
        except SQLAlchemyError as exc:
            raise FetchError(f"Could not load rows for report {record_id}") from exc

    def replace_children(
        self,
        record_id: int,
        order_rows: Sequence[OrderRow],
        staff_rows: Sequence[StaffRow],
    ) -> None:
        orders_to_save = meaningful_order_rows(order_rows)
        staff_to_save = meaningful_staff_rows(staff_rows)
        try:
            with self.session_factory() as session:
                try:
                    session.execute(delete(DailyReportOrder).where(DailyReportOrder.daily_report_id == record_id))
                    session.execute(delete(DailyReportStaff).where(DailyReportStaff.daily_report_id == record_id))
                    session.add_all(
                        DailyReportOrder(daily_report_id=record_id, position=position, **row.to_dict())
                        for position, row in enumerate(orders_to_save)
                    )
                    session.add_all(
                        DailyReportStaff(daily_report_id=record_id, position=position, **row.to_dict())
                        for position, row in enumerate(staff_to_save)
                    )
                    report = session.get(DailyReport, record_id)
                    if report is not None:
                        report.updated_at = datetime.datetime.now(datetime.timezone.utc)
                    session.commit()
                except SQLAlchemyError:
                    session.rollback()
                    raise
        except SQLAlchemyError as exc:
            raise WriteError(f"Could not replace rows for report {record_id}") from exc
        logger.debug(
            "Replaced rows for report %s (%d orders, %d staff)",
            record_id,
            len(orders_to_save),
            len(staff_to_save),
        )

    def find_record_for_date_and_creator(self, report_date: datetime.date, creator_id: str) -> Optional[int]:
        stmt = self._reports_for_date(report_date).where(DailyReport.created_by == creator_id)
        return self._first_id(stmt, f"report for {creator_id} on {report_date}")

    def find_any_record_for_date(self, report_date: datetime.date) -> Optional[int]:
        stmt = self._reports_for_date(report_date).order_by(DailyReport.created_at.desc(), DailyReport.id.desc())
        return self._first_id(stmt, f"reports on {report_date}")

    def find_record_containing_contributor(self, report_date: datetime.date, actor_id: str) -> Optional[int]:
        stmt = (
            self._reports_for_date(report_date)
            .join(DailyReportStaff, DailyReportStaff.daily_report_id == DailyReport.id)
            .where(DailyReportStaff.staff_user_id == actor_id)
            .order_by(DailyReport.created_at.desc(), DailyReport.id.desc())
        )
        return self._first_id(stmt, f"reports on {report_date} listing {actor_id}")

    def _first_id(self, stmt, label: str) -> Optional[int]:
        try:
            with self.session_factory() as session:
                return session.scalars(stmt.limit(1)).first()
        except SQLAlchemyError as exc:
            raise FetchError(f"Could not look up {label}") from exc

    def list_reports(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Return saved reports, newest date first, with their row counts."""
        order_counts = (
            select(DailyReportOrder.daily_report_id, func.count(DailyReportOrder.id).label("orders_count"))
            .group_by(DailyReportOrder.daily_report_id)
            .subquery()
        )
        staff_counts = (
            select(DailyReportStaff.daily_report_id, func.count(DailyReportStaff.id).label("staff_count"))
            .group_by(DailyReportStaff.daily_report_id)
            .subquery()
        )
        stmt = (
            select(
                DailyReport,
                func.coalesce(order_counts.c.orders_count, 0),
                func.coalesce(staff_counts.c.staff_count, 0),
            )
            .outerjoin(order_counts, order_counts.c.daily_report_id == DailyReport.id)
            .outerjoin(staff_counts, staff_counts.c.daily_report_id == DailyReport.id)
            .where(DailyReport.module_key == self.module_key)
            .order_by(DailyReport.report_date.desc(), DailyReport.created_at.desc())
            .limit(max(1, int(limit)))
        )
        try:
            with self.session_factory() as session:
                rows = session.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise FetchError("Could not list saved reports") from exc
        return [
            {
                "id": report.id,
                "report_date": report.report_date,
                "created_by": report.created_by,
                "created_at": report.created_at,
                "notes": report.notes or None,
                "orders_count": int(orders_count),
                "staff_count": int(staff_count),
            }
            for report, orders_count, staff_count in rows
        ]

    def date_lock(self, report_date: datetime.date) -> Optional[Dict[str, Any]]:
        try:
            with self.session_factory() as session:
                lock = session.scalars(select(DateLock).where(DateLock.report_date == report_date)).first()
        except SQLAlchemyError as exc:
            raise FetchError(f"Could not read the lock for {report_date}") from exc
        if lock is None:
            return None
        return {"report_date": lock.report_date, "locked_by": lock.locked_by, "locked_at": lock.locked_at}

    def lock_date(self, report_date: datetime.date, actor_id: str) -> bool:
        """Lock a date against further flushes.

        Returns:
            False when the date was already locked.
        """
        try:
            with self.session_factory() as session:
                session.add(DateLock(report_date=report_date, locked_by=actor_id))
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    return False
                record_audit_log(
                    session,
                    user_id=actor_id,
                    action="DATE_LOCKED",
                    target_type="DateLock",
                    payload={"report_date": report_date.isoformat(), "module_key": self.module_key},
                )
                return True
        except SQLAlchemyError as exc:
            raise WriteError(f"Could not lock {report_date}") from exc

    def unlock_date(self, report_date: datetime.date, actor_id: str) -> bool:
        try:
            with self.session_factory() as session:
                result = session.execute(delete(DateLock).where(DateLock.report_date == report_date))
                session.commit()
                if not result.rowcount:
                    return False
                record_audit_log(
                    session,
                    user_id=actor_id,
                    action="DATE_UNLOCKED",
                    target_type="DateLock",
                    payload={"report_date": report_date.isoformat(), "module_key": self.module_key},
                )
                return True
        except SQLAlchemyError as exc:
            raise WriteError(f"Could not unlock {report_date}") from exc

    def record_event(self, actor_id: str, action: str, record_id: Optional[int], payload: Dict[str, Any]) -> None:
        """Write an audit entry; failures are logged, never raised."""
        try:
            with self.session_factory() as session:
                record_audit_log(session, user_id=actor_id, action=action, target_id=record_id, payload=payload)
        except SQLAlchemyError:
            logger.warning("Could not write audit entry %s for report %s", action, record_id, exc_info=True)
