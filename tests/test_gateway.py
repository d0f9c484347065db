from __future__ import annotations

import datetime
import sys
import unittest
from pathlib import Path

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import AuditLog, Base, DailyReport, DailyReportOrder, DailyReportStaff  # noqa: E402
from errors import FetchError, WriteError  # noqa: E402
from gateway import PersistenceGateway  # noqa: E402
from report_rows import OrderRow, StaffRow  # noqa: E402

REPORT_DATE = datetime.date(2024, 3, 1)


class PersistenceGatewayTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine(
            "sqlite://",
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)
        self.gateway = PersistenceGateway(self.Session)

    def tearDown(self) -> None:
        self.engine.dispose()

    def test_replace_children_persists_only_meaningful_rows_in_order(self) -> None:
        record_id = self.gateway.create_record(REPORT_DATE, "mgr")
        orders = [
            OrderRow(order_id="ORD-2", row_color="gold"),
            OrderRow(activity_description="typed but no order"),
            OrderRow(order_id="ORD-1", notes="second"),
            OrderRow(),
        ]
        staff = [
            StaffRow(staff_name="Cash box", work_status="present", is_cash_box=True),
            StaffRow(staff_user_id="u-1", staff_name="Ali", overtime_hours=1.5),
            StaffRow(),
            StaffRow(amount_spent=12.0),
        ]

        self.gateway.replace_children(record_id, orders, staff)
        children = self.gateway.fetch_children(record_id)

        self.assertEqual(children.order_rows, [orders[0], orders[2]])
        self.assertEqual(children.staff_rows, [staff[0], staff[1], staff[3]])

    def test_replace_children_is_full_replace(self) -> None:
        record_id = self.gateway.create_record(REPORT_DATE, "mgr")
        self.gateway.replace_children(record_id, [OrderRow(order_id="A"), OrderRow(order_id="B")], [])
        self.gateway.replace_children(record_id, [OrderRow(order_id="C")], [])

        children = self.gateway.fetch_children(record_id)

        self.assertEqual([row.order_id for row in children.order_rows], ["C"])

    def test_replace_children_touches_updated_at(self) -> None:
        record_id = self.gateway.create_record(REPORT_DATE, "mgr")
        with self.Session() as session:
            before = session.get(DailyReport, record_id).updated_at

        self.gateway.replace_children(record_id, [OrderRow(order_id="A")], [])

        with self.Session() as session:
            after = session.get(DailyReport, record_id).updated_at
        self.assertGreaterEqual(after, before)

    def test_ensure_record_is_idempotent(self) -> None:
        first = self.gateway.ensure_record(REPORT_DATE, "mgr")
        second = self.gateway.ensure_record(REPORT_DATE, "mgr")

        self.assertEqual(first, second)
        with self.Session() as session:
            self.assertEqual(len(session.scalars(select(DailyReport)).all()), 1)
            actions = session.scalars(select(AuditLog.action)).all()
        self.assertEqual(actions, ["REPORT_CREATED"])

    def test_create_record_duplicate_raises_write_error(self) -> None:
        self.gateway.create_record(REPORT_DATE, "mgr")

        with self.assertRaises(WriteError):
            self.gateway.create_record(REPORT_DATE, "mgr")

    def test_ensure_record_recovers_from_concurrent_insert(self) -> None:
        winner = self.gateway.create_record(REPORT_DATE, "mgr")
        calls = []
        original = self.gateway.find_record_for_date_and_creator

        def racing_lookup(report_date, creator_id):
            calls.append(creator_id)
            if len(calls) == 1:
                return None
            return original(report_date, creator_id)

        self.gateway.find_record_for_date_and_creator = racing_lookup

        self.assertEqual(self.gateway.ensure_record(REPORT_DATE, "mgr"), winner)
        self.assertEqual(len(calls), 2)

    def test_finders(self) -> None:
        mine = self.gateway.create_record(REPORT_DATE, "mgr-a")
        theirs = self.gateway.create_record(REPORT_DATE, "mgr-b")
        self.gateway.replace_children(
            mine,
            [],
            [StaffRow(staff_name="Cash box", is_cash_box=True), StaffRow(staff_user_id="worker", staff_name="W")],
        )

        self.assertEqual(self.gateway.find_record_for_date_and_creator(REPORT_DATE, "mgr-a"), mine)
        self.assertIsNone(self.gateway.find_record_for_date_and_creator(REPORT_DATE, "nobody"))
        self.assertEqual(self.gateway.find_any_record_for_date(REPORT_DATE), theirs)
        self.assertIsNone(self.gateway.find_any_record_for_date(REPORT_DATE + datetime.timedelta(days=1)))
        self.assertEqual(self.gateway.find_record_containing_contributor(REPORT_DATE, "worker"), mine)
        self.assertIsNone(self.gateway.find_record_containing_contributor(REPORT_DATE, "stranger"))

    def test_module_key_scopes_lookups(self) -> None:
        self.gateway.create_record(REPORT_DATE, "mgr")
        other = PersistenceGateway(self.Session, module_key="warehouse")

        self.assertIsNone(other.find_any_record_for_date(REPORT_DATE))
        self.assertEqual(other.list_reports(), [])

    def test_list_reports_includes_counts(self) -> None:
        older = self.gateway.create_record(REPORT_DATE, "mgr")
        newer = self.gateway.create_record(REPORT_DATE + datetime.timedelta(days=1), "mgr")
        self.gateway.replace_children(
            older,
            [OrderRow(order_id="A"), OrderRow(order_id="B")],
            [StaffRow(staff_name="Cash box", is_cash_box=True)],
        )

        reports = self.gateway.list_reports()

        self.assertEqual([item["id"] for item in reports], [newer, older])
        self.assertEqual((reports[1]["orders_count"], reports[1]["staff_count"]), (2, 1))
        self.assertEqual((reports[0]["orders_count"], reports[0]["staff_count"]), (0, 0))

    def test_lock_and_unlock_date(self) -> None:
        self.assertIsNone(self.gateway.date_lock(REPORT_DATE))
        self.assertTrue(self.gateway.lock_date(REPORT_DATE, "mgr"))
        self.assertFalse(self.gateway.lock_date(REPORT_DATE, "mgr"))

        lock = self.gateway.date_lock(REPORT_DATE)
        self.assertEqual(lock["locked_by"], "mgr")

        self.assertTrue(self.gateway.unlock_date(REPORT_DATE, "mgr"))
        self.assertFalse(self.gateway.unlock_date(REPORT_DATE, "mgr"))
        with self.Session() as session:
            actions = [log.action for log in session.scalars(select(AuditLog).order_by(AuditLog.id))]
        self.assertEqual(actions, ["DATE_LOCKED", "DATE_UNLOCKED"])

    def test_record_event_writes_audit_entry(self) -> None:
        record_id = self.gateway.create_record(REPORT_DATE, "mgr")

        self.gateway.record_event("mgr", "REPORT_FINALIZED", record_id, {"orders_count": 2})

        with self.Session() as session:
            log = session.scalars(select(AuditLog).where(AuditLog.action == "REPORT_FINALIZED")).one()
        self.assertEqual(log.target_id, record_id)
        self.assertEqual(log.payload_dict(), {"orders_count": 2})

    def test_store_failures_map_to_engine_errors(self) -> None:
        record_id = self.gateway.create_record(REPORT_DATE, "mgr")
        self.gateway.replace_children(record_id, [OrderRow(order_id="KEEP")], [])
        DailyReportStaff.__table__.drop(self.engine)

        with self.assertRaises(FetchError):
            self.gateway.fetch_children(record_id)
        with self.assertRaises(FetchError):
            self.gateway.find_record_containing_contributor(REPORT_DATE, "worker")
        with self.assertRaises(WriteError):
            self.gateway.replace_children(record_id, [OrderRow(order_id="NEW")], [])

        # The failed write rolled back, so the earlier rows are intact.
        with self.Session() as session:
            order_ids = session.scalars(
                select(DailyReportOrder.order_id).where(DailyReportOrder.daily_report_id == record_id)
            ).all()
        self.assertEqual(order_ids, ["KEEP"])


if __name__ == "__main__":
    unittest.main()
