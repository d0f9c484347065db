from __future__ import annotations

import sys
import unittest
from pathlib import Path
from tempfile import TemporaryDirectory

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import AuditLog, UserProfile, UserRole, init_database, list_staff_members, record_audit_log  # noqa: E402


class DatabaseSetupTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = TemporaryDirectory()
        self.engine = create_engine(f"sqlite:///{Path(self.tmpdir.name) / 'reports.db'}", future=True)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)

    def tearDown(self) -> None:
        self.engine.dispose()
        self.tmpdir.cleanup()

    def _columns(self, table: str) -> set:
        with self.engine.connect() as conn:
            return {row[1] for row in conn.execute(text(f"PRAGMA table_info({table})"))}

    def test_init_database_upgrades_legacy_tables(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    "CREATE TABLE daily_reports (id INTEGER PRIMARY KEY, report_date DATE NOT NULL, "
                    "created_by VARCHAR(64) NOT NULL, notes VARCHAR(2000) NOT NULL DEFAULT '', "
                    "created_at DATETIME, updated_at DATETIME)"
                )
            )
            conn.execute(
                text(
                    "CREATE TABLE daily_report_orders (id INTEGER PRIMARY KEY, daily_report_id INTEGER NOT NULL, "
                    "order_id VARCHAR(64) NOT NULL)"
                )
            )
            conn.execute(text("INSERT INTO daily_reports (report_date, created_by) VALUES ('2024-03-01', 'mgr')"))

        init_database(self.engine)
        init_database(self.engine)

        self.assertIn("module_key", self._columns("daily_reports"))
        self.assertIn("position", self._columns("daily_report_orders"))
        self.assertIn("position", self._columns("daily_report_staff"))
        with self.engine.connect() as conn:
            module_key = conn.execute(text("SELECT module_key FROM daily_reports")).scalar_one()
        self.assertEqual(module_key, "daily_report")

    def test_list_staff_members_filters_by_role(self) -> None:
        init_database(self.engine)
        with self.Session() as session:
            session.add_all(
                [
                    UserRole(user_id="u-1", role="sales_manager"),
                    UserRole(user_id="u-2", role="general_manager"),
                    UserRole(user_id="u-2", role="sales_manager"),
                    UserRole(user_id="u-3", role="viewer"),
                    UserProfile(user_id="u-1", full_name="Zahra"),
                    UserProfile(user_id="u-2", full_name="Ali", phone_number="0912"),
                ]
            )
            session.commit()

            members = list_staff_members(session, {"sales_manager", "general_manager"})

        self.assertEqual([member["user_id"] for member in members], ["u-2", "u-1"])
        self.assertEqual(members[0]["phone_number"], "0912")
        with self.Session() as session:
            self.assertEqual(list_staff_members(session, []), [])

    def test_record_audit_log_round_trip(self) -> None:
        init_database(self.engine)
        with self.Session() as session:
            record_audit_log(session, user_id="mgr", action="REPORT_FINALIZED", target_id=4, payload={"n": 1})

        with self.Session() as session:
            log = session.query(AuditLog).one()
        self.assertEqual(log.target_type, "DailyReport")
        self.assertEqual(log.payload_dict(), {"n": 1})


if __name__ == "__main__":
    unittest.main()
