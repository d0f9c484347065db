from __future__ import annotations

import datetime
import logging
from typing import Any, Callable, Dict, Mapping, Optional

from autosave import AutosaveScheduler
from backup import LocalBackupStore
from errors import DateLockedError, FetchError, WriteError
from gateway import PersistenceGateway
from locator import RecordLocator
from reconcile import SOURCE_BACKUP, SOURCE_EMPTY, SOURCE_SERVER, Reconciliation, ReconciliationPolicy
from report_rows import (
    ORDER_ROWS,
    STAFF_ROWS,
    RowListController,
    calculate_totals,
    report_has_content,
    snapshot_fingerprint,
)
from settings import EngineConfig


logger = logging.getLogger(__name__)

NOTICE_OFFLINE_BACKUP = "Could not reach the server; showing edits saved on this device."
NOTICE_OFFLINE_EMPTY = "Could not reach the server; starting from an empty report."
NOTICE_RESTORED = "Restored unsaved edits saved on this device."


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class DailyReportSession:
    """One operator editing one date's report.

    The session owns the current rows, the autosave timer and the
    `has_user_edited` flag that keeps freshly loaded data from being flushed
    back before the user touches it. Every edit is written to the local
    backup synchronously and re-arms the autosave timer.
    """

    def __init__(
        self,
        actor_id: str,
        gateway: PersistenceGateway,
        locator: RecordLocator,
        backup_store: LocalBackupStore,
        *,
        timer_factory: Callable,
        config: EngineConfig | None = None,
        controller: RowListController | None = None,
        staff_directory: Optional[Mapping[str, str]] = None,
        report_date: Optional[datetime.date] = None,
        clock: Callable[[], datetime.datetime] = _utcnow,
        today: Callable[[], datetime.date] = datetime.date.today,
    ) -> None:
        self.config = config or EngineConfig()
        self.actor_id = actor_id
        self.gateway = gateway
        self.locator = locator
        self.backup_store = backup_store
        self.controller = controller or RowListController(self.config, staff_directory)
        self.policy = ReconciliationPolicy(
            self.controller,
            freshness_seconds=self.config.backup_freshness_seconds,
            clock=clock,
        )
        self.scheduler = AutosaveScheduler(
            self._flush,
            timer_factory,
            has_pending_work=self._has_pending_work,
            quiescence_seconds=self.config.quiescence_seconds,
            saved_display_seconds=self.config.saved_display_seconds,
        )
        self.today = today
        self.report_date = report_date or today()
        self._reset_state()

    def _reset_state(self) -> None:
        self.record_id: Optional[int] = None
        self.order_rows = self.controller.initial_rows(ORDER_ROWS)
        self.staff_rows = self.controller.initial_rows(STAFF_ROWS)
        self.has_user_edited = False
        self.source = SOURCE_EMPTY
        self.notice: Optional[str] = None
        self.lock: Optional[Dict[str, Any]] = None
        self._is_manager: Optional[bool] = None
        self._last_saved_fingerprint: Optional[str] = None

    @property
    def status(self) -> str:
        return self.scheduler.status

    # Loading

    def load(self) -> Reconciliation:
        self.scheduler.cancel()
        self.has_user_edited = False
        self.notice = None
        self._last_saved_fingerprint = None
        backup = self.backup_store.load(self.actor_id, self.report_date)
        try:
            self._is_manager = self.locator.is_manager(self.actor_id)
            record_id = self.locator.resolve(self.report_date, self.actor_id, is_manager=self._is_manager)
            server_rows = self.gateway.fetch_children(record_id) if record_id is not None else None
            self.lock = self.gateway.date_lock(self.report_date)
        except FetchError as exc:
            logger.warning("Loading report for %s on %s failed: %s", self.actor_id, self.report_date, exc)
            self.record_id = None
            result = self.policy.reconcile(None, None, backup)
            self.notice = NOTICE_OFFLINE_BACKUP if backup is not None else NOTICE_OFFLINE_EMPTY
        else:
            self.record_id = record_id
            result = self.policy.reconcile(record_id, server_rows, backup)
            if result.source == SOURCE_BACKUP:
                self.notice = NOTICE_RESTORED
            elif result.source == SOURCE_SERVER:
                self._last_saved_fingerprint = snapshot_fingerprint(result.order_rows, result.staff_rows)
        self.order_rows = result.order_rows
        self.staff_rows = result.staff_rows
        self.source = result.source
        return result

    def change_date(self, report_date: datetime.date) -> Reconciliation:
        # Abandoned contexts keep their local backup but are never flushed.
        self.scheduler.cancel()
        self.report_date = report_date
        return self.load()

    def change_actor(self, actor_id: str) -> Reconciliation:
        self.scheduler.cancel()
        self.actor_id = actor_id
        self._is_manager = None
        return self.load()

    # Editing

    def update_order_field(self, index: int, field: str, value: Any) -> None:
        self.order_rows = self.controller.update_field(self.order_rows, ORDER_ROWS, index, field, value)
        self._after_edit()

    def update_staff_field(self, index: int, field: str, value: Any) -> None:
        self.staff_rows = self.controller.update_field(self.staff_rows, STAFF_ROWS, index, field, value)
        self._after_edit()

    def add_order_row(self) -> None:
        self.order_rows = self.controller.add_row(self.order_rows, ORDER_ROWS)
        self._after_edit()

    def add_staff_row(self) -> None:
        self.staff_rows = self.controller.add_row(self.staff_rows, STAFF_ROWS)
        self._after_edit()

    def remove_order_row(self, index: int) -> None:
        self.order_rows = self.controller.remove_row(self.order_rows, ORDER_ROWS, index)
        self._after_edit()

    def remove_staff_row(self, index: int) -> None:
        self.staff_rows = self.controller.remove_row(self.staff_rows, STAFF_ROWS, index)
        self._after_edit()

    def _after_edit(self) -> None:
        self.has_user_edited = True
        self.backup_store.save(self.actor_id, self.report_date, self.order_rows, self.staff_rows)
        self.scheduler.notify_edit()

    # Flushing

    def _has_pending_work(self) -> bool:
        if not self.has_user_edited:
            return False
        if self.record_id is None and not report_has_content(self.order_rows, self.staff_rows):
            return False
        return snapshot_fingerprint(self.order_rows, self.staff_rows) != self._last_saved_fingerprint

    def has_unsaved_changes(self) -> bool:
        return self.scheduler.pending or self._has_pending_work()

    def _manager_flag(self) -> bool:
        if self._is_manager is None:
            try:
                self._is_manager = self.locator.is_manager(self.actor_id)
            except FetchError as exc:
                raise WriteError(f"Could not resolve roles for {self.actor_id}") from exc
        return self._is_manager

    def _ensure_record(self) -> int:
        if self.record_id is not None:
            return self.record_id
        if self._manager_flag():
            self.record_id = self.gateway.ensure_record(self.report_date, self.actor_id)
            return self.record_id
        try:
            found = self.locator.resolve(self.report_date, self.actor_id, is_manager=False)
        except FetchError as exc:
            raise WriteError(f"Could not look up the report for {self.report_date}") from exc
        if found is None:
            raise WriteError(
                f"{self.actor_id} is not listed on any report for {self.report_date}; "
                "a manager has to start it first"
            )
        self.record_id = found
        return found

    def _check_lock(self) -> None:
        try:
            self.lock = self.gateway.date_lock(self.report_date)
        except FetchError as exc:
            raise WriteError(f"Could not check the lock for {self.report_date}") from exc
        if self.lock is not None:
            raise DateLockedError(self.report_date, self.lock.get("locked_by"))

    def _flush(self) -> None:
        self._check_lock()
        order_rows, staff_rows = list(self.order_rows), list(self.staff_rows)
        record_id = self._ensure_record()
        self.gateway.replace_children(record_id, order_rows, staff_rows)
        self._last_saved_fingerprint = snapshot_fingerprint(order_rows, staff_rows)
        self.backup_store.clear(self.actor_id, self.report_date)

    def flush(self) -> bool:
        """Flush now through the autosave path; failures are logged, not raised."""
        return self.scheduler.flush_now()

    def close(self) -> bool:
        """Session-end hook: cancel the pending timer and flush once."""
        return self.scheduler.shutdown()

    def finalize(self) -> Dict[str, Any]:
        """Write the report immediately and start a fresh session for today.

        When today is a different day the session reloads it, so an existing
        record or local backup for today is resumed rather than duplicated.
        Finalizing today's own report leaves minimal collections.

        Raises:
            WriteError: when the report could not be written; the session and
                its local backup are left untouched so the user can retry.
        """
        self.scheduler.cancel()
        if self.record_id is not None or report_has_content(self.order_rows, self.staff_rows):
            self._flush()
        summary = {
            "record_id": self.record_id,
            "report_date": self.report_date,
            "orders_count": sum(1 for row in self.order_rows if row.is_meaningful()),
            "staff_count": sum(1 for row in self.staff_rows if row.is_meaningful()),
            "totals": calculate_totals(self.staff_rows),
        }
        self.backup_store.clear(self.actor_id, self.report_date)
        self.gateway.record_event(
            self.actor_id,
            "REPORT_FINALIZED",
            self.record_id,
            {
                "report_date": self.report_date.isoformat(),
                "orders_count": summary["orders_count"],
                "staff_count": summary["staff_count"],
            },
        )
        logger.info("Report %s for %s finalized by %s", self.record_id, self.report_date, self.actor_id)
        finalized_date = self.report_date
        self.report_date = self.today()
        self._reset_state()
        if self.report_date != finalized_date:
            # A new day may already have a peer's record or a local backup.
            self.load()
        return summary

    def snapshot(self) -> Dict[str, Any]:
        return {
            "actor_id": self.actor_id,
            "report_date": self.report_date,
            "record_id": self.record_id,
            "status": self.status,
            "source": self.source,
            "notice": self.notice,
            "locked": self.lock is not None,
            "has_user_edited": self.has_user_edited,
            "order_rows": [row.to_dict() for row in self.order_rows],
            "staff_rows": [row.to_dict() for row in self.staff_rows],
            "totals": calculate_totals(self.staff_rows),
        }
