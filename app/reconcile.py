from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from backup import BackupSnapshot
from gateway import ReportChildren
from report_rows import ORDER_ROWS, STAFF_ROWS, OrderRow, RowListController, StaffRow, meaningful_order_rows


logger = logging.getLogger(__name__)

SOURCE_SERVER = "server"
SOURCE_BACKUP = "backup"
SOURCE_EMPTY = "empty"


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass
class Reconciliation:
    order_rows: List[OrderRow] = field(default_factory=list)
    staff_rows: List[StaffRow] = field(default_factory=list)
    source: str = SOURCE_EMPTY


class ReconciliationPolicy:
    """Chooses between freshly loaded server rows and a local backup.

    A backup wins over an existing record only while it is fresh and holds
    more meaningful order rows than the server, the signature of a flush that
    failed or never ran. This is an anti-data-loss heuristic; concurrent edits
    from different actors are not merged.
    """

    def __init__(
        self,
        controller: RowListController,
        *,
        freshness_seconds: float = 60.0,
        clock: Callable[[], datetime.datetime] = _utcnow,
    ) -> None:
        self.controller = controller
        self.freshness_seconds = freshness_seconds
        self.clock = clock

    def backup_is_fresher(self, server_rows: ReportChildren, backup: BackupSnapshot) -> bool:
        age = backup.age_seconds(self.clock())
        if age > self.freshness_seconds:
            return False
        local_count = len(meaningful_order_rows(backup.order_rows))
        server_count = len(meaningful_order_rows(server_rows.order_rows))
        return local_count > server_count

    def reconcile(
        self,
        server_record_id: Optional[int],
        server_rows: Optional[ReportChildren],
        backup: Optional[BackupSnapshot],
    ) -> Reconciliation:
        if server_record_id is not None:
            server_rows = server_rows or ReportChildren()
            if backup is not None and self.backup_is_fresher(server_rows, backup):
                logger.info("Restoring unsaved local edits over report %s", server_record_id)
                return self._present(backup.order_rows, backup.staff_rows, SOURCE_BACKUP)
            return self._present(server_rows.order_rows, server_rows.staff_rows, SOURCE_SERVER)
        if backup is not None:
            return self._present(backup.order_rows, backup.staff_rows, SOURCE_BACKUP)
        return self._present([], [], SOURCE_EMPTY)

    def _present(self, order_rows, staff_rows, source: str) -> Reconciliation:
        return Reconciliation(
            order_rows=self._shape(order_rows, ORDER_ROWS),
            staff_rows=self._shape(staff_rows, STAFF_ROWS),
            source=source,
        )

    def _shape(self, rows, kind: str) -> list:
        if not rows:
            return self.controller.initial_rows(kind)
        return self.controller.normalize(rows, kind)
