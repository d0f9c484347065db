from __future__ import annotations

import datetime
import logging
from typing import Optional

from gateway import PersistenceGateway


logger = logging.getLogger(__name__)


class RecordLocator:
    """Decides which existing report an actor resumes for a date.

    Managers share one ledger per day: their own record wins, otherwise the
    most recent record any peer started. Everyone else only sees a record
    that already lists them as a staff row.
    """

    def __init__(self, gateway: PersistenceGateway, role_resolver=None) -> None:
        self.gateway = gateway
        self.role_resolver = role_resolver

    def is_manager(self, actor_id: str) -> bool:
        if self.role_resolver is None:
            return False
        return self.role_resolver.is_manager(actor_id)

    def resolve(
        self,
        report_date: datetime.date,
        actor_id: str,
        is_manager: Optional[bool] = None,
    ) -> Optional[int]:
        if is_manager is None:
            is_manager = self.is_manager(actor_id)
        if is_manager:
            record_id = self.gateway.find_record_for_date_and_creator(report_date, actor_id)
            if record_id is None:
                record_id = self.gateway.find_any_record_for_date(report_date)
                if record_id is not None:
                    logger.info("Manager %s continues report %s for %s", actor_id, record_id, report_date)
            return record_id
        return self.gateway.find_record_containing_contributor(report_date, actor_id)
