from __future__ import annotations

import datetime
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import quote, unquote

from report_rows import OrderRow, StaffRow
from settings import BACKUP_DIR, DEFAULT_MODULE_KEY


logger = logging.getLogger(__name__)

KEY_PREFIX = "daily_report_backup"


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class MemoryCache:
    """Session-scoped key-value medium."""

    def __init__(self) -> None:
        self._items: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> List[str]:
        return sorted(self._items)


class JsonFileCache:
    """Persistent key-value medium storing one JSON file per key."""

    def __init__(self, directory: Path = BACKUP_DIR) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / f"{quote(key, safe='')}.json"

    def get(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(value, encoding="utf-8")
        os.replace(tmp_path, path)

    def remove(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def keys(self) -> List[str]:
        return sorted(unquote(item.name[: -len(".json")]) for item in self.directory.glob("*.json"))


@dataclass(frozen=True)
class BackupSnapshot:
    actor_id: str
    report_date: datetime.date
    order_rows: Tuple[OrderRow, ...]
    staff_rows: Tuple[StaffRow, ...]
    saved_at: datetime.datetime

    def age_seconds(self, now: datetime.datetime) -> float:
        return (now - self.saved_at).total_seconds()


def _aware(value: datetime.datetime) -> datetime.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value


class LocalBackupStore:
    """Write-back cache of in-progress report edits keyed by (actor, date).

    Snapshots are overwritten in place. Each write records `saved_at` so the
    reconciliation step can judge whether local edits are fresher than the
    store.
    """

    def __init__(
        self,
        medium,
        *,
        module_key: str = DEFAULT_MODULE_KEY,
        clock: Callable[[], datetime.datetime] = _utcnow,
    ) -> None:
        self.medium = medium
        self.module_key = module_key
        self.clock = clock

    def key_for(self, actor_id: str, report_date: datetime.date) -> str:
        return f"{KEY_PREFIX}_{actor_id}_{report_date.isoformat()}_{self.module_key}"

    def save(
        self,
        actor_id: str,
        report_date: datetime.date,
        order_rows: Sequence[OrderRow],
        staff_rows: Sequence[StaffRow],
    ) -> Optional[BackupSnapshot]:
        """Persist the full current snapshot.

        Returns:
            The stored snapshot, or None when the medium rejected the write.
        """
        snapshot = BackupSnapshot(
            actor_id=actor_id,
            report_date=report_date,
            order_rows=tuple(order_rows),
            staff_rows=tuple(staff_rows),
            saved_at=_aware(self.clock()),
        )
        payload = {
            "actor_id": actor_id,
            "report_date": report_date.isoformat(),
            "module_key": self.module_key,
            "order_rows": [row.to_dict() for row in snapshot.order_rows],
            "staff_rows": [row.to_dict() for row in snapshot.staff_rows],
            "saved_at": snapshot.saved_at.isoformat(),
        }
        try:
            self.medium.set(self.key_for(actor_id, report_date), json.dumps(payload))
        except OSError:
            logger.error("Could not write local backup for %s on %s", actor_id, report_date, exc_info=True)
            return None
        return snapshot

    def load(self, actor_id: str, report_date: datetime.date) -> Optional[BackupSnapshot]:
        key = self.key_for(actor_id, report_date)
        try:
            raw = self.medium.get(key)
        except OSError:
            logger.error("Could not read local backup %s", key, exc_info=True)
            return None
        if raw is None:
            return None
        return self._decode(key, raw)

    def clear(self, actor_id: str, report_date: datetime.date) -> None:
        key = self.key_for(actor_id, report_date)
        try:
            self.medium.remove(key)
        except OSError:
            logger.error("Could not clear local backup %s", key, exc_info=True)

    def _decode(self, key: str, raw: str) -> Optional[BackupSnapshot]:
        try:
            payload: Any = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable local backup %s", key)
            return None
        if isinstance(payload, str):
            logger.error("Local backup %s is double-encoded; treating it as corrupt", key)
            return None
        if not isinstance(payload, dict):
            logger.warning("Discarding local backup %s with unexpected shape", key)
            return None
        try:
            saved_at = _aware(datetime.datetime.fromisoformat(payload["saved_at"]))
            report_date = datetime.date.fromisoformat(payload["report_date"])
            order_rows = tuple(OrderRow.from_dict(item) for item in payload.get("order_rows") or [])
            staff_rows = tuple(StaffRow.from_dict(item) for item in payload.get("staff_rows") or [])
        except (KeyError, TypeError, ValueError, AttributeError):
            logger.warning("Discarding malformed local backup %s", key)
            return None
        return BackupSnapshot(
            actor_id=str(payload.get("actor_id") or ""),
            report_date=report_date,
            order_rows=order_rows,
            staff_rows=staff_rows,
            saved_at=saved_at,
        )

    def _own_keys(self) -> Iterable[str]:
        suffix = f"_{self.module_key}"
        for key in self.medium.keys():
            if key.startswith(f"{KEY_PREFIX}_") and key.endswith(suffix):
                yield key

    def list_snapshots(self) -> List[BackupSnapshot]:
        """List every decodable snapshot for this module, newest first."""
        snapshots: List[BackupSnapshot] = []
        for key in self._own_keys():
            raw = self.medium.get(key)
            if raw is None:
                continue
            snapshot = self._decode(key, raw)
            if snapshot is not None:
                snapshots.append(snapshot)
        snapshots.sort(key=lambda item: item.saved_at, reverse=True)
        return snapshots

    def cleanup_stale(self, max_age: datetime.timedelta) -> int:
        """Remove snapshots older than `max_age` along with undecodable entries.

        Returns:
            Number of entries removed.
        """
        now = _aware(self.clock())
        removed = 0
        for key in list(self._own_keys()):
            raw = self.medium.get(key)
            snapshot = self._decode(key, raw) if raw is not None else None
            if snapshot is None or now - snapshot.saved_at > max_age:
                self.medium.remove(key)
                removed += 1
        return removed
