from __future__ import annotations

import datetime
import json
import logging
import os
import sys
from pathlib import Path

APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import uvicorn  # noqa: E402

from backup import JsonFileCache, LocalBackupStore  # noqa: E402
from database import init_database  # noqa: E402
from settings import BACKUP_DIR, DATA_DIR, EngineConfig  # noqa: E402


LOG_FILE = DATA_DIR / "daily-report-api.log"
STALE_BACKUP_AGE = datetime.timedelta(days=7)

logger = logging.getLogger(__name__)


class JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.datetime.fromtimestamp(record.created, tz=datetime.timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def configure_logging() -> None:
    level_name = os.environ.get("DAILY_REPORT_LOG_LEVEL", "INFO").upper()
    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    for handler in (logging.FileHandler(LOG_FILE, encoding="utf-8"), logging.StreamHandler()):
        handler.setFormatter(JsonFormatter())
        root.addHandler(handler)


def launch_app() -> int:
    configure_logging()
    init_database()
    config = EngineConfig.from_env()

    # Drop week-old local snapshots on startup; fresh ones stay for reconciliation.
    store = LocalBackupStore(JsonFileCache(BACKUP_DIR), module_key=config.module_key)
    removed = store.cleanup_stale(STALE_BACKUP_AGE)
    if removed:
        logger.info("Removed %d stale local backups", removed)

    host = os.environ.get("DAILY_REPORT_HOST", "127.0.0.1")
    port = int(os.environ.get("DAILY_REPORT_PORT", "8000"))
    uvicorn.run("api:app", host=host, port=port, log_config=None)
    return 0


if __name__ == "__main__":
    sys.exit(launch_app())
