from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, Tuple


DATA_DIR = Path(__file__).resolve().parent / "data"
REPORTS_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'reports.db').as_posix()}"
BACKUP_DIR = DATA_DIR / "report_backups"

ROW_COLORS: Tuple[str, ...] = (
    "yellow",
    "gold",
    "cyan",
    "purple",
    "peach",
    "brown",
    "olive",
    "green",
)

MANAGER_ROLES: FrozenSet[str] = frozenset(
    {
        "admin",
        "ceo",
        "general_manager",
        "scaffold_executive_manager",
        "executive_manager_scaffold_execution_with_materials",
    }
)

# Roles whose members show up in the staff picker.
STAFF_DIRECTORY_ROLES: FrozenSet[str] = frozenset(
    {
        "scaffold_executive_manager",
        "executive_manager_scaffold_execution_with_materials",
        "sales_manager",
        "general_manager",
        "finance_manager",
    }
)

CASH_BOX_LABEL = "Cash box"
DEFAULT_MODULE_KEY = "daily_report"


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class EngineConfig:
    """Immutable knobs shared by the row controller, locator and scheduler."""

    quiescence_seconds: float = 1.0
    saved_display_seconds: float = 2.0
    backup_freshness_seconds: float = 60.0
    module_key: str = DEFAULT_MODULE_KEY
    row_colors: Tuple[str, ...] = ROW_COLORS
    manager_roles: FrozenSet[str] = field(default_factory=lambda: MANAGER_ROLES)
    staff_directory_roles: FrozenSet[str] = field(default_factory=lambda: STAFF_DIRECTORY_ROLES)
    cash_box_label: str = CASH_BOX_LABEL

    def __post_init__(self) -> None:
        if not self.row_colors:
            raise ValueError("row_colors must contain at least one color.")
        if self.quiescence_seconds < 0 or self.saved_display_seconds < 0:
            raise ValueError("Timer durations cannot be negative.")

    @classmethod
    def from_env(cls) -> "EngineConfig":
        roles_raw = os.environ.get("DAILY_REPORT_MANAGER_ROLES", "")
        roles = frozenset(role.strip() for role in roles_raw.split(",") if role.strip())
        return cls(
            quiescence_seconds=_env_float("DAILY_REPORT_QUIESCENCE_SECONDS", 1.0),
            saved_display_seconds=_env_float("DAILY_REPORT_SAVED_DISPLAY_SECONDS", 2.0),
            backup_freshness_seconds=_env_float("DAILY_REPORT_BACKUP_FRESHNESS_SECONDS", 60.0),
            module_key=os.environ.get("DAILY_REPORT_MODULE_KEY", "").strip() or DEFAULT_MODULE_KEY,
            manager_roles=roles or MANAGER_ROLES,
        )


def database_url() -> str:
    return os.environ.get("DAILY_REPORT_DATABASE_URL", "").strip() or REPORTS_DATABASE_URL
