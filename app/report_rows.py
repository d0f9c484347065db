from __future__ import annotations

import dataclasses
import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from errors import InvariantViolationError
from settings import EngineConfig


logger = logging.getLogger(__name__)

ORDER_ROWS = "order"
STAFF_ROWS = "staff"
ROW_KINDS = (ORDER_ROWS, STAFF_ROWS)

WORK_PRESENT = "present"
WORK_ABSENT = "absent"
WORK_STATUSES = (WORK_PRESENT, WORK_ABSENT)

AMOUNT_FIELDS = {"overtime_hours", "amount_received", "amount_spent"}


def coerce_amount(value: Any) -> float:
    """Parse user input into a non-negative float; anything unparsable is zero."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        cleaned = str(value).replace(",", "").strip()
        if not cleaned:
            return 0.0
        try:
            number = float(cleaned)
        except ValueError:
            return 0.0
    if not math.isfinite(number):
        return 0.0
    return max(0.0, number)


def coerce_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def coerce_reference(value: Any) -> Optional[str]:
    if value is None:
        return None
    label = str(value).strip()
    return label or None


def coerce_work_status(value: Any) -> str:
    label = (str(value or "")).strip().lower()
    return WORK_PRESENT if label == WORK_PRESENT else WORK_ABSENT


@dataclass(frozen=True)
class OrderRow:
    order_id: Optional[str] = None
    activity_description: str = ""
    service_details: str = ""
    team_name: str = ""
    notes: str = ""
    row_color: str = "yellow"

    def is_empty(self) -> bool:
        # row_color is assigned automatically and never counts as input.
        return not self.order_id and not any(
            value.strip()
            for value in (self.activity_description, self.service_details, self.team_name, self.notes)
        )

    def is_meaningful(self) -> bool:
        return bool(self.order_id)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "OrderRow":
        return cls(
            order_id=coerce_reference(payload.get("order_id")),
            activity_description=coerce_text(payload.get("activity_description")),
            service_details=coerce_text(payload.get("service_details")),
            team_name=coerce_text(payload.get("team_name")),
            notes=coerce_text(payload.get("notes")),
            row_color=coerce_text(payload.get("row_color")) or "yellow",
        )


@dataclass(frozen=True)
class StaffRow:
    staff_user_id: Optional[str] = None
    staff_name: str = ""
    work_status: str = WORK_ABSENT
    overtime_hours: float = 0.0
    amount_received: float = 0.0
    receiving_notes: str = ""
    amount_spent: float = 0.0
    spending_notes: str = ""
    notes: str = ""
    is_cash_box: bool = False

    def has_content(self) -> bool:
        return bool(self.staff_user_id) or bool(self.staff_name.strip()) or self.has_ledger_entries()

    def has_ledger_entries(self) -> bool:
        return (
            self.overtime_hours > 0
            or self.amount_received > 0
            or self.amount_spent > 0
            or bool(self.receiving_notes.strip())
            or bool(self.spending_notes.strip())
            or bool(self.notes.strip())
        )

    def is_empty(self) -> bool:
        return not self.is_cash_box and not self.has_content()

    def is_meaningful(self) -> bool:
        return self.is_cash_box or self.has_content()

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "StaffRow":
        return cls(
            staff_user_id=coerce_reference(payload.get("staff_user_id")),
            staff_name=coerce_text(payload.get("staff_name")),
            work_status=coerce_work_status(payload.get("work_status")),
            overtime_hours=coerce_amount(payload.get("overtime_hours")),
            amount_received=coerce_amount(payload.get("amount_received")),
            receiving_notes=coerce_text(payload.get("receiving_notes")),
            amount_spent=coerce_amount(payload.get("amount_spent")),
            spending_notes=coerce_text(payload.get("spending_notes")),
            notes=coerce_text(payload.get("notes")),
            is_cash_box=payload.get("is_cash_box") is True,
        )


ORDER_FIELDS = {f.name for f in dataclasses.fields(OrderRow)}
STAFF_FIELDS = {f.name for f in dataclasses.fields(StaffRow)} - {"is_cash_box"}


def _check_kind(kind: str) -> None:
    if kind not in ROW_KINDS:
        raise ValueError(f"Unknown row kind '{kind}'.")


def trailing_empty_count(rows: Sequence, kind: str) -> int:
    """Count consecutive empty rows at the end, skipping the cash-box row."""
    _check_kind(kind)
    count = 0
    for row in reversed(rows):
        if kind == STAFF_ROWS and row.is_cash_box:
            continue
        if not row.is_empty():
            break
        count += 1
    return count


def meaningful_order_rows(rows: Sequence[OrderRow]) -> List[OrderRow]:
    return [row for row in rows if row.is_meaningful()]


def meaningful_staff_rows(rows: Sequence[StaffRow]) -> List[StaffRow]:
    return [row for row in rows if row.is_meaningful()]


def report_has_content(order_rows: Sequence[OrderRow], staff_rows: Sequence[StaffRow]) -> bool:
    """True once the user entered something worth creating a record for."""
    if any(row.is_meaningful() for row in order_rows):
        return True
    return any(row.has_ledger_entries() if row.is_cash_box else row.has_content() for row in staff_rows)


def snapshot_fingerprint(order_rows: Sequence[OrderRow], staff_rows: Sequence[StaffRow]) -> str:
    """Stable digest of the content a flush would actually write."""
    payload = {
        "orders": [row.to_dict() for row in meaningful_order_rows(order_rows)],
        "staff": [row.to_dict() for row in meaningful_staff_rows(staff_rows)],
    }
    return json.dumps(payload, sort_keys=True)


def calculate_totals(staff_rows: Sequence[StaffRow]) -> Dict[str, float]:
    present_count = sum(1 for row in staff_rows if row.work_status == WORK_PRESENT and not row.is_cash_box)
    return {
        "present_count": present_count,
        "total_overtime": round(sum(row.overtime_hours for row in staff_rows), 2),
        "total_received": round(sum(row.amount_received for row in staff_rows), 2),
        "total_spent": round(sum(row.amount_spent for row in staff_rows), 2),
        "cash_box_spent": round(sum(row.amount_spent for row in staff_rows if row.is_cash_box), 2),
        "staff_received": round(sum(row.amount_received for row in staff_rows if not row.is_cash_box), 2),
    }


class RowListController:
    """Keeps editable row collections in their invariant shape.

    Every operation returns a new list. Order rows always end in exactly one
    empty row; staff rows additionally carry exactly one cash-box row, pinned
    at index 0 and ignored by the trailing-empty scan.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        staff_directory: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.staff_directory: Dict[str, str] = dict(staff_directory or {})

    def new_row(self, kind: str, index: int = 0):
        _check_kind(kind)
        if kind == ORDER_ROWS:
            colors = self.config.row_colors
            return OrderRow(row_color=colors[index % len(colors)])
        return StaffRow()

    def cash_box_row(self) -> StaffRow:
        return StaffRow(staff_name=self.config.cash_box_label, work_status=WORK_PRESENT, is_cash_box=True)

    def initial_rows(self, kind: str) -> list:
        _check_kind(kind)
        if kind == ORDER_ROWS:
            return [self.new_row(ORDER_ROWS, 0)]
        return [self.cash_box_row(), self.new_row(STAFF_ROWS)]

    def normalize(self, rows: Sequence, kind: str) -> list:
        _check_kind(kind)
        if not rows:
            raise InvariantViolationError(f"A {kind} row collection cannot be empty.")
        if kind == ORDER_ROWS:
            result = list(rows)
            self._settle_trailing(result, kind)
            return result

        cash_box: StaffRow | None = None
        others: List[StaffRow] = []
        for row in rows:
            if not row.is_cash_box:
                others.append(row)
            elif cash_box is None:
                cash_box = row
            else:
                logger.warning("Demoting duplicate cash box row '%s' to a regular staff row", row.staff_name)
                others.append(dataclasses.replace(row, is_cash_box=False))
        self._settle_trailing(others, kind)
        return [cash_box or self.cash_box_row()] + others

    def _settle_trailing(self, rows: list, kind: str) -> None:
        trailing = trailing_empty_count(rows, kind)
        if trailing == 0:
            rows.append(self.new_row(kind, len(rows)))
        elif trailing > 1:
            del rows[len(rows) - (trailing - 1):]

    def add_row(self, rows: Sequence, kind: str) -> list:
        """Append a blank row; a collection already ending in one is left as is."""
        _check_kind(kind)
        result = list(rows)
        result.append(self.new_row(kind, len(result)))
        return self.normalize(result, kind)

    def remove_row(self, rows: Sequence, kind: str, index: int) -> list:
        _check_kind(kind)
        self._check_index(rows, index)
        if kind == STAFF_ROWS and rows[index].is_cash_box:
            raise InvariantViolationError("The cash box row cannot be removed.")
        result = [row for position, row in enumerate(rows) if position != index]
        if not result:
            return self.initial_rows(kind)
        return self.normalize(result, kind)

    def update_field(self, rows: Sequence, kind: str, index: int, field: str, value: Any) -> list:
        _check_kind(kind)
        self._check_index(rows, index)
        changes = self._coerce_change(kind, field, value)
        if kind == STAFF_ROWS and field == "staff_user_id" and changes["staff_user_id"]:
            name = self.staff_directory.get(changes["staff_user_id"])
            if name:
                changes["staff_name"] = name
        result = list(rows)
        result[index] = dataclasses.replace(result[index], **changes)
        return self.normalize(result, kind)

    def _coerce_change(self, kind: str, field: str, value: Any) -> Dict[str, Any]:
        if kind == STAFF_ROWS and field == "is_cash_box":
            raise InvariantViolationError("The cash box flag is managed by the engine.")
        allowed = ORDER_FIELDS if kind == ORDER_ROWS else STAFF_FIELDS
        if field not in allowed:
            raise InvariantViolationError(f"Unknown {kind} row field '{field}'.")
        if field in ("order_id", "staff_user_id"):
            return {field: coerce_reference(value)}
        if field in AMOUNT_FIELDS:
            return {field: coerce_amount(value)}
        if field == "work_status":
            label = coerce_text(value).strip().lower()
            if label not in WORK_STATUSES:
                raise InvariantViolationError(f"Unknown work status '{value}'.")
            return {field: label}
        if field == "row_color":
            color = coerce_text(value).strip()
            if color not in self.config.row_colors:
                raise InvariantViolationError(f"Unknown row color '{value}'.")
            return {field: color}
        return {field: coerce_text(value)}

    @staticmethod
    def _check_index(rows: Sequence, index: int) -> None:
        if not 0 <= index < len(rows):
            raise IndexError(f"Row index {index} is out of range for {len(rows)} rows.")
