# Overview: Explicit parameter and result structs for the inventory commands.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping

from stockledger.errors import ValidationError
from stockledger.time_utils import to_utc_z


def _to_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise ValidationError(f"{field_name} must be an integer")


@dataclass(frozen=True)
class LineItemInput:
    """One line of an import/return/check document as supplied by the caller."""

    product_id: int
    quantity: int = 0
    unit_cost_cents: int | None = None
    counted_quantity: int | None = None

    @classmethod
    def from_value(cls, value: "LineItemInput | Mapping[str, Any]") -> "LineItemInput":
        if isinstance(value, cls):
            return value
        if not isinstance(value, Mapping):
            raise ValidationError("Line item must be a mapping")
        if "product_id" not in value:
            raise ValidationError("Line item is missing product_id")
        unit_cost = value.get("unit_cost_cents")
        counted = value.get("counted_quantity")
        return cls(
            product_id=_to_int(value["product_id"], "product_id"),
            quantity=_to_int(value.get("quantity", 0), "quantity"),
            unit_cost_cents=None if unit_cost is None else _to_int(unit_cost, "unit_cost_cents"),
            counted_quantity=None if counted is None else _to_int(counted, "counted_quantity"),
        )


@dataclass(frozen=True)
class CountedLine:
    """Physically counted quantity for one product on a check."""

    product_id: int
    counted_quantity: int

    @classmethod
    def from_value(cls, value: "CountedLine | Mapping[str, Any] | tuple") -> "CountedLine":
        if isinstance(value, cls):
            return value
        if isinstance(value, tuple) and len(value) == 2:
            product_id, counted = value
        elif isinstance(value, Mapping):
            if "product_id" not in value or "counted_quantity" not in value:
                raise ValidationError("Counted line needs product_id and counted_quantity")
            product_id, counted = value["product_id"], value["counted_quantity"]
        else:
            raise ValidationError("Counted line must be a mapping or (product_id, counted_quantity)")
        counted = _to_int(counted, "counted_quantity")
        if counted < 0:
            raise ValidationError("Counted quantity cannot be negative")
        return cls(product_id=_to_int(product_id, "product_id"), counted_quantity=counted)


def normalize_counted_lines(values: Iterable | None) -> list[CountedLine]:
    lines = [CountedLine.from_value(value) for value in (values or [])]
    seen: set[int] = set()
    for line in lines:
        if line.product_id in seen:
            raise ValidationError(f"Product {line.product_id} is counted more than once")
        seen.add(line.product_id)
    return lines


@dataclass(frozen=True)
class LineItemDelta:
    """Signed stock change for one product derived from a document's lines."""

    product_id: int
    quantity: int
    unit_cost_cents: int | None = None


@dataclass
class ApplyResult:
    """Outcome of applying or balancing a document."""

    document: Any
    applied_at: datetime
    entries: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "document_id": self.document.id,
            "receipt_number": self.document.receipt_number,
            "status": self.document.status,
            "applied_at": to_utc_z(self.applied_at),
            "entries": [entry.to_dict() for entry in self.entries],
        }
