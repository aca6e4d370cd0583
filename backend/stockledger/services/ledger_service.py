# Overview: Inventory ledger: append-only log of every stock change.

"""
Ledger invariants (authoritative)

- Append-only: this module exposes no update or delete; ORM hooks reject both.
- Entries are written inside the same DB transaction as the product update
  they describe, from the StockChange observed inside that transaction.
- new_quantity == previous_quantity + quantity_delta, exactly.
- Per product, ordered by (created_at, id), previous_quantity chains to the
  prior new_quantity. created_at is stamped when the entry is appended, after
  the product row was locked and updated, so ledger time follows lock order.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.orm import Session

from stockledger.errors import ValidationError
from stockledger.models import ChangeType, InventoryLedgerEntry
from stockledger.time_utils import DateRange, utcnow
from .product_service import StockChange, get_product


@dataclass(frozen=True)
class ChainBreak:
    """A ledger entry whose previous_quantity disagrees with the prior entry."""

    entry_id: int
    expected_previous_quantity: int
    actual_previous_quantity: int


def normalize_change_type(change_type) -> ChangeType:
    try:
        return ChangeType(change_type.value if isinstance(change_type, ChangeType) else str(change_type).upper())
    except ValueError:
        raise ValidationError(f"Unknown change type: {change_type}")


def append_entry(
    session: Session,
    *,
    change: StockChange,
    change_type: ChangeType | str,
    actor_id: int,
    reference_type: str | None = None,
    reference_id: int | None = None,
    note: str | None = None,
    created_at: datetime | None = None,
) -> InventoryLedgerEntry:
    """
    Append one ledger entry for a StockChange.

    No domain logic here and no commit: the caller's unit of work decides.
    Call it after the product update so created_at is taken under the row lock.
    """
    entry = InventoryLedgerEntry(
        product_id=change.product_id,
        change_type=normalize_change_type(change_type).value,
        previous_quantity=change.previous_quantity,
        quantity_delta=change.quantity_delta,
        new_quantity=change.new_quantity,
        previous_cost_cents=change.previous_cost_cents,
        cost_delta_cents=change.cost_delta_cents,
        new_cost_cents=change.new_cost_cents,
        reference_type=reference_type,
        reference_id=reference_id,
        actor_id=actor_id,
        note=note,
        created_at=created_at or utcnow(),
    )
    session.add(entry)
    session.flush()  # ensures entry.id is assigned without committing
    return entry


def query_by_product(
    session: Session,
    product_id: int,
    date_range: DateRange | None = None,
    *,
    change_type: ChangeType | str | None = None,
) -> list[InventoryLedgerEntry]:
    """Entries for one product in ledger order (created_at, id)."""
    get_product(session, product_id)

    query = session.query(InventoryLedgerEntry).filter(InventoryLedgerEntry.product_id == product_id)
    if date_range is not None:
        query = query.filter(
            InventoryLedgerEntry.created_at >= date_range.start_dt,
            InventoryLedgerEntry.created_at < date_range.end_dt,
        )
    if change_type is not None:
        query = query.filter(InventoryLedgerEntry.change_type == normalize_change_type(change_type).value)

    return query.order_by(InventoryLedgerEntry.created_at.asc(), InventoryLedgerEntry.id.asc()).all()


def entries_for_reference(session: Session, reference_type: str, reference_id: int) -> list[InventoryLedgerEntry]:
    return (
        session.query(InventoryLedgerEntry)
        .filter_by(reference_type=reference_type, reference_id=reference_id)
        .order_by(InventoryLedgerEntry.created_at.asc(), InventoryLedgerEntry.id.asc())
        .all()
    )


def has_entries_for_reference(session: Session, reference_type: str, reference_id: int) -> bool:
    return (
        session.query(InventoryLedgerEntry.id)
        .filter_by(reference_type=reference_type, reference_id=reference_id)
        .first()
        is not None
    )


def sum_deltas(session: Session, product_id: int) -> int:
    return int(
        session.query(func.coalesce(func.sum(InventoryLedgerEntry.quantity_delta), 0))
        .filter(InventoryLedgerEntry.product_id == product_id)
        .scalar()
        or 0
    )


def verify_ledger_chain(session: Session, product_id: int) -> list[ChainBreak]:
    """
    Walk a product's entries in ledger order and report every broken link.

    An empty list means the chain is consistent.
    """
    breaks: list[ChainBreak] = []
    previous_new: int | None = None
    entries = (
        session.query(InventoryLedgerEntry)
        .filter(InventoryLedgerEntry.product_id == product_id)
        .order_by(InventoryLedgerEntry.created_at.asc(), InventoryLedgerEntry.id.asc())
        .all()
    )
    for entry in entries:
        if previous_new is not None and entry.previous_quantity != previous_new:
            breaks.append(
                ChainBreak(
                    entry_id=entry.id,
                    expected_previous_quantity=previous_new,
                    actual_previous_quantity=entry.previous_quantity,
                )
            )
        previous_new = entry.new_quantity
    return breaks


def verify_product_balance(session: Session, product_id: int, initial_quantity: int = 0) -> bool:
    """quantity_on_hand == initial_quantity + SUM(quantity_delta)."""
    product = get_product(session, product_id)
    return product.quantity_on_hand == initial_quantity + sum_deltas(session, product_id)


def get_inventory_change_summary(session: Session, date_range: DateRange) -> list[dict]:
    """Total delta and entry count per change type inside the range."""
    rows = (
        session.query(
            InventoryLedgerEntry.change_type,
            func.coalesce(func.sum(InventoryLedgerEntry.quantity_delta), 0).label("total_change"),
            func.count(InventoryLedgerEntry.id).label("count"),
        )
        .filter(
            InventoryLedgerEntry.created_at >= date_range.start_dt,
            InventoryLedgerEntry.created_at < date_range.end_dt,
        )
        .group_by(InventoryLedgerEntry.change_type)
        .order_by(InventoryLedgerEntry.change_type.asc())
        .all()
    )
    return [
        {
            "change_type": row.change_type,
            "total_change": int(row.total_change or 0),
            "count": int(row.count or 0),
        }
        for row in rows
    ]


def latest_entry_before(session: Session, product_id: int, before: datetime) -> InventoryLedgerEntry | None:
    return (
        session.query(InventoryLedgerEntry)
        .filter(
            InventoryLedgerEntry.product_id == product_id,
            InventoryLedgerEntry.created_at < before,
        )
        .order_by(InventoryLedgerEntry.created_at.desc(), InventoryLedgerEntry.id.desc())
        .first()
    )

