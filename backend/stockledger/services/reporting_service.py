# Overview: Read-only projections over the ledger and product store (turnover, dead stock, forecasts, dashboard totals).

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from sqlalchemy import func
from sqlalchemy.orm import Session

from stockledger.errors import ValidationError
from stockledger.models import ChangeType, ImportReceipt, InventoryLedgerEntry, Product, ReturnReceipt
from stockledger.time_utils import DateRange, resolve_date_range, to_utc_z
from .ledger_service import get_inventory_change_summary as _change_summary
from .ledger_service import latest_entry_before, query_by_product
from .product_service import get_product, get_total_inventory, get_total_inventory_value_cents, list_products

DEFAULT_REPORT_DAYS = 30


def _naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _range(date_range: DateRange | None, default_days: int) -> DateRange:
    if date_range is None:
        return resolve_date_range(None, None, default_days=default_days)
    if not isinstance(date_range, DateRange):
        raise ValidationError("date_range must be a DateRange")
    return date_range


def _quantity_at(session: Session, product: Product, moment: datetime) -> int:
    """
    Quantity on hand just before `moment`, reconstructed from the ledger.

    The last entry before `moment` gives its new_quantity; failing that the
    first entry at or after it gives its previous_quantity; a product with no
    entries at all has always held its current quantity.
    """
    before = latest_entry_before(session, product.id, moment)
    if before is not None:
        return int(before.new_quantity)
    after = (
        session.query(InventoryLedgerEntry.previous_quantity)
        .filter(InventoryLedgerEntry.product_id == product.id, InventoryLedgerEntry.created_at >= moment)
        .order_by(InventoryLedgerEntry.created_at.asc(), InventoryLedgerEntry.id.asc())
        .first()
    )
    if after is not None:
        return int(after[0])
    return int(product.quantity_on_hand or 0)


def _imported_quantity(session: Session, product_id: int, date_range: DateRange) -> int:
    return int(
        session.query(func.coalesce(func.sum(func.abs(InventoryLedgerEntry.quantity_delta)), 0))
        .filter(
            InventoryLedgerEntry.product_id == product_id,
            InventoryLedgerEntry.change_type == ChangeType.IMPORT.value,
            InventoryLedgerEntry.created_at >= date_range.start_dt,
            InventoryLedgerEntry.created_at < date_range.end_dt,
        )
        .scalar()
        or 0
    )


def get_ledger_by_product(
    session: Session,
    product_id: int,
    date_range: DateRange | None = None,
    *,
    change_type: ChangeType | str | None = None,
    default_days: int = DEFAULT_REPORT_DAYS,
) -> list[dict]:
    rng = _range(date_range, default_days)
    return [entry.to_dict() for entry in query_by_product(session, product_id, rng, change_type=change_type)]


def get_turnover_dataset(
    session: Session,
    date_range: DateRange | None = None,
    *,
    default_days: int = DEFAULT_REPORT_DAYS,
) -> list[dict]:
    """
    Inventory turnover per product over the range.

    turnover = imported units in range / average(beginning, ending) stock;
    0 when the average stock is 0. "turnover" is rounded to two places for
    display, "turnover_ratio" keeps the exact value for derived figures.
    """
    rng = _range(date_range, default_days)
    rows = []
    for product in session.query(Product).order_by(Product.code.asc()).all():
        beginning = _quantity_at(session, product, rng.start_dt)
        ending = _quantity_at(session, product, rng.end_dt)
        imported = _imported_quantity(session, product.id, rng)
        average = (beginning + ending) / 2
        ratio = imported / average if average > 0 else 0.0
        rows.append({
            "product_id": product.id,
            "product_code": product.code,
            "product_name": product.name,
            "beginning_inventory": beginning,
            "ending_inventory": ending,
            "average_inventory": average,
            "imported_quantity": imported,
            "turnover": round(ratio, 2),
            "turnover_ratio": ratio,
        })
    return rows


def get_dead_stock(
    session: Session,
    date_range: DateRange | None = None,
    *,
    default_days: int = DEFAULT_REPORT_DAYS,
) -> list[dict]:
    """
    Products still holding stock, most units first.

    remaining_ratio is current stock as a percentage of stock at range start
    (None when the product held nothing then). last_movement_at is the most
    recent non-zero ledger change, at any time.
    """
    rng = _range(date_range, default_days)
    products = (
        session.query(Product)
        .filter(Product.quantity_on_hand > 0)
        .order_by(Product.quantity_on_hand.desc(), Product.code.asc())
        .all()
    )

    rows = []
    for product in products:
        initial = _quantity_at(session, product, rng.start_dt)
        last_movement = (
            session.query(func.max(InventoryLedgerEntry.created_at))
            .filter(
                InventoryLedgerEntry.product_id == product.id,
                InventoryLedgerEntry.quantity_delta != 0,
            )
            .scalar()
        )
        moved_in_range = (
            last_movement is not None and rng.start_dt <= _naive(last_movement) < rng.end_dt
        )
        rows.append({
            "product_id": product.id,
            "product_code": product.code,
            "product_name": product.name,
            "quantity_on_hand": product.quantity_on_hand,
            "initial_quantity": initial,
            "remaining_ratio": round(product.quantity_on_hand / initial * 100, 2) if initial > 0 else None,
            "inventory_value_cents": product.inventory_value_cents,
            "last_movement_at": to_utc_z(last_movement),
            "moved_in_range": moved_in_range,
        })
    return rows


def get_out_of_stock_forecast(
    session: Session,
    date_range: DateRange | None = None,
    *,
    default_days: int = DEFAULT_REPORT_DAYS,
) -> list[dict]:
    """
    Expected stock-out date per product.

    days_to_sell_out = round(365 / turnover_ratio), from the unrounded ratio;
    the forecast date counts that many days from the last import. Products
    with no turnover or no import get no date and sort last.
    """
    rng = _range(date_range, default_days)
    rows = []
    for item in get_turnover_dataset(session, rng):
        ratio = item["turnover_ratio"]
        days = round(365 / ratio) if ratio > 0 else None
        last_restock = (
            session.query(func.max(InventoryLedgerEntry.created_at))
            .filter(
                InventoryLedgerEntry.product_id == item["product_id"],
                InventoryLedgerEntry.change_type == ChangeType.IMPORT.value,
            )
            .scalar()
        )
        forecast = None
        if days is not None and last_restock is not None:
            try:
                forecast = (_naive(last_restock) + timedelta(days=days)).date()
            except OverflowError:
                # Beyond the calendar: effectively never sells out
                forecast = None
        rows.append({
            "product_id": item["product_id"],
            "product_code": item["product_code"],
            "product_name": item["product_name"],
            "turnover": item["turnover"],
            "days_to_sell_out": days,
            "last_restock_at": to_utc_z(last_restock),
            "out_of_stock_date": forecast.isoformat() if forecast else None,
        })

    rows.sort(key=lambda row: (row["out_of_stock_date"] is None, row["out_of_stock_date"] or "", row["product_code"]))
    return rows


def get_inventory_change_summary(
    session: Session,
    date_range: DateRange | None = None,
    *,
    default_days: int = DEFAULT_REPORT_DAYS,
) -> list[dict]:
    return _change_summary(session, _range(date_range, default_days))


def get_inventory_by_date_range(
    session: Session,
    date_range: DateRange | None = None,
    *,
    default_days: int = DEFAULT_REPORT_DAYS,
) -> list[dict]:
    """
    Total units on hand at the end of each day in the range.

    Walks back from today's total: a day's closing stock is the current total
    minus every ledger delta recorded after that day ended. Days without
    movement carry the previous day's figure.
    """
    rng = _range(date_range, default_days)
    total_now = get_total_inventory(session)

    first_close = datetime.combine(rng.start + timedelta(days=1), datetime.min.time())
    later = (
        session.query(InventoryLedgerEntry.created_at, InventoryLedgerEntry.quantity_delta)
        .filter(InventoryLedgerEntry.created_at >= first_close)
        .order_by(InventoryLedgerEntry.created_at.desc())
        .all()
    )

    series = []
    for day in rng.days():
        day_close = datetime.combine(day + timedelta(days=1), datetime.min.time())
        after = sum(delta for created_at, delta in later if _naive(created_at) >= day_close)
        series.append({"date": day.isoformat(), "total_quantity": total_now - after})
    return series


def get_value_inventory_by_date_range(
    session: Session,
    date_range: DateRange | None = None,
    *,
    default_days: int = DEFAULT_REPORT_DAYS,
) -> list[dict]:
    """Per day: sum of quantity_delta x new cost for IMPORT and RETURN entries."""
    rng = _range(date_range, default_days)
    entries = (
        session.query(
            InventoryLedgerEntry.created_at,
            InventoryLedgerEntry.quantity_delta,
            InventoryLedgerEntry.new_cost_cents,
        )
        .filter(
            InventoryLedgerEntry.change_type.in_([ChangeType.IMPORT.value, ChangeType.RETURN.value]),
            InventoryLedgerEntry.created_at >= rng.start_dt,
            InventoryLedgerEntry.created_at < rng.end_dt,
        )
        .all()
    )

    by_day: dict[date, int] = {}
    for created_at, delta, cost in entries:
        day = _naive(created_at).date()
        by_day[day] = by_day.get(day, 0) + delta * (cost or 0)

    return [{"date": day.isoformat(), "value_cents": by_day.get(day, 0)} for day in rng.days()]


_TOP_SORTS = {
    "quantity": Product.quantity_on_hand,
    "value": Product.quantity_on_hand * Product.unit_cost_cents,
}
# Ties break on the other metric, always largest first
_TOP_TIEBREAKS = {"quantity": "value", "value": "quantity"}


def get_top_stock_items(
    session: Session,
    *,
    sort_by: str = "quantity",
    descending: bool = True,
    limit: int = 10,
) -> list[dict]:
    """Products holding stock, ranked by units or by stock value."""
    if sort_by not in _TOP_SORTS:
        raise ValidationError("sort_by must be quantity or value")
    if limit <= 0:
        raise ValidationError("limit must be positive")
    column = _TOP_SORTS[sort_by]
    order = column.desc() if descending else column.asc()
    tiebreak = _TOP_SORTS[_TOP_TIEBREAKS[sort_by]].desc()
    products = (
        session.query(Product)
        .filter(Product.quantity_on_hand > 0)
        .order_by(order, tiebreak, Product.code.asc())
        .limit(limit)
        .all()
    )
    return [product.to_dict() for product in products]


# =============================================================================
# Dashboard totals
# =============================================================================

def get_inventory_by_category(session: Session, category: str | None = None) -> dict:
    """
    Units and stock value on hand, overall or for one category.

    "categories" breaks the figure down per category; products without a
    category are grouped under None.
    """
    query = session.query(
        Product.category,
        func.count(Product.id),
        func.coalesce(func.sum(Product.quantity_on_hand), 0),
        func.coalesce(func.sum(Product.quantity_on_hand * Product.unit_cost_cents), 0),
    )
    if category:
        query = query.filter(Product.category == category)
    breakdown = [
        {
            "category": name,
            "product_count": int(count),
            "total_quantity": int(quantity),
            "total_value_cents": int(value),
        }
        for name, count, quantity, value in query.group_by(Product.category).order_by(Product.category.asc()).all()
    ]

    if category:
        total_quantity = sum(row["total_quantity"] for row in breakdown)
        total_value = sum(row["total_value_cents"] for row in breakdown)
    else:
        total_quantity = get_total_inventory(session)
        total_value = get_total_inventory_value_cents(session)

    return {
        "category": category,
        "total_quantity": total_quantity,
        "total_value_cents": total_value,
        "categories": breakdown,
    }


def get_products_by_category(
    session: Session,
    category: str,
    *,
    limit: int = 10,
    offset: int = 0,
) -> tuple[list[dict], int]:
    if not (category or "").strip():
        raise ValidationError("category is required")
    rows, total = list_products(session, category=category.strip(), limit=limit, offset=offset)
    return [product.to_dict() for product in rows], total


def _daily_movement(
    session: Session,
    change_type: ChangeType,
    date_range: DateRange,
    product_id: int | None = None,
) -> list[dict]:
    """Per day in range: units moved (|delta|) and distinct receipts for one change type."""
    query = session.query(
        InventoryLedgerEntry.created_at,
        InventoryLedgerEntry.quantity_delta,
        InventoryLedgerEntry.reference_id,
    ).filter(
        InventoryLedgerEntry.change_type == change_type.value,
        InventoryLedgerEntry.created_at >= date_range.start_dt,
        InventoryLedgerEntry.created_at < date_range.end_dt,
    )
    if product_id is not None:
        query = query.filter(InventoryLedgerEntry.product_id == product_id)

    quantities: dict[date, int] = {}
    receipts: dict[date, set] = {}
    for created_at, delta, reference_id in query.all():
        day = _naive(created_at).date()
        quantities[day] = quantities.get(day, 0) + abs(delta)
        if reference_id is not None:
            receipts.setdefault(day, set()).add(reference_id)

    return [
        {
            "date": day.isoformat(),
            "quantity": quantities.get(day, 0),
            "receipt_count": len(receipts.get(day, ())),
        }
        for day in date_range.days()
    ]


def _receipt_totals(session: Session, model, change_type: ChangeType, date_range: DateRange) -> dict:
    applied = session.query(func.count(model.id)).filter(model.applied_at.isnot(None)).scalar() or 0
    moved = (
        session.query(func.coalesce(func.sum(func.abs(InventoryLedgerEntry.quantity_delta)), 0))
        .filter(InventoryLedgerEntry.change_type == change_type.value)
        .scalar()
        or 0
    )
    return {
        "value": int(applied),
        "total_quantity": int(moved),
        "dataset": _daily_movement(session, change_type, date_range),
    }


def get_import_totals(
    session: Session,
    date_range: DateRange | None = None,
    *,
    default_days: int = DEFAULT_REPORT_DAYS,
) -> dict:
    """
    Applied import receipts to date, plus a daily dataset over the range.

    value is the number of applied import receipts, total_quantity the units
    ever imported; the dataset holds units and receipts per day.
    """
    return _receipt_totals(session, ImportReceipt, ChangeType.IMPORT, _range(date_range, default_days))


def get_return_totals(
    session: Session,
    date_range: DateRange | None = None,
    *,
    default_days: int = DEFAULT_REPORT_DAYS,
) -> dict:
    """Same shape as get_import_totals for return receipts; quantities count units in either direction."""
    return _receipt_totals(session, ReturnReceipt, ChangeType.RETURN, _range(date_range, default_days))


def get_import_products_dataset(
    session: Session,
    product_id: int | None = None,
    date_range: DateRange | None = None,
    *,
    default_days: int = DEFAULT_REPORT_DAYS,
) -> list[dict]:
    """Units imported per day over the range, for one product or all of them."""
    if product_id is not None:
        get_product(session, product_id)
    return _daily_movement(session, ChangeType.IMPORT, _range(date_range, default_days), product_id)
