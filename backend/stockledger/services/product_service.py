# Overview: Product store: current stock quantity and cost per product.

"""
Product store invariants

- quantity_on_hand is mutated only by apply_delta / set_quantity, and those are
  only called inside a unit of work that also appends the matching ledger entry.
  Neither function commits.
- Deltas are applied with an in-database increment (quantity_on_hand + :delta)
  so concurrent documents touching the same product cannot lose updates.
- Unless the policy allows negative stock, the floor is part of the UPDATE's
  WHERE clause, so the check and the write are one statement.
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import func, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from stockledger.errors import InvalidDeltaError, NotFoundError, ValidationError
from stockledger.models import Product
from stockledger.time_utils import utcnow
from .concurrency import lock_for_update


@dataclass(frozen=True)
class StockChange:
    """Before/after state of one product inside a unit of work."""

    product_id: int
    previous_quantity: int
    new_quantity: int
    previous_cost_cents: int
    new_cost_cents: int

    @property
    def quantity_delta(self) -> int:
        return self.new_quantity - self.previous_quantity

    @property
    def cost_delta_cents(self) -> int:
        return self.new_cost_cents - self.previous_cost_cents


def create_product(
    session: Session,
    *,
    code: str,
    name: str,
    quantity_on_hand: int = 0,
    unit_cost_cents: int = 0,
    category: str | None = None,
    unit: str | None = None,
) -> Product:
    """
    Register a product with its initial quantity.

    The initial quantity is the base of the ledger summation invariant; it is
    not itself a ledger entry.
    """
    code = (code or "").strip()
    if not code:
        raise ValidationError("Product code is required")
    if not (name or "").strip():
        raise ValidationError("Product name is required")
    if unit_cost_cents < 0:
        raise ValidationError("Unit cost cannot be negative")

    existing = session.query(Product).filter_by(code=code).first()
    if existing:
        raise ValidationError(f"Product code {code} already exists")

    product = Product(
        code=code,
        name=name.strip(),
        category=category,
        unit=unit,
        quantity_on_hand=quantity_on_hand,
        unit_cost_cents=unit_cost_cents,
    )
    session.add(product)
    session.commit()
    return product


def get_product(session: Session, product_id: int, *, lock: bool = False) -> Product:
    query = session.query(Product).filter_by(id=product_id)
    if lock:
        # Locked reads must see committed state, not the identity map's copy
        query = lock_for_update(query).populate_existing()
    product = query.first()
    if product is None:
        raise NotFoundError(f"Product {product_id} not found", product_id=product_id)
    return product


def get_quantity(session: Session, product_id: int) -> int:
    quantity = session.query(Product.quantity_on_hand).filter_by(id=product_id).scalar()
    if quantity is None:
        raise NotFoundError(f"Product {product_id} not found", product_id=product_id)
    return int(quantity)


def find_missing_products(session: Session, product_ids) -> list[int]:
    """Return the ids (in input order, deduplicated) that do not resolve to a product."""
    wanted = list(dict.fromkeys(product_ids))
    if not wanted:
        return []
    found = {
        row[0]
        for row in session.query(Product.id).filter(Product.id.in_(wanted)).all()
    }
    return [pid for pid in wanted if pid not in found]


def list_products(session: Session, *, category: str | None = None, limit: int = 100, offset: int = 0) -> tuple[list[Product], int]:
    query = session.query(Product)
    if category:
        query = query.filter(Product.category == category)
    total = query.count()
    rows = query.order_by(Product.code.asc()).offset(offset).limit(limit).all()
    return rows, total


def get_total_inventory(session: Session) -> int:
    return int(session.query(func.coalesce(func.sum(Product.quantity_on_hand), 0)).scalar() or 0)


def get_total_inventory_value_cents(session: Session) -> int:
    return int(
        session.query(
            func.coalesce(func.sum(Product.quantity_on_hand * Product.unit_cost_cents), 0)
        ).scalar()
        or 0
    )


def weighted_average_cost_cents(
    on_hand: int,
    cost_cents: int,
    incoming_quantity: int,
    incoming_cost_cents: int,
) -> int:
    """
    Blend the current cost with an incoming receipt.

    sum(qty * unit_cost) / sum(qty), nearest-cent rounding (half-up).
    When nothing sellable is on hand the incoming cost wins outright.
    """
    if on_hand <= 0:
        return incoming_cost_cents
    total_units = on_hand + incoming_quantity
    if total_units <= 0:
        return cost_cents
    total_cost = on_hand * cost_cents + incoming_quantity * incoming_cost_cents
    return (total_cost + (total_units // 2)) // total_units


def apply_delta(
    session: Session,
    product_id: int,
    quantity_delta: int,
    *,
    new_cost_cents: int | None = None,
    allow_negative: bool = False,
) -> StockChange:
    """
    Add `quantity_delta` to the product's stock inside the caller's transaction.

    Raises:
        NotFoundError: product does not exist
        InvalidDeltaError: result would be negative and the policy forbids it
    """
    product = get_product(session, product_id, lock=True)
    previous_cost = product.unit_cost_cents or 0

    values = {
        "quantity_on_hand": Product.quantity_on_hand + quantity_delta,
        "updated_at": utcnow(),
    }
    if new_cost_cents is not None:
        values["unit_cost_cents"] = new_cost_cents

    stmt = update(Product).where(Product.id == product_id)
    if not allow_negative:
        stmt = stmt.where(Product.quantity_on_hand + quantity_delta >= 0)
    stmt = (
        stmt.values(**values)
        .returning(Product.quantity_on_hand, Product.unit_cost_cents)
        .execution_options(synchronize_session=False)
    )

    row = session.execute(stmt).first()
    if row is None:
        raise InvalidDeltaError(
            f"Product {product_id} would go below zero "
            f"({product.quantity_on_hand} {quantity_delta:+d})",
            product_id=product_id,
            quantity_on_hand=product.quantity_on_hand,
            quantity_delta=quantity_delta,
        )

    session.expire(product, ["quantity_on_hand", "unit_cost_cents", "updated_at"])

    new_quantity = int(row.quantity_on_hand)
    return StockChange(
        product_id=product_id,
        previous_quantity=new_quantity - quantity_delta,
        new_quantity=new_quantity,
        previous_cost_cents=previous_cost,
        new_cost_cents=int(row.unit_cost_cents or 0),
    )


def set_quantity(
    session: Session,
    product_id: int,
    quantity: int,
    *,
    expected_previous: int,
    allow_negative: bool = False,
) -> StockChange:
    """
    Overwrite quantity_on_hand with an exact value (physical count ground truth).

    Compare-and-set against `expected_previous`: if another transaction moved
    the stock after it was read, StaleDataError is raised and the enclosing
    retry loop recomputes the difference from fresh state.
    """
    if quantity < 0 and not allow_negative:
        raise InvalidDeltaError(
            f"Product {product_id} cannot be set to {quantity}",
            product_id=product_id,
            quantity=quantity,
        )

    product = get_product(session, product_id, lock=True)
    cost = product.unit_cost_cents or 0

    result = session.execute(
        update(Product)
        .where(Product.id == product_id, Product.quantity_on_hand == expected_previous)
        .values(quantity_on_hand=quantity, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StaleDataError(
            f"Product {product_id} changed while it was being counted"
        )

    session.expire(product, ["quantity_on_hand", "updated_at"])

    return StockChange(
        product_id=product_id,
        previous_quantity=expected_previous,
        new_quantity=quantity,
        previous_cost_cents=cost,
        new_cost_cents=cost,
    )
