from __future__ import annotations

import enum

from sqlalchemy import event

from ..errors import ImmutableRecordError
from ..extensions import db
from stockledger.time_utils import to_utc_z


class ChangeType(str, enum.Enum):
    """Why a ledger entry exists."""

    IMPORT = "IMPORT"  # import receipt completed
    RETURN = "RETURN"  # return receipt completed
    CHECK = "CHECK"  # physical count balanced
    MANUAL = "MANUAL"  # manual adjustment
    SALE = "SALE"  # sale
    SYSTEM = "SYSTEM"  # system correction


class Product(db.Model):
    """
    Current-state projection of a product's stock.

    INVARIANT:
    quantity_on_hand == initial quantity + SUM(ledger.quantity_delta) for the product.
    Only the product service mutates quantity_on_hand and unit_cost_cents, and
    only inside a unit of work that also appends the matching ledger entry.

    Cost is stored in integer cents (fixed point); quantities are integers.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_category", "category"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    code = db.Column(db.String(64), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    category = db.Column(db.String(128), nullable=True)
    unit = db.Column(db.String(32), nullable=True)

    quantity_on_hand = db.Column(db.Integer, nullable=False, default=0)
    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} code={self.code!r} qty={self.quantity_on_hand}>"

    @property
    def inventory_value_cents(self) -> int:
        return (self.quantity_on_hand or 0) * (self.unit_cost_cents or 0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "category": self.category,
            "unit": self.unit,
            "quantity_on_hand": self.quantity_on_hand,
            "unit_cost_cents": self.unit_cost_cents,
            "inventory_value_cents": self.inventory_value_cents,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class InventoryLedgerEntry(db.Model):
    """
    Append-only record of one stock change for one product.

    INVARIANTS:
    - new_quantity == previous_quantity + quantity_delta (integers, exact)
    - new_cost_cents == previous_cost_cents + cost_delta_cents
    - For one product ordered by id, each previous_quantity equals the prior
      entry's new_quantity.
    - Rows are never updated or deleted (enforced by the ORM hooks below).
    """
    __tablename__ = "inventory_ledger_entries"
    __table_args__ = (
        db.Index("ix_ledger_product_created", "product_id", "created_at"),
        db.Index("ix_ledger_reference", "reference_type", "reference_id"),
        db.CheckConstraint(
            "new_quantity = previous_quantity + quantity_delta",
            name="ck_ledger_quantity_arithmetic",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    change_type = db.Column(db.String(16), nullable=False, index=True)

    previous_quantity = db.Column(db.Integer, nullable=False)
    quantity_delta = db.Column(db.Integer, nullable=False)
    new_quantity = db.Column(db.Integer, nullable=False)

    previous_cost_cents = db.Column(db.Integer, nullable=True)
    cost_delta_cents = db.Column(db.Integer, nullable=True)
    new_cost_cents = db.Column(db.Integer, nullable=True)

    # Document that caused the change (IMPORT/RETURN/CHECK receipt), if any
    reference_type = db.Column(db.String(16), nullable=True)
    reference_id = db.Column(db.Integer, nullable=True)

    actor_id = db.Column(db.Integer, nullable=False)
    note = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    product = db.relationship("Product", backref=db.backref("ledger_entries", lazy="dynamic"))

    def __repr__(self) -> str:
        return (
            f"<InventoryLedgerEntry id={self.id} product_id={self.product_id} "
            f"{self.change_type} {self.previous_quantity}{self.quantity_delta:+d}={self.new_quantity}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "change_type": self.change_type,
            "previous_quantity": self.previous_quantity,
            "quantity_delta": self.quantity_delta,
            "new_quantity": self.new_quantity,
            "previous_cost_cents": self.previous_cost_cents,
            "cost_delta_cents": self.cost_delta_cents,
            "new_cost_cents": self.new_cost_cents,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "actor_id": self.actor_id,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }


def forbid_mutation(model) -> None:
    """Reject ORM-level UPDATE and DELETE of rows of an append-only model."""

    @event.listens_for(model, "before_update")
    def _no_update(mapper, connection, target):
        raise ImmutableRecordError(f"{model.__tablename__} rows are append-only", id=target.id)

    @event.listens_for(model, "before_delete")
    def _no_delete(mapper, connection, target):
        raise ImmutableRecordError(f"{model.__tablename__} rows are append-only", id=target.id)


forbid_mutation(InventoryLedgerEntry)
