# Overview: Reconciliation engine: apply import/return lines and balance physical counts.

"""
Reconciliation rules

- apply_document / balance_check run inside the caller's unit of work with
  the document row already locked. They never commit.
- The idempotency guard (ensure_can_apply) is evaluated on that locked row,
  so two concurrent callers cannot both observe "not yet applied".
- Every product is resolved before any stock moves: one unknown product
  fails the whole document and nothing is written.
- One ledger entry per distinct product; zero-difference check lines write none.
- Lines are processed in caller order (line position, or counted-line order).
"""

from __future__ import annotations

from typing import Iterable

from sqlalchemy.orm import Session

from stockledger.errors import (
    AlreadyAppliedError,
    InvalidTransitionError,
    PartialLineItemError,
    ValidationError,
)
from stockledger.models import ChangeType, DocumentType, Product, ReturnType
from stockledger.policy import DEFAULT_POLICY, LedgerPolicy
from stockledger.time_utils import utcnow
from .commands import ApplyResult, CountedLine, LineItemDelta
from .document_service import change_status, get_state_machine, merge_counts
from .ledger_service import append_entry
from .product_service import (
    apply_delta,
    find_missing_products,
    get_product,
    set_quantity,
    weighted_average_cost_cents,
)

# Customer returns put goods back on the shelf; supplier returns send them away
RETURN_TYPE_SIGN = {
    ReturnType.CUSTOMER.value: 1,
    ReturnType.SUPPLIER.value: -1,
}

_CHANGE_TYPES = {
    DocumentType.IMPORT: ChangeType.IMPORT,
    DocumentType.RETURN: ChangeType.RETURN,
    DocumentType.CHECK: ChangeType.CHECK,
}


# =============================================================================
# Idempotency guard
# =============================================================================

def can_apply(document) -> bool:
    """True while the document's stock effect has not been committed and it may still be applied."""
    machine = get_state_machine(document.document_type)
    return (
        not document.is_applied
        and document.status != machine.applied_status
        and document.status in machine.apply_from
    )


def ensure_can_apply(document) -> None:
    machine = get_state_machine(document.document_type)
    if document.is_applied or document.status == machine.applied_status:
        raise AlreadyAppliedError(
            f"Receipt {document.receipt_number} was already applied to inventory",
            applied_at=document.applied_at,
            document_id=document.id,
            receipt_number=document.receipt_number,
        )
    if document.status not in machine.apply_from:
        raise InvalidTransitionError(
            f"Receipt {document.receipt_number} is {document.status} and cannot be moved to "
            f"{machine.applied_status}",
            old_status=document.status,
            new_status=machine.applied_status,
        )


# =============================================================================
# Deltas
# =============================================================================

def line_sign(document) -> int:
    if document.document_type is DocumentType.IMPORT:
        return 1
    if document.document_type is DocumentType.RETURN:
        try:
            return RETURN_TYPE_SIGN[document.return_type]
        except KeyError:
            raise ValidationError(f"Unknown return type: {document.return_type}")
    raise ValidationError(f"{document.document_type.value} documents are balanced, not applied")


def compute_line_deltas(document) -> list[LineItemDelta]:
    """
    Signed per-product deltas for an import or return, in line order.

    Repeated products are merged into one delta; their unit costs are blended
    by quantity when every merged line carries a cost.
    """
    sign = line_sign(document)
    quantities: dict[int, int] = {}
    costs: dict[int, list[tuple[int, int | None]]] = {}

    for line in document.lines:
        if line.quantity is None or line.quantity <= 0:
            raise ValidationError(
                f"Line {line.position} of {document.receipt_number} has a non-positive quantity"
            )
        quantities[line.product_id] = quantities.get(line.product_id, 0) + line.quantity
        costs.setdefault(line.product_id, []).append((line.quantity, line.unit_cost_cents))

    deltas = []
    for product_id, quantity in quantities.items():
        parts = costs[product_id]
        unit_cost = None
        if all(cost is not None for _, cost in parts):
            total = sum(qty * cost for qty, cost in parts)
            unit_cost = (total + quantity // 2) // quantity
        deltas.append(LineItemDelta(product_id=product_id, quantity=sign * quantity, unit_cost_cents=unit_cost))
    return deltas


def _ensure_products_exist(session: Session, document, product_ids) -> None:
    missing = find_missing_products(session, product_ids)
    if missing:
        raise PartialLineItemError(
            f"Receipt {document.receipt_number} references unknown products: "
            f"{', '.join(str(pid) for pid in missing)}",
            missing_product_ids=missing,
            document_id=document.id,
        )


# =============================================================================
# Apply (import / return)
# =============================================================================

def apply_document(
    session: Session,
    document,
    *,
    actor_id: int,
    policy: LedgerPolicy = DEFAULT_POLICY,
) -> ApplyResult:
    """
    Commit an import or return receipt's lines to stock and mark it applied.

    One ledger entry per product, the product update observed in the same
    transaction, the status edge to COMPLETED and the applied marker all land
    in the caller's unit of work.
    """
    ensure_can_apply(document)
    machine = get_state_machine(document.document_type)

    deltas = compute_line_deltas(document)
    if not deltas:
        raise ValidationError(f"Receipt {document.receipt_number} has no line items")
    _ensure_products_exist(session, document, [delta.product_id for delta in deltas])

    change_type = _CHANGE_TYPES[machine.document_type]
    entries = []

    for delta in deltas:
        new_cost = None
        if change_type is ChangeType.IMPORT and delta.unit_cost_cents is not None:
            product = get_product(session, delta.product_id, lock=True)
            new_cost = weighted_average_cost_cents(
                product.quantity_on_hand,
                product.unit_cost_cents or 0,
                delta.quantity,
                delta.unit_cost_cents,
            )

        change = apply_delta(
            session,
            delta.product_id,
            delta.quantity,
            new_cost_cents=new_cost,
            allow_negative=policy.allow_negative_stock,
        )
        entries.append(
            append_entry(
                session,
                change=change,
                change_type=change_type,
                actor_id=actor_id,
                reference_type=machine.document_type.value,
                reference_id=document.id,
                note=document.receipt_number,
            )
        )

    applied_at = utcnow()
    change_status(session, document, machine.applied_status, actor_id=actor_id, applying=True)
    document.applied_at = applied_at
    session.flush()

    return ApplyResult(document=document, applied_at=applied_at, entries=entries)


# =============================================================================
# Balance (check)
# =============================================================================

def _ordered_count_lines(document, counted: list[CountedLine]) -> list:
    """Counted lines first in the caller's order, then earlier recorded counts by position."""
    by_product = {line.product_id: line for line in document.lines}
    ordered = [by_product[c.product_id] for c in counted]
    supplied = {c.product_id for c in counted}
    ordered.extend(line for line in document.lines if line.product_id not in supplied)
    return ordered


def balance_check(
    session: Session,
    document,
    counted_lines: Iterable[CountedLine],
    *,
    actor_id: int,
    policy: LedgerPolicy = DEFAULT_POLICY,
) -> ApplyResult:
    """
    Reconcile a check's counted quantities against system stock.

    For each line: difference = counted - system. Zero differences write no
    ledger entry. Otherwise the product is set to exactly the counted value and
    a CHECK entry records the difference. Lines never counted are left alone.
    The system quantity seen at balance time is snapshotted on every line.
    """
    ensure_can_apply(document)
    machine = get_state_machine(document.document_type)
    if machine.document_type is not DocumentType.CHECK:
        raise ValidationError(f"{document.receipt_number} is not a check receipt")

    counted = list(counted_lines)
    if counted:
        merge_counts(session, document, counted, actor_id=actor_id)

    lines = _ordered_count_lines(document, counted)
    _ensure_products_exist(session, document, [line.product_id for line in lines])

    entries = []

    for line in lines:
        product = get_product(session, line.product_id, lock=True)
        system_quantity = product.quantity_on_hand
        line.system_quantity = system_quantity
        if line.product_code is None:
            line.product_code = product.code
            line.product_name = product.name

        if line.counted_quantity is None:
            continue
        difference = line.counted_quantity - system_quantity
        if difference == 0:
            continue

        change = set_quantity(
            session,
            line.product_id,
            line.counted_quantity,
            expected_previous=system_quantity,
            allow_negative=policy.allow_negative_stock,
        )
        entries.append(
            append_entry(
                session,
                change=change,
                change_type=ChangeType.CHECK,
                actor_id=actor_id,
                reference_type=DocumentType.CHECK.value,
                reference_id=document.id,
                note=document.receipt_number,
            )
        )

    applied_at = utcnow()
    change_status(session, document, machine.applied_status, actor_id=actor_id, applying=True)
    document.applied_at = applied_at
    session.flush()

    return ApplyResult(document=document, applied_at=applied_at, entries=entries)


def check_summary(session: Session, document) -> dict:
    """
    Derived totals for a check: system vs actual inventory and value difference.

    Before balancing, system quantities come from current stock; afterwards
    from the snapshot taken at balance time. Uncounted lines count as matching.
    Read-only.
    """
    product_ids = [line.product_id for line in document.lines]
    products = {}
    if product_ids:
        products = {p.id: p for p in session.query(Product).filter(Product.id.in_(product_ids)).all()}

    rows = []
    system_total = actual_total = difference_total = value_total = 0
    for line in document.lines:
        product = products.get(line.product_id)
        system = line.system_quantity
        if system is None:
            system = product.quantity_on_hand if product else 0
        actual = system if line.counted_quantity is None else line.counted_quantity
        difference = actual - system
        unit_cost = line.unit_cost_cents
        if unit_cost is None:
            unit_cost = product.unit_cost_cents if product else 0

        system_total += system
        actual_total += actual
        difference_total += difference
        value_total += difference * (unit_cost or 0)
        rows.append({
            "product_id": line.product_id,
            "product_code": line.product_code or (product.code if product else None),
            "system_quantity": system,
            "counted_quantity": line.counted_quantity,
            "difference": difference,
            "unit_cost_cents": unit_cost,
            "value_difference_cents": difference * (unit_cost or 0),
        })

    return {
        "receipt_number": document.receipt_number,
        "status": document.status,
        "system_inventory": system_total,
        "actual_inventory": actual_total,
        "total_difference": difference_total,
        "total_value_difference_cents": value_total,
        "lines": rows,
    }
