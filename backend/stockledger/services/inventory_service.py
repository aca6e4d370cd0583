# Overview: Inventory commands: apply/balance receipts, status transitions, manual adjustments.

"""
Command layer

Each command runs as one unit of work through run_in_transaction: the
document is re-read under a row lock, the idempotency guard is evaluated on
that row, and the ledger entries, product updates and document changes
commit together or not at all. Lock and stale-version failures retry the
whole unit; a conflict that survives every attempt is ConcurrencyConflictError.

Business rejections are raised as typed InventoryError subclasses and logged
at warning level before they propagate.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable, Mapping, TypeVar

from sqlalchemy.orm import Session

from stockledger.errors import (
    InventoryError,
    InvalidTransitionError,
    ValidationError,
)
from stockledger.logging import get_logger
from stockledger.models import ChangeType, DocumentType, InventoryLedgerEntry
from stockledger.policy import DEFAULT_POLICY, LedgerPolicy
from . import document_service
from .commands import ApplyResult, normalize_counted_lines
from .concurrency import run_in_transaction
from .ledger_service import append_entry, normalize_change_type
from .product_service import apply_delta
from .reconciliation_service import apply_document, balance_check, ensure_can_apply

logger = get_logger(__name__)

T = TypeVar("T")

# Document-driven change types go through their receipts, never through adjust_inventory
ADJUSTMENT_CHANGE_TYPES = {ChangeType.MANUAL, ChangeType.SALE, ChangeType.SYSTEM}


def _run_command(session: Session, event: str, func: Callable[[], T], policy: LedgerPolicy, **context) -> T:
    try:
        return run_in_transaction(session, func, policy=policy)
    except InventoryError as exc:
        logger.warning(exc.code.lower(), command=event, error=exc.message, **context)
        raise


def resolve_receipt_id(session: Session, document_type, receipt: int | str) -> int:
    """Accept a receipt id or a caller-visible receipt number such as ``NH-000001``."""
    if isinstance(receipt, bool):
        raise ValidationError("Receipt must be an id or a receipt number")
    if isinstance(receipt, int):
        return receipt
    text = str(receipt).strip()
    if text.isascii() and text.isdigit():
        return int(text)
    return document_service.get_document_by_number(session, document_type, text).id


def _apply_receipt(
    session: Session,
    document_type: DocumentType,
    receipt: int | str,
    actor_id: int,
    policy: LedgerPolicy,
    event: str,
) -> ApplyResult:
    receipt_id = resolve_receipt_id(session, document_type, receipt)

    def _op() -> ApplyResult:
        document = document_service.get_document(session, document_type, receipt_id, lock=True)
        return apply_document(session, document, actor_id=actor_id, policy=policy)

    result = _run_command(
        session, event, _op, policy,
        document_type=document_type.value, receipt_id=receipt_id, actor_id=actor_id,
    )
    logger.info(
        event,
        receipt_id=receipt_id,
        actor_id=actor_id,
        entries=len(result.entries),
    )
    return result


def apply_import_receipt(
    session: Session,
    receipt_id: int | str,
    actor_id: int,
    *,
    policy: LedgerPolicy = DEFAULT_POLICY,
) -> ApplyResult:
    """
    Add an import receipt's line quantities to stock and mark it COMPLETED.

    Args:
        receipt_id: Import receipt id or receipt number
        actor_id: User applying the receipt (audit attribution)

    Returns:
        ApplyResult: applied_at plus the IMPORT ledger entries written

    Raises:
        NotFoundError: receipt does not exist
        AlreadyAppliedError: receipt was applied before; nothing is written
        InvalidTransitionError: receipt is CANCELLED or a variance terminal
        PartialLineItemError: a line references an unknown product
        InvalidDeltaError: stock floor would be broken
        ConcurrencyConflictError: conflict persisted after retries
    """
    return _apply_receipt(session, DocumentType.IMPORT, receipt_id, actor_id, policy, "import_receipt_applied")


def apply_return_receipt(
    session: Session,
    receipt_id: int | str,
    actor_id: int,
    *,
    policy: LedgerPolicy = DEFAULT_POLICY,
) -> ApplyResult:
    """
    Apply a return receipt as RETURN deltas (sign from RETURN_TYPE_SIGN) and mark it COMPLETED.

    Raises the same errors as apply_import_receipt.
    """
    return _apply_receipt(session, DocumentType.RETURN, receipt_id, actor_id, policy, "return_receipt_applied")


def balance_check_receipt(
    session: Session,
    receipt_id: int | str,
    actor_id: int,
    counted_line_items: Iterable | None = None,
    *,
    policy: LedgerPolicy = DEFAULT_POLICY,
) -> ApplyResult:
    """
    Reconcile a check receipt against physical counts and mark it BALANCED.

    Args:
        receipt_id: Check receipt id or receipt number
        actor_id: User balancing the check
        counted_line_items: [{"product_id", "counted_quantity"}] or (product_id, counted) pairs.
            Counts recorded earlier with record_counts are used for products not listed here.

    Returns:
        ApplyResult: applied_at plus one CHECK entry per product whose count differed
    """
    counted = normalize_counted_lines(counted_line_items)
    receipt_id = resolve_receipt_id(session, DocumentType.CHECK, receipt_id)

    def _op() -> ApplyResult:
        document = document_service.get_document(session, DocumentType.CHECK, receipt_id, lock=True)
        return balance_check(session, document, counted, actor_id=actor_id, policy=policy)

    result = _run_command(
        session, "check_receipt_balanced", _op, policy,
        document_type=DocumentType.CHECK.value, receipt_id=receipt_id, actor_id=actor_id,
    )
    logger.info(
        "check_receipt_balanced",
        receipt_id=receipt_id,
        actor_id=actor_id,
        counted=len(counted),
        entries=len(result.entries),
    )
    return result


def transition(
    session: Session,
    document_type,
    document_id: int,
    new_status,
    actor_id: int,
    field_changes: Mapping[str, Any] | None = None,
    *,
    policy: LedgerPolicy = DEFAULT_POLICY,
):
    """
    Move a document along its state machine, with optional field edits.

    A transition into COMPLETED (import/return) applies the stock effect in
    the same unit of work. BALANCED is only reachable through
    balance_check_receipt because it needs counted quantities.

    Returns the updated document.
    """
    machine = document_service.get_state_machine(document_type)
    target = None if new_status is None else document_service.normalize_status(machine, new_status)
    context = dict(document_type=machine.document_type.value, document_id=document_id, new_status=target)

    if target == machine.applied_status and machine.document_type is DocumentType.CHECK:
        def _reject():
            document = document_service.get_document(session, DocumentType.CHECK, document_id)
            ensure_can_apply(document)
            raise InvalidTransitionError(
                f"Check receipt {document.receipt_number} is balanced with counted quantities; "
                "use balance_check_receipt",
                old_status=document.status,
                new_status=target,
            )

        return _run_command(session, "transition", _reject, policy, **context)

    if target == machine.applied_status:
        def _apply():
            document = document_service.get_document(session, machine.document_type, document_id, lock=True)
            ensure_can_apply(document)
            document_service.apply_field_changes(session, document, field_changes, actor_id=actor_id)
            return apply_document(session, document, actor_id=actor_id, policy=policy).document

        document = _run_command(session, "transition", _apply, policy, **context)
        logger.info("receipt_applied_by_transition", actor_id=actor_id, **context)
        return document

    def _op():
        return document_service.transition(
            session,
            machine.document_type,
            document_id,
            target,
            actor_id=actor_id,
            field_changes=field_changes,
        )

    document = _run_command(session, "transition", _op, policy, **context)
    logger.info("receipt_transitioned", actor_id=actor_id, **context)
    return document


def adjust_inventory(
    session: Session,
    product_id: int,
    quantity_delta: int,
    actor_id: int,
    change_type: ChangeType | str = ChangeType.MANUAL,
    note: str | None = None,
    unit_cost_cents: int | None = None,
    *,
    policy: LedgerPolicy = DEFAULT_POLICY,
) -> InventoryLedgerEntry:
    """
    Record a MANUAL, SALE or SYSTEM stock change through the ledger.

    `unit_cost_cents`, when given, overwrites the product's cost (MANUAL and
    SYSTEM only). Sales must have a negative delta.
    """
    change_type = normalize_change_type(change_type)
    if change_type not in ADJUSTMENT_CHANGE_TYPES:
        raise ValidationError(f"{change_type.value} changes are applied through their receipts")
    if isinstance(quantity_delta, bool) or not isinstance(quantity_delta, int):
        raise ValidationError("quantity_delta must be an integer")
    if quantity_delta == 0 and unit_cost_cents is None:
        raise ValidationError("quantity_delta must be non-zero")
    if change_type is ChangeType.SALE:
        if quantity_delta >= 0:
            raise ValidationError("Sales must decrease stock")
        if unit_cost_cents is not None:
            raise ValidationError("Sales do not change unit cost")
    if unit_cost_cents is not None and unit_cost_cents < 0:
        raise ValidationError("Unit cost cannot be negative")

    def _op() -> InventoryLedgerEntry:
        change = apply_delta(
            session,
            product_id,
            quantity_delta,
            new_cost_cents=unit_cost_cents,
            allow_negative=policy.allow_negative_stock,
        )
        return append_entry(
            session,
            change=change,
            change_type=change_type,
            actor_id=actor_id,
            note=note,
        )

    entry = _run_command(
        session, "inventory_adjusted", _op, policy,
        product_id=product_id, change_type=change_type.value, quantity_delta=quantity_delta,
    )
    logger.info(
        "inventory_adjusted",
        product_id=product_id,
        change_type=change_type.value,
        quantity_delta=quantity_delta,
        actor_id=actor_id,
        entry_id=entry.id,
    )
    return entry
