# Overview: Document state machine for import, return and check receipts.

"""
Document lifecycle

IMPORT: DRAFT -> PROCESSING -> COMPLETED | CANCELLED | SHORT_RECEIVED | OVER_RECEIVED
RETURN: DRAFT -> PROCESSING -> COMPLETED | CANCELLED
CHECK:  PENDING -> PROCESSING -> BALANCING_REQUIRED -> BALANCED

- Every status change appends exactly one DocumentChangeLog row.
- Every changed editable field appends one DocumentActivityLog row.
- The applying status (COMPLETED for import/return, BALANCED for check) is
  only reachable through the reconciliation commands, which may enter it from
  any state listed in `apply_from`. change_status() refuses it otherwise.
- SHORT_RECEIVED / OVER_RECEIVED / CANCELLED are terminal and not retriable.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Iterable, Mapping

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stockledger.errors import InvalidTransitionError, NotFoundError, ValidationError
from stockledger.logging import get_logger
from stockledger.models import (
    CheckReceipt,
    CheckStatus,
    DocumentActivityLog,
    DocumentChangeLog,
    DocumentSequence,
    DocumentType,
    ImportReceipt,
    ImportStatus,
    Product,
    ReceiptLine,
    ReturnReceipt,
    ReturnStatus,
    ReturnType,
)
from stockledger.time_utils import parse_iso_datetime, resolve_date_range, utcnow
from .commands import LineItemInput, normalize_counted_lines
from .concurrency import lock_for_update
from .ledger_service import has_entries_for_reference

logger = get_logger(__name__)


@dataclass(frozen=True)
class StateMachine:
    document_type: DocumentType
    model: type
    number_prefix: str
    initial: str
    transitions: Mapping[str, frozenset]
    applied_status: str
    apply_from: frozenset
    editable_fields: frozenset
    date_fields: frozenset = frozenset()
    keyword_fields: tuple = ("receipt_number", "supplier")
    search_date_field: str | None = None

    @property
    def statuses(self) -> frozenset:
        states = set(self.transitions)
        for targets in self.transitions.values():
            states.update(targets)
        return frozenset(states)

    def is_terminal(self, status: str) -> bool:
        return not self.transitions.get(status)

    def allows(self, old_status: str, new_status: str) -> bool:
        return new_status in self.transitions.get(old_status, frozenset())


IMPORT_MACHINE = StateMachine(
    document_type=DocumentType.IMPORT,
    model=ImportReceipt,
    number_prefix="NH",
    initial=ImportStatus.DRAFT.value,
    transitions={
        ImportStatus.DRAFT.value: frozenset({ImportStatus.PROCESSING.value}),
        ImportStatus.PROCESSING.value: frozenset({
            ImportStatus.COMPLETED.value,
            ImportStatus.CANCELLED.value,
            ImportStatus.SHORT_RECEIVED.value,
            ImportStatus.OVER_RECEIVED.value,
        }),
    },
    applied_status=ImportStatus.COMPLETED.value,
    apply_from=frozenset({ImportStatus.DRAFT.value, ImportStatus.PROCESSING.value}),
    editable_fields=frozenset({"note", "supplier", "warehouse", "expected_import_date", "payment_date"}),
    date_fields=frozenset({"expected_import_date", "payment_date"}),
    search_date_field="expected_import_date",
)

RETURN_MACHINE = StateMachine(
    document_type=DocumentType.RETURN,
    model=ReturnReceipt,
    number_prefix="TH",
    initial=ReturnStatus.DRAFT.value,
    transitions={
        ReturnStatus.DRAFT.value: frozenset({ReturnStatus.PROCESSING.value}),
        ReturnStatus.PROCESSING.value: frozenset({
            ReturnStatus.COMPLETED.value,
            ReturnStatus.CANCELLED.value,
        }),
    },
    applied_status=ReturnStatus.COMPLETED.value,
    apply_from=frozenset({ReturnStatus.DRAFT.value, ReturnStatus.PROCESSING.value}),
    editable_fields=frozenset({"note", "supplier", "warehouse", "name", "reason", "return_type", "return_date"}),
    date_fields=frozenset({"return_date"}),
    keyword_fields=("receipt_number", "name"),
    search_date_field="return_date",
)

CHECK_MACHINE = StateMachine(
    document_type=DocumentType.CHECK,
    model=CheckReceipt,
    number_prefix="KIEM",
    initial=CheckStatus.PENDING.value,
    transitions={
        CheckStatus.PENDING.value: frozenset({CheckStatus.PROCESSING.value}),
        CheckStatus.PROCESSING.value: frozenset({CheckStatus.BALANCING_REQUIRED.value}),
        CheckStatus.BALANCING_REQUIRED.value: frozenset({CheckStatus.BALANCED.value}),
    },
    applied_status=CheckStatus.BALANCED.value,
    apply_from=frozenset({
        CheckStatus.PENDING.value,
        CheckStatus.PROCESSING.value,
        CheckStatus.BALANCING_REQUIRED.value,
    }),
    editable_fields=frozenset({"note", "supplier", "warehouse", "periodic", "checker", "check_date"}),
    date_fields=frozenset({"check_date"}),
    search_date_field="check_date",
)

STATE_MACHINES = {
    DocumentType.IMPORT: IMPORT_MACHINE,
    DocumentType.RETURN: RETURN_MACHINE,
    DocumentType.CHECK: CHECK_MACHINE,
}


def normalize_document_type(document_type) -> DocumentType:
    if isinstance(document_type, DocumentType):
        return document_type
    try:
        return DocumentType(str(document_type).upper())
    except ValueError:
        raise ValidationError(f"Unknown document type: {document_type}")


def get_state_machine(document_type) -> StateMachine:
    return STATE_MACHINES[normalize_document_type(document_type)]


def normalize_status(machine: StateMachine, status) -> str:
    value = status.value if hasattr(status, "value") else str(status).upper()
    if value not in machine.statuses:
        raise ValidationError(
            f"Unknown {machine.document_type.value} status: {status}"
        )
    return value


# =============================================================================
# Receipt numbers
# =============================================================================

def next_receipt_number(session: Session, document_type) -> str:
    """
    Allocate the next receipt number for a document type.

    Increments the sequence row with a single UPDATE so two creators never
    receive the same number; the first allocation inserts the row.
    """
    machine = get_state_machine(document_type)
    key = machine.document_type.value

    stmt = (
        update(DocumentSequence)
        .where(DocumentSequence.document_type == key)
        .values(next_number=DocumentSequence.next_number + 1)
        .returning(DocumentSequence.next_number)
        .execution_options(synchronize_session=False)
    )

    row = session.execute(stmt).first()
    if row is not None:
        next_num = row[0] - 1
    else:
        seq = DocumentSequence(document_type=key, next_number=2)
        try:
            with session.begin_nested():
                session.add(seq)
            next_num = 1
        except IntegrityError:
            row = session.execute(stmt).first()
            if row is None:
                raise
            next_num = row[0] - 1

    return f"{machine.number_prefix}-{next_num:06d}"


# =============================================================================
# Lookup
# =============================================================================

def get_document(session: Session, document_type, document_id: int, *, lock: bool = False):
    machine = get_state_machine(document_type)
    query = session.query(machine.model).filter_by(id=document_id)
    if lock:
        query = lock_for_update(query).populate_existing()
    document = query.first()
    if document is None:
        raise NotFoundError(
            f"{machine.document_type.value.title()} receipt {document_id} not found",
            document_type=machine.document_type.value,
            document_id=document_id,
        )
    return document


def get_document_by_number(session: Session, document_type, receipt_number: str):
    machine = get_state_machine(document_type)
    document = session.query(machine.model).filter_by(receipt_number=receipt_number).first()
    if document is None:
        raise NotFoundError(
            f"Receipt {receipt_number} not found",
            document_type=machine.document_type.value,
            receipt_number=receipt_number,
        )
    return document


def search_documents(
    session: Session,
    document_type,
    *,
    keyword: str | None = None,
    status=None,
    on_date: date | str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list, int]:
    """
    Find receipts by keyword, status and/or business date.

    keyword matches (case-insensitive substring) the receipt number and the
    type's counterparty field: supplier for imports and checks, name for
    returns. on_date matches the whole calendar day of the type's business
    date (expected_import_date, return_date, check_date). Newest first.
    """
    machine = get_state_machine(document_type)
    model = machine.model
    query = session.query(model)

    keyword = (keyword or "").strip()
    if keyword:
        pattern = f"%{keyword}%"
        query = query.filter(or_(*[getattr(model, name).ilike(pattern) for name in machine.keyword_fields]))
    if status:
        query = query.filter(model.status == normalize_status(machine, status))
    if on_date:
        try:
            day = resolve_date_range(on_date, on_date)
        except ValueError:
            raise ValidationError(f"Invalid date: {on_date}")
        column = getattr(model, machine.search_date_field)
        query = query.filter(column >= day.start_dt, column < day.end_dt)

    total = query.count()
    rows = query.order_by(model.id.desc()).offset(offset).limit(limit).all()
    return rows, total


# =============================================================================
# Logs
# =============================================================================

def append_change_log(session: Session, document, *, actor_id: int, old_status: str, new_status: str) -> DocumentChangeLog:
    entry = DocumentChangeLog(
        document_type=document.document_type.value,
        document_id=document.id,
        actor_id=actor_id,
        old_status=old_status,
        new_status=new_status,
        created_at=utcnow(),
    )
    session.add(entry)
    return entry


def append_activity_log(
    session: Session,
    document,
    *,
    actor_id: int,
    description: str,
    field: str | None = None,
    old_value: Any = None,
    new_value: Any = None,
) -> DocumentActivityLog:
    entry = DocumentActivityLog(
        document_type=document.document_type.value,
        document_id=document.id,
        actor_id=actor_id,
        field=field,
        old_value=_display(old_value),
        new_value=_display(new_value),
        description=description,
        created_at=utcnow(),
    )
    session.add(entry)
    return entry


def _display(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


# =============================================================================
# Status and field changes
# =============================================================================

def change_status(session: Session, document, new_status, *, actor_id: int, applying: bool = False) -> DocumentChangeLog:
    """
    Move a document to `new_status` and append the change log entry.

    `applying=True` is reserved for the reconciliation commands: it admits the
    edge `<any apply_from state> -> applied_status`. Without it the applied
    status is refused, so stock can never be marked applied without being applied.
    """
    machine = get_state_machine(document.document_type)
    new_status = normalize_status(machine, new_status)
    old_status = document.status

    if new_status == machine.applied_status:
        allowed = applying and old_status in machine.apply_from
    else:
        allowed = machine.allows(old_status, new_status)

    if not allowed:
        raise InvalidTransitionError(
            f"Cannot move {machine.document_type.value.lower()} receipt "
            f"{document.receipt_number} from {old_status} to {new_status}",
            old_status=old_status,
            new_status=new_status,
        )

    document.status = new_status
    document.updated_at = utcnow()
    return append_change_log(session, document, actor_id=actor_id, old_status=old_status, new_status=new_status)


def _coerce_field(machine: StateMachine, name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in machine.date_fields and isinstance(value, str):
        parsed = parse_iso_datetime(value)
        if parsed is None:
            raise ValidationError(f"Invalid {name}")
        return parsed
    if name == "return_type":
        return _normalize_return_type(value)
    if name == "checker":
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError("checker must be a user id")
    return value


def apply_field_changes(session: Session, document, field_changes: Mapping[str, Any] | None, *, actor_id: int) -> list[DocumentActivityLog]:
    """
    Apply editable field changes, one activity log row per field that actually changed.

    Unknown or non-editable fields are rejected before anything is written.
    """
    if not field_changes:
        return []

    machine = get_state_machine(document.document_type)
    unknown = sorted(set(field_changes) - machine.editable_fields)
    if unknown:
        raise ValidationError(f"Fields cannot be edited: {', '.join(unknown)}")
    if "return_type" in field_changes and document.applied_at is not None:
        raise InvalidTransitionError("return_type cannot change after the return was applied")

    entries = []
    for name in sorted(field_changes):
        new_value = _coerce_field(machine, name, field_changes[name])
        old_value = getattr(document, name)
        if old_value == new_value:
            continue
        setattr(document, name, new_value)
        entries.append(
            append_activity_log(
                session,
                document,
                actor_id=actor_id,
                field=name,
                old_value=old_value,
                new_value=new_value,
                description=f"{name} changed from {_display(old_value)!r} to {_display(new_value)!r}",
            )
        )
    if entries:
        document.updated_at = utcnow()
    return entries


def transition(
    session: Session,
    document_type,
    document_id: int,
    new_status,
    *,
    actor_id: int,
    field_changes: Mapping[str, Any] | None = None,
):
    """
    Non-stock transition: status edge plus field edits, in the caller's transaction.

    `new_status=None` (or the current status) edits fields without a change
    log entry. Terminal documents accept no further edits.
    """
    machine = get_state_machine(document_type)
    document = get_document(session, machine.document_type, document_id, lock=True)

    target = None if new_status is None else normalize_status(machine, new_status)
    if machine.is_terminal(document.status):
        raise InvalidTransitionError(
            f"Receipt {document.receipt_number} is {document.status} and cannot change",
            old_status=document.status,
            new_status=target,
        )

    apply_field_changes(session, document, field_changes, actor_id=actor_id)
    if target is not None and target != document.status:
        change_status(session, document, target, actor_id=actor_id)

    session.flush()
    return document


# =============================================================================
# Creation and lines
# =============================================================================

def _normalize_return_type(value) -> str:
    raw = value.value if isinstance(value, ReturnType) else str(value).upper()
    try:
        return ReturnType(raw).value
    except ValueError:
        raise ValidationError(f"Unknown return type: {value}")


def _build_lines(session: Session, machine: StateMachine, document_id: int, lines: Iterable) -> list[ReceiptLine]:
    items = [LineItemInput.from_value(line) for line in (lines or [])]

    seen: set[int] = set()
    for item in items:
        if item.product_id in seen:
            raise ValidationError(
                f"Product {item.product_id} already exists in this document. Update the existing line instead."
            )
        seen.add(item.product_id)
        if machine.document_type is DocumentType.CHECK:
            if item.counted_quantity is not None and item.counted_quantity < 0:
                raise ValidationError("Counted quantity cannot be negative")
        elif item.quantity <= 0:
            raise ValidationError("Quantity must be positive")
        if item.unit_cost_cents is not None and item.unit_cost_cents < 0:
            raise ValidationError("Unit cost cannot be negative")

    # Snapshot code/name for products that resolve; unknown ids fail at apply time
    products = {}
    if seen:
        products = {p.id: p for p in session.query(Product).filter(Product.id.in_(seen)).all()}

    rows = []
    for position, item in enumerate(items, start=1):
        product = products.get(item.product_id)
        rows.append(
            ReceiptLine(
                document_type=machine.document_type.value,
                document_id=document_id,
                position=position,
                product_id=item.product_id,
                product_code=product.code if product else None,
                product_name=product.name if product else None,
                quantity=item.quantity,
                unit_cost_cents=item.unit_cost_cents,
                counted_quantity=item.counted_quantity,
            )
        )
    return rows


def _create_document(session: Session, machine: StateMachine, *, actor_id: int, lines: Iterable, **fields):
    for name in machine.date_fields:
        if isinstance(fields.get(name), str):
            fields[name] = _coerce_field(machine, name, fields[name])

    document = machine.model(
        receipt_number=next_receipt_number(session, machine.document_type),
        status=machine.initial,
        created_by=actor_id,
        **fields,
    )
    session.add(document)
    session.flush()

    session.add_all(_build_lines(session, machine, document.id, lines))
    session.commit()

    logger.info(
        "receipt_created",
        document_type=machine.document_type.value,
        document_id=document.id,
        receipt_number=document.receipt_number,
    )
    return document


def create_import_receipt(
    session: Session,
    *,
    actor_id: int,
    lines: Iterable,
    supplier: str | None = None,
    warehouse: str | None = None,
    note: str | None = None,
    expected_import_date: datetime | str | None = None,
    payment_date: datetime | str | None = None,
) -> ImportReceipt:
    return _create_document(
        session,
        IMPORT_MACHINE,
        actor_id=actor_id,
        lines=lines,
        supplier=supplier,
        warehouse=warehouse,
        note=note,
        expected_import_date=expected_import_date,
        payment_date=payment_date,
    )


def create_return_receipt(
    session: Session,
    *,
    actor_id: int,
    return_type: ReturnType | str,
    lines: Iterable,
    name: str | None = None,
    reason: str | None = None,
    supplier: str | None = None,
    warehouse: str | None = None,
    note: str | None = None,
    return_date: datetime | str | None = None,
) -> ReturnReceipt:
    return _create_document(
        session,
        RETURN_MACHINE,
        actor_id=actor_id,
        lines=lines,
        return_type=_normalize_return_type(return_type),
        name=name,
        reason=reason,
        supplier=supplier,
        warehouse=warehouse,
        note=note,
        return_date=return_date,
    )


def create_check_receipt(
    session: Session,
    *,
    actor_id: int,
    lines: Iterable,
    periodic: str | None = None,
    checker: int | None = None,
    supplier: str | None = None,
    warehouse: str | None = None,
    note: str | None = None,
    check_date: datetime | str | None = None,
) -> CheckReceipt:
    return _create_document(
        session,
        CHECK_MACHINE,
        actor_id=actor_id,
        lines=lines,
        periodic=periodic,
        checker=checker,
        supplier=supplier,
        warehouse=warehouse,
        note=note,
        check_date=check_date,
    )


def _ensure_open(machine: StateMachine, document) -> None:
    if document.applied_at is not None or machine.is_terminal(document.status):
        raise InvalidTransitionError(
            f"Receipt {document.receipt_number} is {document.status}; its lines are frozen",
            status=document.status,
        )


def replace_lines(session: Session, document_type, document_id: int, lines: Iterable, *, actor_id: int):
    """Swap every line of an open document for a new set, in one transaction."""
    machine = get_state_machine(document_type)
    document = get_document(session, machine.document_type, document_id, lock=True)
    _ensure_open(machine, document)

    new_lines = _build_lines(session, machine, document.id, lines)
    old_count = len(document.lines)

    session.query(ReceiptLine).filter_by(
        document_type=machine.document_type.value,
        document_id=document.id,
    ).delete(synchronize_session=False)
    session.flush()
    session.add_all(new_lines)

    append_activity_log(
        session,
        document,
        actor_id=actor_id,
        field="lines",
        old_value=old_count,
        new_value=len(new_lines),
        description=f"Line items replaced ({old_count} -> {len(new_lines)})",
    )
    document.updated_at = utcnow()
    session.commit()
    session.expire(document, ["lines", "activity_logs"])
    return document


def merge_counts(session: Session, document, counted_lines, *, actor_id: int) -> list[ReceiptLine]:
    """
    Store counted quantities on a check's lines; products not yet on the check get new lines.

    Caller owns the transaction. Returns the touched lines in the caller's order.
    """
    by_product = {line.product_id: line for line in document.lines}
    next_position = max((line.position for line in document.lines), default=0) + 1
    touched = []

    for counted in counted_lines:
        line = by_product.get(counted.product_id)
        if line is None:
            line = ReceiptLine(
                document_type=DocumentType.CHECK.value,
                document_id=document.id,
                position=next_position,
                product_id=counted.product_id,
                quantity=0,
            )
            next_position += 1
            session.add(line)
            by_product[counted.product_id] = line
        if line.counted_quantity != counted.counted_quantity:
            append_activity_log(
                session,
                document,
                actor_id=actor_id,
                field="counted_quantity",
                old_value=line.counted_quantity,
                new_value=counted.counted_quantity,
                description=(
                    f"Counted quantity for product {counted.product_id} set to "
                    f"{counted.counted_quantity} (was {_display(line.counted_quantity)})"
                ),
            )
            line.counted_quantity = counted.counted_quantity
        touched.append(line)

    session.flush()
    session.expire(document, ["lines"])
    return touched


def record_counts(session: Session, check_id: int, counted_lines, *, actor_id: int) -> CheckReceipt:
    """Record counted quantities on an unbalanced check without touching stock."""
    counted = normalize_counted_lines(counted_lines)
    document = get_document(session, DocumentType.CHECK, check_id, lock=True)
    _ensure_open(CHECK_MACHINE, document)
    merge_counts(session, document, counted, actor_id=actor_id)
    session.commit()
    return document


def delete_document(session: Session, document_type, document_id: int) -> None:
    """
    Delete an unapplied document and its lines.

    Documents whose stock effect was committed, or that any ledger entry
    references, are kept. Change and activity logs are retained.
    """
    machine = get_state_machine(document_type)
    document = get_document(session, machine.document_type, document_id, lock=True)
    if document.applied_at is not None or has_entries_for_reference(
        session, machine.document_type.value, document.id
    ):
        raise InvalidTransitionError(
            f"Receipt {document.receipt_number} has been applied to inventory and cannot be deleted"
        )

    session.query(ReceiptLine).filter_by(
        document_type=machine.document_type.value,
        document_id=document.id,
    ).delete(synchronize_session=False)
    session.delete(document)
    session.commit()
    logger.info(
        "receipt_deleted",
        document_type=machine.document_type.value,
        document_id=document_id,
    )
