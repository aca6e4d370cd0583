from __future__ import annotations

import enum

from sqlalchemy.orm import declared_attr

from ..extensions import db
from .inventory import forbid_mutation
from stockledger.time_utils import to_utc_z


class DocumentType(str, enum.Enum):
    IMPORT = "IMPORT"
    RETURN = "RETURN"
    CHECK = "CHECK"


class ImportStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    SHORT_RECEIVED = "SHORT_RECEIVED"
    OVER_RECEIVED = "OVER_RECEIVED"


class ReturnStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class CheckStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    BALANCING_REQUIRED = "BALANCING_REQUIRED"
    BALANCED = "BALANCED"


class ReturnType(str, enum.Enum):
    CUSTOMER = "CUSTOMER"
    SUPPLIER = "SUPPLIER"


def _lines(owner: str, document_type: DocumentType):
    return db.relationship(
        "ReceiptLine",
        primaryjoin=(
            f"and_(foreign(ReceiptLine.document_id) == {owner}.id, "
            f"ReceiptLine.document_type == '{document_type.value}')"
        ),
        order_by="ReceiptLine.position",
        viewonly=True,
    )


def _change_logs(owner: str, document_type: DocumentType):
    return db.relationship(
        "DocumentChangeLog",
        primaryjoin=(
            f"and_(foreign(DocumentChangeLog.document_id) == {owner}.id, "
            f"DocumentChangeLog.document_type == '{document_type.value}')"
        ),
        order_by="DocumentChangeLog.id",
        viewonly=True,
    )


def _activity_logs(owner: str, document_type: DocumentType):
    return db.relationship(
        "DocumentActivityLog",
        primaryjoin=(
            f"and_(foreign(DocumentActivityLog.document_id) == {owner}.id, "
            f"DocumentActivityLog.document_type == '{document_type.value}')"
        ),
        order_by="DocumentActivityLog.id",
        viewonly=True,
    )


class ReceiptDocumentMixin:
    """
    Columns shared by import, return and check receipts.

    applied_at is the idempotency marker: set in the same transaction that
    writes the document's ledger entries, never cleared afterwards.
    version_id is the optimistic-lock column; concurrent writers of the same
    document row get StaleDataError on flush.
    """

    id = db.Column(db.Integer, primary_key=True)
    receipt_number = db.Column(db.String(64), nullable=False, unique=True)
    status = db.Column(db.String(32), nullable=False, index=True)
    note = db.Column(db.Text, nullable=True)
    supplier = db.Column(db.String(255), nullable=True)
    warehouse = db.Column(db.String(255), nullable=True)

    applied_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_by = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True, onupdate=db.func.now())

    document_type = None

    @declared_attr.directive
    def __mapper_args__(cls):
        return {"version_id_col": cls.version_id}

    @property
    def is_applied(self) -> bool:
        return self.applied_at is not None

    def _base_dict(self) -> dict:
        return {
            "id": self.id,
            "document_type": self.document_type.value,
            "receipt_number": self.receipt_number,
            "status": self.status,
            "note": self.note,
            "supplier": self.supplier,
            "warehouse": self.warehouse,
            "applied_at": to_utc_z(self.applied_at),
            "version_id": self.version_id,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }

    def to_dict(self, include_logs: bool = False) -> dict:
        data = self._base_dict()
        data["lines"] = [line.to_dict() for line in self.lines]
        if include_logs:
            data["change_log"] = [entry.to_dict() for entry in self.change_logs]
            data["activity_log"] = [entry.to_dict() for entry in self.activity_logs]
        return data


class ImportReceipt(ReceiptDocumentMixin, db.Model):
    """
    Import receipt (stock in).

    LIFECYCLE: DRAFT -> PROCESSING -> COMPLETED | CANCELLED | SHORT_RECEIVED | OVER_RECEIVED
    Only COMPLETED applies the lines to stock (one IMPORT ledger entry per product).
    """
    __tablename__ = "import_receipts"
    __table_args__ = ({"sqlite_autoincrement": True},)

    document_type = DocumentType.IMPORT

    expected_import_date = db.Column(db.DateTime(timezone=True), nullable=True)
    payment_date = db.Column(db.DateTime(timezone=True), nullable=True)

    lines = _lines("ImportReceipt", DocumentType.IMPORT)
    change_logs = _change_logs("ImportReceipt", DocumentType.IMPORT)
    activity_logs = _activity_logs("ImportReceipt", DocumentType.IMPORT)

    def to_dict(self, include_logs: bool = False) -> dict:
        data = super().to_dict(include_logs=include_logs)
        data["expected_import_date"] = to_utc_z(self.expected_import_date)
        data["payment_date"] = to_utc_z(self.payment_date)
        return data


class ReturnReceipt(ReceiptDocumentMixin, db.Model):
    """
    Return receipt.

    LIFECYCLE: DRAFT -> PROCESSING -> COMPLETED | CANCELLED
    return_type decides the sign of the stock change (see RETURN_TYPE_SIGN).
    """
    __tablename__ = "return_receipts"
    __table_args__ = ({"sqlite_autoincrement": True},)

    document_type = DocumentType.RETURN

    return_type = db.Column(db.String(16), nullable=False)
    name = db.Column(db.String(255), nullable=True)
    reason = db.Column(db.Text, nullable=True)
    return_date = db.Column(db.DateTime(timezone=True), nullable=True)

    lines = _lines("ReturnReceipt", DocumentType.RETURN)
    change_logs = _change_logs("ReturnReceipt", DocumentType.RETURN)
    activity_logs = _activity_logs("ReturnReceipt", DocumentType.RETURN)

    def to_dict(self, include_logs: bool = False) -> dict:
        data = super().to_dict(include_logs=include_logs)
        data["return_type"] = self.return_type
        data["name"] = self.name
        data["reason"] = self.reason
        data["return_date"] = to_utc_z(self.return_date)
        return data


class CheckReceipt(ReceiptDocumentMixin, db.Model):
    """
    Physical count ("check") document.

    LIFECYCLE: PENDING -> PROCESSING -> BALANCING_REQUIRED -> BALANCED
    Only the balance command reaches BALANCED; it writes a CHECK ledger entry
    for every line whose counted quantity differs from the system quantity.
    """
    __tablename__ = "check_receipts"
    __table_args__ = ({"sqlite_autoincrement": True},)

    document_type = DocumentType.CHECK

    periodic = db.Column(db.String(32), nullable=True)  # Q1..Q4, ad hoc
    checker = db.Column(db.Integer, nullable=True)
    check_date = db.Column(db.DateTime(timezone=True), nullable=True)

    lines = _lines("CheckReceipt", DocumentType.CHECK)
    change_logs = _change_logs("CheckReceipt", DocumentType.CHECK)
    activity_logs = _activity_logs("CheckReceipt", DocumentType.CHECK)

    def to_dict(self, include_logs: bool = False) -> dict:
        data = super().to_dict(include_logs=include_logs)
        data["periodic"] = self.periodic
        data["checker"] = self.checker
        data["check_date"] = to_utc_z(self.check_date)
        return data


class ReceiptLine(db.Model):
    """
    Line item of any receipt document.

    product_id is intentionally not a foreign key: a product may be removed
    between document creation and application, and applying such a document
    must fail as a whole rather than at insert time.
    """
    __tablename__ = "receipt_lines"
    __table_args__ = (
        db.Index("ix_receipt_lines_document", "document_type", "document_id"),
        db.UniqueConstraint("document_type", "document_id", "position", name="uq_receipt_lines_position"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(16), nullable=False)
    document_id = db.Column(db.Integer, nullable=False)
    position = db.Column(db.Integer, nullable=False)

    product_id = db.Column(db.Integer, nullable=False, index=True)
    product_code = db.Column(db.String(64), nullable=True)
    product_name = db.Column(db.String(255), nullable=True)

    quantity = db.Column(db.Integer, nullable=False, default=0)
    unit_cost_cents = db.Column(db.Integer, nullable=True)

    # Checks only: counted on the floor, and system quantity snapshotted at balance time
    counted_quantity = db.Column(db.Integer, nullable=True)
    system_quantity = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True, onupdate=db.func.now())

    @property
    def difference(self) -> int | None:
        if self.counted_quantity is None or self.system_quantity is None:
            return None
        return self.counted_quantity - self.system_quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "position": self.position,
            "product_id": self.product_id,
            "product_code": self.product_code,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_cost_cents": self.unit_cost_cents,
            "counted_quantity": self.counted_quantity,
            "system_quantity": self.system_quantity,
            "difference": self.difference,
        }


class DocumentChangeLog(db.Model):
    """One row per status transition. Append-only."""
    __tablename__ = "document_change_logs"
    __table_args__ = (
        db.Index("ix_change_logs_document", "document_type", "document_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(16), nullable=False)
    document_id = db.Column(db.Integer, nullable=False)
    actor_id = db.Column(db.Integer, nullable=False)
    old_status = db.Column(db.String(32), nullable=False)
    new_status = db.Column(db.String(32), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "actor_id": self.actor_id,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "timestamp": to_utc_z(self.created_at),
        }


class DocumentActivityLog(db.Model):
    """One row per changed non-status field. Append-only."""
    __tablename__ = "document_activity_logs"
    __table_args__ = (
        db.Index("ix_activity_logs_document", "document_type", "document_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(16), nullable=False)
    document_id = db.Column(db.Integer, nullable=False)
    actor_id = db.Column(db.Integer, nullable=False)
    field = db.Column(db.String(64), nullable=True)
    old_value = db.Column(db.Text, nullable=True)
    new_value = db.Column(db.Text, nullable=True)
    description = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "actor_id": self.actor_id,
            "field": self.field,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "description": self.description,
            "timestamp": to_utc_z(self.created_at),
        }


class DocumentSequence(db.Model):
    """Per-document-type counter used to allocate receipt numbers."""
    __tablename__ = "document_sequences"

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(16), nullable=False, unique=True)
    next_number = db.Column(db.Integer, nullable=False, default=1)


forbid_mutation(DocumentChangeLog)
forbid_mutation(DocumentActivityLog)
