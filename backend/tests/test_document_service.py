import unittest
from datetime import datetime

from stockledger import create_app
from stockledger.errors import (
    ImmutableRecordError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from stockledger.extensions import db
from stockledger.models import (
    CheckReceipt,
    DocumentActivityLog,
    DocumentChangeLog,
    DocumentSequence,
    ImportReceipt,
    InventoryLedgerEntry,
    Product,
    ReceiptLine,
    ReturnReceipt,
)
from stockledger.services import document_service, inventory_service, product_service


class DocumentServiceTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.app = create_app({
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "SQLALCHEMY_TRACK_MODIFICATIONS": False,
            "TESTING": True,
        })
        cls.ctx = cls.app.app_context()
        cls.ctx.push()
        db.create_all()

    @classmethod
    def tearDownClass(cls):
        db.session.remove()
        db.drop_all()
        cls.ctx.pop()

    def setUp(self):
        for model in (
            InventoryLedgerEntry, DocumentActivityLog, DocumentChangeLog, ReceiptLine,
            ImportReceipt, ReturnReceipt, CheckReceipt, DocumentSequence, Product,
        ):
            db.session.execute(model.__table__.delete())
        db.session.commit()

        self.session = db.session
        self.actor = 3
        self.widget = product_service.create_product(self.session, code="W-1", name="Widget", quantity_on_hand=10)
        self.gadget = product_service.create_product(self.session, code="G-1", name="Gadget", quantity_on_hand=4)

    def _import(self, **kwargs):
        lines = kwargs.pop("lines", [{"product_id": self.widget.id, "quantity": 5, "unit_cost_cents": 200}])
        return document_service.create_import_receipt(self.session, actor_id=self.actor, lines=lines, **kwargs)

    # -- numbering -----------------------------------------------------------

    def test_receipt_numbers_are_sequential_per_type(self):
        first = self._import()
        second = self._import()
        ret = document_service.create_return_receipt(
            self.session, actor_id=self.actor, return_type="customer",
            lines=[{"product_id": self.widget.id, "quantity": 1}],
        )
        check = document_service.create_check_receipt(
            self.session, actor_id=self.actor, lines=[{"product_id": self.widget.id}],
        )

        self.assertEqual(first.receipt_number, "NH-000001")
        self.assertEqual(second.receipt_number, "NH-000002")
        self.assertEqual(ret.receipt_number, "TH-000001")
        self.assertEqual(check.receipt_number, "KIEM-000001")

    # -- creation ------------------------------------------------------------

    def test_create_snapshots_product_and_keeps_line_order(self):
        receipt = self._import(lines=[
            {"product_id": self.gadget.id, "quantity": 2},
            {"product_id": self.widget.id, "quantity": 1},
        ])

        self.assertEqual(receipt.status, "DRAFT")
        self.assertIsNone(receipt.applied_at)
        self.assertEqual([line.product_code for line in receipt.lines], ["G-1", "W-1"])
        self.assertEqual([line.position for line in receipt.lines], [1, 2])

    def test_create_rejects_duplicate_product_lines(self):
        with self.assertRaises(ValidationError):
            self._import(lines=[
                {"product_id": self.widget.id, "quantity": 2},
                {"product_id": self.widget.id, "quantity": 3},
            ])
        self.session.rollback()

    def test_create_rejects_non_positive_quantity(self):
        with self.assertRaises(ValidationError):
            self._import(lines=[{"product_id": self.widget.id, "quantity": 0}])
        self.session.rollback()

    def test_create_return_rejects_unknown_return_type(self):
        with self.assertRaises(ValidationError):
            document_service.create_return_receipt(
                self.session, actor_id=self.actor, return_type="GIFT",
                lines=[{"product_id": self.widget.id, "quantity": 1}],
            )
        self.session.rollback()

    def test_lookup_by_number(self):
        receipt = self._import()
        found = document_service.get_document_by_number(self.session, "import", "NH-000001")
        self.assertEqual(found.id, receipt.id)
        with self.assertRaises(NotFoundError):
            document_service.get_document_by_number(self.session, "import", "NH-999999")
        with self.assertRaises(NotFoundError):
            document_service.get_document(self.session, "return", receipt.id)

    # -- transitions ---------------------------------------------------------

    def test_transition_appends_one_change_log(self):
        receipt = self._import()
        inventory_service.transition(self.session, "IMPORT", receipt.id, "PROCESSING", self.actor)

        logs = receipt.change_logs
        self.assertEqual(len(logs), 1)
        self.assertEqual((logs[0].old_status, logs[0].new_status), ("DRAFT", "PROCESSING"))
        self.assertEqual(logs[0].actor_id, self.actor)
        self.assertEqual(receipt.status, "PROCESSING")

    def test_transition_rejects_unlisted_edge(self):
        receipt = self._import()
        with self.assertRaises(InvalidTransitionError):
            inventory_service.transition(self.session, "IMPORT", receipt.id, "CANCELLED", self.actor)
        self.assertEqual(document_service.get_document(self.session, "IMPORT", receipt.id).status, "DRAFT")
        self.assertEqual(len(receipt.change_logs), 0)

    def test_terminal_variance_status_is_final(self):
        receipt = self._import()
        inventory_service.transition(self.session, "IMPORT", receipt.id, "PROCESSING", self.actor)
        inventory_service.transition(self.session, "IMPORT", receipt.id, "SHORT_RECEIVED", self.actor)

        with self.assertRaises(InvalidTransitionError):
            inventory_service.transition(self.session, "IMPORT", receipt.id, "COMPLETED", self.actor)
        with self.assertRaises(InvalidTransitionError):
            inventory_service.transition(self.session, "IMPORT", receipt.id, None, self.actor, {"note": "late"})

    def test_unknown_status_is_a_validation_error(self):
        receipt = self._import()
        with self.assertRaises(ValidationError):
            inventory_service.transition(self.session, "IMPORT", receipt.id, "SHIPPED", self.actor)

    def test_change_status_refuses_applied_status_without_applying(self):
        receipt = self._import()
        with self.assertRaises(InvalidTransitionError):
            document_service.change_status(self.session, receipt, "COMPLETED", actor_id=self.actor)
        self.session.rollback()

    def test_field_changes_write_one_activity_log_per_field(self):
        receipt = self._import(supplier="Old Supplier")
        inventory_service.transition(
            self.session, "IMPORT", receipt.id, "PROCESSING", self.actor,
            {"supplier": "New Supplier", "note": "rush", "warehouse": None, "payment_date": "2026-02-01"},
        )

        activity = receipt.activity_logs
        self.assertEqual(sorted(a.field for a in activity), ["note", "payment_date", "supplier"])
        supplier = next(a for a in activity if a.field == "supplier")
        self.assertEqual((supplier.old_value, supplier.new_value), ("Old Supplier", "New Supplier"))
        self.assertEqual(receipt.payment_date.replace(tzinfo=None), datetime(2026, 2, 1))
        self.assertEqual(len(receipt.change_logs), 1)

    def test_field_edit_without_status_change_has_no_change_log(self):
        receipt = self._import()
        inventory_service.transition(self.session, "IMPORT", receipt.id, None, self.actor, {"note": "checked"})
        self.assertEqual(len(receipt.change_logs), 0)
        self.assertEqual(len(receipt.activity_logs), 1)

    def test_non_editable_field_rejected(self):
        receipt = self._import()
        with self.assertRaises(ValidationError):
            inventory_service.transition(self.session, "IMPORT", receipt.id, None, self.actor, {"applied_at": "2026-01-01"})

    def test_change_logs_are_append_only(self):
        receipt = self._import()
        inventory_service.transition(self.session, "IMPORT", receipt.id, "PROCESSING", self.actor)
        log = receipt.change_logs[0]
        log.new_status = "COMPLETED"
        with self.assertRaises(ImmutableRecordError):
            self.session.flush()
        self.session.rollback()

    # -- lines ---------------------------------------------------------------

    def test_replace_lines_before_apply(self):
        receipt = self._import()
        document_service.replace_lines(
            self.session, "IMPORT", receipt.id,
            [{"product_id": self.gadget.id, "quantity": 9}],
            actor_id=self.actor,
        )
        self.assertEqual([(l.product_id, l.quantity) for l in receipt.lines], [(self.gadget.id, 9)])
        self.assertEqual(receipt.activity_logs[-1].field, "lines")

    def test_replace_lines_after_apply_rejected(self):
        receipt = self._import()
        inventory_service.apply_import_receipt(self.session, receipt.id, self.actor)
        with self.assertRaises(InvalidTransitionError):
            document_service.replace_lines(
                self.session, "IMPORT", receipt.id, [{"product_id": self.gadget.id, "quantity": 1}], actor_id=self.actor,
            )
        self.session.rollback()

    def test_record_counts_does_not_move_stock(self):
        check = document_service.create_check_receipt(
            self.session, actor_id=self.actor, lines=[{"product_id": self.widget.id}],
        )
        document_service.record_counts(
            self.session, check.id, [{"product_id": self.widget.id, "counted_quantity": 8}], actor_id=self.actor,
        )

        self.assertEqual(check.lines[0].counted_quantity, 8)
        self.assertEqual(product_service.get_quantity(self.session, self.widget.id), 10)
        self.assertEqual(self.session.query(InventoryLedgerEntry).count(), 0)

    # -- deletion ------------------------------------------------------------

    def test_delete_unapplied_document_keeps_logs(self):
        receipt = self._import()
        inventory_service.transition(self.session, "IMPORT", receipt.id, "PROCESSING", self.actor)
        receipt_id = receipt.id

        document_service.delete_document(self.session, "IMPORT", receipt_id)

        self.assertIsNone(self.session.get(ImportReceipt, receipt_id))
        self.assertEqual(self.session.query(ReceiptLine).filter_by(document_id=receipt_id).count(), 0)
        self.assertEqual(self.session.query(DocumentChangeLog).filter_by(document_id=receipt_id).count(), 1)

    def test_delete_applied_document_refused(self):
        receipt = self._import()
        inventory_service.apply_import_receipt(self.session, receipt.id, self.actor)
        with self.assertRaises(InvalidTransitionError):
            document_service.delete_document(self.session, "IMPORT", receipt.id)
        self.session.rollback()
        self.assertIsNotNone(self.session.get(ImportReceipt, receipt.id))

    def test_long_note_edit_is_logged_in_full(self):
        receipt = self._import(note="short")
        long_note = "x" * 600

        inventory_service.transition(self.session, "IMPORT", receipt.id, None, self.actor, {"note": long_note})

        entry = self.session.query(DocumentActivityLog).filter_by(document_id=receipt.id, field="note").one()
        self.assertGreater(len(entry.description), 512)
        self.assertIn(long_note, entry.description)
        self.assertIsInstance(DocumentActivityLog.__table__.c.description.type, db.Text)

    # -- search --------------------------------------------------------------

    def test_search_documents_by_keyword_status_and_date(self):
        acme = self._import(supplier="Acme Parts", expected_import_date="2026-03-05T14:30")
        globex = self._import(supplier="Globex", expected_import_date="2026-03-06")
        inventory_service.apply_import_receipt(self.session, globex.id, self.actor)

        rows, total = document_service.search_documents(self.session, "IMPORT", keyword="ACME")
        self.assertEqual([r.id for r in rows], [acme.id])
        self.assertEqual(total, 1)

        rows, total = document_service.search_documents(self.session, "IMPORT", keyword=globex.receipt_number)
        self.assertEqual([r.id for r in rows], [globex.id])

        rows, total = document_service.search_documents(self.session, "import", status="completed")
        self.assertEqual([r.id for r in rows], [globex.id])

        rows, total = document_service.search_documents(self.session, "IMPORT", on_date="2026-03-05")
        self.assertEqual([r.id for r in rows], [acme.id])

        rows, total = document_service.search_documents(self.session, "IMPORT", limit=1)
        self.assertEqual([r.id for r in rows], [globex.id])
        self.assertEqual(total, 2)

        with self.assertRaises(ValidationError):
            document_service.search_documents(self.session, "IMPORT", on_date="2026-02-30")

    def test_search_return_receipts_matches_customer_name(self):
        ret = document_service.create_return_receipt(
            self.session, actor_id=self.actor, return_type="customer", name="Jane Roe",
            lines=[{"product_id": self.widget.id, "quantity": 1}],
        )
        document_service.create_return_receipt(
            self.session, actor_id=self.actor, return_type="supplier", supplier="Jane Supplies",
            lines=[{"product_id": self.widget.id, "quantity": 1}],
        )

        rows, total = document_service.search_documents(self.session, "RETURN", keyword="roe")
        self.assertEqual([r.id for r in rows], [ret.id])
        self.assertEqual(total, 1)
