from datetime import date, datetime

import pytest
from sqlalchemy import update

from stockledger.errors import ImmutableRecordError, NotFoundError, ValidationError
from stockledger.models import ChangeType, InventoryLedgerEntry, Product
from stockledger.services import ledger_service, product_service
from stockledger.services.concurrency import unit_of_work
from stockledger.time_utils import DateRange


def _record(session, product_id, delta, actor_id, *, change_type=ChangeType.MANUAL, created_at=None):
    with unit_of_work(session):
        change = product_service.apply_delta(session, product_id, delta, allow_negative=True)
        return ledger_service.append_entry(
            session, change=change, change_type=change_type, actor_id=actor_id, created_at=created_at,
        )


def test_append_entry_records_before_and_after(db_session, product_a, actor_id):
    entry = _record(db_session, product_a.id, 15, actor_id)

    assert entry.previous_quantity == 100
    assert entry.quantity_delta == 15
    assert entry.new_quantity == 115
    assert entry.previous_cost_cents == 1000
    assert entry.cost_delta_cents == 0
    assert entry.new_cost_cents == 1000
    assert entry.actor_id == actor_id
    assert entry.change_type == "MANUAL"


def test_append_entry_rejects_unknown_change_type(db_session, product_a, actor_id):
    change = product_service.StockChange(product_a.id, 100, 101, 1000, 1000)
    with pytest.raises(ValidationError):
        ledger_service.append_entry(db_session, change=change, change_type="GIFT", actor_id=actor_id)
    db_session.rollback()


def test_ledger_entries_cannot_be_updated(db_session, product_a, actor_id):
    entry = _record(db_session, product_a.id, 5, actor_id)

    entry.note = "rewritten"
    with pytest.raises(ImmutableRecordError):
        db_session.flush()
    db_session.rollback()


def test_ledger_entries_cannot_be_deleted(db_session, product_a, actor_id):
    entry = _record(db_session, product_a.id, 5, actor_id)

    db_session.delete(entry)
    with pytest.raises(ImmutableRecordError):
        db_session.flush()
    db_session.rollback()
    assert db_session.query(InventoryLedgerEntry).count() == 1


def test_chain_is_consistent_after_appends(db_session, product_a, actor_id):
    for delta in (10, -30, 7):
        _record(db_session, product_a.id, delta, actor_id)

    assert ledger_service.verify_ledger_chain(db_session, product_a.id) == []
    assert ledger_service.verify_product_balance(db_session, product_a.id, initial_quantity=100)
    assert ledger_service.sum_deltas(db_session, product_a.id) == -13


def test_chain_break_is_reported(db_session, product_a, actor_id):
    _record(db_session, product_a.id, 10, actor_id)
    # Stock moved behind the ledger's back
    db_session.execute(
        update(Product).where(Product.id == product_a.id).values(quantity_on_hand=200)
    )
    db_session.commit()
    second = _record(db_session, product_a.id, 1, actor_id)

    breaks = ledger_service.verify_ledger_chain(db_session, product_a.id)
    assert len(breaks) == 1
    assert breaks[0].entry_id == second.id
    assert breaks[0].expected_previous_quantity == 110
    assert breaks[0].actual_previous_quantity == 200
    assert not ledger_service.verify_product_balance(db_session, product_a.id, initial_quantity=100)


def test_query_by_product_orders_and_filters(db_session, product_a, product_b, actor_id):
    _record(db_session, product_a.id, 3, actor_id, created_at=datetime(2026, 3, 2, 9, 0))
    _record(db_session, product_a.id, -1, actor_id, change_type=ChangeType.SALE, created_at=datetime(2026, 3, 1, 9, 0))
    _record(db_session, product_b.id, 4, actor_id, created_at=datetime(2026, 3, 1, 10, 0))
    _record(db_session, product_a.id, 2, actor_id, created_at=datetime(2026, 4, 1, 9, 0))

    march = DateRange(date(2026, 3, 1), date(2026, 3, 31))
    entries = ledger_service.query_by_product(db_session, product_a.id, march)
    assert [e.quantity_delta for e in entries] == [-1, 3]

    sales = ledger_service.query_by_product(db_session, product_a.id, march, change_type="sale")
    assert [e.quantity_delta for e in sales] == [-1]


def test_query_by_product_unknown_product(db_session):
    with pytest.raises(NotFoundError):
        ledger_service.query_by_product(db_session, 12345)


def test_change_summary_groups_by_type(db_session, product_a, product_b, actor_id):
    when = datetime(2026, 5, 10, 12, 0)
    _record(db_session, product_a.id, 10, actor_id, change_type=ChangeType.SYSTEM, created_at=when)
    _record(db_session, product_b.id, -4, actor_id, change_type=ChangeType.SALE, created_at=when)
    _record(db_session, product_a.id, -2, actor_id, change_type=ChangeType.SALE, created_at=when)

    summary = ledger_service.get_inventory_change_summary(db_session, DateRange(date(2026, 5, 1), date(2026, 5, 31)))
    assert summary == [
        {"change_type": "SALE", "total_change": -6, "count": 2},
        {"change_type": "SYSTEM", "total_change": 10, "count": 1},
    ]


def test_chain_is_walked_in_time_order(db_session, product_a, actor_id):
    first = _record(db_session, product_a.id, 5, actor_id, created_at=datetime(2026, 3, 1, 10, 0))
    # Appended later but stamped earlier: ledger order puts it first
    _record(db_session, product_a.id, 3, actor_id, created_at=datetime(2026, 3, 1, 9, 0))

    breaks = ledger_service.verify_ledger_chain(db_session, product_a.id)
    assert len(breaks) == 1
    assert breaks[0].entry_id == first.id
    assert breaks[0].expected_previous_quantity == 108
    assert breaks[0].actual_previous_quantity == 100
