from datetime import date, datetime, timedelta

import pytest

from stockledger.errors import NotFoundError, ValidationError
from stockledger.models import ChangeType
from stockledger.services import document_service, inventory_service, ledger_service, product_service, reporting_service
from stockledger.services.concurrency import unit_of_work
from stockledger.time_utils import DateRange, utcnow

RANGE = DateRange(date(2026, 1, 10), date(2026, 1, 19))


def _at(session, product_id, delta, change_type, when, actor_id=1):
    with unit_of_work(session):
        change = product_service.apply_delta(session, product_id, delta)
        ledger_service.append_entry(
            session, change=change, change_type=change_type, actor_id=actor_id, created_at=when,
        )


@pytest.fixture
def history(db_session, product_a, product_b):
    # A: 100 -> 120 (Jan 5) -> 150 (Jan 12) -> 100 (Jan 15) -> 90 (Jan 25); B untouched at 50
    _at(db_session, product_a.id, 20, ChangeType.IMPORT, datetime(2026, 1, 5, 9, 0))
    _at(db_session, product_a.id, 30, ChangeType.IMPORT, datetime(2026, 1, 12, 9, 0))
    _at(db_session, product_a.id, -50, ChangeType.SALE, datetime(2026, 1, 15, 14, 0))
    _at(db_session, product_a.id, -10, ChangeType.SALE, datetime(2026, 1, 25, 8, 0))
    return product_a, product_b


def test_ledger_by_product_in_range(db_session, history):
    product_a, _ = history
    rows = reporting_service.get_ledger_by_product(db_session, product_a.id, RANGE)
    assert [r["quantity_delta"] for r in rows] == [30, -50]
    assert rows[0]["created_at"] == "2026-01-12T09:00:00Z"


def test_turnover_dataset(db_session, history):
    rows = {r["product_code"]: r for r in reporting_service.get_turnover_dataset(db_session, RANGE)}

    a = rows["A"]
    assert (a["beginning_inventory"], a["ending_inventory"]) == (120, 100)
    assert a["imported_quantity"] == 30
    assert a["turnover"] == 0.27
    assert a["turnover_ratio"] == 30 / 110

    b = rows["B"]
    assert (b["beginning_inventory"], b["ending_inventory"], b["turnover"]) == (50, 50, 0.0)


def test_turnover_beginning_from_first_entry_in_range(db_session, product_a):
    _at(db_session, product_a.id, 40, ChangeType.IMPORT, datetime(2026, 1, 11, 10, 0))

    row = reporting_service.get_turnover_dataset(db_session, RANGE)[0]
    assert row["beginning_inventory"] == 100
    assert row["ending_inventory"] == 140
    assert row["turnover"] == round(40 / 120, 2)


def test_out_of_stock_forecast(db_session, history):
    rows = reporting_service.get_out_of_stock_forecast(db_session, RANGE)

    assert [r["product_code"] for r in rows] == ["A", "B"]
    a, b = rows
    assert a["turnover"] == 0.27
    assert a["days_to_sell_out"] == round(365 / (30 / 110))
    assert a["out_of_stock_date"] == (date(2026, 1, 12) + timedelta(days=a["days_to_sell_out"])).isoformat()
    assert b["days_to_sell_out"] is None
    assert b["out_of_stock_date"] is None


def test_dead_stock(db_session, history):
    rows = reporting_service.get_dead_stock(db_session, RANGE)

    assert [r["product_code"] for r in rows] == ["A", "B"]
    a, b = rows
    assert a["quantity_on_hand"] == 90
    assert a["initial_quantity"] == 120
    assert a["remaining_ratio"] == 75.0
    assert a["last_movement_at"] == "2026-01-25T08:00:00Z"
    assert a["moved_in_range"] is False
    assert b["remaining_ratio"] == 100.0
    assert b["last_movement_at"] is None


def test_dead_stock_skips_empty_products(db_session, product_a, product_b):
    _at(db_session, product_b.id, -50, ChangeType.SALE, datetime(2026, 1, 11, 9, 0))
    assert [r["product_code"] for r in reporting_service.get_dead_stock(db_session, RANGE)] == ["A"]


def test_inventory_by_date_range(db_session, history):
    series = reporting_service.get_inventory_by_date_range(db_session, RANGE)

    assert len(series) == 10
    totals = {row["date"]: row["total_quantity"] for row in series}
    assert totals["2026-01-10"] == 170
    assert totals["2026-01-11"] == 170
    assert totals["2026-01-12"] == 200
    assert totals["2026-01-14"] == 200
    assert totals["2026-01-15"] == 150
    assert totals["2026-01-19"] == 150


def test_value_inventory_by_date_range(db_session, history):
    series = reporting_service.get_value_inventory_by_date_range(db_session, RANGE)

    values = {row["date"]: row["value_cents"] for row in series}
    assert values["2026-01-12"] == 30 * 1000
    assert sum(values.values()) == 30 * 1000


def test_change_summary(db_session, history):
    summary = reporting_service.get_inventory_change_summary(db_session, RANGE)
    assert summary == [
        {"change_type": "IMPORT", "total_change": 30, "count": 1},
        {"change_type": "SALE", "total_change": -50, "count": 1},
    ]


def test_top_stock_items(db_session, product_a, product_b):
    by_quantity = reporting_service.get_top_stock_items(db_session)
    assert [p["code"] for p in by_quantity] == ["A", "B"]

    ascending = reporting_service.get_top_stock_items(db_session, descending=False, limit=1)
    assert [p["code"] for p in ascending] == ["B"]

    by_value = reporting_service.get_top_stock_items(db_session, sort_by="value")
    assert [p["inventory_value_cents"] for p in by_value] == [100000, 25000]

    with pytest.raises(ValidationError):
        reporting_service.get_top_stock_items(db_session, sort_by="name")


def test_default_range_is_recent(db_session, product_a):
    series = reporting_service.get_inventory_by_date_range(db_session, default_days=7)
    assert len(series) == 8
    assert series[-1]["total_quantity"] == 100


def _today():
    today = utcnow().date()
    return DateRange(today, today)


def test_forecast_uses_unrounded_turnover(db_session, product_a):
    _at(db_session, product_a.id, 1, ChangeType.IMPORT, datetime(2026, 1, 12, 9, 0))

    row = reporting_service.get_out_of_stock_forecast(db_session, RANGE)[0]
    assert row["turnover"] == 0.01
    # 1 unit against an average of 100.5: about 36682 days, not 365 / 0.01
    expected_days = round(365 / (1 / 100.5))
    assert 36682 <= expected_days <= 36683
    assert row["days_to_sell_out"] == expected_days
    assert row["out_of_stock_date"] == (date(2026, 1, 12) + timedelta(days=expected_days)).isoformat()


def test_forecast_survives_turnover_below_display_precision(db_session):
    product = product_service.create_product(db_session, code="BULK", name="Bulk", quantity_on_hand=1000)
    _at(db_session, product.id, 1, ChangeType.IMPORT, datetime(2026, 1, 12, 9, 0))

    row = reporting_service.get_out_of_stock_forecast(db_session, RANGE)[0]
    assert row["turnover"] == 0.0
    assert row["days_to_sell_out"] > 365000
    assert row["out_of_stock_date"] is not None


def test_top_stock_items_skip_empty_and_break_ties_on_other_metric(db_session, product_a):
    product_service.create_product(db_session, code="CHEAP", name="Cheap", quantity_on_hand=100, unit_cost_cents=10)
    product_service.create_product(db_session, code="EMPTY", name="Empty", quantity_on_hand=0, unit_cost_cents=9999)

    by_quantity = reporting_service.get_top_stock_items(db_session)
    assert [p["code"] for p in by_quantity] == ["A", "CHEAP"]

    ascending = reporting_service.get_top_stock_items(db_session, sort_by="value", descending=False)
    assert [p["code"] for p in ascending] == ["CHEAP", "A"]


def test_inventory_by_category(db_session):
    product_service.create_product(db_session, code="H-1", name="Hammer", category="Tools", quantity_on_hand=4, unit_cost_cents=1500)
    product_service.create_product(db_session, code="S-1", name="Saw", category="Tools", quantity_on_hand=2, unit_cost_cents=2500)
    product_service.create_product(db_session, code="G-1", name="Glue", category="Supplies", quantity_on_hand=10, unit_cost_cents=300)

    overall = reporting_service.get_inventory_by_category(db_session)
    assert overall["total_quantity"] == 16
    assert overall["total_value_cents"] == 4 * 1500 + 2 * 2500 + 10 * 300
    assert [(row["category"], row["product_count"], row["total_quantity"]) for row in overall["categories"]] == [
        ("Supplies", 1, 10),
        ("Tools", 2, 6),
    ]

    tools = reporting_service.get_inventory_by_category(db_session, "Tools")
    assert (tools["total_quantity"], tools["total_value_cents"]) == (6, 11000)
    assert len(tools["categories"]) == 1

    rows, total = reporting_service.get_products_by_category(db_session, "Tools", limit=1)
    assert total == 2
    assert [row["code"] for row in rows] == ["H-1"]

    with pytest.raises(ValidationError):
        reporting_service.get_products_by_category(db_session, " ")


def test_import_and_return_totals(db_session, product_a, product_b, actor_id):
    first = document_service.create_import_receipt(
        db_session, actor_id=actor_id,
        lines=[{"product_id": product_a.id, "quantity": 20}, {"product_id": product_b.id, "quantity": 5}],
    )
    second = document_service.create_import_receipt(
        db_session, actor_id=actor_id, lines=[{"product_id": product_a.id, "quantity": 3}],
    )
    document_service.create_import_receipt(
        db_session, actor_id=actor_id, lines=[{"product_id": product_a.id, "quantity": 99}],
    )
    returned = document_service.create_return_receipt(
        db_session, actor_id=actor_id, return_type="SUPPLIER", lines=[{"product_id": product_b.id, "quantity": 4}],
    )
    inventory_service.apply_import_receipt(db_session, first.id, actor_id)
    inventory_service.apply_import_receipt(db_session, second.id, actor_id)
    inventory_service.apply_return_receipt(db_session, returned.id, actor_id)

    imports = reporting_service.get_import_totals(db_session, _today())
    assert imports["value"] == 2
    assert imports["total_quantity"] == 28
    assert imports["dataset"] == [{"date": utcnow().date().isoformat(), "quantity": 28, "receipt_count": 2}]

    returns = reporting_service.get_return_totals(db_session, _today())
    assert (returns["value"], returns["total_quantity"]) == (1, 4)
    assert returns["dataset"][0]["receipt_count"] == 1


def test_import_products_dataset(db_session, history):
    product_a, product_b = history

    series = reporting_service.get_import_products_dataset(db_session, product_a.id, RANGE)
    assert len(series) == 10
    assert {row["date"]: row["quantity"] for row in series if row["quantity"]} == {"2026-01-12": 30}

    assert all(row["quantity"] == 0 for row in reporting_service.get_import_products_dataset(db_session, product_b.id, RANGE))
    with pytest.raises(NotFoundError):
        reporting_service.get_import_products_dataset(db_session, 98765, RANGE)
