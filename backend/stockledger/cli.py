# Overview: Flask CLI command groups for bootstrap, receipts, ledger inspection and reports.

# backend/stockledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init
#   Create all tables (development shortcut; production uses `flask db upgrade`).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Products:
# - python -m flask products create --code SP-001 --name "Widget" --quantity 100 --unit-cost-cents 250
# - python -m flask products list [--category Tools]
#
# Receipts (lines are product_id:quantity[:unit_cost_cents], counts are product_id:counted):
# - python -m flask receipts create-import --actor-id 1 --line 1:20:250 --supplier "ACME"
# - python -m flask receipts create-return --actor-id 1 --return-type CUSTOMER --line 1:2
# - python -m flask receipts create-check --actor-id 1 --product-id 1 --product-id 2
# - python -m flask receipts show import NH-000001
# - python -m flask receipts search import [--keyword ACME --status DRAFT --date 2026-01-15]
# - python -m flask receipts apply-import NH-000001 --actor-id 1
# - python -m flask receipts apply-return TH-000001 --actor-id 1
# - python -m flask receipts balance-check KIEM-000001 --actor-id 1 --count 1:115
#
# Ledger:
# - python -m flask ledger show 1 [--start 2026-01-01 --end 2026-01-31]
# - python -m flask ledger verify [--product-id 1]
#   Check the previous/new chain and the summation invariant.
#
# Reports (default window: REPORT_DEFAULT_DAYS):
# - python -m flask reports turnover|dead-stock|out-of-stock [--start ... --end ...]
# - python -m flask reports categories [--category Tools]
# - python -m flask reports receipt-totals import|return [--start ... --end ...]

import click
from flask import current_app
from flask.cli import with_appcontext

from .errors import InventoryError
from .extensions import db
from .logging import get_logger
from .models import DocumentType, Product
from .policy import LedgerPolicy
from .services import document_service, inventory_service, ledger_service, product_service, reporting_service
from .services.reconciliation_service import check_summary
from .time_utils import resolve_date_range

logger = get_logger(__name__)


def _policy() -> LedgerPolicy:
    return LedgerPolicy.from_config(current_app.config)


def _date_range(start, end):
    try:
        return resolve_date_range(start, end, default_days=current_app.config.get("REPORT_DEFAULT_DAYS", 30))
    except ValueError as e:
        raise click.BadParameter(str(e))


def _parse_pairs(values, names):
    """Split repeated `a:b[:c]` options into dicts keyed by `names`."""
    rows = []
    for raw in values:
        parts = raw.split(":")
        if len(parts) < 2 or len(parts) > len(names):
            raise click.BadParameter(f"Expected {':'.join(names)}, got {raw!r}")
        try:
            rows.append({name: int(part) for name, part in zip(names, parts)})
        except ValueError:
            raise click.BadParameter(f"Non-integer value in {raw!r}")
    return rows


def _fail(e: InventoryError):
    click.echo(f"FAIL {e.code}: {e.message}")


# =============================================================================
# system
# =============================================================================

@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_db():
    """Create every table that does not exist yet."""
    db.create_all()
    logger.info("database_initialized")
    click.echo("PASS Tables created.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, including the ledger!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    logger.warning("database_reset")
    click.echo("PASS Database reset complete.")


# =============================================================================
# products
# =============================================================================

@click.group('products')
def products_group():
    """Product store commands."""


@products_group.command('create')
@click.option('--code', required=True, help='Unique product code')
@click.option('--name', required=True, help='Display name')
@click.option('--quantity', type=int, default=0, show_default=True, help='Initial quantity on hand')
@click.option('--unit-cost-cents', type=int, default=0, show_default=True)
@click.option('--category', default=None)
@click.option('--unit', default=None)
@with_appcontext
def create_product_cli(code, name, quantity, unit_cost_cents, category, unit):
    """Register a product with its initial quantity."""
    try:
        product = product_service.create_product(
            db.session,
            code=code,
            name=name,
            quantity_on_hand=quantity,
            unit_cost_cents=unit_cost_cents,
            category=category,
            unit=unit,
        )
        click.echo(f"PASS Created product {product.code} (ID: {product.id}) qty={product.quantity_on_hand}")
    except InventoryError as e:
        _fail(e)


@products_group.command('list')
@click.option('--category', default=None)
@click.option('--limit', type=int, default=100, show_default=True)
@with_appcontext
def list_products_cli(category, limit):
    """List products with stock and cost."""
    products, total = product_service.list_products(db.session, category=category, limit=limit)
    if not products:
        click.echo("No products found.")
        return

    click.echo(f"\n{'ID':<6} {'Code':<16} {'Name':<30} {'Qty':>8} {'Cost':>10}")
    click.echo("-" * 74)
    for p in products:
        click.echo(f"{p.id:<6} {p.code:<16} {p.name[:30]:<30} {p.quantity_on_hand:>8} {p.unit_cost_cents:>10}")
    click.echo(f"\n Total: {total} products\n")


# =============================================================================
# receipts
# =============================================================================

@click.group('receipts')
def receipts_group():
    """Import, return and check receipt commands."""


@receipts_group.command('create-import')
@click.option('--actor-id', type=int, required=True)
@click.option('--line', 'lines', multiple=True, required=True, help='product_id:quantity[:unit_cost_cents]')
@click.option('--supplier', default=None)
@click.option('--warehouse', default=None)
@click.option('--note', default=None)
@with_appcontext
def create_import_cli(actor_id, lines, supplier, warehouse, note):
    """Create a DRAFT import receipt."""
    items = _parse_pairs(lines, ("product_id", "quantity", "unit_cost_cents"))
    try:
        receipt = document_service.create_import_receipt(
            db.session, actor_id=actor_id, lines=items, supplier=supplier, warehouse=warehouse, note=note,
        )
        click.echo(f"PASS Created import receipt {receipt.receipt_number} (ID: {receipt.id})")
    except InventoryError as e:
        _fail(e)


@receipts_group.command('create-return')
@click.option('--actor-id', type=int, required=True)
@click.option('--return-type', type=click.Choice(['CUSTOMER', 'SUPPLIER'], case_sensitive=False), required=True)
@click.option('--line', 'lines', multiple=True, required=True, help='product_id:quantity')
@click.option('--reason', default=None)
@with_appcontext
def create_return_cli(actor_id, return_type, lines, reason):
    """Create a DRAFT return receipt."""
    items = _parse_pairs(lines, ("product_id", "quantity", "unit_cost_cents"))
    try:
        receipt = document_service.create_return_receipt(
            db.session, actor_id=actor_id, return_type=return_type, lines=items, reason=reason,
        )
        click.echo(f"PASS Created return receipt {receipt.receipt_number} (ID: {receipt.id})")
    except InventoryError as e:
        _fail(e)


@receipts_group.command('create-check')
@click.option('--actor-id', type=int, required=True)
@click.option('--product-id', 'product_ids', type=int, multiple=True, required=True)
@click.option('--periodic', default=None, help='Q1..Q4 or free text')
@with_appcontext
def create_check_cli(actor_id, product_ids, periodic):
    """Create a PENDING check receipt covering the given products."""
    try:
        receipt = document_service.create_check_receipt(
            db.session,
            actor_id=actor_id,
            lines=[{"product_id": pid} for pid in product_ids],
            periodic=periodic,
        )
        click.echo(f"PASS Created check receipt {receipt.receipt_number} (ID: {receipt.id})")
    except InventoryError as e:
        _fail(e)


@receipts_group.command('show')
@click.argument('document_type', type=click.Choice(['import', 'return', 'check'], case_sensitive=False))
@click.argument('receipt')
@with_appcontext
def show_receipt_cli(document_type, receipt):
    """Show a receipt with its lines and change log."""
    try:
        doc_type = DocumentType(document_type.upper())
        receipt_id = inventory_service.resolve_receipt_id(db.session, doc_type, receipt)
        document = document_service.get_document(db.session, doc_type, receipt_id)
    except InventoryError as e:
        _fail(e)
        return

    applied = document.applied_at if document.is_applied else "-"
    click.echo(f"\n{document.receipt_number}  status={document.status}  applied_at={applied}")
    for line in document.lines:
        counted = "" if line.counted_quantity is None else f" counted={line.counted_quantity}"
        click.echo(f"  #{line.position} product={line.product_id} qty={line.quantity}{counted}")
    for entry in document.change_logs:
        click.echo(f"  LOG {entry.old_status} -> {entry.new_status} by {entry.actor_id}")
    for entry in ledger_service.entries_for_reference(db.session, doc_type.value, document.id):
        click.echo(f"  LEDGER product={entry.product_id} {entry.previous_quantity} {entry.quantity_delta:+d} -> {entry.new_quantity}")
    if doc_type is DocumentType.CHECK:
        summary = check_summary(db.session, document)
        click.echo(
            f"  system={summary['system_inventory']} actual={summary['actual_inventory']} "
            f"difference={summary['total_difference']} value={summary['total_value_difference_cents']}"
        )


@receipts_group.command('search')
@click.argument('document_type', type=click.Choice(['import', 'return', 'check'], case_sensitive=False))
@click.option('--keyword', default=None, help='Receipt number or supplier/name fragment')
@click.option('--status', default=None)
@click.option('--date', 'on_date', default=None, help='YYYY-MM-DD business date')
@click.option('--limit', type=int, default=10, show_default=True)
@with_appcontext
def search_receipts_cli(document_type, keyword, status, on_date, limit):
    """Find receipts by keyword, status or business date."""
    try:
        documents, total = document_service.search_documents(
            db.session, document_type, keyword=keyword, status=status, on_date=on_date, limit=limit,
        )
    except InventoryError as e:
        _fail(e)
        return

    if not documents:
        click.echo("No receipts found.")
        return
    for document in documents:
        click.echo(f"  {document.receipt_number:<14} {document.status:<20} lines={len(document.lines)}")
    click.echo(f"\n Total: {total} receipts\n")


@receipts_group.command('apply-import')
@click.argument('receipt')
@click.option('--actor-id', type=int, required=True)
@with_appcontext
def apply_import_cli(receipt, actor_id):
    """Apply an import receipt (id or receipt number) to stock."""
    try:
        result = inventory_service.apply_import_receipt(db.session, receipt, actor_id, policy=_policy())
        click.echo(f"PASS Applied {result.document.receipt_number}: {len(result.entries)} ledger entries")
    except InventoryError as e:
        _fail(e)


@receipts_group.command('apply-return')
@click.argument('receipt')
@click.option('--actor-id', type=int, required=True)
@with_appcontext
def apply_return_cli(receipt, actor_id):
    """Apply a return receipt (id or receipt number) to stock."""
    try:
        result = inventory_service.apply_return_receipt(db.session, receipt, actor_id, policy=_policy())
        click.echo(f"PASS Applied {result.document.receipt_number}: {len(result.entries)} ledger entries")
    except InventoryError as e:
        _fail(e)


@receipts_group.command('balance-check')
@click.argument('receipt')
@click.option('--actor-id', type=int, required=True)
@click.option('--count', 'counts', multiple=True, help='product_id:counted_quantity')
@with_appcontext
def balance_check_cli(receipt, actor_id, counts):
    """Balance a check receipt against counted quantities."""
    counted = _parse_pairs(counts, ("product_id", "counted_quantity"))
    try:
        result = inventory_service.balance_check_receipt(db.session, receipt, actor_id, counted, policy=_policy())
        click.echo(f"PASS Balanced {result.document.receipt_number}: {len(result.entries)} ledger entries")
    except InventoryError as e:
        _fail(e)


# =============================================================================
# ledger
# =============================================================================

@click.group('ledger')
def ledger_group():
    """Inventory ledger inspection."""


@ledger_group.command('show')
@click.argument('product_id', type=int)
@click.option('--start', default=None)
@click.option('--end', default=None)
@with_appcontext
def show_ledger_cli(product_id, start, end):
    """Show a product's ledger entries in order."""
    try:
        rows = reporting_service.get_ledger_by_product(db.session, product_id, _date_range(start, end))
    except InventoryError as e:
        _fail(e)
        return

    if not rows:
        click.echo("No ledger entries in range.")
        return
    for row in rows:
        click.echo(
            f"  {row['id']:<6} {row['created_at']} {row['change_type']:<7} "
            f"{row['previous_quantity']} {row['quantity_delta']:+d} = {row['new_quantity']} "
            f"ref={row['reference_type'] or '-'}:{row['reference_id'] or '-'}"
        )


@ledger_group.command('verify')
@click.option('--product-id', type=int, default=None)
@with_appcontext
def verify_ledger_cli(product_id):
    """Verify the previous/new chain of every (or one) product's ledger."""
    query = db.session.query(Product.id, Product.code)
    if product_id is not None:
        query = query.filter(Product.id == product_id)

    problems = 0
    for pid, code in query.order_by(Product.id).all():
        breaks = ledger_service.verify_ledger_chain(db.session, pid)
        for b in breaks:
            problems += 1
            click.echo(
                f"FAIL {code}: entry {b.entry_id} starts at {b.actual_previous_quantity}, "
                f"expected {b.expected_previous_quantity}"
            )

    if problems:
        logger.warning("ledger_chain_broken", breaks=problems)
    else:
        click.echo("PASS Ledger chain consistent.")


# =============================================================================
# reports
# =============================================================================

@click.group('reports')
def reports_group():
    """Read-only inventory reports."""


def _report_options(f):
    f = click.option('--end', default=None, help='YYYY-MM-DD')(f)
    f = click.option('--start', default=None, help='YYYY-MM-DD')(f)
    return f


@reports_group.command('turnover')
@_report_options
@with_appcontext
def turnover_cli(start, end):
    """Inventory turnover per product."""
    for row in reporting_service.get_turnover_dataset(db.session, _date_range(start, end)):
        click.echo(
            f"  {row['product_code']:<16} begin={row['beginning_inventory']} end={row['ending_inventory']} "
            f"imported={row['imported_quantity']} turnover={row['turnover']}"
        )


@reports_group.command('dead-stock')
@_report_options
@with_appcontext
def dead_stock_cli(start, end):
    """Products still holding stock, most units first."""
    for row in reporting_service.get_dead_stock(db.session, _date_range(start, end)):
        ratio = "-" if row['remaining_ratio'] is None else f"{row['remaining_ratio']}%"
        click.echo(
            f"  {row['product_code']:<16} qty={row['quantity_on_hand']} remaining={ratio} "
            f"last_move={row['last_movement_at'] or '-'}"
        )


@reports_group.command('out-of-stock')
@_report_options
@with_appcontext
def out_of_stock_cli(start, end):
    """Forecast stock-out dates from turnover."""
    for row in reporting_service.get_out_of_stock_forecast(db.session, _date_range(start, end)):
        click.echo(
            f"  {row['product_code']:<16} turnover={row['turnover']} "
            f"days={row['days_to_sell_out'] if row['days_to_sell_out'] is not None else '-'} "
            f"date={row['out_of_stock_date'] or '-'}"
        )


@reports_group.command('categories')
@click.option('--category', default=None)
@with_appcontext
def categories_cli(category):
    """Units and stock value on hand per category."""
    summary = reporting_service.get_inventory_by_category(db.session, category)
    for row in summary['categories']:
        click.echo(
            f"  {row['category'] or '-':<16} products={row['product_count']} "
            f"qty={row['total_quantity']} value={row['total_value_cents']}"
        )
    click.echo(f"\n Total: qty={summary['total_quantity']} value={summary['total_value_cents']}\n")


@reports_group.command('receipt-totals')
@click.argument('document_type', type=click.Choice(['import', 'return'], case_sensitive=False))
@_report_options
@with_appcontext
def receipt_totals_cli(document_type, start, end):
    """Applied import/return receipts with units moved per day."""
    if document_type.lower() == 'import':
        totals = reporting_service.get_import_totals(db.session, _date_range(start, end))
    else:
        totals = reporting_service.get_return_totals(db.session, _date_range(start, end))
    click.echo(f"\n Applied receipts: {totals['value']}  units: {totals['total_quantity']}")
    for day in totals['dataset']:
        if day['quantity']:
            click.echo(f"  {day['date']} qty={day['quantity']} receipts={day['receipt_count']}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(products_group)
    app.cli.add_command(receipts_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(reports_group)
