# Overview: Flask CLI command groups for bootstrap, demo data, and payment maintenance.

# backend/sokonet/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP=sokonet (PowerShell: $env:FLASK_APP="sokonet").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Catalog:
# - python -m flask catalog seed-demo
#   Demo business, customer, products, and a QR token bound to the customer.
# - python -m flask catalog restock --product-id 1 --quantity 10
#   Add stock to a product.
#
# Payments:
# - python -m flask payments register-ipn [--force]
#   Register the IPN URL with the gateway and persist the ipn_id.
# - python -m flask payments reconcile-pending [--older-than 10]
#   Re-query the gateway for purchases still pending.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Business, Product, QRToken, User
from .services import payment_service, qr_service, stock_service
from .validation import CommerceError


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Confirm destructive reset')
@with_appcontext
def reset_db(yes):
    """DEV/TEST only: drop and recreate every table."""
    if not yes:
        click.echo("FAIL Refusing to reset without --yes")
        raise SystemExit(1)
    db.drop_all()
    db.create_all()
    click.echo("PASS Database reset")


@click.group('catalog')
def catalog_group():
    """Catalog and demo data commands."""


DEMO_PRODUCTS = [
    ("WIDGET-001", "Widget", 100, 5),
    ("GADGET-001", "Gadget", 2500, 20),
    ("SODA-500", "Soda 500ml", 80, 100),
]


@catalog_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """
    Seed a demo business with products and a bound QR token.

    Idempotent: an existing demo business is reused.
    """
    business = db.session.query(Business).filter_by(email="demo@sokonet.local").first()
    if business is None:
        business = Business(name="Demo Business", email="demo@sokonet.local", phone="+254700000000")
        db.session.add(business)
        db.session.commit()
        click.echo(f"PASS Created business: {business.name} (ID: {business.id})")
    else:
        click.echo(f"PASS Using existing business: {business.name} (ID: {business.id})")

    user = db.session.query(User).filter_by(email="customer@sokonet.local").first()
    if user is None:
        user = User(name="Demo Customer", email="customer@sokonet.local", phone="+254711111111")
        db.session.add(user)
        db.session.commit()
        click.echo(f"PASS Created customer: {user.name} (ID: {user.id})")

    for sku, name, price_cents, stock in DEMO_PRODUCTS:
        product = db.session.query(Product).filter_by(business_id=business.id, sku=sku).first()
        if product is not None:
            click.echo(f"WARN  Product '{sku}' already exists, skipping...")
            continue
        db.session.add(Product(
            business_id=business.id,
            sku=sku,
            name=name,
            price_cents=price_cents,
            stock=stock,
        ))
        db.session.commit()
        click.echo(f"PASS Created product: {name} ({sku}) price_cents={price_cents} stock={stock}")

    token = db.session.query(QRToken).filter_by(business_id=business.id, user_id=user.id).first()
    if token is None:
        token = qr_service.generate_tokens(business.id, 1)[0]
        qr_service.bind(token.id, user.id)
        click.echo(f"PASS Bound QR token {token.code} (ID: {token.id}) to customer {user.id}")
    else:
        click.echo(f"PASS Customer already holds QR token {token.code} (ID: {token.id})")


@catalog_group.command('restock')
@click.option('--product-id', type=int, required=True, help='Product ID')
@click.option('--quantity', type=int, required=True, help='Units to add')
@with_appcontext
def restock_cli(product_id, quantity):
    try:
        product = stock_service.restock(product_id, quantity)
    except CommerceError as e:
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)
    click.echo(f"PASS {product.name} stock is now {product.stock}")


@click.group('payments')
def payments_group():
    """Payment gateway maintenance commands."""


@payments_group.command('register-ipn')
@click.option('--force', is_flag=True, help='Register again even if an ipn_id is stored')
@with_appcontext
def register_ipn_cli(force):
    try:
        registration = payment_service.register_ipn(force=force)
    except CommerceError as e:
        click.echo(f"FAIL {e.message} {e.details}")
        raise SystemExit(1)
    click.echo(f"PASS IPN {registration.ipn_url} -> ipn_id={registration.ipn_id}")


@payments_group.command('reconcile-pending')
@click.option('--older-than', 'older_than', type=int, default=None,
              help='Minutes a purchase must have been pending (default PENDING_RECONCILE_AFTER_MINUTES)')
@with_appcontext
def reconcile_pending_cli(older_than):
    summary = payment_service.reconcile_pending_transactions(older_than)
    click.echo(f"Checked {summary['checked']} pending transactions, {summary['changed']} updated.")
    for error in summary["errors"]:
        click.echo(f"WARN  {error['tracking_id']}: {error['error']} ({error['code']})")
    if summary["untracked"]:
        click.echo(f"WARN  Untracked pending transactions (manual reconciliation): {summary['untracked']}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(catalog_group)
    app.cli.add_command(payments_group)
