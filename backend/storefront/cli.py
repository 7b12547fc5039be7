# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/storefront/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Store bootstrap:
# - python -m flask store init-db
#   Create all tables (use `flask db upgrade` when running migrations).
# - python -m flask store seed-demo
#   Idempotently add a demo catalog, staff/customer accounts and one campaign per discount kind.
#
# Discount inspection:
# - python -m flask discounts evaluate 3 6 --customer-id 2
#   Show the discount a product would get at a quantity.
#
# Notifications:
# - python -m flask notifications list [--unread]
#   Print the persisted notification history.

from datetime import timedelta

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .models import Customer, DiscountCampaign, DiscountRule, Product, ProductVariant
from .models.discounts import KIND_BUNDLE, KIND_BUY_X_GET_Y, KIND_FIXED_AMOUNT, KIND_PERCENTAGE
from .runtime import get_runtime
from .services.receipt_service import format_cents
from .time_utils import utcnow


@click.group('store')
def store_group():
    """Database bootstrap commands."""


@store_group.command('init-db')
@with_appcontext
def init_db():
    """Create every table known to the models."""
    db.create_all()
    click.echo("PASS Tables created")


DEMO_PRODUCTS = [
    # sku, name, category, price_cents, stock
    ("EGG-TRAY", "Eggs (tray of 30)", "poultry", 45000, 40),
    ("MILK-1L", "Fresh Milk 1L", "dairy", 6500, 120),
    ("FEED-50", "Layers Mash 50kg", "feed", 320000, 8),
    ("HONEY-500", "Honey 500g", "pantry", 80000, 4),
]

DEMO_ACCOUNTS = [
    ("admin@storefront.local", "Store Admin", "admin"),
    ("cashier@storefront.local", "Front Counter", "worker"),
    ("shopper@storefront.local", "Demo Shopper", "customer"),
]


@store_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """Insert demo products, accounts and campaigns (skips rows that exist)."""
    click.echo("START Seeding demo data...")

    for email, name, role in DEMO_ACCOUNTS:
        if db.session.query(Customer).filter_by(email=email).first():
            click.echo(f"WARN  Account '{email}' already exists, skipping...")
            continue
        get_runtime().store.register_customer(email, full_name=name, role=role)
        click.echo(f"PASS Created {role}: {email}")

    products = {}
    for sku, name, category, price, stock in DEMO_PRODUCTS:
        product = db.session.query(Product).filter_by(sku=sku).first()
        if product is None:
            product = Product(sku=sku, name=name, category=category, price_cents=price, stock=stock)
            db.session.add(product)
            db.session.commit()
            click.echo(f"PASS Created product: {name} (ID: {product.id})")
        products[sku] = product

    milk = products["MILK-1L"]
    if not db.session.query(ProductVariant).filter_by(product_id=milk.id).first():
        db.session.add(ProductVariant(product_id=milk.id, label="500ml", sku="MILK-500", price_cents=3500, stock=60))
        db.session.commit()
        click.echo("PASS Created variant: Fresh Milk 500ml")

    now = utcnow()
    demo_campaigns = [
        ("Egg Week", KIND_PERCENTAGE, "EGG-TRAY", dict(discount_value=10)),
        ("Feed Rebate", KIND_FIXED_AMOUNT, "FEED-50", dict(discount_value=20000, maximum_usage_per_customer=1)),
        ("Milk 2+1", KIND_BUY_X_GET_Y, "MILK-1L", dict(buy_quantity=2, get_quantity=1)),
        ("Honey Bundle", KIND_BUNDLE, "HONEY-500", dict(discount_value=15, minimum_quantity=2, maximum_total_usage=100)),
    ]
    for name, kind, sku, rule_fields in demo_campaigns:
        if db.session.query(DiscountCampaign).filter_by(name=name).first():
            click.echo(f"WARN  Campaign '{name}' already exists, skipping...")
            continue
        campaign = DiscountCampaign(
            name=name,
            kind=kind,
            start_date=now - timedelta(days=1),
            end_date=now + timedelta(days=30),
        )
        db.session.add(campaign)
        db.session.flush()
        db.session.add(DiscountRule(campaign_id=campaign.id, product_id=products[sku].id, **rule_fields))
        db.session.commit()
        click.echo(f"PASS Created campaign: {name} ({kind})")

    click.echo("DONE Demo data ready")


@click.group('discounts')
def discounts_group():
    """Discount inspection commands."""


@discounts_group.command('evaluate')
@click.argument('product_id', type=int)
@click.argument('quantity', type=int)
@click.option('--customer-id', type=int, default=None, help='Evaluate usage ceilings for this customer')
@click.option('--variant-id', type=int, default=None)
@with_appcontext
def evaluate_discount(product_id, quantity, customer_id, variant_id):
    """Show the discount PRODUCT_ID would get at QUANTITY."""
    currency = current_app.config["CURRENCY"]
    result = get_runtime().evaluator.evaluate(product_id, quantity, customer_id, variant_id)
    if result is None:
        click.echo("No discount applies")
        return

    click.echo(f"Campaign:  {result.campaign_name} (ID: {result.campaign_id}, {result.kind})")
    click.echo(f"Unit:      {format_cents(result.original_price_cents, currency)} -> "
               f"{format_cents(result.final_price_cents, currency)}")
    if result.free_units(quantity):
        click.echo(f"Free:      {result.free_units(quantity)} of {quantity}")
    click.echo(f"Saves:     {format_cents(result.line_savings_cents(quantity), currency)}")


@click.group('notifications')
def notifications_group():
    """Staff notification commands."""


@notifications_group.command('list')
@click.option('--unread', is_flag=True, help='Only unread notifications')
@with_appcontext
def list_notifications(unread):
    center = get_runtime().notifications
    center.load()
    items = [n for n in center.notifications if not (unread and n.read)]
    if not items:
        click.echo("No notifications")
        return
    for n in items:
        marker = " " if n.read else "*"
        click.echo(f"{marker} {n.created_at}  [{n.category}] {n.title}: {n.message}")
    click.echo(f"\n{center.unread_count} unread")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(store_group)
    app.cli.add_command(discounts_group)
    app.cli.add_command(notifications_group)
