# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/shopfront/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Idempotent bootstrap: creates tables, the default admin and sample products.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# User inspection/bootstrap:
# - python -m flask users list
#   List all users with plan, balances and status.
# - python -m flask users create --username alice --email alice@example.com --password "Password123!" --role user
#   Create a user (prompts if options are omitted).
# - python -m flask users set-plan alice@example.com gold
#   Change a user's membership plan without payment.
#
# Promotion:
# - python -m flask promo show
#   Show the promotion this process starts with (PROMOTION_KEYWORDS / PROMOTION_PERCENT).
#   The live promotion is changed through PUT /api/admin/promotion.
#
# Payments maintenance:
# - python -m flask payments list-pending
#   List PayPal/NETS payments that are not settled yet.
# - python -m flask payments expire-pending
#   Mark overdue PENDING QR payments TIMED_OUT.

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .models import PendingPayment, Product, User
from .errors import ShopError
from .services import account_service, qr_service
from .services.auth_service import create_user, PasswordValidationError
from .services.promotion_service import get_registry
from .validation import format_cents


SAMPLE_PRODUCTS = [
    ("Fresh Milk 1L", 300, 100, "milk.png"),
    ("Wholemeal Bread", 200, 80, "bread.png"),
    ("Greek Yogurt", 450, 60, "yogurt.png"),
    ("Cheddar Cheese", 650, 40, "cheese.png"),
    ("Free-range Eggs (10)", 520, 50, "eggs.png"),
    ("Bananas (1kg)", 280, 120, "bananas.png"),
]


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """
    Initialize the shop: tables, default admin and sample products.

    Creates:
    - All tables (no-op for existing ones)
    - Admin user DEFAULT_ADMIN_EMAIL / "Password123!"
    - Sample products when the catalog is empty

    SECURITY: Change the admin password immediately in production!
    """
    click.echo("START Initializing shop...")
    db.create_all()

    admin_email = current_app.config["DEFAULT_ADMIN_EMAIL"]
    default_password = "Password123!"
    existing = db.session.query(User).filter_by(email=admin_email).first()
    if existing:
        click.echo(f"WARN  Admin '{admin_email}' already exists, skipping...")
    else:
        try:
            create_user(username="admin", email=admin_email, password=default_password, role="admin")
            click.echo(f"PASS Created admin: {admin_email}")
        except (PasswordValidationError, ShopError) as e:
            click.echo(f"FAIL Failed to create admin: {str(e)}")

    if db.session.query(Product).count() == 0:
        for name, price_cents, stock, image in SAMPLE_PRODUCTS:
            db.session.add(Product(name=name, price_cents=price_cents, stock_quantity=stock, image=image))
        db.session.commit()
        click.echo(f"PASS Created {len(SAMPLE_PRODUCTS)} sample products")
    else:
        click.echo("WARN  Catalog not empty, skipping sample products...")

    click.echo("\n" + "="*60)
    click.echo("DONE Shop Initialized Successfully!")
    click.echo("="*60)
    click.echo(f"\nDefault admin (CHANGE IN PRODUCTION!): {admin_email} / {default_password}")
    click.echo("")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(['user', 'admin']), default='user', help='Role')
@click.option('--plan', type=click.Choice(list(account_service.MEMBERSHIP_PLANS)), default='basic', help='Plan')
@with_appcontext
def create_user_cli(username, email, password, role, plan):
    """Create a new user."""
    try:
        user = create_user(username=username, email=email, password=password, role=role, plan=plan)
        click.echo(f"PASS Created user: {user.username} ({user.email}) role={user.role} plan={user.plan}")
    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed: {str(e)}")
        click.echo("Requirements: 8+ chars, uppercase, lowercase, digit, special char")
    except ShopError as e:
        click.echo(f"FAIL Failed to create user: {str(e)}")


@users_group.command('set-plan')
@click.argument('email')
@click.argument('plan')
@with_appcontext
def set_plan_cli(email, plan):
    """Change a user's membership plan without payment."""
    user = db.session.query(User).filter_by(email=email.strip().lower()).first()
    if not user:
        click.echo(f"FAIL No user with email {email}")
        return
    try:
        new_plan = account_service.set_plan(user.id, plan)
    except ShopError as e:
        click.echo(f"FAIL {str(e)}")
        return
    db.session.commit()
    click.echo(f"PASS {user.email} is now on plan '{new_plan.key}' ({new_plan.discount_percent}% off)")


@users_group.command('list')
@with_appcontext
def list_users():
    """List all users with plan, balances and status."""
    users = db.session.query(User).order_by(User.id.asc()).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'ID':<5} {'Username':<16} {'Email':<30} {'Role':<6} {'Plan':<7} {'Wallet':>10} {'Points':>7} {'Status'}")
    click.echo("="*100)

    for user in users:
        if user.disabled:
            status = "DISABLED"
        elif user.fraud_warning_at:
            status = "WARNED"
        else:
            status = "ok"
        click.echo(
            f"{user.id:<5} {user.username:<16} {user.email:<30} {user.role:<6} {user.plan:<7} "
            f"{format_cents(user.wallet_balance_cents):>10} {user.loyalty_points:>7} {status}"
        )

    click.echo("="*100 + "\n")


@click.group('promo')
def promo_group():
    """Promotion inspection."""


@promo_group.command('show')
@with_appcontext
def show_promo():
    """Show the promotion this process starts with."""
    config = get_registry().snapshot()
    click.echo(f"{config.percent}% off products matching: {', '.join(config.keywords)}")


@click.group('payments')
def payments_group():
    """Pending gateway payment maintenance."""


@payments_group.command('list-pending')
@with_appcontext
def list_pending():
    """List PayPal/NETS payments that are not settled yet."""
    rows = db.session.query(PendingPayment).filter(
        PendingPayment.status.in_(("PENDING", "CONFIRMED"))
    ).order_by(PendingPayment.id.asc()).all()

    if not rows:
        click.echo("No unsettled payments.")
        return

    for p in rows:
        click.echo(
            f"{p.id:<5} {p.provider:<7} {p.reference:<40} {p.purpose:<11} "
            f"{format_cents(p.amount_cents):>9} {p.status:<10} user={p.user_id}"
        )


@payments_group.command('expire-pending')
@with_appcontext
def expire_pending():
    """Mark overdue PENDING QR payments TIMED_OUT."""
    count = qr_service.expire_stale_payments()
    click.echo(f"PASS Timed out {count} QR payment(s)")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(promo_group)
    app.cli.add_command(payments_group)
