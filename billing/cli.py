"""
billing/cli.py

Flask CLI commands (`flask --app run.py <command>`).

Bootstrap:
- init-db, seed-plans, create-admin

Periodic sweeps (run from an external scheduler on a fixed interval; each one is
idempotent and safe next to live requests):
- sweep-quotes, sweep-invoices, renew-subscriptions

Events:
- replay-events (republish stored domain events; consumers are idempotent)
"""

from __future__ import annotations

import click
from flask import Flask

from .extensions import db
from .models import Role, User
from .security import SYSTEM_ACTOR
from .utils import parse_datetime


def register(app: Flask) -> None:
    """Attach the billing commands to `app.cli`."""

    @app.cli.command("init-db")
    def init_db_command():
        """Create all tables (development; use `flask db upgrade` with migrations)."""
        db.create_all()
        click.echo("Database tables created.")

    @app.cli.command("seed-plans")
    def seed_plans_command():
        """Seed the default plan catalog."""
        from .seed import seed_default_plans

        created = seed_default_plans()
        click.echo(f"Default plans seeded ({created} created).")

    @app.cli.command("create-admin")
    @click.option("--username", prompt=True)
    @click.option("--email", prompt=True)
    @click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
    def create_admin_command(username: str, email: str, password: str):
        """Bootstrap the first admin. Refused once any user exists."""
        if User.query.count() > 0:
            raise click.ClickException("Users already exist; create further accounts as admin.")

        username = username.strip()
        if not username or not password:
            raise click.ClickException("Username and password are required.")

        user = User(
            username=username,
            email=email.strip(),
            name="System Administrator",
            role=Role.ADMIN,
            is_active=True,
        )
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        click.echo(f"Admin '{username}' created.")

    @app.cli.command("sweep-quotes")
    @click.option("--now", "now_raw", default=None, help="ISO timestamp to sweep as of (default: now).")
    def sweep_quotes_command(now_raw):
        """Expire pending quotes past their expiry date."""
        from .services import QuoteLedger

        changed = QuoteLedger.expire_sweep(_now(now_raw), actor=SYSTEM_ACTOR)
        click.echo(f"{changed} quote(s) expired.")

    @app.cli.command("sweep-invoices")
    @click.option("--now", "now_raw", default=None, help="ISO timestamp to sweep as of (default: now).")
    def sweep_invoices_command(now_raw):
        """Mark pending invoices past their due date as overdue."""
        from .services import InvoiceLedger

        changed = InvoiceLedger.overdue_sweep(_now(now_raw), actor=SYSTEM_ACTOR)
        click.echo(f"{changed} invoice(s) marked overdue.")

    @app.cli.command("renew-subscriptions")
    @click.option("--now", "now_raw", default=None, help="ISO timestamp to sweep as of (default: now).")
    def renew_subscriptions_command(now_raw):
        """Renew (or expire) subscriptions whose billing period has ended."""
        from .services import SubscriptionManager

        processed = SubscriptionManager.renewal_sweep(_now(now_raw), actor=SYSTEM_ACTOR)
        click.echo(f"{processed} subscription(s) processed.")

    @app.cli.command("replay-events")
    @click.option("--since", "since_raw", default=None, help="Only events at or after this ISO timestamp.")
    @click.option("--name", "names", multiple=True, help="Event name filter (repeatable).")
    def replay_events_command(since_raw, names):
        """Republish stored domain events to in-process receivers."""
        from .events import replay_events

        count = replay_events(since=_now(since_raw), names=names or None)
        click.echo(f"{count} event(s) replayed.")


def _now(raw):
    if raw is None:
        return None
    parsed = parse_datetime(raw)
    if parsed is None:
        raise click.BadParameter(f"Not an ISO timestamp: {raw}")
    return parsed
