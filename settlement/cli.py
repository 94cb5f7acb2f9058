# settlement/cli.py
# =============================================================================
# Operator CLI: `flask settlement ...`
# Runs the same procedures as the admin API, without HTTP auth (shell access
# is the trust boundary).
# =============================================================================
from __future__ import annotations

import json
from typing import Any, Dict

import click
from flask import current_app
from flask.cli import AppGroup
from sqlalchemy.exc import SQLAlchemyError

from settlement.errors import SettlementError
from settlement.extensions import db
from settlement.models import Profile, UserRole
from settlement.models.profile import ADMIN_ROLES
from settlement.security import issue_token
from settlement.services.amount_resolver import recalculate_amounts
from settlement.services.donation_reconcile import reconcile_pending
from settlement.services.fees import FeeModel
from settlement.services.gateway import get_registry
from settlement.services.pledge_settlement import process_event_charges

settlement_cli = AppGroup("settlement", help="Stripe reconciliation and settlement jobs.")

MODE_CHOICE = click.Choice(["test", "live"])


def _emit(payload: Dict[str, Any]) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _fail(e: SettlementError) -> None:
    db.session.rollback()
    click.secho(f"❌ {e.message}", fg="red", bold=True, err=True)
    raise SystemExit(1)


@settlement_cli.command("recalculate-amounts")
@click.option("--mode", type=MODE_CHOICE, default=None, help="Only donations in this Stripe mode.")
def recalculate_amounts_cmd(mode: str | None) -> None:
    """Correct donation + receipt amounts from what Stripe actually charged."""
    result = recalculate_amounts(get_registry(), mode=mode, fees=FeeModel.from_config(current_app.config))
    click.secho(
        f"✅ {result['updatedCount']} updated, {len(result['skipped'])} skipped, {len(result['errors'])} errors",
        fg="green" if not result["errors"] else "yellow",
    )
    _emit(result)


@settlement_cli.command("reconcile-pending")
@click.option("--mode", type=MODE_CHOICE, default=None, help="Only donations in this Stripe mode.")
@click.option("--limit", type=int, default=500, show_default=True, help="Max donations to examine.")
@click.option("--since", default=None, help="ISO timestamp; only donations created after it.")
def reconcile_pending_cmd(mode: str | None, limit: int, since: str | None) -> None:
    """Settle donations stuck in 'pending' against Stripe."""
    try:
        result = reconcile_pending(get_registry(), mode=mode, limit=limit, since=since)
    except SettlementError as e:
        _fail(e)
        return
    s = result["summary"]
    click.secho(
        f"✅ {s['total']} checked: {s['activated']} activated, {s['completed']} completed, "
        f"{s['cancelled'] + s['auto_cancelled']} cancelled, {s['errors']} errors",
        fg="green" if not s["errors"] else "yellow",
    )
    _emit(result)


@settlement_cli.command("process-charges")
@click.argument("event_id", type=int)
@click.argument("actual_miles")
def process_charges_cmd(event_id: int, actual_miles: str) -> None:
    """Charge every pending per-mile pledge of a finished bike ride."""
    try:
        result = process_event_charges(
            get_registry(),
            event_id,
            actual_miles,
            min_charge_cents=int(current_app.config.get("MIN_CHARGE_CENTS") or 50),
        )
    except SettlementError as e:
        _fail(e)
        return
    s = result["summary"]
    click.secho(
        f"✅ {s['charged']}/{s['total']} charged (${s['total_collected']:.2f}), "
        f"{s['failed']} failed, {s['skipped']} skipped",
        fg="green" if not s["failed"] else "yellow",
    )
    _emit(result)


@settlement_cli.command("grant-admin")
@click.argument("email")
@click.option("--role", type=click.Choice(list(ADMIN_ROLES)), default="admin", show_default=True)
@click.option("--name", default=None, help="Display name when the profile is created.")
def grant_admin_cmd(email: str, role: str, name: str | None) -> None:
    """Create the profile if needed and give it an admin/owner role."""
    try:
        profile = Profile.find_by_email(email)
        if profile is None:
            profile = Profile(email=email.strip().lower(), display_name=name)
            db.session.add(profile)
            db.session.flush()
        exists = db.session.query(UserRole).filter_by(user_id=profile.id, role=role).first()
        if exists is None:
            db.session.add(UserRole(user_id=profile.id, role=role))
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        click.secho(f"❌ grant failed: {e}", fg="red", bold=True, err=True)
        raise SystemExit(1)
    click.secho(f"✅ {profile.email} (id={profile.id}) has role '{role}'", fg="green")


@settlement_cli.command("issue-token")
@click.argument("email")
@click.option("--ttl", type=int, default=3600, show_default=True, help="Lifetime in seconds.")
def issue_token_cmd(email: str, ttl: int) -> None:
    """Print a bearer token for an existing profile."""
    profile = Profile.find_by_email(email)
    if profile is None:
        click.secho(f"❌ no profile for {email}", fg="red", bold=True, err=True)
        raise SystemExit(1)
    click.echo(issue_token(profile.id, ttl=ttl))
