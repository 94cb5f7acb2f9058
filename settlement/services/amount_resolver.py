# settlement/services/amount_resolver.py
"""
Amount Resolver
===============

Reconstructs what Stripe actually charged for each stored donation and
corrects ``donations.amount_charged`` (plus the attached receipts) when the
ledger drifted.

Resolution order
----------------
Subscription (``sub_...``)
    first item's ``price.unit_amount`` / 100, else subscription metadata.
One-time payment intent (``pi_...``)
    a. metadata ``amount`` (grossed up when ``coverStripeFee``)
    b. first succeeded charge of the intent
    c. the customer's succeeded charges within one hour of the donation,
       matched within $1.00 of the stored (or fee-covered stored) amount
    d. the intent's own ``amount``

Every donation is processed in isolation; one failure never stops the sweep.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import or_

from settlement.extensions import db
from settlement.models import Donation, Receipt
from settlement.services.fees import CENT, DEFAULT_FEES, FeeModel, cents_to_money, to_money, truthy_flag
from settlement.services.outcomes import Failure, Success, isolate

log = logging.getLogger(__name__)

UPDATE_THRESHOLD = Decimal("0.01")
MATCH_TOLERANCE = Decimal("1.00")
CUSTOMER_WINDOW_SECONDS = 3600


@dataclass(frozen=True)
class Resolution:
    amount: Decimal
    source: str


class Unresolvable(Exception):
    """Nothing usable came back for this donation (reported as a skip)."""


def _epoch(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def _from_metadata(
    meta: Mapping[str, Any], stored: Optional[Decimal], fees: FeeModel = DEFAULT_FEES
) -> Optional[Decimal]:
    amount = to_money((meta or {}).get("amount"))
    if amount is None or amount <= 0:
        return None
    cover = truthy_flag(meta.get("coverStripeFee"))
    if cover is None:
        # Flag never recorded: pick whichever reading the ledger is closer to.
        cover = stored is not None and abs(stored - fees.gross_up(amount)) < abs(stored - amount)
    return fees.gross_up(amount) if cover else amount


def _first_succeeded(charges: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    for ch in charges:
        if ch.get("status") == "succeeded":
            return ch
    return None


def _resolve_subscription(gateway: Any, donation: Donation, fees: FeeModel) -> Resolution:
    sub = gateway.retrieve_subscription(donation.stripe_subscription_id)
    items = ((sub.get("items") or {}).get("data")) or []
    if items:
        price = items[0].get("price") or {}
        unit = cents_to_money(price.get("unit_amount"))
        if unit is not None:
            return Resolution(unit, "subscription_price")

    amt = _from_metadata(sub.get("metadata") or {}, donation.effective_amount, fees)
    if amt is not None:
        return Resolution(amt, "subscription_metadata")
    raise Unresolvable("subscription has no price or metadata amount")


def _resolve_payment_intent(gateway: Any, donation: Donation, fees: FeeModel) -> Resolution:
    pi_id = donation.stripe_payment_intent_id
    pi = gateway.retrieve_payment_intent(pi_id)

    amt = _from_metadata(pi.get("metadata") or {}, donation.effective_amount, fees)
    if amt is not None:
        return Resolution(amt, "payment_intent_metadata")

    charge = _first_succeeded(gateway.list_payment_intent_charges(pi_id))
    if charge is not None:
        amt = cents_to_money(charge.get("amount"))
        if amt is not None:
            return Resolution(amt, "payment_intent_charge")

    customer = donation.stripe_customer_id or pi.get("customer")
    anchor = donation.started_at or donation.created_at
    if customer and anchor is not None:
        ts = _epoch(anchor)
        stored = Decimal(donation.amount or 0)
        targets = (stored, fees.gross_up(stored))
        for ch in gateway.list_customer_charges(
            customer, gte=ts - CUSTOMER_WINDOW_SECONDS, lte=ts + CUSTOMER_WINDOW_SECONDS
        ):
            if ch.get("status") != "succeeded":
                continue
            amt = cents_to_money(ch.get("amount"))
            if amt is not None and any(abs(amt - t) <= MATCH_TOLERANCE for t in targets):
                return Resolution(amt, "customer_charge")

    amt = cents_to_money(pi.get("amount"))
    if amt is not None:
        return Resolution(amt, "payment_intent_amount")
    raise Unresolvable("payment intent carries no amount")


def resolve_charged_amount(gateway: Any, donation: Donation, fees: FeeModel = DEFAULT_FEES) -> Resolution:
    """Walk the fallback chain for one donation. Raises Unresolvable."""
    sub_id = (donation.stripe_subscription_id or "").strip()
    pi_id = (donation.stripe_payment_intent_id or "").strip()
    if sub_id.startswith("sub_"):
        return _resolve_subscription(gateway, donation, fees)
    if pi_id.startswith("pi_"):
        return _resolve_payment_intent(gateway, donation, fees)
    raise Unresolvable(f"unrecognized Stripe reference: {sub_id or pi_id or '-'}")


def apply_resolution(donation: Donation, resolved: Decimal) -> Optional[Dict[str, Any]]:
    """Write the resolved amount when it differs by more than a cent."""
    old = donation.effective_amount.quantize(CENT)
    new = resolved.quantize(CENT)
    if abs(new - old) <= UPDATE_THRESHOLD:
        return None

    donation.amount_charged = new
    (
        db.session.query(Receipt)
        .filter(Receipt.donation_id == donation.id)
        .update({Receipt.amount: new}, synchronize_session="fetch")
    )
    return {"id": donation.id, "oldAmount": float(old), "newAmount": float(new)}


def recalculate_amounts(
    registry: Any, *, mode: Optional[str] = None, fees: FeeModel = DEFAULT_FEES
) -> Dict[str, Any]:
    """Sweep every donation with a Stripe reference and correct drifted amounts."""
    q = db.session.query(Donation).filter(
        or_(Donation.stripe_subscription_id.isnot(None), Donation.stripe_payment_intent_id.isnot(None))
    )
    if mode:
        q = q.filter(Donation.stripe_mode == mode)
    donations = q.order_by(Donation.id.asc()).all()
    log.info("recalculate: %d donation(s) to check (mode=%s)", len(donations), mode or "all")

    updates: List[Dict[str, Any]] = []
    skipped: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []

    def _one(donation: Donation) -> Optional[Dict[str, Any]]:
        try:
            gateway = registry.for_mode(donation.stripe_mode)
            res = resolve_charged_amount(gateway, donation, fees)
        except Unresolvable as e:
            log.info("recalculate: skip donation %s: %s", donation.id, e)
            skipped.append({"id": donation.id, "reason": str(e)})
            return None

        change = apply_resolution(donation, res.amount)
        if change is None:
            return None
        db.session.commit()
        log.info(
            "recalculate: donation %s %.2f -> %.2f (%s)",
            donation.id, change["oldAmount"], change["newAmount"], res.source,
        )
        return {**change, "source": res.source}

    for donation in donations:
        donation_id = donation.id
        result = isolate(donation_id, lambda d=donation: _one(d), on_error=db.session.rollback)
        if isinstance(result, Failure):
            errors.append({"id": donation_id, "error": result.error})
        elif isinstance(result, Success) and result.value is not None:
            updates.append(result.value)

    return {
        "success": True,
        "updatedCount": len(updates),
        "updates": updates,
        "skipped": skipped,
        "errors": errors,
    }
