# settlement/services/pledge_settlement.py
"""
Pledge Settlement Batch
=======================

Once a bike-ride event is over, every pending per-mile pledge is charged
off-session against the payment method the pledger saved at pledge time.

- event moves scheduled -> completed (with actual miles) -> charges_processed
- each pledge is settled in isolation; a failure is recorded on that pledge
  and the batch carries on
- totals under the processor minimum are marked failed and reported skipped,
  without a charge attempt
"""
from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from settlement.errors import EventNotFound, PreconditionError
from settlement.extensions import db, safe_commit
from settlement.models import BikeRideEvent, BikeRidePledge
from settlement.services.fees import CENT, money_to_cents
from settlement.services.outcomes import Failure, isolate

log = logging.getLogger(__name__)

MIN_CHARGE_CENTS = 50
BELOW_MINIMUM = "Amount too small (below Stripe $0.50 minimum)"


def pledge_total(cents_per_mile: Any, miles: Decimal) -> Decimal:
    rate = Decimal(str(cents_per_mile or 0))
    return (rate / Decimal(100) * miles).quantize(CENT, rounding=ROUND_HALF_UP)


def _parse_miles(raw: Any) -> Decimal:
    if raw is None or raw == "" or isinstance(raw, bool):
        raise PreconditionError("event_id and actual_miles are required")
    try:
        miles = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise PreconditionError("actual_miles must be a positive number")
    if not miles.is_finite() or miles < 0:
        raise PreconditionError("actual_miles must be a positive number")
    return miles


def _payment_method(gateway: Any, pledge: BikeRidePledge) -> str:
    pm = pledge.stripe_payment_method_id
    if not pm and pledge.stripe_setup_intent_id:
        si = gateway.retrieve_setup_intent(pledge.stripe_setup_intent_id)
        ref = si.get("payment_method")
        pm = ref.get("id") if isinstance(ref, dict) else ref
    if not pm:
        raise PreconditionError("No payment method found")
    return pm


def _settle_pledge(
    registry: Any,
    event: BikeRideEvent,
    pledge: BikeRidePledge,
    miles: Decimal,
    total: Decimal,
    min_charge_cents: int,
) -> Dict[str, Any]:
    base = {"pledge_id": pledge.id, "pledger_name": pledge.pledger_name, "amount": float(total)}

    if money_to_cents(total) < min_charge_cents:
        pledge.charge_status = "failed"
        pledge.charge_error = BELOW_MINIMUM
        pledge.calculated_total = total
        db.session.commit()
        log.info("pledge %s skipped: %.2f below minimum", pledge.id, total)
        return {**base, "status": "skipped", "error": BELOW_MINIMUM}

    gateway = registry.for_mode(pledge.stripe_mode)
    if not pledge.stripe_customer_id:
        raise PreconditionError("No Stripe customer on pledge")
    pm = _payment_method(gateway, pledge)

    pi = gateway.create_off_session_payment(
        amount_cents=money_to_cents(total),
        currency="usd",
        customer_id=pledge.stripe_customer_id,
        payment_method_id=pm,
        description=(
            f"Bike ride pledge: {pledge.cents_per_mile}¢/mile × {miles} miles for \"{event.title}\""
        ),
        metadata={
            "type": "bike_ride_pledge",
            "event_id": str(event.id),
            "pledge_id": str(pledge.id),
            "cents_per_mile": str(pledge.cents_per_mile),
            "actual_miles": str(miles),
        },
        idempotency_key=f"pledge-{pledge.id}-{event.id}",
    )

    pi_id = pi.get("id")
    pledge.charge_status = "charged"
    pledge.charge_error = None
    pledge.calculated_total = total
    pledge.stripe_payment_intent_id = pi_id
    pledge.stripe_payment_method_id = pm
    if not safe_commit():
        # money moved; keep the payment intent on the failure record
        msg = f"Charged as {pi_id} but the pledge update failed"
        log.error("pledge %s: %s", base["pledge_id"], msg)
        _record_failure(base["pledge_id"], total, msg, payment_intent_id=pi_id)
        return {**base, "status": "failed", "error": msg, "payment_intent_id": pi_id}
    log.info("pledge %s charged %.2f (%s)", pledge.id, total, pi_id)
    return {**base, "status": "charged", "payment_intent_id": pi_id}


def _record_failure(
    pledge_id: int, total: Decimal, message: str, *, payment_intent_id: Optional[str] = None
) -> None:
    pledge = db.session.get(BikeRidePledge, pledge_id)
    if pledge is None:
        return
    pledge.charge_status = "failed"
    pledge.charge_error = (message or "Unknown error")[:500]
    if payment_intent_id:
        pledge.stripe_payment_intent_id = payment_intent_id
    pledge.calculated_total = total
    if not safe_commit():
        log.error("could not record failure for pledge %s", pledge_id)


def summarize(results: List[Dict[str, Any]]) -> Dict[str, Any]:
    collected = sum(
        (Decimal(str(r["amount"])) for r in results if r["status"] == "charged"),
        Decimal("0"),
    )
    return {
        "total": len(results),
        "charged": sum(1 for r in results if r["status"] == "charged"),
        "failed": sum(1 for r in results if r["status"] == "failed"),
        "skipped": sum(1 for r in results if r["status"] == "skipped"),
        "total_collected": float(collected.quantize(CENT)),
    }


def process_event_charges(
    registry: Any,
    event_id: Any,
    actual_miles: Any,
    *,
    min_charge_cents: Optional[int] = None,
) -> Dict[str, Any]:
    """Charge every pending per-mile pledge of a finished event."""
    if event_id in (None, ""):
        raise PreconditionError("event_id and actual_miles are required")
    miles = _parse_miles(actual_miles)
    floor = int(min_charge_cents if min_charge_cents is not None else MIN_CHARGE_CENTS)

    try:
        event = db.session.get(BikeRideEvent, int(event_id))
    except (TypeError, ValueError):
        event = None
    if event is None:
        raise EventNotFound("Event not found")
    if miles > Decimal(event.mile_goal):
        raise PreconditionError(f"actual_miles ({miles}) cannot exceed mile_goal ({event.mile_goal})")
    if event.is_settled:
        raise PreconditionError("Charges were already processed for this event")

    event.actual_miles = miles
    event.status = "completed"
    db.session.commit()

    pledges = (
        db.session.query(BikeRidePledge)
        .filter(
            BikeRidePledge.event_id == event.id,
            BikeRidePledge.pledge_type == "per_mile",
            BikeRidePledge.charge_status == "pending",
        )
        .order_by(BikeRidePledge.id.asc())
        .all()
    )
    log.info("event %s: settling %d pledge(s) at %s miles", event.id, len(pledges), miles)

    results: List[Dict[str, Any]] = []
    for pledge in pledges:
        pledge_id, name = pledge.id, pledge.pledger_name
        total = pledge_total(pledge.cents_per_mile, miles)
        outcome = isolate(
            pledge_id,
            lambda p=pledge, t=total: _settle_pledge(registry, event, p, miles, t, floor),
            on_error=db.session.rollback,
        )
        if isinstance(outcome, Failure):
            _record_failure(pledge_id, total, outcome.error)
            results.append(
                {
                    "pledge_id": pledge_id,
                    "pledger_name": name,
                    "status": "failed",
                    "amount": float(total),
                    "error": outcome.error,
                }
            )
        else:
            results.append(outcome.value)

    event = db.session.get(BikeRideEvent, event.id)
    event.status = "charges_processed"
    db.session.commit()

    return {"success": True, "summary": summarize(results), "results": results}
