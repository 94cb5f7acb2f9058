# settlement/services/donation_reconcile.py
"""
Pending donation reconciliation.

Donations are created ``pending`` before the donor reaches Stripe checkout.
When the webhook that should settle them never lands, this sweep asks Stripe
directly, in order:

1. the checkout session recorded on the donation
2. the subscription (monthly donations)
3. the customer's subscriptions / payment intents created within an hour of
   the donation, matched on amount

Anything still unknown after two hours is treated as an abandoned checkout.
Newly activated / completed donations get a ``donation_<id>`` receipt.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from settlement.errors import PreconditionError
from settlement.extensions import db, secondary_write
from settlement.models import Donation, Profile
from settlement.models.mixins import utcnow
from settlement.services.fees import cents_to_money, to_money
from settlement.services.gateway import GatewayError
from settlement.services.outcomes import Failure, Success, isolate
from settlement.services.receipts import get_or_create_receipt

log = logging.getLogger(__name__)

DEFAULT_LIMIT = 500
MIN_AGE = timedelta(minutes=5)
ABANDON_AFTER = timedelta(hours=2)
SEARCH_WINDOW_SECONDS = 3600

LIVE_SUBSCRIPTION = {"active", "trialing", "past_due"}
DEAD_SUBSCRIPTION = {"canceled", "unpaid", "incomplete_expired"}
SETTLED_ACTIONS = {"activated", "completed"}


@dataclass
class Verdict:
    action: str
    stripe_object_id: Optional[str]
    stripe_status: Optional[str]
    changes: Dict[str, Any] = field(default_factory=dict)


def _ref(v: Any) -> Optional[str]:
    if isinstance(v, dict):
        return v.get("id")
    return v or None


def _ts(v: Any) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(int(v), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError):
        return None


def _epoch(dt: datetime) -> int:
    return int(dt.replace(tzinfo=timezone.utc).timestamp())


def parse_since(raw: Any) -> Optional[datetime]:
    if raw in (None, ""):
        return None
    if isinstance(raw, datetime):
        dt = raw
    else:
        try:
            dt = datetime.fromisoformat(str(raw).strip().replace("Z", "+00:00"))
        except ValueError:
            raise PreconditionError(f"Invalid 'since' timestamp: {raw}")
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


# ─────────────────────────────────────────────────────────────
# Verdicts
# ─────────────────────────────────────────────────────────────
def _subscription_verdict(donation: Donation, sub: Dict[str, Any], **extra: Any) -> Optional[Verdict]:
    status = sub.get("status")
    if status in LIVE_SUBSCRIPTION:
        changes = {
            "status": "active",
            "stripe_subscription_id": sub.get("id"),
            "amount_charged": donation.amount,
            "started_at": _ts(sub.get("created")) or donation.started_at,
        }
        changes.update(extra)
        return Verdict("activated", sub.get("id"), status, changes)
    if status in DEAD_SUBSCRIPTION:
        return Verdict("cancelled", sub.get("id"), status, {"status": "cancelled"})
    return None


def _payment_intent_verdict(pi: Dict[str, Any], **extra: Any) -> Optional[Verdict]:
    if pi.get("status") != "succeeded":
        return None
    changes = {
        "status": "completed",
        "stripe_payment_intent_id": pi.get("id"),
        "amount_charged": cents_to_money(pi.get("amount")),
        "started_at": _ts(pi.get("created")),
    }
    changes.update(extra)
    return Verdict("completed", pi.get("id"), "succeeded", changes)


# ─────────────────────────────────────────────────────────────
# Strategies
# ─────────────────────────────────────────────────────────────
def via_checkout_session(gateway: Any, donation: Donation) -> Optional[Verdict]:
    if not donation.stripe_checkout_session_id:
        return None
    session = gateway.retrieve_checkout_session(donation.stripe_checkout_session_id)
    customer = _ref(session.get("customer"))
    extra = {"stripe_customer_id": customer} if customer else {}

    sub = session.get("subscription")
    pi = session.get("payment_intent")
    if session.get("mode") == "subscription" and sub:
        if not isinstance(sub, dict):
            sub = gateway.retrieve_subscription(sub)
        return _subscription_verdict(donation, sub, **extra)
    if session.get("mode") == "payment" and pi:
        if not isinstance(pi, dict):
            pi = gateway.retrieve_payment_intent(pi)
        return _payment_intent_verdict(pi, **extra)
    if session.get("status") == "expired":
        return Verdict("cancelled", session.get("id"), "expired", {"status": "cancelled"})
    return None


def via_subscription(gateway: Any, donation: Donation) -> Optional[Verdict]:
    if donation.frequency != "monthly" or not donation.stripe_subscription_id:
        return None
    sub = gateway.retrieve_subscription(donation.stripe_subscription_id)
    customer = _ref(sub.get("customer"))
    extra = {"stripe_customer_id": customer} if customer else {}
    return _subscription_verdict(donation, sub, **extra)


def _near(meta: Dict[str, Any], cents: Any, stored: Decimal) -> bool:
    meta_amount = to_money((meta or {}).get("amount"))
    if meta_amount is not None and abs(meta_amount - stored) < Decimal("0.01"):
        return True
    amount = cents_to_money(cents) or Decimal("0")
    return abs(amount - stored) < Decimal("1.00")


def via_customer_search(gateway: Any, donation: Donation) -> Optional[Verdict]:
    if not donation.stripe_customer_id or not donation.amount:
        return None
    ts = _epoch(donation.created_at)
    window = {"gte": ts - SEARCH_WINDOW_SECONDS, "lte": ts + SEARCH_WINDOW_SECONDS}
    stored = Decimal(donation.amount)

    if donation.frequency == "monthly":
        for sub in gateway.list_customer_subscriptions(donation.stripe_customer_id, **window):
            items = ((sub.get("items") or {}).get("data")) or []
            unit = (items[0].get("price") or {}).get("unit_amount") if items else None
            if _near(sub.get("metadata"), unit, stored):
                if sub.get("status") in LIVE_SUBSCRIPTION:
                    return _subscription_verdict(donation, sub)
                return None
        return None

    for pi in gateway.list_customer_payment_intents(donation.stripe_customer_id, **window):
        if pi.get("status") == "succeeded" and _near(pi.get("metadata"), pi.get("amount"), stored):
            return _payment_intent_verdict(pi)
    return None


STRATEGIES: List[Callable[[Any, Donation], Optional[Verdict]]] = [
    via_checkout_session,
    via_subscription,
    via_customer_search,
]


# ─────────────────────────────────────────────────────────────
# Sweep
# ─────────────────────────────────────────────────────────────
def _reconcile_one(registry: Any, donation: Donation, now: datetime) -> Dict[str, Any]:
    result: Dict[str, Any] = {
        "donationId": donation.id,
        "oldStatus": donation.status,
        "newStatus": donation.status,
        "stripeObjectId": None,
        "stripeStatus": None,
        "action": "skipped",
    }
    age = now - donation.created_at
    if age < MIN_AGE:
        result["reason"] = "too recent"
        return result

    gateway = registry.for_mode(donation.stripe_mode)
    for strategy in STRATEGIES:
        try:
            verdict = strategy(gateway, donation)
        except GatewayError as e:
            log.warning("reconcile: %s failed for donation %s: %s", strategy.__name__, donation.id, e)
            continue
        if verdict is None:
            continue

        for column, value in verdict.changes.items():
            if value is not None:
                setattr(donation, column, value)
        db.session.commit()
        log.info("reconcile: donation %s %s via %s", donation.id, verdict.action, strategy.__name__)
        result.update(
            newStatus=donation.status,
            action=verdict.action,
            stripeObjectId=verdict.stripe_object_id,
            stripeStatus=verdict.stripe_status,
        )
        return result

    if age > ABANDON_AFTER:
        donation.status = "cancelled"
        db.session.commit()
        log.info("reconcile: auto-cancelled donation %s (no Stripe record after 2h)", donation.id)
        result.update(newStatus="cancelled", action="auto_cancelled")
    return result


def _generate_receipt(donation_id: int) -> bool:
    donation = db.session.get(Donation, donation_id)
    if donation is None:
        return False
    email = donation.donor_email
    name = "Donor"
    if donation.donor_id:
        profile = db.session.get(Profile, donation.donor_id)
        if profile is not None:
            email = email or profile.email
            name = profile.display_name or name

    made = secondary_write(
        "receipt",
        lambda: get_or_create_receipt(
            transaction_id=f"donation_{donation.id}",
            mode=donation.stripe_mode,
            donation=donation,
            email=email,
            name=name,
            amount=donation.effective_amount,
            frequency=donation.frequency,
            transaction_date=donation.created_at,
            prefix="RCP-REC",
        ),
    )
    db.session.commit()
    return made is not None


def reconcile_pending(
    registry: Any,
    *,
    mode: Optional[str] = None,
    since: Any = None,
    limit: Any = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Settle ``pending`` donations against what Stripe actually recorded."""
    now = now or utcnow()
    try:
        limit = int(limit) if limit not in (None, "") else DEFAULT_LIMIT
    except (TypeError, ValueError):
        raise PreconditionError("limit must be an integer")
    limit = max(1, min(limit, DEFAULT_LIMIT))
    since_dt = parse_since(since)

    q = db.session.query(Donation).filter(Donation.status == "pending")
    if mode:
        q = q.filter(Donation.stripe_mode == mode)
    if since_dt is not None:
        q = q.filter(Donation.created_at >= since_dt)
    donations = q.order_by(Donation.created_at.asc(), Donation.id.asc()).limit(limit).all()
    log.info("reconcile: %d pending donation(s) (mode=%s)", len(donations), mode or "all")

    results: List[Dict[str, Any]] = []
    for donation in donations:
        donation_id, old_status = donation.id, donation.status
        outcome = isolate(
            donation_id,
            lambda d=donation: _reconcile_one(registry, d, now),
            on_error=db.session.rollback,
        )
        if isinstance(outcome, Failure):
            results.append(
                {
                    "donationId": donation_id,
                    "oldStatus": old_status,
                    "newStatus": old_status,
                    "stripeObjectId": None,
                    "stripeStatus": None,
                    "action": "error",
                    "error": outcome.error,
                }
            )
        else:
            results.append(outcome.value)

    receipts_generated = receipt_errors = 0
    for r in results:
        if r["action"] not in SETTLED_ACTIONS:
            continue
        made = isolate(
            r["donationId"],
            lambda i=r["donationId"]: _generate_receipt(i),
            on_error=db.session.rollback,
        )
        if isinstance(made, Success) and made.value:
            receipts_generated += 1
        else:
            receipt_errors += 1

    summary = {
        "total": len(results),
        "activated": sum(1 for r in results if r["action"] == "activated"),
        "completed": sum(1 for r in results if r["action"] == "completed"),
        "cancelled": sum(1 for r in results if r["action"] == "cancelled"),
        "auto_cancelled": sum(1 for r in results if r["action"] == "auto_cancelled"),
        "skipped": sum(1 for r in results if r["action"] == "skipped"),
        "errors": sum(1 for r in results if r["action"] == "error"),
        "receiptsGenerated": receipts_generated,
        "receiptErrors": receipt_errors,
    }
    log.info("reconcile: complete %s", summary)
    return {"success": True, "summary": summary, "results": results}
