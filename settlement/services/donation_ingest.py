# settlement/services/donation_ingest.py
"""
Donation Ingest
===============

Turns a bundle of Stripe objects describing ONE logical payment (any mix of
invoice, checkout session, charge and payment intent) into:

  - one Donation   (reused by mode + subscription / payment intent)
  - one Receipt    (reused by transaction key + mode)
  - one audit row  (donation_stripe_transactions, always new)

Each object is parsed into a ``StripeFragment``; fragments are merged in
PRECEDENCE order, so an invoice beats a checkout session, which beats a
charge, which beats a payment intent. Metadata merges the same way.

Re-submitting a bundle whose transaction key already has an audit row is a
no-op (``action == "already_exists"``).
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from settlement.errors import DonationTypeMismatch, PreconditionError
from settlement.extensions import db, secondary_write
from settlement.models import Donation, DonationStripeTransaction, Profile, Receipt
from settlement.models.mixins import utcnow
from settlement.services.fees import cents_to_money, to_money
from settlement.services.receipts import get_or_create_receipt
from settlement.services.trace import StepTrace

log = logging.getLogger(__name__)

PRECEDENCE: Tuple[str, ...] = ("invoice", "checkout_session", "charge", "payment_intent")
DONATION_TYPES = {"donation", "general"}
SUBSCRIPTION_BILLING_REASONS = {"subscription_cycle", "subscription_create"}


# ─────────────────────────────────────────────────────────────
# Typed partial records
# ─────────────────────────────────────────────────────────────
@dataclass(frozen=True)
class StripeFragment:
    """What one Stripe object says about the payment; None means silent."""

    source: str
    raw: Dict[str, Any]
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    invoice_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    checkout_session_id: Optional[str] = None
    created: Optional[datetime] = None
    subscription_context: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExtractedPayment:
    amount: Optional[Decimal] = None
    currency: str = "usd"
    email: Optional[str] = None
    name: Optional[str] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    invoice_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    checkout_session_id: Optional[str] = None
    created: Optional[datetime] = None
    frequency: str = "one-time"
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def transaction_key(self) -> Optional[str]:
        return self.invoice_id or self.payment_intent_id or self.charge_id

    def as_json(self) -> Dict[str, Any]:
        out = asdict(self)
        out["amount"] = float(self.amount) if self.amount is not None else None
        out["created"] = self.created.isoformat() if self.created else None
        out["transaction_key"] = self.transaction_key
        return out


# ─────────────────────────────────────────────────────────────
# Parsers
# ─────────────────────────────────────────────────────────────
def _ref(v: Any) -> Optional[str]:
    """Stripe fields are either an id string or an expanded object."""
    if isinstance(v, dict):
        v = v.get("id")
    s = str(v).strip() if v else ""
    return s or None


def _ts(v: Any) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(int(v), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _meta(*dicts: Any) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for d in dicts:
        if isinstance(d, dict):
            out.update(d)
    return out


def _lower(v: Any) -> Optional[str]:
    s = str(v).strip().lower() if v else ""
    return s or None


def _invoice_metadata(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Line items, then subscription details, then the invoice's own metadata (last wins)."""
    lines = ((raw.get("lines") or {}).get("data")) or []
    parent = ((raw.get("parent") or {}).get("subscription_details")) or {}
    sub_details = raw.get("subscription_details") or {}
    # first line item wins over later ones
    line_meta = [line.get("metadata") for line in reversed(lines) if isinstance(line, dict)]
    return _meta(*line_meta, parent.get("metadata"), sub_details.get("metadata"), raw.get("metadata"))


def _parse_invoice(raw: Dict[str, Any]) -> StripeFragment:
    parent = ((raw.get("parent") or {}).get("subscription_details")) or {}
    return StripeFragment(
        source="invoice",
        raw=raw,
        amount=cents_to_money(raw.get("amount_paid")),
        currency=_lower(raw.get("currency")),
        email=raw.get("customer_email"),
        name=raw.get("customer_name"),
        customer_id=_ref(raw.get("customer")),
        subscription_id=_ref(raw.get("subscription")) or _ref(parent.get("subscription")),
        invoice_id=_ref(raw.get("id")),
        payment_intent_id=_ref(raw.get("payment_intent")),
        charge_id=_ref(raw.get("charge")),
        created=_ts(raw.get("created")),
        subscription_context=raw.get("billing_reason") in SUBSCRIPTION_BILLING_REASONS,
        metadata=_invoice_metadata(raw),
    )


def _parse_checkout_session(raw: Dict[str, Any]) -> StripeFragment:
    details = raw.get("customer_details") or {}
    return StripeFragment(
        source="checkout_session",
        raw=raw,
        amount=cents_to_money(raw.get("amount_total")),
        currency=_lower(raw.get("currency")),
        email=details.get("email") or raw.get("customer_email"),
        name=details.get("name"),
        customer_id=_ref(raw.get("customer")),
        subscription_id=_ref(raw.get("subscription")),
        invoice_id=_ref(raw.get("invoice")),
        payment_intent_id=_ref(raw.get("payment_intent")),
        checkout_session_id=_ref(raw.get("id")),
        created=_ts(raw.get("created")),
        subscription_context=raw.get("mode") == "subscription",
        metadata=_meta(raw.get("metadata")),
    )


def _parse_charge(raw: Dict[str, Any]) -> StripeFragment:
    billing = raw.get("billing_details") or {}
    return StripeFragment(
        source="charge",
        raw=raw,
        amount=cents_to_money(raw.get("amount")),
        currency=_lower(raw.get("currency")),
        email=billing.get("email") or raw.get("receipt_email"),
        name=billing.get("name"),
        customer_id=_ref(raw.get("customer")),
        invoice_id=_ref(raw.get("invoice")),
        payment_intent_id=_ref(raw.get("payment_intent")),
        charge_id=_ref(raw.get("id")),
        created=_ts(raw.get("created")),
        metadata=_meta(raw.get("metadata")),
    )


def _parse_payment_intent(raw: Dict[str, Any]) -> StripeFragment:
    return StripeFragment(
        source="payment_intent",
        raw=raw,
        amount=cents_to_money(raw.get("amount")),
        currency=_lower(raw.get("currency")),
        email=raw.get("receipt_email"),
        customer_id=_ref(raw.get("customer")),
        invoice_id=_ref(raw.get("invoice")),
        payment_intent_id=_ref(raw.get("id")),
        charge_id=_ref(raw.get("latest_charge")),
        created=_ts(raw.get("created")),
        metadata=_meta(raw.get("metadata")),
    )


PARSERS = {
    "invoice": _parse_invoice,
    "checkout_session": _parse_checkout_session,
    "charge": _parse_charge,
    "payment_intent": _parse_payment_intent,
}


def parse_items(items: Any) -> List[StripeFragment]:
    if not isinstance(items, list) or not items:
        raise PreconditionError("stripeItems must be a non-empty list")
    frags: List[StripeFragment] = []
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            raise PreconditionError(f"stripeItems[{i}] must be an object")
        kind = str(item.get("type") or "").strip()
        raw = item.get("raw")
        parser = PARSERS.get(kind)
        if parser is None:
            raise PreconditionError(f"Unsupported Stripe item type: {kind or '-'}")
        if not isinstance(raw, dict):
            raise PreconditionError(f"stripeItems[{i}].raw must be an object")
        frags.append(parser(raw))
    return frags


# ─────────────────────────────────────────────────────────────
# Merge
# ─────────────────────────────────────────────────────────────
_SCALARS = (
    "amount",
    "currency",
    "email",
    "name",
    "customer_id",
    "subscription_id",
    "invoice_id",
    "payment_intent_id",
    "charge_id",
    "checkout_session_id",
    "created",
)


def _ranked(fragments: Iterable[StripeFragment]) -> List[StripeFragment]:
    return sorted(fragments, key=lambda f: PRECEDENCE.index(f.source))


def _frequency(metadata: Dict[str, Any], subscription_signal: bool) -> str:
    explicit = _lower(metadata.get("frequency"))
    if explicit in ("monthly", "recurring"):
        return "monthly"
    if explicit in ("one-time", "one_time", "onetime", "once"):
        return "one-time"
    return "monthly" if subscription_signal else "one-time"


def merge_fragments(fragments: Iterable[StripeFragment]) -> ExtractedPayment:
    """Highest-precedence non-empty value wins, field by field."""
    ranked = _ranked(fragments)
    values: Dict[str, Any] = {}
    for name in _SCALARS:
        for frag in ranked:
            v = getattr(frag, name)
            if v is not None and v != "":
                values[name] = v
                break

    metadata: Dict[str, Any] = {}
    for frag in reversed(ranked):
        metadata.update(frag.metadata)

    signal = any(f.subscription_context for f in ranked) or bool(values.get("subscription_id"))
    if values.get("email"):
        values["email"] = str(values["email"]).strip()
    return ExtractedPayment(
        **values,
        frequency=_frequency(metadata, signal),
        metadata=metadata,
    )


def guard_donation_type(metadata: Dict[str, Any]) -> None:
    kind = _lower(metadata.get("type") or metadata.get("donation_type"))
    if kind and kind not in DONATION_TYPES:
        raise DonationTypeMismatch(
            f"Stripe payment is a '{kind}', not a donation",
            details={"type": kind},
        )


# ─────────────────────────────────────────────────────────────
# Persistence
# ─────────────────────────────────────────────────────────────
def find_audit_row(mode: str, data: ExtractedPayment) -> Optional[DonationStripeTransaction]:
    """Invoice id, else a payment intent stored without an invoice, else a bare charge."""
    T = DonationStripeTransaction
    base = db.session.query(T).filter(T.stripe_mode == mode)
    lookups = []
    if data.invoice_id:
        lookups.append(base.filter(T.stripe_invoice_id == data.invoice_id))
    if data.payment_intent_id:
        lookups.append(
            base.filter(T.stripe_invoice_id.is_(None), T.stripe_payment_intent_id == data.payment_intent_id)
        )
    if data.charge_id:
        lookups.append(
            base.filter(
                T.stripe_invoice_id.is_(None),
                T.stripe_payment_intent_id.is_(None),
                T.stripe_charge_id == data.charge_id,
            )
        )
    for q in lookups:
        found = q.first()
        if found is not None:
            return found
    return None


def find_donation(mode: str, data: ExtractedPayment) -> Optional[Donation]:
    if data.subscription_id:
        found = (
            db.session.query(Donation)
            .filter(Donation.stripe_mode == mode, Donation.stripe_subscription_id == data.subscription_id)
            .first()
        )
        if found is not None:
            return found
    if data.payment_intent_id:
        return (
            db.session.query(Donation)
            .filter(Donation.stripe_mode == mode, Donation.stripe_payment_intent_id == data.payment_intent_id)
            .first()
        )
    return None


def _new_donation(mode: str, data: ExtractedPayment, profile: Optional[Profile]) -> Donation:
    intended = to_money(data.metadata.get("amount")) or data.amount
    started = data.created or utcnow()
    donation = Donation(
        donor_id=profile.id if profile else None,
        donor_email=None if profile else data.email,
        amount=intended,
        amount_charged=data.amount,
        currency=data.currency or "usd",
        frequency=data.frequency,
        status="active" if data.frequency == "monthly" else "completed",
        stripe_mode=mode,
        stripe_customer_id=data.customer_id,
        stripe_subscription_id=data.subscription_id,
        stripe_payment_intent_id=None if data.subscription_id else data.payment_intent_id,
        stripe_checkout_session_id=data.checkout_session_id,
        started_at=started,
    )
    db.session.add(donation)
    db.session.flush()
    return donation


def _raw_of(fragments: List[StripeFragment], source: str) -> Optional[Dict[str, Any]]:
    for f in fragments:
        if f.source == source:
            return f.raw
    return None


def ingest_donation(
    *,
    items: Any,
    email: Optional[str],
    mode: Optional[str],
    trace: Optional[StepTrace] = None,
) -> Dict[str, Any]:
    """Create (or find) the donation/receipt/audit trio for one Stripe payment."""
    trace = trace or StepTrace("donation-ingest", log)
    mode = (mode or "test").strip().lower()
    if mode not in ("test", "live"):
        raise PreconditionError(f"Invalid stripeMode: {mode}")

    fragments = parse_items(items)
    trace.step("parsed", {"sources": [f.source for f in fragments], "mode": mode})

    data = merge_fragments(fragments)
    if email:
        data.email = email.strip()
    trace.step(
        "merged",
        {
            "key": data.transaction_key,
            "amount": float(data.amount) if data.amount is not None else None,
            "frequency": data.frequency,
        },
    )

    guard_donation_type(data.metadata)
    if data.amount is None:
        raise PreconditionError("Could not extract amount from Stripe data")
    if not data.email:
        raise PreconditionError("Donor email is required")
    key = data.transaction_key
    if not key:
        raise PreconditionError("No invoice, payment intent or charge id in Stripe data")

    existing_audit = find_audit_row(mode, data)
    if existing_audit is not None:
        trace.step("already_exists", {"audit_id": existing_audit.id})
        donation = db.session.get(Donation, existing_audit.donation_id) if existing_audit.donation_id else None
        receipt = db.session.get(Receipt, existing_audit.receipt_id) if existing_audit.receipt_id else None
        return {
            "success": True,
            "action": "already_exists",
            "donation": donation.as_dict() if donation else None,
            "receipt": receipt.as_dict() if receipt else None,
            "combinedTransaction": existing_audit.as_dict(),
            "existingDonation": donation is not None,
            "extractedData": data.as_json(),
        }

    profile = Profile.find_by_email(data.email)
    trace.step("donor", {"profile_id": profile.id if profile else None})

    donation = find_donation(mode, data)
    created_donation = donation is None
    if donation is None:
        donation = _new_donation(mode, data, profile)
        trace.step("donation_created", {"donation_id": donation.id})
    else:
        trace.step("donation_reused", {"donation_id": donation.id})

    tx_date = data.created or utcnow()
    receipt_result = secondary_write(
        "receipt",
        lambda: get_or_create_receipt(
            transaction_id=key,
            mode=mode,
            donation=donation,
            email=data.email,
            name=data.name,
            amount=data.amount,
            frequency=data.frequency,
            transaction_date=tx_date,
            prefix="RCP-API",
        ),
    )
    receipt = receipt_result[0] if receipt_result else None
    trace.step("receipt", {"receipt_id": receipt.id if receipt else None})

    def _audit() -> DonationStripeTransaction:
        row = DonationStripeTransaction(
            stripe_mode=mode,
            email=data.email,
            donor_id=profile.id if profile else None,
            stripe_customer_id=data.customer_id,
            stripe_subscription_id=data.subscription_id,
            stripe_invoice_id=data.invoice_id,
            stripe_payment_intent_id=data.payment_intent_id,
            stripe_charge_id=data.charge_id,
            amount=data.amount,
            currency=data.currency or "usd",
            status="succeeded",
            frequency=data.frequency,
            transaction_date=tx_date,
            raw_invoice=_raw_of(fragments, "invoice"),
            raw_payment_intent=_raw_of(fragments, "payment_intent"),
            raw_charge=_raw_of(fragments, "charge"),
            raw_checkout_session=_raw_of(fragments, "checkout_session"),
            merged_metadata=data.metadata,
            donation_id=donation.id,
            receipt_id=receipt.id if receipt else None,
        )
        db.session.add(row)
        db.session.flush()
        return row

    audit = secondary_write("combined transaction", _audit)
    trace.step("audit", {"audit_id": audit.id if audit else None})

    db.session.commit()

    action = "all_created" if created_donation else "receipt_and_transaction_created"
    trace.step("done", {"action": action})
    return {
        "success": True,
        "action": action,
        "donation": donation.as_dict(),
        "receipt": receipt.as_dict() if receipt else None,
        "combinedTransaction": audit.as_dict() if audit else None,
        "existingDonation": not created_donation,
        "extractedData": data.as_json(),
    }


__all__ = [
    "PRECEDENCE",
    "ExtractedPayment",
    "StripeFragment",
    "guard_donation_type",
    "ingest_donation",
    "merge_fragments",
    "parse_items",
]
