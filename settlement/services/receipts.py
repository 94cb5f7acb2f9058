from __future__ import annotations

"""
Receipt reuse-or-create, shared by ingest and pending reconciliation.
"""
import time
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

from flask import current_app

from settlement.extensions import db
from settlement.models import Donation, Receipt, ReceiptSettings


def organization_identity() -> Tuple[str, str]:
    """(name, EIN) from the settings row, else config fallbacks."""
    row = db.session.query(ReceiptSettings).order_by(ReceiptSettings.id.asc()).first()
    if row is not None and row.organization_name:
        return row.organization_name, row.organization_ein
    cfg = current_app.config
    return (
        cfg.get("RECEIPT_ORG_NAME") or "Best Day Ministries",
        cfg.get("RECEIPT_ORG_EIN") or "00-0000000",
    )


def receipt_number(prefix: str, donation_id: int) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{donation_id}"


def find_receipt(transaction_id: str, mode: str) -> Optional[Receipt]:
    return (
        db.session.query(Receipt)
        .filter(Receipt.transaction_id == transaction_id, Receipt.stripe_mode == mode)
        .first()
    )


def get_or_create_receipt(
    *,
    transaction_id: str,
    mode: str,
    donation: Donation,
    email: Optional[str],
    name: Optional[str],
    amount: Decimal,
    frequency: str,
    transaction_date: datetime,
    prefix: str = "RCP-API",
) -> Tuple[Receipt, bool]:
    """Returns (receipt, created). Flushes but never commits."""
    existing = find_receipt(transaction_id, mode)
    if existing is not None:
        return existing, False

    org_name, org_ein = organization_identity()
    receipt = Receipt(
        transaction_id=transaction_id,
        stripe_mode=mode,
        donation_id=donation.id,
        user_id=donation.donor_id,
        sponsor_email=email or donation.donor_email,
        sponsor_name=name or email or donation.donor_email,
        designation="General Support",
        amount=amount,
        frequency=frequency,
        transaction_date=transaction_date,
        organization_name=org_name,
        organization_ein=org_ein,
        receipt_number=receipt_number(prefix, donation.id),
        tax_year=transaction_date.year,
        status="generated",
    )
    db.session.add(receipt)
    db.session.flush()
    return receipt, True
