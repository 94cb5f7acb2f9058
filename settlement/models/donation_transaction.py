from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import Index
from sqlalchemy.orm import Mapped, mapped_column

from settlement.extensions import db

from .mixins import JSONType, TimestampMixin


class DonationStripeTransaction(db.Model, TimestampMixin):
    """
    Append-only snapshot of every Stripe object that produced a
    donation/receipt pair, kept for forensic replay.
    """

    __tablename__ = "donation_stripe_transactions"
    __table_args__ = (
        Index("ix_dst_mode_invoice", "stripe_mode", "stripe_invoice_id", unique=True),
        Index("ix_dst_mode_payment_intent", "stripe_mode", "stripe_payment_intent_id"),
        Index("ix_dst_mode_charge", "stripe_mode", "stripe_charge_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    stripe_mode: Mapped[str] = mapped_column(db.String(8), nullable=False)
    email: Mapped[str] = mapped_column(db.String(255), nullable=False, index=True)
    donor_id: Mapped[Optional[int]] = mapped_column(
        db.ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True
    )

    stripe_customer_id: Mapped[Optional[str]] = mapped_column(db.String(120), nullable=True)
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(db.String(120), nullable=True)
    stripe_invoice_id: Mapped[Optional[str]] = mapped_column(db.String(120), nullable=True)
    stripe_payment_intent_id: Mapped[Optional[str]] = mapped_column(db.String(120), nullable=True)
    stripe_charge_id: Mapped[Optional[str]] = mapped_column(db.String(120), nullable=True)

    amount: Mapped[Decimal] = mapped_column(db.Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(db.String(3), nullable=False, default="usd")
    status: Mapped[str] = mapped_column(db.String(16), nullable=False)
    frequency: Mapped[str] = mapped_column(db.String(16), nullable=False)
    transaction_date: Mapped[datetime] = mapped_column(db.DateTime, nullable=False)

    raw_invoice: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    raw_payment_intent: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    raw_charge: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    raw_checkout_session: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    merged_metadata: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    donation_id: Mapped[Optional[int]] = mapped_column(
        db.ForeignKey("donations.id", ondelete="SET NULL"), nullable=True, index=True
    )
    receipt_id: Mapped[Optional[int]] = mapped_column(
        db.ForeignKey("receipts.id", ondelete="SET NULL"), nullable=True
    )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "stripe_mode": self.stripe_mode,
            "email": self.email,
            "donor_id": self.donor_id,
            "stripe_customer_id": self.stripe_customer_id,
            "stripe_subscription_id": self.stripe_subscription_id,
            "stripe_invoice_id": self.stripe_invoice_id,
            "stripe_payment_intent_id": self.stripe_payment_intent_id,
            "stripe_charge_id": self.stripe_charge_id,
            "amount": float(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "status": self.status,
            "frequency": self.frequency,
            "transaction_date": self.transaction_date.isoformat() if self.transaction_date else None,
            "merged_metadata": self.merged_metadata or {},
            "donation_id": self.donation_id,
            "receipt_id": self.receipt_id,
        }
