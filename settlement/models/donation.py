from __future__ import annotations

# -----------------------------------------------------------------------------
# Donation: canonical ledger row for one recurring or one-time gift.
# Donor is either a registered profile (donor_id) or a bare email, never both.
# -----------------------------------------------------------------------------
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import CheckConstraint, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from settlement.extensions import db

from .mixins import TimestampMixin

FREQUENCIES = ("one-time", "monthly")
STATUSES = ("pending", "active", "completed", "cancelled")


class Donation(db.Model, TimestampMixin):
    __tablename__ = "donations"
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_donations_amount_nonneg"),
        CheckConstraint(
            "(donor_id IS NULL) <> (donor_email IS NULL)",
            name="ck_donations_donor_identifier",
        ),
        UniqueConstraint("stripe_mode", "stripe_subscription_id", name="uq_donations_mode_subscription"),
        UniqueConstraint("stripe_mode", "stripe_payment_intent_id", name="uq_donations_mode_payment_intent"),
        Index("ix_donations_status_mode", "status", "stripe_mode"),
    )

    # ---- Identity ----
    id: Mapped[int] = mapped_column(primary_key=True)
    donor_id: Mapped[Optional[int]] = mapped_column(
        db.ForeignKey("profiles.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    donor_email: Mapped[Optional[str]] = mapped_column(db.String(255), nullable=True, index=True)

    # ---- Financials (dollars, 2dp) ----
    amount: Mapped[Decimal] = mapped_column(
        db.Numeric(12, 2),
        nullable=False,
        doc="Amount the donor intended to give",
    )
    amount_charged: Mapped[Optional[Decimal]] = mapped_column(
        db.Numeric(12, 2),
        nullable=True,
        doc="Amount Stripe actually moved (includes covered fees)",
    )
    currency: Mapped[str] = mapped_column(db.String(3), nullable=False, default="usd")
    frequency: Mapped[str] = mapped_column(db.String(16), nullable=False, default="one-time")
    status: Mapped[str] = mapped_column(db.String(16), nullable=False, default="pending", index=True)

    # ---- Stripe references ----
    stripe_mode: Mapped[str] = mapped_column(db.String(8), nullable=False, default="test", index=True)
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(db.String(120), nullable=True, index=True)
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(db.String(120), nullable=True, index=True)
    stripe_payment_intent_id: Mapped[Optional[str]] = mapped_column(db.String(120), nullable=True, index=True)
    stripe_checkout_session_id: Mapped[Optional[str]] = mapped_column(db.String(255), nullable=True)

    started_at: Mapped[Optional[datetime]] = mapped_column(db.DateTime, nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(db.DateTime, nullable=True)

    @property
    def effective_amount(self) -> Decimal:
        """What the ledger believes was charged."""
        if self.amount_charged is not None:
            return Decimal(self.amount_charged)
        return Decimal(self.amount or 0)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "donor_id": self.donor_id,
            "donor_email": self.donor_email,
            "amount": float(self.amount) if self.amount is not None else None,
            "amount_charged": float(self.amount_charged) if self.amount_charged is not None else None,
            "currency": self.currency,
            "frequency": self.frequency,
            "status": self.status,
            "stripe_mode": self.stripe_mode,
            "stripe_customer_id": self.stripe_customer_id,
            "stripe_subscription_id": self.stripe_subscription_id,
            "stripe_payment_intent_id": self.stripe_payment_intent_id,
            "stripe_checkout_session_id": self.stripe_checkout_session_id,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:  # pragma: no cover
        return f"<Donation {self.id} ${self.effective_amount:,.2f} {self.frequency} {self.status}>"
