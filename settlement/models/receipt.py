from __future__ import annotations

"""
Tax receipts: one per (transaction_id, stripe_mode).
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from settlement.extensions import db

from .mixins import TimestampMixin


class Receipt(db.Model, TimestampMixin):
    __tablename__ = "receipts"
    __table_args__ = (
        UniqueConstraint("transaction_id", "stripe_mode", name="uq_receipts_transaction_mode"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    transaction_id: Mapped[str] = mapped_column(
        db.String(255),
        nullable=False,
        index=True,
        doc="Invoice id, else payment intent / charge id, else donation_<id>",
    )
    stripe_mode: Mapped[str] = mapped_column(db.String(8), nullable=False, default="test")

    donation_id: Mapped[Optional[int]] = mapped_column(
        db.ForeignKey("donations.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    user_id: Mapped[Optional[int]] = mapped_column(
        db.ForeignKey("profiles.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    sponsor_email: Mapped[Optional[str]] = mapped_column(db.String(255), nullable=True)
    sponsor_name: Mapped[Optional[str]] = mapped_column(db.String(160), nullable=True)
    designation: Mapped[str] = mapped_column(db.String(160), nullable=False, default="General Support")

    amount: Mapped[Decimal] = mapped_column(db.Numeric(12, 2), nullable=False)
    frequency: Mapped[str] = mapped_column(db.String(16), nullable=False, default="one-time")
    transaction_date: Mapped[datetime] = mapped_column(db.DateTime, nullable=False)

    organization_name: Mapped[str] = mapped_column(db.String(160), nullable=False)
    organization_ein: Mapped[str] = mapped_column(db.String(32), nullable=False)
    receipt_number: Mapped[str] = mapped_column(db.String(64), nullable=False, unique=True)
    tax_year: Mapped[int] = mapped_column(db.Integer, nullable=False, index=True)
    status: Mapped[str] = mapped_column(db.String(16), nullable=False, default="generated")

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "stripe_mode": self.stripe_mode,
            "donation_id": self.donation_id,
            "user_id": self.user_id,
            "sponsor_email": self.sponsor_email,
            "sponsor_name": self.sponsor_name,
            "designation": self.designation,
            "amount": float(self.amount) if self.amount is not None else None,
            "frequency": self.frequency,
            "transaction_date": self.transaction_date.isoformat() if self.transaction_date else None,
            "organization_name": self.organization_name,
            "organization_ein": self.organization_ein,
            "receipt_number": self.receipt_number,
            "tax_year": self.tax_year,
            "status": self.status,
        }


class ReceiptSettings(db.Model, TimestampMixin):
    """Organization identity printed on receipts (single row)."""

    __tablename__ = "receipt_settings"

    id: Mapped[int] = mapped_column(primary_key=True)
    organization_name: Mapped[str] = mapped_column(db.String(160), nullable=False)
    organization_ein: Mapped[str] = mapped_column(db.String(32), nullable=False)
