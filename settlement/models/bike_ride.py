from __future__ import annotations

"""
Bike-ride pledge drive: events and the per-mile / flat pledges secured by
saved (not yet charged) Stripe payment methods.
"""
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import CheckConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from settlement.extensions import db

from .mixins import TimestampMixin

EVENT_STATUSES = ("scheduled", "completed", "charges_processed")
CHARGE_STATUSES = ("pending", "charged", "failed")


class BikeRideEvent(db.Model, TimestampMixin):
    __tablename__ = "bike_ride_events"
    __table_args__ = (
        CheckConstraint("mile_goal > 0", name="ck_bike_ride_events_goal_pos"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    title: Mapped[str] = mapped_column(db.String(200), nullable=False)
    mile_goal: Mapped[Decimal] = mapped_column(db.Numeric(10, 2), nullable=False)
    actual_miles: Mapped[Optional[Decimal]] = mapped_column(db.Numeric(10, 2), nullable=True)
    status: Mapped[str] = mapped_column(db.String(32), nullable=False, default="scheduled", index=True)

    pledges: Mapped[list["BikeRidePledge"]] = relationship(
        "BikeRidePledge", back_populates="event", lazy="select"
    )

    @property
    def is_settled(self) -> bool:
        return self.status == "charges_processed"


class BikeRidePledge(db.Model, TimestampMixin):
    __tablename__ = "bike_ride_pledges"
    __table_args__ = (
        CheckConstraint("cents_per_mile >= 0", name="ck_bike_ride_pledges_rate_nonneg"),
        Index("ix_bike_ride_pledges_event_status", "event_id", "charge_status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    event_id: Mapped[int] = mapped_column(
        db.ForeignKey("bike_ride_events.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event: Mapped["BikeRideEvent"] = relationship("BikeRideEvent", back_populates="pledges")

    pledger_name: Mapped[str] = mapped_column(db.String(160), nullable=False)
    pledger_email: Mapped[str] = mapped_column(db.String(255), nullable=False)
    pledge_type: Mapped[str] = mapped_column(db.String(16), nullable=False, default="per_mile")
    cents_per_mile: Mapped[Decimal] = mapped_column(db.Numeric(10, 2), nullable=False, default=0)
    flat_amount: Mapped[Optional[Decimal]] = mapped_column(db.Numeric(12, 2), nullable=True)

    stripe_mode: Mapped[str] = mapped_column(db.String(8), nullable=False, default="test")
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(db.String(120), nullable=True)
    stripe_setup_intent_id: Mapped[Optional[str]] = mapped_column(db.String(120), nullable=True)
    stripe_payment_method_id: Mapped[Optional[str]] = mapped_column(db.String(120), nullable=True)
    stripe_payment_intent_id: Mapped[Optional[str]] = mapped_column(db.String(120), nullable=True)

    charge_status: Mapped[str] = mapped_column(db.String(16), nullable=False, default="pending")
    charge_error: Mapped[Optional[str]] = mapped_column(db.String(500), nullable=True)
    calculated_total: Mapped[Optional[Decimal]] = mapped_column(db.Numeric(12, 2), nullable=True)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "pledger_name": self.pledger_name,
            "pledge_type": self.pledge_type,
            "cents_per_mile": float(self.cents_per_mile or 0),
            "stripe_mode": self.stripe_mode,
            "charge_status": self.charge_status,
            "charge_error": self.charge_error,
            "calculated_total": float(self.calculated_total) if self.calculated_total is not None else None,
            "stripe_payment_intent_id": self.stripe_payment_intent_id,
        }
