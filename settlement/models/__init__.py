from __future__ import annotations

from settlement.extensions import db
from settlement.models.bike_ride import BikeRideEvent, BikeRidePledge
from settlement.models.donation import Donation
from settlement.models.donation_transaction import DonationStripeTransaction
from settlement.models.profile import Profile, UserRole
from settlement.models.receipt import Receipt, ReceiptSettings

__all__ = [
    "db",
    "BikeRideEvent",
    "BikeRidePledge",
    "Donation",
    "DonationStripeTransaction",
    "Profile",
    "Receipt",
    "ReceiptSettings",
    "UserRole",
]
