from datetime import datetime
from decimal import Decimal

from conftest import make_donation
from settlement.extensions import db
from settlement.models import ReceiptSettings
from settlement.services.receipts import get_or_create_receipt, organization_identity


def _receipt(donation, **kw):
    fields = dict(
        transaction_id="pi_r1",
        mode="test",
        donation=donation,
        email=None,
        name=None,
        amount=Decimal("50.00"),
        frequency="one-time",
        transaction_date=datetime(2024, 12, 31, 23, 0),
    )
    fields.update(kw)
    return get_or_create_receipt(**fields)


def test_identity_falls_back_to_config(app):
    assert organization_identity() == (app.config["RECEIPT_ORG_NAME"], app.config["RECEIPT_ORG_EIN"])


def test_identity_prefers_settings_row(app):
    db.session.add(ReceiptSettings(organization_name="Ride For Good", organization_ein="12-3456789"))
    db.session.commit()
    assert organization_identity() == ("Ride For Good", "12-3456789")


def test_receipt_is_reused_per_transaction_and_mode(app):
    d = make_donation()
    other = make_donation(stripe_mode="live")

    first, created = _receipt(d)
    again, created_again = _receipt(d, amount=Decimal("99.00"))
    live, created_live = _receipt(other, mode="live")

    assert created and not created_again and created_live
    assert again.id == first.id
    assert again.amount == Decimal("50.00")
    assert live.id != first.id
    assert first.tax_year == 2024
    assert first.sponsor_email == "donor@example.org"
    assert first.receipt_number.startswith("RCP-API-")
    assert first.receipt_number.endswith(f"-{d.id}")
