from datetime import datetime
from decimal import Decimal

import stripe

from conftest import FakeRegistry, make_donation
from settlement.extensions import db
from settlement.models import Donation, Receipt
from settlement.services.amount_resolver import recalculate_amounts, resolve_charged_amount

STARTED = datetime(2025, 3, 1, 12, 0, 0)
STARTED_TS = 1740830400  # 2025-03-01T12:00:00Z


def _receipt_for(donation, amount="50.00"):
    r = Receipt(
        transaction_id=donation.stripe_payment_intent_id or f"donation_{donation.id}",
        stripe_mode=donation.stripe_mode,
        donation_id=donation.id,
        sponsor_email=donation.donor_email,
        amount=Decimal(amount),
        frequency=donation.frequency,
        transaction_date=STARTED,
        organization_name="Org",
        organization_ein="00-0000000",
        receipt_number=f"RCP-T-{donation.id}",
        tax_year=2025,
    )
    db.session.add(r)
    db.session.commit()
    return r


def _run(gateway):
    return recalculate_amounts(FakeRegistry(gateway))


def test_metadata_with_cover_fee_wins_over_charges(app, gateway):
    d = make_donation(amount=Decimal("100.00"), stripe_payment_intent_id="pi_1", started_at=STARTED)
    gateway.payment_intents["pi_1"] = {
        "id": "pi_1",
        "amount": 9999,
        "metadata": {"amount": "100", "coverStripeFee": "true"},
    }
    gateway.intent_charges["pi_1"] = [{"status": "succeeded", "amount": 5000}]

    res = resolve_charged_amount(gateway, d)

    assert res.amount == Decimal("103.30")
    assert res.source == "payment_intent_metadata"
    assert not gateway.called("list_payment_intent_charges")


def test_first_succeeded_charge_when_metadata_missing(app, gateway):
    d = make_donation(stripe_payment_intent_id="pi_2", started_at=STARTED)
    gateway.payment_intents["pi_2"] = {"id": "pi_2", "amount": 9999, "metadata": {}}
    gateway.intent_charges["pi_2"] = [
        {"status": "failed", "amount": 1111},
        {"status": "succeeded", "amount": 5195},
    ]

    res = resolve_charged_amount(gateway, d)

    assert res.amount == Decimal("51.95")
    assert res.source == "payment_intent_charge"


def test_customer_charge_window_match(app, gateway):
    d = make_donation(
        amount=Decimal("50.00"),
        stripe_payment_intent_id="pi_3",
        stripe_customer_id="cus_3",
        started_at=STARTED,
    )
    gateway.payment_intents["pi_3"] = {"id": "pi_3", "amount": 9999, "metadata": {}}
    gateway.customer_charges["cus_3"] = [
        {"status": "pending", "amount": 5180, "created": STARTED_TS},
        {"status": "succeeded", "amount": 8000, "created": STARTED_TS + 60},
        {"status": "succeeded", "amount": 5180, "created": STARTED_TS + 120},
    ]

    res = resolve_charged_amount(gateway, d)

    assert res.amount == Decimal("51.80")
    assert res.source == "customer_charge"
    call = [c for c in gateway.calls if c[0] == "list_customer_charges"][0]
    assert call[2:] == (STARTED_TS - 3600, STARTED_TS + 3600)


def test_payment_intent_amount_is_last_resort(app, gateway):
    d = make_donation(stripe_payment_intent_id="pi_4", started_at=STARTED)
    gateway.payment_intents["pi_4"] = {"id": "pi_4", "amount": 4200, "metadata": {}}

    res = resolve_charged_amount(gateway, d)

    assert res.amount == Decimal("42.00")
    assert res.source == "payment_intent_amount"


def test_subscription_price_is_definitive(app, gateway):
    d = make_donation(frequency="monthly", status="active", stripe_subscription_id="sub_1")
    gateway.subscriptions["sub_1"] = {
        "id": "sub_1",
        "items": {"data": [{"price": {"unit_amount": 2095}}]},
        "metadata": {"amount": "20"},
    }

    res = resolve_charged_amount(gateway, d)

    assert res.amount == Decimal("20.95")
    assert res.source == "subscription_price"


def test_missing_cover_flag_is_inferred_from_stored_amount(app, gateway):
    d = make_donation(
        amount=Decimal("100.00"),
        amount_charged=Decimal("103.30"),
        stripe_payment_intent_id="pi_5",
    )
    gateway.payment_intents["pi_5"] = {"id": "pi_5", "amount": 10330, "metadata": {"amount": "100"}}

    assert resolve_charged_amount(gateway, d).amount == Decimal("103.30")


def test_one_cent_drift_is_left_alone(app, gateway):
    d = make_donation(stripe_payment_intent_id="pi_t1")
    r = _receipt_for(d)
    gateway.payment_intents["pi_t1"] = {
        "id": "pi_t1",
        "metadata": {"amount": "50.01", "coverStripeFee": "false"},
    }

    out = _run(gateway)

    assert out["updatedCount"] == 0
    assert db.session.get(Donation, d.id).amount_charged is None
    assert db.session.get(Receipt, r.id).amount == Decimal("50.00")


def test_two_cent_drift_updates_donation_and_receipts(app, gateway):
    d = make_donation(stripe_payment_intent_id="pi_t2")
    r = _receipt_for(d)
    gateway.payment_intents["pi_t2"] = {
        "id": "pi_t2",
        "metadata": {"amount": "50.02", "coverStripeFee": "false"},
    }

    out = _run(gateway)

    assert out["updatedCount"] == 1
    assert out["updates"][0]["oldAmount"] == 50.0
    assert out["updates"][0]["newAmount"] == 50.02
    assert db.session.get(Donation, d.id).amount_charged == Decimal("50.02")
    assert db.session.get(Receipt, r.id).amount == Decimal("50.02")


def test_sweep_isolates_gateway_errors_and_skips_unknown_refs(app, gateway):
    broken = make_donation(stripe_payment_intent_id="pi_broken")
    odd = make_donation(stripe_payment_intent_id="ch_legacy")
    good = make_donation(stripe_payment_intent_id="pi_good")
    gateway.broken["pi_broken"] = stripe.APIConnectionError("network down")
    gateway.payment_intents["pi_good"] = {"id": "pi_good", "amount": 6000, "metadata": {}}

    out = _run(gateway)

    assert out["success"] is True
    assert [e["id"] for e in out["errors"]] == [broken.id]
    assert "network down" in out["errors"][0]["error"]
    assert [s["id"] for s in out["skipped"]] == [odd.id]
    assert [u["id"] for u in out["updates"]] == [good.id]


def test_missing_mode_key_is_an_item_error(app, gateway):
    d = make_donation(stripe_mode="live", stripe_payment_intent_id="pi_live")

    out = _run(gateway)

    assert out["errors"] == [{"id": d.id, "error": "Stripe live secret key not configured"}]


def test_endpoint_accepts_cron_secret(client, gateway, cron_headers):
    make_donation(stripe_payment_intent_id="pi_e1")
    gateway.payment_intents["pi_e1"] = {"id": "pi_e1", "amount": 7500, "metadata": {}}

    resp = client.post("/admin/settlement/donations/recalculate-amounts", json={}, headers=cron_headers)

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["success"] is True
    assert body["updatedCount"] == 1
    assert resp.headers["Cache-Control"].startswith("no-store")


def test_endpoint_filters_by_mode(client, gateway, admin_headers):
    make_donation(stripe_mode="live", stripe_payment_intent_id="pi_live_only")

    resp = client.post(
        "/admin/settlement/donations/recalculate-amounts",
        json={"stripeMode": "test"},
        headers=admin_headers,
    )

    assert resp.get_json() == {"success": True, "updatedCount": 0, "updates": [], "skipped": [], "errors": []}
