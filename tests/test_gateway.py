import logging
from types import SimpleNamespace

import pytest
import stripe

from settlement.errors import GatewayConfigError
from settlement.services.gateway import EXTENSION_KEY, GatewayRegistry, StripeGateway, init_gateways, to_plain


def test_registry_reports_only_configured_modes():
    reg = GatewayRegistry.from_config({"STRIPE_SECRET_KEY_TEST": "sk_test_x", "STRIPE_SECRET_KEY_LIVE": "  "})

    assert reg.configured_modes() == ["test"]
    assert reg.for_mode("TEST") is reg.for_mode("test")
    with pytest.raises(GatewayConfigError, match="live secret key not configured"):
        reg.for_mode("live")
    with pytest.raises(GatewayConfigError, match="Unknown Stripe mode"):
        reg.for_mode("sandbox")


def test_to_plain_handles_stripe_objects_and_dicts():
    obj = stripe.StripeObject.construct_from(
        {"id": "pi_1", "metadata": {"amount": "10"}, "charges": {"object": "list", "data": [{"id": "ch_1"}]}},
        "sk_test_x",
    )

    plain = to_plain(obj)

    assert isinstance(plain, dict)
    assert plain["metadata"]["amount"] == "10"
    assert plain["charges"]["data"][0]["id"] == "ch_1"
    assert to_plain({"id": "x"}) == {"id": "x"}
    assert to_plain(None) is None


def test_every_call_carries_its_own_key(monkeypatch):
    seen = {}

    def fake_retrieve(pid, **kw):
        seen.update(kw, id=pid)
        return {"id": pid, "amount": 500}

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", fake_retrieve)

    gw = StripeGateway("live", "sk_live_abc")
    assert gw.retrieve_payment_intent("pi_9") == {"id": "pi_9", "amount": 500}
    assert seen == {"id": "pi_9", "api_key": "sk_live_abc"}


def test_customer_charge_listing_uses_created_window(monkeypatch):
    seen = {}

    def fake_list(**kw):
        seen.update(kw)
        return {"object": "list", "data": [{"id": "ch_1"}, "junk"]}

    monkeypatch.setattr(stripe.Charge, "list", fake_list)

    rows = StripeGateway("test", "sk_test_x").list_customer_charges("cus_1", gte=100, lte=200)

    assert rows == [{"id": "ch_1"}]
    assert seen["customer"] == "cus_1"
    assert seen["created"] == {"gte": 100, "lte": 200}
    assert seen["api_key"] == "sk_test_x"


def test_off_session_payment_confirms_with_idempotency_key(monkeypatch):
    seen = {}

    def fake_create(**kw):
        seen.update(kw)
        return {"id": "pi_new", "status": "succeeded"}

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)

    out = StripeGateway("test", "sk_test_x").create_off_session_payment(
        amount_cents=1000,
        currency="usd",
        customer_id="cus_1",
        payment_method_id="pm_1",
        description="Bike ride pledge",
        metadata={"pledge_id": "3"},
        idempotency_key="pledge-3-1",
    )

    assert out["id"] == "pi_new"
    assert seen["off_session"] is True
    assert seen["confirm"] is True
    assert seen["idempotency_key"] == "pledge-3-1"
    assert seen["amount"] == 1000
    assert seen["payment_method"] == "pm_1"


def test_retries_are_set_once_at_init_not_per_gateway(monkeypatch):
    monkeypatch.setattr(stripe, "max_network_retries", 0)

    reg = GatewayRegistry.from_config({"STRIPE_SECRET_KEY_TEST": "sk_test_x", "STRIPE_MAX_NETWORK_RETRIES": "5"})
    reg.for_mode("test")
    StripeGateway("live", "sk_live_abc")
    assert stripe.max_network_retries == 0

    app = SimpleNamespace(
        config={"STRIPE_SECRET_KEY_TEST": "sk_test_x", "STRIPE_MAX_NETWORK_RETRIES": "5"},
        extensions={},
        logger=logging.getLogger(__name__),
    )

    init_gateways(app)
    assert stripe.max_network_retries == 5
    assert isinstance(app.extensions[EXTENSION_KEY], GatewayRegistry)
