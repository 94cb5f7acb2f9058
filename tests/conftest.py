"""
Shared fixtures: app on in-memory SQLite, an in-memory Stripe double and
bearer tokens for admin / member profiles.
"""
from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
import stripe

from settlement import create_app
from settlement.config import TestingConfig
from settlement.errors import GatewayConfigError
from settlement.extensions import db
from settlement.models import BikeRideEvent, BikeRidePledge, Donation, Profile, UserRole
from settlement.models.mixins import utcnow
from settlement.security import issue_token
from settlement.services.gateway import EXTENSION_KEY


class FakeGateway:
    """Stripe double keyed by object id; records every call it receives."""

    def __init__(self, mode: str = "test"):
        self.mode = mode
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.payment_intents: Dict[str, Dict[str, Any]] = {}
        self.setup_intents: Dict[str, Dict[str, Any]] = {}
        self.checkout_sessions: Dict[str, Dict[str, Any]] = {}
        self.intent_charges: Dict[str, List[Dict[str, Any]]] = {}
        self.customer_charges: Dict[str, List[Dict[str, Any]]] = {}
        self.customer_subscriptions: Dict[str, List[Dict[str, Any]]] = {}
        self.customer_payment_intents: Dict[str, List[Dict[str, Any]]] = {}
        self.declines: Dict[str, str] = {}
        self.broken: Dict[str, Exception] = {}
        self.created: List[Dict[str, Any]] = []
        self.calls: List[tuple] = []

    def _get(self, store: Dict[str, Any], key: str, kind: str) -> Dict[str, Any]:
        if key in self.broken:
            raise self.broken[key]
        if key not in store:
            raise stripe.InvalidRequestError(f"No such {kind}: '{key}'", "id")
        return store[key]

    def retrieve_subscription(self, subscription_id):
        self.calls.append(("retrieve_subscription", subscription_id))
        return self._get(self.subscriptions, subscription_id, "subscription")

    def retrieve_payment_intent(self, payment_intent_id):
        self.calls.append(("retrieve_payment_intent", payment_intent_id))
        return self._get(self.payment_intents, payment_intent_id, "payment_intent")

    def retrieve_setup_intent(self, setup_intent_id):
        self.calls.append(("retrieve_setup_intent", setup_intent_id))
        return self._get(self.setup_intents, setup_intent_id, "setup_intent")

    def retrieve_checkout_session(self, session_id):
        self.calls.append(("retrieve_checkout_session", session_id))
        return self._get(self.checkout_sessions, session_id, "checkout.session")

    def list_payment_intent_charges(self, payment_intent_id):
        self.calls.append(("list_payment_intent_charges", payment_intent_id))
        return list(self.intent_charges.get(payment_intent_id, []))

    def list_customer_charges(self, customer_id, *, gte, lte):
        self.calls.append(("list_customer_charges", customer_id, gte, lte))
        return [c for c in self.customer_charges.get(customer_id, []) if gte <= c.get("created", gte) <= lte]

    def list_customer_subscriptions(self, customer_id, *, gte, lte):
        self.calls.append(("list_customer_subscriptions", customer_id, gte, lte))
        return [s for s in self.customer_subscriptions.get(customer_id, []) if gte <= s.get("created", gte) <= lte]

    def list_customer_payment_intents(self, customer_id, *, gte, lte):
        self.calls.append(("list_customer_payment_intents", customer_id, gte, lte))
        return [p for p in self.customer_payment_intents.get(customer_id, []) if gte <= p.get("created", gte) <= lte]

    def create_off_session_payment(self, **params):
        self.calls.append(("create_off_session_payment", params["payment_method_id"]))
        pm = params["payment_method_id"]
        if pm in self.declines:
            raise stripe.CardError(self.declines[pm], "payment_method", "card_declined")
        self.created.append(params)
        return {"id": f"pi_fake_{len(self.created)}", "status": "succeeded", "amount": params["amount_cents"]}

    def called(self, name: str) -> bool:
        return any(c[0] == name for c in self.calls)


class FakeRegistry:
    def __init__(self, *gateways: FakeGateway):
        self.gateways = {g.mode: g for g in gateways}

    def configured_modes(self):
        return sorted(self.gateways)

    def for_mode(self, mode):
        gw = self.gateways.get(mode or "test")
        if gw is None:
            raise GatewayConfigError(f"Stripe {mode} secret key not configured")
        return gw


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway("test")


@pytest.fixture()
def app(gateway):
    app = create_app(TestingConfig)
    app.extensions[EXTENSION_KEY] = FakeRegistry(gateway)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


def _profile(email: str, role: Optional[str]) -> Profile:
    p = Profile(email=email, display_name=email.split("@")[0].title())
    db.session.add(p)
    db.session.flush()
    if role:
        db.session.add(UserRole(user_id=p.id, role=role))
    db.session.commit()
    return p


@pytest.fixture()
def admin(app) -> Profile:
    return _profile("admin@example.org", "admin")


@pytest.fixture()
def member(app) -> Profile:
    return _profile("member@example.org", "member")


@pytest.fixture()
def admin_headers(admin) -> Dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(admin.id)}"}


@pytest.fixture()
def member_headers(member) -> Dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(member.id)}"}


@pytest.fixture()
def cron_headers() -> Dict[str, str]:
    return {"X-Cron-Secret": TestingConfig.CRON_SECRET}


# ---- row builders ----
def make_donation(**kw: Any) -> Donation:
    fields: Dict[str, Any] = {
        "donor_email": "donor@example.org",
        "amount": Decimal("50.00"),
        "frequency": "one-time",
        "status": "completed",
        "stripe_mode": "test",
    }
    fields.update(kw)
    if fields.get("donor_id"):
        fields["donor_email"] = None
    d = Donation(**fields)
    db.session.add(d)
    db.session.commit()
    return d


def make_event(mile_goal: str = "100", **kw: Any) -> BikeRideEvent:
    ev = BikeRideEvent(title=kw.pop("title", "Spring Ride"), mile_goal=Decimal(mile_goal), **kw)
    db.session.add(ev)
    db.session.commit()
    return ev


def make_pledge(event: BikeRideEvent, cents_per_mile: str, **kw: Any) -> BikeRidePledge:
    fields: Dict[str, Any] = {
        "pledger_name": "Pat Rider",
        "pledger_email": "pat@example.org",
        "pledge_type": "per_mile",
        "stripe_mode": "test",
        "stripe_customer_id": "cus_123",
        "stripe_payment_method_id": "pm_ok",
    }
    fields.update(kw)
    p = BikeRidePledge(event_id=event.id, cents_per_mile=Decimal(cents_per_mile), **fields)
    db.session.add(p)
    db.session.commit()
    return p


def ago(**kw: Any):
    return utcnow() - timedelta(**kw)
