# settlement/services/gateway.py
"""
Stripe access, one client per mode.

Every call passes its own ``api_key`` so test and live keys never leak into
the global ``stripe.api_key``; results are normalized to plain dicts so the
services (and the audit table) never hold StripeObjects.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

import stripe
from flask import current_app

from settlement.errors import GatewayConfigError

log = logging.getLogger(__name__)

EXTENSION_KEY = "settlement.gateways"
MODES = ("test", "live")

# Errors raised by the Stripe client library.
GatewayError = stripe.StripeError


def to_plain(obj: Any) -> Optional[Dict[str, Any]]:
    """StripeObject -> dict (recursively); dicts pass through."""
    if obj is None:
        return None
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    for attr in ("to_dict", "to_dict_recursive"):
        fn = getattr(obj, attr, None)
        if callable(fn):
            try:
                return fn()
            except TypeError:
                continue
    return dict(obj)


def _page(listing: Any) -> List[Dict[str, Any]]:
    data = to_plain(listing) or {}
    return [row for row in (data.get("data") or []) if isinstance(row, dict)]


class StripeGateway:
    """Thin wrapper around the legacy resource API bound to one secret key."""

    def __init__(self, mode: str, api_key: str):
        self.mode = mode
        self._api_key = api_key

    # ---- reads ----
    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return to_plain(stripe.Subscription.retrieve(subscription_id, api_key=self._api_key))

    def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        return to_plain(stripe.PaymentIntent.retrieve(payment_intent_id, api_key=self._api_key))

    def retrieve_setup_intent(self, setup_intent_id: str) -> Dict[str, Any]:
        return to_plain(stripe.SetupIntent.retrieve(setup_intent_id, api_key=self._api_key))

    def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        return to_plain(
            stripe.checkout.Session.retrieve(
                session_id,
                expand=["subscription", "payment_intent"],
                api_key=self._api_key,
            )
        )

    def list_payment_intent_charges(self, payment_intent_id: str) -> List[Dict[str, Any]]:
        return _page(stripe.Charge.list(payment_intent=payment_intent_id, limit=10, api_key=self._api_key))

    def list_customer_charges(self, customer_id: str, *, gte: int, lte: int) -> List[Dict[str, Any]]:
        return _page(
            stripe.Charge.list(
                customer=customer_id,
                created={"gte": gte, "lte": lte},
                limit=10,
                api_key=self._api_key,
            )
        )

    def list_customer_subscriptions(self, customer_id: str, *, gte: int, lte: int) -> List[Dict[str, Any]]:
        return _page(
            stripe.Subscription.list(
                customer=customer_id,
                created={"gte": gte, "lte": lte},
                status="all",
                limit=10,
                api_key=self._api_key,
            )
        )

    def list_customer_payment_intents(self, customer_id: str, *, gte: int, lte: int) -> List[Dict[str, Any]]:
        return _page(
            stripe.PaymentIntent.list(
                customer=customer_id,
                created={"gte": gte, "lte": lte},
                limit=10,
                api_key=self._api_key,
            )
        )

    # ---- writes ----
    def create_off_session_payment(
        self,
        *,
        amount_cents: int,
        currency: str,
        customer_id: str,
        payment_method_id: str,
        description: str,
        metadata: Mapping[str, str],
        idempotency_key: str,
    ) -> Dict[str, Any]:
        pi = stripe.PaymentIntent.create(
            amount=int(amount_cents),
            currency=currency,
            customer=customer_id,
            payment_method=payment_method_id,
            off_session=True,
            confirm=True,
            description=description,
            metadata=dict(metadata),
            idempotency_key=idempotency_key,
            api_key=self._api_key,
        )
        return to_plain(pi)


class GatewayRegistry:
    """Resolves the gateway for a Stripe mode; missing keys fail per call."""

    def __init__(self, keys: Mapping[str, Optional[str]], *, max_network_retries: int = 2):
        self._keys = {m: (keys.get(m) or "").strip() for m in MODES}
        self.max_network_retries = int(max_network_retries or 2)
        self._cache: Dict[str, StripeGateway] = {}

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "GatewayRegistry":
        return cls(
            {
                "test": config.get("STRIPE_SECRET_KEY_TEST"),
                "live": config.get("STRIPE_SECRET_KEY_LIVE"),
            },
            max_network_retries=int(config.get("STRIPE_MAX_NETWORK_RETRIES") or 2),
        )

    def configured_modes(self) -> List[str]:
        return [m for m in MODES if self._keys.get(m)]

    def for_mode(self, mode: str) -> StripeGateway:
        m = (mode or "test").strip().lower()
        if m not in MODES:
            raise GatewayConfigError(f"Unknown Stripe mode: {mode}")
        key = self._keys.get(m)
        if not key:
            raise GatewayConfigError(f"Stripe {m} secret key not configured")
        gw = self._cache.get(m)
        if gw is None:
            gw = StripeGateway(m, key)
            self._cache[m] = gw
        return gw


def init_gateways(app: Any) -> None:
    registry = GatewayRegistry.from_config(app.config)
    # retries are client-wide in the stripe library; set once per process
    stripe.max_network_retries = registry.max_network_retries
    app.extensions[EXTENSION_KEY] = registry
    modes = registry.configured_modes()
    if modes:
        app.logger.info("Stripe gateways ready (%s)", ", ".join(modes))
    else:
        app.logger.warning("Stripe NOT configured: no STRIPE_SECRET_KEY_TEST / STRIPE_SECRET_KEY_LIVE")


def get_registry() -> Any:
    return current_app.extensions[EXTENSION_KEY]


__all__ = [
    "GatewayError",
    "GatewayRegistry",
    "StripeGateway",
    "get_registry",
    "init_gateways",
    "to_plain",
]
