# settlement/services/fees.py
"""
Fee + rounding math.

Donors who tick "cover processing fees" are charged
``(base + flat) / (1 - pct)`` so that Stripe's cut leaves ``base`` behind.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping, Optional

FEE_PCT = Decimal("0.029")
FEE_FLAT = Decimal("0.30")
CENT = Decimal("0.01")


def to_money(v: Any) -> Optional[Decimal]:
    """Coerce to a 2dp Decimal; None for missing / unparsable input."""
    if v is None or v == "":
        return None
    try:
        d = v if isinstance(v, Decimal) else Decimal(str(v).strip())
    except Exception:
        return None
    if not d.is_finite():
        return None
    return d.quantize(CENT, rounding=ROUND_HALF_UP)


def cents_to_money(cents: Any) -> Optional[Decimal]:
    if cents is None or isinstance(cents, bool):
        return None
    try:
        return (Decimal(int(cents)) / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)
    except (TypeError, ValueError):
        return None


def money_to_cents(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def gross_up(base: Decimal, fee_pct: Decimal = FEE_PCT, fee_flat: Decimal = FEE_FLAT) -> Decimal:
    """Amount to charge so that ``base`` remains after the processor fee."""
    if base <= 0:
        return base
    total = (base + fee_flat) / (Decimal("1") - fee_pct)
    return total.quantize(CENT, rounding=ROUND_HALF_UP)


def net_of_fees(charged: Decimal, fee_pct: Decimal = FEE_PCT, fee_flat: Decimal = FEE_FLAT) -> Decimal:
    """Inverse of gross_up: the base a grossed-up charge was built from."""
    if charged <= 0:
        return charged
    base = charged * (Decimal("1") - fee_pct) - fee_flat
    return base.quantize(CENT, rounding=ROUND_HALF_UP)


def truthy_flag(v: Any) -> Optional[bool]:
    """
    Stripe metadata values are strings. Returns None when the flag is absent
    so callers can tell "false" from "never recorded".
    """
    if v is None:
        return None
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if not s:
        return None
    return s in {"1", "true", "yes", "on", "y"}


@dataclass(frozen=True)
class FeeModel:
    """Processor fee parameters (percentage + flat, in dollars)."""

    pct: Decimal = FEE_PCT
    flat: Decimal = FEE_FLAT

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "FeeModel":
        return cls(
            pct=Decimal(str(config.get("FF_FEES_PCT") or FEE_PCT)),
            flat=Decimal(str(config.get("FF_FEES_FLAT") or FEE_FLAT)),
        )

    def gross_up(self, base: Decimal) -> Decimal:
        return gross_up(base, self.pct, self.flat)

    def net_of_fees(self, charged: Decimal) -> Decimal:
        return net_of_fees(charged, self.pct, self.flat)


DEFAULT_FEES = FeeModel()
