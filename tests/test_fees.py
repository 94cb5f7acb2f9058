from decimal import Decimal

import pytest

from settlement.services.fees import (
    FeeModel,
    cents_to_money,
    gross_up,
    money_to_cents,
    net_of_fees,
    to_money,
    truthy_flag,
)


def test_cover_fee_round_trip():
    charged = gross_up(Decimal("100"))
    assert charged == Decimal("103.30")
    assert net_of_fees(charged) == Decimal("100.00")


@pytest.mark.parametrize("base", ["5", "25", "100", "250.50"])
def test_gross_up_never_loses_the_base(base):
    b = Decimal(base)
    charged = gross_up(b)
    assert charged > b
    assert abs(net_of_fees(charged) - b) <= Decimal("0.01")


def test_to_money_rejects_garbage():
    assert to_money("12.345") == Decimal("12.35")
    assert to_money("") is None
    assert to_money(None) is None
    assert to_money("abc") is None
    assert to_money("NaN") is None


def test_cents_helpers():
    assert cents_to_money(10330) == Decimal("103.30")
    assert cents_to_money(None) is None
    assert money_to_cents(Decimal("0.50")) == 50


def test_truthy_flag_distinguishes_absent_from_false():
    assert truthy_flag("true") is True
    assert truthy_flag("false") is False
    assert truthy_flag(None) is None
    assert truthy_flag("") is None


def test_fee_model_reads_config():
    fees = FeeModel.from_config({"FF_FEES_PCT": "0.03", "FF_FEES_FLAT": "0.25"})
    assert fees.gross_up(Decimal("100")) == Decimal("103.35")
    assert FeeModel.from_config({}).gross_up(Decimal("100")) == Decimal("103.30")
