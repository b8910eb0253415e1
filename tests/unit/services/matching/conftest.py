"""Shared fixtures for matching service tests."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from lotledger.services.matching import Trade, TradeSide

BASE_DATE = datetime(2024, 1, 2, 9, 0, 0)


def day(offset: int) -> datetime:
    """Trade date offset days from BASE_DATE."""
    return BASE_DATE + timedelta(days=offset)


def make_trade(
    trade_id: str,
    side: TradeSide,
    quantity: str,
    price: str,
    on: int = 0,
    fee: str = "0",
    tax: str = "0",
    portfolio_id: str = "P1",
    asset_id: str = "VNM",
) -> Trade:
    return Trade(
        trade_id=trade_id,
        portfolio_id=portfolio_id,
        asset_id=asset_id,
        side=side,
        quantity=Decimal(quantity),
        price=Decimal(price),
        fee=Decimal(fee),
        tax=Decimal(tax),
        trade_date=day(on),
    )


@pytest.fixture
def buy():
    """Factory for BUY trades: buy("B1", "10", "100", on=0, fee="10")."""

    def factory(trade_id: str, quantity: str, price: str, **kwargs) -> Trade:
        return make_trade(trade_id, TradeSide.BUY, quantity, price, **kwargs)

    return factory


@pytest.fixture
def sell():
    """Factory for SELL trades."""

    def factory(trade_id: str, quantity: str, price: str, **kwargs) -> Trade:
        return make_trade(trade_id, TradeSide.SELL, quantity, price, **kwargs)

    return factory


@pytest.fixture
def on():
    """Date helper: on(3) is three days after the base trade date."""
    return day
