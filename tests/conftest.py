"""Pytest configuration and fixtures."""

from decimal import Decimal

import pytest

from catalog import ProductCatalog, ProductRef, ProductCategory
from cart import CartLineStore
from checkout import CheckoutCoordinator
from config import Config
from order_sink import OrderHistory

# Timer durations used across the suite (seconds)
GRACE = 0.05
SETTLEMENT = 0.05


@pytest.fixture
def fast_config(monkeypatch) -> Config:
    """Config with millisecond-scale timers."""
    monkeypatch.setenv("CART_GRACE_PERIOD_SECONDS", str(GRACE))
    monkeypatch.setenv("CHECKOUT_SETTLEMENT_DELAY_SECONDS", str(SETTLEMENT))
    monkeypatch.setenv("PAYMENT_DELAY_SECONDS", "0.01")
    monkeypatch.setenv("PAYMENT_SUCCESS_RATE", "1.0")
    return Config()


@pytest.fixture
def product_a() -> ProductRef:
    return ProductRef(
        product_id="A",
        name="Tomatoes",
        unit_price=Decimal("1200"),
        farmer_name="Mary Nabwire",
        category=ProductCategory.VEGETABLE,
    )


@pytest.fixture
def product_b() -> ProductRef:
    return ProductRef(
        product_id="B",
        name="Basil",
        unit_price=Decimal("800"),
        farmer_name="Joseph Lule",
        category=ProductCategory.HERB,
    )


@pytest.fixture
def catalog(product_a, product_b) -> ProductCatalog:
    return ProductCatalog([product_a, product_b])


@pytest.fixture
def store() -> CartLineStore:
    return CartLineStore(cart_id="cart_test", grace_period_seconds=GRACE)


@pytest.fixture
def history() -> OrderHistory:
    return OrderHistory()


@pytest.fixture
def coordinator(store, history) -> CheckoutCoordinator:
    return CheckoutCoordinator(store, history, settlement_delay_seconds=SETTLEMENT)
