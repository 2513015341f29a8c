"""Tests for the product catalog."""

from decimal import Decimal

import pytest

from catalog import (
    MOCK_PRODUCTS,
    ProductCatalog,
    ProductCategory,
    default_catalog,
    product_from_dict,
)


def test_product_from_dict_normalizes_fields():
    product = product_from_dict({
        "id": " prod_9 ",
        "name": "Passion Fruit",
        "price": 1500,
        "category": "Fruit",
        "farmer_name": "Farmer Ruth",
    })

    assert product.product_id == "prod_9"
    assert product.unit_price == Decimal("1500")
    assert product.category == ProductCategory.FRUIT
    assert product.in_stock is True


@pytest.mark.parametrize("raw", [
    "not a dict",
    {"id": "p1", "name": "No price"},
    {"id": "p1", "name": "", "price": "10"},
    {"id": "p1", "name": "Negative", "price": "-5"},
    {"id": "p1", "name": "Garbage", "price": "abc"},
    {"id": "p1", "name": "Infinite", "price": "Infinity"},
])
def test_invalid_records_rejected(raw):
    assert product_from_dict(raw) is None


def test_unknown_category_falls_back_to_other():
    product = product_from_dict({"id": "p1", "name": "Mushrooms", "price": "900", "category": "Fungi"})

    assert product.category == ProductCategory.OTHER


def test_from_records_skips_invalid():
    catalog = ProductCatalog.from_records([
        {"id": "p1", "name": "Okra", "price": "700"},
        {"id": "p2", "name": "Broken"},
    ])

    assert len(catalog) == 1
    assert "p1" in catalog
    assert "p2" not in catalog


def test_default_catalog():
    catalog = default_catalog()

    assert len(catalog) == len(MOCK_PRODUCTS)
    assert catalog.get("prod_001").unit_price == Decimal("2500")
    assert catalog.get("missing") is None
    assert "prod_006" not in [p.product_id for p in catalog.in_stock()]


def test_browsing_filters(catalog):
    assert [p.product_id for p in catalog.by_category(ProductCategory.HERB)] == ["B"]
    assert [p.product_id for p in catalog.search("tomat")] == ["A"]
    assert catalog.search("   ") == []
    assert [p.product_id for p in catalog.all()] == ["A", "B"]


def test_product_to_dict(product_a):
    data = product_a.to_dict()

    assert data["id"] == "A"
    assert data["unit_price"] == "1200"
    assert data["category"] == "Vegetable"
