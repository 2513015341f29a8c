"""
Product Catalog Module
======================
Read-only source of produce listings consumed by the cart.

The catalog owns ProductRef values; cart lines only reference them.
Stock availability is advisory here: the cart follows normal add
semantics for out-of-stock products and leaves stock policy to callers.
"""

import logging
from typing import Dict, List, Any, Optional, Iterable
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum

from prometheus_client import Counter


logger = logging.getLogger(__name__)


# ============================================================================
# CONFIGURATION
# ============================================================================

MAX_CATALOG_SIZE = 1000
MAX_PRODUCT_NAME_LENGTH = 200


# ============================================================================
# METRICS
# ============================================================================

catalog_validation_errors = Counter(
    'catalog_validation_errors_total',
    'Catalog entries rejected on load',
    ['error_type']
)
catalog_lookups = Counter(
    'catalog_lookups_total',
    'Catalog lookups by product id',
    ['result']
)


# ============================================================================
# PRODUCT CATEGORY
# ============================================================================

class ProductCategory(Enum):
    """Produce categories shown in the marketplace."""
    FRUIT = "Fruit"
    VEGETABLE = "Vegetable"
    HERB = "Herb"
    OTHER = "Other"

    @property
    def display_name(self) -> str:
        return self.value


# ============================================================================
# PRODUCT REFERENCE (Immutable)
# ============================================================================

@dataclass(frozen=True)
class ProductRef:
    """
    Immutable catalog entry.

    frozen=True: a product read from the catalog is never altered by the
    cart. Price changes arrive as a new ProductRef.
    """
    product_id: str
    name: str
    unit_price: Decimal
    farmer_name: str
    in_stock: bool = True
    description: str = ""
    category: ProductCategory = ProductCategory.OTHER
    estimated_delivery_days: Optional[int] = 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.product_id,
            "name": self.name,
            "unit_price": str(self.unit_price),
            "farmer_name": self.farmer_name,
            "in_stock": self.in_stock,
            "description": self.description,
            "category": self.category.value,
            "estimated_delivery_days": self.estimated_delivery_days,
        }


def _normalize_price(price: Any) -> Optional[Decimal]:
    """Normalize price to a non-negative Decimal."""
    try:
        value = Decimal(str(price))
    except (InvalidOperation, ValueError, TypeError):
        return None

    if not value.is_finite() or value < 0:
        return None

    return value


def product_from_dict(raw: Dict[str, Any]) -> Optional[ProductRef]:
    """
    Validate a raw catalog record and build a ProductRef.

    Returns None (and counts the rejection) for invalid records.
    """
    if not isinstance(raw, dict):
        catalog_validation_errors.labels(error_type='not_a_mapping').inc()
        return None

    if "id" not in raw or "name" not in raw or "price" not in raw:
        catalog_validation_errors.labels(error_type='missing_fields').inc()
        return None

    product_id = str(raw["id"]).strip()
    name = str(raw["name"]).strip()
    if not product_id or not name or len(name) > MAX_PRODUCT_NAME_LENGTH:
        catalog_validation_errors.labels(error_type='invalid_name').inc()
        return None

    price = _normalize_price(raw["price"])
    if price is None:
        catalog_validation_errors.labels(error_type='invalid_price').inc()
        return None

    try:
        category = ProductCategory(raw.get("category", ProductCategory.OTHER.value))
    except ValueError:
        category = ProductCategory.OTHER

    return ProductRef(
        product_id=product_id,
        name=name,
        unit_price=price,
        farmer_name=str(raw.get("farmer_name", "")).strip(),
        in_stock=bool(raw.get("in_stock", True)),
        description=str(raw.get("description", "")).strip(),
        category=category,
        estimated_delivery_days=raw.get("estimated_delivery_days", 1),
    )


# ============================================================================
# PRODUCT CATALOG
# ============================================================================

class ProductCatalog:
    """
    In-memory, read-only product catalog.

    Responsibilities:
    - Validate and index catalog records
    - Lookup by product id
    - Simple browsing filters (stock, category, name)

    Does NOT:
    - Enforce stock policy on the cart
    - Reserve inventory
    """

    def __init__(self, products: Optional[Iterable[ProductRef]] = None):
        self._products: Dict[str, ProductRef] = {}

        for product in products or []:
            self.add(product)

    @classmethod
    def from_records(cls, records: Iterable[Dict[str, Any]]) -> 'ProductCatalog':
        """Build a catalog from raw records, skipping invalid ones."""
        catalog = cls()
        for raw in list(records)[:MAX_CATALOG_SIZE]:
            product = product_from_dict(raw)
            if product is None:
                logger.warning(f"Skipping invalid catalog record: {raw!r}")
                continue
            catalog.add(product)

        logger.info(f"Catalog loaded: {len(catalog)} products")
        return catalog

    def add(self, product: ProductRef):
        """Register a product (replaces an entry with the same id)."""
        if product.product_id in self._products:
            logger.warning(f"Replacing catalog entry: {product.product_id}")
        self._products[product.product_id] = product

    def get(self, product_id: str) -> Optional[ProductRef]:
        """Lookup a product by id."""
        product = self._products.get(product_id)
        catalog_lookups.labels(result='hit' if product else 'miss').inc()
        return product

    def all(self) -> List[ProductRef]:
        """All products in registration order."""
        return list(self._products.values())

    def in_stock(self) -> List[ProductRef]:
        return [p for p in self._products.values() if p.in_stock]

    def by_category(self, category: ProductCategory) -> List[ProductRef]:
        return [p for p in self._products.values() if p.category == category]

    def search(self, query: str) -> List[ProductRef]:
        """Case-insensitive substring match on product name."""
        query_lower = query.lower().strip()
        if not query_lower:
            return []
        return [
            p for p in self._products.values()
            if query_lower in p.name.lower()
        ]

    def __len__(self) -> int:
        return len(self._products)

    def __contains__(self, product_id: str) -> bool:
        return product_id in self._products


# ============================================================================
# SEED DATA
# ============================================================================

MOCK_PRODUCTS: List[Dict[str, Any]] = [
    {
        "id": "prod_001",
        "name": "Matoke (Bananas)",
        "description": "Fresh green bananas from local farms.",
        "category": "Fruit",
        "price": "2500",
        "farmer_name": "Farmer John",
        "in_stock": True,
    },
    {
        "id": "prod_002",
        "name": "Tomatoes",
        "description": "Juicy organic tomatoes.",
        "category": "Vegetable",
        "price": "1800",
        "farmer_name": "Farmer Mary",
        "in_stock": True,
    },
    {
        "id": "prod_003",
        "name": "Pineapple",
        "description": "Sweet tropical pineapple.",
        "category": "Fruit",
        "price": "3000",
        "farmer_name": "Farmer Joseph",
        "in_stock": True,
    },
    {
        "id": "prod_004",
        "name": "Cassava",
        "description": "Fresh root cassava.",
        "category": "Other",
        "price": "2200",
        "farmer_name": "Farmer Grace",
        "in_stock": True,
    },
    {
        "id": "prod_005",
        "name": "Sweet Potatoes",
        "description": "Organic sweet potatoes.",
        "category": "Other",
        "price": "2500",
        "farmer_name": "Farmer Alice",
        "in_stock": True,
    },
    {
        "id": "prod_006",
        "name": "Avocados",
        "description": "Ripe avocados, perfect for smoothies.",
        "category": "Fruit",
        "price": "2000",
        "farmer_name": "Farmer Sam",
        "in_stock": False,
    },
]


def default_catalog() -> ProductCatalog:
    """Catalog seeded with the marketplace's demo produce."""
    return ProductCatalog.from_records(MOCK_PRODUCTS)
