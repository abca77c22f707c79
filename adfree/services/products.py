"""
Ad-free product catalog configuration.

Maps App Store product IDs to their entitlement kind.
Product IDs must match those configured in App Store Connect.
"""

from collections.abc import Iterable
from dataclasses import dataclass

from adfree.config import Settings
from adfree.models.domain import ProductKind


@dataclass(frozen=True)
class AdFreeProduct:
    """Ad-free product configuration."""

    product_id: str  # App Store Connect product ID
    kind: ProductKind
    name: str  # Display name

    def __post_init__(self) -> None:
        """Validate product configuration."""
        if not self.product_id:
            raise ValueError("Product ID required")
        if not self.name:
            raise ValueError("Name required")


class ProductCatalog:
    """Known ad-free products, classified as lifetime or subscription."""

    def __init__(self, products: Iterable[AdFreeProduct]) -> None:
        self._products: dict[str, AdFreeProduct] = {}
        for product in products:
            if product.product_id in self._products:
                raise ValueError(f"Duplicate product ID: {product.product_id}")
            self._products[product.product_id] = product

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProductCatalog":
        products = [
            AdFreeProduct(product_id=pid, kind=ProductKind.LIFETIME, name="Ad-Free Lifetime")
            for pid in settings.lifetime_products
        ]
        products += [
            AdFreeProduct(product_id=pid, kind=ProductKind.SUBSCRIPTION, name="Ad-Free Monthly")
            for pid in settings.subscription_products
        ]
        return cls(products)

    @property
    def product_ids(self) -> frozenset[str]:
        return frozenset(self._products)

    def is_known(self, product_id: str) -> bool:
        return product_id in self._products

    def classify(self, product_id: str) -> ProductKind | None:
        """Kind of a product, or None if it is not an ad-free product."""
        product = self._products.get(product_id)
        return product.kind if product else None

    def get_product(self, product_id: str) -> AdFreeProduct:
        """
        Get product configuration by ID.

        Raises:
            ValueError: If product ID not found
        """
        product = self._products.get(product_id)
        if not product:
            raise ValueError(f"Unknown product ID: {product_id}")
        return product
