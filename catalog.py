"""
Product catalog persisted as a flat JSON object keyed by product id.
"""
import logging
from pathlib import Path
from typing import Dict, Optional

from schemas import Product
from storage import ChangeFeed, JsonDocument, StorageChange

logger = logging.getLogger(__name__)

CATALOG_KEY = "products"


class CatalogError(Exception):
    status_code = 400


class ProductExistsError(CatalogError):
    status_code = 409

    def __init__(self, product_id: str):
        super().__init__("Product with this ID already exists")
        self.product_id = product_id


class ProductNotFoundError(CatalogError):
    status_code = 404

    def __init__(self, product_id: str):
        super().__init__("Product not found")
        self.product_id = product_id


class SizeStateError(CatalogError):
    status_code = 409


class SizeNotMarkedError(CatalogError):
    status_code = 404


class ProductCatalog:
    def __init__(self, path: Path, feed: Optional[ChangeFeed] = None):
        self.document = JsonDocument(path)
        self.feed = feed or ChangeFeed()

    def _changed(self) -> None:
        self.feed.publish(StorageChange(CATALOG_KEY))

    def list(self) -> Dict[str, Product]:
        return {pid: Product.model_validate(doc) for pid, doc in self.document.load().items()}

    def count(self) -> int:
        return len(self.document.load())

    def get(self, product_id: str) -> Product:
        doc = self.document.load().get(product_id)
        if not doc:
            raise ProductNotFoundError(product_id)
        return Product.model_validate(doc)

    def create(self, product: Product) -> Product:
        def apply(products):
            if product.id in products:
                raise ProductExistsError(product.id)
            products[product.id] = product.model_dump(mode="json", by_alias=True)

        self.document.update(apply)
        logger.info("Product %s created", product.id)
        self._changed()
        return product

    def delete(self, product_id: str) -> Product:
        def apply(products):
            if product_id not in products:
                raise ProductNotFoundError(product_id)
            return products.pop(product_id)

        removed = self.document.update(apply)
        logger.info("Product %s deleted", product_id)
        self._changed()
        return Product.model_validate(removed)

    def _modify(self, product_id: str, fn) -> Product:
        def apply(products):
            doc = products.get(product_id)
            if not doc:
                raise ProductNotFoundError(product_id)
            product = Product.model_validate(doc)
            fn(product)
            products[product_id] = product.model_dump(mode="json", by_alias=True)
            return product

        product = self.document.update(apply)
        self._changed()
        return product

    def set_out_of_stock(self, product_id: str, out_of_stock: bool) -> Product:
        def apply(product: Product):
            product.out_of_stock = out_of_stock

        return self._modify(product_id, apply)

    def mark_size_unavailable(self, product_id: str, size: str) -> Product:
        def apply(product: Product):
            if size in product.unavailable_sizes:
                raise SizeStateError(f"Size {size} is already marked as unavailable")
            product.unavailable_sizes.append(size)

        return self._modify(product_id, apply)

    def restore_size(self, product_id: str, size: str) -> Product:
        def apply(product: Product):
            if size not in product.unavailable_sizes:
                raise SizeNotMarkedError(f"Size {size} is not marked as unavailable")
            product.unavailable_sizes.remove(size)

        return self._modify(product_id, apply)
