import logging
from typing import Any, Dict, List, Optional

from cache import CacheKeys, ReadThrough
from database import EntityStore, serialize_doc, to_object_id, utcnow
from errors import NotFound, ValidationFailed
from schemas import Product, ProductDTO, ProductUpdateDTO
from settings import Settings

logger = logging.getLogger("flamecrumble.catalog")

SAMPLE_PRODUCTS = [
    {"name": "Vanilla Bean Soy Candle", "price": 18.0, "category": "candles", "stock": 40,
     "image": "/images/vanilla-candle.jpg", "is_featured": True},
    {"name": "Cedar & Smoke Candle", "price": 22.5, "category": "candles", "stock": 25,
     "image": "/images/cedar-candle.jpg", "is_featured": False},
    {"name": "Brown Butter Cookies (6)", "price": 12.0, "category": "cookies", "stock": 60,
     "image": "/images/brown-butter-cookies.jpg", "is_featured": True},
    {"name": "Sea Salt Dark Chocolate", "price": 9.5, "category": "chocolates", "stock": 80,
     "image": "/images/sea-salt-chocolate.jpg", "is_featured": False},
]


class Catalog:
    def __init__(self, store: EntityStore, reader: ReadThrough, settings: Settings, collections=()):
        self.store = store
        self.reader = reader
        self.ttl = settings.products_ttl
        # line-item collections that may reference a product (cart, wishlist)
        self.collections = list(collections)

    def list(self, category: Optional[str] = None, featured: Optional[bool] = None) -> List[Dict[str, Any]]:
        products = self.reader.read(
            CacheKeys.PRODUCTS,
            lambda: [serialize_doc(p) for p in self.store.find("product", {}, sort=[("_id", 1)])],
            self.ttl,
        ) or []
        if category is not None:
            products = [p for p in products if p.get("category") == category]
        if featured is not None:
            products = [p for p in products if bool(p.get("is_featured")) == featured]
        return products

    def _invalidate(self, product_id: str) -> None:
        # carts and wishlists embed product data in their cached reads
        self.reader.invalidate(CacheKeys.PRODUCTS, CacheKeys.product(product_id))
        for collection in self.collections:
            collection.refresh_product(product_id)

    def get(self, product_id: str) -> Dict[str, Any]:
        oid = to_object_id(product_id, "Product")
        product = self.reader.read(
            CacheKeys.product(str(oid)),
            lambda: serialize_doc(self.store.find_one("product", {"_id": oid})),
            self.ttl,
        )
        if not product:
            raise NotFound("Product not found")
        return product

    def create(self, data: ProductDTO) -> Dict[str, Any]:
        product_id = self.store.create_document("product", Product(**data.model_dump()))
        self.reader.invalidate(CacheKeys.PRODUCTS)
        logger.info("Product %s created", product_id)
        return serialize_doc(self.store.find_by_id("product", product_id, "Product"))

    def update(self, product_id: str, data: ProductUpdateDTO) -> Dict[str, Any]:
        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        if not changes:
            raise ValidationFailed("No fields to update")
        product = self.store.update_by_id("product", product_id, changes, "Product")
        if not product:
            raise NotFound("Product not found")
        self._invalidate(str(product["_id"]))
        return serialize_doc(product)

    def delete(self, product_id: str) -> None:
        product = self.store.delete_by_id("product", product_id, "Product")
        if not product:
            raise NotFound("Product not found")
        pid = str(product["_id"])
        self.reader.invalidate(CacheKeys.PRODUCTS, CacheKeys.product(pid))
        for collection in self.collections:
            collection.pull_product(pid)
        logger.info("Product %s deleted", pid)

    def seed(self) -> int:
        if self.store.count_documents("product") > 0:
            return 0
        for sample in SAMPLE_PRODUCTS:
            self.store.create_document("product", Product(**sample))
        self.reader.invalidate(CacheKeys.PRODUCTS)
        return len(SAMPLE_PRODUCTS)

    def resolve(self, product_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        """Current product documents keyed by id; unknown or malformed ids are left out."""
        oids = []
        for pid in product_ids:
            try:
                oids.append(to_object_id(pid))
            except NotFound:
                continue
        if not oids:
            return {}
        return {str(p["_id"]): p for p in self.store.find("product", {"_id": {"$in": oids}})}

    def adjust_stock(self, product_id: str, delta: int) -> bool:
        """Atomically add `delta` to stock; a decrement only applies when enough is left."""
        condition: Dict[str, Any] = {"_id": to_object_id(product_id, "Product")}
        if delta < 0:
            condition["stock"] = {"$gte": -delta}
        result = self.store.collection("product").update_one(
            condition, {"$inc": {"stock": delta}, "$set": {"updated_at": utcnow()}}
        )
        if result.matched_count:
            self._invalidate(product_id)
        return result.matched_count == 1
