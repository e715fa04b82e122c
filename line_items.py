"""
Cart and wishlist: per-owner collections of product line-items.

Both share the same load / lazily-create / compare-and-set write cycle; they
differ in how a repeated product is merged and which cache key they own.
Callers always address a line-item by its `item_id`, which is assigned when
the item is first added and survives later merges.
"""
import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from cache import CacheKeys, ReadThrough
from catalog import Catalog
from database import EntityStore, as_utc, serialize_doc, to_object_id, utcnow
from errors import Conflict, NotFound, ValidationFailed
from schemas import Cart, CartItem, Wishlist, WishlistItem

logger = logging.getLogger("flamecrumble.line_items")

MAX_ATTEMPTS = 3
CLAIM_TIMEOUT = timedelta(minutes=5)

Items = List[Dict[str, Any]]


class LineItemCollection:
    collection_name = ""
    label = ""

    def __init__(self, store: EntityStore, reader: ReadThrough, catalog: Catalog, ttl: int):
        self.store = store
        self.reader = reader
        self.catalog = catalog
        self.ttl = ttl

    # hooks

    def cache_key(self, owner_id: str) -> str:
        raise NotImplementedError

    def new_document(self, owner_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    def merge(self, items: Items, product_id: str, quantity: int) -> Items:
        raise NotImplementedError

    # reads

    def read(self, owner_id: str) -> Dict[str, Any]:
        doc = self.reader.read(self.cache_key(owner_id), lambda: self._present(owner_id), self.ttl)
        return doc or {"items": []}

    def _present(self, owner_id: str) -> Optional[Dict[str, Any]]:
        doc = self._load(owner_id)
        if not doc:
            return None
        products = self.catalog.resolve([i["product_id"] for i in doc.get("items", [])])
        out = serialize_doc(doc)
        for item in out["items"]:
            item["product"] = serialize_doc(products.get(item["product_id"]))
        return out

    def _load(self, owner_id: str) -> Optional[Dict[str, Any]]:
        return self.store.find_one(self.collection_name, {"user_id": owner_id})

    def _load_or_create(self, owner_id: str) -> Dict[str, Any]:
        doc = self._load(owner_id)
        if doc:
            return doc
        try:
            self.store.create_document(self.collection_name, self.new_document(owner_id))
        except DuplicateKeyError:
            pass  # created by a concurrent request
        doc = self._load(owner_id)
        if not doc:
            raise Conflict(f"{self.label} was modified concurrently, please retry")
        return doc

    # writes

    def _commit(self, doc: Dict[str, Any], items: Items) -> bool:
        result = self.store.collection(self.collection_name).update_one(
            {"_id": doc["_id"], "version": doc.get("version", 0), "checkout_order_id": None},
            {"$set": {"items": items, "updated_at": utcnow()}, "$inc": {"version": 1}},
        )
        return result.matched_count == 1

    def _mutate(self, owner_id: str, change: Callable[[Items], Items], create: bool = False) -> Dict[str, Any]:
        for attempt in range(MAX_ATTEMPTS):
            doc = self._load_or_create(owner_id) if create else self._load(owner_id)
            if not doc:
                raise NotFound(f"{self.label} not found")
            items = change([dict(i) for i in doc.get("items", [])])
            if self._commit(doc, items):
                self.reader.invalidate(self.cache_key(owner_id))
                return self.read(owner_id)
            logger.info("%s of %s changed underneath (attempt %d)", self.label, owner_id, attempt + 1)
        raise Conflict(f"{self.label} was modified concurrently, please retry")

    def add_item(self, owner_id: str, product_id: str, quantity: int = 1) -> Dict[str, Any]:
        if quantity < 1:
            raise ValidationFailed("Quantity must be a positive number")
        product = self.catalog.resolve([product_id]).get(product_id)
        if not product:
            raise NotFound("Product not found")
        return self._mutate(owner_id, lambda items: self.merge(items, product_id, quantity), create=True)

    def remove_item(self, owner_id: str, item_id: str) -> Dict[str, Any]:
        def drop(items: Items) -> Items:
            remaining = [i for i in items if i.get("item_id") != item_id]
            if len(remaining) == len(items):
                raise NotFound(f"{self.label} item not found")
            return remaining

        return self._mutate(owner_id, drop)

    def holders(self, product_id: str) -> List[str]:
        docs = self.store.find(self.collection_name, {"items.product_id": product_id}, projection={"user_id": 1})
        return [d["user_id"] for d in docs]

    def refresh_product(self, product_id: str) -> List[str]:
        """Drop cached reads that embed this product; returns the affected owners."""
        owners = self.holders(product_id)
        if owners:
            self.reader.invalidate(*[self.cache_key(o) for o in owners])
        return owners

    def pull_product(self, product_id: str) -> List[str]:
        """Drop a product from every collection holding it; returns the affected owners."""
        owners = self.holders(product_id)
        if owners:
            self.store.collection(self.collection_name).update_many(
                {"items.product_id": product_id},
                {"$pull": {"items": {"product_id": product_id}}, "$inc": {"version": 1}},
            )
            self.reader.invalidate(*[self.cache_key(o) for o in owners])
        return owners


class CartService(LineItemCollection):
    collection_name = "cart"
    label = "Cart"

    def cache_key(self, owner_id: str) -> str:
        return CacheKeys.cart(owner_id)

    def new_document(self, owner_id: str) -> Dict[str, Any]:
        return Cart(user_id=owner_id).model_dump()

    def merge(self, items: Items, product_id: str, quantity: int) -> Items:
        for item in items:
            if item["product_id"] == product_id:
                item["quantity"] = int(item.get("quantity", 0)) + quantity
                return items
        items.append(CartItem(item_id=str(ObjectId()), product_id=product_id, quantity=quantity).model_dump())
        return items

    def update_item(self, owner_id: str, item_id: str, quantity: int) -> Dict[str, Any]:
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationFailed("Quantity must be a positive number")

        def set_quantity(items: Items) -> Items:
            for item in items:
                if item.get("item_id") == item_id:
                    item["quantity"] = quantity
                    return items
            raise NotFound("Cart item not found")

        return self._mutate(owner_id, set_quantity)

    # checkout support

    def _load(self, owner_id: str) -> Optional[Dict[str, Any]]:
        doc = super()._load(owner_id)
        if not doc or not doc.get("checkout_order_id"):
            return doc
        # claimed carts are invisible: either consumed, or a checkout is still running
        claimed_by = doc["checkout_order_id"]
        if self.store.count_documents("order", {"_id": to_object_id(claimed_by)}):
            self.discard(doc, claimed_by)
            logger.info("Removed cart %s already consumed by order %s", doc["_id"], claimed_by)
            return None
        if as_utc(doc["updated_at"]) < utcnow() - CLAIM_TIMEOUT:
            logger.warning("Releasing abandoned checkout claim %s on cart %s", claimed_by, doc["_id"])
            self.release(doc, claimed_by)
            return self.store.find_one("cart", {"_id": doc["_id"], "checkout_order_id": None})
        return None

    def active(self, owner_id: str) -> Optional[Dict[str, Any]]:
        return self._load(owner_id)

    def claim(self, cart: Dict[str, Any], order_id: str) -> bool:
        """Mark the cart as consumed by `order_id` unless it changed since it was read."""
        result = self.store.collection("cart").update_one(
            {"_id": cart["_id"], "version": cart.get("version", 0), "checkout_order_id": None},
            {"$set": {"checkout_order_id": order_id, "updated_at": utcnow()}, "$inc": {"version": 1}},
        )
        if result.matched_count != 1:
            return False
        self.reader.invalidate(self.cache_key(cart["user_id"]))
        return True

    def release(self, cart: Dict[str, Any], order_id: str) -> None:
        self.store.collection("cart").update_one(
            {"_id": cart["_id"], "checkout_order_id": order_id},
            {"$set": {"checkout_order_id": None, "updated_at": utcnow()}, "$inc": {"version": 1}},
        )
        self.reader.invalidate(self.cache_key(cart["user_id"]))

    def discard(self, cart: Dict[str, Any], order_id: str) -> int:
        """Delete the owner's carts consumed by `order_id`."""
        return self.store.delete_many("cart", {"user_id": cart["user_id"], "checkout_order_id": order_id})


class WishlistService(LineItemCollection):
    collection_name = "wishlist"
    label = "Wishlist"

    def cache_key(self, owner_id: str) -> str:
        return CacheKeys.wishlist(owner_id)

    def new_document(self, owner_id: str) -> Dict[str, Any]:
        return Wishlist(user_id=owner_id).model_dump()

    def merge(self, items: Items, product_id: str, quantity: int) -> Items:
        if any(item["product_id"] == product_id for item in items):
            raise Conflict("Product already in wishlist")
        items.append(WishlistItem(item_id=str(ObjectId()), product_id=product_id, added_at=utcnow()).model_dump())
        return items
