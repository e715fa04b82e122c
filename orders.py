"""
Checkout and order history.

Checkout turns the caller's cart into an immutable order. MongoDB gives no
cross-document transaction here, so the steps are ordered so that each one
can be undone if a later one fails:

    claim cart -> reserve stock per line -> insert order -> delete cart

A claimed cart is never read or checked out again, even if deleting it
fails, so one cart produces at most one order.
"""
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from addresses import AddressBook
from cache import CacheKeys, ReadThrough
from catalog import Catalog
from database import EntityStore, serialize_doc, to_object_id, utcnow
from errors import Conflict, NotFound, Upstream, ValidationFailed
from line_items import CartService
from schemas import CheckoutDTO, Order, OrderItem, ShippingAddress
from security import Principal
from settings import Settings

logger = logging.getLogger("flamecrumble.orders")

CENT = Decimal("0.01")

TRANSITIONS = {
    "pending": {"processing", "cancelled"},
    "processing": {"shipped", "cancelled"},
    "shipped": {"delivered"},
    "delivered": set(),
    "cancelled": set(),
}


def order_total(lines: List[Tuple[float, int]]) -> Decimal:
    total = sum((Decimal(str(price)) * quantity for price, quantity in lines), Decimal("0"))
    return total.quantize(CENT, rounding=ROUND_HALF_UP)


class OrderService:
    def __init__(self, store: EntityStore, reader: ReadThrough, carts: CartService, catalog: Catalog,
                 addresses: AddressBook, settings: Settings):
        self.store = store
        self.reader = reader
        self.carts = carts
        self.catalog = catalog
        self.addresses = addresses
        self.settings = settings

    def _shipping_address(self, principal: Principal, data: CheckoutDTO) -> ShippingAddress:
        if data.shipping_address is not None:
            return data.shipping_address
        if data.address_id:
            saved = self.addresses.get(data.address_id, principal.user_id)
        else:
            saved = self.addresses.default_for(principal.user_id)
        if not saved:
            raise ValidationFailed("Shipping address is required")
        street = saved["line1"] if not saved.get("line2") else f"{saved['line1']}, {saved['line2']}"
        return ShippingAddress(full_name=saved["full_name"], phone=saved["phone"], street=street,
                               city=saved["city"], state=saved["state"], zip=saved["zip"],
                               country=saved["country"])

    def create_order(self, principal: Principal, data: CheckoutDTO) -> Dict[str, Any]:
        owner = principal.user_id
        cart = self.carts.active(owner)
        if not cart or not cart.get("items"):
            raise ValidationFailed("Cart is empty")
        shipping = self._shipping_address(principal, data)

        products = self.catalog.resolve([i["product_id"] for i in cart["items"]])
        missing = [i["product_id"] for i in cart["items"] if i["product_id"] not in products]
        if missing:
            raise Conflict(f"Products no longer available: {', '.join(missing)}")

        items = []
        for line in cart["items"]:
            product = products[line["product_id"]]
            items.append(OrderItem(product_id=line["product_id"], name=product["name"], image=product.get("image"),
                                   quantity=line["quantity"], price=product["price"]))
        total = order_total([(i.price, i.quantity) for i in items])

        order_id = ObjectId()
        if not self.carts.claim(cart, str(order_id)):
            raise Conflict("Cart changed during checkout, please retry")

        reserved: List[OrderItem] = []
        try:
            for item in items:
                if not self.catalog.adjust_stock(item.product_id, -item.quantity):
                    raise Conflict(f"Insufficient stock for {item.name}")
                reserved.append(item)
            order = Order(user_id=owner, items=items, total=float(total), status="pending",
                          shipping_address=shipping, payment_method=data.payment_method)
            doc = order.model_dump() | {"_id": order_id}
            self.store.create_document("order", doc)
        except (Conflict, PyMongoError) as exc:
            self._roll_back(cart, str(order_id), reserved)
            if isinstance(exc, PyMongoError):
                logger.error("Order %s for %s failed: %s", order_id, owner, exc)
                raise Upstream("Could not place order, please retry")
            raise

        try:
            self.carts.discard(cart, str(order_id))
        except PyMongoError as exc:
            # the cart stays claimed by this order and is dropped on next access
            logger.warning("Cart %s not deleted after order %s: %s", cart["_id"], order_id, exc)

        self.reader.invalidate(CacheKeys.cart(owner))
        self.reader.invalidate(CacheKeys.order_history(owner))
        logger.info("Order %s created for %s, total %s", order_id, owner, total)
        return serialize_doc(self.store.find_by_id("order", order_id, "Order"))

    def _roll_back(self, cart: Dict[str, Any], order_id: str, reserved: List[OrderItem]) -> None:
        for item in reserved:
            try:
                self.catalog.adjust_stock(item.product_id, item.quantity)
            except PyMongoError as exc:
                logger.error("Stock for %s not restored after failed order %s: %s", item.product_id, order_id, exc)
        try:
            self.carts.release(cart, order_id)
        except PyMongoError as exc:
            logger.error("Cart %s not released after failed order %s: %s", cart["_id"], order_id, exc)

    def history(self, principal: Principal) -> List[Dict[str, Any]]:
        owner = principal.user_id
        orders = self.reader.read(
            CacheKeys.order_history(owner),
            lambda: [serialize_doc(o) for o in self.store.find("order", {"user_id": owner},
                                                               sort=[("created_at", -1), ("_id", -1)])],
            self.settings.order_history_ttl,
        )
        return orders or []

    def detail(self, principal: Principal, order_id: str) -> Dict[str, Any]:
        oid = to_object_id(order_id, "Order")
        order = self.reader.read(
            CacheKeys.order(str(oid)),
            lambda: serialize_doc(self.store.find_one("order", {"_id": oid})),
            self.settings.order_ttl,
        )
        if not order or order.get("user_id") != principal.user_id:
            raise NotFound("Order not found")
        return order

    def update_status(self, order_id: str, status: str) -> Dict[str, Any]:
        oid = to_object_id(order_id, "Order")
        order = self.store.find_one("order", {"_id": oid})
        if not order:
            raise NotFound("Order not found")
        current = order.get("status", "pending")
        if current == status:
            return serialize_doc(order)
        if status not in TRANSITIONS.get(current, set()):
            raise Conflict(f"Cannot move order from {current} to {status}")
        updated = self.store.collection("order").find_one_and_update(
            {"_id": oid, "status": current},
            {"$set": {"status": status, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise Conflict("Order status changed concurrently, please retry")
        if status == "cancelled":
            # only the request that won the status swap returns the stock
            for item in updated.get("items", []):
                if not self.catalog.adjust_stock(item["product_id"], item["quantity"]):
                    logger.warning("Product %s gone; stock from order %s not returned", item["product_id"], oid)
        self.reader.invalidate(CacheKeys.order(str(oid)), CacheKeys.order_history(order["user_id"]))
        logger.info("Order %s moved %s -> %s", oid, current, status)
        return serialize_doc(updated)

    def recent(self, limit: int = 5) -> List[Dict[str, Any]]:
        orders = self.store.find("order", {}, sort=[("created_at", -1), ("_id", -1)], limit=limit)
        users = {}
        owner_ids = {o["user_id"] for o in orders if ObjectId.is_valid(o.get("user_id", ""))}
        if owner_ids:
            for user in self.store.find("user", {"_id": {"$in": [ObjectId(u) for u in owner_ids]}},
                                        projection={"name": 1, "email": 1}):
                users[str(user["_id"])] = {"name": user.get("name"), "email": user.get("email")}
        out = []
        for order in orders:
            doc = serialize_doc(order)
            doc["user"] = users.get(order["user_id"])
            out.append(doc)
        return out

    def count(self) -> int:
        return self.store.count_documents("order")
