import pytest
from bson import ObjectId

from cache import CacheKeys
from errors import Conflict, NotFound, ValidationFailed
from schemas import ProductUpdateDTO


def test_adding_same_product_merges_quantities(services, make_product, alice):
    pid = make_product()
    services.carts.add_item(alice.user_id, pid, 2)
    cart = services.carts.add_item(alice.user_id, pid, 3)
    assert len(cart["items"]) == 1
    assert cart["items"][0]["quantity"] == 5
    assert cart["items"][0]["product"]["name"] == "Vanilla Candle"


def test_item_identity_survives_merge(services, make_product, alice):
    pid = make_product()
    first = services.carts.add_item(alice.user_id, pid, 1)["items"][0]["item_id"]
    again = services.carts.add_item(alice.user_id, pid, 1)["items"][0]["item_id"]
    assert first == again


def test_cart_is_created_lazily(services, store, make_product, alice):
    assert services.carts.read(alice.user_id) == {"items": []}
    assert store.count_documents("cart", {"user_id": alice.user_id}) == 0
    services.carts.add_item(alice.user_id, make_product(), 1)
    assert store.count_documents("cart", {"user_id": alice.user_id}) == 1


def test_add_unknown_product_is_not_found(services, alice):
    with pytest.raises(NotFound):
        services.carts.add_item(alice.user_id, str(ObjectId()), 1)
    with pytest.raises(NotFound):
        services.carts.add_item(alice.user_id, "garbage", 1)


def test_add_requires_positive_quantity(services, make_product, alice):
    with pytest.raises(ValidationFailed):
        services.carts.add_item(alice.user_id, make_product(), 0)


@pytest.mark.parametrize("quantity", [0, -1])
def test_update_rejects_non_positive_quantity(services, make_product, alice, quantity):
    cart = services.carts.add_item(alice.user_id, make_product(), 2)
    item_id = cart["items"][0]["item_id"]
    with pytest.raises(ValidationFailed):
        services.carts.update_item(alice.user_id, item_id, quantity)
    assert services.carts.read(alice.user_id)["items"][0]["quantity"] == 2


def test_update_sets_quantity_by_item_id(services, make_product, alice):
    cart = services.carts.add_item(alice.user_id, make_product(), 2)
    item_id = cart["items"][0]["item_id"]
    updated = services.carts.update_item(alice.user_id, item_id, 7)
    assert updated["items"][0]["quantity"] == 7


def test_update_missing_item_or_cart(services, make_product, alice, bob):
    with pytest.raises(NotFound, match="Cart not found"):
        services.carts.update_item(bob.user_id, "whatever", 1)
    services.carts.add_item(alice.user_id, make_product(), 1)
    with pytest.raises(NotFound, match="Cart item not found"):
        services.carts.update_item(alice.user_id, str(ObjectId()), 1)


def test_remove_cart_item(services, make_product, alice):
    keep = make_product("Cookie Box", price=12.0, category="cookies")
    drop = make_product("Dark Bar", price=4.0, category="chocolates")
    services.carts.add_item(alice.user_id, keep, 1)
    cart = services.carts.add_item(alice.user_id, drop, 1)
    drop_item = next(i for i in cart["items"] if i["product_id"] == drop)

    cart = services.carts.remove_item(alice.user_id, drop_item["item_id"])
    assert [i["product_id"] for i in cart["items"]] == [keep]
    with pytest.raises(NotFound):
        services.carts.remove_item(alice.user_id, drop_item["item_id"])


def test_cart_reads_are_cached_and_invalidated(services, cache, make_product, alice):
    pid = make_product()
    services.carts.add_item(alice.user_id, pid, 1)
    services.carts.read(alice.user_id)
    assert cache.get(CacheKeys.cart(alice.user_id)) is not None

    services.carts.add_item(alice.user_id, pid, 1)
    assert services.carts.read(alice.user_id)["items"][0]["quantity"] == 2


def test_stale_version_write_is_retried(services, store, make_product, alice):
    pid = make_product()
    services.carts.add_item(alice.user_id, pid, 1)
    doc = store.find_one("cart", {"user_id": alice.user_id})
    # a concurrent writer bumps the version; a write based on the old copy must not land
    store.collection("cart").update_one({"_id": doc["_id"]}, {"$inc": {"version": 1}})
    assert services.carts._commit(doc, []) is False
    assert services.carts.add_item(alice.user_id, pid, 1)["items"][0]["quantity"] == 2


def test_wishlist_rejects_duplicates(services, store, make_product, alice):
    pid = make_product()
    services.wishlists.add_item(alice.user_id, pid)
    with pytest.raises(Conflict):
        services.wishlists.add_item(alice.user_id, pid)
    wishlist = services.wishlists.read(alice.user_id)
    assert len(wishlist["items"]) == 1
    assert wishlist["items"][0]["added_at"]


def test_wishlist_remove_by_item_id(services, make_product, alice, bob):
    pid = make_product()
    item_id = services.wishlists.add_item(alice.user_id, pid)["items"][0]["item_id"]
    with pytest.raises(NotFound, match="Wishlist not found"):
        services.wishlists.remove_item(bob.user_id, item_id)
    assert services.wishlists.remove_item(alice.user_id, item_id)["items"] == []
    with pytest.raises(NotFound, match="Wishlist item not found"):
        services.wishlists.remove_item(alice.user_id, item_id)


def test_deleted_product_is_pulled_from_collections(services, cache, make_product, alice, bob):
    gone = make_product("Discontinued Candle")
    kept = make_product("Classic Candle")
    services.carts.add_item(alice.user_id, gone, 1)
    services.carts.add_item(alice.user_id, kept, 1)
    services.wishlists.add_item(bob.user_id, gone)
    services.carts.read(alice.user_id)
    services.wishlists.read(bob.user_id)

    services.catalog.delete(gone)

    assert cache.get(CacheKeys.cart(alice.user_id)) is None
    assert cache.get(CacheKeys.wishlist(bob.user_id)) is None
    assert [i["product_id"] for i in services.carts.read(alice.user_id)["items"]] == [kept]
    assert services.wishlists.read(bob.user_id)["items"] == []


def test_price_change_reaches_cached_carts_and_wishlists(services, cache, make_product, alice, bob):
    pid = make_product(price=10.0)
    services.carts.add_item(alice.user_id, pid, 1)
    services.wishlists.add_item(bob.user_id, pid)
    assert services.carts.read(alice.user_id)["items"][0]["product"]["price"] == 10.0
    services.wishlists.read(bob.user_id)

    services.catalog.update(pid, ProductUpdateDTO(price=30.0))

    assert cache.get(CacheKeys.cart(alice.user_id)) is None
    assert cache.get(CacheKeys.wishlist(bob.user_id)) is None
    assert services.carts.read(alice.user_id)["items"][0]["product"]["price"] == 30.0
    assert services.wishlists.read(bob.user_id)["items"][0]["product"]["price"] == 30.0


def test_stock_change_reaches_cached_carts(services, make_product, alice):
    pid = make_product(stock=8)
    services.carts.add_item(alice.user_id, pid, 1)
    services.carts.read(alice.user_id)

    assert services.catalog.adjust_stock(pid, -3)

    assert services.carts.read(alice.user_id)["items"][0]["product"]["stock"] == 5
