"""
Saved shipping addresses and the per-owner "exactly one default" rule.

`DefaultSelector` is not address specific: it keeps one flagged document per
owner in any collection that carries `is_default` and `default_seq` fields.
Promotions are ordered by a per-owner sequence number, so concurrent
promotions settle on the one with the highest number instead of leaving two
defaults behind.
"""
import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId

from database import EntityStore, serialize_doc, to_object_id, utcnow
from errors import Conflict, NotFound, ValidationFailed
from schemas import Address, AddressDTO, AddressUpdateDTO

logger = logging.getLogger("flamecrumble.addresses")

NULLABLE = {"line2"}


class DefaultSelector:
    def __init__(self, store: EntityStore, collection_name: str, owner_field: str = "user_id"):
        self.store = store
        self.collection_name = collection_name
        self.owner_field = owner_field

    @property
    def collection(self):
        return self.store.collection(self.collection_name)

    def _sequence(self, owner_id: str) -> int:
        return self.store.next_sequence(f"{self.collection_name}-default:{owner_id}")

    def current(self, owner_id: str) -> Optional[Dict[str, Any]]:
        return self.collection.find_one({self.owner_field: owner_id, "is_default": True},
                                        sort=[("default_seq", -1)])

    def promote(self, owner_id: str, doc_id: ObjectId) -> None:
        seq = self._sequence(owner_id)
        self.collection.update_one(
            {"_id": doc_id, self.owner_field: owner_id},
            {"$set": {"is_default": True, "default_seq": seq, "updated_at": utcnow()}},
        )
        self.collection.update_many(
            {self.owner_field: owner_id, "_id": {"$ne": doc_id}, "is_default": True, "default_seq": {"$lt": seq}},
            {"$set": {"is_default": False, "updated_at": utcnow()}},
        )
        newer = self.collection.find_one(
            {self.owner_field: owner_id, "is_default": True, "default_seq": {"$gt": seq}}
        )
        if newer:
            # a later promotion won; step aside
            self.collection.update_one(
                {"_id": doc_id, "default_seq": seq},
                {"$set": {"is_default": False, "updated_at": utcnow()}},
            )

    def heal(self, owner_id: str) -> None:
        """Promote the oldest document when the owner has some but none is default."""
        if self.current(owner_id):
            return
        oldest = self.collection.find_one({self.owner_field: owner_id}, sort=[("created_at", 1), ("_id", 1)])
        if oldest:
            logger.info("Owner %s had no default %s; promoting %s", owner_id, self.collection_name, oldest["_id"])
            self.promote(owner_id, oldest["_id"])


class AddressBook:
    def __init__(self, store: EntityStore):
        self.store = store
        self.defaults = DefaultSelector(store, "address")

    def _owned(self, address_id: str, owner_id: str) -> Dict[str, Any]:
        oid = to_object_id(address_id, "Address")
        address = self.store.find_one("address", {"_id": oid, "user_id": owner_id})
        if not address:
            raise NotFound("Address not found")
        return address

    def _fresh(self, oid: ObjectId) -> Dict[str, Any]:
        return serialize_doc(self.store.find_by_id("address", oid, "Address"))

    def list(self, owner_id: str) -> List[Dict[str, Any]]:
        docs = self.store.find("address", {"user_id": owner_id},
                               sort=[("is_default", -1), ("created_at", 1), ("_id", 1)])
        return [serialize_doc(d) for d in docs]

    def get(self, address_id: str, owner_id: str) -> Dict[str, Any]:
        return serialize_doc(self._owned(address_id, owner_id))

    def default_for(self, owner_id: str) -> Optional[Dict[str, Any]]:
        return serialize_doc(self.defaults.current(owner_id))

    def create(self, owner_id: str, data: AddressDTO) -> Dict[str, Any]:
        first = self.store.count_documents("address", {"user_id": owner_id}) == 0
        attrs = data.model_dump()
        requested = attrs.pop("is_default")
        make_default = first or requested
        # stored unflagged; promotion flips it and clears the previous default
        address = Address(user_id=owner_id, is_default=False, **attrs)
        oid = to_object_id(self.store.create_document("address", address))
        if make_default:
            self.defaults.promote(owner_id, oid)
        self.defaults.heal(owner_id)
        logger.info("Address %s added for %s (default=%s)", oid, owner_id, make_default)
        return self._fresh(oid)

    def update(self, address_id: str, owner_id: str, data: AddressUpdateDTO) -> Dict[str, Any]:
        address = self._owned(address_id, owner_id)
        changes = data.model_dump(exclude_unset=True)
        # line2 is the only optional field; null clears it
        blanked = sorted(field for field, value in changes.items() if value is None and field not in NULLABLE)
        if blanked:
            raise ValidationFailed("Fields cannot be empty", [f"{field} is required" for field in blanked])
        wants_default = changes.pop("is_default", None)
        successor = None
        if wants_default is False and address.get("is_default"):
            successor = self.store.find_one("address", {"user_id": owner_id, "_id": {"$ne": address["_id"]}},
                                            sort=[("created_at", 1), ("_id", 1)])
            if not successor:
                raise Conflict("An address must remain default; add another address first")
        if changes:
            self.store.update_by_id("address", address["_id"], changes, "Address")
        if wants_default is True and not address.get("is_default"):
            self.defaults.promote(owner_id, address["_id"])
        elif successor:
            self.defaults.promote(owner_id, successor["_id"])
        self.defaults.heal(owner_id)
        return self._fresh(address["_id"])

    def delete(self, address_id: str, owner_id: str) -> None:
        address = self._owned(address_id, owner_id)
        if address.get("is_default"):
            siblings = self.store.count_documents("address", {"user_id": owner_id, "_id": {"$ne": address["_id"]}})
            if siblings > 0:
                raise Conflict("Cannot delete default address. Please set another address as default first.")
        self.store.delete_by_id("address", address["_id"], "Address")
        self.defaults.heal(owner_id)
        logger.info("Address %s deleted for %s", address["_id"], owner_id)

    def set_default(self, address_id: str, owner_id: str) -> Dict[str, Any]:
        address = self._owned(address_id, owner_id)
        if address.get("is_default"):
            return serialize_doc(address)
        self.defaults.promote(owner_id, address["_id"])
        return self._fresh(address["_id"])
