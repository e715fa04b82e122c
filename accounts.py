import logging
import secrets
from datetime import timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from database import EntityStore, as_utc, serialize_doc, utcnow
from errors import Conflict, NotFound, Unauthorized, ValidationFailed
from schemas import ProfileDTO, RegisterDTO, User
from security import Principal, create_token, hash_password, verify_password
from settings import Settings

logger = logging.getLogger("flamecrumble.accounts")

PRIVATE_FIELDS = ("password_hash", "verification_code_hash", "verification_code_expires")

# (email, code) -> None; run after the response is sent
Dispatch = Callable[[str, str], None]


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    doc = serialize_doc(user)
    for field in PRIVATE_FIELDS:
        doc.pop(field, None)
    return doc


def new_verification_code() -> str:
    return f"{secrets.randbelow(10 ** 6):06d}"


class AccountService:
    def __init__(self, store: EntityStore, settings: Settings):
        self.store = store
        self.settings = settings

    def find_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        if not ObjectId.is_valid(user_id):
            return None
        return self.store.find_one("user", {"_id": ObjectId(user_id)})

    def _by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return self.store.find_one("user", {"email": email.lower()})

    def _issue_code(self) -> Tuple[str, Dict[str, Any]]:
        code = new_verification_code()
        expires = utcnow() + timedelta(minutes=self.settings.verification_code_ttl_min)
        return code, {"verification_code_hash": hash_password(code), "verification_code_expires": expires}

    def token_for(self, user: Dict[str, Any]) -> str:
        return create_token(user, self.settings.jwt_secret, self.settings.jwt_exp_min)

    def register(self, data: RegisterDTO, dispatch: Dispatch) -> Tuple[Dict[str, Any], str]:
        email = data.email.lower()
        if self._by_email(email):
            raise Conflict("Email already in use")
        code, pending = self._issue_code()
        user = User(name=data.name, email=email, password_hash=hash_password(data.password), role="user",
                    is_verified=False, **pending)
        try:
            user_id = self.store.create_document("user", user)
        except DuplicateKeyError:
            raise Conflict("Email already in use")
        dispatch(email, code)
        doc = self.find_user(user_id)
        logger.info("User %s registered", user_id)
        return public_user(doc), self.token_for(doc)

    def login(self, email: str, password: str) -> Tuple[Dict[str, Any], str]:
        user = self._by_email(email)
        if not user or not verify_password(password, user.get("password_hash", "")):
            raise Unauthorized("Invalid credentials")
        return public_user(user), self.token_for(user)

    def verify_email(self, email: str, code: str) -> Dict[str, Any]:
        user = self._by_email(email)
        if not user:
            raise NotFound("User not found")
        if user.get("is_verified"):
            return public_user(user)
        expires = user.get("verification_code_expires")
        if not user.get("verification_code_hash") or not expires:
            raise ValidationFailed("No verification code pending; request a new one")
        if as_utc(expires) < utcnow():
            raise ValidationFailed("Verification code expired; request a new one")
        if not verify_password(code, user["verification_code_hash"]):
            raise ValidationFailed("Invalid verification code")
        updated = self.store.update_by_id("user", user["_id"], {
            "is_verified": True,
            "verification_code_hash": None,
            "verification_code_expires": None,
        }, "User")
        logger.info("User %s verified", user["_id"])
        return public_user(updated)

    def resend_verification(self, email: str, dispatch: Dispatch) -> None:
        user = self._by_email(email)
        if not user:
            raise NotFound("User not found")
        if user.get("is_verified"):
            raise Conflict("Email already verified")
        code, pending = self._issue_code()
        self.store.update_by_id("user", user["_id"], pending, "User")
        dispatch(user["email"], code)

    def profile(self, principal: Principal) -> Dict[str, Any]:
        user = self.find_user(principal.user_id)
        if not user:
            raise NotFound("User not found")
        return public_user(user)

    def update_profile(self, principal: Principal, data: ProfileDTO) -> Dict[str, Any]:
        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        if not changes:
            raise ValidationFailed("No fields to update")
        if "email" in changes:
            changes["email"] = changes["email"].lower()
            other = self._by_email(changes["email"])
            if other and str(other["_id"]) != principal.user_id:
                raise Conflict("Email already in use")
        try:
            updated = self.store.update_by_id("user", principal.user_id, changes, "User")
        except DuplicateKeyError:
            raise Conflict("Email already in use")
        if not updated:
            raise NotFound("User not found")
        return public_user(updated)

    def count(self) -> int:
        return self.store.count_documents("user")
