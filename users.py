"""User directory: organizer and supplier accounts in the ``users`` collection."""

import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError as SchemaError
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, is_valid_id, sanitize, to_obj_id, utcnow
from errors import DuplicateField, UserNotFound, ValidationError
from schemas import User as UserSchema
from security import hash_password, verify_password

logger = logging.getLogger(__name__)

COLLECTION = "users"

# Never writable through the profile update path
PROTECTED_FIELDS = {"password", "password_hash", "user_type", "is_verified", "is_approved", "is_active"}
# Required on every account, so a profile update may change but not clear them
NON_NULL_FIELDS = {"full_name", "email", "services"}


def _duplicate_field(exc: DuplicateKeyError) -> str:
    key_value = (exc.details or {}).get("keyValue") or {}
    if key_value:
        return next(iter(key_value))
    return "email" if "email" in str(exc) else "phone"


def find_by_phone(db: Database, phone: str) -> Optional[Dict]:
    return db[COLLECTION].find_one({"phone": phone})


def find_by_email(db: Database, email: str) -> Optional[Dict]:
    return db[COLLECTION].find_one({"email": email.lower().strip()})


def find_by_id(db: Database, user_id: str) -> Optional[Dict]:
    if not is_valid_id(user_id):
        return None
    return db[COLLECTION].find_one({"_id": to_obj_id(user_id)})


def create_user(db: Database, password: str, **fields: Any) -> Dict:
    """Create an account; the password is stored only as a bcrypt hash."""
    email = fields["email"].lower().strip()
    if find_by_phone(db, fields["phone"]):
        raise DuplicateField("phone")
    if find_by_email(db, email):
        raise DuplicateField("email")

    try:
        user = UserSchema(**{**fields, "email": email, "password_hash": hash_password(password)})
    except SchemaError as exc:
        errors = [{"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]} for e in exc.errors()]
        raise ValidationError(errors=errors)
    try:
        user_id = create_document(db, COLLECTION, user)
    except DuplicateKeyError as exc:
        raise DuplicateField(_duplicate_field(exc))
    logger.info(f"Created {user.user_type} account {user_id}")
    return find_by_id(db, user_id)


def update_fields(db: Database, user_id: str, updates: Dict[str, Any]) -> Dict:
    blocked = sorted(PROTECTED_FIELDS.intersection(updates))
    if blocked:
        raise ValidationError(f"Field(s) cannot be updated here: {', '.join(blocked)}")
    nulled = sorted(f for f in NON_NULL_FIELDS if f in updates and updates[f] is None)
    if nulled:
        raise ValidationError(
            "Required profile fields cannot be cleared",
            errors=[{"field": f, "message": "Field cannot be null"} for f in nulled],
        )
    user = find_by_id(db, user_id)
    if not user:
        raise UserNotFound()

    changes = dict(updates)
    if "email" in changes:
        changes["email"] = changes["email"].lower().strip()
        other = find_by_email(db, changes["email"])
        if other and other["_id"] != user["_id"]:
            raise DuplicateField("email")
    if not changes:
        return user
    changes["updated_at"] = utcnow()
    try:
        db[COLLECTION].update_one({"_id": user["_id"]}, {"$set": changes})
    except DuplicateKeyError as exc:
        raise DuplicateField(_duplicate_field(exc))
    return find_by_id(db, user_id)


def validate_credential(user: Dict, candidate: str) -> bool:
    return verify_password(candidate, user.get("password_hash", ""))


def reset_password(db: Database, user_id: str, new_password: str) -> None:
    res = db[COLLECTION].update_one(
        {"_id": to_obj_id(user_id)},
        {"$set": {"password_hash": hash_password(new_password), "updated_at": utcnow()}},
    )
    if res.matched_count == 0:
        raise UserNotFound()
    logger.info(f"Password reset for user {user_id}")


def public_user(doc: Dict) -> Dict:
    """Response view of a user: no hash, role-specific fields only for that role."""
    u = sanitize(doc)
    u.pop("password_hash", None)
    if u.get("user_type") == "organizer":
        for f in ("services", "aadhar_number", "aadhar_card", "is_approved"):
            u.pop(f, None)
    else:
        u.pop("company_name", None)
    return u
