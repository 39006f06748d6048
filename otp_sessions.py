"""
OTP session store.

A session proves control of a phone number for one purpose. It is
issued when a code is sent, marked verified once the provider accepts the code,
and deleted by whichever flow it gated so it cannot be replayed.
"""

import logging
from datetime import timedelta
from typing import Dict, Optional

from pymongo.database import Database

from config import OTP_EXPIRY_MINUTES
from database import create_document, utcnow
from errors import InvalidCode, SessionExpired, SessionNotFound
from otp_provider import OtpDispatch, OtpProvider
from schemas import OtpSession

logger = logging.getLogger(__name__)

COLLECTION = "otp_sessions"


def _expired(session: Dict) -> bool:
    return session["expires_at"] < utcnow()


def issue_session(
    db: Database,
    provider: OtpProvider,
    contact: str,
    purpose: str,
    user_type: Optional[str] = None,
) -> OtpDispatch:
    """Send a code and replace any earlier session for the same contact and purpose."""
    dispatch = provider.send_code(contact, purpose)

    db[COLLECTION].delete_many({"contact": contact, "purpose": purpose})
    session = OtpSession(
        contact=contact,
        session_id=dispatch.session_id,
        purpose=purpose,
        user_type=user_type,
        expires_at=utcnow() + timedelta(minutes=OTP_EXPIRY_MINUTES),
    )
    create_document(db, COLLECTION, session)
    logger.info(f"OTP session issued for {contact} ({purpose})")
    return dispatch


def verify_session(db: Database, provider: OtpProvider, session_id: str, contact: str, purpose: str, code: str) -> Dict:
    if not provider.verify_code(session_id, code):
        raise InvalidCode()

    session = db[COLLECTION].find_one({"session_id": session_id, "contact": contact, "purpose": purpose})
    if not session:
        raise SessionNotFound()
    if _expired(session):
        db[COLLECTION].delete_one({"_id": session["_id"]})
        raise SessionExpired()

    now = utcnow()
    db[COLLECTION].update_one(
        {"_id": session["_id"]},
        {"$set": {"is_verified": True, "verified_at": now, "updated_at": now}},
    )
    session.update(is_verified=True, verified_at=now)
    logger.info(f"OTP session verified for {contact} ({purpose})")
    return session


def find_verified_session(db: Database, session_id: str, contact: str, purpose: str) -> Dict:
    session = db[COLLECTION].find_one(
        {"session_id": session_id, "contact": contact, "purpose": purpose, "is_verified": True}
    )
    if not session:
        raise SessionNotFound("Please verify your OTP first")
    if _expired(session):
        db[COLLECTION].delete_one({"_id": session["_id"]})
        raise SessionExpired("OTP session has expired. Please start again.")
    return session


def consume_session(db: Database, session: Dict) -> None:
    db[COLLECTION].delete_one({"_id": session["_id"]})


def session_status(db: Database, session_id: str, contact: str) -> Dict:
    session = db[COLLECTION].find_one({"session_id": session_id, "contact": contact})
    if not session:
        raise SessionNotFound("OTP session not found")
    return {
        "is_verified": session.get("is_verified", False),
        "is_expired": _expired(session),
        "expires_at": session["expires_at"],
        "created_at": session.get("created_at"),
        "purpose": session["purpose"],
        "user_type": session.get("user_type"),
    }
