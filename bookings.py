"""
Booking lifecycle.

A supplier's application lives twice: as a document in ``bookings`` and as a
slot in its event's ``booked_suppliers`` roster. Everything that creates an
application or changes its status goes through this module so the two stay in
agreement.

Status machine (shared by the booking and the slot)::

    Pending   -> Confirmed | Rejected | Cancelled
    Confirmed -> Completed | Cancelled
    Rejected, Completed, Cancelled are final
"""

import logging
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, get_documents, is_valid_id, page_meta, sanitize, to_obj_id, utcnow
from errors import (
    AlreadyApplied,
    BookingNotFound,
    Conflict,
    EventNotFound,
    InvalidStatus,
    InvalidTransition,
    NoAvailableSlots,
    ServiceMismatch,
    UserNotFound,
)
from events import available_filter
from schemas import EVENT_SUMMARY_FIELDS, USER_SUMMARY_FIELDS, Booking as BookingSchema, summary

logger = logging.getLogger(__name__)

COLLECTION = "bookings"

SETTABLE_STATUSES = ("Confirmed", "Rejected", "Completed", "Cancelled")
TRANSITIONS = {
    "Pending": {"Confirmed", "Rejected", "Cancelled"},
    "Confirmed": {"Completed", "Cancelled"},
    "Rejected": set(),
    "Completed": set(),
    "Cancelled": set(),
}
STATUS_TIMESTAMPS = {"Confirmed": "confirmed_at", "Completed": "completed_at", "Cancelled": "cancelled_at"}


def _find_event(db: Database, event_id: str) -> Dict:
    event = db["events"].find_one({"_id": to_obj_id(event_id)}) if is_valid_id(event_id) else None
    if not event:
        raise EventNotFound()
    return event


def apply_to_event(
    db: Database,
    event_id: str,
    supplier_id: str,
    proposed_price: Optional[float] = None,
    message: Optional[str] = None,
    services: Optional[List[str]] = None,
) -> Dict:
    """Create a Pending booking and its roster slot.

    Checks run in order and the first failure wins: the event exists, the
    supplier has not applied yet, a slot is free, and the supplier's services
    (if any are listed) overlap the event's needs.
    """
    event = _find_event(db, event_id)
    if db[COLLECTION].find_one({"event_id": event_id, "supplier_id": supplier_id}, {"_id": 1}):
        raise AlreadyApplied()
    limit = event["number_of_suppliers"]
    if len(event.get("booked_suppliers", [])) >= limit:
        raise NoAvailableSlots()

    supplier = db["users"].find_one({"_id": to_obj_id(supplier_id)})
    if not supplier:
        raise UserNotFound()
    supplier_services = supplier.get("services") or []
    if supplier_services and not set(supplier_services).intersection(event.get("services_needed") or []):
        raise ServiceMismatch()

    now = utcnow()
    # Capacity check and append in one write: slot index limit-1 must still be empty
    res = db["events"].update_one(
        {
            "_id": event["_id"],
            f"booked_suppliers.{limit - 1}": {"$exists": False},
            "booked_suppliers.supplier_id": {"$ne": supplier_id},
        },
        {
            "$push": {"booked_suppliers": {"supplier_id": supplier_id, "booked_at": now, "status": "Pending"}},
            "$set": {"updated_at": now},
        },
    )
    if res.modified_count == 0:
        current = _find_event(db, event_id)
        if any(s["supplier_id"] == supplier_id for s in current.get("booked_suppliers", [])):
            raise AlreadyApplied()
        raise NoAvailableSlots()

    booking = BookingSchema(
        event_id=event_id,
        supplier_id=supplier_id,
        organizer_id=event["organizer_id"],
        services=services or supplier_services,
        proposed_price=proposed_price,
        message=message,
        status="Pending",
        status_updated_at=now,
    )
    try:
        booking_id = create_document(db, COLLECTION, booking)
    except DuplicateKeyError:
        db["events"].update_one(
            {"_id": event["_id"]},
            {"$pull": {"booked_suppliers": {"supplier_id": supplier_id}}},
        )
        raise AlreadyApplied()

    logger.info(f"Supplier {supplier_id} applied to event {event_id} (booking {booking_id})")
    return get_booking(db, booking_id)


def update_application_status(
    db: Database,
    booking_id: str,
    organizer_id: str,
    new_status: str,
    organizer_message: Optional[str] = None,
) -> Dict:
    if new_status not in SETTABLE_STATUSES:
        raise InvalidStatus()
    booking = db[COLLECTION].find_one(
        {"_id": to_obj_id(booking_id), "organizer_id": organizer_id}
    ) if is_valid_id(booking_id) else None
    if not booking:
        raise BookingNotFound()

    current = booking["status"]
    if new_status not in TRANSITIONS[current]:
        raise InvalidTransition(f"Cannot change application from {current} to {new_status}")

    now = utcnow()
    changes: Dict[str, Any] = {"status": new_status, "status_updated_at": now, "updated_at": now}
    if new_status in STATUS_TIMESTAMPS:
        changes[STATUS_TIMESTAMPS[new_status]] = now
    if organizer_message is not None:
        changes["organizer_message"] = organizer_message

    # Compare-and-set on the status we validated against
    res = db[COLLECTION].update_one({"_id": booking["_id"], "status": current}, {"$set": changes})
    if res.modified_count == 0:
        raise Conflict("Application status was changed by another request")

    _sync_slot(db, booking, new_status)
    logger.info(f"Booking {booking_id} moved from {current} to {new_status}")
    return get_booking(db, booking_id)


def _sync_slot(db: Database, booking: Dict, status: str) -> None:
    event_oid = to_obj_id(booking["event_id"])
    res = db["events"].update_one(
        {"_id": event_oid, "booked_suppliers.supplier_id": booking["supplier_id"]},
        {"$set": {"booked_suppliers.$.status": status, "updated_at": utcnow()}},
    )
    if res.matched_count:
        return
    # Roster lost the slot: put it back so the event mirrors the booking again
    repaired = db["events"].update_one(
        {"_id": event_oid},
        {"$push": {"booked_suppliers": {
            "supplier_id": booking["supplier_id"],
            "booked_at": booking.get("created_at") or utcnow(),
            "status": status,
        }}},
    )
    if repaired.matched_count:
        logger.warning(f"Roster slot missing for booking {booking['_id']}; restored on event {booking['event_id']}")
    else:
        logger.warning(f"Event {booking['event_id']} of booking {booking['_id']} no longer exists")


def hydrate(db: Database, bookings: List[Dict]) -> List[Dict]:
    """Attach event, supplier and organizer summaries to booking documents."""
    event_ids = {b["event_id"] for b in bookings if is_valid_id(b["event_id"])}
    user_ids = {b[k] for b in bookings for k in ("supplier_id", "organizer_id") if is_valid_id(b[k])}
    events = {
        str(e["_id"]): e for e in db["events"].find({"_id": {"$in": [to_obj_id(i) for i in event_ids]}})
    } if event_ids else {}
    users = {
        str(u["_id"]): u for u in db["users"].find({"_id": {"$in": [to_obj_id(i) for i in user_ids]}})
    } if user_ids else {}
    out = []
    for b in bookings:
        d = sanitize(b)
        d["event"] = summary(events.get(b["event_id"]), EVENT_SUMMARY_FIELDS)
        d["supplier"] = summary(users.get(b["supplier_id"]), USER_SUMMARY_FIELDS)
        d["organizer"] = summary(users.get(b["organizer_id"]), USER_SUMMARY_FIELDS)
        out.append(d)
    return out


def get_booking(db: Database, booking_id: str) -> Dict:
    booking = db[COLLECTION].find_one({"_id": to_obj_id(booking_id)})
    if not booking:
        raise BookingNotFound()
    return hydrate(db, [booking])[0]


def get_booking_details(db: Database, booking_id: str, organizer_id: str) -> Dict:
    booking = db[COLLECTION].find_one(
        {"_id": to_obj_id(booking_id), "organizer_id": organizer_id}
    ) if is_valid_id(booking_id) else None
    if not booking:
        raise BookingNotFound()
    return hydrate(db, [booking])[0]


def list_event_applications(db: Database, event_id: str, organizer_id: str, status: Optional[str] = None):
    filter_q: Dict[str, Any] = {"event_id": event_id, "organizer_id": organizer_id}
    if status:
        filter_q["status"] = status
    return hydrate(db, get_documents(db, COLLECTION, filter_q, sort=[("created_at", DESCENDING)]))


def list_supplier_bookings(db: Database, supplier_id: str, status: Optional[str] = None, page: int = 1,
                           limit: int = 10):
    filter_q: Dict[str, Any] = {"supplier_id": supplier_id}
    if status:
        filter_q["status"] = status
    docs = get_documents(db, COLLECTION, filter_q, sort=[("created_at", DESCENDING)], page=page, limit=limit)
    total = db[COLLECTION].count_documents(filter_q)
    return hydrate(db, docs), page_meta(page, limit, total)


def organizer_bookings_overview(db: Database, organizer_id: str) -> Dict[str, Any]:
    bookings = hydrate(db, get_documents(db, COLLECTION, {"organizer_id": organizer_id},
                                         sort=[("created_at", DESCENDING)]))
    by_event: Dict[str, Dict[str, Any]] = {}
    for b in bookings:
        group = by_event.setdefault(b["event_id"], {
            "event_id": b["event_id"],
            "event_name": (b["event"] or {}).get("event_name"),
            "event_date": (b["event"] or {}).get("event_date"),
            "bookings": [],
            "total_bookings": 0,
            "pending_count": 0,
            "confirmed_count": 0,
        })
        group["bookings"].append(b)
        group["total_bookings"] += 1
        if b["status"] == "Pending":
            group["pending_count"] += 1
        elif b["status"] == "Confirmed":
            group["confirmed_count"] += 1
    return {
        "total_bookings": len(bookings),
        "pending_bookings": sum(1 for b in bookings if b["status"] == "Pending"),
        "confirmed_bookings": sum(1 for b in bookings if b["status"] == "Confirmed"),
        "rejected_bookings": sum(1 for b in bookings if b["status"] == "Rejected"),
        "bookings_by_event": list(by_event.values()),
        "all_bookings": bookings,
    }


def supplier_dashboard(db: Database, supplier_id: str) -> Dict[str, Any]:
    recent = get_documents(db, COLLECTION, {"supplier_id": supplier_id}, sort=[("created_at", DESCENDING)], limit=5)
    return {
        "total_bookings": db[COLLECTION].count_documents({"supplier_id": supplier_id}),
        "active_bookings": db[COLLECTION].count_documents(
            {"supplier_id": supplier_id, "status": {"$in": ["Pending", "Confirmed"]}}
        ),
        "available_events": db["events"].count_documents(available_filter()),
        "recent_bookings": hydrate(db, recent),
    }
