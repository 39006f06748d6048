"""
Event registry.

Events belong to one organizer. Each carries an embedded ``booked_suppliers``
roster, which only the booking lifecycle in ``bookings.py`` writes to.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database

from database import create_document, get_documents, is_valid_id, page_meta, sanitize, to_obj_id, utcnow
from errors import EventNotFound, ValidationError
from schemas import USER_SUMMARY_FIELDS, Event as EventSchema, Payment, Transaction, summary

logger = logging.getLogger(__name__)

COLLECTION = "events"

REQUIRED_FIELDS = ("event_name", "event_type", "location", "number_of_suppliers", "event_date", "event_time")
IMMUTABLE_FIELDS = ("_id", "id", "organizer_id", "created_at", "booked_suppliers")
OPEN_STATUSES = ["Planning", "Confirmed"]
ACTIVE_STATUSES = ["Draft", "Planning", "Confirmed"]


def _owned(event_id: str, organizer_id: str) -> Dict[str, Any]:
    if not is_valid_id(event_id):
        raise EventNotFound()
    return {"_id": to_obj_id(event_id), "organizer_id": organizer_id}


def attach_suppliers(db: Database, events: List[Dict]) -> List[Dict]:
    """Replace roster supplier ids with supplier summaries, like a join."""
    ids = {s["supplier_id"] for e in events for s in e.get("booked_suppliers", [])}
    users = {}
    if ids:
        users = {
            str(u["_id"]): u
            for u in db["users"].find({"_id": {"$in": [to_obj_id(i) for i in ids if is_valid_id(i)]}})
        }
    out = []
    for e in events:
        d = sanitize(e)
        d["booked_suppliers"] = [
            {**slot, "supplier": summary(users.get(slot["supplier_id"]), USER_SUMMARY_FIELDS)}
            for slot in e.get("booked_suppliers", [])
        ]
        out.append(d)
    return out


def create_event(db: Database, organizer_id: str, fields: Dict[str, Any]) -> Dict:
    missing = [f for f in REQUIRED_FIELDS if fields.get(f) in (None, "")]
    if missing:
        raise ValidationError(
            "Event name, type, location, number of suppliers, date, and time are required",
            errors=[{"field": f, "message": "Field required"} for f in missing],
        )
    data = {k: v for k, v in fields.items() if v is not None and k not in IMMUTABLE_FIELDS}
    data["status"] = data.get("status") or "Draft"
    event = EventSchema(**data, organizer_id=organizer_id)
    event_id = create_document(db, COLLECTION, event)
    logger.info(f"Organizer {organizer_id} created event {event_id}")
    return sanitize(db[COLLECTION].find_one({"_id": to_obj_id(event_id)}))


def get_event(db: Database, event_id: str, organizer_id: str) -> Dict:
    event = db[COLLECTION].find_one(_owned(event_id, organizer_id))
    if not event:
        raise EventNotFound()
    return attach_suppliers(db, [event])[0]


def list_for_organizer(db: Database, organizer_id: str, status: Optional[str] = None, page: int = 1, limit: int = 10):
    filter_q: Dict[str, Any] = {"organizer_id": organizer_id}
    if status and status != "All":
        filter_q["status"] = status
    docs = get_documents(db, COLLECTION, filter_q, sort=[("created_at", DESCENDING)], page=page, limit=limit)
    total = db[COLLECTION].count_documents(filter_q)
    return attach_suppliers(db, docs), page_meta(page, limit, total)


def list_by_status(db: Database, organizer_id: str, status: str, page: int = 1, limit: int = 10):
    filter_q: Dict[str, Any] = {"organizer_id": organizer_id}
    if status.lower() != "all":
        filter_q["status"] = status
    docs = get_documents(db, COLLECTION, filter_q, sort=[("event_date", ASCENDING)], page=page, limit=limit)
    total = db[COLLECTION].count_documents(filter_q)
    return attach_suppliers(db, docs), page_meta(page, limit, total)


def available_filter(services: Optional[List[str]] = None, location: Optional[str] = None,
                     event_type: Optional[str] = None) -> Dict[str, Any]:
    filter_q: Dict[str, Any] = {"status": {"$in": OPEN_STATUSES}, "event_date": {"$gte": utcnow()}}
    if services:
        filter_q["services_needed"] = {"$in": services}
    if location:
        filter_q["location"] = {"$regex": re.escape(location), "$options": "i"}
    if event_type:
        filter_q["event_type"] = {"$regex": re.escape(event_type), "$options": "i"}
    return filter_q


def list_available_for_supplier(
    db: Database,
    supplier_id: str,
    services: Optional[List[str]] = None,
    location: Optional[str] = None,
    event_type: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
):
    """Open upcoming events the supplier can still apply to.

    Applied-to and full events are dropped from the page after pagination, so a
    page may hold fewer than ``limit`` events while ``total`` counts the whole
    candidate set.
    """
    filter_q = available_filter(services, location, event_type)
    docs = get_documents(db, COLLECTION, filter_q, sort=[("event_date", ASCENDING)], page=page, limit=limit)
    applied = set(db["bookings"].distinct("event_id", {"supplier_id": supplier_id}))
    available = [
        e for e in docs
        if str(e["_id"]) not in applied and len(e.get("booked_suppliers", [])) < e["number_of_suppliers"]
    ]
    total = db[COLLECTION].count_documents(filter_q)
    organizers = {
        str(u["_id"]): u
        for u in db["users"].find({"_id": {"$in": [to_obj_id(e["organizer_id"]) for e in available]}})
    } if available else {}
    out = []
    for e in available:
        d = sanitize(e)
        d["organizer"] = summary(organizers.get(e["organizer_id"]), USER_SUMMARY_FIELDS)
        out.append(d)
    return out, page_meta(page, limit, total)


def list_events_with_booking_status(db: Database, supplier_id: str) -> List[Dict]:
    bookings = {b["event_id"]: b for b in db["bookings"].find({"supplier_id": supplier_id})}
    events = get_documents(db, COLLECTION, {}, sort=[("created_at", DESCENDING)])
    out = []
    for e in events:
        d = sanitize(e)
        booking = bookings.get(d["id"])
        d["is_booked"] = booking is not None
        d["booking_status"] = booking["status"] if booking else None
        d["booking_id"] = str(booking["_id"]) if booking else None
        out.append(d)
    return out


def update_event(db: Database, event_id: str, organizer_id: str, fields: Dict[str, Any]) -> Dict:
    updates = {k: v for k, v in fields.items() if k not in IMMUTABLE_FIELDS}
    nulled = sorted(k for k, v in updates.items() if v is None)
    if nulled:
        raise ValidationError(
            "Event fields cannot be cleared",
            errors=[{"field": f, "message": "Field cannot be null"} for f in nulled],
        )
    query = _owned(event_id, organizer_id)
    if not db[COLLECTION].find_one(query, {"_id": 1}):
        raise EventNotFound()
    if updates:
        updates["updated_at"] = utcnow()
        db[COLLECTION].update_one(query, {"$set": updates})
    return get_event(db, event_id, organizer_id)


def delete_event(db: Database, event_id: str, organizer_id: str) -> int:
    """Delete the event and every booking that references it; returns the bookings removed."""
    res = db[COLLECTION].delete_one(_owned(event_id, organizer_id))
    if res.deleted_count == 0:
        raise EventNotFound()
    removed = db["bookings"].delete_many({"event_id": event_id}).deleted_count
    logger.info(f"Deleted event {event_id} and {removed} booking(s)")
    return removed


def record_payment(
    db: Database,
    event_id: str,
    organizer_id: str,
    total_amount: Optional[float] = None,
    advance_paid: Optional[float] = None,
    payment_status: Optional[str] = None,
    transaction: Optional[Transaction] = None,
) -> Dict:
    query = _owned(event_id, organizer_id)
    event = db[COLLECTION].find_one(query)
    if not event:
        raise EventNotFound()

    payment = Payment(**event.get("payment", {}))
    if total_amount is not None:
        payment.total_amount = total_amount
    if advance_paid is not None:
        payment.advance_paid = advance_paid
    if payment_status is not None:
        payment.payment_status = payment_status
    if payment.advance_paid > payment.total_amount:
        raise ValidationError("Advance paid cannot exceed the total amount")

    update: Dict[str, Any] = {
        "$set": {
            "payment.total_amount": payment.total_amount,
            "payment.advance_paid": payment.advance_paid,
            "payment.payment_status": payment.payment_status,
            "updated_at": utcnow(),
        }
    }
    if transaction is not None:
        txn = transaction.model_dump()
        txn["payment_date"] = txn["payment_date"] or utcnow()
        update["$push"] = {"payment.transactions": txn}
    db[COLLECTION].update_one(query, update)
    return get_event(db, event_id, organizer_id)


def aggregate_stats(db: Database, organizer_id: str) -> Dict[str, Any]:
    stats = list(db[COLLECTION].aggregate([
        {"$match": {"organizer_id": organizer_id}},
        {"$group": {"_id": "$status", "count": {"$sum": 1}, "total_budget": {"$sum": "$budget"}}},
    ]))
    return {
        "stats": [{"status": s["_id"], "count": s["count"], "total_budget": s["total_budget"]} for s in stats],
        "total_events": db[COLLECTION].count_documents({"organizer_id": organizer_id}),
        "upcoming_events": db[COLLECTION].count_documents({
            "organizer_id": organizer_id,
            "event_date": {"$gte": utcnow()},
            "status": {"$in": ACTIVE_STATUSES},
        }),
        "pending_applications": db["bookings"].count_documents({"organizer_id": organizer_id, "status": "Pending"}),
    }


def organizer_dashboard(db: Database, organizer_id: str) -> Dict[str, Any]:
    recent = db[COLLECTION].find(
        {"organizer_id": organizer_id}, {"event_name": 1, "event_date": 1, "status": 1}
    ).sort("created_at", DESCENDING).limit(5)
    return {
        "total_events": db[COLLECTION].count_documents({"organizer_id": organizer_id}),
        "active_events": db[COLLECTION].count_documents(
            {"organizer_id": organizer_id, "status": {"$in": ACTIVE_STATUSES}}
        ),
        "total_bookings": db["bookings"].count_documents({"organizer_id": organizer_id}),
        "recent_events": [sanitize(e) for e in recent],
    }
