import logging
import os
import shutil
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pymongo.database import Database

import bookings
import database
import events
import otp_sessions
import users
from config import APP_ENV, CORS_ORIGINS, IS_PRODUCTION, LOG_LEVEL, UPLOAD_DIR
from database import ensure_indexes, get_db, utcnow
from errors import Conflict, InvalidCredentials, SessionNotFound, UserNotFound, ValidationError, register_exception_handlers
from otp_provider import OtpProvider, build_otp_provider, get_otp_provider
from schemas import (
    PHONE_PATTERN,
    TIME_PATTERN,
    Address,
    DressCodeOptions,
    EventStatus,
    Gender,
    OtpPurpose,
    PaymentStatus,
    ServiceCategory,
    Transaction,
    UserType,
)
from security import get_current_user, require_role, token_for

# Configure logging
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Event marketplace API starting up ({APP_ENV})")
    app.state.otp_provider = build_otp_provider()
    if database.db is not None:
        try:
            ensure_indexes(database.db)
        except Exception as e:
            logger.error(f"Failed to create MongoDB indexes: {e}")
    else:
        logger.warning("DATABASE_URL / DATABASE_NAME not set - database routes will fail")
    yield
    logger.info("Event marketplace API shutting down...")
    app.state.otp_provider.close()
    database.close_client()


# App and CORS
app = FastAPI(title="Event Marketplace API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)
register_exception_handlers(app, debug=not IS_PRODUCTION)

organizer_only = require_role("organizer")
supplier_only = require_role("supplier")


# Helpers

def ok(data: Any = None, message: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    body.update(extra)
    return body


def as_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def split_services(services: Optional[List[str]]) -> List[str]:
    out: List[str] = []
    for item in services or []:
        out.extend(s.strip() for s in item.split(",") if s.strip())
    return out


def save_upload(upload: Optional[UploadFile]) -> Optional[str]:
    if upload is None or not upload.filename:
        return None
    os.makedirs(UPLOAD_DIR, exist_ok=True)
    ext = os.path.splitext(upload.filename)[1].lower()
    path = os.path.join(UPLOAD_DIR, f"aadhar-{uuid.uuid4().hex}{ext}")
    with open(path, "wb") as out:
        shutil.copyfileobj(upload.file, out)
    return path


def discard_upload(path: Optional[str]) -> None:
    if path and os.path.exists(path):
        os.remove(path)


def reset_contact(db: Database, phone: Optional[str], email: Optional[str]) -> str:
    """Password reset sessions are keyed by the account's phone number."""
    if phone:
        return phone
    user = users.find_by_email(db, email or "")
    if not user:
        raise SessionNotFound()
    return user["phone"]


# Request/Response Models
class SendOtpRequest(BaseModel):
    phone: str = Field(..., pattern=PHONE_PATTERN)
    user_type: Optional[UserType] = None

class VerifyOtpRequest(BaseModel):
    session_id: str
    otp: str = Field(..., min_length=4, max_length=8)
    phone: str = Field(..., pattern=PHONE_PATTERN)

class OtpStatusRequest(BaseModel):
    session_id: str
    phone: str = Field(..., pattern=PHONE_PATTERN)

class OtpSendRequest(BaseModel):
    phone: str = Field(..., pattern=PHONE_PATTERN)
    purpose: OtpPurpose = "registration"
    user_type: Optional[UserType] = None

class OtpVerifyRequest(BaseModel):
    session_id: str
    otp: str = Field(..., min_length=4, max_length=8)
    phone: str = Field(..., pattern=PHONE_PATTERN)
    purpose: OtpPurpose = "registration"

class LoginRequest(BaseModel):
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    password: str = Field(..., min_length=1)

class ForgotPasswordRequest(BaseModel):
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    email: Optional[EmailStr] = None

class VerifyResetOtpRequest(BaseModel):
    session_id: str
    otp: str = Field(..., min_length=4, max_length=8)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    email: Optional[EmailStr] = None

class ResetPasswordRequest(BaseModel):
    session_id: str
    new_password: str = Field(..., min_length=6)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    email: Optional[EmailStr] = None

class ProfileUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    full_name: Optional[str] = Field(None, min_length=2, max_length=50)
    email: Optional[EmailStr] = None
    gender: Optional[Gender] = None
    dob: Optional[datetime] = None
    address: Optional[Address] = None
    profile_image: Optional[str] = None
    company_name: Optional[str] = None
    services: Optional[List[str]] = None
    aadhar_number: Optional[str] = None

class EventCreateRequest(BaseModel):
    event_name: str = Field(..., min_length=2, max_length=100)
    event_type: str = Field(..., min_length=2, max_length=50)
    location: str = Field(..., min_length=5, max_length=200)
    number_of_suppliers: int = Field(..., ge=1)
    event_date: datetime
    event_time: str = Field(..., pattern=TIME_PATTERN)
    services_needed: List[ServiceCategory] = Field(default_factory=list)
    dress_code_options: DressCodeOptions = Field(default_factory=DressCodeOptions)
    budget: float = Field(0, ge=0)
    notes: str = ""
    status: Optional[EventStatus] = None

    @field_validator("event_date")
    @classmethod
    def normalize_event_date(cls, v):
        return as_utc_naive(v)

class EventUpdateRequest(BaseModel):
    event_name: Optional[str] = Field(None, min_length=2, max_length=100)
    event_type: Optional[str] = Field(None, min_length=2, max_length=50)
    location: Optional[str] = Field(None, min_length=5, max_length=200)
    number_of_suppliers: Optional[int] = Field(None, ge=1)
    event_date: Optional[datetime] = None
    event_time: Optional[str] = Field(None, pattern=TIME_PATTERN)
    services_needed: Optional[List[ServiceCategory]] = None
    dress_code_options: Optional[DressCodeOptions] = None
    budget: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = None
    status: Optional[EventStatus] = None

    @field_validator("event_date")
    @classmethod
    def normalize_event_date(cls, v):
        return as_utc_naive(v)

class PaymentUpdateRequest(BaseModel):
    total_amount: Optional[float] = Field(None, ge=0)
    advance_paid: Optional[float] = Field(None, ge=0)
    payment_status: Optional[PaymentStatus] = None
    transaction: Optional[Transaction] = None

class ApplyRequest(BaseModel):
    proposed_price: Optional[float] = Field(None, ge=0)
    message: Optional[str] = None
    services: Optional[List[str]] = None

class BookEventRequest(ApplyRequest):
    event_id: str

class StatusUpdateRequest(BaseModel):
    status: str
    organizer_message: Optional[str] = None


# Auth Routes
@app.post("/api/auth/send-otp")
def send_otp(payload: SendOtpRequest, db: Database = Depends(get_db),
             provider: OtpProvider = Depends(get_otp_provider)):
    if users.find_by_phone(db, payload.phone):
        raise Conflict("Phone number already registered")
    dispatch = otp_sessions.issue_session(db, provider, payload.phone, "registration", payload.user_type)
    extra = {"otp": dispatch.code} if dispatch.code and not IS_PRODUCTION else {}
    return ok(message="OTP sent to your mobile number", session_id=dispatch.session_id, **extra)

# Same as send-otp; kept as its own route for clients that call it explicitly
@app.post("/api/auth/resend-otp")
def resend_otp(payload: SendOtpRequest, db: Database = Depends(get_db),
               provider: OtpProvider = Depends(get_otp_provider)):
    return send_otp(payload, db, provider)

@app.post("/api/auth/verify-otp")
def verify_otp(payload: VerifyOtpRequest, db: Database = Depends(get_db),
               provider: OtpProvider = Depends(get_otp_provider)):
    session = otp_sessions.verify_session(db, provider, payload.session_id, payload.phone, "registration", payload.otp)
    return ok(
        message="Phone number verified successfully",
        phone_verified=True,
        session_id=payload.session_id,
        user_type=session.get("user_type"),
    )

@app.post("/api/auth/otp-status")
def otp_status(payload: OtpStatusRequest, db: Database = Depends(get_db)):
    return ok(otp_sessions.session_status(db, payload.session_id, payload.phone))

def _signup(db: Database, user_type: str, session_id: str, phone: str, password: str,
            aadhar_card: Optional[UploadFile] = None, **fields: Any):
    session = otp_sessions.find_verified_session(db, session_id, phone, "registration")
    if session.get("user_type") and session["user_type"] != user_type:
        raise ValidationError(f"This phone number was verified for a {session['user_type']} account")
    # Written only once the session checks out, and removed again if the account is refused
    card_path = save_upload(aadhar_card)
    try:
        user = users.create_user(
            db, password, phone=phone, user_type=user_type, is_verified=True, aadhar_card=card_path, **fields
        )
    except Exception:
        discard_upload(card_path)
        raise
    otp_sessions.consume_session(db, session)
    return ok(
        message=f"{user_type.capitalize()} registered successfully!",
        token=token_for(user),
        user=users.public_user(user),
    )

@app.post("/api/auth/organizer/signup", status_code=201)
def organizer_signup(
    phone: str = Form(...),
    session_id: str = Form(...),
    full_name: str = Form(...),
    email: str = Form(...),
    password: str = Form(...),
    company_name: Optional[str] = Form(None),
    gender: Optional[str] = Form(None),
    aadhar_card: Optional[UploadFile] = File(None),
    db: Database = Depends(get_db),
):
    return _signup(
        db, "organizer", session_id, phone, password, aadhar_card,
        full_name=full_name.strip(), email=email, company_name=company_name, gender=gender,
    )

@app.post("/api/auth/supplier/signup", status_code=201)
def supplier_signup(
    phone: str = Form(...),
    session_id: str = Form(...),
    full_name: str = Form(...),
    email: str = Form(...),
    password: str = Form(...),
    services: Optional[List[str]] = Form(None),
    aadhar_number: Optional[str] = Form(None),
    gender: Optional[str] = Form(None),
    aadhar_card: Optional[UploadFile] = File(None),
    db: Database = Depends(get_db),
):
    # Suppliers may log in straight away; there is no approval queue
    return _signup(
        db, "supplier", session_id, phone, password, aadhar_card,
        full_name=full_name.strip(), email=email, services=split_services(services),
        aadhar_number=aadhar_number, gender=gender, is_approved=True,
    )

@app.post("/api/auth/login")
def login(payload: LoginRequest, db: Database = Depends(get_db)):
    if not payload.phone and not payload.email:
        raise ValidationError("Phone/Email and password are required")
    user = users.find_by_phone(db, payload.phone) if payload.phone else users.find_by_email(db, payload.email)
    if not user or not users.validate_credential(user, payload.password):
        raise InvalidCredentials()
    if not user.get("is_active", True):
        raise ValidationError("Account is deactivated. Please contact support.")
    return ok(message="Login successful", token=token_for(user), user=users.public_user(user))

@app.post("/api/auth/forgot-password")
def forgot_password(payload: ForgotPasswordRequest, db: Database = Depends(get_db),
                    provider: OtpProvider = Depends(get_otp_provider)):
    if not payload.phone and not payload.email:
        raise ValidationError("Phone number or email is required")
    user = users.find_by_phone(db, payload.phone) if payload.phone else users.find_by_email(db, payload.email)
    if not user:
        # Same answer whether or not the account exists
        return ok(message="If the account exists, a reset OTP has been sent")
    dispatch = otp_sessions.issue_session(db, provider, user["phone"], "password_reset")
    extra = {"otp": dispatch.code} if dispatch.code and not IS_PRODUCTION else {}
    return ok(message="If the account exists, a reset OTP has been sent", session_id=dispatch.session_id, **extra)

@app.post("/api/auth/verify-reset-otp")
def verify_reset_otp(payload: VerifyResetOtpRequest, db: Database = Depends(get_db),
                     provider: OtpProvider = Depends(get_otp_provider)):
    if not payload.phone and not payload.email:
        raise ValidationError("Session ID, OTP, and phone/email are required")
    contact = reset_contact(db, payload.phone, payload.email)
    otp_sessions.verify_session(db, provider, payload.session_id, contact, "password_reset", payload.otp)
    return ok(message="OTP verified successfully", session_id=payload.session_id)

@app.post("/api/auth/reset-password")
def reset_password(payload: ResetPasswordRequest, db: Database = Depends(get_db)):
    if not payload.phone and not payload.email:
        raise ValidationError("Session ID, new password, and phone/email are required")
    contact = reset_contact(db, payload.phone, payload.email)
    session = otp_sessions.find_verified_session(db, payload.session_id, contact, "password_reset")
    user = users.find_by_phone(db, contact)
    if not user:
        raise UserNotFound()
    users.reset_password(db, str(user["_id"]), payload.new_password)
    otp_sessions.consume_session(db, session)
    return ok(message="Password reset successfully")

@app.get("/api/auth/profile")
def get_profile(current_user=Depends(get_current_user)):
    return ok(users.public_user(current_user))

@app.put("/api/auth/profile")
def update_profile(payload: ProfileUpdateRequest, current_user=Depends(get_current_user),
                   db: Database = Depends(get_db)):
    updates = payload.model_dump(exclude_unset=True)
    updated = users.update_fields(db, current_user["id"], updates)
    return ok(users.public_user(updated), message="Profile updated successfully")


# OTP routes for any purpose; the auth flows above wrap the same session store
@app.post("/api/otp/send")
def otp_send(payload: OtpSendRequest, db: Database = Depends(get_db),
             provider: OtpProvider = Depends(get_otp_provider)):
    dispatch = otp_sessions.issue_session(db, provider, payload.phone, payload.purpose, payload.user_type)
    extra = {"otp": dispatch.code} if dispatch.code and not IS_PRODUCTION else {}
    return ok(message="OTP sent successfully", session_id=dispatch.session_id, **extra)

@app.post("/api/otp/verify")
def otp_verify(payload: OtpVerifyRequest, db: Database = Depends(get_db),
               provider: OtpProvider = Depends(get_otp_provider)):
    otp_sessions.verify_session(db, provider, payload.session_id, payload.phone, payload.purpose, payload.otp)
    return ok(message="OTP verified successfully", session_id=payload.session_id)


# Event Routes
@app.post("/api/events", status_code=201)
def create_event(payload: EventCreateRequest, current_user=Depends(organizer_only), db: Database = Depends(get_db)):
    event = events.create_event(db, current_user["id"], payload.model_dump())
    return ok(event, message="Event created successfully")

@app.get("/api/events")
def list_events(
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user=Depends(organizer_only),
    db: Database = Depends(get_db),
):
    data, pagination = events.list_for_organizer(db, current_user["id"], status, page, limit)
    return ok(data, pagination=pagination)

@app.get("/api/events/stats")
def event_stats(current_user=Depends(organizer_only), db: Database = Depends(get_db)):
    return ok(events.aggregate_stats(db, current_user["id"]))

@app.get("/api/events/status/{status}")
def events_by_status(
    status: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user=Depends(organizer_only),
    db: Database = Depends(get_db),
):
    data, pagination = events.list_by_status(db, current_user["id"], status, page, limit)
    return ok(data, pagination=pagination)

@app.get("/api/events/available/events")
def available_events(
    services: Optional[str] = None,
    location: Optional[str] = None,
    event_type: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user=Depends(supplier_only),
    db: Database = Depends(get_db),
):
    data, pagination = events.list_available_for_supplier(
        db, current_user["id"], split_services([services] if services else None), location, event_type, page, limit
    )
    return ok(data, pagination=pagination)

@app.post("/api/events/book", status_code=201)
def book_event(payload: BookEventRequest, current_user=Depends(supplier_only), db: Database = Depends(get_db)):
    booking = bookings.apply_to_event(
        db, payload.event_id, current_user["id"], payload.proposed_price, payload.message, payload.services
    )
    return ok(booking, message="Successfully applied to the event")

@app.get("/api/events/applications/{event_id}")
def event_applications(event_id: str, status: Optional[str] = None, current_user=Depends(organizer_only),
                       db: Database = Depends(get_db)):
    return ok(bookings.list_event_applications(db, event_id, current_user["id"], status))

@app.put("/api/events/application/{booking_id}/status")
def update_application_status(booking_id: str, payload: StatusUpdateRequest, current_user=Depends(organizer_only),
                              db: Database = Depends(get_db)):
    booking = bookings.update_application_status(
        db, booking_id, current_user["id"], payload.status, payload.organizer_message
    )
    return ok(booking, message=f"Application {payload.status.lower()} successfully")

@app.get("/api/events/supplier/bookings")
def supplier_event_bookings(
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    current_user=Depends(supplier_only),
    db: Database = Depends(get_db),
):
    data, pagination = bookings.list_supplier_bookings(db, current_user["id"], status, page, limit)
    return ok(data, pagination=pagination)

@app.get("/api/events/{event_id}")
def get_event(event_id: str, current_user=Depends(organizer_only), db: Database = Depends(get_db)):
    return ok(events.get_event(db, event_id, current_user["id"]))

@app.put("/api/events/{event_id}")
def update_event(event_id: str, payload: EventUpdateRequest, current_user=Depends(organizer_only),
                 db: Database = Depends(get_db)):
    event = events.update_event(db, event_id, current_user["id"], payload.model_dump(exclude_unset=True))
    return ok(event, message="Event updated successfully")

@app.delete("/api/events/{event_id}")
def delete_event(event_id: str, current_user=Depends(organizer_only), db: Database = Depends(get_db)):
    removed = events.delete_event(db, event_id, current_user["id"])
    return ok(message="Event deleted successfully", deleted_bookings=removed)

@app.put("/api/events/{event_id}/payment")
def update_event_payment(event_id: str, payload: PaymentUpdateRequest, current_user=Depends(organizer_only),
                         db: Database = Depends(get_db)):
    event = events.record_payment(
        db, event_id, current_user["id"],
        total_amount=payload.total_amount,
        advance_paid=payload.advance_paid,
        payment_status=payload.payment_status,
        transaction=payload.transaction,
    )
    return ok(event, message="Payment information updated successfully")


# Organizer routes
@app.get("/api/organizer/dashboard")
def organizer_dashboard(current_user=Depends(organizer_only), db: Database = Depends(get_db)):
    return ok(events.organizer_dashboard(db, current_user["id"]))

@app.post("/api/organizer/events", status_code=201)
def organizer_create_event(payload: EventCreateRequest, current_user=Depends(organizer_only),
                           db: Database = Depends(get_db)):
    return create_event(payload, current_user, db)

@app.get("/api/organizer/events")
def organizer_events(current_user=Depends(organizer_only), db: Database = Depends(get_db)):
    data, _ = events.list_for_organizer(db, current_user["id"], limit=0)
    return ok(data)

@app.get("/api/organizer/events/{event_id}/suppliers")
def organizer_event_suppliers(event_id: str, current_user=Depends(organizer_only), db: Database = Depends(get_db)):
    return ok(bookings.list_event_applications(db, event_id, current_user["id"]))

@app.get("/api/organizer/bookings")
def organizer_bookings(current_user=Depends(organizer_only), db: Database = Depends(get_db)):
    return ok(bookings.organizer_bookings_overview(db, current_user["id"]))

@app.get("/api/organizer/bookings/{booking_id}")
def organizer_booking_details(booking_id: str, current_user=Depends(organizer_only), db: Database = Depends(get_db)):
    return ok(bookings.get_booking_details(db, booking_id, current_user["id"]))

@app.put("/api/organizer/bookings/{booking_id}/status")
def organizer_update_booking_status(booking_id: str, payload: StatusUpdateRequest,
                                    current_user=Depends(organizer_only), db: Database = Depends(get_db)):
    booking = bookings.update_application_status(
        db, booking_id, current_user["id"], payload.status, payload.organizer_message
    )
    return ok(booking, message=f"Booking {payload.status.lower()} successfully")


# Supplier routes
@app.get("/api/supplier/dashboard")
def supplier_dashboard(current_user=Depends(supplier_only), db: Database = Depends(get_db)):
    return ok(bookings.supplier_dashboard(db, current_user["id"]))

@app.get("/api/supplier/events")
def supplier_events(current_user=Depends(supplier_only), db: Database = Depends(get_db)):
    return ok(events.list_events_with_booking_status(db, current_user["id"]))

@app.post("/api/supplier/events/{event_id}/book", status_code=201)
def supplier_book_event(event_id: str, payload: ApplyRequest, current_user=Depends(supplier_only),
                        db: Database = Depends(get_db)):
    booking = bookings.apply_to_event(
        db, event_id, current_user["id"], payload.proposed_price, payload.message, payload.services
    )
    return ok(booking, message="Event booked successfully")

@app.get("/api/supplier/bookings")
def supplier_bookings(current_user=Depends(supplier_only), db: Database = Depends(get_db)):
    data, _ = bookings.list_supplier_bookings(db, current_user["id"], limit=0)
    return ok(data)


# Utility endpoints
@app.get("/")
def root():
    return {"message": "Event Marketplace API running"}

@app.get("/health")
def health():
    return {"status": "ok"}

@app.get("/api/health")
def api_health():
    return ok(message="Server is running successfully", timestamp=utcnow().isoformat() + "Z")

@app.get("/api/test-db")
def test_database():
    try:
        db = get_db()
        collections = db.list_collection_names()
        return ok(database={"connected": True, "name": db.name, "collections": collections[:10]})
    except Exception as e:
        logger.warning(f"Database check failed: {e}")
        return {"success": False, "database": {"connected": False}}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
