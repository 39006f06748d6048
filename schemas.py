"""
Database Schemas for the Event Marketplace

MongoDB collections are defined below using Pydantic models. Each model is
stored in the collection named after it in plural form:

- users: organizers and suppliers
- otp_sessions: short-lived phone verification sessions
- events: organizer events with their embedded supplier roster and payment block
- bookings: a supplier's application to one event
"""

from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

UserType = Literal["organizer", "supplier"]
Gender = Literal["Male", "Female", "Other"]
OtpPurpose = Literal["registration", "password_reset"]
EventStatus = Literal["Draft", "Planning", "Confirmed", "Completed", "Cancelled"]
PaymentStatus = Literal["Pending", "Partial", "Completed"]
ServiceCategory = Literal["Breakfast", "Dinner", "Snacks", "Cocktails", "Lunch", "Mini Tifin", "High Tea", "Desserts"]

# Shared by Booking.status and the embedded roster slot
BookingStatus = Literal["Pending", "Confirmed", "Rejected", "Completed", "Cancelled"]

PHONE_PATTERN = r"^[0-9]{10}$"
TIME_PATTERN = r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$"


class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None


class User(BaseModel):
    full_name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    phone: str = Field(..., pattern=PHONE_PATTERN)
    password_hash: str = Field(..., description="BCrypt hash of password")
    user_type: UserType
    gender: Optional[Gender] = None
    dob: Optional[datetime] = None
    address: Optional[Address] = None
    profile_image: Optional[str] = None
    is_verified: bool = False
    is_active: bool = True
    # organizer
    company_name: Optional[str] = None
    # supplier
    services: List[str] = Field(default_factory=list)
    aadhar_number: Optional[str] = None
    aadhar_card: Optional[str] = Field(None, description="Path of the uploaded aadhar card")
    is_approved: bool = False


class OtpSession(BaseModel):
    contact: str
    session_id: str = Field(..., description="Opaque id issued by the OTP provider")
    purpose: OtpPurpose
    is_verified: bool = False
    verified_at: Optional[datetime] = None
    user_type: Optional[UserType] = None
    expires_at: datetime


class DressCodeOptions(BaseModel):
    premium: bool = False
    gold: bool = False
    silver: bool = False


class BookedSupplier(BaseModel):
    supplier_id: str
    booked_at: datetime
    status: BookingStatus = "Pending"


class Transaction(BaseModel):
    amount: float = Field(..., ge=0)
    payment_date: Optional[datetime] = None
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None


class Payment(BaseModel):
    total_amount: float = 0
    advance_paid: float = 0
    payment_status: PaymentStatus = "Pending"
    transactions: List[Transaction] = Field(default_factory=list)


class Event(BaseModel):
    event_name: str
    event_type: str
    location: str
    number_of_suppliers: int = Field(..., ge=1)
    event_date: datetime
    event_time: str
    services_needed: List[ServiceCategory] = Field(default_factory=list)
    dress_code_options: DressCodeOptions = Field(default_factory=DressCodeOptions)
    organizer_id: str = Field(..., description="Reference to users _id (organizer)")
    status: EventStatus = "Draft"
    budget: float = Field(0, ge=0)
    notes: str = ""
    booked_suppliers: List[BookedSupplier] = Field(default_factory=list)
    payment: Payment = Field(default_factory=Payment)


class Booking(BaseModel):
    event_id: str
    supplier_id: str
    organizer_id: str = Field(..., description="Copied from the event when the supplier applies")
    services: List[str] = Field(default_factory=list)
    proposed_price: Optional[float] = Field(None, ge=0)
    message: Optional[str] = None
    status: BookingStatus = "Pending"
    organizer_message: Optional[str] = None
    status_updated_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


# Summaries attached to reads in place of bare reference ids
USER_SUMMARY_FIELDS = ("full_name", "company_name", "services", "phone", "email", "profile_image")
EVENT_SUMMARY_FIELDS = ("event_name", "event_type", "location", "event_date", "event_time", "services_needed", "status")


def summary(doc: Optional[Dict], fields) -> Optional[Dict]:
    if not doc:
        return None
    out = {"id": str(doc["_id"])}
    for f in fields:
        if f in doc:
            out[f] = doc[f]
    return out
