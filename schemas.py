"""
Database Schemas for GBConnect

Each Pydantic model represents a MongoDB collection. Collection names are
listed in each docstring and in COLLECTIONS below.
"""
from typing import List, Optional, Literal
from datetime import datetime
from pydantic import BaseModel, Field, EmailStr

Role = Literal["tourist", "provider"]
ServiceStatus = Literal["draft", "active", "inactive"]
PricingModel = Literal["per_night_per_guest", "per_night_total", "per_booking"]
BookingStatus = Literal["pending", "confirmed", "cancelled", "completed"]
OtpPurpose = Literal["signup", "password_reset"]
NotificationType = Literal["booking", "message", "review", "payment"]


class User(BaseModel):
    """
    Tourists and providers.
    Collection: "users"
    """
    email: EmailStr = Field(..., description="Unique, lower-cased email address")
    password: str = Field(..., description="bcrypt hash")
    role: Role = Field("tourist")
    name: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[str] = None
    avatar: Optional[str] = Field(None, description="Profile image URL")
    website: Optional[str] = None
    bio: Optional[str] = None
    email_verified: bool = False


class Service(BaseModel):
    """
    Listings created by providers.
    Collection: "services"
    """
    title: str
    description: str
    price: float = Field(..., ge=0)
    images: List[str] = Field(default_factory=list)
    category: str = ""
    location: str = ""
    amenities: List[str] = Field(default_factory=list)
    provider_id: str = Field(..., description="Owner user id (ObjectId as string)")
    status: ServiceStatus = "draft"
    pricing_model: PricingModel = "per_night_per_guest"
    service_fee_rate: Optional[float] = Field(None, ge=0, le=1)
    tax_rate: Optional[float] = Field(None, ge=0, le=1)
    rating: float = 0.0
    review_count: int = 0


class ServiceSnapshot(BaseModel):
    """Service fields frozen onto a booking at booking time."""
    title: str
    price: float
    location: str = ""
    category: str = ""
    provider_id: str
    images: List[str] = Field(default_factory=list)
    pricing_model: PricingModel = "per_night_per_guest"
    service_fee_rate: float
    tax_rate: float


class Booking(BaseModel):
    """
    Reservations made by tourists.
    Collection: "bookings"
    """
    service_id: str
    user_id: str
    provider_id: str
    check_in: datetime
    check_out: datetime
    guests: int = Field(..., ge=1)
    status: BookingStatus = "pending"
    nights: int = Field(..., ge=1)
    subtotal: float
    service_fee: float
    taxes: float
    total_price: float
    service_snapshot: ServiceSnapshot


class Review(BaseModel):
    """
    Collection: "reviews"
    """
    service_id: str
    user_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: str
    user_name: Optional[str] = None
    user_avatar: Optional[str] = None


class EmailOtp(BaseModel):
    """
    One-time codes for signup verification and password reset.
    Collection: "emailOtps"
    """
    email: EmailStr
    otp: str = Field(..., min_length=6, max_length=6)
    purpose: OtpPurpose
    expires_at: datetime
    used: bool = Field(False, description="Code has been verified")
    consumed: bool = Field(False, description="Code has been spent by a password reset")


class Notification(BaseModel):
    """
    Collection: "notifications"
    """
    user_id: str
    type: NotificationType
    title: str
    message: str
    action_url: Optional[str] = None
    is_read: bool = False


class Message(BaseModel):
    """
    Direct messages between two users.
    Collection: "messages"
    """
    sender_id: str
    recipient_id: str
    content: str
    read: bool = False


COLLECTIONS = {
    "users": User,
    "services": Service,
    "bookings": Booking,
    "reviews": Review,
    "emailOtps": EmailOtp,
    "notifications": Notification,
    "messages": Message,
}
