import os
import re
import math
import logging
import secrets
import smtplib
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Dict, Any, Literal

from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from pydantic import BaseModel, Field, EmailStr
from bson import ObjectId
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import db, create_document, get_documents, prepare_database
from logging_config import setup_logging
from mailer import send_otp_email
from schemas import (
    COLLECTIONS, Role, ServiceStatus, PricingModel, BookingStatus, OtpPurpose,
    User, Service, ServiceSnapshot, Booking, Review, EmailOtp, Notification, Message,
)

setup_logging()
logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "dev_secret")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24 * 7)))
OTP_TTL_MINUTES = int(os.getenv("OTP_TTL_MINUTES", "10"))
SERVICE_FEE_RATE = float(os.getenv("SERVICE_FEE_RATE", "0.1"))
TAX_RATE = float(os.getenv("TAX_RATE", "0.05"))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

app = FastAPI(title="GBConnect API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup() -> None:
    prepare_database()


# ---------------------------
# Error responses
# ---------------------------

@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    details = [
        {
            "field": ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query")),
            "message": err.get("msg", ""),
        }
        for err in errors
    ]
    missing = any(err.get("type") == "missing" for err in errors)
    message = "Missing required fields" if missing else "Invalid request"
    return JSONResponse({"error": message, "details": details}, status_code=400)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse({"error": "Internal server error"}, status_code=500)


# ---------------------------
# Utility helpers
# ---------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # pymongo hands back naive datetimes that are already UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_object_id(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid ID format")


def id_variants(id_str: str) -> List[Any]:
    """Both stored forms of a reference id: string and legacy ObjectId."""
    if not ObjectId.is_valid(id_str):
        return [id_str]
    oid = ObjectId(id_str)
    return [str(oid), oid]


def _plain(value: Any) -> Any:
    if isinstance(value, datetime):
        return as_utc(value).isoformat()
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return serialize(value)
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def serialize(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    d: Dict[str, Any] = {}
    for k, v in doc.items():
        if k == "password":
            continue
        if k == "_id":
            d["id"] = str(v)
            continue
        d[k] = _plain(v)
    return d


def money(value: float) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def compute_booking_price(service: Dict[str, Any], check_in: datetime, check_out: datetime,
                          guests: int) -> Dict[str, Any]:
    """Price a stay against a service document.

    Nights are counted by started 24h periods, with a minimum of one.
    Fee and tax rates come from the service, falling back to the
    configured defaults.
    """
    seconds = (check_out - check_in).total_seconds()
    nights = max(1, math.ceil(seconds / 86400))
    base_price = float(service.get("price") or 0)
    pricing_model = service.get("pricing_model") or "per_night_per_guest"

    if pricing_model == "per_night_total":
        subtotal = base_price * nights
    elif pricing_model == "per_booking":
        subtotal = base_price
    else:
        subtotal = base_price * nights * guests
    subtotal = money(subtotal)

    fee_rate = service.get("service_fee_rate")
    fee_rate = SERVICE_FEE_RATE if fee_rate is None else float(fee_rate)
    tax_rate = service.get("tax_rate")
    tax_rate = TAX_RATE if tax_rate is None else float(tax_rate)

    service_fee = money(subtotal * fee_rate)
    taxes = money(subtotal * tax_rate)
    return {
        "nights": nights,
        "pricing_model": pricing_model,
        "subtotal": subtotal,
        "service_fee": service_fee,
        "taxes": taxes,
        "total_price": money(subtotal + service_fee + taxes),
        "service_fee_rate": fee_rate,
        "tax_rate": tax_rate,
    }


def notify(user_id: str, type_: str, title: str, message: str, action_url: Optional[str] = None) -> None:
    create_document("notifications", Notification(
        user_id=str(user_id), type=type_, title=title, message=message, action_url=action_url,
    ))


def users_by_id(user_ids) -> Dict[str, Dict[str, Any]]:
    oids = [ObjectId(u) for u in set(str(u) for u in user_ids) if ObjectId.is_valid(u)]
    if not oids:
        return {}
    return {str(u["_id"]): u for u in db["users"].find({"_id": {"$in": oids}})}


def services_by_id(service_ids) -> Dict[str, Dict[str, Any]]:
    oids = [ObjectId(s) for s in set(str(s) for s in service_ids) if ObjectId.is_valid(s)]
    if not oids:
        return {}
    return {str(s["_id"]): s for s in db["services"].find({"_id": {"$in": oids}})}


# ---------------------------
# Auth helpers
# ---------------------------

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    if not hashed_password:
        return False
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        return False


def create_access_token(user: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    expire = utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "role": user.get("role"),
        "exp": expire,
    }
    return jwt.encode(to_encode, JWT_SECRET, algorithm=ALGORITHM)


def get_current_user(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    if not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Invalid auth scheme")
    token = authorization.split(" ", 1)[1].strip()
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    user_id = payload.get("sub")
    if not user_id or not ObjectId.is_valid(user_id):
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db["users"].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return serialize(user)


def require_provider(current=Depends(get_current_user)) -> Dict[str, Any]:
    if current.get("role") != "provider":
        raise HTTPException(status_code=403, detail="Only providers can perform this action")
    return current


def issue_otp(email: str, purpose: str) -> str:
    """Store a fresh 6-digit code, discarding earlier unverified ones."""
    db["emailOtps"].delete_many({"email": email, "purpose": purpose, "used": False})
    otp = str(secrets.randbelow(900000) + 100000)
    create_document("emailOtps", EmailOtp(
        email=email,
        otp=otp,
        purpose=purpose,
        expires_at=utcnow() + timedelta(minutes=OTP_TTL_MINUTES),
    ))
    logger.info("Issued %s OTP for %s", purpose, email)
    return otp


def deliver_otp(email: str, otp: str, purpose: str) -> bool:
    try:
        return send_otp_email(email, otp, purpose, OTP_TTL_MINUTES)
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Failed to send %s OTP to %s: %s", purpose, email, exc)
        return False


# ---------------------------
# Models (requests/responses)
# ---------------------------

class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Role
    name: Optional[str] = None
    phone: Optional[str] = None
    location: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class EmailRequest(BaseModel):
    email: EmailStr


class ResendOtpRequest(EmailRequest):
    purpose: OtpPurpose = "signup"


class VerifyOtpRequest(BaseModel):
    email: EmailStr
    otp: str
    purpose: OtpPurpose = "password_reset"


class ResetPasswordRequest(BaseModel):
    email: EmailStr
    otp: str
    password: str = Field(..., min_length=6)


class ProfileUpdateRequest(BaseModel):
    name: Optional[str] = None
    avatar: Optional[str] = None
    location: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    bio: Optional[str] = None


class ServiceRequest(BaseModel):
    title: str
    description: str
    price: float = Field(..., ge=0)
    images: List[str] = []
    category: str = ""
    location: str = ""
    amenities: List[str] = []
    status: ServiceStatus = "draft"
    pricing_model: PricingModel = "per_night_per_guest"
    service_fee_rate: Optional[float] = Field(None, ge=0, le=1)
    tax_rate: Optional[float] = Field(None, ge=0, le=1)


class ReviewRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str


class BookingCreateRequest(BaseModel):
    service_id: str
    check_in: datetime
    check_out: datetime
    guests: int = Field(..., ge=1)
    status: Literal["pending", "confirmed"] = "pending"


class BookingStatusUpdate(BaseModel):
    status: BookingStatus


class MessageRequest(BaseModel):
    recipient_id: str
    content: str


BOOKING_TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"cancelled", "completed"},
    "cancelled": set(),
    "completed": set(),
}

SERVICE_SORTS = {
    "recommended": [("rating", -1), ("review_count", -1), ("created_at", -1)],
    "price_asc": [("price", 1)],
    "price_desc": [("price", -1)],
    "rating": [("rating", -1)],
    "newest": [("created_at", -1), ("_id", -1)],
}


# ---------------------------
# Health & Utility
# ---------------------------
@app.get("/")
def read_root():
    return {"message": "GBConnect API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = db.name
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️ Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️ Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


@app.get("/schema")
def get_schema_models():
    return {
        "models": [
            {"name": model.__name__, "collection": name, "fields": list(model.model_fields.keys())}
            for name, model in COLLECTIONS.items()
        ]
    }


# ---------------------------
# Authentication
# ---------------------------
@app.post("/api/auth/signup", status_code=201)
def signup(payload: SignupRequest):
    email = payload.email.lower()
    if db["users"].find_one({"email": email}):
        raise HTTPException(status_code=409, detail="User already exists")
    user = User(
        email=email,
        password=hash_password(payload.password),
        role=payload.role,
        name=payload.name,
        phone=payload.phone,
        location=payload.location,
    )
    try:
        user_id = create_document("users", user)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="User already exists")
    logger.info("Registered %s account %s", payload.role, user_id)

    otp = issue_otp(email, "signup")
    otp_sent = deliver_otp(email, otp, "signup")
    created = db["users"].find_one({"_id": ObjectId(user_id)})
    return {
        "message": "User registered successfully",
        "user": serialize(created),
        "token": create_access_token(created),
        "otp_sent": otp_sent,
    }


@app.post("/api/auth/login")
def login(payload: LoginRequest):
    user = db["users"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password")):
        logger.info("Failed login for %s", payload.email)
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"token": create_access_token(user), "user": serialize(user)}


@app.get("/api/auth/me")
def me(current=Depends(get_current_user)):
    return current


@app.post("/api/auth/forgot-password")
def forgot_password(payload: EmailRequest):
    email = payload.email.lower()
    if not db["users"].find_one({"email": email}):
        raise HTTPException(status_code=404, detail="No user found with this email")
    otp = issue_otp(email, "password_reset")
    if not deliver_otp(email, otp, "password_reset"):
        raise HTTPException(status_code=500, detail="Failed to send OTP")
    return {"message": "OTP sent to your email"}


@app.post("/api/auth/resend-otp")
def resend_otp(payload: ResendOtpRequest):
    email = payload.email.lower()
    user = db["users"].find_one({"email": email})
    if not user:
        raise HTTPException(status_code=404, detail="No user found with this email")
    if payload.purpose == "signup" and user.get("email_verified"):
        raise HTTPException(status_code=400, detail="Email already verified")
    otp = issue_otp(email, payload.purpose)
    if not deliver_otp(email, otp, payload.purpose):
        raise HTTPException(status_code=500, detail="Failed to send OTP")
    return {"message": "OTP sent to your email"}


@app.post("/api/auth/verify-otp")
def verify_otp(payload: VerifyOtpRequest):
    email = payload.email.lower()
    otp_doc = db["emailOtps"].find_one({
        "email": email, "otp": payload.otp, "purpose": payload.purpose, "used": False,
    })
    if not otp_doc:
        raise HTTPException(status_code=400, detail="Invalid OTP")
    if utcnow() > as_utc(otp_doc["expires_at"]):
        raise HTTPException(status_code=400, detail="OTP has expired")
    db["emailOtps"].update_one(
        {"_id": otp_doc["_id"]},
        {"$set": {"used": True, "verified_at": utcnow(), "updated_at": utcnow()}},
    )
    if payload.purpose == "signup":
        db["users"].update_one({"email": email}, {"$set": {"email_verified": True, "updated_at": utcnow()}})
        logger.info("Verified email %s", email)
    return {"message": "OTP verified"}


@app.post("/api/auth/reset-password")
def reset_password(payload: ResetPasswordRequest):
    email = payload.email.lower()
    otp_doc = db["emailOtps"].find_one({
        "email": email, "otp": payload.otp, "purpose": "password_reset", "used": True, "consumed": False,
    })
    # A verified code stays redeemable for one more OTP lifetime.
    if not otp_doc or not otp_doc.get("verified_at") or \
            utcnow() > as_utc(otp_doc["verified_at"]) + timedelta(minutes=OTP_TTL_MINUTES):
        raise HTTPException(status_code=400, detail="Invalid or expired OTP")
    result = db["users"].update_one(
        {"email": email},
        {"$set": {"password": hash_password(payload.password), "updated_at": utcnow()}},
    )
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    db["emailOtps"].update_one({"_id": otp_doc["_id"]}, {"$set": {"consumed": True, "updated_at": utcnow()}})
    logger.info("Password reset for %s", email)
    return {"message": "Password reset successful"}


# ---------------------------
# User profile
# ---------------------------
@app.get("/api/user/profile")
def get_profile(id: Optional[str] = None):
    if not id:
        raise HTTPException(status_code=400, detail="Missing id")
    user = db["users"].find_one({"_id": ObjectId(id) if ObjectId.is_valid(id) else id})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return serialize(user)


@app.patch("/api/user/profile")
def update_profile(payload: ProfileUpdateRequest, current=Depends(get_current_user)):
    update = payload.model_dump(exclude_unset=True)
    update["updated_at"] = utcnow()
    updated = db["users"].find_one_and_update(
        {"_id": to_object_id(current["id"])},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise HTTPException(status_code=404, detail="User not found")
    return serialize(updated)


# ---------------------------
# Services
# ---------------------------

def _require_service_text(data: ServiceRequest) -> None:
    if not data.title.strip() or not data.description.strip():
        raise HTTPException(status_code=400, detail="Missing required fields")


@app.get("/api/services")
def list_services(location: Optional[str] = None,
                  service_type: Optional[str] = Query(None, alias="type"),
                  category: Optional[str] = None,
                  q: Optional[str] = None,
                  min_price: Optional[float] = None,
                  max_price: Optional[float] = None,
                  min_rating: Optional[float] = None,
                  status: str = Query("active", pattern="^(draft|active|inactive|all)$"),
                  sort: str = Query("recommended", pattern="^(recommended|price_asc|price_desc|rating|newest)$"),
                  limit: int = Query(50, ge=1)):
    filt: Dict[str, Any] = {}
    if status != "all":
        filt["status"] = status
    if location:
        filt["location"] = {"$regex": re.escape(location), "$options": "i"}
    category = category or service_type
    if category and category.lower() != "all":
        filt["category"] = {"$regex": f"^{re.escape(category)}$", "$options": "i"}
    if q:
        filt["$or"] = [
            {"title": {"$regex": re.escape(q), "$options": "i"}},
            {"description": {"$regex": re.escape(q), "$options": "i"}},
        ]
    price_filter: Dict[str, Any] = {}
    if min_price is not None:
        price_filter["$gte"] = min_price
    if max_price is not None:
        price_filter["$lte"] = max_price
    if price_filter:
        filt["price"] = price_filter
    if min_rating:
        filt["rating"] = {"$gte": min_rating}
    cursor = db["services"].find(filt).sort(SERVICE_SORTS[sort]).limit(min(limit, 100))
    return [serialize(x) for x in cursor]


@app.post("/api/services", status_code=201)
def create_service(data: ServiceRequest, current=Depends(require_provider)):
    _require_service_text(data)
    service = Service(**data.model_dump(), provider_id=current["id"])
    new_id = create_document("services", service)
    logger.info("Provider %s created service %s", current["id"], new_id)
    return serialize(db["services"].find_one({"_id": ObjectId(new_id)}))


@app.get("/api/services/provider")
def list_provider_services(provider_id: Optional[str] = Query(None, alias="providerId")):
    if not provider_id:
        raise HTTPException(status_code=400, detail="Missing providerId")
    docs = get_documents("services", {"provider_id": {"$in": id_variants(provider_id)}})
    return [serialize(x) for x in docs]


@app.get("/api/services/review")
def list_user_reviews(user_id: Optional[str] = Query(None, alias="userId")):
    if not user_id:
        raise HTTPException(status_code=400, detail="Missing userId")
    if ObjectId.is_valid(user_id):
        user_id = str(ObjectId(user_id))
    reviews = get_documents("reviews", {"user_id": user_id})
    services = services_by_id(r["service_id"] for r in reviews)
    result = []
    for r in reviews:
        item = serialize(r)
        svc = services.get(str(r["service_id"]))
        item["service"] = serialize(svc) if svc else None
        result.append(item)
    return result


@app.get("/api/services/{service_id}")
def get_service(service_id: str):
    svc = db["services"].find_one({"_id": to_object_id(service_id)})
    if not svc:
        raise HTTPException(status_code=404, detail="Service not found")
    return serialize(svc)


@app.put("/api/services/{service_id}")
def update_service(service_id: str, data: ServiceRequest, current=Depends(require_provider)):
    _require_service_text(data)
    update = data.model_dump()
    update["provider_id"] = current["id"]
    update["updated_at"] = utcnow()
    updated = db["services"].find_one_and_update(
        {"_id": to_object_id(service_id), "provider_id": {"$in": id_variants(current["id"])}},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise HTTPException(status_code=404, detail="Service not found or not authorized")
    return serialize(updated)


@app.delete("/api/services/{service_id}")
def delete_service(service_id: str, current=Depends(require_provider)):
    deleted = db["services"].find_one_and_delete(
        {"_id": to_object_id(service_id), "provider_id": {"$in": id_variants(current["id"])}}
    )
    if not deleted:
        raise HTTPException(status_code=404, detail="Service not found or not authorized")
    logger.info("Provider %s deleted service %s", current["id"], service_id)
    return {"message": "Service deleted"}


# ---------------------------
# Reviews
# ---------------------------

def refresh_service_rating(service_id: str) -> None:
    scores = [r["rating"] for r in db["reviews"].find({"service_id": service_id}, {"rating": 1})]
    average = round(sum(scores) / len(scores), 2) if scores else 0.0
    db["services"].update_one(
        {"_id": ObjectId(service_id)},
        {"$set": {"rating": average, "review_count": len(scores)}},
    )


@app.post("/api/services/{service_id}/review", status_code=201)
def add_review(service_id: str, data: ReviewRequest, current=Depends(get_current_user)):
    if not data.comment.strip():
        raise HTTPException(status_code=400, detail="Missing required fields")
    service_oid = to_object_id(service_id)
    service_id = str(service_oid)
    svc = db["services"].find_one({"_id": service_oid})
    if not svc:
        raise HTTPException(status_code=404, detail="Service not found")
    review = Review(
        service_id=service_id,
        user_id=current["id"],
        rating=data.rating,
        comment=data.comment,
        user_name=current.get("name"),
        user_avatar=current.get("avatar"),
    )
    new_id = create_document("reviews", review)
    refresh_service_rating(service_id)
    provider_id = str(svc.get("provider_id"))
    if provider_id != current["id"]:
        notify(provider_id, "review", "New Review",
               f"{current.get('name') or 'A guest'} rated {svc.get('title')} {data.rating}/5.",
               f"/services/{service_id}")
    return serialize(db["reviews"].find_one({"_id": ObjectId(new_id)}))


@app.get("/api/services/{service_id}/review")
def list_service_reviews(service_id: str):
    if ObjectId.is_valid(service_id):
        service_id = str(ObjectId(service_id))
    return [serialize(r) for r in get_documents("reviews", {"service_id": service_id})]


# ---------------------------
# Bookings
# ---------------------------

def enrich_bookings(bookings: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    services = services_by_id(b["service_id"] for b in bookings)
    guests = users_by_id(b["user_id"] for b in bookings)
    result = []
    for b in bookings:
        item = serialize(b)
        svc = services.get(str(b["service_id"]))
        guest = guests.get(str(b["user_id"]))
        item["service"] = serialize(svc) if svc else None
        item["guest_name"] = (guest or {}).get("name") or "Unknown Guest"
        item["guest_email"] = (guest or {}).get("email") or ""
        result.append(item)
    return result


@app.post("/api/bookings", status_code=201)
def create_booking(data: BookingCreateRequest, current=Depends(get_current_user)):
    service_oid = to_object_id(data.service_id)
    service_id = str(service_oid)
    svc = db["services"].find_one({"_id": service_oid})
    if not svc:
        raise HTTPException(status_code=404, detail="Service not found")
    if svc.get("status") != "active":
        raise HTTPException(status_code=400, detail="Service is not available for booking")
    provider_id = str(svc.get("provider_id"))
    if provider_id == current["id"]:
        raise HTTPException(status_code=400, detail="You cannot book your own service")
    check_in, check_out = as_utc(data.check_in), as_utc(data.check_out)
    if check_out <= check_in:
        raise HTTPException(status_code=400, detail="Check-out must be after check-in")

    price = compute_booking_price(svc, check_in, check_out, data.guests)
    snapshot = ServiceSnapshot(
        title=svc.get("title", ""),
        price=float(svc.get("price") or 0),
        location=svc.get("location") or "",
        category=svc.get("category") or "",
        provider_id=provider_id,
        images=svc.get("images") or [],
        pricing_model=price["pricing_model"],
        service_fee_rate=price["service_fee_rate"],
        tax_rate=price["tax_rate"],
    )
    booking = Booking(
        service_id=service_id,
        user_id=current["id"],
        provider_id=provider_id,
        check_in=check_in,
        check_out=check_out,
        guests=data.guests,
        status=data.status,
        nights=price["nights"],
        subtotal=price["subtotal"],
        service_fee=price["service_fee"],
        taxes=price["taxes"],
        total_price=price["total_price"],
        service_snapshot=snapshot,
    )
    new_id = create_document("bookings", booking)
    logger.info("Booking %s created for service %s (total %.2f)", new_id, service_id, price["total_price"])

    title = snapshot.title
    notify(provider_id, "booking", "New Booking",
           f"{current.get('name') or current.get('email')} booked {title} for {data.guests} guest(s).",
           "/dashboard/provider/bookings")
    headline = "Booking Confirmed" if data.status == "confirmed" else "Booking Requested"
    notify(current["id"], "booking", headline, f"Your booking at {title} is {data.status}.",
           f"/booking/confirmation/{new_id}")
    return serialize(db["bookings"].find_one({"_id": ObjectId(new_id)}))


@app.get("/api/bookings")
def list_bookings(role: str = Query("tourist", pattern="^(tourist|provider)$"), current=Depends(get_current_user)):
    if role == "tourist":
        filt = {"user_id": current["id"]}
    else:
        filt = {"provider_id": {"$in": id_variants(current["id"])}}
    return enrich_bookings(get_documents("bookings", filt))


@app.get("/api/bookings/{booking_id}")
def get_booking(booking_id: str, current=Depends(get_current_user)):
    bk = db["bookings"].find_one({"_id": to_object_id(booking_id)})
    if not bk:
        raise HTTPException(status_code=404, detail="Booking not found")
    if current["id"] not in (bk.get("user_id"), str(bk.get("provider_id"))):
        raise HTTPException(status_code=403, detail="Not your booking")
    return enrich_bookings([bk])[0]


@app.patch("/api/bookings/{booking_id}")
def update_booking_status(booking_id: str, req: BookingStatusUpdate, current=Depends(get_current_user)):
    bk = db["bookings"].find_one({"_id": to_object_id(booking_id)})
    if not bk:
        raise HTTPException(status_code=404, detail="Booking not found")
    is_tourist = bk.get("user_id") == current["id"]
    is_provider = str(bk.get("provider_id")) == current["id"]
    if not is_tourist and not is_provider:
        raise HTTPException(status_code=403, detail="Not your booking")
    if not is_provider and req.status != "cancelled":
        raise HTTPException(status_code=403, detail="Only the provider can change this status")
    old_status = bk.get("status", "pending")
    if req.status not in BOOKING_TRANSITIONS.get(old_status, set()):
        raise HTTPException(status_code=409, detail=f"Cannot change booking from {old_status} to {req.status}")

    updated = db["bookings"].find_one_and_update(
        {"_id": bk["_id"], "status": old_status},
        {"$set": {"status": req.status, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise HTTPException(status_code=409, detail="Booking was modified, please retry")
    logger.info("Booking %s: %s -> %s by %s", booking_id, old_status, req.status, current["id"])

    title = (bk.get("service_snapshot") or {}).get("title", "your service")
    other = str(bk.get("provider_id")) if is_tourist and not is_provider else bk.get("user_id")
    notify(other, "booking", f"Booking {req.status.capitalize()}",
           f"The booking for {title} is now {req.status}.", f"/booking/confirmation/{booking_id}")
    return enrich_bookings([updated])[0]


# ---------------------------
# Notifications
# ---------------------------
@app.get("/api/notifications")
def list_notifications(unread: Optional[bool] = None, current=Depends(get_current_user)):
    filt: Dict[str, Any] = {"user_id": current["id"]}
    if unread:
        filt["is_read"] = False
    return [serialize(n) for n in get_documents("notifications", filt, limit=100)]


@app.get("/api/notifications/unread-count")
def unread_notification_count(current=Depends(get_current_user)):
    return {"count": db["notifications"].count_documents({"user_id": current["id"], "is_read": False})}


@app.patch("/api/notifications/{notification_id}/read")
def mark_notification_read(notification_id: str, current=Depends(get_current_user)):
    updated = db["notifications"].find_one_and_update(
        {"_id": to_object_id(notification_id), "user_id": current["id"]},
        {"$set": {"is_read": True, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise HTTPException(status_code=404, detail="Notification not found")
    return serialize(updated)


@app.post("/api/notifications/read-all")
def mark_all_notifications_read(current=Depends(get_current_user)):
    result = db["notifications"].update_many(
        {"user_id": current["id"], "is_read": False},
        {"$set": {"is_read": True, "updated_at": utcnow()}},
    )
    return {"updated": result.modified_count}


@app.delete("/api/notifications/{notification_id}")
def delete_notification(notification_id: str, current=Depends(get_current_user)):
    result = db["notifications"].delete_one({"_id": to_object_id(notification_id), "user_id": current["id"]})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"deleted": True}


# ---------------------------
# Messaging
# ---------------------------
@app.post("/api/messages", status_code=201)
def send_message(data: MessageRequest, current=Depends(get_current_user)):
    if not data.content.strip():
        raise HTTPException(status_code=400, detail="Message cannot be empty")
    recipient_oid = to_object_id(data.recipient_id)
    recipient_id = str(recipient_oid)
    if recipient_id == current["id"]:
        raise HTTPException(status_code=400, detail="You cannot message yourself")
    recipient = db["users"].find_one({"_id": recipient_oid})
    if not recipient:
        raise HTTPException(status_code=404, detail="Recipient not found")
    new_id = create_document("messages", Message(
        sender_id=current["id"], recipient_id=recipient_id, content=data.content.strip(),
    ))
    notify(recipient_id, "message", "New Message",
           f"You have a new message from {current.get('name') or current.get('email')}.", "/messages")
    return serialize(db["messages"].find_one({"_id": ObjectId(new_id)}))


@app.get("/api/messages/conversations")
def list_conversations(current=Depends(get_current_user)):
    me_id = current["id"]
    messages = get_documents("messages", {"$or": [{"sender_id": me_id}, {"recipient_id": me_id}]})
    conversations: Dict[str, Dict[str, Any]] = {}
    for m in messages:
        partner = m["recipient_id"] if m["sender_id"] == me_id else m["sender_id"]
        conv = conversations.get(partner)
        if conv is None:
            # newest first, so the first hit is the latest message
            conv = conversations[partner] = {
                "partner_id": partner,
                "last_message": serialize(m),
                "unread": 0,
            }
        if m["recipient_id"] == me_id and not m.get("read"):
            conv["unread"] += 1
    partners = users_by_id(conversations.keys())
    for partner_id, conv in conversations.items():
        user = partners.get(partner_id) or {}
        conv["partner_name"] = user.get("name") or user.get("email") or "Unknown User"
        conv["partner_avatar"] = user.get("avatar")
    return list(conversations.values())


@app.get("/api/messages/{user_id}")
def get_thread(user_id: str, current=Depends(get_current_user)):
    me_id = current["id"]
    user_id = str(to_object_id(user_id))
    thread = db["messages"].find({"$or": [
        {"sender_id": me_id, "recipient_id": user_id},
        {"sender_id": user_id, "recipient_id": me_id},
    ]}).sort([("created_at", 1), ("_id", 1)])
    items = [serialize(m) for m in thread]
    db["messages"].update_many(
        {"sender_id": user_id, "recipient_id": me_id, "read": False},
        {"$set": {"read": True, "updated_at": utcnow()}},
    )
    return items


# ---------------------------
# Dashboards
# ---------------------------
def monthly_breakdown(bookings: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Bookings and earned revenue per check-in month, oldest month first."""
    months: Dict[str, Dict[str, Any]] = {}
    for b in bookings:
        if b.get("status") == "cancelled" or not b.get("check_in"):
            continue
        key = as_utc(b["check_in"]).strftime("%Y-%m")
        row = months.setdefault(key, {"month": key, "bookings": 0, "revenue": 0.0})
        row["bookings"] += 1
        if b.get("status") in ("confirmed", "completed"):
            row["revenue"] = money(row["revenue"] + (b.get("total_price") or 0))
    return [months[k] for k in sorted(months)]


@app.get("/api/dashboard/provider")
def provider_dashboard(current=Depends(require_provider)):
    owner = {"provider_id": {"$in": id_variants(current["id"])}}
    services = list(db["services"].find(owner, {"status": 1}))
    bookings = list(db["bookings"].find(owner, {"status": 1, "total_price": 1, "check_in": 1}))
    service_ids = [str(s["_id"]) for s in services]
    ratings = [r["rating"] for r in db["reviews"].find({"service_id": {"$in": service_ids}}, {"rating": 1})]
    return {
        "total_services": len(services),
        "active_services": sum(1 for s in services if s.get("status") == "active"),
        "total_bookings": len(bookings),
        "pending_bookings": sum(1 for b in bookings if b.get("status") == "pending"),
        "revenue": money(sum(b.get("total_price") or 0 for b in bookings
                             if b.get("status") in ("confirmed", "completed"))),
        "average_rating": round(sum(ratings) / len(ratings), 2) if ratings else 0.0,
        "review_count": len(ratings),
        "monthly": monthly_breakdown(bookings),
    }


@app.get("/api/dashboard/tourist")
def tourist_dashboard(current=Depends(get_current_user)):
    now = utcnow()
    bookings = list(db["bookings"].find({"user_id": current["id"]}))
    return {
        "total_bookings": len(bookings),
        "upcoming_bookings": sum(1 for b in bookings if b.get("status") in ("pending", "confirmed")
                                 and as_utc(b["check_in"]) > now),
        "completed_bookings": sum(1 for b in bookings if b.get("status") == "completed"),
        "reviews_written": db["reviews"].count_documents({"user_id": current["id"]}),
        "total_spent": money(sum(b.get("total_price") or 0 for b in bookings
                                 if b.get("status") in ("confirmed", "completed"))),
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
