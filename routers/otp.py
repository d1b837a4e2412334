"""
One-time codes for email and phone verification.

A code is six random digits valid for ten minutes. Each code can be checked
at most five times and succeeds at most once; a success marks the matching
user's email or phone as verified.
"""

import secrets
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, EmailStr, Field
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from constants import OTP_EXPIRY_MINUTES, OTP_LENGTH, OTP_MAX_ATTEMPTS, OTP_RESEND_SECONDS
from database import create_document, get_db
from logging_config import get_logger
from notifications import get_notifier
from rate_limit import RateLimiter, get_otp_verify_limiter
from routers.auth import PHONE_PATTERN, client_ip
from schemas import OTP, OTPType
from utils import ok, oid

logger = get_logger(__name__)

otp_router = APIRouter(prefix="/api/otp", tags=["otp"])

VERIFIED_FLAG = {
    OTPType.EMAIL: ("email", "is_email_verified"),
    OTPType.PHONE: ("phone", "is_phone_verified"),
}


class EmailSend(BaseModel):
    value: EmailStr
    purpose: Optional[str] = None


class PhoneSend(BaseModel):
    value: str = Field(..., pattern=PHONE_PATTERN)
    purpose: Optional[str] = None


class EmailVerify(BaseModel):
    value: EmailStr
    code: str = Field(..., pattern=r"^\d{6}$")


class PhoneVerify(BaseModel):
    value: str = Field(..., pattern=PHONE_PATTERN)
    code: str = Field(..., pattern=r"^\d{6}$")


class OTPError(Exception):
    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


def generate_code(length: int = OTP_LENGTH) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(length))


def create_otp(db: Database, identifier: str, otp_type: OTPType, purpose: Optional[str] = None, now: Optional[datetime] = None) -> dict:
    now = now or datetime.utcnow()
    recent = db["otp"].find_one({
        "identifier": identifier,
        "type": otp_type.value,
        "created_at": {"$gt": now - timedelta(seconds=OTP_RESEND_SECONDS)},
    })
    if recent:
        wait = OTP_RESEND_SECONDS - int((now - recent["created_at"]).total_seconds())
        raise HTTPException(
            status_code=429,
            detail={"error": "Too many requests", "message": f"Please wait {max(wait, 1)} seconds before requesting a new OTP"},
        )

    otp = OTP(
        identifier=identifier,
        type=otp_type,
        purpose=purpose,
        code=generate_code(),
        expires_at=now + timedelta(minutes=OTP_EXPIRY_MINUTES),
        created_at=now,
    )
    otp_id = create_document("otp", otp, database=db)
    return db["otp"].find_one({"_id": oid(otp_id)})


def verify_otp(db: Database, identifier: str, otp_type: OTPType, code: str, now: Optional[datetime] = None):
    """Check `code` against the newest unused code for the identifier. Raises OTPError on failure."""
    now = now or datetime.utcnow()
    otp = db["otp"].find_one(
        {"identifier": identifier, "type": otp_type.value, "is_used": False},
        sort=[("created_at", DESCENDING)],
    )
    if not otp:
        raise OTPError("Invalid or expired OTP")
    if otp["expires_at"] < now:
        raise OTPError("OTP has expired")
    if otp.get("attempts", 0) >= OTP_MAX_ATTEMPTS:
        raise OTPError("Maximum OTP verification attempts exceeded")

    if not secrets.compare_digest(otp["code"], code):
        counted = db["otp"].find_one_and_update(
            {"_id": otp["_id"], "attempts": {"$lt": OTP_MAX_ATTEMPTS}},
            {"$inc": {"attempts": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if counted is None:
            raise OTPError("Maximum OTP verification attempts exceeded")
        remaining = OTP_MAX_ATTEMPTS - counted["attempts"]
        raise OTPError(f"Invalid OTP. {remaining} attempts remaining")

    # single use: only one request can flip is_used
    claimed = db["otp"].update_one(
        {"_id": otp["_id"], "is_used": False, "attempts": {"$lt": OTP_MAX_ATTEMPTS}},
        {"$set": {"is_used": True, "used_at": now}},
    )
    if claimed.modified_count == 0:
        raise OTPError("Invalid or expired OTP")

    field, flag = VERIFIED_FLAG[otp_type]
    db["user"].update_one({field: identifier}, {"$set": {flag: True, "updated_at": now}})


def send(db: Database, identifier: str, otp_type: OTPType, purpose: Optional[str], notifier) -> dict:
    otp = create_otp(db, identifier, otp_type, purpose)
    if not notifier.send_otp(otp_type.value, identifier, otp["code"]):
        # an undelivered code must not hold the resend window
        db["otp"].delete_one({"_id": otp["_id"]})
        logger.error(f"Failed to deliver {otp_type.value} OTP to {identifier}")
        raise HTTPException(status_code=500, detail=f"Failed to send {otp_type.value} OTP")
    logger.info(f"{otp_type.value} OTP sent to {identifier}")
    return ok(
        {"identifier": identifier, "expires_in": OTP_EXPIRY_MINUTES * 60},
        f"OTP sent successfully to your {otp_type.value}",
    )


def verify(db: Database, identifier: str, otp_type: OTPType, code: str, request: Request, limiter: RateLimiter) -> dict:
    key = f"{client_ip(request)}-{identifier}"
    limiter.consume(key, "Please wait")
    try:
        verify_otp(db, identifier, otp_type, code)
    except OTPError as e:
        logger.info(f"{otp_type.value} OTP verification failed for {identifier}: {e.message}")
        raise HTTPException(status_code=400, detail={"error": "Verification failed", "message": e.message})
    limiter.reset(key)
    return ok({"verified": True}, f"{otp_type.value.capitalize()} verified successfully")


@otp_router.post("/email/send")
def send_email_otp(payload: EmailSend, db: Database = Depends(get_db), notifier=Depends(get_notifier)):
    return send(db, payload.value.lower(), OTPType.EMAIL, payload.purpose, notifier)


@otp_router.post("/email/verify")
def verify_email_otp(
    payload: EmailVerify,
    request: Request,
    db: Database = Depends(get_db),
    limiter: RateLimiter = Depends(get_otp_verify_limiter),
):
    return verify(db, payload.value.lower(), OTPType.EMAIL, payload.code, request, limiter)


@otp_router.post("/phone/send")
def send_phone_otp(payload: PhoneSend, db: Database = Depends(get_db), notifier=Depends(get_notifier)):
    return send(db, payload.value.strip(), OTPType.PHONE, payload.purpose, notifier)


@otp_router.post("/phone/verify")
def verify_phone_otp(
    payload: PhoneVerify,
    request: Request,
    db: Database = Depends(get_db),
    limiter: RateLimiter = Depends(get_otp_verify_limiter),
):
    return verify(db, payload.value.strip(), OTPType.PHONE, payload.code, request, limiter)
