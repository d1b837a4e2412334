from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import get_db
from logging_config import get_logger
from routers.auth import PHONE_PATTERN
from security import get_active_user, get_current_user, get_password_hash, verify_password
from utils import ok, public_profile

logger = get_logger(__name__)

profile_router = APIRouter(prefix="/api/profile", tags=["profile"])
verification_router = APIRouter(prefix="/api/verification", tags=["profile"])


class ProfileUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    full_name: Optional[str] = Field(default=None, alias="fullName", min_length=2, max_length=100)
    phone: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)


class PasswordChange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_password: str = Field(..., alias="currentPassword")
    new_password: str = Field(..., alias="newPassword", min_length=8)


@profile_router.get("")
def get_profile(user: dict = Depends(get_active_user)):
    return ok({"user": public_profile(user)})


@profile_router.put("")
def update_profile(payload: ProfileUpdate, user: dict = Depends(get_active_user), db: Database = Depends(get_db)):
    changes = {}
    if payload.full_name is not None:
        changes["full_name"] = payload.full_name.strip()
    if payload.phone is not None and payload.phone != user.get("phone"):
        if db["user"].find_one({"phone": payload.phone, "_id": {"$ne": user["_id"]}}):
            raise HTTPException(status_code=409, detail="Phone number is already in use")
        changes["phone"] = payload.phone
        # the new number has to be verified again
        changes["is_phone_verified"] = False
    if not changes:
        raise HTTPException(status_code=400, detail="No changes provided")

    changes["updated_at"] = datetime.utcnow()
    try:
        db["user"].update_one({"_id": user["_id"]}, {"$set": changes})
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Phone number is already in use")
    logger.info(f"User {user['_id']} updated profile fields {sorted(changes)}")
    return ok({"user": public_profile(db["user"].find_one({"_id": user["_id"]}))}, "Profile updated successfully")


@profile_router.put("/password")
def change_password(payload: PasswordChange, user: dict = Depends(get_active_user), db: Database = Depends(get_db)):
    if not verify_password(payload.current_password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    if payload.current_password == payload.new_password:
        raise HTTPException(status_code=400, detail="New password must be different from the current password")

    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {
            "password_hash": get_password_hash(payload.new_password),
            "refresh_tokens": [],
            "updated_at": datetime.utcnow(),
        }},
    )
    logger.info(f"User {user['_id']} changed password, all sessions revoked")
    return ok(message="Password changed successfully. Please log in again.")


@verification_router.get("")
def verification_status(user: dict = Depends(get_current_user)):
    email = bool(user.get("is_email_verified"))
    phone = bool(user.get("is_phone_verified"))
    identity = bool(user.get("is_identity_verified"))

    if email and phone and identity:
        status = "verified"
    elif email or phone or identity:
        status = "partially-verified"
    else:
        status = "not-verified"

    return ok({
        "status": status,
        "email": {"value": user.get("email"), "verified": email},
        "phone": {"value": user.get("phone"), "verified": phone},
        "identity": {"verified": identity, "required": bool(user.get("identity_verification_required"))},
        "completion_percentage": round((email + phone + identity) / 3 * 100),
    })
