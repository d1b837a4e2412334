from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Body, Cookie, Depends, HTTPException, Request, Response
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from constants import (
    ACCESS_TOKEN_EXPIRE_MINUTES,
    COOKIE_SECURE,
    LOCK_DURATION_HOURS,
    MAX_LOGIN_ATTEMPTS,
    MAX_REFRESH_TOKENS,
    REFRESH_TOKEN_EXPIRE_DAYS,
)
from database import create_document, get_db
from logging_config import get_logger
from rate_limit import RateLimiter, get_login_limiter
from schemas import Role, User
from security import (
    InvalidToken,
    generate_tokens,
    get_current_user,
    get_password_hash,
    get_token_payload,
    verify_password,
    verify_refresh_token,
)
from utils import ok, oid, public_profile

logger = get_logger(__name__)

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])

PHONE_PATTERN = r"^\+?\d{10,15}$"


class RegisterPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    full_name: str = Field(..., alias="fullName", min_length=2, max_length=100)
    email: EmailStr
    phone: str = Field(..., pattern=PHONE_PATTERN)
    password: str = Field(..., min_length=8)
    role: Role


class LoginPayload(BaseModel):
    identifier: str = Field(..., description="Email address or phone number")
    password: str
    role: Optional[Role] = None


class RefreshPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: Optional[str] = Field(default=None, alias="refreshToken")


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def set_auth_cookies(response: Response, access_token: str, refresh_token: str):
    response.set_cookie(
        "refreshToken", refresh_token,
        httponly=True, secure=COOKIE_SECURE, samesite="strict",
        max_age=REFRESH_TOKEN_EXPIRE_DAYS * 24 * 60 * 60, path="/",
    )
    response.set_cookie(
        "accessToken", access_token,
        httponly=True, secure=COOKIE_SECURE, samesite="strict",
        max_age=ACCESS_TOKEN_EXPIRE_MINUTES * 60, path="/",
    )


def clear_auth_cookies(response: Response):
    response.delete_cookie("refreshToken", path="/", secure=COOKIE_SECURE, httponly=True, samesite="strict")
    response.delete_cookie("accessToken", path="/", secure=COOKIE_SECURE, httponly=True, samesite="strict")


def start_session(db: Database, user: dict, response: Response, extra_set: Optional[dict] = None) -> dict:
    """Issue a token pair, store the refresh token (keeping the newest few) and set cookies."""
    tokens = generate_tokens(user)
    now = datetime.utcnow()
    update_set = {"updated_at": now}
    update_set.update(extra_set or {})
    db["user"].update_one(
        {"_id": user["_id"]},
        {
            "$set": update_set,
            "$push": {
                "refresh_tokens": {
                    "$each": [{"token": tokens["refresh_token"], "created_at": now}],
                    "$slice": -MAX_REFRESH_TOKENS,
                }
            },
        },
    )
    set_auth_cookies(response, tokens["access_token"], tokens["refresh_token"])
    fresh = db["user"].find_one({"_id": user["_id"]})
    # the mobile app cannot read httpOnly cookies, so the pair is returned in the body too
    return {"user": public_profile(fresh), **tokens}


@auth_router.post("/register", status_code=201)
def register(payload: RegisterPayload, response: Response, db: Database = Depends(get_db)):
    email = payload.email.lower()
    existing = db["user"].find_one({"$or": [{"email": email}, {"phone": payload.phone}]})
    if existing:
        logger.warning(f"Registration rejected, account exists for {email}")
        raise HTTPException(status_code=409, detail="An account with this email or phone already exists")

    user = User(
        email=email,
        phone=payload.phone,
        full_name=payload.full_name.strip(),
        password_hash=get_password_hash(payload.password),
        role=payload.role,
        identity_verification_required=payload.role == Role.OWNER,
    )
    try:
        user_id = create_document("user", user, database=db)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="An account with this email or phone already exists")

    logger.info(f"Registered {payload.role.value} {email}")
    created = db["user"].find_one({"_id": oid(user_id)})
    data = start_session(db, created, response, {"last_login": datetime.utcnow()})
    return ok(data, "Registration successful")


@auth_router.post("/login")
def login(
    payload: LoginPayload,
    request: Request,
    response: Response,
    db: Database = Depends(get_db),
    limiter: RateLimiter = Depends(get_login_limiter),
):
    limiter.consume(client_ip(request), "Too many login attempts")

    if "@" in payload.identifier:
        query = {"email": payload.identifier.strip().lower()}
    else:
        query = {"phone": payload.identifier.strip()}

    user = db["user"].find_one(query)
    if not user:
        logger.info(f"Login failed, no user for {query}")
        raise HTTPException(status_code=401, detail={"error": "Invalid credentials", "message": "Email/phone or password is incorrect"})

    if payload.role and Role.parse(user.get("role")) != payload.role:
        raise HTTPException(status_code=401, detail={"error": "Invalid credentials", "message": "Please check your account type and try again"})

    now = datetime.utcnow()
    lock_until = user.get("lock_until")
    if lock_until and lock_until > now:
        minutes = int((lock_until - now).total_seconds() // 60) + 1
        raise HTTPException(
            status_code=423,
            detail={"error": "Account locked", "message": f"Account is locked due to too many failed login attempts. Try again in {minutes} minutes."},
        )

    if not user.get("is_active", True):
        raise HTTPException(status_code=403, detail={"error": "Account suspended", "message": "Your account has been suspended. Please contact support."})

    if not verify_password(payload.password, user.get("password_hash", "")):
        # an expired lock starts a fresh count
        attempts = (0 if lock_until else user.get("login_attempts", 0)) + 1
        new_lock = now + timedelta(hours=LOCK_DURATION_HOURS) if attempts >= MAX_LOGIN_ATTEMPTS else None
        db["user"].update_one({"_id": user["_id"]}, {"$set": {"login_attempts": attempts, "lock_until": new_lock}})
        logger.info(f"Invalid password for {user.get('email')}, attempt {attempts}")
        raise HTTPException(status_code=401, detail={"error": "Invalid credentials", "message": "Email/phone or password is incorrect"})

    data = start_session(db, user, response, {"last_login": now, "login_attempts": 0, "lock_until": None})
    logger.info(f"Login successful for {user.get('email')}")
    return ok(data, "Login successful")


@auth_router.post("/refresh")
def refresh(
    response: Response,
    payload: Optional[RefreshPayload] = Body(default=None),
    refresh_cookie: Optional[str] = Cookie(default=None, alias="refreshToken"),
    db: Database = Depends(get_db),
):
    token = (payload.refresh_token if payload else None) or refresh_cookie
    if not token:
        raise HTTPException(status_code=401, detail={"error": "Refresh token required", "message": "No refresh token provided"})

    try:
        claims = verify_refresh_token(token)
    except InvalidToken:
        raise HTTPException(status_code=401, detail={"error": "Invalid refresh token", "message": "Refresh token is invalid or expired"})

    user = db["user"].find_one({"_id": oid(claims["sub"])})
    if not user:
        raise HTTPException(status_code=404, detail={"error": "User not found", "message": "User account not found"})

    if not any(t.get("token") == token for t in user.get("refresh_tokens", [])):
        raise HTTPException(status_code=401, detail={"error": "Invalid refresh token", "message": "Refresh token not found in user records"})

    if not user.get("is_active", True):
        raise HTTPException(status_code=403, detail={"error": "Account inactive", "message": "User account has been deactivated"})

    # Claim the presented token; only one concurrent refresh can remove it
    claimed = db["user"].update_one(
        {"_id": user["_id"], "refresh_tokens.token": token},
        {"$pull": {"refresh_tokens": {"token": token}}},
    )
    if claimed.modified_count == 0:
        logger.warning(f"Refresh token for user {user['_id']} was already rotated")
        raise HTTPException(status_code=401, detail={"error": "Invalid refresh token", "message": "Refresh token not found in user records"})

    data = start_session(db, user, response)
    return ok(data, "Tokens refreshed successfully")


@auth_router.post("/logout")
def logout(
    response: Response,
    payload: Optional[RefreshPayload] = Body(default=None),
    refresh_cookie: Optional[str] = Cookie(default=None, alias="refreshToken"),
    user: dict = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    token = (payload.refresh_token if payload else None) or refresh_cookie
    if token:
        db["user"].update_one({"_id": user["_id"]}, {"$pull": {"refresh_tokens": {"token": token}}})
    else:
        # no session given: sign out everywhere
        db["user"].update_one({"_id": user["_id"]}, {"$set": {"refresh_tokens": []}})

    clear_auth_cookies(response)
    logger.info(f"User {user['_id']} logged out")
    return ok(message="Logged out successfully")


@auth_router.get("/me")
def me(user: dict = Depends(get_current_user)):
    if not user.get("is_active", True):
        raise HTTPException(status_code=403, detail={"error": "Account inactive", "message": "User account has been deactivated"})
    return ok({"user": public_profile(user)})


@auth_router.get("/check")
def check(payload: dict = Depends(get_token_payload)):
    return {"success": True}
