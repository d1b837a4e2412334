from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database

from constants import (
    ACCESS_TOKEN_EXPIRE_MINUTES,
    ALGORITHM,
    BCRYPT_ROUNDS,
    REFRESH_SECRET_KEY,
    REFRESH_TOKEN_EXPIRE_DAYS,
    SECRET_KEY,
)
from database import get_db
from logging_config import get_logger
from schemas import Role
from utils import oid

logger = get_logger(__name__)

# Auth utils
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


class InvalidToken(Exception):
    pass


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def _encode(data: dict, secret: str, token_type: str, expires_delta: timedelta) -> str:
    to_encode = data.copy()
    to_encode.update({
        "type": token_type,
        "jti": uuid4().hex,
        "iat": datetime.utcnow(),
        "exp": datetime.utcnow() + expires_delta,
    })
    return jwt.encode(to_encode, secret, algorithm=ALGORITHM)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    return _encode(data, SECRET_KEY, "access", expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))


def create_refresh_token(data: dict, expires_delta: Optional[timedelta] = None):
    return _encode(data, REFRESH_SECRET_KEY, "refresh", expires_delta or timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS))


def generate_tokens(user: Dict[str, Any]) -> Dict[str, str]:
    role = Role.parse(user.get("role"))
    claims = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "role": role.value if role else None,
    }
    return {
        "access_token": create_access_token(claims),
        "refresh_token": create_refresh_token(claims),
    }


def _decode(token: str, secret: str, token_type: str) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except ExpiredSignatureError:
        raise InvalidToken("Token has expired")
    except JWTError:
        raise InvalidToken("Invalid token")
    if payload.get("type") != token_type or not payload.get("sub"):
        raise InvalidToken("Invalid token")
    return payload


def verify_access_token(token: str) -> Dict[str, Any]:
    return _decode(token, SECRET_KEY, "access")


def verify_refresh_token(token: str) -> Dict[str, Any]:
    return _decode(token, REFRESH_SECRET_KEY, "refresh")


def get_token_payload(token: Optional[str] = Depends(oauth2_scheme)) -> Dict[str, Any]:
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Access token required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return verify_access_token(token)
    except InvalidToken as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Unauthorized: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_optional_payload(token: Optional[str] = Depends(oauth2_scheme)) -> Optional[Dict[str, Any]]:
    if not token:
        return None
    try:
        return verify_access_token(token)
    except InvalidToken:
        return None


def get_current_user(payload: dict = Depends(get_token_payload), db: Database = Depends(get_db)) -> Dict[str, Any]:
    user = db["user"].find_one({"_id": oid(payload["sub"])})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def get_active_user(user: dict = Depends(get_current_user)) -> Dict[str, Any]:
    if not user.get("is_active", True):
        raise HTTPException(status_code=403, detail="User account has been deactivated")
    return user


def require_role(role: Role):
    """Dependency factory: the token's role must match `role`."""

    def checker(payload: dict = Depends(get_token_payload)) -> Dict[str, Any]:
        if Role.parse(payload.get("role")) != role:
            raise HTTPException(status_code=403, detail=f"Unauthorized: {role.value.capitalize()} access required")
        return payload

    return checker


def require_verified_student(user: dict = Depends(get_active_user)) -> Dict[str, Any]:
    if Role.parse(user.get("role")) != Role.STUDENT:
        raise HTTPException(status_code=403, detail="Only students can access room sharing")
    if not user.get("is_email_verified") or not user.get("is_phone_verified"):
        raise HTTPException(status_code=403, detail="Only verified students can access room sharing")
    return user
