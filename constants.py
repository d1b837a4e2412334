import os

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "studentnest")

# Settings
SECRET_KEY = os.getenv("SECRET_KEY", "super-secret-key-change")
REFRESH_SECRET_KEY = os.getenv("REFRESH_SECRET_KEY", SECRET_KEY + "-refresh")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", 7))
MAX_REFRESH_TOKENS = 5
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", 12))

COOKIE_SECURE = os.getenv("ENVIRONMENT", "development") == "production"

MAX_LOGIN_ATTEMPTS = 5
LOCK_DURATION_HOURS = 2
LOGIN_RATE_LIMIT = (100, 15 * 60)  # requests, window seconds

OTP_LENGTH = 6
OTP_EXPIRY_MINUTES = 10
OTP_MAX_ATTEMPTS = 5
OTP_RESEND_SECONDS = 60
OTP_VERIFY_RATE_LIMIT = (10, 60)

ROOM_SHARE_INACTIVE_DAYS = int(os.getenv("ROOM_SHARE_INACTIVE_DAYS", 30))

CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")
