"""
Authentication workflow

Password login with lockout, one-time passcodes for customer accounts,
JWT session tokens and the FastAPI dependencies guarding protected routes.
"""

import logging
import secrets
from datetime import timedelta
from typing import Awaitable, Callable, Optional

import jwt
from fastapi import Depends
from fastapi.concurrency import run_in_threadpool
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import config
import database
from database import create_document, find_document, get_document_by_id, update_document, utcnow, as_utc, to_object_id
from errors import (
    AccountLocked,
    Conflict,
    Forbidden,
    InvalidCredentials,
    InvalidOtp,
    MessagingFailed,
    NoPendingOtp,
    NotFound,
    OtpExpired,
    Unauthorized,
)
from schemas import User

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
security = HTTPBearer(auto_error=False)

# Never returned by reads
SECRET_FIELDS = {"password_hash": 0, "otp": 0, "otp_expires": 0}


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def is_admin(user: dict) -> bool:
    return (user.get("role") or "").strip().lower() == "admin"


def public_user(user: dict) -> dict:
    return {
        "id": user["_id"],
        "name": user.get("name"),
        "email": user.get("email"),
        "phone": user.get("phone"),
        "role": user.get("role", "user"),
    }


# ===================== Tokens =====================

def create_token(user_id: str) -> str:
    exp = utcnow() + timedelta(days=config.TOKEN_TTL_DAYS)
    return jwt.encode({"id": user_id, "exp": exp}, config.JWT_SECRET, algorithm=config.JWT_ALGO)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Token is not valid")


def session_for(user: dict) -> dict:
    return {"token": create_token(user["_id"]), "user": public_user(user)}


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> dict:
    if credentials is None:
        raise Unauthorized("No token, authorization denied")
    payload = decode_token(credentials.credentials)
    user_id = payload.get("id")
    if not user_id:
        raise Unauthorized("Token is not valid")
    user = get_document_by_id("user", user_id, SECRET_FIELDS)
    if not user:
        raise Unauthorized("User not found")
    return user


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if not is_admin(user):
        raise Forbidden("Access denied. Admin only.")
    return user


# ===================== Registration =====================

def register(name: str, email: str, password: str, phone: Optional[str] = None) -> dict:
    email = normalize_email(email)
    if find_document("user", {"email": email}, {"_id": 1}):
        raise Conflict("User already exists")
    user = User(name=name.strip(), email=email, phone=phone, password_hash=hash_password(password))
    try:
        user_id = create_document("user", user)
    except DuplicateKeyError:
        raise Conflict("User already exists")
    logger.info("Registered user %s", email)
    return session_for(get_document_by_id("user", user_id, SECRET_FIELDS))


def google_login(email: str, name: Optional[str] = None, google_id: Optional[str] = None) -> dict:
    email = normalize_email(email)
    user = find_document("user", {"email": email}, SECRET_FIELDS)
    if not user:
        # Google accounts never use this password; it only has to be unguessable
        placeholder = google_id or secrets.token_urlsafe(24)
        new_user = User(name=name or "User", email=email, password_hash=hash_password(placeholder))
        user_id = create_document("user", new_user)
        user = get_document_by_id("user", user_id, SECRET_FIELDS)
        logger.info("Created user %s from Google sign-in", email)
    return session_for(user)


# ===================== Login / OTP =====================

def _otp_exempt(user: dict) -> bool:
    return is_admin(user) or user["email"] in config.OTP_BYPASS_EMAILS


def _record_failure(user: dict) -> int:
    """Count a wrong password; a lock that already ran out starts a fresh count."""
    users = database.collection("user")
    now = utcnow()
    lock_until = as_utc(user.get("lock_until"))
    if lock_until is not None and lock_until <= now:
        users.update_one({"_id": to_object_id(user["_id"])}, {"$set": {"login_attempts": 0, "lock_until": None}})
    updated = users.find_one_and_update(
        {"_id": to_object_id(user["_id"])},
        {"$inc": {"login_attempts": 1}, "$set": {"updated_at": now}},
        projection={"login_attempts": 1},
        return_document=ReturnDocument.AFTER,
    )
    attempts = updated["login_attempts"]
    if attempts > config.MAX_LOGIN_ATTEMPTS:
        update_document("user", user["_id"], {"lock_until": now + timedelta(minutes=config.LOCK_MINUTES)})
    return attempts


def _check_password(email: str, password: str) -> dict:
    """Apply lockout rules and return the user when the password matches."""
    user = find_document("user", {"email": email})
    if not user:
        raise NotFound("Email is wrong", status_code=400)

    lock_until = as_utc(user.get("lock_until"))
    if lock_until is not None and lock_until > utcnow():
        logger.warning("Login refused for locked account %s", email)
        raise AccountLocked()

    if not verify_password(password, user.get("password_hash")):
        attempts = _record_failure(user)
        if attempts > config.MAX_LOGIN_ATTEMPTS:
            logger.warning("Locking %s after %d failed attempts", email, attempts)
            raise AccountLocked(
                f"Account locked due to too many failed attempts. "
                f"Please try again after {config.LOCK_MINUTES} minutes."
            )
        remaining = config.MAX_LOGIN_ATTEMPTS + 1 - attempts
        logger.warning("Wrong password for %s (%d attempts)", email, attempts)
        raise InvalidCredentials(f"Password is wrong. You have {remaining} attempts remaining.")

    if user.get("login_attempts") or user.get("lock_until"):
        update_document("user", user["_id"], {"login_attempts": 0, "lock_until": None})
    return user


def _issue_otp(user: dict) -> str:
    otp = str(secrets.randbelow(900000) + 100000)
    expires = utcnow() + timedelta(minutes=config.OTP_TTL_MINUTES)
    update_document("user", user["_id"], {"otp": otp, "otp_expires": expires})
    return otp


def _clear_otp(user: dict):
    update_document("user", user["_id"], {}, unset=["otp", "otp_expires"])


async def login(email: str, password: str, send_email: Callable[[str, str, str], Awaitable[object]]) -> dict:
    email = normalize_email(email)
    user = await run_in_threadpool(_check_password, email, password)

    if _otp_exempt(user):
        logger.info("OTP bypass for %s (role=%s)", email, user.get("role"))
        return session_for(user)

    otp = await run_in_threadpool(_issue_otp, user)
    message = f"Your OTP for login is: {otp}\n\nThis OTP is valid for {config.OTP_TTL_MINUTES} minutes."
    try:
        await send_email(user["email"], "Your Login OTP", message)
    except Exception as exc:
        logger.exception("OTP email to %s failed", email)
        await run_in_threadpool(_clear_otp, user)
        raise MessagingFailed() from exc

    return {"otpRequired": True, "email": user["email"], "message": "OTP sent to your email"}


def verify_otp(email: str, otp: str) -> dict:
    email = normalize_email(email)
    user = find_document("user", {"email": email})
    if not user:
        raise NotFound("User not found", status_code=400)

    stored = user.get("otp")
    expires = as_utc(user.get("otp_expires"))
    if not stored or expires is None:
        raise NoPendingOtp()
    if not secrets.compare_digest(stored.encode(), str(otp or "").strip().encode()):
        raise InvalidOtp()
    if expires < utcnow():
        raise OtpExpired()

    # Consume only if nobody else used this code in the meantime
    consumed = database.collection("user").find_one_and_update(
        {"_id": to_object_id(user["_id"]), "otp": stored},
        {"$unset": {"otp": "", "otp_expires": ""}, "$set": {"updated_at": utcnow()}},
        projection=SECRET_FIELDS,
        return_document=ReturnDocument.AFTER,
    )
    if consumed is None:
        raise NoPendingOtp()
    logger.info("OTP verified for %s", email)
    return session_for(database.serialize_doc(consumed))


# ===================== Profile =====================

def update_profile(user: dict, name: Optional[str] = None, email: Optional[str] = None) -> dict:
    changes = {}
    if email:
        email = normalize_email(email)
        if email != user["email"]:
            if find_document("user", {"email": email}, {"_id": 1}):
                raise Conflict("Email already in use")
            changes["email"] = email
    if name and name.strip():
        changes["name"] = name.strip()
    if changes:
        try:
            update_document("user", user["_id"], changes)
        except DuplicateKeyError:
            raise Conflict("Email already in use")
    updated = get_document_by_id("user", user["_id"], SECRET_FIELDS)
    if not updated:
        raise NotFound("User not found")
    return updated


def change_password(user: dict, current_password: str, new_password: str):
    stored = find_document("user", {"_id": to_object_id(user["_id"])}, {"password_hash": 1})
    if not stored:
        raise NotFound("User not found")
    if not verify_password(current_password, stored.get("password_hash")):
        raise InvalidCredentials("Current password is incorrect")
    update_document("user", user["_id"], {"password_hash": hash_password(new_password)})
    logger.info("Password changed for %s", user["email"])


def ensure_default_admin():
    if not config.ADMIN_EMAIL or not config.ADMIN_PASSWORD:
        logger.info("ADMIN_EMAIL/ADMIN_PASSWORD not set, skipping default admin")
        return None
    email = normalize_email(config.ADMIN_EMAIL)
    existing = find_document("user", {"email": email}, {"_id": 1})
    if existing:
        return existing["_id"]
    admin = User(name=config.ADMIN_NAME, email=email, password_hash=hash_password(config.ADMIN_PASSWORD), role="admin")
    admin_id = create_document("user", admin)
    logger.info("Default admin %s created", email)
    return admin_id
