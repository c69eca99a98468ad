from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
import re
import secrets
import time
from datetime import datetime, timezone
from threading import Lock as ThreadLock
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel


router = APIRouter()

PROJECT_ROOT = os.path.dirname(os.path.dirname(__file__))
DATA_DIR = os.getenv("REFERRAL_DATA_DIR", os.path.join(PROJECT_ROOT, "data"))
USERS_PATH = os.getenv("REFERRAL_STAFF_USERS_PATH", os.path.join(DATA_DIR, "staff_users.json"))

logger = logging.getLogger("referralweb.auth")

USERS_LOCK = ThreadLock()
SESSIONS_LOCK = ThreadLock()
SESSIONS: Dict[str, Dict[str, Any]] = {}
SESSION_TTL_SECONDS = int(os.getenv("REFERRAL_SESSION_TTL_SECONDS", str(60 * 60 * 12)))

PBKDF2_ITERATIONS = 200_000
USERNAME_RE = re.compile(r"^[a-z0-9][a-z0-9._-]{2,31}$")
INVALID_LOGIN = "Invalid username or password."


class LoginPayload(BaseModel):
    username: str
    password: str


class StaffUser(BaseModel):
    username: str
    display_name: str = ""
    created_at_utc: str = ""


class AuthResponse(BaseModel):
    token: str
    user: StaffUser


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_username(username: str) -> str:
    return re.sub(r"\s+", "", (username or "").strip().lower())


def validate_username(username: str) -> None:
    if not USERNAME_RE.match(username):
        raise ValueError("Username must be 3-32 chars and use letters, numbers, dot, dash, underscore.")


def validate_password(password: str) -> None:
    if not password or len(password) < 8:
        raise ValueError("Password must be at least 8 characters.")


# -------------------------
# Users file
# -------------------------
def _load_users() -> Dict[str, Any]:
    if not os.path.exists(USERS_PATH):
        return {"version": 1, "users": {}}
    try:
        with open(USERS_PATH, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.error("Could not read staff users file %s: %s", USERS_PATH, e)
        return {"version": 1, "users": {}}
    if not isinstance(data, dict):
        return {"version": 1, "users": {}}
    data.setdefault("version", 1)
    if not isinstance(data.get("users"), dict):
        data["users"] = {}
    return data


def _save_users(data: Dict[str, Any]) -> None:
    os.makedirs(os.path.dirname(os.path.abspath(USERS_PATH)), exist_ok=True)
    tmp_path = USERS_PATH + ".tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, sort_keys=True)
    os.replace(tmp_path, USERS_PATH)


def _hash_password(password: str, salt: bytes) -> str:
    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PBKDF2_ITERATIONS)
    return base64.b64encode(dk).decode("ascii")


def _verify_password(password: str, salt_b64: str, hash_b64: str) -> bool:
    try:
        salt = base64.b64decode(salt_b64.encode("ascii"), validate=True)
    except (binascii.Error, ValueError):
        return False
    calc = _hash_password(password, salt)
    return hmac.compare_digest(calc, hash_b64 or "")


def _public_user(username: str, rec: Dict[str, Any]) -> StaffUser:
    return StaffUser(
        username=username,
        display_name=rec.get("display_name", "") or "",
        created_at_utc=rec.get("created_at_utc", "") or "",
    )


def set_staff_user(username: str, password: str, display_name: str = "") -> StaffUser:
    """
    Creates a staff account, or resets the password (and display name) of an
    existing one. Raises ValueError for an unusable username or password.
    """
    uname = normalize_username(username)
    validate_username(uname)
    validate_password(password)

    with USERS_LOCK:
        data = _load_users()
        users = data.setdefault("users", {})
        existing = users.get(uname) or {}
        salt = secrets.token_bytes(16)
        now = _utc_now_iso()
        users[uname] = {
            "display_name": (display_name or existing.get("display_name", "")).strip(),
            "password_hash": _hash_password(password, salt),
            "salt": base64.b64encode(salt).decode("ascii"),
            "created_at_utc": existing.get("created_at_utc") or now,
            "updated_at_utc": now,
        }
        _save_users(data)
        rec = users[uname]

    logger.info("Staff user %s %s", uname, "updated" if existing else "created")
    return _public_user(uname, rec)


def authenticate(username: str, password: str) -> Optional[StaffUser]:
    uname = normalize_username(username)
    if not uname or not password:
        return None
    with USERS_LOCK:
        rec = _load_users().get("users", {}).get(uname)
    if not rec:
        return None
    if not _verify_password(password, rec.get("salt", ""), rec.get("password_hash", "")):
        return None
    return _public_user(uname, rec)


# -------------------------
# Sessions
# -------------------------
def create_session(username: str) -> str:
    token = secrets.token_urlsafe(32)
    now = int(time.time())
    with SESSIONS_LOCK:
        SESSIONS[token] = {
            "username": username,
            "created_at": now,
            "expires_at": now + SESSION_TTL_SECONDS,
        }
    return token


def _get_session(token: str) -> Optional[str]:
    if not token:
        return None
    now = int(time.time())
    with SESSIONS_LOCK:
        sess = SESSIONS.get(token)
        if not sess:
            return None
        if sess.get("expires_at", 0) < now:
            SESSIONS.pop(token, None)
            return None
        return sess.get("username")


def _extract_token(request: Request) -> str:
    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        return auth.split(None, 1)[1].strip()
    return request.headers.get("X-Auth-Token", "").strip()


def require_staff(request: Request) -> StaffUser:
    token = _extract_token(request)
    username = _get_session(token)
    if not username:
        raise HTTPException(status_code=401, detail="Not authenticated.")
    with USERS_LOCK:
        rec = _load_users().get("users", {}).get(username)
    if not rec:
        raise HTTPException(status_code=401, detail="User not found.")
    return _public_user(username, rec)


# -------------------------
# Routes
# -------------------------
@router.post("/auth/login", response_model=AuthResponse)
def login(payload: LoginPayload):
    user = authenticate(payload.username, payload.password)
    if user is None:
        logger.info("Staff login failed for %s", normalize_username(payload.username))
        raise HTTPException(status_code=401, detail=INVALID_LOGIN)
    token = create_session(user.username)
    logger.info("Staff login %s", user.username)
    return {"token": token, "user": user}


@router.get("/auth/me")
def me(user: StaffUser = Depends(require_staff)):
    return {"user": user}


@router.post("/auth/logout")
def logout(request: Request):
    token = _extract_token(request)
    if token:
        with SESSIONS_LOCK:
            SESSIONS.pop(token, None)
    return {"ok": True}
