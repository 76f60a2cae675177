"""
Authentication router: register, login, logout and me.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone
from typing import Any

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerifyMismatchError
from argon2.low_level import Type
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from jose import jwt

from auth_deps import USER_COLUMNS, get_current_user, get_current_user_optional
from auth_models import (
    AuthSessionResponse,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    UserResponse,
)
from config import (
    ACCESS_COOKIE_NAME,
    ACCESS_TOKEN_EXPIRE_MINUTES,
    ADMIN_EMAILS,
    COOKIE_SAMESITE,
    COOKIE_SECURE,
    JWT_ALGORITHM,
    SECRET_KEY,
)
from db import get_db, utc_now_iso
from request_models import Location

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

GENERIC_LOGIN_ERROR = "Invalid email or password"
GENERIC_TOO_MANY_ATTEMPTS = "Too many requests. Try again later."

password_hasher = PasswordHasher(
    time_cost=2,
    memory_cost=19456,
    parallelism=1,
    hash_len=32,
    salt_len=16,
    type=Type.ID,
)
DUMMY_PASSWORD_HASH = password_hasher.hash("dummy-password-for-timing-safety")


class SlidingWindowRateLimiter:
    def __init__(self) -> None:
        self._events: dict[str, deque[float]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def allow(self, key: str, limit: int, window_seconds: int) -> bool:
        now_ts = datetime.now(timezone.utc).timestamp()
        cutoff_ts = now_ts - window_seconds
        async with self._lock:
            bucket = self._events[key]
            while bucket and bucket[0] < cutoff_ts:
                bucket.popleft()
            if len(bucket) >= limit:
                return False
            bucket.append(now_ts)
            return True

    def reset(self) -> None:
        self._events.clear()


rate_limiter = SlidingWindowRateLimiter()


def _client_ip(request: Request) -> str:
    x_forwarded_for = request.headers.get("x-forwarded-for")
    if x_forwarded_for:
        return x_forwarded_for.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _validate_password(password: str) -> None:
    if len(password) < 8 or len(password) > 128:
        raise HTTPException(status_code=400, detail="Password must be 8-128 characters.")
    if any(not char.isprintable() for char in password):
        raise HTTPException(status_code=400, detail="Password contains invalid characters.")


def create_access_token(user_id: int, email: str, role: str) -> str:
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {
        "sub": str(user_id),
        "email": email,
        "role": role,
        "type": "access",
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    return jwt.encode(payload, SECRET_KEY, algorithm=JWT_ALGORITHM)


def _set_session_cookie(response: JSONResponse, access_token: str) -> None:
    max_age = ACCESS_TOKEN_EXPIRE_MINUTES * 60
    response.set_cookie(
        key=ACCESS_COOKIE_NAME,
        value=access_token,
        max_age=max_age,
        expires=max_age,
        httponly=True,
        secure=COOKIE_SECURE,
        samesite=COOKIE_SAMESITE,
        path="/",
    )


def to_user_response(user_row: dict[str, Any]) -> UserResponse:
    location = None
    if user_row.get("lat") is not None and user_row.get("lng") is not None:
        location = Location(
            lat=float(user_row["lat"]),
            lng=float(user_row["lng"]),
            address=str(user_row.get("address") or ""),
        )
    return UserResponse(
        id=int(user_row["id"]),
        email=str(user_row["email"]),
        display_name=str(user_row.get("display_name") or ""),
        phone=str(user_row.get("phone") or ""),
        role=user_row["role"],
        is_available=bool(user_row.get("is_available")),
        location=location,
        created_at=str(user_row["created_at"]),
        last_login_at=user_row.get("last_login_at"),
    )


def _build_auth_response(user_row: dict[str, Any], status_code: int = 200) -> JSONResponse:
    access_token = create_access_token(int(user_row["id"]), str(user_row["email"]), str(user_row["role"]))
    body = AuthSessionResponse(user=to_user_response(user_row), access_token=access_token).model_dump()
    response = JSONResponse(status_code=status_code, content=body)
    _set_session_cookie(response, access_token)
    return response


async def _rate_limit_or_429(
    request: Request,
    scope: str,
    limit: int,
    window_seconds: int,
) -> None:
    key = f"{scope}:{_client_ip(request)}"
    allowed = await rate_limiter.allow(key, limit=limit, window_seconds=window_seconds)
    if not allowed:
        raise HTTPException(status_code=429, detail=GENERIC_TOO_MANY_ATTEMPTS)


async def _get_user_by_email(db, email: str) -> dict[str, Any] | None:
    cursor = await db.execute(
        f"""
        SELECT {USER_COLUMNS}, password_hash
        FROM users
        WHERE email = ? COLLATE NOCASE
        """,
        (email,),
    )
    row = await cursor.fetchone()
    await cursor.close()
    return dict(row) if row else None


async def _get_user_by_id(db, user_id: int) -> dict[str, Any] | None:
    cursor = await db.execute(
        f"""
        SELECT {USER_COLUMNS}
        FROM users
        WHERE id = ?
        """,
        (user_id,),
    )
    row = await cursor.fetchone()
    await cursor.close()
    return dict(row) if row else None


@router.post("/register", response_model=AuthSessionResponse, status_code=201)
async def register(payload: RegisterRequest):
    email = _normalize_email(payload.email)
    display_name = payload.display_name.strip()
    _validate_password(payload.password)
    role = "admin" if email in ADMIN_EMAILS else payload.role

    db = await get_db()
    try:
        existing_user = await _get_user_by_email(db, email)
        if existing_user:
            logger.info("Registration rejected for existing e-mail")
            raise HTTPException(status_code=400, detail="Registration failed")

        password_hash = password_hasher.hash(payload.password)
        created_at = utc_now_iso()
        location = payload.location

        cursor = await db.execute(
            """
            INSERT INTO users (
                email, password_hash, display_name, phone, role, is_active, is_available,
                lat, lng, address, location_updated_at, created_at, last_login_at
            )
            VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?, ?, NULL)
            """,
            (
                email,
                password_hash,
                display_name,
                payload.phone.strip(),
                role,
                # New mechanics with a known location start on duty.
                1 if role == "mechanic" and location else 0,
                location.lat if location else None,
                location.lng if location else None,
                location.address if location else "",
                created_at if location else None,
                created_at,
            ),
        )
        user_id = int(cursor.lastrowid)
        await cursor.close()

        user_row = await _get_user_by_id(db, user_id)
        if not user_row:
            raise HTTPException(status_code=500, detail="Failed to create account")
        await db.commit()
    finally:
        await db.close()

    logger.info("Registered %s account %s", role, user_id)
    return _build_auth_response(user_row, status_code=201)


@router.post("/login", response_model=AuthSessionResponse)
async def login(payload: LoginRequest, request: Request):
    await _rate_limit_or_429(request, scope="login", limit=8, window_seconds=900)
    email = _normalize_email(payload.email)

    db = await get_db()
    try:
        user_row = await _get_user_by_email(db, email)

        is_password_valid = False
        if user_row:
            try:
                is_password_valid = password_hasher.verify(user_row["password_hash"], payload.password)
            except (VerifyMismatchError, InvalidHashError):
                is_password_valid = False
        else:
            try:
                password_hasher.verify(DUMMY_PASSWORD_HASH, payload.password)
            except (VerifyMismatchError, InvalidHashError):
                pass

        if not is_password_valid or not user_row["is_active"]:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=GENERIC_LOGIN_ERROR)

        try:
            if password_hasher.check_needs_rehash(user_row["password_hash"]):
                new_hash = password_hasher.hash(payload.password)
                await db.execute(
                    "UPDATE users SET password_hash = ? WHERE id = ?",
                    (new_hash, int(user_row["id"])),
                )
        except InvalidHashError:
            pass

        await db.execute(
            "UPDATE users SET last_login_at = ? WHERE id = ?",
            (utc_now_iso(), int(user_row["id"])),
        )
        user_public_row = await _get_user_by_id(db, int(user_row["id"]))
        await db.commit()
    finally:
        await db.close()

    return _build_auth_response(user_public_row)


@router.get("/me", response_model=UserResponse)
async def me(current_user: dict[str, Any] = Depends(get_current_user)):
    return to_user_response(current_user)


@router.post("/logout", response_model=MessageResponse)
async def logout(current_user: dict[str, Any] | None = Depends(get_current_user_optional)):
    if current_user:
        logger.info("User %s logged out", current_user["id"])
    response = JSONResponse(content=MessageResponse(message="Logged out").model_dump())
    response.delete_cookie(ACCESS_COOKIE_NAME, path="/")
    return response
