"""
Dependencies for authenticated endpoints.
"""

from typing import Any

from fastapi import HTTPException, Request, WebSocket, status
from jose import JWTError, jwt

from config import ACCESS_COOKIE_NAME, JWT_ALGORITHM, SECRET_KEY
from db import get_db

USER_COLUMNS = """
    id, email, display_name, phone, role, is_active, is_available,
    lat, lng, address, location_updated_at, created_at, last_login_at
"""


def decode_access_token(token: str) -> dict[str, Any]:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        ) from exc

    if payload.get("type") != "access" or "sub" not in payload:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return payload


async def fetch_user_by_id(user_id: int) -> dict[str, Any] | None:
    db = await get_db()
    try:
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
        if not row:
            return None
        user = dict(row)
        user["is_active"] = bool(user.get("is_active"))
        user["is_available"] = bool(user.get("is_available"))
        return user
    finally:
        await db.close()


def _extract_token(headers, cookies, query_params) -> str | None:
    authorization = headers.get("authorization") or ""
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    cookie_token = cookies.get(ACCESS_COOKIE_NAME)
    if cookie_token:
        return cookie_token
    return query_params.get("token")


async def authenticate_token(token: str | None) -> dict[str, Any]:
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    payload = decode_access_token(token)
    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError, KeyError) as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated") from exc

    user = await fetch_user_by_id(user_id)
    if not user or not user["is_active"]:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user


async def get_current_user(request: Request) -> dict[str, Any]:
    token = _extract_token(request.headers, request.cookies, {})
    return await authenticate_token(token)


async def get_websocket_user(websocket: WebSocket) -> dict[str, Any]:
    token = _extract_token(websocket.headers, websocket.cookies, websocket.query_params)
    return await authenticate_token(token)


async def get_current_user_optional(request: Request) -> dict[str, Any] | None:
    try:
        return await get_current_user(request)
    except HTTPException:
        return None


def require_role(user: dict[str, Any], *roles: str) -> None:
    if user.get("role") not in roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient role")


async def get_current_customer(request: Request) -> dict[str, Any]:
    user = await get_current_user(request)
    require_role(user, "customer")
    return user


async def get_current_mechanic(request: Request) -> dict[str, Any]:
    user = await get_current_user(request)
    require_role(user, "mechanic")
    return user


async def get_current_admin(request: Request) -> dict[str, Any]:
    user = await get_current_user(request)
    require_role(user, "admin")
    return user
