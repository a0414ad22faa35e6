import re

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from config import SESSION_COOKIE_NAME, _current_user_id, _to_utc_storage
from db import get_db
from security import (
    _hash_password,
    _verify_password,
    _set_session_cookie,
    _is_login_allowed,
)

router = APIRouter()

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class RegisterIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str = Field(max_length=254)
    name: str = Field(min_length=1, max_length=120)
    password: str = Field(min_length=8)


class LoginIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str
    password: str


def _public_user(row) -> dict:
    return {
        "id": row["id"],
        "email": row["email"],
        "name": row["name"],
        "notifications_enabled": bool(row["notifications_enabled"]),
        "push_subscribed": bool(row["push_subscription"]),
    }


@router.post("/api/auth/register")
def register(request: Request, payload: RegisterIn):
    email = payload.email.strip().lower()
    if not EMAIL_RE.match(email):
        return JSONResponse({"error": "Invalid email address"}, status_code=400)
    if not payload.name.strip():
        return JSONResponse({"error": "Name is required"}, status_code=400)
    with get_db() as conn:
        if conn.execute("SELECT 1 FROM users WHERE email = ?", (email,)).fetchone():
            return JSONResponse({"error": "Email already registered"}, status_code=409)
    pw_hash = _hash_password(payload.password)
    with get_db() as conn:
        cur = conn.execute(
            "INSERT INTO users (email, name, password_hash, created_at) VALUES (?, ?, ?, ?)",
            (email, payload.name.strip(), pw_hash, _to_utc_storage()),
        )
        conn.commit()
        row = conn.execute("SELECT * FROM users WHERE id = ?", (cur.lastrowid,)).fetchone()
    resp = JSONResponse({"ok": True, "user": _public_user(row)}, status_code=201)
    _set_session_cookie(resp, request, row["id"], pw_hash)
    return resp


@router.post("/api/auth/login")
def login(request: Request, payload: LoginIn):
    ip = request.client.host if request.client else "unknown"
    if not _is_login_allowed(ip):
        return JSONResponse({"error": "Too many login attempts, try again later"}, status_code=429)
    with get_db() as conn:
        row = conn.execute(
            "SELECT * FROM users WHERE email = ?", (payload.email.strip().lower(),)
        ).fetchone()
    if not row or not _verify_password(payload.password, row["password_hash"]):
        return JSONResponse({"error": "Invalid email or password"}, status_code=401)
    resp = JSONResponse({"ok": True, "user": _public_user(row)})
    _set_session_cookie(resp, request, row["id"], row["password_hash"])
    return resp


@router.post("/api/auth/logout")
def logout():
    resp = JSONResponse({"ok": True})
    resp.delete_cookie(SESSION_COOKIE_NAME)
    return resp


@router.get("/api/auth/me")
def me():
    uid = _current_user_id.get()
    with get_db() as conn:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (uid,)).fetchone()
    return JSONResponse({"user": _public_user(row)})
