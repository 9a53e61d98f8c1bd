import time
import sqlite3

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import ROLE_ADMIN, ROLE_GUARD, issue_session_token, require_session
from database.db import create_tables, verify_admin_credentials, verify_guard_pin

router = APIRouter()


class AdminLogin(BaseModel):
    username: str
    password: str


class GuardLogin(BaseModel):
    name: str
    pin: str


def _token_response(subject: str, *, role: str, guard_id: int | None = None) -> dict:
    token, claims = issue_session_token(subject, role=role, guard_id=guard_id)
    now = int(time.time())
    body = {
        "access_token": token,
        "token_type": "bearer",
        "username": claims["sub"],
        "role": claims["role"],
        "expires_at": claims["exp"],
        "expires_in": max(0, int(claims["exp"]) - now),
    }
    if guard_id is not None:
        body["guard_id"] = guard_id
    return body


@router.post("/auth/login")
def admin_login(payload: AdminLogin):
    username = payload.username.strip()
    password = payload.password.strip()

    if not username:
        raise HTTPException(status_code=400, detail="Username is required.")
    if not password:
        raise HTTPException(status_code=400, detail="Password is required.")

    try:
        admin = verify_admin_credentials(username, password)
    except sqlite3.OperationalError:
        # Self-heal when DB schema is missing (e.g., startup/lifespan skipped).
        try:
            create_tables()
            admin = verify_admin_credentials(username, password)
        except sqlite3.OperationalError:
            raise HTTPException(
                status_code=503,
                detail="Authentication service unavailable. Please retry.",
            )

    if not admin:
        raise HTTPException(status_code=401, detail="Invalid admin credentials.")

    return _token_response(admin["username"], role=ROLE_ADMIN)


@router.post("/auth/guard-login")
def guard_login(payload: GuardLogin):
    name = payload.name.strip()
    pin = payload.pin.strip()

    if not name or not pin:
        raise HTTPException(status_code=400, detail="Name and PIN are required.")

    guard = verify_guard_pin(name, pin)
    if not guard:
        raise HTTPException(status_code=401, detail="Invalid guard credentials.")

    return _token_response(guard.name, role=ROLE_GUARD, guard_id=guard.id)


@router.get("/auth/me")
def auth_me(session: dict = Depends(require_session)):
    return {
        "username": session.get("sub"),
        "role": session.get("role", ROLE_ADMIN),
        "guard_id": session.get("gid"),
        "expires_at": session.get("exp"),
        "issued_at": session.get("iat"),
    }
