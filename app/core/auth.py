from __future__ import annotations

from typing import Callable

from fastapi import Depends, HTTPException, Request
from jose import JWTError
from sqlalchemy import text
from sqlalchemy.orm import Session

from app.core.db import get_db
from app.core.security import decode_access_token


def _token_from_request(request: Request) -> str | None:
    auth = request.headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return request.cookies.get("access_token")


def require_user(request: Request, db: Session = Depends(get_db)) -> dict:
    token = _token_from_request(request)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")

    try:
        payload = decode_access_token(token)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")

    if payload.get("typ") != "access":
        raise HTTPException(status_code=401, detail="Invalid token type")

    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token")

    row = db.execute(
        text("""
            select id, email, name, role, is_active
              from users
             where id = :id
             limit 1
        """),
        {"id": user_id},
    ).fetchone()

    if not row or not bool(row[4]):
        raise HTTPException(status_code=401, detail="User disabled or not found")

    return {
        "user_id": int(row[0]),
        "email": str(row[1]),
        "name": row[2],
        "role": str(row[3]),
    }


def require_role(*roles: str) -> Callable[..., dict]:
    def _dep(user: dict = Depends(require_user)) -> dict:
        if user["role"] not in roles:
            raise HTTPException(status_code=403, detail="Insufficient role")
        return user

    return _dep


require_admin = require_role("admin")
require_creator = require_role("creator", "admin")
