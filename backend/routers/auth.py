import logging
import sqlite3
import time

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, field_validator

from backend.security import issue_session_token, require_session
from database.db import create_tables, verify_staff_credentials

router = APIRouter()
logger = logging.getLogger(__name__)


class StaffLogin(BaseModel):
    username: str
    password: str

    @field_validator("username", "password")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


def _lookup_staff(username: str, password: str) -> dict | None:
    try:
        return verify_staff_credentials(username, password)
    except sqlite3.OperationalError:
        # Schema missing (lifespan skipped): create it once and retry.
        create_tables()
        return verify_staff_credentials(username, password)


@router.post("/auth/login")
def staff_login(payload: StaffLogin):
    try:
        staff = _lookup_staff(payload.username, payload.password)
    except sqlite3.OperationalError:
        logger.exception("staff login failed: database unavailable")
        raise HTTPException(status_code=503, detail="Authentication service unavailable. Please retry.")

    if not staff:
        logger.info("rejected staff login for %s", payload.username)
        raise HTTPException(status_code=401, detail="Invalid staff credentials.")

    token, claims = issue_session_token(staff["username"])
    logger.info("staff %s signed in", staff["username"])
    return {
        "access_token": token,
        "token_type": "bearer",
        "username": claims["sub"],
        "role": claims["role"],
        "expires_in": max(0, int(claims["exp"]) - int(time.time())),
    }


@router.get("/auth/me")
def whoami(claims: dict = Depends(require_session)):
    return {
        "username": claims["sub"],
        "role": claims["role"],
        "expires_at": claims["exp"],
    }
