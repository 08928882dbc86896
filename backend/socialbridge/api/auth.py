"""Auth API routes"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.orm import Session

from socialbridge.core.security import SESSION_COOKIE, get_session_id, require_auth, set_auth_cookie
from socialbridge.db.redis import get_session
from socialbridge.db.session import get_db
from socialbridge.schemas.auth import LoginRequest, RegisterRequest, UserResponse
from socialbridge.services.auth_service import (
    create_user, delete_user, get_user_by_id, login_user, logout_user
)

router = APIRouter(prefix="/api/auth", tags=["auth"])
logger = logging.getLogger(__name__)


def _user_payload(user) -> dict:
    return UserResponse(
        id=user.id,
        email=user.email,
        role=user.role,
        created_at=user.created_at.isoformat() if user.created_at else "",
    ).model_dump()


@router.post("/register", status_code=201)
def register(request_data: RegisterRequest, db: Session = Depends(get_db)):
    """Create an application user"""
    try:
        user = create_user(request_data.email, request_data.password, db)
    except ValueError as e:
        raise HTTPException(400, str(e))
    return {"user": _user_payload(user)}


@router.post("/login")
def login(request_data: LoginRequest, response: Response, db: Session = Depends(get_db)):
    """Login user. The session id is set as a cookie and returned for bearer use."""
    result = login_user(request_data.email, request_data.password, db)
    if result is None:
        raise HTTPException(401, "Invalid email or password")
    user, session_id = result
    set_auth_cookie(response, session_id)
    return {"user": _user_payload(user), "session_token": session_id}


@router.post("/logout")
def logout(request: Request, response: Response):
    """Logout user"""
    logout_user(get_session_id(request))
    response.delete_cookie(SESSION_COOKIE)
    return {"message": "Logged out successfully"}


@router.get("/me")
def get_current_user(request: Request, db: Session = Depends(get_db)):
    """Get current logged-in user; `{"user": null}` when there is no session"""
    session_id = get_session_id(request)
    user_id = get_session(session_id) if session_id else None
    user = get_user_by_id(user_id, db) if user_id else None
    return {"user": _user_payload(user) if user else None}


@router.delete("/account")
def delete_account(response: Response, user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Delete the current user together with every connected provider credential"""
    if not delete_user(user_id, db):
        raise HTTPException(404, "User not found")
    response.delete_cookie(SESSION_COOKIE)
    return {"message": "Account deleted"}
