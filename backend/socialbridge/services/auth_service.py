"""Authentication service - application users and their sessions"""
import logging
import secrets
from typing import Optional

import bcrypt
from sqlalchemy.orm import Session

from socialbridge.core.metrics import login_attempts_counter
from socialbridge.db.redis import delete_all_user_sessions, delete_session, set_session
from socialbridge.models.user import User

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    """Hash a password using bcrypt"""
    salt = bcrypt.gensalt()
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash"""
    if not password_hash or not password:
        return False
    return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))


def create_user(email: str, password: str, db: Session) -> User:
    """Create a new user. The first account ever created becomes ADMIN.

    Raises:
        ValueError: email already registered
    """
    email = email.strip().lower()
    if db.query(User).filter(User.email == email).first():
        raise ValueError("Email already registered")

    role = "ADMIN" if db.query(User).count() == 0 else "USER"
    user = User(email=email, password_hash=hash_password(password), role=role)
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Created user {user.id} with role {role}")
    return user


def get_user_by_id(user_id: int, db: Session) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def authenticate_user(email: str, password: str, db: Session) -> Optional[User]:
    """Authenticate a user by email and password"""
    user = db.query(User).filter(User.email == email.strip().lower()).first()
    if not user or not verify_password(password, user.password_hash):
        return None
    return user


def login_user(email: str, password: str, db: Session) -> Optional[tuple]:
    """Check credentials and open a session

    Returns:
        (user, session_id) or None when the credentials are wrong
    """
    user = authenticate_user(email, password, db)
    if not user:
        login_attempts_counter.labels(status="failure").inc()
        return None

    session_id = secrets.token_urlsafe(32)
    set_session(session_id, user.id)
    login_attempts_counter.labels(status="success").inc()
    return user, session_id


def logout_user(session_id: Optional[str]) -> None:
    if session_id:
        delete_session(session_id)


def delete_user(user_id: int, db: Session) -> bool:
    """Delete a user, their sessions and (via cascade) their provider credentials"""
    user = get_user_by_id(user_id, db)
    if not user:
        return False
    db.delete(user)
    db.commit()
    sessions = delete_all_user_sessions(user_id)
    logger.info(f"Deleted user {user_id} and {sessions} session(s)")
    return True
