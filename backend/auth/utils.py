from datetime import datetime, timedelta, timezone

import bcrypt
import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from config import settings
from db.database import get_db
from db.models import User
from services.identity import Identity, identity_for_user

security = HTTPBearer(auto_error=False)


def normalize_username(username: str) -> str:
    return " ".join((username or "").strip().split()).lower()


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode(), hashed.encode())


def session_cookie_name() -> str:
    return (settings.AUTH_COOKIE_NAME or "").strip() or "plank_session"


def token_lifetime_hours(role: str | None) -> int:
    """Admins get shorter sessions than participants."""
    hours = settings.ADMIN_JWT_EXPIRY_HOURS if (role or "").lower() == "admin" else settings.JWT_EXPIRY_HOURS
    return max(int(hours), 1)


def create_token(user: User) -> str:
    issued_at = datetime.now(timezone.utc)
    payload = {
        "sub": str(user.id),
        "role": user.role or "user",
        # Bumping the user's token_version revokes every token issued before.
        "tv": int(user.token_version or 0),
        "iat": issued_at,
        "exp": issued_at + timedelta(hours=token_lifetime_hours(user.role)),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def _user_for_claims(db: Session, claims: dict) -> User:
    try:
        user_id = int(claims.get("sub", 0))
        token_version = int(claims.get("tv", 0))
    except (TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    if token_version != int(user.token_version or 0):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Session invalidated. Please sign in again.")
    return user


def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    # Bearer header first, then the session cookie set at login.
    token = credentials.credentials if credentials and credentials.credentials else None
    token = token or request.cookies.get(session_cookie_name())
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    user = _user_for_claims(db, decode_token(token))
    request.state.user_id = user.id
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if (user.role or "").lower() != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user


def get_current_identity(user: User = Depends(get_current_user)) -> Identity:
    return identity_for_user(user)
