import logging

from sqlalchemy.orm import Session

from auth.utils import hash_password, normalize_username
from config import settings
from db.database import SessionLocal
from db.models import User

logger = logging.getLogger(__name__)


def ensure_admin_account(db: Session | None = None) -> User:
    """Create the bootstrap admin from settings unless one already exists."""
    admin_username_raw = " ".join((settings.ADMIN_USERNAME or "").strip().split()) or "challengeadmin"
    admin_username_normalized = normalize_username(admin_username_raw)
    admin_display_name = (settings.ADMIN_DISPLAY_NAME or "Challenge Admin").strip() or "Challenge Admin"

    owns_session = db is None
    session: Session = db if db is not None else SessionLocal()
    try:
        admin_user = (
            session.query(User)
            .filter(User.username_normalized == admin_username_normalized, User.role == "admin")
            .order_by(User.created_at, User.id)
            .first()
        )
        if admin_user:
            return admin_user

        # The configured name may already belong to a participant; suffix the admin instead.
        final_username = admin_username_raw
        final_normalized = admin_username_normalized
        suffix = 2
        while session.query(User).filter(User.username_normalized == final_normalized).first():
            final_username = f"{admin_username_raw}_{suffix}"
            final_normalized = normalize_username(final_username)
            suffix += 1

        admin_user = User(
            username=final_username,
            username_normalized=final_normalized,
            password_hash=hash_password(settings.ADMIN_PASSWORD),
            display_name=admin_display_name,
            role="admin",
            token_version=0,
        )
        session.add(admin_user)
        session.commit()
        logger.info("Created admin account '%s'", final_username)
        return admin_user
    finally:
        if owns_session:
            session.close()
