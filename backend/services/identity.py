from __future__ import annotations

from dataclasses import dataclass

from db.models import User


@dataclass(frozen=True)
class Identity:
    """The acting principal as the challenge core sees it."""

    user_id: int
    display_name: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return (self.role or "").lower() == "admin"


def resolve_display_name(user: User) -> str:
    # Profile nickname wins, then the account display name.
    for candidate in (user.nickname, user.display_name, user.username):
        text = " ".join((candidate or "").strip().split())
        if text:
            return text
    return ""


def identity_for_user(user: User) -> Identity:
    return Identity(user_id=int(user.id), display_name=resolve_display_name(user), role=user.role or "user")
