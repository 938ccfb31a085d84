"""Users, user updates and authentication token claims."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass
class User:
    id: int = 0
    name: str = ""
    lastname: str = ""
    email: str = ""
    password_hash: str = ""
    active: bool = False
    role_id: int = 0
    avatar_url: Optional[str] = None
    deleted: bool = False
    deleted_at: Optional[datetime] = None
    linked_accounts: list[str] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class UpdateUserRequest:
    """Partial update of a user; None leaves a field unchanged."""

    id: int = 0
    name: Optional[str] = None
    lastname: Optional[str] = None
    email: Optional[str] = None
    active: Optional[bool] = None
    role_id: Optional[int] = None
    avatar_url: Optional[str] = None
    deleted: Optional[bool] = None


@dataclass
class Claims:
    """User claims carried in an access token, with the registered claims."""

    user_id: int = 0
    user_name: str = ""
    user_lastname: str = ""
    user_email: str = ""
    user_active: bool = False
    user_role_id: int = 0
    user_avatar_url: Optional[str] = None
    user_accounts: list[str] = field(default_factory=list)
    issuer: Optional[str] = None
    subject: Optional[str] = None
    audience: list[str] = field(default_factory=list)
    expires_at: Optional[datetime] = None
    not_before: Optional[datetime] = None
    issued_at: Optional[datetime] = None
    jwt_id: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "Claims":
        """Claims describing the given user, with no registered claims set."""
        return cls(
            user_id=user.id,
            user_name=user.name,
            user_lastname=user.lastname,
            user_email=user.email,
            user_active=user.active,
            user_role_id=user.role_id,
            user_avatar_url=user.avatar_url,
            user_accounts=list(user.linked_accounts),
        )