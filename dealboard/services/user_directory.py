"""
Lookup of local user accounts.

Only used to check whether a derived username belongs to a real account;
account management lives outside this service.
"""
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from dealboard.models.user import User


class UserDirectory:
    """Read-only view over local accounts"""

    def __init__(self, db: Session):
        self.db = db

    def find_by_username(self, username: Optional[str]) -> Optional[User]:
        username = (username or "").strip()
        if not username:
            return None
        return (
            self.db.query(User)
            .filter(func.lower(User.username) == username.lower(), User.is_active == True)  # noqa: E712
            .first()
        )

    def find_by_id(self, user_id: Optional[str]) -> Optional[User]:
        if not user_id:
            return None
        return self.db.query(User).filter(User.id == user_id).first()

    def is_in_role(self, user: Optional[User], role: str) -> bool:
        if user is None:
            return False
        return role.lower() in (r.lower() for r in user.role_list)
