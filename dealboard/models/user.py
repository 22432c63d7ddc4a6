"""Local user accounts that HubSpot owners are linked to"""
import uuid

from sqlalchemy import Column, String, Boolean, DateTime
from sqlalchemy.sql import func
from dealboard.models.base import Base


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    username = Column(String(256), unique=True, index=True, nullable=False)  # employee number, e.g. "1234"
    email = Column(String(256), index=True, nullable=True)
    display_name = Column(String(256), nullable=True)
    roles = Column(String(512), nullable=False, default="")  # comma-separated role names
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, server_default=func.now())

    @property
    def role_list(self):
        return [r.strip() for r in (self.roles or "").split(",") if r.strip()]
