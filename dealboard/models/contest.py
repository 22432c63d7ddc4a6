"""
Sales contests and their derived leaderboard entries
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from dealboard.models.base import Base


class Contest(Base):
    __tablename__ = "contests"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(256), nullable=False)
    description = Column(String(2000))
    start_date = Column(DateTime, nullable=False)  # local time
    end_date = Column(DateTime, nullable=False)  # local time, whole day inclusive
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    entries = relationship("ContestEntry", back_populates="contest", cascade="all, delete-orphan")


class ContestEntry(Base):
    """Recomputed from the deal mirror on every sync; never edited by hand"""
    __tablename__ = "contest_entries"

    id = Column(Integer, primary_key=True, index=True)
    contest_id = Column(Integer, ForeignKey("contests.id", ondelete="CASCADE"), nullable=False, index=True)
    aggregation_key = Column(String(320), nullable=False)  # "id:123", "email:a@b.se", "seller:1234", "unknown"
    display_label = Column(String(50), nullable=False)
    deals_count = Column(Integer, nullable=False, default=0)
    owner_user_id = Column(String(64), ForeignKey("users.id"), nullable=True)
    updated_at = Column(DateTime, nullable=False)

    contest = relationship("Contest", back_populates="entries")

    __table_args__ = (
        UniqueConstraint("contest_id", "aggregation_key", name="uq_contest_entry_key"),
    )
