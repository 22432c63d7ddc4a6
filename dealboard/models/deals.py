"""
HubSpot mirror models

Deals present here are exactly the deals HubSpot currently reports as
fulfilled. Owner mappings cache HubSpot owner profiles and their link to a
local account.
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Numeric, ForeignKey, Index, text
from sqlalchemy.sql import func
from dealboard.models.base import Base


class DealRecord(Base):
    """A fulfilled HubSpot deal"""
    __tablename__ = "hubspot_deals"

    id = Column(Integer, primary_key=True, index=True)
    hubspot_deal_id = Column(String(128), unique=True, nullable=False)
    deal_name = Column(String(512))
    fulfilled_date = Column(DateTime, nullable=False, index=True)  # UTC

    amount = Column(Numeric(18, 2))
    provision = Column(Numeric(18, 2))  # seller commission
    currency_code = Column(String(16))
    stage = Column(String(256))  # raw stage value as HubSpot sent it

    # Ownership
    owner_id = Column(String(64))  # HubSpot owner id
    owner_email = Column(String(256))
    seller_id = Column(String(64))  # employee number carried on the contact/deal
    owner_user_id = Column(String(64), ForeignKey("users.id"), nullable=True, index=True)

    payload_hash = Column(String(64))  # SHA-256 of the last payload seen
    hubspot_last_modified = Column(DateTime)

    first_seen_at = Column(DateTime, nullable=False, server_default=func.now())
    last_seen_at = Column(DateTime, nullable=False, server_default=func.now())

    __table_args__ = (
        Index("ix_hubspot_deals_owner_fulfilled", "owner_id", "fulfilled_date"),
    )


class OwnerMapping(Base):
    """HubSpot owner profile plus its (sticky) link to a local account"""
    __tablename__ = "hubspot_owner_mappings"

    id = Column(Integer, primary_key=True, index=True)
    hubspot_owner_id = Column(String(64), unique=True, nullable=False)
    email = Column(String(256))
    first_name = Column(String(256))
    last_name = Column(String(256))
    primary_team_name = Column(String(256))
    team_names = Column(String(1000))  # " | " separated
    is_archived = Column(Boolean, default=False, nullable=False)

    owner_user_id = Column(String(64), ForeignKey("users.id"), nullable=True)
    owner_username = Column(String(256))

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    last_seen_at = Column(DateTime)
    last_owner_sync_at = Column(DateTime)

    __table_args__ = (
        # One local account can only be linked to one HubSpot owner
        Index(
            "ux_hubspot_owner_mappings_owner_user_id",
            "owner_user_id",
            unique=True,
            sqlite_where=text("owner_user_id IS NOT NULL"),
            postgresql_where=text("owner_user_id IS NOT NULL"),
        ),
    )

    @property
    def full_name(self):
        parts = [p.strip() for p in (self.first_name, self.last_name) if p and p.strip()]
        return " ".join(parts) or None
