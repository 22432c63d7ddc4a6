"""
Owner Resolver

Maps a HubSpot salesperson identity to a local account and keeps the
owner-mapping table current.

Resolution is an ordered list of strategies; each returns
``(resolved, account)`` and the first resolved one wins:

- owner_id mode:  linked mapping -> username derived from email -> unresolved
- seller_id mode: username equal to the seller id -> unresolved

Links written by an admin are sticky: automatic resolution only ever fills
an empty link, it never replaces one.
"""
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from dealboard.config import Settings, get_settings
from dealboard.connectors.hubspot_connector import HubSpotDeal, HubSpotOwner
from dealboard.models.deals import OwnerMapping
from dealboard.models.user import User
from dealboard.services.user_directory import UserDirectory
from dealboard.utils.helpers import first_non_empty, truncate, utc_now
from dealboard.utils.logger import log

TEAM_SEPARATOR = " | "


class OwnerLinkConflict(ValueError):
    """The local account is already linked to another HubSpot owner"""


def username_from_email(email: Optional[str], domain: str, pattern: str) -> Optional[str]:
    """'1234@example.com' -> '1234' when the domain and username format match"""
    if not email or "@" not in email or not domain:
        return None
    local_part, _, email_domain = email.strip().rpartition("@")
    if email_domain.lower() != domain.strip().lower():
        return None
    if not re.match(pattern, local_part):
        return None
    return local_part


@dataclass
class OwnerContext:
    """Everything known about the salesperson behind one deal"""
    reference: str  # HubSpot owner id, or seller id in seller_id mode
    owner: Optional[HubSpotOwner] = None
    deal_email: Optional[str] = None
    mapping: Optional[OwnerMapping] = None

    @property
    def email(self) -> Optional[str]:
        return first_non_empty(self.deal_email, self.owner.email if self.owner else None)


Resolution = Tuple[bool, Optional[User]]


class LinkedMappingStrategy:
    name = "linked_mapping"

    def __init__(self, directory: UserDirectory):
        self.directory = directory

    def resolve(self, context: OwnerContext) -> Resolution:
        if context.mapping is None or not context.mapping.owner_user_id:
            return False, None
        user = self.directory.find_by_id(context.mapping.owner_user_id)
        return user is not None, user


class EmailUsernameStrategy:
    name = "email_username"

    def __init__(self, directory: UserDirectory, settings: Settings):
        self.directory = directory
        self.settings = settings

    def resolve(self, context: OwnerContext) -> Resolution:
        username = username_from_email(
            context.email,
            self.settings.username_email_domain,
            self.settings.username_pattern,
        )
        if not username:
            return False, None
        user = self.directory.find_by_username(username)
        return user is not None, user


class SellerIdUsernameStrategy:
    name = "seller_id_username"

    def __init__(self, directory: UserDirectory):
        self.directory = directory

    def resolve(self, context: OwnerContext) -> Resolution:
        user = self.directory.find_by_username(context.reference)
        return user is not None, user


class OwnerResolver:
    """Resolves deal owners to local accounts; sole writer of owner mappings"""

    def __init__(
        self,
        db: Session,
        directory: Optional[UserDirectory] = None,
        settings: Optional[Settings] = None,
        strategies: Optional[Sequence] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.directory = directory or UserDirectory(db)
        self.strategies = list(strategies) if strategies is not None else self._default_strategies()

    def _default_strategies(self) -> List:
        if self.uses_seller_id:
            return [SellerIdUsernameStrategy(self.directory)]
        return [
            LinkedMappingStrategy(self.directory),
            EmailUsernameStrategy(self.directory, self.settings),
        ]

    @property
    def uses_seller_id(self) -> bool:
        return self.settings.identity_strategy == "seller_id"

    def owner_reference(self, deal: HubSpotDeal) -> Optional[str]:
        """The raw ownership signal on a deal, or None if it carries none"""
        value = deal.seller_id if self.uses_seller_id else deal.owner_id
        return first_non_empty(value)

    def run_strategies(self, context: OwnerContext) -> Optional[User]:
        for strategy in self.strategies:
            resolved, account = strategy.resolve(context)
            if resolved:
                log.debug(f"Owner {context.reference} resolved by {strategy.name}")
                return account
        return None

    async def resolve(self, deal: HubSpotDeal, crm) -> Optional[User]:
        """
        Resolve the local account behind a deal and refresh its mapping.

        Args:
            deal: Parsed deal with a non-empty owner reference
            crm: Connector used for (cached) owner lookups

        Returns:
            The local account, or None if the owner is unresolved
        """
        reference = self.owner_reference(deal)
        if not reference:
            return None

        if self.uses_seller_id:
            return self.run_strategies(OwnerContext(reference=reference))

        owner = await crm.get_owner(reference)
        mapping = self.get_mapping(reference)
        context = OwnerContext(reference=reference, owner=owner, deal_email=deal.owner_email, mapping=mapping)
        account = self.run_strategies(context)
        self.upsert_mapping(reference, owner, deal.owner_email, account, mapping=mapping)
        return account

    # ==================== Mapping writes ====================

    def get_mapping(self, owner_id: str) -> Optional[OwnerMapping]:
        return self.db.query(OwnerMapping).filter(OwnerMapping.hubspot_owner_id == owner_id).first()

    def upsert_mapping(
        self,
        owner_id: str,
        owner: Optional[HubSpotOwner],
        deal_email: Optional[str],
        account: Optional[User],
        mapping: Optional[OwnerMapping] = None,
    ) -> OwnerMapping:
        """Refresh mapping metadata; only fills the account link when it is empty"""
        now = utc_now()
        if mapping is None:
            mapping = self.get_mapping(owner_id)
        if mapping is None:
            mapping = OwnerMapping(hubspot_owner_id=owner_id, is_archived=False, created_at=now)
            self.db.add(mapping)

        mapping.email = truncate(first_non_empty(owner.email if owner else None, deal_email, mapping.email), 256)

        if owner is not None:
            mapping.first_name = first_non_empty(owner.first_name, mapping.first_name)
            mapping.last_name = first_non_empty(owner.last_name, mapping.last_name)
            mapping.primary_team_name = first_non_empty(owner.primary_team_name, mapping.primary_team_name)
            if owner.team_names:
                mapping.team_names = truncate(TEAM_SEPARATOR.join(owner.team_names), 1000)
            mapping.is_archived = owner.is_archived
            mapping.last_owner_sync_at = now

        mapping.last_seen_at = now

        if not mapping.owner_user_id and account is not None:
            if self._linked_elsewhere(account.id, owner_id):
                log.warning(
                    f"Not linking HubSpot owner {owner_id} to {account.username}: "
                    f"account already linked to another owner"
                )
            else:
                mapping.owner_user_id = account.id

        if account is not None and mapping.owner_user_id == account.id:
            mapping.owner_username = account.username

        self.db.flush()
        return mapping

    def _linked_elsewhere(self, user_id: str, owner_id: str) -> bool:
        return (
            self.db.query(OwnerMapping.id)
            .filter(OwnerMapping.owner_user_id == user_id, OwnerMapping.hubspot_owner_id != owner_id)
            .first()
            is not None
        )

    def link(self, owner_id: str, user_id: str) -> Optional[OwnerMapping]:
        """
        Manually link a mapping to a local account (replaces any previous link).

        Returns:
            The mapping, or None if either the mapping or the account is unknown

        Raises:
            OwnerLinkConflict: the account is linked to a different owner
        """
        mapping = self.get_mapping(owner_id)
        user = self.directory.find_by_id(user_id)
        if mapping is None or user is None:
            return None
        if self._linked_elsewhere(user.id, owner_id):
            raise OwnerLinkConflict(f"User {user.username} is already linked to another HubSpot owner")

        mapping.owner_user_id = user.id
        mapping.owner_username = user.username
        self.db.commit()
        log.info(f"Linked HubSpot owner {owner_id} to {user.username}")
        return mapping

    def unlink(self, owner_id: str) -> Optional[OwnerMapping]:
        mapping = self.get_mapping(owner_id)
        if mapping is None:
            return None
        mapping.owner_user_id = None
        mapping.owner_username = None
        self.db.commit()
        log.info(f"Unlinked HubSpot owner {owner_id}")
        return mapping

    def search(self, query: Optional[str] = None, unlinked_only: bool = False, limit: int = 200) -> List[OwnerMapping]:
        """Admin listing, ordered by name"""
        q = self.db.query(OwnerMapping)
        if unlinked_only:
            q = q.filter(OwnerMapping.owner_user_id.is_(None))
        if query and query.strip():
            like = f"%{query.strip().lower()}%"
            q = q.filter(or_(
                func.lower(OwnerMapping.hubspot_owner_id).like(like),
                func.lower(OwnerMapping.email).like(like),
                func.lower(OwnerMapping.first_name).like(like),
                func.lower(OwnerMapping.last_name).like(like),
                func.lower(OwnerMapping.primary_team_name).like(like),
                func.lower(OwnerMapping.owner_username).like(like),
            ))
        return (
            q.order_by(OwnerMapping.first_name, OwnerMapping.last_name, OwnerMapping.hubspot_owner_id)
            .limit(limit)
            .all()
        )

    def clear_all(self) -> int:
        """Delete every mapping (window rebuild only)"""
        return self.db.query(OwnerMapping).delete(synchronize_session=False)
