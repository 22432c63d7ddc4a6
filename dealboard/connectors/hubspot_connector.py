"""
HubSpot CRM connector

Read-only access to deals, contacts, owners and deal-stage metadata.
Provides:
- Incremental deal pages (cursor based, filtered by last-modified)
- Window search: every fulfilled deal whose sale date falls in a date range
- Owner lookups with a per-run cache and an archived-owner retry

Non-2xx responses and timeouts are logged and surface as a failed page;
nothing here raises on upstream trouble.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from dealboard.config import ConfigurationError, Settings, get_settings
from dealboard.connectors.base_connector import BaseConnector
from dealboard.connectors.status_resolver import StatusResolver, get_status_resolver
from dealboard.utils.dates import parse_crm_datetime, to_epoch_millis, to_iso_utc
from dealboard.utils.helpers import chunk_list, dedupe, hash_data, normalize_key
from dealboard.utils.logger import log
from dealboard.utils.retry import calculate_backoff, is_retryable_status

MAX_PAGE_SIZE = 100
BATCH_READ_SIZE = 100
DEAL_ASSOCIATION_LIMIT = 50


@dataclass
class HubSpotDeal:
    """One parsed HubSpot deal, before reconciliation against the mirror"""
    hubspot_deal_id: Optional[str]
    deal_name: Optional[str] = None
    owner_id: Optional[str] = None
    owner_email: Optional[str] = None
    seller_id: Optional[str] = None
    stage: Optional[str] = None
    is_fulfilled: bool = False
    fulfilled_date: Optional[datetime] = None
    last_modified: Optional[datetime] = None
    amount: Optional[Decimal] = None
    provision: Optional[Decimal] = None
    currency_code: Optional[str] = None
    payload_hash: Optional[str] = None
    contact_ids: List[str] = field(default_factory=list)


@dataclass
class HubSpotOwner:
    owner_id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_archived: bool = False
    team_names: List[str] = field(default_factory=list)
    primary_team_name: Optional[str] = None


@dataclass
class DealPage:
    deals: List[HubSpotDeal] = field(default_factory=list)
    next_cursor: Optional[str] = None
    failed: bool = False  # upstream error; caller must not advance its cursor

    @classmethod
    def failed_page(cls) -> "DealPage":
        return cls(deals=[], next_cursor=None, failed=True)


class OwnerCache:
    """
    Owner lookups for one sync run.

    Misses are cached too (as None) so an unknown owner is only asked for
    once per run. The engine clears it at the start of every run.
    """

    def __init__(self):
        self._owners: Dict[str, Optional[HubSpotOwner]] = {}

    def __contains__(self, owner_id: str) -> bool:
        return owner_id in self._owners

    def __len__(self) -> int:
        return len(self._owners)

    def get(self, owner_id: str) -> Optional[HubSpotOwner]:
        return self._owners.get(owner_id)

    def put(self, owner_id: str, owner: Optional[HubSpotOwner]):
        self._owners[owner_id] = owner

    def clear(self):
        self._owners.clear()


# ==================== Parsing ====================

def read_property(properties: Dict[str, Any], name: str) -> Optional[str]:
    """
    Read a HubSpot property as a stripped string.

    Falls back to a case- and accent-insensitive key match, since portals
    are not consistent about property casing ('Saljare' vs 'säljare').
    """
    if not properties or not name:
        return None

    value = properties.get(name)
    if value is None:
        wanted = normalize_key(name)
        for key, candidate in properties.items():
            if normalize_key(key) == wanted:
                value = candidate
                break

    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_decimal(value: Optional[str]) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return number if number.is_finite() else None


def _as_id(value: Any) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


def _association_ids(item: Dict[str, Any], object_type: str = "contacts") -> List[str]:
    associations = (item.get("associations") or {}).get(object_type) or {}
    ids = [_as_id(row.get("id")) for row in associations.get("results") or [] if isinstance(row, dict)]
    return dedupe(i for i in ids if i)


def parse_deal(item: Any, settings: Settings, status_resolver: StatusResolver) -> Optional[HubSpotDeal]:
    """
    Parse a raw HubSpot deal object.

    Returns None only for payloads that are not objects at all. A deal
    without an id is returned with hubspot_deal_id=None so the caller can
    count it as skipped.
    """
    if not isinstance(item, dict):
        return None

    props = item.get("properties")
    if not isinstance(props, dict):
        props = {}

    stage = read_property(props, settings.hubspot_fulfilled_property)
    last_modified = parse_crm_datetime(
        read_property(props, settings.hubspot_last_modified_property) or item.get("updatedAt")
    )

    return HubSpotDeal(
        hubspot_deal_id=_as_id(item.get("id")),
        deal_name=read_property(props, settings.hubspot_deal_name_property),
        owner_id=read_property(props, settings.hubspot_owner_id_property),
        owner_email=read_property(props, settings.hubspot_owner_email_property),
        seller_id=read_property(props, settings.hubspot_seller_id_property),
        stage=stage,
        is_fulfilled=status_resolver.is_fulfilled(stage),
        fulfilled_date=parse_crm_datetime(read_property(props, settings.hubspot_deal_fallback_date_property)),
        last_modified=last_modified,
        amount=parse_decimal(read_property(props, settings.hubspot_amount_property)),
        provision=parse_decimal(read_property(props, settings.hubspot_provision_property)),
        currency_code=read_property(props, settings.hubspot_currency_property),
        # associations are only present on list responses, not batch reads
        payload_hash=hash_data({k: v for k, v in item.items() if k != "associations"}),
        contact_ids=_association_ids(item),
    )


def parse_owner(owner_id: str, payload: Dict[str, Any]) -> HubSpotOwner:
    teams = [t for t in payload.get("teams") or [] if isinstance(t, dict)]
    team_names = dedupe(n for n in ((t.get("name") or "").strip() for t in teams) if n)

    primary = next(
        ((t.get("name") or "").strip() for t in teams if t.get("primary") and (t.get("name") or "").strip()),
        None,
    )
    if primary is None and team_names:
        primary = team_names[0]

    return HubSpotOwner(
        owner_id=owner_id,
        email=(payload.get("email") or "").strip() or None,
        first_name=(payload.get("firstName") or "").strip() or None,
        last_name=(payload.get("lastName") or "").strip() or None,
        is_archived=bool(payload.get("archived")),
        team_names=team_names,
        primary_team_name=primary,
    )


# ==================== Connector ====================

class HubSpotConnector(BaseConnector):
    """HubSpot CRM v3/v4 REST API client"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        status_resolver: Optional[StatusResolver] = None,
        owner_cache: Optional[OwnerCache] = None,
    ):
        super().__init__("HubSpot")
        self.settings = settings or get_settings()
        self.base_url = self.settings.hubspot_base_url.rstrip("/")
        self.headers = {
            "Authorization": f"Bearer {self.settings.hubspot_access_token or ''}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        self.timeout = aiohttp.ClientTimeout(total=self.settings.hubspot_request_timeout_seconds)
        if status_resolver is None:
            status_resolver = StatusResolver(self.settings) if settings is not None else get_status_resolver()
        self.status_resolver = status_resolver
        self.owner_cache = owner_cache if owner_cache is not None else OwnerCache()

    async def connect(self) -> bool:
        return bool(self.settings.hubspot_access_token)

    async def validate_connection(self) -> bool:
        status, _ = await self._request("GET", "/crm/v3/owners", params={"limit": "1"})
        return status == 200

    def reset_run_state(self):
        """Forget per-run caches; owner profiles are re-fetched every run"""
        self.owner_cache.clear()

    def _require_token(self):
        if not (self.settings.hubspot_access_token or "").strip():
            raise ConfigurationError("HubSpot access token is not configured")

    def _page_size(self, page_size: Optional[int]) -> int:
        size = page_size or self.settings.hubspot_page_size
        return max(1, min(MAX_PAGE_SIZE, size))

    def _deal_properties(self) -> List[str]:
        s = self.settings
        return dedupe(p for p in (
            s.hubspot_deal_name_property,
            s.hubspot_fulfilled_property,
            s.hubspot_deal_fallback_date_property,
            s.hubspot_owner_email_property,
            s.hubspot_owner_id_property,
            s.hubspot_seller_id_property,
            s.hubspot_last_modified_property,
            s.hubspot_amount_property,
            s.hubspot_currency_property,
            s.hubspot_provision_property,
        ) if p)

    def _contact_properties(self) -> List[str]:
        return [
            self.settings.hubspot_contact_seller_property,
            self.settings.hubspot_fulfilled_date_property,
        ]

    def parse_deal(self, item: Any) -> Optional[HubSpotDeal]:
        return parse_deal(item, self.settings, self.status_resolver)

    # ---------- HTTP ----------

    async def _send(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, Optional[Any]]:
        """Perform one HTTP call; the body is only decoded for 2xx responses"""
        url = f"{self.base_url}{path}"
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.request(method, url, headers=self.headers, params=params, json=json_body) as response:
                if not 200 <= response.status < 300:
                    body = await response.text()
                    log.debug(f"HubSpot {method} {path} error body: {body[:500]}")
                    return response.status, None
                return response.status, await response.json(content_type=None)

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Optional[int], Optional[Any]]:
        """
        HTTP call with backoff on rate limits.

        Returns:
            (status, payload). status is None when the call never completed
            (timeout, connection error); payload is None unless 2xx.
        """
        self.request_count += 1

        for attempt in range(1, self.RETRY_MAX_ATTEMPTS + 1):
            try:
                status, payload = await self._send(method, path, params=params, json_body=json_body)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                self.error_count += 1
                log.warning(f"HubSpot {method} {path} failed: {type(e).__name__}: {e}")
                return None, None

            if 200 <= status < 300:
                return status, payload

            if is_retryable_status(status) and attempt < self.RETRY_MAX_ATTEMPTS:
                delay = calculate_backoff(attempt, base_delay=self.RETRY_BASE_DELAY, max_delay=self.RETRY_MAX_DELAY)
                self.retry_count += 1
                log.warning(f"HubSpot {method} {path} returned {status}, retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                continue

            self.error_count += 1
            log.warning(f"HubSpot {method} {path} returned {status}")
            return status, None

        return None, None

    async def _get_json(self, path: str) -> Optional[Any]:
        _, payload = await self._request("GET", path)
        return payload

    # ---------- Incremental pages ----------

    async def get_page(
        self,
        modified_since: Optional[datetime] = None,
        cursor: Optional[str] = None,
        page_size: Optional[int] = None,
    ) -> DealPage:
        """
        Fetch one page of deals, newest changes filtered by modified_since.

        Args:
            modified_since: Only deals modified at/after this UTC time (None = all)
            cursor: HubSpot 'after' token from the previous page
            page_size: Records per page, clamped to 1..100

        Returns:
            DealPage; failed=True when HubSpot could not be read
        """
        if not self.settings.hubspot_enabled:
            return DealPage()
        self._require_token()
        await self.status_resolver.resolve(self._get_json)

        params = {
            "limit": str(self._page_size(page_size)),
            "archived": "false",
            "properties": ",".join(self._deal_properties()),
            "associations": "contacts",
        }
        if cursor:
            params["after"] = cursor
        if modified_since:
            params["updatedAtGte"] = to_iso_utc(modified_since)

        _, payload = await self._request("GET", "/crm/v3/objects/deals", params=params)
        if payload is None:
            return DealPage.failed_page()

        deals = []
        for item in payload.get("results") or []:
            deal = self.parse_deal(item)
            if deal is None:
                continue
            # The list endpoint does not always honour updatedAtGte
            if modified_since and deal.last_modified and deal.last_modified < modified_since:
                continue
            deals.append(deal)

        await self._enrich_with_contacts(deals)

        next_cursor = ((payload.get("paging") or {}).get("next") or {}).get("after")
        log.debug(f"HubSpot deal page: {len(deals)} deals, next cursor {next_cursor}")
        return DealPage(deals=deals, next_cursor=next_cursor)

    async def _enrich_with_contacts(self, deals: List[HubSpotDeal]):
        """Overlay seller id and sale date from each deal's associated contacts"""
        for deal in deals:
            if not deal.contact_ids and deal.hubspot_deal_id:
                deal.contact_ids = await self._fetch_deal_contact_ids(deal.hubspot_deal_id)

        contact_ids = dedupe(cid for deal in deals for cid in deal.contact_ids)
        if not contact_ids:
            return

        contacts = await self._batch_read_contacts(contact_ids)
        for deal in deals:
            self._apply_contact_data(deal, [contacts[c] for c in deal.contact_ids if c in contacts])

    async def _fetch_deal_contact_ids(self, deal_id: str) -> List[str]:
        _, payload = await self._request(
            "GET",
            f"/crm/v3/objects/deals/{deal_id}/associations/contacts",
            params={"limit": str(DEAL_ASSOCIATION_LIMIT)},
        )
        if payload is None:
            return []
        ids = [_as_id(row.get("id") or row.get("toObjectId")) for row in payload.get("results") or []]
        return dedupe(i for i in ids if i)

    async def _batch_read_contacts(self, contact_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        contacts = {}
        for chunk in chunk_list(contact_ids, BATCH_READ_SIZE):
            _, payload = await self._request(
                "POST",
                "/crm/v3/objects/contacts/batch/read",
                json_body={
                    "properties": self._contact_properties(),
                    "inputs": [{"id": cid} for cid in chunk],
                },
            )
            for item in (payload or {}).get("results") or []:
                cid = _as_id(item.get("id"))
                if cid:
                    contacts[cid] = item.get("properties") or {}
        return contacts

    def _apply_contact_data(self, deal: HubSpotDeal, contacts: List[Dict[str, Any]]):
        """First contact with a seller wins the seller; first with a sale date wins the date"""
        seller_found = False
        date_found = False
        for props in contacts:
            if not seller_found:
                seller = read_property(props, self.settings.hubspot_contact_seller_property)
                if seller:
                    deal.seller_id = seller
                    seller_found = True
            if not date_found:
                sale_date = parse_crm_datetime(read_property(props, self.settings.hubspot_fulfilled_date_property))
                if sale_date:
                    deal.fulfilled_date = sale_date
                    date_found = True
            if seller_found and date_found:
                break

    # ---------- Window search ----------

    async def search_by_fulfillment_window(
        self,
        start_utc: datetime,
        end_utc: datetime,
        cursor: Optional[str] = None,
        page_size: Optional[int] = None,
    ) -> DealPage:
        """
        Fetch fulfilled deals whose sale date is in [start_utc, end_utc).

        Searches contacts by sale date, looks up their deal associations in
        batch, then batch-reads the deals. The cursor pages over contacts.
        """
        if not self.settings.hubspot_enabled:
            return DealPage()
        self._require_token()
        await self.status_resolver.resolve(self._get_json)
        if not self.status_resolver.fulfilled_statuses:
            return DealPage()

        date_property = self.settings.hubspot_fulfilled_date_property
        body = {
            "filterGroups": [{
                "filters": [
                    {"propertyName": date_property, "operator": "GTE", "value": str(to_epoch_millis(start_utc))},
                    {"propertyName": date_property, "operator": "LT", "value": str(to_epoch_millis(end_utc))},
                ]
            }],
            "properties": self._contact_properties(),
            "limit": self._page_size(page_size),
        }
        if cursor:
            body["after"] = cursor

        _, payload = await self._request("POST", "/crm/v3/objects/contacts/search", json_body=body)
        if payload is None:
            return DealPage.failed_page()

        contacts = {}
        for item in payload.get("results") or []:
            cid = _as_id(item.get("id"))
            if cid:
                contacts[cid] = item.get("properties") or {}
        next_cursor = ((payload.get("paging") or {}).get("next") or {}).get("after")

        if not contacts:
            return DealPage(next_cursor=next_cursor)

        deal_contacts = await self._fetch_contact_deal_associations(list(contacts))
        if deal_contacts is None:
            return DealPage.failed_page()
        if not deal_contacts:
            return DealPage(next_cursor=next_cursor)

        raw_deals = await self._batch_read_deals(list(deal_contacts))
        if raw_deals is None:
            return DealPage.failed_page()

        deals = []
        for item in raw_deals:
            deal = self.parse_deal(item)
            if deal is None or not deal.hubspot_deal_id:
                continue
            deal.contact_ids = deal_contacts.get(deal.hubspot_deal_id, [])
            self._apply_contact_data(deal, [contacts[c] for c in deal.contact_ids if c in contacts])
            if deal.is_fulfilled and deal.fulfilled_date and start_utc <= deal.fulfilled_date < end_utc:
                deals.append(deal)

        log.debug(f"HubSpot window page: {len(contacts)} contacts, {len(deals)} fulfilled deals")
        return DealPage(deals=deals, next_cursor=next_cursor)

    async def _fetch_contact_deal_associations(self, contact_ids: List[str]) -> Optional[Dict[str, List[str]]]:
        """deal id -> contact ids, or None if HubSpot could not be read"""
        deal_contacts: Dict[str, List[str]] = {}
        for chunk in chunk_list(contact_ids, BATCH_READ_SIZE):
            _, payload = await self._request(
                "POST",
                "/crm/v4/associations/contacts/deals/batch/read",
                json_body={"inputs": [{"id": cid} for cid in chunk]},
            )
            if payload is None:
                return None
            for row in payload.get("results") or []:
                contact_id = _as_id((row.get("from") or {}).get("id"))
                if not contact_id:
                    continue
                for target in row.get("to") or []:
                    deal_id = _as_id(target.get("toObjectId"))
                    if deal_id and contact_id not in deal_contacts.setdefault(deal_id, []):
                        deal_contacts[deal_id].append(contact_id)
        return deal_contacts

    async def _batch_read_deals(self, deal_ids: List[str]) -> Optional[List[Dict[str, Any]]]:
        results = []
        for chunk in chunk_list(deal_ids, BATCH_READ_SIZE):
            _, payload = await self._request(
                "POST",
                "/crm/v3/objects/deals/batch/read",
                json_body={
                    "properties": self._deal_properties(),
                    "inputs": [{"id": did} for did in chunk],
                },
            )
            if payload is None:
                return None
            results.extend(payload.get("results") or [])
        return results

    # ---------- Owners ----------

    async def get_owner(self, owner_id: Optional[str]) -> Optional[HubSpotOwner]:
        """
        Look up an owner profile, falling back to archived owners on 404.

        Results (including misses) are cached for the rest of the run.
        """
        owner_id = (owner_id or "").strip()
        if not owner_id:
            return None
        if owner_id in self.owner_cache:
            return self.owner_cache.get(owner_id)

        path = f"/crm/v3/owners/{owner_id}"
        status, payload = await self._request("GET", path)
        if status == 404:
            status, payload = await self._request("GET", path, params={"archived": "true"})

        owner = parse_owner(owner_id, payload) if isinstance(payload, dict) else None
        if owner is None:
            log.info(f"HubSpot owner {owner_id} not found (status {status})")
        self.owner_cache.put(owner_id, owner)
        return owner
