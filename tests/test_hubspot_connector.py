"""
Tests for the HubSpot connector.

Covers:
  - Date parsing order (epoch millis, ISO date, ISO datetime)
  - Canonical deal parsing (property lookup, decimals, hashing, missing ids)
  - Incremental pages: request shape, modified-since filter, contact enrichment
  - Window search: contacts -> associations -> batch deal read
  - Owner lookups: archived retry and per-run cache
  - Transport: rate-limit retry, timeouts, failed pages

HTTP is replaced by patching the connector's _request/_send seams.
"""
import asyncio
from datetime import datetime
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from dealboard.config import ConfigurationError
from dealboard.connectors.hubspot_connector import (
    HubSpotConnector,
    OwnerCache,
    parse_deal,
    parse_owner,
    read_property,
)
from dealboard.connectors.status_resolver import StatusResolver, get_status_resolver
from dealboard.utils.dates import parse_crm_datetime


def _connector(settings, routes):
    """Connector whose _request answers from a {(method, path): response} table"""
    connector = HubSpotConnector(settings, status_resolver=StatusResolver(settings))
    calls = []

    async def fake_request(method, path, params=None, json_body=None):
        calls.append({"method": method, "path": path, "params": params, "json": json_body})
        response = routes.get((method, path), (404, None))
        if callable(response):
            response = response(params, json_body)
        return response

    connector._request = fake_request
    return connector, calls


def _deal_item(deal_id, stage="Klar kund", closedate="2026-02-05", owner="101", contacts=None, **props):
    properties = {
        "dealname": f"Deal {deal_id}",
        "dealstage": stage,
        "closedate": closedate,
        "hubspot_owner_id": owner,
        "hs_lastmodifieddate": "2026-02-06T08:00:00Z",
        "amount": "1500.50",
        "saljarprovision": "150",
        "deal_currency_code": "SEK",
    }
    properties.update(props)
    item = {"id": deal_id, "properties": properties}
    if contacts is not None:
        item["associations"] = {"contacts": {"results": [{"id": c, "type": "deal_to_contact"} for c in contacts]}}
    return item


# ────────────────────────────────────────────
# DATE PARSING
# ────────────────────────────────────────────


class TestParseCrmDatetime:

    def test_epoch_millis(self):
        assert parse_crm_datetime("1767225600000") == datetime(2026, 1, 1)
        assert parse_crm_datetime(1767225600000) == datetime(2026, 1, 1)

    def test_iso_date(self):
        assert parse_crm_datetime("2026-02-20") == datetime(2026, 2, 20)

    def test_iso_datetime_converted_to_utc(self):
        assert parse_crm_datetime("2026-02-20T10:00:00+01:00") == datetime(2026, 2, 20, 9, 0)
        assert parse_crm_datetime("2026-02-20T10:00:00.123Z") == datetime(2026, 2, 20, 10, 0, 0, 123000)

    def test_unparseable(self):
        assert parse_crm_datetime("not a date") is None
        assert parse_crm_datetime("") is None
        assert parse_crm_datetime(None) is None


# ────────────────────────────────────────────
# DEAL PARSING
# ────────────────────────────────────────────


class TestParseDeal:

    def test_full_record(self, settings):
        deal = parse_deal(_deal_item("42"), settings, StatusResolver(settings))

        assert deal.hubspot_deal_id == "42"
        assert deal.deal_name == "Deal 42"
        assert deal.owner_id == "101"
        assert deal.is_fulfilled
        assert deal.fulfilled_date == datetime(2026, 2, 5)
        assert deal.last_modified == datetime(2026, 2, 6, 8, 0)
        assert deal.amount == Decimal("1500.50")
        assert deal.provision == Decimal("150")
        assert deal.currency_code == "SEK"
        assert len(deal.payload_hash) == 64

    def test_numeric_id(self, settings):
        item = _deal_item("x")
        item["id"] = 987
        assert parse_deal(item, settings, StatusResolver(settings)).hubspot_deal_id == "987"

    def test_missing_id_is_kept_for_counting(self, settings):
        item = _deal_item("x")
        del item["id"]
        deal = parse_deal(item, settings, StatusResolver(settings))
        assert deal is not None
        assert deal.hubspot_deal_id is None

    def test_non_object_payload(self, settings):
        assert parse_deal("nope", settings, StatusResolver(settings)) is None

    def test_bad_amount_is_none(self, settings):
        deal = parse_deal(_deal_item("1", amount="12,5 kr"), settings, StatusResolver(settings))
        assert deal.amount is None

    def test_unfulfilled_stage(self, settings):
        deal = parse_deal(_deal_item("1", stage="Förlorad"), settings, StatusResolver(settings))
        assert not deal.is_fulfilled

    def test_hash_changes_with_payload(self, settings):
        resolver = StatusResolver(settings)
        first = parse_deal(_deal_item("1"), settings, resolver)
        same = parse_deal(_deal_item("1"), settings, resolver)
        changed = parse_deal(_deal_item("1", amount="2000"), settings, resolver)

        assert first.payload_hash == same.payload_hash
        assert first.payload_hash != changed.payload_hash

    def test_hash_ignores_associations(self, settings):
        resolver = StatusResolver(settings)
        from_list = parse_deal(_deal_item("1", contacts=["c1"]), settings, resolver)
        from_batch_read = parse_deal(_deal_item("1"), settings, resolver)

        assert from_list.payload_hash == from_batch_read.payload_hash

    def test_inline_contact_associations(self, settings):
        deal = parse_deal(_deal_item("1", contacts=["c1", "c2", "c1"]), settings, StatusResolver(settings))
        assert deal.contact_ids == ["c1", "c2"]


class TestReadProperty:

    def test_exact_key(self):
        assert read_property({"saljare": " 1234 "}, "saljare") == "1234"

    def test_case_and_accent_insensitive_key(self):
        assert read_property({"Säljare": "1234"}, "saljare") == "1234"
        assert read_property({"DealName": "X"}, "dealname") == "X"

    def test_blank_is_none(self):
        assert read_property({"saljare": "  "}, "saljare") is None
        assert read_property({}, "saljare") is None


class TestParseOwner:

    def test_primary_team_preferred(self):
        owner = parse_owner("7", {
            "email": "1234@stl.nu",
            "firstName": "Anna",
            "lastName": "Svensson",
            "archived": False,
            "teams": [{"name": "Support", "primary": False}, {"name": "Sälj Syd", "primary": True}],
        })
        assert owner.primary_team_name == "Sälj Syd"
        assert owner.team_names == ["Support", "Sälj Syd"]
        assert owner.email == "1234@stl.nu"

    def test_first_team_when_none_primary(self):
        owner = parse_owner("7", {"teams": [{"name": "Support"}, {"name": "Sälj"}]})
        assert owner.primary_team_name == "Support"

    def test_no_teams(self):
        owner = parse_owner("7", {"archived": True})
        assert owner.primary_team_name is None
        assert owner.is_archived


# ────────────────────────────────────────────
# SETUP
# ────────────────────────────────────────────


class TestConnectorSetup:

    def test_status_resolver_follows_connector_settings(self, make_settings):
        settings = make_settings(hubspot_fulfilled_values=["Vunnen"], hubspot_fulfilled_value="Signerad")

        connector = HubSpotConnector(settings)

        assert connector.status_resolver.settings is settings
        assert connector.status_resolver.is_fulfilled("Vunnen")
        assert not connector.status_resolver.is_fulfilled("Klar kund")

    def test_default_connector_shares_process_resolver(self):
        assert HubSpotConnector().status_resolver is get_status_resolver()


# ────────────────────────────────────────────
# INCREMENTAL PAGES
# ────────────────────────────────────────────


class TestGetPage:

    @pytest.mark.asyncio
    async def test_request_shape_and_cursor(self, settings):
        connector, calls = _connector(settings, {
            ("GET", "/crm/v3/objects/deals"): (200, {
                "results": [_deal_item("1", contacts=[])],
                "paging": {"next": {"after": "cursor-2"}},
            }),
        })

        page = await connector.get_page(modified_since=None, cursor="cursor-1", page_size=500)

        deal_call = next(c for c in calls if c["path"] == "/crm/v3/objects/deals")
        assert deal_call["params"]["limit"] == "100"
        assert deal_call["params"]["after"] == "cursor-1"
        assert deal_call["params"]["archived"] == "false"
        assert deal_call["params"]["associations"] == "contacts"
        assert "dealstage" in deal_call["params"]["properties"].split(",")
        assert "updatedAtGte" not in deal_call["params"]
        assert page.next_cursor == "cursor-2"
        assert not page.failed
        assert [d.hubspot_deal_id for d in page.deals] == ["1"]

    @pytest.mark.asyncio
    async def test_modified_since_filters_old_records(self, settings):
        old = _deal_item("old", hs_lastmodifieddate="2026-01-01T00:00:00Z")
        new = _deal_item("new", hs_lastmodifieddate="2026-03-01T00:00:00Z")
        connector, calls = _connector(settings, {
            ("GET", "/crm/v3/objects/deals"): (200, {"results": [old, new]}),
        })

        page = await connector.get_page(modified_since=datetime(2026, 2, 1))

        assert [d.hubspot_deal_id for d in page.deals] == ["new"]
        assert page.next_cursor is None
        deal_call = next(c for c in calls if c["path"] == "/crm/v3/objects/deals")
        assert deal_call["params"]["updatedAtGte"] == "2026-02-01T00:00:00Z"

    @pytest.mark.asyncio
    async def test_contact_data_overrides_seller_and_date(self, settings):
        connector, calls = _connector(settings, {
            ("GET", "/crm/v3/objects/deals"): (200, {"results": [_deal_item("1", contacts=["c1", "c2"])]}),
            ("POST", "/crm/v3/objects/contacts/batch/read"): (200, {"results": [
                {"id": "c1", "properties": {"saljare": "", "forsaljningsdatum": "2026-02-20"}},
                {"id": "c2", "properties": {"saljare": "1234", "forsaljningsdatum": "2026-02-21"}},
            ]}),
        })

        page = await connector.get_page()

        deal = page.deals[0]
        assert deal.seller_id == "1234"
        assert deal.fulfilled_date == datetime(2026, 2, 20)

    @pytest.mark.asyncio
    async def test_contact_ids_fetched_when_not_inline(self, settings):
        connector, calls = _connector(settings, {
            ("GET", "/crm/v3/objects/deals"): (200, {"results": [_deal_item("1")]}),
            ("GET", "/crm/v3/objects/deals/1/associations/contacts"): (200, {"results": [{"id": "c9"}]}),
            ("POST", "/crm/v3/objects/contacts/batch/read"): (200, {"results": [
                {"id": "c9", "properties": {"saljare": "5555"}},
            ]}),
        })

        page = await connector.get_page()

        assert page.deals[0].contact_ids == ["c9"]
        assert page.deals[0].seller_id == "5555"
        batch = next(c for c in calls if c["path"] == "/crm/v3/objects/contacts/batch/read")
        assert batch["json"]["inputs"] == [{"id": "c9"}]

    @pytest.mark.asyncio
    async def test_non_2xx_is_failed_page(self, settings):
        connector, _ = _connector(settings, {("GET", "/crm/v3/objects/deals"): (500, None)})

        page = await connector.get_page(cursor="keep-me")

        assert page.failed
        assert page.deals == []
        assert page.next_cursor is None

    @pytest.mark.asyncio
    async def test_disabled_returns_empty_page_without_calls(self, make_settings):
        connector, calls = _connector(make_settings(hubspot_enabled=False), {})

        page = await connector.get_page()

        assert page.deals == [] and not page.failed
        assert calls == []

    @pytest.mark.asyncio
    async def test_missing_token_raises(self, make_settings):
        connector, _ = _connector(make_settings(hubspot_access_token=""), {})

        with pytest.raises(ConfigurationError):
            await connector.get_page()


# ────────────────────────────────────────────
# WINDOW SEARCH
# ────────────────────────────────────────────


class TestWindowSearch:

    @pytest.mark.asyncio
    async def test_contacts_associations_then_deals(self, settings):
        connector, calls = _connector(settings, {
            ("POST", "/crm/v3/objects/contacts/search"): (200, {
                "results": [
                    {"id": "c1", "properties": {"saljare": "1234", "forsaljningsdatum": "2026-02-10"}},
                    {"id": "c2", "properties": {"saljare": "5678", "forsaljningsdatum": "2026-02-11"}},
                ],
                "paging": {"next": {"after": "contacts-2"}},
            }),
            ("POST", "/crm/v4/associations/contacts/deals/batch/read"): (200, {"results": [
                {"from": {"id": "c1"}, "to": [{"toObjectId": 11}]},
                {"from": {"id": "c2"}, "to": [{"toObjectId": 12}, {"toObjectId": 13}]},
            ]}),
            ("POST", "/crm/v3/objects/deals/batch/read"): (200, {"results": [
                _deal_item("11", closedate="2025-12-01"),
                _deal_item("12", stage="Förlorad"),
                _deal_item("13"),
            ]}),
        })

        page = await connector.search_by_fulfillment_window(datetime(2026, 2, 1), datetime(2026, 3, 1))

        by_id = {d.hubspot_deal_id: d for d in page.deals}
        assert sorted(by_id) == ["11", "13"]
        assert by_id["11"].seller_id == "1234"
        assert by_id["11"].fulfilled_date == datetime(2026, 2, 10)
        assert by_id["13"].fulfilled_date == datetime(2026, 2, 11)
        assert page.next_cursor == "contacts-2"

        search = next(c for c in calls if c["path"] == "/crm/v3/objects/contacts/search")
        filters = search["json"]["filterGroups"][0]["filters"]
        assert filters[0] == {"propertyName": "forsaljningsdatum", "operator": "GTE", "value": "1769904000000"}
        assert filters[1]["operator"] == "LT"

        deal_read = next(c for c in calls if c["path"] == "/crm/v3/objects/deals/batch/read")
        assert sorted(i["id"] for i in deal_read["json"]["inputs"]) == ["11", "12", "13"]

    @pytest.mark.asyncio
    async def test_sale_date_outside_window_is_dropped(self, settings):
        connector, _ = _connector(settings, {
            ("POST", "/crm/v3/objects/contacts/search"): (200, {"results": [
                {"id": "c1", "properties": {"forsaljningsdatum": "2026-03-01"}},
            ]}),
            ("POST", "/crm/v4/associations/contacts/deals/batch/read"): (200, {"results": [
                {"from": {"id": "c1"}, "to": [{"toObjectId": 11}]},
            ]}),
            ("POST", "/crm/v3/objects/deals/batch/read"): (200, {"results": [_deal_item("11")]}),
        })

        page = await connector.search_by_fulfillment_window(datetime(2026, 2, 1), datetime(2026, 3, 1))

        assert page.deals == []

    @pytest.mark.asyncio
    async def test_no_contacts(self, settings):
        connector, calls = _connector(settings, {
            ("POST", "/crm/v3/objects/contacts/search"): (200, {"results": []}),
        })

        page = await connector.search_by_fulfillment_window(datetime(2026, 2, 1), datetime(2026, 3, 1))

        assert page.deals == [] and page.next_cursor is None and not page.failed
        assert not any(c["path"].endswith("batch/read") for c in calls)

    @pytest.mark.asyncio
    async def test_association_failure_fails_page(self, settings):
        connector, _ = _connector(settings, {
            ("POST", "/crm/v3/objects/contacts/search"): (200, {"results": [{"id": "c1", "properties": {}}]}),
            ("POST", "/crm/v4/associations/contacts/deals/batch/read"): (503, None),
        })

        page = await connector.search_by_fulfillment_window(datetime(2026, 2, 1), datetime(2026, 3, 1))

        assert page.failed

    @pytest.mark.asyncio
    async def test_search_failure_fails_page(self, settings):
        connector, _ = _connector(settings, {("POST", "/crm/v3/objects/contacts/search"): (None, None)})

        page = await connector.search_by_fulfillment_window(datetime(2026, 2, 1), datetime(2026, 3, 1))

        assert page.failed


# ────────────────────────────────────────────
# OWNERS
# ────────────────────────────────────────────


class TestGetOwner:

    @pytest.mark.asyncio
    async def test_archived_retry_after_404(self, settings):
        def owner_route(params, _):
            if params and params.get("archived") == "true":
                return 200, {"id": "7", "email": "gone@stl.nu", "archived": True}
            return 404, None

        connector, calls = _connector(settings, {("GET", "/crm/v3/owners/7"): owner_route})

        owner = await connector.get_owner("7")

        assert owner.email == "gone@stl.nu"
        assert owner.is_archived
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_cached_within_run(self, settings):
        connector, calls = _connector(settings, {
            ("GET", "/crm/v3/owners/7"): (200, {"id": "7", "email": "1234@stl.nu"}),
        })

        await connector.get_owner("7")
        await connector.get_owner("7")
        assert len(calls) == 1

        connector.reset_run_state()
        await connector.get_owner("7")
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_failure_caches_none(self, settings):
        connector, calls = _connector(settings, {("GET", "/crm/v3/owners/7"): (500, None)})

        assert await connector.get_owner("7") is None
        assert await connector.get_owner("7") is None
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_blank_id(self, settings):
        connector, calls = _connector(settings, {})
        assert await connector.get_owner("  ") is None
        assert calls == []


class TestOwnerCache:

    def test_misses_are_cached(self):
        cache = OwnerCache()
        cache.put("1", None)
        assert "1" in cache
        assert cache.get("1") is None
        cache.clear()
        assert len(cache) == 0


# ────────────────────────────────────────────
# TRANSPORT
# ────────────────────────────────────────────


class TestRequest:

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self, settings):
        connector = HubSpotConnector(settings, status_resolver=StatusResolver(settings))
        connector.RETRY_BASE_DELAY = 0
        connector._send = AsyncMock(side_effect=[(429, None), (200, {"ok": True})])

        status, payload = await connector._request("GET", "/crm/v3/owners/1")

        assert (status, payload) == (200, {"ok": True})
        assert connector.retry_count == 1
        assert connector.error_count == 0

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, settings):
        connector = HubSpotConnector(settings, status_resolver=StatusResolver(settings))
        connector._send = AsyncMock(return_value=(400, None))

        status, payload = await connector._request("GET", "/crm/v3/owners/1")

        assert (status, payload) == (400, None)
        assert connector._send.await_count == 1
        assert connector.error_count == 1

    @pytest.mark.asyncio
    async def test_timeout_returns_no_status(self, settings):
        connector = HubSpotConnector(settings, status_resolver=StatusResolver(settings))
        connector._send = AsyncMock(side_effect=asyncio.TimeoutError())

        assert await connector._request("GET", "/crm/v3/objects/deals") == (None, None)
        assert connector.get_status()["error_count"] == 1
