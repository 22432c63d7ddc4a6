"""
Fulfilled-status resolution

The business configures human labels ("Klar kund", "Bokad", ...) but HubSpot
reports raw stage ids or option values that drift from those labels over
time. The resolver expands the configured labels into every matching option
label/value and pipeline stage id/label, once per process.
"""
import unicodedata
from functools import lru_cache
from typing import Awaitable, Callable, FrozenSet, Iterable, Optional, Set

from dealboard.config import Settings, get_settings
from dealboard.utils.helpers import collapse_whitespace, strip_accents
from dealboard.utils.logger import log

FetchJson = Callable[[str], Awaitable[Optional[dict]]]

_DASHES = {"–": "-", "—": "-", "−": "-"}


def normalize_status(value: Optional[str]) -> str:
    """
    Canonical comparison form of a status label.

    'Installerad – ej fakturerad.' -> 'installerad - ej fakturerad'
    """
    if not value:
        return ""
    text = unicodedata.normalize("NFKC", strip_accents(value.strip()))
    for dash, replacement in _DASHES.items():
        text = text.replace(dash, replacement)
    text = collapse_whitespace(text).rstrip(".,;:").strip()
    return text.casefold()


def _matches(candidate: str, configured: Iterable[str]) -> bool:
    if not candidate:
        return False
    for label in configured:
        if candidate == label or label.startswith(candidate) or candidate.startswith(label):
            return True
    return False


class StatusResolver:
    """Resolves and caches the set of raw stage values that count as fulfilled"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._resolved: Optional[FrozenSet[str]] = None

    @property
    def is_resolved(self) -> bool:
        return self._resolved is not None

    def configured_statuses(self) -> Set[str]:
        values = list(self.settings.hubspot_fulfilled_values or [])
        values.append(self.settings.hubspot_fulfilled_value)
        return {n for n in (normalize_status(v) for v in values) if n}

    @property
    def fulfilled_statuses(self) -> FrozenSet[str]:
        if self._resolved is not None:
            return self._resolved
        return frozenset(self.configured_statuses())

    def is_fulfilled(self, raw_stage: Optional[str]) -> bool:
        candidate = normalize_status(raw_stage)
        return bool(candidate) and candidate in self.fulfilled_statuses

    async def resolve(self, fetch_json: FetchJson) -> FrozenSet[str]:
        """
        Expand configured labels using HubSpot metadata.

        Args:
            fetch_json: GET helper returning the decoded body, or None on failure

        Returns:
            Normalized fulfilled statuses. Metadata failures fall back to
            the configured labels; the result is cached either way.
        """
        if self._resolved is not None:
            return self._resolved

        configured = self.configured_statuses()
        resolved = set(configured)

        if configured and self.settings.hubspot_access_token:
            try:
                resolved |= await self._from_property_options(fetch_json, configured)
                resolved |= await self._from_pipeline_stages(fetch_json, configured)
            except Exception as e:
                log.warning(f"Could not resolve HubSpot fulfilled statuses, using configured labels: {e}")

        self._resolved = frozenset(resolved)
        log.info(f"Resolved {len(self._resolved)} fulfilled HubSpot statuses")
        return self._resolved

    async def _from_property_options(self, fetch_json: FetchJson, configured: Set[str]) -> Set[str]:
        prop = self.settings.hubspot_fulfilled_property
        payload = await fetch_json(f"/crm/v3/properties/deals/{prop}")
        found = set()
        for option in (payload or {}).get("options") or []:
            label = normalize_status(option.get("label"))
            value = normalize_status(option.get("value"))
            if _matches(label, configured) or _matches(value, configured):
                found.update(v for v in (label, value) if v)
        return found

    async def _from_pipeline_stages(self, fetch_json: FetchJson, configured: Set[str]) -> Set[str]:
        payload = await fetch_json("/crm/v3/pipelines/deals")
        found = set()
        for pipeline in (payload or {}).get("results") or []:
            for stage in pipeline.get("stages") or []:
                stage_id = normalize_status(str(stage.get("id") or ""))
                label = normalize_status(stage.get("label"))
                if _matches(stage_id, configured) or _matches(label, configured):
                    found.update(v for v in (stage_id, label) if v)
        return found


@lru_cache()
def get_status_resolver() -> StatusResolver:
    """Process-wide resolver; statuses are resolved once per process"""
    return StatusResolver()
