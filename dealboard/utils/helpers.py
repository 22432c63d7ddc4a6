"""
Helper utilities
"""
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional
import hashlib
import json
import re
import unicodedata


def utc_now() -> datetime:
    """Current UTC time as a naive datetime (the database stores naive UTC)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def hash_data(data: Any) -> str:
    """Create SHA-256 hash of data for change detection"""
    data_str = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(data_str.encode()).hexdigest()


def chunk_list(lst: List, chunk_size: int) -> List[List]:
    """Split list into chunks"""
    return [lst[i:i + chunk_size] for i in range(0, len(lst), chunk_size)]


def first_non_empty(*values: Optional[str]) -> Optional[str]:
    """Return the first value that is not None/blank, stripped"""
    for value in values:
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def strip_accents(text: str) -> str:
    """Remove combining marks: 'Sälj' -> 'Salj'"""
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_key(text: str) -> str:
    """Loose key form for property-name lookup: lowercase ASCII letters and digits only"""
    return "".join(ch for ch in strip_accents(text).lower() if ch.isalnum())


def truncate(value: Optional[str], max_length: int) -> Optional[str]:
    """Trim and cut a string to a column length"""
    if value is None:
        return None
    value = value.strip()
    return value[:max_length]


def dedupe(values: Iterable[str]) -> List[str]:
    """Drop duplicates while keeping first-seen order"""
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


_WHITESPACE = re.compile(r"\s+")


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()
