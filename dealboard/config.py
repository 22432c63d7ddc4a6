"""
Configuration management for dealboard
"""
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List, Literal, Optional


class ConfigurationError(ValueError):
    """Raised when the CRM integration is enabled but misconfigured"""


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "dealboard"
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    log_file_enabled: bool = True
    log_dir: str = "logs"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Database
    database_url: str = "sqlite:///./dealboard.db"

    # HubSpot
    hubspot_enabled: bool = False
    hubspot_base_url: str = "https://api.hubapi.com"
    hubspot_access_token: Optional[str] = None
    hubspot_request_timeout_seconds: float = 30.0
    hubspot_page_size: int = 100  # API maximum is 100
    hubspot_max_pages_per_run: int = 10
    hubspot_rebuild_max_pages: int = 200  # one-off window rebuilds

    # Which deal property/value marks a deal as fulfilled
    hubspot_fulfilled_property: str = "dealstage"
    hubspot_fulfilled_value: str = "closedwon"
    hubspot_fulfilled_values: List[str] = [
        "Nyregistrerad",
        "Ombokning",
        "Bokad",
        "Klar kund",
        "Installerad - ej fakturerad",
    ]

    # Deal property names
    hubspot_deal_name_property: str = "dealname"
    hubspot_owner_email_property: str = "email"
    hubspot_owner_id_property: str = "hubspot_owner_id"
    hubspot_seller_id_property: str = "saljid"
    hubspot_deal_fallback_date_property: str = "closedate"
    hubspot_last_modified_property: str = "hs_lastmodifieddate"
    hubspot_amount_property: str = "amount"
    hubspot_currency_property: str = "deal_currency_code"
    hubspot_provision_property: str = "saljarprovision"

    # Contact property names (sale date and seller live on the contact)
    hubspot_contact_seller_property: str = "saljare"
    hubspot_fulfilled_date_property: str = "forsaljningsdatum"

    # Identity resolution
    identity_strategy: Literal["owner_id", "seller_id"] = "owner_id"
    username_email_domain: str = "example.com"
    username_pattern: str = r"^\d{4}$"  # employee numbers

    # Scheduling
    scheduler_enabled: bool = True
    deal_sync_schedule: str = "0 * * * *"  # top of every hour, UTC
    sync_in_flight_window_hours: int = 2

    # Contests
    local_timezone: str = "Europe/Stockholm"
    sales_team_prefix: str = "Sälj"

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


_REQUIRED_PROPERTY_FIELDS = (
    "hubspot_fulfilled_property",
    "hubspot_deal_name_property",
    "hubspot_owner_email_property",
    "hubspot_owner_id_property",
    "hubspot_seller_id_property",
    "hubspot_deal_fallback_date_property",
    "hubspot_last_modified_property",
    "hubspot_amount_property",
    "hubspot_currency_property",
    "hubspot_provision_property",
    "hubspot_contact_seller_property",
    "hubspot_fulfilled_date_property",
)


def validate_hubspot_settings(settings: Settings) -> None:
    """
    Fail fast on an unusable HubSpot configuration.

    Only checked when the integration is enabled; a disabled integration
    is a valid (no-op) configuration.

    Raises:
        ConfigurationError: listing every problem found
    """
    if not settings.hubspot_enabled:
        return

    problems = []
    if not (settings.hubspot_access_token or "").strip():
        problems.append("hubspot_access_token is required when hubspot_enabled is true")

    for field_name in _REQUIRED_PROPERTY_FIELDS:
        if not (getattr(settings, field_name) or "").strip():
            problems.append(f"{field_name} must not be empty")

    if not 1 <= settings.hubspot_page_size <= 100:
        problems.append("hubspot_page_size must be between 1 and 100")
    if settings.hubspot_max_pages_per_run < 1 or settings.hubspot_rebuild_max_pages < 1:
        problems.append("page budgets must be at least 1")
    if settings.hubspot_request_timeout_seconds <= 0:
        problems.append("hubspot_request_timeout_seconds must be positive")

    if problems:
        raise ConfigurationError("; ".join(problems))
