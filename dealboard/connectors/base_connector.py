"""
Base connector class for CRM data sources
"""
from abc import ABC, abstractmethod
from typing import Any, Dict
from dealboard.utils.helpers import utc_now


class BaseConnector(ABC):
    """Base class for read-only CRM connectors"""

    # Retry configuration for rate-limited requests (can be overridden by subclasses)
    RETRY_MAX_ATTEMPTS = 3
    RETRY_BASE_DELAY = 1.0  # seconds
    RETRY_MAX_DELAY = 10.0  # seconds

    def __init__(self, name: str):
        self.name = name
        self.created_at = utc_now()
        self.request_count = 0
        self.error_count = 0
        self.retry_count = 0

    @abstractmethod
    async def connect(self) -> bool:
        """Check the connector has what it needs to talk to the source"""
        pass

    @abstractmethod
    async def validate_connection(self) -> bool:
        """Validate connection is working"""
        pass

    def get_status(self) -> Dict[str, Any]:
        """Get connector status"""
        return {
            "name": self.name,
            "request_count": self.request_count,
            "error_count": self.error_count,
            "retry_count": self.retry_count,
            "error_rate": self.error_count / max(self.request_count, 1),
            "retry_config": {
                "max_attempts": self.RETRY_MAX_ATTEMPTS,
                "base_delay": self.RETRY_BASE_DELAY,
                "max_delay": self.RETRY_MAX_DELAY
            }
        }
