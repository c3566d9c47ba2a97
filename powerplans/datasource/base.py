"""
Base data source interface.
"""

from abc import ABC, abstractmethod

from powerplans.services.client import UpstreamClient


class BaseDataSource(ABC):
    """
    Abstract base class for upstream data sources.

    All data sources should:
    - Use UpstreamClient for HTTP requests (typed errors at the origin)
    - Return Pydantic models
    - Drop malformed upstream rows instead of failing the whole response
    """

    def __init__(self, client: UpstreamClient):
        self.client = client

    @property
    def service_id(self) -> str:
        """Unique identifier for this data source."""
        return self.client.service_id

    @abstractmethod
    def is_configured(self) -> bool:
        """Check if the data source is properly configured."""
        ...

    async def close(self) -> None:
        await self.client.close()
