"""CRM gateway abstract base class -- the CRM operations the sync core relies on.

HubSpotClient is the production implementation. Tests substitute
AsyncMock(spec=CRMGateway) so the resolver, synthesizer and bridge never
touch the network.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class CRMGateway(ABC):
    """Abstract interface for CRM contact/deal operations.

    Methods:
        search_contact_by_email: Exact-match email search, contact id or None.
        create_contact: Create a contact, return its id.
        create_deal: Create a deal from a property dict, return its id.
        associate_deal_contact: Link a deal to its primary contact.
        update_deal: Patch deal properties.
        get_pipelines: Deal pipelines with their stages.
        test_connection: Authenticated probe, returns contacts seen.
    """

    @abstractmethod
    async def search_contact_by_email(self, email: str) -> str | None:
        """Return the id of the contact whose email equals ``email``."""
        ...

    @abstractmethod
    async def create_contact(
        self, email: str, first_name: str | None = None, last_name: str | None = None
    ) -> str:
        """Create contact, return CRM id."""
        ...

    @abstractmethod
    async def create_deal(self, properties: dict[str, str]) -> str:
        """Create deal, return CRM id."""
        ...

    @abstractmethod
    async def associate_deal_contact(self, deal_id: str, contact_id: str) -> None:
        """Associate deal -> contact with the default association type."""
        ...

    @abstractmethod
    async def update_deal(self, deal_id: str, properties: dict[str, str]) -> None:
        """Patch deal properties by id."""
        ...

    @abstractmethod
    async def get_pipelines(self) -> list[dict[str, Any]]:
        """List deal pipelines."""
        ...

    @abstractmethod
    async def test_connection(self) -> int:
        """Probe the CRM with the current token."""
        ...
