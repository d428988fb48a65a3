"""CRM integration layer -- gateway interface, HubSpot client, and OAuth token handling.

Provides:
- CRMGateway: Abstract interface the contact resolver, deal synthesizer and
  status bridge depend on
- HubSpotClient: httpx + tenacity implementation against the HubSpot v3/v4 APIs
- HubSpotOAuth: Authorize URL construction and token endpoint exchanges
- TokenHolder: Explicitly passed access-token owner (no process-wide state)
"""

from src.enrollsync.sync.crm.gateway import CRMGateway
from src.enrollsync.sync.crm.hubspot import HubSpotClient
from src.enrollsync.sync.crm.token import HubSpotOAuth, TokenHolder

__all__ = [
    "CRMGateway",
    "HubSpotClient",
    "HubSpotOAuth",
    "TokenHolder",
]
