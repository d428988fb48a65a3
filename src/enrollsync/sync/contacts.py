"""Contact resolver -- find-or-create the CRM contact for a student identity.

Resolution order:
1. External contact id with a stored mapping: use it, no CRM call.
2. External contact id without a mapping and no email: UnmappedContact.
3. Email: exact-match CRM search, create the contact if absent. When an
   external id was present, the resolved id is written back as its mapping.

Never deletes contacts or mappings. A failing search propagates as
CrmApiError; it is never treated as "not found".
"""

from __future__ import annotations

import structlog

from src.enrollsync.sync.crm.gateway import CRMGateway
from src.enrollsync.sync.errors import UnmappedContact
from src.enrollsync.sync.repository import ContactMappingRepository
from src.enrollsync.sync.schemas import (
    ContactIdentity,
    ContactMappingCreate,
    ContactResolution,
    ResolutionStrategy,
)

logger = structlog.get_logger(__name__)


class ContactResolver:
    """Resolves a ContactIdentity to a CRM contact id.

    Args:
        gateway: CRM gateway for search/create.
        mappings: Repository for external -> CRM contact id mappings.
    """

    def __init__(self, gateway: CRMGateway, mappings: ContactMappingRepository) -> None:
        self._gateway = gateway
        self._mappings = mappings

    async def resolve(self, identity: ContactIdentity) -> ContactResolution:
        if identity.external_contact_id:
            mapping = await self._mappings.get(identity.external_contact_id)
            if mapping is not None:
                logger.info(
                    "contacts.resolved_by_mapping",
                    external_contact_id=identity.external_contact_id,
                    contact_id=mapping.crm_contact_id,
                )
                return ContactResolution(
                    contact_id=mapping.crm_contact_id,
                    strategy=ResolutionStrategy.MAPPING,
                    email=mapping.email,
                    first_name=mapping.first_name,
                    last_name=mapping.last_name,
                )
            if not identity.email:
                raise UnmappedContact(identity.external_contact_id)

        if not identity.email:
            # The normalizer guarantees one of the two identifiers
            raise ValueError("ContactIdentity needs an email or external_contact_id")

        resolution = await self._resolve_by_email(identity)

        if identity.external_contact_id:
            await self._mappings.upsert(
                ContactMappingCreate(
                    external_contact_id=identity.external_contact_id,
                    crm_contact_id=resolution.contact_id,
                    email=identity.email,
                    first_name=identity.first_name,
                    last_name=identity.last_name,
                )
            )
        return resolution

    async def _resolve_by_email(self, identity: ContactIdentity) -> ContactResolution:
        contact_id = await self._gateway.search_contact_by_email(identity.email)
        if contact_id is not None:
            logger.info("contacts.resolved_by_search", contact_id=contact_id)
            return ContactResolution(
                contact_id=contact_id,
                strategy=ResolutionStrategy.SEARCH,
                email=identity.email,
                first_name=identity.first_name,
                last_name=identity.last_name,
            )

        contact_id = await self._gateway.create_contact(
            identity.email,
            first_name=identity.first_name,
            last_name=identity.last_name,
        )
        logger.info("contacts.created", contact_id=contact_id)
        return ContactResolution(
            contact_id=contact_id,
            strategy=ResolutionStrategy.CREATED,
            created=True,
            email=identity.email,
            first_name=identity.first_name,
            last_name=identity.last_name,
        )
