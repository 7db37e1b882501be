"""HubSpot CRM REST client: contacts and notes."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from app.agent.ids import CrmContactId
from app.config import settings
from app.integrations.base import ProviderClient

logger = logging.getLogger(__name__)

CONTACT_PROPERTIES = ["email", "firstname", "lastname", "phone", "company", "jobtitle", "lifecyclestage"]
NOTE_TO_CONTACT_ASSOCIATION = 202


@dataclass
class ProviderContact:
    hubspot_id: CrmContactId
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    job_title: Optional[str] = None


def parse_hubspot_contact(data: Dict[str, Any]) -> ProviderContact:
    props = data.get("properties") or {}
    return ProviderContact(
        hubspot_id=CrmContactId(str(data.get("id") or data.get("objectId"))),
        email=(props.get("email") or "").lower() or None,
        first_name=props.get("firstname"),
        last_name=props.get("lastname"),
        phone=props.get("phone"),
        company=props.get("company"),
        job_title=props.get("jobtitle"),
    )


class HubSpotClient(ProviderClient):
    provider = "hubspot"
    base_url = settings.hubspot_api_url

    async def create_contact(
        self,
        email: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
        company: Optional[str] = None,
        job_title: Optional[str] = None,
    ) -> ProviderContact:
        properties = {
            "email": email,
            "firstname": first_name,
            "lastname": last_name,
            "phone": phone,
            "company": company,
            "jobtitle": job_title,
            "lifecyclestage": "lead",
        }
        created = await self._request(
            "POST", "/crm/v3/objects/contacts",
            json={"properties": {k: v for k, v in properties.items() if v}},
        )
        logger.info(f"[ADAPTER] HubSpot created contact {created.get('id')}")
        return parse_hubspot_contact(created)

    async def get_contact(self, contact_id: CrmContactId) -> ProviderContact:
        data = await self._request(
            "GET", f"/crm/v3/objects/contacts/{contact_id}",
            params={"properties": ",".join(CONTACT_PROPERTIES)},
        )
        return parse_hubspot_contact(data)

    async def add_note(self, contact_id: CrmContactId, note: str) -> str:
        """Create a note associated with a contact; returns the HubSpot note id."""
        created = await self._request(
            "POST", "/crm/v3/objects/notes",
            json={
                "properties": {
                    "hs_note_body": note,
                    "hs_timestamp": datetime.now(timezone.utc).isoformat(),
                },
                "associations": [{
                    "to": {"id": str(contact_id)},
                    "types": [{
                        "associationCategory": "HUBSPOT_DEFINED",
                        "associationTypeId": NOTE_TO_CONTACT_ASSOCIATION,
                    }],
                }],
            },
        )
        return str(created.get("id", ""))

    async def search_contacts(self, query: str, limit: int = 10) -> List[ProviderContact]:
        data = await self._request(
            "POST", "/crm/v3/objects/contacts/search",
            json={"query": query, "limit": limit, "properties": CONTACT_PROPERTIES},
        )
        return [parse_hubspot_contact(r) for r in data.get("results") or []]
