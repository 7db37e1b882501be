"""
Capability adapters for the external systems the agent acts on.

``Adapters`` bundles one client per provider for a single user. The
dispatcher receives an adapters factory so tests can substitute fakes
exposing the same methods.
"""

from dataclasses import dataclass
from typing import Any

from app.integrations.calendar import CalendarClient, ProviderEvent, find_free_slots
from app.integrations.gmail import GmailClient, ProviderEmail
from app.integrations.hubspot import HubSpotClient, ProviderContact


@dataclass
class Adapters:
    gmail: Any
    calendar: Any
    hubspot: Any

    async def close(self):
        for client in (self.gmail, self.calendar, self.hubspot):
            close = getattr(client, "close", None)
            if close is not None:
                await close()


def build_adapters(user) -> Adapters:
    """Create REST clients from the user's stored OAuth tokens."""
    return Adapters(
        gmail=GmailClient(user.google_access_token),
        calendar=CalendarClient(user.google_access_token),
        hubspot=HubSpotClient(user.hubspot_access_token if user.hubspot_connected else None),
    )


__all__ = [
    "Adapters",
    "build_adapters",
    "GmailClient",
    "CalendarClient",
    "HubSpotClient",
    "ProviderEmail",
    "ProviderEvent",
    "ProviderContact",
    "find_free_slots",
]
