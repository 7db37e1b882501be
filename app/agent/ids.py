"""
Id spaces crossing the tool boundary.

Local rows use UUID primary keys while HubSpot contacts carry their own
numeric ids. The oracle sees both (search results list them side by side),
so every tool argument that names an external record is parsed into its
nominal type here and rejected when it has the wrong shape.
"""

import re
from typing import NewType

from app.agent.errors import ToolValidationError

CrmContactId = NewType("CrmContactId", str)  # HubSpot contact id (numeric)

_UUID_RE = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)
_CRM_ID_RE = re.compile(r"^[0-9]{1,20}$")


def is_record_id(value: str) -> bool:
    return bool(_UUID_RE.match(value or ""))


def parse_crm_contact_id(value, field: str = "contact_id") -> CrmContactId:
    """Parse a HubSpot contact id, refusing local record ids."""
    value = str(value or "").strip()
    if is_record_id(value):
        raise ToolValidationError(
            f"'{value}' is an internal record id, not a HubSpot contact id",
            field=field,
            hint="Use the hubspot_id value returned by search_contacts (a numeric id).",
        )
    if not _CRM_ID_RE.match(value):
        raise ToolValidationError(
            f"'{value}' is not a valid HubSpot contact id",
            field=field,
            hint="HubSpot contact ids are numeric; call search_contacts to find the hubspot_id.",
        )
    return CrmContactId(value)
