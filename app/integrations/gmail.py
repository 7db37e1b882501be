"""Gmail REST client: list new inbox messages and send mail."""

import base64
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

from app.config import settings
from app.integrations.base import ProviderClient

logger = logging.getLogger(__name__)


@dataclass
class ProviderEmail:
    """A Gmail message flattened into the fields the store keeps."""
    gmail_id: str
    thread_id: str
    subject: str
    sender: str
    recipient: str
    body: str
    date: datetime
    labels: List[str] = field(default_factory=list)

    @property
    def is_read(self) -> bool:
        return "UNREAD" not in self.labels


def _decode_part(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode()).decode("utf-8", errors="replace")


def _extract_text(part: Dict[str, Any]) -> str:
    """Collect text/plain content from a (possibly nested) message payload."""
    text = ""
    body = part.get("body") or {}
    if body.get("data") and part.get("mimeType", "text/plain") == "text/plain":
        text += _decode_part(body["data"])
    for child in part.get("parts") or []:
        text += _extract_text(child)
    return text


def _parse_date(raw: Optional[str], internal_ms: Optional[str]) -> datetime:
    if raw:
        try:
            dt = parsedate_to_datetime(raw)
            if dt.tzinfo is not None:
                dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
            return dt
        except (TypeError, ValueError):
            pass
    if internal_ms:
        return datetime.utcfromtimestamp(int(internal_ms) / 1000)
    return datetime.utcnow()


def parse_gmail_message(data: Dict[str, Any]) -> ProviderEmail:
    """Convert a ``users.messages.get(format=full)`` response."""
    payload = data.get("payload") or {}
    headers = {h.get("name", "").lower(): h.get("value", "") for h in payload.get("headers") or []}
    return ProviderEmail(
        gmail_id=data["id"],
        thread_id=data.get("threadId", ""),
        subject=headers.get("subject", ""),
        sender=headers.get("from", ""),
        recipient=headers.get("to", ""),
        body=_extract_text(payload) or data.get("snippet", ""),
        date=_parse_date(headers.get("date"), data.get("internalDate")),
        labels=list(data.get("labelIds") or []),
    )


class GmailClient(ProviderClient):
    provider = "google"
    base_url = settings.gmail_api_url

    async def list_messages_since(self, since: datetime, max_results: int = 20) -> List[ProviderEmail]:
        """
        The oldest ``max_results`` inbox messages received after ``since``
        (naive UTC), oldest first.

        Gmail lists newest first, so every listing page back to ``since`` is
        walked (ids only) before the oldest messages are fetched in full.
        """
        epoch = int(since.replace(tzinfo=timezone.utc).timestamp())
        params: Dict[str, Any] = {"q": f"in:inbox after:{epoch}", "maxResults": settings.gmail_list_page_size}
        refs: List[Dict[str, Any]] = []
        for _ in range(settings.gmail_max_list_pages):
            listing = await self._request("GET", "/users/me/messages", params=params)
            refs.extend(listing.get("messages") or [])
            token = listing.get("nextPageToken")
            if not token:
                break
            params = {**params, "pageToken": token}
        else:
            logger.warning(
                f"[ADAPTER] Gmail backlog exceeds {settings.gmail_max_list_pages} pages; "
                f"oldest messages beyond that are not listed"
            )

        messages: List[ProviderEmail] = []
        for ref in refs[-max_results:] if max_results else []:
            data = await self._request("GET", f"/users/me/messages/{ref['id']}", params={"format": "full"})
            messages.append(parse_gmail_message(data))
        messages.sort(key=lambda m: m.date)
        return messages

    async def send_email(
        self,
        to: str,
        subject: str,
        body: str,
        html_body: Optional[str] = None,
        thread_id: Optional[str] = None,
    ) -> Dict[str, str]:
        msg = EmailMessage()
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content(body)
        if html_body:
            msg.add_alternative(html_body, subtype="html")

        raw = base64.urlsafe_b64encode(msg.as_bytes()).decode().rstrip("=")
        request: Dict[str, Any] = {"raw": raw}
        if thread_id:
            request["threadId"] = thread_id

        sent = await self._request("POST", "/users/me/messages/send", json=request)
        logger.info(f"[ADAPTER] Gmail sent message {sent.get('id')} to {to}")
        return {"id": sent.get("id", ""), "thread_id": sent.get("threadId", "")}
