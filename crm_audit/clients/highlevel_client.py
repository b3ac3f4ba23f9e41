"""HighLevel (LeadConnector) CRM API client."""

import asyncio
import logging
from typing import Any

import httpx

from ..config import get_settings
from ..errors import RecordingTooLargeError, UpstreamError, UpstreamTimeoutError
from ..models.crm import (
    Contact,
    Conversation,
    Location,
    Message,
    MessagePage,
    Opportunity,
    OpportunityPage,
    Pipeline,
    User,
    flatten_pipeline_opportunities,
    parse_contact,
    parse_contacts,
    parse_conversations,
    parse_location,
    parse_locations,
    parse_message_page,
    parse_opportunity,
    parse_opportunity_page,
    parse_pipelines,
    parse_user,
    parse_users,
)

logger = logging.getLogger(__name__)


class HighLevelClient:
    """Client for the HighLevel REST API.

    Every call sends the bearer token and the fixed ``Version`` header, and
    raises ``UpstreamError`` (or a subclass) on any non-2xx answer or
    transport failure.
    """

    SERVICE = "HighLevel"

    def __init__(
        self,
        api_key: str | None = None,
        location_id: str | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.api_key = api_key or settings.highlevel_api_key
        self.location_id = location_id or settings.highlevel_location_id
        self.base_url = (base_url or settings.highlevel_base_url).rstrip("/")
        self.headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {self.api_key}",
            "Version": settings.highlevel_api_version,
        }
        self.timeout = settings.crm_timeout_seconds
        self.max_retries = max(settings.crm_max_retries, 0)
        self.recording_timeout = settings.recording_timeout_seconds
        self.recording_max_bytes = settings.recording_max_bytes
        self.message_page_size = settings.message_page_size
        self.max_message_pages = settings.max_message_pages
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=timeout,
            transport=self._transport,
        )

    async def _get(self, path: str, params: dict | None = None) -> Any:
        """GET a JSON resource.

        GETs are idempotent, so 5xx answers and transport errors are retried
        up to ``crm_max_retries`` times with exponential backoff.
        """
        params = {k: v for k, v in (params or {}).items() if v is not None}

        for attempt in range(self.max_retries + 1):
            retry = attempt < self.max_retries
            try:
                async with self._client(self.timeout) as client:
                    response = await client.get(path, params=params)
                    response.raise_for_status()
                    return response.json()

            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status >= 500 and retry:
                    await asyncio.sleep(2 ** attempt)
                    continue
                raise UpstreamError(
                    self.SERVICE,
                    f"HTTP {status} on GET {path}",
                    status_code=status,
                    raw_body=e.response.text,
                ) from e

            except httpx.TimeoutException as e:
                if retry:
                    await asyncio.sleep(2 ** attempt)
                    continue
                raise UpstreamTimeoutError(self.SERVICE, self.timeout) from e

            except httpx.RequestError as e:
                if retry:
                    await asyncio.sleep(2 ** attempt)
                    continue
                raise UpstreamError(self.SERVICE, f"connection error on GET {path}: {e}") from e

            except ValueError as e:
                raise UpstreamError(self.SERVICE, f"invalid JSON from GET {path}") from e

        raise UpstreamError(self.SERVICE, f"GET {path} failed")

    # =========================================================================
    # Contacts
    # =========================================================================

    async def search_contacts(self, limit: int = 20, query: str | None = None) -> list[Contact]:
        data = await self._get(
            "/contacts/",
            {"locationId": self.location_id, "limit": limit, "query": query},
        )
        return parse_contacts(data)

    async def get_contact(self, contact_id: str) -> Contact:
        data = await self._get(f"/contacts/{contact_id}")
        return parse_contact(data)

    # =========================================================================
    # Conversations & messages
    # =========================================================================

    async def list_conversations(self, contact_id: str, limit: int = 20) -> list[Conversation]:
        data = await self._get(
            "/conversations/search",
            {"locationId": self.location_id, "contactId": contact_id, "limit": limit},
        )
        return parse_conversations(data)

    async def get_messages_page(
        self,
        conversation_id: str,
        limit: int | None = None,
        last_message_id: str | None = None,
    ) -> MessagePage:
        data = await self._get(
            f"/conversations/{conversation_id}/messages",
            {"limit": limit or self.message_page_size, "lastMessageId": last_message_id},
        )
        return parse_message_page(data, conversation_id)

    async def list_messages(self, conversation_id: str, max_pages: int | None = None) -> list[Message]:
        """Fetch every message of a conversation, following the ``lastMessageId`` cursor."""
        messages: list[Message] = []
        cursor = None
        for _ in range(max_pages or self.max_message_pages):
            page = await self.get_messages_page(conversation_id, last_message_id=cursor)
            messages.extend(page.messages)
            if not page.next_page or not page.messages or page.last_message_id == cursor:
                break
            cursor = page.last_message_id
        return messages

    def _recording_path(self, message_id: str) -> str:
        return f"/conversations/messages/{message_id}/locations/{self.location_id}/recording"

    def recording_url(self, message_id: str) -> str:
        return f"{self.base_url}{self._recording_path(message_id)}"

    async def download_recording(self, message_id: str) -> bytes:
        """Download a call recording.

        Raises:
            RecordingTooLargeError: If the recording exceeds ``recording_max_bytes``
            UpstreamTimeoutError: If the download takes longer than ``recording_timeout_seconds``
            UpstreamError: On any other failure
        """
        path = self._recording_path(message_id)

        async def _download() -> bytes:
            async with self._client(self.recording_timeout) as client:
                async with client.stream("GET", path, headers={"Accept": "*/*"}) as response:
                    if response.status_code >= 400:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        raise UpstreamError(
                            self.SERVICE,
                            f"HTTP {response.status_code} downloading recording {message_id}",
                            status_code=response.status_code,
                            raw_body=body,
                        )
                    declared = response.headers.get("content-length", "")
                    if declared.isdigit() and int(declared) > self.recording_max_bytes:
                        raise RecordingTooLargeError(message_id, self.recording_max_bytes)

                    audio = bytearray()
                    async for chunk in response.aiter_bytes():
                        audio.extend(chunk)
                        if len(audio) > self.recording_max_bytes:
                            raise RecordingTooLargeError(message_id, self.recording_max_bytes)
                    return bytes(audio)

        try:
            audio = await asyncio.wait_for(_download(), timeout=self.recording_timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise UpstreamTimeoutError(self.SERVICE, self.recording_timeout) from e
        except httpx.RequestError as e:
            raise UpstreamError(self.SERVICE, f"connection error downloading recording {message_id}: {e}") from e

        logger.info("Downloaded recording %s (%.2fMB)", message_id, len(audio) / (1024 * 1024))
        return audio

    async def get_message_transcription(self, message_id: str) -> Any:
        """The CRM's own stored transcription for a call message, as returned."""
        return await self._get(f"/conversations/messages/{message_id}/transcription")

    # =========================================================================
    # Opportunities & pipelines
    # =========================================================================

    async def get_pipelines(self) -> list[Pipeline]:
        data = await self._get("/opportunities/pipelines", {"locationId": self.location_id})
        return parse_pipelines(data)

    async def search_opportunities(
        self,
        pipeline_id: str | None = None,
        status: str | None = None,
        limit: int = 100,
        start_after: Any = None,
        start_after_id: str | None = None,
    ) -> OpportunityPage:
        data = await self._get(
            "/opportunities/search",
            {
                "location_id": self.location_id,
                "limit": limit,
                "pipeline_id": pipeline_id,
                "status": status,
                "startAfter": start_after,
                "startAfterId": start_after_id,
            },
        )
        return parse_opportunity_page(data)

    async def get_pipeline_opportunities(self, pipeline_id: str) -> list[Opportunity]:
        """Opportunities of one pipeline, grouped by stage upstream and flattened here."""
        data = await self._get(
            f"/opportunities/pipelines/{pipeline_id}",
            {"locationId": self.location_id},
        )
        return flatten_pipeline_opportunities(data, pipeline_id)

    async def get_opportunity(self, opportunity_id: str) -> Opportunity:
        data = await self._get(f"/opportunities/{opportunity_id}")
        return parse_opportunity(data)

    # =========================================================================
    # Locations & users
    # =========================================================================

    async def search_locations(self, limit: int = 20) -> list[Location]:
        data = await self._get("/locations/search", {"limit": limit})
        return parse_locations(data)

    async def get_location(self, location_id: str | None = None) -> Location:
        data = await self._get(f"/locations/{location_id or self.location_id}")
        return parse_location(data)

    async def list_users(self, limit: int = 20) -> list[User]:
        data = await self._get("/users/", {"locationId": self.location_id, "limit": limit})
        return parse_users(data)

    async def get_user(self, user_id: str) -> User:
        data = await self._get(f"/users/{user_id}")
        return parse_user(data)
