"""CRM read operations exposed to the language model as tools."""

import json
import logging
from typing import Any

from ..clients.highlevel_client import HighLevelClient
from ..engines.call_transcriber import CallTranscriber
from ..errors import ValidationError

logger = logging.getLogger(__name__)


TOOLS: list[dict] = [
    {
        "name": "get_contacts",
        "description": "List contacts of the location, optionally matching a search query.",
        "input_schema": {
            "type": "object",
            "properties": {
                "limit": {"type": "integer", "description": "Maximum number of contacts (default 20)"},
                "query": {"type": "string", "description": "Free-text search on name, email or phone"},
            },
        },
    },
    {
        "name": "get_contact",
        "description": "Get the full CRM record of a contact: name, email, phone, tags, source and custom fields.",
        "input_schema": {
            "type": "object",
            "properties": {"contactId": {"type": "string", "description": "The contact ID"}},
            "required": ["contactId"],
        },
    },
    {
        "name": "get_conversations",
        "description": "List the conversations of a contact.",
        "input_schema": {
            "type": "object",
            "properties": {
                "contactId": {"type": "string", "description": "The contact ID"},
                "limit": {"type": "integer", "description": "Maximum number of conversations (default 20)"},
            },
            "required": ["contactId"],
        },
    },
    {
        "name": "get_conversation_messages",
        "description": "Get the messages of a conversation, oldest page first.",
        "input_schema": {
            "type": "object",
            "properties": {"conversationId": {"type": "string", "description": "The conversation ID"}},
            "required": ["conversationId"],
        },
    },
    {
        "name": "get_recording_url",
        "description": "Get the URL a call message's recording is downloaded from.",
        "input_schema": {
            "type": "object",
            "properties": {"messageId": {"type": "string", "description": "The call message ID"}},
            "required": ["messageId"],
        },
    },
    {
        "name": "transcribe_recording",
        "description": "Download a call message's recording and transcribe it with speech-to-text.",
        "input_schema": {
            "type": "object",
            "properties": {
                "messageId": {"type": "string", "description": "The call message ID"},
                "language": {"type": "string", "description": "ISO-639-1 language hint (default es)"},
            },
            "required": ["messageId"],
        },
    },
    {
        "name": "get_transcription_by_message_id",
        "description": "Get the CRM's stored transcription of a call message.",
        "input_schema": {
            "type": "object",
            "properties": {"messageId": {"type": "string", "description": "The call message ID"}},
            "required": ["messageId"],
        },
    },
    {
        "name": "get_opportunities",
        "description": "List opportunities, optionally restricted to one pipeline.",
        "input_schema": {
            "type": "object",
            "properties": {
                "limit": {"type": "integer", "description": "Maximum number of opportunities (default 20)"},
                "pipelineId": {"type": "string", "description": "The pipeline ID"},
            },
        },
    },
    {
        "name": "get_opportunity",
        "description": "Get an opportunity by ID, including its pipeline stage, status and value.",
        "input_schema": {
            "type": "object",
            "properties": {"opportunityId": {"type": "string", "description": "The opportunity ID"}},
            "required": ["opportunityId"],
        },
    },
    {
        "name": "get_pipelines",
        "description": "List the sales pipelines and their stages.",
        "input_schema": {"type": "object", "properties": {}},
    },
    {
        "name": "get_locations",
        "description": "List the locations (sub-accounts) the API key can see.",
        "input_schema": {
            "type": "object",
            "properties": {"limit": {"type": "integer", "description": "Maximum number of locations (default 20)"}},
        },
    },
    {
        "name": "get_location",
        "description": "Get a location's details. Defaults to the configured location.",
        "input_schema": {
            "type": "object",
            "properties": {"locationId": {"type": "string", "description": "The location ID"}},
        },
    },
    {
        "name": "get_users",
        "description": "List the users of the location.",
        "input_schema": {
            "type": "object",
            "properties": {"limit": {"type": "integer", "description": "Maximum number of users (default 20)"}},
        },
    },
    {
        "name": "get_user",
        "description": "Get a user by ID, e.g. the one an opportunity is assigned to.",
        "input_schema": {
            "type": "object",
            "properties": {"userId": {"type": "string", "description": "The user ID"}},
            "required": ["userId"],
        },
    },
]


def _require(args: dict, key: str) -> str:
    value = args.get(key)
    if not value:
        raise ValidationError(f"Missing required argument '{key}'")
    return str(value)


def _limit(args: dict, default: int = 20) -> int:
    try:
        return max(int(args.get("limit") or default), 1)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid limit: {args.get('limit')!r}") from e


def _dump(value: Any) -> Any:
    if isinstance(value, list):
        return [_dump(item) for item in value]
    if hasattr(value, "model_dump"):
        return value.model_dump(by_alias=True, mode="json")
    return value


class CRMToolbox:
    """Runs the tools in ``TOOLS`` against the CRM client.

    ``transcribe_recording`` needs a call transcriber; without one it is left
    out of ``definitions`` and rejected by ``execute``.
    """

    def __init__(
        self,
        crm_client: HighLevelClient,
        call_transcriber: CallTranscriber | None = None,
        default_language: str = "es",
    ):
        self.crm = crm_client
        self.transcriber = call_transcriber
        self.default_language = default_language
        self._handlers = {
            "get_contacts": self._get_contacts,
            "get_contact": self._get_contact,
            "get_conversations": self._get_conversations,
            "get_conversation_messages": self._get_conversation_messages,
            "get_recording_url": self._get_recording_url,
            "transcribe_recording": self._transcribe_recording,
            "get_transcription_by_message_id": self._get_transcription,
            "get_opportunities": self._get_opportunities,
            "get_opportunity": self._get_opportunity,
            "get_pipelines": self._get_pipelines,
            "get_locations": self._get_locations,
            "get_location": self._get_location,
            "get_users": self._get_users,
            "get_user": self._get_user,
        }

    @property
    def definitions(self) -> list[dict]:
        if self.transcriber is None:
            return [tool for tool in TOOLS if tool["name"] != "transcribe_recording"]
        return TOOLS

    async def execute(self, name: str, args: dict) -> str:
        """Run a tool and return its result as JSON text.

        Raises:
            ValidationError: For an unknown tool or a missing argument
        """
        handler = self._handlers.get(name)
        if handler is None:
            raise ValidationError(f"Unknown tool: {name}")
        logger.info("Running tool %s", name)
        result = await handler(args)
        return json.dumps(_dump(result), ensure_ascii=False, default=str)

    async def _get_contacts(self, args: dict):
        return await self.crm.search_contacts(limit=_limit(args), query=args.get("query") or None)

    async def _get_contact(self, args: dict):
        return await self.crm.get_contact(_require(args, "contactId"))

    async def _get_conversations(self, args: dict):
        return await self.crm.list_conversations(_require(args, "contactId"), limit=_limit(args))

    async def _get_conversation_messages(self, args: dict):
        return await self.crm.list_messages(_require(args, "conversationId"))

    async def _get_recording_url(self, args: dict):
        message_id = _require(args, "messageId")
        return {"messageId": message_id, "url": self.crm.recording_url(message_id)}

    async def _transcribe_recording(self, args: dict):
        if self.transcriber is None:
            raise ValidationError("Transcription is not available")
        message_id = _require(args, "messageId")
        language = args.get("language") or self.default_language
        result = await self.transcriber.transcribe_message(message_id, language)
        return {"messageId": message_id, **result.model_dump(mode="json")}

    async def _get_transcription(self, args: dict):
        return await self.crm.get_message_transcription(_require(args, "messageId"))

    async def _get_opportunities(self, args: dict):
        page = await self.crm.search_opportunities(pipeline_id=args.get("pipelineId") or None, limit=_limit(args))
        return {"opportunities": _dump(page.opportunities), "total": page.total}

    async def _get_opportunity(self, args: dict):
        return await self.crm.get_opportunity(_require(args, "opportunityId"))

    async def _get_pipelines(self, args: dict):
        return await self.crm.get_pipelines()

    async def _get_locations(self, args: dict):
        return await self.crm.search_locations(limit=_limit(args))

    async def _get_location(self, args: dict):
        return await self.crm.get_location(args.get("locationId") or None)

    async def _get_users(self, args: dict):
        return await self.crm.list_users(limit=_limit(args))

    async def _get_user(self, args: dict):
        return await self.crm.get_user(_require(args, "userId"))
