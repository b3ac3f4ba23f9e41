"""Pydantic models for HighLevel CRM entities and their response normalizers.

The CRM returns slightly different shapes for the same resource depending on
the endpoint and API revision (messages nested under ``messages.messages`` or
flat, contacts wrapped in ``{"contact": ...}`` or bare, ...). Every parser in
this module accepts all the shapes seen in practice and returns one model.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys for the dashboard."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MessageType(str, Enum):
    """Communication channel of a conversation message."""

    CALL = "CALL"
    SMS = "SMS"
    WHATSAPP = "WHATSAPP"


class Contact(CamelModel):
    """A contact mirrored from the CRM."""

    id: str
    first_name: str | None = None
    last_name: str | None = None
    name: str = ""
    email: str | None = None
    phone: str | None = None
    company_name: str | None = None
    tags: list[str] = Field(default_factory=list)
    source: str | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    date_added: str | None = None
    last_synced: datetime | None = None


class ContactSummary(CamelModel):
    """The contact fields embedded in an opportunity."""

    id: str | None = None
    name: str = "Unknown"
    email: str | None = None
    phone: str | None = None
    company_name: str | None = None
    tags: list[str] = Field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return bool(self.email) and bool(self.phone)


class Conversation(CamelModel):
    """A conversation thread. Messages are fetched separately."""

    id: str
    contact_id: str | None = None
    last_message_type: str | None = None
    last_message_date: str | None = None
    unread_count: int = 0


class Message(CamelModel):
    """A single conversation message, already classified by channel."""

    id: str
    conversation_id: str | None = None
    message_type: MessageType = MessageType.WHATSAPP
    raw_type: str | None = None
    body: str | None = None
    direction: str = "inbound"
    timestamp: datetime | None = None


class MessagePage(BaseModel):
    """One page of messages plus the cursor for the next one."""

    messages: list[Message] = Field(default_factory=list)
    last_message_id: str | None = None
    next_page: bool = False


class PipelineStage(CamelModel):
    id: str
    name: str = ""


class Pipeline(CamelModel):
    id: str
    name: str = ""
    stages: list[PipelineStage] = Field(default_factory=list)

    def stage_name(self, stage_id: str | None) -> str | None:
        for stage in self.stages:
            if stage.id == stage_id:
                return stage.name
        return None


class Opportunity(CamelModel):
    """An opportunity, optionally enriched with contact details and analysis flags."""

    id: str
    name: str = ""
    pipeline_id: str | None = None
    pipeline_name: str | None = None
    stage_id: str | None = None
    stage_name: str | None = None
    status: str | None = None
    monetary_value: float = 0.0
    assigned_to: str | None = None
    contact_id: str | None = None
    contact: ContactSummary = Field(default_factory=ContactSummary)
    has_analysis: bool = False
    created_at: str | None = None
    last_status_change_at: str | None = None


class Location(CamelModel):
    """A HighLevel location (sub-account)."""

    id: str
    name: str = ""
    email: str | None = None
    phone: str | None = None
    timezone: str | None = None
    address: str | None = None


class User(CamelModel):
    """A CRM user, e.g. the one an opportunity is assigned to."""

    id: str
    name: str = ""
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    role: str | None = None


class OpportunityPage(BaseModel):
    """One page of the opportunity search and its pagination cursor."""

    opportunities: list[Opportunity] = Field(default_factory=list)
    total: int | None = None
    start_after: Any = None
    start_after_id: str | None = None


# =============================================================================
# Normalizers
# =============================================================================


def _unwrap(payload: Any, key: str) -> Any:
    """Return ``payload[key]`` when the resource is wrapped, else the payload itself."""
    if isinstance(payload, dict) and isinstance(payload.get(key), dict):
        return payload[key]
    return payload


def display_name(first_name: str | None, last_name: str | None, fallback: str | None = None) -> str:
    """First and last name joined and trimmed, falling back to ``fallback``."""
    name = f"{first_name or ''} {last_name or ''}".strip()
    return name or (fallback or "").strip() or "Unknown"


def _from_epoch_millis(value: float) -> datetime | None:
    # Out-of-range epochs raise OverflowError or OSError depending on the platform
    try:
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string or an epoch-milliseconds number into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = _from_epoch_millis(value)
        if parsed is None:
            return None
    else:
        text = str(value).strip()
        if text.isdigit():
            return _from_epoch_millis(int(text))
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def classify_message_type(raw_type: Any) -> MessageType:
    """Map the CRM's message type string onto a channel.

    ``TYPE_CALL``/``CALL`` and ``TYPE_SMS``/``SMS`` are recognized; anything
    else, including a missing type, is treated as WhatsApp.
    """
    if not isinstance(raw_type, str):
        return MessageType.WHATSAPP
    normalized = raw_type.strip().upper()
    if normalized.startswith("TYPE_"):
        normalized = normalized[len("TYPE_"):]
    if normalized == "CALL":
        return MessageType.CALL
    if normalized == "SMS":
        return MessageType.SMS
    return MessageType.WHATSAPP


def _custom_fields(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return dict(raw)
    fields: dict[str, Any] = {}
    for item in raw or []:
        if isinstance(item, dict) and item.get("id"):
            fields[item["id"]] = item.get("value", item.get("fieldValue"))
    return fields


def parse_contact(payload: Any) -> Contact:
    """Normalize a contact detail or contact list item."""
    data = _unwrap(payload, "contact")
    first_name = data.get("firstName") or data.get("first_name")
    last_name = data.get("lastName") or data.get("last_name")
    return Contact(
        id=str(data.get("id") or data.get("_id") or ""),
        first_name=first_name,
        last_name=last_name,
        name=display_name(first_name, last_name, data.get("contactName") or data.get("name")),
        email=data.get("email"),
        phone=data.get("phone"),
        company_name=data.get("companyName"),
        tags=list(data.get("tags") or []),
        source=data.get("source"),
        custom_fields=_custom_fields(data.get("customFields") or data.get("customField")),
        date_added=data.get("dateAdded"),
    )


def parse_contacts(payload: Any) -> list[Contact]:
    items = payload.get("contacts", []) if isinstance(payload, dict) else payload
    return [parse_contact(item) for item in items or []]


def parse_conversations(payload: Any) -> list[Conversation]:
    items = payload.get("conversations", []) if isinstance(payload, dict) else payload
    conversations = []
    for item in items or []:
        conversations.append(
            Conversation(
                id=str(item.get("id")),
                contact_id=item.get("contactId"),
                last_message_type=item.get("lastMessageType"),
                last_message_date=str(item["lastMessageDate"]) if item.get("lastMessageDate") else None,
                unread_count=item.get("unreadCount") or 0,
            )
        )
    return conversations


def parse_message(item: dict, conversation_id: str | None = None) -> Message:
    raw_type = item.get("messageType") or item.get("type")
    raw_type = raw_type if isinstance(raw_type, str) else None
    return Message(
        id=str(item.get("id")),
        conversation_id=item.get("conversationId") or conversation_id,
        message_type=classify_message_type(raw_type),
        raw_type=raw_type,
        body=item.get("body"),
        direction=(item.get("direction") or "inbound").lower(),
        timestamp=parse_timestamp(item.get("dateAdded") or item.get("timestamp")),
    )


def parse_message_page(payload: Any, conversation_id: str | None = None) -> MessagePage:
    """Normalize the messages endpoint.

    Seen shapes: ``{"messages": {"messages": [...], "lastMessageId", "nextPage"}}``,
    ``{"messages": [...], "lastMessageId", "nextPage"}`` and a bare list.
    """
    container: Any = payload
    if isinstance(container, dict) and isinstance(container.get("messages"), dict):
        container = container["messages"]

    if isinstance(container, dict):
        items = container.get("messages") or []
        last_message_id = container.get("lastMessageId")
        next_page = bool(container.get("nextPage"))
    else:
        items = container or []
        last_message_id = None
        next_page = False

    messages = [parse_message(item, conversation_id) for item in items if isinstance(item, dict)]
    if last_message_id is None and messages:
        last_message_id = messages[-1].id
    return MessagePage(messages=messages, last_message_id=last_message_id, next_page=next_page)


def parse_pipelines(payload: Any) -> list[Pipeline]:
    items = payload.get("pipelines", []) if isinstance(payload, dict) else payload
    pipelines = []
    for item in items or []:
        pipelines.append(
            Pipeline(
                id=str(item.get("id")),
                name=item.get("name") or "",
                stages=[
                    PipelineStage(id=str(stage.get("id")), name=stage.get("name") or "")
                    for stage in item.get("stages") or []
                ],
            )
        )
    return pipelines


def _contact_summary(item: dict) -> ContactSummary:
    embedded = item.get("contact") or {}
    name = embedded.get("name") or display_name(
        embedded.get("firstName"), embedded.get("lastName"), embedded.get("contactName")
    )
    return ContactSummary(
        id=embedded.get("id") or item.get("contactId"),
        name=name,
        email=embedded.get("email"),
        phone=embedded.get("phone"),
        company_name=embedded.get("companyName"),
        tags=list(embedded.get("tags") or []),
    )


def parse_opportunity(
    payload: Any,
    pipeline_id: str | None = None,
    stage_id: str | None = None,
) -> Opportunity:
    """Normalize an opportunity from the search endpoint, the detail endpoint
    or a pipeline's embedded stage list (where the stage comes from the parent)."""
    item = _unwrap(payload, "opportunity")
    summary = _contact_summary(item)
    try:
        monetary_value = float(item.get("monetaryValue") or 0)
    except (TypeError, ValueError):
        monetary_value = 0.0
    return Opportunity(
        id=str(item.get("id")),
        name=item.get("name") or "",
        pipeline_id=item.get("pipelineId") or pipeline_id,
        stage_id=item.get("pipelineStageId") or item.get("stageId") or stage_id,
        status=item.get("status"),
        monetary_value=monetary_value,
        assigned_to=item.get("assignedTo"),
        contact_id=item.get("contactId") or summary.id,
        contact=summary,
        created_at=item.get("createdAt"),
        last_status_change_at=item.get("lastStatusChangeAt"),
    )


def parse_opportunity_page(payload: Any) -> OpportunityPage:
    items = payload.get("opportunities", []) if isinstance(payload, dict) else payload
    meta = payload.get("meta", {}) if isinstance(payload, dict) else {}
    return OpportunityPage(
        opportunities=[parse_opportunity(item) for item in items or []],
        total=meta.get("total"),
        start_after=meta.get("startAfter"),
        start_after_id=meta.get("startAfterId"),
    )


def flatten_pipeline_opportunities(payload: Any, pipeline_id: str) -> list[Opportunity]:
    """Flatten a single pipeline's stage-grouped opportunities.

    Accepts ``{"pipeline": {"stages": [{"id", "opportunities": [...]}]}}``,
    ``{"stages": [...]}`` or a flat ``{"opportunities": [...]}``.
    """
    data = _unwrap(payload, "pipeline")
    opportunities: list[Opportunity] = []
    if not isinstance(data, dict):
        return opportunities
    for stage in data.get("stages") or []:
        for item in stage.get("opportunities") or []:
            opportunities.append(parse_opportunity(item, pipeline_id=pipeline_id, stage_id=stage.get("id")))
    for item in data.get("opportunities") or []:
        opportunities.append(parse_opportunity(item, pipeline_id=pipeline_id))
    return opportunities



def parse_location(payload: Any) -> Location:
    data = _unwrap(payload, "location")
    return Location(
        id=str(data.get("id") or data.get("_id") or ""),
        name=data.get("name") or "",
        email=data.get("email"),
        phone=data.get("phone"),
        timezone=data.get("timezone"),
        address=data.get("address"),
    )


def parse_locations(payload: Any) -> list[Location]:
    items = payload.get("locations", []) if isinstance(payload, dict) else payload
    return [parse_location(item) for item in items or []]


def parse_user(payload: Any) -> User:
    data = _unwrap(payload, "user")
    first_name = data.get("firstName")
    last_name = data.get("lastName")
    roles = data.get("roles") if isinstance(data.get("roles"), dict) else {}
    return User(
        id=str(data.get("id") or data.get("_id") or ""),
        name=display_name(first_name, last_name, data.get("name")),
        first_name=first_name,
        last_name=last_name,
        email=data.get("email"),
        phone=data.get("phone"),
        role=roles.get("role") or data.get("role"),
    )


def parse_users(payload: Any) -> list[User]:
    items = payload.get("users", []) if isinstance(payload, dict) else payload
    return [parse_user(item) for item in items or []]
