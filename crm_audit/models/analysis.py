"""Pydantic models for prompts, analyses, transcriptions and API request bodies."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import Field

from .crm import CamelModel, MessageType


class PromptType(str, Enum):
    """Which audit a prompt drives. Each type has its own version sequence."""

    SETTER = "setter"
    CLOSER = "closer"


class PromptSettings(CamelModel):
    """Controls which context is sent to the model with a prompt."""

    include_contact_info: bool = True
    include_whatsapp: bool = Field(True, alias="includeWhatsApp")
    include_sms: bool = Field(True, alias="includeSMS")
    include_calls: bool = True
    model: str | None = None
    language: str | None = None
    use_tools: bool = False


class Prompt(CamelModel):
    """A versioned prompt template."""

    id: str
    version: int
    prompt_type: PromptType
    content: str
    settings: PromptSettings = Field(default_factory=PromptSettings)
    created_by: str | None = None
    created_at: datetime
    is_active: bool = False


class TranscriptSegment(CamelModel):
    start: float = 0.0
    end: float = 0.0
    text: str = ""


class TranscriptionResult(CamelModel):
    """Output of the speech-to-text service for one recording."""

    text: str
    language: str | None = None
    duration: float | None = None
    segments: list[TranscriptSegment] = Field(default_factory=list)


class Transcription(CamelModel):
    """A call transcript produced during an analysis run."""

    message_id: str
    text: str
    duration: float | None = None
    language: str | None = None
    timestamp: datetime | None = None


class TimelineEntry(CamelModel):
    """One communication event, ready to be rendered into the model context."""

    message_id: str
    channel: MessageType
    direction: str
    timestamp: datetime | None = None
    content: str


class AnalysisMetadata(CamelModel):
    """Counters and diagnostics recorded with every analysis."""

    total_messages: int = 0
    total_calls: int = 0
    sms_count: int = 0
    whatsapp_count: int = 0
    conversations_count: int = 0
    failed_transcriptions: list[dict[str, Any]] = Field(default_factory=list)
    model: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    language: str | None = None
    analyzed_at: datetime | None = None


class Analysis(CamelModel):
    """One persisted run of the audit pipeline for a contact."""

    id: str
    contact_id: str
    contact_name: str
    prompt_id: str
    prompt_version: int
    prompt_type: PromptType
    analysis_text: str
    transcriptions: list[Transcription] = Field(default_factory=list)
    metadata: AnalysisMetadata = Field(default_factory=AnalysisMetadata)
    created_at: datetime


# =============================================================================
# Request bodies
# =============================================================================
# Required fields are optional here so a missing value is reported as a
# 400 with a readable message instead of a schema error.


class AnalyzeContactRequest(CamelModel):
    contact_id: str | None = None
    prompt_id: str | None = None
    prompt_type: str | None = None
    include_whatsapp: bool = Field(True, alias="includeWhatsApp")
    include_sms: bool = Field(True, alias="includeSMS")
    include_calls: bool = True


class ReanalyzeRequest(CamelModel):
    prompt_id: str | None = None
    prompt_type: str | None = None


class CreatePromptRequest(CamelModel):
    content: str | None = None
    settings: PromptSettings | None = None
    created_by: str | None = None
    prompt_type: str | None = None


class TranscribeRequest(CamelModel):
    message_id: str | None = None
    language: str | None = None
