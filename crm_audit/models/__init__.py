"""Pydantic models for the application."""

from .crm import (
    Contact,
    ContactSummary,
    Conversation,
    Location,
    Message,
    MessageType,
    Opportunity,
    Pipeline,
    User,
)
from .analysis import (
    Analysis,
    AnalysisMetadata,
    AnalyzeContactRequest,
    CreatePromptRequest,
    Prompt,
    PromptSettings,
    PromptType,
    ReanalyzeRequest,
    TimelineEntry,
    TranscribeRequest,
    Transcription,
    TranscriptionResult,
)

__all__ = [
    "Contact",
    "ContactSummary",
    "Conversation",
    "Location",
    "Message",
    "MessageType",
    "Opportunity",
    "Pipeline",
    "User",
    "Analysis",
    "AnalysisMetadata",
    "AnalyzeContactRequest",
    "CreatePromptRequest",
    "Prompt",
    "PromptSettings",
    "PromptType",
    "ReanalyzeRequest",
    "TimelineEntry",
    "TranscribeRequest",
    "Transcription",
    "TranscriptionResult",
]
