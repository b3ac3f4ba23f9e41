"""Client modules for external services."""

from .highlevel_client import HighLevelClient
from .llm_client import LanguageModelClient, LLMResult
from .transcription_client import TranscriptionClient

__all__ = ["HighLevelClient", "LanguageModelClient", "LLMResult", "TranscriptionClient"]
