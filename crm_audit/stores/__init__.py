"""Persistent stores for prompts, analyses and cached contacts."""

from .analyses import AnalysisStore
from .contacts import ContactCache
from .prompts import PromptStore

__all__ = ["AnalysisStore", "ContactCache", "PromptStore"]
