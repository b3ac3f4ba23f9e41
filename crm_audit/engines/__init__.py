"""Engine modules for call transcription and opportunity enrichment."""

from .call_transcriber import CallTranscriber
from .opportunity_enricher import OpportunityEnricher, OpportunityListing

__all__ = ["CallTranscriber", "OpportunityEnricher", "OpportunityListing"]
