"""Agent modules: the analysis pipeline and the model's CRM tools."""

from .analysis_orchestrator import AnalysisOrchestrator, AnalysisStage
from .crm_tools import TOOLS, CRMToolbox

__all__ = ["AnalysisOrchestrator", "AnalysisStage", "TOOLS", "CRMToolbox"]
