"""
OpenInference observability integration for Arize AX.

Sets up logging for the service and, when Arize credentials are present,
registers an OpenTelemetry tracer provider and instruments the Anthropic and
OpenAI SDKs so model and transcription calls show up under the pipeline
spans created in ``crm_audit.agents.analysis_orchestrator``.
"""
import logging
import os
from typing import Optional

from arize.otel import register
from openinference.instrumentation.anthropic import AnthropicInstrumentor
from openinference.instrumentation.openai import OpenAIInstrumentor
from opentelemetry import trace

logger = logging.getLogger(__name__)


def setup_observability(
    project_name: str = "crm-audit",
    arize_api_key: Optional[str] = None,
    arize_space_id: Optional[str] = None,
    debug: bool = False,
):
    """
    Configure logging and export traces to Arize AX.

    Args:
        project_name: Name of the project for trace organization
        arize_api_key: Arize API key (defaults to ARIZE_API_KEY env var)
        arize_space_id: Arize space ID (defaults to ARIZE_SPACE_ID env var)
        debug: Log at DEBUG instead of INFO

    Returns:
        The registered tracer provider, or None when tracing is disabled
    """
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    # NOTE: load_dotenv() should be called before this in main.py
    api_key = arize_api_key or os.getenv("ARIZE_API_KEY")
    space_id = arize_space_id or os.getenv("ARIZE_SPACE_ID")

    if not api_key or not space_id:
        print("⚠️  WARNING: Arize credentials not found. Observability disabled.")
        print("   Set ARIZE_API_KEY and ARIZE_SPACE_ID in .env to enable tracing.")
        return None

    print(f"✅ Arize credentials loaded (API Key: {len(api_key)} chars, Space ID: {len(space_id)} chars)")

    try:
        tracer_provider = register(
            space_id=space_id,
            api_key=api_key,
            project_name=project_name,
            set_global_tracer_provider=True,
        )

        AnthropicInstrumentor().instrument(tracer_provider=tracer_provider)
        OpenAIInstrumentor().instrument(tracer_provider=tracer_provider)

        print(f"✅ Arize tracing enabled - project: {project_name}")
        return tracer_provider

    except Exception as e:
        # Tracing must never keep the API from starting
        logger.error("Failed to initialize Arize tracing: %s", e)
        return None


def force_flush_spans(timeout_millis: int = 5000) -> bool:
    """Flush pending spans, e.g. before the process exits."""
    provider = trace.get_tracer_provider()
    flush = getattr(provider, "force_flush", None)
    if flush is None:
        return True
    return bool(flush(timeout_millis))
