import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load environment variables FIRST
# override=True ensures .env file takes precedence over system env vars
load_dotenv(override=True)

# Initialize observability before the SDK clients are created so their calls are instrumented
from observability import force_flush_spans, setup_observability
from crm_audit.config import get_settings

settings = get_settings()
tracer_provider = setup_observability(project_name=settings.arize_project_name, debug=settings.debug)

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from crm_audit import __version__
from crm_audit.agents import AnalysisOrchestrator
from crm_audit.analyzers import ContextAssembler
from crm_audit.clients import HighLevelClient, LanguageModelClient, TranscriptionClient
from crm_audit.database import Database
from crm_audit.engines import CallTranscriber, OpportunityEnricher
from crm_audit.errors import CRMAuditError, NotFoundError, ValidationError
from crm_audit.models import (
    AnalyzeContactRequest,
    CreatePromptRequest,
    PromptType,
    ReanalyzeRequest,
    TranscribeRequest,
)
from crm_audit.stores import AnalysisStore, ContactCache, PromptStore


def _dump(value):
    """Serialize a model (or list of models) with the dashboard's camelCase keys."""
    if value is None:
        return None
    if isinstance(value, list):
        return [_dump(item) for item in value]
    return value.model_dump(by_alias=True, mode="json")


def _prompt_type(value: str | None, default: PromptType | None = PromptType.SETTER) -> PromptType | None:
    if value in (None, ""):
        return default
    try:
        return PromptType(value)
    except ValueError:
        raise ValidationError(
            f"Invalid promptType '{value}'. Expected one of: "
            + ", ".join(t.value for t in PromptType)
        )


# =============================================================================
# Services
# =============================================================================

database = Database()
prompt_store = PromptStore(database)
analysis_store = AnalysisStore(database)
contact_cache = ContactCache(database)

crm_client = HighLevelClient()
transcription_client = TranscriptionClient()
llm_client = LanguageModelClient()

call_transcriber = CallTranscriber(crm_client, transcription_client)
orchestrator = AnalysisOrchestrator(
    prompt_store=prompt_store,
    analysis_store=analysis_store,
    contact_cache=contact_cache,
    crm_client=crm_client,
    call_transcriber=call_transcriber,
    llm_client=llm_client,
    assembler=ContextAssembler(settings.display_timezone),
)
opportunity_enricher = OpportunityEnricher(crm_client, analysis_store)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    force_flush_spans()
    database.dispose()


# Initialize FastAPI app
app = FastAPI(
    title="CRM Audit API",
    description="Browse HighLevel CRM data, transcribe calls and run AI audits of a contact's communication history",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

tracer = trace.get_tracer("crm-audit-api")

print("🤖 CRM Audit API")
print(f"   CRM location: {settings.highlevel_location_id or '(not configured)'}")
print(f"   Model: {settings.llm_model}")
print(f"   Transcription: {settings.transcription_model} (default language: {settings.default_language})")


# =============================================================================
# Error handling
# =============================================================================


@app.exception_handler(CRMAuditError)
async def crm_audit_error_handler(request: Request, exc: CRMAuditError):
    body = {"success": False, "error": exc.message}
    if exc.details is not None:
        body["details"] = exc.details
    if exc.stage:
        body["stage"] = exc.stage
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        location = ".".join(str(part) for part in errors[0].get("loc", ()) if part != "body")
        detail = " ".join(part for part in (location, errors[0].get("msg", "")) if part)
        message = f"Invalid request: {detail}"
    return JSONResponse(status_code=400, content={"success": False, "error": message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    return JSONResponse(status_code=500, content={"success": False, "error": str(exc) or type(exc).__name__})


# =============================================================================
# Health & CRM pass-through
# =============================================================================


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "success": True,
        "status": "healthy",
        "version": __version__,
        "crm_configured": bool(settings.highlevel_api_key and settings.highlevel_location_id),
        "llm_configured": bool(settings.anthropic_api_key),
        "transcription_configured": bool(settings.openai_api_key),
        "tracing_enabled": tracer_provider is not None,
    }


@app.get("/api/contacts")
async def list_contacts(limit: int = Query(20, ge=1, le=100), query: str | None = None):
    contacts = await crm_client.search_contacts(limit=limit, query=query)
    return {"success": True, "contacts": _dump(contacts), "count": len(contacts)}


@app.get("/api/contacts/{contact_id}")
async def get_contact(contact_id: str):
    contact = await crm_client.get_contact(contact_id)
    contact = contact_cache.upsert(contact)
    return {"success": True, "contact": _dump(contact)}


@app.get("/api/contacts/{contact_id}/conversations")
async def get_contact_conversations(contact_id: str, limit: int = Query(20, ge=1, le=100)):
    conversations = await crm_client.list_conversations(contact_id, limit=limit)
    return {"success": True, "conversations": _dump(conversations), "count": len(conversations)}


@app.get("/api/conversations/{conversation_id}/messages")
async def get_conversation_messages(conversation_id: str):
    messages = await crm_client.list_messages(conversation_id)
    return {"success": True, "messages": _dump(messages), "count": len(messages)}


@app.get("/api/pipelines")
async def get_pipelines():
    pipelines = await crm_client.get_pipelines()
    return {"success": True, "pipelines": _dump(pipelines)}


@app.get("/api/opportunities")
async def list_opportunities(
    pipeline_id: str | None = Query(None, alias="pipelineId"),
    pipeline_stage_id: str | None = Query(None, alias="pipelineStageId"),
    stage_id: str | None = Query(None, alias="stageId"),
    status: str | None = None,
    limit: int = Query(100, ge=1, le=1000),
):
    """List opportunities enriched with contact details and analysis flags."""
    with tracer.start_as_current_span("list_opportunities") as span:
        span.set_attribute("openinference.span.kind", "chain")
        span.set_attribute("opportunities.limit", limit)
        if pipeline_id:
            span.set_attribute("opportunities.pipeline_id", pipeline_id)

        listing = await opportunity_enricher.list_opportunities(
            pipeline_id=pipeline_id,
            stage_id=pipeline_stage_id or stage_id,
            status=status,
            limit=limit,
        )
        span.set_attribute("opportunities.returned", listing.returned)
        span.set_attribute("opportunities.total", listing.total)
        span.set_attribute("opportunities.optimized", listing.optimized)
        span.set_attribute("opportunities.partial", listing.partial)
        span.set_attribute("opportunities.failed_pipelines", len(listing.failed_pipelines))

    return {
        "success": True,
        "opportunities": _dump(listing.opportunities),
        "total": listing.total,
        "returned": listing.returned,
        "optimized": listing.optimized,
        "source": listing.source,
        "partial": listing.partial,
        "failedPipelines": listing.failed_pipelines,
    }


@app.get("/api/opportunities/{opportunity_id}")
async def get_opportunity(opportunity_id: str):
    opportunity = await crm_client.get_opportunity(opportunity_id)
    return {"success": True, "opportunity": _dump(opportunity)}


@app.get("/api/messages/{message_id}/transcription")
async def get_message_transcription(message_id: str):
    """The CRM's own stored transcription for a call message."""
    transcription = await crm_client.get_message_transcription(message_id)
    return {"success": True, "messageId": message_id, "transcription": transcription}


@app.post("/api/transcribe")
async def transcribe_call(request: TranscribeRequest):
    """Download a call recording and transcribe it."""
    if not request.message_id:
        raise ValidationError("messageId is required")
    language = request.language or settings.default_language

    with tracer.start_as_current_span("transcribe_call") as span:
        span.set_attribute("openinference.span.kind", "chain")
        span.set_attribute("message.id", request.message_id)
        span.set_attribute("transcription.language", language)
        try:
            result = await call_transcriber.transcribe_message(request.message_id, language)
        except Exception as e:
            span.set_status(Status(StatusCode.ERROR, str(e)))
            span.record_exception(e)
            raise

    return {
        "success": True,
        "messageId": request.message_id,
        "transcription": result.text,
        "language": result.language or language,
        "duration": result.duration,
        "segments": _dump(result.segments),
    }


# =============================================================================
# Analyses
# =============================================================================


@app.post("/api/analyze-contact")
async def analyze_contact(request: AnalyzeContactRequest):
    """Run an AI audit over a contact's full communication history."""
    if not request.contact_id:
        raise ValidationError("contactId is required")

    analysis = await orchestrator.analyze_contact(
        request.contact_id,
        prompt_id=request.prompt_id,
        prompt_type=_prompt_type(request.prompt_type),
        include_whatsapp=request.include_whatsapp,
        include_sms=request.include_sms,
        include_calls=request.include_calls,
    )
    return {"success": True, "analysis": _dump(analysis)}


@app.post("/api/analyses/{contact_id}/reanalyze")
async def reanalyze_contact(contact_id: str, request: ReanalyzeRequest | None = None):
    """Run the analysis again for a contact, optionally with another prompt."""
    request = request or ReanalyzeRequest()
    analysis = await orchestrator.analyze_contact(
        contact_id,
        prompt_id=request.prompt_id,
        prompt_type=_prompt_type(request.prompt_type),
    )
    return {"success": True, "analysis": _dump(analysis)}


@app.get("/api/analyses/{contact_id}")
async def list_analyses(contact_id: str):
    analyses = analysis_store.list_for_contact(contact_id)
    return {"success": True, "analyses": _dump(analyses), "count": len(analyses)}


@app.get("/api/analyses/{contact_id}/latest")
async def latest_analysis(contact_id: str):
    analysis = analysis_store.latest_for_contact(contact_id)
    if analysis is None:
        raise NotFoundError("Analysis for contact", contact_id)
    return {"success": True, "analysis": _dump(analysis)}


# =============================================================================
# Prompts
# =============================================================================


@app.get("/api/prompts/active")
async def get_active_prompt(type: str | None = None):
    prompt_type = _prompt_type(type)
    prompt = prompt_store.get_active(prompt_type)
    return {"success": True, "promptType": prompt_type.value, "prompt": _dump(prompt)}


@app.get("/api/prompts/history")
async def get_prompt_history(type: str | None = None):
    prompts = prompt_store.list_history(_prompt_type(type, default=None))
    return {"success": True, "prompts": _dump(prompts), "count": len(prompts)}


@app.post("/api/prompts")
async def create_prompt(request: CreatePromptRequest):
    """Create a new prompt version and make it the active one for its type."""
    if not request.content or not request.content.strip():
        raise ValidationError("content is required")

    prompt = prompt_store.create(
        request.content,
        settings=request.settings,
        created_by=request.created_by,
        prompt_type=_prompt_type(request.prompt_type),
    )
    return {"success": True, "prompt": _dump(prompt)}


@app.get("/api/prompts/{prompt_id}")
async def get_prompt(prompt_id: str):
    prompt = prompt_store.get(prompt_id)
    if prompt is None:
        raise NotFoundError("Prompt", prompt_id)
    return {"success": True, "prompt": _dump(prompt)}


@app.post("/api/prompts/{prompt_id}/restore")
async def restore_prompt(prompt_id: str):
    prompt = prompt_store.restore(prompt_id)
    return {"success": True, "prompt": _dump(prompt)}


@app.delete("/api/prompts/{prompt_id}")
async def delete_prompt(prompt_id: str):
    activated = prompt_store.delete(prompt_id)
    return {"success": True, "deleted": prompt_id, "activated": _dump(activated)}


if __name__ == "__main__":
    import uvicorn

    if not settings.highlevel_api_key or not settings.highlevel_location_id:
        print("⚠️  WARNING: HIGHLEVEL_API_KEY / HIGHLEVEL_LOCATION_ID not set")
        print("   Please create a .env file with your CRM credentials")
    if not settings.anthropic_api_key:
        print("⚠️  WARNING: ANTHROPIC_API_KEY not found in environment variables")

    port = int(os.getenv("PORT", 8080))
    print("🚀 Starting CRM Audit API...")
    print(f"📚 API docs available at http://localhost:{port}/docs")

    uvicorn.run(app, host="0.0.0.0", port=port)
