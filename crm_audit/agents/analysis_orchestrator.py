"""LangGraph pipeline that runs an audit analysis for one contact.

The graph is linear with no backtracking:

    SELECT_PROMPT -> FETCH_CONTACT -> FETCH_CONVERSATIONS -> BUILD_TIMELINE
    -> ASSEMBLE_CONTEXT -> INVOKE_MODEL -> PERSIST -> DONE

Any step may fail, which ends the run in FAILED. The raised error carries
the failing step in ``error.stage``. Failed call transcriptions are not step
failures: those calls are left out of the timeline and listed in the
analysis metadata.
"""

import asyncio
import contextvars
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, TypedDict
from uuid import uuid4

from langgraph.graph import END, StateGraph
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from ..analyzers.context_assembler import ContextAssembler, build_model_input
from ..analyzers.timeline_builder import ChannelSelection, build_timeline, count_by_channel, select_messages
from ..clients.highlevel_client import HighLevelClient
from ..clients.llm_client import LanguageModelClient, LLMResult
from ..config import get_settings
from ..engines.call_transcriber import CallTranscriber
from ..errors import CRMAuditError, NoActivePromptError, PersistenceError, ValidationError
from ..models.analysis import (
    Analysis,
    AnalysisMetadata,
    Prompt,
    PromptType,
    TimelineEntry,
    Transcription,
)
from ..models.crm import Contact, Message, MessageType
from ..stores.analyses import AnalysisStore
from ..stores.contacts import ContactCache
from ..stores.prompts import PromptStore
from .crm_tools import CRMToolbox

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class AnalysisStage(str, Enum):
    SELECT_PROMPT = "SELECT_PROMPT"
    FETCH_CONTACT = "FETCH_CONTACT"
    FETCH_CONVERSATIONS = "FETCH_CONVERSATIONS"
    BUILD_TIMELINE = "BUILD_TIMELINE"
    ASSEMBLE_CONTEXT = "ASSEMBLE_CONTEXT"
    INVOKE_MODEL = "INVOKE_MODEL"
    PERSIST = "PERSIST"
    DONE = "DONE"
    FAILED = "FAILED"


class AnalysisState(TypedDict):
    """State passed between the pipeline steps."""

    # Input
    contact_id: str
    prompt_id: str | None
    prompt_type: PromptType
    include_calls: bool
    include_sms: bool
    include_whatsapp: bool

    # Resolved along the way
    prompt: Prompt | None
    contact: Contact | None
    conversations_count: int
    messages: list[Message]
    language: str
    timeline: list[TimelineEntry]
    transcriptions: list[Transcription]
    failed_transcriptions: list[dict]
    model_input: str
    llm_result: LLMResult | None

    # Output
    analysis: Analysis | None
    stage: str


Step = Callable[[AnalysisState], Awaitable[dict]]


class AnalysisOrchestrator:
    """Runs the contact analysis pipeline."""

    def __init__(
        self,
        prompt_store: PromptStore,
        analysis_store: AnalysisStore,
        contact_cache: ContactCache,
        crm_client: HighLevelClient,
        call_transcriber: CallTranscriber,
        llm_client: LanguageModelClient,
        assembler: ContextAssembler | None = None,
    ):
        settings = get_settings()
        self.prompts = prompt_store
        self.analyses = analysis_store
        self.contacts = contact_cache
        self.crm = crm_client
        self.transcriber = call_transcriber
        self.llm = llm_client
        self.assembler = assembler or ContextAssembler()
        self.conversation_limit = settings.conversation_limit
        self.fetch_concurrency = max(settings.conversation_fetch_concurrency, 1)
        self.default_language = settings.default_language
        self.toolbox = CRMToolbox(crm_client, call_transcriber, self.default_language)
        self.graph = self._build_graph()

    def _build_graph(self):
        """Build the linear LangGraph workflow."""
        steps: list[tuple[AnalysisStage, Step]] = [
            (AnalysisStage.SELECT_PROMPT, self._select_prompt),
            (AnalysisStage.FETCH_CONTACT, self._fetch_contact),
            (AnalysisStage.FETCH_CONVERSATIONS, self._fetch_conversations),
            (AnalysisStage.BUILD_TIMELINE, self._build_timeline),
            (AnalysisStage.ASSEMBLE_CONTEXT, self._assemble_context),
            (AnalysisStage.INVOKE_MODEL, self._invoke_model),
            (AnalysisStage.PERSIST, self._persist),
        ]
        workflow = StateGraph(AnalysisState)
        for stage, step in steps:
            workflow.add_node(stage.value.lower(), self._traced(stage, step))

        names = [stage.value.lower() for stage, _ in steps]
        workflow.set_entry_point(names[0])
        for current, following in zip(names, names[1:]):
            workflow.add_edge(current, following)
        workflow.add_edge(names[-1], END)

        return workflow.compile()

    @staticmethod
    def _traced(stage: AnalysisStage, step: Step) -> Step:
        """Wrap a step in a span and tag any application error with the step."""

        async def run(state: AnalysisState) -> dict:
            with tracer.start_as_current_span(f"analysis.{stage.value.lower()}") as span:
                span.set_attribute("openinference.span.kind", "chain")
                span.set_attribute("contact.id", state["contact_id"])
                try:
                    update = await step(state)
                except Exception as e:
                    if isinstance(e, CRMAuditError) and e.stage is None:
                        e.stage = stage.value
                    span.record_exception(e)
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    raise
                span.set_status(Status(StatusCode.OK))
            logger.debug("Contact %s: %s done", state["contact_id"], stage.value)
            return {**update, "stage": stage.value}

        return run

    # =========================================================================
    # Steps
    # =========================================================================

    async def _select_prompt(self, state: AnalysisState) -> dict:
        prompt_type = state["prompt_type"]
        if state["prompt_id"]:
            prompt = self.prompts.get(state["prompt_id"])
            if prompt is None:
                raise NoActivePromptError(prompt_type.value, state["prompt_id"])
        else:
            prompt = self.prompts.get_active(prompt_type)
            if prompt is None:
                raise NoActivePromptError(prompt_type.value)
        logger.info("Using %s prompt v%d (%s)", prompt.prompt_type.value, prompt.version, prompt.id)
        return {"prompt": prompt}

    async def _fetch_contact(self, state: AnalysisState) -> dict:
        contact = await self.crm.get_contact(state["contact_id"])
        try:
            contact = self.contacts.upsert(contact)
        except PersistenceError as e:
            # The cache is a convenience; the analysis does not depend on it
            logger.warning("Could not cache contact %s: %s", contact.id, e)
        return {"contact": contact}

    async def _fetch_conversations(self, state: AnalysisState) -> dict:
        conversations = await self.crm.list_conversations(state["contact_id"], limit=self.conversation_limit)
        semaphore = asyncio.Semaphore(self.fetch_concurrency)

        async def _messages(conversation_id: str) -> list[Message]:
            async with semaphore:
                return await self.crm.list_messages(conversation_id)

        pages = await asyncio.gather(*(_messages(c.id) for c in conversations))
        messages = [message for page in pages for message in page]
        logger.info(
            "Fetched %d messages from %d conversations for contact %s",
            len(messages), len(conversations), state["contact_id"],
        )
        return {"conversations_count": len(conversations), "messages": messages}

    async def _build_timeline(self, state: AnalysisState) -> dict:
        settings = state["prompt"].settings
        selection = ChannelSelection.resolve(
            settings,
            include_calls=state["include_calls"],
            include_sms=state["include_sms"],
            include_whatsapp=state["include_whatsapp"],
        )
        selected = select_messages(state["messages"], selection)
        language = settings.language or self.default_language

        transcripts: dict[str, Transcription] = {}
        failures: list[dict] = []
        if selection.calls:
            transcripts, failures = await self.transcriber.transcribe_calls(selected, language)

        timeline = build_timeline(selected, transcripts)
        transcriptions = [transcripts[m.id] for m in selected if m.id in transcripts]
        return {
            "language": language,
            "timeline": timeline,
            "transcriptions": transcriptions,
            "failed_transcriptions": failures,
        }

    async def _assemble_context(self, state: AnalysisState) -> dict:
        prompt = state["prompt"]
        context = self.assembler.assemble(state["contact"], state["timeline"], prompt.settings)
        return {"model_input": build_model_input(prompt.content, context)}

    async def _invoke_model(self, state: AnalysisState) -> dict:
        settings = state["prompt"].settings
        tools = None
        executor = None
        if settings.use_tools:
            tools = self.toolbox.definitions
            executor = self.toolbox.execute
        result = await self.llm.generate(
            state["model_input"],
            model=settings.model,
            tools=tools,
            tool_executor=executor,
        )
        logger.info(
            "Model %s answered (%d in / %d out tokens, %d tool calls)",
            result.model, result.input_tokens, result.output_tokens, result.tool_calls,
        )
        return {"llm_result": result}

    async def _persist(self, state: AnalysisState) -> dict:
        prompt = state["prompt"]
        contact = state["contact"]
        result = state["llm_result"]
        counts = count_by_channel(state["timeline"])
        now = datetime.now(timezone.utc)

        analysis = Analysis(
            id=uuid4().hex,
            contact_id=contact.id or state["contact_id"],
            contact_name=contact.name,
            prompt_id=prompt.id,
            prompt_version=prompt.version,
            prompt_type=prompt.prompt_type,
            analysis_text=result.text,
            transcriptions=state["transcriptions"],
            metadata=AnalysisMetadata(
                total_messages=len(state["timeline"]),
                total_calls=counts[MessageType.CALL],
                sms_count=counts[MessageType.SMS],
                whatsapp_count=counts[MessageType.WHATSAPP],
                conversations_count=state["conversations_count"],
                failed_transcriptions=state["failed_transcriptions"],
                model=result.model,
                input_tokens=result.input_tokens,
                output_tokens=result.output_tokens,
                language=state["language"],
                analyzed_at=now,
            ),
            created_at=now,
        )
        return {"analysis": self.analyses.create(analysis)}

    # =========================================================================
    # Entry point
    # =========================================================================

    async def analyze_contact(
        self,
        contact_id: str,
        prompt_id: str | None = None,
        prompt_type: PromptType | str = PromptType.SETTER,
        include_whatsapp: bool = True,
        include_sms: bool = True,
        include_calls: bool = True,
    ) -> Analysis:
        """Run the full pipeline for a contact and return the saved analysis.

        Re-analysis is the same call with an explicit ``prompt_id`` or
        ``prompt_type``.

        Raises:
            ValidationError: If ``contact_id`` is empty
            NoActivePromptError: If no prompt can be resolved
            UpstreamError: If the CRM or the model fails
            PersistenceError: If the analysis was computed but could not be saved
        """
        if not contact_id:
            raise ValidationError("contactId is required")
        prompt_type = PromptType(prompt_type)

        initial_state: AnalysisState = {
            "contact_id": contact_id,
            "prompt_id": prompt_id,
            "prompt_type": prompt_type,
            "include_calls": include_calls,
            "include_sms": include_sms,
            "include_whatsapp": include_whatsapp,
            "prompt": None,
            "contact": None,
            "conversations_count": 0,
            "messages": [],
            "language": self.default_language,
            "timeline": [],
            "transcriptions": [],
            "failed_transcriptions": [],
            "model_input": "",
            "llm_result": None,
            "analysis": None,
            "stage": AnalysisStage.SELECT_PROMPT.value,
        }

        with tracer.start_as_current_span("analyze_contact") as span:
            span.set_attribute("openinference.span.kind", "chain")
            span.set_attribute("contact.id", contact_id)
            span.set_attribute("prompt.type", prompt_type.value)

            # Run the graph in a task that carries the current span context,
            # so the step spans nest under this one
            ctx = contextvars.copy_context()
            task = asyncio.create_task(self.graph.ainvoke(initial_state), context=ctx)
            try:
                final_state = await task
            except Exception as e:
                failed_at = getattr(e, "stage", None) or "unknown"
                logger.error(
                    "Analysis for contact %s ended in %s at %s: %s",
                    contact_id, AnalysisStage.FAILED.value, failed_at, e,
                )
                span.set_attribute("analysis.stage", AnalysisStage.FAILED.value)
                span.set_attribute("analysis.failed_stage", failed_at)
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise

            analysis = final_state["analysis"]
            span.set_attribute("analysis.stage", AnalysisStage.DONE.value)
            span.set_attribute("analysis.id", analysis.id)
            span.set_attribute("analysis.total_messages", analysis.metadata.total_messages)
            span.set_attribute("analysis.total_calls", analysis.metadata.total_calls)

        logger.info(
            "Analysis %s for contact %s %s (%d messages, %d calls, %d failed transcriptions)",
            analysis.id, contact_id, AnalysisStage.DONE.value,
            analysis.metadata.total_messages, analysis.metadata.total_calls,
            len(analysis.metadata.failed_transcriptions),
        )
        return analysis
