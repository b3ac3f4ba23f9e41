"""Shared test fixtures and configuration."""

import os
from collections import Counter
from datetime import datetime, timedelta, timezone

import pytest


# Set test environment variables BEFORE any application imports
os.environ.setdefault("ANTHROPIC_API_KEY", "test-key-123")
os.environ.setdefault("OPENAI_API_KEY", "test-openai-key")
os.environ.setdefault("HIGHLEVEL_API_KEY", "test-highlevel-key")
os.environ.setdefault("HIGHLEVEL_LOCATION_ID", "loc-123")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["DISPLAY_TIMEZONE"] = "UTC"
os.environ["ARIZE_API_KEY"] = ""
os.environ["ARIZE_SPACE_ID"] = ""

BASE_TIME = datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True, scope="session")
def clear_settings_cache():
    """Clear the lru_cache on get_settings to prevent stale config."""
    from crm_audit.config import get_settings
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# =============================================================================
# Stores
# =============================================================================


@pytest.fixture
def database():
    """A fresh in-memory database per test."""
    from crm_audit.database import Database
    db = Database("sqlite://", echo=False)
    yield db
    db.dispose()


@pytest.fixture
def prompt_store(database):
    from crm_audit.stores import PromptStore
    return PromptStore(database)


@pytest.fixture
def analysis_store(database):
    from crm_audit.stores import AnalysisStore
    return AnalysisStore(database)


@pytest.fixture
def contact_cache(database):
    from crm_audit.stores import ContactCache
    return ContactCache(database)


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def make_message():
    """Factory fixture to create Message objects at BASE_TIME + minutes."""
    from crm_audit.models.crm import Message, MessageType

    def _make(message_id, message_type=MessageType.SMS, body="hello", minutes=0, direction="inbound",
              conversation_id="conv-1", timestamp=...):
        if timestamp is ...:
            timestamp = BASE_TIME + timedelta(minutes=minutes)
        return Message(
            id=message_id,
            conversation_id=conversation_id,
            message_type=message_type,
            raw_type=f"TYPE_{MessageType(message_type).value}",
            body=None if message_type == MessageType.CALL else body,
            direction=direction,
            timestamp=timestamp,
        )

    return _make


@pytest.fixture
def sample_contact():
    from crm_audit.models.crm import Contact
    return Contact(
        id="c1",
        first_name="Ana",
        last_name="García",
        name="Ana García",
        email="ana@example.com",
        phone="+34600000000",
        tags=["lead", "webinar"],
        source="facebook",
        custom_fields={"budget": "5000", "city": "Madrid"},
    )


# =============================================================================
# Fakes for upstream services
# =============================================================================


class FakeCRM:
    """In-memory stand-in for HighLevelClient that counts every call."""

    SERVICE = "HighLevel"

    def __init__(self):
        self.contacts = {}
        self.conversations = {}
        self.messages = {}
        self.recordings = {}
        self.pipelines = []
        self.opportunity_pages = []
        self.pipeline_opportunities = {}
        self.opportunities = {}
        self.stored_transcriptions = {}
        self.locations = {}
        self.users = {}
        self.calls = Counter()
        self.search_requests = []

    @staticmethod
    def _not_found(resource, resource_id):
        from crm_audit.errors import UpstreamError
        return UpstreamError("HighLevel", f"HTTP 404 on GET /{resource}/{resource_id}", status_code=404,
                             raw_body='{"message":"Not found"}')

    @staticmethod
    def _resolve(value):
        if isinstance(value, Exception):
            raise value
        return value

    async def search_contacts(self, limit=20, query=None):
        self.calls["search_contacts"] += 1
        return list(self.contacts.values())[:limit]

    async def get_contact(self, contact_id):
        self.calls["get_contact"] += 1
        if contact_id not in self.contacts:
            raise self._not_found("contacts", contact_id)
        return self._resolve(self.contacts[contact_id])

    async def list_conversations(self, contact_id, limit=20):
        self.calls["list_conversations"] += 1
        return self._resolve(self.conversations.get(contact_id, []))[:limit]

    async def list_messages(self, conversation_id, max_pages=None):
        self.calls["list_messages"] += 1
        return self._resolve(self.messages.get(conversation_id, []))

    async def download_recording(self, message_id):
        self.calls["download_recording"] += 1
        if message_id not in self.recordings:
            raise self._not_found("recording", message_id)
        return self._resolve(self.recordings[message_id])

    async def get_message_transcription(self, message_id):
        self.calls["get_message_transcription"] += 1
        if message_id not in self.stored_transcriptions:
            raise self._not_found("transcription", message_id)
        return self.stored_transcriptions[message_id]

    async def get_pipelines(self):
        self.calls["get_pipelines"] += 1
        return self._resolve(self.pipelines)

    async def search_opportunities(self, pipeline_id=None, status=None, limit=100, start_after=None,
                                   start_after_id=None):
        from crm_audit.models.crm import OpportunityPage
        self.calls["search_opportunities"] += 1
        self.search_requests.append({"start_after": start_after, "start_after_id": start_after_id})
        index = self.calls["search_opportunities"] - 1
        if index >= len(self.opportunity_pages):
            return OpportunityPage()
        return self._resolve(self.opportunity_pages[index])

    async def get_pipeline_opportunities(self, pipeline_id):
        self.calls["get_pipeline_opportunities"] += 1
        return self._resolve(self.pipeline_opportunities.get(pipeline_id, []))

    async def get_opportunity(self, opportunity_id):
        self.calls["get_opportunity"] += 1
        if opportunity_id not in self.opportunities:
            raise self._not_found("opportunities", opportunity_id)
        return self.opportunities[opportunity_id]

    def recording_url(self, message_id):
        return f"https://crm.test/conversations/messages/{message_id}/locations/loc-123/recording"

    async def search_locations(self, limit=20):
        self.calls["search_locations"] += 1
        return list(self.locations.values())[:limit]

    async def get_location(self, location_id=None):
        self.calls["get_location"] += 1
        location_id = location_id or "loc-123"
        if location_id not in self.locations:
            raise self._not_found("locations", location_id)
        return self.locations[location_id]

    async def list_users(self, limit=20):
        self.calls["list_users"] += 1
        return list(self.users.values())[:limit]

    async def get_user(self, user_id):
        self.calls["get_user"] += 1
        if user_id not in self.users:
            raise self._not_found("users", user_id)
        return self.users[user_id]


class FakeTranscriptionClient:
    """Returns ``texts[audio]`` (or the decoded audio) as the transcript."""

    SERVICE = "OpenAI"

    def __init__(self):
        self.texts = {}
        self.failures = {}
        self.calls = []

    async def transcribe(self, audio, language="es", filename="recording.mp3"):
        from crm_audit.models.analysis import TranscriptionResult
        self.calls.append({"audio": audio, "language": language})
        if audio in self.failures:
            raise self.failures[audio]
        return TranscriptionResult(
            text=self.texts.get(audio, audio.decode("utf-8")),
            language=language,
            duration=42.0,
        )


class FakeLLM:
    """Records every prompt and answers with a fixed text."""

    def __init__(self, text="Resumen: el lead está interesado."):
        self.text = text
        self.error = None
        self.requests = []

    async def generate(self, prompt, model=None, system=None, tools=None, tool_executor=None):
        from crm_audit.clients.llm_client import LLMResult
        self.requests.append({"prompt": prompt, "model": model, "tools": tools, "tool_executor": tool_executor})
        if self.error is not None:
            raise self.error
        return LLMResult(
            text=self.text,
            model=model or "claude-test",
            input_tokens=120,
            output_tokens=45,
            stop_reason="end_turn",
        )


@pytest.fixture
def fake_crm():
    return FakeCRM()


@pytest.fixture
def fake_transcription():
    return FakeTranscriptionClient()


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def call_transcriber(fake_crm, fake_transcription):
    from crm_audit.engines import CallTranscriber
    return CallTranscriber(fake_crm, fake_transcription, concurrency=2)


@pytest.fixture
def orchestrator(prompt_store, analysis_store, contact_cache, fake_crm, call_transcriber, fake_llm):
    from crm_audit.agents import AnalysisOrchestrator
    from crm_audit.analyzers import ContextAssembler
    return AnalysisOrchestrator(
        prompt_store=prompt_store,
        analysis_store=analysis_store,
        contact_cache=contact_cache,
        crm_client=fake_crm,
        call_transcriber=call_transcriber,
        llm_client=fake_llm,
        assembler=ContextAssembler("UTC"),
    )


@pytest.fixture
def opportunity_enricher(fake_crm, analysis_store):
    from crm_audit.engines import OpportunityEnricher
    return OpportunityEnricher(fake_crm, analysis_store, page_size=2, max_pages=10, batch_size=3)


@pytest.fixture
def seeded_contact(fake_crm, sample_contact, make_message):
    """Contact c1 with one SMS and one call (transcribed as "hola")."""
    from crm_audit.models.crm import Conversation, MessageType

    fake_crm.contacts["c1"] = sample_contact
    fake_crm.conversations["c1"] = [Conversation(id="conv-1", contact_id="c1")]
    fake_crm.messages["conv-1"] = [
        make_message("m-call", MessageType.CALL, minutes=5),
        make_message("m-sms", MessageType.SMS, body="Hola, me interesa", minutes=1),
    ]
    fake_crm.recordings["m-call"] = b"hola"
    return sample_contact


# =============================================================================
# HTTP
# =============================================================================


@pytest.fixture
def api_client(monkeypatch, prompt_store, analysis_store, contact_cache, fake_crm, call_transcriber,
               orchestrator, opportunity_enricher):
    """A TestClient whose services are the in-memory stores and fakes above."""
    import main as main_module
    from fastapi.testclient import TestClient

    monkeypatch.setattr(main_module, "prompt_store", prompt_store)
    monkeypatch.setattr(main_module, "analysis_store", analysis_store)
    monkeypatch.setattr(main_module, "contact_cache", contact_cache)
    monkeypatch.setattr(main_module, "crm_client", fake_crm)
    monkeypatch.setattr(main_module, "call_transcriber", call_transcriber)
    monkeypatch.setattr(main_module, "orchestrator", orchestrator)
    monkeypatch.setattr(main_module, "opportunity_enricher", opportunity_enricher)
    return TestClient(main_module.app, raise_server_exceptions=False)
