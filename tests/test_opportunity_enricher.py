"""Tests for opportunity listing and enrichment."""

from datetime import datetime, timezone

import pytest

from crm_audit.errors import UpstreamError
from crm_audit.models.analysis import Analysis, PromptType
from crm_audit.models.crm import (
    Contact,
    ContactSummary,
    Opportunity,
    OpportunityPage,
    Pipeline,
    PipelineStage,
)


def _pipelines():
    return [
        Pipeline(id="p1", name="Sales", stages=[PipelineStage(id="s1", name="New"), PipelineStage(id="s2", name="Won")]),
        Pipeline(id="p2", name="Renewals", stages=[PipelineStage(id="s3", name="Open")]),
    ]


def _opportunity(opportunity_id, pipeline_id="p1", stage_id="s1", status="open", email="x@example.com",
                 phone="+100", contact_id=None):
    contact_id = contact_id or f"contact-{opportunity_id}"
    return Opportunity(
        id=opportunity_id,
        name=f"Deal {opportunity_id}",
        pipeline_id=pipeline_id,
        stage_id=stage_id,
        status=status,
        contact_id=contact_id,
        contact=ContactSummary(id=contact_id, name=f"Contact {opportunity_id}", email=email, phone=phone),
    )


def _page(*opportunities, cursor=None, total=None):
    return OpportunityPage(
        opportunities=list(opportunities),
        total=total,
        start_after=1700000000000 if cursor else None,
        start_after_id=cursor,
    )


def _save_analysis(analysis_store, contact_id):
    analysis_store.create(
        Analysis(
            id=f"a-{contact_id}",
            contact_id=contact_id,
            contact_name="x",
            prompt_id="p",
            prompt_version=1,
            prompt_type=PromptType.SETTER,
            analysis_text="done",
            created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
    )


@pytest.mark.asyncio
async def test_no_pipelines_means_no_search(opportunity_enricher, fake_crm):
    listing = await opportunity_enricher.list_opportunities()
    assert listing.opportunities == []
    assert listing.total == 0
    assert fake_crm.calls["search_opportunities"] == 0


@pytest.mark.asyncio
async def test_pages_follow_cursor_and_resolve_names(opportunity_enricher, fake_crm):
    fake_crm.pipelines = _pipelines()
    fake_crm.opportunity_pages = [
        _page(_opportunity("o1"), _opportunity("o2", stage_id="s2"), cursor="o2"),
        _page(_opportunity("o3", pipeline_id="p2", stage_id="s3")),
    ]

    listing = await opportunity_enricher.list_opportunities(limit=10)

    assert [o.id for o in listing.opportunities] == ["o1", "o2", "o3"]
    assert listing.total == 3
    assert listing.returned == 3
    assert listing.optimized is False
    assert fake_crm.search_requests[1]["start_after_id"] == "o2"
    assert listing.opportunities[1].pipeline_name == "Sales"
    assert listing.opportunities[1].stage_name == "Won"
    assert listing.opportunities[2].pipeline_name == "Renewals"


@pytest.mark.asyncio
async def test_filters_applied_client_side(opportunity_enricher, fake_crm):
    fake_crm.pipelines = _pipelines()
    fake_crm.opportunity_pages = [
        _page(_opportunity("o1"), _opportunity("o2", stage_id="s2"), cursor="o2"),
        _page(_opportunity("o3", pipeline_id="p2", stage_id="s3"), _opportunity("o4", status="lost"), cursor="o4"),
    ]

    listing = await opportunity_enricher.list_opportunities(pipeline_id="p1", stage_id="s1", status="open", limit=10)

    assert [o.id for o in listing.opportunities] == ["o1"]
    assert listing.total == 1


@pytest.mark.asyncio
async def test_status_all_disables_status_filter(opportunity_enricher, fake_crm):
    fake_crm.pipelines = _pipelines()
    fake_crm.opportunity_pages = [_page(_opportunity("o1"), _opportunity("o2", status="won"))]

    listing = await opportunity_enricher.list_opportunities(status="all")

    assert listing.total == 2


@pytest.mark.asyncio
async def test_truncates_to_limit_but_reports_total(opportunity_enricher, fake_crm):
    fake_crm.pipelines = _pipelines()
    fake_crm.opportunity_pages = [
        _page(_opportunity("o1"), _opportunity("o2"), cursor="o2"),
        _page(_opportunity("o3")),
    ]

    listing = await opportunity_enricher.list_opportunities(limit=2)

    assert listing.returned == 2
    assert listing.total == 3


@pytest.mark.asyncio
async def test_early_exit_with_pipeline_filter(opportunity_enricher, fake_crm):
    fake_crm.pipelines = _pipelines()
    fake_crm.opportunity_pages = [
        _page(_opportunity("o1"), _opportunity("o2"), cursor="o2"),
        _page(_opportunity("o3"), _opportunity("o4"), cursor="o4"),
        _page(_opportunity("o5"), _opportunity("o6"), cursor="o6"),
    ]

    listing = await opportunity_enricher.list_opportunities(pipeline_id="p1", limit=1)

    assert fake_crm.calls["search_opportunities"] == 1
    assert listing.optimized is True
    assert listing.total == 2
    assert listing.returned == 1


@pytest.mark.asyncio
async def test_stops_when_cursor_repeats(opportunity_enricher, fake_crm):
    fake_crm.pipelines = _pipelines()
    fake_crm.opportunity_pages = [
        _page(_opportunity("o1"), _opportunity("o2"), cursor="o2"),
        _page(_opportunity("o1"), _opportunity("o2"), cursor="o2"),
        _page(_opportunity("o9"), _opportunity("o10"), cursor="o10"),
    ]

    listing = await opportunity_enricher.list_opportunities()

    assert fake_crm.calls["search_opportunities"] == 2
    assert [o.id for o in listing.opportunities] == ["o1", "o2"]


@pytest.mark.asyncio
async def test_later_page_failure_keeps_collected(opportunity_enricher, fake_crm):
    fake_crm.pipelines = _pipelines()
    fake_crm.opportunity_pages = [
        _page(_opportunity("o1"), _opportunity("o2"), cursor="o2"),
        UpstreamError("HighLevel", "HTTP 500", status_code=500),
    ]

    listing = await opportunity_enricher.list_opportunities()

    assert listing.source == "search"
    assert [o.id for o in listing.opportunities] == ["o1", "o2"]
    assert listing.partial is True
    assert listing.failed_pipelines == []


@pytest.mark.asyncio
async def test_falls_back_to_pipelines_when_search_fails(opportunity_enricher, fake_crm):
    fake_crm.pipelines = _pipelines()
    fake_crm.opportunity_pages = [UpstreamError("HighLevel", "HTTP 422", status_code=422)]
    fake_crm.pipeline_opportunities = {
        "p1": [_opportunity("o1", stage_id="s2")],
        "p2": UpstreamError("HighLevel", "HTTP 500", status_code=500),
    }

    listing = await opportunity_enricher.list_opportunities()

    assert listing.source == "pipelines"
    assert [o.id for o in listing.opportunities] == ["o1"]
    assert listing.opportunities[0].stage_name == "Won"
    assert fake_crm.calls["get_pipeline_opportunities"] == 2
    assert listing.partial is False
    assert listing.failed_pipelines == [{"pipelineId": "p2", "error": "HighLevel request failed: HTTP 500"}]


@pytest.mark.asyncio
async def test_search_and_every_pipeline_failing_raises(opportunity_enricher, fake_crm):
    fake_crm.pipelines = _pipelines()
    fake_crm.opportunity_pages = [UpstreamError("HighLevel", "HTTP 500", status_code=500, raw_body="boom")]
    fake_crm.pipeline_opportunities = {
        "p1": UpstreamError("HighLevel", "HTTP 500", status_code=500),
        "p2": UpstreamError("HighLevel", "HTTP 502", status_code=502),
    }

    with pytest.raises(UpstreamError) as exc_info:
        await opportunity_enricher.list_opportunities()

    assert "all 2 pipeline fetches failed" in exc_info.value.message
    assert exc_info.value.details == {"statusCode": 500, "rawBody": "boom"}
    assert fake_crm.calls["get_pipeline_opportunities"] == 2
    assert fake_crm.calls["get_contact"] == 0


@pytest.mark.asyncio
async def test_fallback_only_reads_filtered_pipeline(opportunity_enricher, fake_crm):
    fake_crm.pipelines = _pipelines()
    fake_crm.opportunity_pages = [UpstreamError("HighLevel", "HTTP 422", status_code=422)]
    fake_crm.pipeline_opportunities = {"p2": [_opportunity("o7", pipeline_id="p2", stage_id="s3")]}

    listing = await opportunity_enricher.list_opportunities(pipeline_id="p2")

    assert [o.id for o in listing.opportunities] == ["o7"]
    assert fake_crm.calls["get_pipeline_opportunities"] == 1


@pytest.mark.asyncio
async def test_complete_contacts_are_not_fetched(opportunity_enricher, fake_crm):
    fake_crm.pipelines = _pipelines()
    fake_crm.opportunity_pages = [_page(*[_opportunity(f"o{i}") for i in range(2)], cursor="o1"),
                                  _page(*[_opportunity(f"o{i}") for i in range(2, 4)], cursor="o3"),
                                  _page(_opportunity("o4"))]

    listing = await opportunity_enricher.list_opportunities()

    assert listing.returned == 5
    assert fake_crm.calls["get_contact"] == 0


@pytest.mark.asyncio
async def test_incomplete_contact_is_resolved(opportunity_enricher, fake_crm):
    fake_crm.pipelines = _pipelines()
    fake_crm.opportunity_pages = [_page(_opportunity("o1", email=None, contact_id="c1"))]
    fake_crm.contacts["c1"] = Contact(id="c1", name="Ana García", email="ana@example.com", phone="+34600000000")

    listing = await opportunity_enricher.list_opportunities()

    contact = listing.opportunities[0].contact
    assert fake_crm.calls["get_contact"] == 1
    assert contact.name == "Ana García"
    assert contact.email == "ana@example.com"


@pytest.mark.asyncio
async def test_enrichment_failure_substitutes_unknown(opportunity_enricher, fake_crm, analysis_store):
    fake_crm.pipelines = _pipelines()
    fake_crm.opportunity_pages = [
        _page(_opportunity("o1", phone=None, contact_id="ghost"), _opportunity("o2", contact_id="c2"))
    ]
    _save_analysis(analysis_store, "ghost")
    _save_analysis(analysis_store, "c2")

    listing = await opportunity_enricher.list_opportunities()

    failed, ok = listing.opportunities
    assert failed.contact.name == "Unknown"
    assert failed.has_analysis is False
    assert ok.contact.name == "Contact o2"
    assert ok.has_analysis is True


def test_batch_size_is_clamped(fake_crm, analysis_store):
    from crm_audit.engines import OpportunityEnricher
    assert OpportunityEnricher(fake_crm, analysis_store, batch_size=50).batch_size == 5
    assert OpportunityEnricher(fake_crm, analysis_store, batch_size=1).batch_size == 3
