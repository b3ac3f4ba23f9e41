"""Opportunity enricher - lists opportunities and attaches contact and analysis details.

Upstream filtering by pipeline and stage is unreliable, so results are paged
in and filtered here. When a pipeline filter is set, paging stops once
``2 * limit`` matches are collected; ``total`` can then be an under-count,
which the listing reports through ``optimized``.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from ..clients.highlevel_client import HighLevelClient
from ..config import get_settings
from ..errors import CRMAuditError, UpstreamError
from ..models.crm import ContactSummary, Opportunity, Pipeline
from ..stores.analyses import AnalysisStore

logger = logging.getLogger(__name__)

MIN_BATCH_SIZE = 3
MAX_BATCH_SIZE = 5


@dataclass
class OpportunityListing:
    """Result of one listing request."""

    opportunities: list[Opportunity] = field(default_factory=list)
    total: int = 0
    optimized: bool = False
    source: str = "search"
    # Set when search paging stopped on an upstream error
    partial: bool = False
    failed_pipelines: list[dict] = field(default_factory=list)

    @property
    def returned(self) -> int:
        return len(self.opportunities)


class OpportunityEnricher:
    """Pages, filters and enriches opportunities for the dashboard."""

    def __init__(
        self,
        crm_client: HighLevelClient,
        analysis_store: AnalysisStore,
        page_size: int | None = None,
        max_pages: int | None = None,
        batch_size: int | None = None,
    ):
        settings = get_settings()
        self.crm = crm_client
        self.analyses = analysis_store
        self.page_size = page_size or settings.opportunity_page_size
        self.max_pages = max_pages or settings.opportunity_max_pages
        self.batch_size = min(max(batch_size or settings.enrichment_batch_size, MIN_BATCH_SIZE), MAX_BATCH_SIZE)

    async def list_opportunities(
        self,
        pipeline_id: str | None = None,
        stage_id: str | None = None,
        status: str | None = None,
        limit: int = 100,
    ) -> OpportunityListing:
        """List up to ``limit`` enriched opportunities matching the filters.

        Raises:
            UpstreamError: If the pipeline list cannot be fetched, or if the
                search and every fallback pipeline fetch fail
        """
        limit = max(limit, 0)
        status = None if status in (None, "", "all") else status

        pipelines = await self.crm.get_pipelines()
        if not pipelines:
            logger.info("No pipelines configured, nothing to list")
            return OpportunityListing()

        def matches(opportunity: Opportunity) -> bool:
            if pipeline_id and opportunity.pipeline_id != pipeline_id:
                return False
            if stage_id and opportunity.stage_id != stage_id:
                return False
            if status and opportunity.status != status:
                return False
            return True

        failed_pipelines: list[dict] = []
        try:
            collected, optimized, partial = await self._search_all(pipeline_id, status, limit, matches)
            source = "search"
        except CRMAuditError as e:
            logger.warning("Opportunity search failed (%s), falling back to per-pipeline fetch", e)
            targets = [p for p in pipelines if not pipeline_id or p.id == pipeline_id]
            collected, failed_pipelines = await self._fetch_by_pipeline(targets)
            if targets and len(failed_pipelines) == len(targets):
                raise UpstreamError(
                    "HighLevel",
                    f"opportunity search and all {len(targets)} pipeline fetches failed",
                    status_code=getattr(e, "upstream_status", None),
                    raw_body=getattr(e, "raw_body", None),
                ) from e
            optimized = False
            partial = False
            source = "pipelines"

        filtered = [opportunity for opportunity in collected if matches(opportunity)]
        total = len(filtered)
        selected = filtered[:limit]

        self._resolve_names(selected, pipelines)
        enriched = await self._enrich(selected)

        logger.info(
            "Listed %d of %d opportunities (source=%s, optimized=%s, partial=%s, failed_pipelines=%d)",
            len(enriched), total, source, optimized, partial, len(failed_pipelines),
        )
        return OpportunityListing(
            opportunities=enriched,
            total=total,
            optimized=optimized,
            source=source,
            partial=partial,
            failed_pipelines=failed_pipelines,
        )

    async def _search_all(self, pipeline_id, status, limit, matches) -> tuple[list[Opportunity], bool, bool]:
        """Page through the search endpoint.

        Returns ``(collected, optimized, partial)``. A failure on the first page
        propagates so the caller can fall back; a failure on a later page keeps
        what has been collected so far and marks the result partial.
        """
        collected: list[Opportunity] = []
        seen: set[str] = set()
        matched = 0
        start_after = None
        start_after_id = None

        for page_number in range(self.max_pages):
            try:
                page = await self.crm.search_opportunities(
                    pipeline_id=pipeline_id,
                    status=status,
                    limit=self.page_size,
                    start_after=start_after,
                    start_after_id=start_after_id,
                )
            except CRMAuditError as e:
                if page_number == 0:
                    raise
                logger.warning("Opportunity search stopped at page %d: %s", page_number + 1, e)
                return collected, False, True

            for opportunity in page.opportunities:
                if opportunity.id in seen:
                    continue
                seen.add(opportunity.id)
                collected.append(opportunity)
                if matches(opportunity):
                    matched += 1

            if pipeline_id and matched >= 2 * limit:
                return collected, True, False
            if len(page.opportunities) < self.page_size:
                break
            if page.total is not None and len(collected) >= page.total:
                break
            if page.start_after_id is None or page.start_after_id == start_after_id:
                break
            start_after = page.start_after
            start_after_id = page.start_after_id

        return collected, False, False

    async def _fetch_by_pipeline(self, targets: list[Pipeline]) -> tuple[list[Opportunity], list[dict]]:
        """Fallback: read each pipeline's stage-grouped opportunities, recording failures."""
        failed: list[dict] = []
        collected: list[Opportunity] = []
        seen: set[str] = set()
        for pipeline in targets:
            try:
                opportunities = await self.crm.get_pipeline_opportunities(pipeline.id)
            except CRMAuditError as e:
                logger.warning("Skipping pipeline %s: %s", pipeline.id, e)
                failed.append({"pipelineId": pipeline.id, "error": e.message})
                continue
            for opportunity in opportunities:
                if opportunity.id not in seen:
                    seen.add(opportunity.id)
                    collected.append(opportunity)
        return collected, failed

    @staticmethod
    def _resolve_names(opportunities: list[Opportunity], pipelines: list[Pipeline]) -> None:
        by_id = {pipeline.id: pipeline for pipeline in pipelines}
        for opportunity in opportunities:
            pipeline = by_id.get(opportunity.pipeline_id)
            if pipeline is None:
                continue
            opportunity.pipeline_name = pipeline.name
            opportunity.stage_name = pipeline.stage_name(opportunity.stage_id) or opportunity.stage_name

    async def _enrich(self, opportunities: list[Opportunity]) -> list[Opportunity]:
        enriched: list[Opportunity] = []
        for start in range(0, len(opportunities), self.batch_size):
            batch = opportunities[start:start + self.batch_size]
            enriched.extend(await asyncio.gather(*(self._enrich_one(o) for o in batch)))
        return enriched

    async def _enrich_one(self, opportunity: Opportunity) -> Opportunity:
        contact_id = opportunity.contact_id or opportunity.contact.id
        try:
            summary = opportunity.contact
            if contact_id and not summary.is_complete:
                contact = await self.crm.get_contact(contact_id)
                summary = ContactSummary(
                    id=contact.id or contact_id,
                    name=contact.name,
                    email=contact.email or summary.email,
                    phone=contact.phone or summary.phone,
                    company_name=contact.company_name or summary.company_name,
                    tags=contact.tags or summary.tags,
                )
            has_analysis = self.analyses.has_analysis(contact_id) if contact_id else False
        except Exception as e:
            logger.warning("Enrichment failed for opportunity %s: %s", opportunity.id, e)
            summary = ContactSummary(id=contact_id, name="Unknown")
            has_analysis = False

        return opportunity.model_copy(update={"contact": summary, "has_analysis": has_analysis})
