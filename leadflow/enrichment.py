"""Post-crawl enrichment: raw page text -> tagged, workflow-routed structured summary.

Pipeline data contract (fields passed across steps on EnrichmentContext):
    - blocks: segmented ContentBlocks for this crawl.
    - previous: newest stored summary for the same tenant/page, if any.
    - page_type/business_vertical/business_name: page metadata.
    - insights: business intelligence lists (features, pain points, integrations, ...).
    - sections: reconciled, backfilled, tagged sections.
    - record: the newly stored SummaryRecord.

Step contracts:
    Segment:
        Reads raw_text; sets blocks (never empty for non-blank text).
    Load Previous:
        Finds the previous generation so earlier questions survive a re-crawl.
    Page Metadata:
        One generation call; falls back to the previous metadata, then to "other".
        Empty or malformed insight lists keep the previous generation's values.
    Reconcile Sections:
        Positional realignment, question backfill, tagging, routing, structure enforcement.
    Index Content:
        Chunks and embeds section bodies into the vector index for diagnostic retrieval.
    Persist:
        Stores the summary as a new crawl generation.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .knowledge.vector_index import VectorIndex, chunk_text
from .models import ContentBlock, Section, StructuredSummary, SummaryRecord
from .normalizer import SummaryNormalizer
from .pipeline_runtime import PipelineRunner, PipelineStep
from .prompt_loader import render_prompt
from .segmenter import DEFAULT_MAX_BLOCKS, segment_text
from .summary_store import SummaryStore

logger = logging.getLogger("leadflow.enrichment")

METADATA_PREVIEW_CHARS = 12000
PAGE_TYPES = {"homepage", "pricing", "features", "about", "contact", "blog", "product", "service", "other"}
# Well below the segmenter default so short sections stay separate blocks.
ENRICHMENT_MIN_CHARS = 20
MAX_INSIGHT_ITEMS = 10
INSIGHT_FIELDS: Dict[str, str] = {
    "primaryFeatures": "primary_features",
    "painPointsAddressed": "pain_points_addressed",
    "solutions": "solutions",
    "targetCustomers": "target_customers",
    "businessOutcomes": "business_outcomes",
    "competitiveAdvantages": "competitive_advantages",
    "industryTerms": "industry_terms",
    "pricePoints": "price_points",
    "integrations": "integrations",
    "useCases": "use_cases",
    "callsToAction": "calls_to_action",
    "trustSignals": "trust_signals",
}


def clean_insight_list(raw: Any) -> List[str]:
    """Keep distinct non-empty strings from a model-supplied list, in order."""
    if not isinstance(raw, list):
        return []
    items: List[str] = []
    seen: set = set()
    for item in raw:
        if not isinstance(item, str):
            continue
        value = " ".join(item.split())
        if not value or value.lower() in seen:
            continue
        seen.add(value.lower())
        items.append(value)
    return items[:MAX_INSIGHT_ITEMS]


@dataclass
class EnrichmentContext:
    """Mutable state shared by the enrichment steps for one page."""
    tenant_id: str
    page_url: str
    raw_text: str
    blocks: List[ContentBlock] = field(default_factory=list)
    previous: Optional[SummaryRecord] = None
    page_type: str = "other"
    business_vertical: str = "other"
    business_name: Optional[str] = None
    insights: Dict[str, List[str]] = field(default_factory=dict)
    sections: List[Section] = field(default_factory=list)
    indexed_chunks: int = 0
    record: Optional[SummaryRecord] = None


class SummaryEnricher:
    """Run the enrichment pipeline for one crawled page."""

    def __init__(
        self,
        client: Any,
        prompts_dir: Path,
        summary_store: SummaryStore,
        normalizer: SummaryNormalizer,
        vector_index: Optional[VectorIndex] = None,
        min_chars: int = ENRICHMENT_MIN_CHARS,
        max_sections: int = DEFAULT_MAX_BLOCKS,
    ) -> None:
        self._client = client
        self._prompts_dir = prompts_dir
        self._summary_store = summary_store
        self._normalizer = normalizer
        self._vector_index = vector_index
        self._min_chars = min_chars
        self._max_sections = max_sections
        self._runner = PipelineRunner(
            steps=[
                PipelineStep("segment", self._step_segment),
                PipelineStep("load_previous", self._step_load_previous),
                PipelineStep("page_metadata", self._step_page_metadata, skip_if=lambda c: not c.blocks),
                PipelineStep("reconcile_sections", self._step_reconcile_sections, skip_if=lambda c: not c.blocks),
                PipelineStep(
                    "index_content",
                    self._step_index_content,
                    skip_if=lambda c: self._vector_index is None or not c.sections,
                ),
                PipelineStep("persist", self._step_persist, always_run=True),
            ]
        )

    def enrich_summary(self, tenant_id: str, page_url: str, raw_text: str) -> StructuredSummary:
        """Purpose: Turn one crawl of a page into a stored StructuredSummary.
        Inputs/Outputs: Inputs are tenant id, page URL and marker-delimited page text;
            returns the stored summary.
        Side Effects / State: LLM calls, vector index writes, one new summary record.
        Dependencies: PipelineRunner over the step methods below.
        Failure Modes: Generation failures degrade to filler content; storage errors propagate.
        If Removed: The conversation state machine has no question bank.
        Testing Notes: Two-section text yields two sections with 2 lead + 2 sales questions each.
        """
        context = EnrichmentContext(tenant_id=tenant_id, page_url=page_url, raw_text=raw_text)
        logger.info(
            "tenant=%s url=%s step=enrich status=start chars=%s steps=%s",
            tenant_id,
            page_url,
            len(raw_text or ""),
            ",".join(self._runner.step_names),
        )
        self._runner.run(context)
        return context.record.summary

    def _step_segment(self, context: EnrichmentContext) -> None:
        context.blocks = segment_text(context.raw_text, min_chars=self._min_chars, max_blocks=self._max_sections)
        logger.info("tenant=%s url=%s blocks=%s", context.tenant_id, context.page_url, len(context.blocks))

    def _step_load_previous(self, context: EnrichmentContext) -> None:
        context.previous = self._summary_store.latest(context.tenant_id, context.page_url)
        if context.previous:
            context.page_type = context.previous.summary.page_type
            context.business_vertical = context.previous.summary.business_vertical
            context.business_name = context.previous.summary.business_name
            context.insights = {
                name: list(getattr(context.previous.summary, name)) for name in INSIGHT_FIELDS.values()
            }

    def _step_page_metadata(self, context: EnrichmentContext) -> None:
        prompt = render_prompt(
            self._prompts_dir,
            "page_metadata.txt",
            {
                "SECTION_TITLES": ", ".join(block.title for block in context.blocks),
                "CONTENT": (context.raw_text or "")[:METADATA_PREVIEW_CHARS],
            },
        )
        try:
            data = self._client.generate_json(prompt, label="page_metadata", temperature=0.2)
        except Exception:
            logger.exception("tenant=%s url=%s step=page_metadata status=failed", context.tenant_id, context.page_url)
            return
        page_type = str(data.get("pageType") or "").strip().lower()
        if page_type in PAGE_TYPES:
            context.page_type = page_type
        vertical = str(data.get("businessVertical") or "").strip().lower()
        if vertical:
            context.business_vertical = vertical
        name = data.get("businessName")
        if isinstance(name, str) and name.strip():
            context.business_name = name.strip()
        for key, field_name in INSIGHT_FIELDS.items():
            items = clean_insight_list(data.get(key))
            if items:
                context.insights[field_name] = items

    def _step_reconcile_sections(self, context: EnrichmentContext) -> None:
        existing = list(context.previous.summary.sections) if context.previous else []
        context.sections = self._normalizer.reconcile(existing, context.blocks)

    def _step_index_content(self, context: EnrichmentContext) -> None:
        # Indexing failures are logged and enrichment continues.
        chunks: List[str] = []
        for section in context.sections:
            chunks.extend(chunk_text(section.section_content))
        try:
            self._vector_index.delete_page(context.tenant_id, context.page_url)
            embeddings = [self._client.embed_text(chunk) for chunk in chunks]
            context.indexed_chunks = self._vector_index.add_chunks(
                context.tenant_id, context.page_url, chunks, embeddings
            )
        except Exception:
            logger.exception("tenant=%s url=%s step=index_content status=failed", context.tenant_id, context.page_url)

    def _step_persist(self, context: EnrichmentContext) -> None:
        summary = StructuredSummary(
            page_type=context.page_type,
            business_vertical=context.business_vertical,
            business_name=context.business_name,
            sections=context.sections,
            **context.insights,
            summary_generated_at=time.time(),
        )
        context.record = self._summary_store.insert(context.tenant_id, context.page_url, summary)
        logger.info(
            "tenant=%s url=%s step=persist generation=%s sections=%s",
            context.tenant_id,
            context.page_url,
            context.record.generation,
            len(summary.sections),
        )
