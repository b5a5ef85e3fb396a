from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException

from .alert_log import AlertLog
from .config import load_settings
from .diagnostics import DiagnosticGenerator
from .enrichment import SummaryEnricher
from .gemini_client import GeminiClient
from .knowledge.vector_index import VectorIndex
from .models import (
    ChatRequest,
    ChatResponse,
    DiagnosticsRequest,
    EnrichRequest,
    NoStructuredResponse,
    SessionState,
    StructuredSummary,
    SummaryRecord,
)
from .normalizer import SummaryNormalizer
from .retry import RetryPolicy
from .session_store import SessionStore
from .summary_store import SummaryStore
from .tag_classifier import TagClassifier
from .workflow import ConversationStateMachine

BASE_DIR = Path(__file__).resolve().parent

log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

logging.getLogger("leadflow").setLevel(log_level)

ENV_PATH = BASE_DIR / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=True)
else:
    load_dotenv()

app = FastAPI(title="Leadflow Qualification Engine")

settings = load_settings()
settings.data_dir.mkdir(parents=True, exist_ok=True)
summary_store = SummaryStore(settings.data_dir / "summaries.json")
session_store = SessionStore(settings.data_dir / "sessions.json")
alert_log = AlertLog(settings.data_dir / "alerts.json")
vector_index = VectorIndex(settings.chroma_path)

gemini = GeminiClient(settings)
classifier = TagClassifier(
    gemini,
    settings.prompts_dir,
    retry_policy=RetryPolicy(retries=settings.classifier_retries, base_delay=settings.retry_base_delay),
)
normalizer = SummaryNormalizer(
    gemini, settings.prompts_dir, classifier, section_delay_sec=settings.section_delay_sec
)
enricher = SummaryEnricher(
    gemini,
    settings.prompts_dir,
    summary_store,
    normalizer,
    vector_index=vector_index,
    min_chars=settings.section_min_chars,
    max_sections=settings.max_sections,
)
diagnostics = DiagnosticGenerator(
    gemini,
    settings.prompts_dir,
    summary_store,
    vector_index=vector_index,
    batch_size=settings.diagnostic_batch_size,
    top_k=settings.diagnostic_context_top_k,
)
state_machine = ConversationStateMachine(
    summary_store, session_store, alert_log, session_ttl_sec=settings.session_ttl_sec
)


@app.post("/api/chat", response_model=ChatResponse)
def chat(request: ChatRequest) -> ChatResponse:
    """Purpose: Advance the visitor's guided conversation by one message.
    Inputs/Outputs: Input is ChatRequest; output is ChatResponse (structured=false means fall back).
    Side Effects / State: Updates the session record; may dispatch alerts.
    Dependencies: Uses ConversationStateMachine.
    Failure Modes: Storage exceptions propagate as 500 errors.
    If Removed: The widget cannot run the qualification flow.
    Testing Notes: First call for a new session returns the first lead question.
    """
    # Map the turn result onto the wire response.
    result = state_machine.advance_conversation(
        request.session_id, request.message, request.page_url, request.tenant_id
    )
    if isinstance(result, NoStructuredResponse):
        return ChatResponse(structured=False)
    return ChatResponse(
        structured=True,
        message=result.message,
        options=result.options,
        next_step=result.next_step,
        show_booking_affordance=result.show_booking_affordance,
    )


@app.post("/api/enrich", response_model=StructuredSummary)
def enrich(request: EnrichRequest) -> StructuredSummary:
    """Run post-crawl enrichment for one page and return the stored summary."""
    return enricher.enrich_summary(request.tenant_id, request.page_url, request.raw_text)


@app.post("/api/diagnostics")
def generate_diagnostics(request: DiagnosticsRequest) -> dict:
    """Generate diagnostic content for a tenant, optionally limited to one page."""
    updated = diagnostics.generate_diagnostic_content(
        request.tenant_id, page_url_filter=request.page_url, regenerate=request.regenerate
    )
    return {"tenant_id": request.tenant_id, "summaries_updated": updated}


@app.get("/api/sessions/{session_id}", response_model=SessionState)
def get_session(session_id: str) -> SessionState:
    """Purpose: Return the stored conversation state for a session.
    Inputs/Outputs: Input is session_id; output is the SessionState.
    Side Effects / State: None.
    Dependencies: Uses SessionStore.list_sessions.
    Failure Modes: Unknown session returns 404.
    If Removed: Operators cannot inspect a visitor's history.
    Testing Notes: Request a known session and verify step and history.
    """
    # Only report sessions that have actually been stored.
    for state in session_store.list_sessions():
        if state.session_id == session_id:
            return state
    raise HTTPException(status_code=404, detail="session not found")


@app.get("/api/summaries", response_model=List[SummaryRecord])
def list_summaries(tenant_id: str, page_url: Optional[str] = None) -> List[SummaryRecord]:
    """Return every stored summary generation for a tenant, optionally for one page."""
    return summary_store.find_by_tenant(tenant_id, page_url)
