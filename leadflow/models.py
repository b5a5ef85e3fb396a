from __future__ import annotations

import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class WorkflowClass(str, Enum):
    """Downstream routing category derived from an option's tag pair."""
    SALES_ALERT = "sales_alert"
    OPTIMIZATION_WORKFLOW = "optimization_workflow"
    VALIDATION_PATH = "validation_path"
    DIAGNOSTIC_EDUCATION = "diagnostic_education"


class WorkflowStep(str, Enum):
    """Conversation state machine steps."""
    IDLE = "idle"
    LEAD_QUESTION = "lead_question"
    SALES_QUESTION = "sales_question"
    FOLLOW_UP_QUESTION = "follow_up_question"
    LOOP_CLOSURE = "loop_closure"
    SALES_HANDOFF_CONFIRM = "sales_handoff_confirm"
    SALES_HANDOFF_NAME = "sales_handoff_name"
    SALES_HANDOFF_EMAIL = "sales_handoff_email"
    SALES_HANDOFF_DETAILS = "sales_handoff_details"
    SALES_HANDOFF_TIMELINE = "sales_handoff_timeline"
    SALES_HANDOFF_END = "sales_handoff_end"


class ContentBlock(BaseModel):
    """Title/body block produced by segmentation; never persisted on its own."""
    title: str
    body: str


class ActionDetail(BaseModel):
    """Long-form mechanism narrative for one follow-up action."""
    label: str
    narrative: str


class AnswerOption(BaseModel):
    """Selectable answer option with its tag pair and cached workflow class."""
    label: str
    tags: List[str] = Field(default_factory=list)
    workflow_class: WorkflowClass = WorkflowClass.DIAGNOSTIC_EDUCATION
    diagnostic_answer: Optional[str] = None
    diagnostic_actions: Optional[List[str]] = None
    diagnostic_action_details: Optional[List[ActionDetail]] = None


class Question(BaseModel):
    """Lead or sales question with its option set."""
    question_text: str
    options: List[AnswerOption] = Field(default_factory=list)


class Section(BaseModel):
    """Titled content block of a crawled page plus its generated question model."""
    section_name: str
    section_summary: str = ""
    section_content: str = ""
    section_type: str = "content"
    lead_questions: List[Question] = Field(default_factory=list)
    sales_questions: List[Question] = Field(default_factory=list)


class StructuredSummary(BaseModel):
    """Per-page question bank consumed by the conversation state machine."""
    page_type: str = "other"
    business_vertical: str = "other"
    business_name: Optional[str] = None
    primary_features: List[str] = Field(default_factory=list)
    pain_points_addressed: List[str] = Field(default_factory=list)
    solutions: List[str] = Field(default_factory=list)
    target_customers: List[str] = Field(default_factory=list)
    business_outcomes: List[str] = Field(default_factory=list)
    competitive_advantages: List[str] = Field(default_factory=list)
    industry_terms: List[str] = Field(default_factory=list)
    price_points: List[str] = Field(default_factory=list)
    integrations: List[str] = Field(default_factory=list)
    use_cases: List[str] = Field(default_factory=list)
    calls_to_action: List[str] = Field(default_factory=list)
    trust_signals: List[str] = Field(default_factory=list)
    sections: List[Section] = Field(default_factory=list)
    summary_generated_at: Optional[float] = None


class SummaryRecord(BaseModel):
    """Stored summary keyed by tenant, page URL, and crawl generation."""
    record_id: str
    tenant_id: str
    url: str
    generation: int
    created_at: float
    updated_at: float
    diagnostic_generated_at: Optional[float] = None
    summary: StructuredSummary


class CollectedFields(BaseModel):
    """Contact details gathered during the sales handoff."""
    name: Optional[str] = None
    email: Optional[str] = None
    details: Optional[str] = None
    timeline: Optional[str] = None


class HistoryEntry(BaseModel):
    """Append-only audit record for one state machine transition."""
    timestamp: float = Field(default_factory=time.time)
    step: str
    section_name: Optional[str] = None
    question_text: Optional[str] = None
    option_selected: Optional[str] = None
    tags_applied: Optional[List[str]] = None
    workflow_triggered: Optional[str] = None
    input_text: Optional[str] = None


class SessionState(BaseModel):
    """Persisted per-visitor conversation state."""
    session_id: str
    current_section_name: Optional[str] = None
    step: WorkflowStep = WorkflowStep.IDLE
    follow_up_count: int = 0
    selected_lead_option: Optional[str] = None
    selected_sales_option: Optional[str] = None
    is_high_risk: bool = False
    collected_fields: CollectedFields = Field(default_factory=CollectedFields)
    history: List[HistoryEntry] = Field(default_factory=list)
    version: int = 0
    last_updated: float = Field(default_factory=time.time)


class WorkflowReply(BaseModel):
    """Structured response emitted for a single conversation turn."""
    message: str
    options: List[str] = Field(default_factory=list)
    next_step: WorkflowStep
    show_booking_affordance: bool = False


class NoStructuredResponse(BaseModel):
    """Explicit 'no structured reply' result; callers fall back to unstructured chat."""
    reason: str = ""


class AlertRecord(BaseModel):
    """Out-of-band alert raised by the conversation state machine."""
    session_id: str
    kind: str
    details: Dict[str, Any] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)


class ChatRequest(BaseModel):
    """Request payload for the conversation API."""
    session_id: str
    message: Optional[str] = None
    page_url: str
    tenant_id: str


class ChatResponse(BaseModel):
    """Response payload returned by the conversation API."""
    structured: bool
    message: str = ""
    options: List[str] = Field(default_factory=list)
    next_step: Optional[WorkflowStep] = None
    show_booking_affordance: bool = False


class EnrichRequest(BaseModel):
    """Request payload for a post-crawl enrichment run."""
    tenant_id: str
    page_url: str
    raw_text: str


class DiagnosticsRequest(BaseModel):
    """Request payload for post-crawl diagnostic generation."""
    tenant_id: str
    page_url: Optional[str] = None
    regenerate: bool = False
