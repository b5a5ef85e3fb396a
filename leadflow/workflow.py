from __future__ import annotations

"""Per-session conversation state machine: lead -> sales -> diagnostic follow-up -> handoff."""

import logging
import re
import time
from typing import Callable, Dict, List, Optional, Sequence, Union

from .alert_log import AlertLog
from .models import (
    AnswerOption,
    HistoryEntry,
    NoStructuredResponse,
    Question,
    Section,
    SessionState,
    StructuredSummary,
    WorkflowClass,
    WorkflowReply,
    WorkflowStep,
)
from .session_store import SessionStore
from .summary_store import SummaryStore
from .taxonomy import is_high_risk, route_workflow

logger = logging.getLogger("leadflow.workflow")

TurnResult = Union[WorkflowReply, NoStructuredResponse]

MAX_FOLLOW_UPS = 2
LEAD_REWORDINGS = ("Just to check - {question}", "Quick nudge: {question}")
SALES_REWORDINGS = ("Following up: {question}", "Just checking: {question}")
SALES_INTENT_KEYWORDS = ("sales", "talk", "demo", "call")
AFFIRMATIVE_KEYWORDS = ("yes", "sure", "talk", "ok", "sales")
NEGATION_WORDS = ("no", "not", "never", "dont", "don't")

EDUCATIONAL_CLOSING = "Thanks for sharing. Based on that, you might find our resources helpful."
NO_SALES_QUESTION = "Could you tell me a bit more about what you're looking for?"
FOLLOW_UP_PROMPT = "Which of these would you like to explore next?"
DEFAULT_FOLLOW_UP_OPTIONS = ["Yes", "No"]
FALLBACK_DIAGNOSTICS: Dict[WorkflowClass, str] = {
    WorkflowClass.SALES_ALERT: (
        "That sounds like a situation where waiting carries a real cost. "
        "Problems like this tend to compound, so it is worth addressing early."
    ),
    WorkflowClass.OPTIMIZATION_WORKFLOW: (
        "That kind of process friction usually shows up as lost time and missed opportunities. "
        "Automating the repetitive parts is often the quickest win."
    ),
    WorkflowClass.VALIDATION_PATH: (
        "It sounds like you already have a solid foundation. "
        "The next step is usually scaling what works without adding overhead."
    ),
    WorkflowClass.DIAGNOSTIC_EDUCATION: (
        "Having clear visibility here makes every later decision easier. "
        "Knowing where things stand is the first step to improving them."
    ),
}
CLOSURE_SCRIPT = "Is there anything else you'd like to know, or would you like to talk to our team?"
LOOP_CLOSURE_OPTIONS = ["Talk to Sales", "Restart"]
SALES_OFFER = "Given your requirements, I'd recommend speaking with our team."
SALES_OFFER_OPTIONS = ["Talk to Sales", "No thanks"]
ASK_NAME = "Great! Let's get you connected. What is your name?"
HANDOFF_DECLINED = "No problem. Let me know if you have any other questions!"
ASK_EMAIL = "Nice to meet you, {name}. What is the best email address to reach you at?"
ASK_DETAILS = "Thanks. Briefly, could you tell me about your main use case or team size?"
ASK_TIMELINE = "Got it. Finally, when are you looking to get started?"
TIMELINE_OPTIONS = ["Immediately", "1-3 months", "Just researching"]
HANDOFF_COMPLETE = (
    "Perfect. I've sent your details to our team. You can also book a time directly below if you prefer."
)


def match_option(message: str, labels: Sequence[str]) -> Optional[int]:
    """Index of the first label matching the reply by case-insensitive substring, either direction."""
    reply = (message or "").strip().lower()
    if not reply:
        return None
    for index, label in enumerate(labels):
        candidate = (label or "").strip().lower()
        if candidate and (candidate in reply or reply in candidate):
            return index
    return None


def has_keyword(message: str, keywords: Sequence[str]) -> bool:
    """True when a word of the reply starts with one of the keywords and is not negated.

    A keyword directly after "no", "not", "never" or "don't" does not count.
    """
    words = re.findall(r"[a-z']+", (message or "").lower().replace("\u2019", "'"))
    for index, word in enumerate(words):
        if not any(word.startswith(keyword) for keyword in keywords):
            continue
        if index and words[index - 1] in NEGATION_WORDS:
            continue
        return True
    return False


class ConversationStateMachine:
    """Advance one visitor's guided conversation by exactly one message per call."""

    def __init__(
        self,
        summary_store: SummaryStore,
        session_store: SessionStore,
        alert_log: AlertLog,
        session_ttl_sec: float = 1800.0,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._summaries = summary_store
        self._sessions = session_store
        self._alerts = alert_log
        self._session_ttl_sec = session_ttl_sec
        self._clock = clock or time.time
        self._handlers: Dict[WorkflowStep, Callable[..., TurnResult]] = {
            WorkflowStep.LEAD_QUESTION: self._on_lead_reply,
            WorkflowStep.SALES_QUESTION: self._on_sales_reply,
            WorkflowStep.FOLLOW_UP_QUESTION: self._on_follow_up_reply,
            WorkflowStep.LOOP_CLOSURE: self._on_loop_closure_reply,
            WorkflowStep.SALES_HANDOFF_CONFIRM: self._on_handoff_confirm,
            WorkflowStep.SALES_HANDOFF_NAME: self._on_handoff_name,
            WorkflowStep.SALES_HANDOFF_EMAIL: self._on_handoff_email,
            WorkflowStep.SALES_HANDOFF_DETAILS: self._on_handoff_details,
            WorkflowStep.SALES_HANDOFF_TIMELINE: self._on_handoff_timeline,
        }

    def advance_conversation(
        self,
        session_id: str,
        message: Optional[str],
        page_url: str,
        tenant_id: str,
    ) -> TurnResult:
        """Purpose: Process one inbound message and return the structured reply for this turn.
        Inputs/Outputs: Inputs are session id, the message (None for a proactive trigger),
            page URL and tenant id; returns a WorkflowReply or NoStructuredResponse.
        Side Effects / State: Reads and writes the session record, may dispatch alerts.
        Dependencies: SessionStore lock/get/save, SummaryStore.latest, AlertLog.dispatch.
        Failure Modes: Storage errors propagate; NoStructuredResponse is a normal outcome.
        If Removed: Visitors only ever get unstructured chat.
        Testing Notes: idle + first message returns the first lead question with its options.
        """
        # Hold the session lock across read-modify-write so turns never interleave.
        with self._sessions.lock(session_id):
            state = self._sessions.get_state(session_id)
            original = state.model_copy(deep=True)
            self._expire_if_stale(state)
            result = self._dispatch(state, message, page_url, tenant_id)
            if state != original:
                self._sessions.save_state(state)
        if isinstance(result, NoStructuredResponse):
            logger.info("session=%s step=%s structured=false reason=%s", session_id, state.step.value, result.reason)
        else:
            logger.info("session=%s next_step=%s structured=true", session_id, result.next_step.value)
        return result

    def _expire_if_stale(self, state: SessionState) -> None:
        if state.step in (WorkflowStep.IDLE, WorkflowStep.SALES_HANDOFF_END):
            return
        if self._clock() - state.last_updated <= self._session_ttl_sec:
            return
        logger.info("session=%s step=%s status=expired", state.session_id, state.step.value)
        self._record(state, "session_expired")
        state.step = WorkflowStep.IDLE
        state.follow_up_count = 0

    def _dispatch(self, state: SessionState, message: Optional[str], page_url: str, tenant_id: str) -> TurnResult:
        if state.step in (WorkflowStep.IDLE, WorkflowStep.SALES_HANDOFF_END):
            section = self._current_section(state, page_url, tenant_id)
            if section is None:
                return NoStructuredResponse(reason="no_summary")
            return self._start_lead_question(state, section)

        if message is None or not message.strip():
            return NoStructuredResponse(reason="empty_message")
        handler = self._handlers[state.step]
        if state.step in (WorkflowStep.LEAD_QUESTION, WorkflowStep.SALES_QUESTION, WorkflowStep.FOLLOW_UP_QUESTION):
            section = self._current_section(state, page_url, tenant_id)
            if section is None:
                return NoStructuredResponse(reason="no_summary")
            return handler(state, message.strip(), section, page_url, tenant_id)
        return handler(state, message.strip(), page_url, tenant_id)

    def _current_section(self, state: SessionState, page_url: str, tenant_id: str) -> Optional[Section]:
        record = self._summaries.latest(tenant_id, page_url)
        summary: Optional[StructuredSummary] = record.summary if record else None
        if summary is None or not summary.sections:
            return None
        for section in summary.sections:
            if section.section_name == state.current_section_name:
                return section
        section = summary.sections[0]
        state.current_section_name = section.section_name
        return section

    def _record(self, state: SessionState, step: str, **fields) -> None:
        state.history.append(HistoryEntry(step=step, timestamp=self._clock(), **fields))

    def _alert_if_high_risk(self, state: SessionState, kind: str, option: AnswerOption, section: Section) -> None:
        if not is_high_risk(option.tags):
            return
        state.is_high_risk = True
        self._alerts.dispatch(
            state.session_id,
            kind,
            {"option": option.label, "tags": list(option.tags), "section": section.section_name},
        )

    # Question delivery

    def _start_lead_question(self, state: SessionState, section: Section) -> TurnResult:
        question = _first(section.lead_questions)
        if question is None:
            return NoStructuredResponse(reason="no_lead_question")
        state.step = WorkflowStep.LEAD_QUESTION
        state.follow_up_count = 0
        state.selected_lead_option = None
        state.selected_sales_option = None
        state.is_high_risk = False
        self._record(
            state, "lead_question_start", section_name=section.section_name, question_text=question.question_text
        )
        return _ask(question, WorkflowStep.LEAD_QUESTION)

    def _follow_up(self, state: SessionState, question: Question, rewordings: Sequence[str], kind: str) -> TurnResult:
        if state.follow_up_count >= MAX_FOLLOW_UPS:
            return NoStructuredResponse(reason="max_follow_ups")
        message = rewordings[state.follow_up_count].format(question=question.question_text)
        state.follow_up_count += 1
        self._record(state, f"{kind}_follow_up", question_text=question.question_text)
        return WorkflowReply(message=message, options=_labels(question), next_step=state.step)

    def _on_lead_reply(
        self, state: SessionState, message: str, section: Section, page_url: str, tenant_id: str
    ) -> TurnResult:
        question = _first(section.lead_questions)
        if question is None:
            return NoStructuredResponse(reason="no_lead_question")
        index = match_option(message, _labels(question))
        if index is None:
            return self._follow_up(state, question, LEAD_REWORDINGS, "lead")

        option = question.options[index]
        workflow = route_workflow(option.tags)
        state.selected_lead_option = option.label
        self._alert_if_high_risk(state, "high_risk_lead_tag", option, section)
        self._record(
            state,
            "lead_option_selected",
            section_name=section.section_name,
            question_text=question.question_text,
            option_selected=option.label,
            tags_applied=list(option.tags),
            workflow_triggered=workflow.value,
            input_text=message,
        )

        if workflow == WorkflowClass.DIAGNOSTIC_EDUCATION:
            state.step = WorkflowStep.IDLE
            return WorkflowReply(message=EDUCATIONAL_CLOSING, next_step=WorkflowStep.IDLE)

        sales_question = _first(section.sales_questions)
        if sales_question is None:
            state.step = WorkflowStep.IDLE
            return WorkflowReply(message=NO_SALES_QUESTION, next_step=WorkflowStep.IDLE)
        state.step = WorkflowStep.SALES_QUESTION
        state.follow_up_count = 0
        self._record(
            state,
            "sales_question_start",
            section_name=section.section_name,
            question_text=sales_question.question_text,
        )
        return _ask(sales_question, WorkflowStep.SALES_QUESTION)

    def _on_sales_reply(
        self, state: SessionState, message: str, section: Section, page_url: str, tenant_id: str
    ) -> TurnResult:
        question = _first(section.sales_questions)
        if question is None:
            return NoStructuredResponse(reason="no_sales_question")
        index = match_option(message, _labels(question))
        if index is None:
            return self._follow_up(state, question, SALES_REWORDINGS, "sales")

        option = question.options[index]
        state.selected_sales_option = option.label
        workflow = route_workflow(option.tags)
        self._alert_if_high_risk(state, "high_risk_sales_tag", option, section)
        self._record(
            state,
            "sales_option_selected",
            section_name=section.section_name,
            question_text=question.question_text,
            option_selected=option.label,
            tags_applied=list(option.tags),
            workflow_triggered=workflow.value,
            input_text=message,
        )

        diagnostic = option.diagnostic_answer or FALLBACK_DIAGNOSTICS[workflow]
        state.step = WorkflowStep.FOLLOW_UP_QUESTION
        state.follow_up_count = 0
        return WorkflowReply(
            message=f"{diagnostic}\n\n{FOLLOW_UP_PROMPT}",
            options=list(option.diagnostic_actions or DEFAULT_FOLLOW_UP_OPTIONS),
            next_step=WorkflowStep.FOLLOW_UP_QUESTION,
        )

    def _on_follow_up_reply(
        self, state: SessionState, message: str, section: Section, page_url: str, tenant_id: str
    ) -> TurnResult:
        feature = self._feature_mapping(state, message, section)
        self._record(state, "feature_mapping_closure", section_name=section.section_name, input_text=message)
        if state.is_high_risk:
            state.step = WorkflowStep.SALES_HANDOFF_CONFIRM
            return WorkflowReply(
                message=f"{feature}\n\n{CLOSURE_SCRIPT}\n\n{SALES_OFFER}",
                options=list(SALES_OFFER_OPTIONS),
                next_step=WorkflowStep.SALES_HANDOFF_CONFIRM,
            )
        state.step = WorkflowStep.LOOP_CLOSURE
        return WorkflowReply(
            message=f"{feature}\n\n{CLOSURE_SCRIPT}",
            options=list(LOOP_CLOSURE_OPTIONS),
            next_step=WorkflowStep.LOOP_CLOSURE,
        )

    def _feature_mapping(self, state: SessionState, message: str, section: Section) -> str:
        """Narrative for the chosen follow-up action, else a sentence built from the section summary."""
        option = _find_option(section.sales_questions, state.selected_sales_option)
        if option is not None and option.diagnostic_action_details:
            details = option.diagnostic_action_details
            index = match_option(message, [detail.label for detail in details])
            if index is not None:
                return details[index].narrative
        summary = section.section_summary.strip() or section.section_content.strip()
        if summary:
            return f"Here's how {section.section_name} helps: {summary}"
        return f"{section.section_name} is built to help with exactly this."

    def _on_loop_closure_reply(self, state: SessionState, message: str, page_url: str, tenant_id: str) -> TurnResult:
        if not has_keyword(message, SALES_INTENT_KEYWORDS):
            return NoStructuredResponse(reason="no_sales_intent")
        state.step = WorkflowStep.SALES_HANDOFF_NAME
        self._record(state, "sales_handoff_start", input_text=message)
        return WorkflowReply(message=ASK_NAME, next_step=WorkflowStep.SALES_HANDOFF_NAME)

    # Sales handoff

    def _on_handoff_confirm(self, state: SessionState, message: str, page_url: str, tenant_id: str) -> TurnResult:
        if has_keyword(message, AFFIRMATIVE_KEYWORDS):
            state.step = WorkflowStep.SALES_HANDOFF_NAME
            self._record(state, "sales_handoff_confirmed", input_text=message)
            return WorkflowReply(message=ASK_NAME, next_step=WorkflowStep.SALES_HANDOFF_NAME)
        state.step = WorkflowStep.IDLE
        self._record(state, "sales_handoff_declined", input_text=message)
        return WorkflowReply(message=HANDOFF_DECLINED, next_step=WorkflowStep.IDLE)

    def _on_handoff_name(self, state: SessionState, message: str, page_url: str, tenant_id: str) -> TurnResult:
        state.collected_fields.name = message
        state.step = WorkflowStep.SALES_HANDOFF_EMAIL
        self._record(state, "sales_handoff_name", input_text=message)
        return WorkflowReply(message=ASK_EMAIL.format(name=message), next_step=WorkflowStep.SALES_HANDOFF_EMAIL)

    def _on_handoff_email(self, state: SessionState, message: str, page_url: str, tenant_id: str) -> TurnResult:
        state.collected_fields.email = message
        state.step = WorkflowStep.SALES_HANDOFF_DETAILS
        self._record(state, "sales_handoff_email", input_text=message)
        return WorkflowReply(message=ASK_DETAILS, next_step=WorkflowStep.SALES_HANDOFF_DETAILS)

    def _on_handoff_details(self, state: SessionState, message: str, page_url: str, tenant_id: str) -> TurnResult:
        state.collected_fields.details = message
        state.step = WorkflowStep.SALES_HANDOFF_TIMELINE
        self._record(state, "sales_handoff_details", input_text=message)
        return WorkflowReply(
            message=ASK_TIMELINE, options=list(TIMELINE_OPTIONS), next_step=WorkflowStep.SALES_HANDOFF_TIMELINE
        )

    def _on_handoff_timeline(self, state: SessionState, message: str, page_url: str, tenant_id: str) -> TurnResult:
        state.collected_fields.timeline = message
        self._record(state, "sales_handoff_timeline", input_text=message)
        details = state.collected_fields.model_dump()
        details.update({"page_url": page_url, "tenant_id": tenant_id, "high_risk": state.is_high_risk})
        self._alerts.dispatch(state.session_id, "sales_handoff_completed", details)
        # The end step is reported to the caller only; the stored session is already idle.
        self._record(state, "sales_handoff_end")
        state.step = WorkflowStep.IDLE
        state.follow_up_count = 0
        return WorkflowReply(
            message=HANDOFF_COMPLETE,
            next_step=WorkflowStep.SALES_HANDOFF_END,
            show_booking_affordance=True,
        )


def _first(questions: Sequence[Question]) -> Optional[Question]:
    return questions[0] if questions else None


def _labels(question: Question) -> List[str]:
    return [option.label for option in question.options]


def _ask(question: Question, step: WorkflowStep) -> WorkflowReply:
    return WorkflowReply(message=question.question_text, options=_labels(question), next_step=step)


def _find_option(questions: Sequence[Question], label: Optional[str]) -> Optional[AnswerOption]:
    if not label:
        return None
    for question in questions:
        for option in question.options:
            if option.label == label:
                return option
    return None
