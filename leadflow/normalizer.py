from __future__ import annotations

"""Reconcile stored sections with freshly segmented blocks and guarantee question structure."""

import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from .models import AnswerOption, ContentBlock, Question, Section
from .prompt_loader import render_prompt
from .tag_classifier import MAX_OPTIONS, MIN_OPTIONS, TagClassifier
from .taxonomy import FALLBACK_TAGS, is_valid_tag_pair, route_workflow
from .utils import normalize_key, truncate

logger = logging.getLogger("leadflow.normalizer")

QUESTIONS_PER_KIND = 2
SUMMARY_CHARS = 400
SECTION_PROMPT_CHARS = 8000

SECTION_TYPE_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("hero", ("hero", "welcome", "home", "introduction")),
    ("pricing", ("pricing", "price", "plans", "plan", "cost")),
    ("faq", ("faq", "frequently asked", "questions")),
    ("testimonials", ("testimonial", "review", "customers say", "case stud")),
    ("contact", ("contact", "get in touch", "book", "demo")),
    ("about", ("about", "team", "mission", "story")),
    ("features", ("feature", "capabilit", "how it works", "benefit", "solution", "product")),
)

LEAD_FILLERS: Sequence[Tuple[str, Sequence[str]]] = (
    ("Which best describes your interest in {title}?", ("Just exploring", "Actively evaluating", "Ready to get started")),
    ("What are you hoping to improve in {title}?", ("Learn more", "Compare options", "Talk to sales")),
)
SALES_FILLERS: Sequence[Tuple[str, Sequence[str]]] = (
    ("How urgent is it for you to improve {title}?", ("In the next month", "In 1-3 months", "Just researching")),
    ("What stage are you at in deciding about {title}?", ("Just researching", "Shortlisting options", "Ready to decide")),
)
FILLER_OPTION_TAGS: Dict[str, Tuple[str, str]] = {
    "Just exploring": ("awareness_missing", "low_risk"),
    "Actively evaluating": ("optimization_ready", "low_risk"),
    "Ready to get started": ("validated_flow", "conversion_risk"),
    "Learn more": ("awareness_missing", "low_risk"),
    "Compare options": ("optimization_ready", "low_risk"),
    "Talk to sales": ("optimization_ready", "conversion_risk"),
    "In the next month": ("capacity_constraint", "high_risk"),
    "In 1-3 months": ("optimization_ready", "conversion_risk"),
    "Just researching": ("awareness_missing", "low_risk"),
    "Shortlisting options": ("optimization_ready", "conversion_risk"),
    "Ready to decide": ("validated_flow", "high_risk"),
}
PAD_OPTION_LABELS = ("Not sure yet", "Something else")


def classify_section_type(title: str) -> str:
    """Derive a coarse section type from the section title."""
    lowered = (title or "").lower()
    for section_type, keywords in SECTION_TYPE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return section_type
    return "content"


def realign_sections(existing: Sequence[Section], blocks: Sequence[ContentBlock]) -> List[Section]:
    """Purpose: Rebuild the section list positionally from freshly parsed blocks.
    Inputs/Outputs: Inputs are the stored sections and new blocks; output has one section per block.
    Side Effects / State: None; existing sections are copied, not mutated.
    Dependencies: classify_section_type, truncate.
    Failure Modes: None.
    If Removed: Re-crawls either lose every generated question or attach them to the wrong section.
    Testing Notes: A block at an index with no stored section must come back with no questions.
    """
    sections: List[Section] = []
    for index, block in enumerate(blocks):
        base = existing[index] if index < len(existing) else None
        name = block.title.strip() or (base.section_name.strip() if base else "") or f"Section {index + 1}"
        if base is not None and base.section_summary.strip():
            summary = base.section_summary
        else:
            summary = truncate(block.body, SUMMARY_CHARS)
        update = {
            "section_name": name,
            "section_summary": summary,
            "section_content": block.body,
            "section_type": classify_section_type(name),
        }
        if base is not None:
            section = base.model_copy(deep=True, update=update)
        else:
            # Genuinely new position: never inherit questions from anywhere else.
            section = Section(lead_questions=[], sales_questions=[], **update)
        sections.append(section)
    return sections


def coerce_question(raw: Any) -> Optional[Question]:
    """Accept {question|questionText|question_text, options:[str | {label, tags}]} loosely."""
    if not isinstance(raw, dict):
        return None
    text = raw.get("question") or raw.get("questionText") or raw.get("question_text")
    if not isinstance(text, str) or not text.strip():
        return None
    options: List[AnswerOption] = []
    seen: set = set()
    for item in raw.get("options") or []:
        if isinstance(item, str):
            candidate = {"label": item}
        elif isinstance(item, dict):
            candidate = {"label": item.get("label"), "tags": item.get("tags") or []}
        else:
            continue
        try:
            option = AnswerOption.model_validate(candidate)
        except ValidationError:
            continue
        option.label = option.label.strip()
        key = normalize_key(option.label)
        if not key or key in seen:
            continue
        seen.add(key)
        options.append(option)
    return Question(question_text=text.strip(), options=options)


def _filler_option(label: str) -> AnswerOption:
    tags = list(FILLER_OPTION_TAGS.get(label, FALLBACK_TAGS))
    return AnswerOption(label=label, tags=tags, workflow_class=route_workflow(tags))


def _filler_question(template: Tuple[str, Sequence[str]], title: str) -> Question:
    text, labels = template
    return Question(question_text=text.format(title=title), options=[_filler_option(label) for label in labels])


def _finalize_options(question: Question) -> Question:
    options: List[AnswerOption] = []
    for option in question.options[:MAX_OPTIONS]:
        tags = option.tags if is_valid_tag_pair(option.tags) else list(FALLBACK_TAGS)
        options.append(option.model_copy(update={"tags": tags, "workflow_class": route_workflow(tags)}))
    present = {normalize_key(opt.label) for opt in options}
    pad_labels = list(PAD_OPTION_LABELS) + [f"Option {n}" for n in range(1, MAX_OPTIONS + 1)]
    for label in pad_labels:
        if len(options) >= MIN_OPTIONS:
            break
        if normalize_key(label) in present:
            continue
        options.append(_filler_option(label))
        present.add(normalize_key(label))
    return question.model_copy(update={"options": options})


def _fill_kind(questions: List[Question], fillers: Sequence[Tuple[str, Sequence[str]]], title: str) -> List[Question]:
    kept = [q for q in questions if q.question_text.strip()][:QUESTIONS_PER_KIND]
    while len(kept) < QUESTIONS_PER_KIND:
        kept.append(_filler_question(fillers[len(kept)], title))
    return [_finalize_options(q) for q in kept]


def enforce_structure(section: Section) -> Section:
    """Purpose: Guarantee exactly 2 lead and 2 sales questions with 2-4 tagged options each.
    Inputs/Outputs: Input is a section; output is a structurally valid copy.
    Side Effects / State: None.
    Dependencies: Filler tables, route_workflow.
    Failure Modes: None; generation failures are masked with generic filler.
    If Removed: The state machine can meet a section with nothing to ask.
    Testing Notes: A section with no questions gets four filler questions, all validly tagged.
    """
    title = section.section_name.strip() or "this section"
    return section.model_copy(
        update={
            "lead_questions": _fill_kind(list(section.lead_questions), LEAD_FILLERS, title),
            "sales_questions": _fill_kind(list(section.sales_questions), SALES_FILLERS, title),
        }
    )


def _drop_repeated_theme(questions: List[Question]) -> List[Question]:
    if len(questions) < 2:
        return questions
    first_key = normalize_key(questions[0].question_text)
    kept = [questions[0]]
    for question in questions[1:]:
        if normalize_key(question.question_text) == first_key:
            continue
        kept.append(question)
    return kept


class SummaryNormalizer:
    """Backfill missing questions section by section and enforce minimum structure."""

    def __init__(
        self,
        client: Any,
        prompts_dir: Path,
        classifier: TagClassifier,
        section_delay_sec: float = 2.0,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self._client = client
        self._prompts_dir = prompts_dir
        self._classifier = classifier
        self._section_delay_sec = section_delay_sec
        self._sleep = sleep or time.sleep

    def generate_section_questions(self, section: Section) -> Tuple[str, List[Question], List[Question]]:
        """Ask for 2 lead + 2 sales questions for one section; failures yield empty lists."""
        prompt = render_prompt(
            self._prompts_dir,
            "section_questions.txt",
            {
                "SECTION_TITLE": section.section_name,
                "SECTION_CONTENT": truncate(section.section_content, SECTION_PROMPT_CHARS),
            },
        )
        try:
            data = self._client.generate_json(prompt, label="section_questions", temperature=0.3)
        except Exception:
            logger.exception("step=backfill section=%s status=failed", section.section_name)
            return "", [], []
        summary = data.get("sectionSummary") if isinstance(data.get("sectionSummary"), str) else ""
        lead = [q for q in (coerce_question(raw) for raw in data.get("leadQuestions") or []) if q]
        sales = [q for q in (coerce_question(raw) for raw in data.get("salesQuestions") or []) if q]
        return summary, lead[:QUESTIONS_PER_KIND], sales[:QUESTIONS_PER_KIND]

    def backfill_section(self, section: Section) -> Tuple[Section, bool]:
        """Purpose: Generate missing questions, tag and route them, then enforce structure.
        Inputs/Outputs: Input is one section; returns (normalized section, whether generation ran).
        Side Effects / State: Up to one generation call, one classify call and repair calls.
        Dependencies: generate_section_questions, TagClassifier.tag_questions, enforce_structure.
        Failure Modes: None raised; failures degrade to filler questions.
        If Removed: Sections from new crawl positions stay empty.
        Testing Notes: Sections with questions on both sides trigger no generation call.
        """
        lead = list(section.lead_questions)
        sales = list(section.sales_questions)
        summary = section.section_summary
        generated = False
        if not lead or not sales:
            generated = True
            new_summary, new_lead, new_sales = self.generate_section_questions(section)
            if not lead:
                lead = _drop_repeated_theme(new_lead)
            if not sales:
                sales = _drop_repeated_theme(new_sales)
            if not summary.strip() and new_summary:
                summary = new_summary
            logger.info(
                "step=backfill section=%s lead=%s sales=%s", section.section_name, len(lead), len(sales)
            )

        tagged = self._classifier.tag_questions(lead + sales)
        lead, sales = tagged[: len(lead)], tagged[len(lead) :]
        updated = section.model_copy(
            update={"section_summary": summary, "lead_questions": lead, "sales_questions": sales}
        )
        return enforce_structure(updated), generated

    def normalize_sections(self, sections: Sequence[Section]) -> List[Section]:
        """Backfill sections sequentially, pausing between generation calls."""
        normalized: List[Section] = []
        generated_before = False
        for section in sections:
            needs_generation = not section.lead_questions or not section.sales_questions
            if needs_generation and generated_before and self._section_delay_sec > 0:
                self._sleep(self._section_delay_sec)
            result, generated = self.backfill_section(section)
            generated_before = generated_before or generated
            normalized.append(result)
        return normalized

    def reconcile(self, existing: Sequence[Section], blocks: Sequence[ContentBlock]) -> List[Section]:
        """Realign stored sections onto new blocks, then backfill and enforce structure."""
        if len(existing) != len(blocks):
            logger.info("step=realign existing=%s blocks=%s", len(existing), len(blocks))
        return self.normalize_sections(realign_sections(existing, blocks))
