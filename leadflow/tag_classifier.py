from __future__ import annotations

"""Assign the closed two-tag taxonomy to answer options, with repair and fallback."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ValidationError

from .gemini_client import GenerationError
from .models import AnswerOption, Question
from .prompt_loader import render_prompt
from .retry import RetryPolicy
from .taxonomy import FALLBACK_TAGS, is_valid_tag_pair, route_workflow, taxonomy_prompt_block
from .utils import normalize_key, snake_tag

logger = logging.getLogger("leadflow.classifier")

MIN_OPTIONS = 2
MAX_OPTIONS = 4


class TagResult(BaseModel):
    label: str
    tags: List[str]


class RepairResult(BaseModel):
    source: str
    label: str
    tags: List[str]


def _clean_tags(tags: Iterable[Any]) -> List[str]:
    return [snake_tag(str(tag)) for tag in tags or []]


def _results_list(data: Dict[str, Any], label: str) -> List[Any]:
    results = data.get("results") if isinstance(data, dict) else None
    if not isinstance(results, list):
        raise GenerationError(f"{label} response has no results list")
    return results


def _is_duplicate(label: str, others: Iterable[str]) -> bool:
    key = normalize_key(label)
    if not key:
        return True
    for other in others:
        other_key = normalize_key(other)
        if not other_key:
            continue
        if key == other_key or key in other_key or other_key in key:
            return True
    return False


def option_has_valid_tags(option: AnswerOption) -> bool:
    return is_valid_tag_pair(option.tags)


class TagClassifier:
    """Tag option labels through the generative service and enforce option-count bounds."""

    def __init__(self, client: Any, prompts_dir: Path, retry_policy: Optional[RetryPolicy] = None) -> None:
        self._client = client
        self._prompts_dir = prompts_dir
        self._retry = retry_policy or RetryPolicy(retries=3, base_delay=1.0)

    def classify_labels(self, labels: Iterable[str]) -> Dict[str, List[str]]:
        """Purpose: Tag a batch of option labels in a single generation call.
        Inputs/Outputs: Input is any iterable of labels; output maps label -> [primary, secondary]
            for the labels the model tagged validly. Missing labels are simply absent.
        Side Effects / State: One LLM call per attempt; retries with exponential backoff.
        Dependencies: tag_options.txt prompt, RetryPolicy, taxonomy validation.
        Failure Modes: Returns {} once retries are exhausted; never raises.
        If Removed: Options carry no tags and every question falls back to filler tags.
        Testing Notes: Script two failures then success; assert three calls and a full map.
        """
        unique: List[str] = []
        seen: set = set()
        for label in labels:
            cleaned = (label or "").strip()
            if cleaned and cleaned not in seen:
                seen.add(cleaned)
                unique.append(cleaned)
        if not unique:
            return {}

        prompt = render_prompt(
            self._prompts_dir,
            "tag_options.txt",
            {"TAXONOMY": taxonomy_prompt_block(), "LABELS": json.dumps(unique, ensure_ascii=False)},
        )

        def _request() -> List[Any]:
            data = self._client.generate_json(prompt, label="tag_options", temperature=0.1)
            return _results_list(data, "tag_options")

        try:
            results = self._retry.call(_request)
        except Exception:
            logger.exception("step=classify status=failed labels=%s", len(unique))
            return {}

        by_key = {normalize_key(label): label for label in unique}
        tag_map: Dict[str, List[str]] = {}
        for item in results:
            try:
                parsed = TagResult.model_validate(item)
            except ValidationError:
                continue
            tags = _clean_tags(parsed.tags)
            if not is_valid_tag_pair(tags):
                continue
            source = parsed.label if parsed.label in seen else by_key.get(normalize_key(parsed.label))
            if source:
                tag_map[source] = tags
        logger.info("step=classify labels=%s tagged=%s", len(unique), len(tag_map))
        return tag_map

    def repair_options(
        self,
        question_text: str,
        invalid_labels: List[str],
        existing_labels: List[str],
    ) -> Dict[str, AnswerOption]:
        """Ask once for rewritten, validly tagged replacements; returns source label -> option."""
        if not invalid_labels:
            return {}
        prompt = render_prompt(
            self._prompts_dir,
            "repair_options.txt",
            {
                "TAXONOMY": taxonomy_prompt_block(),
                "QUESTION": question_text,
                "INVALID_OPTIONS": json.dumps(invalid_labels, ensure_ascii=False),
                "EXISTING_OPTIONS": json.dumps(existing_labels, ensure_ascii=False),
            },
        )
        try:
            data = self._client.generate_json(prompt, label="repair_options", temperature=0.1)
            results = _results_list(data, "repair_options")
        except Exception:
            logger.exception("step=repair status=failed invalid=%s", len(invalid_labels))
            return {}

        repaired: Dict[str, AnswerOption] = {}
        accepted: List[str] = list(existing_labels)
        for item in results:
            try:
                parsed = RepairResult.model_validate(item)
            except ValidationError:
                continue
            tags = _clean_tags(parsed.tags)
            label = parsed.label.strip()
            if parsed.source not in invalid_labels or parsed.source in repaired:
                continue
            if not is_valid_tag_pair(tags) or _is_duplicate(label, accepted):
                continue
            repaired[parsed.source] = AnswerOption(label=label, tags=tags)
            accepted.append(label)
        logger.info("step=repair invalid=%s repaired=%s", len(invalid_labels), len(repaired))
        return repaired

    def tag_question(self, question: Question, tag_map: Dict[str, List[str]]) -> Question:
        """Purpose: Produce the final tagged option list for one question.
        Inputs/Outputs: Inputs are the question and a label -> tags map; output is a new Question
            with 2-4 options (when the original had at least 2), each routed to a workflow class.
        Side Effects / State: May issue one repair call for options left untagged.
        Dependencies: repair_options, route_workflow, FALLBACK_TAGS.
        Failure Modes: None raised; unrepairable options are dropped, then padded back.
        If Removed: Questions reach the state machine with untagged or too many options.
        Testing Notes: Two of three options untagged and repair failing -> padded to 2.
        """
        original = list(question.options)
        kept: List[AnswerOption] = []
        invalid: List[str] = []
        for option in original:
            tags = _clean_tags(option.tags)
            if is_valid_tag_pair(tags):
                kept.append(option.model_copy(update={"tags": tags}))
            elif option.label in tag_map:
                kept.append(option.model_copy(update={"tags": list(tag_map[option.label])}))
            else:
                invalid.append(option.label)

        if invalid:
            repaired = self.repair_options(question.question_text, invalid, [opt.label for opt in kept])
            for source in invalid:
                if source in repaired:
                    kept.append(repaired[source])

        if len(kept) < MIN_OPTIONS:
            present = {opt.label for opt in kept}
            for option in original:
                if len(kept) >= MIN_OPTIONS:
                    break
                if option.label in present:
                    continue
                kept.append(option.model_copy(update={"tags": list(FALLBACK_TAGS)}))
                present.add(option.label)

        kept = kept[:MAX_OPTIONS]
        routed = [opt.model_copy(update={"workflow_class": route_workflow(opt.tags)}) for opt in kept]
        return question.model_copy(update={"options": routed})

    def tag_questions(self, questions: List[Question]) -> List[Question]:
        """Classify every untagged label across questions in one batch, then finalize each question."""
        if not questions:
            return []
        pending = [
            option.label
            for question in questions
            for option in question.options
            if not is_valid_tag_pair(_clean_tags(option.tags))
        ]
        tag_map = self.classify_labels(pending) if pending else {}
        return [self.tag_question(question, tag_map) for question in questions]
