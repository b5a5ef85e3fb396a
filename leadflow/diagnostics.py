from __future__ import annotations

"""Post-crawl diagnostic content: answer, follow-up actions and action narratives per option."""

import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ValidationError

from .knowledge.vector_index import VectorIndex
from .models import ActionDetail, AnswerOption, SummaryRecord, WorkflowClass
from .prompt_loader import render_prompt
from .summary_store import SummaryStore
from .taxonomy import route_workflow
from .utils import normalize_key

logger = logging.getLogger("leadflow.diagnostics")

MIN_ACTIONS = 3
MAX_ACTIONS = 4
MAX_ACTION_WORDS = 5
CONTEXT_SEPARATOR = "\n---\n"

WORKFLOW_TEMPLATES: Dict[WorkflowClass, str] = {
    WorkflowClass.VALIDATION_PATH: (
        "Validate their strong position. Suggest how they can leverage this stability to scale "
        "or optimize further using the platform. Focus on what comes next for growth."
    ),
    WorkflowClass.OPTIMIZATION_WORKFLOW: (
        "Acknowledge the process friction. Explain the specific business impact such as lost revenue "
        "or efficiency gaps. Clearly state how the platform automates or resolves this."
    ),
    WorkflowClass.DIAGNOSTIC_EDUCATION: (
        "Address the visibility gap. Explain why knowing this data is critical for decision-making. "
        "Explain how the platform provides this specific intelligence."
    ),
    WorkflowClass.SALES_ALERT: (
        "Address the high-stakes nature of the problem. Explain the cost of inaction. "
        "Briefly explain how the platform mitigates this risk immediately."
    ),
}

OptionKey = Tuple[str, WorkflowClass]


class DetailItem(BaseModel):
    label: str
    answer: str


@dataclass
class DiagnosticResult:
    """Generated content for one (label, workflow class) pair."""
    answer: str = ""
    actions: List[str] = field(default_factory=list)
    details: List[ActionDetail] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.answer


def option_key(option: AnswerOption) -> OptionKey:
    """Dedup key for diagnostic content; the workflow class is re-derived from tags."""
    return option.label, route_workflow(option.tags)


def iter_options(record: SummaryRecord) -> Iterator[AnswerOption]:
    for section in record.summary.sections:
        for question in list(section.lead_questions) + list(section.sales_questions):
            for option in question.options:
                yield option


def _clean_actions(raw: Any) -> List[str]:
    if not isinstance(raw, list):
        return []
    actions: List[str] = []
    seen: set = set()
    for item in raw:
        if not isinstance(item, str):
            continue
        words = item.strip().split()
        if not words:
            continue
        action = " ".join(words[:MAX_ACTION_WORDS])
        key = normalize_key(action)
        if key in seen:
            continue
        seen.add(key)
        actions.append(action)
    return actions[:MAX_ACTIONS]


def _result_from_option(option: AnswerOption) -> DiagnosticResult:
    return DiagnosticResult(
        answer=option.diagnostic_answer or "",
        actions=list(option.diagnostic_actions or []),
        details=[detail.model_copy() for detail in option.diagnostic_action_details or []],
    )


class DiagnosticGenerator:
    """Generate diagnostic content once per unique option pair and fan it out across a tenant."""

    def __init__(
        self,
        client: Any,
        prompts_dir: Path,
        summary_store: SummaryStore,
        vector_index: Optional[VectorIndex] = None,
        batch_size: int = 5,
        top_k: int = 3,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._client = client
        self._prompts_dir = prompts_dir
        self._summary_store = summary_store
        self._vector_index = vector_index
        self._batch_size = batch_size
        self._top_k = top_k

    def generate_diagnostic_content(
        self,
        tenant_id: str,
        page_url_filter: Optional[str] = None,
        regenerate: bool = False,
    ) -> int:
        """Purpose: Fill diagnostic answer/actions/narratives for every option of a tenant.
        Inputs/Outputs: Inputs are tenant id, optional page URL filter and a regenerate flag;
            returns the number of stored summaries updated.
        Side Effects / State: Embedding, retrieval and LLM calls; one store write pass.
        Dependencies: vector index retrieval, three diagnostic prompts, SummaryStore.update_many.
        Failure Modes: Per-item failures are logged and leave that pair without content;
            storage errors propagate.
        If Removed: The follow-up step falls back to generic scripts with Yes/No options.
        Testing Notes: The same label on two pages must trigger one answer call and identical content.
        """
        scoped = self._summary_store.find_by_tenant(tenant_id, page_url_filter)
        if not scoped:
            logger.info("tenant=%s url=%s step=diagnostics status=no_summaries", tenant_id, page_url_filter)
            return 0
        all_records = self._summary_store.find_by_tenant(tenant_id) if page_url_filter else scoped
        business_name = next(
            (r.summary.business_name for r in all_records if r.summary.business_name), None
        )

        results: Dict[OptionKey, DiagnosticResult] = {}
        if not regenerate:
            for record in all_records:
                for option in iter_options(record):
                    key = option_key(option)
                    if option.diagnostic_answer and key not in results:
                        results[key] = _result_from_option(option)

        pending: List[OptionKey] = []
        for record in scoped:
            for option in iter_options(record):
                key = option_key(option)
                if key not in results and key not in pending:
                    pending.append(key)
        logger.info(
            "tenant=%s step=diagnostics unique_pending=%s reused=%s", tenant_id, len(pending), len(results)
        )

        generated = self._generate_batches(tenant_id, pending, business_name)
        results.update({key: result for key, result in generated.items() if not result.is_empty})
        return self._fan_out(all_records, results)

    def _generate_batches(
        self, tenant_id: str, pending: Sequence[OptionKey], business_name: Optional[str]
    ) -> Dict[OptionKey, DiagnosticResult]:
        generated: Dict[OptionKey, DiagnosticResult] = {}
        if not pending:
            return generated
        with ThreadPoolExecutor(max_workers=self._batch_size) as pool:
            for start in range(0, len(pending), self._batch_size):
                batch = pending[start : start + self._batch_size]
                outcomes = pool.map(
                    lambda key: self.generate_item(tenant_id, key[0], key[1], business_name), batch
                )
                for key, outcome in zip(batch, outcomes):
                    generated[key] = outcome
                logger.info(
                    "tenant=%s step=diagnostics processed=%s/%s",
                    tenant_id,
                    min(start + self._batch_size, len(pending)),
                    len(pending),
                )
        return generated

    def generate_item(
        self,
        tenant_id: str,
        label: str,
        workflow: WorkflowClass,
        business_name: Optional[str] = None,
    ) -> DiagnosticResult:
        """Run the retrieval + answer -> actions -> narratives chain for one pair; never raises."""
        try:
            context = self._retrieve_context(tenant_id, label)
            answer = self._generate_answer(label, workflow, context, business_name)
            if not answer:
                return DiagnosticResult()
            actions = self._generate_actions(label, workflow, context, answer, business_name)
            if not actions:
                logger.warning("label=%s workflow=%s step=diagnostic_actions status=empty", label, workflow.value)
                return DiagnosticResult(answer=answer)
            details = self._generate_details(label, workflow, context, answer, actions, business_name)
            return DiagnosticResult(answer=answer, actions=actions, details=details)
        except Exception:
            logger.exception("label=%s workflow=%s step=diagnostics status=failed", label, workflow.value)
            return DiagnosticResult()

    def _retrieve_context(self, tenant_id: str, label: str) -> str:
        if self._vector_index is None:
            return ""
        vector = self._client.embed_text(label)
        chunks = self._vector_index.query(vector, tenant_id, top_k=self._top_k)
        return CONTEXT_SEPARATOR.join(chunks)

    def _call(self, prompt_name: str, label: str, values: Dict[str, str]) -> Dict[str, Any]:
        prompt = render_prompt(self._prompts_dir, prompt_name, values)
        try:
            return self._client.generate_json(prompt, label=label, temperature=0.3)
        except Exception:
            logger.exception("label=%s option=%s status=failed", label, values.get("LABEL"))
            return {}

    def _generate_answer(
        self, label: str, workflow: WorkflowClass, context: str, business_name: Optional[str]
    ) -> str:
        data = self._call(
            "diagnostic_answer.txt",
            "diagnostic_answer",
            {
                "WORKFLOW": workflow.value,
                "TEMPLATE": WORKFLOW_TEMPLATES[workflow],
                "CONTEXT": context,
                "LABEL": label,
                "BUSINESS_NAME": business_name or "Not provided",
            },
        )
        answer = data.get("diagnostic_answer")
        return answer.strip() if isinstance(answer, str) else ""

    def _generate_actions(
        self, label: str, workflow: WorkflowClass, context: str, answer: str, business_name: Optional[str]
    ) -> List[str]:
        data = self._call(
            "diagnostic_actions.txt",
            "diagnostic_actions",
            {
                "CONTEXT": context,
                "LABEL": label,
                "WORKFLOW": workflow.value,
                "DIAGNOSTIC_ANSWER": answer,
                "BUSINESS_NAME": business_name or "Not provided",
            },
        )
        actions = _clean_actions(data.get("diagnostic_options"))
        if 0 < len(actions) < MIN_ACTIONS:
            logger.warning(
                "label=%s workflow=%s step=diagnostic_actions status=too_few count=%s", label, workflow.value, len(actions)
            )
            return []
        return actions

    def _generate_details(
        self,
        label: str,
        workflow: WorkflowClass,
        context: str,
        answer: str,
        actions: List[str],
        business_name: Optional[str],
    ) -> List[ActionDetail]:
        data = self._call(
            "diagnostic_action_details.txt",
            "diagnostic_action_details",
            {
                "BUSINESS_NAME": business_name or "the platform",
                "CONTEXT": context,
                "LABEL": label,
                "WORKFLOW": workflow.value,
                "DIAGNOSTIC_ANSWER": answer,
                "ACTIONS": json.dumps(actions, ensure_ascii=False),
            },
        )
        raw = data.get("diagnostic_option_details")
        if not isinstance(raw, list):
            return []
        by_key = {normalize_key(action): action for action in actions}
        narratives: Dict[str, str] = {}
        for item in raw:
            try:
                parsed = DetailItem.model_validate(item)
            except ValidationError:
                continue
            action = by_key.get(normalize_key(parsed.label))
            if action and parsed.answer.strip() and action not in narratives:
                narratives[action] = parsed.answer.strip()
        return [ActionDetail(label=action, narrative=narratives[action]) for action in actions if action in narratives]

    def _fan_out(self, records: Sequence[SummaryRecord], results: Dict[OptionKey, DiagnosticResult]) -> int:
        """Write each pair's content onto every occurrence across the tenant's summaries."""
        if not results:
            return 0
        now = time.time()
        modified: List[SummaryRecord] = []
        for record in records:
            changed = False
            for option in iter_options(record):
                result = results.get(option_key(option))
                if result is None:
                    continue
                details = [detail.model_copy() for detail in result.details]
                if (
                    option.diagnostic_answer == result.answer
                    and option.diagnostic_actions == result.actions
                    and (option.diagnostic_action_details or []) == details
                ):
                    continue
                option.diagnostic_answer = result.answer
                option.diagnostic_actions = list(result.actions)
                option.diagnostic_action_details = details or None
                changed = True
            if changed:
                record.diagnostic_generated_at = now
                modified.append(record)
        updated = self._summary_store.update_many(modified)
        logger.info("step=diagnostics status=done summaries_updated=%s", updated)
        return updated
