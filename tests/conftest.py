"""Shared fixtures: a scripted generative client, an in-memory vector index and temp stores."""

import copy
import json
import re
import threading
from typing import Any, Callable, Dict, List

import pytest

from leadflow.alert_log import AlertLog
from leadflow.config import BASE_DIR
from leadflow.gemini_client import GenerationError
from leadflow.models import AnswerOption, Question, Section, StructuredSummary
from leadflow.normalizer import SummaryNormalizer
from leadflow.retry import RetryPolicy
from leadflow.session_store import SessionStore
from leadflow.summary_store import SummaryStore
from leadflow.tag_classifier import TagClassifier
from leadflow.taxonomy import route_workflow

PROMPTS_DIR = BASE_DIR / "prompts"

LABELS_RE = re.compile(r"INPUT \(JSON list of option labels\):\s*(\[.*?\])\s*\n", re.DOTALL)


def labels_in_prompt(prompt: str) -> List[str]:
    """Recover the label list the classifier embedded in its prompt."""
    match = LABELS_RE.search(prompt)
    return json.loads(match.group(1)) if match else []


def tag_everything(tags: Dict[str, List[str]] = None, default=("optimization_ready", "low_risk")) -> Callable:
    """Classifier responder tagging every requested label, with per-label overrides."""
    overrides = tags or {}

    def _respond(prompt: str) -> Dict[str, Any]:
        return {
            "results": [
                {"label": label, "tags": list(overrides.get(label, default))}
                for label in labels_in_prompt(prompt)
            ]
        }

    return _respond


class FakeGeminiClient:
    """Scripted stand-in for GeminiClient keyed on the call label.

    Queued responses are consumed first; after that the default for the label is used.
    A response may be a dict, an Exception instance (raised) or a callable taking the prompt.
    """

    def __init__(self) -> None:
        self.queues: Dict[str, List[Any]] = {}
        self.defaults: Dict[str, Any] = {}
        self.calls: List[tuple] = []
        self.embed_calls: List[str] = []
        self._lock = threading.Lock()

    def queue(self, label: str, *responses: Any) -> None:
        self.queues.setdefault(label, []).extend(responses)

    def default(self, label: str, response: Any) -> None:
        self.defaults[label] = response

    def calls_for(self, label: str) -> List[str]:
        return [prompt for call_label, prompt in self.calls if call_label == label]

    def generate_json(self, prompt, label="", system_instruction=None, temperature=0.3, model=None):
        with self._lock:
            self.calls.append((label, prompt))
            if self.queues.get(label):
                response = self.queues[label].pop(0)
            elif label in self.defaults:
                response = self.defaults[label]
            else:
                raise GenerationError(f"no scripted response for {label}")
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(prompt)
        return copy.deepcopy(response)

    def embed_text(self, text: str) -> List[float]:
        with self._lock:
            self.embed_calls.append(text)
        return [float(len(text)), 1.0, 0.0]


class FakeVectorIndex:
    """In-memory VectorIndex with the same public surface."""

    def __init__(self) -> None:
        self.chunks: Dict[tuple, List[str]] = {}
        self.deleted: List[tuple] = []
        self.queries: List[tuple] = []

    def add_chunks(self, tenant_id, url, chunks, embeddings):
        if len(chunks) != len(embeddings):
            raise ValueError("chunks and embeddings must have the same length")
        self.chunks[(tenant_id, url)] = list(chunks)
        return len(chunks)

    def delete_page(self, tenant_id, url):
        self.deleted.append((tenant_id, url))
        self.chunks.pop((tenant_id, url), None)

    def query(self, vector, tenant_id, top_k=3):
        self.queries.append((tuple(vector), tenant_id, top_k))
        docs = [doc for (tenant, _), chunks in sorted(self.chunks.items()) if tenant == tenant_id for doc in chunks]
        return docs[:top_k]


def make_option(label: str, tags=("optimization_ready", "low_risk"), **extra) -> AnswerOption:
    tags = list(tags)
    return AnswerOption(label=label, tags=tags, workflow_class=route_workflow(tags), **extra)


def make_question(text: str, options: List[AnswerOption]) -> Question:
    return Question(question_text=text, options=options)


def make_section(name: str = "Scheduling", lead=None, sales=None, summary="Book meetings faster.") -> Section:
    return Section(
        section_name=name,
        section_summary=summary,
        section_content=f"{name} content body.",
        lead_questions=lead or [],
        sales_questions=sales or [],
    )


def make_summary(*sections: Section, business_name=None) -> StructuredSummary:
    return StructuredSummary(sections=list(sections), business_name=business_name)


@pytest.fixture
def prompts_dir():
    return PROMPTS_DIR


@pytest.fixture
def fake_client():
    return FakeGeminiClient()


@pytest.fixture
def fake_index():
    return FakeVectorIndex()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def classifier(fake_client, prompts_dir, sleeps):
    return TagClassifier(fake_client, prompts_dir, retry_policy=RetryPolicy(3, 1.0, sleep=sleeps.append))


@pytest.fixture
def normalizer(fake_client, prompts_dir, classifier, sleeps):
    return SummaryNormalizer(fake_client, prompts_dir, classifier, section_delay_sec=2.0, sleep=sleeps.append)


@pytest.fixture
def summary_store(tmp_path):
    return SummaryStore(tmp_path / "summaries.json")


@pytest.fixture
def session_store(tmp_path):
    return SessionStore(tmp_path / "sessions.json")


@pytest.fixture
def alert_log(tmp_path):
    return AlertLog(tmp_path / "alerts.json")
