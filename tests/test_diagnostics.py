"""Tests for diagnostic content generation and fan-out."""

import re
import threading
import time

import pytest
from conftest import make_option, make_question, make_section, make_summary

from leadflow.diagnostics import DiagnosticGenerator, WORKFLOW_TEMPLATES
from leadflow.gemini_client import GenerationError
from leadflow.models import WorkflowClass

TENANT = "tenant-1"
PAGE_A = "https://example.com/a"
PAGE_B = "https://example.com/b"
LABEL_RE = re.compile(r"^label: (.*)$", re.MULTILINE)


def _label(prompt: str) -> str:
    return LABEL_RE.search(prompt).group(1)


def _answer(prompt: str):
    return {"diagnostic_answer": f"Diagnosis for {_label(prompt)}."}


ACTIONS = {
    "diagnostic_options": [
        "Automate every single booking reminder today",
        "Sync calendars",
        "sync calendars",
        "Route leads",
        "Score intent",
        "One too many",
    ]
}
DETAILS = {
    "diagnostic_option_details": [
        {"label": "sync calendars", "answer": "The system does not wait for double bookings."},
        {"label": "Unrelated", "answer": "Ignored."},
        {"label": "Route leads"},
    ]
}


def _all_options(store, tenant=TENANT):
    for record in store.find_by_tenant(tenant):
        for section in record.summary.sections:
            for question in section.lead_questions + section.sales_questions:
                for option in question.options:
                    yield record, option


@pytest.fixture
def populated_store(summary_store):
    page_a = make_section(
        "Scheduling",
        lead=[
            make_question(
                "How do you book calls?",
                [
                    make_option("Spreadsheets", ("manual_scheduling", "low_risk")),
                    make_option("Not sure", ("unknown_state", "low_risk")),
                ],
            )
        ],
    )
    page_b = make_section(
        "Pricing",
        sales=[
            make_question(
                "What happens today?",
                [
                    make_option("Spreadsheets", ("manual_scheduling", "low_risk")),
                    make_option("We lose deals", ("pipeline_leakage", "critical_risk")),
                ],
            )
        ],
    )
    summary_store.insert(TENANT, PAGE_A, make_summary(page_a, business_name="Acme"))
    summary_store.insert(TENANT, PAGE_B, make_summary(page_b))
    summary_store.insert("other-tenant", PAGE_A, make_summary(page_a))
    return summary_store


@pytest.fixture
def generator(fake_client, prompts_dir, populated_store, fake_index):
    fake_client.default("diagnostic_answer", _answer)
    fake_client.default("diagnostic_actions", ACTIONS)
    fake_client.default("diagnostic_action_details", DETAILS)
    fake_index.add_chunks(TENANT, PAGE_A, ["Acme books meetings automatically."], [[1.0, 0.0, 0.0]])
    return DiagnosticGenerator(fake_client, prompts_dir, populated_store, vector_index=fake_index, batch_size=2)


class TestGenerateDiagnosticContent:
    """Tests for generate_diagnostic_content."""

    def test_one_generation_per_unique_pair(self, generator, fake_client):
        updated = generator.generate_diagnostic_content(TENANT)

        answered = sorted(_label(p) for p in fake_client.calls_for("diagnostic_answer"))
        assert answered == ["Not sure", "Spreadsheets", "We lose deals"]
        assert updated == 2

    def test_identical_pairs_share_identical_content(self, generator, populated_store):
        generator.generate_diagnostic_content(TENANT)

        spreadsheets = [o for _, o in _all_options(populated_store) if o.label == "Spreadsheets"]
        assert len(spreadsheets) == 2
        assert spreadsheets[0].diagnostic_answer == "Diagnosis for Spreadsheets."
        assert spreadsheets[0].model_dump() == spreadsheets[1].model_dump()

    def test_actions_are_shortened_deduplicated_and_capped(self, generator, populated_store):
        generator.generate_diagnostic_content(TENANT)

        option = next(o for _, o in _all_options(populated_store) if o.label == "We lose deals")
        assert option.diagnostic_actions == [
            "Automate every single booking reminder",
            "Sync calendars",
            "Route leads",
            "Score intent",
        ]
        assert [(d.label, d.narrative) for d in option.diagnostic_action_details] == [
            ("Sync calendars", "The system does not wait for double bookings.")
        ]

    def test_context_and_template_reach_the_prompt(self, generator, fake_client, fake_index):
        generator.generate_diagnostic_content(TENANT)

        prompt = next(p for p in fake_client.calls_for("diagnostic_answer") if _label(p) == "We lose deals")
        assert "Acme books meetings automatically." in prompt
        assert WORKFLOW_TEMPLATES[WorkflowClass.SALES_ALERT] in prompt
        assert "Acme" in prompt
        assert "We lose deals" in fake_client.embed_calls
        assert all(tenant == TENANT for _, tenant, _ in fake_index.queries)

    def test_summaries_are_stamped(self, generator, populated_store):
        generator.generate_diagnostic_content(TENANT)

        assert all(r.diagnostic_generated_at for r in populated_store.find_by_tenant(TENANT))
        assert populated_store.find_by_tenant("other-tenant")[0].diagnostic_generated_at is None

    def test_failed_answer_skips_later_steps(self, generator, fake_client, populated_store):
        fake_client.default("diagnostic_answer", GenerationError("down"))

        updated = generator.generate_diagnostic_content(TENANT)

        assert updated == 0
        assert fake_client.calls_for("diagnostic_actions") == []
        assert fake_client.calls_for("diagnostic_action_details") == []
        assert all(o.diagnostic_answer is None for _, o in _all_options(populated_store))

    def test_existing_content_is_reused(self, generator, fake_client):
        generator.generate_diagnostic_content(TENANT)
        first_calls = len(fake_client.calls_for("diagnostic_answer"))

        updated = generator.generate_diagnostic_content(TENANT)

        assert updated == 0
        assert len(fake_client.calls_for("diagnostic_answer")) == first_calls

    def test_regenerate_forces_new_content(self, generator, fake_client, populated_store):
        generator.generate_diagnostic_content(TENANT)
        fake_client.default("diagnostic_answer", {"diagnostic_answer": "Fresh take."})

        generator.generate_diagnostic_content(TENANT, regenerate=True)

        assert {o.diagnostic_answer for _, o in _all_options(populated_store)} == {"Fresh take."}

    def test_page_filter_limits_generation_but_fans_out_tenant_wide(self, generator, fake_client, populated_store):
        generator.generate_diagnostic_content(TENANT, page_url_filter=PAGE_A)

        answered = sorted(_label(p) for p in fake_client.calls_for("diagnostic_answer"))
        assert answered == ["Not sure", "Spreadsheets"]
        page_b_options = {
            o.label: o for r, o in _all_options(populated_store) if r.url == PAGE_B
        }
        assert page_b_options["Spreadsheets"].diagnostic_answer == "Diagnosis for Spreadsheets."
        assert page_b_options["We lose deals"].diagnostic_answer is None

    def test_unknown_tenant_is_a_no_op(self, generator, fake_client):
        assert generator.generate_diagnostic_content("nobody") == 0
        assert fake_client.calls == []

    def test_batch_size_must_be_positive(self, fake_client, prompts_dir, summary_store):
        with pytest.raises(ValueError):
            DiagnosticGenerator(fake_client, prompts_dir, summary_store, batch_size=0)

    def test_too_few_actions_skip_the_narratives(self, generator, fake_client, populated_store):
        fake_client.default("diagnostic_actions", {"diagnostic_options": ["Sync calendars", "Route leads"]})

        generator.generate_diagnostic_content(TENANT)

        option = next(o for _, o in _all_options(populated_store) if o.label == "We lose deals")
        assert option.diagnostic_answer == "Diagnosis for We lose deals."
        assert option.diagnostic_actions == []
        assert option.diagnostic_action_details is None
        assert fake_client.calls_for("diagnostic_action_details") == []


class ItemTimeline:
    """Records when each item's generation chain starts and finishes."""

    def __init__(self, hold: float = 0.1) -> None:
        self.hold = hold
        self.events = []
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def answer(self, prompt):
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
            self.events.append(("start", _label(prompt)))
        time.sleep(self.hold)
        return _answer(prompt)

    def details(self, prompt):
        with self._lock:
            self.active -= 1
            self.events.append(("end", _label(prompt)))
        return DETAILS


class TestBatching:
    """Tests for the bounded, batch-by-batch execution of diagnostic items."""

    LABELS = ["Spreadsheets", "A scheduling tool", "Paper forms", "Nothing yet", "We lose deals"]

    @pytest.fixture
    def timeline(self, fake_client, prompts_dir, summary_store):
        options = [make_option(label, ("manual_scheduling", "low_risk")) for label in self.LABELS]
        section = make_section(
            "Scheduling",
            lead=[make_question("How do you book calls?", options[:3])],
            sales=[make_question("What happens today?", options[3:])],
        )
        summary_store.insert(TENANT, PAGE_A, make_summary(section))
        recorder = ItemTimeline()
        fake_client.default("diagnostic_answer", recorder.answer)
        fake_client.default("diagnostic_actions", ACTIONS)
        fake_client.default("diagnostic_action_details", recorder.details)
        return recorder

    def test_in_flight_items_never_exceed_batch_size(self, fake_client, prompts_dir, summary_store, timeline):
        generator = DiagnosticGenerator(fake_client, prompts_dir, summary_store, batch_size=2)

        generator.generate_diagnostic_content(TENANT)

        assert timeline.peak == 2
        assert sorted(label for kind, label in timeline.events if kind == "start") == sorted(self.LABELS)

    def test_each_batch_finishes_before_the_next_starts(self, fake_client, prompts_dir, summary_store, timeline):
        generator = DiagnosticGenerator(fake_client, prompts_dir, summary_store, batch_size=2)

        generator.generate_diagnostic_content(TENANT)

        starts = [label for kind, label in timeline.events if kind == "start"]
        batches = [starts[i : i + 2] for i in range(0, len(starts), 2)]
        assert [len(batch) for batch in batches] == [2, 2, 1]
        for previous, current in zip(batches, batches[1:]):
            last_end = max(timeline.events.index(("end", label)) for label in previous)
            first_start = min(timeline.events.index(("start", label)) for label in current)
            assert last_end < first_start

    def test_default_batch_size_is_five(self, fake_client, prompts_dir, summary_store, timeline):
        DiagnosticGenerator(fake_client, prompts_dir, summary_store).generate_diagnostic_content(TENANT)

        assert timeline.peak == 5
        assert [kind for kind, _ in timeline.events[:5]] == ["start"] * 5
