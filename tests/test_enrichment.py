"""End-to-end tests for the post-crawl enrichment pipeline."""

import pytest
from conftest import tag_everything

from leadflow.enrichment import SummaryEnricher
from leadflow.gemini_client import GenerationError
from leadflow.taxonomy import is_valid_tag_pair

EXAMPLE_TEXT = (
    "[SECTION 1] Hero\nWe help teams schedule calls.\n\n"
    "[SECTION 2] Pricing\nFlexible plans for all sizes."
)
TENANT = "tenant-1"
URL = "https://example.com/"
METADATA = {
    "pageType": "Homepage",
    "businessVertical": "saas",
    "businessName": "Acme",
    "primaryFeatures": ["Call scheduling", " call  scheduling ", "Reminders", 7],
    "integrations": ["Google Calendar"],
    "trustSignals": "not a list",
}


def _questions_for(prompt: str):
    title = "Hero" if 'Section Title: "Hero"' in prompt else "Other"
    return {
        "sectionSummary": f"{title} summary",
        "leadQuestions": [
            {"question": f"{title}: how do you schedule calls?", "options": ["By email", "With a tool"]},
            {"question": f"{title}: who joins the calls?", "options": ["Just me", "My whole team"]},
        ],
        "salesQuestions": [
            {"question": f"{title}: when do you want to start?", "options": ["Now", "Later"]},
            {"question": f"{title}: how many seats?", "options": ["1-5", "6+"]},
        ],
    }


class BrokenIndex:
    def delete_page(self, tenant_id, url):
        raise RuntimeError("index unavailable")


@pytest.fixture
def enricher(fake_client, prompts_dir, summary_store, normalizer, fake_index):
    fake_client.default("page_metadata", METADATA)
    fake_client.default("section_questions", _questions_for)
    fake_client.default("tag_options", tag_everything())
    return SummaryEnricher(fake_client, prompts_dir, summary_store, normalizer, vector_index=fake_index)


class TestEnrichSummary:
    """Tests for enrich_summary."""

    def test_example_page_yields_two_structured_sections(self, enricher, summary_store):
        summary = enricher.enrich_summary(TENANT, URL, EXAMPLE_TEXT)

        assert [s.section_name for s in summary.sections] == ["Hero", "Pricing"]
        for section in summary.sections:
            assert len(section.lead_questions) == 2
            assert len(section.sales_questions) == 2
            for question in section.lead_questions + section.sales_questions:
                assert 2 <= len(question.options) <= 4
                assert all(is_valid_tag_pair(o.tags) for o in question.options)
        assert summary.page_type == "homepage"
        assert summary.business_name == "Acme"
        assert summary_store.latest(TENANT, URL).generation == 1

    def test_section_content_is_indexed_for_retrieval(self, enricher, fake_client, fake_index):
        enricher.enrich_summary(TENANT, URL, EXAMPLE_TEXT)

        assert fake_index.deleted == [(TENANT, URL)]
        assert fake_index.chunks[(TENANT, URL)] == ["We help teams schedule calls.", "Flexible plans for all sizes."]
        assert len(fake_client.embed_calls) == 2

    def test_recrawl_keeps_existing_questions_and_generates_only_new_sections(
        self, enricher, fake_client, summary_store
    ):
        first = enricher.enrich_summary(TENANT, URL, EXAMPLE_TEXT)
        calls_before = len(fake_client.calls_for("section_questions"))

        second = enricher.enrich_summary(
            TENANT, URL, EXAMPLE_TEXT + "\n\n[SECTION 3] Contact\nTalk to our team today."
        )

        assert len(fake_client.calls_for("section_questions")) == calls_before + 1
        assert second.sections[0].lead_questions == first.sections[0].lead_questions
        assert second.sections[2].section_name == "Contact"
        assert second.sections[2].lead_questions[0].question_text.startswith("Other:")
        assert summary_store.latest(TENANT, URL).generation == 2

    def test_metadata_failure_defaults_to_other(self, enricher, fake_client):
        fake_client.default("page_metadata", GenerationError("down"))

        summary = enricher.enrich_summary(TENANT, URL, EXAMPLE_TEXT)

        assert summary.page_type == "other"
        assert summary.business_vertical == "other"
        assert summary.business_name is None

    def test_index_failure_does_not_abort_enrichment(
        self, fake_client, prompts_dir, summary_store, normalizer, enricher
    ):
        broken = SummaryEnricher(
            fake_client, prompts_dir, summary_store, normalizer, vector_index=BrokenIndex()
        )

        summary = broken.enrich_summary(TENANT, URL, EXAMPLE_TEXT)

        assert len(summary.sections) == 2
        assert summary_store.latest(TENANT, URL) is not None

    def test_blank_text_stores_empty_summary(self, enricher):
        summary = enricher.enrich_summary(TENANT, URL, "   ")

        assert summary.sections == []

    def test_start_log_lists_the_steps(self, enricher, caplog):
        with caplog.at_level("INFO", logger="leadflow.enrichment"):
            enricher.enrich_summary(TENANT, URL, EXAMPLE_TEXT)

        assert "steps=segment,load_previous,page_metadata,reconcile_sections,index_content,persist" in caplog.text

    def test_default_threshold_keeps_example_sections_apart(self, fake_client, prompts_dir, summary_store, normalizer):
        fake_client.default("page_metadata", {})
        fake_client.default("section_questions", _questions_for)
        fake_client.default("tag_options", tag_everything())
        plain = SummaryEnricher(fake_client, prompts_dir, summary_store, normalizer)

        summary = plain.enrich_summary(TENANT, URL, EXAMPLE_TEXT)

        assert [s.section_name for s in summary.sections] == ["Hero", "Pricing"]
        assert all(len(s.lead_questions) == 2 and len(s.sales_questions) == 2 for s in summary.sections)


class TestPageInsights:
    """Tests for the business intelligence lists gathered with the page metadata."""

    def test_lists_are_cleaned(self, enricher):
        summary = enricher.enrich_summary(TENANT, URL, EXAMPLE_TEXT)

        assert summary.primary_features == ["Call scheduling", "Reminders"]
        assert summary.integrations == ["Google Calendar"]
        assert summary.trust_signals == []
        assert summary.pain_points_addressed == []

    def test_metadata_prompt_asks_for_insights(self, enricher, fake_client):
        enricher.enrich_summary(TENANT, URL, EXAMPLE_TEXT)

        prompt = fake_client.calls_for("page_metadata")[0]
        assert '"painPointsAddressed"' in prompt
        assert '"callsToAction"' in prompt
        assert "Hero, Pricing" in prompt

    def test_previous_lists_survive_an_empty_response(self, enricher, fake_client):
        enricher.enrich_summary(TENANT, URL, EXAMPLE_TEXT)
        fake_client.default("page_metadata", {"pageType": "pricing", "integrations": []})

        second = enricher.enrich_summary(TENANT, URL, EXAMPLE_TEXT)

        assert second.page_type == "pricing"
        assert second.business_name == "Acme"
        assert second.primary_features == ["Call scheduling", "Reminders"]
        assert second.integrations == ["Google Calendar"]

    def test_new_lists_replace_previous_ones(self, enricher, fake_client):
        enricher.enrich_summary(TENANT, URL, EXAMPLE_TEXT)
        fake_client.default("page_metadata", {"integrations": ["Outlook", "Zoom"]})

        second = enricher.enrich_summary(TENANT, URL, EXAMPLE_TEXT)

        assert second.integrations == ["Outlook", "Zoom"]
