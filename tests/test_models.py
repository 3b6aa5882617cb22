from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from catalog_scraper.models import (
    CandidateRecord,
    Credentials,
    ExecutionContext,
    LabeledRequest,
    RequestLabel,
    RunSummary,
    StopReason,
    merge_fields,
)


def test_merge_detail_wins_on_conflict():
    merged = merge_fields({"name": "List name", "color": "red"}, {"name": "Detail name"})
    assert merged["name"] == "Detail name"
    assert merged["color"] == "red"


def test_merge_empty_detail_values_never_erase_list_values():
    list_fields = {"sizes": ["S", "M"], "brand": "Acme", "gender": "women"}
    detail_fields = {"sizes": [], "brand": "", "gender": None, "sku": "p001"}
    merged = merge_fields(list_fields, detail_fields)
    assert merged == {"sizes": ["S", "M"], "brand": "Acme", "gender": "women", "sku": "p001"}


def test_merge_keeps_empty_detail_value_for_new_key():
    merged = merge_fields({"name": "x"}, {"tags": []})
    assert merged["tags"] == []


def test_candidate_promote_merges_and_tags_execution():
    candidate = CandidateRecord(
        url="https://shop.test/p/1",
        external_key="https://shop.test/p/1",
        source="fake",
        fields={"name": "List", "image": "thumb.jpg"},
    )
    record = candidate.promote({"name": "Detail", "image": None}, execution_id="exec-1")
    assert record.fields == {"name": "Detail", "image": "thumb.jpg"}
    assert record.execution_id == "exec-1"
    assert record.scraped_at.tzinfo is not None


def test_labeled_request_default_unique_key():
    request = LabeledRequest(url="https://shop.test/list", label=RequestLabel.LIST)
    assert request.unique_key == "LIST:https://shop.test/list"
    explicit = LabeledRequest(url="https://shop.test/login", label=RequestLabel.LOGIN, unique_key="LOGIN:relogin-1")
    assert explicit.unique_key == "LOGIN:relogin-1"


def test_execution_context_accepts_camel_case_and_is_frozen():
    context = ExecutionContext.model_validate(
        {
            "siteId": "mytheresa",
            "startUrls": [" https://www.mytheresa.com/us/en/women/clothing ", ""],
            "options": {"maxProducts": 5, "maxConcurrency": 1},
        }
    )
    assert context.start_urls == ["https://www.mytheresa.com/us/en/women/clothing"]
    assert context.options.max_products == 5
    assert context.options.max_load_clicks == 10
    assert len(context.execution_id) == 32
    with pytest.raises(ValidationError):
        context.site_id = "other"


def test_concurrency_bounds_are_validated():
    with pytest.raises(ValidationError):
        ExecutionContext(site_id="fake", options={"max_concurrency": 0})


def test_credentials_repr_hides_password():
    creds = Credentials(username="Buyer@Example.com", password="hunter2")
    assert "hunter2" not in repr(creds)
    assert creds.identity == "buyer@example.com"


def test_run_summary_event_uses_camel_case():
    now = datetime.now(timezone.utc)
    summary = RunSummary(
        execution_id="e1",
        site_id="fake",
        successful_tasks=3,
        stop_reason=StopReason.BUDGET_EXHAUSTED,
        started_at=now,
        finished_at=now,
    )
    event = summary.to_event()
    assert event["type"] == "completed"
    assert event["summary"]["successfulTasks"] == 3
    assert event["summary"]["stopReason"] == "budget_exhausted"
