from catalog_scraper.engine.extraction import ExtractionPipeline, SeenRegistry
from catalog_scraper.models import CandidateRecord
from catalog_scraper.sites.base import ListingItem
from tests.fakes import BASE, FakeAdapter, FakeShop

SEED = f"{BASE}/list/women"


def _pipeline():
    return ExtractionPipeline(FakeAdapter(FakeShop()), "exec")


def test_placeholders_are_skipped_and_urls_resolved():
    items = [
        ListingItem(url=None, position=0, placeholder=True),
        ListingItem(url="/p/a-1?ref=grid", position=1, fields={"name": "A"}),
        ListingItem(url="/p/a-2", position=2, placeholder=True),
    ]
    candidates = _pipeline().to_candidates(items, page_url=SEED, seed=SEED, batch_attributes={})
    assert [c.url for c in candidates] == [f"{BASE}/p/a-1?ref=grid"]
    assert candidates[0].external_key == f"{BASE}/p/a-1"
    assert candidates[0].source == "fake"


def test_duplicate_keys_and_positions_are_dropped_per_seed():
    seen = SeenRegistry()
    pipeline = _pipeline()
    first = pipeline.to_candidates(
        [ListingItem(url="/p/a-1", position=1), ListingItem(url="/p/a-2", position=2)],
        page_url=SEED,
        seed=SEED,
        batch_attributes={},
        seen=seen,
    )
    second = pipeline.to_candidates(
        [
            ListingItem(url="/p/a-1", position=1),
            ListingItem(url="/p/a-9", position=2),
            ListingItem(url="/p/a-3", position=3),
        ],
        page_url=SEED,
        seed=SEED,
        batch_attributes={},
        seen=seen,
    )
    other_seed = pipeline.to_candidates(
        [ListingItem(url="/p/b-1", position=1)],
        page_url=f"{BASE}/list/men",
        seed=f"{BASE}/list/men",
        batch_attributes={},
        seen=seen,
    )
    assert len(first) == 2
    assert [c.url for c in second] == [f"{BASE}/p/a-3"]
    assert [c.url for c in other_seed] == [f"{BASE}/p/b-1"]
    assert len(seen) == 4


def test_batch_attributes_fill_only_missing_values():
    items = [
        ListingItem(url="/p/a-1", fields={"gender": "men"}),
        ListingItem(url="/p/a-2", fields={"gender": ""}),
    ]
    candidates = _pipeline().to_candidates(items, page_url=SEED, seed=SEED, batch_attributes={"gender": "women"})
    assert [c.fields["gender"] for c in candidates] == ["men", "women"]


def test_missing_expected_fields_are_reported_not_raised(caplog):
    candidate = CandidateRecord(url=f"{BASE}/p/a-1", external_key="k", source="fake", fields={"name": "A"})
    with caplog.at_level("WARNING"):
        record = _pipeline().build_detail(candidate, {"sku": None, "color": "red"})
    assert record.missing_fields == ["sku"]
    assert record.fields == {"name": "A", "sku": None, "color": "red"}
    assert record.execution_id == "exec"
    assert "Field 'sku' missing" in caplog.text


def test_list_record_keeps_candidate_fields():
    candidate = CandidateRecord(url=f"{BASE}/p/a-1", external_key="k", source="fake", fields={"name": "A"})
    record = _pipeline().list_record(candidate)
    assert record.fields == {"name": "A"}
    assert record.missing_fields == []
