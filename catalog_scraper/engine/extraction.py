"""List/detail extraction pipeline and session-local deduplication."""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urljoin

from ..errors import ExtractionFieldMissing
from ..models import CandidateRecord, DetailRecord, is_empty
from ..sites.base import ListingItem, SiteAdapter

LOGGER = logging.getLogger(__name__)


class SeenRegistry:
    """Session-local identity registry: URL keys and per-seed positions."""

    def __init__(self) -> None:
        self._keys: set[str] = set()
        self._positions: set[Tuple[str, int]] = set()

    def __contains__(self, key: str) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def claim(self, key: str, *, seed: Optional[str] = None, position: Optional[int] = None) -> bool:
        """Mark an item seen. Returns ``False`` if the key or position was already claimed."""
        if key in self._keys:
            return False
        if position is not None and (seed or "*", position) in self._positions:
            return False
        self._keys.add(key)
        if position is not None:
            self._positions.add((seed or "*", position))
        return True

    def mark(self, keys: Iterable[str]) -> None:
        self._keys.update(keys)


class ExtractionPipeline:
    """Turns adapter output into candidate and detail records."""

    def __init__(self, adapter: SiteAdapter, execution_id: str) -> None:
        self.adapter = adapter
        self.execution_id = execution_id

    def to_candidates(
        self,
        items: Sequence[ListingItem],
        *,
        page_url: str,
        seed: Optional[str],
        batch_attributes: Dict[str, Any],
        seen: Optional[SeenRegistry] = None,
    ) -> List[CandidateRecord]:
        """Drop placeholders and already-seen cards, then apply batch attributes.

        ``seen`` is claimed for every returned candidate, so passing the same
        registry across load-more batches yields only new cards.
        """
        seen = seen if seen is not None else SeenRegistry()
        candidates: List[CandidateRecord] = []
        skipped = 0
        for item in items:
            if item.placeholder or not item.url:
                skipped += 1
                continue
            url = urljoin(page_url, item.url)
            key = self.adapter.external_key(url)
            if not seen.claim(key, seed=seed, position=item.position):
                continue
            fields = dict(item.fields)
            for name, value in batch_attributes.items():
                if is_empty(fields.get(name)):
                    fields[name] = value
            candidates.append(
                CandidateRecord(
                    url=url,
                    external_key=key,
                    source=self.adapter.site_id,
                    position=item.position,
                    origin_url=seed,
                    fields=fields,
                )
            )
        if skipped:
            LOGGER.debug("Skipped %d placeholder card(s) on %s", skipped, page_url)
        return candidates

    def build_detail(self, candidate: CandidateRecord, detail_fields: Dict[str, Any]) -> DetailRecord:
        """Merge detail fields onto the candidate; missing expected fields are warnings."""
        record = candidate.promote(detail_fields, execution_id=self.execution_id)
        missing = [name for name in self.adapter.expected_detail_fields if is_empty(record.fields.get(name))]
        for name in missing:
            LOGGER.warning("%s", ExtractionFieldMissing(name, candidate.url))
        record.missing_fields = missing
        return record

    def list_record(self, candidate: CandidateRecord) -> DetailRecord:
        """Emit a list-stage candidate directly when detail pages are skipped."""
        return candidate.promote({}, execution_id=self.execution_id)
