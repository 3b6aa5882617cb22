"""Batched existence check against the external catalog service."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random

from ..antibot.retry import CircuitBreaker, CircuitBreakerConfig, CircuitOpenError
from ..errors import DedupServiceError

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(10.0)


@dataclass
class DedupResult:
    new_urls: List[str] = field(default_factory=list)
    existing_urls: Set[str] = field(default_factory=set)
    degraded: bool = False


class DedupGateway:
    """Drops URLs the catalog already knows; fails open on any error.

    ``POST {"urls": [...], "source": site_id}`` -> ``{"existingUrls": [...]}``.
    """

    def __init__(
        self,
        endpoint: Optional[str],
        source: str,
        *,
        batch_size: int = 50,
        token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        attempts: int = 2,
        retry_wait: Tuple[float, float] = (0.5, 1.5),
        breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self.endpoint = endpoint
        self.source = source
        self.batch_size = max(1, batch_size)
        self.attempts = attempts
        self.retry_wait = retry_wait
        headers: Dict[str, str] = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT, headers=headers)
        self._owns_client = client is None
        self.breaker = breaker or CircuitBreaker(
            CircuitBreakerConfig(failure_threshold=3, expected_exceptions=(DedupServiceError,))
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, batch: Sequence[str]) -> Set[str]:
        try:
            response = await self._client.post(self.endpoint, json={"urls": list(batch), "source": self.source})
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as exc:
            raise DedupServiceError(f"Dedup request failed: {exc}") from exc
        except ValueError as exc:
            raise DedupServiceError(f"Dedup response is not JSON: {exc}") from exc
        existing = body.get("existingUrls") if isinstance(body, dict) else None
        if not isinstance(existing, list):
            raise DedupServiceError("Dedup response has no existingUrls list")
        return {url for url in existing if isinstance(url, str)}

    async def _check_batch(self, batch: Sequence[str]) -> Set[str]:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_random(*self.retry_wait),
            retry=retry_if_exception_type(DedupServiceError),
            reraise=True,
        ):
            with attempt:
                return await self.breaker.call(self._post, batch)
        raise DedupServiceError("unreachable")  # pragma: no cover

    async def filter_new(self, urls: Sequence[str]) -> DedupResult:
        """Split ``urls`` into new and already-known, preserving input order."""
        unique = list(dict.fromkeys(urls))
        if not self.endpoint or not unique:
            return DedupResult(new_urls=unique)

        result = DedupResult()
        for start in range(0, len(unique), self.batch_size):
            batch = unique[start:start + self.batch_size]
            try:
                existing = await self._check_batch(batch)
            except (DedupServiceError, CircuitOpenError) as exc:
                LOGGER.warning(
                    "Dedup check degraded for %d URL(s), treating all as new: %s",
                    len(batch),
                    exc,
                )
                result.degraded = True
                existing = set()
            result.existing_urls.update(url for url in batch if url in existing)
            result.new_urls.extend(url for url in batch if url not in existing)

        LOGGER.info(
            "Dedup: %d new, %d already known%s",
            len(result.new_urls),
            len(result.existing_urls),
            " (degraded)" if result.degraded else "",
        )
        return result
