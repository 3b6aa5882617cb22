"""Execution-scoped mutable state, changed only by the dispatcher."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..models import DetailRecord, LabeledRequest, StopReason
from .budget import BudgetController
from .extraction import SeenRegistry

LOGGER = logging.getLogger(__name__)


@dataclass
class RunState:
    execution_id: str
    budget: BudgetController
    seen: SeenRegistry = field(default_factory=SeenRegistry)
    records: Dict[str, DetailRecord] = field(default_factory=dict)
    failed_requests: List[LabeledRequest] = field(default_factory=list)
    succeeded: int = 0
    retried: int = 0
    relogins: int = 0
    stop_reason: Optional[StopReason] = None
    error: Optional[str] = None

    def add_record(self, record: DetailRecord) -> bool:
        """Accumulate a record once per external key."""
        if record.external_key in self.records:
            LOGGER.debug("Record %s already collected", record.external_key)
            return False
        self.records[record.external_key] = record
        return True

    def stop(self, reason: StopReason, error: Optional[str] = None) -> bool:
        """Record why the run stopped. The first reason wins."""
        if self.stop_reason is not None:
            return False
        self.stop_reason = reason
        self.error = error
        return True
