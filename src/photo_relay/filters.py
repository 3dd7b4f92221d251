"""Eligibility rules applied before relaying an item."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo

from .ledger import DedupLedger
from .models import CandidateItem, ContentKind
from .utils import as_local_time, resolve_timezone


@dataclass(slots=True)
class FilterDecision:
    """Result of evaluating filters."""

    allowed: bool
    reason: str | None = None


class EligibilityFilter:
    """Decide whether a candidate item should be relayed.

    Rules are applied in order and stop at the first failure: the item must be
    a photo, its local calendar day must fall inside the recency window that
    ends on the reference day, and its key must be absent from the ledger.
    ``recency_days`` of ``0`` disables the recency rule.
    """

    def __init__(self, zone: tzinfo | str, recency_days: int = 1):
        self._zone = resolve_timezone(zone) if isinstance(zone, str) else zone
        self._recency_days = max(0, int(recency_days))

    def evaluate(
        self,
        item: CandidateItem,
        ledger: DedupLedger,
        reference_now: datetime,
    ) -> FilterDecision:
        if item.content_kind is not ContentKind.PHOTO:
            return FilterDecision(False, "not_photo")

        if self._recency_days:
            reference_day = as_local_time(reference_now, self._zone).date()
            item_day = as_local_time(item.created_at, self._zone).date()
            earliest = reference_day - timedelta(days=self._recency_days - 1)
            if not earliest <= item_day <= reference_day:
                return FilterDecision(False, "outside_window")

        if ledger.contains(item.dedup_key):
            return FilterDecision(False, "already_relayed")

        return FilterDecision(True)

    def is_eligible(
        self,
        item: CandidateItem,
        ledger: DedupLedger,
        reference_now: datetime,
    ) -> bool:
        return self.evaluate(item, ledger, reference_now).allowed
