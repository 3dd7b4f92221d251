"""Data models used across the relay service."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any


class ContentKind(str, Enum):
    """Kind of media attached to a source message."""

    PHOTO = "photo"
    OTHER = "other"


class DispatchOutcome(str, Enum):
    DELIVERED = "delivered"
    SKIPPED = "skipped"
    FAILED = "failed"


def build_dedup_key(channel_name: str, item_id: int) -> str:
    """Return the ledger key for ``item_id`` relayed through ``channel_name``."""

    return f"{channel_name}-{item_id}"


@dataclass(slots=True, frozen=True)
class ChannelMapping:
    """Pairing of a Telegram channel with a Discord webhook."""

    logical_name: str
    destination_endpoint: str | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.destination_endpoint)

    def matches(self, title: str | None) -> bool:
        if not title:
            return False
        return self.logical_name.casefold() in title.casefold()


@dataclass(slots=True)
class TelegramCredentials:
    """Telegram user account access."""

    api_id: int
    api_hash: str
    session_path: Path
    phone: str | None = None
    session_blob: bytes | None = field(default=None, repr=False)


@dataclass(slots=True)
class RelayOptions:
    """Tunable behaviour of a relay run."""

    history_limit: int = 100
    pacing_delay: float = 2.0
    retention: timedelta = timedelta(days=3)
    recency_days: int = 1
    timezone: str = "Europe/London"
    caption_limit: int = 2000
    caption_keep: int = 1990
    ellipsis: str = "..."
    request_timeout: float = 30.0


@dataclass(slots=True)
class SourceChannel:
    """Channel visible to the source account."""

    handle: Any
    title: str


@dataclass(slots=True)
class HistoryEntry:
    """Subset of a source message used by the relay."""

    item_id: int
    created_at: datetime
    content_kind: ContentKind
    payload_ref: Any = None
    caption: str | None = None


@dataclass(slots=True)
class CandidateItem:
    """History entry bound to the mapping it was read through."""

    channel_name: str
    item_id: int
    created_at: datetime
    content_kind: ContentKind
    payload_ref: Any = None
    caption: str | None = None

    @classmethod
    def from_entry(cls, channel_name: str, entry: HistoryEntry) -> "CandidateItem":
        return cls(
            channel_name=channel_name,
            item_id=entry.item_id,
            created_at=entry.created_at,
            content_kind=entry.content_kind,
            payload_ref=entry.payload_ref,
            caption=entry.caption,
        )

    @property
    def dedup_key(self) -> str:
        return build_dedup_key(self.channel_name, self.item_id)


@dataclass(slots=True, frozen=True)
class LedgerRecord:
    """Relayed item key and the moment it was delivered."""

    key: str
    posted_at: datetime


@dataclass(slots=True)
class DeliveryResult:
    """Outcome of a webhook upload attempt."""

    ok: bool
    status: int | None = None
    error: str | None = None


@dataclass(slots=True)
class DispatchResult:
    outcome: DispatchOutcome
    reason: str | None = None

    @property
    def delivered(self) -> bool:
        return self.outcome is DispatchOutcome.DELIVERED


@dataclass(slots=True)
class RunSummary:
    """Counters collected during one run."""

    pruned: int = 0
    channels_processed: int = 0
    channels_skipped: int = 0
    channels_missing: int = 0
    channels_failed: int = 0
    ineligible: int = 0
    delivered: int = 0
    skipped: int = 0
    failed: int = 0
    delivered_keys: list[str] = field(default_factory=list)

    def record(self, item: CandidateItem, result: DispatchResult) -> None:
        if result.outcome is DispatchOutcome.DELIVERED:
            self.delivered += 1
            self.delivered_keys.append(item.dedup_key)
        elif result.outcome is DispatchOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
