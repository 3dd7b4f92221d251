from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Sequence

import aiohttp
import pytest

from photo_relay.app import RelayApp, order_history, resolve_channel
from photo_relay.config import RelayConfig
from photo_relay.ledger import DedupLedger
from photo_relay.models import (
    ChannelMapping,
    ContentKind,
    DeliveryResult,
    HistoryEntry,
    LedgerRecord,
    RelayOptions,
    SourceChannel,
    TelegramCredentials,
)
from photo_relay.telegram import SourceAuthError

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
HOOK = "https://example.com/hook"


def photo(
    item_id: int,
    *,
    caption: str | None = None,
    created_at: datetime | None = None,
) -> HistoryEntry:
    return HistoryEntry(
        item_id=item_id,
        created_at=created_at or NOW - timedelta(hours=1),
        content_kind=ContentKind.PHOTO,
        payload_ref=f"ref-{item_id}",
        caption=caption,
    )


class DummySource:
    def __init__(
        self,
        history: dict[str, Sequence[HistoryEntry]] | None = None,
        *,
        titles: Sequence[str] = ("X channel",),
        auth_error: Exception | None = None,
        history_error: Exception | None = None,
    ) -> None:
        self.history = history or {}
        self.titles = titles
        self.auth_error = auth_error
        self.history_error = history_error
        self.entered = False
        self.exited = False
        self.history_calls: list[tuple[Any, int]] = []
        self.fetched: list[Any] = []

    async def __aenter__(self) -> "DummySource":
        if self.auth_error is not None:
            raise self.auth_error
        self.entered = True
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.exited = True

    async def list_channels(self) -> list[SourceChannel]:
        return [SourceChannel(handle=title, title=title) for title in self.titles]

    async def fetch_history(self, handle: Any, limit: int) -> Sequence[HistoryEntry]:
        self.history_calls.append((handle, limit))
        if self.history_error is not None:
            raise self.history_error
        return self.history.get(handle, ())

    async def fetch_payload(self, payload_ref: Any) -> bytes:
        self.fetched.append(payload_ref)
        return b"jpeg-" + str(payload_ref).encode()


class DummyDestination:
    def __init__(self, failing_files: set[str] | None = None) -> None:
        self.failing_files = failing_files or set()
        self.posts: list[dict[str, Any]] = []

    async def post_photo(
        self,
        endpoint: str,
        payload: bytes,
        *,
        filename: str,
        caption: str | None = None,
    ) -> DeliveryResult:
        self.posts.append(
            {"endpoint": endpoint, "payload": payload, "filename": filename, "caption": caption}
        )
        if filename in self.failing_files:
            return DeliveryResult(ok=False, status=500, error="boom")
        return DeliveryResult(ok=True, status=200)


def make_config(tmp_path: Path, mappings: Sequence[ChannelMapping]) -> RelayConfig:
    return RelayConfig(
        credentials=TelegramCredentials(
            api_id=1,
            api_hash="hash",
            session_path=tmp_path / "session.session",
        ),
        mappings=list(mappings),
        ledger_path=tmp_path / "processed_cache.json",
        options=RelayOptions(pacing_delay=2.0),
    )


def make_app(
    config: RelayConfig,
    source: DummySource,
    destination: DummyDestination,
    pauses: list[float],
    *,
    crash_on_pause: bool = False,
    clock: Callable[[], datetime] | None = None,
) -> RelayApp:
    async def fake_sleep(delay: float) -> None:
        pauses.append(delay)
        if crash_on_pause:
            raise RuntimeError("simulated crash")

    def destination_factory(session: aiohttp.ClientSession, cfg: RelayConfig) -> DummyDestination:
        return destination

    return RelayApp(
        config,
        source_factory=lambda cfg: source,
        destination_factory=destination_factory,
        clock=clock or (lambda: NOW),
        sleep=fake_sleep,
    )


def read_ledger(tmp_path: Path) -> list[dict[str, str]]:
    return json.loads((tmp_path / "processed_cache.json").read_text(encoding="utf-8"))


def test_single_photo_scenario(tmp_path: Path) -> None:
    config = make_config(tmp_path, [ChannelMapping("X", HOOK)])
    source = DummySource({"X channel": [photo(10, caption="Match tonight")]})
    destination = DummyDestination()
    pauses: list[float] = []

    summary = asyncio.run(make_app(config, source, destination, pauses).run())

    assert len(destination.posts) == 1
    post = destination.posts[0]
    assert post["endpoint"] == HOOK
    assert post["caption"] == "Match tonight"
    assert post["payload"] == b"jpeg-ref-10"
    assert post["filename"] == "X_10.jpg"
    assert read_ledger(tmp_path) == [{"key": "X-10", "postedAt": "2024-06-01T12:00:00Z"}]
    assert summary.delivered == 1
    assert summary.delivered_keys == ["X-10"]
    assert pauses == [2.0]
    assert source.entered and source.exited
    assert source.history_calls == [("X channel", 100)]


def test_items_are_relayed_oldest_first(tmp_path: Path) -> None:
    config = make_config(tmp_path, [ChannelMapping("X", HOOK)])
    source = DummySource({"X channel": [photo(5), photo(1), photo(3)]})
    destination = DummyDestination()

    asyncio.run(make_app(config, source, destination, []).run())

    assert source.fetched == ["ref-1", "ref-3", "ref-5"]
    assert [record["key"] for record in read_ledger(tmp_path)] == ["X-1", "X-3", "X-5"]


def test_second_run_does_not_relay_again(tmp_path: Path) -> None:
    config = make_config(tmp_path, [ChannelMapping("X", HOOK)])
    history = {"X channel": [photo(10, caption="Match tonight")]}
    destination = DummyDestination()

    asyncio.run(make_app(config, DummySource(history), destination, []).run())
    summary = asyncio.run(make_app(config, DummySource(history), destination, []).run())

    assert len(destination.posts) == 1
    assert summary.delivered == 0
    assert summary.ineligible == 1
    assert [record["key"] for record in read_ledger(tmp_path)] == ["X-10"]


def test_crash_after_delivery_keeps_ledger_entry(tmp_path: Path) -> None:
    config = make_config(tmp_path, [ChannelMapping("X", HOOK)])
    history = {"X channel": [photo(1), photo(3)]}
    destination = DummyDestination()

    with pytest.raises(RuntimeError):
        asyncio.run(
            make_app(config, DummySource(history), destination, [], crash_on_pause=True).run()
        )

    assert [record["key"] for record in read_ledger(tmp_path)] == ["X-1"]

    resumed = DummySource(history)
    asyncio.run(make_app(config, resumed, destination, []).run())

    assert resumed.fetched == ["ref-3"]
    assert [post["filename"] for post in destination.posts] == ["X_1.jpg", "X_3.jpg"]


def test_failed_delivery_is_retried_next_run(tmp_path: Path) -> None:
    config = make_config(tmp_path, [ChannelMapping("X", HOOK)])
    history = {"X channel": [photo(1), photo(2)]}
    pauses: list[float] = []

    summary = asyncio.run(
        make_app(
            config, DummySource(history), DummyDestination({"X_1.jpg"}), pauses
        ).run()
    )

    assert summary.failed == 1
    assert summary.delivered == 1
    assert pauses == [2.0]
    assert [record["key"] for record in read_ledger(tmp_path)] == ["X-2"]

    retry = DummySource(history)
    asyncio.run(make_app(config, retry, DummyDestination(), []).run())
    assert retry.fetched == ["ref-1"]


def test_filters_old_and_non_photo_items(tmp_path: Path) -> None:
    config = make_config(tmp_path, [ChannelMapping("X", HOOK)])
    history = {
        "X channel": [
            photo(1, created_at=NOW - timedelta(days=1)),
            HistoryEntry(item_id=2, created_at=NOW, content_kind=ContentKind.OTHER),
            photo(3),
        ]
    }
    source = DummySource(history)

    summary = asyncio.run(make_app(config, source, DummyDestination(), []).run())

    assert source.fetched == ["ref-3"]
    assert summary.ineligible == 2


def test_unresolved_and_disabled_mappings_are_skipped(tmp_path: Path) -> None:
    config = make_config(
        tmp_path,
        [
            ChannelMapping("Missing", HOOK),
            ChannelMapping("Disabled", None),
            ChannelMapping("X", HOOK),
        ],
    )
    source = DummySource(
        {"X channel": [photo(1)], "Disabled channel": [photo(2)]},
        titles=("X channel", "Disabled channel"),
    )

    summary = asyncio.run(make_app(config, source, DummyDestination(), []).run())

    assert summary.channels_missing == 1
    assert summary.channels_skipped == 1
    assert summary.channels_processed == 1
    assert source.history_calls == [("X channel", 100)]
    assert [record["key"] for record in read_ledger(tmp_path)] == ["X-1"]


def test_history_error_skips_channel_only(tmp_path: Path) -> None:
    config = make_config(tmp_path, [ChannelMapping("X", HOOK)])
    source = DummySource(history_error=ConnectionError("timeout"))

    summary = asyncio.run(make_app(config, source, DummyDestination(), []).run())

    assert summary.channels_failed == 1
    assert summary.channels_skipped == 0
    assert summary.channels_processed == 0
    assert summary.delivered == 0
    assert source.exited


def test_no_enabled_mapping_skips_authentication(tmp_path: Path) -> None:
    config = make_config(tmp_path, [ChannelMapping("X", None)])
    source = DummySource(auth_error=SourceAuthError("should not connect"))

    summary = asyncio.run(make_app(config, source, DummyDestination(), []).run())

    assert summary.channels_skipped == 1
    assert source.entered is False
    assert read_ledger(tmp_path) == []


def test_authentication_failure_is_fatal(tmp_path: Path) -> None:
    config = make_config(tmp_path, [ChannelMapping("X", HOOK)])
    source = DummySource(auth_error=SourceAuthError("not authorized"))

    with pytest.raises(SourceAuthError):
        asyncio.run(make_app(config, source, DummyDestination(), []).run())


def test_expired_ledger_records_are_pruned(tmp_path: Path) -> None:
    ledger = DedupLedger(
        tmp_path / "processed_cache.json",
        [
            LedgerRecord("X-old", NOW - timedelta(days=4)),
            LedgerRecord("X-kept", NOW - timedelta(days=2)),
        ],
    )
    assert ledger.persist()
    config = make_config(tmp_path, [ChannelMapping("X", HOOK)])

    summary = asyncio.run(
        make_app(config, DummySource({"X channel": [photo(1)]}), DummyDestination(), []).run()
    )

    assert summary.pruned == 1
    assert [record["key"] for record in read_ledger(tmp_path)] == ["X-kept", "X-1"]


def test_resolve_channel_is_case_insensitive_substring() -> None:
    channels = [
        SourceChannel(handle=1, title="Daily Football on TV 📺"),
        SourceChannel(handle=2, title="Other"),
    ]

    found = resolve_channel(ChannelMapping("FOOTBALL ON TV", HOOK), channels)

    assert found is not None and found.handle == 1
    assert resolve_channel(ChannelMapping("Tennis", HOOK), channels) is None


def test_order_history_collapses_duplicates() -> None:
    entries = [photo(5, caption="first"), photo(1), photo(5, caption="second")]

    ordered = order_history(entries)

    assert [entry.item_id for entry in ordered] == [1, 5]
    assert ordered[1].caption == "first"


def test_today_is_evaluated_per_item_across_midnight(tmp_path: Path) -> None:
    # 22:59Z is 23:59 in London, 23:05Z is already 00:05 on the next day.
    instants = iter([datetime(2024, 6, 1, 22, 59, tzinfo=timezone.utc)])
    later = datetime(2024, 6, 1, 23, 5, tzinfo=timezone.utc)

    def clock() -> datetime:
        return next(instants, later)

    config = make_config(tmp_path, [ChannelMapping("X", HOOK)])
    history = {
        "X channel": [
            photo(1, created_at=datetime(2024, 6, 1, 22, 0, tzinfo=timezone.utc)),
            photo(2, created_at=datetime(2024, 6, 1, 23, 2, tzinfo=timezone.utc)),
        ]
    }
    source = DummySource(history)
    destination = DummyDestination()

    summary = asyncio.run(make_app(config, source, destination, [], clock=clock).run())

    assert [post["filename"] for post in destination.posts] == ["X_2.jpg"]
    assert summary.delivered == 1
    assert summary.ineligible == 1


def test_unwritable_ledger_does_not_stop_the_run(tmp_path: Path) -> None:
    config = make_config(tmp_path, [ChannelMapping("X", HOOK)])
    config.ledger_path.mkdir()
    source = DummySource({"X channel": [photo(1), photo(2), photo(1)]})
    destination = DummyDestination()
    pauses: list[float] = []

    summary = asyncio.run(make_app(config, source, destination, pauses).run())

    assert [post["filename"] for post in destination.posts] == ["X_1.jpg", "X_2.jpg"]
    assert summary.delivered == 2
    assert summary.delivered_keys == ["X-1", "X-2"]
    assert summary.failed == 0
    assert pauses == [2.0, 2.0]
    assert config.ledger_path.is_dir()
