"""Single relay run from Telegram channels to Discord webhooks."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

import aiohttp

from .config import RelayConfig
from .discord import DestinationProtocol, DiscordWebhook
from .dispatcher import RelayDispatcher
from .filters import EligibilityFilter
from .ledger import DedupLedger
from .models import CandidateItem, ChannelMapping, HistoryEntry, RunSummary, SourceChannel
from .telegram import SourceProtocol, TelegramSource
from .utils import RateLimiter, SleepFunc

logger = logging.getLogger(__name__)

SourceFactory = Callable[[RelayConfig], SourceProtocol]
DestinationFactory = Callable[[aiohttp.ClientSession, RelayConfig], DestinationProtocol]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _default_source_factory(config: RelayConfig) -> SourceProtocol:
    return TelegramSource(config.credentials)


def _default_destination_factory(
    session: aiohttp.ClientSession, config: RelayConfig
) -> DestinationProtocol:
    return DiscordWebhook(session, timeout=config.options.request_timeout)


def resolve_channel(
    mapping: ChannelMapping, channels: Sequence[SourceChannel]
) -> SourceChannel | None:
    for channel in channels:
        if mapping.matches(channel.title):
            return channel
    return None


def order_history(entries: Sequence[HistoryEntry]) -> list[HistoryEntry]:
    """Return entries oldest first with repeated ids collapsed."""

    unique: dict[int, HistoryEntry] = {}
    for entry in entries:
        unique.setdefault(entry.item_id, entry)
    return sorted(unique.values(), key=lambda entry: entry.item_id)


@dataclass(slots=True)
class RunContext:
    """State owned by one run."""

    ledger: DedupLedger
    dispatcher: RelayDispatcher
    eligibility: EligibilityFilter
    channels: Sequence[SourceChannel]
    clock: Callable[[], datetime]
    summary: RunSummary


class RelayApp:
    """High level coordinator tying together Telegram, Discord and the ledger."""

    def __init__(
        self,
        config: RelayConfig,
        *,
        source_factory: SourceFactory | None = None,
        destination_factory: DestinationFactory | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: SleepFunc | None = None,
    ):
        self._config = config
        self._source_factory = source_factory or _default_source_factory
        self._destination_factory = destination_factory or _default_destination_factory
        self._clock = clock or _utcnow
        self._sleep = sleep or asyncio.sleep

    async def run(self) -> RunSummary:
        config = self._config
        summary = RunSummary()
        ledger = DedupLedger.load(config.ledger_path)
        summary.pruned = ledger.prune(self._clock(), config.options.retention)
        if summary.pruned:
            logger.info("Из журнала удалено устаревших записей: %d", summary.pruned)

        for mapping in config.mappings:
            if not mapping.enabled:
                logger.info("Пропускаем %s: webhook не задан", mapping.logical_name)
                summary.channels_skipped += 1
        enabled = config.enabled_mappings
        if not enabled:
            logger.warning("Нет каналов с настроенным webhook, завершаем работу")
            return summary

        async with aiohttp.ClientSession() as session:
            destination = self._destination_factory(session, config)
            async with self._source_factory(config) as source:
                channels = await source.list_channels()
                context = RunContext(
                    ledger=ledger,
                    dispatcher=RelayDispatcher(
                        source,
                        destination,
                        ledger,
                        RateLimiter(config.options.pacing_delay, sleep=self._sleep),
                        options=config.options,
                        clock=self._clock,
                    ),
                    eligibility=EligibilityFilter(
                        config.options.timezone, config.options.recency_days
                    ),
                    channels=channels,
                    clock=self._clock,
                    summary=summary,
                )
                for mapping in enabled:
                    await self._process_mapping(context, source, mapping)

        logger.info(
            "Готово: отправлено %d, ошибок %d, пропущено %d, не подошло %d",
            summary.delivered,
            summary.failed,
            summary.skipped,
            summary.ineligible,
        )
        return summary

    async def _process_mapping(
        self,
        context: RunContext,
        source: SourceProtocol,
        mapping: ChannelMapping,
    ) -> None:
        summary = context.summary
        channel = resolve_channel(mapping, context.channels)
        if channel is None:
            logger.warning("Канал '%s' не найден", mapping.logical_name)
            summary.channels_missing += 1
            return

        try:
            entries = await source.fetch_history(
                channel.handle, self._config.options.history_limit
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Ошибка при получении истории канала %s", mapping.logical_name)
            summary.channels_failed += 1
            return

        summary.channels_processed += 1
        endpoint = mapping.destination_endpoint or ""
        for entry in order_history(entries):
            item = CandidateItem.from_entry(mapping.logical_name, entry)
            # Current instant per item, not the run start.
            decision = context.eligibility.evaluate(item, context.ledger, context.clock())
            if not decision.allowed:
                logger.debug("Сообщение %s пропущено: %s", item.dedup_key, decision.reason)
                summary.ineligible += 1
                continue
            result = await context.dispatcher.relay(item, endpoint)
            summary.record(item, result)
