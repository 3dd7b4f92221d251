"""Deliver eligible items and record them in the ledger."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timezone

from .discord import DestinationProtocol
from .formatting import attachment_filename, format_caption
from .ledger import DedupLedger
from .models import (
    CandidateItem,
    DispatchOutcome,
    DispatchResult,
    LedgerRecord,
    RelayOptions,
)
from .telegram import SourceProtocol
from .utils import RateLimiter

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RelayDispatcher:
    """Relay one item at a time from the source to its webhook.

    A ledger entry is written and flushed only after the webhook confirmed the
    upload, and the limiter pause follows every delivered item before the next
    one is attempted.
    """

    def __init__(
        self,
        source: SourceProtocol,
        destination: DestinationProtocol,
        ledger: DedupLedger,
        limiter: RateLimiter,
        *,
        options: RelayOptions | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._source = source
        self._destination = destination
        self._ledger = ledger
        self._limiter = limiter
        self._options = options or RelayOptions()
        self._clock = clock or _utcnow

    async def dispatch(self, item: CandidateItem, endpoint: str) -> DispatchResult:
        try:
            payload = await self._source.fetch_payload(item.payload_ref)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(
                "Не удалось скачать фото %s из канала %s",
                item.item_id,
                item.channel_name,
            )
            return DispatchResult(DispatchOutcome.FAILED, f"fetch: {exc}")
        if not payload:
            logger.warning(
                "Пустое фото %s в канале %s, пропускаем",
                item.item_id,
                item.channel_name,
            )
            return DispatchResult(DispatchOutcome.SKIPPED, "empty_payload")

        caption = format_caption(item.caption, self._options)
        try:
            delivery = await self._destination.post_photo(
                endpoint,
                payload,
                filename=attachment_filename(item),
                caption=caption,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(
                "Ошибка при отправке фото %s из канала %s в Discord",
                item.item_id,
                item.channel_name,
            )
            return DispatchResult(DispatchOutcome.FAILED, f"deliver: {exc}")

        if not delivery.ok:
            reason = delivery.error or (
                f"HTTP {delivery.status}" if delivery.status is not None else "unknown"
            )
            logger.warning(
                "Фото %s из канала %s не доставлено: %s",
                item.item_id,
                item.channel_name,
                reason,
            )
            return DispatchResult(DispatchOutcome.FAILED, reason)
        return DispatchResult(DispatchOutcome.DELIVERED)

    def commit(self, item: CandidateItem) -> bool:
        """Record ``item`` as relayed and flush the ledger to disk."""

        self._ledger.append(LedgerRecord(key=item.dedup_key, posted_at=self._clock()))
        return self._ledger.persist()

    async def relay(self, item: CandidateItem, endpoint: str) -> DispatchResult:
        result = await self.dispatch(item, endpoint)
        if not result.delivered:
            return result
        if not self.commit(item):
            logger.warning(
                "Фото %s отправлено, но журнал не сохранён; возможна повторная отправка",
                item.dedup_key,
            )
        logger.info("Отправлено фото из %s, id=%s", item.channel_name, item.item_id)
        await self._limiter.pause()
        return result
