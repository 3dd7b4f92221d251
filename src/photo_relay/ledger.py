"""Persistent ledger of relayed items."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping

from .models import LedgerRecord
from .utils import ensure_utc, format_timestamp, parse_timestamp

DEFAULT_RETENTION = timedelta(days=3)

logger = logging.getLogger(__name__)


class DedupLedger:
    """Keys of already relayed items with the time they were delivered.

    Every operation is fail-soft: an unreadable or malformed file degrades to
    an empty ledger and a failed write is reported through the return value of
    :meth:`persist`.
    """

    def __init__(self, path: Path, records: Iterable[LedgerRecord] = ()):
        self._path = Path(path)
        self._records: list[LedgerRecord] = []
        self._index: dict[str, LedgerRecord] = {}
        for record in records:
            if record.key in self._index:
                continue
            self._records.append(record)
            self._index[record.key] = record

    @classmethod
    def load(cls, path: Path) -> "DedupLedger":
        path = Path(path)
        try:
            if not path.exists():
                ledger = cls(path)
                ledger.persist()
                return ledger
            raw = path.read_text(encoding="utf-8")
            data = json.loads(raw) if raw.strip() else []
        except (OSError, ValueError) as exc:
            logger.warning("Не удалось прочитать журнал %s, начинаем с пустого: %s", path, exc)
            return cls(path)

        entries = _extract_entries(data)
        if entries is None:
            logger.warning("Журнал %s имеет неизвестный формат, начинаем с пустого", path)
            return cls(path)

        records: list[LedgerRecord] = []
        for entry in entries:
            record = _parse_record(entry)
            if record is None:
                logger.warning("Пропущена некорректная запись журнала: %r", entry)
                continue
            records.append(record)
        return cls(path, records)

    @property
    def path(self) -> Path:
        return self._path

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[LedgerRecord]:
        return iter(list(self._records))

    def __contains__(self, key: object) -> bool:
        return key in self._index

    def contains(self, key: str) -> bool:
        return key in self._index

    def get(self, key: str) -> LedgerRecord | None:
        return self._index.get(key)

    def prune(self, now: datetime, retention: timedelta = DEFAULT_RETENTION) -> int:
        """Drop records posted before ``now - retention`` and return how many."""

        cutoff = ensure_utc(now) - retention
        kept = [record for record in self._records if ensure_utc(record.posted_at) >= cutoff]
        removed = len(self._records) - len(kept)
        if removed:
            self._records = kept
            self._index = {record.key: record for record in kept}
        return removed

    def append(self, record: LedgerRecord) -> None:
        # The caller checks membership first.
        self._records.append(record)
        self._index[record.key] = record

    def persist(self) -> bool:
        payload = [
            {"key": record.key, "postedAt": format_timestamp(record.posted_at)}
            for record in self._records
        ]
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as exc:
            logger.error("Не удалось сохранить журнал %s: %s", self._path, exc)
            return False
        return True


def _extract_entries(data: Any) -> list[Any] | None:
    if isinstance(data, list):
        return data
    if isinstance(data, Mapping):
        for name in ("records", "Records"):
            entries = data.get(name)
            if isinstance(entries, list):
                return entries
            if name in data and entries is None:
                return []
    return None


def _parse_record(entry: Any) -> LedgerRecord | None:
    if not isinstance(entry, Mapping):
        return None
    key = entry.get("key", entry.get("Key"))
    posted_raw = entry.get("postedAt", entry.get("PostedAt"))
    if not isinstance(key, str) or not key:
        return None
    posted_at = parse_timestamp(posted_raw) if isinstance(posted_raw, str) else None
    if posted_at is None:
        return None
    return LedgerRecord(key=key, posted_at=posted_at)
