"""Environment backed configuration for a relay run."""

from __future__ import annotations

import base64
import binascii
import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Mapping, Sequence
from zoneinfo import ZoneInfoNotFoundError

from .models import ChannelMapping, RelayOptions, TelegramCredentials
from .utils import parse_int, parse_seconds, resolve_timezone

DEFAULT_CHANNELS: tuple[str, ...] = (
    "FOOTBALL ON TV",
    "US SPORT ON TV",
    "COMBAT SPORT ON TV",
    "OTHER SPORT ON TV",
)
DEFAULT_LEDGER_PATH = Path("processed_cache.json")
DEFAULT_SESSION_PATH = Path("session.session")
WEBHOOK_ENV_PREFIX = "RELAY_WEBHOOK_"

_SLUG_RE = re.compile(r"[^A-Z0-9]+")


class ConfigError(ValueError):
    """Raised when required settings are missing or invalid."""


@dataclass(slots=True)
class RelayConfig:
    credentials: TelegramCredentials
    mappings: Sequence[ChannelMapping]
    ledger_path: Path = DEFAULT_LEDGER_PATH
    options: RelayOptions = field(default_factory=RelayOptions)

    @property
    def enabled_mappings(self) -> list[ChannelMapping]:
        return [mapping for mapping in self.mappings if mapping.enabled]


def webhook_env_name(logical_name: str) -> str:
    """Return the environment variable holding the webhook for ``logical_name``."""

    slug = _SLUG_RE.sub("_", logical_name.upper()).strip("_")
    return WEBHOOK_ENV_PREFIX + slug


def parse_channel_names(value: str | None) -> list[str]:
    if value is None or not value.strip():
        return list(DEFAULT_CHANNELS)
    return [name.strip() for name in value.split(";") if name.strip()]


def build_mappings(
    names: Sequence[str],
    environ: Mapping[str, str],
) -> list[ChannelMapping]:
    seen: set[str] = set()
    mappings: list[ChannelMapping] = []
    for name in names:
        folded = name.casefold()
        if folded in seen:
            raise ConfigError(f"Канал {name!r} указан несколько раз")
        seen.add(folded)
        endpoint = (environ.get(webhook_env_name(name)) or "").strip() or None
        mappings.append(ChannelMapping(logical_name=name, destination_endpoint=endpoint))
    return mappings


def load_config(environ: Mapping[str, str] | None = None) -> RelayConfig:
    """Build a validated configuration from environment variables."""

    env = os.environ if environ is None else environ
    problems: list[str] = []

    api_id_raw = (env.get("TELEGRAM_API_ID") or "").strip()
    api_hash = (env.get("TELEGRAM_API_HASH") or "").strip()
    api_id = 0
    if not api_id_raw:
        problems.append("TELEGRAM_API_ID не задан")
    else:
        try:
            api_id = int(api_id_raw)
        except ValueError:
            problems.append("TELEGRAM_API_ID должен быть числом")
    if not api_hash:
        problems.append("TELEGRAM_API_HASH не задан")

    session_blob: bytes | None = None
    blob_raw = (env.get("TELEGRAM_SESSION_B64") or "").strip()
    if blob_raw:
        try:
            session_blob = base64.b64decode(blob_raw, validate=True)
        except (binascii.Error, ValueError):
            problems.append("TELEGRAM_SESSION_B64 содержит некорректный base64")

    defaults = RelayOptions()
    timezone_name = (env.get("RELAY_TIMEZONE") or "").strip() or defaults.timezone
    try:
        resolve_timezone(timezone_name)
    except (ZoneInfoNotFoundError, ValueError):
        problems.append(f"RELAY_TIMEZONE: неизвестный часовой пояс {timezone_name!r}")

    try:
        mappings = build_mappings(parse_channel_names(env.get("RELAY_CHANNELS")), env)
    except ConfigError as exc:
        problems.append(str(exc))
        mappings = []

    if problems:
        raise ConfigError("; ".join(problems))

    options = RelayOptions(
        history_limit=parse_int(env.get("RELAY_HISTORY_LIMIT"), defaults.history_limit, minimum=1),
        pacing_delay=parse_seconds(env.get("RELAY_PACING_DELAY"), defaults.pacing_delay),
        retention=timedelta(
            days=parse_int(env.get("RELAY_RETENTION_DAYS"), defaults.retention.days)
        ),
        recency_days=parse_int(env.get("RELAY_RECENCY_DAYS"), defaults.recency_days),
        timezone=timezone_name,
    )
    credentials = TelegramCredentials(
        api_id=api_id,
        api_hash=api_hash,
        session_path=Path(env.get("TELEGRAM_SESSION_PATH") or DEFAULT_SESSION_PATH),
        phone=(env.get("TELEGRAM_PHONE") or "").strip() or None,
        session_blob=session_blob,
    )
    return RelayConfig(
        credentials=credentials,
        mappings=mappings,
        ledger_path=Path(env.get("RELAY_LEDGER_PATH") or DEFAULT_LEDGER_PATH),
        options=options,
    )
