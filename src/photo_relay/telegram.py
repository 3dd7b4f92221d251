"""Telegram source channels read through a Telethon user session."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Protocol, Sequence

from telethon import TelegramClient
from telethon.tl.types import MessageMediaPhoto, Photo

from .models import ContentKind, HistoryEntry, SourceChannel, TelegramCredentials
from .utils import ensure_utc

logger = logging.getLogger(__name__)

ClientFactory = Callable[[TelegramCredentials], Any]


class SourceAuthError(RuntimeError):
    """Raised when the Telegram session cannot be used."""


class SourceProtocol(Protocol):
    async def __aenter__(self) -> "SourceProtocol": ...

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None: ...

    async def list_channels(self) -> Sequence[SourceChannel]: ...

    async def fetch_history(self, handle: Any, limit: int) -> Sequence[HistoryEntry]: ...

    async def fetch_payload(self, payload_ref: Any) -> bytes: ...


def classify_media(media: Any) -> ContentKind:
    if isinstance(media, MessageMediaPhoto) and isinstance(media.photo, Photo):
        return ContentKind.PHOTO
    return ContentKind.OTHER


def entry_from_message(message: Any) -> HistoryEntry | None:
    """Convert a Telethon message into a history entry."""

    item_id = getattr(message, "id", None)
    created_at = getattr(message, "date", None)
    if item_id is None or created_at is None:
        return None
    caption = getattr(message, "message", None) or None
    return HistoryEntry(
        item_id=int(item_id),
        created_at=ensure_utc(created_at),
        content_kind=classify_media(getattr(message, "media", None)),
        payload_ref=message,
        caption=caption,
    )


def write_session_blob(path: Path, blob: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(blob)


def _default_client_factory(credentials: TelegramCredentials) -> TelegramClient:
    return TelegramClient(
        str(credentials.session_path),
        credentials.api_id,
        credentials.api_hash,
    )


class TelegramSource:
    """Read recent channel history as a Telegram user.

    Usage::

        async with TelegramSource(credentials) as source:
            channels = await source.list_channels()
    """

    def __init__(
        self,
        credentials: TelegramCredentials,
        *,
        interactive: bool = False,
        client_factory: ClientFactory | None = None,
    ):
        self._credentials = credentials
        self._interactive = interactive
        self._client_factory = client_factory or _default_client_factory
        self._client: Any = None

    async def __aenter__(self) -> "TelegramSource":
        credentials = self._credentials
        if credentials.session_blob:
            write_session_blob(credentials.session_path, credentials.session_blob)
            logger.debug("Сессия Telegram записана в %s", credentials.session_path)

        client = self._client_factory(credentials)
        if self._interactive:
            if credentials.phone:
                await client.start(phone=credentials.phone)
            else:
                await client.start()
        else:
            await client.connect()
            if not await client.is_user_authorized():
                await client.disconnect()
                raise SourceAuthError(
                    f"Сессия Telegram {credentials.session_path} не авторизована, "
                    "выполните вход с --login"
                )
        self._client = client
        logger.info("Подключение к Telegram установлено")
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        client = self._client
        self._client = None
        if client is not None:
            await client.disconnect()

    def _require_client(self) -> Any:
        if self._client is None:
            raise RuntimeError("Client not started. Use 'async with' context manager.")
        return self._client

    async def list_channels(self) -> Sequence[SourceChannel]:
        client = self._require_client()
        channels: list[SourceChannel] = []
        async for dialog in client.iter_dialogs():
            if not dialog.is_channel:
                continue
            channels.append(SourceChannel(handle=dialog.entity, title=dialog.title or ""))
        return channels

    async def fetch_history(self, handle: Any, limit: int) -> Sequence[HistoryEntry]:
        client = self._require_client()
        messages = await client.get_messages(handle, limit=limit)
        entries: list[HistoryEntry] = []
        for message in messages or ():
            entry = entry_from_message(message)
            if entry is not None:
                entries.append(entry)
        return entries

    async def fetch_payload(self, payload_ref: Any) -> bytes:
        client = self._require_client()
        data = await client.download_media(payload_ref, file=bytes)
        return bytes(data) if data else b""
