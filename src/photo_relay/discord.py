"""Discord webhook client."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

import aiohttp

from .models import DeliveryResult

_DEFAULT_USER_AGENT = "DiscordBot (https://github.com, 1.0)"
_ERROR_BODY_LIMIT = 300


logger = logging.getLogger(__name__)


class DestinationProtocol(Protocol):
    async def post_photo(
        self,
        endpoint: str,
        payload: bytes,
        *,
        filename: str,
        caption: str | None = None,
    ) -> DeliveryResult: ...


class DiscordWebhook:
    """Upload photos to Discord webhooks as multipart requests."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        timeout: float = 30.0,
        user_agent: str | None = None,
    ):
        self._session = session
        self._timeout = timeout
        self._user_agent = user_agent or _DEFAULT_USER_AGENT

    async def post_photo(
        self,
        endpoint: str,
        payload: bytes,
        *,
        filename: str,
        caption: str | None = None,
    ) -> DeliveryResult:
        form = aiohttp.FormData()
        if caption:
            form.add_field("content", caption)
        form.add_field("file", payload, filename=filename, content_type="image/jpeg")

        headers = {"User-Agent": self._user_agent}
        try:
            timeout_cfg = aiohttp.ClientTimeout(total=self._timeout)
            async with self._session.post(
                endpoint,
                data=form,
                headers=headers,
                timeout=timeout_cfg,
            ) as resp:
                status = resp.status
                body = await resp.text(errors="replace")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Не удалось отправить %s в Discord: %s", filename, exc)
            return DeliveryResult(ok=False, error=str(exc) or exc.__class__.__name__)

        if 200 <= status < 300:
            return DeliveryResult(ok=True, status=status)

        snippet = body.strip()[:_ERROR_BODY_LIMIT]
        logger.warning(
            "Discord ответил статусом %s при отправке %s: %s",
            status,
            filename,
            snippet,
        )
        return DeliveryResult(ok=False, status=status, error=snippet or f"HTTP {status}")
