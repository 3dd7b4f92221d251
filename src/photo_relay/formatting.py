"""Discord payload formatting helpers."""

from __future__ import annotations

import re

from .models import CandidateItem, RelayOptions

_FILENAME_UNSAFE_RE = re.compile(r"[^\w.-]+")


def truncate_caption(
    caption: str | None,
    *,
    limit: int = 2000,
    keep: int = 1990,
    ellipsis: str = "...",
) -> str | None:
    """Fit ``caption`` into the webhook ``content`` field.

    Captions up to ``limit`` characters pass unchanged. Longer ones keep the
    first ``keep`` characters followed by ``ellipsis``. Empty captions yield
    ``None`` so that no text field is sent.
    """

    if not caption:
        return None
    if len(caption) <= limit:
        return caption
    return caption[: max(0, keep)] + ellipsis


def format_caption(caption: str | None, options: RelayOptions) -> str | None:
    return truncate_caption(
        caption,
        limit=options.caption_limit,
        keep=options.caption_keep,
        ellipsis=options.ellipsis,
    )


def attachment_filename(item: CandidateItem) -> str:
    base = f"{item.channel_name}_{item.item_id}"
    return _FILENAME_UNSAFE_RE.sub("_", base).strip("_") + ".jpg"
