"""Command line entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .app import RelayApp
from .config import ConfigError, load_config
from .models import TelegramCredentials
from .telegram import SourceAuthError, TelegramSource


def main() -> None:
    parser = argparse.ArgumentParser(description="Relay Telegram channel photos to Discord")
    parser.add_argument(
        "--ledger-path",
        help=("Путь к журналу отправленных фото. Можно передать через " "RELAY_LEDGER_PATH"),
    )
    parser.add_argument("--log-level", default="INFO", help="Уровень логирования")
    parser.add_argument(
        "--login",
        action="store_true",
        help="Интерактивный вход в Telegram для создания файла сессии",
    )
    args = parser.parse_args()

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logger = logging.getLogger(__name__)

    try:
        config = load_config()
    except ConfigError as exc:
        parser.error(str(exc))
    if args.ledger_path:
        config.ledger_path = Path(args.ledger_path)

    try:
        if args.login:
            asyncio.run(_login(config.credentials))
            return
        asyncio.run(RelayApp(config).run())
    except SourceAuthError as exc:
        logger.error("%s", exc)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Остановка по запросу пользователя")


async def _login(credentials: TelegramCredentials) -> None:
    async with TelegramSource(credentials, interactive=True):
        logging.getLogger(__name__).info("Сессия сохранена в %s", credentials.session_path)


if __name__ == "__main__":
    main()
