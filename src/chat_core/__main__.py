"""Entrypoint: python -m chat_core

Connects with the configured token, lists conversations and logs the
incoming event stream until interrupted.
"""
from __future__ import annotations

import asyncio
import logging

from chat_core.application.exceptions import AppError
from chat_core.client import create_client
from chat_core.config import settings
from chat_core.domain.events import ChatEvent

logger = logging.getLogger("chat_core")


async def _log_event(event: ChatEvent) -> None:
    logger.info("event %s: %r", event.type, event)


async def run() -> None:
    client = create_client(settings)
    client.transport.subscribe(_log_event)
    client.on_connectivity(lambda state: logger.info("connectivity -> %s", state))
    try:
        await client.start()
        for conversation in client.registry.list():
            logger.info(
                "%-8s %-24s unread=%d %s",
                conversation.kind,
                conversation.name,
                conversation.unread_count,
                conversation.id,
            )
        while True:
            await asyncio.sleep(3600)
    finally:
        await client.stop()


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        asyncio.run(run())
    except AppError as exc:
        logger.error("Cannot start: %s", exc.detail)
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
