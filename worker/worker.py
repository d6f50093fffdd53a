# worker/worker.py

import asyncio
import logging
import sys
from typing import Awaitable, Callable, Optional, Protocol

from config.settings import WorkerConfig, load_config, settings

from .errors import ConfigError
from .session import ConnectionSession
from .swarm_client import SwarmClient
from .utils import setup_logging

logger = logging.getLogger("relay-worker.supervisor")

RECONNECT_DELAY = 5.0  # giây


class Session(Protocol):
    async def run(self) -> None:
        ...


class ReconnectSupervisor:
    """
    Giữ cho worker luôn kết nối: chạy session, lỗi thì log, đợi `delay` giây rồi thử lại.
    Không giới hạn số lần thử, không backoff. Chỉ dừng khi task bị cancel (tắt process).
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        delay: float = RECONNECT_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.delay = delay
        self._sleep = sleep
        self.attempts = 0

    async def run_forever(self) -> None:
        while True:
            self.attempts += 1
            session = self.session_factory()
            try:
                await session.run()
            except Exception as e:
                logger.error(
                    f"WebSocket connection failed (attempt {self.attempts}): {e}",
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                await self._sleep(self.delay)
                continue
            logger.info("Session ended, reconnecting")


def build_supervisor(config: WorkerConfig) -> ReconnectSupervisor:
    client = SwarmClient(config.api, config.models)
    return ReconnectSupervisor(
        lambda: ConnectionSession(config.server, config.models, client),
        delay=config.server.reconnect_delay,
    )


async def main(config_path: Optional[str] = None) -> None:
    setup_logging(settings.LOG_LEVEL)

    path = config_path or settings.CONFIG_PATH
    try:
        config = load_config(path, passcode=settings.SERVER_PASSCODE)
    except ConfigError as e:
        logger.error(f"Config load failed: {e}")
        sys.exit(1)

    logger.info(
        f"Worker started: server={config.server.ws_url}, api={config.api.base_url}, "
        f"models={len(config.models)}"
    )
    await build_supervisor(config).run_forever()


def cli() -> None:
    config_path = sys.argv[1] if len(sys.argv) > 1 else None
    try:
        asyncio.run(main(config_path))
    except KeyboardInterrupt:
        logger.info("Worker stopped")


if __name__ == "__main__":
    cli()
