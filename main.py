"""Entry point for the market cycle bot."""

import asyncio
import logging
import os
import signal
from logging.handlers import RotatingFileHandler

from config import APP_LOG_FILE, LOG_DIR, LOG_LEVEL, PAPER_MODE
from trading.engine import TradingEngine


def configure_logging() -> None:
    os.makedirs(LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no add_signal_handler; Ctrl+C still raises KeyboardInterrupt.
            pass


async def run() -> None:
    if not PAPER_MODE:
        raise RuntimeError("Only PAPER_MODE=true is supported")

    engine = TradingEngine.from_config()
    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)
    try:
        await engine.start()
        await stop_event.wait()
        logger.info("SHUTDOWN requested metrics=%s", engine.get_metrics()["metrics"])
    finally:
        await engine.close()


def main() -> None:
    configure_logging()
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("SHUTDOWN reason=keyboard_interrupt")


if __name__ == "__main__":
    main()
