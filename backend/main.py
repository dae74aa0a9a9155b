# backend/main.py
"""Chat worker entry point.

Runs until SIGINT/SIGTERM:
  python main.py
"""
import asyncio
import signal

from docchat.config import settings
from docchat.database import init_db
from docchat.errors import ConfigurationError
from docchat.services.worker import create_worker
from docchat.utils.logging import logger
from docchat.utils.metrics import start_metrics_server


async def run_worker() -> None:
    worker = create_worker()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.create_task(worker.stop()))
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass

    await worker.run()


def main() -> int:
    logger.info("Chat worker starting", extra={
        "environment": settings.environment,
        "change_feed": settings.change_feed_backend,
        "storage": settings.storage_backend,
        "model": settings.chat_llm_model,
        "concurrency": settings.worker_concurrency,
    })

    if settings.environment == "development":
        init_db()
    start_metrics_server(settings.metrics_port)

    try:
        asyncio.run(run_worker())
    except ConfigurationError as e:
        logger.error(f"Worker configuration invalid: {e}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
