"""
Product Service — ワーカープロセス

HTTP を持たず、フルフィルメント・コンシューマと Reconciler だけを動かす。
API 側は RUN_CONSUMER=0 にして、処理をこちらに任せる構成を想定。

起動: python -m services.product.app.worker
"""

import asyncio
import logging
import signal

from .config import load_settings
from .container import build_container
from .logging_config import setup_logging

logger = logging.getLogger(__name__)


async def run_worker() -> None:
    settings = load_settings()
    setup_logging(settings.log_level)

    container = await build_container(settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, container.request_shutdown)

    logger.info("Worker %s starting", settings.consumer_name)
    container.start_background()
    try:
        await container.wait_background()
    finally:
        await container.close()


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
