"""
Entry point: run the publish scheduler against the Supabase tables.

Usage::

    python run.py            # publish through the registered publishers
    PUBLISH_DRY_RUN=1 python run.py
"""

import asyncio
import logging
import signal

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("run")


async def main() -> None:
    from social_publisher.config import get_settings, validate_env
    from social_publisher.logging import init_logger
    from social_publisher.pipeline import PublishingPipeline
    from social_publisher.publishers import DryRunPublisher, PublisherRegistry, WebhookPublisher
    from social_publisher.models import Platform
    from social_publisher.store import SupabaseStore

    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())
    validate_env()

    store = await SupabaseStore.create()
    event_log = init_logger(log_dir=settings.log_dir, store=store)

    if settings.dry_run:
        publishers = PublisherRegistry(default=DryRunPublisher())
        logger.info("Dry run: no post leaves this process")
    else:
        publishers = PublisherRegistry()
        webhook = WebhookPublisher(timeout=settings.dispatch_timeout_seconds)
        for platform in (Platform.DISCORD, Platform.TELEGRAM):
            publishers.register(platform, webhook)

    pipeline = PublishingPipeline(store, publishers, settings=settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(
                sig, lambda: asyncio.create_task(pipeline.scheduler.stop())
            )
        except NotImplementedError:
            # Signal handlers are unavailable on Windows event loops
            pass

    try:
        await pipeline.scheduler.start()
    finally:
        await event_log.flush()


if __name__ == "__main__":
    asyncio.run(main())
