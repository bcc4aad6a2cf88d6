import asyncio
import logging
import signal

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer

from prreview.api.gateway import build_gateway
from prreview.common.config import (
    KAFKA_BOOTSTRAP, KAFKA_GROUP_ID, KAFKA_TOPIC_JOBS, SHUTDOWN_TIMEOUT_SECONDS, configure_logging
)
from prreview.common.db import init_db
from prreview.worker.github_client import GitHubApp
from prreview.worker.llm import OpenAIProvider

logger = logging.getLogger(__name__)


async def main() -> None:
    """Main worker function."""
    configure_logging()
    await init_db()

    producer = AIOKafkaProducer(bootstrap_servers=KAFKA_BOOTSTRAP)
    consumer = AIOKafkaConsumer(
        KAFKA_TOPIC_JOBS,
        bootstrap_servers=KAFKA_BOOTSTRAP,
        group_id=KAFKA_GROUP_ID,
        auto_offset_reset="earliest"
    )

    await producer.start()
    await consumer.start()
    gateway = build_gateway(GitHubApp(), OpenAIProvider(), producer)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await gateway.queue.recover()
        consuming = asyncio.create_task(gateway.queue.consume(consumer))
        logger.info("Worker consuming %s as %s", KAFKA_TOPIC_JOBS, KAFKA_GROUP_ID)

        stopping = asyncio.create_task(stop.wait())
        await asyncio.wait({consuming, stopping}, return_when=asyncio.FIRST_COMPLETED)
        if consuming.done() and consuming.exception():
            logger.error("Job consumer stopped: %s", consuming.exception())
        consuming.cancel()
        stopping.cancel()

        gateway.queue.stop()
        left = await gateway.queue.drain(SHUTDOWN_TIMEOUT_SECONDS)
        if left:
            logger.warning("Exiting with %d job(s) unfinished; they stay in processing", left)
    finally:
        await consumer.stop()
        await producer.stop()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
