import asyncio
import logging
from typing import Awaitable, Callable, Optional

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer

from .config import settings

_logger = logging.getLogger(__name__)

_producer: Optional[AIOKafkaProducer] = None
_producer_lock = asyncio.Lock()

MessageHandler = Callable[[bytes], Awaitable[None]]


async def get_producer() -> AIOKafkaProducer:
    global _producer
    if _producer is None:
        async with _producer_lock:
            if _producer is None:
                backoff = 1.0
                last_exc: Optional[BaseException] = None
                for _ in range(8):  # ~ up to ~1+2+4+8+16+30+30+30 ~= 121s
                    try:
                        producer = AIOKafkaProducer(bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS, acks="all")
                        await producer.start()
                        _producer = producer
                        break
                    except Exception as e:
                        last_exc = e
                        _producer = None
                        await asyncio.sleep(backoff)
                        backoff = min(backoff * 2, 30.0)
                if _producer is None:
                    # Propagate the last error after retries
                    raise last_exc or RuntimeError("Kafka producer start failed")
    return _producer


async def close_producer() -> None:
    global _producer
    if _producer is not None:
        await _producer.stop()
        _producer = None


async def publish(topic: str, payload: bytes, key: Optional[bytes] = None) -> None:
    producer = await get_producer()
    await producer.send_and_wait(topic, payload, key=key)


async def create_consumer(topic: str, group_id: str) -> AIOKafkaConsumer:
    backoff = 1.0
    last_exc: Optional[BaseException] = None
    for _ in range(8):
        try:
            consumer = AIOKafkaConsumer(
                topic,
                bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS,
                group_id=group_id,
                enable_auto_commit=True,
                auto_offset_reset="earliest",
            )
            await consumer.start()
            return consumer
        except Exception as e:
            last_exc = e
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, 30.0)
    raise last_exc or RuntimeError("Kafka consumer start failed")


async def close_consumer(consumer: Optional[AIOKafkaConsumer]) -> None:
    if consumer is not None:
        await consumer.stop()


async def run_consumer(
    topic: str,
    group_id: str,
    handler: MessageHandler,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """
    Feed every message of a topic to ``handler`` until ``stop_event`` is set.
    - Offsets are auto-committed, so a message counts as handled once the handler returns
    - Handlers are expected to absorb their own failures
    Resilient to Kafka outages: retries connection with backoff.
    """
    backoff = 1.0
    while True:
        if stop_event and stop_event.is_set():
            break
        consumer = None
        try:
            _logger.info("Consumer connecting to Kafka | topic=%s group=%s", topic, group_id)
            consumer = await create_consumer(topic, group_id=group_id)
            _logger.info("Consumer connected and consuming | topic=%s group=%s", topic, group_id)
            backoff = 1.0  # reset after successful connect
            while True:
                if stop_event and stop_event.is_set():
                    break
                batch = await consumer.getmany(timeout_ms=1000)
                if not batch:
                    continue
                for _, messages in batch.items():
                    for record in messages:
                        await handler(record.value)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            _logger.warning("Consumer error, will retry | group=%s err=%s", group_id, e)
            # Wait with backoff then retry connecting
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, 30.0)
        finally:
            await close_consumer(consumer)
