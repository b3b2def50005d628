import asyncio
from typing import Optional

from ..common.config import settings
from ..common.kafka_client import run_consumer
from .service import PaymentRecorder


async def payments_worker(recorder: PaymentRecorder, stop_event: Optional[asyncio.Event] = None) -> None:
    """
    Kafka consumer that books a payment for every placed order.
    - Runs in its own consumer group, independent of inventory
    - Failures are logged by the recorder and the message counts as handled
    """
    await run_consumer(settings.ORDER_PLACED_TOPIC, settings.PAYMENT_GROUP_ID, recorder.handle, stop_event)
