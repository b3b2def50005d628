"""Process entry points.

``python -m ordersaga.main serve`` runs the HTTP API (and, per config, both
consumers in the background). ``inventory`` and ``payments`` run a single
consumer as its own process, so each can fail independently.
"""
import argparse
import asyncio
import logging
import signal

from .app import configure_logging, create_app
from .common import database
from .common.config import settings
from .common.redis_client import close_redis
from .inventory.consumer import inventory_worker
from .inventory.service import StockReservationEngine, publish_stock_update
from .payments.service import PaymentRecorder
from .payments.worker import payments_worker

log = logging.getLogger(__name__)


async def run_worker(kind: str) -> None:
    configure_logging()
    await database.init_db()
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)
    log.info("Starting %s consumer | topic=%s", kind, settings.ORDER_PLACED_TOPIC)
    try:
        if kind == "inventory":
            await inventory_worker(StockReservationEngine(notifier=publish_stock_update), stop_event)
        else:
            await payments_worker(PaymentRecorder(), stop_event)
    finally:
        await close_redis()
        await database.dispose_db()
        log.info("%s consumer stopped.", kind)


def main() -> None:
    p = argparse.ArgumentParser(description="Order placement saga services.")
    p.add_argument("role", nargs="?", default="serve", choices=["serve", "inventory", "payments"])
    args = p.parse_args()

    if args.role == "serve":
        app = create_app()
        app.run(host=settings.APP_HOST, port=settings.APP_PORT)
    else:
        asyncio.run(run_worker(args.role))


if __name__ == "__main__":
    main()
