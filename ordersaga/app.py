import asyncio
import logging
import os
import time
from typing import Optional

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from quart import Quart, g, jsonify, request
from werkzeug.exceptions import HTTPException

from .common import database
from .common.config import settings
from .common.errors import AppError, error_body
from .common.kafka_client import close_producer
from .common.metrics import REQUEST_COUNT, REQUEST_LATENCY
from .common.redis_client import close_redis
from .inventory.consumer import inventory_worker
from .inventory.controller import bp as inventory_bp
from .inventory.service import StockReservationEngine, publish_stock_update
from .orders.clients import InventoryClient, LocalStockChecker, ProductClient, UserClient
from .orders.controller import bp as orders_bp
from .orders.service import OrderPlacement
from .payments.controller import bp as payments_bp
from .payments.service import PaymentRecorder
from .payments.worker import payments_worker
from .realtime.controller import bp as realtime_bp

log = logging.getLogger(__name__)

# Get instance ID from environment
INSTANCE_ID = os.getenv("INSTANCE_ID", "unknown")


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_order_placement(engine: StockReservationEngine) -> OrderPlacement:
    if settings.INVENTORY_SERVICE_URL:
        stock = InventoryClient(settings.INVENTORY_SERVICE_URL, settings.REMOTE_TIMEOUT)
    else:
        stock = LocalStockChecker(engine)
    return OrderPlacement(
        users=UserClient(settings.USER_SERVICE_URL, settings.REMOTE_TIMEOUT),
        products=ProductClient(settings.PRODUCT_SERVICE_URL, settings.REMOTE_TIMEOUT),
        stock=stock,
    )


def _trace_id() -> Optional[str]:
    return request.headers.get("X-Trace-Id")


def create_app(
    placement: Optional[OrderPlacement] = None,
    stock_engine: Optional[StockReservationEngine] = None,
    payment_recorder: Optional[PaymentRecorder] = None,
    start_consumers: bool = True,
) -> Quart:
    app = Quart(__name__)

    stock_engine = stock_engine or StockReservationEngine(notifier=publish_stock_update)
    app.extensions["stock_engine"] = stock_engine
    app.extensions["order_placement"] = placement or build_order_placement(stock_engine)
    app.extensions["payment_recorder"] = payment_recorder or PaymentRecorder()

    # Blueprints
    app.register_blueprint(orders_bp)
    app.register_blueprint(inventory_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(realtime_bp)

    @app.errorhandler(AppError)
    async def handle_app_error(e: AppError):
        body = error_body(e.status_code, e.message, request.path, _trace_id(), e.validation_errors)
        return jsonify(body), int(e.status_code)

    @app.errorhandler(HTTPException)
    async def handle_http_error(e: HTTPException):
        return jsonify(error_body(e.code, e.description, request.path, _trace_id())), e.code

    @app.errorhandler(Exception)
    async def handle_unexpected(e: Exception):
        log.exception("Unhandled error | path=%s", request.path)
        return jsonify(error_body(500, "Internal server error", request.path, _trace_id())), 500

    @app.before_request
    async def before_request():
        g.start_time = time.time()
        log.debug("[Instance %s] %s %s", INSTANCE_ID, request.method, request.path)

    @app.after_request
    async def after_request(response):
        try:
            start = getattr(g, "start_time", None)
            if start is not None:
                duration = time.time() - start
                # Use the route pattern so dynamic ids do not explode label cardinality
                endpoint = request.url_rule.rule if request.url_rule is not None else "unmatched"
                REQUEST_LATENCY.labels(endpoint=endpoint).observe(duration)
                REQUEST_COUNT.labels(
                    method=request.method,
                    endpoint=endpoint,
                    status=str(response.status_code),
                ).inc()
            response.headers["X-Instance-ID"] = INSTANCE_ID
        except Exception as e:
            log.error("Error recording metrics: %s", e)
        return response

    @app.get("/metrics")
    async def metrics():
        data = generate_latest()
        return app.response_class(data, mimetype=CONTENT_TYPE_LATEST)

    @app.get("/health")
    async def health():
        return jsonify({"status": "ok"})

    @app.before_serving
    async def startup():
        configure_logging()
        log.info("Initializing database...")
        await database.init_db()
        log.info("Database ready.")
        app.background_tasks = getattr(app, "background_tasks", set())
        stop_event = asyncio.Event()
        app.consumers_stop = stop_event
        if not start_consumers:
            return
        if settings.RUN_INVENTORY_CONSUMER:
            app.background_tasks.add(asyncio.create_task(inventory_worker(stock_engine, stop_event)))
            log.info("Inventory consumer started.")
        if settings.RUN_PAYMENT_CONSUMER:
            recorder = app.extensions["payment_recorder"]
            app.background_tasks.add(asyncio.create_task(payments_worker(recorder, stop_event)))
            log.info("Payment consumer started.")

    @app.after_serving
    async def shutdown():
        stop_event = getattr(app, "consumers_stop", None)
        if stop_event:
            stop_event.set()
        for t in getattr(app, "background_tasks", set()):
            try:
                await asyncio.wait_for(t, timeout=2.0)
            except Exception as e:
                log.warning("Background task ended with error | task=%s err=%r", t.get_name(), e)
                t.cancel()
        placement_ = app.extensions["order_placement"]
        for client in (placement_.users, placement_.products, placement_.stock):
            close = getattr(client, "close", None)
            if close is not None:
                await close()
        await close_producer()
        await close_redis()
        await database.dispose_db()
        log.info("Shutdown complete.")

    return app
