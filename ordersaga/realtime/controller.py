import asyncio
import json
import logging
from typing import Any, Dict, Optional

from quart import Blueprint, Response, request

from ..common.config import settings
from ..common.errors import ValidationError
from ..common.redis_client import get_redis
from ..common.validation import int_field

_logger = logging.getLogger(__name__)

bp = Blueprint("realtime", __name__)

KEEPALIVE = ": keep-alive\n\n"
MAX_BACKOFF = 15.0


def stock_frame(raw: str, product_id: Optional[int] = None) -> Optional[str]:
    """Turn a stock-change notification into an SSE frame.

    Returns None when the notification is unreadable or belongs to a product
    the subscriber did not ask for.
    """
    try:
        view: Dict[str, Any] = json.loads(raw)
    except (TypeError, ValueError):
        _logger.warning("Dropping unreadable stock notification | data=%r", raw)
        return None
    if product_id is not None and view.get("productId") != product_id:
        return None
    return f"event: stock\ndata: {json.dumps(view)}\n\n"


async def _close_pubsub(pubsub) -> None:
    if pubsub is None:
        return
    try:
        await pubsub.unsubscribe(settings.REDIS_STOCK_CHANNEL)
        await pubsub.aclose()
    except Exception as e:
        _logger.debug("Closing stock pubsub failed | err=%s", e)


async def _stream(product_id: Optional[int]):
    pubsub = None
    backoff = 1.0
    yield "retry: 3000\n\n"
    try:
        while True:
            try:
                if pubsub is None:
                    r = await get_redis()
                    pubsub = r.pubsub(ignore_subscribe_messages=True)
                    await pubsub.subscribe(settings.REDIS_STOCK_CHANNEL)
                message = await pubsub.get_message(timeout=5.0)
                frame = stock_frame(message["data"], product_id) if message else None
                # Keep-alive stops proxies from closing idle streams
                yield frame or KEEPALIVE
                backoff = 1.0
            except asyncio.CancelledError:
                break
            except Exception as e:
                _logger.warning("Stock stream error, retrying in %ss | err=%s", int(backoff), e)
                yield f": redis-error, retrying in {int(backoff)}s\n\n"
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, MAX_BACKOFF)
                await _close_pubsub(pubsub)
                pubsub = None
    finally:
        await _close_pubsub(pubsub)


@bp.get("/events")
async def stock_events():
    """Server-sent stream of inventory changes, optionally for one ``productId``."""
    product_id = None
    if "productId" in request.args:
        errors: Dict[str, str] = {}
        product_id = int_field(request.args, "productId", errors)
        if errors:
            raise ValidationError("Invalid request data", errors)

    headers = {
        "Cache-Control": "no-cache",
        "X-Accel-Buffering": "no",
        "Connection": "keep-alive",
    }
    return Response(_stream(product_id), mimetype="text/event-stream", headers=headers)
