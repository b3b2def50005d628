"""Lookups against the user, product and inventory services.

Each call is bounded by a total timeout; a timeout surfaces as
``asyncio.TimeoutError`` for the orchestrator to turn into a validation
failure. Connection errors and 5xx answers mean the dependency is
unreachable.
"""
import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import aiohttp

from ..common.errors import InternalError, ServiceUnavailableError
from ..inventory.service import StockReservationEngine

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProductInfo:
    id: int
    price: Decimal
    active: bool


class _HttpClient:
    def __init__(self, base_url: str, timeout: float, session: Optional[aiohttp.ClientSession] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session

    async def _session_get(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Optional[Any]:
        """GET a JSON body; None on 404."""
        url = f"{self.base_url}{path}"
        session = await self._session_get()
        try:
            async with session.get(url, params=params, timeout=self.timeout) as response:
                if response.status == 404:
                    return None
                if response.status >= 500:
                    raise ServiceUnavailableError(f"{url} answered {response.status}")
                response.raise_for_status()
                return await response.json()
        except asyncio.TimeoutError:
            _logger.warning("Remote call timed out | url=%s", url)
            raise
        except aiohttp.ClientError as e:
            _logger.error("Remote call failed | url=%s err=%s", url, e)
            raise ServiceUnavailableError(f"Dependency unreachable: {url}") from e
        except ValueError as e:
            _logger.error("Remote call returned invalid JSON | url=%s err=%s", url, e)
            raise InternalError(f"Invalid response from {url}") from e


class UserClient(_HttpClient):
    async def user_exists(self, user_id: int) -> bool:
        return await self._get_json(f"/users/{user_id}") is not None


class ProductClient(_HttpClient):
    async def get_product(self, product_id: int) -> Optional[ProductInfo]:
        body = await self._get_json(f"/products/{product_id}")
        if body is None:
            return None
        try:
            price = Decimal(str(body["price"]))
            active = bool(body.get("active", False))
        except (KeyError, TypeError, AttributeError, InvalidOperation) as e:
            _logger.error("Unreadable product response | product_id=%s body=%r", product_id, body)
            raise InternalError(f"Malformed response from product service for product: {product_id}") from e
        if not price.is_finite():
            raise InternalError(f"Malformed response from product service for product: {product_id}")
        return ProductInfo(id=product_id, price=price, active=active)


class InventoryClient(_HttpClient):
    """Stock check against an inventory service running in another process."""

    async def check_stock(self, product_id: int, quantity: int) -> bool:
        body = await self._get_json("/inventory/check", {"productId": product_id, "quantity": quantity})
        return body is True


class LocalStockChecker:
    """Stock check against the in-process reservation engine."""

    def __init__(self, engine: StockReservationEngine) -> None:
        self.engine = engine

    async def check_stock(self, product_id: int, quantity: int) -> bool:
        return await self.engine.check(product_id, quantity)

    async def close(self) -> None:
        return None
