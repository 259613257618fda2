"""
Inventory coordination used by checkout, settlement and refunds.

The settlement engine only depends on the ``InventoryCoordinator``
protocol. ``RedisInventoryCoordinator`` is the adapter shipped with the
service: per variant and pool it keeps an ``available`` counter and a
``reserved`` counter, and per order it keeps markers so deducting or
releasing the same order twice is a no-op.
"""

from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence, runtime_checkable

from redis.exceptions import RedisError

from src.cache.redis_client import CacheKeyManager, RedisClient, get_cache_key_manager
from src.core.config import get_settings
from src.core.logging import get_logger
from src.database.models.order import InventoryPool

logger = get_logger(__name__)


@dataclass(frozen=True)
class InventoryEntry:
    variant_id: str
    quantity: int
    pool: InventoryPool = InventoryPool.REGULAR


@runtime_checkable
class InventoryCoordinator(Protocol):
    async def reserve(self, entries: Sequence[InventoryEntry], order_id: str) -> None:
        """Hold stock for an order at checkout."""

    async def deduct(self, entries: Sequence[InventoryEntry], order_id: str) -> None:
        """Turn an order's reservation into a permanent decrement."""

    async def release(self, entries: Sequence[InventoryEntry], order_id: str) -> None:
        """Return an order's reserved or deducted stock to availability."""

    async def check_low_stock_and_alert(
        self,
        variant_id: str,
        pool: InventoryPool = InventoryPool.REGULAR,
    ) -> None:
        """Emit a low stock alert if the variant is at or under threshold."""


class InventoryError(Exception):
    """Base exception for inventory coordination."""

    def __init__(self, message: str, code: str, **context: Any):
        super().__init__(message)
        self.code = code
        self.context = context


class InsufficientInventoryError(InventoryError):
    def __init__(self, variant_id: str, requested: int, available: int):
        super().__init__(
            f"Insufficient inventory for variant {variant_id}",
            code="INSUFFICIENT_INVENTORY",
            variant_id=variant_id,
            requested=requested,
            available=available,
        )


class RedisInventoryCoordinator:
    """
    Redis-backed stock counters.

    Marker lifecycle per order: ``reserved`` is set at checkout,
    ``deducted`` on full payment, ``released`` on cancellation or full
    refund. Each marker is written with SET NX, so only the first call for
    a given order and action touches the counters.
    """

    MARKER_TTL_SECONDS = 60 * 60 * 24 * 90

    def __init__(
        self,
        redis_client: RedisClient,
        key_manager: Optional[CacheKeyManager] = None,
        low_stock_threshold: Optional[int] = None,
    ):
        self.redis = redis_client
        self.keys = key_manager or get_cache_key_manager()
        self.low_stock_threshold = (
            low_stock_threshold
            if low_stock_threshold is not None
            else get_settings().low_stock_threshold
        )

    def _available_key(self, variant_id: str, pool: InventoryPool) -> str:
        return self.keys.inventory_key(pool.value, variant_id, "available")

    def _reserved_key(self, variant_id: str, pool: InventoryPool) -> str:
        return self.keys.inventory_key(pool.value, variant_id, "reserved")

    async def _claim_marker(self, order_id: str, action: str) -> bool:
        return await self.redis.set(
            self.keys.inventory_order_marker(order_id, action),
            "1",
            ex=self.MARKER_TTL_SECONDS,
            nx=True,
        )

    async def _has_marker(self, order_id: str, action: str) -> bool:
        value = await self.redis.get(self.keys.inventory_order_marker(order_id, action))
        return value is not None

    async def set_available(
        self,
        variant_id: str,
        quantity: int,
        pool: InventoryPool = InventoryPool.REGULAR,
    ) -> None:
        """Overwrite the available counter, used by stock imports."""
        await self.redis.set(self._available_key(variant_id, pool), str(quantity))

    async def get_available(
        self,
        variant_id: str,
        pool: InventoryPool = InventoryPool.REGULAR,
    ) -> int:
        value = await self.redis.get(self._available_key(variant_id, pool))
        return int(value) if value is not None else 0

    async def reserve(self, entries: Sequence[InventoryEntry], order_id: str) -> None:
        """
        Reserve stock for every entry or none of them.

        Raises:
            InsufficientInventoryError: If any entry cannot be covered
        """
        if not await self._claim_marker(order_id, "reserved"):
            logger.info("Inventory already reserved for order", order_id=order_id)
            return

        taken: list[InventoryEntry] = []
        try:
            for entry in entries:
                remaining = await self.redis.decr(
                    self._available_key(entry.variant_id, entry.pool), entry.quantity
                )
                taken.append(entry)
                if remaining < 0:
                    raise InsufficientInventoryError(
                        entry.variant_id, entry.quantity, remaining + entry.quantity
                    )
                await self.redis.incr(
                    self._reserved_key(entry.variant_id, entry.pool), entry.quantity
                )
        except InventoryError:
            await self._undo_reservation(taken, order_id)
            raise

        logger.info("Inventory reserved", order_id=order_id, lines=len(entries))

    async def _undo_reservation(
        self, taken: Sequence[InventoryEntry], order_id: str
    ) -> None:
        for index, entry in enumerate(taken):
            await self.redis.incr(
                self._available_key(entry.variant_id, entry.pool), entry.quantity
            )
            # The last entry failed before its reserved counter moved
            if index < len(taken) - 1:
                await self.redis.decr(
                    self._reserved_key(entry.variant_id, entry.pool), entry.quantity
                )
        await self.redis.delete(self.keys.inventory_order_marker(order_id, "reserved"))

    async def deduct(self, entries: Sequence[InventoryEntry], order_id: str) -> None:
        if not await self._claim_marker(order_id, "deducted"):
            logger.info("Inventory already deducted for order", order_id=order_id)
            return

        for entry in entries:
            await self.redis.decr(
                self._reserved_key(entry.variant_id, entry.pool), entry.quantity
            )

        logger.info("Inventory deducted", order_id=order_id, lines=len(entries))

    async def release(self, entries: Sequence[InventoryEntry], order_id: str) -> None:
        if not await self._claim_marker(order_id, "released"):
            logger.info("Inventory already released for order", order_id=order_id)
            return

        was_deducted = await self._has_marker(order_id, "deducted")
        for entry in entries:
            await self.redis.incr(
                self._available_key(entry.variant_id, entry.pool), entry.quantity
            )
            if not was_deducted:
                await self.redis.decr(
                    self._reserved_key(entry.variant_id, entry.pool), entry.quantity
                )

        logger.info(
            "Inventory released",
            order_id=order_id,
            lines=len(entries),
            was_deducted=was_deducted,
        )

    async def check_low_stock_and_alert(
        self,
        variant_id: str,
        pool: InventoryPool = InventoryPool.REGULAR,
    ) -> None:
        try:
            available = await self.get_available(variant_id, pool)
        except RedisError as e:
            logger.warning(
                "Low stock check skipped",
                variant_id=variant_id,
                error=str(e),
            )
            return

        if available <= self.low_stock_threshold:
            logger.warning(
                "Low stock alert",
                variant_id=variant_id,
                pool=pool.value,
                available=available,
                threshold=self.low_stock_threshold,
            )
