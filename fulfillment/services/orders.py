import uuid
from typing import Any, Callable, List, Optional
import logging

from redis.exceptions import WatchError

from ..core.config import settings
from ..core.exceptions import ConcurrentUpdateError, FulfillmentError, OrderNotFoundError
from ..models.schemas import (
    CreateOrderRequest,
    Order,
    OrderItem,
    OrderStatusResponse,
    utcnow,
)
from ..utils.redis_keys import RedisKeyManager
from ..utils.redis_ops import decode, execute_pipeline
from . import state_machine

logger = logging.getLogger(__name__)


def generate_order_id() -> str:
    return f"ORD-{uuid.uuid4().hex[:8]}"


class OrderRepository:
    """
    Orders stored as JSON documents in Redis.

    `update` is conditional: it only writes when the stored `version` still
    matches the version the caller read, and bumps it on success.
    """

    def __init__(self, client, queue_name: str = settings.QUEUE_NAME):
        self.redis_client = client
        self.keys = RedisKeyManager(system_prefix=queue_name)

    async def create(self, order: Order) -> Order:
        created = await self.redis_client.set(
            self.keys.order_key(order.id), order.model_dump_json(), nx=True
        )
        if not created:
            raise FulfillmentError(f"Order {order.id} already exists", status_code=409)

        def pipeline_operations(pipe):
            pipe.sadd(self.keys.all_orders_key(), order.id)
            pipe.sadd(self.keys.customer_orders_key(order.customer_id), order.id)
            return order

        return await execute_pipeline(self.redis_client, pipeline_operations)

    async def find_by_id(self, order_id: str) -> Order:
        order_json = await self.redis_client.get(self.keys.order_key(order_id))
        if order_json is None:
            raise OrderNotFoundError(order_id)
        return Order.model_validate_json(decode(order_json))

    async def update(self, order: Order) -> Order:
        key = self.keys.order_key(order.id)
        async with self.redis_client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                stored_json = await pipe.get(key)
                if stored_json is None:
                    raise OrderNotFoundError(order.id)
                stored = Order.model_validate_json(decode(stored_json))
                if stored.version != order.version:
                    raise ConcurrentUpdateError(order.id, order.version)

                updated = order.model_copy(update={"version": order.version + 1})
                pipe.multi()
                pipe.set(key, updated.model_dump_json())
                await pipe.execute()
            except WatchError:
                raise ConcurrentUpdateError(order.id, order.version)
        return updated

    async def _load_many(self, order_ids) -> List[Order]:
        ids = sorted(decode(order_id) for order_id in order_ids)
        if not ids:
            return []
        documents = await self.redis_client.mget([self.keys.order_key(order_id) for order_id in ids])
        orders = [Order.model_validate_json(decode(doc)) for doc in documents if doc is not None]
        orders.sort(key=lambda order: order.created_at)
        return orders

    async def find_by_customer(self, customer_id: str) -> List[Order]:
        return await self._load_many(
            await self.redis_client.smembers(self.keys.customer_orders_key(customer_id))
        )

    async def find_all(self) -> List[Order]:
        return await self._load_many(await self.redis_client.smembers(self.keys.all_orders_key()))

    async def delete(self, order_id: str) -> bool:
        order = await self.find_by_id(order_id)

        def pipeline_operations(pipe):
            pipe.delete(self.keys.order_key(order_id))
            pipe.srem(self.keys.all_orders_key(), order_id)
            pipe.srem(self.keys.customer_orders_key(order.customer_id), order_id)
            pipe.delete(self.keys.inventory_applied_key(order_id))
            return True

        return await execute_pipeline(self.redis_client, pipeline_operations)


class OrderAccess:
    """
    The one way handlers read and change orders.

    `mutate` reads a fresh copy, applies the change and writes it back
    conditionally. On a version conflict it re-reads and re-applies, so a
    concurrent writer's fields are never overwritten with stale values.
    """

    def __init__(self, repository: OrderRepository, max_attempts: int = 5):
        self.repository = repository
        self.max_attempts = max_attempts

    async def get(self, order_id: str) -> Order:
        return await self.repository.find_by_id(order_id)

    async def mutate(self, order_id: str, mutation: Callable[[Order], Any]) -> Order:
        for attempt in range(1, self.max_attempts + 1):
            order = await self.repository.find_by_id(order_id)
            before = order.model_copy(deep=True)
            mutation(order)
            if order == before:
                return order
            try:
                return await self.repository.update(order)
            except ConcurrentUpdateError:
                logger.debug(f"Order {order_id} changed during update (attempt {attempt}), retrying")
        raise ConcurrentUpdateError(order_id)


class OrderService:
    def __init__(
        self,
        repository: OrderRepository,
        id_factory: Callable[[], str] = generate_order_id,
    ):
        self.repository = repository
        self.orders = OrderAccess(repository)
        self.id_factory = id_factory

    async def create_order(self, request: CreateOrderRequest) -> Order:
        items = [
            OrderItem.priced(item.product_id, item.product_name, item.quantity, item.unit_price)
            for item in request.items
        ]
        now = utcnow()
        order = Order(
            id=self.id_factory(),
            customer_id=request.customer_id,
            customer_email=request.customer_email,
            items=items,
            total_amount=round(sum(item.subtotal for item in items), 2),
            shipping_address=request.shipping_address,
            payment_method=request.payment_method,
            notes=request.notes,
            created_at=now,
            updated_at=now,
        )
        await self.repository.create(order)
        logger.info(f"Order created: {order.id} | Total: ${order.total_amount:.2f} | Items: {len(order.items)}")
        return order

    async def get_order(self, order_id: str) -> Order:
        return await self.repository.find_by_id(order_id)

    async def list_orders(self, customer_id: Optional[str] = None) -> List[Order]:
        if not customer_id:
            return await self.repository.find_all()
        return await self.repository.find_by_customer(customer_id)

    async def cancel_order(self, order_id: str, reason: str) -> Order:
        order = await self.orders.mutate(
            order_id, lambda order: state_machine.cancel(order, reason)
        )
        logger.info(f"Order cancelled: {order.id} | Reason: {reason}")
        return order

    async def get_order_status(self, order_id: str) -> OrderStatusResponse:
        order = await self.repository.find_by_id(order_id)
        return OrderStatusResponse(
            order_id=order.id,
            status=order.status,
            payment_status=order.payment_status,
            updated_at=order.updated_at,
        )
