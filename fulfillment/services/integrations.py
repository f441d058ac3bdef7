"""
Stand-ins for the systems handlers talk to in production: payment gateway,
email provider, invoice renderer, analytics sink and warehouse API.

Each one can be given a latency and a failure rate so workers can be
exercised against slow or flaky dependencies.
"""
import asyncio
import itertools
import random
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
import logging

from redis.exceptions import WatchError

from ..core.config import settings
from ..core.exceptions import ExternalServiceError
from ..models.payloads import EmailPayload, InvoicePayload, WarehousePayload
from ..utils.redis_keys import RedisKeyManager

logger = logging.getLogger(__name__)


class SimulatedService:
    name = "service"

    def __init__(self, latency: float = 0.0, failure_rate: float = 0.0, rng: Optional[random.Random] = None):
        self.latency = latency
        self.failure_rate = failure_rate
        self.rng = rng or random.Random()
        self.calls = 0

    async def _call(self, operation: str) -> None:
        self.calls += 1
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.failure_rate and self.rng.random() < self.failure_rate:
            raise ExternalServiceError(self.name, f"{operation} failed")


class PaymentGateway(SimulatedService):
    name = "payment_gateway"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.charges: List[Dict[str, Any]] = []
        self.refunds: List[str] = []

    async def refund(self, transaction_id: str) -> None:
        await self._call(f"refund of {transaction_id}")
        self.refunds.append(transaction_id)

    async def charge(self, order_id: str, amount: float, payment_method: str) -> str:
        await self._call(f"charge for order {order_id}")
        transaction_id = f"txn_{uuid.uuid4().hex[:12]}"
        self.charges.append({
            "order_id": order_id,
            "amount": amount,
            "payment_method": payment_method,
            "transaction_id": transaction_id,
        })
        return transaction_id


class EmailProvider(SimulatedService):
    name = "email_provider"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.sent: List[Dict[str, str]] = []

    async def send_confirmation(self, payload: EmailPayload) -> str:
        body = (
            f"Dear {payload.customer_name},\n\n"
            f"Your order {payload.order_id} has been confirmed!\n"
            f"Total Amount: ${payload.total_amount:.2f}\n\n"
            "Thank you for your purchase!\n"
        )
        await self._call(f"confirmation email to {payload.customer_email}")
        message_id = f"msg_{uuid.uuid4().hex[:12]}"
        self.sent.append({"to": payload.customer_email, "body": body, "message_id": message_id})
        return message_id


class InvoiceRenderer(SimulatedService):
    name = "invoice_renderer"

    def __init__(self, *args, base_url: str = settings.INVOICE_BASE_URL, **kwargs):
        super().__init__(*args, **kwargs)
        self.base_url = base_url.rstrip("/")

    async def render(self, payload: InvoicePayload) -> str:
        await self._call(f"invoice for order {payload.order_id}")
        return f"{self.base_url}/{payload.order_id}.pdf"


class AnalyticsClient(SimulatedService):
    name = "analytics"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.events: List[Dict[str, Any]] = []

    async def track(self, event: str, properties: Dict[str, Any]) -> None:
        await self._call(f"track {event}")
        self.events.append({"event": event, **properties})


class WarehouseClient(SimulatedService):
    name = "warehouse"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.notifications: List[WarehousePayload] = []

    async def notify(self, payload: WarehousePayload) -> None:
        await self._call(f"notify for order {payload.order_id}")
        self.notifications.append(payload)


class InventoryStore:
    """
    Product stock kept in a Redis hash.

    Every (order, product) decrement is recorded, so a re-delivered
    inventory job never takes stock twice. Products without a stock entry
    are not tracked and are left alone.
    """

    def __init__(self, client, queue_name: str = settings.QUEUE_NAME, latency: float = 0.0):
        self.redis_client = client
        self.keys = RedisKeyManager(system_prefix=queue_name)
        self.latency = latency

    async def set_stock(self, product_id: str, quantity: int) -> None:
        await self.redis_client.hset(self.keys.stock_key(), product_id, quantity)

    async def get_stock(self, product_id: str) -> Optional[int]:
        stock = await self.redis_client.hget(self.keys.stock_key(), product_id)
        return None if stock is None else int(stock)

    async def decrement(self, order_id: str, product_id: str, quantity: int) -> bool:
        """Take `quantity` units for an order. Returns False when already applied or untracked."""
        if self.latency:
            await asyncio.sleep(self.latency)
        stock_key = self.keys.stock_key()
        applied_key = self.keys.inventory_applied_key(order_id)
        async with self.redis_client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(stock_key, applied_key)
                    if await pipe.sismember(applied_key, product_id):
                        return False
                    stock = await pipe.hget(stock_key, product_id)
                    if stock is None:
                        logger.debug(f"Product {product_id} has no stock record, skipping")
                        return False
                    if int(stock) < quantity:
                        raise ExternalServiceError(
                            "inventory",
                            f"insufficient stock for {product_id}: have {int(stock)}, need {quantity}",
                        )
                    pipe.multi()
                    pipe.hincrby(stock_key, product_id, -quantity)
                    pipe.sadd(applied_key, product_id)
                    await pipe.execute()
                    return True
                except WatchError:
                    continue


class RandomTrackingNumbers:
    """Tracking numbers like TRK-<last 4 of order id>-<4 random digits>."""

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def __call__(self, order_id: str) -> str:
        return f"TRK-{order_id[-4:]}-{self.rng.randrange(10000):04d}"


class SequentialTrackingNumbers:
    def __init__(self, start: int = 1):
        self._counter = itertools.count(start)

    def __call__(self, order_id: str) -> str:
        return f"TRK-{order_id[-4:]}-{next(self._counter):04d}"


@dataclass
class Integrations:
    payment_gateway: PaymentGateway
    email_provider: EmailProvider
    invoice_renderer: InvoiceRenderer
    analytics: AnalyticsClient
    warehouse: WarehouseClient
    inventory: InventoryStore
    tracking_numbers: Callable[[str], str]


def build_integrations(client, queue_name: str = settings.QUEUE_NAME, simulate_latency: bool = settings.SIMULATED_LATENCY) -> Integrations:
    """Wire the simulated integrations, with the original demo latencies if enabled."""
    scale = 1.0 if simulate_latency else 0.0
    return Integrations(
        payment_gateway=PaymentGateway(latency=2.0 * scale),
        email_provider=EmailProvider(latency=1.0 * scale),
        invoice_renderer=InvoiceRenderer(latency=3.0 * scale),
        analytics=AnalyticsClient(latency=0.2 * scale),
        warehouse=WarehouseClient(latency=0.5 * scale),
        inventory=InventoryStore(client, queue_name=queue_name, latency=0.1 * scale),
        tracking_numbers=RandomTrackingNumbers(),
    )
