"""
Job handlers, one per task type, behind a single interface.

A handler turns the job's raw payload into its payload model with
`parse`, then performs its effect in `execute`. Raising
`RetryableJobError` (or any unexpected error) asks the worker to retry with
backoff; raising `PermanentJobError` drops the job. `DeferredJobError`
reschedules a job that is not ready yet without spending a retry. Every handler must be
safe to run more than once for the same job.
"""
from abc import ABC, abstractmethod
from typing import ClassVar, Dict, Generic, List, Type, TypeVar
import logging

from pydantic import BaseModel

from ..core.config import settings
from ..core.exceptions import (
    ConcurrentUpdateError,
    DeferredJobError,
    ExternalServiceError,
    InvalidTransitionError,
    PermanentJobError,
    RetryableJobError,
    UnknownTaskTypeError,
)
from ..models.enums import JobStatus, OrderStatus, PaymentStatus, TaskType
from ..models.payloads import (
    AnalyticsPayload,
    EmailPayload,
    InventoryPayload,
    InvoicePayload,
    PaymentPayload,
    WarehousePayload,
)
from ..models.schemas import JobResult, Order
from . import state_machine
from .integrations import Integrations
from .orders import OrderAccess

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=BaseModel)
H = TypeVar("H")


class JobHandler(ABC, Generic[P]):
    task_type: ClassVar[TaskType]
    payload_model: ClassVar[Type[BaseModel]]
    # failures of a best-effort job are logged and the job still completes
    best_effort: ClassVar[bool] = False

    def parse(self, raw_payload: str) -> P:
        """Validate the serialized payload. A ValidationError is never retried."""
        return self.payload_model.model_validate_json(raw_payload)

    @abstractmethod
    async def execute(self, payload: P, orders: OrderAccess) -> JobResult:
        ...

    def done(self, payload: BaseModel, **result) -> JobResult:
        return JobResult(status=JobStatus.completed, result={"order_id": payload.order_id, **result})


class PaymentHandler(JobHandler[PaymentPayload]):
    task_type = TaskType.payment_process
    payload_model = PaymentPayload

    def __init__(self, integrations: Integrations):
        self.gateway = integrations.payment_gateway

    async def _set_payment_status(self, orders: OrderAccess, order_id: str, status: PaymentStatus) -> None:
        """Best-effort status write, a refused transition is only logged."""
        try:
            await orders.mutate(order_id, lambda order: state_machine.update_payment_status(order, status))
        except (InvalidTransitionError, ConcurrentUpdateError) as e:
            logger.warning(f"[Payment] Could not mark order {order_id} payment {status.value}: {e}")

    async def execute(self, payload: PaymentPayload, orders: OrderAccess) -> JobResult:
        order = await orders.get(payload.order_id)
        if order.payment_status == PaymentStatus.completed:
            logger.info(f"[Payment] Order {order.id} already paid, skipping")
            return self.done(payload, skipped="already paid")
        if order.status == OrderStatus.cancelled:
            logger.info(f"[Payment] Order {order.id} was cancelled, not charging")
            return self.done(payload, skipped="order cancelled")
        if abs(order.total_amount - payload.amount) > 0.005:
            raise PermanentJobError(
                f"payment amount {payload.amount:.2f} does not match order total {order.total_amount:.2f}"
            )

        await self._set_payment_status(orders, order.id, PaymentStatus.processing)

        logger.info(f"[Payment] Processing payment for order: {payload.order_id}")
        logger.info(f"[Payment] Amount: ${payload.amount:.2f} | Method: {payload.payment_method}")
        try:
            transaction_id = await self.gateway.charge(payload.order_id, payload.amount, payload.payment_method)
        except ExternalServiceError as e:
            await self._set_payment_status(orders, order.id, PaymentStatus.failed)
            raise RetryableJobError(f"payment failed for order {payload.order_id}: {e.message}") from e

        try:
            await orders.mutate(
                payload.order_id,
                lambda order: state_machine.update_payment_status(order, PaymentStatus.completed),
            )
        except InvalidTransitionError as e:
            # The charge went through but the order can no longer take it
            try:
                await self.gateway.refund(transaction_id)
            except ExternalServiceError as refund_error:
                logger.error(f"[Payment] Could not refund {transaction_id} for order {payload.order_id}: {refund_error}")
            else:
                logger.warning(f"[Payment] Refunded {transaction_id}, order {payload.order_id} is {e.current}")
            raise PermanentJobError(
                f"payment {transaction_id} captured but order {payload.order_id} rejected it: {e.message}"
            ) from e

        logger.info(f"[Payment] Payment processed successfully for order: {payload.order_id}")
        return self.done(payload, transaction_id=transaction_id)


class InventoryHandler(JobHandler[InventoryPayload]):
    task_type = TaskType.inventory_update
    payload_model = InventoryPayload

    def __init__(self, integrations: Integrations):
        self.inventory = integrations.inventory

    async def execute(self, payload: InventoryPayload, orders: OrderAccess) -> JobResult:
        logger.info(f"[Inventory] Updating inventory for order: {payload.order_id} ({len(payload.items)} items)")
        applied = []
        for item in payload.items:
            try:
                if await self.inventory.decrement(payload.order_id, item.product_id, item.quantity):
                    applied.append(item.product_id)
            except ExternalServiceError:
                raise
            except Exception as e:
                raise RetryableJobError(
                    f"failed to update inventory for product {item.product_id}: {e}"
                ) from e
            logger.debug(f"[Inventory] Updated: {item.product_id} (qty: {item.quantity})")

        logger.info(f"[Inventory] All items updated for order: {payload.order_id}")
        return self.done(payload, decremented=applied)


class EmailHandler(JobHandler[EmailPayload]):
    task_type = TaskType.email_confirmation
    payload_model = EmailPayload

    def __init__(self, integrations: Integrations):
        self.provider = integrations.email_provider

    async def execute(self, payload: EmailPayload, orders: OrderAccess) -> JobResult:
        logger.info(f"[Email] Sending confirmation to: {payload.customer_email} for order {payload.order_id}")
        message_id = await self.provider.send_confirmation(payload)
        logger.info(f"[Email] Confirmation sent successfully to: {payload.customer_email}")
        return self.done(payload, message_id=message_id)


class InvoiceHandler(JobHandler[InvoicePayload]):
    task_type = TaskType.invoice_generate
    payload_model = InvoicePayload

    def __init__(self, integrations: Integrations):
        self.renderer = integrations.invoice_renderer

    async def execute(self, payload: InvoicePayload, orders: OrderAccess) -> JobResult:
        logger.info(f"[Invoice] Generating invoice for order: {payload.order_id}")
        invoice_url = await self.renderer.render(payload)

        def attach(order: Order) -> None:
            if order.invoice_url != invoice_url:
                order.invoice_url = invoice_url
                order.touch()

        await orders.mutate(payload.order_id, attach)
        logger.info(f"[Invoice] Invoice generated: {invoice_url}")
        return self.done(payload, invoice_url=invoice_url)


class AnalyticsHandler(JobHandler[AnalyticsPayload]):
    task_type = TaskType.analytics_track
    payload_model = AnalyticsPayload
    best_effort = True

    def __init__(self, integrations: Integrations):
        self.analytics = integrations.analytics

    async def execute(self, payload: AnalyticsPayload, orders: OrderAccess) -> JobResult:
        logger.info(f"[Analytics] Tracking order: {payload.order_id}")
        try:
            await self.analytics.track("order_created", payload.model_dump())
        except Exception as e:
            # Analytics must never hold back an order
            logger.warning(f"[Analytics] Failed to send data for order {payload.order_id}: {e}")
            return self.done(payload, tracked=False, error=str(e))
        return self.done(payload, tracked=True)


class WarehouseHandler(JobHandler[WarehousePayload]):
    task_type = TaskType.warehouse_notify
    payload_model = WarehousePayload

    def __init__(self, integrations: Integrations, payment_wait: float = settings.PAYMENT_WAIT_INTERVAL):
        self.warehouse = integrations.warehouse
        self.tracking_numbers = integrations.tracking_numbers
        self.payment_wait = payment_wait

    async def execute(self, payload: WarehousePayload, orders: OrderAccess) -> JobResult:
        order = await orders.get(payload.order_id)
        if order.tracking_number and order.status in (OrderStatus.shipped, OrderStatus.delivered):
            logger.info(f"[Warehouse] Order {order.id} already shipped as {order.tracking_number}")
            return self.done(payload, tracking_number=order.tracking_number, skipped="already shipped")
        if order.status in (OrderStatus.cancelled, OrderStatus.payment_failed):
            raise PermanentJobError(f"order {order.id} is {order.status.value}, not shipping")
        if order.status in (OrderStatus.pending, OrderStatus.payment_processing):
            raise DeferredJobError(f"order {order.id} is awaiting payment ({order.status.value})", self.payment_wait)

        logger.info(
            f"[Warehouse] Notifying warehouse about order: {payload.order_id} | "
            f"Items: {payload.item_count} | Priority: {payload.priority}"
        )
        await self.warehouse.notify(payload)

        candidate = self.tracking_numbers(payload.order_id)

        def ship(order: Order) -> None:
            if not order.tracking_number:
                order.tracking_number = candidate
            if order.status == OrderStatus.confirmed:
                state_machine.transition(order, OrderStatus.processing)
            state_machine.transition(order, OrderStatus.shipped)

        try:
            order = await orders.mutate(payload.order_id, ship)
        except InvalidTransitionError as e:
            raise PermanentJobError(f"cannot ship order {payload.order_id}: {e.message}") from e

        logger.info(f"[Warehouse] Notification sent for order: {order.id} | Tracking: {order.tracking_number}")
        return self.done(payload, tracking_number=order.tracking_number)


class HandlerRegistry(Generic[H]):
    """Task type -> handler mapping, built once at startup."""

    def __init__(self, name: str = "job handler"):
        self.name = name
        self._handlers: Dict[str, H] = {}
        self._frozen = False

    def register(self, task_type: str, handler: H) -> None:
        task_type = getattr(task_type, "value", task_type)
        if self._frozen:
            raise RuntimeError(f"Cannot register '{task_type}' in {self.name} registry: registry is frozen")
        self._handlers[task_type] = handler

    def get(self, task_type: str) -> H:
        task_type = getattr(task_type, "value", task_type)
        try:
            return self._handlers[task_type]
        except KeyError:
            raise UnknownTaskTypeError(task_type) from None

    def list(self) -> List[str]:
        return list(self._handlers.keys())

    def freeze(self) -> None:
        self._frozen = True

    def is_frozen(self) -> bool:
        return self._frozen


HANDLER_CLASSES: List[Type[JobHandler]] = [
    PaymentHandler,
    InventoryHandler,
    EmailHandler,
    InvoiceHandler,
    AnalyticsHandler,
    WarehouseHandler,
]


def build_handler_registry(integrations: Integrations, freeze: bool = True) -> HandlerRegistry:
    registry: HandlerRegistry = HandlerRegistry()
    for handler_class in HANDLER_CLASSES:
        registry.register(handler_class.task_type, handler_class(integrations))
    if freeze:
        registry.freeze()
    logger.info(f"Job handlers registered: {registry.list()}")
    return registry
