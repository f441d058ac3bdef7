from typing import Dict, List, Tuple
import logging

from pydantic import BaseModel

from ..models.enums import PriorityLevel, TaskType
from ..models.payloads import (
    AnalyticsPayload,
    EmailPayload,
    InventoryItem,
    InventoryPayload,
    InvoicePayload,
    PaymentPayload,
    WarehousePayload,
)
from ..models.schemas import JobModel, JobOptions, Order
from .queue import JobQueueService

logger = logging.getLogger(__name__)

ORDER_JOB_OPTIONS: Dict[TaskType, JobOptions] = {
    TaskType.payment_process: JobOptions(priority=PriorityLevel.critical, max_retries=3, timeout=30, delay=2),
    TaskType.inventory_update: JobOptions(priority=PriorityLevel.high, max_retries=3, timeout=15, delay=1),
    TaskType.email_confirmation: JobOptions(priority=PriorityLevel.default, max_retries=5, timeout=20, delay=3),
    TaskType.invoice_generate: JobOptions(priority=PriorityLevel.default, max_retries=3, timeout=60, delay=5),
    TaskType.analytics_track: JobOptions(priority=PriorityLevel.low, max_retries=2, timeout=10, delay=10),
    TaskType.warehouse_notify: JobOptions(priority=PriorityLevel.low, max_retries=3, timeout=15, delay=5),
}


def build_payload(task_type: TaskType, order: Order) -> BaseModel:
    # The customer id stands in for a display name
    if task_type == TaskType.payment_process:
        return PaymentPayload(
            order_id=order.id,
            amount=order.total_amount,
            payment_method=order.payment_method.value,
        )
    if task_type == TaskType.inventory_update:
        return InventoryPayload(
            order_id=order.id,
            items=[InventoryItem(product_id=item.product_id, quantity=item.quantity) for item in order.items],
        )
    if task_type == TaskType.email_confirmation:
        return EmailPayload(
            order_id=order.id,
            customer_email=order.customer_email,
            customer_name=order.customer_id,
            total_amount=order.total_amount,
        )
    if task_type == TaskType.invoice_generate:
        return InvoicePayload(
            order_id=order.id,
            customer_name=order.customer_id,
            customer_email=order.customer_email,
            total_amount=order.total_amount,
        )
    if task_type == TaskType.analytics_track:
        return AnalyticsPayload(
            order_id=order.id,
            customer_id=order.customer_id,
            total_amount=order.total_amount,
            item_count=len(order.items),
            payment_method=order.payment_method.value,
            created_at=order.created_at.isoformat(),
        )
    if task_type == TaskType.warehouse_notify:
        return WarehousePayload(
            order_id=order.id,
            customer_name=order.customer_id,
            shipping_address=order.shipping_address.formatted(),
            item_count=len(order.items),
            priority="standard",
        )
    raise ValueError(f"No payload builder for task type: {task_type}")


class TaskProducer:
    """
    Fans a newly stored order out into its background jobs.

    Each job is built and submitted on its own. A failure is logged and the
    remaining jobs still go out; nothing is raised to the caller, because
    the order already exists by the time this runs.
    """

    def __init__(self, queue_service: JobQueueService):
        self.queue_service = queue_service

    def build_jobs(self, order: Order) -> List[Tuple[TaskType, BaseModel, JobOptions]]:
        return [
            (task_type, build_payload(task_type, order), options)
            for task_type, options in ORDER_JOB_OPTIONS.items()
        ]

    async def enqueue_order_tasks(self, order: Order) -> List[JobModel]:
        submitted = []
        for task_type, options in ORDER_JOB_OPTIONS.items():
            try:
                payload = build_payload(task_type, order)
                job = await self.queue_service.submit(task_type, payload, options)
            except Exception as e:
                logger.error(f"Failed to enqueue {task_type.value} task for order {order.id}: {e}")
                continue
            submitted.append(job)
            logger.info(f"[Enqueued] {task_type.value} task for order: {order.id}")

        if len(submitted) == len(ORDER_JOB_OPTIONS):
            logger.info(f"All background tasks enqueued for order: {order.id}")
        else:
            logger.warning(
                f"{len(submitted)}/{len(ORDER_JOB_OPTIONS)} background tasks enqueued for order: {order.id}"
            )
        return submitted
