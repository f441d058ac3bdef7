from typing import Optional
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
import logging

from ..core.dependencies import get_order_service, get_task_producer
from ..core.exceptions import FulfillmentError
from ..models.schemas import (
    CancelOrderRequest,
    CreateOrderRequest,
    Order,
    OrderListResponse,
    OrderStatusResponse,
    SuccessResponse,
)
from ..services.orders import OrderService
from ..services.producer import TaskProducer

logger = logging.getLogger(__name__)

order_router = APIRouter(prefix="/api/v1/orders", tags=["Orders"])


def _http_error(error: FulfillmentError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error.message)


@order_router.post("", response_model=Order, status_code=status.HTTP_201_CREATED)
async def create_order(
    request: CreateOrderRequest,
    background_tasks: BackgroundTasks,
    service: OrderService = Depends(get_order_service),
    producer: TaskProducer = Depends(get_task_producer),
):
    """
    Create an order and schedule its background jobs.
    """
    try:
        order = await service.create_order(request)
    except FulfillmentError as e:
        raise _http_error(e)
    except Exception as e:
        logger.error(f"Failed to create order: {e}")
        raise HTTPException(status_code=500, detail="Failed to create order")

    background_tasks.add_task(producer.enqueue_order_tasks, order)
    return order


@order_router.get("", response_model=OrderListResponse)
async def list_orders(
    customer_id: Optional[str] = None,
    service: OrderService = Depends(get_order_service),
):
    orders = await service.list_orders(customer_id)
    return OrderListResponse(total=len(orders), orders=orders)


@order_router.get("/{order_id}", response_model=Order)
async def get_order(order_id: str, service: OrderService = Depends(get_order_service)):
    try:
        return await service.get_order(order_id)
    except FulfillmentError as e:
        raise _http_error(e)


@order_router.get("/{order_id}/status", response_model=OrderStatusResponse)
async def get_order_status(order_id: str, service: OrderService = Depends(get_order_service)):
    try:
        return await service.get_order_status(order_id)
    except FulfillmentError as e:
        raise _http_error(e)


@order_router.post("/{order_id}/cancel", response_model=SuccessResponse)
async def cancel_order(
    order_id: str,
    request: CancelOrderRequest,
    service: OrderService = Depends(get_order_service),
):
    """
    Cancel an order that has not reached processing yet.
    """
    try:
        order = await service.cancel_order(order_id, request.reason)
    except FulfillmentError as e:
        raise _http_error(e)
    return SuccessResponse(message="Order cancelled successfully", data=order.model_dump(mode="json"))
