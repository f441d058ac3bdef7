from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, model_validator
import uuid

from .enums import JobStatus, OrderStatus, PaymentMethod, PaymentStatus, PriorityLevel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Jobs

class JobResult(BaseModel):
    job_id: Optional[str] = None
    status: JobStatus
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None

class JobOptions(BaseModel):
    priority: PriorityLevel = PriorityLevel.default
    max_retries: int = Field(default=3, ge=0)
    timeout: float = Field(default=30.0, gt=0)  # seconds
    delay: float = Field(default=0.0, ge=0)  # seconds from submission

class JobModel(BaseModel):
    job_id: str
    task_type: str
    payload: str  # serialized JSON, opaque to the broker
    priority: PriorityLevel
    status: JobStatus = JobStatus.pending
    max_retries: int = Field(default=3, ge=0)
    timeout: float = Field(default=30.0, gt=0)
    retry_count: int = Field(default=0, ge=0)
    deferred_count: int = Field(default=0, ge=0)
    eligible_at: float  # epoch seconds
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @classmethod
    def from_submission(cls, task_type: str, payload: str, options: JobOptions, now: float) -> 'JobModel':
        """Create a JobModel for a freshly submitted task."""
        return cls(
            job_id=uuid.uuid4().hex,
            task_type=getattr(task_type, "value", task_type),
            payload=payload,
            priority=options.priority,
            status=JobStatus.scheduled if options.delay > 0 else JobStatus.pending,
            max_retries=options.max_retries,
            timeout=options.timeout,
            eligible_at=now + options.delay,
        )

    @property
    def attempt(self) -> int:
        """1-based number of the current execution attempt."""
        return self.retry_count + 1

class Worker(BaseModel):
    worker_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    concurrency: int = 1
    last_heartbeat: str = Field(default_factory=lambda: utcnow().isoformat())
    current_jobs: List[str] = Field(default_factory=list)
    processed_jobs: int = 0
    failed_jobs: int = 0
    start_time: datetime = Field(default_factory=utcnow)
    status: Optional[str] = None
    class Config:
        populate_by_name = True
        validate_assignment = True


# Orders

class Address(BaseModel):
    street: str
    city: str
    state: str
    postal_code: str
    country: str

    def formatted(self) -> str:
        return f"{self.street}, {self.city}, {self.state} {self.postal_code}"

class OrderItem(BaseModel):
    product_id: str
    product_name: str
    quantity: int = Field(ge=1)
    unit_price: float = Field(gt=0)
    subtotal: float

    @classmethod
    def priced(cls, product_id: str, product_name: str, quantity: int, unit_price: float) -> 'OrderItem':
        return cls(
            product_id=product_id,
            product_name=product_name,
            quantity=quantity,
            unit_price=unit_price,
            subtotal=round(unit_price * quantity, 2),
        )

class Order(BaseModel):
    id: str
    customer_id: str
    customer_email: str
    items: List[OrderItem] = Field(min_length=1)
    total_amount: float
    shipping_address: Address
    status: OrderStatus = OrderStatus.pending
    payment_status: PaymentStatus = PaymentStatus.pending
    payment_method: PaymentMethod
    invoice_url: Optional[str] = None
    tracking_number: Optional[str] = None
    notes: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = Field(default=0, ge=0)

    @model_validator(mode='after')
    def check_total(self) -> 'Order':
        if abs(self.total_amount - self.calculate_total()) > 0.005:
            raise ValueError(
                f"total_amount {self.total_amount} does not match item subtotals {self.calculate_total()}"
            )
        return self

    def calculate_total(self) -> float:
        return round(sum(item.subtotal for item in self.items), 2)

    def touch(self, now: Optional[datetime] = None) -> None:
        self.updated_at = now or utcnow()


# Order API

class CreateOrderItemRequest(BaseModel):
    product_id: str = Field(min_length=1)
    product_name: str = Field(min_length=1)
    quantity: int = Field(ge=1)
    unit_price: float = Field(gt=0)

class CreateOrderRequest(BaseModel):
    customer_id: str = Field(min_length=1)
    customer_email: str = Field(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    items: List[CreateOrderItemRequest] = Field(min_length=1)
    shipping_address: Address
    payment_method: PaymentMethod
    notes: str = ""

class CancelOrderRequest(BaseModel):
    reason: str = Field(min_length=5)

class OrderListResponse(BaseModel):
    total: int
    orders: List[Order]

class OrderStatusResponse(BaseModel):
    order_id: str
    status: OrderStatus
    payment_status: PaymentStatus
    updated_at: datetime

class SuccessResponse(BaseModel):
    message: str
    data: Optional[Any] = None
