"""Job payloads carried by each task type."""
from typing import List
from pydantic import BaseModel, Field


class PaymentPayload(BaseModel):
    order_id: str
    amount: float = Field(gt=0)
    payment_method: str

class InventoryItem(BaseModel):
    product_id: str
    quantity: int = Field(ge=1)

class InventoryPayload(BaseModel):
    order_id: str
    items: List[InventoryItem]

class EmailPayload(BaseModel):
    order_id: str
    customer_email: str
    customer_name: str
    total_amount: float

class InvoicePayload(BaseModel):
    order_id: str
    customer_name: str
    customer_email: str
    total_amount: float

class AnalyticsPayload(BaseModel):
    order_id: str
    customer_id: str
    total_amount: float
    item_count: int
    payment_method: str
    created_at: str

class WarehousePayload(BaseModel):
    order_id: str
    customer_name: str
    shipping_address: str
    item_count: int
    priority: str = "standard"  # standard, express, overnight
