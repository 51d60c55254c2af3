from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class LineItem(BaseModel):
    # product_id is None once the product was deleted from the shop
    product_id: Optional[int] = None
    name: str = ""
    price: float = 0.0  # unit price, excluding tax
    quantity: int = 1
    category: Optional[str] = None
    variant_attributes: Dict[str, str] = Field(default_factory=dict)


class BillingAddress(BaseModel):
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    city: str = ""
    state: str = ""
    postcode: str = ""
    country: str = ""


class Order(BaseModel):
    id: int
    status: str = "pending"
    payment_method: str = ""
    currency: str = ""
    subtotal: float = 0.0
    total_tax: float = 0.0
    shipping_total: float = 0.0
    discount_total: float = 0.0
    coupon_codes: List[str] = Field(default_factory=list)
    items: List[LineItem] = Field(default_factory=list)
    billing: BillingAddress = Field(default_factory=BillingAddress)
    customer_ip_address: str = ""
    customer_user_agent: str = ""
    checkout_order_received_url: str = ""
    meta: Dict[str, str] = Field(default_factory=dict)


class OrderPlacedPayload(BaseModel):
    order: Order
    # first-party cookies of the checkout request (_fbp, _fbc)
    cookies: Dict[str, str] = Field(default_factory=dict)


class OrderStatusChangedPayload(BaseModel):
    order_id: int
    old_status: str
    new_status: str
    order: Optional[Order] = None


class TrackEventPayload(BaseModel):
    event_type: str
    event_id: Optional[str] = None
    value: float = 0.0
    currency: str = ""
    items: List[Dict[str, Any]] = Field(default_factory=list)
    cookies: Dict[str, str] = Field(default_factory=dict)
    fbclid: Optional[str] = None


class DispatchResult(BaseModel):
    success: bool
    response: Optional[Any] = None
    status_code: Optional[int] = None
    error: Optional[str] = None


class EventStats(BaseModel):
    pending: int = 0
    fired: int = 0
    failed: int = 0
    total: int = 0


class PendingEventOut(BaseModel):
    id: int
    order_id: int
    status: str
    order_status: Optional[str] = None
    event_data: Dict[str, Any]
    created_at: datetime
    fired_at: Optional[datetime] = None


class BulkFireResult(BaseModel):
    fired: int = 0
    failed: int = 0
    skipped: int = 0
