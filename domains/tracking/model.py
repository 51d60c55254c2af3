from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, Text
from sqlmodel import Field, SQLModel

STATUS_PENDING = "pending"
STATUS_FIRED = "fired"
STATUS_FAILED = "failed"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PendingEvent(SQLModel, table=True):
    __tablename__ = "pixelfly_pending_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    # not unique: a duplicated order-placed delivery would enrol twice
    order_id: int = Field(index=True)
    event_data: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(default=STATUS_PENDING, max_length=20, index=True)
    fired_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class EventLog(SQLModel, table=True):
    """Write-only audit of raw PixelFly responses."""

    __tablename__ = "pixelfly_event_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    event_type: str = Field(max_length=50, index=True)
    event_id: str = Field(max_length=100)
    order_id: Optional[int] = Field(default=None, index=True)
    response_code: Optional[int] = None
    response_body: Optional[str] = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(default_factory=utc_now)


class OrderTracking(SQLModel, table=True):
    """Order-side flags, the meta the shop keeps next to each order."""

    __tablename__ = "pixelfly_order_tracking"

    order_id: int = Field(primary_key=True)
    status: Optional[str] = Field(default=None, max_length=40)
    payment_method: Optional[str] = Field(default=None, max_length=80)
    tracked: bool = False
    server_tracked: bool = False
    fired_at: Optional[datetime] = None
    pending_event_id: Optional[int] = None
    # last order JSON posted by the shop, used to rebuild the thank-you page push
    order_data: Optional[str] = Field(default=None, sa_column=Column(Text))
    updated_at: datetime = Field(default_factory=utc_now)
