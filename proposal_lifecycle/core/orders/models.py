from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from proposal_lifecycle.core.proposals.models import quantize_money


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELED = "CANCELED"

    @property
    def label(self) -> str:
        return _ORDER_STATUS_LABELS[self]

    @property
    def is_cancellable(self) -> bool:
        return self in (OrderStatus.PENDING, OrderStatus.APPROVED)

    @classmethod
    def values(cls) -> list[str]:
        return [member.value for member in cls]


_ORDER_STATUS_LABELS = {
    OrderStatus.PENDING: "Awaiting payment",
    OrderStatus.APPROVED: "Approved",
    OrderStatus.REJECTED: "Rejected",
    OrderStatus.SHIPPED: "Shipped",
    OrderStatus.DELIVERED: "Delivered",
    OrderStatus.CANCELED: "Canceled",
}


class OrderRecord(BaseModel):
    order_id: str = Field(description="Internal order identifier.", examples=["ord_001"])
    proposal_id: str = Field(description="Originating proposal identifier.", examples=["pp_001"])
    status: OrderStatus = Field(description="Order status.", examples=["PENDING"])
    total_value: Decimal = Field(
        description="Proposal monthly value captured when the order was placed.",
        examples=["250.00"],
    )
    notes: Optional[str] = Field(
        default=None, description="Optional free-text notes.", examples=["Deliver after 6pm"]
    )
    created_at: datetime = Field(
        description="Creation timestamp.", examples=["2026-02-21T12:00:00+00:00"]
    )
    updated_at: datetime = Field(
        description="Last update timestamp.", examples=["2026-02-21T12:05:00+00:00"]
    )

    @field_validator("total_value")
    @classmethod
    def _quantize_total_value(cls, value: Decimal) -> Decimal:
        return quantize_money(value)


class OrderPage(BaseModel):
    items: List[OrderRecord] = Field(default_factory=list, description="Page of orders.")
    next_cursor: Optional[str] = Field(
        default=None, description="Cursor for the next page.", examples=["ord_002"]
    )
