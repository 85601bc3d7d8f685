from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

MONEY_QUANTUM = Decimal("0.01")


def quantize_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(MONEY_QUANTUM)


class ProposalStatus(str, Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELED = "CANCELED"

    @property
    def label(self) -> str:
        return _PROPOSAL_STATUS_LABELS[self]

    @classmethod
    def values(cls) -> list[str]:
        return [member.value for member in cls]


_PROPOSAL_STATUS_LABELS = {
    ProposalStatus.DRAFT: "Draft",
    ProposalStatus.SUBMITTED: "Submitted",
    ProposalStatus.APPROVED: "Approved",
    ProposalStatus.REJECTED: "Rejected",
    ProposalStatus.CANCELED: "Canceled",
}


class ProposalOrigin(str, Enum):
    APP = "APP"
    SITE = "SITE"
    API = "API"


class AuditEventKind(str, Enum):
    CREATED = "CREATED"
    UPDATED_FIELDS = "UPDATED_FIELDS"
    STATUS_CHANGED = "STATUS_CHANGED"
    DELETED_LOGICAL = "DELETED_LOGICAL"


ProposalSortField = Literal["created_at", "updated_at", "monthly_value", "status", "version"]
SortDirection = Literal["asc", "desc"]


class ProposalRecord(BaseModel):
    proposal_id: str = Field(description="Internal proposal identifier.", examples=["pp_001"])
    client_id: int = Field(description="Owning client identifier.", examples=[1])
    product: str = Field(description="Product offered by the proposal.", examples=["Loan"])
    monthly_value: Decimal = Field(
        description="Monthly value with two fractional digits.", examples=["250.00"]
    )
    status: ProposalStatus = Field(description="Lifecycle status.", examples=["DRAFT"])
    origin: ProposalOrigin = Field(description="Capture channel.", examples=["API"])
    version: int = Field(ge=1, description="Optimistic-lock version.", examples=[1])
    created_at: datetime = Field(
        description="Creation timestamp.", examples=["2026-02-21T12:00:00+00:00"]
    )
    updated_at: datetime = Field(
        description="Last mutation timestamp.", examples=["2026-02-21T12:05:00+00:00"]
    )
    deleted_at: Optional[datetime] = Field(
        default=None,
        description="Logical delete marker; the row is kept for audit linkage.",
        examples=[None],
    )

    @field_validator("monthly_value")
    @classmethod
    def _quantize_monthly_value(cls, value: Decimal) -> Decimal:
        return quantize_money(value)


class AuditRecord(BaseModel):
    audit_id: str = Field(description="Audit record identifier.", examples=["aud_001"])
    proposal_id: str = Field(description="Audited proposal identifier.", examples=["pp_001"])
    actor: str = Field(description="Actor that caused the event.", examples=["user:42"])
    event_kind: AuditEventKind = Field(description="Audit event kind.", examples=["CREATED"])
    payload: Dict[str, Any] = Field(
        default_factory=dict,
        description="JSON-serializable event payload.",
        examples=[{"previous_status": "DRAFT", "new_status": "SUBMITTED"}],
    )
    created_at: datetime = Field(
        description="Event timestamp.", examples=["2026-02-21T12:00:00+00:00"]
    )


class ProposalPage(BaseModel):
    items: List[ProposalRecord] = Field(default_factory=list, description="Page of proposals.")
    next_cursor: Optional[str] = Field(
        default=None, description="Cursor for the next page.", examples=["pp_002"]
    )
