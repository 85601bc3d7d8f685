from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from proposal_lifecycle.core.proposals.models import AuditRecord, ProposalOrigin


class ProposalCreateRequest(BaseModel):
    client_id: int = Field(gt=0, description="Owning client identifier.", examples=[42])
    product: str = Field(
        min_length=1, max_length=100, description="Product being offered.", examples=["Gold Plan"]
    )
    monthly_value: Decimal = Field(
        ge=0,
        max_digits=14,
        decimal_places=2,
        description="Monthly amount in the account currency.",
        examples=["250.00"],
    )
    origin: ProposalOrigin = Field(
        default=ProposalOrigin.API,
        description="Channel the proposal came from.",
        examples=["APP"],
    )


class ProposalUpdateRequest(BaseModel):
    expected_version: int = Field(
        ge=1, description="Version the caller last read.", examples=[1]
    )
    product: Optional[str] = Field(
        default=None, min_length=1, max_length=100, description="New product.", examples=["Gold"]
    )
    monthly_value: Optional[Decimal] = Field(
        default=None,
        ge=0,
        max_digits=14,
        decimal_places=2,
        description="New monthly amount.",
        examples=["300.00"],
    )


class OrderPlaceRequest(BaseModel):
    notes: Optional[str] = Field(
        default=None, max_length=500, description="Free-text notes.", examples=["Call first"]
    )


class ProposalAuditResponse(BaseModel):
    proposal_id: str = Field(description="Proposal identifier.", examples=["pp_001"])
    items: List[AuditRecord] = Field(
        default_factory=list, description="Audit records, oldest first."
    )
