from proposal_lifecycle.core.proposals.models import (
    AuditEventKind,
    AuditRecord,
    ProposalOrigin,
    ProposalPage,
    ProposalRecord,
    ProposalStatus,
)
from proposal_lifecycle.core.proposals.repository import ProposalRepository, ProposalUnitOfWork
from proposal_lifecycle.core.proposals.service import ProposalLifecycleService

__all__ = [
    "AuditEventKind",
    "AuditRecord",
    "ProposalLifecycleService",
    "ProposalOrigin",
    "ProposalPage",
    "ProposalRecord",
    "ProposalRepository",
    "ProposalStatus",
    "ProposalUnitOfWork",
]
