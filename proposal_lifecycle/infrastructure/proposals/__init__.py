from proposal_lifecycle.infrastructure.proposals.in_memory import InMemoryProposalRepository
from proposal_lifecycle.infrastructure.proposals.postgres import PostgresProposalRepository

__all__ = ["InMemoryProposalRepository", "PostgresProposalRepository"]
