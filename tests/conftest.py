"""
FILE: tests/conftest.py
Shared fixtures for lifecycle tests.
"""

from pathlib import Path

import pytest

from proposal_lifecycle.api.routers.proposals import reset_proposal_services_for_tests
from proposal_lifecycle.core.orders import OrderPlacementService
from proposal_lifecycle.core.proposals import ProposalLifecycleService
from proposal_lifecycle.infrastructure.proposals import InMemoryProposalRepository


def _has_marker(item: pytest.Item, name: str) -> bool:
    return item.get_closest_marker(name) is not None


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    for item in items:
        if _has_marker(item, "unit") or _has_marker(item, "integration"):
            continue

        path = Path(str(item.fspath)).as_posix().lower()
        if "/tests/integration/" in path or "_integration.py" in path:
            item.add_marker(pytest.mark.integration)
            continue
        item.add_marker(pytest.mark.unit)


@pytest.fixture(autouse=True)
def in_memory_runtime(monkeypatch: pytest.MonkeyPatch):
    """Every test starts from fresh router singletons on the in-memory store."""

    monkeypatch.setenv("PROPOSAL_STORE_BACKEND", "IN_MEMORY")
    monkeypatch.delenv("PROPOSAL_POSTGRES_DSN", raising=False)
    reset_proposal_services_for_tests()
    yield
    reset_proposal_services_for_tests()


@pytest.fixture
def repository() -> InMemoryProposalRepository:
    return InMemoryProposalRepository(lock_timeout_seconds=2.0)


@pytest.fixture
def service(repository) -> ProposalLifecycleService:
    return ProposalLifecycleService(repository=repository)


@pytest.fixture
def order_service(repository) -> OrderPlacementService:
    return OrderPlacementService(repository=repository)


@pytest.fixture
def approved_proposal(service):
    proposal = service.create(
        client_id=7, product="Gold Plan", monthly_value="250.00", origin="APP"
    )
    service.submit(proposal_id=proposal.proposal_id)
    return service.approve(proposal_id=proposal.proposal_id)
