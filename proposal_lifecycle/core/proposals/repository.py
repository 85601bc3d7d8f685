from __future__ import annotations

from contextlib import AbstractContextManager
from typing import TYPE_CHECKING, Any, Mapping, Optional, Protocol

from proposal_lifecycle.core.proposals.models import (
    AuditRecord,
    ProposalRecord,
    ProposalSortField,
    ProposalStatus,
    SortDirection,
)

if TYPE_CHECKING:
    from proposal_lifecycle.core.orders.models import OrderRecord, OrderStatus

MAX_PAGE_SIZE = 100


class ProposalUnitOfWork(Protocol):
    """One transaction against the proposal store.

    Row locks taken here are held until the enclosing ``unit_of_work()``
    block exits; staged writes become visible together on normal exit and
    are discarded on any exception.
    """

    def acquire_for_update(
        self, proposal_id: str, *, include_deleted: bool = False
    ) -> ProposalRecord: ...

    def commit(
        self,
        locked: ProposalRecord,
        changes: Mapping[str, Any],
        *,
        expected_version: int,
    ) -> ProposalRecord: ...

    def insert_proposal(self, proposal: ProposalRecord) -> None: ...

    def append_audit(self, record: AuditRecord) -> None: ...

    def lock_orders_for_proposal(self, proposal_id: str) -> list[OrderRecord]: ...

    def insert_order(self, order: OrderRecord) -> None: ...

    def acquire_order_for_update(self, order_id: str) -> OrderRecord: ...

    def update_order(self, order: OrderRecord) -> None: ...


class ProposalRepository(Protocol):
    def unit_of_work(self) -> AbstractContextManager[ProposalUnitOfWork]: ...

    def get_proposal(
        self, *, proposal_id: str, include_deleted: bool = False
    ) -> Optional[ProposalRecord]: ...

    def list_proposals(
        self,
        *,
        status: Optional[ProposalStatus],
        client_id: Optional[int],
        sort: ProposalSortField,
        direction: SortDirection,
        limit: int,
        cursor: Optional[str],
    ) -> tuple[list[ProposalRecord], Optional[str]]: ...

    def list_audit(self, *, proposal_id: str) -> list[AuditRecord]: ...

    def get_order(self, *, order_id: str) -> Optional[OrderRecord]: ...

    def list_orders(
        self,
        *,
        status: Optional[OrderStatus],
        limit: int,
        cursor: Optional[str],
    ) -> tuple[list[OrderRecord], Optional[str]]: ...
