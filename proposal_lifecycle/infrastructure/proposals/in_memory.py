from contextlib import contextmanager
from copy import deepcopy
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Iterator, Mapping, Optional, Sequence, TypeVar

from proposal_lifecycle.core.errors import NotFoundError, StaleVersionError
from proposal_lifecycle.core.orders.models import OrderRecord, OrderStatus
from proposal_lifecycle.core.proposals.models import (
    AuditRecord,
    ProposalRecord,
    ProposalSortField,
    ProposalStatus,
    SortDirection,
)
from proposal_lifecycle.core.proposals.repository import ProposalRepository

DEFAULT_LOCK_TIMEOUT_SECONDS = 5.0

_T = TypeVar("_T")


class InMemoryProposalRepository(ProposalRepository):
    def __init__(self, *, lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS) -> None:
        self._lock = Lock()
        self._lock_timeout_seconds = lock_timeout_seconds
        self._proposal_locks: dict[str, Lock] = {}
        self._order_locks: dict[str, Lock] = {}
        self._order_scope_locks: dict[str, Lock] = {}
        self._proposals: dict[str, ProposalRecord] = {}
        self._audit: dict[str, list[AuditRecord]] = {}
        self._orders: dict[str, OrderRecord] = {}

    @contextmanager
    def unit_of_work(self) -> Iterator["_InMemoryUnitOfWork"]:
        uow = _InMemoryUnitOfWork(self)
        try:
            yield uow
            self._apply(uow)
        finally:
            uow.release()

    def get_proposal(
        self, *, proposal_id: str, include_deleted: bool = False
    ) -> Optional[ProposalRecord]:
        with self._lock:
            proposal = self._proposals.get(proposal_id)
            if proposal is None or (proposal.deleted_at is not None and not include_deleted):
                return None
            return deepcopy(proposal)

    def list_proposals(
        self,
        *,
        status: Optional[ProposalStatus],
        client_id: Optional[int],
        sort: ProposalSortField,
        direction: SortDirection,
        limit: int,
        cursor: Optional[str],
    ) -> tuple[list[ProposalRecord], Optional[str]]:
        with self._lock:
            rows = [row for row in self._proposals.values() if row.deleted_at is None]

        if status is not None:
            rows = [row for row in rows if row.status == status]
        if client_id is not None:
            rows = [row for row in rows if row.client_id == client_id]
        rows.sort(
            key=lambda row: (_sort_value(getattr(row, sort)), row.proposal_id),
            reverse=direction == "desc",
        )
        return _paginate(rows, key="proposal_id", limit=limit, cursor=cursor)

    def list_audit(self, *, proposal_id: str) -> list[AuditRecord]:
        with self._lock:
            return [deepcopy(record) for record in self._audit.get(proposal_id, [])]

    def get_order(self, *, order_id: str) -> Optional[OrderRecord]:
        with self._lock:
            order = self._orders.get(order_id)
            return deepcopy(order) if order is not None else None

    def list_orders(
        self,
        *,
        status: Optional[OrderStatus],
        limit: int,
        cursor: Optional[str],
    ) -> tuple[list[OrderRecord], Optional[str]]:
        with self._lock:
            rows = list(self._orders.values())

        if status is not None:
            rows = [row for row in rows if row.status == status]
        rows.sort(key=lambda row: (row.created_at, row.order_id), reverse=True)
        return _paginate(rows, key="order_id", limit=limit, cursor=cursor)

    def _named_lock(self, table: dict[str, Lock], key: str) -> Lock:
        with self._lock:
            return table.setdefault(key, Lock())

    def _read(self, table: Mapping[str, _T], key: str) -> Optional[_T]:
        with self._lock:
            row = table.get(key)
            return deepcopy(row) if row is not None else None

    def _apply(self, uow: "_InMemoryUnitOfWork") -> None:
        with self._lock:
            for proposal in uow.staged_proposals.values():
                self._proposals[proposal.proposal_id] = deepcopy(proposal)
            for record in uow.staged_audit:
                self._audit.setdefault(record.proposal_id, []).append(deepcopy(record))
            for order in uow.staged_orders.values():
                self._orders[order.order_id] = deepcopy(order)


class _InMemoryUnitOfWork:
    def __init__(self, store: InMemoryProposalRepository) -> None:
        self._store = store
        self._held: list[Lock] = []
        self._locked_keys: set[tuple[str, str]] = set()
        self._proposals: dict[str, ProposalRecord] = {}
        self._orders: dict[str, OrderRecord] = {}
        self._order_scopes: set[str] = set()
        self.staged_proposals: dict[str, ProposalRecord] = {}
        self.staged_audit: list[AuditRecord] = []
        self.staged_orders: dict[str, OrderRecord] = {}

    def acquire_for_update(
        self, proposal_id: str, *, include_deleted: bool = False
    ) -> ProposalRecord:
        if self._lock_once("proposal", self._store._proposal_locks, proposal_id):
            stored = self._store._read(self._store._proposals, proposal_id)
            if stored is not None:
                self._proposals[proposal_id] = stored
        current = self._proposals.get(proposal_id)
        if current is None or (current.deleted_at is not None and not include_deleted):
            raise NotFoundError(
                f"Proposal {proposal_id} not found.",
                code="PROPOSAL_NOT_FOUND",
                context={"proposal_id": proposal_id},
            )
        return deepcopy(current)

    def commit(
        self,
        locked: ProposalRecord,
        changes: Mapping[str, Any],
        *,
        expected_version: int,
    ) -> ProposalRecord:
        current = self._proposals.get(locked.proposal_id)
        if current is None:
            raise RuntimeError("PROPOSAL_NOT_LOCKED")
        if current.version != expected_version:
            raise StaleVersionError(
                proposal_id=current.proposal_id,
                expected_version=expected_version,
                current_version=current.version,
            )
        updated = ProposalRecord.model_validate(
            {
                **current.model_dump(),
                **changes,
                "version": current.version + 1,
                "updated_at": datetime.now(timezone.utc),
            }
        )
        self._proposals[updated.proposal_id] = updated
        self.staged_proposals[updated.proposal_id] = updated
        return deepcopy(updated)

    def insert_proposal(self, proposal: ProposalRecord) -> None:
        self._proposals[proposal.proposal_id] = deepcopy(proposal)
        self.staged_proposals[proposal.proposal_id] = deepcopy(proposal)

    def append_audit(self, record: AuditRecord) -> None:
        self.staged_audit.append(deepcopy(record))

    def lock_orders_for_proposal(self, proposal_id: str) -> list[OrderRecord]:
        self._lock_once("order_scope", self._store._order_scope_locks, proposal_id)
        self._order_scopes.add(proposal_id)
        with self._store._lock:
            stored = {
                order.order_id: deepcopy(order)
                for order in self._store._orders.values()
                if order.proposal_id == proposal_id
            }
        stored.update(
            {
                order.order_id: deepcopy(order)
                for order in self.staged_orders.values()
                if order.proposal_id == proposal_id
            }
        )
        return sorted(stored.values(), key=lambda order: (order.created_at, order.order_id))

    def insert_order(self, order: OrderRecord) -> None:
        if order.proposal_id not in self._order_scopes:
            raise RuntimeError("ORDER_SCOPE_NOT_LOCKED")
        self.staged_orders[order.order_id] = deepcopy(order)

    def acquire_order_for_update(self, order_id: str) -> OrderRecord:
        if self._lock_once("order", self._store._order_locks, order_id):
            stored = self._store._read(self._store._orders, order_id)
            if stored is not None:
                self._orders[order_id] = stored
        current = self._orders.get(order_id)
        if current is None:
            raise NotFoundError(
                f"Order {order_id} not found.",
                code="ORDER_NOT_FOUND",
                context={"order_id": order_id},
            )
        return deepcopy(current)

    def update_order(self, order: OrderRecord) -> None:
        if order.order_id not in self._orders:
            raise RuntimeError("ORDER_NOT_LOCKED")
        self._orders[order.order_id] = deepcopy(order)
        self.staged_orders[order.order_id] = deepcopy(order)

    def release(self) -> None:
        while self._held:
            self._held.pop().release()

    def _lock_once(self, kind: str, table: dict[str, Lock], key: str) -> bool:
        if (kind, key) in self._locked_keys:
            return False
        self._acquire(self._store._named_lock(table, key))
        self._locked_keys.add((kind, key))
        return True

    def _acquire(self, lock: Lock) -> None:
        if not lock.acquire(timeout=self._store._lock_timeout_seconds):
            raise TimeoutError("PROPOSAL_LOCK_TIMEOUT")
        self._held.append(lock)


def _sort_value(value: Any) -> Any:
    return value.value if isinstance(value, ProposalStatus) else value


def _paginate(
    rows: Sequence[_T], *, key: str, limit: int, cursor: Optional[str]
) -> tuple[list[_T], Optional[str]]:
    if cursor:
        row_ids = [getattr(row, key) for row in rows]
        if cursor not in row_ids:
            return [], None
        rows = rows[row_ids.index(cursor) + 1 :]
    page = list(rows[:limit])
    next_cursor = getattr(page[-1], key) if len(rows) > limit else None
    return [deepcopy(row) for row in page], next_cursor
