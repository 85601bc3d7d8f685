import json
from contextlib import closing, contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from importlib.util import find_spec
from typing import Any, Iterator, Mapping, Optional

from proposal_lifecycle.core.errors import (
    BusinessError,
    BusinessReason,
    NotFoundError,
    StaleVersionError,
)
from proposal_lifecycle.core.orders.models import OrderRecord, OrderStatus
from proposal_lifecycle.core.proposals.models import (
    AuditRecord,
    ProposalRecord,
    ProposalSortField,
    ProposalStatus,
    SortDirection,
)
from proposal_lifecycle.infrastructure.postgres_migrations import (
    advisory_lock_key,
    apply_postgres_migrations,
)

DEFAULT_LOCK_TIMEOUT_MS = 5000

_PROPOSAL_COLUMNS = """
    proposal_id,
    client_id,
    product,
    monthly_value,
    status,
    origin,
    version,
    created_at,
    updated_at,
    deleted_at
"""

_ORDER_COLUMNS = """
    order_id,
    proposal_id,
    status,
    total_value,
    notes,
    created_at,
    updated_at
"""

_PROPOSAL_SORT_COLUMNS: dict[str, str] = {
    "created_at": "created_at",
    "updated_at": "updated_at",
    "monthly_value": "monthly_value",
    "status": "status",
    "version": "version",
}


class PostgresProposalRepository:
    def __init__(self, *, dsn: str, lock_timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS) -> None:
        if not dsn:
            raise RuntimeError("PROPOSAL_POSTGRES_DSN_REQUIRED")
        if find_spec("psycopg") is None:
            raise RuntimeError("PROPOSAL_POSTGRES_DRIVER_MISSING")
        self._dsn = dsn
        self._lock_timeout_ms = lock_timeout_ms
        self._init_db()

    @contextmanager
    def unit_of_work(self) -> Iterator["_PostgresUnitOfWork"]:
        with closing(self._connect()) as connection:
            connection.execute(
                "SELECT set_config('lock_timeout', %s, true)",
                (f"{self._lock_timeout_ms}ms",),
            )
            try:
                yield _PostgresUnitOfWork(connection)
            except Exception:
                connection.rollback()
                raise
            connection.commit()

    def get_proposal(
        self, *, proposal_id: str, include_deleted: bool = False
    ) -> Optional[ProposalRecord]:
        query = f"""
            SELECT {_PROPOSAL_COLUMNS}
            FROM proposal_records
            WHERE proposal_id = %s
        """
        with closing(self._connect()) as connection:
            row = connection.execute(query, (proposal_id,)).fetchone()
        proposal = _to_proposal(row)
        if proposal is None or (proposal.deleted_at is not None and not include_deleted):
            return None
        return proposal

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
        where_clauses = ["deleted_at IS NULL"]
        args: list[Any] = []
        if status is not None:
            where_clauses.append("status = %s")
            args.append(status.value)
        if client_id is not None:
            where_clauses.append("client_id = %s")
            args.append(client_id)
        sort_column = _PROPOSAL_SORT_COLUMNS.get(sort, "created_at")
        sort_direction = "ASC" if direction == "asc" else "DESC"
        query = f"""
            SELECT {_PROPOSAL_COLUMNS}
            FROM proposal_records
            WHERE {' AND '.join(where_clauses)}
            ORDER BY {sort_column} {sort_direction}, proposal_id {sort_direction}
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, tuple(args)).fetchall()
        proposals = [_to_proposal(row) for row in rows]
        return _paginate(
            [proposal for proposal in proposals if proposal is not None],
            key="proposal_id",
            limit=limit,
            cursor=cursor,
        )

    def list_audit(self, *, proposal_id: str) -> list[AuditRecord]:
        query = """
            SELECT
                audit_id,
                proposal_id,
                actor,
                event_kind,
                payload_json,
                created_at
            FROM proposal_audit
            WHERE proposal_id = %s
            ORDER BY seq ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (proposal_id,)).fetchall()
        return [_to_audit(row) for row in rows]

    def get_order(self, *, order_id: str) -> Optional[OrderRecord]:
        query = f"""
            SELECT {_ORDER_COLUMNS}
            FROM proposal_orders
            WHERE order_id = %s
        """
        with closing(self._connect()) as connection:
            row = connection.execute(query, (order_id,)).fetchone()
        return _to_order(row)

    def list_orders(
        self,
        *,
        status: Optional[OrderStatus],
        limit: int,
        cursor: Optional[str],
    ) -> tuple[list[OrderRecord], Optional[str]]:
        where_sql = ""
        args: list[Any] = []
        if status is not None:
            where_sql = "WHERE status = %s"
            args.append(status.value)
        query = f"""
            SELECT {_ORDER_COLUMNS}
            FROM proposal_orders
            {where_sql}
            ORDER BY created_at DESC, order_id DESC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, tuple(args)).fetchall()
        orders = [_to_order(row) for row in rows]
        return _paginate(
            [order for order in orders if order is not None],
            key="order_id",
            limit=limit,
            cursor=cursor,
        )

    def _connect(self):
        psycopg, dict_row = _import_psycopg()
        return psycopg.connect(self._dsn, row_factory=dict_row)

    def _init_db(self) -> None:
        with closing(self._connect()) as connection:
            apply_postgres_migrations(connection=connection, namespace="lifecycle")


class _PostgresUnitOfWork:
    """Statements issued on one open transaction.

    Row locks come from ``SELECT ... FOR UPDATE`` and the per-proposal order
    scope from ``pg_advisory_xact_lock``; both are released by the database
    at commit or rollback.
    """

    def __init__(self, connection) -> None:
        self._connection = connection
        self._locked: dict[str, ProposalRecord] = {}
        self._locked_orders: set[str] = set()
        self._order_scopes: set[str] = set()

    def acquire_for_update(
        self, proposal_id: str, *, include_deleted: bool = False
    ) -> ProposalRecord:
        current = self._locked.get(proposal_id)
        if current is None:
            query = f"""
                SELECT {_PROPOSAL_COLUMNS}
                FROM proposal_records
                WHERE proposal_id = %s
                FOR UPDATE
            """
            current = _to_proposal(self._connection.execute(query, (proposal_id,)).fetchone())
            if current is not None:
                self._locked[proposal_id] = current
        if current is None or (current.deleted_at is not None and not include_deleted):
            raise NotFoundError(
                f"Proposal {proposal_id} not found.",
                code="PROPOSAL_NOT_FOUND",
                context={"proposal_id": proposal_id},
            )
        return current.model_copy(deep=True)

    def commit(
        self,
        locked: ProposalRecord,
        changes: Mapping[str, Any],
        *,
        expected_version: int,
    ) -> ProposalRecord:
        current = self._locked.get(locked.proposal_id)
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
        query = """
            UPDATE proposal_records SET
                product = %s,
                monthly_value = %s,
                status = %s,
                version = %s,
                updated_at = %s,
                deleted_at = %s
            WHERE proposal_id = %s AND version = %s
        """
        result = self._connection.execute(
            query,
            (
                updated.product,
                str(updated.monthly_value),
                updated.status.value,
                updated.version,
                updated.updated_at.isoformat(),
                _optional_iso(updated.deleted_at),
                updated.proposal_id,
                current.version,
            ),
        )
        if result.rowcount != 1:
            raise StaleVersionError(
                proposal_id=current.proposal_id,
                expected_version=expected_version,
                current_version=current.version,
            )
        self._locked[updated.proposal_id] = updated
        return updated.model_copy(deep=True)

    def insert_proposal(self, proposal: ProposalRecord) -> None:
        query = f"""
            INSERT INTO proposal_records ({_PROPOSAL_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        self._connection.execute(
            query,
            (
                proposal.proposal_id,
                proposal.client_id,
                proposal.product,
                str(proposal.monthly_value),
                proposal.status.value,
                proposal.origin.value,
                proposal.version,
                proposal.created_at.isoformat(),
                proposal.updated_at.isoformat(),
                _optional_iso(proposal.deleted_at),
            ),
        )
        self._locked[proposal.proposal_id] = proposal.model_copy(deep=True)

    def append_audit(self, record: AuditRecord) -> None:
        query = """
            INSERT INTO proposal_audit (
                audit_id,
                proposal_id,
                actor,
                event_kind,
                payload_json,
                created_at
            ) VALUES (%s, %s, %s, %s, %s, %s)
        """
        self._connection.execute(
            query,
            (
                record.audit_id,
                record.proposal_id,
                record.actor,
                record.event_kind.value,
                _json_dump(record.payload),
                record.created_at.isoformat(),
            ),
        )

    def lock_orders_for_proposal(self, proposal_id: str) -> list[OrderRecord]:
        if proposal_id not in self._order_scopes:
            self._connection.execute(
                "SELECT pg_advisory_xact_lock(%s::bigint)",
                (advisory_lock_key(f"orders:{proposal_id}"),),
            )
            self._order_scopes.add(proposal_id)
        query = f"""
            SELECT {_ORDER_COLUMNS}
            FROM proposal_orders
            WHERE proposal_id = %s
            ORDER BY created_at ASC, order_id ASC
        """
        rows = self._connection.execute(query, (proposal_id,)).fetchall()
        return [order for order in (_to_order(row) for row in rows) if order is not None]

    def insert_order(self, order: OrderRecord) -> None:
        if order.proposal_id not in self._order_scopes:
            raise RuntimeError("ORDER_SCOPE_NOT_LOCKED")
        psycopg, _ = _import_psycopg()
        query = f"""
            INSERT INTO proposal_orders ({_ORDER_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s)
        """
        try:
            self._connection.execute(
                query,
                (
                    order.order_id,
                    order.proposal_id,
                    order.status.value,
                    str(order.total_value),
                    order.notes,
                    order.created_at.isoformat(),
                    order.updated_at.isoformat(),
                ),
            )
        except psycopg.errors.UniqueViolation as exc:
            raise BusinessError(
                BusinessReason.DUPLICATE_ACTIVE_ORDER,
                f"Proposal {order.proposal_id} already has an active order.",
                context={"proposal_id": order.proposal_id},
            ) from exc

    def acquire_order_for_update(self, order_id: str) -> OrderRecord:
        query = f"""
            SELECT {_ORDER_COLUMNS}
            FROM proposal_orders
            WHERE order_id = %s
            FOR UPDATE
        """
        order = _to_order(self._connection.execute(query, (order_id,)).fetchone())
        if order is None:
            raise NotFoundError(
                f"Order {order_id} not found.",
                code="ORDER_NOT_FOUND",
                context={"order_id": order_id},
            )
        self._locked_orders.add(order_id)
        return order

    def update_order(self, order: OrderRecord) -> None:
        if order.order_id not in self._locked_orders:
            raise RuntimeError("ORDER_NOT_LOCKED")
        query = """
            UPDATE proposal_orders SET
                status = %s,
                notes = %s,
                updated_at = %s
            WHERE order_id = %s
        """
        self._connection.execute(
            query,
            (
                order.status.value,
                order.notes,
                order.updated_at.isoformat(),
                order.order_id,
            ),
        )


def _import_psycopg():
    import psycopg
    from psycopg.rows import dict_row

    return psycopg, dict_row


def _optional_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def _optional_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _json_dump(value: dict) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def _paginate(
    rows: list, *, key: str, limit: int, cursor: Optional[str]
) -> tuple[list, Optional[str]]:
    if cursor:
        cursor_index = next(
            (index for index, row in enumerate(rows) if getattr(row, key) == cursor),
            None,
        )
        if cursor_index is None:
            return [], None
        rows = rows[cursor_index + 1 :]
    page = rows[:limit]
    next_cursor = getattr(page[-1], key) if len(rows) > limit else None
    return page, next_cursor


def _to_proposal(row) -> Optional[ProposalRecord]:
    if row is None:
        return None
    return ProposalRecord(
        proposal_id=row["proposal_id"],
        client_id=int(row["client_id"]),
        product=row["product"],
        monthly_value=Decimal(str(row["monthly_value"])),
        status=row["status"],
        origin=row["origin"],
        version=int(row["version"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        deleted_at=_optional_datetime(row["deleted_at"]),
    )


def _to_audit(row) -> AuditRecord:
    return AuditRecord(
        audit_id=row["audit_id"],
        proposal_id=row["proposal_id"],
        actor=row["actor"],
        event_kind=row["event_kind"],
        payload=json.loads(row["payload_json"]),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _to_order(row) -> Optional[OrderRecord]:
    if row is None:
        return None
    return OrderRecord(
        order_id=row["order_id"],
        proposal_id=row["proposal_id"],
        status=row["status"],
        total_value=Decimal(str(row["total_value"])),
        notes=row["notes"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )
