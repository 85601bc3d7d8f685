import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Union

from proposal_lifecycle.core.errors import (
    BusinessError,
    BusinessReason,
    NotFoundError,
    StaleVersionError,
)
from proposal_lifecycle.core.proposals.audit import SYSTEM_ACTOR, AuditTrail, snapshot_payload
from proposal_lifecycle.core.proposals.models import (
    AuditEventKind,
    AuditRecord,
    ProposalOrigin,
    ProposalPage,
    ProposalRecord,
    ProposalStatus,
    quantize_money,
)
from proposal_lifecycle.core.proposals.policy import (
    allowed_transition,
    is_cancelable,
    is_terminal,
)
from proposal_lifecycle.core.proposals.repository import MAX_PAGE_SIZE, ProposalRepository

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = ("created_at", "updated_at", "monthly_value", "status", "version")
DEFAULT_PAGE_SIZE = 15

MoneyInput = Union[Decimal, str, int]


class ProposalLifecycleService:
    """Create, edit and move proposals through their status lifecycle.

    Every mutation runs in a single unit of work: the row is locked, the
    precondition is re-checked against the locked snapshot, the version is
    bumped by exactly one and the matching audit record is appended before
    the transaction commits.
    """

    def __init__(
        self,
        *,
        repository: ProposalRepository,
        audit_trail: Optional[AuditTrail] = None,
    ) -> None:
        self._repository = repository
        self._audit = audit_trail or AuditTrail()

    def create(
        self,
        *,
        client_id: int,
        product: str,
        monthly_value: MoneyInput,
        origin: Union[ProposalOrigin, str],
        actor: str = SYSTEM_ACTOR,
    ) -> ProposalRecord:
        now = _utc_now()
        proposal = ProposalRecord(
            proposal_id=f"pp_{uuid.uuid4().hex[:12]}",
            client_id=client_id,
            product=product,
            monthly_value=_to_money(monthly_value),
            status=ProposalStatus.DRAFT,
            origin=ProposalOrigin(origin),
            version=1,
            created_at=now,
            updated_at=now,
        )
        with self._repository.unit_of_work() as uow:
            uow.insert_proposal(proposal)
            self._audit.record(
                uow,
                proposal_id=proposal.proposal_id,
                actor=actor,
                event_kind=AuditEventKind.CREATED,
                payload=snapshot_payload(proposal),
                occurred_at=now,
            )

        logger.info(
            "proposal.created",
            extra={
                "extra_fields": {
                    "proposal_id": proposal.proposal_id,
                    "client_id": proposal.client_id,
                    "origin": proposal.origin.value,
                    "actor": actor,
                }
            },
        )
        return proposal

    def update_content(
        self,
        *,
        proposal_id: str,
        expected_version: int,
        product: Optional[str] = None,
        monthly_value: Optional[MoneyInput] = None,
        actor: str = SYSTEM_ACTOR,
    ) -> ProposalRecord:
        requested: dict[str, Any] = {}
        if product is not None:
            requested["product"] = product
        if monthly_value is not None:
            requested["monthly_value"] = _to_money(monthly_value)

        if not requested:
            current = self.get(proposal_id=proposal_id)
            _ensure_not_terminal(current, action="edited")
            return current

        with self._repository.unit_of_work() as uow:
            locked = uow.acquire_for_update(proposal_id)
            self._ensure_expected_version(locked, expected_version)
            _ensure_not_terminal(locked, action="edited")

            changes = {
                field: value
                for field, value in requested.items()
                if getattr(locked, field) != value
            }
            if not changes:
                return locked

            updated = uow.commit(locked, changes, expected_version=expected_version)
            self._audit.record_changes(uow, previous=locked, updated=updated, actor=actor)

        logger.info(
            "proposal.updated",
            extra={
                "extra_fields": {
                    "proposal_id": proposal_id,
                    "fields": sorted(changes),
                    "version_from": expected_version,
                    "version_to": updated.version,
                    "actor": actor,
                }
            },
        )
        return updated

    def submit(self, *, proposal_id: str, actor: str = SYSTEM_ACTOR) -> ProposalRecord:
        return self._transition(proposal_id, ProposalStatus.SUBMITTED, actor=actor)

    def approve(self, *, proposal_id: str, actor: str = SYSTEM_ACTOR) -> ProposalRecord:
        return self._transition(proposal_id, ProposalStatus.APPROVED, actor=actor)

    def reject(self, *, proposal_id: str, actor: str = SYSTEM_ACTOR) -> ProposalRecord:
        return self._transition(proposal_id, ProposalStatus.REJECTED, actor=actor)

    def cancel(self, *, proposal_id: str, actor: str = SYSTEM_ACTOR) -> ProposalRecord:
        return self._transition(proposal_id, ProposalStatus.CANCELED, actor=actor)

    def delete(self, *, proposal_id: str, actor: str = SYSTEM_ACTOR) -> ProposalRecord:
        with self._repository.unit_of_work() as uow:
            locked = uow.acquire_for_update(proposal_id)
            updated = uow.commit(
                locked, {"deleted_at": _utc_now()}, expected_version=locked.version
            )
            self._audit.record(
                uow,
                proposal_id=proposal_id,
                actor=actor,
                event_kind=AuditEventKind.DELETED_LOGICAL,
                payload={"status": locked.status.value},
                occurred_at=updated.updated_at,
            )

        logger.info(
            "proposal.deleted",
            extra={
                "extra_fields": {
                    "proposal_id": proposal_id,
                    "status": locked.status.value,
                    "version": updated.version,
                    "actor": actor,
                }
            },
        )
        return updated

    def get(self, *, proposal_id: str, include_deleted: bool = False) -> ProposalRecord:
        proposal = self._repository.get_proposal(
            proposal_id=proposal_id, include_deleted=include_deleted
        )
        if proposal is None:
            raise NotFoundError(
                f"Proposal {proposal_id} not found.",
                code="PROPOSAL_NOT_FOUND",
                context={"proposal_id": proposal_id},
            )
        return proposal

    def search(
        self,
        *,
        status: Optional[Union[ProposalStatus, str]] = None,
        client_id: Optional[int] = None,
        sort: str = "created_at",
        direction: str = "desc",
        limit: int = DEFAULT_PAGE_SIZE,
        cursor: Optional[str] = None,
    ) -> ProposalPage:
        # Unknown statuses are ignored.
        status_filter = (
            ProposalStatus(status) if status in ProposalStatus.values() else None
        )
        rows, next_cursor = self._repository.list_proposals(
            status=status_filter,
            client_id=client_id,
            sort=sort if sort in SORTABLE_FIELDS else "created_at",
            direction="asc" if direction == "asc" else "desc",
            limit=min(max(limit, 1), MAX_PAGE_SIZE),
            cursor=cursor,
        )
        return ProposalPage(items=rows, next_cursor=next_cursor)

    def audit_history(self, *, proposal_id: str) -> list[AuditRecord]:
        self.get(proposal_id=proposal_id, include_deleted=True)
        return self._repository.list_audit(proposal_id=proposal_id)

    def _transition(
        self, proposal_id: str, to_status: ProposalStatus, *, actor: str
    ) -> ProposalRecord:
        current = self.get(proposal_id=proposal_id)
        _guard_transition(current, to_status)

        with self._repository.unit_of_work() as uow:
            locked = uow.acquire_for_update(proposal_id)
            # A concurrent transition may have committed since the first check.
            _guard_transition(locked, to_status)
            updated = uow.commit(
                locked, {"status": to_status}, expected_version=locked.version
            )
            self._audit.record(
                uow,
                proposal_id=proposal_id,
                actor=actor,
                event_kind=AuditEventKind.STATUS_CHANGED,
                payload={
                    "previous_status": locked.status.value,
                    "new_status": to_status.value,
                },
                occurred_at=updated.updated_at,
            )

        logger.info(
            "proposal.status_changed",
            extra={
                "extra_fields": {
                    "proposal_id": proposal_id,
                    "from": locked.status.value,
                    "to": to_status.value,
                    "version": updated.version,
                    "actor": actor,
                }
            },
        )
        return updated

    def _ensure_expected_version(self, locked: ProposalRecord, expected_version: int) -> None:
        if locked.version == expected_version:
            return
        logger.warning(
            "proposal.concurrency_conflict",
            extra={
                "extra_fields": {
                    "proposal_id": locked.proposal_id,
                    "expected_version": expected_version,
                    "current_version": locked.version,
                }
            },
        )
        raise StaleVersionError(
            proposal_id=locked.proposal_id,
            expected_version=expected_version,
            current_version=locked.version,
        )


def _guard_transition(proposal: ProposalRecord, to_status: ProposalStatus) -> None:
    if to_status == ProposalStatus.CANCELED:
        if not is_cancelable(proposal.status):
            raise BusinessError(
                BusinessReason.TERMINAL_STATE,
                f"Proposal {proposal.proposal_id} is already {proposal.status.label} "
                "and cannot be canceled.",
                context=_state_context(proposal, to_status),
            )
        return
    if not allowed_transition(proposal.status, to_status):
        raise BusinessError(
            BusinessReason.INVALID_TRANSITION,
            f"Proposal {proposal.proposal_id} cannot move from {proposal.status.label} "
            f"to {to_status.label}.",
            context=_state_context(proposal, to_status),
        )


def _ensure_not_terminal(proposal: ProposalRecord, *, action: str) -> None:
    if is_terminal(proposal.status):
        raise BusinessError(
            BusinessReason.TERMINAL_STATE,
            f"Proposal {proposal.proposal_id} is {proposal.status.label} "
            f"and cannot be {action}.",
            context={
                "proposal_id": proposal.proposal_id,
                "status": proposal.status.value,
                "version": proposal.version,
            },
        )


def _state_context(proposal: ProposalRecord, to_status: ProposalStatus) -> dict[str, Any]:
    return {
        "proposal_id": proposal.proposal_id,
        "current_status": proposal.status.value,
        "requested_status": to_status.value,
        "version": proposal.version,
    }


def _to_money(value: MoneyInput) -> Decimal:
    return quantize_money(Decimal(str(value)))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
