import uuid
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from proposal_lifecycle.core.proposals.models import (
    AuditEventKind,
    AuditRecord,
    ProposalRecord,
)
from proposal_lifecycle.core.proposals.repository import ProposalUnitOfWork

SYSTEM_ACTOR = "system"

# Touched by every mutation, so they never signal a domain change.
NON_DOMAIN_FIELDS = frozenset({"version", "updated_at"})


def user_actor(user_id: Any) -> str:
    return f"user:{user_id}"


def snapshot_payload(proposal: ProposalRecord) -> dict[str, Any]:
    return proposal.model_dump(mode="json")


def changed_fields(previous: ProposalRecord, updated: ProposalRecord) -> dict[str, Any]:
    before = snapshot_payload(previous)
    after = snapshot_payload(updated)
    return {
        field: value
        for field, value in after.items()
        if field not in NON_DOMAIN_FIELDS and before.get(field) != value
    }


def classify_changes(
    previous: ProposalRecord, updated: ProposalRecord
) -> Optional[tuple[AuditEventKind, dict[str, Any]]]:
    changes = changed_fields(previous, updated)
    if not changes:
        return None
    if "status" in changes:
        return AuditEventKind.STATUS_CHANGED, {
            "previous_status": previous.status.value,
            "new_status": updated.status.value,
        }
    return AuditEventKind.UPDATED_FIELDS, changes


class AuditTrail:
    """Append-only writer for proposal audit records.

    Records go through the caller's unit of work, so an audit row and the
    mutation it describes commit or roll back together. Storage failures
    propagate unchanged and abort that unit of work.
    """

    def record(
        self,
        uow: ProposalUnitOfWork,
        *,
        proposal_id: str,
        actor: str,
        event_kind: AuditEventKind,
        payload: Mapping[str, Any],
        occurred_at: Optional[datetime] = None,
    ) -> AuditRecord:
        record = AuditRecord(
            audit_id=f"aud_{uuid.uuid4().hex[:12]}",
            proposal_id=proposal_id,
            actor=actor,
            event_kind=event_kind,
            payload=dict(payload),
            created_at=occurred_at or datetime.now(timezone.utc),
        )
        uow.append_audit(record)
        return record

    def record_changes(
        self,
        uow: ProposalUnitOfWork,
        *,
        previous: ProposalRecord,
        updated: ProposalRecord,
        actor: str,
    ) -> Optional[AuditRecord]:
        classified = classify_changes(previous, updated)
        if classified is None:
            return None
        event_kind, payload = classified
        return self.record(
            uow,
            proposal_id=updated.proposal_id,
            actor=actor,
            event_kind=event_kind,
            payload=payload,
            occurred_at=updated.updated_at,
        )
