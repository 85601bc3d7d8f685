from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from proposal_lifecycle.core.proposals.audit import (
    SYSTEM_ACTOR,
    AuditTrail,
    classify_changes,
    snapshot_payload,
    user_actor,
)
from proposal_lifecycle.core.proposals.models import (
    AuditEventKind,
    ProposalOrigin,
    ProposalRecord,
    ProposalStatus,
)


def _proposal(**overrides) -> ProposalRecord:
    now = datetime(2026, 2, 21, 12, 0, tzinfo=timezone.utc)
    values = {
        "proposal_id": "pp_audit_1",
        "client_id": 3,
        "product": "Silver",
        "monthly_value": Decimal("100.00"),
        "status": ProposalStatus.DRAFT,
        "origin": ProposalOrigin.SITE,
        "version": 1,
        "created_at": now,
        "updated_at": now,
    }
    values.update(overrides)
    return ProposalRecord(**values)


class _RecordingUnitOfWork:
    def __init__(self) -> None:
        self.audit = []

    def append_audit(self, record) -> None:
        self.audit.append(record)


class _FailingUnitOfWork:
    def append_audit(self, record) -> None:
        raise OSError("disk full")


def test_actor_helpers():
    assert user_actor(42) == "user:42"
    assert SYSTEM_ACTOR == "system"


def test_classify_changes_reports_content_fields_only():
    previous = _proposal()
    updated = _proposal(
        product="Gold",
        version=2,
        updated_at=previous.updated_at + timedelta(minutes=1),
    )

    assert classify_changes(previous, updated) == (
        AuditEventKind.UPDATED_FIELDS,
        {"product": "Gold"},
    )


def test_classify_changes_renders_decimals_as_strings():
    kind, payload = classify_changes(_proposal(), _proposal(monthly_value=Decimal("120.5")))

    assert kind == AuditEventKind.UPDATED_FIELDS
    assert payload == {"monthly_value": "120.50"}


def test_classify_changes_prefers_status_change():
    previous = _proposal()
    updated = _proposal(status=ProposalStatus.SUBMITTED, version=2)

    assert classify_changes(previous, updated) == (
        AuditEventKind.STATUS_CHANGED,
        {"previous_status": "DRAFT", "new_status": "SUBMITTED"},
    )


def test_classify_changes_ignores_version_and_timestamp_bumps():
    previous = _proposal()
    updated = _proposal(version=5, updated_at=previous.updated_at + timedelta(hours=1))

    assert classify_changes(previous, updated) is None


def test_snapshot_payload_is_json_ready():
    payload = snapshot_payload(_proposal())

    assert payload["monthly_value"] == "100.00"
    assert payload["status"] == "DRAFT"
    assert payload["deleted_at"] is None


def test_record_appends_exactly_one_record_through_unit_of_work():
    uow = _RecordingUnitOfWork()

    record = AuditTrail().record(
        uow,
        proposal_id="pp_audit_1",
        actor=user_actor(9),
        event_kind=AuditEventKind.CREATED,
        payload={"status": "DRAFT"},
    )

    assert uow.audit == [record]
    assert record.audit_id.startswith("aud_")
    assert record.actor == "user:9"


def test_record_changes_skips_noop_diff():
    uow = _RecordingUnitOfWork()
    proposal = _proposal()

    assert AuditTrail().record_changes(uow, previous=proposal, updated=proposal, actor="x") is None
    assert uow.audit == []


def test_record_propagates_storage_failure():
    with pytest.raises(OSError, match="disk full"):
        AuditTrail().record(
            _FailingUnitOfWork(),
            proposal_id="pp_audit_1",
            actor=SYSTEM_ACTOR,
            event_kind=AuditEventKind.CREATED,
            payload={},
        )
