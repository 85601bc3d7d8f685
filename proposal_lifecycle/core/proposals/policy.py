from proposal_lifecycle.core.proposals.models import ProposalStatus

TERMINAL_STATUSES = frozenset(
    {ProposalStatus.APPROVED, ProposalStatus.REJECTED, ProposalStatus.CANCELED}
)
CANCELABLE_STATUSES = frozenset({ProposalStatus.DRAFT, ProposalStatus.SUBMITTED})

ALLOWED_TRANSITIONS: frozenset[tuple[ProposalStatus, ProposalStatus]] = frozenset(
    {
        (ProposalStatus.DRAFT, ProposalStatus.SUBMITTED),
        (ProposalStatus.SUBMITTED, ProposalStatus.APPROVED),
        (ProposalStatus.SUBMITTED, ProposalStatus.REJECTED),
        (ProposalStatus.DRAFT, ProposalStatus.CANCELED),
        (ProposalStatus.SUBMITTED, ProposalStatus.CANCELED),
    }
)


def is_terminal(status: ProposalStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_editable(status: ProposalStatus) -> bool:
    return status == ProposalStatus.DRAFT


def is_cancelable(status: ProposalStatus) -> bool:
    return status in CANCELABLE_STATUSES


def allowed_transition(from_status: ProposalStatus, to_status: ProposalStatus) -> bool:
    return (from_status, to_status) in ALLOWED_TRANSITIONS
