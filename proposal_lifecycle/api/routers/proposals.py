from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, status
from fastapi.responses import JSONResponse

from proposal_lifecycle.api import config
from proposal_lifecycle.api.idempotency import (
    REPLAY_HEADER,
    IdempotencyConflictError,
    IdempotencyReplayCache,
    hash_request_payload,
)
from proposal_lifecycle.api.request_models import (
    ProposalAuditResponse,
    ProposalCreateRequest,
    ProposalUpdateRequest,
)
from proposal_lifecycle.api.routers.http_errors import raise_lifecycle_http_exception
from proposal_lifecycle.core.errors import LifecycleError
from proposal_lifecycle.core.orders import OrderPlacementService
from proposal_lifecycle.core.proposals import (
    ProposalLifecycleService,
    ProposalPage,
    ProposalRecord,
    ProposalRepository,
)
from proposal_lifecycle.core.proposals.audit import SYSTEM_ACTOR, user_actor

router = APIRouter(prefix="/v1", tags=["Proposal Lifecycle"])

_REPOSITORY: Optional[ProposalRepository] = None
_SERVICE: Optional[ProposalLifecycleService] = None
_ORDER_SERVICE: Optional[OrderPlacementService] = None
_IDEMPOTENCY_CACHE: Optional[IdempotencyReplayCache] = None

ProposalId = Annotated[
    str, Path(description="Proposal identifier.", examples=["pp_001"])
]


def get_repository() -> ProposalRepository:
    global _REPOSITORY
    if _REPOSITORY is None:
        _REPOSITORY = config.build_repository()
    return _REPOSITORY


def get_proposal_lifecycle_service() -> ProposalLifecycleService:
    global _SERVICE
    if _SERVICE is None:
        _SERVICE = ProposalLifecycleService(repository=get_repository())
    return _SERVICE


def get_order_placement_service() -> OrderPlacementService:
    global _ORDER_SERVICE
    if _ORDER_SERVICE is None:
        _ORDER_SERVICE = OrderPlacementService(repository=get_repository())
    return _ORDER_SERVICE


def get_idempotency_cache() -> IdempotencyReplayCache:
    global _IDEMPOTENCY_CACHE
    if _IDEMPOTENCY_CACHE is None:
        _IDEMPOTENCY_CACHE = IdempotencyReplayCache(
            max_size=config.idempotency_cache_max_size(),
            ttl_seconds=config.idempotency_ttl_seconds(),
        )
    return _IDEMPOTENCY_CACHE


def reset_proposal_services_for_tests() -> None:
    global _REPOSITORY
    global _SERVICE
    global _ORDER_SERVICE
    global _IDEMPOTENCY_CACHE
    _REPOSITORY = None
    _SERVICE = None
    _ORDER_SERVICE = None
    _IDEMPOTENCY_CACHE = None


def get_actor(
    actor_id: Annotated[
        Optional[str],
        Header(
            alias="X-Actor-Id",
            description="Authenticated user id; requests without it act as the system.",
            examples=["17"],
        ),
    ] = None,
) -> str:
    if actor_id is None or not actor_id.strip():
        return SYSTEM_ACTOR
    return user_actor(actor_id.strip())


@router.post(
    "/proposals",
    response_model=ProposalRecord,
    status_code=status.HTTP_201_CREATED,
    summary="Create Proposal",
    description=(
        "Creates a DRAFT proposal at version 1. A repeated `Idempotency-Key` with the same "
        f"payload replays the first response with `{REPLAY_HEADER}: true`. A concurrent "
        "request with the same key waits for the first one to finish."
    ),
)
def create_proposal(
    payload: ProposalCreateRequest,
    idempotency_key: Annotated[
        Optional[str],
        Header(
            alias="Idempotency-Key",
            description="Optional key for create deduplication.",
            examples=["proposal-create-001"],
        ),
    ] = None,
    actor: str = Depends(get_actor),
    service: ProposalLifecycleService = Depends(get_proposal_lifecycle_service),
    cache: IdempotencyReplayCache = Depends(get_idempotency_cache),
) -> ProposalRecord:
    key = (idempotency_key or "").strip()
    request_hash = hash_request_payload(payload.model_dump(mode="json"))
    if key:
        try:
            cached = cache.reserve(key, request_hash=request_hash)
        except IdempotencyConflictError as exc:
            raise_lifecycle_http_exception(exc)
        if cached is not None:
            return JSONResponse(
                status_code=cached.status_code,
                content=cached.body,
                headers={REPLAY_HEADER: "true"},
            )

    try:
        proposal = service.create(
            client_id=payload.client_id,
            product=payload.product,
            monthly_value=payload.monthly_value,
            origin=payload.origin,
            actor=actor,
        )
        if key:
            cache.store(
                key,
                request_hash=request_hash,
                status_code=status.HTTP_201_CREATED,
                body=proposal.model_dump(mode="json"),
            )
    finally:
        if key:
            cache.release(key)
    return proposal


@router.get(
    "/proposals",
    response_model=ProposalPage,
    summary="Search Proposals",
    description=(
        "Lists live proposals. Unknown status filters and sort fields are ignored; "
        "`limit` is capped at 100."
    ),
)
def search_proposals(
    status_filter: Annotated[
        Optional[str], Query(alias="status", description="Status filter.", examples=["DRAFT"])
    ] = None,
    client_id: Annotated[Optional[int], Query(description="Client filter.")] = None,
    sort: Annotated[str, Query(description="Sort field.", examples=["monthly_value"])] = (
        "created_at"
    ),
    direction: Annotated[str, Query(description="`asc` or `desc`.")] = "desc",
    limit: Annotated[int, Query(ge=1, le=100, description="Page size.")] = 15,
    cursor: Annotated[Optional[str], Query(description="Cursor from the previous page.")] = None,
    service: ProposalLifecycleService = Depends(get_proposal_lifecycle_service),
) -> ProposalPage:
    return service.search(
        status=status_filter.strip().upper() if status_filter else None,
        client_id=client_id,
        sort=sort,
        direction=direction.strip().lower(),
        limit=limit,
        cursor=cursor,
    )


@router.get(
    "/proposals/{proposal_id}",
    response_model=ProposalRecord,
    summary="Get Proposal",
)
def get_proposal(
    proposal_id: ProposalId,
    service: ProposalLifecycleService = Depends(get_proposal_lifecycle_service),
) -> ProposalRecord:
    try:
        return service.get(proposal_id=proposal_id)
    except LifecycleError as exc:
        raise_lifecycle_http_exception(exc)


@router.patch(
    "/proposals/{proposal_id}",
    response_model=ProposalRecord,
    summary="Update Proposal Content",
    description=(
        "Optimistic update of product and/or monthly value. Returns 409 when "
        "`expected_version` is stale and 422 when the proposal is terminal."
    ),
)
def update_proposal(
    proposal_id: ProposalId,
    payload: ProposalUpdateRequest,
    actor: str = Depends(get_actor),
    service: ProposalLifecycleService = Depends(get_proposal_lifecycle_service),
) -> ProposalRecord:
    try:
        return service.update_content(
            proposal_id=proposal_id,
            expected_version=payload.expected_version,
            product=payload.product,
            monthly_value=payload.monthly_value,
            actor=actor,
        )
    except LifecycleError as exc:
        raise_lifecycle_http_exception(exc)


@router.post(
    "/proposals/{proposal_id}/submit",
    response_model=ProposalRecord,
    summary="Submit Proposal",
    description="DRAFT -> SUBMITTED.",
)
def submit_proposal(
    proposal_id: ProposalId,
    actor: str = Depends(get_actor),
    service: ProposalLifecycleService = Depends(get_proposal_lifecycle_service),
) -> ProposalRecord:
    try:
        return service.submit(proposal_id=proposal_id, actor=actor)
    except LifecycleError as exc:
        raise_lifecycle_http_exception(exc)


@router.post(
    "/proposals/{proposal_id}/approve",
    response_model=ProposalRecord,
    summary="Approve Proposal",
    description="SUBMITTED -> APPROVED.",
)
def approve_proposal(
    proposal_id: ProposalId,
    actor: str = Depends(get_actor),
    service: ProposalLifecycleService = Depends(get_proposal_lifecycle_service),
) -> ProposalRecord:
    try:
        return service.approve(proposal_id=proposal_id, actor=actor)
    except LifecycleError as exc:
        raise_lifecycle_http_exception(exc)


@router.post(
    "/proposals/{proposal_id}/reject",
    response_model=ProposalRecord,
    summary="Reject Proposal",
    description="SUBMITTED -> REJECTED.",
)
def reject_proposal(
    proposal_id: ProposalId,
    actor: str = Depends(get_actor),
    service: ProposalLifecycleService = Depends(get_proposal_lifecycle_service),
) -> ProposalRecord:
    try:
        return service.reject(proposal_id=proposal_id, actor=actor)
    except LifecycleError as exc:
        raise_lifecycle_http_exception(exc)


@router.post(
    "/proposals/{proposal_id}/cancel",
    response_model=ProposalRecord,
    summary="Cancel Proposal",
    description="DRAFT or SUBMITTED -> CANCELED.",
)
def cancel_proposal(
    proposal_id: ProposalId,
    actor: str = Depends(get_actor),
    service: ProposalLifecycleService = Depends(get_proposal_lifecycle_service),
) -> ProposalRecord:
    try:
        return service.cancel(proposal_id=proposal_id, actor=actor)
    except LifecycleError as exc:
        raise_lifecycle_http_exception(exc)


@router.delete(
    "/proposals/{proposal_id}",
    response_model=ProposalRecord,
    summary="Delete Proposal",
    description="Logical delete. The audit history stays readable.",
)
def delete_proposal(
    proposal_id: ProposalId,
    actor: str = Depends(get_actor),
    service: ProposalLifecycleService = Depends(get_proposal_lifecycle_service),
) -> ProposalRecord:
    try:
        return service.delete(proposal_id=proposal_id, actor=actor)
    except LifecycleError as exc:
        raise_lifecycle_http_exception(exc)


@router.get(
    "/proposals/{proposal_id}/audit",
    response_model=ProposalAuditResponse,
    summary="Get Proposal Audit Trail",
)
def get_proposal_audit(
    proposal_id: ProposalId,
    service: ProposalLifecycleService = Depends(get_proposal_lifecycle_service),
) -> ProposalAuditResponse:
    try:
        items = service.audit_history(proposal_id=proposal_id)
    except LifecycleError as exc:
        raise_lifecycle_http_exception(exc)
    return ProposalAuditResponse(proposal_id=proposal_id, items=items)
