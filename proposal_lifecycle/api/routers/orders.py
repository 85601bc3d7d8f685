from typing import Annotated, Optional

from fastapi import Body, Depends, Path, Query, status

from proposal_lifecycle.api.request_models import OrderPlaceRequest
from proposal_lifecycle.api.routers import proposals as shared
from proposal_lifecycle.api.routers.http_errors import raise_lifecycle_http_exception
from proposal_lifecycle.core.errors import LifecycleError
from proposal_lifecycle.core.orders import OrderPage, OrderPlacementService, OrderRecord

OrderId = Annotated[str, Path(description="Order identifier.", examples=["ord_001"])]


@shared.router.post(
    "/proposals/{proposal_id}/orders",
    response_model=OrderRecord,
    status_code=status.HTTP_201_CREATED,
    tags=["Orders"],
    summary="Place Order From Proposal",
    description=(
        "Creates a PENDING order from an APPROVED proposal. At most one non-canceled "
        "order may exist per proposal."
    ),
)
def place_order(
    proposal_id: shared.ProposalId,
    payload: Annotated[Optional[OrderPlaceRequest], Body()] = None,
    service: OrderPlacementService = Depends(shared.get_order_placement_service),
) -> OrderRecord:
    try:
        return service.place_order(
            proposal_id=proposal_id,
            notes=payload.notes if payload is not None else None,
        )
    except LifecycleError as exc:
        raise_lifecycle_http_exception(exc)


@shared.router.get(
    "/orders",
    response_model=OrderPage,
    tags=["Orders"],
    summary="List Orders",
)
def list_orders(
    status_filter: Annotated[
        Optional[str], Query(alias="status", description="Status filter.", examples=["PENDING"])
    ] = None,
    limit: Annotated[int, Query(ge=1, le=100, description="Page size.")] = 15,
    cursor: Annotated[Optional[str], Query(description="Cursor from the previous page.")] = None,
    service: OrderPlacementService = Depends(shared.get_order_placement_service),
) -> OrderPage:
    return service.list_orders(
        status=status_filter.strip().upper() if status_filter else None,
        limit=limit,
        cursor=cursor,
    )


@shared.router.get(
    "/orders/{order_id}",
    response_model=OrderRecord,
    tags=["Orders"],
    summary="Get Order",
)
def get_order(
    order_id: OrderId,
    service: OrderPlacementService = Depends(shared.get_order_placement_service),
) -> OrderRecord:
    try:
        return service.get_order(order_id=order_id)
    except LifecycleError as exc:
        raise_lifecycle_http_exception(exc)


@shared.router.post(
    "/orders/{order_id}/cancel",
    response_model=OrderRecord,
    tags=["Orders"],
    summary="Cancel Order",
    description="Only PENDING or APPROVED orders can be canceled.",
)
def cancel_order(
    order_id: OrderId,
    service: OrderPlacementService = Depends(shared.get_order_placement_service),
) -> OrderRecord:
    try:
        return service.cancel_order(order_id=order_id)
    except LifecycleError as exc:
        raise_lifecycle_http_exception(exc)
