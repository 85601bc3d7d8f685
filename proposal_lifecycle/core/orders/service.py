import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Union

from proposal_lifecycle.core.errors import BusinessError, BusinessReason, NotFoundError
from proposal_lifecycle.core.orders.models import OrderPage, OrderRecord, OrderStatus
from proposal_lifecycle.core.proposals.models import ProposalStatus
from proposal_lifecycle.core.proposals.repository import MAX_PAGE_SIZE, ProposalRepository

logger = logging.getLogger(__name__)


class OrderPlacementService:
    def __init__(self, *, repository: ProposalRepository) -> None:
        self._repository = repository

    def place_order(self, *, proposal_id: str, notes: Optional[str] = None) -> OrderRecord:
        proposal = self._repository.get_proposal(proposal_id=proposal_id)
        if proposal is None:
            raise NotFoundError(
                f"Proposal {proposal_id} not found.",
                code="PROPOSAL_NOT_FOUND",
                context={"proposal_id": proposal_id},
            )
        if proposal.status != ProposalStatus.APPROVED:
            raise BusinessError(
                BusinessReason.NOT_APPROVED,
                "Only approved proposals can place an order. "
                f"Current status: {proposal.status.label}.",
                context={"proposal_id": proposal_id, "status": proposal.status.value},
            )

        now = datetime.now(timezone.utc)
        order = OrderRecord(
            order_id=f"ord_{uuid.uuid4().hex[:12]}",
            proposal_id=proposal_id,
            status=OrderStatus.PENDING,
            total_value=proposal.monthly_value,
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        with self._repository.unit_of_work() as uow:
            # Holds the per-proposal order lock until the insert commits.
            existing = uow.lock_orders_for_proposal(proposal_id)
            active = [row for row in existing if row.status != OrderStatus.CANCELED]
            if active:
                raise BusinessError(
                    BusinessReason.DUPLICATE_ACTIVE_ORDER,
                    f"Proposal {proposal_id} already has an active order.",
                    context={"proposal_id": proposal_id, "order_id": active[0].order_id},
                )
            uow.insert_order(order)

        logger.info(
            "order.placed",
            extra={
                "extra_fields": {
                    "order_id": order.order_id,
                    "proposal_id": proposal_id,
                    "total_value": str(order.total_value),
                }
            },
        )
        return order

    def cancel_order(self, *, order_id: str) -> OrderRecord:
        with self._repository.unit_of_work() as uow:
            order = uow.acquire_order_for_update(order_id)
            if not order.status.is_cancellable:
                raise BusinessError(
                    BusinessReason.NOT_CANCELLABLE,
                    f"Order cannot be canceled in status '{order.status.label}'.",
                    context={"order_id": order_id, "status": order.status.value},
                )
            canceled = order.model_copy(
                update={
                    "status": OrderStatus.CANCELED,
                    "updated_at": datetime.now(timezone.utc),
                }
            )
            uow.update_order(canceled)

        logger.info(
            "order.canceled",
            extra={"extra_fields": {"order_id": order_id, "proposal_id": order.proposal_id}},
        )
        return canceled

    def get_order(self, *, order_id: str) -> OrderRecord:
        order = self._repository.get_order(order_id=order_id)
        if order is None:
            raise NotFoundError(
                f"Order {order_id} not found.",
                code="ORDER_NOT_FOUND",
                context={"order_id": order_id},
            )
        return order

    def list_orders(
        self,
        *,
        status: Optional[Union[OrderStatus, str]] = None,
        limit: int = 15,
        cursor: Optional[str] = None,
    ) -> OrderPage:
        rows, next_cursor = self._repository.list_orders(
            status=OrderStatus(status) if status in OrderStatus.values() else None,
            limit=min(max(limit, 1), MAX_PAGE_SIZE),
            cursor=cursor,
        )
        return OrderPage(items=rows, next_cursor=next_cursor)
