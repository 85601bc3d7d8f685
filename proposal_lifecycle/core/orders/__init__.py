from proposal_lifecycle.core.orders.models import OrderPage, OrderRecord, OrderStatus
from proposal_lifecycle.core.orders.service import OrderPlacementService

__all__ = [
    "OrderPage",
    "OrderPlacementService",
    "OrderRecord",
    "OrderStatus",
]
