"""
Order queries and admin fulfilment transitions.
"""

from typing import Dict, List, Optional, Set

import structlog

from errors import InvalidTransitionError, OrderNotFoundError
from schemas.orders import Order, OrderStatus
from storage.order_store import IOrderStore

# Admin-driven transitions. Payment-driven ones belong to the EventReconciler.
FULFILMENT_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.CONFIRMED: {OrderStatus.SHIPPED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
}


class OrderService:
    def __init__(self, store: IOrderStore):
        self.store = store
        self._logger = structlog.get_logger().bind(component="order_service")

    async def get_order(self, order_id: str) -> Order:
        order = await self.store.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(f"Order not found: {order_id}")
        return order

    async def list_orders(self, user_id: Optional[str] = None) -> List[Order]:
        return await self.store.list_orders(user_id)

    async def update_status(self, order_id: str, new_status: OrderStatus) -> Order:
        order = await self.get_order(order_id)
        allowed = FULFILMENT_TRANSITIONS.get(order.status, set())
        if new_status not in allowed:
            raise InvalidTransitionError(
                f"Cannot move order from {order.status.value} to {new_status.value}"
            )

        # Guarded on the status we validated against; a concurrent change loses
        updated = await self.store.update_order(
            order_id,
            {"status": new_status.value},
            expected={"status": order.status.value},
        )
        if updated is None:
            raise InvalidTransitionError(f"Order {order_id} changed concurrently, retry")

        self._logger.info("order_status_updated",
                          order_id=order_id,
                          previous_status=order.status.value,
                          status=new_status.value)
        return updated
