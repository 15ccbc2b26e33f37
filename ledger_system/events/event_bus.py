# ledger_system/events/event_bus.py
"""
In-process notifications for ledger side effects.

Events that fire inside a larger unit of work (commission.paid,
bonus_pool.contributed) are emitted before the caller commits, so
subscribers treat payloads as notifications, not as committed state.
A failing subscriber never undoes or blocks the operation that emitted.
"""
from typing import Dict, List, Callable, Any
import logging
import asyncio

logger = logging.getLogger(__name__)


def _handlerName(handler: Callable) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)


class EventBus:
    """Singleton registry of event name -> subscribers."""

    _instance = None
    _handlers: Dict[str, List[Callable]] = {}

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._handlers = {}
        return cls._instance

    def subscribe(self, eventName: str, handler: Callable):
        """Subscribe a sync or async handler taking the event payload dict."""
        self._handlers.setdefault(eventName, []).append(handler)
        logger.debug(f"Handler {_handlerName(handler)} subscribed to {eventName}")

    async def emit(self, eventName: str, data: Dict[str, Any]):
        """Deliver data to every subscriber in subscription order."""
        handlers = list(self._handlers.get(eventName, []))
        if not handlers:
            return

        logger.debug(f"Emitting {eventName} to {len(handlers)} handler(s): {data}")

        for handler in handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler(data)
                else:
                    handler(data)
            except Exception as e:
                logger.error(f"Handler {_handlerName(handler)} failed on {eventName}: {e}", exc_info=True)

    def clear(self):
        self._handlers.clear()


# Global event bus instance
eventBus = EventBus()


class LedgerEvents:
    """Event names with the payload keys each one carries."""

    # orderId, amount, paymentReference
    ORDER_PAID = "order.paid"
    # orderId, billId, memberId, warnings (count)
    ORDER_COMPLETED = "order.completed"
    # orderId, reason
    ORDER_CANCELLED = "order.cancelled"

    # cycleId, orderId, saleAmount, contribution
    POOL_CONTRIBUTED = "bonus_pool.contributed"
    # cycleId, cycleNumber, poolAmount, distributed, unallocated
    CYCLE_SETTLED = "bonus_pool.settled"
    # cycleId, cycleNumber
    CYCLE_OPENED = "bonus_pool.opened"

    # orderId, payerId, level, memberId, rate, amount, entryId
    COMMISSION_PAID = "commission.paid"
    # partnerId, memberId, tier
    PARTNER_ENROLLED = "partner.enrolled"
    # memberId, delta, adminId
    TOKENS_ADJUSTED = "tokens.adjusted"
