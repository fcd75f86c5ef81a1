"""
teammove/features/notifications/emitter.py

Subscription change notifications.

Listeners receive a SubscriptionChangeEvent after the change has committed.
Delivery is in-process and best effort: a failing listener is logged and
does not affect the billing transaction or other listeners.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List

from teammove.core.timeutil import utc_now


logger = logging.getLogger("teammove")


@dataclass(frozen=True)
class SubscriptionChangeEvent:
    tenant_id: str
    old_state: Dict[str, Any]
    new_state: Dict[str, Any]
    reason: str = ""
    occurred_at: datetime = field(default_factory=utc_now)

    @property
    def status_changed(self) -> bool:
        return self.old_state.get("status") != self.new_state.get("status")

    @property
    def plan_changed(self) -> bool:
        return self.old_state.get("plan_id") != self.new_state.get("plan_id")


Listener = Callable[[SubscriptionChangeEvent], None]

_listeners: List[Listener] = []


def register_listener(listener: Listener) -> None:
    if listener not in _listeners:
        _listeners.append(listener)


def unregister_listener(listener: Listener) -> None:
    if listener in _listeners:
        _listeners.remove(listener)


def clear_listeners() -> None:
    _listeners.clear()


def emit(event: SubscriptionChangeEvent) -> int:
    """Deliver to every listener; returns how many succeeded."""
    delivered = 0
    for listener in list(_listeners):
        try:
            listener(event)
            delivered += 1
        except Exception:
            logger.error(
                "[notify] listener failed",
                exc_info=True,
                extra={"tenant_id": event.tenant_id, "reason": event.reason},
            )
    return delivered
