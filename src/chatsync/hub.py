from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping

from .service import row_matches


Callback = Callable[[Any], None]


@dataclass(eq=False)
class Subscription:
    topic: str
    callback: Callback
    filters: Dict[str, Any] = field(default_factory=dict)

    def deliver(self, payload: Any, row: Mapping[str, Any] | None = None) -> None:
        if row is not None and not row_matches(row, self.filters):
            return
        self.callback(payload)


class SubscriptionHub:
    """Registers filtered subscriptions per topic and fans payloads out to them."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(
        self, topic: str, callback: Callback, filters: Mapping[str, Any] | None = None
    ) -> Subscription:
        subscription = Subscription(topic=topic, callback=callback, filters=dict(filters or {}))
        self._subscriptions.setdefault(topic, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.topic)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.topic, None)

    def broadcast(self, topic: str, payload: Any, row: Mapping[str, Any] | None = None) -> None:
        """Deliver ``payload`` to every subscriber of ``topic`` whose filters match ``row``."""

        for subscription in list(self._subscriptions.get(topic, [])):
            subscription.deliver(payload, row)
