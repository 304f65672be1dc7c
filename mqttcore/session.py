import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .store import MessageStore
from .topic import matches
from .will_message import QoSLevel

Handler = Callable[[str, QoSLevel, bytes, bool], Any]

@dataclass(eq=False)
class Subscription:
    pattern: str
    qos: QoSLevel
    handler: Handler
    active: bool = True

@dataclass
class SessionState:
    client_id: str
    clean_session: bool
    subscriptions: Dict[str, Subscription] = field(default_factory=dict)
    store: MessageStore = field(default_factory=MessageStore)
    pending_received: Set[int] = field(default_factory=set)
    exclude_reserved: bool = True
    timestamp: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        self._lock = threading.Lock()

    def add_subscription(self, pattern: str, qos: QoSLevel, handler: Handler) -> Subscription:
        """Register a subscription, replacing any existing one for the same pattern"""
        subscription = Subscription(pattern=pattern, qos=QoSLevel(qos), handler=handler)
        with self._lock:
            previous = self.subscriptions.get(pattern)
            if previous is not None:
                previous.active = False
            self.subscriptions[pattern] = subscription
        return subscription

    def update_granted(self, pattern: str, qos: QoSLevel) -> None:
        with self._lock:
            subscription = self.subscriptions.get(pattern)
            if subscription is not None:
                subscription.qos = QoSLevel(qos)

    def remove_subscription(self, pattern: str) -> Optional[Subscription]:
        with self._lock:
            subscription = self.subscriptions.pop(pattern, None)
        if subscription is not None:
            subscription.active = False
        return subscription

    def get_subscriptions(self) -> List[Subscription]:
        with self._lock:
            return list(self.subscriptions.values())

    def match(self, topic: str, qos: QoSLevel) -> List[Tuple[Subscription, QoSLevel]]:
        """Return every subscription matching ``topic`` with its effective QoS"""
        result = []
        for subscription in self.get_subscriptions():
            if matches(subscription.pattern, topic, self.exclude_reserved):
                result.append((subscription, QoSLevel(min(subscription.qos, qos))))
        return result

    def mark_received(self, packet_id: int) -> bool:
        """Record an inbound QoS 2 identifier; False if it was already pending"""
        with self._lock:
            if packet_id in self.pending_received:
                return False
            self.pending_received.add(packet_id)
            return True

    def release(self, packet_id: int) -> bool:
        with self._lock:
            if packet_id in self.pending_received:
                self.pending_received.discard(packet_id)
                return True
            return False

    def reset(self) -> None:
        """Drop all session state (clean session teardown)"""
        with self._lock:
            for subscription in self.subscriptions.values():
                subscription.active = False
            self.subscriptions.clear()
            self.pending_received.clear()
        self.store.clear()
        self.timestamp = datetime.now()
