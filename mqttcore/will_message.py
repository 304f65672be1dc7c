from dataclasses import dataclass
from enum import IntEnum

from .topic import validate_topic_name

class QoSLevel(IntEnum):
    AT_MOST_ONCE = 0
    AT_LEAST_ONCE = 1
    EXACTLY_ONCE = 2

@dataclass
class WillMessage:
    topic: str
    payload: bytes
    qos: QoSLevel = QoSLevel.AT_MOST_ONCE
    retain: bool = False

    def __post_init__(self):
        if isinstance(self.payload, str):
            self.payload = self.payload.encode()
        if not isinstance(self.payload, bytes):
            raise TypeError("Payload must be bytes type")

        if not self.topic:
            raise ValueError("Will topic cannot be empty")

        if '+' in self.topic or '#' in self.topic:
            raise ValueError("Will topic cannot contain wildcards (+ or #)")

        if not validate_topic_name(self.topic):
            raise ValueError(f"Invalid will topic: {self.topic!r}")

        if not isinstance(self.qos, QoSLevel):
            try:
                self.qos = QoSLevel(self.qos)
            except ValueError:
                raise ValueError(f"Invalid QoS value: {self.qos}. Must be 0, 1, or 2")
