from typing import List, Optional, Tuple


class MQTTError(Exception):
    """Base class for all client errors"""


class TransportError(MQTTError):
    """Lower-layer I/O failure (DNS, refused connection, broken socket)"""


class ProtocolError(TransportError):
    """A frame could not be decoded or arrived out of place"""


class ConnectionClosed(MQTTError):
    """The connection went away while an operation was waiting on it"""


class ConnectRejectedError(MQTTError, ConnectionError):
    """The broker answered CONNECT with a non-zero return code"""

    RETURN_CODES = {
        1: "unacceptable protocol version",
        2: "identifier rejected",
        3: "server unavailable",
        4: "bad user name or password",
        5: "not authorized",
    }

    def __init__(self, return_code: int):
        self.return_code = return_code
        reason = self.RETURN_CODES.get(return_code, "unknown reason")
        super().__init__(f"Connection refused by broker: {reason} (code {return_code})")


class OperationTimeout(MQTTError, TimeoutError):
    """No response arrived before the deadline"""


class SubscriptionError(MQTTError):
    """The broker (or local validation) rejected one or more topic filters.

    ``results`` holds one ``(pattern, code)`` pair per requested filter, where
    code is the granted QoS or 0x80 for a failure.
    """

    def __init__(self, message: str, results: List[Tuple[str, int]]):
        super().__init__(message)
        self.results = results

    @property
    def failed(self) -> List[str]:
        return [pattern for pattern, code in self.results if code == 0x80]


class PublishError(MQTTError, ValueError):
    """The publish request itself is malformed"""


class DeliveryFailure(MQTTError):
    """A QoS 1/2 message ran out of retries and was dropped from tracking"""

    def __init__(self, packet_id: int, message: Optional[str] = None):
        self.packet_id = packet_id
        super().__init__(message or f"Delivery of packet {packet_id} abandoned after retries")


class HandlerError(MQTTError):
    """A message handler raised; the original exception is ``__cause__``"""

    def __init__(self, pattern: str, topic: str):
        self.pattern = pattern
        self.topic = topic
        super().__init__(f"Handler for {pattern!r} failed on {topic!r}")
