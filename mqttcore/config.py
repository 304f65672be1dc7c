from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional

from .will_message import WillMessage

@dataclass
class ClientOptions:
    keep_alive_interval: int = 60
    clean_session: bool = True
    auto_reconnect: bool = False
    max_retry_count: int = 3
    retry_interval: float = 5.0  # seconds
    connect_timeout: float = 10.0
    operation_timeout: Optional[float] = None
    reconnect_delay: float = 1.0
    max_reconnect_attempts: int = 5
    username: Optional[str] = None
    password: Optional[bytes] = None
    will: Optional[WillMessage] = None
    exclude_reserved_topics: bool = True
    deliver_retained: bool = True
    handler_workers: int = 4

    def __post_init__(self):
        if not isinstance(self.keep_alive_interval, int) or not 0 <= self.keep_alive_interval <= 65535:
            raise ValueError("keep_alive_interval must be an integer between 0 and 65535")

        if not isinstance(self.max_retry_count, int) or self.max_retry_count < 0:
            raise ValueError("max_retry_count cannot be negative")

        if self.retry_interval <= 0:
            raise ValueError("retry_interval must be positive")

        if self.connect_timeout <= 0:
            raise ValueError("connect_timeout must be positive")

        if self.operation_timeout is not None and self.operation_timeout <= 0:
            raise ValueError("operation_timeout must be positive when set")

        if self.reconnect_delay < 0:
            raise ValueError("reconnect_delay cannot be negative")

        if self.max_reconnect_attempts < 1:
            raise ValueError("max_reconnect_attempts must be at least 1")

        if self.handler_workers < 1:
            raise ValueError("handler_workers must be at least 1")

        if isinstance(self.password, str):
            self.password = self.password.encode()

        if isinstance(self.will, Mapping):
            self.will = WillMessage(**self.will)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> 'ClientOptions':
        """Build options from a plain mapping, e.g. a parsed config file"""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown client options: {', '.join(sorted(unknown))}")
        return cls(**data)
