"""In-flight message tracking for outbound QoS 1/2 deliveries.

A ``MessageStore`` owns the packet identifier space of one connection and
keeps a ``PendingDelivery`` for every message that has not finished its
acknowledgment handshake. Entries live in a pluggable ``StoreBackend`` so
non-clean sessions can survive a process restart.
"""
import base64
import json
import logging
import os
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Set

from .errors import PublishError
from .will_message import QoSLevel

logger = logging.getLogger(__name__)

MAX_PACKET_ID = 65535


class DeliveryState(str, Enum):
    SENT = "SENT"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RECEIVED = "RECEIVED"
    COMPLETED = "COMPLETED"


@dataclass
class PendingDelivery:
    packet_id: int
    topic: str
    payload: bytes
    qos: QoSLevel
    retain: bool = False
    state: DeliveryState = DeliveryState.SENT
    retry_count: int = 0
    last_sent: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "packet_id": self.packet_id,
            "topic": self.topic,
            "payload": base64.b64encode(self.payload).decode("ascii"),
            "qos": int(self.qos),
            "retain": self.retain,
            "state": self.state.value,
            "retry_count": self.retry_count,
            "last_sent": self.last_sent,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PendingDelivery":
        return cls(
            packet_id=int(data["packet_id"]),
            topic=data["topic"],
            payload=base64.b64decode(data["payload"]),
            qos=QoSLevel(data["qos"]),
            retain=bool(data.get("retain", False)),
            state=DeliveryState(data.get("state", DeliveryState.SENT.value)),
            retry_count=int(data.get("retry_count", 0)),
            last_sent=float(data.get("last_sent", 0.0)),
        )


class StoreBackend(ABC):
    """Persistence contract for pending deliveries"""

    @abstractmethod
    def put(self, packet_id: int, entry: PendingDelivery) -> None:
        ...

    @abstractmethod
    def get(self, packet_id: int) -> Optional[PendingDelivery]:
        ...

    @abstractmethod
    def delete(self, packet_id: int) -> None:
        ...

    @abstractmethod
    def list_all(self) -> List[PendingDelivery]:
        ...

    def clear(self) -> None:
        for entry in self.list_all():
            self.delete(entry.packet_id)


class MemoryStoreBackend(StoreBackend):
    def __init__(self):
        self._entries: Dict[int, PendingDelivery] = {}

    def put(self, packet_id: int, entry: PendingDelivery) -> None:
        self._entries[packet_id] = entry

    def get(self, packet_id: int) -> Optional[PendingDelivery]:
        return self._entries.get(packet_id)

    def delete(self, packet_id: int) -> None:
        self._entries.pop(packet_id, None)

    def list_all(self) -> List[PendingDelivery]:
        return list(self._entries.values())

    def clear(self) -> None:
        self._entries.clear()


class JsonFileStoreBackend(StoreBackend):
    """Keeps every entry in one JSON document, rewritten on each change.

    Writes go to a temporary file first and are moved into place with
    ``os.replace`` so a crash never leaves a half-written store behind.
    """

    def __init__(self, path):
        self.path = Path(path)
        self._lock = threading.RLock()
        self._entries: Dict[int, PendingDelivery] = {}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._load_from_disk()

    def _load_from_disk(self) -> None:
        if not self.path.exists():
            return
        with self.path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)
        for data in raw.get("pending", []):
            entry = PendingDelivery.from_dict(data)
            self._entries[entry.packet_id] = entry
        logger.debug(f"Loaded {len(self._entries)} pending deliveries from {self.path}")

    def _write_to_disk(self) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        document = {"pending": [entry.to_dict() for entry in self._entries.values()]}
        with tmp_path.open("w", encoding="utf-8") as fh:
            json.dump(document, fh)
        os.replace(tmp_path, self.path)

    def put(self, packet_id: int, entry: PendingDelivery) -> None:
        with self._lock:
            self._entries[packet_id] = entry
            self._write_to_disk()

    def get(self, packet_id: int) -> Optional[PendingDelivery]:
        with self._lock:
            return self._entries.get(packet_id)

    def delete(self, packet_id: int) -> None:
        with self._lock:
            if self._entries.pop(packet_id, None) is not None:
                self._write_to_disk()

    def list_all(self) -> List[PendingDelivery]:
        with self._lock:
            return list(self._entries.values())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._write_to_disk()


class MessageStore:
    """Packet identifier allocation plus the record of in-flight deliveries"""

    def __init__(self, backend: Optional[StoreBackend] = None):
        self.backend = backend if backend is not None else MemoryStoreBackend()
        self._lock = threading.Lock()
        self._next_packet_id = 1
        self.reserved: Set[int] = set()

    def next_packet_id(self) -> int:
        """Return the next free identifier in 1..65535"""
        with self._lock:
            for _ in range(MAX_PACKET_ID):
                packet_id = self._next_packet_id
                self._next_packet_id = packet_id % MAX_PACKET_ID + 1
                if packet_id not in self.reserved and self.backend.get(packet_id) is None:
                    return packet_id
        raise PublishError("No free packet identifier: all 65535 are in flight")

    def track(self, entry: PendingDelivery) -> PendingDelivery:
        self.backend.put(entry.packet_id, entry)
        return entry

    def update(self, entry: PendingDelivery) -> None:
        """Write back a changed entry (state, retry count, timestamp)"""
        if self.backend.get(entry.packet_id) is not None:
            self.backend.put(entry.packet_id, entry)

    def get(self, packet_id: int) -> Optional[PendingDelivery]:
        return self.backend.get(packet_id)

    def retire(self, packet_id: int) -> Optional[PendingDelivery]:
        entry = self.backend.get(packet_id)
        if entry is not None:
            self.backend.delete(packet_id)
        return entry

    def pending(self) -> List[PendingDelivery]:
        return sorted(self.backend.list_all(), key=lambda entry: entry.packet_id)

    def clear(self) -> None:
        self.backend.clear()

    def __len__(self) -> int:
        return len(self.backend.list_all())

    def __contains__(self, packet_id: int) -> bool:
        return self.backend.get(packet_id) is not None
